"""Tests for emailed one-time login codes."""

import json

import pytest

from taskgate.service.errors import InvalidOrExpiredCodeError, MissingEmailError
from taskgate.service.strategies import CodeStrategy
from taskgate.storage.kv import MemoryKV
from taskgate.storage.models import Provider


class RecordingSender:
    def __init__(self, result=True):
        self.sent = []
        self.result = result

    def __call__(self, email, code):
        self.sent.append((email, code))
        return self.result


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def kv(clock):
    return MemoryKV(clock=clock)


@pytest.fixture
def strategy(kv, sender, clock):
    return CodeStrategy(kv, sender, ttl_seconds=600, code_length=6, clock=clock)


class TestIssue:
    async def test_issue_sends_code(self, strategy, sender):
        await strategy.issue(" Ada@Example.com ")
        assert len(sender.sent) == 1
        email, code = sender.sent[0]
        assert email == "ada@example.com"
        assert len(code) == 6
        assert code.isalnum() and code == code.upper()

    async def test_pending_code_is_keyed_by_hash(self, strategy, kv, sender):
        await strategy.issue("ada@example.com")
        keys = await kv.keys("auth:code:")
        assert len(keys) == 1
        assert "ada@example.com" not in keys[0]
        pending = json.loads(await kv.get(keys[0]))
        assert pending["email"] == "ada@example.com"
        assert pending["code"] == sender.sent[0][1]

    async def test_reissue_replaces_code(self, strategy, sender):
        await strategy.issue("ada@example.com")
        await strategy.issue("ada@example.com")
        old_code, new_code = sender.sent[0][1], sender.sent[1][1]
        if old_code != new_code:
            with pytest.raises(InvalidOrExpiredCodeError):
                await strategy.verify({"email": "ada@example.com", "code": old_code})
        else:
            profile = await strategy.verify({"email": "ada@example.com", "code": new_code})
            assert profile.email == "ada@example.com"

    async def test_delivery_failure_still_stores_code(self, kv, clock):
        strategy = CodeStrategy(kv, RecordingSender(result=False), clock=clock)
        await strategy.issue("ada@example.com")
        assert await kv.keys("auth:code:")

    async def test_blank_email_rejected(self, strategy):
        with pytest.raises(MissingEmailError):
            await strategy.issue("   ")


class TestVerify:
    async def test_correct_code_returns_profile(self, strategy, sender):
        await strategy.issue("ada@example.com")
        code = sender.sent[0][1]
        profile = await strategy.verify({"email": "ADA@example.com", "code": code.lower()})
        assert profile.email == "ada@example.com"
        assert profile.provider is Provider.CODE

    async def test_code_is_single_use(self, strategy, sender):
        await strategy.issue("ada@example.com")
        code = sender.sent[0][1]
        await strategy.verify({"email": "ada@example.com", "code": code})
        with pytest.raises(InvalidOrExpiredCodeError):
            await strategy.verify({"email": "ada@example.com", "code": code})

    async def test_wrong_code_consumes_pending_code(self, strategy, sender):
        await strategy.issue("ada@example.com")
        code = sender.sent[0][1]
        wrong = "000000" if code != "000000" else "111111"
        with pytest.raises(InvalidOrExpiredCodeError):
            await strategy.verify({"email": "ada@example.com", "code": wrong})
        with pytest.raises(InvalidOrExpiredCodeError):
            await strategy.verify({"email": "ada@example.com", "code": code})

    async def test_expired_code_rejected(self, strategy, sender, clock):
        await strategy.issue("ada@example.com")
        code = sender.sent[0][1]
        clock.advance(601)
        with pytest.raises(InvalidOrExpiredCodeError):
            await strategy.verify({"email": "ada@example.com", "code": code})

    async def test_code_for_another_address_rejected(self, strategy, sender):
        await strategy.issue("ada@example.com")
        code = sender.sent[0][1]
        with pytest.raises(InvalidOrExpiredCodeError):
            await strategy.verify({"email": "grace@example.com", "code": code})

    async def test_no_pending_code(self, strategy):
        with pytest.raises(InvalidOrExpiredCodeError) as excinfo:
            await strategy.verify({"email": "ada@example.com", "code": "ABC123"})
        assert excinfo.value.message == "invalid or expired code"
        assert excinfo.value.status_code == 401

    async def test_missing_email_rejected(self, strategy):
        with pytest.raises(MissingEmailError):
            await strategy.verify({"code": "ABC123"})
