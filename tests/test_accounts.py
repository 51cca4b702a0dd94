"""Tests for session management and account deletion."""

import pytest

from taskgate.service.accounts import AccountService
from taskgate.service.errors import ForbiddenError, NotFoundError, ValidationError
from taskgate.service.sessions import SessionStore
from taskgate.storage.kv import MemoryKV
from taskgate.storage.memory import MemoryStore
from taskgate.storage.models import AuthContext, SessionClaim


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def sessions(clock):
    return SessionStore(MemoryKV(clock=clock), ttl_seconds=3600, clock=clock)


@pytest.fixture
def accounts(store, sessions):
    return AccountService(store, sessions)


@pytest.fixture
def user(store):
    return store.create_user_with_account(
        email="ada@example.com",
        username="ada",
        display_name="Ada",
        avatar_url=None,
        provider="code",
        provider_account_id=None,
    )


async def _login(sessions, user):
    session_id = await sessions.create_session(user.id)
    return AuthContext(session_id=session_id, user=user)


class TestListSessions:
    async def test_marks_current_session(self, accounts, sessions, user, clock):
        other = await sessions.create_session(user.id)
        clock.advance(1)
        context = await _login(sessions, user)

        views = await accounts.list_sessions(context)
        assert [(v.record.session_id, v.is_current) for v in views] == [
            (context.session_id, True),
            (other, False),
        ]


class TestSignOut:
    async def test_sign_out_other_session(self, accounts, sessions, user):
        other = await sessions.create_session(user.id)
        context = await _login(sessions, user)

        await accounts.sign_out_session(context, other)
        assert await sessions.get_session(user.id, other) is None
        assert await sessions.get_session(user.id, context.session_id) is not None

    async def test_cannot_sign_out_current_session(self, accounts, sessions, user):
        context = await _login(sessions, user)
        with pytest.raises(ValidationError) as excinfo:
            await accounts.sign_out_session(context, context.session_id)
        assert excinfo.value.message == "You cannot sign out your current session"
        assert await sessions.get_session(user.id, context.session_id) is not None

    async def test_unknown_session(self, accounts, sessions, user):
        context = await _login(sessions, user)
        with pytest.raises(NotFoundError):
            await accounts.sign_out_session(context, "missing")

    async def test_cannot_sign_out_someone_elses_session(self, accounts, sessions, store, user):
        grace = store.create_user_with_account(
            email="grace@example.com",
            username="grace",
            display_name=None,
            avatar_url=None,
            provider="code",
            provider_account_id=None,
        )
        theirs = await sessions.create_session(grace.id)
        context = await _login(sessions, user)
        with pytest.raises(NotFoundError):
            await accounts.sign_out_session(context, theirs)
        assert await sessions.get_session(grace.id, theirs) is not None

    async def test_sign_out_others(self, accounts, sessions, user):
        await sessions.create_session(user.id)
        await sessions.create_session(user.id)
        context = await _login(sessions, user)

        assert await accounts.sign_out_other_sessions(context) == 2
        assert await sessions.count_sessions(user.id) == 1


class TestLogout:
    async def test_logout_deletes_session(self, accounts, sessions, user):
        context = await _login(sessions, user)
        await accounts.logout(SessionClaim(user.id, context.session_id))
        assert await sessions.get_session(user.id, context.session_id) is None

    async def test_logout_is_idempotent(self, accounts, sessions, user):
        context = await _login(sessions, user)
        claim = SessionClaim(user.id, context.session_id)
        await accounts.logout(claim)
        await accounts.logout(claim)
        await accounts.logout(None)


class TestDeleteAccount:
    async def test_delete_requires_matching_email(self, accounts, sessions, store, user):
        context = await _login(sessions, user)
        with pytest.raises(ForbiddenError):
            await accounts.delete_account(context, "someone@example.com")
        assert store.get_user(user.id) is not None

    async def test_delete_removes_user_accounts_and_sessions(self, accounts, sessions, store, user):
        await sessions.create_session(user.id)
        context = await _login(sessions, user)

        await accounts.delete_account(context, " ADA@example.com ")
        assert store.get_user(user.id) is None
        assert store.list_accounts(user.id) == []
        assert await sessions.count_sessions(user.id) == 0
