"""Tests for the authenticator that drives every login strategy."""

from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from taskgate.service.errors import (
    AuthenticationError,
    InvalidOrExpiredCodeError,
    ValidationError,
)
from taskgate.service.identity import IdentityResolver
from taskgate.service.sessions import SessionMetadata, SessionStore
from taskgate.service.strategies import (
    Authenticator,
    CodeStrategy,
    GitHubStrategy,
    GoogleStrategy,
    OAuthStateStore,
)
from taskgate.storage.kv import MemoryKV
from taskgate.storage.memory import MemoryStore
from taskgate.storage.models import Provider


def _google_transport():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/token":
            return httpx.Response(200, json={"access_token": "tok"})
        return httpx.Response(
            200,
            json={"id": "g-7", "email": "ada@example.com", "verified_email": True, "name": "Ada"},
        )

    return httpx.MockTransport(handler)


@pytest.fixture
def sent():
    return []


@pytest.fixture
def env(clock, sent):
    kv = MemoryKV(clock=clock)
    store = MemoryStore()
    sessions = SessionStore(kv, ttl_seconds=3600, clock=clock)
    authenticator = Authenticator(
        IdentityResolver(store),
        sessions,
        {
            Provider.CODE: CodeStrategy(
                kv, lambda email, code: sent.append((email, code)) or True, clock=clock
            ),
            Provider.GOOGLE: GoogleStrategy(
                "gid", "gsecret", "http://testserver/auth/google/callback",
                transport=_google_transport(),
            ),
            Provider.GITHUB: GitHubStrategy(None, None, "http://testserver/auth/github/callback"),
        },
        OAuthStateStore(kv),
    )
    return authenticator, store, sessions


class TestCodeLogin:
    async def test_code_login_creates_session(self, env, sent):
        authenticator, store, sessions = env
        await authenticator.start_code_login("ada@example.com")
        email, code = sent[0]

        metadata = SessionMetadata(user_agent="pytest", ip_address="10.1.1.1", country="NL")
        result = await authenticator.authenticate(
            Provider.CODE, {"email": email, "code": code}, metadata
        )
        record = await sessions.get_session(result.user_id, result.session_id)
        assert record.user_agent == "pytest"
        assert store.get_user(result.user_id).email == "ada@example.com"

    async def test_bad_code_creates_nothing(self, env):
        authenticator, store, _ = env
        with pytest.raises(InvalidOrExpiredCodeError):
            await authenticator.authenticate("code", {"email": "ada@example.com", "code": "XXXXXX"})
        assert store.users == {}

    async def test_provider_tag_accepts_strings(self, env, sent):
        authenticator, _, _ = env
        await authenticator.start_code_login("ada@example.com")
        result = await authenticator.authenticate(
            "code", {"email": "ada@example.com", "code": sent[0][1]}
        )
        assert result.session_id


class TestProviderSelection:
    def test_unknown_provider(self, env):
        authenticator, _, _ = env
        with pytest.raises(ValidationError):
            authenticator.strategy("saml")

    async def test_unconfigured_oauth_provider(self, env):
        authenticator, _, _ = env
        with pytest.raises(ValidationError) as excinfo:
            await authenticator.start_oauth("github")
        assert excinfo.value.message == "login provider is not configured"

    async def test_code_is_not_an_oauth_provider(self, env):
        authenticator, _, _ = env
        with pytest.raises(ValidationError):
            await authenticator.start_oauth("code")


class TestOAuthLogin:
    async def test_start_and_complete(self, env):
        authenticator, store, sessions = env
        url = await authenticator.start_oauth(Provider.GOOGLE, "/account")
        state = parse_qs(urlsplit(url).query)["state"][0]

        result, redirect_to = await authenticator.complete_oauth(
            "google", {"code": "auth-code", "state": state}
        )
        assert redirect_to == "/account"
        assert await sessions.get_session(result.user_id, result.session_id) is not None
        accounts = store.list_accounts(result.user_id)
        assert [(a.provider, a.provider_account_id) for a in accounts] == [("google", "g-7")]

    async def test_state_cannot_be_replayed(self, env):
        authenticator, _, _ = env
        url = await authenticator.start_oauth("google")
        state = parse_qs(urlsplit(url).query)["state"][0]
        await authenticator.complete_oauth("google", {"code": "c", "state": state})
        with pytest.raises(AuthenticationError):
            await authenticator.complete_oauth("google", {"code": "c", "state": state})

    async def test_forged_state_rejected(self, env):
        authenticator, store, _ = env
        with pytest.raises(AuthenticationError):
            await authenticator.complete_oauth("google", {"code": "c", "state": "made-up"})
        assert store.users == {}
