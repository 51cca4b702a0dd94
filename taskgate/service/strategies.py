from __future__ import annotations

import abc
import asyncio
import hashlib
import hmac
import json
import secrets
import string
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Protocol, Tuple
from urllib.parse import urlencode

import httpx

from taskgate.logging import get_logger
from taskgate.service.errors import (
    AuthenticationError,
    InvalidOrExpiredCodeError,
    MissingEmailError,
    ValidationError,
)
from taskgate.service.identity import IdentityResolver
from taskgate.service.sessions import SessionMetadata, SessionStore
from taskgate.storage.kv import KeyValueStore
from taskgate.storage.models import AuthProfile, Provider

logger = get_logger(__name__)

_CODE_ALPHABET = string.ascii_uppercase + string.digits


def normalize_email(email: str) -> str:
    return email.strip().lower()


class Strategy(Protocol):
    provider: Provider

    async def verify(self, params: Mapping[str, str]) -> AuthProfile: ...


@dataclass(frozen=True)
class AuthResult:
    user_id: str
    session_id: str


class CodeStrategy:
    """Emailed one-time code.

    The pending code lives in the key-value store under a hash of the
    address. Any verification attempt consumes it, right or wrong.
    """

    provider = Provider.CODE

    def __init__(
        self,
        kv: KeyValueStore,
        send_code: Callable[[str, str], bool],
        *,
        ttl_seconds: int = 600,
        code_length: int = 6,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.kv = kv
        self.send_code = send_code
        self.ttl_seconds = ttl_seconds
        self.code_length = code_length
        self._clock = clock

    @staticmethod
    def _key(email: str) -> str:
        return "auth:code:" + hashlib.sha256(email.encode()).hexdigest()

    def generate_code(self) -> str:
        return "".join(secrets.choice(_CODE_ALPHABET) for _ in range(self.code_length))

    async def issue(self, email: str) -> None:
        """Store a fresh code for ``email`` and send it; replaces any pending code."""
        email = normalize_email(email)
        if not email:
            raise MissingEmailError()
        code = self.generate_code()
        expires_at = int((self._clock() + self.ttl_seconds) * 1000)
        await self.kv.set(
            self._key(email),
            json.dumps({"email": email, "code": code, "expiresAt": expires_at}),
            self.ttl_seconds,
        )
        delivered = await asyncio.to_thread(self.send_code, email, code)
        if delivered is False:
            logger.warning("login_code_delivery_failed", provider=self.provider.value)
        else:
            logger.info("login_code_issued", provider=self.provider.value)

    async def verify(self, params: Mapping[str, str]) -> AuthProfile:
        email = normalize_email(params.get("email") or "")
        submitted = (params.get("code") or "").strip().upper()
        if not email:
            raise MissingEmailError()
        raw = await self.kv.getdel(self._key(email))
        if raw is None or not submitted:
            raise InvalidOrExpiredCodeError()
        try:
            pending = json.loads(raw)
            expected = str(pending["code"])
            expires_at = int(pending["expiresAt"])
            stored_email = str(pending["email"])
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            logger.warning("login_code_record_corrupt")
            raise InvalidOrExpiredCodeError()
        if expires_at <= int(self._clock() * 1000):
            raise InvalidOrExpiredCodeError()
        if stored_email != email or not hmac.compare_digest(expected, submitted):
            raise InvalidOrExpiredCodeError()
        return AuthProfile(email=email, provider=self.provider)


class OAuthStrategy(abc.ABC):
    """Authorization-code exchange against one OAuth provider.

    Subclasses describe the endpoints and turn the provider's user payload
    into an ``AuthProfile``.
    """

    provider: Provider
    auth_url: str
    token_url: str
    userinfo_url: str
    scope: str
    extra_auth_params: Tuple[Tuple[str, str], ...] = ()

    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        redirect_uri: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout = timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": self.scope,
            "state": state,
            **dict(self.extra_auth_params),
        }
        return f"{self.auth_url}?{urlencode(params)}"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout, follow_redirects=False, transport=self._transport
        )

    def _userinfo_headers(self, access_token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}

    async def verify(self, params: Mapping[str, str]) -> AuthProfile:
        code = params.get("code")
        if not code:
            raise AuthenticationError("oauth login failed")
        provider = self.provider.value
        try:
            async with self._client() as client:
                token_response = await client.post(
                    self.token_url,
                    data={
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                        "code": code,
                        "redirect_uri": self.redirect_uri,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = (
                    token_result.get("access_token") if isinstance(token_result, dict) else None
                )
                if not access_token:
                    logger.error("oauth_no_access_token", provider=provider)
                    raise AuthenticationError("oauth login failed")

                headers = self._userinfo_headers(access_token)
                userinfo_response = await client.get(self.userinfo_url, headers=headers)
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
                if not isinstance(userinfo, dict):
                    logger.error("oauth_userinfo_invalid_format", provider=provider)
                    raise AuthenticationError("oauth login failed")
                profile = await self._profile(client, headers, userinfo)
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider=provider,
                status_code=exc.response.status_code,
                error=str(exc),
            )
            raise AuthenticationError("oauth login failed") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error(
                "oauth_exchange_error",
                provider=provider,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise AuthenticationError("oauth login failed") from exc

        if not profile.email:
            logger.error("oauth_identity_missing_email", provider=provider)
            raise MissingEmailError(detail={"provider": provider})
        logger.info(
            "oauth_exchange_success",
            provider=provider,
            provider_account_id=profile.provider_account_id,
        )
        return profile

    @abc.abstractmethod
    async def _profile(
        self, client: httpx.AsyncClient, headers: Dict[str, str], userinfo: Dict[str, Any]
    ) -> AuthProfile:
        """Normalise the provider user payload."""


class GoogleStrategy(OAuthStrategy):
    provider = Provider.GOOGLE
    auth_url = "https://accounts.google.com/o/oauth2/v2/auth"
    token_url = "https://oauth2.googleapis.com/token"
    userinfo_url = "https://www.googleapis.com/oauth2/v2/userinfo"
    scope = "openid email profile"
    extra_auth_params = (("access_type", "online"), ("prompt", "select_account"))

    async def _profile(
        self, client: httpx.AsyncClient, headers: Dict[str, str], userinfo: Dict[str, Any]
    ) -> AuthProfile:
        email = userinfo.get("email")
        # Only trust addresses Google has verified
        if userinfo.get("verified_email") is False:
            email = None
        uid = userinfo.get("id") or userinfo.get("sub")
        return AuthProfile(
            email=email,
            provider=self.provider,
            display_name=userinfo.get("name"),
            avatar_url=userinfo.get("picture"),
            provider_account_id=str(uid) if uid is not None else None,
        )


class GitHubStrategy(OAuthStrategy):
    provider = Provider.GITHUB
    auth_url = "https://github.com/login/oauth/authorize"
    token_url = "https://github.com/login/oauth/access_token"
    userinfo_url = "https://api.github.com/user"
    emails_url = "https://api.github.com/user/emails"
    scope = "read:user user:email"

    def _userinfo_headers(self, access_token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/vnd.github+json",
        }

    async def _profile(
        self, client: httpx.AsyncClient, headers: Dict[str, str], userinfo: Dict[str, Any]
    ) -> AuthProfile:
        email = userinfo.get("email")
        if not email:
            # Private addresses only show up on the emails endpoint
            emails_response = await client.get(self.emails_url, headers=headers)
            if emails_response.status_code == 200:
                emails = emails_response.json()
                if isinstance(emails, list):
                    email = next(
                        (
                            e.get("email")
                            for e in emails
                            if isinstance(e, dict) and e.get("primary") and e.get("verified")
                        ),
                        None,
                    )
        uid = userinfo.get("id")
        return AuthProfile(
            email=email,
            provider=self.provider,
            display_name=userinfo.get("name") or userinfo.get("login"),
            avatar_url=userinfo.get("avatar_url"),
            provider_account_id=str(uid) if uid is not None else None,
        )


class OAuthStateStore:
    """Single-use OAuth ``state`` values with the redirect path they carry."""

    def __init__(self, kv: KeyValueStore, *, ttl_seconds: int = 600) -> None:
        self.kv = kv
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _key(state: str) -> str:
        return f"auth:oauth:{state}"

    async def issue(self, provider: Provider, redirect_to: str) -> str:
        state = secrets.token_urlsafe(32)
        await self.kv.set(
            self._key(state),
            json.dumps({"provider": provider.value, "redirectTo": redirect_to}),
            self.ttl_seconds,
        )
        return state

    async def consume(self, state: Optional[str], provider: Provider) -> str:
        """Return the stored redirect path; raises if the state is unknown or for another provider."""
        if not state:
            raise AuthenticationError("oauth login failed")
        raw = await self.kv.getdel(self._key(state))
        if raw is None:
            logger.warning("oauth_state_unknown", provider=provider.value)
            raise AuthenticationError("oauth login failed")
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            raise AuthenticationError("oauth login failed")
        if not isinstance(data, dict) or data.get("provider") != provider.value:
            logger.warning("oauth_state_provider_mismatch", provider=provider.value)
            raise AuthenticationError("oauth login failed")
        return str(data.get("redirectTo") or "/")


class Authenticator:
    """Runs a login through the strategy for its provider tag.

    Every path ends the same way: resolve the profile to a user, create a
    session, hand back ``AuthResult``.
    """

    def __init__(
        self,
        resolver: IdentityResolver,
        sessions: SessionStore,
        strategies: Mapping[Provider, Strategy],
        oauth_states: OAuthStateStore,
    ) -> None:
        self.resolver = resolver
        self.sessions = sessions
        self.strategies: Dict[Provider, Strategy] = dict(strategies)
        self.oauth_states = oauth_states

    def strategy(self, provider: str | Provider) -> Strategy:
        try:
            tag = Provider(provider)
        except ValueError:
            raise ValidationError("unsupported login provider", detail={"provider": str(provider)})
        strategy = self.strategies.get(tag)
        if strategy is None:
            raise ValidationError("unsupported login provider", detail={"provider": tag.value})
        return strategy

    def _oauth_strategy(self, provider: str | Provider) -> OAuthStrategy:
        strategy = self.strategy(provider)
        if not isinstance(strategy, OAuthStrategy):
            raise ValidationError("provider does not use oauth", detail={"provider": str(provider)})
        if not strategy.is_configured:
            logger.warning("oauth_not_configured", provider=strategy.provider.value)
            raise ValidationError(
                "login provider is not configured", detail={"provider": strategy.provider.value}
            )
        return strategy

    async def start_code_login(self, email: str) -> None:
        strategy = self.strategy(Provider.CODE)
        if not isinstance(strategy, CodeStrategy):
            raise ValidationError("unsupported login provider", detail={"provider": "code"})
        await strategy.issue(email)

    async def start_oauth(self, provider: str | Provider, redirect_to: str = "/") -> str:
        strategy = self._oauth_strategy(provider)
        state = await self.oauth_states.issue(strategy.provider, redirect_to)
        return strategy.authorization_url(state)

    async def authenticate(
        self,
        provider: str | Provider,
        params: Mapping[str, str],
        metadata: Optional[SessionMetadata] = None,
    ) -> AuthResult:
        strategy = self.strategy(provider)
        profile = await strategy.verify(params)
        return await self._finish(profile, metadata)

    async def complete_oauth(
        self,
        provider: str | Provider,
        params: Mapping[str, str],
        metadata: Optional[SessionMetadata] = None,
    ) -> Tuple[AuthResult, str]:
        """Consume ``state``, then authenticate; returns the result and the stored redirect path."""
        strategy = self._oauth_strategy(provider)
        redirect_to = await self.oauth_states.consume(params.get("state"), strategy.provider)
        profile = await strategy.verify(params)
        return await self._finish(profile, metadata), redirect_to

    async def _finish(
        self, profile: AuthProfile, metadata: Optional[SessionMetadata]
    ) -> AuthResult:
        user_id = await self.resolver.resolve(profile)
        session_id = await self.sessions.create_session(user_id, metadata)
        logger.info(
            "auth_login_success",
            user_id=user_id,
            session_id=session_id,
            provider=Provider(profile.provider).value,
        )
        return AuthResult(user_id=user_id, session_id=session_id)
