from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import Any, Callable, Optional
from urllib.parse import quote, unquote, urlsplit

from taskgate.logging import get_logger
from taskgate.service.cookies import SessionCookieCodec
from taskgate.service.sessions import SessionStore
from taskgate.storage.models import AuthContext

logger = get_logger(__name__)

PROTECTED_PREFIXES = ("/admin", "/account", "/todos")
GUEST_ONLY_PREFIXES = ("/auth/login",)

LOGIN_PATH = "/auth/login"
HOME_PATH = "/"


class RouteAccess(str, Enum):
    PROTECTED = "protected"
    GUEST_ONLY = "guest_only"
    PUBLIC = "public"


def _matches(path: str, prefix: str) -> bool:
    return path == prefix or path.startswith(prefix + "/")


def classify_route(path: str) -> RouteAccess:
    if any(_matches(path, prefix) for prefix in GUEST_ONLY_PREFIXES):
        return RouteAccess.GUEST_ONLY
    if any(_matches(path, prefix) for prefix in PROTECTED_PREFIXES):
        return RouteAccess.PROTECTED
    return RouteAccess.PUBLIC


def safe_redirect_path(value: Any, default: str = HOME_PATH) -> str:
    """Return ``value`` if it is a same-origin relative path, else ``default``."""
    if not value or not isinstance(value, str):
        return default
    candidate = value.strip()
    if (
        not candidate.startswith("/")
        or candidate.startswith("//")
        or candidate.startswith("/\\")
    ):
        return default
    # Browsers drop tabs/newlines, which can turn "/\t/host" into "//host"
    if any(ch.isspace() or ord(ch) < 0x20 or ch == "\\" for ch in candidate):
        return default
    parts = urlsplit(candidate)
    if parts.scheme or parts.netloc:
        return default
    if ".." in unquote(parts.path).split("/"):
        return default
    return candidate


def login_redirect_url(path: str, query: str = "") -> str:
    target = safe_redirect_path(path, HOME_PATH)
    if query and target == path:
        target = safe_redirect_path(f"{path}?{query}", path)
    return f"{LOGIN_PATH}?redirectTo={quote(target, safe='')}"


def guard_redirect(path: str, query: str, context: Optional[AuthContext]) -> Optional[str]:
    """Where to send this request instead, or None to let it through."""
    access = classify_route(path)
    if access is RouteAccess.PROTECTED and context is None:
        return login_redirect_url(path, query)
    if access is RouteAccess.GUEST_ONLY and context is not None:
        return HOME_PATH
    return None


class SessionValidator:
    """Turns a ``Cookie`` header into an ``AuthContext`` or None.

    A claim only counts when the session record is live, belongs to the
    claimed user, and that user is active. Anything else is None.
    """

    def __init__(
        self,
        codec: SessionCookieCodec,
        sessions: SessionStore,
        store: Any,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.codec = codec
        self.sessions = sessions
        self.store = store
        self._clock = clock

    async def validate(self, cookie_header: Optional[str]) -> Optional[AuthContext]:
        claim = self.codec.decode(cookie_header)
        if claim is None:
            return None
        user, record = await asyncio.gather(
            asyncio.to_thread(self.store.get_user, claim.user_id),
            self.sessions.get_session(claim.user_id, claim.session_id),
        )
        reason = None
        if user is None:
            reason = "user_missing"
        elif record is None:
            reason = "session_missing"
        elif not user.is_active:
            reason = "user_inactive"
        elif record.user_id != user.id or record.session_id != claim.session_id:
            reason = "session_mismatch"
        elif record.is_expired(int(self._clock() * 1000)):
            reason = "session_expired"
        if reason is not None:
            logger.info(
                "session_invalid",
                reason=reason,
                user_id=claim.user_id,
                session_id=claim.session_id,
            )
            return None
        return AuthContext(session_id=record.session_id, user=user)
