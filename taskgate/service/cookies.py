from __future__ import annotations

from http.cookies import SimpleCookie
from typing import Any, Optional, Sequence

from itsdangerous import BadData, URLSafeTimedSerializer
from starlette.requests import cookie_parser

from taskgate.config import DEFAULT_SESSION_TTL_SECONDS
from taskgate.logging import get_logger
from taskgate.storage.models import SessionClaim

logger = get_logger(__name__)

SESSION_COOKIE_NAME = "__auth-session"
_SALT = "taskgate.session-cookie"


class SessionCookieCodec:
    """Signs the (user, session) claim into the session cookie and back.

    Several secrets may be configured: new cookies are signed with the first,
    and a cookie signed by any of them still verifies, so a secret can be
    rotated without logging everyone out.
    """

    def __init__(
        self,
        secrets: Sequence[str],
        *,
        name: str = SESSION_COOKIE_NAME,
        max_age: int = DEFAULT_SESSION_TTL_SECONDS,
        secure: bool = False,
    ) -> None:
        if not secrets:
            raise ValueError("at least one cookie signing secret is required")
        self.name = name
        self.max_age = max_age
        self.secure = secure
        # itsdangerous signs with the last key and accepts any of them
        self._serializer = URLSafeTimedSerializer(
            secret_key=list(reversed(list(secrets))), salt=_SALT
        )

    def _header(self, value: str, max_age: int) -> str:
        cookie: SimpleCookie = SimpleCookie()
        cookie[self.name] = value
        morsel = cookie[self.name]
        morsel["path"] = "/"
        morsel["max-age"] = max_age
        morsel["httponly"] = True
        morsel["samesite"] = "lax"
        if self.secure:
            morsel["secure"] = True
        return cookie.output(header="").strip()

    def encode(self, claim: SessionClaim) -> str:
        """Return a ``Set-Cookie`` header value carrying ``claim``."""
        token = self._serializer.dumps(
            {"userId": claim.user_id, "sessionId": claim.session_id}
        )
        return self._header(token, self.max_age)

    def destroy(self) -> str:
        """Return a ``Set-Cookie`` header value that removes the cookie."""
        return self._header("", 0)

    def read_value(self, cookie_header: Optional[str]) -> Optional[str]:
        if not cookie_header:
            return None
        return cookie_parser(cookie_header).get(self.name) or None

    def decode(self, cookie_header: Optional[str]) -> Optional[SessionClaim]:
        """Parse a ``Cookie`` request header; None when absent, forged or stale."""
        token = self.read_value(cookie_header)
        if token is None:
            return None
        try:
            payload: Any = self._serializer.loads(token, max_age=self.max_age)
        except BadData:
            logger.info("session_cookie_rejected")
            return None
        if not isinstance(payload, dict):
            return None
        user_id = payload.get("userId")
        session_id = payload.get("sessionId")
        if not isinstance(user_id, str) or not isinstance(session_id, str):
            return None
        if not user_id or not session_id:
            return None
        return SessionClaim(user_id=user_id, session_id=session_id)
