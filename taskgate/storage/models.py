from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


def now_ms() -> int:
    return int(time.time() * 1000)


class Provider(str, Enum):
    CODE = "code"
    GOOGLE = "google"
    GITHUB = "github"

    @property
    def is_oauth(self) -> bool:
        return self is not Provider.CODE


class UserStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


@dataclass
class User:
    id: str
    email: str
    username: str
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    status: str = UserStatus.ACTIVE.value
    created_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE.value


@dataclass
class Account:
    user_id: str
    provider: str
    provider_account_id: str
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class SessionRecord:
    """One browser session as persisted in the key-value store.

    Timestamps are epoch milliseconds. ``expires_at`` is absolute and is
    checked on every read; store-level TTL eviction only backs it up.
    """

    user_id: str
    session_id: str
    created_at: int
    expires_at: int
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    country: Optional[str] = None

    _WIRE_NAMES = {
        "user_id": "userId",
        "session_id": "sessionId",
        "user_agent": "userAgent",
        "ip_address": "ipAddress",
        "country": "country",
        "created_at": "createdAt",
        "expires_at": "expiresAt",
    }

    def is_expired(self, at_ms: Optional[int] = None) -> bool:
        return self.expires_at <= (now_ms() if at_ms is None else at_ms)

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            wire: getattr(self, attr) for attr, wire in self._WIRE_NAMES.items()
        }
        return {key: value for key, value in payload.items() if value is not None}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionRecord":
        return cls(
            user_id=str(data["userId"]),
            session_id=str(data["sessionId"]),
            created_at=int(data["createdAt"]),
            expires_at=int(data["expiresAt"]),
            user_agent=data.get("userAgent"),
            ip_address=data.get("ipAddress"),
            country=data.get("country"),
        )


@dataclass(frozen=True)
class SessionClaim:
    """The (user, session) pair a cookie claims; not yet checked against the store."""

    user_id: str
    session_id: str


@dataclass
class AuthProfile:
    email: Optional[str]
    provider: Provider
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    provider_account_id: Optional[str] = None


@dataclass(frozen=True)
class AuthContext:
    session_id: str
    user: User

    @property
    def user_id(self) -> str:
        return self.user.id
