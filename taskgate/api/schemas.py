from __future__ import annotations

import re
import unicodedata
from datetime import datetime, timezone
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from taskgate.service.guard import safe_redirect_path

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "service_unavailable",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after dropping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


_CODE_PATTERN = re.compile(r"^[A-Za-z0-9]{4,12}$")


class LoginRequest(BaseModel):
    intent: Literal["code", "google", "github"] = "code"
    email: Optional[str] = None
    redirect_to: Optional[str] = Field(default=None, max_length=2048)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _validate_email(value)

    @field_validator("redirect_to")
    @classmethod
    def _sanitize_redirect(cls, value: Optional[str]) -> str:
        return safe_redirect_path(value)


class VerifyCodeRequest(BaseModel):
    email: str
    code: str = Field(..., max_length=12)
    redirect_to: Optional[str] = Field(default=None, max_length=2048)

    @field_validator("email")
    @classmethod
    def _validate_verify_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("code")
    @classmethod
    def _validate_code(cls, value: str) -> str:
        value = value.strip()
        if not _CODE_PATTERN.match(value):
            raise ValueError("code must be alphanumeric")
        return value.upper()

    @field_validator("redirect_to")
    @classmethod
    def _sanitize_redirect(cls, value: Optional[str]) -> str:
        return safe_redirect_path(value)


class DeleteAccountRequest(BaseModel):
    confirm_email: str = Field(..., max_length=254)


class LoginStartedResponse(BaseModel):
    intent: str
    authorization_url: Optional[str] = None


class AuthResponse(BaseModel):
    user_id: str
    session_id: str
    redirect_to: str = "/"


def _from_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


class UserResponse(BaseModel):
    id: str
    email: str
    username: str
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_user(cls, user) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            username=user.username,
            display_name=user.display_name,
            avatar_url=user.avatar_url,
            created_at=user.created_at,
        )


class SessionResponse(BaseModel):
    id: str
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    country: Optional[str] = None
    created_at: datetime
    expires_at: datetime
    is_current: bool = False

    @classmethod
    def from_view(cls, view) -> "SessionResponse":
        record = view.record
        return cls(
            id=record.session_id,
            user_agent=record.user_agent,
            ip_address=record.ip_address,
            country=record.country,
            created_at=_from_ms(record.created_at),
            expires_at=_from_ms(record.expires_at),
            is_current=view.is_current,
        )


class MeResponse(BaseModel):
    authenticated: bool
    session_id: Optional[str] = None
    user: Optional[UserResponse] = None


class AccountResponse(BaseModel):
    user: UserResponse
    providers: List[str] = Field(default_factory=list)
    sessions: List[SessionResponse] = Field(default_factory=list)


class SignedOutResponse(BaseModel):
    signed_out: int
