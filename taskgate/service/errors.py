from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class MissingEmailError(ValidationError):
    """The identity provider did not return an email address."""

    def __init__(self, message: str = "no email address was provided by the login provider", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InactiveUserError(AuthenticationError):
    """Matched user is disabled.

    Worded like any other login failure so probing an address does not
    reveal whether it belongs to a disabled account.
    """

    def __init__(self, message: str = "login failed", **kwargs) -> None:
        super().__init__(message, **kwargs)


class LoginFailedError(ServerError):
    """User/account creation failed; the underlying cause is only logged."""

    def __init__(self, message: str = "Login failed, please try again", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidOrExpiredCodeError(AuthenticationError):
    """One-time code mismatch, expiry or reuse; all share one message."""

    def __init__(self, message: str = "invalid or expired code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SessionInvalidError(AuthenticationError):
    """No live session backs the request."""

    def __init__(self, message: str = "session invalid", **kwargs) -> None:
        super().__init__(message, **kwargs)


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "MissingEmailError",
    "InactiveUserError",
    "LoginFailedError",
    "InvalidOrExpiredCodeError",
    "SessionInvalidError",
]
