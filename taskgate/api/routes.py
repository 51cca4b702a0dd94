from __future__ import annotations

import asyncio
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Request, Response
from fastapi.responses import RedirectResponse

from taskgate.api.schemas import (
    AccountResponse,
    AuthResponse,
    DeleteAccountRequest,
    Envelope,
    LoginRequest,
    LoginStartedResponse,
    MeResponse,
    SessionResponse,
    SignedOutResponse,
    UserResponse,
    VerifyCodeRequest,
)
from taskgate.logging import get_logger
from taskgate.service.errors import ServiceError, SessionInvalidError, ValidationError
from taskgate.service.guard import LOGIN_PATH, safe_redirect_path
from taskgate.service.runtime import Runtime, check_rate_limit, get_runtime
from taskgate.service.sessions import SessionMetadata
from taskgate.storage.models import AuthContext, Provider, SessionClaim

logger = get_logger(__name__)

router = APIRouter()


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[dict] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": str(self.reset_seconds),
        }

    def apply_headers(self, response: Response) -> None:
        response.headers.update(self.headers())


async def _enforce_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    response: Optional[Response] = None,
) -> RateLimitInfo:
    """Consume one token for ``key``; raises a 429 envelope when exhausted."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds or window_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key, limit=limit)
        headers = {**info.headers(), "Retry-After": str(info.reset_seconds)}
        raise _http_error("rate_limited", "rate limit exceeded", status_code=429, headers=headers)
    return info


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("cf-connecting-ip")
    if forwarded:
        return forwarded
    return request.client.host if request.client else "unknown"


def _session_metadata(request: Request) -> SessionMetadata:
    return SessionMetadata.from_headers(request.headers)


def _set_session_cookie(response: Response, runtime: Runtime, claim: SessionClaim) -> None:
    response.headers.append("set-cookie", runtime.codec.encode(claim))


def _clear_session_cookie(response: Response, runtime: Runtime) -> None:
    response.headers.append("set-cookie", runtime.codec.destroy())


def get_optional_auth(request: Request) -> Optional[AuthContext]:
    """Identity resolved by the session middleware, if any."""
    return getattr(request.state, "auth", None)


def get_current_auth(context: Optional[AuthContext] = Depends(get_optional_auth)) -> AuthContext:
    if context is None:
        raise SessionInvalidError()
    return context


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Start a login.

    ``intent=code`` emails a one-time code (202). ``intent=google`` or
    ``intent=github`` returns the provider's authorization URL.
    """
    runtime = get_runtime()
    settings = runtime.settings
    await _enforce_rate_limit(
        runtime,
        f"login:ip:{_client_ip(request)}",
        settings.login_rate_limit_per_minute,
        60,
    )
    if body.intent == Provider.CODE.value:
        if not body.email:
            raise ValidationError("email is required", detail={"field": "email"})
        await _enforce_rate_limit(
            runtime,
            f"login:email:{body.email}",
            settings.login_rate_limit_per_minute,
            60,
            response=response,
        )
        await runtime.authenticator.start_code_login(body.email)
        response.status_code = 202
        return Envelope(status="ok", data=LoginStartedResponse(intent=body.intent))

    await _enforce_rate_limit(
        runtime,
        f"oauth:start:{body.intent}:{_client_ip(request)}",
        settings.oauth_rate_limit_per_minute,
        60,
    )
    url = await runtime.authenticator.start_oauth(body.intent, body.redirect_to or "/")
    return Envelope(
        status="ok",
        data=LoginStartedResponse(intent=body.intent, authorization_url=url),
    )


@router.post("/auth/verify", response_model=Envelope, tags=["auth"])
async def verify_code(body: VerifyCodeRequest, request: Request, response: Response):
    """Exchange an emailed code for a session cookie."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"verify:{body.email}",
        runtime.settings.verify_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await runtime.authenticator.authenticate(
        Provider.CODE,
        {"email": body.email, "code": body.code},
        _session_metadata(request),
    )
    _set_session_cookie(
        response, runtime, SessionClaim(user_id=result.user_id, session_id=result.session_id)
    )
    return Envelope(
        status="ok",
        data=AuthResponse(
            user_id=result.user_id,
            session_id=result.session_id,
            redirect_to=body.redirect_to or "/",
        ),
    )


@router.get("/auth/{provider}/callback", tags=["auth"])
async def oauth_callback(
    request: Request,
    provider: str = Path(..., pattern="^(google|github)$"),
    code: Optional[str] = Query(default=None, max_length=2048),
    state: Optional[str] = Query(default=None, max_length=256),
    error: Optional[str] = Query(default=None, max_length=256),
):
    """Finish an OAuth login and redirect to the path stored with ``state``.

    Login failures redirect back to the login page with an error code;
    storage outages still surface as 503.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"oauth:callback:{_client_ip(request)}",
        runtime.settings.oauth_rate_limit_per_minute,
        60,
    )
    try:
        if error:
            raise ServiceError("oauth provider returned an error", status_code=401, error_code="unauthorized")
        result, redirect_to = await runtime.authenticator.complete_oauth(
            provider,
            {"code": code or "", "state": state or ""},
            _session_metadata(request),
        )
    except ServiceError as exc:
        logger.warning(
            "auth_login_error",
            provider=provider,
            error_code=exc.error_code,
            message=exc.message,
        )
        return RedirectResponse(
            f"{LOGIN_PATH}?error={quote(exc.error_code, safe='')}", status_code=302
        )
    response = RedirectResponse(safe_redirect_path(redirect_to), status_code=302)
    _set_session_cookie(
        response, runtime, SessionClaim(user_id=result.user_id, session_id=result.session_id)
    )
    return response


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, response: Response):
    runtime = get_runtime()
    claim = runtime.codec.decode(request.headers.get("cookie"))
    await runtime.accounts.logout(claim)
    _clear_session_cookie(response, runtime)
    return Envelope(status="ok", data={"logged_out": True, "redirect_to": LOGIN_PATH})


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(context: Optional[AuthContext] = Depends(get_optional_auth)):
    if context is None:
        return Envelope(status="ok", data=MeResponse(authenticated=False))
    return Envelope(
        status="ok",
        data=MeResponse(
            authenticated=True,
            session_id=context.session_id,
            user=UserResponse.from_user(context.user),
        ),
    )


@router.get("/account", response_model=Envelope, tags=["account"])
async def get_account(context: AuthContext = Depends(get_current_auth)):
    runtime = get_runtime()
    sessions, accounts = await asyncio.gather(
        runtime.accounts.list_sessions(context),
        asyncio.to_thread(runtime.store.list_accounts, context.user_id),
    )
    return Envelope(
        status="ok",
        data=AccountResponse(
            user=UserResponse.from_user(context.user),
            providers=sorted(account.provider for account in accounts),
            sessions=[SessionResponse.from_view(view) for view in sessions],
        ),
    )


@router.delete("/account/sessions/{session_id}", response_model=Envelope, tags=["account"])
async def sign_out_session(
    session_id: str = Path(..., max_length=64),
    context: AuthContext = Depends(get_current_auth),
):
    runtime = get_runtime()
    await runtime.accounts.sign_out_session(context, session_id)
    return Envelope(status="ok", data=SignedOutResponse(signed_out=1))


@router.post("/account/sessions/sign-out-others", response_model=Envelope, tags=["account"])
async def sign_out_other_sessions(context: AuthContext = Depends(get_current_auth)):
    runtime = get_runtime()
    removed = await runtime.accounts.sign_out_other_sessions(context)
    return Envelope(status="ok", data=SignedOutResponse(signed_out=removed))


@router.delete("/account", response_model=Envelope, tags=["account"])
async def delete_account(
    body: DeleteAccountRequest,
    response: Response,
    context: AuthContext = Depends(get_current_auth),
):
    runtime = get_runtime()
    await runtime.accounts.delete_account(context, body.confirm_email)
    _clear_session_cookie(response, runtime)
    return Envelope(status="ok", data={"deleted": True, "redirect_to": LOGIN_PATH})
