from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.responses import RedirectResponse

from taskgate.api.error_handling import register_exception_handlers, store_unavailable_response
from taskgate.api.routes import router
from taskgate.logging import get_logger, set_correlation_id
from taskgate.service.guard import guard_redirect
from taskgate.service.runtime import get_runtime
from taskgate.storage.errors import StoreUnavailable

logger = get_logger(__name__)

__version__ = "0.1.0"

_UNGUARDED_PATHS = frozenset({"/healthz"})


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release its connections on shutdown."""
    get_runtime()
    yield
    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Taskgate", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def authenticate_session(request: Request, call_next):
    """Resolve the session cookie and apply route guards.

    The resolved identity lands on ``request.state.auth``. A cookie that
    was presented but no longer resolves is cleared on the way out,
    unless the handler already set the cookie itself.
    """
    if request.url.path in _UNGUARDED_PATHS:
        return await call_next(request)

    runtime = get_runtime()
    cookie_header = request.headers.get("cookie")
    try:
        context = await runtime.validator.validate(cookie_header)
    except StoreUnavailable as exc:
        logger.error(
            "store_unavailable",
            path=request.url.path,
            method=request.method,
            backend=exc.backend,
        )
        return store_unavailable_response(exc)

    request.state.auth = context
    stale_cookie = context is None and runtime.codec.read_value(cookie_header) is not None

    target = guard_redirect(request.url.path, request.url.query, context)
    if target is not None:
        logger.info("route_guard_redirect", path=request.url.path, location=target)
        response = RedirectResponse(target, status_code=302)
    else:
        response = await call_next(request)

    if stale_cookie:
        prefix = f"{runtime.codec.name}="
        handled = any(
            value.startswith(prefix) for value in response.headers.getlist("set-cookie")
        )
        if not handled:
            response.headers.append("set-cookie", runtime.codec.destroy())
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # Auth responses carry session state and must never be cached
    response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    response.headers.setdefault(
        "Permissions-Policy", "camera=(), microphone=(), geolocation=(), payment=()"
    )
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag logs with the caller's X-Request-ID (or a fresh one) and echo it back."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report store and session-cache reachability."""
    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, awaitable) -> bool:
        try:
            await asyncio.wait_for(awaitable, HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error(f"health_check_{label}_failed", error=str(exc))
        return False

    db_ok = await _run_bounded("database", asyncio.to_thread(runtime.store.ping))
    checks["database"] = {
        "status": "healthy" if db_ok else "unhealthy",
        "type": type(runtime.store).__name__,
    }

    kv_ok = await _run_bounded("sessions", runtime.kv.ping())
    checks["sessions"] = {
        "status": "healthy" if kv_ok else "unhealthy",
        "type": "redis" if runtime.cache is not None else "memory",
    }

    return {
        "status": "healthy" if db_ok and kv_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
