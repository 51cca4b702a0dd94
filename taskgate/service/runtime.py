from __future__ import annotations

import asyncio
import threading
from datetime import datetime
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from taskgate.config import get_settings, reset_settings_cache
from taskgate.logging import get_logger
from taskgate.service.accounts import AccountService
from taskgate.service.cookies import SessionCookieCodec
from taskgate.service.email import EmailService
from taskgate.service.guard import SessionValidator
from taskgate.service.identity import IdentityResolver
from taskgate.service.sessions import SessionStore
from taskgate.service.strategies import (
    Authenticator,
    CodeStrategy,
    GitHubStrategy,
    GoogleStrategy,
    OAuthStateStore,
)
from taskgate.storage.kv import KeyValueStore, MemoryKV
from taskgate.storage.memory import MemoryStore
from taskgate.storage.models import Provider
from taskgate.storage.postgres import PostgresStore
from taskgate.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        settings = self.settings
        logger.info(
            "runtime_init_started",
            use_memory_store=settings.use_memory_store,
            test_mode=settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore()
                if settings.use_memory_store
                else PostgresStore(settings.database_url, timeout=settings.store_timeout_seconds)
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if settings.redis_url:
            try:
                cache = RedisCache(
                    settings.redis_url, socket_timeout=settings.store_timeout_seconds
                )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not settings.test_mode and not settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for sessions, login codes, and rate limits; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error

            fallback_mode = "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; sessions, login codes "
                    "and rate limits are in-memory only."
                ),
                mode=fallback_mode,
            )

        self.kv: KeyValueStore = self.cache if self.cache is not None else MemoryKV()
        self.sessions = SessionStore(self.kv, ttl_seconds=settings.session_ttl_seconds)
        self.codec = SessionCookieCodec(
            settings.session_secrets,
            name=settings.session_cookie_name,
            max_age=settings.session_ttl_seconds,
            secure=settings.secure_cookies,
        )
        self.email = EmailService(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_url,
            dev_mode=not settings.is_production,
        )
        ttl_minutes = max(1, settings.login_code_ttl_seconds // 60)
        self.resolver = IdentityResolver(self.store)
        app_url = settings.app_url.rstrip("/")
        self.authenticator = Authenticator(
            self.resolver,
            self.sessions,
            {
                Provider.CODE: CodeStrategy(
                    self.kv,
                    lambda email, code: self.email.send_login_code(
                        email, code, ttl_minutes=ttl_minutes
                    ),
                    ttl_seconds=settings.login_code_ttl_seconds,
                    code_length=settings.login_code_length,
                ),
                Provider.GOOGLE: GoogleStrategy(
                    settings.oauth_google_client_id,
                    settings.oauth_google_client_secret,
                    f"{app_url}/auth/google/callback",
                ),
                Provider.GITHUB: GitHubStrategy(
                    settings.oauth_github_client_id,
                    settings.oauth_github_client_secret,
                    f"{app_url}/auth/github/callback",
                ),
            },
            OAuthStateStore(self.kv, ttl_seconds=settings.oauth_state_ttl_seconds),
        )
        self.validator = SessionValidator(self.codec, self.sessions, self.store)
        self.accounts = AccountService(self.store, self.sessions)

        self._local_rate_limits: Dict[str, Tuple[float, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            secure_cookies=self.codec.secure,
            session_ttl_seconds=settings.session_ttl_seconds,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            await asyncio.to_thread(self.store.close)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: a lock-free fast path once the runtime
    exists, and a locked re-check while creating it.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                asyncio.get_running_loop().create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket rate limit; Redis when available, in-process otherwise.

    Returns a bool, or ``(allowed, remaining, reset_seconds)`` when
    ``return_remaining`` is set. A non-positive ``limit`` disables the check.
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = datetime.utcnow()
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now)
        reset_seconds = int((cost - tokens) / refill_rate) + 1 if not allowed else 0
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed

