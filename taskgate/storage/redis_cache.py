from __future__ import annotations

import hashlib
import time
from typing import Any, Awaitable, List, Optional, Sequence, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from taskgate.logging import get_logger, sanitize_error_message
from taskgate.storage.errors import StoreUnavailable

logger = get_logger(__name__)


class RedisCache:
    """Redis-backed ``KeyValueStore`` plus the shared rate limiter.

    Every Redis failure, timeouts included, is raised as ``StoreUnavailable``.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic token bucket refill + consume
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

    _GETDEL_FALLBACK_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
    redis.call('DEL', KEYS[1])
end
return value
"""

    # Keys per SCAN round trip
    SCAN_COUNT = 100

    def __init__(
        self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT
    ):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async one is not bound to a throwaway loop
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def _run(self, op: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await awaitable
        except RedisError as exc:
            logger.error(
                "redis_operation_failed",
                op=op,
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            raise StoreUnavailable(backend="redis") from exc

    @staticmethod
    def _ttl_seconds(ttl_seconds: Union[int, float]) -> int:
        # Redis rejects zero or negative expirations
        return max(1, int(ttl_seconds))

    async def get(self, key: str) -> Optional[str]:
        return await self._run("get", self.client.get(key))

    async def mget(self, keys: Sequence[str]) -> List[Optional[str]]:
        if not keys:
            return []
        return await self._run("mget", self.client.mget(list(keys)))

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._run("set", self.client.set(key, value, ex=self._ttl_seconds(ttl_seconds)))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._run("delete", self.client.delete(*keys)))

    async def getdel(self, key: str) -> Optional[str]:
        """Atomically read and remove ``key``.

        Uses GETDEL (Redis 6.2+) and falls back to a Lua script on clients
        that predate it, so two concurrent consumers never both see a value.
        """
        try:
            getdel = self.client.getdel
        except AttributeError:
            return await self._run(
                "getdel", self.client.eval(self._GETDEL_FALLBACK_SCRIPT, 1, key)
            )
        return await self._run("getdel", getdel(key))

    async def keys(self, prefix: str) -> List[str]:
        async def _scan() -> List[str]:
            found = []
            async for key in self.client.scan_iter(match=f"{prefix}*", count=self.SCAN_COUNT):
                found.append(key)
            return found

        return await self._run("scan", _scan())

    async def ping(self) -> bool:
        return bool(await self._run("ping", self.client.ping()))

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate keys so user-supplied parts cannot collide on delimiters."""
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Check rate limit using the Redis-backed token bucket."""

        safe_key = self._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._run(
            "rate_limit",
            self._token_bucket(
                keys=[safe_key],
                args=[time.time(), refill_rate, limit, max(1, cost)],
            ),
        )

        allowed_bool = bool(int(allowed))
        remaining = max(0, int(float(tokens)))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
