from __future__ import annotations

import threading
import time
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple


class KeyValueStore(Protocol):
    """Async string key-value store with per-key TTL.

    ``RedisCache`` is the production implementation; ``MemoryKV`` stands in
    for it in tests and when Redis is unavailable in development.
    """

    async def get(self, key: str) -> Optional[str]: ...

    async def mget(self, keys: Sequence[str]) -> List[Optional[str]]: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete(self, *keys: str) -> int: ...

    async def getdel(self, key: str) -> Optional[str]: ...

    async def keys(self, prefix: str) -> List[str]: ...


class MemoryKV:
    """In-process ``KeyValueStore`` with absolute per-key expiry."""

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._data: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.RLock()

    def _live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            self._data.pop(key, None)
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key)

    async def mget(self, keys: Sequence[str]) -> List[Optional[str]]:
        with self._lock:
            return [self._live(key) for key in keys]

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        ttl = max(1, int(ttl_seconds))
        with self._lock:
            self._data[key] = (value, self._clock() + ttl)

    async def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._live(key) is not None:
                    removed += 1
                self._data.pop(key, None)
        return removed

    async def getdel(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._live(key)
            self._data.pop(key, None)
            return value

    async def keys(self, prefix: str) -> List[str]:
        with self._lock:
            return [key for key in list(self._data) if key.startswith(prefix) and self._live(key) is not None]

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._lock:
            self._data.clear()
