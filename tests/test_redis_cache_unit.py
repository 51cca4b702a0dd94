"""RedisCache behaviour against a stand-in client; no Redis server needed."""

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from taskgate.storage.errors import StoreUnavailable
from taskgate.storage.redis_cache import RedisCache


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the cache wrapper."""

    def __init__(self):
        self.data = {}
        self.expiry = {}

    async def get(self, key):
        return self.data.get(key)

    async def mget(self, keys):
        return [self.data.get(key) for key in keys]

    async def set(self, key, value, ex=None):
        self.data[key] = value
        self.expiry[key] = ex
        return True

    async def delete(self, *keys):
        return sum(1 for key in keys if self.data.pop(key, None) is not None)

    async def getdel(self, key):
        return self.data.pop(key, None)

    async def scan_iter(self, match=None, count=None):
        prefix = match.rstrip("*")
        for key in list(self.data):
            if key.startswith(prefix):
                yield key

    async def ping(self):
        return True


class DownRedis(FakeRedis):
    async def get(self, key):
        raise RedisConnectionError("connection refused")

    async def set(self, key, value, ex=None):
        raise RedisConnectionError("connection refused")

    async def scan_iter(self, match=None, count=None):
        raise RedisConnectionError("connection refused")
        yield  # pragma: no cover


def _cache(client) -> RedisCache:
    cache: RedisCache = RedisCache.__new__(RedisCache)
    cache.client = client
    cache.redis_url = "redis://fake"
    cache.socket_timeout = 1.0
    return cache


class TestRedisCache:
    async def test_set_floors_ttl(self):
        client = FakeRedis()
        cache = _cache(client)
        await cache.set("k", "v", 0)
        assert client.expiry["k"] == 1
        assert await cache.get("k") == "v"

    async def test_keys_by_prefix(self):
        cache = _cache(FakeRedis())
        await cache.set("session:u1:a", "1", 60)
        await cache.set("session:u1:b", "1", 60)
        await cache.set("session:u2:c", "1", 60)
        assert sorted(await cache.keys("session:u1:")) == ["session:u1:a", "session:u1:b"]

    async def test_getdel_and_delete(self):
        cache = _cache(FakeRedis())
        await cache.set("a", "1", 60)
        await cache.set("b", "2", 60)
        assert await cache.getdel("a") == "1"
        assert await cache.getdel("a") is None
        assert await cache.delete("b", "missing") == 1
        assert await cache.delete() == 0
        assert await cache.mget([]) == []

    async def test_errors_become_store_unavailable(self):
        cache = _cache(DownRedis())
        with pytest.raises(StoreUnavailable) as excinfo:
            await cache.get("k")
        assert excinfo.value.backend == "redis"
        with pytest.raises(StoreUnavailable):
            await cache.set("k", "v", 10)
        with pytest.raises(StoreUnavailable):
            await cache.keys("session:")

    def test_rate_keys_are_hashed(self):
        key = RedisCache._normalize_rate_key("login:email:ada@example.com")
        assert key.startswith("rate:")
        assert "ada" not in key
