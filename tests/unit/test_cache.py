"""Cache handles must never raise and must stop hammering a dead backend."""

from __future__ import annotations

from typing import Any, Dict, Optional

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from roomfix.core.config import Settings
from roomfix.utils.cache import CacheKeys, NullCache, RedisCache, build_cache


class _FakeRedis:
    """Minimal async stub; ``down`` makes every call fail like a dead server."""

    def __init__(self, down: bool = False) -> None:
        self.down = down
        self.data: Dict[str, str] = {}
        self.calls = 0

    def _check(self) -> None:
        self.calls += 1
        if self.down:
            raise RedisConnectionError("connection refused")

    async def ping(self) -> bool:
        self._check()
        return True

    async def get(self, key: str) -> Optional[str]:
        self._check()
        return self.data.get(key)

    async def set(self, key: str, value: str, ex: Any = None) -> bool:
        self._check()
        self.data[key] = value
        return True

    async def delete(self, *keys: str) -> int:
        self._check()
        return sum(1 for k in keys if self.data.pop(k, None) is not None)


@pytest.mark.asyncio
async def test_null_cache_is_always_absent() -> None:
    cache = NullCache()
    assert not cache.available
    assert await cache.set("k", {"a": 1}, 60) is False
    assert await cache.get("k") is None
    assert await cache.delete("k") is False


@pytest.mark.asyncio
async def test_round_trips_json_values() -> None:
    cache = RedisCache(_FakeRedis())
    assert await cache.connect()
    assert await cache.set("k", {"score": 91, "ids": ["a"]}, 60)
    assert await cache.get("k") == {"score": 91, "ids": ["a"]}
    assert await cache.delete("k")
    assert await cache.get("k") is None


@pytest.mark.asyncio
async def test_connect_gives_up_after_capped_attempts() -> None:
    client = _FakeRedis(down=True)
    cache = RedisCache(client, max_connect_attempts=3, backoff_step=0.0)

    assert not await cache.connect()
    assert client.calls == 3
    assert not cache.available
    assert await cache.get("k") is None
    assert client.calls == 3


@pytest.mark.asyncio
async def test_runtime_failures_degrade_silently_then_disable() -> None:
    client = _FakeRedis()
    cache = RedisCache(client, max_connect_attempts=2, backoff_step=0.0)
    assert await cache.connect()

    client.down = True
    assert await cache.get("k") is None
    assert await cache.set("k", 1, 60) is False
    assert not cache.available

    calls = client.calls
    assert await cache.delete("k") is False
    assert client.calls == calls


@pytest.mark.asyncio
async def test_build_cache_disabled_returns_null_cache() -> None:
    cache = await build_cache(Settings(REDIS_ENABLED=False))
    assert isinstance(cache, NullCache)


def test_key_layout() -> None:
    assert CacheKeys.content_hash("o1", "abc") == "ihash:o1:abc"
    assert CacheKeys.analysis("res_1") == "analysis:res_1"
    assert CacheKeys.fix_result("fix_1") == "fix:fix_1"
    assert CacheKeys.signature("res_1", "sig") == "fixsig:res_1:sig"
    assert CacheKeys.account("o1") == "account:o1"
