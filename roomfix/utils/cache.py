"""Best-effort JSON cache in front of the durable store.

Components receive a ``CacheHandle`` through their constructor. ``RedisCache``
talks to Redis; ``NullCache`` is used when caching is disabled or the backend
never came up. Neither raises: reads degrade to ``None`` and writes to
``False``, so callers always fall back to the durable store.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Optional, Protocol

import redis.asyncio as redis

from roomfix.core.config import Settings
from roomfix.utils.metrics import cache_available, cache_operations_total

logger = logging.getLogger(__name__)


class CacheHandle(Protocol):
    @property
    def available(self) -> bool: ...

    async def get(self, key: str) -> Optional[Any]: ...

    async def set(self, key: str, value: Any, ttl_seconds: int) -> bool: ...

    async def delete(self, *keys: str) -> bool: ...


class NullCache:
    """Cache that stores nothing."""

    @property
    def available(self) -> bool:
        return False

    async def get(self, key: str) -> Optional[Any]:
        cache_operations_total.labels(operation="get", result="disabled").inc()
        return None

    async def set(self, key: str, value: Any, ttl_seconds: int) -> bool:
        cache_operations_total.labels(operation="set", result="disabled").inc()
        return False

    async def delete(self, *keys: str) -> bool:
        return False


class RedisCache:
    """Redis-backed cache with a hard cap on connection attempts.

    ``connect()`` pings up to ``max_connect_attempts`` times with a short
    linear backoff. Connection errors seen at runtime count against the same
    cap; once it is exhausted the client is dropped and every call behaves
    like ``NullCache`` for the life of the process.
    """

    def __init__(
        self,
        client: Optional[Any],
        *,
        max_connect_attempts: int = 3,
        backoff_step: float = 0.5,
        backoff_cap: float = 2.0,
    ) -> None:
        self._client = client
        self._max_attempts = max(1, int(max_connect_attempts))
        self._backoff_step = backoff_step
        self._backoff_cap = backoff_cap
        self._failures = 0
        self._given_up = client is None

    @classmethod
    def from_url(
        cls, url: str, *, socket_timeout: float = 1.0, max_connect_attempts: int = 3
    ) -> "RedisCache":
        client = redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client, max_connect_attempts=max_connect_attempts)

    @property
    def available(self) -> bool:
        return self._client is not None and not self._given_up

    async def connect(self) -> bool:
        if self._client is None:
            return False
        for attempt in range(1, self._max_attempts + 1):
            try:
                await self._client.ping()
                self._failures = 0
                self._given_up = False
                cache_available.set(1)
                logger.info("cache_connected", extra={"attempt": attempt})
                return True
            except Exception as e:
                logger.warning(
                    "cache_connect_failed", extra={"attempt": attempt, "error": str(e)}
                )
                if attempt < self._max_attempts:
                    await asyncio.sleep(min(attempt * self._backoff_step, self._backoff_cap))
        self._give_up()
        return False

    def _give_up(self) -> None:
        if not self._given_up:
            logger.warning("cache_disabled", extra={"attempt": self._failures})
        self._given_up = True
        cache_available.set(0)

    def _record_failure(self, operation: str, exc: Exception) -> None:
        cache_operations_total.labels(operation=operation, result="error").inc()
        logger.debug("cache_operation_failed", extra={"stage": operation, "error": str(exc)})
        if isinstance(exc, (redis.ConnectionError, redis.TimeoutError, OSError)):
            self._failures += 1
            if self._failures >= self._max_attempts:
                self._give_up()

    async def get(self, key: str) -> Optional[Any]:
        if not self.available:
            cache_operations_total.labels(operation="get", result="disabled").inc()
            return None
        try:
            raw = await self._client.get(key)
        except Exception as e:
            self._record_failure("get", e)
            return None
        self._failures = 0
        if raw is None:
            cache_operations_total.labels(operation="get", result="miss").inc()
            return None
        try:
            value = json.loads(raw)
        except ValueError:
            cache_operations_total.labels(operation="get", result="error").inc()
            return None
        cache_operations_total.labels(operation="get", result="hit").inc()
        return value

    async def set(self, key: str, value: Any, ttl_seconds: int) -> bool:
        if not self.available:
            cache_operations_total.labels(operation="set", result="disabled").inc()
            return False
        try:
            await self._client.set(key, json.dumps(value, default=str), ex=max(1, int(ttl_seconds)))
        except Exception as e:
            self._record_failure("set", e)
            return False
        self._failures = 0
        cache_operations_total.labels(operation="set", result="ok").inc()
        return True

    async def delete(self, *keys: str) -> bool:
        if not keys or not self.available:
            return False
        try:
            await self._client.delete(*keys)
        except Exception as e:
            self._record_failure("delete", e)
            return False
        cache_operations_total.labels(operation="delete", result="ok").inc()
        return True

    async def close(self) -> None:
        if self._client is not None:
            try:
                await self._client.aclose()
            except Exception:
                logger.debug("cache_close_failed", exc_info=True)


async def build_cache(settings: Settings) -> CacheHandle:
    if not settings.REDIS_ENABLED:
        cache_available.set(0)
        return NullCache()
    cache = RedisCache.from_url(
        settings.REDIS_URL,
        socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
        max_connect_attempts=settings.REDIS_MAX_CONNECT_ATTEMPTS,
    )
    if not await cache.connect():
        return NullCache()
    return cache


class CacheKeys:
    """Key layout shared by every component that touches the cache."""

    @staticmethod
    def content_hash(owner_id: str, digest: str) -> str:
        return f"ihash:{owner_id}:{digest}"

    @staticmethod
    def analysis(resource_id: str) -> str:
        return f"analysis:{resource_id}"

    @staticmethod
    def fix_result(fix_id: str) -> str:
        return f"fix:{fix_id}"

    @staticmethod
    def signature(resource_id: str, signature: str) -> str:
        return f"fixsig:{resource_id}:{signature}"

    @staticmethod
    def account(owner_id: str) -> str:
        return f"account:{owner_id}"
