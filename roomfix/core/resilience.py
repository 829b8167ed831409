"""Retry policy for calls to rate-limited collaborators.

Only ``TransientInfraError`` is retried. Everything else (content policy,
validation, programming errors) propagates on the first attempt.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional, TypeVar

from roomfix.core.errors import TransientInfraError
from roomfix.utils.metrics import ai_retries_total

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ExponentialBackoff:
    """base * 2**(attempt-1) plus additive jitter, capped at ``max_delay``."""

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        jitter: float = 0.3,
        exponential_base: float = 2.0,
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.exponential_base = exponential_base

    def get_delay(self, attempt: int) -> float:
        delay = self.base_delay * (self.exponential_base ** (attempt - 1))
        if self.jitter > 0:
            delay += random.uniform(0, self.jitter)
        return min(delay, self.max_delay)


class RetryPolicy:
    def __init__(
        self,
        max_retries: int = 2,
        backoff: Optional[ExponentialBackoff] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.max_retries = max(0, int(max_retries))
        self.backoff = backoff or ExponentialBackoff()
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Any) -> "RetryPolicy":
        return cls(
            max_retries=settings.AI_MAX_RETRIES,
            backoff=ExponentialBackoff(
                base_delay=settings.AI_RETRY_BASE_DELAY,
                max_delay=settings.AI_RETRY_MAX_DELAY,
                jitter=settings.AI_RETRY_JITTER,
            ),
        )

    def delay_for(self, attempt: int, error: TransientInfraError) -> float:
        if error.retry_after is not None and error.retry_after > 0:
            return min(float(error.retry_after), self.backoff.max_delay)
        return self.backoff.get_delay(attempt)

    async def execute(
        self,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        operation: str = "call",
        **kwargs: Any,
    ) -> T:
        attempt = 0
        while True:
            try:
                return await func(*args, **kwargs)
            except TransientInfraError as e:
                attempt += 1
                if attempt > self.max_retries:
                    logger.warning(
                        "retry_exhausted",
                        extra={"stage": operation, "attempt": attempt, "error": str(e)},
                    )
                    raise
                delay = self.delay_for(attempt, e)
                ai_retries_total.labels(operation=operation).inc()
                logger.info(
                    "retry_scheduled",
                    extra={
                        "stage": operation,
                        "attempt": attempt,
                        "delay_seconds": round(delay, 3),
                        "error": str(e),
                    },
                )
                await self._sleep(delay)
