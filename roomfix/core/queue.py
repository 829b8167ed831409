"""Job queue seam between the request path and the workers.

Messages carry only identifiers (``QueueMessage``); workers re-read the job
from the durable store so a stale or duplicated message is harmless.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional, Protocol

from arq import create_pool
from arq.connections import RedisSettings

from roomfix.core.errors import TransientInfraError
from roomfix.core.models import QueueMessage

logger = logging.getLogger(__name__)

FIX_FUNCTION = "run_fix_job"
ANALYSIS_FUNCTION = "run_analysis_job"


class JobQueue(Protocol):
    async def enqueue_fix(self, message: QueueMessage) -> None: ...

    async def enqueue_analysis(self, message: QueueMessage) -> None: ...


class ArqJobQueue:
    def __init__(self, redis_url: str, queue_name: str, pool: Optional[Any] = None) -> None:
        self.redis_url = redis_url
        self.queue_name = queue_name
        self._pool = pool

    async def _get_pool(self) -> Any:
        if self._pool is None:
            self._pool = await create_pool(RedisSettings.from_dsn(self.redis_url))
        return self._pool

    async def _enqueue(self, function: str, message: QueueMessage) -> None:
        try:
            pool = await self._get_pool()
            job = await pool.enqueue_job(
                function,
                message.job_id,
                message.resource_id,
                message.owner_id,
                _job_id=f"{function}:{message.job_id}",
                _queue_name=self.queue_name,
            )
        except Exception as e:
            raise TransientInfraError(f"Failed to enqueue {function}: {e}") from e
        if job is None:
            # arq dedups on _job_id; the earlier message will do the work.
            logger.info(
                "job_already_enqueued",
                extra={"fix_id": message.job_id, "resource_id": message.resource_id},
            )

    async def enqueue_fix(self, message: QueueMessage) -> None:
        await self._enqueue(FIX_FUNCTION, message)

    async def enqueue_analysis(self, message: QueueMessage) -> None:
        await self._enqueue(ANALYSIS_FUNCTION, message)

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.aclose()


class InMemoryJobQueue:
    """Records messages; callers (tests, local runs) drive the workers."""

    def __init__(self) -> None:
        self.fix_messages: List[QueueMessage] = []
        self.analysis_messages: List[QueueMessage] = []
        self.fail_next: bool = False

    def _check(self) -> None:
        if self.fail_next:
            self.fail_next = False
            raise TransientInfraError("queue unavailable")

    async def enqueue_fix(self, message: QueueMessage) -> None:
        self._check()
        self.fix_messages.append(message)

    async def enqueue_analysis(self, message: QueueMessage) -> None:
        self._check()
        self.analysis_messages.append(message)
