"""Wires the core components from ``Settings``; every seam can be overridden."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from roomfix.core.ai import AIClient, HttpAIClient
from roomfix.core.analysis import AnalysisPipeline, ResourceService
from roomfix.core.config import Settings, get_settings
from roomfix.core.dedup import ContentDedupIndex
from roomfix.core.fixes import FixOrchestrator, FixPipeline
from roomfix.core.frames import FfmpegFrameExtractor, FrameExtractor
from roomfix.core.metering import MeteringLedger
from roomfix.core.queue import ArqJobQueue, InMemoryJobQueue, JobQueue
from roomfix.core.resilience import RetryPolicy
from roomfix.core.signatures import SignatureIndex
from roomfix.core.storage import LocalMediaStorage, MediaStorage
from roomfix.core.store import DurableStore, build_store
from roomfix.utils.background import BackgroundTasks
from roomfix.utils.cache import CacheHandle, build_cache

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    store: DurableStore
    cache: CacheHandle
    queue: JobQueue
    storage: MediaStorage
    background: BackgroundTasks
    ledger: MeteringLedger
    dedup: ContentDedupIndex
    signatures: SignatureIndex
    resources: ResourceService
    analysis: AnalysisPipeline
    fixes: FixOrchestrator
    fix_pipeline: FixPipeline

    async def close(self) -> None:
        await self.background.drain()
        for component in (self.queue, self.cache, self.store):
            close = getattr(component, "close", None)
            if close is None:
                continue
            try:
                await close()
            except Exception:
                logger.debug("service_close_failed", exc_info=True)


async def build_services(
    settings: Optional[Settings] = None,
    *,
    ai: Optional[AIClient] = None,
    extractor: Optional[FrameExtractor] = None,
    store: Optional[DurableStore] = None,
    cache: Optional[CacheHandle] = None,
    queue: Optional[JobQueue] = None,
    storage: Optional[MediaStorage] = None,
    retry: Optional[RetryPolicy] = None,
) -> Services:
    settings = settings or get_settings()
    store = store if store is not None else build_store(settings)
    cache = cache if cache is not None else await build_cache(settings)
    if queue is None:
        queue = (
            ArqJobQueue(settings.REDIS_URL, settings.QUEUE_NAME)
            if settings.REDIS_ENABLED
            else InMemoryJobQueue()
        )
    storage = storage or LocalMediaStorage(settings.MEDIA_STORAGE_DIR)
    ai = ai or HttpAIClient()
    extractor = extractor or FfmpegFrameExtractor()
    retry = retry or RetryPolicy.from_settings(settings)
    background = BackgroundTasks()

    ledger = MeteringLedger(store, cache, background, settings)
    dedup = ContentDedupIndex(store, storage, cache, background, settings)
    signatures = SignatureIndex(store, cache, background, settings)
    return Services(
        settings=settings,
        store=store,
        cache=cache,
        queue=queue,
        storage=storage,
        background=background,
        ledger=ledger,
        dedup=dedup,
        signatures=signatures,
        resources=ResourceService(
            store, dedup, signatures, ledger, storage, queue, cache, background
        ),
        analysis=AnalysisPipeline(store, dedup, ledger, ai, retry, storage, extractor, settings),
        fixes=FixOrchestrator(
            store, signatures, dedup, ledger, queue, storage, cache, background, settings
        ),
        fix_pipeline=FixPipeline(
            store, signatures, dedup, ledger, ai, retry, storage, cache, background, settings
        ),
    )
