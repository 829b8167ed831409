"""Resource ingest and the analysis state machines.

``ResourceService`` is the synchronous side: it meters the upload, checks the
dedup index, stores the media, and either copies an existing analysis or
queues a fresh one. ``AnalysisPipeline`` is the worker side. Every stage
transition is persisted before the stage runs:

- image: ``queued -> moderating -> analyzing -> completed | failed``
- video: ``queued -> extracting -> moderating -> analyzing -> aggregating
  -> completed | failed``

Video analysis samples the clip twice. A coarse uniform pass gives
moderation whole-video coverage; after the AI call, a targeted pass pulls
real frames only at the timestamps the analysis flagged.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional, Sequence, Tuple

from roomfix.core.ai import AIClient, Media, ensure_safe
from roomfix.core.config import Settings
from roomfix.core.dedup import ContentDedupIndex, content_hash
from roomfix.core.errors import (
    ContentPolicyViolation,
    ForbiddenError,
    NotFoundError,
    RoomfixError,
    TransientInfraError,
    ValidationError,
)
from roomfix.core.frames import (
    FrameExtractor,
    collapse_timestamps,
    nearest_index,
    plan_problem_timestamps,
    plan_uniform_timestamps,
)
from roomfix.core.metering import MeteringLedger, transaction_type_for
from roomfix.core.models import (
    SEVERITY_POINTS,
    Analysis,
    AnalysisDraft,
    AnalysisStatus,
    CostBucket,
    CostSummary,
    FrameCapture,
    MediaKind,
    QueueMessage,
    Resource,
    new_id,
    utcnow,
)
from roomfix.core.queue import JobQueue
from roomfix.core.resilience import RetryPolicy
from roomfix.core.signatures import SignatureIndex
from roomfix.core.storage import MediaStorage, extension_for, media_prefix
from roomfix.core.store import DurableStore
from roomfix.utils.background import BackgroundTasks
from roomfix.utils.cache import CacheHandle, CacheKeys
from roomfix.utils.metrics import jobs_finished_total, stage_duration_seconds

logger = logging.getLogger(__name__)


def parse_cost_estimate(estimate: str) -> Tuple[int, int]:
    """``"$50-100"`` -> (50, 100); ``"$200"`` -> (200, 200); non-numeric -> (0, 0)."""
    numbers = re.findall(r"\d+", (estimate or "").replace(",", ""))
    if not numbers:
        return 0, 0
    low = int(numbers[0])
    high = int(numbers[1]) if len(numbers) > 1 else low
    return low, high


def summarize_costs(analysis: Analysis) -> CostSummary:
    summary = CostSummary(
        by_difficulty={d: CostBucket() for d in ("easy", "medium", "hard")},
        by_dimension={},
    )
    for ref in analysis.problem_refs():
        low, high = parse_cost_estimate(ref.solution.cost_estimate)
        buckets = [
            summary.by_difficulty.setdefault(ref.solution.difficulty, CostBucket()),
            summary.by_dimension.setdefault(ref.dimension, CostBucket()),
        ]
        for bucket in buckets:
            bucket.count += 1
            bucket.min_cost += low
            bucket.max_cost += high
        summary.min_total += low
        summary.max_total += high
    return summary


def score_frames(frames: List[FrameCapture], analysis: Analysis, tolerance: float) -> None:
    """Attach problem IDs to the nearest uniform frame and score each frame."""
    timestamps = [f.timestamp for f in frames]
    for frame in frames:
        frame.problem_ids = []
        frame.score = 100
    for pf in analysis.problem_frames:
        idx = nearest_index(timestamps, pf.timestamp, tolerance)
        if idx < 0:
            continue
        target = frames[idx]
        for problem in pf.problems:
            target.problem_ids.append(problem.problem_id)
            target.score = max(0, (target.score or 0) - SEVERITY_POINTS[problem.severity])


class AnalysisPipeline:
    def __init__(
        self,
        store: DurableStore,
        dedup: ContentDedupIndex,
        ledger: MeteringLedger,
        ai: AIClient,
        retry: RetryPolicy,
        storage: MediaStorage,
        extractor: FrameExtractor,
        settings: Settings,
    ) -> None:
        self._store = store
        self._dedup = dedup
        self._ledger = ledger
        self._ai = ai
        self._retry = retry
        self._storage = storage
        self._extractor = extractor
        self._settings = settings

    @asynccontextmanager
    async def _stage(self, resource: Resource, stage: AnalysisStatus) -> AsyncIterator[None]:
        await self._store.update_resource(resource.resource_id, analysis_status=stage)
        logger.info(
            "analysis_stage_started",
            extra={"resource_id": resource.resource_id, "kind": resource.kind.value, "stage": stage.value},
        )
        started = time.perf_counter()
        try:
            yield
        finally:
            stage_duration_seconds.labels(
                kind=f"{resource.kind.value}_analysis", stage=stage.value
            ).observe(time.perf_counter() - started)

    async def process(self, message: QueueMessage) -> AnalysisStatus:
        """Run analysis for one resource; never raises."""
        try:
            resource = await self._store.get_resource(message.resource_id)
        except Exception as e:
            logger.exception(
                "analysis_load_failed", extra={"resource_id": message.resource_id, "error": str(e)}
            )
            return AnalysisStatus.FAILED
        if resource is None:
            logger.warning("analysis_resource_missing", extra={"resource_id": message.resource_id})
            return AnalysisStatus.FAILED
        if resource.analysis_status.is_finished():
            logger.info(
                "analysis_message_stale",
                extra={"resource_id": resource.resource_id, "status": resource.analysis_status.value},
            )
            return resource.analysis_status

        kind_label = f"{resource.kind.value}_analysis"
        try:
            if resource.kind == MediaKind.VIDEO:
                analysis = await self._analyze_video(resource)
            else:
                analysis = await self._analyze_image(resource)
            await self._store.put_analysis(analysis)
            updated = await self._store.update_resource(
                resource.resource_id,
                analysis_status=AnalysisStatus.COMPLETED,
                overall_score=analysis.overall.score,
                analyzed_at=analysis.analyzed_at,
                error=None,
            )
            if updated is None:
                # Deleted while in flight; drop the orphaned analysis.
                await self._store.delete_analysis(resource.resource_id)
                raise NotFoundError("resource", resource.resource_id)
            self._dedup.warm_analysis(analysis)
            await self._dedup.record_hash(resource.owner_id, resource.resource_id, resource.content_hash)
        except Exception as e:
            logger.exception(
                "analysis_failed",
                extra={"resource_id": resource.resource_id, "owner_id": resource.owner_id, "error": str(e)},
            )
            await self._fail(resource, e)
            jobs_finished_total.labels(kind=kind_label, status="failed").inc()
            return AnalysisStatus.FAILED

        jobs_finished_total.labels(kind=kind_label, status="completed").inc()
        logger.info(
            "analysis_completed",
            extra={"resource_id": resource.resource_id, "owner_id": resource.owner_id, "status": "completed"},
        )
        return AnalysisStatus.COMPLETED

    async def _fail(self, resource: Resource, error: Exception) -> None:
        try:
            await self._store.update_resource(
                resource.resource_id, analysis_status=AnalysisStatus.FAILED, error=str(error)
            )
        except Exception:
            logger.exception("analysis_fail_status_not_saved", extra={"resource_id": resource.resource_id})
        if isinstance(error, ContentPolicyViolation) and error.counts_as_strike:
            try:
                await self._ledger.record_violation(
                    resource.owner_id, error.category, error.reason, resource.resource_id
                )
            except Exception:
                logger.exception("violation_not_recorded", extra={"owner_id": resource.owner_id})

    async def _load_media(self, resource: Resource) -> Media:
        data = await self._storage.load(resource.storage_key)
        return Media(data, resource.mime_type, resource.original_name or "media")

    def _bind(self, resource: Resource, draft: AnalysisDraft) -> Analysis:
        return Analysis(
            resource_id=resource.resource_id,
            owner_id=resource.owner_id,
            kind=resource.kind,
            **draft.model_dump(),
        )

    async def _analyze_image(self, resource: Resource) -> Analysis:
        media = await self._load_media(resource)
        async with self._stage(resource, AnalysisStatus.MODERATING):
            await ensure_safe(self._ai, media, self._retry)
        async with self._stage(resource, AnalysisStatus.ANALYZING):
            draft = await self._retry.execute(
                self._ai.analyze, media, MediaKind.IMAGE, operation="analyze"
            )
        analysis = self._bind(resource, draft)
        analysis.cost_summary = summarize_costs(analysis)
        return analysis

    async def _moderate_batches(self, frames: Sequence[Media]) -> None:
        size = max(1, self._settings.VIDEO_MODERATION_BATCH_SIZE)
        for start in range(0, len(frames), size):
            batch = frames[start : start + size]
            outcomes = await asyncio.gather(
                *(ensure_safe(self._ai, m, self._retry) for m in batch), return_exceptions=True
            )
            for outcome in outcomes:
                if isinstance(outcome, BaseException):
                    raise outcome

    async def _analyze_video(self, resource: Resource) -> Analysis:
        s = self._settings
        media = await self._load_media(resource)
        prefix = media_prefix(resource.owner_id, resource.resource_id)

        async with self._stage(resource, AnalysisStatus.EXTRACTING):
            duration = await self._extractor.probe_duration(media)
            if duration > s.VIDEO_MAX_DURATION:
                raise ValidationError(
                    f"Video is {duration:.1f}s long; the maximum is {s.VIDEO_MAX_DURATION:.0f}s",
                    field="duration",
                )
            timestamps = collapse_timestamps(
                plan_uniform_timestamps(duration, s.VIDEO_FRAME_INTERVAL, s.VIDEO_MAX_FRAMES),
                s.VIDEO_FRAME_DEDUP_THRESHOLD,
            )
            frame_bytes = await self._extractor.extract(media, timestamps)
            frames: List[FrameCapture] = []
            for i, (t, data) in enumerate(zip(timestamps, frame_bytes)):
                key = await self._storage.save(f"{prefix}/frames/uniform_{i:02d}.jpg", data)
                frames.append(FrameCapture(frame_index=i, timestamp=t, storage_key=key))
            await self._store.update_resource(resource.resource_id, duration_seconds=duration)

        async with self._stage(resource, AnalysisStatus.MODERATING):
            await self._moderate_batches(
                [Media(data, "image/jpeg", f"frame_{i}.jpg") for i, data in enumerate(frame_bytes)]
            )

        async with self._stage(resource, AnalysisStatus.ANALYZING):
            draft = await self._retry.execute(
                self._ai.analyze, media, MediaKind.VIDEO, operation="analyze"
            )

        async with self._stage(resource, AnalysisStatus.AGGREGATING):
            analysis = self._bind(resource, draft)
            analysis.problem_frames = analysis.problem_frames[: s.VIDEO_MAX_PROBLEM_FRAMES]
            await self._attach_problem_frames(analysis, media, prefix)
            score_frames(frames, analysis, s.VIDEO_FRAME_INTERVAL / 2)
            analysis.frames = frames
            analysis.cost_summary = summarize_costs(analysis)
        return analysis

    async def _attach_problem_frames(self, analysis: Analysis, media: Media, prefix: str) -> None:
        s = self._settings
        for n, pf in enumerate(analysis.problem_frames):
            pf.frame_id = pf.frame_id or f"pf_{n + 1}"
        timestamps = plan_problem_timestamps(
            analysis.problem_frames, s.VIDEO_MAX_PROBLEM_FRAMES, s.VIDEO_FRAME_DEDUP_THRESHOLD
        )
        if not timestamps:
            return
        captured = await self._extractor.extract(media, timestamps)
        kept: List[Tuple[float, str]] = []
        for i, (t, data) in enumerate(zip(timestamps, captured)):
            try:
                await ensure_safe(self._ai, Media(data, "image/jpeg", f"problem_{i}.jpg"), self._retry)
            except ContentPolicyViolation as e:
                logger.warning(
                    "problem_frame_rejected",
                    extra={"resource_id": analysis.resource_id, "frame_index": i, "category": e.category},
                )
                continue
            except TransientInfraError as e:
                logger.warning(
                    "problem_frame_moderation_unavailable",
                    extra={"resource_id": analysis.resource_id, "frame_index": i, "error": str(e)},
                )
                continue
            key = await self._storage.save(f"{prefix}/frames/problem_{i:02d}.jpg", data)
            kept.append((t, key))
        kept_times = [t for t, _ in kept]
        for pf in analysis.problem_frames:
            idx = nearest_index(kept_times, pf.timestamp, s.VIDEO_FRAME_DEDUP_THRESHOLD)
            if idx >= 0:
                pf.storage_key = kept[idx][1]


class ResourceService:
    def __init__(
        self,
        store: DurableStore,
        dedup: ContentDedupIndex,
        signatures: SignatureIndex,
        ledger: MeteringLedger,
        storage: MediaStorage,
        queue: JobQueue,
        cache: CacheHandle,
        background: BackgroundTasks,
    ) -> None:
        self._store = store
        self._dedup = dedup
        self._signatures = signatures
        self._ledger = ledger
        self._storage = storage
        self._queue = queue
        self._cache = cache
        self._background = background

    async def ingest(
        self,
        owner_id: str,
        data: bytes,
        kind: MediaKind,
        mime_type: str,
        original_name: str = "",
    ) -> Resource:
        if not data:
            raise ValidationError("Upload is empty", field="file")
        await self._ledger.ensure_not_blocked(owner_id)

        resource_id = new_id("res")
        cost = self._ledger.cost_for(kind)
        await self._ledger.reserve(owner_id, cost, transaction_type_for(kind, fix=False), resource_id)
        check = await self._dedup.check_digest(owner_id, content_hash(data))

        key = await self._storage.save(
            f"{media_prefix(owner_id, resource_id)}/original.{extension_for(mime_type)}", data
        )
        resource = Resource(
            resource_id=resource_id,
            owner_id=owner_id,
            kind=kind,
            mime_type=mime_type,
            original_name=original_name,
            content_hash=check.hash,
            storage_key=key,
            size_bytes=len(data),
        )
        await self._store.put_resource(resource)

        if check.is_duplicate and check.source_resource_id:
            try:
                await self._dedup.copy_analysis(check.source_resource_id, resource_id, owner_id)
                copied = await self._store.get_resource(resource_id)
                logger.info(
                    "resource_deduplicated",
                    extra={"owner_id": owner_id, "resource_id": resource_id, "stage": check.source_resource_id},
                )
                return copied or resource
            except Exception as e:
                logger.warning(
                    "analysis_copy_failed",
                    extra={"owner_id": owner_id, "resource_id": resource_id, "error": str(e)},
                    exc_info=True,
                )

        queued = await self._store.update_resource(resource_id, analysis_status=AnalysisStatus.QUEUED)
        try:
            await self._queue.enqueue_analysis(
                QueueMessage(job_id=resource_id, resource_id=resource_id, owner_id=owner_id)
            )
        except TransientInfraError as e:
            await self._store.update_resource(
                resource_id, analysis_status=AnalysisStatus.FAILED, error=str(e)
            )
            try:
                await self._ledger.refund(owner_id, cost, resource_id)
            except Exception:
                logger.exception(
                    "credit_refund_failed", extra={"owner_id": owner_id, "resource_id": resource_id}
                )
            raise
        logger.info(
            "analysis_enqueued",
            extra={"owner_id": owner_id, "resource_id": resource_id, "kind": kind.value},
        )
        return queued or resource

    async def get_resource(self, owner_id: str, resource_id: str) -> Resource:
        resource = await self._store.get_resource(resource_id)
        if resource is None:
            raise NotFoundError("resource", resource_id)
        if resource.owner_id != owner_id:
            raise ForbiddenError("resource", resource_id, owner_id)
        return resource

    async def get_analysis(self, owner_id: str, resource_id: str) -> Optional[Analysis]:
        resource = await self.get_resource(owner_id, resource_id)
        if resource.analysis_status != AnalysisStatus.COMPLETED:
            return None
        return await self._dedup.load_analysis(resource_id)

    async def delete_resource(self, owner_id: str, resource_id: str) -> None:
        """Remove a resource and everything derived from or pointing at it."""
        resource = await self.get_resource(owner_id, resource_id)
        jobs = await self._store.list_fix_jobs(resource_id)
        for job in jobs:
            await self._signatures.forget(resource_id, job.signature, job.fix_id)
            await self._store.delete_fix_result(job.fix_id)
            await self._store.delete_fix_job(job.fix_id)
        stale_keys = [CacheKeys.fix_result(job.fix_id) for job in jobs]
        stale_keys.append(CacheKeys.analysis(resource_id))
        self._background.spawn(self._cache.delete(*stale_keys), name="cache.resource_evict")

        await self._store.delete_analysis(resource_id)
        await self._dedup.forget(owner_id, resource_id, resource.content_hash)
        try:
            await self._storage.delete_prefix(media_prefix(owner_id, resource_id))
        except (OSError, ValueError, RoomfixError):
            logger.warning("resource_media_cleanup_failed", extra={"resource_id": resource_id}, exc_info=True)
        await self._store.delete_resource(resource_id)
        logger.info(
            "resource_deleted",
            extra={"owner_id": owner_id, "resource_id": resource_id, "amount": len(jobs)},
        )
