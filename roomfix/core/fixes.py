"""Fix orchestration: request-time validation and the worker-side pipeline.

``FixOrchestrator.create_fix`` validates the request, meters it, resolves the
transformation signature and queues a ``FixJob``. A signature hit only sets
``source_fix_id``; the job is still created, metered and delivered.

``FixPipeline.process`` advances ``pending -> processing -> completed |
failed``. A job with ``source_fix_id`` clones the earlier result. Otherwise
each generation unit (the whole image, or one video frame) asks the AI for
a corrected image, and falls back to a textual plan over the original media
if that fails. The job only fails when no unit produced anything. Success
is written with one ``commit_fix_completion`` call, which is also the only
place a signature entry is created.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

from roomfix.core.ai import (
    AIClient,
    Media,
    normalize_single_line,
    synthesize_fix_description,
)
from roomfix.core.config import Settings
from roomfix.core.dedup import ContentDedupIndex
from roomfix.core.errors import (
    ContentPolicyViolation,
    ForbiddenError,
    NotFoundError,
    TooManyRequestsError,
    TransientInfraError,
    ValidationError,
)
from roomfix.core.frames import nearest_index, representative_indices
from roomfix.core.metering import MeteringLedger, transaction_type_for
from roomfix.core.models import (
    Analysis,
    AnalysisStatus,
    FixJob,
    FixOutput,
    FixResult,
    FixScope,
    FixStatus,
    FixStatusView,
    MediaKind,
    ProblemRef,
    QueueMessage,
    Resource,
    new_id,
    utcnow,
)
from roomfix.core.queue import JobQueue
from roomfix.core.resilience import RetryPolicy
from roomfix.core.scoring import calculate_fixed_scores
from roomfix.core.signatures import SignatureIndex, compute_signature, normalize_problem_ids
from roomfix.core.storage import MediaStorage, extension_for, frame_key, media_prefix
from roomfix.core.store import DurableStore
from roomfix.utils.background import BackgroundTasks
from roomfix.utils.cache import CacheHandle, CacheKeys
from roomfix.utils.metrics import fix_fallbacks_total, jobs_finished_total, stage_duration_seconds

logger = logging.getLogger(__name__)

FIX_NAME_SEPARATOR = " • "


def fix_prefix(job: FixJob) -> str:
    return f"{media_prefix(job.owner_id, job.resource_id)}/fixes/{job.fix_id}"


def build_unique_fix_name(base_name: str, fix_id: str) -> str:
    """Append the last six characters of the fix ID so repeated fixes stay distinguishable."""
    base = normalize_single_line(base_name)
    suffix = fix_id[-6:].upper()
    if not base or base.upper() == suffix:
        return suffix
    if base.upper().endswith(f"• {suffix}"):
        return base
    return f"{base}{FIX_NAME_SEPARATOR}{suffix}"


def strip_fix_suffix(fix_name: str, fix_id: str) -> str:
    tail = f"{FIX_NAME_SEPARATOR}{fix_id[-6:].upper()}"
    return fix_name[: -len(tail)] if fix_name.endswith(tail) else fix_name


def resolve_problem_ids(
    analysis: Analysis, scope: FixScope, requested: Optional[Sequence[str]]
) -> List[str]:
    available = analysis.problem_ids()
    if scope == FixScope.ALL:
        if not available:
            raise ValidationError("Analysis has no problems to fix", field="problem_ids")
        return normalize_problem_ids(available)

    if not requested:
        raise ValidationError(
            f"Scope '{scope.value}' requires at least one problem ID", field="problem_ids"
        )
    wanted = set(requested)
    valid = [pid for pid in dict.fromkeys(available) if pid in wanted]
    if not valid:
        raise ValidationError("None of the requested problem IDs exist", field="problem_ids")
    if scope == FixScope.SINGLE:
        valid = valid[:1]
    return normalize_problem_ids(valid)


class FixOrchestrator:
    def __init__(
        self,
        store: DurableStore,
        signatures: SignatureIndex,
        dedup: ContentDedupIndex,
        ledger: MeteringLedger,
        queue: JobQueue,
        storage: MediaStorage,
        cache: CacheHandle,
        background: BackgroundTasks,
        settings: Settings,
    ) -> None:
        self._store = store
        self._signatures = signatures
        self._dedup = dedup
        self._ledger = ledger
        self._queue = queue
        self._storage = storage
        self._cache = cache
        self._background = background
        self._settings = settings

    async def _owned_resource(self, owner_id: str, resource_id: str) -> Resource:
        resource = await self._store.get_resource(resource_id)
        if resource is None:
            raise NotFoundError("resource", resource_id)
        if resource.owner_id != owner_id:
            raise ForbiddenError("resource", resource_id, owner_id)
        return resource

    async def _refund(self, owner_id: str, amount: int, fix_id: str) -> None:
        try:
            await self._ledger.refund(owner_id, amount, fix_id)
        except Exception:
            logger.exception("credit_refund_failed", extra={"owner_id": owner_id, "fix_id": fix_id})

    async def _owned_job(self, owner_id: str, fix_id: str) -> FixJob:
        job = await self._store.get_fix_job(fix_id)
        if job is None:
            raise NotFoundError("fix", fix_id)
        if job.owner_id != owner_id:
            raise ForbiddenError("fix", fix_id, owner_id)
        return job

    async def create_fix(
        self,
        owner_id: str,
        resource_id: str,
        scope: FixScope | str,
        problem_ids: Optional[Sequence[str]] = None,
    ) -> FixJob:
        try:
            scope = FixScope(scope)
        except ValueError as e:
            raise ValidationError(f"Unknown fix scope: {scope!r}", field="scope") from e

        resource = await self._owned_resource(owner_id, resource_id)
        if resource.analysis_status != AnalysisStatus.COMPLETED:
            raise ValidationError(
                f"Resource {resource_id} has not finished analysis "
                f"(status: {resource.analysis_status.value})",
                field="resource_id",
            )
        await self._ledger.ensure_not_blocked(owner_id)

        # Soft ceiling: concurrent creations can both pass this count.
        ceiling = self._settings.MAX_CONCURRENT_FIXES
        active = await self._store.count_active_fix_jobs(owner_id)
        if active >= ceiling:
            raise TooManyRequestsError(owner_id, active, ceiling)

        analysis = await self._dedup.load_analysis(resource_id)
        if analysis is None:
            raise NotFoundError("analysis", resource_id)
        resolved = resolve_problem_ids(analysis, scope, problem_ids)

        fix_id = new_id("fix")
        cost = self._ledger.cost_for(resource.kind, fix=True)
        await self._ledger.reserve(
            owner_id, cost, transaction_type_for(resource.kind, fix=True), fix_id
        )

        try:
            signature = compute_signature(await self._signatures.canonical_hash(resource), resolved)
            hit = await self._signatures.lookup(resource, signature)
            job = FixJob(
                fix_id=fix_id,
                resource_id=resource_id,
                owner_id=owner_id,
                kind=resource.kind,
                scope=scope,
                problem_ids=resolved,
                signature=signature,
                version=await self._store.next_fix_version(resource_id),
                source_fix_id=hit.fix_id if hit else None,
            )
            await self._store.put_fix_job(job)
        except Exception:
            await self._refund(owner_id, cost, fix_id)
            raise

        try:
            await self._queue.enqueue_fix(
                QueueMessage(job_id=fix_id, resource_id=resource_id, owner_id=owner_id)
            )
        except TransientInfraError as e:
            await self._store.update_fix_job(
                fix_id, status=FixStatus.FAILED, error=str(e), completed_at=utcnow()
            )
            await self._refund(owner_id, cost, fix_id)
            raise

        logger.info(
            "fix_job_created",
            extra={
                "owner_id": owner_id,
                "resource_id": resource_id,
                "fix_id": fix_id,
                "source_fix_id": job.source_fix_id,
                "signature": signature,
            },
        )
        return job

    async def get_fix_status(self, owner_id: str, fix_id: str) -> FixStatusView:
        job = await self._owned_job(owner_id, fix_id)
        view = FixStatusView(fix_id=fix_id, status=job.status, error=job.error)
        if job.status != FixStatus.COMPLETED:
            return view

        cached = await self._cache.get(CacheKeys.fix_result(fix_id))
        if isinstance(cached, dict):
            try:
                view.result = FixResult.model_validate(cached)
                return view
            except ValueError:
                logger.debug("fix_result_cache_invalid", extra={"fix_id": fix_id})
        view.result = await self._store.get_fix_result(fix_id)
        if view.result is not None:
            self._background.spawn(
                self._cache.set(
                    CacheKeys.fix_result(fix_id),
                    view.result.model_dump(mode="json"),
                    self._settings.CACHE_TTL_FIX_RESULT,
                ),
                name="cache.fix_result",
            )
        return view

    async def list_fixes(self, owner_id: str, resource_id: str) -> List[FixJob]:
        await self._owned_resource(owner_id, resource_id)
        return await self._store.list_fix_jobs(resource_id)

    async def delete_fix(self, owner_id: str, fix_id: str) -> None:
        job = await self._owned_job(owner_id, fix_id)
        await self._signatures.forget(job.resource_id, job.signature, fix_id)
        await self._store.delete_fix_result(fix_id)
        await self._store.delete_fix_job(fix_id)
        self._background.spawn(
            self._cache.delete(CacheKeys.fix_result(fix_id)), name="cache.fix_evict"
        )
        try:
            await self._storage.delete_prefix(fix_prefix(job))
        except (OSError, ValueError):
            logger.warning("fix_media_cleanup_failed", extra={"fix_id": fix_id}, exc_info=True)
        logger.info(
            "fix_deleted",
            extra={"owner_id": owner_id, "resource_id": job.resource_id, "fix_id": fix_id},
        )


@dataclass
class FixUnit:
    original_key: str
    mime_type: str
    problems: List[ProblemRef]
    frame_index: Optional[int] = None
    timestamp: Optional[float] = None


@dataclass
class UnitOutcome:
    output: FixOutput
    changes_applied: List[str] = field(default_factory=list)
    fix_name: str = ""
    summary: str = ""


def _unique(items: Iterable[str]) -> List[str]:
    return [i for i in dict.fromkeys(items) if i]


class FixPipeline:
    def __init__(
        self,
        store: DurableStore,
        signatures: SignatureIndex,
        dedup: ContentDedupIndex,
        ledger: MeteringLedger,
        ai: AIClient,
        retry: RetryPolicy,
        storage: MediaStorage,
        cache: CacheHandle,
        background: BackgroundTasks,
        settings: Settings,
    ) -> None:
        self._store = store
        self._signatures = signatures
        self._dedup = dedup
        self._ledger = ledger
        self._ai = ai
        self._retry = retry
        self._storage = storage
        self._cache = cache
        self._background = background
        self._settings = settings

    async def process(self, message: QueueMessage) -> FixStatus:
        """Run one fix job to a terminal state; never raises."""
        try:
            job = await self._store.get_fix_job(message.job_id)
        except Exception as e:
            logger.exception("fix_load_failed", extra={"fix_id": message.job_id, "error": str(e)})
            return FixStatus.FAILED
        if job is None:
            logger.warning("fix_job_missing", extra={"fix_id": message.job_id})
            return FixStatus.FAILED
        if job.is_finished():
            logger.info("fix_message_stale", extra={"fix_id": job.fix_id, "status": job.status.value})
            return job.status

        kind_label = f"{job.kind.value}_fix"
        started = time.perf_counter()
        try:
            running = await self._store.update_fix_job(
                job.fix_id, status=FixStatus.PROCESSING, started_at=utcnow()
            )
            job = running or job
            resource = await self._store.get_resource(job.resource_id)
            if resource is None:
                raise NotFoundError("resource", job.resource_id)

            if job.source_fix_id:
                result = await self._copy_result(job, resource)
            else:
                result = await self._compute_result(job, resource)

            completed = job.model_copy(
                update={"status": FixStatus.COMPLETED, "completed_at": utcnow(), "error": None}
            )
            indexed = await self._store.commit_fix_completion(completed, result)
        except Exception as e:
            logger.exception(
                "fix_job_failed",
                extra={"fix_id": job.fix_id, "resource_id": job.resource_id, "error": str(e)},
            )
            await self._fail(job, e)
            jobs_finished_total.labels(kind=kind_label, status="failed").inc()
            return FixStatus.FAILED

        self._background.spawn(
            self._cache.set(
                CacheKeys.fix_result(result.fix_id),
                result.model_dump(mode="json"),
                self._settings.CACHE_TTL_FIX_RESULT,
            ),
            name="cache.fix_result",
        )
        if indexed:
            self._signatures.warm(job.resource_id, job.signature, job.fix_id)
        stage_duration_seconds.labels(kind=kind_label, stage="processing").observe(
            time.perf_counter() - started
        )
        jobs_finished_total.labels(kind=kind_label, status="completed").inc()
        logger.info(
            "fix_job_completed",
            extra={
                "fix_id": job.fix_id,
                "resource_id": job.resource_id,
                "source_fix_id": job.source_fix_id,
                "signature": job.signature,
                "status": "indexed" if indexed else "completed",
            },
        )
        return FixStatus.COMPLETED

    async def _fail(self, job: FixJob, error: Exception) -> None:
        try:
            await self._store.update_fix_job(
                job.fix_id, status=FixStatus.FAILED, error=str(error), completed_at=utcnow()
            )
        except Exception:
            logger.exception("fix_fail_status_not_saved", extra={"fix_id": job.fix_id})
        try:
            await self._storage.delete_prefix(fix_prefix(job))
        except Exception:
            logger.debug("fix_media_cleanup_failed", extra={"fix_id": job.fix_id}, exc_info=True)
        if isinstance(error, ContentPolicyViolation) and error.counts_as_strike:
            try:
                await self._ledger.record_violation(
                    job.owner_id, error.category, error.reason, job.resource_id
                )
            except Exception:
                logger.exception("violation_not_recorded", extra={"owner_id": job.owner_id})

    async def _copy_result(self, job: FixJob, resource: Resource) -> FixResult:
        source_job = await self._store.get_fix_job(job.source_fix_id)
        source = await self._store.get_fix_result(job.source_fix_id)
        if source_job is None or source_job.status != FixStatus.COMPLETED or source is None:
            raise NotFoundError("fix result", job.source_fix_id)

        outputs: List[FixOutput] = []
        for i, out in enumerate(source.outputs):
            fixed_key = out.fixed_key
            if fixed_key:
                data = await self._storage.load(fixed_key)
                ext = fixed_key.rsplit(".", 1)[-1] if "." in fixed_key else "jpg"
                fixed_key = await self._storage.save(f"{fix_prefix(job)}/output_{i:02d}.{ext}", data)
            if resource.kind == MediaKind.IMAGE:
                original_key = resource.storage_key
            else:
                original_key = frame_key(job.owner_id, job.resource_id, out.original_key)
            outputs.append(out.model_copy(update={"fixed_key": fixed_key, "original_key": original_key}))

        logger.info(
            "fix_result_copied",
            extra={"fix_id": job.fix_id, "source_fix_id": source.fix_id, "resource_id": job.resource_id},
        )
        return source.model_copy(
            update={
                "fix_id": job.fix_id,
                "resource_id": job.resource_id,
                "owner_id": job.owner_id,
                "outputs": outputs,
                "fix_name": build_unique_fix_name(
                    strip_fix_suffix(source.fix_name, source.fix_id), job.fix_id
                ),
                "generated_at": utcnow(),
                "copied_from_fix_id": source.fix_id,
            },
            deep=True,
        )

    def _plan_units(
        self, resource: Resource, analysis: Analysis, targeted: List[ProblemRef]
    ) -> List[FixUnit]:
        if resource.kind == MediaKind.IMAGE:
            return [FixUnit(resource.storage_key, resource.mime_type, targeted)]

        general = [r for r in targeted if r.frame_index is None]
        by_frame: Dict[int, List[ProblemRef]] = {}
        for ref in targeted:
            if ref.frame_index is not None:
                by_frame.setdefault(ref.frame_index, []).append(ref)

        frames = analysis.frames
        tolerance = self._settings.VIDEO_FRAME_INTERVAL / 2
        units: List[FixUnit] = []
        if by_frame:
            for frame_index, refs in sorted(by_frame.items()):
                pf = next((p for p in analysis.problem_frames if p.frame_index == frame_index), None)
                timestamp = pf.timestamp if pf is not None else refs[0].timestamp or 0.0
                key = pf.storage_key if pf is not None else None
                if not key and frames:
                    idx = nearest_index([f.timestamp for f in frames], timestamp, tolerance)
                    key = frames[max(idx, 0)].storage_key
                if not key:
                    continue
                units.append(FixUnit(key, "image/jpeg", general + refs, frame_index, timestamp))
        elif general and frames:
            indices = representative_indices(
                len(frames), self._settings.VIDEO_REPRESENTATIVE_FRAMES
            ) or [0]
            for idx in indices:
                f = frames[idx]
                units.append(FixUnit(f.storage_key, "image/jpeg", general, f.frame_index, f.timestamp))
        if not units:
            raise ValidationError("No frames available to apply the fix to", field="frames")
        return units

    async def _run_unit(self, job: FixJob, unit: FixUnit, index: int) -> UnitOutcome:
        data = await self._storage.load(unit.original_key)
        media = Media(data, unit.mime_type, unit.original_key.rsplit("/", 1)[-1])
        problem_ids = [r.problem_id for r in unit.problems]
        try:
            generated = await self._retry.execute(
                self._ai.generate_fix, media, unit.problems, operation="generate_fix"
            )
            key = await self._storage.save(
                f"{fix_prefix(job)}/output_{index:02d}.{extension_for(generated.mime_type)}",
                generated.data,
            )
            summary = normalize_single_line(generated.summary)
            return UnitOutcome(
                output=FixOutput(
                    original_key=unit.original_key,
                    fixed_key=key,
                    frame_index=unit.frame_index,
                    timestamp=unit.timestamp,
                    problem_ids=problem_ids,
                    description=summary,
                ),
                changes_applied=list(generated.changes_applied),
                fix_name=normalize_single_line(generated.fix_name),
                summary=summary,
            )
        except ContentPolicyViolation:
            raise
        except Exception as e:
            fix_fallbacks_total.labels(kind=job.kind.value).inc()
            logger.warning(
                "fix_generation_failed_falling_back",
                extra={"fix_id": job.fix_id, "frame_index": unit.frame_index, "error": str(e)},
            )

        plan = await self._retry.execute(
            self._ai.generate_plan, media, unit.problems, operation="generate_plan"
        )
        meta = synthesize_fix_description(unit.problems)
        return UnitOutcome(
            output=FixOutput(
                original_key=unit.original_key,
                fixed_key=None,
                frame_index=unit.frame_index,
                timestamp=unit.timestamp,
                problem_ids=problem_ids,
                description=meta["summary"],
                plan=plan,
                degraded=True,
            ),
            changes_applied=[r.solution.title for r in unit.problems],
            fix_name=meta["fix_name"],
            summary=meta["summary"],
        )

    async def _run_units(self, job: FixJob, units: List[FixUnit]) -> List[UnitOutcome]:
        size = max(1, self._settings.VIDEO_FIX_BATCH_SIZE)
        outcomes: List[UnitOutcome] = []
        errors: List[BaseException] = []
        for start in range(0, len(units), size):
            batch = units[start : start + size]
            results = await asyncio.gather(
                *(self._run_unit(job, unit, start + i) for i, unit in enumerate(batch)),
                return_exceptions=True,
            )
            for result in results:
                if isinstance(result, BaseException):
                    if isinstance(result, ContentPolicyViolation):
                        raise result
                    errors.append(result)
                    logger.warning(
                        "fix_unit_failed", extra={"fix_id": job.fix_id, "error": str(result)}
                    )
                else:
                    outcomes.append(result)
        if not outcomes:
            raise errors[0] if errors else ValidationError("Fix produced no output")
        return outcomes

    async def _compute_result(self, job: FixJob, resource: Resource) -> FixResult:
        analysis = await self._dedup.load_analysis(resource.resource_id)
        if analysis is None:
            raise NotFoundError("analysis", resource.resource_id)
        refs = {r.problem_id: r for r in analysis.problem_refs()}
        targeted = [refs[pid] for pid in job.problem_ids if pid in refs]
        if not targeted:
            raise ValidationError("None of the job's problems exist in the analysis", field="problem_ids")

        outcomes = await self._run_units(job, self._plan_units(resource, analysis, targeted))
        outcomes.sort(key=lambda o: (o.output.timestamp or 0.0, o.output.frame_index or 0))
        primary = next((o for o in outcomes if not o.output.degraded), outcomes[0])

        addressed = {pid for o in outcomes for pid in o.output.problem_ids}
        problems_fixed = [pid for pid in job.problem_ids if pid in addressed]
        # The all-scope floor only holds when every requested problem was covered.
        scope = job.scope if len(problems_fixed) == len(job.problem_ids) else FixScope.MULTIPLE
        scores = calculate_fixed_scores(analysis, problems_fixed, scope)
        original_score = analysis.overall.score
        return FixResult(
            fix_id=job.fix_id,
            resource_id=job.resource_id,
            owner_id=job.owner_id,
            fix_name=build_unique_fix_name(primary.fix_name, job.fix_id),
            outputs=[o.output for o in outcomes],
            problems_fixed=problems_fixed,
            changes_applied=_unique(c for o in outcomes for c in o.changes_applied),
            summary=primary.summary,
            original_score=original_score,
            fixed_score=scores.fixed_score,
            score_delta=scores.fixed_score - original_score,
            original_dimension_scores=scores.original_dimension_scores,
            fixed_dimension_scores=scores.fixed_dimension_scores,
            degraded=any(o.output.degraded for o in outcomes),
        )
