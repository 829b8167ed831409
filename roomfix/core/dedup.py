"""Content-addressed dedup index, scoped per owner.

A hit lets a byte-identical re-upload reuse the first upload's analysis
instead of calling the AI again. The uploader is still metered; dedup saves
compute, not credits.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from roomfix.core.config import Settings
from roomfix.core.errors import ForbiddenError, NotFoundError
from roomfix.core.models import Analysis, AnalysisStatus, utcnow
from roomfix.core.storage import MediaStorage, frame_key
from roomfix.core.store import DurableStore, analysis_from_document
from roomfix.utils.background import BackgroundTasks
from roomfix.utils.cache import CacheHandle, CacheKeys
from roomfix.utils.metrics import dedup_lookups_total

logger = logging.getLogger(__name__)


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


@dataclass(frozen=True)
class DuplicateCheck:
    is_duplicate: bool
    hash: str
    source_resource_id: Optional[str] = None


class ContentDedupIndex:
    def __init__(
        self,
        store: DurableStore,
        storage: MediaStorage,
        cache: CacheHandle,
        background: BackgroundTasks,
        settings: Settings,
    ) -> None:
        self._store = store
        self._storage = storage
        self._cache = cache
        self._background = background
        self._settings = settings

    async def check_duplicate(self, owner_id: str, content: bytes) -> DuplicateCheck:
        return await self.check_digest(owner_id, content_hash(content))

    async def check_digest(self, owner_id: str, digest: str) -> DuplicateCheck:
        cache_key = CacheKeys.content_hash(owner_id, digest)
        from_cache = True
        candidate = await self._cache.get(cache_key)
        if not isinstance(candidate, str) or not candidate:
            from_cache = False
            candidate = await self._store.get_hash_entry(owner_id, digest)
        if not candidate:
            dedup_lookups_total.labels(result="miss").inc()
            return DuplicateCheck(False, digest)

        resource = await self._store.get_resource(candidate)
        if (
            resource is None
            or resource.owner_id != owner_id
            or resource.analysis_status != AnalysisStatus.COMPLETED
        ):
            dedup_lookups_total.labels(result="stale").inc()
            logger.info(
                "dedup_entry_ignored",
                extra={
                    "owner_id": owner_id,
                    "resource_id": candidate,
                    "status": resource.analysis_status.value if resource else "missing",
                },
            )
            if from_cache:
                self._background.spawn(self._cache.delete(cache_key), name="cache.hash_evict")
            if resource is None:
                await self._store.delete_hash_entry_if(owner_id, digest, candidate)
            return DuplicateCheck(False, digest)

        if not from_cache:
            self._warm(owner_id, digest, candidate)
        dedup_lookups_total.labels(result="hit").inc()
        return DuplicateCheck(True, digest, candidate)

    def _warm(self, owner_id: str, digest: str, resource_id: str) -> None:
        self._background.spawn(
            self._cache.set(
                CacheKeys.content_hash(owner_id, digest),
                resource_id,
                self._settings.CACHE_TTL_IMAGE_HASH,
            ),
            name="cache.hash",
        )

    async def record_hash(self, owner_id: str, resource_id: str, digest: str) -> bool:
        """Point ``digest`` at ``resource_id`` unless another resource got there first."""
        written = await self._store.put_hash_entry_if_absent(owner_id, digest, resource_id)
        if written:
            self._warm(owner_id, digest, resource_id)
        logger.debug(
            "dedup_hash_recorded",
            extra={"owner_id": owner_id, "resource_id": resource_id, "status": written},
        )
        return written

    async def forget(self, owner_id: str, resource_id: str, digest: str) -> None:
        if await self._store.delete_hash_entry_if(owner_id, digest, resource_id):
            self._background.spawn(
                self._cache.delete(CacheKeys.content_hash(owner_id, digest)),
                name="cache.hash_evict",
            )

    async def load_analysis(self, resource_id: str) -> Optional[Analysis]:
        cached = await self._cache.get(CacheKeys.analysis(resource_id))
        if isinstance(cached, dict):
            try:
                return analysis_from_document(cached)
            except ValueError:
                logger.debug("analysis_cache_invalid", extra={"resource_id": resource_id})
        analysis = await self._store.get_analysis(resource_id)
        if analysis is not None:
            self.warm_analysis(analysis)
        return analysis

    def warm_analysis(self, analysis: Analysis) -> None:
        self._background.spawn(
            self._cache.set(
                CacheKeys.analysis(analysis.resource_id),
                analysis.model_dump(mode="json"),
                self._settings.CACHE_TTL_ANALYSIS,
            ),
            name="cache.analysis",
        )

    async def copy_analysis(
        self, source_resource_id: str, target_resource_id: str, owner_id: str
    ) -> Analysis:
        source_resource = await self._store.get_resource(source_resource_id)
        if source_resource is None:
            raise NotFoundError("resource", source_resource_id)
        if source_resource.owner_id != owner_id:
            raise ForbiddenError("resource", source_resource_id, owner_id)
        source = await self.load_analysis(source_resource_id)
        if source is None:
            raise NotFoundError("analysis", source_resource_id)

        copied = source.model_copy(
            update={
                "resource_id": target_resource_id,
                "owner_id": owner_id,
                "copied_from": source_resource_id,
                "copied_at": utcnow(),
            },
            deep=True,
        )
        await self._copy_frames(copied)
        await self._store.put_analysis(copied)
        updated = await self._store.update_resource(
            target_resource_id,
            analysis_status=AnalysisStatus.COMPLETED,
            source_resource_id=source_resource_id,
            overall_score=copied.overall.score,
            duration_seconds=source_resource.duration_seconds,
            analyzed_at=copied.analyzed_at,
            error=None,
        )
        if updated is None:
            raise NotFoundError("resource", target_resource_id)
        self.warm_analysis(copied)
        logger.info(
            "analysis_copied",
            extra={"owner_id": owner_id, "resource_id": target_resource_id, "stage": source_resource_id},
        )
        return copied

    async def _copy_frames(self, analysis: Analysis) -> None:
        """Give a copied video analysis its own frame files.

        The copy must survive deletion of the resource it was copied from.
        """
        copied: Dict[str, str] = {}
        for item in [*analysis.frames, *analysis.problem_frames]:
            key = item.storage_key
            if not key:
                continue
            if key not in copied:
                target = frame_key(analysis.owner_id, analysis.resource_id, key)
                copied[key] = await self._storage.save(target, await self._storage.load(key))
            item.storage_key = copied[key]
