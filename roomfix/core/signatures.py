"""Transformation signature index.

A signature identifies "this content, with exactly these problems fixed".
Entries are written only inside ``DurableStore.commit_fix_completion``, so
the index never points at a job that did not finish successfully.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from roomfix.core.config import Settings
from roomfix.core.models import FixStatus, Resource
from roomfix.core.store import DurableStore
from roomfix.utils.background import BackgroundTasks
from roomfix.utils.cache import CacheHandle, CacheKeys
from roomfix.utils.metrics import signature_lookups_total

logger = logging.getLogger(__name__)


def normalize_problem_ids(problem_ids: Iterable[str]) -> list[str]:
    return sorted({pid for pid in problem_ids if pid})


def compute_signature(canonical_hash: str, problem_ids: Iterable[str]) -> str:
    joined = ",".join(normalize_problem_ids(problem_ids))
    return hashlib.sha256(f"{canonical_hash}:{joined}".encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class SignatureHit:
    fix_id: str
    resource_id: str
    via_source: bool


class SignatureIndex:
    def __init__(
        self,
        store: DurableStore,
        cache: CacheHandle,
        background: BackgroundTasks,
        settings: Settings,
    ) -> None:
        self._store = store
        self._cache = cache
        self._background = background
        self._settings = settings

    async def canonical_hash(self, resource: Resource) -> str:
        if resource.source_resource_id:
            source = await self._store.get_resource(resource.source_resource_id)
            if source is not None:
                return source.content_hash
        return resource.content_hash

    async def lookup(self, resource: Resource, signature: str) -> Optional[SignatureHit]:
        candidates = [resource.resource_id]
        if resource.source_resource_id:
            candidates.append(resource.source_resource_id)
        for resource_id in candidates:
            fix_id = await self._lookup_one(resource_id, signature)
            if fix_id:
                via_source = resource_id != resource.resource_id
                signature_lookups_total.labels(
                    result="hit_source" if via_source else "hit_own"
                ).inc()
                return SignatureHit(fix_id, resource_id, via_source)
        signature_lookups_total.labels(result="miss").inc()
        return None

    async def _lookup_one(self, resource_id: str, signature: str) -> Optional[str]:
        cache_key = CacheKeys.signature(resource_id, signature)
        from_cache = True
        fix_id = await self._cache.get(cache_key)
        if not isinstance(fix_id, str) or not fix_id:
            from_cache = False
            fix_id = await self._store.get_signature_entry(resource_id, signature)
        if not fix_id:
            return None

        job = await self._store.get_fix_job(fix_id)
        result = await self._store.get_fix_result(fix_id) if job is not None else None
        if job is None or job.status != FixStatus.COMPLETED or result is None:
            signature_lookups_total.labels(result="stale").inc()
            logger.info(
                "signature_entry_stale",
                extra={"resource_id": resource_id, "fix_id": fix_id, "signature": signature},
            )
            self._background.spawn(self._cache.delete(cache_key), name="cache.sig_evict")
            await self._store.delete_signature_entry_if(resource_id, signature, fix_id)
            return None
        if not from_cache:
            self.warm(resource_id, signature, fix_id)
        return fix_id

    def warm(self, resource_id: str, signature: str, fix_id: str) -> None:
        self._background.spawn(
            self._cache.set(
                CacheKeys.signature(resource_id, signature),
                fix_id,
                self._settings.CACHE_TTL_SIGNATURE,
            ),
            name="cache.signature",
        )

    async def forget(self, resource_id: str, signature: str, fix_id: str) -> None:
        removed = await self._store.delete_signature_entry_if(resource_id, signature, fix_id)
        self._background.spawn(
            self._cache.delete(CacheKeys.signature(resource_id, signature)),
            name="cache.sig_evict",
        )
        if removed:
            logger.info(
                "signature_entry_removed",
                extra={"resource_id": resource_id, "fix_id": fix_id, "signature": signature},
            )
