"""Durable store for the six logical collections.

Resources, analyses, fix jobs, fix results, the content-hash index, the
signature index and metering accounts each live in their own namespace. Only
``commit_fix_completion`` writes across collections, and it does so as one
unit.

``InMemoryStore`` is used by tests and single-process runs; ``RedisStore``
(``roomfix.core.store_redis``) is the shared backend for multiple workers.
Records are kept as JSON documents in both, so analyses always pass through
the schema adapter on the way out.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Tuple

from roomfix.core.config import Settings
from roomfix.core.errors import NotFoundError
from roomfix.core.models import (
    Analysis,
    FixJob,
    FixResult,
    FixStatus,
    LedgerEntry,
    MeteringAccount,
    Resource,
    ViolationRecord,
    utcnow,
)
from roomfix.core.schema import upgrade_analysis_document

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConsumeOutcome:
    committed: bool
    consumed: int
    limit: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.consumed)


def dump(model: Any) -> Dict[str, Any]:
    return model.model_dump(mode="json")


def analysis_from_document(doc: Dict[str, Any]) -> Analysis:
    return Analysis.model_validate(upgrade_analysis_document(dict(doc)))


class DurableStore(Protocol):
    # resources
    async def get_resource(self, resource_id: str) -> Optional[Resource]: ...
    async def put_resource(self, resource: Resource) -> None: ...
    async def update_resource(self, resource_id: str, **fields: Any) -> Optional[Resource]: ...
    async def delete_resource(self, resource_id: str) -> None: ...

    # analyses
    async def get_analysis(self, resource_id: str) -> Optional[Analysis]: ...
    async def put_analysis(self, analysis: Analysis) -> None: ...
    async def delete_analysis(self, resource_id: str) -> None: ...

    # fix jobs / results
    async def get_fix_job(self, fix_id: str) -> Optional[FixJob]: ...
    async def put_fix_job(self, job: FixJob) -> None: ...
    async def update_fix_job(self, fix_id: str, **fields: Any) -> Optional[FixJob]: ...
    async def delete_fix_job(self, fix_id: str) -> None: ...
    async def list_fix_jobs(self, resource_id: str) -> List[FixJob]: ...
    async def next_fix_version(self, resource_id: str) -> int: ...
    async def count_active_fix_jobs(self, owner_id: str) -> int: ...
    async def get_fix_result(self, fix_id: str) -> Optional[FixResult]: ...
    async def delete_fix_result(self, fix_id: str) -> None: ...
    async def commit_fix_completion(self, job: FixJob, result: FixResult) -> bool:
        """Persist the terminal job, its result, the fix count and the signature entry.

        Raises ``NotFoundError`` without writing anything when the job or its
        resource was deleted in flight. Returns whether the signature entry
        was claimed by this job.
        """
        ...

    # content hash index
    async def get_hash_entry(self, owner_id: str, digest: str) -> Optional[str]: ...
    async def put_hash_entry_if_absent(self, owner_id: str, digest: str, resource_id: str) -> bool: ...
    async def delete_hash_entry_if(self, owner_id: str, digest: str, resource_id: str) -> bool: ...

    # signature index
    async def get_signature_entry(self, resource_id: str, signature: str) -> Optional[str]: ...
    async def delete_signature_entry_if(self, resource_id: str, signature: str, fix_id: str) -> bool: ...

    # metering
    async def get_account(self, owner_id: str, default_limit: int) -> MeteringAccount: ...
    async def try_consume(self, owner_id: str, amount: int, default_limit: int) -> ConsumeOutcome: ...
    async def release_credits(self, owner_id: str, amount: int, default_limit: int) -> ConsumeOutcome: ...
    async def append_ledger_entry(self, entry: LedgerEntry) -> None: ...
    async def list_ledger_entries(self, owner_id: str) -> List[LedgerEntry]: ...
    async def record_violation(
        self, record: ViolationRecord, default_limit: int, max_violations: int
    ) -> MeteringAccount: ...


class InMemoryStore:
    """Single-process store; atomic sections are serialized by one lock."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._resources: Dict[str, Dict[str, Any]] = {}
        self._analyses: Dict[str, Dict[str, Any]] = {}
        self._fix_jobs: Dict[str, Dict[str, Any]] = {}
        self._fix_results: Dict[str, Dict[str, Any]] = {}
        self._fix_seq: Dict[str, int] = {}
        self._hash_index: Dict[Tuple[str, str], str] = {}
        self._signature_index: Dict[Tuple[str, str], str] = {}
        self._accounts: Dict[str, MeteringAccount] = {}
        self._ledger: Dict[str, List[Dict[str, Any]]] = {}
        self._violations: Dict[str, List[Dict[str, Any]]] = {}

    # -- resources ------------------------------------------------------------

    async def get_resource(self, resource_id: str) -> Optional[Resource]:
        doc = self._resources.get(resource_id)
        return Resource.model_validate(doc) if doc is not None else None

    async def put_resource(self, resource: Resource) -> None:
        self._resources[resource.resource_id] = dump(resource)

    async def update_resource(self, resource_id: str, **fields: Any) -> Optional[Resource]:
        async with self._lock:
            current = await self.get_resource(resource_id)
            if current is None:
                return None
            updated = current.model_copy(update={**fields, "updated_at": utcnow()})
            self._resources[resource_id] = dump(updated)
            return updated

    async def delete_resource(self, resource_id: str) -> None:
        self._resources.pop(resource_id, None)
        self._fix_seq.pop(resource_id, None)

    # -- analyses -------------------------------------------------------------

    async def get_analysis(self, resource_id: str) -> Optional[Analysis]:
        doc = self._analyses.get(resource_id)
        return analysis_from_document(doc) if doc is not None else None

    async def put_analysis(self, analysis: Analysis) -> None:
        self._analyses[analysis.resource_id] = dump(analysis)

    async def put_analysis_document(self, resource_id: str, doc: Dict[str, Any]) -> None:
        """Store a raw (possibly older-schema) document as-is."""
        self._analyses[resource_id] = dict(doc)

    async def delete_analysis(self, resource_id: str) -> None:
        self._analyses.pop(resource_id, None)

    # -- fix jobs -------------------------------------------------------------

    async def get_fix_job(self, fix_id: str) -> Optional[FixJob]:
        doc = self._fix_jobs.get(fix_id)
        return FixJob.model_validate(doc) if doc is not None else None

    async def put_fix_job(self, job: FixJob) -> None:
        self._fix_jobs[job.fix_id] = dump(job)

    async def update_fix_job(self, fix_id: str, **fields: Any) -> Optional[FixJob]:
        async with self._lock:
            current = await self.get_fix_job(fix_id)
            if current is None:
                return None
            updated = current.model_copy(update=fields)
            self._fix_jobs[fix_id] = dump(updated)
            return updated

    async def delete_fix_job(self, fix_id: str) -> None:
        self._fix_jobs.pop(fix_id, None)

    async def list_fix_jobs(self, resource_id: str) -> List[FixJob]:
        jobs = [
            FixJob.model_validate(doc)
            for doc in self._fix_jobs.values()
            if doc["resource_id"] == resource_id
        ]
        return sorted(jobs, key=lambda j: j.version)

    async def next_fix_version(self, resource_id: str) -> int:
        async with self._lock:
            seq = self._fix_seq.get(resource_id, 0) + 1
            self._fix_seq[resource_id] = seq
            return seq

    async def count_active_fix_jobs(self, owner_id: str) -> int:
        active = {FixStatus.PENDING.value, FixStatus.PROCESSING.value}
        return sum(
            1
            for doc in self._fix_jobs.values()
            if doc["owner_id"] == owner_id and doc["status"] in active
        )

    async def get_fix_result(self, fix_id: str) -> Optional[FixResult]:
        doc = self._fix_results.get(fix_id)
        return FixResult.model_validate(doc) if doc is not None else None

    async def delete_fix_result(self, fix_id: str) -> None:
        self._fix_results.pop(fix_id, None)

    async def commit_fix_completion(self, job: FixJob, result: FixResult) -> bool:
        async with self._lock:
            if job.fix_id not in self._fix_jobs:
                raise NotFoundError("fix", job.fix_id)
            resource = self._resources.get(job.resource_id)
            if resource is None:
                raise NotFoundError("resource", job.resource_id)
            self._fix_results[result.fix_id] = dump(result)
            self._fix_jobs[job.fix_id] = dump(job)
            resource["fix_count"] = int(resource.get("fix_count") or 0) + 1
            key = (job.resource_id, job.signature)
            if key in self._signature_index:
                return False
            self._signature_index[key] = job.fix_id
            return True

    # -- content hash index ---------------------------------------------------

    async def get_hash_entry(self, owner_id: str, digest: str) -> Optional[str]:
        return self._hash_index.get((owner_id, digest))

    async def put_hash_entry_if_absent(self, owner_id: str, digest: str, resource_id: str) -> bool:
        async with self._lock:
            key = (owner_id, digest)
            if key in self._hash_index:
                return False
            self._hash_index[key] = resource_id
            return True

    async def delete_hash_entry_if(self, owner_id: str, digest: str, resource_id: str) -> bool:
        async with self._lock:
            key = (owner_id, digest)
            if self._hash_index.get(key) != resource_id:
                return False
            del self._hash_index[key]
            return True

    # -- signature index ------------------------------------------------------

    async def get_signature_entry(self, resource_id: str, signature: str) -> Optional[str]:
        return self._signature_index.get((resource_id, signature))

    async def delete_signature_entry_if(self, resource_id: str, signature: str, fix_id: str) -> bool:
        async with self._lock:
            key = (resource_id, signature)
            if self._signature_index.get(key) != fix_id:
                return False
            del self._signature_index[key]
            return True

    # -- metering -------------------------------------------------------------

    def _account(self, owner_id: str, default_limit: int) -> MeteringAccount:
        account = self._accounts.get(owner_id)
        if account is None:
            account = MeteringAccount(owner_id=owner_id, limit=default_limit)
            self._accounts[owner_id] = account
        return account

    async def get_account(self, owner_id: str, default_limit: int) -> MeteringAccount:
        return self._account(owner_id, default_limit).model_copy()

    async def set_account(self, account: MeteringAccount) -> None:
        self._accounts[account.owner_id] = account.model_copy()

    async def try_consume(self, owner_id: str, amount: int, default_limit: int) -> ConsumeOutcome:
        async with self._lock:
            account = self._account(owner_id, default_limit)
            if account.consumed + amount > account.limit:
                return ConsumeOutcome(False, account.consumed, account.limit)
            account.consumed += amount
            return ConsumeOutcome(True, account.consumed, account.limit)

    async def release_credits(self, owner_id: str, amount: int, default_limit: int) -> ConsumeOutcome:
        async with self._lock:
            account = self._account(owner_id, default_limit)
            account.consumed = max(0, account.consumed - amount)
            return ConsumeOutcome(True, account.consumed, account.limit)

    async def append_ledger_entry(self, entry: LedgerEntry) -> None:
        self._ledger.setdefault(entry.owner_id, []).append(dump(entry))

    async def list_ledger_entries(self, owner_id: str) -> List[LedgerEntry]:
        return [LedgerEntry.model_validate(d) for d in self._ledger.get(owner_id, [])]

    async def record_violation(
        self, record: ViolationRecord, default_limit: int, max_violations: int
    ) -> MeteringAccount:
        async with self._lock:
            account = self._account(record.owner_id, default_limit)
            account.violation_count += 1
            if account.violation_count >= max_violations and not account.blocked:
                account.blocked = True
                account.blocked_at = record.recorded_at
            self._violations.setdefault(record.owner_id, []).append(dump(record))
            return account.model_copy()

    async def list_violations(self, owner_id: str) -> List[ViolationRecord]:
        return [ViolationRecord.model_validate(d) for d in self._violations.get(owner_id, [])]


def build_store(settings: Settings) -> DurableStore:
    backend = settings.STORE_BACKEND.strip().lower()
    if backend == "redis":
        from roomfix.core.store_redis import RedisStore

        return RedisStore.from_url(settings.STORE_REDIS_URL, key_prefix=settings.KEY_PREFIX)
    if backend != "memory":
        logger.warning("unknown_store_backend", extra={"stage": backend})
    return InMemoryStore()
