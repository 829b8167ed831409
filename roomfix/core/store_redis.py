"""Redis-backed durable store shared by API processes and workers.

Key layout (``{p}`` is the configured key prefix):

- ``{p}:resource:{id}`` JSON record, ``{p}:resource:{id}:fix_count`` counter,
  ``{p}:resource:{id}:fix_seq`` version sequence, ``{p}:resource:{id}:fixes``
  zset of fix IDs scored by version
- ``{p}:analysis:{id}`` JSON document (schema-versioned)
- ``{p}:fix:{id}`` / ``{p}:fix_result:{id}`` JSON records
- ``{p}:owner:{owner}:active_fixes`` set of non-terminal fix IDs
- ``{p}:hash:{owner}:{digest}`` -> resource ID (``SET NX``)
- ``{p}:sig:{resource}:{signature}`` -> fix ID (``SET NX``)
- ``{p}:account:{owner}`` hash, ``{p}:account:{owner}:ledger`` /
  ``{p}:account:{owner}:violations`` lists

The metering reservation and the fix completion commit run as Lua scripts,
so each check and its writes are a single server-side step.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import redis.asyncio as redis

from roomfix.core.errors import NotFoundError
from roomfix.core.models import (
    Analysis,
    FixJob,
    FixResult,
    LedgerEntry,
    MeteringAccount,
    Resource,
    ViolationRecord,
    utcnow,
)
from roomfix.core.store import ConsumeOutcome, analysis_from_document, dump

logger = logging.getLogger(__name__)

_LUA_RESERVE = """
local key = KEYS[1]
local amount = tonumber(ARGV[1])
local limit = tonumber(redis.call('HGET', key, 'limit'))
if not limit then
  limit = tonumber(ARGV[2])
  redis.call('HSET', key, 'limit', limit)
end
local consumed = tonumber(redis.call('HGET', key, 'consumed')) or 0
if consumed + amount > limit then
  return {0, consumed, limit}
end
consumed = redis.call('HINCRBY', key, 'consumed', amount)
return {1, consumed, limit}
"""

# Never drops consumed below zero.
_LUA_RELEASE = """
local key = KEYS[1]
local consumed = tonumber(redis.call('HGET', key, 'consumed')) or 0
local released = math.min(consumed, tonumber(ARGV[1]))
consumed = redis.call('HINCRBY', key, 'consumed', -released)
local limit = tonumber(redis.call('HGET', key, 'limit')) or tonumber(ARGV[2])
return {1, consumed, limit}
"""

_LUA_DELETE_IF_EQUAL = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""

# KEYS: fix, resource, fix_result, active set, fix_count, signature
# ARGV: job json, result json, fix id
_LUA_COMMIT_FIX = """
if redis.call('EXISTS', KEYS[1]) == 0 then
  return -1
end
if redis.call('EXISTS', KEYS[2]) == 0 then
  return -2
end
redis.call('SET', KEYS[1], ARGV[1])
redis.call('SET', KEYS[3], ARGV[2])
redis.call('SREM', KEYS[4], ARGV[3])
redis.call('INCR', KEYS[5])
if redis.call('SET', KEYS[6], ARGV[3], 'NX') then
  return 1
end
return 0
"""


def _to_str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def _hgetall_str(raw: Dict[Any, Any]) -> Dict[str, str]:
    return {_to_str(k): _to_str(v) for k, v in (raw or {}).items()}


class RedisStore:
    def __init__(self, client: Any, *, key_prefix: str = "roomfix") -> None:
        self._redis = client
        self._prefix = key_prefix.strip() or "roomfix"
        self._reserve_script = client.register_script(_LUA_RESERVE)
        self._release_script = client.register_script(_LUA_RELEASE)
        self._delete_if_equal = client.register_script(_LUA_DELETE_IF_EQUAL)
        self._commit_fix = client.register_script(_LUA_COMMIT_FIX)

    @classmethod
    def from_url(cls, url: str, *, key_prefix: str = "roomfix") -> "RedisStore":
        return cls(redis.from_url(url, decode_responses=True), key_prefix=key_prefix)

    # -- keys -----------------------------------------------------------------

    def _resource_key(self, resource_id: str) -> str:
        return f"{self._prefix}:resource:{resource_id}"

    def _analysis_key(self, resource_id: str) -> str:
        return f"{self._prefix}:analysis:{resource_id}"

    def _fix_key(self, fix_id: str) -> str:
        return f"{self._prefix}:fix:{fix_id}"

    def _fix_result_key(self, fix_id: str) -> str:
        return f"{self._prefix}:fix_result:{fix_id}"

    def _active_key(self, owner_id: str) -> str:
        return f"{self._prefix}:owner:{owner_id}:active_fixes"

    def _hash_key(self, owner_id: str, digest: str) -> str:
        return f"{self._prefix}:hash:{owner_id}:{digest}"

    def _sig_key(self, resource_id: str, signature: str) -> str:
        return f"{self._prefix}:sig:{resource_id}:{signature}"

    def _account_key(self, owner_id: str) -> str:
        return f"{self._prefix}:account:{owner_id}"

    async def _get_json(self, key: str) -> Optional[Dict[str, Any]]:
        raw = await self._redis.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    async def _set_json(self, key: str, doc: Dict[str, Any]) -> None:
        await self._redis.set(key, json.dumps(doc))

    # -- resources ------------------------------------------------------------

    async def get_resource(self, resource_id: str) -> Optional[Resource]:
        key = self._resource_key(resource_id)
        raw, fix_count = await self._redis.mget(key, f"{key}:fix_count")
        if raw is None:
            return None
        doc = json.loads(raw)
        doc["fix_count"] = int(_to_str(fix_count) or 0)
        return Resource.model_validate(doc)

    async def put_resource(self, resource: Resource) -> None:
        await self._set_json(self._resource_key(resource.resource_id), dump(resource))

    async def update_resource(self, resource_id: str, **fields: Any) -> Optional[Resource]:
        current = await self.get_resource(resource_id)
        if current is None:
            return None
        fields.pop("fix_count", None)
        updated = current.model_copy(update={**fields, "updated_at": utcnow()})
        await self.put_resource(updated)
        return updated

    async def delete_resource(self, resource_id: str) -> None:
        key = self._resource_key(resource_id)
        await self._redis.delete(key, f"{key}:fix_count", f"{key}:fix_seq", f"{key}:fixes")

    # -- analyses -------------------------------------------------------------

    async def get_analysis(self, resource_id: str) -> Optional[Analysis]:
        doc = await self._get_json(self._analysis_key(resource_id))
        return analysis_from_document(doc) if doc is not None else None

    async def put_analysis(self, analysis: Analysis) -> None:
        await self._set_json(self._analysis_key(analysis.resource_id), dump(analysis))

    async def delete_analysis(self, resource_id: str) -> None:
        await self._redis.delete(self._analysis_key(resource_id))

    # -- fix jobs -------------------------------------------------------------

    async def get_fix_job(self, fix_id: str) -> Optional[FixJob]:
        doc = await self._get_json(self._fix_key(fix_id))
        return FixJob.model_validate(doc) if doc is not None else None

    async def put_fix_job(self, job: FixJob) -> None:
        await self._set_json(self._fix_key(job.fix_id), dump(job))
        await self._redis.zadd(
            f"{self._resource_key(job.resource_id)}:fixes", {job.fix_id: float(job.version)}
        )
        if job.is_finished():
            await self._redis.srem(self._active_key(job.owner_id), job.fix_id)
        else:
            await self._redis.sadd(self._active_key(job.owner_id), job.fix_id)

    async def update_fix_job(self, fix_id: str, **fields: Any) -> Optional[FixJob]:
        current = await self.get_fix_job(fix_id)
        if current is None:
            return None
        updated = current.model_copy(update=fields)
        await self.put_fix_job(updated)
        return updated

    async def delete_fix_job(self, fix_id: str) -> None:
        job = await self.get_fix_job(fix_id)
        await self._redis.delete(self._fix_key(fix_id))
        if job is not None:
            await self._redis.srem(self._active_key(job.owner_id), fix_id)
            await self._redis.zrem(f"{self._resource_key(job.resource_id)}:fixes", fix_id)

    async def list_fix_jobs(self, resource_id: str) -> List[FixJob]:
        fix_ids = await self._redis.zrange(f"{self._resource_key(resource_id)}:fixes", 0, -1)
        jobs: List[FixJob] = []
        for raw_id in fix_ids:
            job = await self.get_fix_job(_to_str(raw_id))
            if job is not None:
                jobs.append(job)
        return jobs

    async def next_fix_version(self, resource_id: str) -> int:
        return int(await self._redis.incr(f"{self._resource_key(resource_id)}:fix_seq"))

    async def count_active_fix_jobs(self, owner_id: str) -> int:
        """Count non-terminal jobs, pruning leaked set members as a side effect.

        Members leak when a worker dies before writing a terminal status or a
        job record is deleted out from under the set.
        """
        active_key = self._active_key(owner_id)
        members = await self._redis.smembers(active_key)
        active = 0
        for raw_id in members or ():
            fix_id = _to_str(raw_id).strip()
            job = await self.get_fix_job(fix_id) if fix_id else None
            if job is None or job.is_finished():
                await self._redis.srem(active_key, raw_id)
                continue
            active += 1
        return active

    async def get_fix_result(self, fix_id: str) -> Optional[FixResult]:
        doc = await self._get_json(self._fix_result_key(fix_id))
        return FixResult.model_validate(doc) if doc is not None else None

    async def delete_fix_result(self, fix_id: str) -> None:
        await self._redis.delete(self._fix_result_key(fix_id))

    async def commit_fix_completion(self, job: FixJob, result: FixResult) -> bool:
        resource_key = self._resource_key(job.resource_id)
        claimed = int(
            await self._commit_fix(
                keys=[
                    self._fix_key(job.fix_id),
                    resource_key,
                    self._fix_result_key(result.fix_id),
                    self._active_key(job.owner_id),
                    f"{resource_key}:fix_count",
                    self._sig_key(job.resource_id, job.signature),
                ],
                args=[json.dumps(dump(job)), json.dumps(dump(result)), job.fix_id],
            )
        )
        if claimed == -1:
            raise NotFoundError("fix", job.fix_id)
        if claimed == -2:
            raise NotFoundError("resource", job.resource_id)
        return claimed == 1

    # -- content hash index ---------------------------------------------------

    async def get_hash_entry(self, owner_id: str, digest: str) -> Optional[str]:
        raw = await self._redis.get(self._hash_key(owner_id, digest))
        return _to_str(raw) or None

    async def put_hash_entry_if_absent(self, owner_id: str, digest: str, resource_id: str) -> bool:
        return bool(await self._redis.set(self._hash_key(owner_id, digest), resource_id, nx=True))

    async def delete_hash_entry_if(self, owner_id: str, digest: str, resource_id: str) -> bool:
        deleted = await self._delete_if_equal(
            keys=[self._hash_key(owner_id, digest)], args=[resource_id]
        )
        return int(deleted) == 1

    # -- signature index ------------------------------------------------------

    async def get_signature_entry(self, resource_id: str, signature: str) -> Optional[str]:
        raw = await self._redis.get(self._sig_key(resource_id, signature))
        return _to_str(raw) or None

    async def delete_signature_entry_if(self, resource_id: str, signature: str, fix_id: str) -> bool:
        deleted = await self._delete_if_equal(
            keys=[self._sig_key(resource_id, signature)], args=[fix_id]
        )
        return int(deleted) == 1

    # -- metering -------------------------------------------------------------

    def _account_from_hash(self, owner_id: str, data: Dict[str, str], default_limit: int) -> MeteringAccount:
        blocked_at = data.get("blocked_at") or None
        return MeteringAccount(
            owner_id=owner_id,
            consumed=int(data.get("consumed") or 0),
            limit=int(data.get("limit") or default_limit),
            violation_count=int(data.get("violation_count") or 0),
            blocked=(data.get("blocked") or "0") == "1",
            blocked_at=datetime.fromisoformat(blocked_at) if blocked_at else None,
        )

    async def get_account(self, owner_id: str, default_limit: int) -> MeteringAccount:
        key = self._account_key(owner_id)
        await self._redis.hsetnx(key, "limit", default_limit)
        data = _hgetall_str(await self._redis.hgetall(key))
        return self._account_from_hash(owner_id, data, default_limit)

    async def try_consume(self, owner_id: str, amount: int, default_limit: int) -> ConsumeOutcome:
        committed, consumed, limit = await self._reserve_script(
            keys=[self._account_key(owner_id)], args=[int(amount), int(default_limit)]
        )
        return ConsumeOutcome(int(committed) == 1, int(consumed), int(limit))

    async def release_credits(self, owner_id: str, amount: int, default_limit: int) -> ConsumeOutcome:
        _, consumed, limit = await self._release_script(
            keys=[self._account_key(owner_id)], args=[int(amount), int(default_limit)]
        )
        return ConsumeOutcome(True, int(consumed), int(limit))

    async def append_ledger_entry(self, entry: LedgerEntry) -> None:
        await self._redis.rpush(
            f"{self._account_key(entry.owner_id)}:ledger", json.dumps(dump(entry))
        )

    async def list_ledger_entries(self, owner_id: str) -> List[LedgerEntry]:
        raw = await self._redis.lrange(f"{self._account_key(owner_id)}:ledger", 0, -1)
        return [LedgerEntry.model_validate(json.loads(_to_str(r))) for r in raw or ()]

    async def record_violation(
        self, record: ViolationRecord, default_limit: int, max_violations: int
    ) -> MeteringAccount:
        key = self._account_key(record.owner_id)
        await self._redis.hsetnx(key, "limit", default_limit)
        count = int(await self._redis.hincrby(key, "violation_count", 1))
        if count >= max_violations:
            await self._redis.hset(key, "blocked", "1")
            await self._redis.hsetnx(key, "blocked_at", record.recorded_at.isoformat())
        await self._redis.rpush(f"{key}:violations", json.dumps(dump(record)))
        data = _hgetall_str(await self._redis.hgetall(key))
        return self._account_from_hash(record.owner_id, data, default_limit)

    async def close(self) -> None:
        try:
            await self._redis.aclose()
        except Exception:
            logger.debug("store_close_failed", exc_info=True)
