"""Metering ledger: atomic credit reservation plus content-policy strikes.

``reserve`` relies on the store's ``try_consume`` primitive, which checks the
limit and increments the consumed counter in one step (a Lua script on
Redis, a lock in memory). The audit entry written afterwards is a detached
background task; losing it never affects the reservation.
"""

from __future__ import annotations

import logging
from typing import Optional

from roomfix.core.config import Settings
from roomfix.core.errors import ForbiddenError, LimitReachedError, ValidationError
from roomfix.core.models import (
    LedgerEntry,
    MediaKind,
    MeteringAccount,
    TransactionType,
    ViolationRecord,
)
from roomfix.core.store import DurableStore
from roomfix.utils.background import BackgroundTasks
from roomfix.utils.cache import CacheHandle, CacheKeys
from roomfix.utils.metrics import content_violations_total, credit_reservations_total

logger = logging.getLogger(__name__)


def transaction_type_for(kind: MediaKind, fix: bool) -> TransactionType:
    if kind == MediaKind.VIDEO:
        return TransactionType.VIDEO_FIX if fix else TransactionType.VIDEO_ANALYSIS
    return TransactionType.IMAGE_FIX if fix else TransactionType.IMAGE_ANALYSIS


class MeteringLedger:
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

    def cost_for(self, kind: MediaKind, fix: bool = False) -> int:
        s = self._settings
        if kind == MediaKind.VIDEO:
            return s.VIDEO_FIX_CREDIT_COST if fix else s.VIDEO_CREDIT_COST
        return s.IMAGE_FIX_CREDIT_COST if fix else s.IMAGE_CREDIT_COST

    async def get_account(self, owner_id: str) -> MeteringAccount:
        cached = await self._cache.get(CacheKeys.account(owner_id))
        if cached is not None:
            try:
                return MeteringAccount.model_validate(cached)
            except ValueError:
                logger.debug("account_cache_invalid", extra={"owner_id": owner_id})
        account = await self._store.get_account(owner_id, self._settings.DEFAULT_CREDIT_LIMIT)
        self._background.spawn(
            self._cache.set(
                CacheKeys.account(owner_id),
                account.model_dump(mode="json"),
                self._settings.CACHE_TTL_ACCOUNT,
            ),
            name="cache.account",
        )
        return account

    async def ensure_not_blocked(self, owner_id: str) -> None:
        # Read the store directly; a stale cached account must not unblock anyone.
        account = await self._store.get_account(owner_id, self._settings.DEFAULT_CREDIT_LIMIT)
        if account.blocked:
            raise ForbiddenError("account", owner_id, owner_id)

    async def reserve(
        self,
        owner_id: str,
        amount: int,
        transaction_type: TransactionType,
        resource_ref: str,
    ) -> int:
        """Reserve ``amount`` credits and return the remaining balance.

        Raises ``LimitReachedError`` without writing anything when the
        reservation would push consumed past the account limit.
        """
        if amount <= 0:
            raise ValidationError("Reservation amount must be positive", field="amount")
        outcome = await self._store.try_consume(
            owner_id, amount, self._settings.DEFAULT_CREDIT_LIMIT
        )
        if not outcome.committed:
            credit_reservations_total.labels(
                transaction_type=transaction_type.value, result="limit_reached"
            ).inc()
            logger.info(
                "credit_reservation_rejected",
                extra={
                    "owner_id": owner_id,
                    "transaction_type": transaction_type.value,
                    "amount": amount,
                    "remaining": outcome.remaining,
                },
            )
            raise LimitReachedError(owner_id, amount, outcome.remaining)

        credit_reservations_total.labels(
            transaction_type=transaction_type.value, result="ok"
        ).inc()
        entry = LedgerEntry(
            owner_id=owner_id,
            transaction_type=transaction_type,
            amount=amount,
            resource_ref=resource_ref,
            balance_after=outcome.remaining,
        )
        self._background.spawn(self._store.append_ledger_entry(entry), name="ledger.audit")
        self._background.spawn(
            self._cache.delete(CacheKeys.account(owner_id)), name="cache.account_invalidate"
        )
        logger.info(
            "credit_reserved",
            extra={
                "owner_id": owner_id,
                "transaction_type": transaction_type.value,
                "amount": amount,
                "remaining": outcome.remaining,
            },
        )
        return outcome.remaining

    async def refund(self, owner_id: str, amount: int, resource_ref: str) -> int:
        """Return credits reserved for work that was never queued."""
        outcome = await self._store.release_credits(
            owner_id, amount, self._settings.DEFAULT_CREDIT_LIMIT
        )
        credit_reservations_total.labels(
            transaction_type=TransactionType.REFUND.value, result="ok"
        ).inc()
        entry = LedgerEntry(
            owner_id=owner_id,
            transaction_type=TransactionType.REFUND,
            amount=-amount,
            resource_ref=resource_ref,
            balance_after=outcome.remaining,
        )
        self._background.spawn(self._store.append_ledger_entry(entry), name="ledger.audit")
        self._background.spawn(
            self._cache.delete(CacheKeys.account(owner_id)), name="cache.account_invalidate"
        )
        logger.info(
            "credit_refunded",
            extra={"owner_id": owner_id, "resource_id": resource_ref, "amount": amount},
        )
        return outcome.remaining

    async def record_violation(
        self,
        owner_id: str,
        category: str,
        reason: str = "",
        resource_ref: Optional[str] = None,
    ) -> MeteringAccount:
        account = await self._store.record_violation(
            ViolationRecord(
                owner_id=owner_id, category=category, reason=reason, resource_ref=resource_ref
            ),
            self._settings.DEFAULT_CREDIT_LIMIT,
            self._settings.MAX_CONTENT_VIOLATIONS,
        )
        content_violations_total.labels(category=category).inc()
        self._background.spawn(
            self._cache.delete(CacheKeys.account(owner_id)), name="cache.account_invalidate"
        )
        logger.warning(
            "content_violation_recorded",
            extra={
                "owner_id": owner_id,
                "category": category,
                "resource_id": resource_ref,
                "status": "blocked" if account.blocked else "active",
            },
        )
        return account
