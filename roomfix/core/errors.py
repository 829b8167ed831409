"""Closed error taxonomy for roomfix.

Every failure the core reports to a caller is one of the ``RoomfixError``
subclasses below. Each carries an ``ErrorCode`` discriminant and structured
fields so callers can branch on ``code`` (or ``isinstance``) instead of
parsing messages.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    FORBIDDEN = "FORBIDDEN"
    LIMIT_REACHED = "LIMIT_REACHED"
    TOO_MANY_REQUESTS = "TOO_MANY_REQUESTS"
    CONTENT_POLICY_VIOLATION = "CONTENT_POLICY_VIOLATION"
    TRANSIENT_INFRA = "TRANSIENT_INFRA"


class RoomfixError(Exception):
    code: ErrorCode = ErrorCode.VALIDATION_ERROR
    retryable: bool = False

    def fields(self) -> Dict[str, Any]:
        return {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code.value, "message": str(self), **self.fields()}


class ValidationError(RoomfixError):
    """Bad scope, problem IDs or media; rejected without retry."""

    code = ErrorCode.VALIDATION_ERROR

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)

    def fields(self) -> Dict[str, Any]:
        return {"field": self.field} if self.field else {}


class NotFoundError(RoomfixError):
    code = ErrorCode.NOT_FOUND

    def __init__(self, kind: str, ident: str):
        self.kind = kind
        self.ident = ident
        super().__init__(f"{kind} not found: {ident}")

    def fields(self) -> Dict[str, Any]:
        return {"kind": self.kind, "id": self.ident}


class ForbiddenError(RoomfixError):
    code = ErrorCode.FORBIDDEN

    def __init__(self, kind: str, ident: str, owner_id: str):
        self.kind = kind
        self.ident = ident
        self.owner_id = owner_id
        super().__init__(f"Access denied to {kind} {ident} for owner {owner_id}")

    def fields(self) -> Dict[str, Any]:
        return {"kind": self.kind, "id": self.ident, "owner_id": self.owner_id}


class LimitReachedError(RoomfixError):
    """Metering balance exhausted."""

    code = ErrorCode.LIMIT_REACHED

    def __init__(self, owner_id: str, requested: int, remaining: int):
        self.owner_id = owner_id
        self.requested = requested
        self.remaining = remaining
        super().__init__(
            f"Usage limit reached for {owner_id}: requested {requested}, remaining {remaining}"
        )

    def fields(self) -> Dict[str, Any]:
        return {"owner_id": self.owner_id, "requested": self.requested, "remaining": self.remaining}


class TooManyRequestsError(LimitReachedError):
    """Per-owner concurrency ceiling for in-flight fix jobs."""

    code = ErrorCode.TOO_MANY_REQUESTS

    def __init__(self, owner_id: str, active: int, ceiling: int):
        self.owner_id = owner_id
        self.active = active
        self.ceiling = ceiling
        self.requested = 1
        self.remaining = max(0, ceiling - active)
        RoomfixError.__init__(
            self, f"Too many fix jobs in progress for {owner_id}: {active}/{ceiling}"
        )

    def fields(self) -> Dict[str, Any]:
        return {"owner_id": self.owner_id, "active": self.active, "ceiling": self.ceiling}


class ContentPolicyViolation(RoomfixError):
    code = ErrorCode.CONTENT_POLICY_VIOLATION

    def __init__(self, category: str, reason: str = ""):
        self.category = category
        self.reason = reason
        detail = f": {reason}" if reason else ""
        super().__init__(f"Content rejected by moderation ({category}){detail}")

    @property
    def counts_as_strike(self) -> bool:
        # "error" means the moderation call itself failed, not the content.
        return self.category != "error"

    def fields(self) -> Dict[str, Any]:
        return {"category": self.category}


class TransientInfraError(RoomfixError):
    """Rate limiting or a storage/AI hiccup; safe to retry with backoff."""

    code = ErrorCode.TRANSIENT_INFRA
    retryable = True

    def __init__(self, message: str, retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(message)

    def fields(self) -> Dict[str, Any]:
        return {"retry_after": self.retry_after} if self.retry_after is not None else {}


__all__ = [
    "ErrorCode",
    "RoomfixError",
    "ValidationError",
    "NotFoundError",
    "ForbiddenError",
    "LimitReachedError",
    "TooManyRequestsError",
    "ContentPolicyViolation",
    "TransientInfraError",
]
