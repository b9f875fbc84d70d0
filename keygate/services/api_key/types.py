"""Verification result types."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel

from keygate.models.api_key import ApiKey


class RejectionCode(str, Enum):
    """Stable rejection codes returned by verification."""

    INVALID_FORMAT = "INVALID_FORMAT"
    NOT_FOUND = "NOT_FOUND"
    DISABLED = "DISABLED"
    EXPIRED = "EXPIRED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    NO_REMAINING = "NO_REMAINING"
    INSUFFICIENT_PERMISSIONS = "INSUFFICIENT_PERMISSIONS"


_DEFAULT_MESSAGES = {
    RejectionCode.INVALID_FORMAT: "Invalid API key format",
    RejectionCode.NOT_FOUND: "API key not found",
    RejectionCode.DISABLED: "API key is disabled",
    RejectionCode.EXPIRED: "API key has expired",
    RejectionCode.RATE_LIMIT_EXCEEDED: "Rate limit exceeded",
    RejectionCode.NO_REMAINING: "API key has no remaining requests",
    RejectionCode.INSUFFICIENT_PERMISSIONS: "API key does not have required permissions",
}


class VerificationError(BaseModel):
    code: RejectionCode
    message: str
    # Rate limit only
    retry_after: str | None = None
    retry_after_seconds: int | None = None
    reset_at: datetime | None = None


class ResolvedKey(BaseModel):
    """Public view of a key record. Never carries the hash."""

    id: str
    owner_id: str
    name: str | None
    prefix: str | None
    start: str
    enabled: bool
    expires_at: datetime | None
    permissions: dict[str, list[str]] | None
    metadata: dict[str, Any] | None
    rate_limit_enabled: bool
    rate_limit_max: int | None
    rate_limit_time_window: int | None
    request_count: int
    last_request: datetime | None
    remaining: int | None
    refill_amount: int | None
    refill_interval: int | None
    last_refill_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_record(cls, record: ApiKey, /, **overrides: Any) -> "ResolvedKey":
        data = {
            "id": record.id,
            "owner_id": record.owner_id,
            "name": record.name,
            "prefix": record.prefix,
            "start": record.start,
            "enabled": record.enabled,
            "expires_at": record.expires_at,
            "permissions": record.permissions,
            "metadata": record.metadata_dict,
            "rate_limit_enabled": record.rate_limit_enabled,
            "rate_limit_max": record.rate_limit_max,
            "rate_limit_time_window": record.rate_limit_time_window,
            "request_count": record.request_count,
            "last_request": record.last_request,
            "remaining": record.remaining,
            "refill_amount": record.refill_amount,
            "refill_interval": record.refill_interval,
            "last_refill_at": record.last_refill_at,
            "created_at": record.created_at,
            "updated_at": record.updated_at,
        }
        data.update(overrides)
        return cls(**data)


class VerificationResult(BaseModel):
    """Outcome of one verification: either ``key`` or ``error`` is set."""

    valid: bool
    key: ResolvedKey | None = None
    error: VerificationError | None = None

    @classmethod
    def accept(cls, key: ResolvedKey) -> "VerificationResult":
        return cls(valid=True, key=key)

    @classmethod
    def reject(
        cls,
        code: RejectionCode,
        message: str | None = None,
        **extra: Any,
    ) -> "VerificationResult":
        return cls(
            valid=False,
            error=VerificationError(
                code=code,
                message=message or _DEFAULT_MESSAGES[code],
                **extra,
            ),
        )
