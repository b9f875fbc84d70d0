"""Quota decisions for API keys.

Two independent mechanisms, both of which must allow a request:

- Fixed window rate limiter over (request_count, last_request,
  rate_limit_time_window, rate_limit_max).
- Refill bucket over (remaining, refill_amount, refill_interval,
  last_refill_at).

Functions here are pure: they read a snapshot of the key and return the
values to persist if the request is accepted. Persisting them atomically
is the verifier's job.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime

from keygate.models.api_key import ApiKey
from keygate.utils.datetime import after_ms


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    request_count: int
    reset_at: datetime | None = None


@dataclass(frozen=True)
class RefillDecision:
    allowed: bool
    remaining: int | None
    last_refill_at: datetime | None
    refilled: bool = False


def is_expired(expires_at: datetime | None, now: datetime) -> bool:
    """An absent expiry never expires."""
    return expires_at is not None and now > expires_at


def check_rate_limit(key: ApiKey, now: datetime) -> RateLimitDecision:
    """Decide the fixed-window rate limit for one request.

    Returns the request_count to store when the request is accepted, or
    ``allowed=False`` with the window end as ``reset_at``.
    """
    window = key.rate_limit_time_window
    limit = key.rate_limit_max

    if not key.rate_limit_enabled or not limit or not window:
        return RateLimitDecision(allowed=True, request_count=key.request_count + 1)

    # Never used: no window open yet
    if key.last_request is None:
        return RateLimitDecision(allowed=True, request_count=key.request_count + 1)

    window_end = after_ms(key.last_request, window)
    if now >= window_end:
        return RateLimitDecision(allowed=True, request_count=1)

    if key.request_count >= limit:
        return RateLimitDecision(
            allowed=False,
            request_count=key.request_count,
            reset_at=window_end,
        )

    return RateLimitDecision(allowed=True, request_count=key.request_count + 1)


def is_refill_due(
    last_refill_at: datetime | None,
    refill_interval: int | None,
    now: datetime,
) -> bool:
    if not refill_interval or last_refill_at is None:
        return False
    return now >= after_ms(last_refill_at, refill_interval)


def apply_refill(key: ApiKey, now: datetime) -> RefillDecision:
    """Refill (when due) and then consume one unit of ``remaining``.

    A request that would leave ``remaining`` below zero is rejected and the
    stored values are returned untouched.
    """
    if key.remaining is None:
        return RefillDecision(
            allowed=True,
            remaining=None,
            last_refill_at=key.last_refill_at,
        )

    balance = key.remaining
    last_refill_at = key.last_refill_at
    refilled = is_refill_due(key.last_refill_at, key.refill_interval, now)
    if refilled:
        balance += key.refill_amount or 0
        last_refill_at = now

    balance -= 1
    if balance < 0:
        return RefillDecision(
            allowed=False,
            remaining=key.remaining,
            last_refill_at=key.last_refill_at,
        )

    return RefillDecision(
        allowed=True,
        remaining=balance,
        last_refill_at=last_refill_at,
        refilled=refilled,
    )


def seconds_until(reset_at: datetime, now: datetime) -> int:
    """Whole seconds until ``reset_at``, at least 1."""
    return max(1, math.ceil((reset_at - now).total_seconds()))


def format_retry_after(reset_at: datetime, now: datetime) -> str:
    """Human-readable retry hint: "in 42 seconds", "in 2 minutes", ..."""
    seconds = seconds_until(reset_at, now)
    if seconds < 60:
        value, unit = seconds, "second"
    elif seconds < 3600:
        value, unit = math.ceil(seconds / 60), "minute"
    else:
        value, unit = math.ceil(seconds / 3600), "hour"
    return f"in {value} {unit}{'' if value == 1 else 's'}"
