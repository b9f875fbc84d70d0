"""Datetime helpers.

Timestamps are stored as naive UTC datetimes; these helpers keep that
convention in one place.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta


def utcnow() -> datetime:
    """Return current UTC time as a naive datetime."""
    return datetime.now(UTC).replace(tzinfo=None)


def after_ms(moment: datetime, milliseconds: int) -> datetime:
    """Return ``moment`` shifted forward by ``milliseconds``."""
    return moment + timedelta(milliseconds=milliseconds)
