"""Per-key in-memory locks for quota updates.

Verifications of the same key inside one process are serialized so they do
not burn compare-and-swap attempts against each other.

Note: These locks only work within a single process/instance. Across
processes the version-guarded UPDATE in the verifier is what keeps quota
counters consistent.
"""

from __future__ import annotations

import asyncio

# Key: api key id, Value: asyncio.Lock
# Mutated only between awaits, so the event loop already serializes access.
_key_locks: dict[str, asyncio.Lock] = {}


async def get_key_lock(key_id: str) -> asyncio.Lock:
    """Get or create a lock for a specific API key.

    Args:
        key_id: The API key ID to get lock for

    Returns:
        asyncio.Lock for the specified key
    """
    lock = _key_locks.get(key_id)
    if lock is None:
        lock = _key_locks[key_id] = asyncio.Lock()
    return lock


async def cleanup_key_lock(key_id: str) -> None:
    """Drop the lock for a deleted key."""
    _key_locks.pop(key_id, None)


def get_lock_count() -> int:
    """Get current number of locks (for testing/metrics)."""
    return len(_key_locks)
