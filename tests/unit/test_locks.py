"""Unit tests for per-key locks."""

from __future__ import annotations

from keygate.concurrency.locks import cleanup_key_lock, get_key_lock, get_lock_count


async def test_same_key_same_lock():
    first = await get_key_lock("key_lock_a")
    second = await get_key_lock("key_lock_a")
    other = await get_key_lock("key_lock_b")

    assert first is second
    assert first is not other

    await cleanup_key_lock("key_lock_a")
    await cleanup_key_lock("key_lock_b")


async def test_cleanup_drops_lock():
    await get_key_lock("key_lock_c")
    before = get_lock_count()

    await cleanup_key_lock("key_lock_c")
    await cleanup_key_lock("key_lock_c")

    assert get_lock_count() == before - 1
