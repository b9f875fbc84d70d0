"""Concurrency utilities for Keygate."""

from keygate.concurrency.locks import cleanup_key_lock, get_key_lock

__all__ = ["get_key_lock", "cleanup_key_lock"]
