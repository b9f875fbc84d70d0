"""Keygate services."""
