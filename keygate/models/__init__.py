"""SQLModel data models."""

from keygate.models.api_key import ApiKey

__all__ = ["ApiKey"]
