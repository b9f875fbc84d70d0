"""API Key data model.

Stores bcrypt hashes of API keys. Plaintext keys are never stored; ``start``
(the prefix plus the first 6 secret characters) is kept as a non-secret
lookup index.
"""

import json
from datetime import datetime
from typing import Any

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from keygate.utils.datetime import utcnow


class ApiKey(SQLModel, table=True):
    """API key record.

    Quota fields (request_count, last_request, remaining, last_refill_at)
    are shared mutable state. Writers must bump ``version`` and guard the
    update on the version they read. Timestamps are naive UTC.
    """

    __tablename__ = "api_keys"

    id: str = Field(primary_key=True)
    owner_id: str = Field(index=True)
    name: str | None = Field(default=None)

    prefix: str | None = Field(default=None)
    start: str = Field(index=True)
    hashed_secret: str

    enabled: bool = Field(default=True, index=True)
    expires_at: datetime | None = Field(default=None, index=True, sa_type=DateTime)

    # JSON object: scope -> [actions]
    permissions_json: str | None = Field(default=None)
    metadata_json: str | None = Field(default=None)

    # Fixed window rate limiter (window in milliseconds)
    rate_limit_enabled: bool = Field(default=False)
    rate_limit_max: int | None = Field(default=None)
    rate_limit_time_window: int | None = Field(default=None)
    request_count: int = Field(default=0)
    last_request: datetime | None = Field(default=None, sa_type=DateTime)

    # Refill bucket (interval in milliseconds); remaining None = unlimited
    remaining: int | None = Field(default=None)
    refill_amount: int | None = Field(default=None)
    refill_interval: int | None = Field(default=None)
    last_refill_at: datetime | None = Field(default=None, sa_type=DateTime)

    version: int = Field(default=0)

    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)

    @property
    def permissions(self) -> dict[str, list[str]] | None:
        if not self.permissions_json:
            return None
        return json.loads(self.permissions_json)

    @property
    def metadata_dict(self) -> dict[str, Any] | None:
        if not self.metadata_json:
            return None
        return json.loads(self.metadata_json)

    def has_quota(self) -> bool:
        """Whether verification decisions depend on stored counters."""
        return self.rate_limit_enabled or self.remaining is not None
