"""API Key service.

Handles issuance, owner-side management (list, get, update, delete,
rotate), expired-key cleanup, first-boot provisioning and credentials file
output.
"""

from __future__ import annotations

import asyncio
import json
import os
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import structlog
from sqlalchemy import delete, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from keygate.concurrency.locks import cleanup_key_lock
from keygate.config import Settings, get_settings
from keygate.errors import ForbiddenError, NotFoundError, ValidationError
from keygate.models.api_key import ApiKey
from keygate.services.api_key.codec import (
    MIN_SECRET_LENGTH,
    generate_key,
    is_valid_prefix,
)
from keygate.services.api_key.permissions import get_template, validate_permissions
from keygate.utils.datetime import utcnow

logger = structlog.get_logger()

_MAX_NAME_LENGTH = 100
_MAX_SECRET_LENGTH = 256

# Fields an owner may change through update()
_UPDATABLE_FIELDS = frozenset(
    {
        "name",
        "enabled",
        "remaining",
        "refill_amount",
        "refill_interval",
        "rate_limit_enabled",
        "rate_limit_max",
        "rate_limit_time_window",
        "permissions",
        "metadata",
    }
)

# Updatable columns that have no null state
_NON_NULLABLE_FIELDS = ("enabled", "rate_limit_enabled")


@dataclass(frozen=True)
class IssuedKey:
    """A freshly issued key. ``plaintext`` is never retrievable again."""

    plaintext: str
    record: ApiKey


class ApiKeyService:
    """Service for API key lifecycle management."""

    def __init__(self, db_session: AsyncSession, settings: Settings | None = None) -> None:
        self._db = db_session
        self._settings = settings or get_settings()
        self._log = logger.bind(service="api_key")

    # ---- Issuance ----

    async def create(
        self,
        owner_id: str,
        *,
        length: int | None = None,
        prefix: str | None = None,
        expires_in: int | None = None,
        permissions: Mapping[str, Any] | None = None,
        metadata: Mapping[str, Any] | None = None,
        name: str | None = None,
        rate_limit_enabled: bool = False,
        rate_limit_max: int | None = None,
        rate_limit_time_window: int | None = None,
        refill_amount: int | None = None,
        refill_interval: int | None = None,
        remaining: int | None = None,
    ) -> IssuedKey:
        """Issue a new API key.

        Args:
            owner_id: Owning principal
            length: Hex characters in the secret (defaults to config)
            prefix: Optional plaintext prefix, 2-10 of ``[A-Za-z0-9_-]``
            expires_in: Seconds until expiry
            permissions: Scope -> actions grant, validated against the registry
            metadata: Free-form JSON object
            name: Display name
            rate_limit_enabled: Enable the fixed window limiter
            rate_limit_max: Requests per window
            rate_limit_time_window: Window length in milliseconds
            refill_amount: Units added per refill
            refill_interval: Refill interval in milliseconds
            remaining: Initial quota balance (None = unlimited)

        Returns:
            IssuedKey with the plaintext (shown once) and the stored record

        Raises:
            ValidationError: If any argument is out of bounds
        """
        issuance = self._settings.issuance
        length = length or issuance.default_length
        if not MIN_SECRET_LENGTH <= length <= _MAX_SECRET_LENGTH:
            raise ValidationError(
                f"length must be between {MIN_SECRET_LENGTH} and {_MAX_SECRET_LENGTH}"
            )
        if prefix is not None:
            self._validate_prefix(prefix)
        if expires_in is not None and not (
            issuance.min_expires_in <= expires_in <= issuance.max_expires_in
        ):
            raise ValidationError(
                f"expires_in must be between {issuance.min_expires_in} "
                f"and {issuance.max_expires_in} seconds"
            )
        if name is not None:
            self._validate_name(name)
        if remaining is not None and remaining < 1:
            raise ValidationError("remaining must be positive")
        self._validate_refill(refill_amount, refill_interval)
        if rate_limit_enabled:
            self._validate_rate_limit(rate_limit_max, rate_limit_time_window)
        normalized = validate_permissions(permissions) if permissions is not None else None
        if metadata is not None and not isinstance(metadata, Mapping):
            raise ValidationError("metadata must be an object")

        generated = await asyncio.to_thread(
            generate_key, length, prefix, self._settings.hashing.rounds
        )
        now = utcnow()

        api_key = ApiKey(
            id=f"key_{uuid.uuid4().hex}",
            owner_id=owner_id,
            name=name,
            prefix=prefix,
            start=generated.start,
            hashed_secret=generated.hashed_secret,
            enabled=True,
            expires_at=now + timedelta(seconds=expires_in) if expires_in else None,
            permissions_json=json.dumps(normalized) if normalized is not None else None,
            metadata_json=json.dumps(dict(metadata)) if metadata is not None else None,
            rate_limit_enabled=rate_limit_enabled,
            rate_limit_max=rate_limit_max,
            rate_limit_time_window=rate_limit_time_window,
            remaining=remaining,
            refill_amount=refill_amount,
            refill_interval=refill_interval,
            last_refill_at=now if refill_interval else None,
            created_at=now,
            updated_at=now,
        )
        self._db.add(api_key)
        await self._db.commit()
        await self._db.refresh(api_key)

        self._log.info(
            "api_key.create",
            key_id=api_key.id,
            owner_id=owner_id,
            start=api_key.start,
            expires_at=api_key.expires_at.isoformat() if api_key.expires_at else None,
        )
        return IssuedKey(plaintext=generated.plaintext, record=api_key)

    # ---- Owner management ----

    async def list(self, owner_id: str) -> list[ApiKey]:
        """List an owner's keys, newest first."""
        result = await self._db.execute(
            select(ApiKey)
            .where(ApiKey.owner_id == owner_id)
            .order_by(ApiKey.created_at.desc(), ApiKey.id)
        )
        return list(result.scalars().all())

    async def get(self, owner_id: str, key_id: str) -> ApiKey:
        """Get a key owned by ``owner_id``.

        Raises:
            NotFoundError: If the key does not exist
            ForbiddenError: If the key belongs to someone else
        """
        result = await self._db.execute(select(ApiKey).where(ApiKey.id == key_id))
        api_key = result.scalars().first()
        if api_key is None:
            raise NotFoundError(f"API key not found: {key_id}")
        if api_key.owner_id != owner_id:
            raise ForbiddenError("You do not have access to this API key")
        return api_key

    async def update(
        self,
        owner_id: str,
        key_id: str,
        changes: Mapping[str, Any],
    ) -> ApiKey:
        """Apply owner edits to a key.

        Only keys present in ``changes`` are touched; an explicit None
        clears a nullable field.

        Raises:
            ValidationError: If a field is unknown or a value is invalid
        """
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(
                f"Fields cannot be updated: {', '.join(sorted(unknown))}"
            )

        api_key = await self.get(owner_id, key_id)

        for field in _NON_NULLABLE_FIELDS:
            if field in changes and changes[field] is None:
                raise ValidationError(f"{field} cannot be null")
        if "name" in changes and changes["name"] is not None:
            self._validate_name(changes["name"])
        if "remaining" in changes and changes["remaining"] is not None and changes["remaining"] < 0:
            raise ValidationError("remaining must not be negative")
        for field in ("rate_limit_max", "rate_limit_time_window", "refill_amount", "refill_interval"):
            value = changes.get(field)
            if value is not None and value < 1:
                raise ValidationError(f"{field} must be positive")

        refill_amount = changes.get("refill_amount", api_key.refill_amount)
        refill_interval = changes.get("refill_interval", api_key.refill_interval)
        self._validate_refill(refill_amount, refill_interval)
        if changes.get("rate_limit_enabled", api_key.rate_limit_enabled):
            self._validate_rate_limit(
                changes.get("rate_limit_max", api_key.rate_limit_max),
                changes.get("rate_limit_time_window", api_key.rate_limit_time_window),
            )
        permissions = changes.get("permissions")
        if permissions is not None:
            permissions = validate_permissions(permissions)
        metadata = changes.get("metadata")
        if metadata is not None and not isinstance(metadata, Mapping):
            raise ValidationError("metadata must be an object")

        for field, value in changes.items():
            if field == "permissions":
                api_key.permissions_json = json.dumps(permissions) if permissions is not None else None
            elif field == "metadata":
                api_key.metadata_json = json.dumps(dict(metadata)) if metadata is not None else None
            else:
                setattr(api_key, field, value)

        # Refill newly configured on a key that never refilled
        if api_key.refill_interval and api_key.last_refill_at is None:
            api_key.last_refill_at = utcnow()

        api_key.updated_at = utcnow()
        await self._bump_version(key_id)
        await self._db.commit()
        await self._db.refresh(api_key)

        self._log.info(
            "api_key.update",
            key_id=key_id,
            owner_id=owner_id,
            fields=sorted(changes),
        )
        return api_key

    async def delete(self, owner_id: str, key_id: str) -> None:
        api_key = await self.get(owner_id, key_id)
        await self._db.delete(api_key)
        await self._db.commit()
        await cleanup_key_lock(key_id)
        self._log.info("api_key.delete", key_id=key_id, owner_id=owner_id)

    async def delete_expired(self, owner_id: str) -> int:
        """Delete every expired key of an owner.

        Returns:
            Number of keys deleted
        """
        now = utcnow()
        result = await self._db.execute(
            select(ApiKey.id).where(
                ApiKey.owner_id == owner_id,
                ApiKey.expires_at.is_not(None),
                ApiKey.expires_at < now,
            )
        )
        expired_ids = list(result.scalars().all())
        if not expired_ids:
            return 0

        await self._db.execute(
            delete(ApiKey)
            .where(ApiKey.id.in_(expired_ids), ApiKey.expires_at < now)
            .execution_options(synchronize_session=False)
        )
        await self._db.commit()
        for key_id in expired_ids:
            await cleanup_key_lock(key_id)

        self._log.info("api_key.delete_expired", owner_id=owner_id, count=len(expired_ids))
        return len(expired_ids)

    async def rotate(self, owner_id: str, key_id: str) -> IssuedKey:
        """Replace a key's secret, keeping its id, limits and permissions.

        The old plaintext stops verifying as soon as this commits.
        """
        api_key = await self.get(owner_id, key_id)
        generated = await asyncio.to_thread(
            generate_key,
            self._settings.issuance.default_length,
            api_key.prefix,
            self._settings.hashing.rounds,
        )

        api_key.hashed_secret = generated.hashed_secret
        api_key.start = generated.start
        api_key.updated_at = utcnow()
        await self._bump_version(key_id)
        await self._db.commit()
        await self._db.refresh(api_key)

        self._log.info("api_key.rotate", key_id=key_id, owner_id=owner_id, start=api_key.start)
        return IssuedKey(plaintext=generated.plaintext, record=api_key)

    # ---- Provisioning ----

    async def auto_provision(self) -> IssuedKey | None:
        """Issue a full-access key for the bootstrap owner on first boot.

        Logic:
        1. No bootstrap owner configured -> skip
        2. Owner already has keys -> skip
        3. Otherwise issue a key and write credentials.json

        Returns:
            The issued key, or None if nothing was provisioned
        """
        bootstrap = self._settings.bootstrap
        if not bootstrap.owner_id:
            return None

        existing = await self._db.execute(
            select(ApiKey.id).where(ApiKey.owner_id == bootstrap.owner_id).limit(1)
        )
        if existing.first() is not None:
            self._log.debug("api_key.provision.skip", reason="owner already has keys")
            return None

        issued = await self.create(
            bootstrap.owner_id,
            prefix=bootstrap.prefix,
            name="bootstrap",
            permissions=get_template("full-access"),
        )
        self._log.info(
            "api_key.provision.generated",
            key_id=issued.record.id,
            start=issued.record.start,
            msg="First boot: API key auto-generated. See credentials.json for the key.",
        )

        server = self._settings.server
        self.write_credentials_file(
            Path(bootstrap.data_dir),
            issued.plaintext,
            f"http://{server.host}:{server.port}",
        )
        return issued

    @staticmethod
    def write_credentials_file(
        data_dir: Path,
        api_key: str,
        endpoint: str,
    ) -> None:
        """Write credentials.json for companion services.

        Args:
            data_dir: Directory to write the file to
            api_key: Plaintext API key
            endpoint: Keygate endpoint URL
        """
        credentials = {
            "api_key": api_key,
            "endpoint": endpoint,
            "generated_at": datetime.now(UTC).isoformat(),
        }

        cred_path = data_dir / "credentials.json"
        data_dir.mkdir(parents=True, exist_ok=True)

        cred_path.write_text(json.dumps(credentials, indent=2) + "\n")

        # Owner read/write only
        try:
            os.chmod(cred_path, 0o600)
        except OSError:
            # Windows or restricted environments may not support chmod
            logger.warning(
                "api_key.credentials.chmod_failed",
                path=str(cred_path),
                msg="Could not set file permissions to 0600",
            )

        logger.info("api_key.credentials.written", path=str(cred_path))

    async def _bump_version(self, key_id: str) -> None:
        """Flush pending edits and increment the version server-side.

        In-flight verifications that read the old version lose their
        compare-and-swap and re-read the edited record.
        """
        await self._db.flush()
        await self._db.execute(
            update(ApiKey)
            .where(ApiKey.id == key_id)
            .values(version=ApiKey.version + 1)
            .execution_options(synchronize_session=False)
        )

    # ---- Validation helpers ----

    def _validate_prefix(self, prefix: str) -> None:
        issuance = self._settings.issuance
        if not issuance.min_prefix_length <= len(prefix) <= issuance.max_prefix_length:
            raise ValidationError(
                f"Prefix must be {issuance.min_prefix_length}-"
                f"{issuance.max_prefix_length} characters"
            )
        if not is_valid_prefix(prefix):
            raise ValidationError(
                "Prefix can only contain alphanumeric characters, hyphens, and underscores"
            )

    @staticmethod
    def _validate_name(name: str) -> None:
        if not 1 <= len(name) <= _MAX_NAME_LENGTH:
            raise ValidationError(f"Name must be 1-{_MAX_NAME_LENGTH} characters")

    @staticmethod
    def _validate_refill(refill_amount: int | None, refill_interval: int | None) -> None:
        if (refill_amount is None) != (refill_interval is None):
            raise ValidationError(
                "Both refill_amount and refill_interval must be provided together"
            )
        if refill_amount is not None and (refill_amount < 1 or refill_interval < 1):
            raise ValidationError("refill_amount and refill_interval must be positive")

    @staticmethod
    def _validate_rate_limit(rate_limit_max: int | None, rate_limit_time_window: int | None) -> None:
        if not rate_limit_max or not rate_limit_time_window:
            raise ValidationError(
                "rate_limit_max and rate_limit_time_window must be provided "
                "when rate limiting is enabled"
            )
        if rate_limit_max < 1 or rate_limit_time_window < 1:
            raise ValidationError("rate_limit_max and rate_limit_time_window must be positive")
