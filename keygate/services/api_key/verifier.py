"""API key verification pipeline.

PRESENTED -> format check -> candidate lookup -> hash match ->
DISABLED? -> EXPIRED? -> rate limit -> refill -> permissions -> ACCEPTED.

Every rejection is returned as a ``VerificationResult``; only store faults
raise. Accepting a request and persisting its quota counters is one
version-guarded UPDATE, so concurrent requests on the same key cannot both
spend the last unit of quota.
"""

from __future__ import annotations

import asyncio
import random
import time
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime

import structlog
from sqlalchemy import delete, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from keygate.concurrency.locks import cleanup_key_lock, get_key_lock
from keygate.config import Settings, get_settings
from keygate.errors import ConcurrencyConflictError, StoreUnavailableError
from keygate.models.api_key import ApiKey
from keygate.services.api_key.codec import (
    candidate_starts,
    looks_like_credential,
    verify_secret,
)
from keygate.services.api_key.permissions import has_permissions
from keygate.services.api_key.quota import (
    RateLimitDecision,
    RefillDecision,
    apply_refill,
    check_rate_limit,
    format_retry_after,
    is_expired,
    seconds_until,
)
from keygate.services.api_key.types import (
    RejectionCode,
    ResolvedKey,
    VerificationResult,
)
from keygate.utils.datetime import utcnow

logger = structlog.get_logger()

_sysrand = random.SystemRandom()

SessionFactory = Callable[[], AsyncSession]


class ApiKeyVerifier:
    """Turns a presented credential into a resolved key or a rejection."""

    def __init__(
        self,
        session_factory: SessionFactory,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self._log = logger.bind(service="api_key_verifier")
        self._pending_deletes: set[asyncio.Task] = set()

    async def verify(
        self,
        credential: str | None,
        *,
        required: Mapping[str, Iterable[str]] | None = None,
        deadline: float | None = None,
    ) -> VerificationResult:
        """Verify a presented credential.

        Args:
            credential: Raw value of the API key header
            required: Scope -> actions the key must be granted
            deadline: ``time.monotonic()`` value the caller must answer by;
                caps the failure-path delay

        Returns:
            VerificationResult; ``valid`` is True only when every gate passed

        Raises:
            StoreUnavailableError: If the key store cannot be queried
            ConcurrencyConflictError: If the usage update kept losing races
        """
        if not credential or not looks_like_credential(credential):
            self._log.info("api_key.verify.rejected", code=RejectionCode.INVALID_FORMAT.value)
            return VerificationResult.reject(RejectionCode.INVALID_FORMAT)

        candidates = await self._resolve_candidates(credential)
        matched = await self._match(credential, candidates)
        if matched is None:
            await self._failure_delay(deadline)
            self._log.info(
                "api_key.verify.rejected",
                code=RejectionCode.NOT_FOUND.value,
                candidates=len(candidates),
            )
            return VerificationResult.reject(RejectionCode.NOT_FOUND)

        lock = await get_key_lock(matched.id)
        async with lock:
            result = await self._evaluate(matched, required)

        if result.valid:
            self._log.info(
                "api_key.verify.accepted",
                key_id=matched.id,
                owner_id=matched.owner_id,
            )
        else:
            self._log.info(
                "api_key.verify.rejected",
                key_id=matched.id,
                code=result.error.code.value,
            )
        return result

    # ---- CandidateResolver / HashVerifier ----

    async def _resolve_candidates(self, credential: str) -> list[ApiKey]:
        """Fetch records whose stored ``start`` could belong to the credential."""
        starts = candidate_starts(credential, self._settings.issuance.max_prefix_length)
        query = (
            select(ApiKey)
            .where(ApiKey.start.in_(starts))
            .order_by(ApiKey.created_at, ApiKey.id)
            .limit(self._settings.verification.candidate_limit)
        )
        try:
            async with self._session_factory() as db:
                result = await db.execute(query)
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            self._log.error("api_key.verify.lookup_failed", error=str(e))
            raise StoreUnavailableError() from e

    async def _match(self, credential: str, candidates: list[ApiKey]) -> ApiKey | None:
        """Compare against every candidate; the first match wins.

        No early exit, so timing does not reveal the matching position.
        """
        matched: ApiKey | None = None
        for candidate in candidates:
            ok = await asyncio.to_thread(verify_secret, credential, candidate.hashed_secret)
            if ok and matched is None:
                matched = candidate
        return matched

    async def _failure_delay(self, deadline: float | None) -> None:
        cfg = self._settings.verification
        delay = _sysrand.uniform(cfg.failure_delay_min_ms, cfg.failure_delay_max_ms) / 1000
        if deadline is not None:
            delay = min(delay, max(0.0, deadline - time.monotonic()))
        if delay > 0:
            await asyncio.sleep(delay)

    # ---- Gates and usage ----

    async def _evaluate(
        self,
        matched: ApiKey,
        required: Mapping[str, Iterable[str]] | None,
    ) -> VerificationResult:
        """Read a fresh snapshot, decide, and commit with compare-and-swap.

        A lost race re-reads and decides again on the newer snapshot.
        """
        attempts = self._settings.verification.max_update_attempts
        for attempt in range(attempts):
            committed: bool | None = False
            try:
                async with self._session_factory() as db:
                    result = await db.execute(select(ApiKey).where(ApiKey.id == matched.id))
                    key = result.scalars().first()

                    # Deleted or rotated since the hash comparison
                    if key is None or key.hashed_secret != matched.hashed_secret:
                        return VerificationResult.reject(RejectionCode.NOT_FOUND)

                    rejection, decision = self._decide(key, required)
                    if rejection is None:
                        now, rate, refill = decision
                        committed = await self._commit_usage(db, key, now, rate, refill)
            except SQLAlchemyError as e:
                self._log.error("api_key.verify.store_error", key_id=matched.id, error=str(e))
                raise StoreUnavailableError() from e

            if rejection is not None:
                if rejection.error.code == RejectionCode.EXPIRED:
                    await self._expire(key.id)
                return rejection

            if committed is None:
                # Bookkeeping write failed on a key without quota
                return VerificationResult.accept(ResolvedKey.from_record(key))

            if committed:
                return VerificationResult.accept(
                    ResolvedKey.from_record(
                        key,
                        last_request=now,
                        request_count=rate.request_count,
                        remaining=refill.remaining,
                        last_refill_at=refill.last_refill_at,
                        updated_at=now,
                    )
                )

            self._log.debug(
                "api_key.verify.cas_conflict",
                key_id=matched.id,
                attempt=attempt + 1,
            )

        self._log.warning("api_key.verify.cas_exhausted", key_id=matched.id, attempts=attempts)
        raise ConcurrencyConflictError()

    def _decide(
        self,
        key: ApiKey,
        required: Mapping[str, Iterable[str]] | None,
    ) -> tuple[
        VerificationResult | None,
        tuple[datetime, RateLimitDecision, RefillDecision] | None,
    ]:
        """Run the gates against one snapshot of the key."""
        if not key.enabled:
            return VerificationResult.reject(RejectionCode.DISABLED), None

        now = utcnow()
        if is_expired(key.expires_at, now):
            return VerificationResult.reject(RejectionCode.EXPIRED), None

        rate = check_rate_limit(key, now)
        if not rate.allowed:
            hint = format_retry_after(rate.reset_at, now)
            return (
                VerificationResult.reject(
                    RejectionCode.RATE_LIMIT_EXCEEDED,
                    f"Rate limit exceeded. Try again {hint}",
                    retry_after=hint,
                    retry_after_seconds=seconds_until(rate.reset_at, now),
                    reset_at=rate.reset_at,
                ),
                None,
            )

        refill = apply_refill(key, now)
        if not refill.allowed:
            return VerificationResult.reject(RejectionCode.NO_REMAINING), None

        if required and not has_permissions(key.permissions, required):
            return VerificationResult.reject(RejectionCode.INSUFFICIENT_PERMISSIONS), None

        return None, (now, rate, refill)

    async def _commit_usage(
        self,
        db: AsyncSession,
        key: ApiKey,
        now: datetime,
        rate: RateLimitDecision,
        refill: RefillDecision,
    ) -> bool | None:
        """Persist usage guarded on the version that was read.

        Returns:
            True if written, False if another writer got there first, None
            if the write failed for a key whose counters gate nothing
        """
        stmt = (
            update(ApiKey)
            .where(ApiKey.id == key.id, ApiKey.version == key.version)
            .values(
                last_request=now,
                request_count=rate.request_count,
                remaining=refill.remaining,
                last_refill_at=refill.last_refill_at,
                updated_at=now,
                version=ApiKey.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        try:
            result = await db.execute(stmt)
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            if key.has_quota():
                raise
            self._log.warning("api_key.usage.write_failed", key_id=key.id, error=str(e))
            return None
        return result.rowcount == 1

    # ---- ExpiryGate ----

    async def _expire(self, key_id: str) -> None:
        if self._settings.expiry.defer_delete:
            task = asyncio.create_task(self._delete_expired_key(key_id))
            self._pending_deletes.add(task)
            task.add_done_callback(self._pending_deletes.discard)
        else:
            await self._delete_expired_key(key_id)

    async def _delete_expired_key(self, key_id: str) -> None:
        try:
            async with self._session_factory() as db:
                await db.execute(
                    delete(ApiKey)
                    .where(ApiKey.id == key_id, ApiKey.expires_at < utcnow())
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
        except SQLAlchemyError as e:
            self._log.warning("api_key.expire.delete_failed", key_id=key_id, error=str(e))
            return
        await cleanup_key_lock(key_id)
        self._log.info("api_key.expire.deleted", key_id=key_id)

    async def drain(self) -> None:
        """Wait for deferred expired-key deletions (called on shutdown)."""
        if self._pending_deletes:
            await asyncio.gather(*list(self._pending_deletes), return_exceptions=True)
