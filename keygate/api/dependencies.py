"""FastAPI dependencies for Keygate API.

Provides dependency injection for:
- Database sessions
- Services (ApiKeyService, ApiKeyVerifier)
- Authentication and scope checks
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Annotated

import structlog
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from keygate.config import get_settings
from keygate.db.session import get_session_dependency
from keygate.errors import ApiKeyRejectedError, UnauthorizedError
from keygate.services.api_key import (
    ApiKeyService,
    ApiKeyVerifier,
    RejectionCode,
    ResolvedKey,
)
from keygate.services.api_key.permissions import PERMISSION_SCOPES

logger = structlog.get_logger()


@dataclass(frozen=True)
class Principal:
    """Authenticated caller.

    ``key`` is None for interactive sessions resolved upstream; those
    callers are not narrowed by API key scopes.
    """

    owner_id: str
    key: ResolvedKey | None = None

    @property
    def via_api_key(self) -> bool:
        return self.key is not None


def get_verifier(request: Request) -> ApiKeyVerifier:
    """Get the verifier created during application startup."""
    return request.app.state.verifier


async def get_api_key_service(
    session: Annotated[AsyncSession, Depends(get_session_dependency)],
) -> ApiKeyService:
    """Get ApiKeyService with injected dependencies."""
    return ApiKeyService(db_session=session)


def request_deadline() -> float:
    """``time.monotonic()`` value a verification started now must finish by."""
    budget_ms = get_settings().verification.request_deadline_ms
    return time.monotonic() + budget_ms / 1000


def require_permission(scope: str | None = None, action: str | None = None):
    """Factory for the authentication + scope check dependency.

    Authentication flow:
    1. ``request.state.session_owner_id`` set by upstream session
       middleware -> full-access principal, no scope check
    2. API key header present -> verify, including the (scope, action)
       check so a key lacking the scope does not spend quota
    3. Otherwise -> 401

    Args:
        scope: Permission scope (e.g. "watchlist"); None = authenticate only
        action: Required action within the scope (e.g. "read")

    Raises:
        ValueError: If the pair is not in the permission registry
    """
    if scope is not None:
        spec = PERMISSION_SCOPES.get(scope)
        if spec is None or action not in spec.actions:
            raise ValueError(f"Unknown permission: {scope}:{action}")
    required = {scope: [action]} if scope is not None else None

    async def dependency(
        request: Request,
        verifier: Annotated[ApiKeyVerifier, Depends(get_verifier)],
    ) -> Principal:
        session_owner = getattr(request.state, "session_owner_id", None)
        if session_owner:
            return Principal(owner_id=session_owner)

        header_name = get_settings().verification.header_name
        credential = request.headers.get(header_name)
        if not credential:
            raise UnauthorizedError(f"Missing API key. Include {header_name} header.")

        result = await verifier.verify(
            credential, required=required, deadline=request_deadline()
        )
        if not result.valid:
            error = result.error
            message = error.message
            if error.code == RejectionCode.INSUFFICIENT_PERMISSIONS and scope is not None:
                message = f"API key does not have permission: {scope}:{action}"
            raise ApiKeyRejectedError(
                error.code.value,
                message,
                retry_after_seconds=error.retry_after_seconds,
            )

        logger.debug("auth.success", source="api_key", key_id=result.key.id)
        return Principal(owner_id=result.key.owner_id, key=result.key)

    return dependency


authenticate = require_permission()

# Type aliases for cleaner dependency injection
ApiKeyServiceDep = Annotated[ApiKeyService, Depends(get_api_key_service)]
VerifierDep = Annotated[ApiKeyVerifier, Depends(get_verifier)]
AuthDep = Annotated[Principal, Depends(authenticate)]

ApiKeysReadDep = Annotated[Principal, Depends(require_permission("apiKeys", "read"))]
ApiKeysWriteDep = Annotated[Principal, Depends(require_permission("apiKeys", "write"))]
ApiKeysDeleteDep = Annotated[Principal, Depends(require_permission("apiKeys", "delete"))]
