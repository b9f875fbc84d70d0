"""API key management endpoints.

Callers authenticate with an API key (or an upstream session) and need the
``apiKeys`` scope for the matching action. Keys are always scoped to the
caller's owner id.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Response
from pydantic import BaseModel, Field

from keygate.api.dependencies import (
    ApiKeyServiceDep,
    ApiKeysDeleteDep,
    ApiKeysReadDep,
    ApiKeysWriteDep,
    VerifierDep,
    request_deadline,
)
from keygate.services.api_key import ResolvedKey, VerificationResult
from keygate.utils.datetime import utcnow

router = APIRouter()


# Request/Response Models


class CreateApiKeyRequest(BaseModel):
    """Request to issue a new API key."""

    name: str | None = Field(default=None, min_length=1, max_length=100)
    prefix: str | None = Field(
        default=None,
        min_length=2,
        max_length=10,
        pattern=r"^[a-zA-Z0-9_-]+$",
    )
    length: int | None = Field(default=None, ge=32, le=256)
    expires_in: int | None = Field(
        default=None,
        ge=60,
        le=365 * 24 * 60 * 60,
        description="Seconds until expiration (60s - 365 days)",
    )
    permissions: dict[str, list[str]] | None = None
    metadata: dict[str, Any] | None = None
    rate_limit_enabled: bool = False
    rate_limit_max: int | None = Field(default=None, gt=0)
    rate_limit_time_window: int | None = Field(
        default=None, gt=0, description="Window length in milliseconds"
    )
    refill_amount: int | None = Field(default=None, gt=0)
    refill_interval: int | None = Field(
        default=None, gt=0, description="Refill interval in milliseconds"
    )
    remaining: int | None = Field(default=None, gt=0)


class UpdateApiKeyRequest(BaseModel):
    """Partial update; omitted fields are left unchanged."""

    name: str | None = Field(default=None, min_length=1, max_length=100)
    enabled: bool | None = None
    permissions: dict[str, list[str]] | None = None
    metadata: dict[str, Any] | None = None
    rate_limit_enabled: bool | None = None
    rate_limit_max: int | None = Field(default=None, gt=0)
    rate_limit_time_window: int | None = Field(default=None, gt=0)
    refill_amount: int | None = Field(default=None, gt=0)
    refill_interval: int | None = Field(default=None, gt=0)
    remaining: int | None = Field(default=None, ge=0)


class VerifyApiKeyRequest(BaseModel):
    key: str = Field(min_length=1)
    permissions: dict[str, list[str]] | None = None


class ApiKeyResponse(ResolvedKey):
    """API key as shown to its owner."""


class CreatedApiKeyResponse(ApiKeyResponse):
    """Response carrying the plaintext key. Returned exactly once."""

    key: str


class ApiKeyListResponse(BaseModel):
    items: list[ApiKeyResponse]


class DeleteExpiredResponse(BaseModel):
    count: int
    deleted_at: datetime


# Endpoints


@router.post("", response_model=CreatedApiKeyResponse, status_code=201)
async def create_api_key(
    request: CreateApiKeyRequest,
    service: ApiKeyServiceDep,
    principal: ApiKeysWriteDep,
) -> CreatedApiKeyResponse:
    """Issue a new API key. The plaintext is only in this response."""
    issued = await service.create(principal.owner_id, **request.model_dump())
    return CreatedApiKeyResponse.from_record(issued.record, key=issued.plaintext)


@router.get("", response_model=ApiKeyListResponse)
async def list_api_keys(
    service: ApiKeyServiceDep,
    principal: ApiKeysReadDep,
) -> ApiKeyListResponse:
    keys = await service.list(principal.owner_id)
    return ApiKeyListResponse(items=[ApiKeyResponse.from_record(k) for k in keys])


@router.post("/verify", response_model=VerificationResult)
async def verify_api_key(
    request: VerifyApiKeyRequest,
    verifier: VerifierDep,
    principal: ApiKeysReadDep,
) -> VerificationResult:
    """Verify a key and report the outcome.

    Rejections are part of the response body, not HTTP errors. Verifying
    counts as a use of the verified key.
    """
    return await verifier.verify(
        request.key,
        required=request.permissions,
        deadline=request_deadline(),
    )


@router.delete("/expired", response_model=DeleteExpiredResponse)
async def delete_expired_api_keys(
    service: ApiKeyServiceDep,
    principal: ApiKeysDeleteDep,
) -> DeleteExpiredResponse:
    count = await service.delete_expired(principal.owner_id)
    return DeleteExpiredResponse(count=count, deleted_at=utcnow())


@router.get("/{key_id}", response_model=ApiKeyResponse)
async def get_api_key(
    key_id: str,
    service: ApiKeyServiceDep,
    principal: ApiKeysReadDep,
) -> ApiKeyResponse:
    api_key = await service.get(principal.owner_id, key_id)
    return ApiKeyResponse.from_record(api_key)


@router.patch("/{key_id}", response_model=ApiKeyResponse)
async def update_api_key(
    key_id: str,
    request: UpdateApiKeyRequest,
    service: ApiKeyServiceDep,
    principal: ApiKeysWriteDep,
) -> ApiKeyResponse:
    api_key = await service.update(
        principal.owner_id,
        key_id,
        request.model_dump(exclude_unset=True),
    )
    return ApiKeyResponse.from_record(api_key)


@router.delete("/{key_id}", status_code=204)
async def delete_api_key(
    key_id: str,
    service: ApiKeyServiceDep,
    principal: ApiKeysDeleteDep,
) -> Response:
    await service.delete(principal.owner_id, key_id)
    return Response(status_code=204)


@router.post("/{key_id}/rotate", response_model=CreatedApiKeyResponse)
async def rotate_api_key(
    key_id: str,
    service: ApiKeyServiceDep,
    principal: ApiKeysWriteDep,
) -> CreatedApiKeyResponse:
    """Issue a new secret for an existing key; the old one stops working."""
    issued = await service.rotate(principal.owner_id, key_id)
    return CreatedApiKeyResponse.from_record(issued.record, key=issued.plaintext)
