"""Unit tests for the authentication dependency.

Calls the dependency directly with mock requests and a mock verifier.
"""

from __future__ import annotations

from types import SimpleNamespace
import time
from unittest.mock import ANY, AsyncMock, MagicMock, patch

import pytest
from fastapi import Request

from keygate.api.dependencies import Principal, authenticate, require_permission
from keygate.errors import ApiKeyRejectedError, UnauthorizedError
from keygate.services.api_key import RejectionCode, ResolvedKey, VerificationResult


def create_mock_request(
    headers: dict[str, str] | None = None,
    session_owner_id: str | None = None,
) -> Request:
    """Create a mock FastAPI Request with given headers and state."""
    mock_request = MagicMock(spec=Request)
    mock_request.headers = headers or {}
    mock_request.state = SimpleNamespace()
    if session_owner_id is not None:
        mock_request.state.session_owner_id = session_owner_id
    return mock_request


def create_mock_verifier(result: VerificationResult) -> MagicMock:
    verifier = MagicMock()
    verifier.verify = AsyncMock(return_value=result)
    return verifier


class TestRequirePermission:
    """Test require_permission() dependency factory."""

    def test_unknown_pair_rejected_at_definition(self):
        with pytest.raises(ValueError):
            require_permission("billing", "read")
        with pytest.raises(ValueError):
            require_permission("fx", "write")

    async def test_session_principal_bypasses_scope(self):
        dependency = require_permission("watchlist", "write")
        verifier = create_mock_verifier(VerificationResult.reject(RejectionCode.NOT_FOUND))
        request = create_mock_request(session_owner_id="user-9")

        principal = await dependency(request, verifier)

        assert principal == Principal(owner_id="user-9")
        assert principal.via_api_key is False
        verifier.verify.assert_not_called()

    async def test_missing_header(self, settings):
        dependency = require_permission("watchlist", "read")
        verifier = create_mock_verifier(VerificationResult.reject(RejectionCode.NOT_FOUND))

        with patch("keygate.api.dependencies.get_settings", return_value=settings):
            with pytest.raises(UnauthorizedError):
                await dependency(create_mock_request(), verifier)

    async def test_passes_required_scope(self, settings, service):
        issued = await service.create("user-1", permissions={"watchlist": ["read"]})
        resolved = ResolvedKey.from_record(issued.record)
        verifier = create_mock_verifier(VerificationResult.accept(resolved))
        dependency = require_permission("watchlist", "read")
        request = create_mock_request(headers={"x-api-key": issued.plaintext})

        with patch("keygate.api.dependencies.get_settings", return_value=settings):
            principal = await dependency(request, verifier)

        verifier.verify.assert_awaited_once_with(
            issued.plaintext, required={"watchlist": ["read"]}, deadline=ANY
        )
        assert principal.owner_id == "user-1"
        assert principal.via_api_key is True

    async def test_authenticate_requires_no_scope(self, settings):
        verifier = create_mock_verifier(VerificationResult.reject(RejectionCode.EXPIRED))
        request = create_mock_request(headers={"x-api-key": "a" * 64})

        with patch("keygate.api.dependencies.get_settings", return_value=settings):
            with pytest.raises(ApiKeyRejectedError) as exc_info:
                await authenticate(request, verifier)

        verifier.verify.assert_awaited_once_with("a" * 64, required=None, deadline=ANY)
        assert exc_info.value.code == "EXPIRED"
        assert exc_info.value.status_code == 401

    async def test_rate_limit_carries_retry_after(self, settings):
        verifier = create_mock_verifier(
            VerificationResult.reject(
                RejectionCode.RATE_LIMIT_EXCEEDED,
                "Rate limit exceeded. Try again in 5 seconds",
                retry_after="in 5 seconds",
                retry_after_seconds=5,
            )
        )
        request = create_mock_request(headers={"x-api-key": "a" * 64})

        with patch("keygate.api.dependencies.get_settings", return_value=settings):
            with pytest.raises(ApiKeyRejectedError) as exc_info:
                await authenticate(request, verifier)

        assert exc_info.value.status_code == 429
        assert exc_info.value.headers() == {"Retry-After": "5"}

    async def test_passes_deadline_from_settings(self, settings):
        settings.verification.request_deadline_ms = 500
        verifier = create_mock_verifier(VerificationResult.reject(RejectionCode.NOT_FOUND))
        request = create_mock_request(headers={"x-api-key": "a" * 64})

        before = time.monotonic()
        with patch("keygate.api.dependencies.get_settings", return_value=settings):
            with pytest.raises(ApiKeyRejectedError):
                await authenticate(request, verifier)

        deadline = verifier.verify.await_args.kwargs["deadline"]
        assert before + 0.5 <= deadline <= time.monotonic() + 0.5

    async def test_insufficient_permissions_names_required_pair(self, settings):
        verifier = create_mock_verifier(
            VerificationResult.reject(RejectionCode.INSUFFICIENT_PERMISSIONS)
        )
        dependency = require_permission("goals", "delete")
        request = create_mock_request(headers={"x-api-key": "a" * 64})

        with patch("keygate.api.dependencies.get_settings", return_value=settings):
            with pytest.raises(ApiKeyRejectedError) as exc_info:
                await dependency(request, verifier)

        assert exc_info.value.status_code == 403
        assert exc_info.value.message == "API key does not have permission: goals:delete"
