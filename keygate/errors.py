"""Keygate error types.

Error codes are stable strings for programmatic handling. Every error
renders to the same envelope via ``to_dict``.
"""

from __future__ import annotations

from typing import Any


class KeygateError(Exception):
    """Base error for all Keygate exceptions."""

    code: str = "internal_error"
    message: str = "An internal error occurred"
    status_code: int = 500

    def __init__(
        self,
        message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message or self.__class__.message
        self.details = details or {}
        super().__init__(self.message)

    def headers(self) -> dict[str, str] | None:
        """Extra HTTP headers for the error response."""
        return None

    def to_dict(self, request_id: str | None = None) -> dict[str, Any]:
        error: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
        }
        if self.details:
            error["details"] = self.details
        if request_id:
            error["request_id"] = request_id
        return {"error": error}


class ValidationError(KeygateError):
    """Request validation error (400)."""

    code = "validation_error"
    message = "Validation error"
    status_code = 400


class UnauthorizedError(KeygateError):
    """Authentication required (401)."""

    code = "unauthorized"
    message = "Authentication required"
    status_code = 401


class ForbiddenError(KeygateError):
    """Permission denied (403)."""

    code = "forbidden"
    message = "Permission denied"
    status_code = 403


class NotFoundError(KeygateError):
    """Resource not found (404)."""

    code = "not_found"
    message = "Resource not found"
    status_code = 404


class StoreUnavailableError(KeygateError):
    """The key store could not be queried (503).

    Distinct from an authentication failure: the caller should retry.
    """

    code = "store_unavailable"
    message = "Key store temporarily unavailable"
    status_code = 503


class ConcurrencyConflictError(KeygateError):
    """Usage update kept losing compare-and-swap races (503)."""

    code = "concurrency_conflict"
    message = "Too many concurrent requests for this API key"
    status_code = 503


# Verification rejection code -> HTTP status
_REJECTION_STATUS = {
    "INVALID_FORMAT": 401,
    "NOT_FOUND": 401,
    "DISABLED": 401,
    "EXPIRED": 401,
    "RATE_LIMIT_EXCEEDED": 429,
    "NO_REMAINING": 429,
    "INSUFFICIENT_PERMISSIONS": 403,
}


class ApiKeyRejectedError(KeygateError):
    """A presented API key was rejected by the verification pipeline.

    Carries the stable rejection code (``INVALID_FORMAT``, ``NOT_FOUND``,
    ...) so HTTP callers can branch on it.
    """

    code = "api_key_rejected"
    message = "API key rejected"
    status_code = 401

    def __init__(
        self,
        rejection_code: str,
        message: str | None = None,
        *,
        retry_after_seconds: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.code = rejection_code
        self.status_code = _REJECTION_STATUS.get(rejection_code, 401)
        self.retry_after_seconds = retry_after_seconds

    def headers(self) -> dict[str, str] | None:
        if self.status_code == 401:
            return {"WWW-Authenticate": "ApiKey"}
        if self.retry_after_seconds is not None:
            return {"Retry-After": str(self.retry_after_seconds)}
        return None
