"""API key issuance, verification and management."""

from keygate.services.api_key.service import ApiKeyService, IssuedKey
from keygate.services.api_key.types import (
    RejectionCode,
    ResolvedKey,
    VerificationError,
    VerificationResult,
)
from keygate.services.api_key.verifier import ApiKeyVerifier

__all__ = [
    "ApiKeyService",
    "ApiKeyVerifier",
    "IssuedKey",
    "RejectionCode",
    "ResolvedKey",
    "VerificationError",
    "VerificationResult",
]
