"""Credential generation, hashing and format checks.

Key format: ``[prefix]<lowercase hex secret>``. ``start`` is the first
``6 + len(prefix)`` characters of the plaintext and is the only part of a
key that is stored in recoverable form.
"""

from __future__ import annotations

import base64
import hashlib
import re
import secrets
from dataclasses import dataclass

import bcrypt

START_SECRET_CHARS = 6
MIN_SECRET_LENGTH = 32
MAX_PREFIX_LENGTH = 10
MAX_CREDENTIAL_LENGTH = 512
DEFAULT_ROUNDS = 12

_HEX_RE = re.compile(r"[a-f0-9]+")
_PREFIX_RE = re.compile(r"[A-Za-z0-9_-]+")
_CREDENTIAL_RE = re.compile(
    rf"[A-Za-z0-9_-]{{0,{MAX_PREFIX_LENGTH}}}[a-f0-9]{{{MIN_SECRET_LENGTH},}}"
)


@dataclass(frozen=True)
class GeneratedKey:
    """Output of ``generate_key``. ``plaintext`` is shown to the caller once."""

    plaintext: str
    hashed_secret: str
    start: str


def generate_key(
    length: int = 64,
    prefix: str | None = None,
    rounds: int = DEFAULT_ROUNDS,
) -> GeneratedKey:
    """Generate a new API key.

    Args:
        length: Number of hex characters in the random secret
        prefix: Optional plaintext prefix (e.g. ``"proj_"``)
        rounds: bcrypt cost factor

    Returns:
        GeneratedKey with plaintext, bcrypt hash and lookup start
    """
    if length < MIN_SECRET_LENGTH:
        raise ValueError(f"length must be at least {MIN_SECRET_LENGTH}")
    if prefix and not is_valid_prefix(prefix):
        raise ValueError("prefix may only contain letters, digits, '_' and '-'")

    random_part = secrets.token_hex((length + 1) // 2)[:length]
    plaintext = f"{prefix or ''}{random_part}"
    return GeneratedKey(
        plaintext=plaintext,
        hashed_secret=hash_secret(plaintext, rounds),
        start=derive_start(plaintext, len(prefix or "")),
    )


def derive_start(credential: str, prefix_length: int = 0) -> str:
    """Return the non-secret lookup index for a credential."""
    return credential[: prefix_length + START_SECRET_CHARS]


def candidate_starts(credential: str, max_prefix_length: int = MAX_PREFIX_LENGTH) -> list[str]:
    """Every ``start`` a presented credential could have been stored under.

    The credential does not say how long its prefix is, so each possible
    prefix length yields one lookup value.
    """
    starts: list[str] = []
    for prefix_length in range(0, max_prefix_length + 1):
        prefix = credential[:prefix_length]
        if prefix and not is_valid_prefix(prefix):
            break
        if prefix_length + MIN_SECRET_LENGTH > len(credential):
            break
        starts.append(derive_start(credential, prefix_length))
    return starts


def _prehash(plaintext: str) -> bytes:
    # bcrypt only reads 72 bytes; a 64-char secret behind a 10-char prefix
    # would lose its tail.
    digest = hashlib.sha256(plaintext.encode("utf-8")).digest()
    return base64.b64encode(digest)


def hash_secret(plaintext: str, rounds: int = DEFAULT_ROUNDS) -> str:
    """Hash a plaintext key with bcrypt."""
    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(_prehash(plaintext), salt).decode("ascii")


def verify_secret(plaintext: str, hashed_secret: str) -> bool:
    """Check a plaintext key against a stored bcrypt hash.

    A malformed stored hash counts as a mismatch.
    """
    try:
        return bcrypt.checkpw(_prehash(plaintext), hashed_secret.encode("ascii"))
    except ValueError:
        return False


def is_valid_prefix(prefix: str) -> bool:
    return bool(_PREFIX_RE.fullmatch(prefix))


def validate_format(candidate: str, expected_prefix: str | None = None) -> bool:
    """Cheap structural check run before any hashing.

    Args:
        candidate: Presented credential
        expected_prefix: Prefix the key must carry, if known

    Returns:
        True if the candidate could be a key issued with ``expected_prefix``
    """
    if not candidate or not isinstance(candidate, str):
        return False

    prefix = expected_prefix or ""
    if len(candidate) < len(prefix) + MIN_SECRET_LENGTH:
        return False
    if prefix and not candidate.startswith(prefix):
        return False

    return bool(_HEX_RE.fullmatch(candidate[len(prefix):]))


def looks_like_credential(candidate: str) -> bool:
    """Prefix-agnostic format check used when the prefix is unknown."""
    if not candidate or not isinstance(candidate, str):
        return False
    if len(candidate) > MAX_CREDENTIAL_LENGTH:
        return False
    return bool(_CREDENTIAL_RE.fullmatch(candidate))
