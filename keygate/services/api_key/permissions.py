"""API key permission registry and checks.

Permissions are a mapping of scope -> actions, e.g.
``{"watchlist": ["read", "write"]}``. Only (scope, action) pairs known to
``PERMISSION_SCOPES`` can be stored; anything else is rejected at write
time so read-time checks never meet an unknown scope.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from keygate.errors import ValidationError


@dataclass(frozen=True)
class ScopeSpec:
    actions: tuple[str, ...]
    description: str


PERMISSION_SCOPES: dict[str, ScopeSpec] = {
    "account": ScopeSpec(("read", "write", "delete"), "Account management"),
    "admin": ScopeSpec(("read", "write"), "Admin operations (requires admin role)"),
    "apiKeys": ScopeSpec(("read", "write", "delete"), "API key management"),
    "fx": ScopeSpec(("read",), "Foreign exchange rates"),
    "goals": ScopeSpec(("read", "write", "delete"), "Financial goals"),
    "portfolio": ScopeSpec(("read", "write"), "Portfolio data"),
    "transactions": ScopeSpec(("read", "write", "delete"), "Transaction records"),
    "watchlist": ScopeSpec(("read", "write", "delete"), "Watchlist management"),
}

PERMISSION_TEMPLATES: dict[str, dict[str, Any]] = {
    "custom": {
        "description": "Custom permissions",
        "permissions": {},
    },
    "full-access": {
        "description": "Full access to all non-admin resources",
        "permissions": {
            "account": ["read", "write", "delete"],
            "apiKeys": ["read", "write", "delete"],
            "fx": ["read"],
            "goals": ["read", "write", "delete"],
            "portfolio": ["read", "write"],
            "transactions": ["read", "write", "delete"],
            "watchlist": ["read", "write", "delete"],
        },
    },
    "portfolio-manager": {
        "description": "Manage portfolio and transactions",
        "permissions": {
            "fx": ["read"],
            "portfolio": ["read", "write"],
            "transactions": ["read", "write", "delete"],
            "watchlist": ["read", "write", "delete"],
        },
    },
    "read-only": {
        "description": "Read-only access to all resources",
        "permissions": {
            "account": ["read"],
            "fx": ["read"],
            "goals": ["read"],
            "portfolio": ["read"],
            "transactions": ["read"],
            "watchlist": ["read"],
        },
    },
}


def validate_permissions(permissions: Any) -> dict[str, list[str]]:
    """Validate a permission map against the registry.

    Args:
        permissions: Candidate scope -> actions mapping

    Returns:
        Normalized mapping (actions deduplicated, registry order)

    Raises:
        ValidationError: If the structure is wrong or any scope/action is unknown
    """
    if not isinstance(permissions, Mapping):
        raise ValidationError("Invalid permissions format")

    normalized: dict[str, list[str]] = {}
    for scope, actions in permissions.items():
        spec = PERMISSION_SCOPES.get(scope) if isinstance(scope, str) else None
        if spec is None:
            raise ValidationError(
                f"Unknown permission scope: {scope}",
                details={"scope": scope, "allowed": sorted(PERMISSION_SCOPES)},
            )
        if isinstance(actions, (str, bytes)) or not isinstance(actions, Iterable):
            raise ValidationError(
                f"Actions for scope '{scope}' must be a list",
                details={"scope": scope},
            )
        actions = list(actions)
        unknown = [a for a in actions if a not in spec.actions]
        if unknown:
            raise ValidationError(
                f"Unknown action(s) for scope '{scope}': {', '.join(map(str, unknown))}",
                details={"scope": scope, "allowed": list(spec.actions)},
            )
        normalized[scope] = [a for a in spec.actions if a in actions]
    return normalized


def get_template(name: str) -> dict[str, list[str]]:
    """Return a copy of a named permission template."""
    template = PERMISSION_TEMPLATES.get(name)
    if template is None:
        raise ValidationError(
            f"Unknown permission template: {name}",
            details={"allowed": sorted(PERMISSION_TEMPLATES)},
        )
    return {scope: list(actions) for scope, actions in template["permissions"].items()}


def has_permission(
    permissions: Mapping[str, Iterable[str]] | None,
    scope: str,
    action: str,
) -> bool:
    """Check a single (scope, action) against a key's permissions.

    An absent or empty permission map grants nothing.
    """
    if not permissions:
        return False
    actions = permissions.get(scope)
    if not actions:
        return False
    return action in actions


def has_permissions(
    permissions: Mapping[str, Iterable[str]] | None,
    required: Mapping[str, Iterable[str]],
) -> bool:
    """Check that every required (scope, action) pair is granted."""
    return all(
        has_permission(permissions, scope, action)
        for scope, actions in required.items()
        for action in actions
    )
