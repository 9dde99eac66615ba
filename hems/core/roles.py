"""
Role normalization helpers (backend).

Canonical contract:
- Internal (DB/runtime): roles are represented by ``UserRole`` when possible.
- API boundaries and token claims: roles are serialized as lowercase strings:
  "student" | "coordinator".

Accepted when reading: ``UserRole`` members, objects with ``.value``, dicts
like ``{"value": "coordinator"}``, any casing, and enum-ish strings such as
"UserRole.COORDINATOR".
"""

from __future__ import annotations

from typing import Any, Optional, Union

from .models import UserRole

RoleLike = Union[str, UserRole, Any]

_KNOWN_ROLES = {role.value for role in UserRole}


def normalize_role(role: RoleLike) -> str:
    """Return canonical lowercase role string, or "" if missing."""
    if role is None:
        return ""

    if isinstance(role, UserRole):
        return role.value

    if isinstance(role, dict):
        role = role.get("value")
    elif hasattr(role, "value"):
        role = getattr(role, "value", role)

    if role is None:
        return ""

    raw = str(role).strip()
    if not raw:
        return ""

    lowered = raw.lower()
    if lowered in _KNOWN_ROLES:
        return lowered

    # "UserRole.COORDINATOR"
    if "." in raw:
        tail_lower = raw.split(".")[-1].strip().lower()
        if tail_lower in _KNOWN_ROLES:
            return tail_lower

    return lowered


def parse_user_role(role: RoleLike) -> Optional[UserRole]:
    """Best-effort conversion to ``UserRole``; returns None if invalid/unknown."""
    role_value = normalize_role(role)
    if role_value not in _KNOWN_ROLES:
        return None
    return UserRole(role_value)


def role_str(user_or_role: Any) -> str:
    """Accept a user-like object (with ``.role``) or a role value."""
    if hasattr(user_or_role, "role"):
        return normalize_role(getattr(user_or_role, "role", None))
    return normalize_role(user_or_role)


def has_role(user_or_role: Any, *roles: Union[UserRole, str]) -> bool:
    """Return True if the user/role matches any of the given roles."""
    current = role_str(user_or_role)
    if not current:
        return False
    allowed = {normalize_role(r) for r in roles}
    return current in allowed


def is_coordinator(user_or_role: Any) -> bool:
    return has_role(user_or_role, UserRole.COORDINATOR)


def is_student(user_or_role: Any) -> bool:
    return has_role(user_or_role, UserRole.STUDENT)
