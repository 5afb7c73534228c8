"""
Role constants and hierarchy for platform staff.

Roles other than ``super_admin`` are stored in ``user_roles`` and may be
scoped to a single event; ``super_admin`` is the ``is_superadmin`` user flag.
"""

from typing import Dict, FrozenSet, Iterable


ROLE_SUPER_ADMIN = "super_admin"
ROLE_EVENT_ADMIN = "event_admin"
ROLE_ACCOUNTING = "accounting"
ROLE_SCANNER = "scanner"
ROLE_PROMOTER = "promoter"

ROLE_HIERARCHY: Dict[str, int] = {
    ROLE_SUPER_ADMIN: 5,
    ROLE_EVENT_ADMIN: 4,
    ROLE_ACCOUNTING: 3,
    ROLE_SCANNER: 2,
    ROLE_PROMOTER: 1,
}

# Roles that can be granted through user_roles rows
ASSIGNABLE_ROLES: FrozenSet[str] = frozenset({
    ROLE_EVENT_ADMIN,
    ROLE_ACCOUNTING,
    ROLE_SCANNER,
    ROLE_PROMOTER,
})

SCAN_ROLES: FrozenSet[str] = frozenset({ROLE_SCANNER, ROLE_EVENT_ADMIN})
TICKET_ADMIN_ROLES: FrozenSet[str] = frozenset({ROLE_EVENT_ADMIN})
TERMINAL_ROLES: FrozenSet[str] = frozenset({ROLE_SCANNER, ROLE_ACCOUNTING, ROLE_EVENT_ADMIN})


def role_level(role: str) -> int:
    return ROLE_HIERARCHY.get(role, 0)


def has_minimum_role(roles: Iterable[str], minimum: str) -> bool:
    """Return True if any of ``roles`` ranks at or above ``minimum``."""
    required = role_level(minimum)
    if required == 0:
        return False
    return any(role_level(r) >= required for r in roles)


def validate_role(role: str) -> str:
    """Normalize and validate an assignable role name.

    Raises:
        ValueError: if the role is not assignable
    """
    normalized = (role or "").strip().lower()
    if normalized not in ASSIGNABLE_ROLES:
        raise ValueError(f"Invalid role: {role}. Must be one of {sorted(ASSIGNABLE_ROLES)}")
    return normalized
