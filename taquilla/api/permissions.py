"""
Permission checks for staff operations.

Key helpers:
- roles_for_event(current_user, event)
- has_event_role(current_user, event, roles)
- can_scan(current_user, event)
- can_manage_tickets(current_user, event)
- can_operate_terminal(current_user, event)
- can_manage_finances(current_user, event)
- can_view_org_audits(organization_id, current_user)

Role rows with an event apply to that event only. Role rows without one
apply to every event of the user's organization.
"""
from typing import Any, Dict, Iterable, Optional, Set

from taquilla.utils.role_permissions import (
    ROLE_ACCOUNTING,
    ROLE_EVENT_ADMIN,
    has_minimum_role,
    SCAN_ROLES,
    TERMINAL_ROLES,
    TICKET_ADMIN_ROLES,
)


def _is_superadmin(current_user: Optional[Dict[str, Any]]) -> bool:
    return bool(current_user and current_user.get("is_superadmin"))


def roles_for_event(current_user: Optional[Dict[str, Any]], event) -> Set[str]:
    if not current_user or event is None:
        return set()
    result: Set[str] = set()
    for assignment in current_user.get("roles", []) or []:
        scoped_event = assignment.get("event_id")
        if scoped_event is not None:
            if str(scoped_event) == str(event.id):
                result.add(assignment["role"])
        elif event.organization_id is not None and current_user.get("organization_id") == event.organization_id:
            result.add(assignment["role"])
    return result


def has_event_role(current_user: Optional[Dict[str, Any]], event, roles: Iterable[str]) -> bool:
    if _is_superadmin(current_user):
        return True
    granted = roles_for_event(current_user, event)
    # event_admin implies every other role for its event
    return ROLE_EVENT_ADMIN in granted or bool(granted.intersection(roles))


def can_scan(current_user, event) -> bool:
    return has_event_role(current_user, event, SCAN_ROLES)


def can_manage_tickets(current_user, event) -> bool:
    return has_event_role(current_user, event, TICKET_ADMIN_ROLES)


def can_operate_terminal(current_user, event) -> bool:
    """Point-of-sale band taps: scanners, accounting and event admins."""
    return has_event_role(current_user, event, TERMINAL_ROLES)


def can_manage_finances(current_user: Optional[Dict[str, Any]], event=None) -> bool:
    """Accounting or any higher-ranked role; organization-wide when no event is given."""
    if _is_superadmin(current_user):
        return True
    if event is not None:
        return has_minimum_role(roles_for_event(current_user, event), ROLE_ACCOUNTING)
    org_wide = [
        a.get("role") for a in (current_user or {}).get("roles", []) or [] if a.get("event_id") is None
    ]
    return has_minimum_role(org_wide, ROLE_ACCOUNTING)


def can_view_org_audits(organization_id, current_user: Optional[Dict[str, Any]]) -> bool:
    if _is_superadmin(current_user):
        return True
    if not current_user or organization_id is None or current_user.get("organization_id") != organization_id:
        return False
    org_wide = [a.get("role") for a in current_user.get("roles", []) or [] if a.get("event_id") is None]
    return has_minimum_role(org_wide, ROLE_EVENT_ADMIN)
