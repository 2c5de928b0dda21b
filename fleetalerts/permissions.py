"""Alert permissions from the fleet RBAC matrix, and the default grant lookup."""
from __future__ import annotations

from fleetalerts.errors import PermissionDenied
from fleetalerts.models.scope import AccessGrant, Caller, Role

FLEET_ROLES: frozenset[Role] = frozenset(
    {Role.SUPERADMIN, Role.DPA, Role.SHORE_MANAGEMENT, Role.FLEET_MASTER}
)

ALERT_PERMISSIONS: dict[str, frozenset[Role]] = {
    "list_fleet": FLEET_ROLES,
    "list_vessel": FLEET_ROLES | {Role.CAPTAIN, Role.PURSER, Role.HOD, Role.CHIEF_OFFICER, Role.CHIEF_ENGINEER},
    "view_summary": FLEET_ROLES | {Role.CAPTAIN},
    "acknowledge": frozenset({Role.SUPERADMIN, Role.DPA, Role.CAPTAIN, Role.PURSER, Role.HOD}),
    "snooze": frozenset({Role.SUPERADMIN, Role.DPA, Role.CAPTAIN}),
    "resolve": frozenset({Role.SUPERADMIN, Role.DPA, Role.CAPTAIN, Role.PURSER}),
    "reassign": frozenset({Role.SUPERADMIN, Role.DPA}),
}


def allowed(caller: Caller, action: str) -> bool:
    return caller.role in ALERT_PERMISSIONS.get(action, frozenset())


def require(caller: Caller, action: str) -> None:
    if not allowed(caller, action):
        raise PermissionDenied(f"Role {caller.role.value} may not {action.replace('_', ' ')}")


def require_list(caller: Caller) -> None:
    require(caller, "list_fleet" if caller.grant.fleet_wide else "list_vessel")


def grant_for(role: Role, company_id: str, vessel_id: str | None = None) -> AccessGrant:
    """Default access-grant lookup.

    A named vessel always narrows the grant to that vessel. Without one,
    only fleet roles get fleet-wide access.
    """
    if vessel_id:
        return AccessGrant(company_id=company_id, vessel_id=vessel_id)
    if role in FLEET_ROLES:
        return AccessGrant(company_id=company_id, fleet_wide=True)
    raise PermissionDenied(f"Role {role.value} needs a vessel assignment")
