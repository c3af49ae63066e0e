from __future__ import annotations

from typing import Iterable, List, Optional, Set

from staffing.settings import global_roles


ROLE_ALIASES = {
    "superadmin": "super_admin",
    "super-admin": "super_admin",
    "super admin": "super_admin",
    "facility-admin": "facility_admin",
    "facility admin": "facility_admin",
    "facility-manager": "facility_manager",
    "facility manager": "facility_manager",
}


def normalize_role(role: Optional[str]) -> str:
    value = (role or "").strip().lower()
    return ROLE_ALIASES.get(value, value)


def is_global_role(role: Optional[str], roles: Optional[Iterable[str]] = None) -> bool:
    """Return True when the caller may see shifts for every facility."""
    allowed = {normalize_role(name) for name in (roles if roles is not None else global_roles())}
    return normalize_role(role) in allowed


def facility_scope(role: Optional[str], facility_ids: Optional[Iterable[int]]) -> Optional[Set[int]]:
    """Return the facility ids a caller may see, or None when unrestricted."""
    if is_global_role(role):
        return None
    scope: Set[int] = set()
    for value in facility_ids or []:
        try:
            scope.add(int(value))
        except (TypeError, ValueError):
            continue
    return scope


def describe_scope(scope: Optional[Set[int]]) -> str:
    if scope is None:
        return "all facilities"
    if not scope:
        return "no facilities"
    ids: List[str] = [str(value) for value in sorted(scope)]
    return "facilities " + ", ".join(ids)
