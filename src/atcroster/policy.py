"""Facility-scoped role checks.

Pure functions over a controller's role assignments. No role implies
another; the only aggregations are senior staff, facility staff and
org staff. Nothing here touches the store, so one authorization
decision can call these as often as it likes.
"""

from collections.abc import Iterable

from atcroster.core.constants import (
    FACILITY_STAFF_ROLES,
    ORG_STAFF_ROLES,
    SENIOR_STAFF_ROLES,
    RoleTag,
)
from atcroster.roster.models import RoleAssignment


def _held(roles: Iterable[RoleAssignment], cid: int, facility: str | None) -> set[RoleTag]:
    """Role tags ``cid`` holds at ``facility`` (any facility when None)."""
    facility = facility.upper() if facility else None
    return {
        r.role
        for r in roles
        if r.cid == cid and (facility is None or r.facility == facility)
    }


def has_capability(
    roles: Iterable[RoleAssignment],
    cid: int,
    facility: str,
    role_set: Iterable[RoleTag | str],
) -> bool:
    """Check if ``cid`` holds any role in ``role_set`` at ``facility``."""
    wanted = {RoleTag(r) for r in role_set}
    return bool(_held(roles, cid, facility) & wanted)


def is_senior_staff(
    roles: Iterable[RoleAssignment],
    cid: int,
    facility: str,
    include_mentor: bool = False,
) -> bool:
    """Check if ``cid`` is ATM or DATM at ``facility``.

    With ``include_mentor`` the training administrator counts too.
    The webmaster never does.
    """
    wanted = set(SENIOR_STAFF_ROLES)
    if include_mentor:
        wanted.add(RoleTag.TA)
    return has_capability(roles, cid, facility, wanted)


def is_facility_staff(roles: Iterable[RoleAssignment], cid: int, facility: str) -> bool:
    """Check if ``cid`` holds a facility staff position at ``facility``."""
    return has_capability(roles, cid, facility, FACILITY_STAFF_ROLES)


def is_org_staff(roles: Iterable[RoleAssignment], cid: int) -> bool:
    """Check if ``cid`` holds any headquarters staff role, wherever it is assigned."""
    return bool(_held(roles, cid, None) & ORG_STAFF_ROLES)
