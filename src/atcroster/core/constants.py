"""Closed enumerations and role groupings used across the codebase.

These constants are imported by other modules:
- Rating: roster/models.py, eligibility.py, transfers/workflow.py
- RoleTag and the role groupings: policy.py, guard.py, transfers/workflow.py
- Facility sentinels: core/config.py defaults
"""

from __future__ import annotations

from enum import IntEnum, StrEnum

__all__ = [
    "FACILITY_ADMIN_ROLES",
    "FACILITY_STAFF_ROLES",
    "HEADQUARTERS_FACILITY",
    "NON_MEMBER_FACILITY",
    "ORG_STAFF_ROLES",
    "POOL_FACILITIES",
    "SENIOR_STAFF_ROLES",
    "UNASSIGNED_FACILITY",
    "Rating",
    "RoleTag",
]


class Rating(IntEnum):
    """Controller rating, ordered from observer to administrator."""

    OBS = 1
    S1 = 2
    S2 = 3
    S3 = 4
    C1 = 5
    C2 = 6
    C3 = 7
    I1 = 8
    I2 = 9
    I3 = 10
    SUP = 11
    ADM = 12

    @classmethod
    def from_short(cls, value: str) -> Rating:
        """Parse a short rating name such as ``"S3"``.

        Raises:
            ValueError: If the name is not a known rating
        """
        try:
            return cls[value.strip().upper()]
        except KeyError:
            raise ValueError(f"Unknown rating: {value!r}") from None

    @property
    def short(self) -> str:
        return self.name

    @property
    def is_instructor(self) -> bool:
        return Rating.I1 <= self <= Rating.I3


class RoleTag(StrEnum):
    """Staff positions a controller can hold at a facility."""

    ATM = "ATM"  # Air traffic manager
    DATM = "DATM"  # Deputy air traffic manager
    TA = "TA"  # Training administrator
    EC = "EC"  # Events coordinator
    FE = "FE"  # Facility engineer
    WM = "WM"  # Webmaster
    INS = "INS"  # Instructor
    MTR = "MTR"  # Mentor
    US1 = "US1"
    US2 = "US2"
    US3 = "US3"
    US4 = "US4"
    US5 = "US5"
    US6 = "US6"
    US7 = "US7"
    US8 = "US8"
    US9 = "US9"

    @property
    def is_headquarters(self) -> bool:
        return self.value.startswith("US")


# Facility sentinels (pools excluded from transfer history counting)
UNASSIGNED_FACILITY = "ZAE"
HEADQUARTERS_FACILITY = "ZHQ"
NON_MEMBER_FACILITY = "ZZN"
POOL_FACILITIES: frozenset[str] = frozenset(
    {UNASSIGNED_FACILITY, NON_MEMBER_FACILITY, HEADQUARTERS_FACILITY}
)

# ATM and DATM run the facility; WM is never senior staff
SENIOR_STAFF_ROLES: frozenset[RoleTag] = frozenset({RoleTag.ATM, RoleTag.DATM})

# Roles allowed to edit facility metadata and rotate credentials
FACILITY_ADMIN_ROLES: frozenset[RoleTag] = frozenset({RoleTag.ATM, RoleTag.DATM, RoleTag.WM})

FACILITY_STAFF_ROLES: frozenset[RoleTag] = frozenset(
    {RoleTag.ATM, RoleTag.DATM, RoleTag.TA, RoleTag.EC, RoleTag.FE, RoleTag.WM}
)

ORG_STAFF_ROLES: frozenset[RoleTag] = frozenset(tag for tag in RoleTag if tag.is_headquarters)
