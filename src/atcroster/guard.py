"""Request-level authorization for protected roster operations.

Each operation declares the capability it needs as a disjunction of
facility-scoped role checks, org staff, resource ownership, or a
facility service key. The guard evaluates that expression against the
acting principal and the facility that owns the target resource, and
returns a verdict. It never raises; callers translate a denial into
their own failure shape.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from enum import StrEnum

from atcroster import policy
from atcroster.auth import Principal
from atcroster.core.constants import FACILITY_ADMIN_ROLES, RoleTag
from atcroster.core.results import ErrorKind, Outcome
from atcroster.roster.models import RoleAssignment
from atcroster.roster.store import RosterStore

logger = logging.getLogger(__name__)


class Operation(StrEnum):
    UPDATE_FACILITY = "update_facility"
    ROTATE_CREDENTIALS = "rotate_credentials"
    READ_ROSTER_EMAILS = "read_roster_emails"
    REMOVE_FROM_ROSTER = "remove_from_roster"
    LIST_PENDING_TRANSFERS = "list_pending_transfers"
    RESOLVE_TRANSFER = "resolve_transfer"
    CREATE_TRANSFER = "create_transfer"
    CANCEL_TRANSFER = "cancel_transfer"
    SET_TRANSFER_OVERRIDE = "set_transfer_override"
    VIEW_TRANSFER_CHECKLIST = "view_transfer_checklist"


@dataclass(frozen=True)
class Context:
    """What a capability is evaluated against."""

    principal: Principal | None
    facility: str
    roles: tuple[RoleAssignment, ...]
    owner_cid: int | None = None
    service_key: bool = False


# ---------------------------------------------------------------------------
# Capability expressions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FacilityRoles:
    """Principal holds one of ``role_set`` at the target facility."""

    role_set: frozenset[RoleTag]

    def allows(self, ctx: Context) -> bool:
        if ctx.principal is None:
            return False
        return policy.has_capability(ctx.roles, ctx.principal.cid, ctx.facility, self.role_set)

    def __str__(self) -> str:
        return "facility " + "/".join(sorted(self.role_set))


@dataclass(frozen=True)
class SeniorStaff:
    def allows(self, ctx: Context) -> bool:
        if ctx.principal is None:
            return False
        return policy.is_senior_staff(ctx.roles, ctx.principal.cid, ctx.facility)

    def __str__(self) -> str:
        return "senior staff"


@dataclass(frozen=True)
class FacilityStaff:
    def allows(self, ctx: Context) -> bool:
        if ctx.principal is None:
            return False
        return policy.is_facility_staff(ctx.roles, ctx.principal.cid, ctx.facility)

    def __str__(self) -> str:
        return "facility staff"


@dataclass(frozen=True)
class OrgStaff:
    def allows(self, ctx: Context) -> bool:
        if ctx.principal is None:
            return False
        return policy.is_org_staff(ctx.roles, ctx.principal.cid)

    def __str__(self) -> str:
        return "org staff"


@dataclass(frozen=True)
class ResourceOwner:
    """The acting principal is the controller the resource belongs to."""

    def allows(self, ctx: Context) -> bool:
        return (
            ctx.principal is not None
            and ctx.owner_cid is not None
            and ctx.principal.cid == ctx.owner_cid
        )

    def __str__(self) -> str:
        return "resource owner"


@dataclass(frozen=True)
class ServiceKey:
    """A valid facility service key was presented for the target facility."""

    def allows(self, ctx: Context) -> bool:
        return ctx.service_key

    def __str__(self) -> str:
        return "service key"


Capability = FacilityRoles | SeniorStaff | FacilityStaff | OrgStaff | ResourceOwner | ServiceKey


@dataclass(frozen=True)
class AnyOf:
    """Disjunction of capabilities."""

    options: tuple[Capability, ...]

    def match(self, ctx: Context) -> Capability | None:
        for option in self.options:
            if option.allows(ctx):
                return option
        return None


def any_of(*options: Capability) -> AnyOf:
    return AnyOf(tuple(options))


CAPABILITIES: dict[Operation, AnyOf] = {
    Operation.UPDATE_FACILITY: any_of(FacilityRoles(FACILITY_ADMIN_ROLES), OrgStaff()),
    Operation.ROTATE_CREDENTIALS: any_of(FacilityRoles(FACILITY_ADMIN_ROLES)),
    Operation.READ_ROSTER_EMAILS: any_of(FacilityStaff(), OrgStaff(), ServiceKey()),
    Operation.REMOVE_FROM_ROSTER: any_of(SeniorStaff(), OrgStaff()),
    Operation.LIST_PENDING_TRANSFERS: any_of(FacilityStaff(), OrgStaff(), ServiceKey()),
    Operation.RESOLVE_TRANSFER: any_of(SeniorStaff(), OrgStaff()),
    Operation.CREATE_TRANSFER: any_of(ResourceOwner(), OrgStaff(), SeniorStaff()),
    Operation.CANCEL_TRANSFER: any_of(ResourceOwner(), OrgStaff()),
    Operation.SET_TRANSFER_OVERRIDE: any_of(OrgStaff()),
    Operation.VIEW_TRANSFER_CHECKLIST: any_of(ResourceOwner(), FacilityStaff(), OrgStaff()),
}


# ---------------------------------------------------------------------------
# Verdicts
# ---------------------------------------------------------------------------


class DenyReason(StrEnum):
    UNAUTHENTICATED = "unauthenticated"
    FORBIDDEN = "forbidden"


@dataclass(frozen=True)
class Verdict:
    allowed: bool
    reason: DenyReason | None = None
    matched: str = ""

    def to_outcome(self) -> Outcome:
        """Failure outcome for a denial (only meaningful when not allowed)."""
        if self.reason is DenyReason.UNAUTHENTICATED:
            return Outcome.failure(ErrorKind.UNAUTHENTICATED, "Unauthenticated")
        return Outcome.failure(ErrorKind.FORBIDDEN, "Forbidden")


class AuthorizationGuard:
    """Evaluates operation capabilities for a principal.

    Usage::

        guard = AuthorizationGuard(store)
        verdict = await guard.check(principal, Operation.RESOLVE_TRANSFER, "ZAB")
        if not verdict.allowed:
            return verdict.to_outcome()
    """

    def __init__(
        self,
        store: RosterStore,
        capabilities: dict[Operation, AnyOf] | None = None,
    ) -> None:
        self.store = store
        self.capabilities = capabilities or CAPABILITIES

    def evaluate(
        self,
        principal: Principal | None,
        operation: Operation,
        facility: str,
        roles: Iterable[RoleAssignment],
        *,
        owner_cid: int | None = None,
        service_key: bool = False,
    ) -> Verdict:
        """Decide an operation against already-loaded role assignments."""
        if principal is None and not service_key:
            return Verdict(allowed=False, reason=DenyReason.UNAUTHENTICATED)

        ctx = Context(
            principal=principal,
            facility=facility.upper(),
            roles=tuple(roles),
            owner_cid=owner_cid,
            service_key=service_key,
        )
        matched = self.capabilities[operation].match(ctx)
        if matched is None:
            logger.info(
                "Denied %s at %s for %s",
                operation,
                ctx.facility,
                principal.cid if principal else "service key",
            )
            return Verdict(allowed=False, reason=DenyReason.FORBIDDEN)

        return Verdict(allowed=True, matched=str(matched))

    async def check(
        self,
        principal: Principal | None,
        operation: Operation,
        facility: str,
        *,
        owner_cid: int | None = None,
        service_key: bool = False,
    ) -> Verdict:
        """Load the principal's roles and decide the operation."""
        roles = await self.store.list_roles(cid=principal.cid) if principal else []
        return self.evaluate(
            principal,
            operation,
            facility,
            roles,
            owner_cid=owner_cid,
            service_key=service_key,
        )
