"""Promotion and transfer eligibility.

Both checks are explicit queries over stored facts. The transfer check
reports every gate individually so a denial can be explained:

1. ``home_controller``  -- controller belongs to the network
2. ``basic_exam``       -- basic exam already passed
3. ``no_pending``       -- no transfer request currently pending
4. ``not_instructor``   -- rating outside I1..I3
5. ``not_staff``        -- no facility staff role at the current facility
6. ``promotion_cooldown`` -- no promotion to S3 or below in the window
7. ``initial`` / ``cooldown`` -- first move within the initial window,
   or enough days since the last accepted non-pool transfer

``transfer_override`` short-circuits all of them.
"""

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from pydantic import BaseModel

from atcroster import policy
from atcroster.core.config import RosterConfig, get_roster_config
from atcroster.core.constants import Rating
from atcroster.roster.models import (
    Controller,
    ExamResult,
    PromotionRecord,
    RoleAssignment,
    TransferRequest,
    TransferStatus,
)
from atcroster.roster.store import RosterStore

logger = logging.getLogger(__name__)

_GATES = (
    "home_controller",
    "basic_exam",
    "no_pending",
    "not_instructor",
    "not_staff",
    "promotion_cooldown",
)


def _promotion_exam_ids(rating: Rating, config: RosterConfig) -> frozenset[int]:
    """Exam IDs that unlock the step above ``rating`` (empty above S3)."""
    return {
        Rating.OBS: frozenset({config.basic_exam_id, config.s1_exam_id}),
        Rating.S1: frozenset({config.s2_exam_id}),
        Rating.S2: frozenset({config.s3_exam_id}),
        Rating.S3: frozenset({config.c1_exam_id}),
    }.get(rating, frozenset())


def evaluate_promotion_eligibility(
    controller: Controller,
    exam_results: list[ExamResult],
    config: RosterConfig | None = None,
) -> bool:
    """Check if a controller can be promoted to the next rating.

    Only OBS through S3 are evaluated; C1 and above are never eligible
    here. Exams for other rating steps do not count.
    """
    config = config or get_roster_config()
    if not controller.home_controller:
        return False

    required = _promotion_exam_ids(controller.rating, config)
    if not required:
        return False

    return any(
        r.passed and r.exam_id in required for r in exam_results if r.cid == controller.cid
    )


class TransferChecklist(BaseModel):
    """Per-gate transfer eligibility diagnostics (True = gate passed)."""

    home_controller: bool = False
    basic_exam: bool = False
    no_pending: bool = False
    not_instructor: bool = False
    not_staff: bool = False
    promotion_cooldown: bool = False
    initial: bool = False
    is_first: bool = False
    cooldown: bool = False
    override: bool = False
    days_since_transfer: int | None = None
    days_at_facility: int = 0
    eligible: bool = False

    def failed_gates(self) -> list[str]:
        """Names of the gates that blocked eligibility (empty if eligible)."""
        if self.eligible:
            return []
        failed = [gate for gate in _GATES if not getattr(self, gate)]
        if not ((self.is_first and self.initial) or self.cooldown):
            failed.append("transfer_window")
        return failed


@dataclass
class EligibilityFacts:
    """Stored facts the transfer check reads."""

    has_pending: bool = False
    transfers: list[TransferRequest] = field(default_factory=list)
    promotions: list[PromotionRecord] = field(default_factory=list)
    roles: list[RoleAssignment] = field(default_factory=list)


def evaluate_transfer_eligibility(
    controller: Controller,
    facts: EligibilityFacts,
    now: datetime | None = None,
    config: RosterConfig | None = None,
) -> TransferChecklist:
    """Evaluate all transfer gates for a controller.

    Args:
        controller: The controller requesting a transfer
        facts: Transfers, promotions and roles for this controller
        now: Evaluation time (defaults to current UTC time)
        config: Day windows and pool facilities

    Returns:
        TransferChecklist with each gate, day counts, and the combined result
    """
    config = config or get_roster_config()
    now = now or datetime.now(UTC)

    checks = TransferChecklist(
        home_controller=controller.home_controller,
        basic_exam=not controller.needs_basic_exam,
        no_pending=not facts.has_pending,
        not_instructor=not controller.rating.is_instructor,
        not_staff=not policy.is_facility_staff(facts.roles, controller.cid, controller.facility),
        override=controller.transfer_override,
        days_at_facility=(now - controller.facility_joined_at).days,
    )

    promo_cutoff = now - timedelta(days=config.promotion_cooldown_days)
    checks.promotion_cooldown = not any(
        p.to_rating <= Rating.S3 and p.created_at >= promo_cutoff for p in facts.promotions
    )

    # Accepted moves into real facilities; pool moves don't count as history
    accepted = sorted(
        (
            t
            for t in facts.transfers
            if t.status is TransferStatus.ACCEPTED and not config.is_pool(t.to_facility)
        ),
        key=lambda t: t.created_at,
        reverse=True,
    )

    if not config.is_pool(controller.facility) and len(accepted) == 1:
        checks.is_first = True
        checks.initial = checks.days_at_facility <= config.initial_transfer_window_days

    if accepted:
        checks.days_since_transfer = (now - accepted[0].updated_at).days
        checks.cooldown = checks.days_since_transfer >= config.transfer_cooldown_days
    else:
        checks.cooldown = True

    if checks.override:
        checks.eligible = True
    else:
        checks.eligible = all(getattr(checks, gate) for gate in _GATES) and (
            (checks.is_first and checks.initial) or checks.cooldown
        )

    return checks


class EligibilityEvaluator:
    """Loads facts from the roster store and runs the eligibility checks."""

    def __init__(self, store: RosterStore, config: RosterConfig | None = None) -> None:
        self.store = store
        self.config = config or get_roster_config()

    async def load_facts(self, controller: Controller) -> EligibilityFacts:
        transfers = await self.store.list_transfers(cid=controller.cid)
        return EligibilityFacts(
            has_pending=any(t.status is TransferStatus.PENDING for t in transfers),
            transfers=transfers,
            promotions=await self.store.list_promotions(controller.cid),
            roles=await self.store.list_roles(cid=controller.cid),
        )

    async def transfer_checklist(
        self,
        controller: Controller,
        now: datetime | None = None,
    ) -> TransferChecklist:
        facts = await self.load_facts(controller)
        checks = evaluate_transfer_eligibility(controller, facts, now, self.config)
        logger.debug("Transfer checklist for %s: %s", controller.cid, checks.model_dump())
        return checks

    async def promotion_eligible(self, controller: Controller) -> bool:
        results = await self.store.list_exam_results(controller.cid)
        return evaluate_promotion_eligibility(controller, results, self.config)
