"""Transfer request state machine.

States::

    pending -> accepted | rejected | cancelled

All three targets are terminal. Every transition:

- is authorized by the guard before anything is written
- runs under a per-controller lock in this process
- commits through a status compare-and-set in the store, so a second
  replica racing on the same request gets ``GONE`` instead of a double
  resolution

Creation is conditional in the store as well: a request is only written
while the controller has no other pending request, even across replicas.

Administrative removal is the one path that writes a transfer record
already in a terminal state.
"""

import asyncio
import logging
import weakref
from collections.abc import Callable
from datetime import UTC, datetime
from typing import ClassVar

from atcroster import policy
from atcroster.auth import Principal
from atcroster.core.config import RosterConfig, get_roster_config
from atcroster.core.constants import SENIOR_STAFF_ROLES, Rating, RoleTag
from atcroster.core.results import ErrorKind, Outcome
from atcroster.eligibility import EligibilityEvaluator
from atcroster.guard import AuthorizationGuard, Operation
from atcroster.notifications import (
    ActionLogged,
    MembershipChanged,
    NotificationDispatcher,
    RatingReviewRequired,
    RosterRemoval,
    StaffDiscrepancy,
    TransferRequested,
    TransferResolved,
    get_dispatcher,
)
from atcroster.roster.models import (
    Controller,
    Facility,
    TransferRequest,
    TransferStatus,
    normalize_facility_code,
)
from atcroster.roster.store import RosterStore

logger = logging.getLogger(__name__)

RESOLVE_ACTIONS = {"accept", "reject"}


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _display(principal: Principal) -> str:
    return principal.name or str(principal.cid)


def _discrepancy_kind(roles: set[RoleTag]) -> str:
    if roles & SENIOR_STAFF_ROLES:
        return "senior"
    if RoleTag.TA in roles:
        return "training"
    return "other"


class TransferWorkflow:
    """Create, resolve and cancel transfer requests; remove controllers.

    Usage::

        async with RosterStore() as store:
            workflow = TransferWorkflow(store)
            outcome = await workflow.accept(principal, "ZAB", transfer_id)
    """

    # One lock per CID, shared by all workflow instances in this process
    _locks: ClassVar[weakref.WeakValueDictionary[int, asyncio.Lock]] = (
        weakref.WeakValueDictionary()
    )

    def __init__(
        self,
        store: RosterStore,
        dispatcher: NotificationDispatcher | None = None,
        *,
        guard: AuthorizationGuard | None = None,
        evaluator: EligibilityEvaluator | None = None,
        config: RosterConfig | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher or get_dispatcher()
        self.config = config or get_roster_config()
        self.guard = guard or AuthorizationGuard(store)
        self.evaluator = evaluator or EligibilityEvaluator(store, self.config)
        self.clock = clock

    def _lock(self, cid: int) -> asyncio.Lock:
        lock = self._locks.get(cid)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[cid] = lock
        return lock

    async def _active_facility(self, code: str) -> Facility | None:
        try:
            code = normalize_facility_code(code)
        except ValueError:
            return None
        facility = await self.store.get_facility(code)
        if facility is None or not facility.active:
            return None
        return facility

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create(
        self,
        principal: Principal | None,
        cid: int,
        to_facility: str,
        reason: str,
    ) -> Outcome:
        """Submit a transfer request for ``cid`` into ``to_facility``.

        The controller themself must pass transfer eligibility. Org staff
        moving someone else bypass eligibility but not authorization.
        """
        reason = (reason or "").strip()
        if not reason:
            return Outcome.failure(ErrorKind.MALFORMED, "A reason is required")

        destination = await self._active_facility(to_facility)
        if destination is None:
            return Outcome.failure(ErrorKind.NOT_FOUND, "Facility not found or not active")

        roles = await self.store.list_roles(cid=principal.cid) if principal else []
        verdict = self.guard.evaluate(
            principal, Operation.CREATE_TRANSFER, destination.id, roles, owner_cid=cid
        )
        if not verdict.allowed:
            return verdict.to_outcome()

        administrative = principal.cid != cid and policy.is_org_staff(roles, principal.cid)

        async with self._lock(cid):
            controller = await self.store.get_controller(cid)
            if controller is None or not controller.active:
                return Outcome.failure(ErrorKind.NOT_FOUND, "Controller not found")

            if controller.facility == destination.id:
                return Outcome.failure(
                    ErrorKind.MALFORMED, f"Controller is already a member of {destination.id}"
                )

            pending = await self.store.list_transfers(cid=cid, status=TransferStatus.PENDING)
            if pending:
                return Outcome.failure(
                    ErrorKind.CONFLICT,
                    "Controller already has a pending transfer request",
                    transfer_id=pending[0].id,
                )

            now = self.clock()
            if not administrative:
                checks = await self.evaluator.transfer_checklist(controller, now)
                if not checks.eligible:
                    logger.info(
                        "Transfer for %s to %s denied: %s",
                        cid,
                        destination.id,
                        ", ".join(checks.failed_gates()),
                    )
                    return Outcome.failure(
                        ErrorKind.INELIGIBLE,
                        "Controller is not eligible for transfer",
                        checklist=checks.model_dump(),
                        failed=checks.failed_gates(),
                    )

            transfer = TransferRequest(
                cid=cid,
                from_facility=controller.facility,
                to_facility=destination.id,
                reason=reason,
                created_at=now,
                updated_at=now,
            )
            if not await self.store.create_pending_transfer(transfer):
                # Another replica wrote a pending request after our check
                pending = await self.store.list_transfers(cid=cid, status=TransferStatus.PENDING)
                return Outcome.failure(
                    ErrorKind.CONFLICT,
                    "Controller already has a pending transfer request",
                    transfer_id=pending[0].id if pending else None,
                )

        await self.dispatcher.dispatch(
            TransferRequested(
                cid=cid,
                transfer_id=transfer.id,
                from_facility=transfer.from_facility,
                to_facility=transfer.to_facility,
                reason=reason,
                administrative=administrative,
            )
        )
        logger.info(
            "Transfer %s requested for %s: %s -> %s by %s%s",
            transfer.id,
            cid,
            transfer.from_facility,
            transfer.to_facility,
            principal.cid,
            " (administrative)" if administrative else "",
        )
        return Outcome.success(transfer=transfer.to_summary())

    # ------------------------------------------------------------------
    # Accept / reject
    # ------------------------------------------------------------------

    async def _load_for_resolution(
        self,
        principal: Principal | None,
        facility: str,
        transfer_id: str,
    ) -> tuple[TransferRequest | None, Outcome | None]:
        """Run the checks shared by accept and reject.

        Returns:
            (transfer, None) when resolution may proceed, or (None, failure)
        """
        destination = await self._active_facility(facility)
        if destination is None:
            return None, Outcome.failure(ErrorKind.NOT_FOUND, "Facility not found or not active")

        verdict = await self.guard.check(principal, Operation.RESOLVE_TRANSFER, destination.id)
        if not verdict.allowed:
            return None, verdict.to_outcome()

        transfer = await self.store.get_transfer(transfer_id)
        if transfer is None:
            return None, Outcome.failure(ErrorKind.NOT_FOUND, "Transfer request not found")

        if transfer.status.is_terminal:
            return None, Outcome.failure(ErrorKind.GONE, "Transfer is not pending")

        if transfer.to_facility != destination.id:
            return None, Outcome.failure(ErrorKind.FORBIDDEN, "Forbidden")

        return transfer, None

    async def _transition(
        self,
        transfer: TransferRequest,
        status: TransferStatus,
        *,
        by: int,
        action_text: str,
    ) -> TransferRequest | None:
        """Move a pending transfer to ``status``. Caller holds the CID lock.

        Returns:
            The updated transfer, or None if it was no longer pending
        """
        current = await self.store.get_transfer(transfer.id)
        if current is None or current.status.is_terminal:
            return None

        updated = current.model_copy(
            update={
                "status": status,
                "resolved_by": by,
                "action_text": action_text,
                "updated_at": self.clock(),
            }
        )
        if not await self.store.compare_and_set_transfer(updated, TransferStatus.PENDING):
            return None
        return updated

    async def accept(
        self,
        principal: Principal | None,
        facility: str,
        transfer_id: str,
    ) -> Outcome:
        """Accept a pending transfer into ``facility`` and move the controller."""
        transfer, failure = await self._load_for_resolution(principal, facility, transfer_id)
        if failure:
            return failure

        async with self._lock(transfer.cid):
            accepted = await self._transition(
                transfer,
                TransferStatus.ACCEPTED,
                by=principal.cid,
                action_text=f"Accepted by {_display(principal)}",
            )
            if accepted is None:
                return Outcome.failure(ErrorKind.GONE, "Transfer is not pending")

            controller = await self.store.get_controller(accepted.cid)
            if controller is not None:
                await self._move_controller(controller, accepted.to_facility, principal.cid)

        await self.dispatcher.dispatch(
            TransferResolved(
                cid=accepted.cid,
                transfer_id=accepted.id,
                from_facility=accepted.from_facility,
                to_facility=accepted.to_facility,
                status=accepted.status.value,
                by=principal.cid,
            )
        )
        logger.info("Transfer %s accepted by %s", accepted.id, principal.cid)
        return Outcome.success(transfer=accepted.to_summary())

    async def _move_controller(self, controller: Controller, to_facility: str, by: int) -> None:
        """Apply an accepted transfer to the controller's membership."""
        old_facility = controller.facility
        now = self.clock()

        controller.facility = to_facility
        controller.facility_joined_at = now
        await self.store.upsert_controller(controller)

        if not self.config.is_pool(old_facility):
            stale = await self.store.list_roles(cid=controller.cid, facility=old_facility)
            for role in stale:
                await self.store.remove_role(role)
            if stale:
                held = {r.role for r in stale}
                await self.dispatcher.dispatch(
                    StaffDiscrepancy(
                        cid=controller.cid,
                        facility=old_facility,
                        new_facility=to_facility,
                        kind=_discrepancy_kind(held),
                        roles=sorted(r.value for r in held),
                    )
                )
                logger.warning(
                    "Cleared roles %s at %s for %s on transfer to %s",
                    sorted(r.value for r in held),
                    old_facility,
                    controller.cid,
                    to_facility,
                )

        destination = await self.store.get_facility(to_facility)
        await self.dispatcher.dispatch(
            MembershipChanged(
                cid=controller.cid,
                from_facility=old_facility,
                to_facility=to_facility,
                by=by,
                welcome=bool(destination and destination.active),
            )
        )

        if Rating.I1 <= controller.rating < Rating.SUP:
            await self.dispatcher.dispatch(
                RatingReviewRequired(
                    cid=controller.cid,
                    facility=to_facility,
                    rating=controller.rating.short,
                    action="added",
                )
            )

    async def reject(
        self,
        principal: Principal | None,
        facility: str,
        transfer_id: str,
        reason: str,
    ) -> Outcome:
        """Reject a pending transfer into ``facility``. A reason is required."""
        transfer, failure = await self._load_for_resolution(principal, facility, transfer_id)
        if failure:
            return failure

        reason = (reason or "").strip()
        if not reason:
            return Outcome.failure(ErrorKind.MALFORMED, "Malformed request: reason is required")

        async with self._lock(transfer.cid):
            rejected = await self._transition(
                transfer, TransferStatus.REJECTED, by=principal.cid, action_text=reason
            )
        if rejected is None:
            return Outcome.failure(ErrorKind.GONE, "Transfer is not pending")

        await self.dispatcher.dispatch(
            TransferResolved(
                cid=rejected.cid,
                transfer_id=rejected.id,
                from_facility=rejected.from_facility,
                to_facility=rejected.to_facility,
                status=rejected.status.value,
                by=principal.cid,
                reason=reason,
            )
        )
        logger.info("Transfer %s rejected by %s", rejected.id, principal.cid)
        return Outcome.success(transfer=rejected.to_summary())

    async def resolve(
        self,
        principal: Principal | None,
        facility: str,
        transfer_id: str,
        action: str,
        reason: str = "",
    ) -> Outcome:
        """Accept or reject, as chosen by ``action``."""
        action = (action or "").strip().lower()
        if action not in RESOLVE_ACTIONS:
            _, failure = await self._load_for_resolution(principal, facility, transfer_id)
            return failure or Outcome.failure(ErrorKind.MALFORMED, "Malformed request")
        if action == "accept":
            return await self.accept(principal, facility, transfer_id)
        return await self.reject(principal, facility, transfer_id, reason)

    # ------------------------------------------------------------------
    # Cancel
    # ------------------------------------------------------------------

    async def cancel(
        self,
        principal: Principal | None,
        transfer_id: str,
        reason: str,
    ) -> Outcome:
        """Withdraw a pending transfer. Only its controller or org staff may."""
        transfer = await self.store.get_transfer(transfer_id)
        if transfer is None:
            return Outcome.failure(ErrorKind.NOT_FOUND, "Transfer request not found")

        verdict = await self.guard.check(
            principal, Operation.CANCEL_TRANSFER, transfer.to_facility, owner_cid=transfer.cid
        )
        if not verdict.allowed:
            return verdict.to_outcome()

        if transfer.status.is_terminal:
            return Outcome.failure(ErrorKind.GONE, "Transfer is not pending")

        reason = (reason or "").strip()
        if not reason:
            return Outcome.failure(ErrorKind.MALFORMED, "Malformed request: reason is required")

        async with self._lock(transfer.cid):
            cancelled = await self._transition(
                transfer, TransferStatus.CANCELLED, by=principal.cid, action_text=reason
            )
        if cancelled is None:
            return Outcome.failure(ErrorKind.GONE, "Transfer is not pending")

        await self.dispatcher.dispatch(
            TransferResolved(
                cid=cancelled.cid,
                transfer_id=cancelled.id,
                from_facility=cancelled.from_facility,
                to_facility=cancelled.to_facility,
                status=cancelled.status.value,
                by=principal.cid,
                reason=reason,
            )
        )
        logger.info("Transfer %s cancelled by %s", cancelled.id, principal.cid)
        return Outcome.success(transfer=cancelled.to_summary())

    # ------------------------------------------------------------------
    # Administrative removal
    # ------------------------------------------------------------------

    async def remove_from_facility(
        self,
        principal: Principal | None,
        facility: str,
        cid: int,
        reason: str,
    ) -> Outcome:
        """Move a controller out of ``facility`` into the unassigned pool.

        Writes an already-accepted administrative transfer record so the
        controller's history stays continuous.
        """
        source = await self._active_facility(facility)
        if source is None:
            return Outcome.failure(ErrorKind.NOT_FOUND, "Facility not found or not active")

        verdict = await self.guard.check(principal, Operation.REMOVE_FROM_ROSTER, source.id)
        if not verdict.allowed:
            return verdict.to_outcome()

        controller = await self.store.get_controller(cid)
        if controller is None or controller.facility != source.id:
            return Outcome.failure(ErrorKind.NOT_FOUND, "User not found or not in facility")

        reason = (reason or "").strip()
        if not reason:
            return Outcome.failure(ErrorKind.MALFORMED, "Malformed request: reason is required")

        unassigned = self.config.unassigned_facility
        async with self._lock(cid):
            controller = await self.store.get_controller(cid)
            if controller is None or controller.facility != source.id:
                return Outcome.failure(ErrorKind.NOT_FOUND, "User not found or not in facility")

            now = self.clock()
            controller.facility = unassigned
            controller.facility_joined_at = now
            await self.store.upsert_controller(controller)

            record = TransferRequest(
                cid=cid,
                from_facility=source.id,
                to_facility=unassigned,
                status=TransferStatus.ACCEPTED,
                reason=reason,
                action_text=reason,
                administrative=True,
                resolved_by=principal.cid,
                created_at=now,
                updated_at=now,
            )
            await self.store.create_transfer(record)

        await self.dispatcher.dispatch(
            RosterRemoval(cid=cid, facility=source.id, by=principal.cid, reason=reason)
        )
        await self.dispatcher.dispatch(
            ActionLogged(
                cid=cid,
                message=f"Removed from {source.id} by {_display(principal)}: {reason}",
            )
        )
        if controller.rating >= Rating.I1:
            await self.dispatcher.dispatch(
                RatingReviewRequired(
                    cid=cid,
                    facility=source.id,
                    rating=controller.rating.short,
                    action="removed",
                )
            )

        logger.info("Removed %s from %s by %s", cid, source.id, principal.cid)
        return Outcome.success(transfer=record.to_summary())

    # ------------------------------------------------------------------
    # Override flag
    # ------------------------------------------------------------------

    async def set_transfer_override(
        self,
        principal: Principal | None,
        cid: int,
        enabled: bool,
    ) -> Outcome:
        """Set or clear a controller's transfer override flag (org staff only)."""
        verdict = await self.guard.check(
            principal, Operation.SET_TRANSFER_OVERRIDE, self.config.headquarters_facility
        )
        if not verdict.allowed:
            return verdict.to_outcome()

        async with self._lock(cid):
            controller = await self.store.get_controller(cid)
            if controller is None:
                return Outcome.failure(ErrorKind.NOT_FOUND, "Controller not found")

            controller.transfer_override = enabled
            await self.store.upsert_controller(controller)

        if enabled:
            message = f"Transfer override flag enabled by {_display(principal)}"
        else:
            message = f"Transfer override flag removed by {_display(principal)}"
        await self.dispatcher.dispatch(ActionLogged(cid=cid, message=message))

        logger.info("%s for %s", message, cid)
        return Outcome.success(cid=cid, transfer_override=enabled)
