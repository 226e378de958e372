"""Controller operations: transfer requests, eligibility and history."""

import logging

from atcroster.auth import Principal
from atcroster.core.results import ErrorKind, Outcome
from atcroster.eligibility import EligibilityEvaluator
from atcroster.guard import AuthorizationGuard, Operation
from atcroster.notifications import get_dispatcher
from atcroster.roster.store import RosterStore
from atcroster.transfers import TransferWorkflow

logger = logging.getLogger(__name__)


def _controller_not_found() -> Outcome:
    return Outcome.failure(ErrorKind.NOT_FOUND, "Controller not found")


async def request_transfer(
    principal: Principal | None,
    cid: int,
    facility: str,
    reason: str,
) -> Outcome:
    """Submit a transfer request for ``cid`` into ``facility``.

    A controller may request their own transfer if eligible. Org staff
    may move anyone; those requests skip the eligibility gates.

    Returns:
        Success with the new transfer, or a failure carrying the
        eligibility checklist when the controller is not eligible
    """
    async with RosterStore() as store:
        return await TransferWorkflow(store, get_dispatcher()).create(
            principal, cid, facility, reason
        )


async def cancel_transfer(
    principal: Principal | None,
    transfer_id: str,
    reason: str,
    *,
    cid: int | None = None,
) -> Outcome:
    """Withdraw a pending transfer request.

    When ``cid`` is given the transfer must belong to that controller.
    """
    async with RosterStore() as store:
        if cid is not None:
            transfer = await store.get_transfer(transfer_id)
            if transfer is None or transfer.cid != cid:
                return Outcome.failure(ErrorKind.NOT_FOUND, "Transfer request not found")

        return await TransferWorkflow(store, get_dispatcher()).cancel(
            principal, transfer_id, reason
        )


async def get_transfer_checklist(principal: Principal | None, cid: int) -> Outcome:
    """Show each transfer eligibility gate for a controller.

    Visible to the controller, staff at their facility, and org staff.
    """
    async with RosterStore() as store:
        controller = await store.get_controller(cid)
        if controller is None:
            return _controller_not_found()

        verdict = await AuthorizationGuard(store).check(
            principal, Operation.VIEW_TRANSFER_CHECKLIST, controller.facility, owner_cid=cid
        )
        if not verdict.allowed:
            return verdict.to_outcome()

        checks = await EligibilityEvaluator(store).transfer_checklist(controller)

    return Outcome.success(
        cid=cid,
        checklist=checks.model_dump(),
        failed=checks.failed_gates(),
    )


async def get_transfer_history(cid: int) -> Outcome:
    """List a controller's transfers, pending and resolved, newest first."""
    async with RosterStore() as store:
        controller = await store.get_controller(cid)
        if controller is None:
            return _controller_not_found()
        transfers = await store.list_transfers(cid=cid)

    return Outcome.success(cid=cid, transfers=[t.to_summary() for t in transfers])


async def get_promotion_eligibility(cid: int) -> Outcome:
    """Check whether a controller has passed the exam for their next rating."""
    async with RosterStore() as store:
        controller = await store.get_controller(cid)
        if controller is None:
            return _controller_not_found()
        eligible = await EligibilityEvaluator(store).promotion_eligible(controller)

    return Outcome.success(cid=cid, rating=controller.rating.short, eligible=eligible)


async def set_transfer_override(
    principal: Principal | None,
    cid: int,
    enabled: bool,
) -> Outcome:
    """Set or clear a controller's transfer override (org staff only)."""
    async with RosterStore() as store:
        return await TransferWorkflow(store, get_dispatcher()).set_transfer_override(
            principal, cid, enabled
        )
