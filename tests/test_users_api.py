"""Tests for controller operations."""

from datetime import UTC, datetime, timedelta

import pytest

from atcroster.api.users import (
    cancel_transfer,
    get_promotion_eligibility,
    get_transfer_checklist,
    get_transfer_history,
    request_transfer,
    set_transfer_override,
)
from atcroster.core.constants import Rating
from atcroster.core.results import ErrorKind
from atcroster.notifications import ActionLogged, TransferRequested


@pytest.fixture(autouse=True)
def _network(network, recorder):
    return network


class TestRequestTransfer:
    async def test_request_dispatches_event(self, recorder, member):
        outcome = await request_transfer(member, member.cid, "ZIX", "Moving")

        assert outcome.ok
        assert outcome.to_response()["status"] == "OK"
        assert len(recorder.of_type(TransferRequested)) == 1

    async def test_ineligible_response_carries_checklist(self, zab_ta):
        outcome = await request_transfer(zab_ta, zab_ta.cid, "ZIX", "Moving")

        body = outcome.to_response()
        assert outcome.status_code == 403
        assert body["status"] == "error"
        assert body["failed"] == ["not_staff"]
        assert body["checklist"]["eligible"] is False


class TestCancelTransfer:
    async def test_cancel(self, member):
        created = await request_transfer(member, member.cid, "ZIX", "Moving")
        transfer_id = created.data["transfer"]["id"]

        outcome = await cancel_transfer(member, transfer_id, "Staying", cid=member.cid)

        assert outcome.ok
        assert outcome.data["transfer"]["status"] == "cancelled"

    async def test_cid_must_match(self, member, zab_ta):
        created = await request_transfer(member, member.cid, "ZIX", "Moving")
        transfer_id = created.data["transfer"]["id"]

        outcome = await cancel_transfer(member, transfer_id, "Staying", cid=zab_ta.cid)
        assert outcome.kind is ErrorKind.NOT_FOUND


class TestTransferChecklist:
    async def test_own_checklist(self, member):
        outcome = await get_transfer_checklist(member, member.cid)

        assert outcome.ok
        assert outcome.data["checklist"]["eligible"] is True
        assert outcome.data["failed"] == []

    async def test_facility_staff_may_view(self, member, zab_ta):
        assert (await get_transfer_checklist(zab_ta, member.cid)).ok

    async def test_other_facility_staff_forbidden(self, member, zix_atm):
        outcome = await get_transfer_checklist(zix_atm, member.cid)
        assert outcome.kind is ErrorKind.FORBIDDEN

    async def test_org_staff_may_view(self, member, org_staff):
        assert (await get_transfer_checklist(org_staff, member.cid)).ok

    async def test_anonymous(self, member):
        outcome = await get_transfer_checklist(None, member.cid)
        assert outcome.kind is ErrorKind.UNAUTHENTICATED

    async def test_unknown_controller(self, org_staff):
        outcome = await get_transfer_checklist(org_staff, 9999999)
        assert outcome.kind is ErrorKind.NOT_FOUND

    async def test_pending_request_shows_in_checklist(self, member):
        await request_transfer(member, member.cid, "ZIX", "Moving")

        outcome = await get_transfer_checklist(member, member.cid)
        assert outcome.data["failed"] == ["no_pending"]


class TestTransferHistory:
    async def test_newest_first(self, network, member):
        now = datetime.now(UTC)
        old = network.transfer(
            member.cid,
            "ZAE",
            "ZAB",
            status="accepted",
            created_at=now - timedelta(days=300),
            updated_at=now - timedelta(days=300),
        )
        created = await request_transfer(member, member.cid, "ZIX", "Moving")

        outcome = await get_transfer_history(member.cid)

        ids = [t["id"] for t in outcome.data["transfers"]]
        assert ids == [created.data["transfer"]["id"], old.id]

    async def test_unknown_controller(self):
        outcome = await get_transfer_history(9999999)
        assert outcome.kind is ErrorKind.NOT_FOUND


class TestPromotionEligibility:
    async def test_eligible_after_exam(self, network):
        network.controller(1000070, "ZAB", rating=Rating.S3)
        network.exam(1000070, 4)

        outcome = await get_promotion_eligibility(1000070)

        assert outcome.data == {"cid": 1000070, "rating": "S3", "eligible": True}

    async def test_not_eligible_without_exam(self, member):
        outcome = await get_promotion_eligibility(member.cid)
        assert outcome.data["eligible"] is False

    async def test_unknown_controller(self):
        outcome = await get_promotion_eligibility(9999999)
        assert outcome.kind is ErrorKind.NOT_FOUND


class TestSetTransferOverride:
    async def test_org_staff_sets_override(self, recorder, member, org_staff):
        outcome = await set_transfer_override(org_staff, member.cid, True)

        assert outcome.data == {"cid": member.cid, "transfer_override": True}
        [event] = recorder.of_type(ActionLogged)
        assert "enabled" in event.message

    async def test_member_forbidden(self, member):
        outcome = await set_transfer_override(member, member.cid, True)
        assert outcome.kind is ErrorKind.FORBIDDEN
