"""Tests for facility operations."""

import json

import pytest

from atcroster.api.facilities import (
    clear_facility_cache,
    get_facility,
    get_roster,
    list_facilities,
    list_pending_transfers,
    remove_from_roster,
    resolve_transfer,
    rotate_credentials,
    update_facility,
)
from atcroster.api.users import request_transfer
from atcroster.auth import Principal
from atcroster.core.results import ErrorKind
from atcroster.roster.models import FACILITY_SECRET_FIELDS
from atcroster.roster.store import RosterStore


@pytest.fixture(autouse=True)
def _network(network, recorder):
    network.facility("ZAB", name="Albuquerque ARTCC", api_key="zab-live", url="https://zab.test")
    return network


async def _request(member) -> str:
    outcome = await request_transfer(member, member.cid, "ZIX", "Moving")
    assert outcome.ok, outcome.message
    return outcome.data["transfer"]["id"]


class TestListFacilities:
    async def test_active_only_without_secrets(self, network):
        network.facility("ZXX", active=False)

        outcome = await list_facilities()

        codes = [f["id"] for f in outcome.data["facilities"]]
        assert codes == ["ZAB", "ZAE", "ZHQ", "ZIX"]
        for facility in outcome.data["facilities"]:
            assert not FACILITY_SECRET_FIELDS & facility.keys()


class TestGetFacility:
    async def test_summary(self):
        outcome = await get_facility("zab")

        assert outcome.ok
        assert outcome.data["facility"]["name"] == "Albuquerque ARTCC"
        assert "api_key" not in outcome.data["facility"]
        assert outcome.data["controllers"] == 3
        assert outcome.data["pending_transfers"] == 0
        roles = {(r["cid"], r["role"]) for r in outcome.data["roles"]}
        assert roles == {(1000001, "ATM"), (1000002, "TA")}

    async def test_summary_is_cached(self, network):
        first = await get_facility("ZAB")
        network.controller(1000050, "ZAB")

        cached = await get_facility("ZAB")
        assert cached.data["controllers"] == first.data["controllers"]

        clear_facility_cache("ZAB")
        fresh = await get_facility("ZAB")
        assert fresh.data["controllers"] == first.data["controllers"] + 1

    async def test_deactivated_facility_not_served_from_cache(self, network):
        assert (await get_facility("ZAB")).ok
        network.facility("ZAB", active=False)

        outcome = await get_facility("ZAB")
        assert outcome.kind is ErrorKind.NOT_FOUND

    @pytest.mark.parametrize("code", ["ZZZ", "bad-code"])
    async def test_not_found(self, code):
        outcome = await get_facility(code)
        assert outcome.kind is ErrorKind.NOT_FOUND


class TestGetRoster:
    async def test_anonymous_sees_redacted_emails(self):
        outcome = await get_roster(None, "ZAB")

        assert outcome.ok
        assert len(outcome.data["controllers"]) == 3
        assert all(c["email"] is None for c in outcome.data["controllers"])

    async def test_facility_staff_sees_emails(self, zab_ta):
        outcome = await get_roster(zab_ta, "ZAB")
        assert outcome.data["controllers"][0]["email"].endswith("@example.com")

    async def test_other_facility_staff_redacted(self, zix_atm):
        outcome = await get_roster(zix_atm, "ZAB")
        assert all(c["email"] is None for c in outcome.data["controllers"])

    async def test_org_staff_sees_emails(self, org_staff):
        outcome = await get_roster(org_staff, "ZAB")
        assert all(c["email"] for c in outcome.data["controllers"])

    async def test_service_key_sees_emails(self):
        outcome = await get_roster(None, "ZAB", api_key="zab-live")
        assert all(c["email"] for c in outcome.data["controllers"])

    async def test_wrong_service_key_redacted(self):
        outcome = await get_roster(None, "ZAB", api_key="zix-live")
        assert all(c["email"] is None for c in outcome.data["controllers"])

    async def test_unknown_facility(self):
        outcome = await get_roster(None, "ZZZ")
        assert outcome.kind is ErrorKind.NOT_FOUND


class TestUpdateFacility:
    async def test_senior_staff_updates_urls(self, zab_atm):
        outcome = await update_facility(
            zab_atm, "ZAB", url="https://new.zab.test", uls_return="https://zab.test/login"
        )

        assert outcome.ok
        assert outcome.data["facility"]["url"] == "https://new.zab.test"
        async with RosterStore() as store:
            stored = await store.get_facility("ZAB")
        assert stored.uls_return == "https://zab.test/login"
        assert stored.api_key == "zab-live"

    async def test_invalidates_summary_cache(self, zab_atm):
        await get_facility("ZAB")
        await update_facility(zab_atm, "ZAB", url="https://new.zab.test")

        outcome = await get_facility("ZAB")
        assert outcome.data["facility"]["url"] == "https://new.zab.test"

    async def test_webmaster_allowed(self, network):
        network.controller(1000060, "ZAB")
        network.role(1000060, "ZAB", "WM")

        outcome = await update_facility(Principal(cid=1000060), "ZAB", url="")
        assert outcome.ok
        assert outcome.data["facility"]["url"] == ""

    async def test_invalid_url(self, zab_atm):
        outcome = await update_facility(zab_atm, "ZAB", uls_dev_return="not a url")
        assert outcome.kind is ErrorKind.MALFORMED
        assert outcome.data["fields"] == ["uls_dev_return"]

    async def test_training_administrator_forbidden(self, zab_ta):
        outcome = await update_facility(zab_ta, "ZAB", url="https://x.test")
        assert outcome.kind is ErrorKind.FORBIDDEN

    async def test_anonymous(self):
        outcome = await update_facility(None, "ZAB", url="https://x.test")
        assert outcome.kind is ErrorKind.UNAUTHENTICATED

    async def test_no_changes(self, zab_atm):
        outcome = await update_facility(zab_atm, "ZAB")
        assert outcome.ok
        assert outcome.data["facility"]["url"] == "https://zab.test"


class TestRotateCredentials:
    async def test_rotates_api_key_and_jwk(self, zab_atm):
        outcome = await rotate_credentials(zab_atm, "ZAB", ["apikey", "uls2jwk"])

        assert outcome.ok
        credentials = outcome.data["credentials"]
        assert len(credentials["apikey"]) == 32
        assert credentials["apikey"] != "zab-live"
        jwk = json.loads(credentials["uls2jwk"])
        assert jwk["kty"] == "oct"
        assert jwk["alg"] == "HS256"
        assert jwk["k"]

        async with RosterStore() as store:
            stored = await store.get_facility("ZAB")
        assert stored.api_key == credentials["apikey"]
        assert stored.uls_jwk == credentials["uls2jwk"]

    async def test_old_key_stops_working(self, zab_atm):
        outcome = await rotate_credentials(zab_atm, "ZAB", ["apikey"])
        new_key = outcome.data["credentials"]["apikey"]

        old = await get_roster(None, "ZAB", api_key="zab-live")
        new = await get_roster(None, "ZAB", api_key=new_key)
        assert old.data["controllers"][0]["email"] is None
        assert new.data["controllers"][0]["email"] is not None

    async def test_uls_secret_length(self, zab_atm):
        outcome = await rotate_credentials(zab_atm, "ZAB", ["ulsSecret"])
        assert len(outcome.data["credentials"]["ulsSecret"]) == 16

    async def test_unknown_kind(self, zab_atm):
        outcome = await rotate_credentials(zab_atm, "ZAB", ["apikey", "password"])
        assert outcome.kind is ErrorKind.MALFORMED
        assert outcome.data["kinds"] == ["password"]

    async def test_empty_kinds(self, zab_atm):
        outcome = await rotate_credentials(zab_atm, "ZAB", [])
        assert outcome.kind is ErrorKind.MALFORMED

    async def test_org_staff_forbidden(self, org_staff):
        outcome = await rotate_credentials(org_staff, "ZAB", ["apikey"])
        assert outcome.kind is ErrorKind.FORBIDDEN


class TestRosterRemoval:
    async def test_remove_invalidates_summary(self, zab_atm, member):
        before = await get_facility("ZAB")

        outcome = await remove_from_roster(zab_atm, "ZAB", member.cid, "Inactivity")

        assert outcome.ok
        after = await get_facility("ZAB")
        assert after.data["controllers"] == before.data["controllers"] - 1


class TestPendingTransfers:
    async def test_destination_staff_lists_pending(self, member, zix_atm):
        transfer_id = await _request(member)

        outcome = await list_pending_transfers(zix_atm, "ZIX")

        assert outcome.ok
        [transfer] = outcome.data["transfers"]
        assert transfer["id"] == transfer_id
        assert transfer["name"] == f"Test Controller{member.cid}"
        assert transfer["rating"] == "S2"

    async def test_service_key(self, network, member):
        network.facility("ZIX", api_key="zix-live")
        await _request(member)

        outcome = await list_pending_transfers(None, "ZIX", api_key="zix-live")
        assert len(outcome.data["transfers"]) == 1

    async def test_member_forbidden(self, member):
        outcome = await list_pending_transfers(member, "ZIX")
        assert outcome.kind is ErrorKind.FORBIDDEN

    async def test_anonymous(self):
        outcome = await list_pending_transfers(None, "ZIX")
        assert outcome.kind is ErrorKind.UNAUTHENTICATED


class TestResolveTransfer:
    async def test_accept_refreshes_both_summaries(self, member, zix_atm):
        transfer_id = await _request(member)
        zab_before = await get_facility("ZAB")
        zix_before = await get_facility("ZIX")

        outcome = await resolve_transfer(zix_atm, "ZIX", transfer_id, "accept")

        assert outcome.ok
        zab_after = await get_facility("ZAB")
        zix_after = await get_facility("ZIX")
        assert zab_after.data["controllers"] == zab_before.data["controllers"] - 1
        assert zix_after.data["controllers"] == zix_before.data["controllers"] + 1
        assert zix_after.data["pending_transfers"] == 0

    async def test_reject_requires_reason(self, member, zix_atm):
        transfer_id = await _request(member)
        outcome = await resolve_transfer(zix_atm, "ZIX", transfer_id, "reject")
        assert outcome.kind is ErrorKind.MALFORMED

