"""Shared pytest fixtures."""

from datetime import UTC, datetime, timedelta

import pytest

from atcroster.auth import Principal
from atcroster.core.config import reset_roster_config
from atcroster.core.constants import Rating, RoleTag
from atcroster.notifications import RecordingDispatcher, set_dispatcher
from atcroster.roster.models import (
    Controller,
    ExamResult,
    Facility,
    PromotionRecord,
    RoleAssignment,
    TransferRequest,
)
from atcroster.roster.store import (
    CONTROLLERS,
    EXAM_RESULTS,
    FACILITIES,
    PROMOTIONS,
    ROLES,
    TRANSFERS,
    RosterStore,
)


@pytest.fixture
def now():
    """Fixed evaluation time for eligibility and workflow tests."""
    return datetime(2026, 6, 1, 12, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def _clear_memory_and_env(monkeypatch):
    """Reset in-memory store, cached config and dispatcher; unset Cosmos env vars."""
    RosterStore._memory.clear()
    for name in ("COSMOS_ENDPOINT", "COSMOS_KEY", "COSMOS_DATABASE"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr("atcroster.roster.store.load_dotenv", lambda: None)
    monkeypatch.setattr("atcroster.core.config.load_dotenv", lambda: None)
    monkeypatch.setattr("atcroster.api.facilities._summary_cache", None)
    reset_roster_config()
    set_dispatcher(None)
    yield
    RosterStore._memory.clear()
    reset_roster_config()
    set_dispatcher(None)


@pytest.fixture
def recorder():
    """Recording dispatcher installed as the process-wide dispatcher."""
    dispatcher = RecordingDispatcher()
    set_dispatcher(dispatcher)
    return dispatcher


class Seeder:
    """Writes documents straight into the in-memory roster store."""

    def _put(self, container: str, doc: dict) -> None:
        RosterStore._memory.setdefault(container, {})[doc["id"]] = doc

    def facility(self, code: str, **overrides) -> Facility:
        defaults = {"id": code, "name": f"{code} ARTCC", "active": True}
        defaults.update(overrides)
        facility = Facility(**defaults)
        self._put(FACILITIES, facility.to_cosmos())
        return facility

    def controller(self, cid: int, facility: str = "ZAB", **overrides) -> Controller:
        """Controller who passes every transfer gate unless overridden."""
        defaults = {
            "cid": cid,
            "first_name": "Test",
            "last_name": f"Controller{cid}",
            "email": f"{cid}@example.com",
            "facility": facility,
            "rating": Rating.S2,
            "needs_basic_exam": False,
            "facility_joined_at": datetime.now(UTC) - timedelta(days=200),
        }
        defaults.update(overrides)
        controller = Controller(**defaults)
        self._put(CONTROLLERS, controller.to_cosmos())
        return controller

    def role(self, cid: int, facility: str, role: RoleTag | str) -> RoleAssignment:
        assignment = RoleAssignment(cid=cid, facility=facility, role=RoleTag(role))
        self._put(ROLES, assignment.to_cosmos())
        return assignment

    def transfer(self, cid: int, from_facility: str, to_facility: str, **overrides):
        defaults = {
            "cid": cid,
            "from_facility": from_facility,
            "to_facility": to_facility,
            "reason": "Moving closer to home",
        }
        defaults.update(overrides)
        transfer = TransferRequest(**defaults)
        self._put(TRANSFERS, transfer.to_cosmos())
        return transfer

    def promotion(self, cid: int, from_rating: Rating, to_rating: Rating, **overrides):
        record = PromotionRecord(
            cid=cid, from_rating=from_rating, to_rating=to_rating, **overrides
        )
        self._put(PROMOTIONS, record.to_cosmos())
        return record

    def exam(self, cid: int, exam_id: int, passed: bool = True) -> ExamResult:
        result = ExamResult(cid=cid, exam_id=exam_id, passed=passed)
        self._put(EXAM_RESULTS, result.to_cosmos())
        return result


@pytest.fixture
def seed():
    return Seeder()


@pytest.fixture
def network(seed):
    """Two facilities with staff, plus the pool facilities and an org staff member.

    - 1000001: ATM at ZAB
    - 1000002: TA at ZAB
    - 1000003: ATM at ZIX
    - 1000004: US2 at ZHQ (org staff)
    - 1000010: controller at ZAB, eligible to transfer
    """
    for code in ("ZAB", "ZIX", "ZHQ", "ZAE"):
        seed.facility(code)

    seed.controller(1000001, "ZAB", rating=Rating.C1)
    seed.role(1000001, "ZAB", RoleTag.ATM)
    seed.controller(1000002, "ZAB", rating=Rating.C1)
    seed.role(1000002, "ZAB", RoleTag.TA)
    seed.controller(1000003, "ZIX", rating=Rating.C1)
    seed.role(1000003, "ZIX", RoleTag.ATM)
    seed.controller(1000004, "ZHQ", rating=Rating.C3)
    seed.role(1000004, "ZHQ", RoleTag.US2)
    seed.controller(1000010, "ZAB")
    return seed


@pytest.fixture
def zab_atm():
    return Principal(cid=1000001, name="Alice Atm")


@pytest.fixture
def zab_ta():
    return Principal(cid=1000002, name="Tom Ta")


@pytest.fixture
def zix_atm():
    return Principal(cid=1000003, name="Ivan Atm")


@pytest.fixture
def org_staff():
    return Principal(cid=1000004, name="Hannah Hq")


@pytest.fixture
def member():
    return Principal(cid=1000010, name="Mia Member")