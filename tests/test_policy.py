"""Tests for facility-scoped role checks."""

from atcroster import policy
from atcroster.core.constants import RoleTag
from atcroster.roster.models import RoleAssignment


def _roles(*entries: tuple[int, str, str]) -> list[RoleAssignment]:
    return [RoleAssignment(cid=cid, facility=fac, role=role) for cid, fac, role in entries]


class TestHasCapability:
    def test_role_at_facility(self):
        roles = _roles((1, "ZAB", "ATM"))
        assert policy.has_capability(roles, 1, "ZAB", {RoleTag.ATM})

    def test_role_elsewhere_does_not_count(self):
        roles = _roles((1, "ZAB", "ATM"))
        assert not policy.has_capability(roles, 1, "ZIX", {RoleTag.ATM})

    def test_other_controllers_roles_ignored(self):
        roles = _roles((2, "ZAB", "ATM"))
        assert not policy.has_capability(roles, 1, "ZAB", {RoleTag.ATM})

    def test_accepts_string_tags_and_lower_case_facility(self):
        roles = _roles((1, "ZAB", "WM"))
        assert policy.has_capability(roles, 1, "zab", ["WM", "ATM"])

    def test_no_implied_roles(self):
        roles = _roles((1, "ZAB", "ATM"))
        assert not policy.has_capability(roles, 1, "ZAB", {RoleTag.DATM})


class TestSeniorStaff:
    def test_atm_and_datm(self):
        roles = _roles((1, "ZAB", "ATM"), (2, "ZAB", "DATM"))
        assert policy.is_senior_staff(roles, 1, "ZAB")
        assert policy.is_senior_staff(roles, 2, "ZAB")

    def test_training_administrator_only_with_mentor_flag(self):
        roles = _roles((1, "ZAB", "TA"))
        assert not policy.is_senior_staff(roles, 1, "ZAB")
        assert policy.is_senior_staff(roles, 1, "ZAB", include_mentor=True)

    def test_webmaster_never_senior(self):
        roles = _roles((1, "ZAB", "WM"))
        assert not policy.is_senior_staff(roles, 1, "ZAB")
        assert not policy.is_senior_staff(roles, 1, "ZAB", include_mentor=True)


class TestFacilityStaff:
    def test_each_staff_position(self):
        for tag in ("ATM", "DATM", "TA", "EC", "FE", "WM"):
            assert policy.is_facility_staff(_roles((1, "ZAB", tag)), 1, "ZAB"), tag

    def test_instructor_is_not_staff(self):
        roles = _roles((1, "ZAB", "INS"), (1, "ZAB", "MTR"))
        assert not policy.is_facility_staff(roles, 1, "ZAB")


class TestOrgStaff:
    def test_headquarters_role_anywhere(self):
        assert policy.is_org_staff(_roles((1, "ZHQ", "US4")), 1)

    def test_facility_staff_is_not_org_staff(self):
        assert not policy.is_org_staff(_roles((1, "ZAB", "ATM")), 1)

    def test_empty(self):
        assert not policy.is_org_staff([], 1)
