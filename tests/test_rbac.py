"""
Tests for rbac.py - role, clearance and department checks
"""
import pytest

from utils.errors import AuthzError, AuthzErrorKind
from utils.rbac import (
    AccessRequirement, CrewRole, Department, authorize, get_department_catalog,
    get_role_catalog, has_clearance, has_department, has_role, parse_department,
    parse_role, validate_clearance_level
)
from utils.tokens import CrewClaims


def claims(role=CrewRole.FLIGHT_ATTENDANT, department=Department.CABIN_CREW, clearance_level=2):
    return CrewClaims(
        employee_id="AA12347",
        name="Lisa Martinez",
        role=role,
        department=department,
        clearance_level=clearance_level,
        airline="American Airlines",
    )


class TestPredicates:

    def test_has_clearance_is_inclusive(self):
        assert has_clearance(claims(clearance_level=3), 3)
        assert has_clearance(claims(clearance_level=5), 1)
        assert not has_clearance(claims(clearance_level=2), 4)

    def test_has_role_accepts_strings_and_enums(self):
        assert has_role(claims(), ["flight-attendant", CrewRole.PILOT])
        assert not has_role(claims(), [CrewRole.PILOT, CrewRole.CO_PILOT])

    def test_has_department(self):
        assert has_department(claims(), [Department.CABIN_CREW])
        assert not has_department(claims(), ["dispatch"])


class TestAuthorize:

    def test_empty_requirement_allows_everyone(self):
        authorize(claims(clearance_level=1), AccessRequirement())

    def test_role_failure_reports_required_roles(self):
        with pytest.raises(AuthzError) as exc:
            authorize(claims(), AccessRequirement(roles=[CrewRole.PILOT, CrewRole.DISPATCHER]))

        assert exc.value.kind is AuthzErrorKind.INSUFFICIENT_ROLE
        assert exc.value.status_code == 403
        assert exc.value.details == {"required_roles": ["dispatcher", "pilot"], "user_role": "flight-attendant"}

    def test_clearance_failure_reports_levels(self):
        with pytest.raises(AuthzError) as exc:
            authorize(claims(clearance_level=2), AccessRequirement(min_clearance=4))

        assert exc.value.kind is AuthzErrorKind.INSUFFICIENT_CLEARANCE
        assert exc.value.details == {"required_clearance": 4, "user_clearance": 2}

    def test_department_failure(self):
        with pytest.raises(AuthzError) as exc:
            authorize(claims(), AccessRequirement(departments=[Department.DISPATCH]))

        assert exc.value.kind is AuthzErrorKind.DEPARTMENT_RESTRICTED

    def test_role_is_checked_before_clearance(self):
        requirement = AccessRequirement(roles=[CrewRole.PILOT], min_clearance=5)

        with pytest.raises(AuthzError) as exc:
            authorize(claims(clearance_level=1), requirement)

        assert exc.value.kind is AuthzErrorKind.INSUFFICIENT_ROLE

    def test_all_parts_satisfied(self):
        requirement = AccessRequirement(
            roles=[CrewRole.PILOT], min_clearance=4, departments=[Department.FLIGHT_OPERATIONS]
        )
        authorize(claims(CrewRole.PILOT, Department.FLIGHT_OPERATIONS, 5), requirement)


class TestValidation:

    def test_parse_role(self):
        assert parse_role("co-pilot") is CrewRole.CO_PILOT
        with pytest.raises(ValueError, match="Role must be one of"):
            parse_role("captain")

    def test_parse_department(self):
        assert parse_department("dispatch") is Department.DISPATCH
        with pytest.raises(ValueError):
            parse_department("catering")

    @pytest.mark.parametrize("level", [0, 6, -1, True, "3", 2.5])
    def test_invalid_clearance_levels(self, level):
        with pytest.raises(ValueError):
            validate_clearance_level(level)

    def test_catalogs_cover_every_enum_member(self):
        assert {r["value"] for r in get_role_catalog()} == {r.value for r in CrewRole}
        assert {d["value"] for d in get_department_catalog()} == {d.value for d in Department}
