"""
Tests for crew_directory.py - listing, profiles, statistics and activation
"""
import pytest

from conftest import PASSWORD
from utils.crew_directory import CrewFilters, ProfileUpdate
from utils.errors import AuthError, AuthzError, ResourceError, ResourceErrorKind
from utils.rbac import CrewRole, Department


@pytest.fixture
def crew(make_crew):
    return {
        "captain": make_crew("AA12345", clearance_level=5, name="Captain Sarah Johnson"),
        "dispatcher": make_crew(
            "AA12349", role=CrewRole.DISPATCHER, department=Department.DISPATCH,
            clearance_level=4, name="Jennifer Wilson"
        ),
        "attendant": make_crew(
            "AA12347", role=CrewRole.FLIGHT_ATTENDANT, department=Department.CABIN_CREW,
            clearance_level=2, name="Lisa Martinez"
        ),
        "delta": make_crew("DL54321", clearance_level=5, name="Captain James Thompson", airline="Delta Air Lines"),
    }


@pytest.fixture
def directory(services):
    return services.crew


class TestListing:

    def test_lists_active_crew_without_credentials(self, directory, crew):
        page = directory.list(crew["attendant"])

        assert page.total == 4
        assert all("credential_hash" not in member for member in page.items)

    def test_filters(self, directory, crew):
        captain = crew["captain"]

        assert directory.list(captain, CrewFilters(role=CrewRole.PILOT)).total == 2
        assert directory.list(captain, CrewFilters(airline="Delta Air Lines")).total == 1
        assert directory.list(captain, CrewFilters(clearance_level=4)).total == 3
        assert directory.list(captain, CrewFilters(q="lisa")).total == 1

    def test_sorting(self, directory, crew):
        page = directory.list(crew["captain"], CrewFilters(sort_by="clearance_level", sort_order="asc"))
        assert page.items[0]["employee_id"] == "AA12347"

    def test_inactive_crew_hidden(self, services, directory, crew):
        services.identities.update("AA12347", lambda i: setattr(i, "is_active", False))
        assert directory.list(crew["captain"]).total == 3


class TestProfiles:

    def test_low_clearance_sees_limited_profile(self, directory, crew):
        profile = directory.get(crew["attendant"], "AA12345")
        assert set(profile) == {"employee_id", "name", "role", "department", "airline"}

    def test_own_profile_is_full(self, directory, crew):
        assert "clearance_level" in directory.get(crew["attendant"], "AA12347")

    def test_higher_clearance_sees_full_profile(self, directory, crew):
        assert "clearance_level" in directory.get(crew["dispatcher"], "AA12347")

    def test_missing_and_inactive(self, services, directory, crew):
        with pytest.raises(ResourceError) as exc:
            directory.get(crew["captain"], "ZZ99999")
        assert exc.value.code == "CREW_MEMBER_NOT_FOUND"

        services.identities.update("AA12347", lambda i: setattr(i, "is_active", False))
        with pytest.raises(ResourceError) as exc:
            directory.get(crew["captain"], "AA12347")
        assert exc.value.code == "CREW_MEMBER_INACTIVE"


class TestStats:

    def test_stats(self, directory, crew):
        stats = directory.stats(crew["dispatcher"])

        assert stats["total"] == 4
        assert stats["by_role"]["pilot"] == 2
        assert stats["by_airline"] == {"American Airlines": 3, "Delta Air Lines": 1}

    def test_stats_need_clearance_three(self, directory, crew):
        with pytest.raises(AuthzError):
            directory.stats(crew["attendant"])


class TestUpdates:

    def test_update_own_profile(self, directory, crew):
        profile = directory.update_profile(crew["attendant"], "AA12347", ProfileUpdate(name="Lisa Martinez-Cole"))
        assert profile["name"] == "Lisa Martinez-Cole"

    def test_clearance_four_updates_others(self, directory, crew):
        profile = directory.update_profile(
            crew["dispatcher"], "AA12347", ProfileUpdate(department=Department.GROUND_OPERATIONS)
        )
        assert profile["department"] == "ground-operations"

    def test_low_clearance_cannot_update_others(self, directory, crew):
        with pytest.raises(AuthzError) as exc:
            directory.update_profile(crew["attendant"], "AA12345", ProfileUpdate(name="Someone Else"))

        assert exc.value.code == "UPDATE_PERMISSION_DENIED"

    def test_invalid_name(self):
        with pytest.raises(ValueError):
            ProfileUpdate(name="<b>bold</b>")


class TestActivation:

    def test_deactivate_blocks_login_and_tokens(self, services, directory, crew):
        pair = services.authenticator.login("AA12347", PASSWORD)

        directory.set_active(crew["captain"], "AA12347", False)

        with pytest.raises(AuthError):
            services.authenticator.login("AA12347", PASSWORD)
        with pytest.raises(AuthError):
            services.authenticator.authenticate_token(pair.access_token)

    def test_reactivate_clears_lock(self, services, directory, crew):
        for _ in range(5):
            with pytest.raises(AuthError):
                services.authenticator.login("AA12347", "Wrong1!pass")

        directory.set_active(crew["captain"], "AA12347", True)
        services.authenticator.login("AA12347", PASSWORD)

    def test_cannot_deactivate_self(self, directory, crew):
        with pytest.raises(ResourceError) as exc:
            directory.set_active(crew["captain"], "AA12345", False)

        assert exc.value.kind is ResourceErrorKind.INVALID_STATE

    def test_requires_clearance_five(self, directory, crew):
        with pytest.raises(AuthzError):
            directory.set_active(crew["dispatcher"], "AA12347", False)
