"""
Tests for repositories.py and the paginate helper
"""
import threading

import pytest

from database.models import Identity, paginate
from database.repositories import DuplicateRecordError, IdentityRepository, RecordNotFoundError
from utils.rbac import CrewRole, Department


def identity(employee_id="AA12345", **overrides):
    fields = dict(
        employee_id=employee_id,
        name="Captain Sarah Johnson",
        role=CrewRole.PILOT,
        department=Department.FLIGHT_OPERATIONS,
        clearance_level=5,
        airline="American Airlines",
        credential_hash="$argon2id$placeholder",
    )
    fields.update(overrides)
    return Identity(**fields)


@pytest.fixture
def repo():
    return IdentityRepository()


class TestInMemoryRepository:

    def test_add_and_get(self, repo):
        repo.add(identity())
        assert repo.get("AA12345").name == "Captain Sarah Johnson"
        assert repo.get("ZZ00000") is None
        assert repo.exists("AA12345")

    def test_duplicate_key(self, repo):
        repo.add(identity())
        with pytest.raises(DuplicateRecordError):
            repo.add(identity(name="Someone Else"))

    def test_returned_records_are_copies(self, repo):
        repo.add(identity())
        copy = repo.get("AA12345")
        copy.clearance_level = 1

        assert repo.get("AA12345").clearance_level == 5

    def test_update_in_place_and_by_replacement(self, repo):
        repo.add(identity())

        repo.update("AA12345", lambda i: setattr(i, "failed_attempts", 2))
        assert repo.get("AA12345").failed_attempts == 2

        repo.update("AA12345", lambda i: i.model_copy(update={"name": "Sarah Johnson"}))
        assert repo.get("AA12345").name == "Sarah Johnson"

    def test_update_missing_record(self, repo):
        with pytest.raises(RecordNotFoundError):
            repo.update("AA12345", lambda i: None)

    def test_failed_mutator_leaves_state_untouched(self, repo):
        repo.add(identity())

        def broken(record):
            record.failed_attempts = 4
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            repo.update("AA12345", broken)

        assert repo.get("AA12345").failed_attempts == 0

    def test_key_cannot_change(self, repo):
        repo.add(identity())
        with pytest.raises(ValueError):
            repo.update("AA12345", lambda i: i.model_copy(update={"employee_id": "AA99999"}))

    def test_query_and_count(self, repo):
        repo.add(identity("AA12345"))
        repo.add(identity("AA12347", role=CrewRole.FLIGHT_ATTENDANT, clearance_level=2))

        assert [i.employee_id for i in repo.query()] == ["AA12345", "AA12347"]
        assert repo.count(lambda i: i.clearance_level >= 3) == 1

    def test_concurrent_updates_are_not_lost(self, repo):
        repo.add(identity())

        def bump():
            for _ in range(200):
                repo.update("AA12345", lambda i: setattr(i, "failed_attempts", i.failed_attempts + 1))

        threads = [threading.Thread(target=bump) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert repo.get("AA12345").failed_attempts == 800

    def test_public_view_hides_credentials(self, repo):
        repo.add(identity())
        view = repo.get("AA12345").public_view()

        assert "credential_hash" not in view
        assert "failed_attempts" not in view
        assert view["role"] == "pilot"


class TestPaginate:

    def test_middle_page(self):
        page = paginate(list(range(45)), page=2, limit=20)

        assert page.items == list(range(20, 40))
        assert page.total == 45
        assert page.total_pages == 3
        assert page.has_next and page.has_prev

    def test_empty(self):
        page = paginate([], page=1, limit=20)
        assert page.items == []
        assert page.total_pages == 0
        assert not page.has_next

    def test_page_past_the_end(self):
        page = paginate([1, 2, 3], page=5, limit=2)
        assert page.items == []
        assert page.has_prev

    def test_pagination_excludes_items(self):
        assert "items" not in paginate([1], 1, 10).pagination()
