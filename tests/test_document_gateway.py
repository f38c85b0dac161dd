"""
Tests for DocumentGateway - clearance gating, expiry, metadata updates, tamper handling
"""
import dataclasses
from datetime import timedelta

import pytest

from database.models import DocumentCategory, DocumentStatus
from utils.audit import AuditAction, get_audit_logs
from utils.errors import AuthzError, CryptoError, CryptoErrorKind, ResourceError, ResourceErrorKind
from utils.rbac import CrewRole, Department
from utils.resource_gateway import DocumentFilters, DocumentMetadata, DocumentUpdate

PDF = b"%PDF-1.4 flight plan AA100 JFK-LAX"


@pytest.fixture
def crew(make_crew):
    return {
        "captain": make_crew("AA12345", clearance_level=5, name="Captain Sarah Johnson"),
        "first_officer": make_crew("AA12346", role=CrewRole.CO_PILOT, clearance_level=4, name="Mike Chen"),
        "dispatcher": make_crew(
            "AA12349", role=CrewRole.DISPATCHER, department=Department.DISPATCH,
            clearance_level=3, name="Jennifer Wilson"
        ),
        "attendant": make_crew(
            "AA12347", role=CrewRole.FLIGHT_ATTENDANT, department=Department.CABIN_CREW,
            clearance_level=2, name="Lisa Martinez"
        ),
        "gate_agent": make_crew(
            "AA12348", role=CrewRole.GATE_AGENT, department=Department.GROUND_OPERATIONS,
            clearance_level=2, name="Robert Davis"
        ),
    }


@pytest.fixture
def gateway(services):
    return services.document_gateway


def _upload(gateway, uploader, access_level=4, content=PDF, mime_type="application/pdf", **metadata):
    fields = dict(title="Flight plan AA100", category=DocumentCategory.FLIGHT_PLAN, access_level=access_level)
    fields.update(metadata)
    return gateway.upload(uploader, DocumentMetadata(**fields), "plan.pdf", mime_type, content)


class TestUpload:

    def test_upload_encrypts_at_rest(self, services, gateway, crew):
        view = _upload(gateway, crew["captain"])

        stored = services.documents.get(view.id)
        assert stored.payload.ciphertext != PDF
        assert b"flight plan" not in stored.payload.ciphertext
        assert view.size == len(PDF)
        assert view.uploaded_by_id == "AA12345"
        assert not hasattr(view, "payload")
        assert not hasattr(view, "wrapped_key")

    def test_access_level_above_own_clearance(self, services, gateway, crew):
        with pytest.raises(ResourceError) as exc:
            _upload(gateway, crew["attendant"], access_level=4)

        assert exc.value.kind is ResourceErrorKind.INSUFFICIENT_CLEARANCE
        assert exc.value.status_code == 403
        assert services.documents.count() == 0

    @pytest.mark.parametrize("mime_type, content, code", [
        ("application/x-msdownload", PDF, "INVALID_FILE_TYPE"),
        ("application/pdf", b"", "EMPTY_FILE"),
    ])
    def test_rejected_files(self, gateway, crew, mime_type, content, code):
        with pytest.raises(ResourceError) as exc:
            _upload(gateway, crew["captain"], content=content, mime_type=mime_type)

        assert exc.value.kind is ResourceErrorKind.VALIDATION
        assert exc.value.code == code

    def test_file_too_large(self, services, crew):
        services.document_gateway.max_document_size = 10
        with pytest.raises(ResourceError) as exc:
            _upload(services.document_gateway, crew["captain"], content=b"x" * 11)

        assert exc.value.code == "FILE_TOO_LARGE"

    def test_upload_is_audited(self, services, gateway, crew):
        view = _upload(gateway, crew["captain"])

        logs = get_audit_logs(services.audit_store, action=AuditAction.DOCUMENT_UPLOADED)
        assert logs[0]["details"]["resource_id"] == view.id


class TestReadAndDownload:

    def test_insufficient_clearance_is_denied(self, gateway, crew):
        view = _upload(gateway, crew["captain"], access_level=4)

        with pytest.raises(ResourceError) as exc:
            gateway.read(view.id, crew["attendant"])

        assert exc.value.kind is ResourceErrorKind.ACCESS_DENIED
        assert exc.value.details == {"required_clearance": 4, "user_clearance": 2}

        with pytest.raises(ResourceError):
            gateway.download(view.id, crew["attendant"])

    def test_equal_clearance_is_enough(self, gateway, crew):
        view = _upload(gateway, crew["captain"], access_level=4)
        assert gateway.read(view.id, crew["first_officer"]).id == view.id

    def test_download_returns_plaintext_and_counts(self, gateway, crew):
        view = _upload(gateway, crew["captain"], access_level=3)

        downloaded = gateway.download(view.id, crew["dispatcher"])
        gateway.download(view.id, crew["captain"])

        assert downloaded.content == PDF
        assert downloaded.file_name == "plan.pdf"
        assert downloaded.mime_type == "application/pdf"

        document = gateway.read(view.id, crew["captain"])
        assert document.download_count == 2
        assert [e.action for e in document.access_log] == ["uploaded", "downloaded", "downloaded", "viewed"]

    def test_expired_document(self, gateway, crew, clock):
        view = _upload(gateway, crew["captain"], expires_at=clock() + timedelta(hours=1))
        clock.advance(hours=1)

        with pytest.raises(ResourceError) as exc:
            gateway.read(view.id, crew["captain"])

        assert exc.value.kind is ResourceErrorKind.EXPIRED
        assert exc.value.status_code == 410

    def test_tampered_download_fails_closed(self, services, gateway, crew):
        view = _upload(gateway, crew["captain"])

        def corrupt(document):
            tag = document.payload.tag
            document.payload = dataclasses.replace(document.payload, tag=bytes([tag[0] ^ 0x80]) + tag[1:])

        services.documents.update(view.id, corrupt)

        with pytest.raises(CryptoError) as exc:
            gateway.download(view.id, crew["captain"])

        assert exc.value.kind is CryptoErrorKind.DECRYPTION_FAILED
        assert services.documents.get(view.id).download_count == 0

    def test_offset_less_expiry_is_taken_as_utc(self, gateway, crew, clock):
        naive = (clock() + timedelta(hours=1)).replace(tzinfo=None)
        view = _upload(gateway, crew["captain"], expires_at=naive)

        assert view.expires_at == clock() + timedelta(hours=1)
        assert gateway.list(crew["first_officer"]).total == 1

        clock.advance(hours=1)
        assert gateway.list(crew["first_officer"]).total == 0

    def test_repeated_denials_raise_alert(self, services, gateway, crew):
        view = _upload(gateway, crew["captain"], access_level=5)

        for _ in range(5):
            with pytest.raises(ResourceError):
                gateway.read(view.id, crew["gate_agent"])

        assert [a.alert_type for a in services.monitor.get_alerts()] == ["idor_probing"]


class TestUpdateAndDelete:

    def test_uploader_updates_metadata(self, gateway, crew):
        view = _upload(gateway, crew["dispatcher"], access_level=3)

        updated = gateway.update(view.id, crew["dispatcher"], DocumentUpdate(title="Revised plan"))

        assert updated.title == "Revised plan"
        assert updated.access_level == 3
        assert updated.category is DocumentCategory.FLIGHT_PLAN

    def test_clearance_four_may_update_others_documents(self, gateway, crew):
        view = _upload(gateway, crew["dispatcher"], access_level=3)
        gateway.update(view.id, crew["first_officer"], DocumentUpdate(description="Checked"))

    def test_non_uploader_below_four_is_denied(self, gateway, crew):
        view = _upload(gateway, crew["first_officer"], access_level=2)

        with pytest.raises(ResourceError) as exc:
            gateway.update(view.id, crew["attendant"], DocumentUpdate(title="Mine now"))

        assert exc.value.code == "UPDATE_ACCESS_DENIED"

    def test_cannot_raise_access_level_above_own_clearance(self, gateway, crew):
        view = _upload(gateway, crew["dispatcher"], access_level=2)

        with pytest.raises(ResourceError) as exc:
            gateway.update(view.id, crew["dispatcher"], DocumentUpdate(access_level=5))

        assert exc.value.kind is ResourceErrorKind.INSUFFICIENT_CLEARANCE

    def test_clearing_optional_field(self, gateway, crew):
        view = _upload(gateway, crew["captain"], flight_number="AA100")
        updated = gateway.update(view.id, crew["captain"], DocumentUpdate(flight_number=None))
        assert updated.flight_number is None

    @pytest.mark.parametrize("field", ["access_level", "category", "title"])
    def test_null_for_required_field_is_rejected(self, field):
        with pytest.raises(ValueError):
            DocumentUpdate(**{field: None})

    def test_invalid_record_change_is_not_stored(self, services, gateway, crew):
        view = _upload(gateway, crew["captain"], access_level=3)

        with pytest.raises(ValueError):
            services.documents.update(view.id, lambda d: setattr(d, "access_level", None))

        assert services.documents.get(view.id).access_level == 3
        assert gateway.list(crew["captain"]).total == 1

    def test_offset_less_expiry_on_update(self, gateway, crew, clock):
        view = _upload(gateway, crew["captain"])
        naive = (clock() + timedelta(minutes=30)).replace(tzinfo=None)

        updated = gateway.update(view.id, crew["captain"], DocumentUpdate(expires_at=naive))

        assert updated.expires_at.tzinfo is not None
        assert gateway.list(crew["captain"]).total == 1

    def test_uploader_deletes(self, services, gateway, crew):
        view = _upload(gateway, crew["first_officer"])
        gateway.delete(view.id, crew["first_officer"])

        assert services.documents.get(view.id).status is DocumentStatus.DELETED
        with pytest.raises(ResourceError) as exc:
            gateway.read(view.id, crew["captain"])
        assert exc.value.kind is ResourceErrorKind.NOT_FOUND

    def test_clearance_five_deletes_any_document(self, gateway, crew):
        view = _upload(gateway, crew["first_officer"])
        gateway.delete(view.id, crew["captain"])

    def test_others_cannot_delete(self, gateway, crew):
        view = _upload(gateway, crew["captain"], access_level=2)

        with pytest.raises(ResourceError) as exc:
            gateway.delete(view.id, crew["first_officer"])

        assert exc.value.code == "DELETE_ACCESS_DENIED"


class TestListing:

    @pytest.fixture
    def library(self, gateway, crew, clock):
        captain = crew["captain"]
        docs = [
            _upload(gateway, captain, access_level=1, title="Weather brief", category=DocumentCategory.WEATHER),
            _upload(gateway, captain, access_level=2, title="Crew roster", category=DocumentCategory.CREW_MANIFEST,
                    flight_number="AA100"),
            _upload(gateway, captain, access_level=4, title="Flight plan", flight_number="AA100"),
            _upload(gateway, captain, access_level=5, title="Security notice", category=DocumentCategory.SAFETY),
        ]
        _upload(gateway, captain, access_level=1, title="Old NOTAM", expires_at=clock() + timedelta(minutes=1))
        clock.advance(minutes=2)
        return docs

    def test_clearance_filter_applies_first(self, gateway, crew, library):
        page = gateway.list(crew["attendant"])
        assert {d.title for d in page.items} == {"Weather brief", "Crew roster"}

        filtered = gateway.list(crew["attendant"], DocumentFilters(category=DocumentCategory.SAFETY))
        assert filtered.total == 0

    def test_expired_documents_are_hidden(self, gateway, crew, library):
        assert "Old NOTAM" not in {d.title for d in gateway.list(crew["captain"]).items}

    def test_sorting(self, gateway, crew, library):
        page = gateway.list(crew["captain"], DocumentFilters(sort_by="title", sort_order="asc"))
        assert [d.title for d in page.items] == ["Crew roster", "Flight plan", "Security notice", "Weather brief"]

    def test_offset_less_date_range(self, gateway, crew, library, clock):
        since = (clock() - timedelta(hours=1)).replace(tzinfo=None)
        assert gateway.list(crew["captain"], DocumentFilters(since=since)).total == 4

    def test_search(self, gateway, crew, library):
        assert gateway.list(crew["captain"], DocumentFilters(q="roster")).total == 1

    def test_flight_documents(self, gateway, crew, library):
        page = gateway.list_flight_documents(crew["attendant"], "AA100")
        assert [d.title for d in page.items] == ["Crew roster"]

    def test_flight_documents_role_restricted(self, gateway, crew, library):
        with pytest.raises(AuthzError):
            gateway.list_flight_documents(crew["gate_agent"], "AA100")

    def test_categories_follow_clearance(self, gateway, crew):
        values = {c["value"] for c in gateway.categories(crew["attendant"])}

        assert "weather" in values
        assert "maintenance" not in values
        assert len(gateway.categories(crew["captain"])) == len(DocumentCategory)
