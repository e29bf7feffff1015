"""Unit tests for clinic_audit.services.audit.recorder."""
import asyncio

import pytest

from clinic_audit.core.security import Identity
from clinic_audit.db.models.audit import LIST_VIEW, AuditAction, ComplianceAction
from clinic_audit.services.audit.classifier import classify_request
from clinic_audit.services.audit.directory import PatientSummary
from clinic_audit.services.audit.recorder import (
    REDACTION_MARKER,
    AuditRecorder,
    HttpExchange,
    RequestOutcome,
    redact,
)
from conftest import TEST_SETTINGS

pytestmark = pytest.mark.asyncio

PATIENT = "3f1c2b9e-8d4a-4c6f-9b2e-1a7d5e0c4f88"
STAFF = Identity(id="user-1", role="user", email="staff@clinic.test")


class FakeStore:
    """In-memory AuditStore double; each append can be made to fail or hang."""

    def __init__(self, fail_audit=False, fail_compliance=False, hang=False):
        self.audit = []
        self.compliance = []
        self.fail_audit = fail_audit
        self.fail_compliance = fail_compliance
        self.hang = hang

    async def append_audit(self, entry):
        if self.hang:
            await asyncio.sleep(10)
        if self.fail_audit:
            raise RuntimeError("audit store down")
        self.audit.append(entry)

    async def append_compliance(self, entry):
        if self.fail_compliance:
            raise RuntimeError("gdpr store down")
        self.compliance.append(entry)


class FakePatients:
    def __init__(self, summary=None, fail=False, histories=None):
        self.summary = summary
        self.fail = fail
        self.histories = histories or {}
        self.calls = []

    async def get_patient(self, patient_id):
        self.calls.append(patient_id)
        if self.fail:
            raise ConnectionError("patients service unreachable")
        return self.summary

    async def get_patients(self, patient_ids):
        return {}

    async def get_history_patient(self, history_id):
        if self.fail:
            raise ConnectionError("patients service unreachable")
        return self.histories.get(history_id)


def _exchange(method, path, actor=STAFF, status=200, body=None, query=None, **kwargs):
    return HttpExchange(
        method=method,
        path=path,
        outcome=RequestOutcome(
            status_code=status,
            duration_ms=12,
            response_size=345,
            source_ip="10.0.0.7",
            user_agent="pytest",
            body=body,
            query=query,
        ),
        actor=actor,
        **kwargs,
    )


# ─── Redaction ────────────────────────────────────────────────────────────────

async def test_redact_masks_credentials_at_any_depth():
    body = {
        "email": "a@b.test",
        "password": "hunter2",
        "profile": {"refresh_token": "r", "Access-Token": "a", "name": "Ann"},
        "devices": [{"mfaSecret": "s", "label": "phone"}],
    }
    masked = redact(body)
    assert masked["email"] == "a@b.test"
    assert masked["password"] == REDACTION_MARKER
    assert masked["profile"] == {"refresh_token": REDACTION_MARKER, "Access-Token": REDACTION_MARKER, "name": "Ann"}
    assert masked["devices"] == [{"mfaSecret": REDACTION_MARKER, "label": "phone"}]
    assert body["password"] == "hunter2"


@pytest.mark.parametrize(
    "key",
    [
        "resetToken",
        "passwordConfirmation",
        "password2",
        "mfaToken",
        "sessionToken",
        "csrfToken",
        "X-API-Key",
        "client_credentials",
        "OTP",
    ],
)
async def test_redact_masks_credential_like_keys(key):
    masked = redact({key: "value", "note": "kept"})
    assert masked == {key: REDACTION_MARKER, "note": "kept"}


async def test_redacted_query_params_for_general_record():
    store = FakeStore()
    recorder = AuditRecorder(store, TEST_SETTINGS)
    exchange = HttpExchange(
        method="GET",
        path="/api/invoices",
        outcome=RequestOutcome(status_code=200, query={"resetToken": "abc", "status": "open"}),
        actor=STAFF,
    )
    await recorder.record_exchange(exchange)

    (entry,) = store.audit
    assert entry.new_values["context"]["queryParams"] == {"resetToken": REDACTION_MARKER, "status": "open"}


async def test_redact_leaves_scalars_alone():
    assert redact("password") == "password"
    assert redact(None) is None


# ─── General log ──────────────────────────────────────────────────────────────

async def test_no_actor_means_no_general_record():
    store = FakeStore()
    recorder = AuditRecorder(store, TEST_SETTINGS)
    await recorder.record_exchange(_exchange("GET", "/api/invoices", actor=None))
    assert store.audit == []
    assert store.compliance == []


async def test_general_record_for_list_view():
    store = FakeStore()
    recorder = AuditRecorder(store, TEST_SETTINGS)
    await recorder.record_exchange(_exchange("GET", "/api/invoices"))

    (entry,) = store.audit
    assert entry.actor_id == STAFF.id
    assert entry.action == AuditAction.VIEW_LIST.value
    assert entry.resource_type == "invoices"
    assert entry.resource_id == LIST_VIEW
    assert entry.description == "GET /api/invoices - 200 (12ms)"
    context = entry.new_values["context"]
    assert context["statusCode"] == 200
    assert context["durationMs"] == 12
    assert context["responseSize"] == 345
    assert store.compliance == []


async def test_create_stores_redacted_body():
    store = FakeStore()
    recorder = AuditRecorder(store, TEST_SETTINGS)
    body = {"name": "Ann", "password": "secret-value", "nested": {"token": "abc"}}
    await recorder.record_exchange(_exchange("POST", "/api/staff", body=body, status=201))

    (entry,) = store.audit
    assert entry.action == AuditAction.CREATE.value
    assert entry.new_values["values"]["password"] == REDACTION_MARKER
    assert entry.new_values["values"]["nested"]["token"] == REDACTION_MARKER
    assert entry.new_values["values"]["name"] == "Ann"


async def test_error_message_is_kept_for_failed_requests():
    store = FakeStore()
    recorder = AuditRecorder(store, TEST_SETTINGS)
    exchange = HttpExchange(
        method="DELETE",
        path="/api/invoices/42",
        outcome=RequestOutcome(status_code=404, error_message="Invoice not found"),
        actor=STAFF,
    )
    await recorder.record_exchange(exchange)
    assert store.audit[0].new_values["context"]["errorMessage"] == "Invoice not found"


async def test_failed_login_is_attributed_to_the_attempted_account():
    store = FakeStore()
    recorder = AuditRecorder(store, TEST_SETTINGS)
    await recorder.record_exchange(
        _exchange(
            "POST",
            "/api/auth/login",
            actor=None,
            status=401,
            body={"email": "staff@clinic.test", "password": "wrong"},
            attempted_actor_id="user-1",
        )
    )
    (entry,) = store.audit
    assert entry.action == AuditAction.LOGIN_FAILED.value
    assert entry.actor_id == "user-1"
    assert entry.resource_type == "authentication"
    assert entry.resource_id == "user-1"
    assert entry.description == "Failed login attempt for staff@clinic.test"
    assert entry.new_values["context"]["attemptedIdentifier"] == "staff@clinic.test"
    assert "wrong" not in str(entry.new_values)


async def test_failed_login_for_unknown_account_is_not_recorded():
    store = FakeStore()
    recorder = AuditRecorder(store, TEST_SETTINGS)
    await recorder.record_exchange(
        _exchange("POST", "/api/auth/login", actor=None, status=401, body={"email": "nobody@x.test"})
    )
    assert store.audit == []


async def test_successful_login_description():
    store = FakeStore()
    recorder = AuditRecorder(store, TEST_SETTINGS)
    await recorder.record_exchange(
        _exchange("POST", "/api/auth/login", body={"email": "staff@clinic.test", "password": "ok"})
    )
    assert store.audit[0].description == "Successful login for staff@clinic.test"
    assert store.audit[0].action == AuditAction.LOGIN.value


# ─── Compliance log ───────────────────────────────────────────────────────────

async def test_sensitive_request_writes_exactly_one_compliance_record():
    store = FakeStore()
    recorder = AuditRecorder(store, TEST_SETTINGS)
    await recorder.record_exchange(_exchange("GET", f"/api/patients/{PATIENT}"))

    (entry,) = store.compliance
    assert entry.actor_id == STAFF.id
    assert entry.action == ComplianceAction.DATA_ACCESS.value
    assert entry.record_id == PATIENT
    assert entry.data_type == "patient_personal_data"
    assert entry.purpose == "Staff member accessed patient_detail_view - Medical center operations"
    assert entry.legal_basis == TEST_SETTINGS.audit_legal_basis
    assert entry.automated is False
    assert len(store.audit) == 1


@pytest.mark.parametrize(
    "method,expected",
    [
        ("POST", ComplianceAction.DATA_MODIFICATION),
        ("PATCH", ComplianceAction.DATA_MODIFICATION),
        ("DELETE", ComplianceAction.DATA_DELETION),
    ],
)
async def test_compliance_action_follows_method(method, expected):
    store = FakeStore()
    recorder = AuditRecorder(store, TEST_SETTINGS)
    await recorder.record_exchange(_exchange(method, f"/api/appointments/{PATIENT}"))
    assert store.compliance[0].action == expected.value


async def test_anonymous_sensitive_access_still_reaches_compliance_log():
    store = FakeStore()
    recorder = AuditRecorder(store, TEST_SETTINGS)
    await recorder.record_exchange(_exchange("GET", "/api/patients", actor=None))
    assert store.audit == []
    (entry,) = store.compliance
    assert entry.actor_id is None
    assert entry.record_id is None


HISTORY = "7c0d9e8f-1a2b-4c3d-9e4f-5a6b7c8d9e0f"


async def test_history_detail_is_attributed_to_its_patient():
    store = FakeStore()
    patients = FakePatients(PatientSummary(id=PATIENT, name="Paula Patient"), histories={HISTORY: PATIENT})
    recorder = AuditRecorder(store, TEST_SETTINGS, patients=patients)
    await recorder.record_exchange(_exchange("GET", f"/api/patient-history/{HISTORY}"))

    (gdpr,) = store.compliance
    assert gdpr.record_id == PATIENT
    assert gdpr.data_types == ["medical_history", "health_data"]
    assert gdpr.purpose == (
        "Staff member accessed patient_history_detail_view - Medical history review for treatment planning"
    )
    (entry,) = store.audit
    assert entry.resource_id == HISTORY
    assert entry.new_values["context"]["patientId"] == PATIENT
    assert patients.calls == [PATIENT]


@pytest.mark.parametrize("patients", [FakePatients(), FakePatients(fail=True)])
async def test_unresolvable_history_entry_still_records_access(patients):
    store = FakeStore()
    recorder = AuditRecorder(store, TEST_SETTINGS, patients=patients)
    await recorder.record_exchange(_exchange("GET", f"/api/patient-history/{HISTORY}"))

    (gdpr,) = store.compliance
    assert gdpr.record_id is None
    assert len(store.audit) == 1


@pytest.mark.parametrize(
    "path,expected",
    [
        ("/api/patients", "Staff member accessed patient_list_view - Patient management and lookup"),
        ("/api/patient-history", "Staff member accessed patient_history_list_view - Medical history management"),
        (f"/api/appointments/{PATIENT}", "Staff member accessed appointments - Medical center operations"),
    ],
)
async def test_purpose_follows_access_type(path, expected):
    store = FakeStore()
    recorder = AuditRecorder(store, TEST_SETTINGS)
    await recorder.record_exchange(_exchange("GET", path))
    assert store.compliance[0].purpose == expected


async def test_patient_enrichment_adds_data_types():
    store = FakeStore()
    patients = FakePatients(
        PatientSummary(id=PATIENT, name="Paula Patient", has_social_insurance_number=True, has_phone=True)
    )
    recorder = AuditRecorder(store, TEST_SETTINGS, patients=patients)
    await recorder.record_exchange(_exchange("GET", f"/api/patients/{PATIENT}"))

    assert patients.calls == [PATIENT]
    assert store.compliance[0].data_types == [
        "patient_personal_data",
        "social_insurance_number",
        "phone_number",
    ]
    assert store.audit[0].new_values["context"]["sensitiveDataAccessed"] == [
        "patient_personal_data",
        "social_insurance_number",
        "phone_number",
    ]


@pytest.mark.parametrize("patients", [FakePatients(None), FakePatients(fail=True)])
async def test_missing_or_failing_patient_lookup_does_not_block_writes(patients):
    store = FakeStore()
    recorder = AuditRecorder(store, TEST_SETTINGS, patients=patients)
    await recorder.record_exchange(_exchange("GET", f"/api/patients/{PATIENT}"))
    assert len(store.audit) == 1
    assert store.compliance[0].data_type == "patient_personal_data"


# ─── Fault isolation ──────────────────────────────────────────────────────────

async def test_general_store_failure_does_not_affect_compliance_write():
    store = FakeStore(fail_audit=True)
    recorder = AuditRecorder(store, TEST_SETTINGS)
    await recorder.record_exchange(_exchange("GET", f"/api/patients/{PATIENT}"))
    assert store.audit == []
    assert len(store.compliance) == 1


async def test_compliance_store_failure_is_swallowed():
    store = FakeStore(fail_compliance=True)
    recorder = AuditRecorder(store, TEST_SETTINGS)
    event = classify_request("GET", f"/api/patients/{PATIENT}")
    written = await recorder.record_compliance_access(STAFF.id, event, RequestOutcome(status_code=200))
    assert written is False


async def test_write_timeout_is_caught():
    settings = TEST_SETTINGS.model_copy(update={"audit_write_timeout_seconds": 0.05})
    store = FakeStore(hang=True)
    recorder = AuditRecorder(store, settings)
    event = classify_request("GET", "/api/invoices")
    written = await recorder.record_general(STAFF.id, event, RequestOutcome(status_code=200))
    assert written is False
    assert store.audit == []


# ─── Explicit records ─────────────────────────────────────────────────────────

async def test_entity_change_keeps_redacted_snapshots():
    store = FakeStore()
    recorder = AuditRecorder(store, TEST_SETTINGS)
    written = await recorder.record_entity_change(
        STAFF.id,
        AuditAction.UPDATE,
        "Patients",
        PATIENT,
        prior_values={"phone": "1", "password": "old"},
        new_values={"phone": "2", "password": "new"},
    )
    assert written is True
    (entry,) = store.audit
    assert entry.resource_type == "patients"
    assert entry.prior_values == {"phone": "1", "password": REDACTION_MARKER}
    assert entry.new_values["values"] == {"phone": "2", "password": REDACTION_MARKER}
    assert entry.description == "Updated Patients record"


async def test_entity_change_rejects_non_change_actions():
    store = FakeStore()
    recorder = AuditRecorder(store, TEST_SETTINGS)
    assert await recorder.record_entity_change(STAFF.id, AuditAction.LOGIN, "patients", PATIENT) is False
    assert store.audit == []


async def test_data_export_writes_export_compliance_record():
    store = FakeStore()
    recorder = AuditRecorder(store, TEST_SETTINGS)
    written = await recorder.record_data_export(
        STAFF.id,
        PATIENT,
        ["patient_personal_data", "medical_history", "patient_personal_data"],
        purpose="Patient data portability request",
        automated=True,
    )
    assert written is True
    (entry,) = store.compliance
    assert entry.action == ComplianceAction.DATA_EXPORT.value
    assert entry.data_type == "patient_personal_data, medical_history"
    assert entry.automated is True
    assert entry.legal_basis == TEST_SETTINGS.audit_legal_basis
