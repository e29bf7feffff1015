"""Integration tests for the audit query API, reports and service endpoints."""
from datetime import timedelta

import pytest
import pytest_asyncio

from clinic_audit.db.base import utcnow
from clinic_audit.db.models.audit import AuditAction, AuditLog, ComplianceAction, GDPRAuditLog
from conftest import PATIENT_ID, auth_headers

pytestmark = pytest.mark.asyncio

ATTACKER_IP = "198.51.100.7"


async def _audit(store, actor_id, at, action=AuditAction.VIEW_LIST, resource="invoices", resource_id="list_view",
                 ip="10.0.0.1", context=None):
    await store.append_audit(
        AuditLog(
            actor_id=actor_id,
            action=action.value,
            resource_type=resource,
            resource_id=resource_id,
            new_values={"values": None, "context": context or {}},
            description=f"{action.value} {resource}",
            source_ip=ip,
            occurred_at=at,
        )
    )


async def _gdpr(store, actor_id, at, action=ComplianceAction.DATA_ACCESS, data_type="patient_personal_data"):
    await store.append_compliance(
        GDPRAuditLog(
            actor_id=actor_id,
            action=action.value,
            data_type=data_type,
            record_id=PATIENT_ID,
            purpose="Staff member accessed patients for medical center operations",
            legal_basis="Legitimate interest - Healthcare service provision",
            source_ip="10.0.0.2",
            automated=False,
            occurred_at=at,
        )
    )


@pytest_asyncio.fixture
async def seeded(store, users, patient):
    """A small trail: list views, one patient visit and a failed-login burst."""
    now = utcnow()
    staff, moderator = users["user"], users["moderator"]

    for i in range(3):
        await _audit(store, staff.id, now - timedelta(hours=1, minutes=i))
    await _audit(store, moderator.id, now - timedelta(minutes=30), action=AuditAction.UPDATE, resource="settings",
                 resource_id="clinic")

    visit = now - timedelta(hours=2)
    for i in range(3):
        at = visit + timedelta(seconds=i * 5)
        await _audit(store, staff.id, at, action=AuditAction.VIEW_DETAILED, resource="patients",
                     resource_id=PATIENT_ID, context={"patientId": PATIENT_ID})
        await _gdpr(store, staff.id, at, data_type="patient_personal_data, date_of_birth")

    for i in range(6):
        await _audit(store, staff.id, now - timedelta(minutes=10, seconds=i), action=AuditAction.LOGIN_FAILED,
                     resource="authentication", resource_id=staff.id, ip=ATTACKER_IP,
                     context={"attemptedIdentifier": staff.email})
    return now


# ─── Authentication & roles ───────────────────────────────────────────────────

async def test_logs_require_authentication(api_client):
    resp = await api_client.get("/api/audit/logs")
    assert resp.status_code == 401
    body = resp.json()
    assert body["success"] is False
    assert body["code"] == "AUTH_001"


async def test_invalid_token_is_rejected(api_client):
    resp = await api_client.get("/api/audit/logs", headers={"Authorization": "Bearer forged.token.value"})
    assert resp.status_code == 401


@pytest.mark.parametrize(
    "path,role,expected",
    [
        ("/api/audit/logs", "admin", 200),
        ("/api/audit/logs", "moderator", 403),
        ("/api/audit/logs", "user", 403),
        ("/api/audit/logs/gdpr", "admin", 200),
        ("/api/audit/logs/gdpr", "moderator", 200),
        ("/api/audit/logs/gdpr", "user", 403),
        ("/api/audit/logs/me", "user", 200),
        ("/api/audit/reports/patient-access", "moderator", 200),
        ("/api/audit/reports/system-activity", "moderator", 403),
        ("/api/audit/dashboard", "moderator", 403),
        ("/api/audit/security-events", "user", 403),
    ],
)
async def test_role_gates(api_client, users, path, role, expected):
    resp = await api_client.get(path, headers=auth_headers(users[role]))
    assert resp.status_code == expected
    if expected == 403:
        assert resp.json()["code"] == "AUTH_003"


# ─── Log queries ──────────────────────────────────────────────────────────────

async def test_audit_logs_newest_first_with_actor(api_client, users, seeded):
    resp = await api_client.get("/api/audit/logs", headers=auth_headers(users["admin"]))
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["pagination"]["total"] == 13

    logs = data["logs"]
    stamps = [log["createdAt"] for log in logs]
    assert stamps == sorted(stamps, reverse=True)
    moderator_entry = next(log for log in logs if log["resource"] == "settings")
    assert moderator_entry["user"]["name"] == "Mo Derator"
    assert moderator_entry["user"]["role"] == "moderator"


async def test_audit_logs_filters(api_client, users, seeded):
    staff = users["user"]
    resp = await api_client.get(
        "/api/audit/logs",
        params={"userId": staff.id, "action": "VIEW_LIST", "resource": "invoices"},
        headers=auth_headers(users["admin"]),
    )
    data = resp.json()["data"]
    assert data["pagination"]["total"] == 3
    assert {log["action"] for log in data["logs"]} == {"VIEW_LIST"}

    by_ip = await api_client.get(
        "/api/audit/logs", params={"ipAddress": ATTACKER_IP}, headers=auth_headers(users["admin"])
    )
    assert by_ip.json()["data"]["pagination"]["total"] == 6


async def test_audit_logs_pagination(api_client, users, seeded):
    resp = await api_client.get(
        "/api/audit/logs", params={"page": 2, "limit": 5}, headers=auth_headers(users["admin"])
    )
    pagination = resp.json()["data"]["pagination"]
    assert pagination == {"page": 2, "limit": 5, "total": 13, "pages": 3}
    assert len(resp.json()["data"]["logs"]) == 5


async def test_page_size_is_capped(api_client, users, seeded):
    resp = await api_client.get("/api/audit/logs", params={"limit": 500}, headers=auth_headers(users["admin"]))
    assert resp.status_code == 200
    assert resp.json()["data"]["pagination"]["limit"] == 100


async def test_inverted_date_range_is_rejected(api_client, users):
    resp = await api_client.get(
        "/api/audit/logs",
        params={"startDate": "2026-03-02T00:00:00Z", "endDate": "2026-03-01T00:00:00Z"},
        headers=auth_headers(users["admin"]),
    )
    assert resp.status_code == 422
    assert resp.json()["code"] == "AUD_001"


async def test_gdpr_logs_filter_by_data_type(api_client, users, seeded):
    resp = await api_client.get(
        "/api/audit/logs/gdpr", params={"dataType": "date_of_birth"}, headers=auth_headers(users["moderator"])
    )
    data = resp.json()["data"]
    assert data["pagination"]["total"] == 3
    first = data["logs"][0]
    assert first["dataTypes"] == ["patient_personal_data", "date_of_birth"]
    assert first["recordId"] == PATIENT_ID
    assert first["user"]["email"] == "staff@clinic.test"


@pytest.mark.parametrize("pattern", ["%", "_"])
async def test_gdpr_data_type_filter_matches_wildcards_literally(api_client, users, seeded, pattern):
    resp = await api_client.get(
        "/api/audit/logs/gdpr", params={"dataType": pattern}, headers=auth_headers(users["moderator"])
    )
    assert resp.status_code == 200
    assert resp.json()["data"]["pagination"]["total"] == 0


async def test_my_logs_only_show_the_caller(api_client, users, seeded):
    moderator = users["moderator"]
    resp = await api_client.get("/api/audit/logs/me", headers=auth_headers(moderator))
    logs = resp.json()["data"]["logs"]
    assert len(logs) == 1
    assert logs[0]["userId"] == moderator.id


# ─── Reports ──────────────────────────────────────────────────────────────────

async def test_patient_access_report_counts_sessions(api_client, users, seeded):
    resp = await api_client.get(
        "/api/audit/reports/patient-access", params={"patientId": PATIENT_ID}, headers=auth_headers(users["admin"])
    )
    assert resp.status_code == 200
    (report,) = resp.json()["data"]
    assert report["patientName"] == "Paula Patient"
    assert report["accessCount"] == 1
    assert report["rawRecordCount"] == 6
    assert report["accessedBy"][0]["userName"] == "Sam Staff"


async def test_patient_access_report_strict_window(api_client, users, store, seeded):
    # One minute after the seeded visit: same session normally, a new one under the strict window.
    await _gdpr(store, users["user"].id, seeded - timedelta(hours=2) + timedelta(seconds=70))
    headers = auth_headers(users["admin"])

    resp = await api_client.get("/api/audit/reports/patient-access", params={"patientId": PATIENT_ID}, headers=headers)
    assert resp.json()["data"][0]["accessCount"] == 1

    resp = await api_client.get(
        "/api/audit/reports/patient-access", params={"patientId": PATIENT_ID, "window": "strict"}, headers=headers
    )
    (report,) = resp.json()["data"]
    assert report["accessCount"] == 2
    assert report["rawRecordCount"] == 7


async def test_patient_access_report_rejects_unknown_window(api_client, users):
    resp = await api_client.get(
        "/api/audit/reports/patient-access", params={"window": "loose"}, headers=auth_headers(users["admin"])
    )
    assert resp.status_code == 422
    assert resp.json()["code"] == "GEN_001"


async def test_system_activity_summary(api_client, users, seeded):
    resp = await api_client.get(
        "/api/audit/reports/system-activity", params={"days": 1}, headers=auth_headers(users["admin"])
    )
    data = resp.json()["data"]
    assert data["totalActions"] == 13
    assert data["uniqueUsers"] == 2
    assert len(data["hourlyDistribution"]) == 24
    assert data["topActions"][0] == {"action": "LOGIN_FAILED", "count": 6}


async def test_security_events_flag_failed_login_burst(api_client, users, seeded):
    resp = await api_client.get("/api/audit/security-events", headers=auth_headers(users["admin"]))
    (event,) = resp.json()["data"]
    assert event["type"] == "MULTIPLE_FAILED_LOGINS"
    assert event["severity"] == "MEDIUM"
    assert event["sourceIp"] == ATTACKER_IP
    assert event["details"]["attemptCount"] == 6
    assert event["details"]["targetedIdentifiers"] == ["staff@clinic.test"]


async def test_compliance_report(api_client, users, seeded):
    now = seeded
    resp = await api_client.get(
        "/api/audit/reports/compliance",
        params={
            "startDate": (now - timedelta(days=1)).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "endDate": (now + timedelta(minutes=1)).strftime("%Y-%m-%dT%H:%M:%SZ"),
        },
        headers=auth_headers(users["admin"]),
    )
    assert resp.status_code == 200
    summary = resp.json()["data"]["summary"]
    assert summary["totalAuditEvents"] == 13
    assert summary["totalGdprEvents"] == 3
    assert summary["patientDataAccesses"] == 1
    assert summary["uniquePatientsAccessed"] == 1
    assert summary["securityEventCount"] == 1
    assert resp.json()["data"]["gdprActions"] == {"DATA_ACCESS": 3}


async def test_compliance_report_requires_ordered_dates(api_client, users):
    resp = await api_client.get(
        "/api/audit/reports/compliance",
        params={"startDate": "2026-03-01T00:00:00Z", "endDate": "2026-03-01T00:00:00Z"},
        headers=auth_headers(users["admin"]),
    )
    assert resp.status_code == 422
    assert resp.json()["code"] == "AUD_001"


async def test_compliance_report_requires_both_dates(api_client, users):
    resp = await api_client.get(
        "/api/audit/reports/compliance",
        params={"startDate": "2026-03-01T00:00:00Z"},
        headers=auth_headers(users["admin"]),
    )
    assert resp.status_code == 422
    assert resp.json()["code"] == "GEN_001"


# ─── Dashboard ────────────────────────────────────────────────────────────────

async def test_dashboard(api_client, users, seeded):
    resp = await api_client.get("/api/audit/dashboard", headers=auth_headers(users["admin"]))
    data = resp.json()["data"]
    assert data["errors"] == []
    assert data["days"] == 7
    assert data["activity"]["totalActions"] == 13
    assert len(data["securityEvents"]) == 1
    assert data["patientAccess"][0]["patientId"] == PATIENT_ID
    assert len(data["recentLogs"]) == 10


async def test_dashboard_survives_a_failing_section(api_client, quiet_app, users, seeded, monkeypatch):
    async def broken(start, end):
        raise RuntimeError("query timed out")

    monkeypatch.setattr(quiet_app.state.report_aggregator, "_security", broken)

    resp = await api_client.get("/api/audit/dashboard", headers=auth_headers(users["admin"]))
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["securityEvents"] is None
    assert data["errors"] == [{"section": "securityEvents", "error": "Failed to load securityEvents"}]
    assert data["activity"]["totalActions"] == 13


async def test_single_report_failure_is_an_envelope(api_client, quiet_app, users, monkeypatch):
    async def broken(start, end):
        raise RuntimeError("query timed out")

    monkeypatch.setattr(quiet_app.state.report_aggregator, "_activity", broken)

    resp = await api_client.get("/api/audit/reports/system-activity", headers=auth_headers(users["admin"]))
    assert resp.status_code == 500
    assert resp.json()["code"] == "AUD_002"
    assert "timed out" not in resp.text


# ─── Filter options ───────────────────────────────────────────────────────────

async def test_audit_filter_options(api_client, users, seeded):
    resp = await api_client.get("/api/audit/filter-options/audit", headers=auth_headers(users["admin"]))
    data = resp.json()["data"]
    assert data["actions"] == ["LOGIN_FAILED", "UPDATE", "VIEW_DETAILED", "VIEW_LIST"]
    assert data["resources"] == ["authentication", "invoices", "patients", "settings"]
    assert [u["name"] for u in data["users"]] == ["Mo Derator", "Sam Staff"]


async def test_gdpr_filter_options(api_client, users, seeded):
    resp = await api_client.get("/api/audit/filter-options/gdpr", headers=auth_headers(users["admin"]))
    data = resp.json()["data"]
    assert data["actions"] == ["DATA_ACCESS"]
    assert data["dataTypes"] == ["date_of_birth", "patient_personal_data"]
    assert [u["id"] for u in data["users"]] == [users["user"].id]


# ─── Service endpoints ────────────────────────────────────────────────────────

async def test_health(api_client):
    resp = await api_client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "healthy"
    assert body["database"] == "ok"
    assert body["auditEnabled"] is False
    assert body["pendingAuditWrites"] == 0
    assert resp.headers["X-Content-Type-Options"] == "nosniff"
    assert "X-Correlation-ID" in resp.headers


async def test_metrics_expose_audit_counters(api_client):
    resp = await api_client.get("/metrics")
    assert resp.status_code == 200
    assert "clinic_audit_records_written_total" in resp.text
    assert "clinic_audit_write_failures_total" in resp.text
