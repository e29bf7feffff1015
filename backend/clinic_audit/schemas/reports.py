"""Report payloads produced by the report aggregator."""

from __future__ import annotations

from datetime import datetime

from pydantic import Field

from clinic_audit.schemas.audit import AuditLogOut
from clinic_audit.schemas.common import ApiModel


class Period(ApiModel):
    start: datetime
    end: datetime


class TimeSpan(ApiModel):
    first: datetime
    last: datetime
    hours: float


# ── Patient access ────────────────────────────────────────────────────── #


class AccessSessionOut(ApiModel):
    user_id: str
    start: datetime
    end: datetime
    record_count: int
    access_type: str
    data_types: list[str]
    ip_addresses: list[str]
    user_agents: list[str]


class PatientAccessor(ApiModel):
    user_id: str
    user_name: str | None = None
    user_email: str | None = None
    user_role: str | None = None
    access_count: int = Field(description="Reconstructed sessions, not raw rows")
    first_access: datetime
    last_access: datetime
    ip_addresses: list[str]
    data_types: list[str]
    access_types: list[str]


class AccessSummary(ApiModel):
    unique_users: int
    unique_ip_addresses: int
    role_distribution: dict[str, int]
    time_span: TimeSpan


class PatientAccessReport(ApiModel):
    patient_id: str
    patient_name: str | None = None
    access_count: int = Field(description="Reconstructed sessions, not raw rows")
    raw_record_count: int
    first_access: datetime
    last_access: datetime
    accessed_by: list[PatientAccessor]
    sessions: list[AccessSessionOut]
    access_summary: AccessSummary


# ── System activity ───────────────────────────────────────────────────── #


class ActionCount(ApiModel):
    action: str
    count: int


class HourCount(ApiModel):
    hour: int
    count: int


class UserActivity(ApiModel):
    user_id: str
    user_name: str | None = None
    user_email: str | None = None
    role: str | None = None
    action_count: int
    last_activity: datetime


class SystemActivitySummary(ApiModel):
    period: Period
    total_actions: int
    unique_users: int
    top_actions: list[ActionCount]
    hourly_distribution: list[HourCount]
    top_users: list[UserActivity]


# ── Security ──────────────────────────────────────────────────────────── #


class SecurityEventDetails(ApiModel):
    attempt_count: int
    time_range: Period
    targeted_users: list[str]
    targeted_identifiers: list[str]


class SecurityEvent(ApiModel):
    type: str
    severity: str
    source_ip: str
    description: str
    occurred_at: datetime
    details: SecurityEventDetails


# ── Compliance rollup ─────────────────────────────────────────────────── #


class ComplianceSummary(ApiModel):
    total_audit_events: int
    total_gdpr_events: int
    patient_data_accesses: int
    unique_patients_accessed: int
    unique_users: int
    users_accessing_patient_data: int
    data_exports: int
    security_event_count: int


class ComplianceReport(ApiModel):
    period: Period
    generated_at: datetime
    summary: ComplianceSummary
    gdpr_actions: dict[str, int]
    legal_bases: dict[str, int]
    patient_access: list[PatientAccessReport]
    activity: SystemActivitySummary
    security_events: list[SecurityEvent]


# ── Dashboard ─────────────────────────────────────────────────────────── #


class SectionError(ApiModel):
    section: str
    error: str


class Dashboard(ApiModel):
    """Combined payload; a section that failed is null and listed in ``errors``."""

    generated_at: datetime
    days: int
    activity: SystemActivitySummary | None = None
    security_events: list[SecurityEvent] | None = None
    patient_access: list[PatientAccessReport] | None = None
    recent_logs: list[AuditLogOut] | None = None
    errors: list[SectionError] = Field(default_factory=list)
