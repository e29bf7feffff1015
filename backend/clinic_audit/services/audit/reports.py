"""
Report aggregation over the two audit stores.

Every "how many times" figure in these reports counts reconstructed access
sessions (see :mod:`clinic_audit.services.audit.sessions`), never raw rows.
Display enrichment (patient names, user names and roles) is best-effort:
when a lookup fails the report is still produced, just without those
fields.
"""

from __future__ import annotations

import asyncio
from collections import Counter, defaultdict
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime, timedelta
from typing import Any, TypeVar

import structlog

from clinic_audit.config.settings import Settings
from clinic_audit.core.errors import ErrorCode, ValidationError
from clinic_audit.db.base import ensure_utc, utcnow
from clinic_audit.db.models.audit import (
    LIST_VIEW,
    UNKNOWN_RESOURCE,
    AuditAction,
    AuditLog,
    ComplianceAction,
)
from clinic_audit.schemas.audit import (
    ActorOut,
    AuditFilterOptions,
    AuditLogOut,
    GDPRFilterOptions,
)
from clinic_audit.schemas.reports import (
    AccessSessionOut,
    AccessSummary,
    ActionCount,
    ComplianceReport,
    ComplianceSummary,
    Dashboard,
    HourCount,
    PatientAccessor,
    PatientAccessReport,
    Period,
    SectionError,
    SecurityEvent,
    SecurityEventDetails,
    SystemActivitySummary,
    TimeSpan,
    UserActivity,
)
from clinic_audit.services.audit.classifier import PATIENT_DATA_RESOURCES, PATIENT_RESOURCE
from clinic_audit.services.audit.directory import ActorSummary, Directory, PatientSummary
from clinic_audit.services.audit.sessions import AccessEvent, AccessSession, reconstruct_sessions
from clinic_audit.services.audit.store import AuditStore, LogFilter, Page, split_data_types

_log = structlog.get_logger(__name__)

_T = TypeVar("_T")

TOP_USERS_LIMIT = 20
DASHBOARD_PATIENT_LIMIT = 10
DASHBOARD_RECENT_LOGS = 10
MULTIPLE_FAILED_LOGINS = "MULTIPLE_FAILED_LOGINS"
UNKNOWN_IP = "unknown"


def audit_row_patient_id(row: AuditLog) -> str | None:
    """Patient a general-log row refers to, if any."""
    context = (row.new_values or {}).get("context") or {}
    patient_id = context.get("patientId")
    if isinstance(patient_id, str) and patient_id:
        return patient_id
    if row.resource_type == PATIENT_RESOURCE and row.resource_id not in (LIST_VIEW, UNKNOWN_RESOURCE):
        return row.resource_id
    return None


def _attempted_identifier(row: AuditLog) -> str | None:
    context = (row.new_values or {}).get("context") or {}
    value = context.get("attemptedIdentifier")
    return value if isinstance(value, str) and value else None


class ReportAggregator:
    """
    Builds the compliance reports served by the query API.

    ``clock`` returns the current UTC time; tests pin it.
    """

    def __init__(
        self,
        store: AuditStore,
        directory: Directory,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._directory = directory
        self._settings = settings
        self._clock = clock
        self._window = timedelta(seconds=settings.audit_session_window_seconds)
        self._strict_window = timedelta(seconds=settings.audit_strict_session_window_seconds)

    # ── Public reports ────────────────────────────────────────────────── #

    async def patient_access_report(
        self, patient_id: str | None = None, days: int = 30, strict: bool = False
    ) -> list[PatientAccessReport]:
        """
        One report per patient accessed in the last ``days`` days, most recent first.

        ``strict`` joins raw records with the shorter strict-session window.
        """
        end = self._clock()
        window = self._strict_window if strict else self._window
        return await self._patient_access(end - timedelta(days=days), end, patient_id, window)

    async def system_activity_summary(self, days: int = 7) -> SystemActivitySummary:
        end = self._clock()
        return await self._activity(end - timedelta(days=days), end)

    async def security_events(self, hours: int = 24) -> list[SecurityEvent]:
        end = self._clock()
        return await self._security(end - timedelta(hours=hours), end)

    async def compliance_report(self, start: datetime, end: datetime) -> ComplianceReport:
        """
        Formal rollup for a fixed window.

        Raises:
            ValidationError: ``start`` is not strictly before ``end``.
        """
        start, end = ensure_utc(start), ensure_utc(end)
        if start >= end:
            raise ValidationError(
                "startDate must be before endDate",
                detail={"startDate": start.isoformat(), "endDate": end.isoformat()},
                code=ErrorCode.AUDIT_INVALID_DATE_RANGE,
            )

        patient_access, activity, security, gdpr_rows, (_, audit_total) = await asyncio.gather(
            self._patient_access(start, end, None),
            self._activity(start, end),
            self._security(start, end),
            self._store.compliance_rows(LogFilter(start=start, end=end)),
            self._store.list_audit(LogFilter(start=start, end=end), Page(page=1, limit=1)),
        )

        gdpr_actions = Counter(row.action for row in gdpr_rows)
        accessing_users = {a.user_id for report in patient_access for a in report.accessed_by}
        summary = ComplianceSummary(
            total_audit_events=audit_total,
            total_gdpr_events=len(gdpr_rows),
            patient_data_accesses=sum(r.access_count for r in patient_access),
            unique_patients_accessed=len(patient_access),
            unique_users=activity.unique_users,
            users_accessing_patient_data=len(accessing_users),
            data_exports=gdpr_actions.get(ComplianceAction.DATA_EXPORT.value, 0),
            security_event_count=len(security),
        )
        return ComplianceReport(
            period=Period(start=start, end=end),
            generated_at=self._clock(),
            summary=summary,
            gdpr_actions=dict(sorted(gdpr_actions.items())),
            legal_bases=dict(sorted(Counter(r.legal_basis or "unspecified" for r in gdpr_rows).items())),
            patient_access=patient_access,
            activity=activity,
            security_events=security,
        )

    async def dashboard(self, days: int = 7) -> Dashboard:
        """
        Combined dashboard payload.

        Sections are fetched concurrently. A section that fails is returned
        as null and named in ``errors``; the others are unaffected.
        """
        end = self._clock()
        start = end - timedelta(days=days)
        sections: dict[str, Awaitable[Any]] = {
            "activity": self._activity(start, end),
            "securityEvents": self._security(start, end),
            "patientAccess": self._patient_access(start, end, None),
            "recentLogs": self._recent_logs(),
        }
        results = await asyncio.gather(*sections.values(), return_exceptions=True)

        payload: dict[str, Any] = {}
        errors: list[SectionError] = []
        for name, result in zip(sections, results):
            if isinstance(result, BaseException):
                _log.error("dashboard_section_failed", section=name, error=str(result), exc_info=result)
                errors.append(SectionError(section=name, error=f"Failed to load {name}"))
                payload[name] = None
            else:
                payload[name] = result

        patient_access = payload["patientAccess"]
        return Dashboard(
            generated_at=end,
            days=days,
            activity=payload["activity"],
            security_events=payload["securityEvents"],
            patient_access=patient_access[:DASHBOARD_PATIENT_LIMIT] if patient_access is not None else None,
            recent_logs=payload["recentLogs"],
            errors=errors,
        )

    async def audit_filter_options(self) -> AuditFilterOptions:
        values = await self._store.distinct_audit_values()
        return AuditFilterOptions(
            actions=values["actions"],
            resources=values["resources"],
            users=await self._actor_options(values["actors"]),
        )

    async def gdpr_filter_options(self) -> GDPRFilterOptions:
        values = await self._store.distinct_compliance_values()
        return GDPRFilterOptions(
            actions=values["actions"],
            data_types=split_data_types(values["dataTypes"]),
            users=await self._actor_options(values["actors"]),
        )

    async def actors(self, actor_ids: Iterable[str | None]) -> dict[str, ActorSummary]:
        """User display data for ``actor_ids``; empty when the lookup fails."""
        ids = {a for a in actor_ids if a}
        if not ids:
            return {}
        return await self._enrich("users", self._directory.get_users(ids), {})

    # ── Patient access ────────────────────────────────────────────────── #

    async def _patient_access(
        self,
        start: datetime,
        end: datetime,
        patient_id: str | None,
        window: timedelta | None = None,
    ) -> list[PatientAccessReport]:
        gdpr_rows, audit_rows = await asyncio.gather(
            self._store.compliance_rows(
                LogFilter(
                    start=start,
                    end=end,
                    resource_id=patient_id,
                    require_actor=True,
                    require_record=True,
                )
            ),
            self._store.audit_rows(
                LogFilter(start=start, end=end, resource_types=tuple(sorted(PATIENT_DATA_RESOURCES)))
            ),
        )

        events: list[AccessEvent] = []
        for gdpr_row in gdpr_rows:
            event = AccessEvent.from_compliance(gdpr_row)
            if event is not None:
                events.append(event)
        for audit_row in audit_rows:
            row_patient = audit_row_patient_id(audit_row)
            if row_patient and (patient_id is None or row_patient == patient_id):
                events.append(AccessEvent.from_audit(audit_row, row_patient))

        by_patient: dict[str, list[AccessSession]] = defaultdict(list)
        for session in reconstruct_sessions(events, window=window or self._window):
            by_patient[session.patient_id].append(session)
        if not by_patient:
            return []

        patients, users = await asyncio.gather(
            self._enrich("patients", self._directory.get_patients(by_patient), {}),
            self.actors(s.actor_id for group in by_patient.values() for s in group),
        )
        reports = [
            _patient_report(pid, sessions, patients.get(pid), users)
            for pid, sessions in by_patient.items()
        ]
        reports.sort(key=lambda r: (r.last_access, r.patient_id), reverse=True)
        return reports

    # ── System activity ───────────────────────────────────────────────── #

    async def _activity(self, start: datetime, end: datetime) -> SystemActivitySummary:
        rows = await self._store.audit_rows(LogFilter(start=start, end=end))

        actions = Counter(row.action for row in rows)
        hours = Counter(ensure_utc(row.occurred_at).hour for row in rows)
        per_user = Counter(row.actor_id for row in rows)
        last_seen: dict[str, datetime] = {}
        for row in rows:
            occurred = ensure_utc(row.occurred_at)
            if row.actor_id not in last_seen or occurred > last_seen[row.actor_id]:
                last_seen[row.actor_id] = occurred

        top = sorted(per_user.items(), key=lambda item: (-item[1], item[0]))[:TOP_USERS_LIMIT]
        users = await self.actors(actor_id for actor_id, _ in top)

        return SystemActivitySummary(
            period=Period(start=start, end=end),
            total_actions=len(rows),
            unique_users=len(per_user),
            top_actions=[
                ActionCount(action=action, count=count)
                for action, count in sorted(actions.items(), key=lambda item: (-item[1], item[0]))
            ],
            hourly_distribution=[HourCount(hour=h, count=hours.get(h, 0)) for h in range(24)],
            top_users=[
                UserActivity(
                    user_id=actor_id,
                    user_name=users[actor_id].name if actor_id in users else None,
                    user_email=users[actor_id].email if actor_id in users else None,
                    role=users[actor_id].role if actor_id in users else None,
                    action_count=count,
                    last_activity=last_seen[actor_id],
                )
                for actor_id, count in top
            ],
        )

    # ── Security events ───────────────────────────────────────────────── #

    async def _security(self, start: datetime, end: datetime) -> list[SecurityEvent]:
        rows = await self._store.audit_rows(
            LogFilter(start=start, end=end, action=AuditAction.LOGIN_FAILED.value)
        )
        by_ip: dict[str, list[AuditLog]] = defaultdict(list)
        for row in rows:
            by_ip[row.source_ip or UNKNOWN_IP].append(row)

        threshold = self._settings.security_failed_login_threshold
        high = self._settings.security_failed_login_high_threshold
        events: list[SecurityEvent] = []
        for ip, attempts in by_ip.items():
            if len(attempts) < threshold:
                continue
            times = sorted(ensure_utc(a.occurred_at) for a in attempts)
            identifiers = {i for a in attempts if (i := _attempted_identifier(a))}
            events.append(
                SecurityEvent(
                    type=MULTIPLE_FAILED_LOGINS,
                    severity="HIGH" if len(attempts) >= high else "MEDIUM",
                    source_ip=ip,
                    description=f"{len(attempts)} failed login attempts from {ip}",
                    occurred_at=times[-1],
                    details=SecurityEventDetails(
                        attempt_count=len(attempts),
                        time_range=Period(start=times[0], end=times[-1]),
                        targeted_users=sorted({a.actor_id for a in attempts}),
                        targeted_identifiers=sorted(identifiers),
                    ),
                )
            )
        events.sort(key=lambda e: (e.occurred_at, e.source_ip), reverse=True)
        return events

    # ── Helpers ───────────────────────────────────────────────────────── #

    async def _recent_logs(self) -> list[AuditLogOut]:
        rows, _ = await self._store.list_audit(LogFilter(), Page(page=1, limit=DASHBOARD_RECENT_LOGS))
        users = await self.actors(row.actor_id for row in rows)
        return [AuditLogOut.from_row(row, users.get(row.actor_id)) for row in rows]

    async def _actor_options(self, actor_ids: list[str]) -> list[ActorOut]:
        users = await self.actors(actor_ids)
        options = [ActorOut.from_summary(a, users.get(a)) for a in actor_ids]
        return sorted(options, key=lambda o: ((o.name or "").lower(), o.id))

    async def _enrich(self, what: str, lookup: Awaitable[_T], fallback: _T) -> _T:
        try:
            return await lookup
        except Exception as exc:
            _log.warning("audit_report_enrichment_failed", lookup=what, error=str(exc))
            return fallback


def _session_out(session: AccessSession) -> AccessSessionOut:
    return AccessSessionOut(
        user_id=session.actor_id,
        start=session.start,
        end=session.end,
        record_count=session.record_count,
        access_type=session.access_type.value,
        data_types=session.data_types_accessed,
        ip_addresses=session.ip_addresses,
        user_agents=session.user_agents,
    )


def _patient_report(
    patient_id: str,
    sessions: list[AccessSession],
    patient: PatientSummary | None,
    users: dict[str, ActorSummary],
) -> PatientAccessReport:
    per_user: dict[str, list[AccessSession]] = defaultdict(list)
    for session in sessions:
        per_user[session.actor_id].append(session)

    accessors = []
    for user_id, own in per_user.items():
        user = users.get(user_id)
        accessors.append(
            PatientAccessor(
                user_id=user_id,
                user_name=user.name if user else None,
                user_email=user.email if user else None,
                user_role=user.role if user else None,
                access_count=len(own),
                first_access=min(s.start for s in own),
                last_access=max(s.end for s in own),
                ip_addresses=sorted({ip for s in own for ip in s.ip_addresses}),
                data_types=sorted({t for s in own for t in s.data_types_accessed}),
                access_types=sorted({s.access_type.value for s in own}),
            )
        )
    accessors.sort(key=lambda a: (-a.access_count, -a.last_access.timestamp(), a.user_id))

    first = min(s.start for s in sessions)
    last = max(s.end for s in sessions)
    roles = Counter((users[u].role if u in users else "unknown") for u in per_user)
    return PatientAccessReport(
        patient_id=patient_id,
        patient_name=patient.name if patient else None,
        access_count=len(sessions),
        raw_record_count=sum(s.record_count for s in sessions),
        first_access=first,
        last_access=last,
        accessed_by=accessors,
        sessions=[_session_out(s) for s in sessions],
        access_summary=AccessSummary(
            unique_users=len(per_user),
            unique_ip_addresses=len({ip for s in sessions for ip in s.ip_addresses}),
            role_distribution=dict(sorted(roles.items())),
            time_span=TimeSpan(
                first=first,
                last=last,
                hours=round((last - first).total_seconds() / 3600, 2),
            ),
        ),
    )
