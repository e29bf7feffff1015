"""
Access session reconstruction.

A single screen in the practice UI fires several API calls (list, detail,
sub-resources). Counting raw rows therefore overstates how often someone
looked at a patient. This module groups the raw rows of one
(actor, patient) pair into sessions separated by an inactivity window, and
those sessions are the unit every report counts.

The grouping is a pure function of the record set and the window: records
are put into a total order before they are walked, so input order does not
matter.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from clinic_audit.db.base import ensure_utc
from clinic_audit.db.models.audit import AuditAction, AuditLog, ComplianceAction, GDPRAuditLog

PATIENT_ACCESS_WINDOW = timedelta(minutes=5)
STRICT_WINDOW = timedelta(seconds=30)

SOURCE_GDPR = "gdpr"
SOURCE_AUDIT = "audit"

# Highest first; a session is labelled with the strongest action it contains.
_ACCESS_PRECEDENCE = (
    ComplianceAction.DATA_DELETION,
    ComplianceAction.DATA_MODIFICATION,
    ComplianceAction.DATA_EXPORT,
    ComplianceAction.DATA_ACCESS,
)

_AUDIT_TO_ACCESS = {
    AuditAction.VIEW_LIST.value: ComplianceAction.DATA_ACCESS,
    AuditAction.VIEW_DETAILED.value: ComplianceAction.DATA_ACCESS,
    AuditAction.CREATE.value: ComplianceAction.DATA_MODIFICATION,
    AuditAction.UPDATE.value: ComplianceAction.DATA_MODIFICATION,
    AuditAction.DELETE.value: ComplianceAction.DATA_DELETION,
    AuditAction.EXPORT.value: ComplianceAction.DATA_EXPORT,
}


@dataclass(frozen=True, slots=True)
class AccessEvent:
    """One raw row from either store, normalised for grouping."""

    source: str
    id: str
    actor_id: str
    patient_id: str
    occurred_at: datetime
    access_type: ComplianceAction = ComplianceAction.DATA_ACCESS
    data_types: tuple[str, ...] = ()
    source_ip: str | None = None
    user_agent: str | None = None

    @property
    def sort_key(self) -> tuple[datetime, str, str]:
        return (self.occurred_at, self.source, self.id)

    @classmethod
    def from_compliance(cls, row: GDPRAuditLog) -> AccessEvent | None:
        """None when the row has no actor or no patient and cannot be attributed."""
        if not row.actor_id or not row.record_id:
            return None
        try:
            access_type = ComplianceAction(row.action)
        except ValueError:
            access_type = ComplianceAction.DATA_ACCESS
        return cls(
            source=SOURCE_GDPR,
            id=row.id,
            actor_id=row.actor_id,
            patient_id=row.record_id,
            occurred_at=ensure_utc(row.occurred_at),
            access_type=access_type,
            data_types=tuple(row.data_types),
            source_ip=row.source_ip,
            user_agent=row.user_agent,
        )

    @classmethod
    def from_audit(cls, row: AuditLog, patient_id: str) -> AccessEvent:
        context = (row.new_values or {}).get("context") or {}
        data_types = context.get("sensitiveDataAccessed") or ()
        return cls(
            source=SOURCE_AUDIT,
            id=row.id,
            actor_id=row.actor_id,
            patient_id=patient_id,
            occurred_at=ensure_utc(row.occurred_at),
            access_type=_AUDIT_TO_ACCESS.get(row.action, ComplianceAction.DATA_ACCESS),
            data_types=tuple(str(t) for t in data_types),
            source_ip=row.source_ip,
            user_agent=row.user_agent,
        )


@dataclass(slots=True)
class AccessSession:
    """A cluster of raw records for one (actor, patient) pair."""

    actor_id: str
    patient_id: str
    start: datetime
    end: datetime
    members: list[AccessEvent] = field(default_factory=list)

    def accepts(self, event: AccessEvent, window: timedelta) -> bool:
        return self.start - window <= event.occurred_at <= self.end + window

    def add(self, event: AccessEvent) -> None:
        self.members.append(event)
        if event.occurred_at < self.start:
            self.start = event.occurred_at
        if event.occurred_at > self.end:
            self.end = event.occurred_at

    @property
    def record_count(self) -> int:
        return len(self.members)

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    @property
    def access_type(self) -> ComplianceAction:
        seen = {m.access_type for m in self.members}
        for candidate in _ACCESS_PRECEDENCE:
            if candidate in seen:
                return candidate
        return ComplianceAction.DATA_ACCESS

    @property
    def data_types_accessed(self) -> list[str]:
        return sorted({t for m in self.members for t in m.data_types})

    @property
    def ip_addresses(self) -> list[str]:
        return sorted({m.source_ip for m in self.members if m.source_ip})

    @property
    def user_agents(self) -> list[str]:
        return sorted({m.user_agent for m in self.members if m.user_agent})


def _group_sessions(ordered: Sequence[AccessEvent], window: timedelta) -> list[AccessSession]:
    sessions: list[AccessSession] = []
    for event in ordered:
        target = next((s for s in sessions if s.accepts(event, window)), None)
        if target is None:
            target = AccessSession(
                actor_id=event.actor_id,
                patient_id=event.patient_id,
                start=event.occurred_at,
                end=event.occurred_at,
            )
            sessions.append(target)
        target.add(event)
    return sessions


def reconstruct_sessions(
    events: Iterable[AccessEvent],
    window: timedelta = PATIENT_ACCESS_WINDOW,
) -> list[AccessSession]:
    """
    Group raw access events into sessions.

    Events are grouped by ``(actor_id, patient_id)`` and ordered by
    timestamp (ties broken by source and id). Walking that order, an event
    joins the first open session whose ``[start - window, end + window]``
    range contains it, otherwise it opens a new one. Sessions never span
    two pairs, and every input event lands in exactly one session.

    Returns the sessions ordered by start time, then actor, then patient.
    """
    if window < timedelta(0):
        raise ValueError("window must not be negative")

    groups: dict[tuple[str, str], list[AccessEvent]] = defaultdict(list)
    for event in events:
        groups[(event.actor_id, event.patient_id)].append(event)

    sessions: list[AccessSession] = []
    for members in groups.values():
        members.sort(key=lambda e: e.sort_key)
        sessions.extend(_group_sessions(members, window))

    sessions.sort(key=lambda s: (s.start, s.actor_id, s.patient_id))
    return sessions
