"""
Audit recorder.

Writes classified events to the general audit store and, for
patient-category resources, to the GDPR access store. The two writes are
independent appends: either may fail without affecting the other, and
neither may affect the request that triggered it. Every public ``record_*``
method catches, logs and counts its own failures and returns ``False``
instead of raising.

Usage:
    recorder = AuditRecorder(store, settings, patients=directory)
    await recorder.record_exchange(exchange)
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, TypeVar

import structlog
from prometheus_client import Counter

from clinic_audit.config.settings import Settings
from clinic_audit.core.security import Identity
from clinic_audit.db.base import utcnow
from clinic_audit.db.models.audit import AuditAction, AuditLog, ComplianceAction, GDPRAuditLog
from clinic_audit.services.audit.classifier import (
    PATIENT_HISTORY_RESOURCES,
    PATIENT_RESOURCE,
    ClassifiedEvent,
    classify_request,
)
from clinic_audit.services.audit.directory import PatientDirectory, PatientSummary
from clinic_audit.services.audit.store import AuditStore

_log = structlog.get_logger(__name__)

_E = TypeVar("_E")

REDACTION_MARKER = "[REDACTED]"

# Keys are compared after lower-casing and dropping "_", "-" and spaces, so
# ``refresh_token``, ``refreshToken`` and ``Refresh-Token`` all match.
# Any key containing one of these fragments is masked.
_SECRET_FRAGMENTS = (
    "password",
    "passwd",
    "passphrase",
    "token",
    "secret",
    "apikey",
    "authorization",
    "credential",
    "mfacode",
    "privatekey",
)

# Too short to match as fragments without masking ordinary fields.
_SECRET_KEYS = frozenset({"otp", "totp", "pin", "cvv"})

_KEY_NOISE = re.compile(r"[_\-\s]")

_FAILED_AUTH_ACTIONS = frozenset({AuditAction.LOGIN_FAILED, AuditAction.TOKEN_REFRESH_FAILED})
_CHANGE_ACTIONS = {
    AuditAction.CREATE: "Created",
    AuditAction.UPDATE: "Updated",
    AuditAction.DELETE: "Deleted",
}

RECORDS_WRITTEN = Counter(
    "clinic_audit_records_written_total",
    "Audit records appended, by store",
    ["store"],
)
WRITE_FAILURES = Counter(
    "clinic_audit_write_failures_total",
    "Audit writes that failed and were dropped, by store and reason",
    ["store", "reason"],
)


def _is_secret(key: Any) -> bool:
    if not isinstance(key, str):
        return False
    normalised = _KEY_NOISE.sub("", key.lower())
    return normalised in _SECRET_KEYS or any(f in normalised for f in _SECRET_FRAGMENTS)


def redact(value: Any) -> Any:
    """Return a copy of ``value`` with credential and token fields masked."""
    if isinstance(value, Mapping):
        return {
            key: REDACTION_MARKER if _is_secret(key) else redact(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact(item) for item in value]
    return value


@dataclass(frozen=True, slots=True)
class RequestOutcome:
    """How a request ended, plus the request inputs worth keeping."""

    status_code: int
    duration_ms: int = 0
    response_size: int = 0
    source_ip: str | None = None
    user_agent: str | None = None
    query: Mapping[str, Any] | None = None
    body: Any = None
    error_message: str | None = None
    occurred_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True, slots=True)
class HttpExchange:
    """A completed request as seen by the interception layer."""

    method: str
    path: str
    outcome: RequestOutcome
    actor: Identity | None = None
    # Set by the auth service when a login fails for a known account.
    attempted_actor_id: str | None = None


class AuditRecorder:
    """Appends audit and GDPR records without ever failing the caller."""

    def __init__(
        self,
        store: AuditStore,
        settings: Settings,
        patients: PatientDirectory | None = None,
    ) -> None:
        self._store = store
        self._settings = settings
        self._patients = patients
        self._timeout = settings.audit_write_timeout_seconds

    # ── Orchestration ─────────────────────────────────────────────────── #

    async def record_exchange(self, exchange: HttpExchange) -> None:
        """Classify a completed exchange and write both trails for it."""
        outcome = exchange.outcome
        event = classify_request(
            exchange.method,
            exchange.path,
            query=outcome.query,
            body=outcome.body,
            status_code=outcome.status_code,
            api_prefix=self._settings.audit_api_prefix,
        )

        actor_id = exchange.actor.id if exchange.actor else None
        if actor_id is None and event.action in _FAILED_AUTH_ACTIONS:
            actor_id = exchange.attempted_actor_id

        event = await self._resolve_history_patient(event)
        patient = await self._lookup_patient(event)
        await asyncio.gather(
            self.record_general(actor_id, event, outcome, patient=patient),
            self.record_compliance_access(actor_id, event, outcome, patient=patient),
        )

    # ── General audit log ─────────────────────────────────────────────── #

    async def record_general(
        self,
        actor_id: str | None,
        event: ClassifiedEvent,
        outcome: RequestOutcome,
        patient: PatientSummary | None = None,
    ) -> bool:
        """
        Append one AuditRecord for ``event``.

        Skipped when there is no actor: the general log only holds
        authenticated actions.
        """
        if not actor_id:
            _log.debug(
                "audit_general_skipped_no_actor",
                action=event.action.value,
                resource_type=event.resource_type,
            )
            return False
        return await self._append(
            "general",
            self._store.append_audit,
            lambda: self._general_entry(actor_id, event, outcome, patient),
        )

    def _general_entry(
        self,
        actor_id: str,
        event: ClassifiedEvent,
        outcome: RequestOutcome,
        patient: PatientSummary | None,
    ) -> AuditLog:
        context: dict[str, Any] = {
            "method": event.method,
            "path": event.path,
            "statusCode": outcome.status_code,
            "durationMs": outcome.duration_ms,
            "responseSize": outcome.response_size,
        }
        if outcome.query:
            context["queryParams"] = redact(dict(outcome.query))
        if outcome.status_code >= 400:
            context["errorMessage"] = outcome.error_message or "Unknown error"
        if event.attempted_identifier:
            context["attemptedIdentifier"] = event.attempted_identifier
        data_types = _merge_types(event.sensitive_data_types, patient)
        if data_types:
            context["sensitiveDataAccessed"] = list(data_types)
        if event.patient_id:
            context["patientId"] = event.patient_id

        values = None
        if event.action in (AuditAction.CREATE, AuditAction.UPDATE) and isinstance(
            outcome.body, Mapping
        ):
            values = redact(outcome.body)

        return AuditLog(
            actor_id=actor_id,
            action=event.action.value,
            resource_type=event.resource_type,
            resource_id=actor_id if event.is_authentication else event.record_id,
            new_values={"values": values, "context": context},
            description=_describe(event, outcome),
            source_ip=outcome.source_ip,
            user_agent=_truncate(outcome.user_agent),
            occurred_at=outcome.occurred_at,
        )

    # ── GDPR access log ───────────────────────────────────────────────── #

    async def record_compliance_access(
        self,
        actor_id: str | None,
        event: ClassifiedEvent,
        outcome: RequestOutcome,
        patient: PatientSummary | None = None,
    ) -> bool:
        """Append one ComplianceAccessRecord when ``event`` touched patient data."""
        if not event.is_sensitive:
            return False
        return await self._append(
            "gdpr",
            self._store.append_compliance,
            lambda: GDPRAuditLog(
                actor_id=actor_id or None,
                action=event.compliance_action.value,
                data_type=", ".join(_merge_types(event.sensitive_data_types, patient))
                or event.resource_type,
                record_id=event.patient_id,
                purpose=_purpose(event),
                legal_basis=self._settings.audit_legal_basis,
                source_ip=outcome.source_ip,
                user_agent=_truncate(outcome.user_agent),
                automated=False,
                occurred_at=outcome.occurred_at,
            ),
        )

    # ── Explicit records from business handlers ───────────────────────── #

    async def record_entity_change(
        self,
        actor_id: str | None,
        action: AuditAction,
        resource_type: str,
        resource_id: str,
        prior_values: Mapping[str, Any] | None = None,
        new_values: Mapping[str, Any] | None = None,
        description: str | None = None,
        source_ip: str | None = None,
        user_agent: str | None = None,
    ) -> bool:
        """Record a create/update/delete with before and after snapshots."""
        if action not in _CHANGE_ACTIONS:
            _log.warning("audit_entity_change_rejected", action=str(action))
            return False
        if not actor_id:
            _log.debug("audit_general_skipped_no_actor", action=action.value)
            return False
        return await self._append(
            "general",
            self._store.append_audit,
            lambda: AuditLog(
                actor_id=actor_id,
                action=action.value,
                resource_type=resource_type.lower(),
                resource_id=resource_id,
                prior_values=redact(prior_values) if prior_values is not None else None,
                new_values=(
                    {"values": redact(new_values), "context": {"source": "handler"}}
                    if new_values is not None
                    else None
                ),
                description=description or f"{_CHANGE_ACTIONS[action]} {resource_type} record",
                source_ip=source_ip,
                user_agent=_truncate(user_agent),
            ),
        )

    async def record_data_export(
        self,
        actor_id: str | None,
        patient_id: str | None,
        data_types: Iterable[str],
        purpose: str,
        legal_basis: str | None = None,
        source_ip: str | None = None,
        user_agent: str | None = None,
        automated: bool = False,
    ) -> bool:
        """Record a GDPR data export (portability request, patient export)."""
        types = ", ".join(dict.fromkeys(data_types)) or "patient_data"
        return await self._append(
            "gdpr",
            self._store.append_compliance,
            lambda: GDPRAuditLog(
                actor_id=actor_id or None,
                action=ComplianceAction.DATA_EXPORT.value,
                data_type=types,
                record_id=patient_id,
                purpose=purpose,
                legal_basis=legal_basis or self._settings.audit_legal_basis,
                source_ip=source_ip,
                user_agent=_truncate(user_agent),
                automated=automated,
            ),
        )

    # ── Internals ─────────────────────────────────────────────────────── #

    async def _append(
        self,
        store: str,
        write: Callable[[_E], Awaitable[None]],
        build: Callable[[], _E],
    ) -> bool:
        try:
            entry = build()
            await asyncio.wait_for(write(entry), timeout=self._timeout)
        except TimeoutError:
            WRITE_FAILURES.labels(store=store, reason="timeout").inc()
            _log.error("audit_write_timeout", store=store, timeout_s=self._timeout)
            return False
        except Exception as exc:
            WRITE_FAILURES.labels(store=store, reason=type(exc).__name__).inc()
            _log.error("audit_write_failed", store=store, error=str(exc), exc_info=True)
            return False

        RECORDS_WRITTEN.labels(store=store).inc()
        return True

    async def _resolve_history_patient(self, event: ClassifiedEvent) -> ClassifiedEvent:
        """Attribute a medical-history detail request to the entry's patient."""
        if event.patient_id or not event.is_history_detail or self._patients is None:
            return event
        try:
            patient_id = await self._patients.get_history_patient(event.resource_id)
        except Exception:
            _log.warning("audit_history_lookup_failed", history_id=event.resource_id, exc_info=True)
            return event
        if patient_id is None:
            _log.info("audit_history_not_found", history_id=event.resource_id)
            return event
        return replace(event, patient_id=patient_id)

    async def _lookup_patient(self, event: ClassifiedEvent) -> PatientSummary | None:
        if not event.patient_id or self._patients is None:
            return None
        try:
            patient = await self._patients.get_patient(event.patient_id)
        except Exception:
            _log.warning("audit_patient_lookup_failed", patient_id=event.patient_id, exc_info=True)
            return None
        if patient is None:
            _log.info("audit_patient_not_found", patient_id=event.patient_id)
        return patient


def _merge_types(types: tuple[str, ...], patient: PatientSummary | None) -> tuple[str, ...]:
    if patient is None:
        return types
    return tuple(dict.fromkeys((*types, *patient.sensitive_data_types)))


def _truncate(value: str | None, limit: int = 500) -> str | None:
    return value[:limit] if value else value


def _describe(event: ClassifiedEvent, outcome: RequestOutcome) -> str:
    who = event.attempted_identifier or "unknown account"
    match event.action:
        case AuditAction.LOGIN:
            return f"Successful login for {who}"
        case AuditAction.LOGIN_FAILED:
            return f"Failed login attempt for {who}"
        case AuditAction.LOGOUT:
            return "User logged out"
        case AuditAction.TOKEN_REFRESH:
            return "Token refreshed successfully"
        case AuditAction.TOKEN_REFRESH_FAILED:
            return "Token refresh failed"
    return f"{event.method} {event.path} - {outcome.status_code} ({outcome.duration_ms}ms)"


# (resource, addresses one record) -> (access type, access reason)
_ACCESS_PURPOSES = {
    (PATIENT_RESOURCE, True): ("patient_detail_view", "Medical center operations"),
    (PATIENT_RESOURCE, False): ("patient_list_view", "Patient management and lookup"),
    ("patient-history", True): (
        "patient_history_detail_view",
        "Medical history review for treatment planning",
    ),
    ("patient-history", False): ("patient_history_list_view", "Medical history management"),
}


def _purpose(event: ClassifiedEvent) -> str:
    resource = "patient-history" if event.resource_type in PATIENT_HISTORY_RESOURCES else event.resource_type
    access_type, reason = _ACCESS_PURPOSES.get(
        (resource, event.resource_id is not None),
        (event.resource_type, "Medical center operations"),
    )
    return f"Staff member accessed {access_type} - {reason}"
