"""
Request classification.

Turns an HTTP exchange (method, path, query, body, status) into a
:class:`ClassifiedEvent`: which resource was addressed, which entity, what
kind of action, and which categories of sensitive data were touched. All
path and field-name heuristics of the audit engine live in this module.

Classification is best-effort and never raises. Anything that cannot be
resolved degrades to the ``UNKNOWN`` action and the ``"unknown"`` resource.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import structlog

from clinic_audit.db.models.audit import LIST_VIEW, UNKNOWN_RESOURCE, AuditAction, ComplianceAction

_log = structlog.get_logger(__name__)

_UUID_RE = re.compile(r"^[a-f0-9]{8}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{12}$", re.I)
_HEX32_RE = re.compile(r"^[a-f0-9]{32}$", re.I)
_NUMERIC_RE = re.compile(r"^\d+$")
_UUID_TAIL_RE = re.compile(r"/[a-f\d-]{36}$", re.I)

PATIENT_RESOURCE = "patients"
AUTH_RESOURCE = "auth"
AUTHENTICATION_RESOURCE = "authentication"

# Resource types holding patient demographics or medical-history data.
SENSITIVE_RESOURCES = frozenset({"patients", "patient-history", "patient_history", "appointments"})

# Route prefixes (after the API prefix) whose every sub-route is sensitive.
SENSITIVE_ROUTE_PREFIXES = ("/patients", "/patient-history", "/appointments")

# Medical-history resources; their ids name a history entry, not a patient.
PATIENT_HISTORY_RESOURCES = frozenset({"patient-history", "patient_history"})

# Resource types whose records identify a patient in access reports.
PATIENT_DATA_RESOURCES = frozenset({"patients", "patient-history", "patient_history"})

_METHOD_ACTIONS = {
    "POST": AuditAction.CREATE,
    "PUT": AuditAction.UPDATE,
    "PATCH": AuditAction.UPDATE,
    "DELETE": AuditAction.DELETE,
}

_COMPLIANCE_ACTIONS = {
    "GET": ComplianceAction.DATA_ACCESS,
    "POST": ComplianceAction.DATA_MODIFICATION,
    "PUT": ComplianceAction.DATA_MODIFICATION,
    "PATCH": ComplianceAction.DATA_MODIFICATION,
    "DELETE": ComplianceAction.DATA_DELETION,
}

# (data type label, field names that reveal it in a body or query string)
_PATIENT_FIELD_TYPES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("social_insurance_number", ("socialInsuranceNumber", "social_insurance_number", "ssn")),
    ("date_of_birth", ("dateOfBirth", "date_of_birth", "dob")),
    ("email_address", ("email",)),
    ("phone_number", ("phone", "phoneNumber", "phone_number")),
)

_RESOURCE_DATA_TYPES: dict[str, tuple[str, ...]] = {
    "patients": ("patient_personal_data",),
    "patient-history": ("medical_history", "health_data"),
    "patient_history": ("medical_history", "health_data"),
    "appointments": ("appointment_data", "treatment_records"),
}

_PATIENT_ID_FIELDS = ("patientId", "patient_id")


@dataclass(frozen=True, slots=True)
class ClassifiedEvent:
    """What an HTTP exchange did, in audit terms."""

    method: str
    path: str
    resource_type: str
    action: AuditAction
    resource_id: str | None = None
    is_sensitive: bool = False
    sensitive_data_types: tuple[str, ...] = ()
    patient_id: str | None = None
    attempted_identifier: str | None = field(default=None, repr=False)

    @property
    def record_id(self) -> str:
        """Resource id for storage; never null."""
        if self.resource_id:
            return self.resource_id
        return LIST_VIEW if self.action == AuditAction.VIEW_LIST else UNKNOWN_RESOURCE

    @property
    def is_authentication(self) -> bool:
        return self.resource_type == AUTHENTICATION_RESOURCE

    @property
    def is_history_detail(self) -> bool:
        return self.resource_type in PATIENT_HISTORY_RESOURCES and self.resource_id is not None

    @property
    def compliance_action(self) -> ComplianceAction:
        return compliance_action_for(self.method)

    @classmethod
    def unresolved(cls, method: str, path: str) -> ClassifiedEvent:
        return cls(
            method=method.upper(),
            path=path,
            resource_type=UNKNOWN_RESOURCE,
            action=AuditAction.UNKNOWN,
        )


def is_entity_id(segment: str) -> bool:
    return bool(
        _UUID_RE.match(segment) or _HEX32_RE.match(segment) or _NUMERIC_RE.match(segment)
    )


def compliance_action_for(method: str) -> ComplianceAction:
    """GDPR action for a request, from the HTTP method alone."""
    return _COMPLIANCE_ACTIONS.get(method.upper(), ComplianceAction.DATA_ACCESS)


def strip_api_prefix(path: str, api_prefix: str = "/api") -> str:
    """Return ``path`` relative to the API prefix, always starting with ``/``."""
    path = "/" + path.lstrip("/")
    prefix = api_prefix.rstrip("/")
    if prefix and (path == prefix or path.startswith(prefix + "/")):
        path = path[len(prefix):] or "/"
    return path


def resolve_resource(relative_path: str) -> tuple[str, str | None]:
    """Resource type and id from a path already stripped of the API prefix."""
    segments = [part for part in relative_path.split("/") if part]
    if not segments:
        return UNKNOWN_RESOURCE, None

    first = segments[0]
    # Routes exposing a bare entity id first address a patient directly.
    if _UUID_RE.match(first):
        return PATIENT_RESOURCE, first

    resource_id = segments[1] if len(segments) > 1 and is_entity_id(segments[1]) else None
    return first.lower(), resource_id


def is_sensitive_route(resource_type: str, relative_path: str) -> bool:
    if resource_type in SENSITIVE_RESOURCES:
        return True
    return relative_path.startswith(SENSITIVE_ROUTE_PREFIXES)


def action_for(method: str, relative_path: str) -> AuditAction:
    method = method.upper()
    if method in _METHOD_ACTIONS:
        return _METHOD_ACTIONS[method]
    if method == "GET":
        if "export" in relative_path.lower():
            return AuditAction.EXPORT
        if _UUID_TAIL_RE.search(relative_path):
            return AuditAction.VIEW_DETAILED
        return AuditAction.VIEW_LIST
    return AuditAction.UNKNOWN


def _auth_action(relative_path: str, status_code: int | None) -> AuditAction | None:
    succeeded = status_code is not None and status_code < 400
    lowered = relative_path.lower()
    if "/login" in lowered:
        return AuditAction.LOGIN if succeeded else AuditAction.LOGIN_FAILED
    if "/logout" in lowered:
        return AuditAction.LOGOUT
    if "/refresh" in lowered:
        return AuditAction.TOKEN_REFRESH if succeeded else AuditAction.TOKEN_REFRESH_FAILED
    return None


def _has_field(source: Mapping[str, Any] | None, names: tuple[str, ...]) -> bool:
    if not source:
        return False
    return any(source.get(name) not in (None, "") for name in names)


def sensitive_data_types(
    resource_type: str,
    body: Mapping[str, Any] | None,
    query: Mapping[str, Any] | None,
) -> tuple[str, ...]:
    """
    Categories of regulated data a request touched.

    Additive and best-effort: resource-level labels plus labels for any
    known sensitive field present in the body or query string.
    """
    found: list[str] = list(_RESOURCE_DATA_TYPES.get(resource_type, ()))
    if resource_type == PATIENT_RESOURCE:
        for label, names in _PATIENT_FIELD_TYPES:
            if _has_field(body, names) or _has_field(query, names):
                found.append(label)
    return tuple(dict.fromkeys(found))


def _patient_id(
    resource_type: str,
    resource_id: str | None,
    body: Mapping[str, Any] | None,
    query: Mapping[str, Any] | None,
) -> str | None:
    if resource_type == PATIENT_RESOURCE:
        return resource_id
    for source in (body, query):
        if not source:
            continue
        for name in _PATIENT_ID_FIELDS:
            value = source.get(name)
            if isinstance(value, (str, int)) and str(value):
                return str(value)
    return None


def _attempted_identifier(body: Mapping[str, Any] | None) -> str | None:
    if not body:
        return None
    for name in ("email", "username"):
        value = body.get(name)
        if isinstance(value, str) and value:
            return value
    return None


def classify_request(
    method: str,
    path: str,
    query: Mapping[str, Any] | None = None,
    body: Any = None,
    status_code: int | None = None,
    api_prefix: str = "/api",
) -> ClassifiedEvent:
    """
    Classify one HTTP exchange.

    ``status_code`` is only known after the response; it decides between
    the success and failure variants of authentication events.
    """
    try:
        mapped_body = body if isinstance(body, Mapping) else None
        relative = strip_api_prefix(path, api_prefix)
        resource_type, resource_id = resolve_resource(relative)
        if resource_type == UNKNOWN_RESOURCE:
            return ClassifiedEvent.unresolved(method, path)

        if resource_type == AUTH_RESOURCE:
            auth_action = _auth_action(relative, status_code)
            if auth_action is not None:
                return ClassifiedEvent(
                    method=method.upper(),
                    path=path,
                    resource_type=AUTHENTICATION_RESOURCE,
                    action=auth_action,
                    attempted_identifier=_attempted_identifier(mapped_body),
                )

        return ClassifiedEvent(
            method=method.upper(),
            path=path,
            resource_type=resource_type,
            resource_id=resource_id,
            action=action_for(method, relative),
            is_sensitive=is_sensitive_route(resource_type, relative),
            sensitive_data_types=sensitive_data_types(resource_type, mapped_body, query),
            patient_id=_patient_id(resource_type, resource_id, mapped_body, query),
        )
    except Exception:
        _log.warning("audit_classification_failed", method=method, path=path, exc_info=True)
        return ClassifiedEvent.unresolved(method, path)
