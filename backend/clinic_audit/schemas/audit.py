"""Audit and GDPR log schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Generic, TypeVar

from pydantic import field_validator

from clinic_audit.db.base import ensure_utc
from clinic_audit.db.models.audit import AuditLog, GDPRAuditLog
from clinic_audit.schemas.common import ApiModel, Pagination
from clinic_audit.services.audit.directory import ActorSummary

L = TypeVar("L")


class ActorOut(ApiModel):
    id: str
    name: str | None = None
    email: str | None = None
    role: str | None = None

    @classmethod
    def from_summary(cls, actor_id: str, summary: ActorSummary | None) -> ActorOut:
        if summary is None:
            return cls(id=actor_id)
        return cls(id=actor_id, name=summary.name, email=summary.email, role=summary.role)


class AuditLogOut(ApiModel):
    id: str
    user_id: str
    user: ActorOut | None = None
    action: str
    resource: str
    resource_id: str
    old_values: dict[str, Any] | None = None
    new_values: dict[str, Any] | None = None
    description: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    created_at: datetime

    @field_validator("created_at")
    @classmethod
    def created_at_is_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @classmethod
    def from_row(cls, row: AuditLog, actor: ActorSummary | None = None) -> AuditLogOut:
        return cls(
            id=row.id,
            user_id=row.actor_id,
            user=ActorOut.from_summary(row.actor_id, actor) if actor else None,
            action=row.action,
            resource=row.resource_type,
            resource_id=row.resource_id,
            old_values=row.prior_values,
            new_values=row.new_values,
            description=row.description,
            ip_address=row.source_ip,
            user_agent=row.user_agent,
            created_at=row.occurred_at,
        )


class GDPRLogOut(ApiModel):
    id: str
    user_id: str | None = None
    user: ActorOut | None = None
    action: str
    data_type: str
    data_types: list[str]
    record_id: str | None = None
    purpose: str
    legal_basis: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    automated: bool = False
    created_at: datetime

    @field_validator("created_at")
    @classmethod
    def created_at_is_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @classmethod
    def from_row(cls, row: GDPRAuditLog, actor: ActorSummary | None = None) -> GDPRLogOut:
        return cls(
            id=row.id,
            user_id=row.actor_id,
            user=ActorOut.from_summary(row.actor_id, actor) if row.actor_id and actor else None,
            action=row.action,
            data_type=row.data_type,
            data_types=row.data_types,
            record_id=row.record_id,
            purpose=row.purpose,
            legal_basis=row.legal_basis,
            ip_address=row.source_ip,
            user_agent=row.user_agent,
            automated=bool(row.automated),
            created_at=row.occurred_at,
        )


class LogPage(ApiModel, Generic[L]):
    logs: list[L]
    pagination: Pagination


class AuditFilterOptions(ApiModel):
    actions: list[str]
    resources: list[str]
    users: list[ActorOut]


class GDPRFilterOptions(ApiModel):
    actions: list[str]
    data_types: list[str]
    users: list[ActorOut]
