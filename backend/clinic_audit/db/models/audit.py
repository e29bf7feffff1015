"""
Append-only audit log models.

Two independent stores:

* ``audit_logs``: the general operational trail. Every row has an actor;
  requests without an authenticated actor are not recorded here.
* ``gdpr_audit_logs``: one row per request that read or changed
  patient-category data, with purpose and legal basis.

Rows are only ever inserted. Reports read them without locks.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from sqlalchemy import JSON, Boolean, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from clinic_audit.db.base import Base, OccurredAtMixin, UUIDPrimaryKeyMixin

LIST_VIEW = "list_view"
UNKNOWN_RESOURCE = "unknown"


class AuditAction(StrEnum):
    """Action taxonomy of the general audit log."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    VIEW_LIST = "VIEW_LIST"
    VIEW_DETAILED = "VIEW_DETAILED"
    EXPORT = "EXPORT"
    LOGIN = "LOGIN"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGOUT = "LOGOUT"
    TOKEN_REFRESH = "TOKEN_REFRESH"
    TOKEN_REFRESH_FAILED = "TOKEN_REFRESH_FAILED"
    UNKNOWN = "UNKNOWN"


class ComplianceAction(StrEnum):
    """Action taxonomy of the GDPR access log."""

    DATA_ACCESS = "DATA_ACCESS"
    DATA_MODIFICATION = "DATA_MODIFICATION"
    DATA_DELETION = "DATA_DELETION"
    DATA_EXPORT = "DATA_EXPORT"


class AuditLog(Base, UUIDPrimaryKeyMixin, OccurredAtMixin):
    """One classified request (or explicit change) by an identified actor."""

    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_logs_actor_occurred", "actor_id", "occurred_at"),
        Index("ix_audit_logs_resource", "resource_type", "resource_id"),
    )

    actor_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
    )
    action: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    resource_type: Mapped[str] = mapped_column(String(100), nullable=False)
    resource_id: Mapped[str] = mapped_column(String(100), nullable=False)
    prior_values: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    new_values: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    source_ip: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)

    def __repr__(self) -> str:
        return f"<AuditLog {self.action} {self.resource_type}/{self.resource_id}>"


class GDPRAuditLog(Base, UUIDPrimaryKeyMixin, OccurredAtMixin):
    """One access to patient-category data, with its legal justification."""

    __tablename__ = "gdpr_audit_logs"
    __table_args__ = (
        Index("ix_gdpr_audit_logs_actor_record", "actor_id", "record_id"),
    )

    actor_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=True,
    )
    action: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    data_type: Mapped[str] = mapped_column(String(500), nullable=False)
    record_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    purpose: Mapped[str] = mapped_column(Text, nullable=False)
    legal_basis: Mapped[str | None] = mapped_column(String(255), nullable=True)
    source_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)
    automated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    @property
    def data_types(self) -> list[str]:
        return [part.strip() for part in self.data_type.split(",") if part.strip()]

    def __repr__(self) -> str:
        return f"<GDPRAuditLog {self.action} {self.data_type} [{self.record_id}]>"
