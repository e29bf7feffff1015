"""
Read-only mapping of the practice's staff accounts.

The table is owned by the user-management service. The audit engine reads
it for report display names and relies on it as the foreign-key target of
``audit_logs.actor_id``.
"""

from __future__ import annotations

from enum import StrEnum

from sqlalchemy import Boolean, String
from sqlalchemy.orm import Mapped, mapped_column

from clinic_audit.db.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class RoleEnum(StrEnum):
    """Application-level role definitions."""

    ADMIN = "admin"
    MODERATOR = "moderator"
    USER = "user"


class User(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """Staff account."""

    __tablename__ = "users"

    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    last_name: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    role: Mapped[str] = mapped_column(String(20), nullable=False, default=RoleEnum.USER.value)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip() or self.email

    def __repr__(self) -> str:
        return f"<User {self.email} [{self.role}]>"
