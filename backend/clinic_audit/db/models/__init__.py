"""Database model registry. Import all models here so Alembic can discover them."""

from clinic_audit.db.models.audit import (
    LIST_VIEW,
    UNKNOWN_RESOURCE,
    AuditAction,
    AuditLog,
    ComplianceAction,
    GDPRAuditLog,
)
from clinic_audit.db.models.patient import Patient, PatientHistory
from clinic_audit.db.models.user import RoleEnum, User

__all__ = [
    "LIST_VIEW",
    "UNKNOWN_RESOURCE",
    "AuditAction",
    "AuditLog",
    "ComplianceAction",
    "GDPRAuditLog",
    "Patient",
    "PatientHistory",
    "RoleEnum",
    "User",
]
