"""
Lookups into collaborator-owned data: patients and staff accounts.

Used only for enrichment. Callers treat a missing row or a failing
lookup as "no enrichment", never as a reason to drop an audit record.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clinic_audit.db.models.patient import Patient, PatientHistory
from clinic_audit.db.models.user import User


@dataclass(frozen=True, slots=True)
class PatientSummary:
    id: str
    name: str
    has_social_insurance_number: bool = False
    has_date_of_birth: bool = False
    has_email: bool = False
    has_phone: bool = False

    @property
    def sensitive_data_types(self) -> tuple[str, ...]:
        """Categories of regulated data the patient record holds."""
        flags = (
            ("social_insurance_number", self.has_social_insurance_number),
            ("date_of_birth", self.has_date_of_birth),
            ("email_address", self.has_email),
            ("phone_number", self.has_phone),
        )
        return tuple(label for label, present in flags if present)


@dataclass(frozen=True, slots=True)
class ActorSummary:
    id: str
    name: str
    email: str | None
    role: str


class PatientDirectory(Protocol):
    async def get_patient(self, patient_id: str) -> PatientSummary | None: ...

    async def get_patients(self, patient_ids: Iterable[str]) -> dict[str, PatientSummary]: ...

    async def get_history_patient(self, history_id: str) -> str | None: ...


class UserDirectory(Protocol):
    async def get_users(self, user_ids: Iterable[str]) -> dict[str, ActorSummary]: ...


class Directory(PatientDirectory, UserDirectory, Protocol):
    """Both lookups, as the report aggregator uses them."""


def _patient_summary(patient: Patient) -> PatientSummary:
    return PatientSummary(
        id=patient.id,
        name=f"{patient.first_name} {patient.last_name}".strip(),
        has_social_insurance_number=bool(patient.social_insurance_number),
        has_date_of_birth=patient.date_of_birth is not None,
        has_email=bool(patient.email),
        has_phone=bool(patient.phone),
    )


class SqlDirectory:
    """Patient and user lookups on the shared practice database."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._factory = session_factory

    async def get_patient(self, patient_id: str) -> PatientSummary | None:
        async with self._factory() as db:
            patient = await db.get(Patient, patient_id)
            return _patient_summary(patient) if patient is not None else None

    async def get_patients(self, patient_ids: Iterable[str]) -> dict[str, PatientSummary]:
        ids = sorted(set(patient_ids))
        if not ids:
            return {}
        async with self._factory() as db:
            result = await db.execute(select(Patient).where(Patient.id.in_(ids)))
            return {p.id: _patient_summary(p) for p in result.scalars().all()}

    async def get_history_patient(self, history_id: str) -> str | None:
        """Owning patient of a medical-history entry."""
        async with self._factory() as db:
            result = await db.execute(
                select(PatientHistory.patient_id).where(PatientHistory.id == history_id)
            )
            return result.scalar_one_or_none()

    async def get_users(self, user_ids: Iterable[str]) -> dict[str, ActorSummary]:
        ids = sorted(set(user_ids))
        if not ids:
            return {}
        async with self._factory() as db:
            result = await db.execute(select(User).where(User.id.in_(ids)))
            return {
                u.id: ActorSummary(id=u.id, name=u.full_name, email=u.email, role=u.role)
                for u in result.scalars().all()
            }
