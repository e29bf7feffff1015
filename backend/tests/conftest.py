"""
Shared pytest fixtures for Clinic Audit backend tests.

Provides:
  - async SQLite database in a throwaway file (per-test isolation)
  - seeded staff accounts and a patient
  - the FastAPI app wired to that database, and an httpx client for it
  - helpers to mint access tokens and drain post-response audit writes
"""
from __future__ import annotations

import os

TEST_JWT_SECRET = "test-secret-key-not-for-production-at-all"
os.environ.setdefault("JWT_SECRET_KEY", TEST_JWT_SECRET)

from collections.abc import AsyncGenerator  # noqa: E402
from datetime import UTC, datetime  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import select  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from clinic_audit.config.settings import Environment, Settings  # noqa: E402
from clinic_audit.core.security import create_access_token  # noqa: E402
from clinic_audit.db.base import Base  # noqa: E402
from clinic_audit.db.models import AuditLog, GDPRAuditLog, Patient, RoleEnum, User  # noqa: E402
from clinic_audit.db.session import make_session_factory  # noqa: E402
from clinic_audit.main import create_app  # noqa: E402
from clinic_audit.services.audit.directory import SqlDirectory  # noqa: E402
from clinic_audit.services.audit.store import SqlAuditStore  # noqa: E402

# ─── Settings override ────────────────────────────────────────────────────────

TEST_SETTINGS = Settings(
    environment=Environment.TESTING,
    database_url="sqlite+aiosqlite:///:memory:",
    jwt_secret_key=TEST_JWT_SECRET,
    debug=True,
    run_migrations_on_startup=False,
    cors_origins=["http://localhost:5173"],
    log_json=False,
    rate_limit_default="10000/minute",
)

NOW = datetime(2026, 3, 2, 14, 0, 0, tzinfo=UTC)

PATIENT_ID = "3f1c2b9e-8d4a-4c6f-9b2e-1a7d5e0c4f88"


# ─── Database ─────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """
    Async SQLite engine on a file under ``tmp_path``.

    A file rather than ``:memory:`` so that the per-call sessions of the
    audit store and the request path see the same database.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'audit.db'}",
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(db_engine)


@pytest.fixture
def store(session_factory) -> SqlAuditStore:
    return SqlAuditStore(session_factory)


@pytest.fixture
def directory(session_factory) -> SqlDirectory:
    return SqlDirectory(session_factory)


# ─── Seed data ────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def users(session_factory) -> dict[str, User]:
    """One account per role, keyed by role name."""
    seeded = {
        RoleEnum.ADMIN.value: User(
            email="admin@clinic.test", first_name="Ada", last_name="Admin", role=RoleEnum.ADMIN.value
        ),
        RoleEnum.MODERATOR.value: User(
            email="mod@clinic.test", first_name="Mo", last_name="Derator", role=RoleEnum.MODERATOR.value
        ),
        RoleEnum.USER.value: User(
            email="staff@clinic.test", first_name="Sam", last_name="Staff", role=RoleEnum.USER.value
        ),
    }
    async with session_factory() as db:
        db.add_all(seeded.values())
        await db.commit()
    return seeded


@pytest_asyncio.fixture
async def patient(session_factory) -> Patient:
    row = Patient(
        id=PATIENT_ID,
        first_name="Paula",
        last_name="Patient",
        email="paula@example.test",
        phone="+1 555 0100",
        social_insurance_number="123-456-789",
        date_of_birth=datetime(1980, 5, 17, tzinfo=UTC),
    )
    async with session_factory() as db:
        db.add(row)
        await db.commit()
    return row


# ─── App & HTTP client ────────────────────────────────────────────────────────

@pytest.fixture
def app(session_factory):
    """FastAPI app with audit capture enabled, on the test database."""
    return create_app(settings=TEST_SETTINGS, session_factory=session_factory)


@pytest.fixture
def quiet_app(session_factory):
    """Same app without audit capture, so queries only see seeded rows."""
    settings = TEST_SETTINGS.model_copy(update={"audit_enabled": False})
    return create_app(settings=settings, session_factory=session_factory)


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


@pytest_asyncio.fixture
async def api_client(quiet_app) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(transport=ASGITransport(app=quiet_app), base_url="http://test") as c:
        yield c


# ─── Helpers ──────────────────────────────────────────────────────────────────

def token_for(user: User) -> str:
    return create_access_token(user.id, user.role, email=user.email, settings=TEST_SETTINGS)


def auth_headers(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {token_for(user)}"}


async def drain(app) -> None:
    """Wait for every post-response audit write of ``app``."""
    await app.state.post_response_tasks.drain(timeout=5)


async def all_audit_rows(session_factory) -> list[AuditLog]:
    async with session_factory() as db:
        result = await db.execute(select(AuditLog).order_by(AuditLog.occurred_at))
        return list(result.scalars().all())


async def all_gdpr_rows(session_factory) -> list[GDPRAuditLog]:
    async with session_factory() as db:
        result = await db.execute(select(GDPRAuditLog).order_by(GDPRAuditLog.occurred_at))
        return list(result.scalars().all())
