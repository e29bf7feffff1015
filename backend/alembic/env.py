"""Alembic environment configuration for the audit database."""

from __future__ import annotations

from alembic import context
from sqlalchemy import create_engine

# Import all models so their tables are visible to Alembic
import clinic_audit.db.models  # noqa: F401
from clinic_audit.config.settings import get_settings
from clinic_audit.db.base import Base

config = context.config
target_metadata = Base.metadata


def get_url() -> str:
    # -x db_url=... on the CLI, then the URL set by the app, then settings.
    url = context.get_x_argument(as_dictionary=True).get("db_url")
    if url:
        return url
    url = config.get_main_option("sqlalchemy.url")
    if url:
        return url
    return str(get_settings().database_url)


def get_sync_url() -> str:
    """Convert async driver URLs to sync equivalents for Alembic."""
    return get_url().replace("+aiosqlite", "").replace("+asyncpg", "")


def run_migrations_offline() -> None:
    context.configure(
        url=get_sync_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations using a synchronous engine."""
    engine = create_engine(get_sync_url())
    with engine.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
        )
        with context.begin_transaction():
            context.run_migrations()
    engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
