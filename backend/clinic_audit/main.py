"""
Clinic Audit: FastAPI application factory.

Application lifecycle:
  startup  → configure logging, run DB migrations
  shutdown → drain pending audit writes, dispose DB engine pool
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import structlog
from fastapi import FastAPI, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.exceptions import HTTPException as StarletteHTTPException

from clinic_audit.api.router import router as api_router
from clinic_audit.config.logging_config import configure_logging
from clinic_audit.config.settings import Environment, Settings, get_settings
from clinic_audit.core.background import PostResponseTasks
from clinic_audit.core.errors import AppError
from clinic_audit.core.middleware import (
    AuditMiddleware,
    CorrelationIDMiddleware,
    IdentityMiddleware,
    SecurityHeadersMiddleware,
    app_error_handler,
    http_exception_handler,
    rate_limit_handler,
    unhandled_exception_handler,
    validation_error_handler,
)
from clinic_audit.db.session import dispose_engine, get_session_factory
from clinic_audit.services.audit.directory import SqlDirectory
from clinic_audit.services.audit.recorder import AuditRecorder
from clinic_audit.services.audit.reports import ReportAggregator
from clinic_audit.services.audit.store import SqlAuditStore

_log = structlog.get_logger(__name__)

_BACKEND_DIR = Path(__file__).resolve().parents[1]
_DRAIN_TIMEOUT_SECONDS = 10.0


def _create_limiter(settings: Settings) -> Limiter:
    return Limiter(
        key_func=get_remote_address,
        default_limits=[settings.rate_limit_default],
    )


def _run_migrations(settings: Settings) -> None:
    from alembic import command
    from alembic.config import Config

    alembic_cfg = Config(str(_BACKEND_DIR / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(_BACKEND_DIR / "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", settings.database_url)
    command.upgrade(alembic_cfg, "head")


async def _startup(app: FastAPI) -> None:
    settings: Settings = app.state.settings
    configure_logging(
        log_level=settings.log_level.value,
        json_logs=settings.log_json,
        version=settings.app_version,
    )
    _log.info(
        "clinic_audit_starting",
        version=settings.app_version,
        environment=settings.environment.value,
        audit_enabled=settings.audit_enabled,
    )

    if settings.run_migrations_on_startup:
        # Alembic's env.py uses a sync engine; keep it off the event loop.
        await asyncio.to_thread(_run_migrations, settings)
        _log.info("migrations_applied")

    _log.info("clinic_audit_ready", host=settings.host, port=settings.port)


async def _shutdown(app: FastAPI) -> None:
    tasks: PostResponseTasks = app.state.post_response_tasks
    await tasks.drain(timeout=_DRAIN_TIMEOUT_SECONDS)
    if app.state.owns_engine:
        await dispose_engine()
    _log.info("clinic_audit_shutdown")


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    await _startup(app)
    try:
        yield
    finally:
        await _shutdown(app)


def create_app(
    settings: Settings | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> FastAPI:
    """
    Application factory. Returns a configured FastAPI instance.

    ``session_factory`` lets tests and embedding services supply their own
    database; by default the process-wide engine is used.
    """
    settings = settings or get_settings()
    public_docs = settings.environment != Environment.PRODUCTION

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description=(
            "Audit and GDPR compliance logging for the practice administration "
            "system: request capture, access reports and security events."
        ),
        docs_url="/docs" if public_docs else None,
        redoc_url="/redoc" if public_docs else None,
        openapi_url="/openapi.json" if public_docs else None,
        lifespan=_lifespan,
    )

    # ── Services ──────────────────────────────────────────────────────── #
    factory = session_factory or get_session_factory(settings)
    store = SqlAuditStore(factory)
    directory = SqlDirectory(factory)
    tasks = PostResponseTasks()
    recorder = AuditRecorder(store, settings, patients=directory)

    app.state.settings = settings
    app.state.owns_engine = session_factory is None
    app.state.audit_store = store
    app.state.directory = directory
    app.state.post_response_tasks = tasks
    app.state.audit_recorder = recorder
    app.state.report_aggregator = ReportAggregator(store, directory, settings)

    # ── Middleware (applied in reverse order) ─────────────────────────── #
    if settings.audit_enabled:
        app.add_middleware(AuditMiddleware, recorder=recorder, tasks=tasks, settings=settings)
    app.add_middleware(IdentityMiddleware, settings=settings)

    app.state.limiter = _create_limiter(settings)
    app.add_middleware(SlowAPIMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Correlation-ID"],
    )
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(CorrelationIDMiddleware)

    # ── Exception Handlers ────────────────────────────────────────────── #
    app.add_exception_handler(AppError, app_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, unhandled_exception_handler)

    # ── Routes ────────────────────────────────────────────────────────── #
    app.include_router(api_router)

    # ── Health ────────────────────────────────────────────────────────── #
    @app.get("/health", tags=["health"], summary="Health check")
    async def health() -> dict[str, object]:
        """Database reachability and the number of audit writes still in flight."""
        db_ok = True
        try:
            await store.ping()
        except Exception as exc:
            _log.warning("health_database_unavailable", error=str(exc))
            db_ok = False

        return {
            "status": "healthy" if db_ok else "degraded",
            "database": "ok" if db_ok else "unavailable",
            "auditEnabled": settings.audit_enabled,
            "pendingAuditWrites": len(tasks),
            "version": settings.app_version,
        }

    # ── Metrics (Prometheus) ──────────────────────────────────────────── #
    @app.get("/metrics", tags=["observability"], summary="Prometheus metrics")
    async def metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


# Entry point for uvicorn
app = create_app()
