"""
Application configuration via Pydantic Settings.

All values are sourced from environment variables or an .env file.
No defaults expose insecure behaviour in production.
"""

from __future__ import annotations

from enum import StrEnum
from functools import lru_cache
from typing import Annotated

from pydantic import BeforeValidator, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(StrEnum):
    """Deployment environment identifiers."""

    DEVELOPMENT = "development"
    TESTING = "testing"
    PRODUCTION = "production"


class LogLevel(StrEnum):
    """Structured log level options."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


def _parse_csv_list(value: str | list[str]) -> list[str]:
    """Accept comma-separated string or list."""
    if isinstance(value, list):
        return value
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """
    Centralised, type-validated application configuration.

    Reads from environment variables with an optional .env file.
    All secrets are Pydantic SecretStr to prevent accidental logging.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="forbid",
    )

    # ── Application ────────────────────────────────────────────────────── #
    app_name: str = Field(default="Clinic Audit", description="Human-readable application name")
    app_version: str = Field(default="1.0.0", description="Semantic version string")
    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Deployment environment (development|testing|production)",
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode. Must be False in production.",
    )

    # ── Server ─────────────────────────────────────────────────────────── #
    host: str = Field(default="127.0.0.1", description="Bind host. Default local-only.")
    port: int = Field(default=8000, ge=1024, le=65535, description="Bind port")
    reload: bool = Field(default=False, description="Auto-reload on code change (dev only)")

    # ── CORS ───────────────────────────────────────────────────────────── #
    cors_origins: Annotated[list[str], BeforeValidator(_parse_csv_list)] = Field(
        default=["http://localhost:5173"],
        description="Comma-separated list of allowed CORS origins",
    )

    # ── Database ───────────────────────────────────────────────────────── #
    database_url: str = Field(
        default="sqlite+aiosqlite:///./clinic_audit.db",
        description=(
            "Async SQLAlchemy connection string. "
            "Use sqlite+aiosqlite:// for local or postgresql+asyncpg:// for production."
        ),
    )
    db_pool_size: int = Field(default=5, ge=1, le=50, description="Connection pool size")
    db_max_overflow: int = Field(default=10, ge=0, le=100, description="Pool max overflow")
    db_echo: bool = Field(default=False, description="Log all SQL statements (debug only)")
    run_migrations_on_startup: bool = Field(
        default=True,
        description="Apply Alembic migrations when the application starts",
    )

    # ── Identity / JWT ─────────────────────────────────────────────────── #
    jwt_secret_key: SecretStr = Field(
        ...,
        description="HS256 signing secret shared with the auth service. Minimum 32 characters.",
    )
    jwt_algorithm: str = Field(default="HS256", description="JWT signing algorithm")
    jwt_access_token_expire_minutes: int = Field(
        default=60,
        ge=5,
        le=1440,
        description="Access token TTL in minutes",
    )

    # ── Rate Limiting ──────────────────────────────────────────────────── #
    rate_limit_default: str = Field(
        default="100/minute",
        description="Default rate limit string (slowapi format)",
    )

    # ── Logging ────────────────────────────────────────────────────────── #
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Minimum log level")
    log_json: bool = Field(default=True, description="Emit logs as JSON (False for dev console)")

    # ── Audit capture ──────────────────────────────────────────────────── #
    audit_enabled: bool = Field(default=True, description="Install the request audit layer")
    audit_api_prefix: str = Field(
        default="/api",
        description="Path prefix discarded before resource classification",
    )
    audit_exempt_paths: Annotated[list[str], BeforeValidator(_parse_csv_list)] = Field(
        default=[
            "/health",
            "/static",
            "/metrics",
            "/docs",
            "/redoc",
            "/openapi.json",
            "/favicon.ico",
        ],
        description="Path prefixes that are never audited",
    )
    audit_legal_basis: str = Field(
        default="Legitimate interest - Healthcare service provision",
        description="Legal basis recorded on intercepted patient-data access",
    )
    audit_write_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        le=60,
        description="Timeout for a single audit store write",
    )

    # ── Audit reporting ────────────────────────────────────────────────── #
    audit_session_window_seconds: int = Field(
        default=300,
        ge=1,
        le=3600,
        description="Inactivity window joining raw records into one access session",
    )
    audit_strict_session_window_seconds: int = Field(
        default=30,
        ge=1,
        le=3600,
        description="Inactivity window for the strict session grouping",
    )
    audit_default_page_size: int = Field(default=50, ge=1, le=500)
    audit_max_page_size: int = Field(
        default=100,
        ge=1,
        le=500,
        description="Server-side cap for the page size of log queries",
    )
    security_failed_login_threshold: int = Field(
        default=5,
        ge=1,
        description="Failed logins from one IP that raise a MEDIUM security event",
    )
    security_failed_login_high_threshold: int = Field(
        default=10,
        ge=1,
        description="Failed logins from one IP that raise a HIGH security event",
    )

    # ── Validators ─────────────────────────────────────────────────────── #

    @field_validator("jwt_secret_key")
    @classmethod
    def jwt_secret_must_be_strong(cls, v: SecretStr) -> SecretStr:
        if len(v.get_secret_value()) < 32:
            raise ValueError("jwt_secret_key must be at least 32 characters")
        return v

    @field_validator("audit_api_prefix")
    @classmethod
    def normalise_api_prefix(cls, v: str) -> str:
        v = "/" + v.strip("/")
        return "" if v == "/" else v

    @model_validator(mode="after")
    def production_safety_checks(self) -> Settings:
        if self.environment == Environment.PRODUCTION:
            if self.debug:
                raise ValueError("debug must be False in production")
            if self.reload:
                raise ValueError("reload must be False in production")
            if self.db_echo:
                raise ValueError("db_echo must be False in production")
        return self

    @model_validator(mode="after")
    def thresholds_are_ordered(self) -> Settings:
        if self.security_failed_login_high_threshold < self.security_failed_login_threshold:
            raise ValueError(
                "security_failed_login_high_threshold must not be below "
                "security_failed_login_threshold"
            )
        return self


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Return the cached Settings singleton.

    Request handlers read ``request.app.state.settings`` instead, so an
    application built with explicit settings never falls back to the
    environment.
    """
    return Settings()
