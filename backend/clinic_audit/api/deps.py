"""
FastAPI dependency providers.

All authentication and authorization logic lives here, not in routes.
Role checks run before the route body, so a rejected caller never
triggers a query.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Annotated

from fastapi import Depends, Request

from clinic_audit.config.settings import Settings
from clinic_audit.core.errors import AuthError, ErrorCode, ForbiddenError
from clinic_audit.core.middleware import request_identity
from clinic_audit.core.security import Identity
from clinic_audit.db.models.user import RoleEnum
from clinic_audit.services.audit.reports import ReportAggregator
from clinic_audit.services.audit.store import AuditStore


async def get_identity(request: Request) -> Identity:
    """Return the caller's identity or raise 401."""
    identity = request_identity(request)
    if identity is None:
        raise AuthError(ErrorCode.AUTH_REQUIRED, "Authentication required")
    return identity


CurrentIdentity = Annotated[Identity, Depends(get_identity)]


def require_roles(*roles: RoleEnum) -> Callable[[Identity], Awaitable[Identity]]:
    """Return a dependency callable that enforces role membership."""
    allowed = [r.value for r in roles]

    async def _check(identity: CurrentIdentity) -> Identity:
        if identity.role not in allowed:
            raise ForbiddenError(
                f"This action requires one of: {allowed}. Your role is: {identity.role}",
                role=identity.role,
            )
        return identity

    return _check


AdminOnly = Annotated[Identity, Depends(require_roles(RoleEnum.ADMIN))]
AdminOrModerator = Annotated[Identity, Depends(require_roles(RoleEnum.ADMIN, RoleEnum.MODERATOR))]


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> AuditStore:
    return request.app.state.audit_store


def get_aggregator(request: Request) -> ReportAggregator:
    return request.app.state.report_aggregator


AppSettings = Annotated[Settings, Depends(get_app_settings)]
Store = Annotated[AuditStore, Depends(get_store)]
Aggregator = Annotated[ReportAggregator, Depends(get_aggregator)]
