"""
Compliance query API.

Read-only endpoints over the two audit stores and the aggregate reports.
Every route is role-gated through :mod:`clinic_audit.api.deps`; the checks
run before the handler body, so unauthorised callers never reach a query.
"""

from __future__ import annotations

from collections.abc import Awaitable
from datetime import datetime
from typing import Literal, TypeVar

import structlog
from fastapi import APIRouter, Query

from clinic_audit.api.deps import (
    AdminOnly,
    AdminOrModerator,
    Aggregator,
    AppSettings,
    CurrentIdentity,
    Store,
)
from clinic_audit.config.settings import Settings
from clinic_audit.core.errors import AppError, ErrorCode, ReportError, ValidationError
from clinic_audit.db.base import ensure_utc
from clinic_audit.schemas.audit import (
    AuditFilterOptions,
    AuditLogOut,
    GDPRFilterOptions,
    GDPRLogOut,
    LogPage,
)
from clinic_audit.schemas.common import ApiResponse, Pagination
from clinic_audit.schemas.reports import (
    ComplianceReport,
    Dashboard,
    PatientAccessReport,
    SecurityEvent,
    SystemActivitySummary,
)
from clinic_audit.services.audit.store import LogFilter, Page

_log = structlog.get_logger(__name__)

_R = TypeVar("_R")

router = APIRouter(prefix="/audit", tags=["audit"])


def _page(page: int, limit: int | None, settings: Settings) -> Page:
    size = min(limit or settings.audit_default_page_size, settings.audit_max_page_size)
    return Page(page=page, limit=size)


def _date_range(start: datetime | None, end: datetime | None) -> tuple[datetime | None, datetime | None]:
    start = ensure_utc(start) if start else None
    end = ensure_utc(end) if end else None
    if start and end and start > end:
        raise ValidationError(
            "startDate must not be after endDate",
            code=ErrorCode.AUDIT_INVALID_DATE_RANGE,
        )
    return start, end


def _pagination(page: Page, total: int) -> Pagination:
    return Pagination(page=page.page, limit=page.limit, total=total, pages=page.pages_for(total))


async def _report(name: str, pending: Awaitable[_R]) -> _R:
    """Await a single report, turning unexpected failures into a ReportError."""
    try:
        return await pending
    except AppError:
        raise
    except Exception as exc:
        _log.error("audit_report_failed", report=name, error=str(exc), exc_info=True)
        raise ReportError(name) from exc


# ── Log queries ───────────────────────────────────────────────────────── #


@router.get(
    "/logs",
    response_model=ApiResponse[LogPage[AuditLogOut]],
    summary="List general audit logs",
)
async def list_audit_logs(
    _: AdminOnly,
    store: Store,
    aggregator: Aggregator,
    settings: AppSettings,
    start_date: datetime | None = Query(default=None, alias="startDate"),
    end_date: datetime | None = Query(default=None, alias="endDate"),
    user_id: str | None = Query(default=None, alias="userId"),
    action: str | None = Query(default=None),
    resource: str | None = Query(default=None),
    resource_id: str | None = Query(default=None, alias="resourceId"),
    ip_address: str | None = Query(default=None, alias="ipAddress"),
    page: int = Query(default=1, ge=1),
    limit: int | None = Query(default=None, ge=1),
) -> ApiResponse[LogPage[AuditLogOut]]:
    """Paginated general audit log, newest first. ``limit`` is capped server-side."""
    start, end = _date_range(start_date, end_date)
    paging = _page(page, limit, settings)
    rows, total = await store.list_audit(
        LogFilter(
            start=start,
            end=end,
            actor_id=user_id,
            action=action,
            resource_type=resource,
            resource_id=resource_id,
            source_ip=ip_address,
        ),
        paging,
    )
    users = await aggregator.actors(row.actor_id for row in rows)
    return ApiResponse(
        data=LogPage(
            logs=[AuditLogOut.from_row(row, users.get(row.actor_id)) for row in rows],
            pagination=_pagination(paging, total),
        )
    )


@router.get(
    "/logs/gdpr",
    response_model=ApiResponse[LogPage[GDPRLogOut]],
    summary="List GDPR access logs",
)
async def list_gdpr_logs(
    _: AdminOrModerator,
    store: Store,
    aggregator: Aggregator,
    settings: AppSettings,
    start_date: datetime | None = Query(default=None, alias="startDate"),
    end_date: datetime | None = Query(default=None, alias="endDate"),
    user_id: str | None = Query(default=None, alias="userId"),
    action: str | None = Query(default=None),
    resource_id: str | None = Query(default=None, alias="resourceId"),
    data_type: str | None = Query(default=None, alias="dataType"),
    ip_address: str | None = Query(default=None, alias="ipAddress"),
    page: int = Query(default=1, ge=1),
    limit: int | None = Query(default=None, ge=1),
) -> ApiResponse[LogPage[GDPRLogOut]]:
    start, end = _date_range(start_date, end_date)
    paging = _page(page, limit, settings)
    rows, total = await store.list_compliance(
        LogFilter(
            start=start,
            end=end,
            actor_id=user_id,
            action=action,
            resource_id=resource_id,
            data_type=data_type,
            source_ip=ip_address,
        ),
        paging,
    )
    users = await aggregator.actors(row.actor_id for row in rows)
    return ApiResponse(
        data=LogPage(
            logs=[GDPRLogOut.from_row(row, users.get(row.actor_id or "")) for row in rows],
            pagination=_pagination(paging, total),
        )
    )


@router.get(
    "/logs/me",
    response_model=ApiResponse[LogPage[AuditLogOut]],
    summary="List the caller's own audit trail",
)
async def list_my_logs(
    identity: CurrentIdentity,
    store: Store,
    settings: AppSettings,
    start_date: datetime | None = Query(default=None, alias="startDate"),
    end_date: datetime | None = Query(default=None, alias="endDate"),
    action: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int | None = Query(default=None, ge=1),
) -> ApiResponse[LogPage[AuditLogOut]]:
    start, end = _date_range(start_date, end_date)
    paging = _page(page, limit, settings)
    rows, total = await store.list_audit(
        LogFilter(start=start, end=end, actor_id=identity.id, action=action),
        paging,
    )
    return ApiResponse(
        data=LogPage(
            logs=[AuditLogOut.from_row(row) for row in rows],
            pagination=_pagination(paging, total),
        )
    )


# ── Reports ───────────────────────────────────────────────────────────── #


@router.get(
    "/reports/patient-access",
    response_model=ApiResponse[list[PatientAccessReport]],
    summary="Who accessed which patient's data",
)
async def patient_access_report(
    _: AdminOrModerator,
    aggregator: Aggregator,
    patient_id: str | None = Query(default=None, alias="patientId"),
    days: int = Query(default=30, ge=1, le=3650),
    window: Literal["standard", "strict"] = Query(default="standard"),
) -> ApiResponse[list[PatientAccessReport]]:
    """Access counts are reconstructed sessions, not raw log rows."""
    reports = await _report(
        "patient access report",
        aggregator.patient_access_report(patient_id=patient_id, days=days, strict=window == "strict"),
    )
    return ApiResponse(data=reports)


@router.get(
    "/reports/system-activity",
    response_model=ApiResponse[SystemActivitySummary],
    summary="System activity summary",
)
async def system_activity_report(
    _: AdminOnly,
    aggregator: Aggregator,
    days: int = Query(default=7, ge=1, le=3650),
) -> ApiResponse[SystemActivitySummary]:
    summary = await _report("system activity summary", aggregator.system_activity_summary(days=days))
    return ApiResponse(data=summary)


@router.get(
    "/reports/compliance",
    response_model=ApiResponse[ComplianceReport],
    summary="Compliance report for a fixed window",
)
async def compliance_report(
    _: AdminOnly,
    aggregator: Aggregator,
    start_date: datetime = Query(alias="startDate"),
    end_date: datetime = Query(alias="endDate"),
) -> ApiResponse[ComplianceReport]:
    report = await _report("compliance report", aggregator.compliance_report(start_date, end_date))
    return ApiResponse(data=report)


@router.get(
    "/security-events",
    response_model=ApiResponse[list[SecurityEvent]],
    summary="Detected security events",
)
async def security_events(
    _: AdminOnly,
    aggregator: Aggregator,
    hours: int = Query(default=24, ge=1, le=24 * 365),
) -> ApiResponse[list[SecurityEvent]]:
    events = await _report("security events", aggregator.security_events(hours=hours))
    return ApiResponse(data=events)


@router.get(
    "/dashboard",
    response_model=ApiResponse[Dashboard],
    summary="Combined audit dashboard",
)
async def dashboard(
    _: AdminOnly,
    aggregator: Aggregator,
    days: int = Query(default=7, ge=1, le=365),
) -> ApiResponse[Dashboard]:
    return ApiResponse(data=await aggregator.dashboard(days=days))


# ── Filter options ────────────────────────────────────────────────────── #


@router.get(
    "/filter-options/audit",
    response_model=ApiResponse[AuditFilterOptions],
    summary="Distinct values for general log filters",
)
async def audit_filter_options(_: AdminOnly, aggregator: Aggregator) -> ApiResponse[AuditFilterOptions]:
    options = await _report("audit filter options", aggregator.audit_filter_options())
    return ApiResponse(data=options)


@router.get(
    "/filter-options/gdpr",
    response_model=ApiResponse[GDPRFilterOptions],
    summary="Distinct values for GDPR log filters",
)
async def gdpr_filter_options(_: AdminOnly, aggregator: Aggregator) -> ApiResponse[GDPRFilterOptions]:
    options = await _report("GDPR filter options", aggregator.gdpr_filter_options())
    return ApiResponse(data=options)
