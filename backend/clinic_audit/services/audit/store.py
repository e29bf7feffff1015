"""
Storage port for the two append-only audit stores.

The recorder only appends; the aggregator and the query API only read.
:class:`SqlAuditStore` opens one short-lived session per call so audit
writes never share a transaction with the business request that caused
them, and concurrent report queries do not contend on one session.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy import Select, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clinic_audit.db.models.audit import AuditLog, GDPRAuditLog


@dataclass(frozen=True, slots=True)
class LogFilter:
    """Filter shared by both stores. ``None`` means "do not filter"."""

    start: datetime | None = None
    end: datetime | None = None
    actor_id: str | None = None
    action: str | None = None
    resource_type: str | None = None
    resource_types: tuple[str, ...] | None = None
    resource_id: str | None = None
    source_ip: str | None = None
    data_type: str | None = None
    require_actor: bool = False
    require_record: bool = False


@dataclass(frozen=True, slots=True)
class Page:
    page: int
    limit: int

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit

    def pages_for(self, total: int) -> int:
        return math.ceil(total / self.limit) if total else 0


class AuditStore(Protocol):
    async def append_audit(self, entry: AuditLog) -> None: ...

    async def append_compliance(self, entry: GDPRAuditLog) -> None: ...

    async def list_audit(self, flt: LogFilter, page: Page) -> tuple[list[AuditLog], int]: ...

    async def list_compliance(
        self, flt: LogFilter, page: Page
    ) -> tuple[list[GDPRAuditLog], int]: ...

    async def audit_rows(self, flt: LogFilter) -> list[AuditLog]: ...

    async def compliance_rows(self, flt: LogFilter) -> list[GDPRAuditLog]: ...

    async def distinct_audit_values(self) -> dict[str, list[str]]: ...

    async def distinct_compliance_values(self) -> dict[str, list[str]]: ...

    async def ping(self) -> None: ...


def _filter_audit(query: Select[Any], flt: LogFilter) -> Select[Any]:
    if flt.start is not None:
        query = query.where(AuditLog.occurred_at >= flt.start)
    if flt.end is not None:
        query = query.where(AuditLog.occurred_at <= flt.end)
    if flt.actor_id:
        query = query.where(AuditLog.actor_id == flt.actor_id)
    if flt.action:
        query = query.where(AuditLog.action == flt.action)
    if flt.resource_type:
        query = query.where(AuditLog.resource_type == flt.resource_type)
    if flt.resource_types:
        query = query.where(AuditLog.resource_type.in_(flt.resource_types))
    if flt.resource_id:
        query = query.where(AuditLog.resource_id == flt.resource_id)
    if flt.source_ip:
        query = query.where(AuditLog.source_ip == flt.source_ip)
    return query


def _filter_compliance(query: Select[Any], flt: LogFilter) -> Select[Any]:
    if flt.start is not None:
        query = query.where(GDPRAuditLog.occurred_at >= flt.start)
    if flt.end is not None:
        query = query.where(GDPRAuditLog.occurred_at <= flt.end)
    if flt.actor_id:
        query = query.where(GDPRAuditLog.actor_id == flt.actor_id)
    if flt.action:
        query = query.where(GDPRAuditLog.action == flt.action)
    if flt.resource_id:
        query = query.where(GDPRAuditLog.record_id == flt.resource_id)
    if flt.source_ip:
        query = query.where(GDPRAuditLog.source_ip == flt.source_ip)
    if flt.data_type:
        query = query.where(GDPRAuditLog.data_type.contains(flt.data_type, autoescape=True))
    if flt.require_actor:
        query = query.where(GDPRAuditLog.actor_id.is_not(None))
    if flt.require_record:
        query = query.where(GDPRAuditLog.record_id.is_not(None))
    return query


class SqlAuditStore:
    """AuditStore on an async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._factory = session_factory

    # ── Append ────────────────────────────────────────────────────────── #

    async def append_audit(self, entry: AuditLog) -> None:
        async with self._factory() as db:
            db.add(entry)
            await db.commit()

    async def append_compliance(self, entry: GDPRAuditLog) -> None:
        async with self._factory() as db:
            db.add(entry)
            await db.commit()

    # ── Paginated queries ─────────────────────────────────────────────── #

    async def list_audit(self, flt: LogFilter, page: Page) -> tuple[list[AuditLog], int]:
        query = _filter_audit(select(AuditLog), flt)
        return await self._paginate(query, AuditLog.occurred_at, page)

    async def list_compliance(self, flt: LogFilter, page: Page) -> tuple[list[GDPRAuditLog], int]:
        query = _filter_compliance(select(GDPRAuditLog), flt)
        return await self._paginate(query, GDPRAuditLog.occurred_at, page)

    async def _paginate(self, query: Select[Any], order_col: Any, page: Page) -> tuple[list[Any], int]:
        async with self._factory() as db:
            count = await db.execute(select(func.count()).select_from(query.subquery()))
            result = await db.execute(
                query.order_by(order_col.desc()).offset(page.offset).limit(page.limit)
            )
            return list(result.scalars().all()), count.scalar_one()

    # ── Report feeds ──────────────────────────────────────────────────── #

    async def audit_rows(self, flt: LogFilter) -> list[AuditLog]:
        async with self._factory() as db:
            result = await db.execute(
                _filter_audit(select(AuditLog), flt).order_by(AuditLog.occurred_at.asc())
            )
            return list(result.scalars().all())

    async def compliance_rows(self, flt: LogFilter) -> list[GDPRAuditLog]:
        async with self._factory() as db:
            result = await db.execute(
                _filter_compliance(select(GDPRAuditLog), flt).order_by(
                    GDPRAuditLog.occurred_at.asc()
                )
            )
            return list(result.scalars().all())

    # ── Filter options ────────────────────────────────────────────────── #

    async def distinct_audit_values(self) -> dict[str, list[str]]:
        return {
            "actions": await self._distinct(AuditLog.action),
            "resources": await self._distinct(AuditLog.resource_type),
            "actors": await self._distinct(AuditLog.actor_id),
        }

    async def distinct_compliance_values(self) -> dict[str, list[str]]:
        return {
            "actions": await self._distinct(GDPRAuditLog.action),
            "dataTypes": await self._distinct(GDPRAuditLog.data_type),
            "actors": await self._distinct(GDPRAuditLog.actor_id),
        }

    async def _distinct(self, column: Any) -> list[str]:
        async with self._factory() as db:
            result = await db.execute(
                select(column).where(column.is_not(None)).distinct().order_by(column)
            )
            return [value for value in result.scalars().all() if value]

    async def ping(self) -> None:
        async with self._factory() as db:
            await db.execute(select(1))


def split_data_types(values: Sequence[str]) -> list[str]:
    """Distinct categories from comma-joined ``data_type`` values."""
    seen: dict[str, None] = {}
    for value in values:
        for part in value.split(","):
            part = part.strip()
            if part:
                seen.setdefault(part, None)
    return sorted(seen)
