from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Mapping

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from clutterscore.domain.archives.db_models import ArchivedFile, ArchiveStatus
from clutterscore.infra.storage import StorageBackend
from clutterscore.settings import settings
from clutterscore.shared.clock import ensure_aware, utcnow

logger = logging.getLogger(__name__)


@dataclass
class HealthReport:
    checked: int = 0
    orphaned: list[str] = field(default_factory=list)
    stuck_staged: list[str] = field(default_factory=list)
    high_usage_tenants: dict[str, float] = field(default_factory=dict)

    @property
    def healthy(self) -> bool:
        return not (self.orphaned or self.stuck_staged or self.high_usage_tenants)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "healthy": self.healthy,
            "checked": self.checked,
            "orphaned": self.orphaned,
            "stuck_staged": self.stuck_staged,
            "high_usage_tenants": self.high_usage_tenants,
        }


async def find_orphaned_archives(
    session: AsyncSession, backends: Mapping[str, StorageBackend], *, limit: int
) -> tuple[int, list[str]]:
    """ARCHIVED rows whose blob is gone; checks the most recent `limit` rows."""

    rows = (
        await session.scalars(
            select(ArchivedFile)
            .where(ArchivedFile.status == ArchiveStatus.ARCHIVED)
            .order_by(ArchivedFile.created_at.desc())
            .limit(limit)
        )
    ).all()
    orphaned: list[str] = []
    for row in rows:
        backend = backends.get(row.storage_provider)
        if backend is None or not await backend.exists(key=row.storage_key):
            orphaned.append(str(row.archive_id))
    return len(rows), orphaned


async def find_stuck_staged(session: AsyncSession, now: datetime) -> list[str]:
    cutoff = now - timedelta(hours=settings.archive_staged_stuck_hours)
    rows = (
        await session.execute(
            select(ArchivedFile.archive_id, ArchivedFile.created_at).where(
                ArchivedFile.status == ArchiveStatus.STAGED
            )
        )
    ).all()
    return [str(archive_id) for archive_id, created_at in rows if ensure_aware(created_at) < cutoff]


async def find_high_usage_tenants(session: AsyncSession) -> dict[str, float]:
    threshold_bytes = settings.archive_high_usage_mb * 1024 * 1024
    rows = (
        await session.execute(
            select(ArchivedFile.tenant_id, func.sum(ArchivedFile.size_bytes))
            .where(ArchivedFile.status == ArchiveStatus.ARCHIVED)
            .group_by(ArchivedFile.tenant_id)
        )
    ).all()
    usage: dict[str, float] = {}
    for tenant_id, total in rows:
        if total and total > threshold_bytes:
            usage[str(tenant_id)] = round(total / (1024 * 1024), 2)
    return usage


async def run_health_check(
    session: AsyncSession,
    backends: Mapping[str, StorageBackend],
    *,
    now: datetime | None = None,
    sample_size: int | None = None,
) -> HealthReport:
    now = now or utcnow()
    checked, orphaned = await find_orphaned_archives(
        session, backends, limit=sample_size or settings.archive_health_sample_size
    )
    report = HealthReport(
        checked=checked,
        orphaned=orphaned,
        stuck_staged=await find_stuck_staged(session, now),
        high_usage_tenants=await find_high_usage_tenants(session),
    )
    if not report.healthy:
        logger.warning(
            "archive_health_issues",
            extra={
                "extra": {
                    "orphaned": len(report.orphaned),
                    "stuck_staged": len(report.stuck_staged),
                    "high_usage_tenants": len(report.high_usage_tenants),
                }
            },
        )
    return report
