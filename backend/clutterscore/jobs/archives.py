"""Scheduled archive lifecycle passes.

Each pass takes a session plus whatever services it needs and returns a counts
dict for the runner's `job_complete` log line. Per-row failures are logged and
counted; they never stop a pass.
"""

from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Mapping

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from clutterscore.domain.activity.service import record_activity
from clutterscore.domain.archives.db_models import ArchivedFile, ArchiveStatus
from clutterscore.domain.archives.health import run_health_check
from clutterscore.domain.archives.service import ArchiveService
from clutterscore.domain.tenants.db_models import Tenant
from clutterscore.infra.notifier import Notifier
from clutterscore.infra.storage import StorageBackend
from clutterscore.settings import settings
from clutterscore.shared.clock import ensure_aware, ensure_aware_or_none, utcnow

logger = logging.getLogger(__name__)

EXPIRY_WARNING = "expiry"
FINAL_WARNING = "final"


async def run_archive_expiry_sweep(
    session: AsyncSession,
    storage: StorageBackend,
    *,
    backends: Mapping[str, StorageBackend] | None = None,
    now: datetime | None = None,
) -> dict[str, int]:
    service = ArchiveService(session, storage, backends=backends)
    result = await service.cleanup_expired_archives(now=now)
    logger.info("archive_expiry_sweep", extra={"extra": result})
    return result


def _warning_column(kind: str) -> str:
    return "final_warning_sent_at" if kind == FINAL_WARNING else "expiry_warning_sent_at"


async def _expiring_archives(
    session: AsyncSession, *, now: datetime, within: timedelta, kind: str
) -> list[ArchivedFile]:
    column = getattr(ArchivedFile, _warning_column(kind))
    rows = (
        await session.scalars(
            select(ArchivedFile).where(
                ArchivedFile.status == ArchiveStatus.ARCHIVED,
                ArchivedFile.expires_at.is_not(None),
                column.is_(None),
            )
        )
    ).all()
    horizon = now + within
    return [row for row in rows if now < ensure_aware(row.expires_at) <= horizon]


def _days_left(archive: ArchivedFile, now: datetime) -> int:
    remaining = ensure_aware(archive.expires_at) - now
    return max(0, remaining.days + (1 if remaining.seconds else 0))


async def _send_warnings(
    session: AsyncSession,
    notifier: Notifier,
    archives: list[ArchivedFile],
    *,
    kind: str,
    now: datetime,
) -> dict[str, int]:
    by_tenant: dict[uuid.UUID, list[ArchivedFile]] = defaultdict(list)
    for archive in archives:
        by_tenant[archive.tenant_id].append(archive)

    warned = 0
    failed = 0
    for tenant_id, tenant_archives in by_tenant.items():
        count = len(tenant_archives)
        if kind == FINAL_WARNING:
            title = "Archived files will be deleted tomorrow"
            message = f"{count} archived file(s) will be permanently deleted within 24 hours."
        else:
            soonest = min(_days_left(archive, now) for archive in tenant_archives)
            title = "Archived files expiring soon"
            message = f"{count} archived file(s) will be permanently deleted in {soonest} day(s)."
        try:
            await notifier.notify(
                tenant_id,
                title,
                message,
                {
                    "kind": kind,
                    "archive_ids": [str(archive.archive_id) for archive in tenant_archives],
                    "total_size_mb": round(sum(archive.size_mb for archive in tenant_archives), 2),
                },
            )
        except Exception as exc:  # noqa: BLE001
            failed += count
            logger.warning(
                "archive_warning_notify_failed",
                extra={"extra": {"tenant_id": str(tenant_id), "kind": kind, "error": type(exc).__name__}},
            )
            continue
        for archive in tenant_archives:
            setattr(archive, _warning_column(kind), now)
        await record_activity(
            session,
            tenant_id,
            "archive.expiring.warned",
            metadata={"kind": kind, "count": count},
        )
        await session.commit()
        warned += count
    return {"warned": warned, "tenants": len(by_tenant), "failed": failed}


async def run_archive_expiry_warnings(
    session: AsyncSession, notifier: Notifier, *, now: datetime | None = None
) -> dict[str, int]:
    now = now or utcnow()
    archives = await _expiring_archives(
        session, now=now, within=timedelta(days=settings.archive_expiry_warning_days), kind=EXPIRY_WARNING
    )
    return await _send_warnings(session, notifier, archives, kind=EXPIRY_WARNING, now=now)


async def run_archive_final_warnings(
    session: AsyncSession, notifier: Notifier, *, now: datetime | None = None
) -> dict[str, int]:
    now = now or utcnow()
    archives = await _expiring_archives(session, now=now, within=timedelta(hours=24), kind=FINAL_WARNING)
    return await _send_warnings(session, notifier, archives, kind=FINAL_WARNING, now=now)


async def warn_archive_expiring(
    session: AsyncSession, notifier: Notifier, archive_id: uuid.UUID, *, now: datetime | None = None
) -> dict[str, int]:
    """Handle one delayed expiry reminder; a no-op if the file was restored, deleted or already warned."""

    now = now or utcnow()
    archive = await session.get(ArchivedFile, archive_id)
    if (
        archive is None
        or archive.status != ArchiveStatus.ARCHIVED
        or archive.expiry_warning_sent_at is not None
        or ensure_aware_or_none(archive.expires_at) is None
        or ensure_aware(archive.expires_at) <= now
    ):
        return {"warned": 0, "tenants": 0, "failed": 0}
    return await _send_warnings(session, notifier, [archive], kind=EXPIRY_WARNING, now=now)


async def run_archive_health(
    session: AsyncSession,
    backends: Mapping[str, StorageBackend],
    notifier: Notifier,
    *,
    now: datetime | None = None,
) -> dict[str, int]:
    report = await run_health_check(session, backends, now=now)
    if not report.healthy:
        await notifier.notify(
            None,
            "Archive system health issue detected",
            f"Health check failed: {len(report.orphaned)} orphaned, {len(report.stuck_staged)} stuck.",
            report.to_dict(),
        )
    return {
        "checked": report.checked,
        "orphaned": len(report.orphaned),
        "stuck_staged": len(report.stuck_staged),
        "high_usage_tenants": len(report.high_usage_tenants),
        "healthy": int(report.healthy),
    }


async def run_weekly_archive_report(
    session: AsyncSession, notifier: Notifier, *, now: datetime | None = None
) -> dict[str, int]:
    now = now or utcnow()
    week_ago = now - timedelta(days=7)
    rows = (await session.scalars(select(ArchivedFile))).all()

    weekly = {"archived": 0, "restored": 0, "deleted": 0}
    per_tenant: dict[uuid.UUID, dict[str, float]] = defaultdict(lambda: {"file_count": 0, "size_mb": 0.0})
    for row in rows:
        archived_at = ensure_aware_or_none(row.archived_at)
        restored_at = ensure_aware_or_none(row.restored_at)
        deleted_at = ensure_aware_or_none(row.deleted_at)
        if archived_at and archived_at >= week_ago and row.status in {ArchiveStatus.ARCHIVED, ArchiveStatus.RESTORED}:
            weekly["archived"] += 1
        if row.status == ArchiveStatus.RESTORED and restored_at and restored_at >= week_ago:
            weekly["restored"] += 1
        if row.status == ArchiveStatus.DELETED and deleted_at and deleted_at >= week_ago:
            weekly["deleted"] += 1
        if row.status == ArchiveStatus.ARCHIVED:
            bucket = per_tenant[row.tenant_id]
            bucket["file_count"] += 1
            bucket["size_mb"] = round(bucket["size_mb"] + row.size_mb, 2)
    weekly["net_change"] = weekly["archived"] - weekly["deleted"]

    names = {}
    if per_tenant:
        names = dict(
            (await session.execute(select(Tenant.tenant_id, Tenant.name).where(Tenant.tenant_id.in_(list(per_tenant))))).all()
        )
    notified = 0
    for tenant_id, stats in sorted(per_tenant.items(), key=lambda item: item[1]["size_mb"], reverse=True):
        size_gb = round(stats["size_mb"] / 1024, 2)
        try:
            await notifier.notify(
                tenant_id,
                "Weekly archive report",
                f"You have {int(stats['file_count'])} archived files totaling {size_gb} GB.",
                {**weekly, "tenant_name": names.get(tenant_id, "Unknown"), **stats},
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "weekly_archive_report_notify_failed",
                extra={"extra": {"tenant_id": str(tenant_id), "error": type(exc).__name__}},
            )
            continue
        notified += 1
    return {**weekly, "tenants": len(per_tenant), "notified": notified}


async def run_archive_failure_monitor(session: AsyncSession, notifier: Notifier) -> dict[str, int]:
    """Surface archives whose last upload or restore attempt failed, grouped per tenant."""

    rows = (
        await session.scalars(
            select(ArchivedFile).where(
                ArchivedFile.last_error.is_not(None),
                ArchivedFile.status.in_([ArchiveStatus.STAGED, ArchiveStatus.ARCHIVED]),
            )
        )
    ).all()
    if not rows:
        return {"failures": 0, "tenants": 0}

    by_tenant: dict[uuid.UUID, list[ArchivedFile]] = defaultdict(list)
    for row in rows:
        by_tenant[row.tenant_id].append(row)
    for tenant_id, failures in by_tenant.items():
        await notifier.notify(
            tenant_id,
            "Archive operations failed",
            f"{len(failures)} archive operation(s) failed and need attention.",
            {
                "failures": [
                    {"archive_id": str(row.archive_id), "file_name": row.file_name, "error": row.last_error}
                    for row in failures[:20]
                ]
            },
        )
    logger.warning("archive_failures_detected", extra={"extra": {"failures": len(rows), "tenants": len(by_tenant)}})
    return {"failures": len(rows), "tenants": len(by_tenant)}
