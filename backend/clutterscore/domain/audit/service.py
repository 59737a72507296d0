from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from clutterscore.domain.activity.service import record_activity
from clutterscore.domain.audit import scoring, throttle
from clutterscore.domain.audit.db_models import AuditResult, FileRecord, ScoreTrend
from clutterscore.domain.connectors.registry import ConnectorRegistry
from clutterscore.domain.connectors.types import FileData, UserData
from clutterscore.domain.errors import NotFoundError
from clutterscore.domain.integrations.service import RefreshLocks, sync_all_integrations
from clutterscore.domain.playbooks.db_models import Playbook
from clutterscore.domain.playbooks.generator import generate_playbooks
from clutterscore.domain.playbooks.statuses import ImpactType
from clutterscore.domain.tenants.db_models import Tenant
from clutterscore.shared.clock import month_key, utcnow

logger = logging.getLogger(__name__)


@dataclass
class AuditRunOutcome:
    audit_result_id: uuid.UUID
    score: int
    estimated_savings: float
    playbooks_created: int
    platforms: list[str] = field(default_factory=list)
    platform_errors: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "success": True,
            "audit_result_id": str(self.audit_result_id),
            "score": self.score,
            "estimated_savings": self.estimated_savings,
            "playbooks_created": self.playbooks_created,
            "platforms": self.platforms,
            "platform_errors": self.platform_errors,
        }


def _file_record(file: FileData, tenant_id: uuid.UUID) -> FileRecord:
    return FileRecord(
        tenant_id=tenant_id,
        name=file.name or "Unknown",
        size_mb=file.size_mb or 0.0,
        file_type=file.type.value,
        source=file.source,
        external_id=file.external_id,
        mime_type=file.mime_type,
        file_hash=file.file_hash,
        url=file.url,
        path=file.path,
        owner_email=file.owner_email,
        is_public=file.is_public,
        shared_with=list(file.shared_with),
        is_duplicate=file.is_duplicate,
        duplicate_group=file.duplicate_group,
        last_accessed=file.last_accessed,
    )


async def _upsert_score_trend(
    session: AsyncSession, tenant_id: uuid.UUID, month: str, breakdown: scoring.ScoreBreakdown
) -> ScoreTrend:
    trend = await session.scalar(
        select(ScoreTrend).where(ScoreTrend.tenant_id == tenant_id, ScoreTrend.month == month)
    )
    if trend is None:
        trend = ScoreTrend(tenant_id=tenant_id, month=month)
        session.add(trend)
    trend.score = breakdown.score
    trend.active_risks = breakdown.risks.active
    trend.estimated_savings = breakdown.estimated_savings
    return trend


async def run_audit(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    registry: ConnectorRegistry,
    *,
    user_id: str | None = None,
    locks: RefreshLocks | None = None,
    now: datetime | None = None,
) -> AuditRunOutcome:
    """Sync every integration, score the merged records and persist the run in one commit."""

    now = now or utcnow()
    tenant = await session.get(Tenant, tenant_id)
    if tenant is None:
        raise NotFoundError(f"Tenant {tenant_id} not found", title="Tenant Not Found")
    throttle.check_audit_quota(tenant, now)

    synced = await sync_all_integrations(session, tenant_id, registry, locks=locks)

    files: list[FileData] = []
    users: list[UserData] = []
    storage_used_gb = 0.0
    for data in synced.data.values():
        files.extend(data.files)
        users.extend(data.users)
        storage_used_gb += data.storage_used_gb

    breakdown = scoring.score_audit(files, users, now)
    generated = generate_playbooks(synced.data, now)

    try:
        audit = AuditResult(
            tenant_id=tenant_id,
            score=breakdown.score,
            estimated_savings=breakdown.estimated_savings,
            storage_waste=breakdown.storage_waste,
            license_waste=breakdown.license_waste,
            wasted_storage_mb=breakdown.wasted_storage_mb,
            storage_used_gb=round(storage_used_gb, 2),
            duplicate_files=breakdown.duplicate_files,
            public_files=breakdown.public_files,
            inactive_users=breakdown.inactive_users,
            guest_users=breakdown.guest_users,
            active_risks=breakdown.risks.active,
            critical_risks=breakdown.risks.critical,
            moderate_risks=breakdown.risks.moderate,
            total_files=len(files),
            total_users=len(users),
            platforms=sorted(platform.value for platform in synced.data),
            platform_errors={platform.value: error for platform, error in synced.errors.items()},
            created_by=user_id,
        )
        audit.files = [_file_record(file, tenant_id) for file in files]
        session.add(audit)
        await session.flush()

        for playbook in generated:
            session.add(playbook.to_model(tenant_id, audit.audit_result_id))

        await _upsert_score_trend(session, tenant_id, month_key(now), breakdown)
        throttle.consume_audit_quota(tenant, now)
        await record_activity(
            session,
            tenant_id,
            "audit.completed",
            user_id=user_id,
            metadata={
                "audit_result_id": str(audit.audit_result_id),
                "score": breakdown.score,
                "storage_waste": breakdown.storage_waste,
                "license_waste": breakdown.license_waste,
                "total_files": len(files),
                "total_users": len(users),
                "playbooks": len(generated),
            },
        )
        await session.commit()
    except Exception:
        await session.rollback()
        logger.exception("audit_persist_failed", extra={"extra": {"tenant_id": str(tenant_id)}})
        raise

    logger.info(
        "audit_completed",
        extra={
            "extra": {
                "tenant_id": str(tenant_id),
                "audit_result_id": str(audit.audit_result_id),
                "score": breakdown.score,
                "playbooks": len(generated),
                "failed_platforms": len(synced.errors),
            }
        },
    )
    return AuditRunOutcome(
        audit_result_id=audit.audit_result_id,
        score=breakdown.score,
        estimated_savings=breakdown.estimated_savings,
        playbooks_created=len(generated),
        platforms=audit.platforms,
        platform_errors=audit.platform_errors,
    )


async def get_latest_audit(session: AsyncSession, tenant_id: uuid.UUID) -> AuditResult | None:
    stmt = (
        select(AuditResult)
        .where(AuditResult.tenant_id == tenant_id)
        .order_by(AuditResult.created_at.desc())
        .limit(1)
    )
    return await session.scalar(stmt)


async def list_audit_playbooks(session: AsyncSession, audit_result_id: uuid.UUID) -> list[Playbook]:
    stmt = (
        select(Playbook)
        .where(Playbook.audit_result_id == audit_result_id)
        .options(selectinload(Playbook.items))
        .order_by(Playbook.created_at)
    )
    return list((await session.scalars(stmt)).all())


async def list_score_trend(session: AsyncSession, tenant_id: uuid.UUID, *, months: int = 12) -> list[ScoreTrend]:
    stmt = (
        select(ScoreTrend)
        .where(ScoreTrend.tenant_id == tenant_id)
        .order_by(ScoreTrend.month.desc())
        .limit(months)
    )
    return list(reversed((await session.scalars(stmt)).all()))


def apply_savings_adjustment(audit: AuditResult, playbook: Playbook, processed: int) -> None:
    """Subtract an executed playbook's savings (and resolved risks) from its audit result."""

    audit.estimated_savings = max(0.0, round(audit.estimated_savings - playbook.estimated_savings, 2))
    if playbook.impact_type == ImpactType.SECURITY:
        audit.active_risks = max(0, audit.active_risks - processed)
