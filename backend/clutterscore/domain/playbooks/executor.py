from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from clutterscore.domain.activity.service import record_activity
from clutterscore.domain.archives.service import ArchiveService
from clutterscore.domain.audit.db_models import AuditResult
from clutterscore.domain.audit.service import apply_savings_adjustment
from clutterscore.domain.connectors.base import Connector
from clutterscore.domain.connectors.errors import OperationResult, TokenError
from clutterscore.domain.connectors.registry import ConnectorRegistry, UnsupportedPlatformError
from clutterscore.domain.connectors.types import ActionType
from clutterscore.domain.errors import PlaybookExecutionAborted
from clutterscore.domain.integrations.db_models import Integration, SyncStatus
from clutterscore.domain.integrations.service import RefreshLocks, get_integration, refresh_if_needed
from clutterscore.domain.playbooks.db_models import AuditLogEntry, Playbook, PlaybookItem
from clutterscore.domain.playbooks.generator import playbook_is_auto_approve_eligible
from clutterscore.domain.playbooks.metadata import FileItemMetadata
from clutterscore.domain.playbooks.service import get_playbook, transition
from clutterscore.domain.playbooks.statuses import ACTION_BY_IMPACT, AuditLogStatus, PlaybookStatus
from clutterscore.domain.playbooks.undo_actions import UndoAction, build_undo_action, dump_undo_actions
from clutterscore.domain.tenants.db_models import Tenant
from clutterscore.infra.metrics import metrics
from clutterscore.settings import settings
from clutterscore.shared.clock import utcnow

logger = logging.getLogger(__name__)

AUTOMATED_EXECUTOR = "Automated Policy"


class TenantLocks:
    """One automated run per tenant at a time inside this process."""

    def __init__(self) -> None:
        self._locks: dict[uuid.UUID, asyncio.Lock] = {}

    def lock_for(self, tenant_id: uuid.UUID) -> asyncio.Lock:
        return self._locks.setdefault(tenant_id, asyncio.Lock())


@dataclass
class ExecutionOutcome:
    playbook_id: uuid.UUID
    status: PlaybookStatus
    log_status: AuditLogStatus
    audit_log_id: uuid.UUID | None
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    undo_actions: int = 0
    duration_ms: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)

    @property
    def partial_undo(self) -> bool:
        return self.processed >= 1 and self.failed >= 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.status == PlaybookStatus.EXECUTED,
            "playbook_id": str(self.playbook_id),
            "status": self.status.value,
            "audit_log_status": self.log_status.value,
            "audit_log_id": str(self.audit_log_id) if self.audit_log_id else None,
            "items_processed": self.processed,
            "items_failed": self.failed,
            "items_skipped": self.skipped,
            "undo_actions": self.undo_actions,
            "partial_undo": self.partial_undo,
            "duration_ms": self.duration_ms,
        }


@dataclass
class _Pass:
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    undo_actions: list[UndoAction] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)
    archive_ids: list[str] = field(default_factory=list)


class _Aborted(Exception):
    def __init__(self, message: str, item: PlaybookItem) -> None:
        super().__init__(message)
        self.message = message
        self.item = item


def composite_status(processed: int, failed: int) -> AuditLogStatus:
    if processed >= 1:
        return AuditLogStatus.SUCCESS
    if failed >= 1:
        return AuditLogStatus.FAILED
    return AuditLogStatus.PENDING


def executor_label(user_id: str | None, *, automated: bool) -> str:
    if automated:
        return AUTOMATED_EXECUTOR
    return f"User {user_id}" if user_id else "User"


def _build_connector(registry: ConnectorRegistry, integration: Integration | None) -> Connector | None:
    if integration is None:
        return None
    try:
        return registry.create(integration.platform, integration.connector_config())
    except UnsupportedPlatformError:
        logger.warning(
            "playbook_connector_unavailable",
            extra={"extra": {"platform": integration.platform.value}},
        )
        return None


async def _run_item(
    connector: Connector,
    playbook: Playbook,
    item: PlaybookItem,
    action: ActionType,
    *,
    archive_service: ArchiveService | None,
    executed_by: str,
) -> tuple[OperationResult, str | None]:
    metadata = item.item_metadata()
    archived = None
    if archive_service is not None and action == ActionType.ARCHIVE_FILE and isinstance(metadata, FileItemMetadata):
        archived = await archive_service.archive_from_connector(
            connector,
            tenant_id=playbook.tenant_id,
            external_id=item.external_id,
            file_name=item.item_name,
            metadata=metadata,
            archived_by=executed_by,
        )
    try:
        result = await connector.perform(action, item.external_id, metadata)
    except Exception:
        if archived is not None:
            await _discard_archive(archive_service, archived.archive_id, executed_by)
        raise
    if archived is None:
        return result, None
    if not result.ok:
        await _discard_archive(archive_service, archived.archive_id, executed_by)
        return result, None
    return result, str(archived.archive_id)


async def _discard_archive(archive_service: ArchiveService, archive_id: uuid.UUID, executed_by: str) -> None:
    """Drop the copy taken ahead of a move that never happened."""

    try:
        await archive_service.cleanup_single_archive(archive_id, deleted_by=executed_by, reason="action_failed")
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "playbook_archive_discard_failed",
            extra={"extra": {"archive_id": str(archive_id), "error_type": type(exc).__name__}},
        )


async def _execute_items(
    connector: Connector | None,
    playbook: Playbook,
    action: ActionType,
    *,
    record_undo: bool,
    archive_service: ArchiveService | None,
    executed_by: str,
    now: datetime,
) -> _Pass:
    outcome = _Pass()
    for item in playbook.items:
        if not item.is_selected:
            outcome.skipped += 1
            continue
        if connector is None:
            outcome.processed += 1
            continue
        try:
            result, archive_id = await _run_item(
                connector, playbook, item, action, archive_service=archive_service, executed_by=executed_by
            )
        except Exception as exc:  # noqa: BLE001
            outcome.failed += 1
            outcome.errors.append({"item": item.item_name, "error": str(exc) or type(exc).__name__})
            metrics.record_playbook_item(action.value, "error")
            logger.warning(
                "playbook_item_failed",
                extra={"extra": {"playbook_id": str(playbook.playbook_id), "error_type": type(exc).__name__}},
            )
            continue
        if result.unsupported:
            metrics.record_playbook_item(action.value, "unsupported")
            raise _Aborted(result.error.message, item)
        if not result.ok:
            outcome.failed += 1
            outcome.errors.append(
                {"item": item.item_name, "error": result.error.message, "kind": result.error.kind.value}
            )
            metrics.record_playbook_item(action.value, "error")
            continue
        outcome.processed += 1
        metrics.record_playbook_item(action.value, "success")
        if archive_id:
            outcome.archive_ids.append(archive_id)
        if record_undo:
            undo = build_undo_action(
                action,
                item_id=item.item_id,
                item_name=item.item_name,
                external_id=item.external_id,
                metadata=item.item_metadata(),
                platform=playbook.source,
                result=result,
                executed_at=now,
                executed_by=executed_by,
            )
            if archive_id:
                undo.original_metadata["archive_id"] = archive_id
            outcome.undo_actions.append(undo)
    return outcome


def _log_entry(
    playbook: Playbook,
    action: ActionType,
    *,
    executor: str,
    user_id: str | None,
    status: AuditLogStatus,
    details: dict[str, Any],
    undo_actions: list[UndoAction],
    now: datetime,
) -> AuditLogEntry:
    return AuditLogEntry(
        tenant_id=playbook.tenant_id,
        playbook_id=playbook.playbook_id,
        action_type=action,
        target=playbook.title,
        target_type="Playbook",
        executor=executor,
        user_id=user_id,
        status=status,
        details={"platform": playbook.source.value, **details},
        undo_actions=dump_undo_actions(undo_actions),
        undo_expires_at=now + timedelta(days=settings.undo_retention_days) if undo_actions else None,
    )


async def execute_playbook(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    playbook_id: uuid.UUID,
    registry: ConnectorRegistry,
    *,
    user_id: str | None = None,
    automated: bool = False,
    locks: RefreshLocks | None = None,
    archive_service: ArchiveService | None = None,
    now: datetime | None = None,
) -> ExecutionOutcome:
    """Replay a playbook's selected items through its platform connector.

    Per-item failures are counted and execution continues. An operation the platform
    cannot perform at all aborts the batch: the playbook is marked FAILED, no undo
    actions are kept and `PlaybookExecutionAborted` is raised. Automated runs never
    record undo actions.
    """

    now = now or utcnow()
    started = time.monotonic()
    playbook = await get_playbook(session, tenant_id, playbook_id)
    transition(playbook, PlaybookStatus.EXECUTING)
    await session.commit()

    action = ACTION_BY_IMPACT[playbook.impact_type]
    executor = executor_label(user_id, automated=automated)
    mode = "automated" if automated else "manual"
    integration = await get_integration(session, tenant_id, playbook.source)
    connector = _build_connector(registry, integration)
    if connector is None:
        logger.info(
            "playbook_no_connector",
            extra={"extra": {"playbook_id": str(playbook_id), "platform": playbook.source.value}},
        )

    try:
        if connector is not None:
            async with connector:
                grant = await refresh_if_needed(connector, integration.integration_id, locks)
                if grant is not None:
                    integration.access_token = grant.access_token
                    integration.refresh_token = grant.refresh_token or integration.refresh_token
                    integration.expires_at = grant.expires_at
                result = await _execute_items(
                    connector,
                    playbook,
                    action,
                    record_undo=not automated,
                    archive_service=archive_service,
                    executed_by=executor,
                    now=now,
                )
        else:
            result = await _execute_items(
                None,
                playbook,
                action,
                record_undo=False,
                archive_service=None,
                executed_by=executor,
                now=now,
            )
    except _Aborted as aborted:
        duration_ms = int((time.monotonic() - started) * 1000)
        await _finish_failed(
            session,
            playbook_id,
            action,
            executor=executor,
            user_id=user_id,
            details={"error": aborted.message, "aborted": True, "item": aborted.item.item_name},
            duration_ms=duration_ms,
            now=now,
        )
        metrics.record_playbook_execution(mode, "aborted")
        raise PlaybookExecutionAborted(aborted.message) from None
    except TokenError as exc:
        if integration is not None:
            integration.sync_status = SyncStatus.ERROR
            integration.last_error = str(exc)
            integration.last_error_at = now
        duration_ms = int((time.monotonic() - started) * 1000)
        entry = await _finish_failed(
            session,
            playbook_id,
            action,
            executor=executor,
            user_id=user_id,
            details={"error": str(exc), "token_error": True},
            duration_ms=duration_ms,
            now=now,
        )
        metrics.record_playbook_execution(mode, "failed")
        return ExecutionOutcome(
            playbook_id=playbook.playbook_id,
            status=PlaybookStatus.FAILED,
            log_status=AuditLogStatus.FAILED,
            audit_log_id=entry.entry_id,
            duration_ms=duration_ms,
            errors=[{"error": str(exc)}],
        )
    except Exception as exc:
        await session.rollback()
        async with AsyncSession(session.bind, expire_on_commit=False) as fresh:
            await _finish_failed(
                fresh,
                playbook_id,
                action,
                executor=executor,
                user_id=user_id,
                details={"error": str(exc) or type(exc).__name__},
                duration_ms=int((time.monotonic() - started) * 1000),
                now=now,
            )
        metrics.record_playbook_execution(mode, "failed")
        raise

    duration_ms = int((time.monotonic() - started) * 1000)
    log_status = composite_status(result.processed, result.failed)
    status = PlaybookStatus.FAILED if log_status == AuditLogStatus.FAILED else PlaybookStatus.EXECUTED
    details: dict[str, Any] = {
        "items_processed": result.processed,
        "items_failed": result.failed,
        "execution_time_ms": duration_ms,
        "partial_undo": result.processed >= 1 and result.failed >= 1,
        "mode": mode,
    }
    if result.errors:
        details["errors"] = result.errors[:50]
    if result.archive_ids:
        details["archive_ids"] = result.archive_ids
    if connector is None:
        details["no_connector"] = True
    if result.skipped:
        details["items_skipped"] = result.skipped

    entry = _log_entry(
        playbook,
        action,
        executor=executor,
        user_id=user_id,
        status=log_status,
        details=details,
        undo_actions=result.undo_actions,
        now=now,
    )
    session.add(entry)
    transition(playbook, status)
    playbook.executed_at = now
    playbook.executed_by = executor
    playbook.items_processed = result.processed
    playbook.items_failed = result.failed
    playbook.execution_duration_ms = duration_ms

    if status == PlaybookStatus.EXECUTED and playbook.audit_result_id is not None:
        audit = await session.get(AuditResult, playbook.audit_result_id)
        if audit is not None:
            apply_savings_adjustment(audit, playbook, result.processed)

    await record_activity(
        session,
        tenant_id,
        "playbook.executed" if status == PlaybookStatus.EXECUTED else "playbook.failed",
        user_id=user_id,
        metadata={
            "playbook_id": str(playbook.playbook_id),
            "title": playbook.title,
            "items_processed": result.processed,
            "items_failed": result.failed,
            "automated": automated,
        },
    )
    await session.commit()
    metrics.record_playbook_execution(mode, status.value.lower())
    logger.info(
        "playbook_executed",
        extra={
            "extra": {
                "playbook_id": str(playbook.playbook_id),
                "status": status.value,
                "processed": result.processed,
                "failed": result.failed,
                "undo_actions": len(result.undo_actions),
            }
        },
    )
    return ExecutionOutcome(
        playbook_id=playbook.playbook_id,
        status=status,
        log_status=log_status,
        audit_log_id=entry.entry_id,
        processed=result.processed,
        failed=result.failed,
        skipped=result.skipped,
        undo_actions=len(result.undo_actions),
        duration_ms=duration_ms,
        errors=result.errors,
    )


async def _finish_failed(
    session: AsyncSession,
    playbook_id: uuid.UUID,
    action: ActionType,
    *,
    executor: str,
    user_id: str | None,
    details: dict[str, Any],
    duration_ms: int,
    now: datetime,
) -> AuditLogEntry:
    playbook = await session.get(Playbook, playbook_id)
    if playbook.status == PlaybookStatus.EXECUTING:
        transition(playbook, PlaybookStatus.FAILED)
    playbook.executed_at = now
    playbook.executed_by = executor
    playbook.items_processed = 0
    playbook.execution_duration_ms = duration_ms
    entry = _log_entry(
        playbook,
        action,
        executor=executor,
        user_id=user_id,
        status=AuditLogStatus.FAILED,
        details=details,
        undo_actions=[],
        now=now,
    )
    session.add(entry)
    await record_activity(
        session,
        playbook.tenant_id,
        "playbook.failed",
        user_id=user_id,
        metadata={"playbook_id": str(playbook.playbook_id), "title": playbook.title, **details},
    )
    await session.commit()
    logger.warning(
        "playbook_execution_failed",
        extra={"extra": {"playbook_id": str(playbook.playbook_id), **{k: v for k, v in details.items() if k != "error"}}},
    )
    return entry


async def settle_interrupted_execution(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    playbook_id: uuid.UUID,
    *,
    user_id: str | None = None,
    now: datetime | None = None,
) -> ExecutionOutcome | None:
    """Resolve a playbook that an earlier attempt already claimed.

    Returns None while the playbook is still runnable. A playbook stuck in
    EXECUTING lost its worker after the claim was committed; it is moved to FAILED
    with an interrupted log entry. EXECUTED and FAILED playbooks are reported from
    their latest log entry without touching any platform.
    """

    now = now or utcnow()
    playbook = await get_playbook(session, tenant_id, playbook_id)
    if playbook.status not in {PlaybookStatus.EXECUTING, PlaybookStatus.EXECUTED, PlaybookStatus.FAILED}:
        return None

    if playbook.status == PlaybookStatus.EXECUTING:
        entry = await _finish_failed(
            session,
            playbook_id,
            ACTION_BY_IMPACT[playbook.impact_type],
            executor=executor_label(user_id, automated=False),
            user_id=user_id,
            details={"error": "execution interrupted before completion", "interrupted": True},
            duration_ms=0,
            now=now,
        )
        metrics.record_playbook_execution("manual", "interrupted")
        return ExecutionOutcome(
            playbook_id=playbook.playbook_id,
            status=PlaybookStatus.FAILED,
            log_status=AuditLogStatus.FAILED,
            audit_log_id=entry.entry_id,
            errors=[{"error": "execution interrupted before completion"}],
        )

    entry = await session.scalar(
        select(AuditLogEntry)
        .where(AuditLogEntry.playbook_id == playbook.playbook_id)
        .order_by(AuditLogEntry.created_at.desc())
        .limit(1)
    )
    logger.info(
        "playbook_execution_already_settled",
        extra={"extra": {"playbook_id": str(playbook.playbook_id), "status": playbook.status.value}},
    )
    return ExecutionOutcome(
        playbook_id=playbook.playbook_id,
        status=playbook.status,
        log_status=entry.status if entry is not None else AuditLogStatus.PENDING,
        audit_log_id=entry.entry_id if entry is not None else None,
        processed=playbook.items_processed or 0,
        failed=playbook.items_failed or 0,
        undo_actions=len(entry.undo_actions or []) if entry is not None else 0,
        duration_ms=playbook.execution_duration_ms or 0,
    )

async def run_automated_execution(
    session_factory: async_sessionmaker[AsyncSession],
    registry: ConnectorRegistry,
    *,
    tenant_locks: TenantLocks,
    locks: RefreshLocks | None = None,
    now: datetime | None = None,
) -> dict[str, int]:
    """Approve and run eligible PENDING playbooks for tenants whose plan allows automation."""

    now = now or utcnow()
    tiers = settings.automation_tiers
    totals = {"tenants": 0, "skipped_tenants": 0, "executed": 0, "failed": 0, "items_processed": 0}
    async with session_factory() as session:
        tenant_ids = list(
            (await session.scalars(select(Tenant.tenant_id).where(Tenant.plan_tier.in_(tiers)))).all()
        )

    for tenant_id in tenant_ids:
        lock = tenant_locks.lock_for(tenant_id)
        if lock.locked():
            totals["skipped_tenants"] += 1
            continue
        async with lock:
            totals["tenants"] += 1
            async with session_factory() as session:
                candidates = (
                    await session.scalars(
                        select(Playbook)
                        .where(Playbook.tenant_id == tenant_id, Playbook.status == PlaybookStatus.PENDING)
                        .options(selectinload(Playbook.items))
                        .order_by(Playbook.created_at)
                    )
                ).all()
                eligible = [playbook.playbook_id for playbook in candidates if playbook_is_auto_approve_eligible(playbook)]
                for playbook_id in eligible:
                    try:
                        playbook = await get_playbook(session, tenant_id, playbook_id)
                        if playbook.status != PlaybookStatus.PENDING:
                            continue
                        transition(playbook, PlaybookStatus.APPROVED)
                        playbook.approved_at = now
                        playbook.approved_by = AUTOMATED_EXECUTOR
                        await session.commit()
                        outcome = await execute_playbook(
                            session,
                            tenant_id,
                            playbook_id,
                            registry,
                            automated=True,
                            locks=locks,
                            now=now,
                        )
                    except Exception as exc:  # noqa: BLE001
                        await session.rollback()
                        totals["failed"] += 1
                        logger.warning(
                            "automated_playbook_failed",
                            extra={
                                "extra": {
                                    "tenant_id": str(tenant_id),
                                    "playbook_id": str(playbook_id),
                                    "error_type": type(exc).__name__,
                                }
                            },
                        )
                        continue
                    if outcome.status == PlaybookStatus.EXECUTED:
                        totals["executed"] += 1
                    else:
                        totals["failed"] += 1
                    totals["items_processed"] += outcome.processed
    return totals
