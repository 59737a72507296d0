from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from clutterscore.domain.activity.service import record_activity
from clutterscore.domain.connectors.registry import ConnectorRegistry
from clutterscore.domain.connectors.types import Platform
from clutterscore.domain.errors import (
    AuditLogNotFoundError,
    IntegrationNotFoundError,
    NothingToUndoError,
    UndoExpiredError,
)
from clutterscore.domain.integrations.service import RefreshLocks, get_integration, refresh_if_needed
from clutterscore.domain.playbooks.db_models import AuditLogEntry
from clutterscore.domain.playbooks.service import get_audit_log_entry
from clutterscore.domain.playbooks.statuses import AuditLogStatus
from clutterscore.domain.playbooks.undo_actions import UndoAction, dump_undo_actions, load_undo_actions
from clutterscore.infra.metrics import metrics
from clutterscore.shared.clock import ensure_aware_or_none, utcnow

logger = logging.getLogger(__name__)


@dataclass
class UndoOutcome:
    entry_id: uuid.UUID
    status: AuditLogStatus
    restored: int = 0
    failed: int = 0
    skipped: int = 0
    remaining: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)
    undo_log_id: uuid.UUID | None = None

    @property
    def partial(self) -> bool:
        return self.restored > 0 and (self.failed > 0 or self.skipped > 0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.failed == 0 and self.skipped == 0,
            "entry_id": str(self.entry_id),
            "status": self.status.value,
            "restored": self.restored,
            "failed": self.failed,
            "skipped": self.skipped,
            "remaining": self.remaining,
            "partial_undo": self.partial,
            "errors": self.errors,
            "undo_log_id": str(self.undo_log_id) if self.undo_log_id else None,
        }


def _entry_platform(entry: AuditLogEntry) -> Platform:
    raw = (entry.details or {}).get("platform")
    if not raw:
        raise NothingToUndoError()
    return Platform(raw)


def _undo_status(restored: int, failed: int) -> AuditLogStatus:
    if restored >= 1:
        return AuditLogStatus.SUCCESS
    if failed >= 1:
        return AuditLogStatus.FAILED
    return AuditLogStatus.PENDING


def _action_label(action: UndoAction) -> str:
    return getattr(action, "file_name", None) or getattr(action, "channel_name", None) or getattr(
        action, "user_email", ""
    )


async def undo_audit_log(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    entry_id: uuid.UUID,
    registry: ConnectorRegistry,
    *,
    user_id: str | None = None,
    item_id: uuid.UUID | None = None,
    locks: RefreshLocks | None = None,
    now: datetime | None = None,
) -> UndoOutcome:
    """Replay the inverse actions recorded on an audit log entry.

    The window is checked before anything else: at or past `undo_expires_at` the
    entry is no longer undoable. Actions that fail stay on the entry so a later
    attempt can retry them; restored and unsupported ones are dropped.

    Undoing the whole entry updates its status in place. A single-item undo only
    trims the entry's action list and records its own log entry pointing back at it.
    """

    now = now or utcnow()
    entry = await get_audit_log_entry(session, tenant_id, entry_id)
    if entry is None:
        raise AuditLogNotFoundError(entry_id)
    expires_at = ensure_aware_or_none(entry.undo_expires_at)
    if expires_at is not None and now >= expires_at:
        raise UndoExpiredError()

    actions = load_undo_actions(entry.undo_actions)
    if item_id is not None:
        selected = [action for action in actions if action.item_id == item_id]
        untouched = [action for action in actions if action.item_id != item_id]
    else:
        selected, untouched = actions, []
    if not selected or expires_at is None:
        raise NothingToUndoError()

    platform = _entry_platform(entry)
    integration = await get_integration(session, tenant_id, platform)
    if integration is None:
        raise IntegrationNotFoundError(platform.value)

    outcome = UndoOutcome(entry_id=entry.entry_id, status=AuditLogStatus.PENDING)
    still_pending: list[UndoAction] = []
    connector = registry.create(platform, integration.connector_config())
    async with connector:
        grant = await refresh_if_needed(connector, integration.integration_id, locks)
        if grant is not None:
            integration.access_token = grant.access_token
            integration.refresh_token = grant.refresh_token or integration.refresh_token
            integration.expires_at = grant.expires_at
        for action in selected:
            try:
                result = await connector.revert(action)
            except Exception as exc:  # noqa: BLE001
                outcome.failed += 1
                outcome.errors.append({"action": action.type, "target": _action_label(action), "error": str(exc)})
                still_pending.append(action)
                metrics.record_undo_action(action.type, "error")
                continue
            if result.ok:
                outcome.restored += 1
                metrics.record_undo_action(action.type, "success")
            elif result.unsupported:
                outcome.skipped += 1
                outcome.errors.append(
                    {"action": action.type, "target": _action_label(action), "error": result.error.message}
                )
                metrics.record_undo_action(action.type, "unsupported")
            else:
                outcome.failed += 1
                outcome.errors.append(
                    {"action": action.type, "target": _action_label(action), "error": result.error.message}
                )
                still_pending.append(action)
                metrics.record_undo_action(action.type, "error")

    remaining = untouched + still_pending
    outcome.remaining = len(remaining)
    outcome.status = _undo_status(outcome.restored, outcome.failed)
    entry.undo_actions = dump_undo_actions(remaining)
    if not remaining:
        entry.undo_expires_at = None
    summary = {
        "undone_at": now.isoformat(),
        "undone_by": user_id,
        "status": outcome.status.value,
        "restored": outcome.restored,
        "failed": outcome.failed,
        "skipped": outcome.skipped,
        "partial_undo": outcome.partial,
    }
    if item_id is None:
        entry.status = outcome.status
        entry.details = {**(entry.details or {}), "undo": summary}
    else:
        item_log = AuditLogEntry(
            tenant_id=tenant_id,
            playbook_id=entry.playbook_id,
            action_type=entry.action_type,
            target=_action_label(selected[0]) or entry.target,
            target_type="UndoItem",
            executor=f"User {user_id}" if user_id else "User",
            user_id=user_id,
            status=outcome.status,
            details={
                "platform": platform.value,
                "undo_of": str(entry.entry_id),
                "item_id": str(item_id),
                "errors": outcome.errors,
                **summary,
            },
            undo_actions=[],
        )
        session.add(item_log)
        await session.flush()
        outcome.undo_log_id = item_log.entry_id
    await record_activity(
        session,
        tenant_id,
        "audit.undo",
        user_id=user_id,
        metadata={
            "entry_id": str(entry.entry_id),
            "target": entry.target,
            "restored": outcome.restored,
            "failed": outcome.failed,
            "skipped": outcome.skipped,
        },
    )
    await session.commit()
    logger.info(
        "audit_log_undone",
        extra={
            "extra": {
                "entry_id": str(entry.entry_id),
                "status": outcome.status.value,
                "restored": outcome.restored,
                "failed": outcome.failed,
                "skipped": outcome.skipped,
            }
        },
    )
    return outcome
