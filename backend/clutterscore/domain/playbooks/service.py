from __future__ import annotations

import logging
import uuid
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from clutterscore.domain.errors import DomainError, InvalidPlaybookTransition, PlaybookNotFoundError
from clutterscore.domain.playbooks.db_models import AuditLogEntry, Playbook
from clutterscore.domain.playbooks.statuses import SELECTABLE_STATUSES, PlaybookStatus, can_transition
from clutterscore.shared.clock import ensure_aware, utcnow

logger = logging.getLogger(__name__)


async def get_playbook(
    session: AsyncSession, tenant_id: uuid.UUID, playbook_id: uuid.UUID, *, for_update: bool = False
) -> Playbook:
    stmt = (
        select(Playbook)
        .where(Playbook.playbook_id == playbook_id, Playbook.tenant_id == tenant_id)
        .options(selectinload(Playbook.items))
    )
    if for_update:
        stmt = stmt.with_for_update()
    playbook = await session.scalar(stmt)
    if playbook is None:
        raise PlaybookNotFoundError(playbook_id)
    return playbook


async def list_playbooks(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    *,
    status: PlaybookStatus | None = None,
    limit: int = 50,
) -> list[Playbook]:
    stmt = (
        select(Playbook)
        .where(Playbook.tenant_id == tenant_id)
        .options(selectinload(Playbook.items))
        .order_by(Playbook.created_at.desc())
        .limit(limit)
    )
    if status is not None:
        stmt = stmt.where(Playbook.status == status)
    return list((await session.scalars(stmt)).all())


def transition(playbook: Playbook, target: PlaybookStatus) -> None:
    if not can_transition(playbook.status, target):
        raise InvalidPlaybookTransition(playbook.status.value, target.value)
    playbook.status = target


async def approve_playbook(
    session: AsyncSession, tenant_id: uuid.UUID, playbook_id: uuid.UUID, *, user_id: str
) -> Playbook:
    playbook = await get_playbook(session, tenant_id, playbook_id)
    transition(playbook, PlaybookStatus.APPROVED)
    playbook.approved_at = utcnow()
    playbook.approved_by = user_id
    await session.commit()
    logger.info(
        "playbook_approved",
        extra={"extra": {"tenant_id": str(tenant_id), "playbook_id": str(playbook_id)}},
    )
    return playbook


async def dismiss_playbook(
    session: AsyncSession, tenant_id: uuid.UUID, playbook_id: uuid.UUID, *, user_id: str
) -> Playbook:
    playbook = await get_playbook(session, tenant_id, playbook_id)
    transition(playbook, PlaybookStatus.DISMISSED)
    await session.commit()
    logger.info(
        "playbook_dismissed",
        extra={"extra": {"tenant_id": str(tenant_id), "playbook_id": str(playbook_id), "user_id": user_id}},
    )
    return playbook


async def set_item_selection(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    playbook_id: uuid.UUID,
    selections: dict[uuid.UUID, bool],
) -> Playbook:
    playbook = await get_playbook(session, tenant_id, playbook_id)
    if playbook.status not in SELECTABLE_STATUSES:
        raise DomainError(
            detail=f"Items cannot be changed while the playbook is {playbook.status.value}",
            title="Playbook Locked",
            status_code=409,
        )
    known = {item.item_id: item for item in playbook.items}
    unknown = [str(item_id) for item_id in selections if item_id not in known]
    if unknown:
        raise DomainError(
            detail="Unknown playbook items",
            title="Invalid Selection",
            errors=[{"field": "item_id", "value": value} for value in unknown],
            status_code=422,
        )
    for item_id, selected in selections.items():
        known[item_id].is_selected = selected
    await session.commit()
    return playbook


async def get_audit_log_entry(
    session: AsyncSession, tenant_id: uuid.UUID, entry_id: uuid.UUID
) -> AuditLogEntry | None:
    stmt = select(AuditLogEntry).where(
        AuditLogEntry.entry_id == entry_id, AuditLogEntry.tenant_id == tenant_id
    )
    return await session.scalar(stmt)


def is_undoable(entry: AuditLogEntry, now) -> bool:
    if not entry.undo_actions or entry.undo_expires_at is None:
        return False
    return now < ensure_aware(entry.undo_expires_at)


async def list_audit_log_entries(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    *,
    undoable_only: bool = False,
    limit: int = 50,
) -> list[AuditLogEntry]:
    stmt = (
        select(AuditLogEntry)
        .where(AuditLogEntry.tenant_id == tenant_id)
        .order_by(AuditLogEntry.created_at.desc())
        .limit(limit)
    )
    if undoable_only:
        stmt = stmt.where(AuditLogEntry.undo_expires_at.is_not(None))
    entries: Iterable[AuditLogEntry] = (await session.scalars(stmt)).all()
    if undoable_only:
        now = utcnow()
        return [entry for entry in entries if is_undoable(entry, now)]
    return list(entries)
