from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from clutterscore.api.tenant_context import current_user_id, require_tenant
from clutterscore.dependencies import get_services
from clutterscore.domain.playbooks import schemas as playbook_schemas
from clutterscore.domain.playbooks import service as playbook_service
from clutterscore.domain.playbooks.undo import undo_audit_log
from clutterscore.infra.db import get_db_session
from clutterscore.services import AppServices
from clutterscore.shared.clock import utcnow

router = APIRouter(tags=["audit-logs"])


@router.get("/v1/audit-logs", response_model=playbook_schemas.AuditLogListResponse)
async def list_audit_logs(
    undoable: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    tenant_id: uuid.UUID = Depends(require_tenant),
    session: AsyncSession = Depends(get_db_session),
) -> playbook_schemas.AuditLogListResponse:
    entries = await playbook_service.list_audit_log_entries(
        session, tenant_id, undoable_only=undoable, limit=limit
    )
    now = utcnow()
    items = []
    for entry in entries:
        item = playbook_schemas.AuditLogEntryResponse.model_validate(entry)
        item.undoable = playbook_service.is_undoable(entry, now)
        items.append(item)
    return playbook_schemas.AuditLogListResponse(items=items)


@router.post("/v1/audit-logs/{entry_id}/undo", response_model=playbook_schemas.UndoResponse)
async def undo_entry(
    entry_id: uuid.UUID,
    request: playbook_schemas.UndoRequest | None = None,
    tenant_id: uuid.UUID = Depends(require_tenant),
    user_id: str | None = Depends(current_user_id),
    session: AsyncSession = Depends(get_db_session),
    services: AppServices = Depends(get_services),
) -> playbook_schemas.UndoResponse:
    outcome = await undo_audit_log(
        session,
        tenant_id,
        entry_id,
        services.connector_registry,
        user_id=user_id,
        item_id=request.item_id if request else None,
        locks=services.refresh_locks,
    )
    return playbook_schemas.UndoResponse(**outcome.to_dict())
