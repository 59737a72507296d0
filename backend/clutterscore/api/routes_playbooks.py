from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from clutterscore.api.tenant_context import current_user_id, require_tenant
from clutterscore.dependencies import archive_service_for, get_services
from clutterscore.domain.playbooks import executor
from clutterscore.domain.playbooks import schemas as playbook_schemas
from clutterscore.domain.playbooks import service as playbook_service
from clutterscore.domain.playbooks.statuses import PlaybookStatus
from clutterscore.infra.db import get_db_session
from clutterscore.services import AppServices

router = APIRouter(tags=["playbooks"])

_ANONYMOUS_USER = "api"


@router.get("/v1/playbooks", response_model=playbook_schemas.PlaybookListResponse)
async def list_playbooks(
    status: PlaybookStatus | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
    tenant_id: uuid.UUID = Depends(require_tenant),
    session: AsyncSession = Depends(get_db_session),
) -> playbook_schemas.PlaybookListResponse:
    playbooks = await playbook_service.list_playbooks(session, tenant_id, status=status, limit=limit)
    return playbook_schemas.PlaybookListResponse(
        items=[playbook_schemas.PlaybookResponse.model_validate(playbook) for playbook in playbooks]
    )


@router.get("/v1/playbooks/{playbook_id}", response_model=playbook_schemas.PlaybookResponse)
async def get_playbook(
    playbook_id: uuid.UUID,
    tenant_id: uuid.UUID = Depends(require_tenant),
    session: AsyncSession = Depends(get_db_session),
) -> playbook_schemas.PlaybookResponse:
    playbook = await playbook_service.get_playbook(session, tenant_id, playbook_id)
    return playbook_schemas.PlaybookResponse.model_validate(playbook)


@router.post("/v1/playbooks/{playbook_id}/approve", response_model=playbook_schemas.PlaybookResponse)
async def approve_playbook(
    playbook_id: uuid.UUID,
    tenant_id: uuid.UUID = Depends(require_tenant),
    user_id: str | None = Depends(current_user_id),
    session: AsyncSession = Depends(get_db_session),
) -> playbook_schemas.PlaybookResponse:
    playbook = await playbook_service.approve_playbook(
        session, tenant_id, playbook_id, user_id=user_id or _ANONYMOUS_USER
    )
    return playbook_schemas.PlaybookResponse.model_validate(playbook)


@router.post("/v1/playbooks/{playbook_id}/dismiss", response_model=playbook_schemas.PlaybookResponse)
async def dismiss_playbook(
    playbook_id: uuid.UUID,
    tenant_id: uuid.UUID = Depends(require_tenant),
    user_id: str | None = Depends(current_user_id),
    session: AsyncSession = Depends(get_db_session),
) -> playbook_schemas.PlaybookResponse:
    playbook = await playbook_service.dismiss_playbook(
        session, tenant_id, playbook_id, user_id=user_id or _ANONYMOUS_USER
    )
    return playbook_schemas.PlaybookResponse.model_validate(playbook)


@router.patch("/v1/playbooks/{playbook_id}/items", response_model=playbook_schemas.PlaybookResponse)
async def select_playbook_items(
    playbook_id: uuid.UUID,
    request: playbook_schemas.ItemSelectionRequest,
    tenant_id: uuid.UUID = Depends(require_tenant),
    session: AsyncSession = Depends(get_db_session),
) -> playbook_schemas.PlaybookResponse:
    selections = {item.item_id: item.selected for item in request.items}
    playbook = await playbook_service.set_item_selection(session, tenant_id, playbook_id, selections)
    return playbook_schemas.PlaybookResponse.model_validate(playbook)


@router.post("/v1/playbooks/{playbook_id}/execute", response_model=playbook_schemas.ExecutionResponse)
async def execute_playbook(
    playbook_id: uuid.UUID,
    archive_files: bool = Query(False),
    tenant_id: uuid.UUID = Depends(require_tenant),
    user_id: str | None = Depends(current_user_id),
    session: AsyncSession = Depends(get_db_session),
    services: AppServices = Depends(get_services),
) -> playbook_schemas.ExecutionResponse:
    """Run the approved playbook now; `archive_files` copies files to archive storage first."""

    outcome = await executor.execute_playbook(
        session,
        tenant_id,
        playbook_id,
        services.connector_registry,
        user_id=user_id,
        locks=services.refresh_locks,
        archive_service=archive_service_for(session, services) if archive_files else None,
    )
    return playbook_schemas.ExecutionResponse(**outcome.to_dict())
