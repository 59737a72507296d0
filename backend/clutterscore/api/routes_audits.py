from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from clutterscore.api.tenant_context import current_user_id, require_tenant
from clutterscore.dependencies import get_services
from clutterscore.domain.audit import schemas as audit_schemas
from clutterscore.domain.audit import service as audit_service
from clutterscore.domain.playbooks.schemas import PlaybookResponse
from clutterscore.infra.db import get_db_session
from clutterscore.services import AppServices

router = APIRouter(tags=["audits"])


@router.post("/v1/audits", response_model=audit_schemas.AuditRunResponse, status_code=201)
async def run_audit(
    tenant_id: uuid.UUID = Depends(require_tenant),
    user_id: str | None = Depends(current_user_id),
    session: AsyncSession = Depends(get_db_session),
    services: AppServices = Depends(get_services),
) -> audit_schemas.AuditRunResponse:
    outcome = await audit_service.run_audit(
        session,
        tenant_id,
        services.connector_registry,
        user_id=user_id,
        locks=services.refresh_locks,
    )
    return audit_schemas.AuditRunResponse(**outcome.to_dict())


@router.get("/v1/audits/latest", response_model=audit_schemas.LatestAuditResponse)
async def latest_audit(
    tenant_id: uuid.UUID = Depends(require_tenant),
    session: AsyncSession = Depends(get_db_session),
) -> audit_schemas.LatestAuditResponse:
    audit = await audit_service.get_latest_audit(session, tenant_id)
    if audit is None:
        return audit_schemas.LatestAuditResponse()
    playbooks = await audit_service.list_audit_playbooks(session, audit.audit_result_id)
    return audit_schemas.LatestAuditResponse(
        audit=audit_schemas.AuditResultResponse.model_validate(audit),
        playbooks=[PlaybookResponse.model_validate(playbook) for playbook in playbooks],
    )


@router.get("/v1/audits/trend", response_model=audit_schemas.ScoreTrendResponse)
async def score_trend(
    months: int = Query(12, ge=1, le=36),
    tenant_id: uuid.UUID = Depends(require_tenant),
    session: AsyncSession = Depends(get_db_session),
) -> audit_schemas.ScoreTrendResponse:
    trend = await audit_service.list_score_trend(session, tenant_id, months=months)
    return audit_schemas.ScoreTrendResponse(
        items=[audit_schemas.ScoreTrendPoint.model_validate(point) for point in trend]
    )
