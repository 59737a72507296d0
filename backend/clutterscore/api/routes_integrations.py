from __future__ import annotations

import logging
import uuid

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from clutterscore.api.tenant_context import require_tenant
from clutterscore.dependencies import get_services
from clutterscore.domain.connectors.errors import ConnectorError
from clutterscore.domain.connectors.types import Platform
from clutterscore.domain.errors import DomainError, IntegrationNotFoundError
from clutterscore.domain.integrations import schemas as integration_schemas
from clutterscore.domain.integrations import service as integration_service
from clutterscore.domain.integrations.db_models import Integration
from clutterscore.infra.db import get_db_session
from clutterscore.services import AppServices

router = APIRouter(tags=["integrations"])
logger = logging.getLogger(__name__)


@router.get("/v1/integrations", response_model=integration_schemas.IntegrationListResponse)
async def list_integrations(
    tenant_id: uuid.UUID = Depends(require_tenant),
    session: AsyncSession = Depends(get_db_session),
    services: AppServices = Depends(get_services),
) -> integration_schemas.IntegrationListResponse:
    stmt = select(Integration).where(Integration.tenant_id == tenant_id).order_by(Integration.platform)
    integrations = (await session.scalars(stmt)).all()
    return integration_schemas.IntegrationListResponse(
        items=[integration_schemas.IntegrationResponse.model_validate(row) for row in integrations],
        capabilities=services.connector_registry.capabilities(),
    )


@router.post("/v1/integrations/{platform}/test", response_model=integration_schemas.ConnectionTestResponse)
async def test_integration(
    platform: Platform,
    tenant_id: uuid.UUID = Depends(require_tenant),
    session: AsyncSession = Depends(get_db_session),
    services: AppServices = Depends(get_services),
) -> integration_schemas.ConnectionTestResponse:
    connected = await integration_service.test_integration_connection(
        session, tenant_id, platform, services.connector_registry, locks=services.refresh_locks
    )
    return integration_schemas.ConnectionTestResponse(platform=platform, connected=connected)


@router.post("/v1/integrations/{platform}/sync", response_model=integration_schemas.SyncResponse)
async def sync_integration(
    platform: Platform,
    tenant_id: uuid.UUID = Depends(require_tenant),
    session: AsyncSession = Depends(get_db_session),
    services: AppServices = Depends(get_services),
) -> integration_schemas.SyncResponse:
    integration = await integration_service.get_integration(session, tenant_id, platform)
    if integration is None:
        raise IntegrationNotFoundError(platform.value)
    try:
        data = await integration_service.sync_integration(
            session, integration, services.connector_registry, locks=services.refresh_locks
        )
    except ConnectorError as exc:
        logger.warning(
            "integration_sync_request_failed",
            extra={"extra": {"tenant_id": str(tenant_id), "platform": platform.value, "code": exc.code}},
        )
        raise DomainError(
            detail=exc.message,
            title="Integration Sync Failed",
            status_code=502,
        ) from exc
    return integration_schemas.SyncResponse(
        platform=platform,
        success=True,
        total_files=len(data.files),
        total_users=len(data.users),
        total_channels=len(data.channels or []),
    )
