from __future__ import annotations

import logging
import uuid
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from clutterscore.api.tenant_context import current_user_id, require_tenant
from clutterscore.dependencies import archive_service_for, get_services
from clutterscore.domain.archives import schemas as archive_schemas
from clutterscore.domain.archives.db_models import ArchiveStatus
from clutterscore.domain.archives.service import connector_upload
from clutterscore.domain.errors import IntegrationNotFoundError
from clutterscore.domain.integrations.service import get_integration, refresh_if_needed
from clutterscore.domain.job_events.service import enqueue_job_event
from clutterscore.infra.db import get_db_session
from clutterscore.infra.storage.backends import LocalStorageBackend
from clutterscore.jobs.events import ARCHIVE_BATCH_DELETE, ARCHIVE_BATCH_RESTORE, ARCHIVE_MIGRATE_STORAGE
from clutterscore.services import AppServices
from clutterscore.settings import settings

router = APIRouter(tags=["archives"])
logger = logging.getLogger(__name__)


async def _enqueue_batch(
    session: AsyncSession, name: str, tenant_id: uuid.UUID, payload: dict[str, Any], total: int
) -> archive_schemas.JobQueuedResponse:
    event = await enqueue_job_event(
        session,
        name=name,
        payload={"tenant_id": str(tenant_id), **payload},
        dedupe_key=f"{name}:{tenant_id}:{uuid.uuid4()}",
        tenant_id=tenant_id,
    )
    await session.commit()
    logger.info(
        "archive_batch_queued",
        extra={"extra": {"tenant_id": str(tenant_id), "event": name, "total": total}},
    )
    return archive_schemas.JobQueuedResponse(job_id=event.event_id, event=name, status=event.status, total=total)


@router.get("/v1/archives", response_model=archive_schemas.ArchiveListResponse)
async def list_archives(
    status: ArchiveStatus | None = Query(None),
    limit: int = Query(100, ge=1, le=500),
    tenant_id: uuid.UUID = Depends(require_tenant),
    session: AsyncSession = Depends(get_db_session),
    services: AppServices = Depends(get_services),
) -> archive_schemas.ArchiveListResponse:
    archives = await archive_service_for(session, services).list_archives(tenant_id, status=status, limit=limit)
    return archive_schemas.ArchiveListResponse(
        items=[archive_schemas.ArchiveResponse.model_validate(archive) for archive in archives]
    )


@router.get("/v1/archives/stats")
async def archive_stats(
    tenant_id: uuid.UUID = Depends(require_tenant),
    session: AsyncSession = Depends(get_db_session),
    services: AppServices = Depends(get_services),
) -> dict[str, Any]:
    return await archive_service_for(session, services).get_archive_stats(tenant_id)


@router.get("/v1/archives/blobs/{key:path}")
async def download_blob(key: str, request: Request, services: AppServices = Depends(get_services)) -> Response:
    """Serve a blob from the local backend behind its signed URL."""

    backend = services.storage_backends.get("local")
    if not isinstance(backend, LocalStorageBackend):
        raise HTTPException(status_code=404, detail="Not Found")
    if not backend.validate_signed_get_url(key=key, url=str(request.url)):
        raise HTTPException(status_code=403, detail="Forbidden")
    try:
        content = await backend.read(key=key)
    except (FileNotFoundError, ValueError):
        raise HTTPException(status_code=404, detail="Not Found") from None
    return Response(content=content, media_type="application/octet-stream")


@router.get("/v1/archives/{archive_id}", response_model=archive_schemas.ArchiveResponse)
async def get_archive(
    archive_id: uuid.UUID,
    tenant_id: uuid.UUID = Depends(require_tenant),
    session: AsyncSession = Depends(get_db_session),
    services: AppServices = Depends(get_services),
) -> archive_schemas.ArchiveResponse:
    archive = await archive_service_for(session, services).get(archive_id, tenant_id=tenant_id)
    return archive_schemas.ArchiveResponse.model_validate(archive)


@router.get("/v1/archives/{archive_id}/download", response_model=archive_schemas.DownloadUrlResponse)
async def archive_download_url(
    archive_id: uuid.UUID,
    expires_in: int | None = Query(None, ge=60, le=86400),
    tenant_id: uuid.UUID = Depends(require_tenant),
    session: AsyncSession = Depends(get_db_session),
    services: AppServices = Depends(get_services),
) -> archive_schemas.DownloadUrlResponse:
    ttl = expires_in or settings.archive_download_url_ttl_seconds
    url = await archive_service_for(session, services).get_download_url(
        archive_id, tenant_id=tenant_id, expires_in=ttl
    )
    return archive_schemas.DownloadUrlResponse(archive_id=archive_id, url=url, expires_in=ttl)


@router.post("/v1/archives/batch/restore", response_model=archive_schemas.JobQueuedResponse, status_code=202)
async def batch_restore(
    request: archive_schemas.BatchArchiveRequest,
    tenant_id: uuid.UUID = Depends(require_tenant),
    user_id: str | None = Depends(current_user_id),
    session: AsyncSession = Depends(get_db_session),
) -> archive_schemas.JobQueuedResponse:
    archive_ids = [str(archive_id) for archive_id in dict.fromkeys(request.archive_ids)]
    return await _enqueue_batch(
        session,
        ARCHIVE_BATCH_RESTORE,
        tenant_id,
        {"archive_ids": archive_ids, "target_location": request.target_location, "user_id": user_id},
        len(archive_ids),
    )


@router.post("/v1/archives/batch/delete", response_model=archive_schemas.JobQueuedResponse, status_code=202)
async def batch_delete(
    request: archive_schemas.BatchArchiveRequest,
    tenant_id: uuid.UUID = Depends(require_tenant),
    user_id: str | None = Depends(current_user_id),
    session: AsyncSession = Depends(get_db_session),
) -> archive_schemas.JobQueuedResponse:
    archive_ids = [str(archive_id) for archive_id in dict.fromkeys(request.archive_ids)]
    return await _enqueue_batch(
        session, ARCHIVE_BATCH_DELETE, tenant_id, {"archive_ids": archive_ids, "user_id": user_id}, len(archive_ids)
    )


@router.post("/v1/archives/migrate", response_model=archive_schemas.JobQueuedResponse, status_code=202)
async def migrate_storage(
    request: archive_schemas.MigrateStorageRequest,
    tenant_id: uuid.UUID = Depends(require_tenant),
    session: AsyncSession = Depends(get_db_session),
    services: AppServices = Depends(get_services),
) -> archive_schemas.JobQueuedResponse:
    for provider in (request.from_provider, request.to_provider):
        if provider not in services.storage_backends:
            raise HTTPException(status_code=422, detail=f"Unknown storage provider {provider}")
    if request.from_provider == request.to_provider:
        raise HTTPException(status_code=422, detail="Source and destination providers are the same")
    archive_ids = [str(archive_id) for archive_id in dict.fromkeys(request.archive_ids)]
    return await _enqueue_batch(
        session,
        ARCHIVE_MIGRATE_STORAGE,
        tenant_id,
        {"archive_ids": archive_ids, "from_provider": request.from_provider, "to_provider": request.to_provider},
        len(archive_ids),
    )


@router.post("/v1/archives/{archive_id}/restore", response_model=archive_schemas.ArchiveResponse)
async def restore_archive(
    archive_id: uuid.UUID,
    request: archive_schemas.RestoreBody | None = None,
    tenant_id: uuid.UUID = Depends(require_tenant),
    user_id: str | None = Depends(current_user_id),
    session: AsyncSession = Depends(get_db_session),
    services: AppServices = Depends(get_services),
) -> archive_schemas.ArchiveResponse:
    archive_service = archive_service_for(session, services)
    archive = await archive_service.get(archive_id, tenant_id=tenant_id)
    integration = await get_integration(session, tenant_id, archive.platform)
    if integration is None:
        raise IntegrationNotFoundError(archive.platform.value)
    registry = services.connector_registry
    async with registry.create(archive.platform, integration.connector_config()) as connector:
        await refresh_if_needed(connector, integration.integration_id, services.refresh_locks)
        restored = await archive_service.restore(
            archive_id,
            connector_upload(connector),
            tenant_id=tenant_id,
            target_location=request.target_location if request else None,
            restored_by=user_id,
        )
    return archive_schemas.ArchiveResponse.model_validate(restored)
