from fastapi import HTTPException, Request

from clutterscore.domain.archives.service import ArchiveService
from clutterscore.services import AppServices, resolve_services


def get_services(request: Request) -> AppServices:
    services = resolve_services(request.app)
    if services is None:
        raise HTTPException(status_code=503, detail="Services unavailable")
    return services


def archive_service_for(session, services: AppServices) -> ArchiveService:
    return ArchiveService(session, services.storage, backends=services.storage_backends)
