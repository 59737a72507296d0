from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from clutterscore.domain.archives.db_models import ArchiveStatus
from clutterscore.domain.connectors.types import Platform


class ArchiveResponse(BaseModel):
    archive_id: UUID
    platform: Platform
    external_id: str
    file_name: str
    size_bytes: int
    size_mb: float
    mime_type: str | None = None
    storage_provider: str
    status: ArchiveStatus
    original_path: str | None = None
    archived_by: str | None = None
    archived_at: datetime | None = None
    expires_at: datetime | None = None
    restored_at: datetime | None = None
    restored_by: str | None = None
    deleted_at: datetime | None = None
    last_error: str | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ArchiveListResponse(BaseModel):
    items: list[ArchiveResponse]


class DownloadUrlResponse(BaseModel):
    archive_id: UUID
    url: str
    expires_in: int


class RestoreBody(BaseModel):
    target_location: str | None = Field(None, max_length=1024)


class BatchArchiveRequest(BaseModel):
    archive_ids: list[UUID] = Field(..., min_length=1, max_length=500)
    target_location: str | None = Field(None, max_length=1024)


class MigrateStorageRequest(BaseModel):
    archive_ids: list[UUID] = Field(..., min_length=1, max_length=500)
    from_provider: str
    to_provider: str


class JobQueuedResponse(BaseModel):
    job_id: UUID
    event: str
    status: str
    total: int
