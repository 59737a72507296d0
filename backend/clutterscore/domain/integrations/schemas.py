from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from clutterscore.domain.connectors.types import Platform
from clutterscore.domain.integrations.db_models import SyncStatus


class IntegrationResponse(BaseModel):
    integration_id: UUID
    platform: Platform
    is_active: bool
    sync_status: SyncStatus
    last_sync_at: datetime | None = None
    last_error: str | None = None
    last_error_at: datetime | None = None
    expires_at: datetime | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class IntegrationListResponse(BaseModel):
    items: list[IntegrationResponse]
    capabilities: dict[str, list[str]]


class ConnectionTestResponse(BaseModel):
    platform: Platform
    connected: bool


class SyncResponse(BaseModel):
    platform: Platform
    success: bool
    total_files: int
    total_users: int
    total_channels: int
