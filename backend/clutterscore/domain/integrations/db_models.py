from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum

import sqlalchemy as sa
from sqlalchemy import Boolean, DateTime, ForeignKey, Index, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

from clutterscore.domain.connectors.types import ConnectorConfig, Platform
from clutterscore.infra.db import Base, UUID_TYPE
from clutterscore.shared.clock import ensure_aware_or_none


class SyncStatus(str, Enum):
    IDLE = "IDLE"
    SYNCING = "SYNCING"
    ERROR = "ERROR"


class Integration(Base):
    __tablename__ = "integrations"

    integration_id: Mapped[uuid.UUID] = mapped_column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID_TYPE,
        ForeignKey("tenants.tenant_id", ondelete="CASCADE"),
        nullable=False,
    )
    platform: Mapped[Platform] = mapped_column(
        sa.Enum(Platform, name="integration_platform"),
        nullable=False,
    )
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[str | None] = mapped_column(Text)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    metadata_json: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="1")
    sync_status: Mapped[SyncStatus] = mapped_column(
        sa.Enum(SyncStatus, name="integration_sync_status"),
        nullable=False,
        default=SyncStatus.IDLE,
    )
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_error: Mapped[str | None] = mapped_column(Text)
    last_error_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __table_args__ = (
        sa.UniqueConstraint("tenant_id", "platform", name="uq_integrations_tenant_platform"),
        Index("ix_integrations_tenant_active", "tenant_id", "is_active"),
    )

    def connector_config(self) -> ConnectorConfig:
        return ConnectorConfig(
            access_token=self.access_token,
            tenant_id=self.tenant_id,
            refresh_token=self.refresh_token,
            expires_at=ensure_aware_or_none(self.expires_at),
            metadata=dict(self.metadata_json or {}),
        )
