from __future__ import annotations

import uuid
from datetime import datetime

import sqlalchemy as sa
from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.types import JSON

from clutterscore.domain.connectors.types import ActionType, Platform
from clutterscore.domain.playbooks.metadata import ItemMetadata, parse_item_metadata
from clutterscore.domain.playbooks.statuses import AuditLogStatus, ImpactType, PlaybookStatus, RiskLevel
from clutterscore.infra.db import Base, UUID_TYPE


class Playbook(Base):
    __tablename__ = "playbooks"

    playbook_id: Mapped[uuid.UUID] = mapped_column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID_TYPE,
        ForeignKey("tenants.tenant_id", ondelete="CASCADE"),
        nullable=False,
    )
    audit_result_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID_TYPE,
        ForeignKey("audit_results.audit_result_id", ondelete="SET NULL"),
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    impact: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    impact_type: Mapped[ImpactType] = mapped_column(
        sa.Enum(ImpactType, name="playbook_impact_type"),
        nullable=False,
    )
    source: Mapped[Platform] = mapped_column(sa.Enum(Platform, name="playbook_source_platform"), nullable=False)
    risk: Mapped[RiskLevel] = mapped_column(sa.Enum(RiskLevel, name="playbook_risk"), nullable=False)
    item_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    estimated_savings: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    status: Mapped[PlaybookStatus] = mapped_column(
        sa.Enum(PlaybookStatus, name="playbook_status"),
        nullable=False,
        default=PlaybookStatus.PENDING,
    )
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    approved_by: Mapped[str | None] = mapped_column(String(128))
    executed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    executed_by: Mapped[str | None] = mapped_column(String(128))
    items_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    items_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    execution_duration_ms: Mapped[int | None] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    items: Mapped[list["PlaybookItem"]] = relationship(
        "PlaybookItem",
        back_populates="playbook",
        cascade="all, delete-orphan",
        order_by="PlaybookItem.position",
    )

    __table_args__ = (
        Index("ix_playbooks_tenant_status", "tenant_id", "status"),
        Index("ix_playbooks_audit_result", "audit_result_id"),
    )


class PlaybookItem(Base):
    __tablename__ = "playbook_items"

    item_id: Mapped[uuid.UUID] = mapped_column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    playbook_id: Mapped[uuid.UUID] = mapped_column(
        UUID_TYPE,
        ForeignKey("playbooks.playbook_id", ondelete="CASCADE"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    item_name: Mapped[str] = mapped_column(String(512), nullable=False)
    item_type: Mapped[str] = mapped_column(String(32), nullable=False)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    metadata_json: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    is_selected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="1")

    playbook: Mapped[Playbook] = relationship("Playbook", back_populates="items")

    def item_metadata(self) -> ItemMetadata:
        return parse_item_metadata(self.metadata_json or {"kind": self.item_type})


class AuditLogEntry(Base):
    __tablename__ = "audit_log_entries"

    entry_id: Mapped[uuid.UUID] = mapped_column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID_TYPE,
        ForeignKey("tenants.tenant_id", ondelete="CASCADE"),
        nullable=False,
    )
    playbook_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID_TYPE,
        ForeignKey("playbooks.playbook_id", ondelete="SET NULL"),
    )
    action_type: Mapped[ActionType] = mapped_column(
        sa.Enum(ActionType, name="audit_log_action_type"),
        nullable=False,
    )
    target: Mapped[str] = mapped_column(String(255), nullable=False)
    target_type: Mapped[str] = mapped_column(String(32), nullable=False)
    executor: Mapped[str] = mapped_column(String(128), nullable=False)
    user_id: Mapped[str | None] = mapped_column(String(128))
    status: Mapped[AuditLogStatus] = mapped_column(
        sa.Enum(AuditLogStatus, name="audit_log_status"),
        nullable=False,
        default=AuditLogStatus.PENDING,
    )
    details: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    undo_actions: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    undo_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_audit_log_entries_tenant_created", "tenant_id", "created_at"),
        Index("ix_audit_log_entries_playbook", "playbook_id"),
    )
