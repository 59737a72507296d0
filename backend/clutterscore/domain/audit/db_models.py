from __future__ import annotations

import uuid
from datetime import datetime

import sqlalchemy as sa
from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.types import JSON

from clutterscore.domain.connectors.types import Platform
from clutterscore.infra.db import Base, UUID_TYPE


class AuditResult(Base):
    __tablename__ = "audit_results"

    audit_result_id: Mapped[uuid.UUID] = mapped_column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID_TYPE,
        ForeignKey("tenants.tenant_id", ondelete="CASCADE"),
        nullable=False,
    )
    score: Mapped[int] = mapped_column(Integer, nullable=False)
    estimated_savings: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    storage_waste: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    license_waste: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    wasted_storage_mb: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    storage_used_gb: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    duplicate_files: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    public_files: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    inactive_users: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    guest_users: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    active_risks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    critical_risks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    moderate_risks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_files: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_users: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    platforms: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    platform_errors: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    created_by: Mapped[str | None] = mapped_column(String(128))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    files: Mapped[list["FileRecord"]] = relationship(
        "FileRecord",
        back_populates="audit_result",
        cascade="all, delete-orphan",
    )

    __table_args__ = (Index("ix_audit_results_tenant_created", "tenant_id", "created_at"),)


class FileRecord(Base):
    __tablename__ = "file_records"

    file_record_id: Mapped[uuid.UUID] = mapped_column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    audit_result_id: Mapped[uuid.UUID] = mapped_column(
        UUID_TYPE,
        ForeignKey("audit_results.audit_result_id", ondelete="CASCADE"),
        nullable=False,
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID_TYPE, nullable=False)
    name: Mapped[str] = mapped_column(String(512), nullable=False)
    size_mb: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    file_type: Mapped[str] = mapped_column(String(32), nullable=False)
    source: Mapped[Platform] = mapped_column(sa.Enum(Platform, name="file_source_platform"), nullable=False)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    mime_type: Mapped[str | None] = mapped_column(String(255))
    file_hash: Mapped[str | None] = mapped_column(String(128))
    url: Mapped[str | None] = mapped_column(Text)
    path: Mapped[str | None] = mapped_column(Text)
    owner_email: Mapped[str | None] = mapped_column(String(320))
    is_public: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    shared_with: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    is_duplicate: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    duplicate_group: Mapped[str | None] = mapped_column(String(255))
    last_accessed: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    audit_result: Mapped[AuditResult] = relationship("AuditResult", back_populates="files")

    __table_args__ = (
        Index("ix_file_records_audit", "audit_result_id"),
        Index("ix_file_records_tenant_source", "tenant_id", "source"),
    )


class ScoreTrend(Base):
    __tablename__ = "score_trends"

    trend_id: Mapped[uuid.UUID] = mapped_column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID_TYPE,
        ForeignKey("tenants.tenant_id", ondelete="CASCADE"),
        nullable=False,
    )
    month: Mapped[str] = mapped_column(String(7), nullable=False)
    score: Mapped[int] = mapped_column(Integer, nullable=False)
    active_risks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    estimated_savings: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __table_args__ = (sa.UniqueConstraint("tenant_id", "month", name="uq_score_trends_tenant_month"),)
