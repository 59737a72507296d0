from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from clutterscore.domain.playbooks.schemas import PlaybookResponse


class AuditResultResponse(BaseModel):
    audit_result_id: UUID
    score: int
    estimated_savings: float
    storage_waste: float
    license_waste: float
    wasted_storage_mb: float
    storage_used_gb: float
    duplicate_files: int
    public_files: int
    inactive_users: int
    guest_users: int
    active_risks: int
    critical_risks: int
    moderate_risks: int
    total_files: int
    total_users: int
    platforms: list[str] = Field(default_factory=list)
    platform_errors: dict[str, str] = Field(default_factory=dict)
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class LatestAuditResponse(BaseModel):
    audit: AuditResultResponse | None = None
    playbooks: list[PlaybookResponse] = Field(default_factory=list)


class AuditRunResponse(BaseModel):
    success: bool
    audit_result_id: UUID
    score: int
    estimated_savings: float
    playbooks_created: int
    platforms: list[str]
    platform_errors: dict[str, str]


class ScoreTrendPoint(BaseModel):
    month: str
    score: int
    active_risks: int
    estimated_savings: float

    model_config = ConfigDict(from_attributes=True)


class ScoreTrendResponse(BaseModel):
    items: list[ScoreTrendPoint]
