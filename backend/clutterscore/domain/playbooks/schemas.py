from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from clutterscore.domain.connectors.types import ActionType, Platform
from clutterscore.domain.playbooks.statuses import AuditLogStatus, ImpactType, PlaybookStatus, RiskLevel


class PlaybookItemResponse(BaseModel):
    item_id: UUID
    position: int
    item_name: str
    item_type: str
    external_id: str
    is_selected: bool
    metadata: dict = Field(default_factory=dict, validation_alias="metadata_json")

    model_config = ConfigDict(from_attributes=True)


class PlaybookResponse(BaseModel):
    playbook_id: UUID
    audit_result_id: UUID | None = None
    title: str
    description: str
    impact: str
    impact_type: ImpactType
    source: Platform
    risk: RiskLevel
    item_count: int
    estimated_savings: float
    status: PlaybookStatus
    approved_at: datetime | None = None
    approved_by: str | None = None
    executed_at: datetime | None = None
    executed_by: str | None = None
    items_processed: int = 0
    items_failed: int = 0
    created_at: datetime
    items: list[PlaybookItemResponse] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class PlaybookListResponse(BaseModel):
    items: list[PlaybookResponse]


class ItemSelection(BaseModel):
    item_id: UUID
    selected: bool


class ItemSelectionRequest(BaseModel):
    items: list[ItemSelection] = Field(..., min_length=1)


class ExecutionResponse(BaseModel):
    success: bool
    playbook_id: UUID
    status: PlaybookStatus
    audit_log_status: AuditLogStatus
    audit_log_id: UUID | None = None
    items_processed: int
    items_failed: int
    items_skipped: int
    undo_actions: int
    partial_undo: bool
    duration_ms: int


class AuditLogEntryResponse(BaseModel):
    entry_id: UUID
    playbook_id: UUID | None = None
    action_type: ActionType
    target: str
    target_type: str
    executor: str
    user_id: str | None = None
    status: AuditLogStatus
    details: dict = Field(default_factory=dict)
    undo_actions: list = Field(default_factory=list)
    undo_expires_at: datetime | None = None
    created_at: datetime
    undoable: bool = False

    model_config = ConfigDict(from_attributes=True)


class AuditLogListResponse(BaseModel):
    items: list[AuditLogEntryResponse]


class UndoRequest(BaseModel):
    item_id: UUID | None = None


class UndoResponse(BaseModel):
    success: bool
    entry_id: UUID
    status: AuditLogStatus
    restored: int
    failed: int
    skipped: int
    remaining: int
    partial_undo: bool
    errors: list[dict] = Field(default_factory=list)
