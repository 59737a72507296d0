"""Typed undo ledger records.

Every variant carries exactly what its inverse connector call needs, plus the
`executed_at`/`executed_by` stamp and a snapshot of the item metadata at the time
of the forward action. Records are stored as a JSON list on the audit log entry.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from clutterscore.domain.connectors.errors import OperationResult
from clutterscore.domain.connectors.types import ActionType, Platform
from clutterscore.domain.playbooks.metadata import (
    ChannelItemMetadata,
    FileItemMetadata,
    GuestItemMetadata,
    ItemMetadata,
)

RESTORE_FILE = "restore_file"
RESTORE_ACCESS = "restore_access"
RESTORE_PERMISSIONS = "restore_permissions"
RESTORE_CHANNEL = "restore_channel"
RESTORE_USER = "restore_user"
RESTORE_LICENSE = "restore_license"


class _UndoActionBase(BaseModel):
    item_id: uuid.UUID | None = None
    executed_at: datetime
    executed_by: str
    original_metadata: dict[str, Any] = Field(default_factory=dict)


class RestoreFileAction(_UndoActionBase):
    type: Literal["restore_file"] = RESTORE_FILE
    file_id: str
    file_name: str
    original_path: str = ""
    original_parent_id: str | None = None
    archive_folder_id: str | None = None
    archive_path: str | None = None
    source: Platform


class RestoreAccessAction(_UndoActionBase):
    type: Literal["restore_access"] = RESTORE_ACCESS
    user_id: str
    user_email: str
    group_id: str | None = None
    role: str | None = None
    permissions: list[dict[str, Any]] | None = None


class RestorePermissionsAction(_UndoActionBase):
    type: Literal["restore_permissions"] = RESTORE_PERMISSIONS
    file_id: str
    file_name: str
    original_sharing: dict[str, Any] = Field(default_factory=dict)


class RestoreChannelAction(_UndoActionBase):
    type: Literal["restore_channel"] = RESTORE_CHANNEL
    channel_id: str
    channel_name: str
    is_private: bool = False
    member_count: int = 0


class RestoreUserAction(_UndoActionBase):
    type: Literal["restore_user"] = RESTORE_USER
    user_id: str
    user_email: str
    role: str = "guest"
    license_type: str | None = None


class RestoreLicenseAction(_UndoActionBase):
    type: Literal["restore_license"] = RESTORE_LICENSE
    user_id: str
    user_email: str


UndoAction = Annotated[
    Union[
        RestoreFileAction,
        RestoreAccessAction,
        RestorePermissionsAction,
        RestoreChannelAction,
        RestoreUserAction,
        RestoreLicenseAction,
    ],
    Field(discriminator="type"),
]

UNDO_ACTIONS_ADAPTER: TypeAdapter[list[UndoAction]] = TypeAdapter(list[UndoAction])

DEFAULT_UNDO_TYPES: dict[ActionType, str] = {
    ActionType.ARCHIVE_FILE: RESTORE_FILE,
    ActionType.UPDATE_PERMISSIONS: RESTORE_PERMISSIONS,
    ActionType.ARCHIVE_CHANNEL: RESTORE_CHANNEL,
    ActionType.REMOVE_GUEST: RESTORE_USER,
    ActionType.REVOKE_ACCESS: RESTORE_PERMISSIONS,
}


def load_undo_actions(raw: list[dict[str, Any]] | None) -> list[UndoAction]:
    return UNDO_ACTIONS_ADAPTER.validate_python(raw or [])


def dump_undo_actions(actions: list[UndoAction]) -> list[dict[str, Any]]:
    return UNDO_ACTIONS_ADAPTER.dump_python(actions, mode="json")


def _default_undo_type(action: ActionType, metadata: ItemMetadata) -> str:
    if action == ActionType.REVOKE_ACCESS and isinstance(metadata, GuestItemMetadata):
        return RESTORE_USER
    return DEFAULT_UNDO_TYPES[action]


def build_undo_action(
    action: ActionType,
    *,
    item_id: uuid.UUID | None,
    item_name: str,
    external_id: str,
    metadata: ItemMetadata,
    platform: Platform,
    result: OperationResult,
    executed_at: datetime,
    executed_by: str,
) -> UndoAction:
    """Build the inverse record for one forward action that succeeded."""

    if not result.ok:
        raise ValueError("undo_action_requires_success")

    details = result.details
    undo_type = result.undo_type or _default_undo_type(action, metadata)
    common: dict[str, Any] = {
        "item_id": item_id,
        "executed_at": executed_at,
        "executed_by": executed_by,
        "original_metadata": {**metadata.model_dump(mode="json"), **details},
    }

    if undo_type == RESTORE_FILE:
        path = metadata.path if isinstance(metadata, FileItemMetadata) else None
        parent_id = metadata.parent_id if isinstance(metadata, FileItemMetadata) else None
        return RestoreFileAction(
            file_id=external_id,
            file_name=item_name,
            original_path=details.get("original_path") or path or "",
            original_parent_id=details.get("original_parent_id") or parent_id,
            archive_folder_id=details.get("archive_folder_id"),
            archive_path=details.get("archive_path"),
            source=platform,
            **common,
        )
    if undo_type == RESTORE_PERMISSIONS:
        sharing = details.get("original_sharing")
        if sharing is None and isinstance(metadata, FileItemMetadata):
            sharing = {"is_public": metadata.is_public, "shared_with": list(metadata.shared_with)}
        return RestorePermissionsAction(
            file_id=external_id,
            file_name=item_name,
            original_sharing=sharing or {},
            **common,
        )
    if undo_type == RESTORE_CHANNEL:
        channel = metadata if isinstance(metadata, ChannelItemMetadata) else None
        return RestoreChannelAction(
            channel_id=external_id,
            channel_name=channel.channel_name if channel else item_name,
            is_private=channel.is_private if channel else False,
            member_count=channel.member_count if channel else 0,
            **common,
        )

    guest = metadata if isinstance(metadata, GuestItemMetadata) else None
    user_id = details.get("user_id") or external_id
    user_email = guest.email if guest else details.get("user_email", "")
    if undo_type == RESTORE_USER:
        return RestoreUserAction(
            user_id=user_id,
            user_email=user_email,
            role=guest.role if guest else "guest",
            license_type=guest.license_type if guest else None,
            **common,
        )
    if undo_type == RESTORE_ACCESS:
        return RestoreAccessAction(
            user_id=user_id,
            user_email=user_email,
            group_id=details.get("group_id") or (guest.group_id if guest else None),
            role=details.get("role"),
            permissions=details.get("permissions"),
            **common,
        )
    if undo_type == RESTORE_LICENSE:
        return RestoreLicenseAction(user_id=user_id, user_email=user_email, **common)
    raise ValueError(f"unknown_undo_type:{undo_type}")
