from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class Platform(str, Enum):
    SLACK = "SLACK"
    GOOGLE = "GOOGLE"
    DROPBOX = "DROPBOX"
    NOTION = "NOTION"
    FIGMA = "FIGMA"
    LINEAR = "LINEAR"
    JIRA = "JIRA"


CHAT_PLATFORMS = frozenset({Platform.SLACK})


class FileType(str, Enum):
    IMAGE = "IMAGE"
    VIDEO = "VIDEO"
    MUSIC = "MUSIC"
    DOCUMENT = "DOCUMENT"
    ARCHIVE = "ARCHIVE"
    DATABASE = "DATABASE"
    OTHER = "OTHER"


class ActionType(str, Enum):
    ARCHIVE_FILE = "ARCHIVE_FILE"
    UPDATE_PERMISSIONS = "UPDATE_PERMISSIONS"
    ARCHIVE_CHANNEL = "ARCHIVE_CHANNEL"
    REMOVE_GUEST = "REMOVE_GUEST"
    REVOKE_ACCESS = "REVOKE_ACCESS"


@dataclass
class ConnectorConfig:
    access_token: str
    tenant_id: uuid.UUID
    refresh_token: str | None = None
    expires_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None


@dataclass
class FileData:
    name: str
    size_mb: float
    type: FileType
    source: Platform
    external_id: str
    last_accessed: datetime
    mime_type: str | None = None
    file_hash: str | None = None
    url: str | None = None
    path: str | None = None
    parent_id: str | None = None
    owner_email: str | None = None
    is_public: bool = False
    shared_with: list[str] = field(default_factory=list)
    is_duplicate: bool = False
    duplicate_group: str | None = None

    @property
    def duplicate_key(self) -> str:
        return self.file_hash or f"{self.name}-{self.size_mb}"


@dataclass
class UserData:
    email: str
    name: str
    source: Platform
    role: str = "user"
    external_id: str | None = None
    last_active: datetime | None = None
    is_guest: bool = False
    license_type: str | None = None


@dataclass
class ChannelData:
    external_id: str
    name: str
    source: Platform
    member_count: int = 0
    last_activity: datetime | None = None
    is_archived: bool = False
    is_private: bool = False


@dataclass
class AuditData:
    files: list[FileData]
    users: list[UserData]
    storage_used_gb: float
    total_licenses: int
    active_users: int
    channels: list[ChannelData] | None = None
