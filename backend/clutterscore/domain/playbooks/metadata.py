from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _ItemMetadataBase(BaseModel):
    # Platforms disagree on a few optional keys; unknown ones are kept, not dropped.
    model_config = ConfigDict(extra="allow")


class FileItemMetadata(_ItemMetadataBase):
    kind: Literal["file"] = "file"
    path: str | None = None
    parent_id: str | None = None
    size_mb: float = 0.0
    file_type: str | None = None
    mime_type: str | None = None
    url: str | None = None
    owner_email: str | None = None
    is_public: bool = False
    shared_with: list[str] = Field(default_factory=list)
    duplicate_group: str | None = None
    last_accessed: datetime | None = None


class GuestItemMetadata(_ItemMetadataBase):
    kind: Literal["guest"] = "guest"
    email: str
    name: str | None = None
    role: str = "guest"
    license_type: str | None = None
    group_id: str | None = None
    last_active: datetime | None = None


class ChannelItemMetadata(_ItemMetadataBase):
    kind: Literal["channel"] = "channel"
    channel_name: str
    member_count: int = 0
    is_private: bool = False
    last_activity: datetime | None = None


ItemMetadata = Annotated[
    Union[FileItemMetadata, GuestItemMetadata, ChannelItemMetadata],
    Field(discriminator="kind"),
]

ITEM_METADATA_ADAPTER: TypeAdapter[ItemMetadata] = TypeAdapter(ItemMetadata)


def parse_item_metadata(raw: dict[str, Any]) -> ItemMetadata:
    return ITEM_METADATA_ADAPTER.validate_python(raw)


def dump_item_metadata(metadata: ItemMetadata) -> dict[str, Any]:
    return metadata.model_dump(mode="json")
