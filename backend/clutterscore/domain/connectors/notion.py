from __future__ import annotations

import logging
from typing import Any

from clutterscore.domain.connectors.base import (
    Connector,
    mark_duplicates,
    mb_to_gb,
    name_size_hash,
    parse_timestamp,
    utcnow,
)
from clutterscore.domain.connectors.errors import OperationResult
from clutterscore.domain.connectors.types import AuditData, FileData, FileType, Platform, UserData
from clutterscore.domain.playbooks.metadata import FileItemMetadata
from clutterscore.domain.playbooks.undo_actions import RestoreFileAction

logger = logging.getLogger(__name__)

NOTION_VERSION = "2022-06-28"
PAGE_SIZE_ESTIMATE_MB = 0.1


def _page_title(page: dict[str, Any]) -> str:
    properties = page.get("properties") or {}
    for prop in properties.values():
        if isinstance(prop, dict) and prop.get("type") == "title":
            parts = prop.get("title") or []
            if parts:
                return parts[0].get("plain_text") or "Untitled"
    title = (properties.get("title") or {}).get("title") or []
    return title[0].get("plain_text", "Untitled") if title else "Untitled"


class NotionConnector(Connector):
    platform = Platform.NOTION
    base_url = "https://api.notion.com/v1/"

    def _auth_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.access_token}",
            "Notion-Version": NOTION_VERSION,
        }

    async def _probe(self) -> bool:
        await self._json("GET", "users/me")
        return True

    async def fetch_audit_data(self) -> AuditData:
        files = await self._fetch_pages()
        users = await self._fetch_users()
        mark_duplicates(files)
        return AuditData(
            files=files,
            users=users,
            storage_used_gb=mb_to_gb(sum(f.size_mb for f in files)),
            total_licenses=len(users),
            active_users=len(users),
        )

    async def _fetch_pages(self) -> list[FileData]:
        files: list[FileData] = []
        cursor: str | None = None
        while True:
            payload: dict[str, Any] = {
                "filter": {"property": "object", "value": "page"},
                "page_size": 100,
            }
            if cursor:
                payload["start_cursor"] = cursor
            body = await self._json("POST", "search", json=payload)
            for page in body.get("results") or []:
                if page.get("object") != "page" or "properties" not in page:
                    continue
                title = _page_title(page)
                files.append(
                    FileData(
                        name=title,
                        size_mb=PAGE_SIZE_ESTIMATE_MB,
                        type=FileType.DOCUMENT,
                        source=self.platform,
                        external_id=page["id"],
                        last_accessed=parse_timestamp(page.get("last_edited_time")) or utcnow(),
                        mime_type="application/vnd.notion.page",
                        file_hash=name_size_hash(title, PAGE_SIZE_ESTIMATE_MB),
                        url=page.get("url"),
                        path=f"/{title}",
                        parent_id=(page.get("parent") or {}).get("page_id"),
                        is_public=bool(page.get("public_url")),
                    )
                )
            cursor = body.get("next_cursor") if body.get("has_more") else None
            if not cursor:
                break
        return files

    async def _fetch_users(self) -> list[UserData]:
        users: list[UserData] = []
        cursor: str | None = None
        while True:
            params: dict[str, Any] = {"page_size": 100}
            if cursor:
                params["start_cursor"] = cursor
            body = await self._json("GET", "users", params=params)
            for user in body.get("results") or []:
                if user.get("type") != "person":
                    continue
                users.append(
                    UserData(
                        email=(user.get("person") or {}).get("email") or f"{user['id']}@notion.local",
                        name=user.get("name") or "Unknown User",
                        source=self.platform,
                        external_id=user["id"],
                        license_type="full",
                    )
                )
            cursor = body.get("next_cursor") if body.get("has_more") else None
            if not cursor:
                break
        return users

    async def archive_file(self, file_id: str, metadata: FileItemMetadata) -> OperationResult:
        page = await self._json("GET", f"pages/{file_id}")
        original_state = {
            "title": _page_title(page),
            "url": page.get("url"),
            "is_archived": bool(page.get("archived")),
            "public_url": page.get("public_url"),
        }
        await self._json("PATCH", f"pages/{file_id}", json={"archived": True})
        logger.info("notion_page_archived", extra={"extra": {"page_id": file_id}})
        return OperationResult.success(original_state=original_state, archived_at=utcnow().isoformat())

    async def restore_file(self, action: RestoreFileAction) -> OperationResult:
        page = await self._json("GET", f"pages/{action.file_id}")
        if not page.get("archived"):
            return OperationResult.success(already_active=True)
        await self._json("PATCH", f"pages/{action.file_id}", json={"archived": False})
        return OperationResult.success()

    async def update_permissions(self, file_id: str, metadata: FileItemMetadata) -> OperationResult:
        page = await self._json("GET", f"pages/{file_id}")
        original_sharing = {
            "is_public": bool(page.get("public_url")),
            "public_url": page.get("public_url"),
            "shared_with": [],
        }
        await self._json("PATCH", f"pages/{file_id}", json={"public_url": None})
        return OperationResult.success(original_sharing=original_sharing)
