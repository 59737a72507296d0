from __future__ import annotations

import json
import logging
from typing import Any

from clutterscore.domain.connectors.base import (
    Connector,
    bytes_to_mb,
    infer_file_type,
    mark_duplicates,
    mb_to_gb,
    name_size_hash,
    parse_timestamp,
    utcnow,
)
from clutterscore.domain.connectors.errors import ConnectorError, OperationResult
from clutterscore.domain.connectors.types import AuditData, FileData, Platform, TokenGrant, UserData
from clutterscore.domain.playbooks.metadata import FileItemMetadata, GuestItemMetadata, ItemMetadata
from clutterscore.domain.playbooks.undo_actions import (
    RESTORE_LICENSE,
    RestoreFileAction,
    RestoreLicenseAction,
    RestorePermissionsAction,
    RestoreUserAction,
)
from clutterscore.settings import settings

logger = logging.getLogger(__name__)

ARCHIVE_FOLDER = "/Clutterscore Archive"
CONTENT_URL = "https://content.dropboxapi.com/2"
TOKEN_URL = "https://api.dropbox.com/oauth2/token"


def _member_selector(member_id: str) -> dict[str, str]:
    return {".tag": "team_member_id", "team_member_id": member_id}


class DropboxConnector(Connector):
    platform = Platform.DROPBOX
    base_url = "https://api.dropboxapi.com/2/"

    async def _rpc(self, endpoint: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        if payload is None:
            return await self._json("POST", endpoint)
        return await self._json("POST", endpoint, json=payload)

    async def _probe(self) -> bool:
        await self._rpc("users/get_current_account")
        return True

    async def refresh_token(self) -> TokenGrant:
        return await self._oauth_refresh(
            TOKEN_URL,
            client_id=settings.dropbox_oauth_client_id,
            client_secret=settings.dropbox_oauth_client_secret,
        )

    async def fetch_audit_data(self) -> AuditData:
        files = await self._fetch_files()
        users = await self._fetch_users()
        mark_duplicates(files)
        return AuditData(
            files=files,
            users=users,
            storage_used_gb=mb_to_gb(sum(f.size_mb for f in files)),
            total_licenses=len(users),
            active_users=sum(1 for u in users if u.license_type == "active"),
        )

    async def _fetch_files(self) -> list[FileData]:
        files: list[FileData] = []
        body = await self._rpc(
            "files/list_folder",
            {"path": "", "recursive": True, "include_deleted": False, "include_mounted_folders": True},
        )
        while True:
            for entry in body.get("entries") or []:
                if entry.get(".tag") != "file":
                    continue
                files.append(await self._to_file(entry))
            if not body.get("has_more"):
                break
            body = await self._rpc("files/list_folder/continue", {"cursor": body["cursor"]})
        return files

    async def _to_file(self, entry: dict[str, Any]) -> FileData:
        name = entry.get("name") or "Untitled"
        size_mb = bytes_to_mb(entry.get("size"))
        is_public, shared_with = await self._sharing_info(entry["id"])
        return FileData(
            name=name,
            size_mb=size_mb,
            type=infer_file_type(None, name),
            source=self.platform,
            external_id=entry["id"],
            last_accessed=parse_timestamp(entry.get("client_modified"))
            or parse_timestamp(entry.get("server_modified"))
            or utcnow(),
            mime_type="application/octet-stream",
            file_hash=entry.get("content_hash") or name_size_hash(name, size_mb),
            path=entry.get("path_display") or f"/{name}",
            is_public=is_public,
            shared_with=shared_with,
        )

    async def _sharing_info(self, file_id: str) -> tuple[bool, list[str]]:
        try:
            links = await self._rpc("sharing/list_shared_links", {"path": file_id, "direct_only": True})
            members = await self._rpc("sharing/list_file_members", {"file": file_id})
        except ConnectorError:
            return False, []
        is_public = any(
            link.get(".tag") == "file" and link.get("url") for link in links.get("links") or []
        )
        shared_with = [
            (entry.get("user") or {}).get("email")
            for entry in members.get("users") or []
            if (entry.get("user") or {}).get("email")
        ]
        return is_public, shared_with

    async def _fetch_users(self) -> list[UserData]:
        try:
            body = await self._rpc("team/members/list_v2", {})
        except ConnectorError:
            # Personal accounts have no team API; fall back to the signed-in account.
            try:
                account = await self._rpc("users/get_current_account")
            except ConnectorError as exc:
                logger.warning("dropbox_account_unavailable", extra={"extra": {"error": exc.code}})
                return []
            return [
                UserData(
                    email=account.get("email") or "",
                    name=(account.get("name") or {}).get("display_name") or "Unknown User",
                    source=self.platform,
                    role="owner",
                    external_id=account.get("account_id"),
                    license_type="active",
                )
            ]
        users: list[UserData] = []
        for member in body.get("members") or []:
            profile = member.get("profile") or {}
            status = (profile.get("status") or {}).get(".tag")
            membership = (profile.get("membership_type") or {}).get(".tag")
            users.append(
                UserData(
                    email=profile.get("email") or "",
                    name=(profile.get("name") or {}).get("display_name") or "Unknown User",
                    source=self.platform,
                    role="admin" if (member.get("role") or {}).get(".tag") == "team_admin" else "user",
                    external_id=profile.get("team_member_id"),
                    is_guest=membership == "limited" or status == "invited",
                    license_type="active" if status == "active" else "inactive",
                )
            )
        return users

    async def _ensure_archive_folder(self) -> None:
        try:
            await self._rpc("files/create_folder_v2", {"path": ARCHIVE_FOLDER, "autorename": False})
        except ConnectorError as exc:
            if exc.status_code != 409:
                raise

    async def archive_file(self, file_id: str, metadata: FileItemMetadata) -> OperationResult:
        await self._ensure_archive_folder()
        original_path = metadata.path or file_id
        file_name = original_path.rstrip("/").split("/")[-1] or file_id
        moved = await self._rpc(
            "files/move_v2",
            {"from_path": file_id, "to_path": f"{ARCHIVE_FOLDER}/{file_name}", "autorename": True},
        )
        archive_path = (moved.get("metadata") or {}).get("path_display")
        logger.info("dropbox_file_archived", extra={"extra": {"file_id": file_id}})
        return OperationResult.success(
            original_path=original_path,
            archive_path=archive_path,
            archived_at=utcnow().isoformat(),
        )

    async def restore_file(self, action: RestoreFileAction) -> OperationResult:
        if not action.original_path:
            raise ConnectorError("dropbox_missing_original_path", "Original file path not found in undo metadata")
        try:
            await self._rpc(
                "files/move_v2",
                {
                    "from_path": action.archive_path or action.file_id,
                    "to_path": action.original_path,
                    "autorename": False,
                },
            )
        except ConnectorError as exc:
            if exc.status_code == 409:
                raise ConnectorError(
                    "dropbox_restore_conflict",
                    f"Cannot restore: file already exists at {action.original_path}",
                    status_code=409,
                ) from exc
            raise
        return OperationResult.success()

    async def update_permissions(self, file_id: str, metadata: FileItemMetadata) -> OperationResult:
        is_public, shared_with = await self._sharing_info(file_id)
        links = await self._rpc("sharing/list_shared_links", {"path": file_id})
        for link in links.get("links") or []:
            if link.get(".tag") == "file":
                await self._rpc("sharing/revoke_shared_link", {"url": link["url"]})
        members = await self._rpc("sharing/list_file_members", {"file": file_id})
        for entry in members.get("users") or []:
            account_id = (entry.get("user") or {}).get("account_id")
            if account_id:
                await self._rpc(
                    "sharing/remove_file_member_2",
                    {"file": file_id, "member": {".tag": "dropbox_id", "dropbox_id": account_id}},
                )
        return OperationResult.success(
            original_sharing={"is_public": is_public, "shared_with": shared_with}
        )

    async def restore_permissions(self, action: RestorePermissionsAction) -> OperationResult:
        sharing = action.original_sharing
        if sharing.get("is_public"):
            await self._rpc(
                "sharing/create_shared_link_with_settings",
                {"path": action.file_id, "settings": {"requested_visibility": {".tag": "public"}}},
            )
        emails = sharing.get("shared_with") or []
        if emails:
            await self._rpc(
                "sharing/add_file_member",
                {
                    "file": action.file_id,
                    "members": [{".tag": "email", "email": email} for email in emails],
                    "quiet": True,
                },
            )
        return OperationResult.success()

    async def remove_guest(self, user_id: str, metadata: GuestItemMetadata) -> OperationResult:
        await self._rpc(
            "team/members/remove",
            {"user": _member_selector(user_id), "wipe_data": False, "keep_account": False},
        )
        return OperationResult.success(user_id=user_id)

    async def restore_user(self, action: RestoreUserAction) -> OperationResult:
        await self._rpc("team/members/recover", {"user": _member_selector(action.user_id)})
        return OperationResult.success()

    async def revoke_access(self, target_id: str, metadata: ItemMetadata) -> OperationResult:
        if not isinstance(metadata, GuestItemMetadata):
            return await super().revoke_access(target_id, metadata)
        await self._rpc("team/members/suspend", {"user": _member_selector(target_id), "wipe_data": False})
        return OperationResult.success(undo_type=RESTORE_LICENSE, user_id=target_id)

    async def restore_license(self, action: RestoreLicenseAction) -> OperationResult:
        await self._rpc("team/members/unsuspend", {"user": _member_selector(action.user_id)})
        return OperationResult.success()

    async def download_file(self, file_id: str, metadata: FileItemMetadata) -> tuple[bytes, str]:
        response = await self._request(
            "POST",
            f"{CONTENT_URL}/files/download",
            headers={"Dropbox-API-Arg": json.dumps({"path": file_id})},
        )
        return response.content, "application/octet-stream"

    async def upload_file(
        self, content: bytes, *, file_name: str, mime_type: str | None, target_location: str | None
    ) -> str:
        path = target_location or f"/{file_name}"
        if path.endswith("/"):
            path = f"{path}{file_name}"
        body = await self._json(
            "POST",
            f"{CONTENT_URL}/files/upload",
            headers={
                "Dropbox-API-Arg": json.dumps({"path": path, "mode": "add", "autorename": True}),
                "Content-Type": "application/octet-stream",
            },
            content=content,
        )
        return body.get("id") or path
