from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
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
    RESTORE_ACCESS,
    RESTORE_LICENSE,
    RestoreAccessAction,
    RestoreFileAction,
    RestoreLicenseAction,
    RestorePermissionsAction,
    RestoreUserAction,
)
from clutterscore.settings import settings

logger = logging.getLogger(__name__)

DRIVE_URL = "https://www.googleapis.com/drive/v3"
DIRECTORY_URL = "https://admin.googleapis.com/admin/directory/v1"
UPLOAD_URL = "https://www.googleapis.com/upload/drive/v3"
TOKEN_URL = "https://oauth2.googleapis.com/token"
FILE_FIELDS = (
    "nextPageToken, files(id, name, size, mimeType, md5Checksum, webViewLink, owners, "
    "viewedByMeTime, shared, permissions, createdTime, modifiedTime, parents)"
)
PUBLIC_PERMISSION_TYPES = {"anyone", "domain"}
GOOGLE_APPS_PREFIX = "application/vnd.google-apps"
ACTIVE_WINDOW = timedelta(days=30)


def _email_domain(email: str) -> str:
    return email.rsplit("@", 1)[-1].lower() if "@" in email else ""


def _license_type(user: dict[str, Any]) -> str:
    if user.get("archived"):
        return "archived"
    if user.get("suspended"):
        return "suspended"
    return "active"


class GoogleConnector(Connector):
    platform = Platform.GOOGLE

    async def _probe(self) -> bool:
        await self._json("GET", f"{DRIVE_URL}/about", params={"fields": "user"})
        return True

    async def refresh_token(self) -> TokenGrant:
        return await self._oauth_refresh(
            TOKEN_URL,
            client_id=settings.google_oauth_client_id,
            client_secret=settings.google_oauth_client_secret,
        )

    async def fetch_audit_data(self) -> AuditData:
        files, users = await asyncio.gather(self._fetch_files(), self._fetch_users())
        mark_duplicates(files)
        cutoff = utcnow() - ACTIVE_WINDOW
        return AuditData(
            files=files,
            users=users,
            storage_used_gb=mb_to_gb(sum(f.size_mb for f in files)),
            total_licenses=len(users),
            active_users=sum(1 for u in users if u.last_active and u.last_active > cutoff),
        )

    async def _fetch_files(self) -> list[FileData]:
        files: list[FileData] = []
        page_token: str | None = None
        while True:
            params: dict[str, Any] = {
                "pageSize": 1000,
                "fields": FILE_FIELDS,
                "supportsAllDrives": "true",
                "includeItemsFromAllDrives": "true",
                "q": "trashed = false",
            }
            if page_token:
                params["pageToken"] = page_token
            body = await self._json("GET", f"{DRIVE_URL}/files", params=params)
            for item in body.get("files") or []:
                files.append(self._to_file(item))
            page_token = body.get("nextPageToken")
            if not page_token:
                break
        return files

    def _to_file(self, item: dict[str, Any]) -> FileData:
        name = item.get("name") or "Untitled"
        size_mb = bytes_to_mb(int(item["size"])) if item.get("size") else 0.0
        shared: list[str] = []
        for permission in item.get("permissions") or []:
            if permission.get("type") in PUBLIC_PERMISSION_TYPES:
                shared.append(permission["type"])
            elif permission.get("emailAddress"):
                shared.append(permission["emailAddress"])
        last_accessed = (
            parse_timestamp(item.get("viewedByMeTime"))
            or parse_timestamp(item.get("modifiedTime"))
            or parse_timestamp(item.get("createdTime"))
            or utcnow()
        )
        owners = item.get("owners") or [{}]
        parents = item.get("parents") or []
        return FileData(
            name=name,
            size_mb=size_mb,
            type=infer_file_type(item.get("mimeType"), name),
            source=self.platform,
            external_id=item["id"],
            last_accessed=last_accessed,
            mime_type=item.get("mimeType"),
            file_hash=item.get("md5Checksum") or name_size_hash(name, size_mb),
            url=item.get("webViewLink"),
            path=f"/{name}",
            parent_id=parents[0] if parents else None,
            owner_email=owners[0].get("emailAddress"),
            is_public=any(entry in PUBLIC_PERMISSION_TYPES for entry in shared),
            shared_with=[entry for entry in shared if entry not in PUBLIC_PERMISSION_TYPES],
        )

    def _internal_domains(self, directory: list[dict[str, Any]]) -> set[str]:
        """Configured workspace domains, else the domains the directory admins sit in."""

        configured = self.config.metadata.get("domains") or self.config.metadata.get("domain") or []
        if isinstance(configured, str):
            configured = [configured]
        domains = {str(domain).lower() for domain in configured if domain}
        if not domains:
            domains = {
                _email_domain(user.get("primaryEmail") or "") for user in directory if user.get("isAdmin")
            }
        domains.discard("")
        return domains

    async def _fetch_users(self) -> list[UserData]:
        directory: list[dict[str, Any]] = []
        page_token: str | None = None
        try:
            while True:
                params: dict[str, Any] = {
                    "customer": "my_customer",
                    "maxResults": 500,
                    "projection": "full",
                }
                if page_token:
                    params["pageToken"] = page_token
                body = await self._json("GET", f"{DIRECTORY_URL}/users", params=params)
                directory.extend(body.get("users") or [])
                page_token = body.get("nextPageToken")
                if not page_token:
                    break
        except ConnectorError as exc:
            # Directory access needs an admin grant; audits still run on Drive data alone.
            logger.warning("google_directory_unavailable", extra={"extra": {"error": exc.code}})
            return []
        internal = self._internal_domains(directory)
        users: list[UserData] = []
        for user in directory:
            email = user.get("primaryEmail") or ""
            users.append(
                UserData(
                    email=email,
                    name=(user.get("name") or {}).get("fullName") or "Unknown User",
                    source=self.platform,
                    role="admin" if user.get("isAdmin") else "user",
                    external_id=user.get("id"),
                    last_active=parse_timestamp(user.get("lastLoginTime")),
                    is_guest=bool(internal) and _email_domain(email) not in internal,
                    license_type=_license_type(user),
                )
            )
        return users

    async def archive_file(self, file_id: str, metadata: FileItemMetadata) -> OperationResult:
        current = await self._json(
            "GET", f"{DRIVE_URL}/files/{file_id}", params={"fields": "id, parents", "supportsAllDrives": "true"}
        )
        parents = current.get("parents") or []
        await self._json(
            "PATCH",
            f"{DRIVE_URL}/files/{file_id}",
            params={"supportsAllDrives": "true"},
            json={"trashed": True},
        )
        return OperationResult.success(original_parent_id=parents[0] if parents else metadata.parent_id)

    async def restore_file(self, action: RestoreFileAction) -> OperationResult:
        await self._json(
            "PATCH",
            f"{DRIVE_URL}/files/{action.file_id}",
            params={"supportsAllDrives": "true"},
            json={"trashed": False},
        )
        return OperationResult.success()

    async def update_permissions(self, file_id: str, metadata: FileItemMetadata) -> OperationResult:
        body = await self._json(
            "GET",
            f"{DRIVE_URL}/files/{file_id}/permissions",
            params={"supportsAllDrives": "true", "fields": "permissions(id, type, role, domain, allowFileDiscovery)"},
        )
        removed: list[dict[str, Any]] = []
        for permission in body.get("permissions") or []:
            if permission.get("type") not in PUBLIC_PERMISSION_TYPES:
                continue
            await self._request(
                "DELETE",
                f"{DRIVE_URL}/files/{file_id}/permissions/{permission['id']}",
                params={"supportsAllDrives": "true"},
            )
            removed.append({k: v for k, v in permission.items() if k != "id"})
        return OperationResult.success(
            original_sharing={
                "is_public": bool(removed) or metadata.is_public,
                "shared_with": list(metadata.shared_with),
                "permissions": removed,
            }
        )

    async def restore_permissions(self, action: RestorePermissionsAction) -> OperationResult:
        for permission in action.original_sharing.get("permissions") or []:
            await self._json(
                "POST",
                f"{DRIVE_URL}/files/{action.file_id}/permissions",
                params={"supportsAllDrives": "true"},
                json=permission,
            )
        return OperationResult.success()

    async def remove_guest(self, user_id: str, metadata: GuestItemMetadata) -> OperationResult:
        await self._request("DELETE", f"{DIRECTORY_URL}/users/{user_id}")
        return OperationResult.success(user_id=user_id)

    async def restore_user(self, action: RestoreUserAction) -> OperationResult:
        await self._request(
            "POST", f"{DIRECTORY_URL}/users/{action.user_id}/undelete", json={"orgUnitPath": "/"}
        )
        return OperationResult.success()

    async def revoke_access(self, target_id: str, metadata: ItemMetadata) -> OperationResult:
        if not isinstance(metadata, GuestItemMetadata):
            return await super().revoke_access(target_id, metadata)
        if metadata.group_id:
            member = await self._json("GET", f"{DIRECTORY_URL}/groups/{metadata.group_id}/members/{target_id}")
            await self._request("DELETE", f"{DIRECTORY_URL}/groups/{metadata.group_id}/members/{target_id}")
            return OperationResult.success(
                undo_type=RESTORE_ACCESS,
                user_id=target_id,
                group_id=metadata.group_id,
                role=member.get("role", "MEMBER"),
            )
        await self._json("PATCH", f"{DIRECTORY_URL}/users/{target_id}", json={"suspended": True})
        return OperationResult.success(undo_type=RESTORE_LICENSE, user_id=target_id)

    async def restore_access(self, action: RestoreAccessAction) -> OperationResult:
        if not action.group_id:
            return OperationResult.not_supported("restore_access without group", self.platform.value)
        try:
            await self._json(
                "POST",
                f"{DIRECTORY_URL}/groups/{action.group_id}/members",
                json={"email": action.user_email, "role": action.role or "MEMBER"},
            )
        except ConnectorError as exc:
            if exc.status_code != 409:
                raise
        return OperationResult.success()

    async def restore_license(self, action: RestoreLicenseAction) -> OperationResult:
        await self._json("PATCH", f"{DIRECTORY_URL}/users/{action.user_id}", json={"suspended": False})
        return OperationResult.success()

    async def download_file(self, file_id: str, metadata: FileItemMetadata) -> tuple[bytes, str]:
        mime_type = metadata.mime_type or "application/octet-stream"
        if mime_type.startswith(GOOGLE_APPS_PREFIX):
            response = await self._request(
                "GET", f"{DRIVE_URL}/files/{file_id}/export", params={"mimeType": "application/pdf"}
            )
            return response.content, "application/pdf"
        response = await self._request(
            "GET", f"{DRIVE_URL}/files/{file_id}", params={"alt": "media", "supportsAllDrives": "true"}
        )
        return response.content, mime_type

    async def upload_file(
        self, content: bytes, *, file_name: str, mime_type: str | None, target_location: str | None
    ) -> str:
        body: dict[str, Any] = {"name": file_name}
        if target_location:
            body["parents"] = [target_location]
        created = await self._json(
            "POST", f"{DRIVE_URL}/files", params={"supportsAllDrives": "true", "fields": "id"}, json=body
        )
        await self._request(
            "PATCH",
            f"{UPLOAD_URL}/files/{created['id']}",
            params={"uploadType": "media", "supportsAllDrives": "true"},
            headers={"Content-Type": mime_type or "application/octet-stream"},
            content=content,
        )
        return created["id"]
