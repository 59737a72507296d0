from __future__ import annotations

import base64
import logging

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
from clutterscore.domain.connectors.types import (
    AuditData,
    ConnectorConfig,
    FileData,
    Platform,
    TokenGrant,
    UserData,
)
from clutterscore.domain.connectors.errors import OperationErrorKind, OperationResult
from clutterscore.domain.playbooks.metadata import FileItemMetadata, GuestItemMetadata
from clutterscore.domain.playbooks.undo_actions import RestoreUserAction
from clutterscore.settings import settings

logger = logging.getLogger(__name__)

TOKEN_URL = "https://auth.atlassian.com/oauth/token"
PAGE_SIZE = 100
ATTACHMENT_JQL = "attachments IS NOT EMPTY"
DEFAULT_PROJECT_ROLE_ID = "10000"


class JiraConnector(Connector):
    """Jira Cloud attachments and users.

    Attachment deletion is permanent, so archival is deliberately left unsupported.
    """

    platform = Platform.JIRA

    def __init__(self, config: ConnectorConfig, **kwargs) -> None:
        super().__init__(config, **kwargs)
        cloud_id = config.metadata.get("cloud_id") or config.metadata.get("cloudId")
        if cloud_id:
            self.base_url = f"https://api.atlassian.com/ex/jira/{cloud_id}"
        else:
            self.base_url = config.metadata.get("base_url") or config.metadata.get("baseUrl") or ""
        self.email = config.metadata.get("email") or ""
        self.project_key = config.metadata.get("project_key") or config.metadata.get("projectKey")
        self.role_id = str(config.metadata.get("role_id") or DEFAULT_PROJECT_ROLE_ID)

    def _auth_headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.email:
            raw = f"{self.email}:{self.config.access_token}".encode()
            headers["Authorization"] = f"Basic {base64.b64encode(raw).decode()}"
        else:
            headers["Authorization"] = f"Bearer {self.config.access_token}"
        return headers

    async def _probe(self) -> bool:
        me = await self._json("GET", "/rest/api/3/myself")
        return bool(me.get("accountId"))

    async def refresh_token(self) -> TokenGrant:
        return await self._oauth_refresh(
            TOKEN_URL,
            client_id=settings.jira_oauth_client_id,
            client_secret=settings.jira_oauth_client_secret,
            json_body=True,
        )

    async def fetch_audit_data(self) -> AuditData:
        files = await self._fetch_attachments()
        users = await self._fetch_users()
        mark_duplicates(files)
        return AuditData(
            files=files,
            users=users,
            storage_used_gb=mb_to_gb(sum(f.size_mb for f in files)),
            total_licenses=len(users),
            active_users=sum(1 for u in users if u.license_type == "active"),
        )

    async def _fetch_attachments(self) -> list[FileData]:
        files: list[FileData] = []
        start_at = 0
        while True:
            body = await self._json(
                "GET",
                "/rest/api/3/search",
                params={
                    "jql": ATTACHMENT_JQL,
                    "startAt": start_at,
                    "maxResults": PAGE_SIZE,
                    "fields": "attachment,key,summary,created,updated",
                },
            )
            for issue in body.get("issues") or []:
                for attachment in (issue.get("fields") or {}).get("attachment") or []:
                    name = attachment.get("filename") or "Untitled"
                    size_mb = bytes_to_mb(attachment.get("size"))
                    files.append(
                        FileData(
                            name=name,
                            size_mb=size_mb,
                            type=infer_file_type(attachment.get("mimeType"), name),
                            source=self.platform,
                            external_id=str(attachment["id"]),
                            last_accessed=parse_timestamp(attachment.get("created")) or utcnow(),
                            mime_type=attachment.get("mimeType"),
                            file_hash=name_size_hash(name, size_mb),
                            url=attachment.get("content"),
                            path=f"/{issue.get('key')}/{name}",
                            parent_id=issue.get("key"),
                            owner_email=(attachment.get("author") or {}).get("emailAddress"),
                        )
                    )
            start_at += PAGE_SIZE
            if start_at >= int(body.get("total") or 0):
                break
        logger.info("jira_attachments_fetched", extra={"extra": {"count": len(files)}})
        return files

    async def _fetch_users(self) -> list[UserData]:
        users: list[UserData] = []
        start_at = 0
        while True:
            response = await self._request(
                "GET", "/rest/api/3/users/search", params={"startAt": start_at, "maxResults": PAGE_SIZE}
            )
            batch = response.json() or []
            for user in batch:
                account_type = user.get("accountType")
                users.append(
                    UserData(
                        email=user.get("emailAddress") or "",
                        name=user.get("displayName") or "Unknown User",
                        source=self.platform,
                        role="admin" if account_type == "atlassian" else "user",
                        external_id=user.get("accountId"),
                        is_guest=account_type == "customer",
                        license_type="active" if user.get("active") else "inactive",
                    )
                )
            if len(batch) < PAGE_SIZE:
                break
            start_at += PAGE_SIZE
        return users

    async def download_file(self, file_id: str, metadata: FileItemMetadata) -> tuple[bytes, str]:
        url = metadata.url or f"/rest/api/3/attachment/content/{file_id}"
        response = await self._request("GET", url, follow_redirects=True)
        return response.content, metadata.mime_type or "application/octet-stream"

    async def remove_guest(self, user_id: str, metadata: GuestItemMetadata) -> OperationResult:
        """Drop a customer account from the project role it was granted through."""

        project_key = metadata.group_id or self.project_key
        if not project_key:
            return OperationResult.failure(
                OperationErrorKind.FAILED, "Project key required to remove user from project"
            )
        await self._request("DELETE", f"/rest/api/3/project/{project_key}/role/{self.role_id}/{user_id}")
        logger.info(
            "jira_guest_removed",
            extra={"extra": {"account_id": user_id, "project_key": project_key}},
        )
        return OperationResult.success(user_id=user_id, project_key=project_key, role_id=self.role_id)

    async def restore_user(self, action: RestoreUserAction) -> OperationResult:
        project_key = action.original_metadata.get("project_key") or self.project_key
        if not project_key:
            return OperationResult.failure(
                OperationErrorKind.FAILED, "Project key required to restore user to project"
            )
        role_id = action.original_metadata.get("role_id") or self.role_id
        await self._request(
            "POST",
            f"/rest/api/3/project/{project_key}/role/{role_id}",
            json={"user": [action.user_id]},
        )
        return OperationResult.success(project_key=project_key)
