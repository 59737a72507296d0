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
from clutterscore.domain.connectors.types import (
    AuditData,
    ChannelData,
    FileData,
    Platform,
    TokenGrant,
    UserData,
)
from clutterscore.domain.playbooks.metadata import (
    ChannelItemMetadata,
    FileItemMetadata,
    GuestItemMetadata,
)
from clutterscore.domain.playbooks.undo_actions import RestoreChannelAction, RestoreUserAction
from clutterscore.settings import settings

logger = logging.getLogger(__name__)

ACTIVE_WINDOW = timedelta(days=30)


def _license_type(member: dict[str, Any]) -> str:
    if member.get("is_ultra_restricted"):
        return "guest"
    if member.get("is_restricted"):
        return "multi-channel-guest"
    return "full"


def _role(member: dict[str, Any]) -> str:
    if member.get("is_owner") or member.get("is_primary_owner"):
        return "owner"
    if member.get("is_admin"):
        return "admin"
    return "user"


def _is_guest(member: dict[str, Any]) -> bool:
    return bool(
        member.get("is_restricted") or member.get("is_ultra_restricted") or member.get("is_stranger")
    )


class SlackConnector(Connector):
    platform = Platform.SLACK
    base_url = "https://slack.com/api/"

    async def _call(self, method: str, *, http_method: str = "GET", **params: Any) -> dict[str, Any]:
        if http_method == "GET":
            body = await self._json("GET", method, params=params)
        else:
            body = await self._json("POST", method, data=params)
        if not body.get("ok", False):
            error = body.get("error") or "unknown_error"
            raise ConnectorError(
                f"slack_{error}",
                f"Slack API error: {error}",
                retryable=error == "ratelimited",
                status_code=429 if error == "ratelimited" else None,
            )
        return body

    async def _probe(self) -> bool:
        body = await self._call("auth.test")
        return bool(body.get("ok"))

    async def refresh_token(self) -> TokenGrant:
        return await self._oauth_refresh(
            "https://slack.com/api/oauth.v2.access",
            client_id=settings.slack_oauth_client_id,
            client_secret=settings.slack_oauth_client_secret,
        )

    async def fetch_audit_data(self) -> AuditData:
        files, users, channels = await asyncio.gather(
            self._fetch_files(), self._fetch_users(), self._fetch_channels()
        )
        mark_duplicates(files)
        cutoff = utcnow() - ACTIVE_WINDOW
        active_users = sum(1 for user in users if user.last_active and user.last_active > cutoff)
        return AuditData(
            files=files,
            users=users,
            channels=channels,
            storage_used_gb=mb_to_gb(sum(f.size_mb for f in files)),
            total_licenses=len(users),
            active_users=active_users,
        )

    async def _fetch_files(self) -> list[FileData]:
        files: list[FileData] = []
        page = 1
        while True:
            body = await self._call("files.list", count=1000, page=page)
            for item in body.get("files") or []:
                name = item.get("name") or item.get("title") or "Untitled"
                size_mb = bytes_to_mb(item.get("size"))
                channels = item.get("channels") or []
                files.append(
                    FileData(
                        name=name,
                        size_mb=size_mb,
                        type=infer_file_type(item.get("mimetype"), name),
                        source=self.platform,
                        external_id=item["id"],
                        last_accessed=parse_timestamp(item.get("timestamp") or item.get("created"))
                        or utcnow(),
                        mime_type=item.get("mimetype"),
                        file_hash=name_size_hash(name, size_mb),
                        url=item.get("url_private") or item.get("permalink"),
                        path=f"/{channels[0] if channels else 'direct-messages'}/{name}",
                        owner_email=item.get("user"),
                        is_public=bool(item.get("is_public") or item.get("public_url_shared")),
                        shared_with=list(channels),
                    )
                )
            paging = body.get("paging") or {}
            current = paging.get("page", page)
            if current >= paging.get("pages", current):
                break
            page = current + 1
        return files

    async def _fetch_users(self) -> list[UserData]:
        users: list[UserData] = []
        cursor: str | None = None
        while True:
            params: dict[str, Any] = {"limit": 1000}
            if cursor:
                params["cursor"] = cursor
            body = await self._call("users.list", **params)
            for member in body.get("members") or []:
                if member.get("is_bot") or member.get("deleted"):
                    continue
                profile = member.get("profile") or {}
                users.append(
                    UserData(
                        email=profile.get("email") or "",
                        name=member.get("real_name") or member.get("name") or "Unknown User",
                        source=self.platform,
                        role=_role(member),
                        external_id=member.get("id"),
                        last_active=parse_timestamp(member.get("updated")),
                        is_guest=_is_guest(member),
                        license_type=_license_type(member),
                    )
                )
            cursor = (body.get("response_metadata") or {}).get("next_cursor")
            if not cursor:
                break
        return users

    async def _last_message_at(self, channel: dict[str, Any]):
        try:
            body = await self._call("conversations.history", channel=channel["id"], limit=1)
        except ConnectorError as exc:
            logger.warning(
                "slack_channel_history_unavailable",
                extra={"extra": {"channel_id": channel["id"], "error": exc.code}},
            )
            return parse_timestamp(channel.get("updated"))
        messages = body.get("messages") or []
        if messages:
            return parse_timestamp(messages[0].get("ts"))
        return parse_timestamp(channel.get("updated"))

    async def _fetch_channels(self) -> list[ChannelData]:
        channels: list[ChannelData] = []
        cursor: str | None = None
        while True:
            params: dict[str, Any] = {"types": "public_channel,private_channel", "limit": 1000}
            if cursor:
                params["cursor"] = cursor
            body = await self._call("conversations.list", **params)
            for channel in body.get("channels") or []:
                channels.append(
                    ChannelData(
                        external_id=channel["id"],
                        name=channel.get("name") or channel["id"],
                        source=self.platform,
                        member_count=channel.get("num_members") or 0,
                        last_activity=await self._last_message_at(channel),
                        is_archived=bool(channel.get("is_archived")),
                        is_private=bool(channel.get("is_private")),
                    )
                )
            cursor = (body.get("response_metadata") or {}).get("next_cursor")
            if not cursor:
                break
        logger.info("slack_channels_fetched", extra={"extra": {"count": len(channels)}})
        return channels

    def _team_id(self) -> str:
        team_id = self.config.metadata.get("team_id") or self.config.metadata.get("teamId")
        if not team_id:
            raise ConnectorError("slack_missing_team_id", "Team ID is required for Slack admin actions")
        return team_id

    async def update_permissions(self, file_id: str, metadata: FileItemMetadata) -> OperationResult:
        info = await self._call("files.info", file=file_id)
        file = info.get("file") or {}
        original_sharing = {
            "is_public": bool(file.get("public_url_shared") or file.get("is_public")),
            "shared_with": file.get("channels") or list(metadata.shared_with),
        }
        await self._call("files.revokePublicURL", http_method="POST", file=file_id)
        logger.info("slack_public_url_revoked", extra={"extra": {"file_id": file_id}})
        return OperationResult.success(original_sharing=original_sharing)

    async def archive_channel(self, channel_id: str, metadata: ChannelItemMetadata) -> OperationResult:
        info = await self._call("conversations.info", channel=channel_id)
        channel = info.get("channel") or {}
        original_state = {
            "is_archived": bool(channel.get("is_archived")),
            "member_count": channel.get("num_members", metadata.member_count),
            "name": channel.get("name", metadata.channel_name),
            "is_private": bool(channel.get("is_private", metadata.is_private)),
        }
        try:
            await self._call("conversations.archive", http_method="POST", channel=channel_id)
        except ConnectorError as exc:
            if exc.code != "slack_already_archived":
                raise
            logger.warning("slack_channel_already_archived", extra={"extra": {"channel_id": channel_id}})
        return OperationResult.success(original_state=original_state, archived_at=utcnow().isoformat())

    async def remove_guest(self, user_id: str, metadata: GuestItemMetadata) -> OperationResult:
        team_id = self._team_id()
        info = await self._call("users.info", user=user_id)
        member = info.get("user") or {}
        role = "member"
        if member.get("is_ultra_restricted"):
            role = "single_channel_guest"
        elif member.get("is_restricted"):
            role = "guest"
        original_access = {
            "is_guest": _is_guest(member),
            "role": role,
            "email": (member.get("profile") or {}).get("email") or metadata.email,
            "license_type": _license_type(member),
        }
        try:
            await self._call("admin.users.remove", http_method="POST", team_id=team_id, user_id=user_id)
        except ConnectorError as exc:
            if exc.code == "slack_cant_remove_primary_owner":
                raise ConnectorError(exc.code, "Cannot remove primary workspace owner") from exc
            raise
        return OperationResult.success(
            user_id=user_id, original_access=original_access, removed_at=utcnow().isoformat()
        )

    async def restore_channel(self, action: RestoreChannelAction) -> OperationResult:
        try:
            await self._call("conversations.unarchive", http_method="POST", channel=action.channel_id)
        except ConnectorError as exc:
            if exc.code == "slack_not_archived":
                return OperationResult.success(already_active=True)
            raise
        return OperationResult.success()

    async def restore_user(self, action: RestoreUserAction) -> OperationResult:
        team_id = self._team_id()
        access = action.original_metadata.get("original_access") or {}
        role = access.get("role") or action.role
        ultra = role == "single_channel_guest"
        restricted = role in {"guest", "multi-channel-guest"}
        channel_ids = action.original_metadata.get("default_channels") or []
        try:
            await self._call(
                "admin.users.invite",
                http_method="POST",
                team_id=team_id,
                email=action.user_email,
                channel_ids=",".join(channel_ids),
                is_restricted=str(restricted and not ultra).lower(),
                is_ultra_restricted=str(ultra).lower(),
            )
        except ConnectorError as exc:
            if exc.code in {"slack_already_in_team", "slack_already_invited"}:
                return OperationResult.success(already_present=True)
            raise
        return OperationResult.success()

    async def download_file(self, file_id: str, metadata: FileItemMetadata) -> tuple[bytes, str]:
        info = await self._call("files.info", file=file_id)
        file = info.get("file") or {}
        url = file.get("url_private_download") or file.get("url_private") or metadata.url
        if not url:
            raise ConnectorError("slack_download_unavailable", f"No download URL for Slack file {file_id}")
        response = await self._request("GET", url)
        return response.content, file.get("mimetype") or "application/octet-stream"
