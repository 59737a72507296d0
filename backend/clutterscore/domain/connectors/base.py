from __future__ import annotations

import hashlib
import logging
import mimetypes
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from clutterscore.domain.connectors.errors import (
    ConnectorError,
    OperationError,
    OperationResult,
    TokenError,
)
from clutterscore.domain.connectors.types import (
    ActionType,
    AuditData,
    ConnectorConfig,
    FileData,
    FileType,
    Platform,
    TokenGrant,
)
from clutterscore.domain.playbooks.metadata import (
    ChannelItemMetadata,
    FileItemMetadata,
    GuestItemMetadata,
    ItemMetadata,
)
from clutterscore.domain.playbooks.undo_actions import (
    RestoreAccessAction,
    RestoreChannelAction,
    RestoreFileAction,
    RestoreLicenseAction,
    RestorePermissionsAction,
    RestoreUserAction,
    UndoAction,
)
from clutterscore.infra.metrics import metrics
from clutterscore.settings import settings
from clutterscore.shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError
from clutterscore.shared.clock import ensure_aware, utcnow

logger = logging.getLogger(__name__)

TOKEN_EXPIRY_BUFFER = timedelta(minutes=5)

MUTATING_OPERATIONS = (
    "archive_file",
    "update_permissions",
    "archive_channel",
    "remove_guest",
    "revoke_access",
    "restore_file",
    "restore_access",
    "restore_permissions",
    "restore_channel",
    "restore_user",
    "restore_license",
)

_DATABASE_EXTENSIONS = {".db", ".sqlite", ".sqlite3", ".sql", ".mdb", ".accdb", ".dump", ".bak"}
_ARCHIVE_EXTENSIONS = {".zip", ".tar", ".gz", ".tgz", ".rar", ".7z", ".bz2"}
_DOCUMENT_MIME_HINTS = ("pdf", "document", "msword", "text/", "presentation", "spreadsheet", "sheet")


def parse_timestamp(value: Any) -> datetime | None:
    """Parse ISO-8601 strings (with `Z`) or epoch seconds into aware datetimes."""

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_aware(value)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    text = str(value).strip()
    if text.replace(".", "", 1).isdigit():
        return datetime.fromtimestamp(float(text), tz=timezone.utc)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return ensure_aware(datetime.fromisoformat(text))
    except ValueError:
        return None


def infer_file_type(mime_type: str | None, name: str | None = None) -> FileType:
    if not mime_type and name:
        mime_type, _ = mimetypes.guess_type(name)
    suffix = ""
    if name and "." in name:
        suffix = "." + name.rsplit(".", 1)[-1].lower()
    if suffix in _DATABASE_EXTENSIONS:
        return FileType.DATABASE
    if suffix in _ARCHIVE_EXTENSIONS:
        return FileType.ARCHIVE
    if not mime_type:
        return FileType.OTHER
    mime = mime_type.lower()
    if mime.startswith("image/"):
        return FileType.IMAGE
    if mime.startswith("video/"):
        return FileType.VIDEO
    if mime.startswith("audio/"):
        return FileType.MUSIC
    if "sql" in mime or "database" in mime:
        return FileType.DATABASE
    if any(hint in mime for hint in ("zip", "compressed", "x-tar", "x-7z", "rar")):
        return FileType.ARCHIVE
    if any(hint in mime for hint in _DOCUMENT_MIME_HINTS):
        return FileType.DOCUMENT
    return FileType.OTHER


def bytes_to_mb(size: int | float | None) -> float:
    return round((size or 0) / (1024 * 1024), 2)


def mb_to_gb(size_mb: float) -> float:
    return round(size_mb / 1024, 2)


def name_size_hash(name: str, size: int | float | None) -> str:
    return hashlib.sha256(f"{name}-{size or 0}".encode()).hexdigest()


def is_token_expired(expires_at: datetime | None, now: datetime | None = None) -> bool:
    if expires_at is None:
        return False
    return (now or utcnow()) + TOKEN_EXPIRY_BUFFER >= ensure_aware(expires_at)


def mark_duplicates(files: list[FileData]) -> list[FileData]:
    """Flag every member of a duplicate group except the most recently accessed one.

    First pass buckets files by content hash (falling back to name and size); the
    second pass flags groups of two or more. Singletons are left unflagged.
    """

    groups: dict[str, list[FileData]] = {}
    for file in files:
        groups.setdefault(file.duplicate_key, []).append(file)

    for key, members in groups.items():
        if len(members) < 2:
            for member in members:
                member.is_duplicate = False
                member.duplicate_group = None
            continue
        ordered = sorted(
            members,
            key=lambda f: (ensure_aware(f.last_accessed), f.external_id),
            reverse=True,
        )
        for index, member in enumerate(ordered):
            member.duplicate_group = key
            member.is_duplicate = index > 0
    return files


class Connector:
    """Uniform audit and remediation contract over one platform's API.

    Fetching is mandatory. Mutations are optional: the defaults answer with an
    `UNSUPPORTED` operation result, and `capabilities()` lists what a platform
    actually overrides.
    """

    platform: Platform
    base_url: str = ""

    def __init__(
        self,
        config: ConnectorConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: httpx.Timeout | None = None,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self.config = config
        self._transport = transport
        self._breaker = breaker
        self._timeout = timeout or httpx.Timeout(
            settings.connector_timeout_seconds, connect=settings.connector_connect_timeout_seconds
        )
        self._client: httpx.AsyncClient | None = None
        self.rotated_grant: TokenGrant | None = None

    @classmethod
    def capabilities(cls) -> frozenset[str]:
        supported = {
            name for name in MUTATING_OPERATIONS if getattr(cls, name) is not getattr(Connector, name)
        }
        if "remove_guest" in supported or "update_permissions" in supported:
            supported.add("revoke_access")
        return frozenset(supported)

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url, timeout=self._timeout, transport=self._transport
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "Connector":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.config.access_token}"}

    async def _request(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        authenticated: bool = True,
        **kwargs: Any,
    ) -> httpx.Response:
        merged = {**self._auth_headers(), **(headers or {})} if authenticated else dict(headers or {})
        if self._breaker is None:
            return await self._send(method, url, merged, kwargs)
        try:
            return await self._breaker.call(self._send, method, url, merged, kwargs)
        except CircuitBreakerOpenError as exc:
            metrics.record_connector_request(self.platform.value, None)
            raise ConnectorError(
                f"{self.platform.value.lower()}_circuit_open",
                f"{self.platform.value} calls are paused after repeated failures",
                retryable=True,
            ) from exc

    async def _send(
        self, method: str, url: str, headers: dict[str, str], kwargs: dict[str, Any]
    ) -> httpx.Response:
        platform = self.platform.value
        try:
            response = await self.client.request(method, url, headers=headers, **kwargs)
        except httpx.TimeoutException as exc:
            metrics.record_connector_request(platform, None)
            raise ConnectorError(
                f"{platform.lower()}_timeout", f"{platform} request timed out", retryable=True
            ) from exc
        except httpx.TransportError as exc:
            metrics.record_connector_request(platform, None)
            raise ConnectorError(
                f"{platform.lower()}_unreachable", f"{platform} is unreachable: {exc}", retryable=True
            ) from exc
        metrics.record_connector_request(platform, response.status_code)
        if not response.is_success:
            raise ConnectorError.from_response(platform, response)
        return response

    async def _json(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        response = await self._request(method, url, **kwargs)
        if not response.content:
            return {}
        return response.json()

    def token_expired(self, now: datetime | None = None) -> bool:
        return is_token_expired(self.config.expires_at, now)

    def apply_grant(self, grant: TokenGrant) -> None:
        self.config.access_token = grant.access_token
        if grant.refresh_token:
            self.config.refresh_token = grant.refresh_token
        self.config.expires_at = grant.expires_at
        self.rotated_grant = grant

    async def test_connection(self) -> bool:
        try:
            return await self._probe()
        except (ConnectorError, httpx.HTTPError, ValueError) as exc:
            logger.info(
                "connector_test_failed",
                extra={"extra": {"platform": self.platform.value, "error": str(exc)}},
            )
            return False

    async def _probe(self) -> bool:
        raise NotImplementedError

    async def refresh_token(self) -> TokenGrant:
        raise TokenError(
            f"{self.platform.value} tokens do not support refresh", code="refresh_unsupported"
        )

    async def _oauth_refresh(
        self,
        url: str,
        *,
        client_id: str | None,
        client_secret: str | None,
        json_body: bool = False,
    ) -> TokenGrant:
        platform = self.platform.value
        if not self.config.refresh_token:
            raise TokenError(f"No refresh token available for {platform}", code="missing_refresh_token")
        if not client_id or not client_secret:
            raise TokenError(f"{platform} OAuth client is not configured", code="oauth_not_configured")
        payload = {
            "grant_type": "refresh_token",
            "refresh_token": self.config.refresh_token,
            "client_id": client_id,
            "client_secret": client_secret,
        }
        try:
            if json_body:
                response = await self.client.post(url, json=payload)
            else:
                response = await self.client.post(url, data=payload)
        except httpx.HTTPError as exc:
            raise TokenError(f"{platform} token refresh failed: {exc}") from exc
        if not response.is_success:
            raise TokenError(
                f"{platform} token refresh failed ({response.status_code})",
                status_code=response.status_code,
            )
        body = response.json()
        access_token = body.get("access_token")
        if body.get("ok") is False or not access_token:
            raise TokenError(f"{platform} token refresh failed: {body.get('error', 'no access token')}")
        expires_in = body.get("expires_in")
        expires_at = utcnow() + timedelta(seconds=int(expires_in)) if expires_in else None
        return TokenGrant(
            access_token=access_token,
            refresh_token=body.get("refresh_token") or self.config.refresh_token,
            expires_at=expires_at,
        )

    async def fetch_audit_data(self) -> AuditData:
        raise NotImplementedError

    async def perform(
        self, action: ActionType, external_id: str, metadata: ItemMetadata
    ) -> OperationResult:
        """Run one forward remediation action, folding connector errors into the result."""

        handlers = {
            ActionType.ARCHIVE_FILE: self.archive_file,
            ActionType.UPDATE_PERMISSIONS: self.update_permissions,
            ActionType.ARCHIVE_CHANNEL: self.archive_channel,
            ActionType.REMOVE_GUEST: self.remove_guest,
            ActionType.REVOKE_ACCESS: self.revoke_access,
        }
        try:
            return await handlers[action](external_id, metadata)
        except ConnectorError as exc:
            return OperationResult(error=OperationError.from_connector_error(exc))

    async def revert(self, action: UndoAction) -> OperationResult:
        handlers = {
            "restore_file": self.restore_file,
            "restore_access": self.restore_access,
            "restore_permissions": self.restore_permissions,
            "restore_channel": self.restore_channel,
            "restore_user": self.restore_user,
            "restore_license": self.restore_license,
        }
        try:
            return await handlers[action.type](action)
        except ConnectorError as exc:
            return OperationResult(error=OperationError.from_connector_error(exc))

    def _unsupported(self, operation: str) -> OperationResult:
        return OperationResult.not_supported(operation, self.platform.value)

    async def archive_file(self, file_id: str, metadata: FileItemMetadata) -> OperationResult:
        return self._unsupported("archive_file")

    async def update_permissions(self, file_id: str, metadata: FileItemMetadata) -> OperationResult:
        return self._unsupported("update_permissions")

    async def archive_channel(self, channel_id: str, metadata: ChannelItemMetadata) -> OperationResult:
        return self._unsupported("archive_channel")

    async def remove_guest(self, user_id: str, metadata: GuestItemMetadata) -> OperationResult:
        return self._unsupported("remove_guest")

    async def revoke_access(self, target_id: str, metadata: ItemMetadata) -> OperationResult:
        if isinstance(metadata, GuestItemMetadata):
            return await self.remove_guest(target_id, metadata)
        if isinstance(metadata, FileItemMetadata):
            return await self.update_permissions(target_id, metadata)
        return self._unsupported("revoke_access")

    async def restore_file(self, action: RestoreFileAction) -> OperationResult:
        return self._unsupported("restore_file")

    async def restore_access(self, action: RestoreAccessAction) -> OperationResult:
        return self._unsupported("restore_access")

    async def restore_permissions(self, action: RestorePermissionsAction) -> OperationResult:
        return self._unsupported("restore_permissions")

    async def restore_channel(self, action: RestoreChannelAction) -> OperationResult:
        return self._unsupported("restore_channel")

    async def restore_user(self, action: RestoreUserAction) -> OperationResult:
        return self._unsupported("restore_user")

    async def restore_license(self, action: RestoreLicenseAction) -> OperationResult:
        return self._unsupported("restore_license")

    async def download_file(self, file_id: str, metadata: FileItemMetadata) -> tuple[bytes, str]:
        """Fetch raw file bytes for archival; returns (payload, content type)."""

        raise ConnectorError(
            f"{self.platform.value.lower()}_download_unsupported",
            f"download is not supported for {self.platform.value}",
        )

    async def upload_file(
        self, content: bytes, *, file_name: str, mime_type: str | None, target_location: str | None
    ) -> str:
        """Push archived bytes back into the platform; returns the new external id."""

        raise ConnectorError(
            f"{self.platform.value.lower()}_upload_unsupported",
            f"upload is not supported for {self.platform.value}",
        )
