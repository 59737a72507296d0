from __future__ import annotations

import hashlib
import logging
import re
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Mapping, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from clutterscore.domain.activity.service import record_activity
from clutterscore.domain.archives.db_models import ArchivedFile, ArchiveStatus
from clutterscore.domain.connectors.base import Connector
from clutterscore.domain.connectors.types import Platform
from clutterscore.domain.errors import ArchiveDeletedError, ArchiveNotFoundError, ArchiveStateError, DomainError
from clutterscore.domain.job_events.service import enqueue_job_event
from clutterscore.domain.playbooks.metadata import FileItemMetadata
from clutterscore.infra.metrics import metrics
from clutterscore.infra.storage import StorageBackend
from clutterscore.settings import settings
from clutterscore.shared.clock import ensure_aware, ensure_aware_or_none, utcnow

logger = logging.getLogger(__name__)

ARCHIVE_FILE_CREATED = "archive/file.created"
ARCHIVE_FILE_EXPIRING = "archive/file.expiring"
ARCHIVE_FILE_RESTORED = "archive/file.restored"


@dataclass(frozen=True)
class RestoreRequest:
    archive_id: uuid.UUID
    platform: Platform
    file_name: str
    mime_type: str | None
    target_location: str | None
    original_path: str | None
    original_parent_id: str | None
    metadata: dict[str, Any] = field(default_factory=dict)


RestoreUpload = Callable[[bytes, RestoreRequest], Awaitable[str | None]]


def connector_upload(connector: Connector) -> RestoreUpload:
    """Upload callback that pushes the blob back through the platform connector."""

    async def _upload(content: bytes, request: RestoreRequest) -> str | None:
        return await connector.upload_file(
            content,
            file_name=request.file_name,
            mime_type=request.mime_type,
            target_location=request.target_location or request.original_parent_id or request.original_path,
        )

    return _upload


def _slugify(value: str) -> str:
    normalized = re.sub(r"[^a-zA-Z0-9]+", "-", value.strip().lower())
    return normalized.strip("-")


def slugify_file_name(file_name: str) -> str:
    stem, dot, extension = file_name.rpartition(".")
    if not dot or not stem:
        return _slugify(file_name) or "file"
    slug = _slugify(stem) or "file"
    ext = _slugify(extension)
    return f"{slug}.{ext}" if ext else slug


def build_storage_key(tenant_id: uuid.UUID, platform: Platform, external_id: str, file_name: str) -> str:
    safe_id = re.sub(r"[^a-zA-Z0-9_.-]+", "_", external_id).strip("._") or "unknown"
    return f"{tenant_id}/{platform.value}/{safe_id}/{slugify_file_name(file_name)}"


class ArchiveService:
    """Copies platform files into blob storage with a retention clock and brings them back."""

    def __init__(
        self,
        session: AsyncSession,
        storage: StorageBackend,
        *,
        backends: Mapping[str, StorageBackend] | None = None,
    ) -> None:
        self.session = session
        self.storage = storage
        self.backends: dict[str, StorageBackend] = dict(backends or {})
        self.backends.setdefault(storage.provider, storage)

    def backend_for(self, provider: str) -> StorageBackend:
        backend = self.backends.get(provider)
        if backend is None:
            raise ArchiveStateError(f"Storage provider {provider} is not configured")
        return backend

    async def get(self, archive_id: uuid.UUID, *, tenant_id: uuid.UUID | None = None) -> ArchivedFile:
        stmt = select(ArchivedFile).where(ArchivedFile.archive_id == archive_id)
        if tenant_id is not None:
            stmt = stmt.where(ArchivedFile.tenant_id == tenant_id)
        archive = await self.session.scalar(stmt)
        if archive is None:
            raise ArchiveNotFoundError(archive_id)
        return archive

    async def list_archives(
        self, tenant_id: uuid.UUID, *, status: ArchiveStatus | None = None, limit: int = 100
    ) -> list[ArchivedFile]:
        stmt = (
            select(ArchivedFile)
            .where(ArchivedFile.tenant_id == tenant_id)
            .order_by(ArchivedFile.created_at.desc())
            .limit(limit)
        )
        if status is not None:
            stmt = stmt.where(ArchivedFile.status == status)
        return list((await self.session.scalars(stmt)).all())

    async def archive(
        self,
        *,
        tenant_id: uuid.UUID,
        platform: Platform,
        external_id: str,
        file_name: str,
        content: bytes,
        mime_type: str | None = None,
        original_path: str | None = None,
        original_parent_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        archived_by: str | None = None,
        now: datetime | None = None,
    ) -> ArchivedFile:
        now = now or utcnow()
        key = build_storage_key(tenant_id, platform, external_id, file_name)
        archive = ArchivedFile(
            tenant_id=tenant_id,
            platform=platform,
            external_id=external_id,
            file_name=file_name,
            size_bytes=len(content),
            mime_type=mime_type,
            content_sha256=hashlib.sha256(content).hexdigest(),
            storage_provider=self.storage.provider,
            storage_key=key,
            status=ArchiveStatus.STAGED,
            original_path=original_path,
            original_parent_id=original_parent_id,
            original_metadata=metadata or {},
            archived_by=archived_by or "system",
        )
        self.session.add(archive)
        await self.session.flush()

        try:
            await self.storage.put_bytes(key=key, data=content, content_type=mime_type or "application/octet-stream")
        except Exception as exc:
            archive.last_error = str(exc) or type(exc).__name__
            await self.session.commit()
            metrics.record_archive_operation("archive", "error")
            logger.warning(
                "archive_upload_failed",
                extra={"extra": {"archive_id": str(archive.archive_id), "provider": self.storage.provider}},
            )
            raise

        archive.status = ArchiveStatus.ARCHIVED
        archive.archived_at = now
        archive.expires_at = now + timedelta(days=settings.archive_retention_days)
        await self._enqueue_created_events(archive, now)
        await record_activity(
            self.session,
            tenant_id,
            "archive.file.created",
            user_id=archived_by,
            metadata={
                "archive_id": str(archive.archive_id),
                "file_name": file_name,
                "platform": platform.value,
                "size_mb": archive.size_mb,
            },
        )
        await self.session.commit()
        metrics.record_archive_operation("archive", "success")
        logger.info(
            "archive_created",
            extra={"extra": {"archive_id": str(archive.archive_id), "tenant_id": str(tenant_id)}},
        )
        return archive

    async def _enqueue_created_events(self, archive: ArchivedFile, now: datetime) -> None:
        payload = {
            "archive_id": str(archive.archive_id),
            "tenant_id": str(archive.tenant_id),
            "file_name": archive.file_name,
            "platform": archive.platform.value,
            "expires_at": archive.expires_at.isoformat(),
        }
        await enqueue_job_event(
            self.session,
            name=ARCHIVE_FILE_CREATED,
            payload=payload,
            dedupe_key=f"{ARCHIVE_FILE_CREATED}:{archive.archive_id}",
            tenant_id=archive.tenant_id,
        )
        remind_at = archive.expires_at - timedelta(days=settings.archive_expiry_warning_days)
        if remind_at > now:
            await enqueue_job_event(
                self.session,
                name=ARCHIVE_FILE_EXPIRING,
                payload={**payload, "days_remaining": settings.archive_expiry_warning_days},
                dedupe_key=f"{ARCHIVE_FILE_EXPIRING}:{archive.archive_id}",
                tenant_id=archive.tenant_id,
                deliver_after=remind_at,
            )

    async def archive_from_connector(
        self,
        connector: Connector,
        *,
        tenant_id: uuid.UUID,
        external_id: str,
        file_name: str,
        metadata: FileItemMetadata,
        archived_by: str | None = None,
        now: datetime | None = None,
    ) -> ArchivedFile:
        content, content_type = await connector.download_file(external_id, metadata)
        return await self.archive(
            tenant_id=tenant_id,
            platform=connector.platform,
            external_id=external_id,
            file_name=file_name,
            content=content,
            mime_type=content_type or metadata.mime_type,
            original_path=metadata.path,
            original_parent_id=metadata.parent_id,
            metadata=metadata.model_dump(mode="json"),
            archived_by=archived_by,
            now=now,
        )

    async def restore(
        self,
        archive_id: uuid.UUID,
        upload: RestoreUpload,
        *,
        tenant_id: uuid.UUID | None = None,
        target_location: str | None = None,
        restored_by: str | None = None,
        now: datetime | None = None,
    ) -> ArchivedFile:
        archive = await self.get(archive_id, tenant_id=tenant_id)
        if archive.status == ArchiveStatus.DELETED:
            raise ArchiveDeletedError()
        if archive.status != ArchiveStatus.ARCHIVED:
            raise ArchiveStateError(f"Archive is {archive.status.value}, only ARCHIVED files can be restored")
        now = now or utcnow()

        content = await self.backend_for(archive.storage_provider).read(key=archive.storage_key)
        request = RestoreRequest(
            archive_id=archive.archive_id,
            platform=archive.platform,
            file_name=archive.file_name,
            mime_type=archive.mime_type,
            target_location=target_location,
            original_path=archive.original_path,
            original_parent_id=archive.original_parent_id,
            metadata=dict(archive.original_metadata or {}),
        )
        try:
            new_external_id = await upload(content, request)
        except Exception as exc:
            archive.last_error = str(exc) or type(exc).__name__
            await self.session.commit()
            metrics.record_archive_operation("restore", "error")
            raise

        archive.status = ArchiveStatus.RESTORED
        archive.restored_at = now
        archive.restored_by = restored_by
        archive.restored_external_id = new_external_id
        archive.last_error = None
        await enqueue_job_event(
            self.session,
            name=ARCHIVE_FILE_RESTORED,
            payload={
                "archive_id": str(archive.archive_id),
                "tenant_id": str(archive.tenant_id),
                "file_name": archive.file_name,
                "platform": archive.platform.value,
            },
            dedupe_key=f"{ARCHIVE_FILE_RESTORED}:{archive.archive_id}",
            tenant_id=archive.tenant_id,
        )
        await record_activity(
            self.session,
            archive.tenant_id,
            "archive.file.restored",
            user_id=restored_by,
            metadata={
                "archive_id": str(archive.archive_id),
                "file_name": archive.file_name,
                "target_location": target_location,
                "new_external_id": new_external_id,
            },
        )
        await self.session.commit()
        metrics.record_archive_operation("restore", "success")
        return archive

    async def cleanup_single_archive(
        self,
        archive_id: uuid.UUID,
        *,
        tenant_id: uuid.UUID | None = None,
        deleted_by: str | None = None,
        reason: str = "expired",
        now: datetime | None = None,
    ) -> bool:
        """Delete the blob and mark the row DELETED; returns False when it already was."""

        archive = await self.get(archive_id, tenant_id=tenant_id)
        if archive.status == ArchiveStatus.DELETED:
            return False
        await self.backend_for(archive.storage_provider).delete(key=archive.storage_key)
        archive.status = ArchiveStatus.DELETED
        archive.deleted_at = now or utcnow()
        await record_activity(
            self.session,
            archive.tenant_id,
            "archive.file.deleted",
            user_id=deleted_by,
            metadata={
                "archive_id": str(archive.archive_id),
                "file_name": archive.file_name,
                "size_mb": archive.size_mb,
                "reason": reason,
            },
        )
        await self.session.commit()
        metrics.record_archive_operation("delete", "success")
        return True

    async def get_download_url(
        self, archive_id: uuid.UUID, *, tenant_id: uuid.UUID | None = None, expires_in: int | None = None
    ) -> str:
        archive = await self.get(archive_id, tenant_id=tenant_id)
        if archive.status == ArchiveStatus.DELETED:
            raise ArchiveDeletedError()
        if archive.status != ArchiveStatus.ARCHIVED:
            raise ArchiveStateError(f"Archive is {archive.status.value}, no download available")
        return await self.backend_for(archive.storage_provider).generate_signed_get_url(
            key=archive.storage_key,
            expires_in=expires_in or settings.archive_download_url_ttl_seconds,
        )

    async def exists(self, archive: ArchivedFile) -> bool:
        if archive.status == ArchiveStatus.DELETED:
            return False
        backend = self.backends.get(archive.storage_provider)
        if backend is None:
            return False
        return await backend.exists(key=archive.storage_key)

    async def get_archive_stats(self, tenant_id: uuid.UUID, *, now: datetime | None = None) -> dict[str, Any]:
        now = now or utcnow()
        horizon = now + timedelta(days=settings.archive_expiry_warning_days)
        rows = (
            await self.session.scalars(select(ArchivedFile).where(ArchivedFile.tenant_id == tenant_id))
        ).all()
        by_status: dict[str, int] = {status.value: 0 for status in ArchiveStatus}
        by_platform: dict[str, dict[str, float]] = defaultdict(lambda: {"count": 0, "size_mb": 0.0})
        total_bytes = 0
        expiring_soon = 0
        for row in rows:
            by_status[row.status.value] += 1
            if row.status != ArchiveStatus.ARCHIVED:
                continue
            total_bytes += row.size_bytes
            bucket = by_platform[row.platform.value]
            bucket["count"] += 1
            bucket["size_mb"] = round(bucket["size_mb"] + row.size_mb, 2)
            expires_at = ensure_aware_or_none(row.expires_at)
            if expires_at is not None and expires_at <= horizon:
                expiring_soon += 1
        return {
            "total_files": by_status[ArchiveStatus.ARCHIVED.value],
            "total_size_mb": round(total_bytes / (1024 * 1024), 2),
            "by_status": by_status,
            "by_platform": dict(by_platform),
            "expiring_soon": expiring_soon,
        }

    async def expired_archive_ids(self, now: datetime) -> list[uuid.UUID]:
        rows = (
            await self.session.execute(
                select(ArchivedFile.archive_id, ArchivedFile.expires_at).where(
                    ArchivedFile.status == ArchiveStatus.ARCHIVED,
                    ArchivedFile.expires_at.is_not(None),
                )
            )
        ).all()
        return [archive_id for archive_id, expires_at in rows if ensure_aware(expires_at) < now]

    async def cleanup_expired_archives(self, *, now: datetime | None = None) -> dict[str, int]:
        now = now or utcnow()
        deleted = 0
        failed = 0
        for archive_id in await self.expired_archive_ids(now):
            try:
                if await self.cleanup_single_archive(archive_id, now=now):
                    deleted += 1
            except Exception as exc:  # noqa: BLE001
                await self.session.rollback()
                failed += 1
                metrics.record_archive_operation("delete", "error")
                logger.warning(
                    "archive_cleanup_failed",
                    extra={"extra": {"archive_id": str(archive_id), "error": type(exc).__name__}},
                )
        return {"deleted": deleted, "failed": failed}

    async def migrate(
        self,
        *,
        tenant_id: uuid.UUID,
        archive_ids: Sequence[uuid.UUID],
        from_provider: str,
        to_provider: str,
    ) -> dict[str, Any]:
        """Copy blobs between providers, repoint the rows, then drop the old copies."""

        if from_provider == to_provider:
            raise DomainError(detail="Source and destination providers are the same", status_code=422)
        source = self.backend_for(from_provider)
        target = self.backend_for(to_provider)
        rows = (
            await self.session.scalars(
                select(ArchivedFile).where(
                    ArchivedFile.tenant_id == tenant_id,
                    ArchivedFile.archive_id.in_(list(archive_ids)),
                )
            )
        ).all()
        if len(rows) != len(set(archive_ids)) or any(row.storage_provider != from_provider for row in rows):
            raise DomainError(detail=f"Not all archives are on {from_provider} provider", status_code=422)

        migrated: list[str] = []
        failures: list[dict[str, str]] = []
        for row in rows:
            if row.status == ArchiveStatus.DELETED:
                row.storage_provider = to_provider
                migrated.append(str(row.archive_id))
                continue
            try:
                content = await source.read(key=row.storage_key)
                await target.put_bytes(
                    key=row.storage_key, data=content, content_type=row.mime_type or "application/octet-stream"
                )
                row.storage_provider = to_provider
                await self.session.commit()
                await source.delete(key=row.storage_key)
                migrated.append(str(row.archive_id))
            except Exception as exc:  # noqa: BLE001
                failures.append({"archive_id": str(row.archive_id), "error": str(exc) or type(exc).__name__})
                metrics.record_archive_operation("migrate", "error")
        await self.session.commit()
        metrics.record_archive_operation("migrate", "success", count=len(migrated))
        return {
            "success": True,
            "total_requested": len(archive_ids),
            "migrated": len(migrated),
            "failed": len(failures),
            "from_provider": from_provider,
            "to_provider": to_provider,
            "failures": failures,
        }
