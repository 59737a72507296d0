from datetime import timedelta

import anyio
import pytest
from sqlalchemy import select

from clutterscore.domain.archives.db_models import ArchivedFile, ArchiveStatus
from clutterscore.domain.archives.service import (
    ARCHIVE_FILE_CREATED,
    ARCHIVE_FILE_EXPIRING,
    ArchiveService,
    build_storage_key,
    slugify_file_name,
)
from clutterscore.domain.connectors.types import Platform
from clutterscore.domain.errors import ArchiveDeletedError, ArchiveStateError, DomainError
from clutterscore.domain.job_events.db_models import JobEvent
from clutterscore.infra.storage import LocalStorageBackend
from clutterscore.jobs.archives import (
    run_archive_expiry_sweep,
    run_archive_expiry_warnings,
    run_archive_failure_monitor,
    run_archive_final_warnings,
    run_archive_health,
    run_weekly_archive_report,
    warn_archive_expiring,
)
from clutterscore.shared.clock import ensure_aware, utcnow
from tests.conftest import DEFAULT_TENANT_ID, seed_tenant

NOW = utcnow().replace(microsecond=0)


async def _archive(session, storage, *, external_id: str = "id:abc", now=NOW) -> ArchivedFile:
    await seed_tenant(session)
    return await ArchiveService(session, storage).archive(
        tenant_id=DEFAULT_TENANT_ID,
        platform=Platform.DROPBOX,
        external_id=external_id,
        file_name="Quarterly Report.PDF",
        content=b"%PDF-1.7 quarterly",
        mime_type="application/pdf",
        original_path="/finance/Quarterly Report.PDF",
        archived_by="u-1",
        now=now,
    )


def test_storage_key_is_tenant_scoped_and_slugified():
    assert slugify_file_name("Quarterly Report.PDF") == "quarterly-report.pdf"
    assert slugify_file_name("README") == "readme"
    key = build_storage_key(DEFAULT_TENANT_ID, Platform.DROPBOX, "id:abc/def", "My File.txt")
    assert key == f"{DEFAULT_TENANT_ID}/DROPBOX/id_abc_def/my-file.txt"


def test_archive_sets_retention_clock_and_queues_events(async_session_maker, storage):
    async def _run():
        async with async_session_maker() as session:
            archive = await _archive(session, storage)

        assert archive.status == ArchiveStatus.ARCHIVED
        assert archive.expires_at == NOW + timedelta(days=30)
        assert archive.size_bytes == len(b"%PDF-1.7 quarterly")
        assert await storage.read(key=archive.storage_key) == b"%PDF-1.7 quarterly"

        async with async_session_maker() as session:
            events = {event.name: event for event in (await session.scalars(select(JobEvent))).all()}
        assert set(events) == {ARCHIVE_FILE_CREATED, ARCHIVE_FILE_EXPIRING}
        assert ensure_aware(events[ARCHIVE_FILE_EXPIRING].deliver_after) == NOW + timedelta(days=23)
        assert events[ARCHIVE_FILE_CREATED].payload_json["archive_id"] == str(archive.archive_id)

    anyio.run(_run)


def test_expiry_sweep_respects_retention_boundary(async_session_maker, storage):
    async def _run():
        async with async_session_maker() as session:
            archive = await _archive(session, storage)

        async with async_session_maker() as session:
            early = await run_archive_expiry_sweep(session, storage, now=NOW + timedelta(days=29))
        assert early == {"deleted": 0, "failed": 0}
        assert await storage.exists(key=archive.storage_key)

        async with async_session_maker() as session:
            late = await run_archive_expiry_sweep(session, storage, now=NOW + timedelta(days=31))
        assert late == {"deleted": 1, "failed": 0}
        assert not await storage.exists(key=archive.storage_key)

        async with async_session_maker() as session:
            stored = await session.get(ArchivedFile, archive.archive_id)
            assert stored.status == ArchiveStatus.DELETED
            assert stored.deleted_at is not None

    anyio.run(_run)


def test_restore_uploads_blob_and_marks_restored(async_session_maker, storage):
    uploads = []

    async def _upload(content, request):
        uploads.append((content, request))
        return "new-external-id"

    async def _run():
        async with async_session_maker() as session:
            archive = await _archive(session, storage)
            restored = await ArchiveService(session, storage).restore(
                archive.archive_id, _upload, tenant_id=DEFAULT_TENANT_ID, restored_by="u-2"
            )

        assert restored.status == ArchiveStatus.RESTORED
        assert restored.restored_external_id == "new-external-id"
        assert restored.restored_by == "u-2"
        [(content, request)] = uploads
        assert content == b"%PDF-1.7 quarterly"
        assert request.original_path == "/finance/Quarterly Report.PDF"

        async with async_session_maker() as session:
            with pytest.raises(ArchiveStateError):
                await ArchiveService(session, storage).restore(archive.archive_id, _upload)

    anyio.run(_run)


def test_restore_of_deleted_archive_is_gone(async_session_maker, storage):
    async def _upload(content, request):
        return "never"

    async def _run():
        async with async_session_maker() as session:
            archive = await _archive(session, storage)
            service = ArchiveService(session, storage)
            assert await service.cleanup_single_archive(archive.archive_id, reason="manual") is True
            assert await service.cleanup_single_archive(archive.archive_id) is False
            with pytest.raises(ArchiveDeletedError):
                await service.restore(archive.archive_id, _upload)
            with pytest.raises(ArchiveDeletedError):
                await service.get_download_url(archive.archive_id)

    anyio.run(_run)


def test_failed_restore_keeps_archive_and_records_error(async_session_maker, storage, notifier):
    async def _upload(content, request):
        raise RuntimeError("upload rejected")

    async def _run():
        async with async_session_maker() as session:
            archive = await _archive(session, storage)
            with pytest.raises(RuntimeError):
                await ArchiveService(session, storage).restore(archive.archive_id, _upload)

        async with async_session_maker() as session:
            stored = await session.get(ArchivedFile, archive.archive_id)
            assert stored.status == ArchiveStatus.ARCHIVED
            assert stored.last_error == "upload rejected"
            result = await run_archive_failure_monitor(session, notifier)

        assert result == {"failures": 1, "tenants": 1}
        [sent] = notifier.sent
        assert sent.tenant_id == DEFAULT_TENANT_ID
        assert sent.metadata["failures"][0]["error"] == "upload rejected"

    anyio.run(_run)


def test_download_url_and_stats(async_session_maker, storage):
    async def _run():
        async with async_session_maker() as session:
            archive = await _archive(session, storage)
            await _archive(session, storage, external_id="id:other", now=NOW - timedelta(days=25))
            service = ArchiveService(session, storage)
            url = await service.get_download_url(archive.archive_id, expires_in=60)
            assert url.startswith(f"https://example.invalid/{archive.storage_key}")
            assert await service.exists(archive) is True

            stats = await service.get_archive_stats(DEFAULT_TENANT_ID, now=NOW)

        assert stats["total_files"] == 2
        assert stats["by_status"]["ARCHIVED"] == 2
        assert stats["by_platform"]["DROPBOX"]["count"] == 2
        assert stats["expiring_soon"] == 1

    anyio.run(_run)


def test_migrate_to_same_provider_is_rejected(async_session_maker, storage):
    async def _run():
        async with async_session_maker() as session:
            archive = await _archive(session, storage)
            with pytest.raises(DomainError) as excinfo:
                await ArchiveService(session, storage).migrate(
                    tenant_id=DEFAULT_TENANT_ID,
                    archive_ids=[archive.archive_id],
                    from_provider="memory",
                    to_provider="memory",
                )
        assert excinfo.value.status_code == 422

    anyio.run(_run)


def test_expiry_warnings_are_sent_once(async_session_maker, storage, notifier):
    async def _run():
        async with async_session_maker() as session:
            await _archive(session, storage)

        async with async_session_maker() as session:
            too_early = await run_archive_expiry_warnings(session, notifier, now=NOW + timedelta(days=10))
        assert too_early["warned"] == 0

        async with async_session_maker() as session:
            first = await run_archive_expiry_warnings(session, notifier, now=NOW + timedelta(days=24))
            second = await run_archive_expiry_warnings(session, notifier, now=NOW + timedelta(days=25))

        assert first == {"warned": 1, "tenants": 1, "failed": 0}
        assert second["warned"] == 0
        [sent] = notifier.sent
        assert sent.title == "Archived files expiring soon"
        assert "6 day(s)" in sent.message
        assert sent.metadata["kind"] == "expiry"

        async with async_session_maker() as session:
            final = await run_archive_final_warnings(
                session, notifier, now=NOW + timedelta(days=29, hours=1)
            )
        assert final["warned"] == 1
        assert notifier.sent[-1].title == "Archived files will be deleted tomorrow"

    anyio.run(_run)


def test_delayed_reminder_skips_restored_archive(async_session_maker, storage, notifier):
    async def _upload(content, request):
        return "back"

    async def _run():
        async with async_session_maker() as session:
            archive = await _archive(session, storage)
            await ArchiveService(session, storage).restore(archive.archive_id, _upload)
            result = await warn_archive_expiring(
                session, notifier, archive.archive_id, now=NOW + timedelta(days=23)
            )
        assert result["warned"] == 0
        assert notifier.sent == []

    anyio.run(_run)


def test_health_check_reports_orphaned_blob(async_session_maker, storage, notifier):
    async def _run():
        async with async_session_maker() as session:
            healthy_archive = await _archive(session, storage)
            orphan = await _archive(session, storage, external_id="id:gone")
            await storage.delete(key=orphan.storage_key)
            result = await run_archive_health(session, {"memory": storage}, notifier, now=NOW)

        assert result["checked"] == 2
        assert result["orphaned"] == 1
        assert result["healthy"] == 0
        [alert] = notifier.sent
        assert alert.tenant_id is None
        assert alert.metadata["orphaned"] == [str(orphan.archive_id)]
        assert str(healthy_archive.archive_id) not in alert.metadata["orphaned"]

    anyio.run(_run)


def test_weekly_report_summarizes_per_tenant(async_session_maker, storage, notifier):
    async def _run():
        async with async_session_maker() as session:
            await _archive(session, storage)
            deleted = await _archive(session, storage, external_id="id:old")
            await ArchiveService(session, storage).cleanup_single_archive(deleted.archive_id, now=NOW)
            result = await run_weekly_archive_report(session, notifier, now=NOW + timedelta(days=1))

        assert result["archived"] == 1
        assert result["deleted"] == 1
        assert result["net_change"] == 0
        assert result["notified"] == 1
        [report] = notifier.sent
        assert report.metadata["file_count"] == 1
        assert report.metadata["tenant_name"] == "Acme"

    anyio.run(_run)


def test_local_storage_rejects_keys_escaping_root(tmp_path):
    root = tmp_path / "archives"
    sibling = tmp_path / "archives-shadow"
    sibling.mkdir()
    (sibling / "secret.txt").write_bytes(b"not yours")
    backend = LocalStorageBackend(root, signing_secret="s", public_base_url="http://testserver/blobs")

    async def _run():
        await backend.put_bytes(key="tenant/a.pdf", data=b"ok", content_type="application/pdf")
        assert await backend.read(key="tenant/a.pdf") == b"ok"
        with pytest.raises(ValueError):
            await backend.read(key="../archives-shadow/secret.txt")
        with pytest.raises(ValueError):
            await backend.exists(key="../archives-shadow/secret.txt")
        with pytest.raises(ValueError):
            await backend.list(prefix="../archives-shadow")

    anyio.run(_run)
