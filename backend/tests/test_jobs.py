import dataclasses
import uuid

import anyio
import pytest
from sqlalchemy import select

from clutterscore.domain.archives.db_models import ArchivedFile, ArchiveStatus
from clutterscore.domain.archives.service import ArchiveService
from clutterscore.domain.connectors.registry import ConnectorRegistry
from clutterscore.domain.connectors.types import Platform
from clutterscore.domain.job_events.db_models import JobEvent, JobHeartbeat
from clutterscore.domain.job_events.service import enqueue_job_event, process_job_events
from clutterscore.domain.playbooks.db_models import AuditLogEntry, Playbook, PlaybookItem
from clutterscore.domain.playbooks.statuses import ImpactType, PlaybookStatus, RiskLevel
from clutterscore.infra.storage import InMemoryStorageBackend
from clutterscore.jobs import run as jobs_run
from clutterscore.jobs.events import (
    ARCHIVE_BATCH_DELETE,
    JobContext,
    bind_job_handlers,
    handle_archive_restored,
    handle_batch_restore,
    handle_migrate_storage,
    handle_playbook_execute,
)
from clutterscore.jobs.heartbeat import record_heartbeat, record_job_result
from clutterscore.settings import settings
from tests.conftest import DEFAULT_TENANT_ID, scripted_connector, seed_integration, seed_tenant


@pytest.fixture(autouse=True)
def serial_batches(monkeypatch):
    monkeypatch.setattr(settings, "archive_batch_restore_concurrency", 1)
    monkeypatch.setattr(settings, "archive_batch_delete_concurrency", 1)
    monkeypatch.setattr(settings, "archive_migrate_concurrency", 1)


async def _archive(session, storage, file_name: str) -> ArchivedFile:
    await seed_tenant(session)
    return await ArchiveService(session, storage).archive(
        tenant_id=DEFAULT_TENANT_ID,
        platform=Platform.DROPBOX,
        external_id=f"id:{file_name}",
        file_name=file_name,
        content=f"content of {file_name}".encode(),
        original_path=f"/docs/{file_name}",
    )


def test_batch_delete_event_runs_through_outbox(async_session_maker, services, storage):
    context = JobContext(services=services, session_factory=async_session_maker)
    missing = uuid.uuid4()

    async def _run():
        async with async_session_maker() as session:
            first = await _archive(session, storage, "a.pdf")
            second = await _archive(session, storage, "b.pdf")
            await enqueue_job_event(
                session,
                name=ARCHIVE_BATCH_DELETE,
                payload={
                    "tenant_id": str(DEFAULT_TENANT_ID),
                    "archive_ids": [str(first.archive_id), str(second.archive_id), str(missing)],
                    "user_id": "u-1",
                },
                dedupe_key="batch-delete-1",
                tenant_id=DEFAULT_TENANT_ID,
            )
            await session.commit()
            result = await process_job_events(session, bind_job_handlers(context))
        assert result["sent"] == 1

        async with async_session_maker() as session:
            event = await session.scalar(select(JobEvent).where(JobEvent.name == ARCHIVE_BATCH_DELETE))
            assert event.result_json["processed"] == 2
            assert event.result_json["failed"] == 1
            assert event.result_json["errors"][0]["archive_id"] == str(missing)
            statuses = (await session.scalars(select(ArchivedFile.status))).all()
            assert set(statuses) == {ArchiveStatus.DELETED}
        assert not await storage.exists(key=first.storage_key)

    anyio.run(_run)


def test_batch_restore_reports_per_item_failures(async_session_maker, services, storage):
    connector_cls = scripted_connector(Platform.DROPBOX, failures={"broken.pdf"})
    services.connector_registry = ConnectorRegistry({Platform.DROPBOX: connector_cls})
    context = JobContext(services=services, session_factory=async_session_maker)

    async def _run():
        async with async_session_maker() as session:
            await seed_integration(session, Platform.DROPBOX)
            ok = await _archive(session, storage, "keep.pdf")
            broken = await _archive(session, storage, "broken.pdf")

        result = await handle_batch_restore(
            context,
            {"tenant_id": str(DEFAULT_TENANT_ID), "archive_ids": [str(ok.archive_id), str(broken.archive_id)]},
        )
        assert result["processed"] == 1
        assert result["failed"] == 1
        assert result["success"] is False

        async with async_session_maker() as session:
            restored = await session.get(ArchivedFile, ok.archive_id)
            assert restored.status == ArchiveStatus.RESTORED
            assert restored.restored_external_id == "restored-keep.pdf"
            failed = await session.get(ArchivedFile, broken.archive_id)
            assert failed.status == ArchiveStatus.ARCHIVED
            assert failed.last_error == "upload failed for broken.pdf"
        assert ("upload_file", "keep.pdf") in connector_cls.calls

    anyio.run(_run)


def test_migrate_storage_moves_blobs_between_providers(async_session_maker, services, storage):
    target = InMemoryStorageBackend()
    migrated_services = dataclasses.replace(services, storage_backends={"memory": storage, "local": target})
    context = JobContext(services=migrated_services, session_factory=async_session_maker)

    async def _run():
        async with async_session_maker() as session:
            archive = await _archive(session, storage, "move.pdf")

        result = await handle_migrate_storage(
            context,
            {
                "tenant_id": str(DEFAULT_TENANT_ID),
                "archive_ids": [str(archive.archive_id)],
                "from_provider": "memory",
                "to_provider": "local",
            },
        )
        assert result == {"success": True, "processed": 1, "failed": 0, "errors": []}
        assert await target.read(key=archive.storage_key) == b"content of move.pdf"
        assert not await storage.exists(key=archive.storage_key)

        async with async_session_maker() as session:
            stored = await session.get(ArchivedFile, archive.archive_id)
            assert stored.storage_provider == "local"

    anyio.run(_run)


def test_restored_event_notifies_tenant(async_session_maker, services, notifier):
    context = JobContext(services=services, session_factory=async_session_maker)

    async def _run():
        result = await handle_archive_restored(
            context,
            {"tenant_id": str(DEFAULT_TENANT_ID), "file_name": "a.pdf", "platform": "DROPBOX", "archive_id": "x"},
        )
        assert result == {"success": True}

    anyio.run(_run)
    [sent] = notifier.sent
    assert sent.title == "File restored"
    assert sent.message == "a.pdf was restored to DROPBOX."


def test_job_runner_records_success_heartbeat(async_session_maker, services):
    runner = jobs_run.job_runner("archive-failure-monitor", services, async_session_maker)

    async def _run():
        result = await jobs_run._run_job("archive-failure-monitor", async_session_maker, runner)
        assert result == {"failures": 0, "tenants": 0}
        await record_heartbeat(async_session_maker, runner_id="runner-7")

        async with async_session_maker() as session:
            job = await session.get(JobHeartbeat, "archive-failure-monitor")
            assert job.last_success_at is not None
            assert job.consecutive_failures == 0
            runner_row = await session.get(JobHeartbeat, "jobs-runner")
            assert runner_row.runner_id == "runner-7"

    anyio.run(_run)


def test_job_failures_accumulate(async_session_maker):
    async def _run():
        await record_job_result(async_session_maker, "archive-health", success=False, error_reason="TimeoutError")
        await record_job_result(async_session_maker, "archive-health", success=False, error_reason="OSError")
        async with async_session_maker() as session:
            record = await session.get(JobHeartbeat, "archive-health")
            assert record.consecutive_failures == 2
            assert record.last_error == "OSError"
            assert record.last_success_at is None

        await record_job_result(async_session_maker, "archive-health", success=True)
        async with async_session_maker() as session:
            record = await session.get(JobHeartbeat, "archive-health")
            assert record.consecutive_failures == 0
            assert record.last_error is None

    anyio.run(_run)


def test_unknown_job_name_is_rejected(async_session_maker, services):
    with pytest.raises(ValueError):
        jobs_run.job_runner("no-such-job", services, async_session_maker)


def test_playbook_execute_retry_settles_interrupted_run(async_session_maker, services):
    context = JobContext(services=services, session_factory=async_session_maker)

    async def _run():
        async with async_session_maker() as session:
            await seed_tenant(session)
            playbook = Playbook(
                tenant_id=DEFAULT_TENANT_ID,
                title="Archive 1 Inactive Channels",
                impact_type=ImpactType.EFFICIENCY,
                source=Platform.SLACK,
                risk=RiskLevel.LOW,
                item_count=1,
                status=PlaybookStatus.EXECUTING,
            )
            playbook.items = [
                PlaybookItem(
                    position=0,
                    item_name="old-0",
                    item_type="channel",
                    external_id="C0",
                    metadata_json={"kind": "channel", "channel_name": "old-0"},
                )
            ]
            session.add(playbook)
            await session.commit()
            playbook_id = playbook.playbook_id

        payload = {"tenant_id": str(DEFAULT_TENANT_ID), "playbook_id": str(playbook_id), "event_id": "evt-1"}
        result = await handle_playbook_execute(context, payload)

        async with async_session_maker() as session:
            stored = await session.get(Playbook, playbook_id)
            entry = (await session.scalars(select(AuditLogEntry))).one()
        return result, stored, entry

    result, stored, entry = anyio.run(_run)
    assert result["status"] == "FAILED"
    assert result["success"] is False
    assert stored.status == PlaybookStatus.FAILED
    assert entry.details["interrupted"] is True
