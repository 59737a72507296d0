from datetime import timedelta

import anyio
import pytest
from sqlalchemy import select

from clutterscore.domain.activity.db_models import ActivityEvent
from clutterscore.domain.archives.db_models import ArchivedFile, ArchiveStatus
from clutterscore.domain.archives.service import ArchiveService
from clutterscore.domain.connectors.registry import ConnectorRegistry
from clutterscore.domain.connectors.types import ActionType, Platform
from clutterscore.domain.errors import InvalidPlaybookTransition, PlaybookExecutionAborted
from clutterscore.domain.integrations.db_models import Integration, SyncStatus
from clutterscore.domain.playbooks.db_models import AuditLogEntry, Playbook, PlaybookItem
from clutterscore.domain.playbooks.executor import (
    AUTOMATED_EXECUTOR,
    TenantLocks,
    composite_status,
    execute_playbook,
    run_automated_execution,
    settle_interrupted_execution,
)
from clutterscore.domain.playbooks.statuses import AuditLogStatus, ImpactType, PlaybookStatus, RiskLevel
from clutterscore.domain.playbooks.undo_actions import load_undo_actions
from clutterscore.settings import settings
from clutterscore.shared.clock import ensure_aware, utcnow
from tests.conftest import DEFAULT_TENANT_ID, scripted_connector, seed_integration, seed_tenant


async def _seed_savings_playbook(session, *, count: int = 5, source: Platform = Platform.DROPBOX) -> Playbook:
    await seed_tenant(session)
    playbook = Playbook(
        tenant_id=DEFAULT_TENANT_ID,
        title=f"Remove {count} Duplicate Files",
        impact_type=ImpactType.SAVINGS,
        source=source,
        risk=RiskLevel.LOW,
        item_count=count,
        status=PlaybookStatus.PENDING,
    )
    playbook.items = [
        PlaybookItem(
            position=index,
            item_name=f"file-{index}.pdf",
            item_type="file",
            external_id=f"file-{index}",
            metadata_json={"kind": "file", "path": f"/docs/file-{index}.pdf", "size_mb": 2.0},
        )
        for index in range(count)
    ]
    session.add(playbook)
    await session.commit()
    return playbook


async def _seed_channel_playbook(session, *, count: int = 2) -> Playbook:
    playbook = Playbook(
        tenant_id=DEFAULT_TENANT_ID,
        title=f"Archive {count} Inactive Channels",
        impact_type=ImpactType.EFFICIENCY,
        source=Platform.SLACK,
        risk=RiskLevel.LOW,
        item_count=count,
        status=PlaybookStatus.PENDING,
    )
    playbook.items = [
        PlaybookItem(
            position=index,
            item_name=f"old-{index}",
            item_type="channel",
            external_id=f"C{index}",
            metadata_json={"kind": "channel", "channel_name": f"old-{index}", "member_count": 1},
        )
        for index in range(count)
    ]
    session.add(playbook)
    await session.commit()
    return playbook


def test_composite_status_rules():
    assert composite_status(1, 0) == AuditLogStatus.SUCCESS
    assert composite_status(3, 2) == AuditLogStatus.SUCCESS
    assert composite_status(0, 2) == AuditLogStatus.FAILED
    assert composite_status(0, 0) == AuditLogStatus.PENDING


def test_unsupported_operation_aborts_whole_batch(async_session_maker):
    connector_cls = scripted_connector(Platform.DROPBOX, unsupported={"file-2"})
    registry = ConnectorRegistry({Platform.DROPBOX: connector_cls})

    async def _run():
        async with async_session_maker() as session:
            await seed_integration(session, Platform.DROPBOX)
            playbook = await _seed_savings_playbook(session)
            playbook_id = playbook.playbook_id
            with pytest.raises(PlaybookExecutionAborted):
                await execute_playbook(session, DEFAULT_TENANT_ID, playbook_id, registry, user_id="u-1")

        async with async_session_maker() as session:
            stored = await session.get(Playbook, playbook_id)
            assert stored.status == PlaybookStatus.FAILED
            entries = (await session.scalars(select(AuditLogEntry))).all()
            assert len(entries) == 1
            assert entries[0].status == AuditLogStatus.FAILED
            assert entries[0].undo_actions == []
            assert entries[0].undo_expires_at is None
            assert entries[0].details["aborted"] is True

        touched = [target for operation, target in connector_cls.calls if operation == "archive_file"]
        assert touched == ["file-0", "file-1", "file-2"]

    anyio.run(_run)


def test_generic_item_failure_is_counted_and_execution_continues(async_session_maker):
    connector_cls = scripted_connector(Platform.DROPBOX, failures={"file-1"})
    registry = ConnectorRegistry({Platform.DROPBOX: connector_cls})

    async def _run():
        now = utcnow()
        async with async_session_maker() as session:
            await seed_integration(session, Platform.DROPBOX)
            playbook = await _seed_savings_playbook(session)
            outcome = await execute_playbook(
                session, DEFAULT_TENANT_ID, playbook.playbook_id, registry, user_id="u-1", now=now
            )

        assert outcome.processed == 4
        assert outcome.failed == 1
        assert outcome.log_status == AuditLogStatus.SUCCESS
        assert outcome.partial_undo is True
        assert outcome.undo_actions == 4
        assert outcome.to_dict()["partial_undo"] is True

        async with async_session_maker() as session:
            entry = await session.get(AuditLogEntry, outcome.audit_log_id)
            assert entry.action_type == ActionType.ARCHIVE_FILE
            assert entry.executor == "User u-1"
            assert entry.details["partial_undo"] is True
            assert entry.details["platform"] == "DROPBOX"
            actions = load_undo_actions(entry.undo_actions)
            assert [action.file_id for action in actions] == ["file-0", "file-2", "file-3", "file-4"]
            assert actions[0].type == "restore_file"
            assert actions[0].original_path == "/docs/file-0.pdf"
            assert ensure_aware(entry.undo_expires_at) == now + timedelta(days=settings.undo_retention_days)

            stored = await session.get(Playbook, playbook.playbook_id)
            assert stored.status == PlaybookStatus.EXECUTED
            assert stored.items_processed == 4
            assert stored.items_failed == 1

    anyio.run(_run)


def test_all_items_failing_marks_playbook_failed(async_session_maker):
    connector_cls = scripted_connector(Platform.DROPBOX, failures={"file-0", "file-1"})
    registry = ConnectorRegistry({Platform.DROPBOX: connector_cls})

    async def _run():
        async with async_session_maker() as session:
            await seed_integration(session, Platform.DROPBOX)
            playbook = await _seed_savings_playbook(session, count=2)
            outcome = await execute_playbook(session, DEFAULT_TENANT_ID, playbook.playbook_id, registry)

        assert outcome.status == PlaybookStatus.FAILED
        assert outcome.log_status == AuditLogStatus.FAILED
        assert outcome.undo_actions == 0

        async with async_session_maker() as session:
            entry = await session.get(AuditLogEntry, outcome.audit_log_id)
            assert entry.undo_expires_at is None
            assert len(entry.details["errors"]) == 2

    anyio.run(_run)


def test_deselected_items_are_skipped(async_session_maker):
    connector_cls = scripted_connector(Platform.DROPBOX)
    registry = ConnectorRegistry({Platform.DROPBOX: connector_cls})

    async def _run():
        async with async_session_maker() as session:
            await seed_integration(session, Platform.DROPBOX)
            playbook = await _seed_savings_playbook(session, count=3)
            playbook.items[1].is_selected = False
            await session.commit()
            outcome = await execute_playbook(session, DEFAULT_TENANT_ID, playbook.playbook_id, registry)

        assert outcome.processed == 2
        assert outcome.skipped == 1
        assert ("archive_file", "file-1") not in connector_cls.calls

    anyio.run(_run)


def test_missing_integration_is_a_logged_no_op(async_session_maker):
    registry = ConnectorRegistry({Platform.DROPBOX: scripted_connector(Platform.DROPBOX)})

    async def _run():
        async with async_session_maker() as session:
            playbook = await _seed_savings_playbook(session, count=2)
            outcome = await execute_playbook(session, DEFAULT_TENANT_ID, playbook.playbook_id, registry)

        assert outcome.status == PlaybookStatus.EXECUTED
        assert outcome.processed == 2
        assert outcome.undo_actions == 0
        async with async_session_maker() as session:
            entry = await session.get(AuditLogEntry, outcome.audit_log_id)
            assert entry.details["no_connector"] is True
            assert entry.undo_actions == []

    anyio.run(_run)


def test_token_error_marks_integration_and_fails_playbook(async_session_maker):
    registry = ConnectorRegistry({Platform.DROPBOX: scripted_connector(Platform.DROPBOX)})

    async def _run():
        async with async_session_maker() as session:
            integration = await seed_integration(
                session, Platform.DROPBOX, expires_at=utcnow() - timedelta(hours=1)
            )
            integration_id = integration.integration_id
            playbook = await _seed_savings_playbook(session, count=1)
            outcome = await execute_playbook(session, DEFAULT_TENANT_ID, playbook.playbook_id, registry)

        assert outcome.status == PlaybookStatus.FAILED
        async with async_session_maker() as session:
            stored = await session.get(Integration, integration_id)
            assert stored.sync_status == SyncStatus.ERROR
            assert stored.last_error
            assert stored.last_error_at is not None

    anyio.run(_run)


def test_executed_playbook_cannot_run_again(async_session_maker):
    registry = ConnectorRegistry({Platform.DROPBOX: scripted_connector(Platform.DROPBOX)})

    async def _run():
        async with async_session_maker() as session:
            await seed_integration(session, Platform.DROPBOX)
            playbook = await _seed_savings_playbook(session, count=1)
            await execute_playbook(session, DEFAULT_TENANT_ID, playbook.playbook_id, registry)
            with pytest.raises(InvalidPlaybookTransition):
                await execute_playbook(session, DEFAULT_TENANT_ID, playbook.playbook_id, registry)

    anyio.run(_run)


def test_automated_run_executes_eligible_playbooks_without_undo(async_session_maker, monkeypatch):
    monkeypatch.setattr(settings, "automation_tiers_raw", "pro")
    connector_cls = scripted_connector(Platform.SLACK)
    registry = ConnectorRegistry({Platform.SLACK: connector_cls})

    async def _run():
        async with async_session_maker() as session:
            await seed_tenant(session, plan_tier="pro")
            await seed_integration(session, Platform.SLACK)
            eligible = await _seed_channel_playbook(session)
            risky = await _seed_savings_playbook(session, count=2, source=Platform.SLACK)

        totals = await run_automated_execution(async_session_maker, registry, tenant_locks=TenantLocks())
        assert totals["tenants"] == 1
        assert totals["executed"] == 1
        assert totals["items_processed"] == 2

        async with async_session_maker() as session:
            executed = await session.get(Playbook, eligible.playbook_id)
            assert executed.status == PlaybookStatus.EXECUTED
            assert executed.approved_by == AUTOMATED_EXECUTOR
            untouched = await session.get(Playbook, risky.playbook_id)
            assert untouched.status == PlaybookStatus.PENDING
            entry = (await session.scalars(select(AuditLogEntry))).one()
            assert entry.executor == AUTOMATED_EXECUTOR
            assert entry.undo_actions == []
            assert entry.details["mode"] == "automated"
            actions = (await session.scalars(select(ActivityEvent.action))).all()
            assert "playbook.executed" in actions

    anyio.run(_run)


def test_automated_run_skips_free_tenants(async_session_maker, monkeypatch):
    monkeypatch.setattr(settings, "automation_tiers_raw", "pro")
    registry = ConnectorRegistry({Platform.SLACK: scripted_connector(Platform.SLACK)})

    async def _run():
        async with async_session_maker() as session:
            await seed_tenant(session, plan_tier="free")
            await _seed_channel_playbook(session)

        totals = await run_automated_execution(async_session_maker, registry, tenant_locks=TenantLocks())
        assert totals["tenants"] == 0
        assert totals["executed"] == 0

    anyio.run(_run)


def test_unexpected_error_before_items_still_settles_playbook(async_session_maker):
    base = scripted_connector(Platform.DROPBOX)

    class BrokenRefreshConnector(base):
        async def refresh_token(self):
            raise KeyError("client_secret")

    registry = ConnectorRegistry({Platform.DROPBOX: BrokenRefreshConnector})

    async def _run():
        async with async_session_maker() as session:
            await seed_integration(session, Platform.DROPBOX, expires_at=utcnow() - timedelta(hours=1))
            playbook = await _seed_savings_playbook(session, count=2)
            playbook_id = playbook.playbook_id
            with pytest.raises(KeyError):
                await execute_playbook(session, DEFAULT_TENANT_ID, playbook_id, registry, user_id="u-1")

        async with async_session_maker() as session:
            stored = await session.get(Playbook, playbook_id)
            assert stored.status == PlaybookStatus.FAILED
            entry = (await session.scalars(select(AuditLogEntry))).one()
            assert entry.status == AuditLogStatus.FAILED
            assert "client_secret" in entry.details["error"]
        assert [call for call in base.calls if call[0] == "archive_file"] == []

    anyio.run(_run)


def test_interrupted_run_is_settled_instead_of_rejected(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            playbook = await _seed_savings_playbook(session, count=1)
            playbook.status = PlaybookStatus.EXECUTING
            await session.commit()
            playbook_id = playbook.playbook_id

        async with async_session_maker() as session:
            outcome = await settle_interrupted_execution(session, DEFAULT_TENANT_ID, playbook_id, user_id="u-1")
        assert outcome.status == PlaybookStatus.FAILED
        assert outcome.log_status == AuditLogStatus.FAILED

        async with async_session_maker() as session:
            again = await settle_interrupted_execution(session, DEFAULT_TENANT_ID, playbook_id)
            entries = (await session.scalars(select(AuditLogEntry))).all()
        assert again.status == PlaybookStatus.FAILED
        assert again.audit_log_id == outcome.audit_log_id
        assert len(entries) == 1
        assert entries[0].details["interrupted"] is True

    anyio.run(_run)


def test_runnable_playbook_is_left_for_execution(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            playbook = await _seed_savings_playbook(session, count=1)
            assert await settle_interrupted_execution(session, DEFAULT_TENANT_ID, playbook.playbook_id) is None
            stored = await session.get(Playbook, playbook.playbook_id)
            assert stored.status == PlaybookStatus.PENDING

    anyio.run(_run)


def test_archive_copy_is_discarded_when_move_fails(async_session_maker, storage):
    connector_cls = scripted_connector(Platform.DROPBOX, failures={"file-1"})
    registry = ConnectorRegistry({Platform.DROPBOX: connector_cls})

    async def _run():
        async with async_session_maker() as session:
            await seed_integration(session, Platform.DROPBOX)
            playbook = await _seed_savings_playbook(session, count=2)
            outcome = await execute_playbook(
                session,
                DEFAULT_TENANT_ID,
                playbook.playbook_id,
                registry,
                user_id="u-1",
                archive_service=ArchiveService(session, storage),
            )

        assert outcome.processed == 1
        assert outcome.failed == 1
        async with async_session_maker() as session:
            archives = {
                archive.external_id: archive for archive in (await session.scalars(select(ArchivedFile))).all()
            }
            entry = await session.get(AuditLogEntry, outcome.audit_log_id)
        assert archives["file-0"].status == ArchiveStatus.ARCHIVED
        assert archives["file-1"].status == ArchiveStatus.DELETED
        assert not await storage.exists(key=archives["file-1"].storage_key)
        assert entry.details["archive_ids"] == [str(archives["file-0"].archive_id)]

    anyio.run(_run)
