from datetime import datetime, timedelta, timezone

import anyio
import pytest
from sqlalchemy import func, select

from clutterscore.domain.audit import throttle
from clutterscore.domain.audit.db_models import AuditResult, FileRecord, ScoreTrend
from clutterscore.domain.audit.service import get_latest_audit, list_audit_playbooks, run_audit
from clutterscore.domain.connectors.registry import ConnectorRegistry
from clutterscore.domain.connectors.types import AuditData, FileData, FileType, Platform, TokenGrant, UserData
from clutterscore.domain.errors import AuditQuotaExceeded
from clutterscore.domain.integrations import service as integrations_service
from clutterscore.domain.integrations.db_models import Integration, SyncStatus
from clutterscore.domain.tenants.db_models import Tenant
from clutterscore.settings import settings
from tests.conftest import DEFAULT_TENANT_ID, scripted_connector, seed_integration, seed_tenant

NOW = datetime(2024, 6, 15, 12, tzinfo=timezone.utc)


def _dropbox_data() -> AuditData:
    files = [
        FileData(
            name=f"copy-{index}.zip",
            size_mb=300.0,
            type=FileType.ARCHIVE,
            source=Platform.DROPBOX,
            external_id=f"id:{index}",
            last_accessed=NOW - timedelta(days=index + 1),
            file_hash="same-content",
            is_duplicate=True,
            duplicate_group="same-content",
        )
        for index in range(3)
    ]
    return AuditData(files=files, users=[], storage_used_gb=0.9, total_licenses=0, active_users=0)


def _slack_data() -> AuditData:
    users = [
        UserData(email="guest@ext.io", name="Guest", source=Platform.SLACK, external_id="U1", is_guest=True),
        UserData(
            email="idle@acme.io",
            name="Idle",
            source=Platform.SLACK,
            external_id="U2",
            last_active=NOW - timedelta(days=200),
        ),
    ]
    return AuditData(files=[], users=users, storage_used_gb=0.0, total_licenses=2, active_users=1)


def _registry(google_error: Exception | None = None) -> ConnectorRegistry:
    return ConnectorRegistry(
        {
            Platform.DROPBOX: scripted_connector(Platform.DROPBOX, audit=_dropbox_data()),
            Platform.SLACK: scripted_connector(Platform.SLACK, audit=_slack_data()),
            Platform.GOOGLE: scripted_connector(Platform.GOOGLE, audit=google_error),
        }
    )


async def _seed_three(session) -> None:
    for platform in (Platform.DROPBOX, Platform.SLACK, Platform.GOOGLE):
        await seed_integration(session, platform)


def test_one_failing_platform_does_not_stop_the_sync(async_session_maker):
    registry = _registry(RuntimeError("drive quota exceeded"))

    async def _run():
        async with async_session_maker() as session:
            await _seed_three(session)
            results = await integrations_service.sync_all_integrations(session, DEFAULT_TENANT_ID, registry)

        assert set(results.data) == {Platform.DROPBOX, Platform.SLACK}
        assert results.errors == {Platform.GOOGLE: "drive quota exceeded"}

        async with async_session_maker() as session:
            rows = {row.platform: row for row in (await session.scalars(select(Integration))).all()}
        assert rows[Platform.GOOGLE].sync_status == SyncStatus.ERROR
        assert rows[Platform.GOOGLE].last_error == "drive quota exceeded"
        assert rows[Platform.DROPBOX].sync_status == SyncStatus.IDLE
        assert rows[Platform.DROPBOX].last_sync_at is not None
        assert rows[Platform.SLACK].last_error is None

    anyio.run(_run)


def test_inactive_integrations_are_not_synced(async_session_maker):
    connector_cls = scripted_connector(Platform.DROPBOX)
    registry = ConnectorRegistry({Platform.DROPBOX: connector_cls})

    async def _run():
        async with async_session_maker() as session:
            await seed_integration(session, Platform.DROPBOX, is_active=False)
            results = await integrations_service.sync_all_integrations(session, DEFAULT_TENANT_ID, registry)
        assert results.data == {}
        assert connector_cls.calls == []

    anyio.run(_run)


def test_run_audit_persists_result_playbooks_and_trend(async_session_maker):
    registry = _registry(RuntimeError("drive quota exceeded"))

    async def _run():
        async with async_session_maker() as session:
            await _seed_three(session)
            outcome = await run_audit(session, DEFAULT_TENANT_ID, registry, user_id="u-1", now=NOW)

        assert outcome.platforms == ["DROPBOX", "SLACK"]
        assert outcome.platform_errors == {"GOOGLE": "drive quota exceeded"}
        assert outcome.playbooks_created >= 2
        assert outcome.to_dict()["success"] is True

        async with async_session_maker() as session:
            audit = await get_latest_audit(session, DEFAULT_TENANT_ID)
            assert audit.audit_result_id == outcome.audit_result_id
            assert audit.total_files == 3
            assert audit.total_users == 2
            assert audit.guest_users == 1
            assert audit.inactive_users == 1
            assert audit.storage_used_gb == 0.9
            file_count = await session.scalar(select(func.count()).select_from(FileRecord))
            assert file_count == 3

            playbooks = await list_audit_playbooks(session, outcome.audit_result_id)
            assert len(playbooks) == outcome.playbooks_created
            assert all(playbook.items for playbook in playbooks)

            trend = (await session.scalars(select(ScoreTrend))).one()
            assert trend.month == "2024-06"
            assert trend.score == outcome.score

            tenant = await session.get(Tenant, DEFAULT_TENANT_ID)
            assert tenant.free_audits_used == 1

    anyio.run(_run)


def test_free_tier_quota_blocks_second_audit_in_month(async_session_maker):
    registry = _registry()

    async def _run():
        async with async_session_maker() as session:
            await seed_integration(session, Platform.DROPBOX)
            await run_audit(session, DEFAULT_TENANT_ID, registry, now=NOW)
            with pytest.raises(AuditQuotaExceeded) as excinfo:
                await run_audit(session, DEFAULT_TENANT_ID, registry, now=NOW + timedelta(days=1))

        assert excinfo.value.status_code == 429
        assert excinfo.value.reset_at == datetime(2024, 7, 1, tzinfo=timezone.utc)

        async with async_session_maker() as session:
            next_month = await run_audit(session, DEFAULT_TENANT_ID, registry, now=datetime(2024, 7, 2, tzinfo=timezone.utc))
            assert next_month.score >= 0
            audits = await session.scalar(select(func.count()).select_from(AuditResult))
            assert audits == 2

    anyio.run(_run)


def test_paid_tiers_have_unlimited_audits(async_session_maker, monkeypatch):
    monkeypatch.setattr(settings, "free_audits_per_month", 1)
    registry = _registry()

    async def _run():
        async with async_session_maker() as session:
            await seed_tenant(session, plan_tier="pro")
            await seed_integration(session, Platform.SLACK)
            for _ in range(3):
                await run_audit(session, DEFAULT_TENANT_ID, registry, now=NOW)
            audits = await session.scalar(select(func.count()).select_from(AuditResult))
        assert audits == 3

    anyio.run(_run)


def test_quota_window_rolls_on_calendar_month():
    tenant = Tenant(name="Acme", plan_tier="free", free_audits_used=1, free_audit_reset_at=NOW - timedelta(days=1))
    throttle.check_audit_quota(tenant, NOW)
    assert tenant.free_audits_used == 0
    assert tenant.free_audit_reset_at == datetime(2024, 7, 1, tzinfo=timezone.utc)
    assert throttle.next_reset_at(datetime(2024, 12, 31, tzinfo=timezone.utc)) == datetime(
        2025, 1, 1, tzinfo=timezone.utc
    )


def test_rotated_refresh_token_is_kept_when_fetch_fails(async_session_maker):
    listing_failure = scripted_connector(Platform.DROPBOX, audit=RuntimeError("listing failed"))
    fresh_until = datetime.now(timezone.utc) + timedelta(hours=4)

    class RotatingConnector(listing_failure):
        async def refresh_token(self) -> TokenGrant:
            return TokenGrant(access_token="token-2", refresh_token="new-refresh", expires_at=fresh_until)

    registry = ConnectorRegistry({Platform.DROPBOX: RotatingConnector})

    async def _run():
        async with async_session_maker() as session:
            await seed_integration(
                session,
                Platform.DROPBOX,
                refresh_token="old-refresh",
                expires_at=datetime.now(timezone.utc) - timedelta(hours=1),
            )
            results = await integrations_service.sync_all_integrations(session, DEFAULT_TENANT_ID, registry)
        assert results.errors == {Platform.DROPBOX: "listing failed"}

        async with async_session_maker() as session:
            row = (await session.scalars(select(Integration))).one()
        assert row.sync_status == SyncStatus.ERROR
        assert row.access_token == "token-2"
        assert row.refresh_token == "new-refresh"

    anyio.run(_run)


def test_single_sync_keeps_rotated_grant_on_failure(async_session_maker):
    listing_failure = scripted_connector(Platform.SLACK, audit=RuntimeError("history unavailable"))

    class RotatingConnector(listing_failure):
        async def refresh_token(self) -> TokenGrant:
            return TokenGrant(access_token="xoxe-2", refresh_token="rotated")

    registry = ConnectorRegistry({Platform.SLACK: RotatingConnector})

    async def _run():
        async with async_session_maker() as session:
            integration = await seed_integration(
                session,
                Platform.SLACK,
                refresh_token="old-refresh",
                expires_at=datetime.now(timezone.utc) - timedelta(minutes=1),
            )
            with pytest.raises(RuntimeError):
                await integrations_service.sync_integration(session, integration, registry)

        async with async_session_maker() as session:
            row = (await session.scalars(select(Integration))).one()
        assert row.refresh_token == "rotated"
        assert row.last_error == "history unavailable"

    anyio.run(_run)
