import asyncio
import uuid
from datetime import timedelta
from urllib.parse import urlparse

import httpx
from sqlalchemy import select

from clutterscore.domain.archives.service import ArchiveService
from clutterscore.domain.audit.db_models import ScoreTrend
from clutterscore.domain.audit.schemas import ScoreTrendPoint
from clutterscore.domain.connectors.dropbox import DropboxConnector
from clutterscore.domain.connectors.registry import ConnectorRegistry
from clutterscore.domain.connectors.types import ActionType, Platform
from clutterscore.domain.integrations.db_models import Integration, SyncStatus
from clutterscore.domain.integrations.schemas import IntegrationResponse
from clutterscore.domain.job_events.db_models import JobEvent
from clutterscore.domain.playbooks.db_models import AuditLogEntry, Playbook, PlaybookItem
from clutterscore.domain.playbooks.statuses import AuditLogStatus, ImpactType, RiskLevel
from clutterscore.domain.playbooks.undo_actions import RestoreChannelAction, dump_undo_actions
from clutterscore.infra.storage import LocalStorageBackend
from clutterscore.jobs.events import ARCHIVE_BATCH_DELETE
from clutterscore.shared.clock import utcnow
from tests.conftest import DEFAULT_TENANT_ID, scripted_connector, seed_integration, seed_tenant, tenant_headers


async def _seed_channel_playbook(async_session_maker) -> tuple[uuid.UUID, list[uuid.UUID]]:
    async with async_session_maker() as session:
        await seed_integration(session, Platform.SLACK)
        playbook = Playbook(
            tenant_id=DEFAULT_TENANT_ID,
            title="Archive 2 Inactive Channels",
            impact_type=ImpactType.EFFICIENCY,
            source=Platform.SLACK,
            risk=RiskLevel.LOW,
            item_count=2,
        )
        playbook.items = [
            PlaybookItem(
                position=index,
                item_name=f"old-{index}",
                item_type="channel",
                external_id=f"C{index}",
                metadata_json={"kind": "channel", "channel_name": f"old-{index}"},
            )
            for index in range(2)
        ]
        session.add(playbook)
        await session.commit()
        return playbook.playbook_id, [item.item_id for item in playbook.items]


async def _seed_archive(async_session_maker, storage):
    async with async_session_maker() as session:
        await seed_tenant(session)
        return await ArchiveService(session, storage).archive(
            tenant_id=DEFAULT_TENANT_ID,
            platform=Platform.DROPBOX,
            external_id="id:1",
            file_name="report.pdf",
            content=b"report",
            mime_type="application/pdf",
        )


def test_requests_without_tenant_header_are_unauthorized(client):
    for path in ("/v1/playbooks", "/v1/audit-logs", "/v1/archives", "/v1/integrations"):
        response = client.get(path)
        assert response.status_code == 401
        assert response.json()["status"] == 401

    bad = client.get("/v1/playbooks", headers={"X-Tenant-ID": "not-a-uuid"})
    assert bad.status_code == 401


def test_playbook_approve_select_and_execute(client, services, async_session_maker):
    connector_cls = scripted_connector(Platform.SLACK)
    services.connector_registry = ConnectorRegistry({Platform.SLACK: connector_cls})
    playbook_id, item_ids = asyncio.run(_seed_channel_playbook(async_session_maker))
    headers = tenant_headers()

    listed = client.get("/v1/playbooks", headers=headers, params={"status": "PENDING"})
    assert listed.status_code == 200
    assert [item["playbook_id"] for item in listed.json()["items"]] == [str(playbook_id)]

    approved = client.post(f"/v1/playbooks/{playbook_id}/approve", headers=headers)
    assert approved.status_code == 200
    assert approved.json()["status"] == "APPROVED"
    assert approved.json()["approved_by"] == "user-1"

    selection = client.patch(
        f"/v1/playbooks/{playbook_id}/items",
        headers=headers,
        json={"items": [{"item_id": str(item_ids[1]), "selected": False}]},
    )
    assert selection.status_code == 200

    executed = client.post(f"/v1/playbooks/{playbook_id}/execute", headers=headers)
    assert executed.status_code == 200
    body = executed.json()
    assert body["status"] == "EXECUTED"
    assert body["audit_log_status"] == "SUCCESS"
    assert body["items_processed"] == 1
    assert body["items_skipped"] == 1
    assert body["undo_actions"] == 1
    assert connector_cls.calls == [("archive_channel", "C0")]

    again = client.post(f"/v1/playbooks/{playbook_id}/execute", headers=headers)
    assert again.status_code == 409
    assert again.json()["title"] == "Invalid Playbook Transition"


def test_playbooks_are_tenant_scoped(client, async_session_maker):
    playbook_id, _ = asyncio.run(_seed_channel_playbook(async_session_maker))
    other_tenant = tenant_headers(uuid.uuid4())

    assert client.get(f"/v1/playbooks/{playbook_id}", headers=other_tenant).status_code == 404
    assert client.post(f"/v1/playbooks/{playbook_id}/approve", headers=other_tenant).status_code == 404


def test_undo_endpoint_restores_and_reports_expiry(client, services, async_session_maker):
    connector_cls = scripted_connector(Platform.SLACK)
    services.connector_registry = ConnectorRegistry({Platform.SLACK: connector_cls})
    executed_at = utcnow()

    def _entry(expires_at) -> AuditLogEntry:
        return AuditLogEntry(
            tenant_id=DEFAULT_TENANT_ID,
            action_type=ActionType.ARCHIVE_CHANNEL,
            target="Archive channels",
            target_type="Playbook",
            executor="User user-1",
            status=AuditLogStatus.SUCCESS,
            details={"platform": "SLACK"},
            undo_actions=dump_undo_actions(
                [
                    RestoreChannelAction(
                        executed_at=executed_at, executed_by="User user-1", channel_id="C9", channel_name="old"
                    )
                ]
            ),
            undo_expires_at=expires_at,
        )

    async def _seed():
        async with async_session_maker() as session:
            await seed_integration(session, Platform.SLACK)
            live = _entry(executed_at + timedelta(days=30))
            expired = _entry(executed_at - timedelta(seconds=1))
            session.add_all([live, expired])
            await session.commit()
            return live.entry_id, expired.entry_id

    live_id, expired_id = asyncio.run(_seed())
    headers = tenant_headers()

    listed = client.get("/v1/audit-logs", headers=headers)
    undoable = {item["entry_id"]: item["undoable"] for item in listed.json()["items"]}
    assert undoable == {str(live_id): True, str(expired_id): False}
    filtered = client.get("/v1/audit-logs", headers=headers, params={"undoable": "true"})
    assert [item["entry_id"] for item in filtered.json()["items"]] == [str(live_id)]

    response = client.post(f"/v1/audit-logs/{live_id}/undo", headers=headers)
    assert response.status_code == 200
    assert response.json()["restored"] == 1
    assert response.json()["success"] is True
    assert ("restore_channel", "C9") in connector_cls.calls

    expired = client.post(f"/v1/audit-logs/{expired_id}/undo", headers=headers)
    assert expired.status_code == 410
    assert expired.json()["type"] == "https://example.com/problems/undo-expired"


def test_audit_quota_returns_retry_after(client, services, async_session_maker):
    services.connector_registry = ConnectorRegistry({Platform.DROPBOX: scripted_connector(Platform.DROPBOX)})

    async def _seed():
        async with async_session_maker() as session:
            await seed_integration(session, Platform.DROPBOX)

    asyncio.run(_seed())
    headers = tenant_headers()

    first = client.post("/v1/audits", headers=headers)
    assert first.status_code == 201
    assert first.json()["platforms"] == ["DROPBOX"]

    second = client.post("/v1/audits", headers=headers)
    assert second.status_code == 429
    assert int(second.headers["Retry-After"]) >= 1

    latest = client.get("/v1/audits/latest", headers=headers)
    assert latest.json()["audit"]["audit_result_id"] == first.json()["audit_result_id"]
    trend = client.get("/v1/audits/trend", headers=headers)
    assert len(trend.json()["items"]) == 1


def test_integration_sync_failure_maps_to_bad_gateway(client_no_raise, services, async_session_maker):
    async def _seed():
        async with async_session_maker() as session:
            await seed_integration(session, Platform.GOOGLE)

    asyncio.run(_seed())

    response = client_no_raise.post("/v1/integrations/GOOGLE/sync", headers=tenant_headers())
    assert response.status_code == 502
    assert response.json()["title"] == "Integration Sync Failed"

    listed = client_no_raise.get("/v1/integrations", headers=tenant_headers())
    [row] = listed.json()["items"]
    assert row["sync_status"] == "ERROR"
    assert "archive_channel" in listed.json()["capabilities"]["SLACK"]


def test_archive_endpoints(client, storage, async_session_maker):
    archive = asyncio.run(_seed_archive(async_session_maker, storage))
    headers = tenant_headers()

    listed = client.get("/v1/archives", headers=headers)
    assert [item["archive_id"] for item in listed.json()["items"]] == [str(archive.archive_id)]

    detail = client.get(f"/v1/archives/{archive.archive_id}", headers=headers)
    assert detail.json()["status"] == "ARCHIVED"

    stats = client.get("/v1/archives/stats", headers=headers)
    assert stats.json()["total_files"] == 1

    url = client.get(f"/v1/archives/{archive.archive_id}/download", headers=headers, params={"expires_in": 120})
    assert url.json()["expires_in"] == 120
    assert archive.storage_key in url.json()["url"]

    queued = client.post(
        "/v1/archives/batch/delete",
        headers=headers,
        json={"archive_ids": [str(archive.archive_id), str(archive.archive_id)]},
    )
    assert queued.status_code == 202
    assert queued.json()["total"] == 1
    assert queued.json()["event"] == ARCHIVE_BATCH_DELETE

    async def _queued_events():
        async with async_session_maker() as session:
            return (await session.scalars(select(JobEvent.name))).all()

    assert ARCHIVE_BATCH_DELETE in asyncio.run(_queued_events())

    same = client.post(
        "/v1/archives/migrate",
        headers=headers,
        json={"archive_ids": [str(archive.archive_id)], "from_provider": "memory", "to_provider": "memory"},
    )
    assert same.status_code == 422
    unknown = client.post(
        "/v1/archives/migrate",
        headers=headers,
        json={"archive_ids": [str(archive.archive_id)], "from_provider": "memory", "to_provider": "tape"},
    )
    assert unknown.status_code == 422

    assert client.get(f"/v1/archives/{uuid.uuid4()}", headers=headers).status_code == 404


def test_signed_local_blob_urls(client, services, tmp_path):
    local = LocalStorageBackend(
        tmp_path, signing_secret="blob-secret", public_base_url="http://testserver/v1/archives/blobs"
    )
    services.storage_backends["local"] = local

    async def _put():
        await local.put_bytes(key="tenant/DROPBOX/f1/report.pdf", data=b"blob-bytes", content_type="application/pdf")
        return await local.generate_signed_get_url(key="tenant/DROPBOX/f1/report.pdf", expires_in=300)

    signed = asyncio.run(_put())
    parsed = urlparse(signed)
    path_and_query = f"{parsed.path}?{parsed.query}"

    response = client.get(path_and_query)
    assert response.status_code == 200
    assert response.content == b"blob-bytes"

    tampered = client.get(path_and_query.replace("sig=", "sig=0"))
    assert tampered.status_code == 403

    unsigned = client.get(parsed.path)
    assert unsigned.status_code == 403


def test_archive_restore_endpoint_uses_connector(client, services, storage, async_session_maker):
    connector_cls = scripted_connector(Platform.DROPBOX)
    services.connector_registry = ConnectorRegistry({Platform.DROPBOX: connector_cls})
    archive = asyncio.run(_seed_archive(async_session_maker, storage))

    missing_integration = client.post(f"/v1/archives/{archive.archive_id}/restore", headers=tenant_headers())
    assert missing_integration.status_code == 404

    async def _seed():
        async with async_session_maker() as session:
            await seed_integration(session, Platform.DROPBOX)

    asyncio.run(_seed())
    response = client.post(
        f"/v1/archives/{archive.archive_id}/restore",
        headers=tenant_headers(),
        json={"target_location": "/restored"},
    )
    assert response.status_code == 200
    assert response.json()["status"] == "RESTORED"
    assert response.json()["restored_by"] == "user-1"
    assert ("upload_file", "report.pdf") in connector_cls.calls


def test_platform_outage_during_restore_is_bad_gateway(client_no_raise, services, storage, async_session_maker):
    services.connector_registry = ConnectorRegistry(
        {Platform.DROPBOX: DropboxConnector},
        transport=httpx.MockTransport(lambda request: httpx.Response(503, text="down")),
    )
    archive = asyncio.run(_seed_archive(async_session_maker, storage))

    async def _seed():
        async with async_session_maker() as session:
            await seed_integration(session, Platform.DROPBOX)

    asyncio.run(_seed())
    response = client_no_raise.post(f"/v1/archives/{archive.archive_id}/restore", headers=tenant_headers())

    assert response.status_code == 502
    body = response.json()
    assert body["type"] == "https://example.com/problems/upstream-error"
    assert body["errors"][0]["retryable"] is True

    detail = client_no_raise.get(f"/v1/archives/{archive.archive_id}", headers=tenant_headers())
    assert detail.json()["status"] == "ARCHIVED"


def test_response_schemas_read_orm_rows():
    integration = Integration(
        integration_id=uuid.uuid4(),
        tenant_id=DEFAULT_TENANT_ID,
        platform=Platform.SLACK,
        access_token="xoxb",
        is_active=True,
        sync_status=SyncStatus.IDLE,
        created_at=utcnow(),
    )
    trend = ScoreTrend(tenant_id=DEFAULT_TENANT_ID, month="2024-06", score=72, active_risks=3, estimated_savings=120.5)

    body = IntegrationResponse.model_validate(integration).model_dump(mode="json")
    point = ScoreTrendPoint.model_validate(trend)

    assert body["platform"] == "SLACK"
    assert body["sync_status"] == "IDLE"
    assert "access_token" not in body
    assert point.month == "2024-06"
    assert point.score == 72
