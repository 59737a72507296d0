import uuid
from datetime import datetime, timedelta, timezone

import anyio
import httpx
import pytest

from clutterscore.domain.connectors.base import (
    infer_file_type,
    is_token_expired,
    mark_duplicates,
    parse_timestamp,
)
from clutterscore.domain.connectors.errors import ConnectorError, OperationErrorKind, TokenError
from clutterscore.domain.connectors.dropbox import DropboxConnector
from clutterscore.domain.connectors.figma import FigmaConnector
from clutterscore.domain.connectors.google import GoogleConnector
from clutterscore.domain.connectors.jira import JiraConnector
from clutterscore.domain.connectors.registry import ConnectorRegistry, UnsupportedPlatformError
from clutterscore.domain.connectors.slack import SlackConnector
from clutterscore.domain.connectors.types import (
    ActionType,
    ConnectorConfig,
    FileData,
    FileType,
    Platform,
)
from clutterscore.domain.playbooks.metadata import ChannelItemMetadata, FileItemMetadata, GuestItemMetadata
from clutterscore.domain.playbooks.undo_actions import RestoreUserAction
from clutterscore.settings import settings

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


def _config(**overrides) -> ConnectorConfig:
    return ConnectorConfig(access_token="xoxb-test", tenant_id=uuid.uuid4(), **overrides)


def _file(name: str, external_id: str, accessed: datetime, file_hash: str | None = "abc") -> FileData:
    return FileData(
        name=name,
        size_mb=1.0,
        type=FileType.DOCUMENT,
        source=Platform.GOOGLE,
        external_id=external_id,
        last_accessed=accessed,
        file_hash=file_hash,
    )


def test_infer_file_type_prefers_extension_for_archives_and_databases():
    assert infer_file_type("application/octet-stream", "backup.sql") == FileType.DATABASE
    assert infer_file_type(None, "photos.zip") == FileType.ARCHIVE
    assert infer_file_type("image/png", "logo.png") == FileType.IMAGE
    assert infer_file_type("video/mp4") == FileType.VIDEO
    assert infer_file_type("audio/mpeg") == FileType.MUSIC
    assert infer_file_type("application/pdf", "report.pdf") == FileType.DOCUMENT
    assert infer_file_type(None, None) == FileType.OTHER


def test_parse_timestamp_handles_iso_and_epoch():
    assert parse_timestamp("2024-01-01T00:00:00Z") == datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert parse_timestamp(1704067200) == datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert parse_timestamp("1704067200.000100").date() == datetime(2024, 1, 1).date()
    assert parse_timestamp("not-a-date") is None
    assert parse_timestamp(None) is None


def test_token_expiry_uses_five_minute_buffer():
    assert is_token_expired(None, NOW) is False
    assert is_token_expired(NOW + timedelta(minutes=4), NOW) is True
    assert is_token_expired(NOW + timedelta(minutes=10), NOW) is False


def test_mark_duplicates_keeps_most_recent_member():
    newest = _file("a.pdf", "f-1", NOW)
    older = _file("a.pdf", "f-2", NOW - timedelta(days=3))
    oldest = _file("a.pdf", "f-3", NOW - timedelta(days=9))
    single = _file("b.pdf", "f-4", NOW, file_hash="other")

    mark_duplicates([older, single, newest, oldest])

    assert newest.is_duplicate is False
    assert older.is_duplicate is True
    assert oldest.is_duplicate is True
    assert newest.duplicate_group == "abc"
    assert single.is_duplicate is False
    assert single.duplicate_group is None


def test_capabilities_reflect_overridden_operations():
    slack = SlackConnector.capabilities()
    assert {"archive_channel", "restore_channel", "remove_guest", "revoke_access"} <= slack
    assert "archive_file" not in slack
    assert FigmaConnector.capabilities() == frozenset()


def test_registry_rejects_unknown_platform():
    registry = ConnectorRegistry({Platform.SLACK: SlackConnector})
    assert registry.supports("SLACK")
    assert not registry.supports("MYSPACE")
    with pytest.raises(UnsupportedPlatformError):
        registry.create(Platform.GOOGLE, _config())
    assert registry.capabilities()["SLACK"] == sorted(SlackConnector.capabilities())


def _slack_handler(request: httpx.Request) -> httpx.Response:
    method = request.url.path.rsplit("/", 1)[-1]
    if method == "files.list":
        return httpx.Response(
            200,
            json={
                "ok": True,
                "files": [
                    {
                        "id": "F1",
                        "name": "deck.pdf",
                        "size": 2 * 1024 * 1024,
                        "mimetype": "application/pdf",
                        "timestamp": 1717200000,
                        "channels": ["C1"],
                    },
                    {
                        "id": "F2",
                        "name": "deck.pdf",
                        "size": 2 * 1024 * 1024,
                        "mimetype": "application/pdf",
                        "timestamp": 1700000000,
                        "public_url_shared": True,
                    },
                ],
                "paging": {"page": 1, "pages": 1},
            },
        )
    if method == "users.list":
        return httpx.Response(
            200,
            json={
                "ok": True,
                "members": [
                    {"id": "U1", "real_name": "Ada", "profile": {"email": "ada@acme.io"}, "is_admin": True},
                    {"id": "U2", "name": "guest", "profile": {"email": "g@ext.io"}, "is_restricted": True},
                    {"id": "B1", "name": "bot", "is_bot": True},
                ],
                "response_metadata": {"next_cursor": ""},
            },
        )
    if method == "conversations.list":
        return httpx.Response(
            200,
            json={
                "ok": True,
                "channels": [{"id": "C1", "name": "general", "num_members": 12, "is_private": False}],
            },
        )
    if method == "conversations.history":
        return httpx.Response(200, json={"ok": True, "messages": [{"ts": "1717200000.000200"}]})
    return httpx.Response(200, json={"ok": False, "error": "unknown_method"})


def test_slack_fetch_audit_data_normalizes_workspace():
    async def _run():
        async with SlackConnector(_config(), transport=httpx.MockTransport(_slack_handler)) as connector:
            data = await connector.fetch_audit_data()

        assert [f.external_id for f in data.files] == ["F1", "F2"]
        by_id = {f.external_id: f for f in data.files}
        assert by_id["F1"].is_duplicate is False
        assert by_id["F2"].is_duplicate is True
        assert by_id["F2"].is_public is True
        assert by_id["F1"].path == "/C1/deck.pdf"
        assert by_id["F1"].size_mb == 2.0
        assert len(data.users) == 2
        guest = next(u for u in data.users if u.external_id == "U2")
        assert guest.is_guest is True
        assert guest.license_type == "multi-channel-guest"
        assert data.channels[0].member_count == 12
        assert data.channels[0].last_activity.year == 2024
        assert data.total_licenses == 2

    anyio.run(_run)


def test_slack_test_connection_reports_api_error_as_false():
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"ok": False, "error": "invalid_auth"}))

    async def _run():
        async with SlackConnector(_config(), transport=transport) as connector:
            assert await connector.test_connection() is False

    anyio.run(_run)


def test_slack_archive_channel_tolerates_already_archived():
    def handler(request: httpx.Request) -> httpx.Response:
        method = request.url.path.rsplit("/", 1)[-1]
        if method == "conversations.info":
            return httpx.Response(
                200, json={"ok": True, "channel": {"id": "C9", "name": "old", "num_members": 2, "is_archived": True}}
            )
        return httpx.Response(200, json={"ok": False, "error": "already_archived"})

    async def _run():
        metadata = ChannelItemMetadata(channel_name="old", member_count=2)
        async with SlackConnector(_config(), transport=httpx.MockTransport(handler)) as connector:
            result = await connector.perform(ActionType.ARCHIVE_CHANNEL, "C9", metadata)
        assert result.ok
        assert result.details["original_state"]["name"] == "old"

    anyio.run(_run)


def test_unsupported_operation_returns_unsupported_result():
    async def _run():
        async with FigmaConnector(_config(), transport=httpx.MockTransport(lambda r: httpx.Response(500))) as connector:
            result = await connector.perform(ActionType.ARCHIVE_FILE, "file-1", FileItemMetadata())
        assert not result.ok
        assert result.unsupported
        assert "archive_file" in result.error.message

    anyio.run(_run)


def test_http_errors_fold_into_operation_result():
    transport = httpx.MockTransport(lambda request: httpx.Response(404, text="missing"))

    async def _run():
        async with GoogleConnector(_config(), transport=transport) as connector:
            result = await connector.perform(ActionType.ARCHIVE_FILE, "gone", FileItemMetadata())
        assert result.error.kind == OperationErrorKind.NOT_FOUND
        assert result.error.retryable is False

    anyio.run(_run)


def test_rate_limited_requests_are_retryable():
    transport = httpx.MockTransport(lambda request: httpx.Response(429))

    async def _run():
        async with GoogleConnector(_config(), transport=transport) as connector:
            with pytest.raises(ConnectorError) as excinfo:
                await connector.fetch_audit_data()
        assert excinfo.value.retryable is True
        assert excinfo.value.code == "google_http_429"

    anyio.run(_run)


def test_google_audit_survives_missing_directory_scope():
    def handler(request: httpx.Request) -> httpx.Response:
        if "admin/directory" in request.url.path:
            return httpx.Response(403, json={"error": "forbidden"})
        return httpx.Response(
            200,
            json={
                "files": [
                    {
                        "id": "g1",
                        "name": "budget.xlsx",
                        "size": "1048576",
                        "mimeType": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
                        "md5Checksum": "m1",
                        "modifiedTime": "2023-01-01T00:00:00Z",
                        "permissions": [{"type": "anyone"}, {"type": "user", "emailAddress": "x@acme.io"}],
                        "parents": ["root"],
                    }
                ]
            },
        )

    async def _run():
        async with GoogleConnector(_config(), transport=httpx.MockTransport(handler)) as connector:
            data = await connector.fetch_audit_data()
        assert data.users == []
        file = data.files[0]
        assert file.is_public is True
        assert file.shared_with == ["x@acme.io"]
        assert file.type == FileType.DOCUMENT
        assert file.parent_id == "root"

    anyio.run(_run)


def test_refresh_without_refresh_token_raises_token_error(monkeypatch):
    monkeypatch.setattr(settings, "google_oauth_client_id", "cid")
    monkeypatch.setattr(settings, "google_oauth_client_secret", "secret")

    async def _run():
        async with GoogleConnector(_config(), transport=httpx.MockTransport(lambda r: httpx.Response(200))) as connector:
            with pytest.raises(TokenError):
                await connector.refresh_token()

    anyio.run(_run)


def test_google_refresh_returns_grant(monkeypatch):
    monkeypatch.setattr(settings, "google_oauth_client_id", "cid")
    monkeypatch.setattr(settings, "google_oauth_client_secret", "secret")
    seen: list[bytes] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.content)
        return httpx.Response(200, json={"access_token": "fresh", "expires_in": 3600})

    async def _run():
        config = _config(refresh_token="r-1", expires_at=datetime.now(timezone.utc))
        async with GoogleConnector(config, transport=httpx.MockTransport(handler)) as connector:
            assert connector.token_expired()
            grant = await connector.refresh_token()
        assert grant.access_token == "fresh"
        assert grant.refresh_token == "r-1"
        assert grant.expires_at is not None
        assert b"grant_type=refresh_token" in seen[0]

    anyio.run(_run)


def test_registry_breaker_pauses_platform_after_outages(monkeypatch):
    monkeypatch.setattr(settings, "connector_circuit_failure_threshold", 2)
    hits = []

    def handler(request: httpx.Request) -> httpx.Response:
        hits.append(request.url.path)
        return httpx.Response(503, text="maintenance")

    registry = ConnectorRegistry({Platform.SLACK: SlackConnector}, transport=httpx.MockTransport(handler))
    metadata = ChannelItemMetadata(channel_name="general")

    async def _run():
        results = []
        for _ in range(3):
            async with registry.create(Platform.SLACK, _config()) as connector:
                results.append(await connector.perform(ActionType.ARCHIVE_CHANNEL, "C1", metadata))
        return results

    first, second, third = anyio.run(_run)
    assert len(hits) == 2
    assert first.error.retryable and second.error.retryable
    assert "paused" in third.error.message
    assert registry.breakers.states() == {"SLACK": "open"}


def test_client_errors_do_not_trip_breaker(monkeypatch):
    monkeypatch.setattr(settings, "connector_circuit_failure_threshold", 1)
    registry = ConnectorRegistry(
        {Platform.SLACK: SlackConnector},
        transport=httpx.MockTransport(lambda request: httpx.Response(404, text="missing")),
    )

    async def _run():
        async with registry.create(Platform.SLACK, _config()) as connector:
            return await connector.perform(
                ActionType.ARCHIVE_CHANNEL, "C1", ChannelItemMetadata(channel_name="general")
            )

    result = anyio.run(_run)
    assert result.error.kind == OperationErrorKind.NOT_FOUND
    assert registry.breakers.states() == {"SLACK": "closed"}


def test_jira_remove_guest_drops_project_role_and_restore_re_adds_it():
    seen: list[tuple[str, str, bytes]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, request.url.path, request.content))
        return httpx.Response(204)

    config = _config(metadata={"base_url": "https://acme.atlassian.net", "project_key": "OPS"})
    guest = GuestItemMetadata(email="client@customer.io", name="Client")

    async def _run():
        async with JiraConnector(config, transport=httpx.MockTransport(handler)) as connector:
            removed = await connector.perform(ActionType.REMOVE_GUEST, "acc-7", guest)
            action = RestoreUserAction(
                user_id="acc-7",
                user_email="client@customer.io",
                executed_at=NOW,
                executed_by="user-1",
                original_metadata=removed.details,
            )
            restored = await connector.revert(action)
        return removed, restored

    removed, restored = anyio.run(_run)
    assert removed.ok and restored.ok
    assert removed.details == {"user_id": "acc-7", "project_key": "OPS", "role_id": "10000"}
    assert seen[0][:2] == ("DELETE", "/rest/api/3/project/OPS/role/10000/acc-7")
    assert seen[1][:2] == ("POST", "/rest/api/3/project/OPS/role/10000")
    assert b'"acc-7"' in seen[1][2]
    assert {"remove_guest", "restore_user", "revoke_access"} <= JiraConnector.capabilities()


def test_jira_remove_guest_without_project_key_fails_without_calling_api():
    transport = httpx.MockTransport(lambda request: httpx.Response(500))

    async def _run():
        async with JiraConnector(_config(metadata={"base_url": "https://acme.atlassian.net"}), transport=transport) as connector:
            return await connector.perform(
                ActionType.REMOVE_GUEST, "acc-7", GuestItemMetadata(email="client@customer.io")
            )

    result = anyio.run(_run)
    assert result.error.kind == OperationErrorKind.FAILED
    assert "Project key" in result.error.message


def test_google_flags_users_outside_workspace_domain_as_guests():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/users"):
            return httpx.Response(
                200,
                json={
                    "users": [
                        {"id": "u1", "primaryEmail": "ada@acme.io", "isAdmin": True, "name": {"fullName": "Ada"}},
                        {"id": "u2", "primaryEmail": "bob@acme.io", "name": {"fullName": "Bob"}},
                        {"id": "u3", "primaryEmail": "eve@agency.com", "name": {"fullName": "Eve"}},
                    ]
                },
            )
        return httpx.Response(200, json={"files": []})

    async def _run():
        async with GoogleConnector(_config(), transport=httpx.MockTransport(handler)) as connector:
            return await connector.fetch_audit_data()

    data = anyio.run(_run)
    guests = {user.external_id: user.is_guest for user in data.users}
    assert guests == {"u1": False, "u2": False, "u3": True}


def test_dropbox_limited_and_invited_members_are_guests():
    def handler(request: httpx.Request) -> httpx.Response:
        members = [
            {"profile": {"team_member_id": "dbmid:1", "email": "a@acme.io", "status": {".tag": "active"}, "membership_type": {".tag": "full"}}},
            {"profile": {"team_member_id": "dbmid:2", "email": "c@vendor.io", "status": {".tag": "active"}, "membership_type": {".tag": "limited"}}},
            {"profile": {"team_member_id": "dbmid:3", "email": "n@vendor.io", "status": {".tag": "invited"}, "membership_type": {".tag": "full"}}},
        ]
        return httpx.Response(200, json={"members": members, "has_more": False})

    async def _run():
        async with DropboxConnector(_config(), transport=httpx.MockTransport(handler)) as connector:
            return await connector._fetch_users()

    users = anyio.run(_run)
    assert {user.external_id: user.is_guest for user in users} == {
        "dbmid:1": False,
        "dbmid:2": True,
        "dbmid:3": True,
    }
