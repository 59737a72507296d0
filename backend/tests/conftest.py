import asyncio
import os
import sys
import uuid
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("APP_ENV", "dev")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test.db")
os.environ.setdefault("ARCHIVE_LOCAL_ROOT", "tmp/test-archives")

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from clutterscore.domain.connectors.base import Connector
from clutterscore.domain.connectors.errors import OperationErrorKind, OperationResult
from clutterscore.domain.connectors.registry import ConnectorRegistry
from clutterscore.domain.connectors.types import AuditData, Platform
from clutterscore.domain.integrations.db_models import Integration
from clutterscore.domain.integrations.service import RefreshLocks
from clutterscore.domain.playbooks.executor import TenantLocks
from clutterscore.domain.tenants.db_models import Tenant
from clutterscore.domain.webhooks.registry import default_webhook_registry
from clutterscore.infra import db_models_all  # noqa: F401
from clutterscore.infra.db import Base, get_db_session
from clutterscore.infra.metrics import metrics
from clutterscore.infra.notifier import RecordingNotifier
from clutterscore.infra.storage import InMemoryStorageBackend
from clutterscore.main import app
from clutterscore.services import AppServices
from clutterscore.settings import settings

DEFAULT_TENANT_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")


def tenant_headers(tenant_id: uuid.UUID = DEFAULT_TENANT_ID, user_id: str | None = "user-1") -> dict[str, str]:
    headers = {"X-Tenant-ID": str(tenant_id)}
    if user_id:
        headers["X-User-ID"] = user_id
    return headers


async def seed_tenant(session, tenant_id: uuid.UUID = DEFAULT_TENANT_ID, *, plan_tier: str = "free") -> Tenant:
    tenant = await session.get(Tenant, tenant_id)
    if tenant is None:
        tenant = Tenant(tenant_id=tenant_id, name="Acme", plan_tier=plan_tier)
        session.add(tenant)
        await session.commit()
    return tenant


async def seed_integration(session, platform, tenant_id: uuid.UUID = DEFAULT_TENANT_ID, **overrides) -> Integration:
    await seed_tenant(session, tenant_id)
    integration = Integration(
        tenant_id=tenant_id,
        platform=platform,
        access_token=overrides.pop("access_token", "token-1"),
        metadata_json=overrides.pop("metadata_json", {}),
        **overrides,
    )
    session.add(integration)
    await session.commit()
    return integration


def scripted_connector(
    platform: Platform,
    *,
    audit: AuditData | Exception | None = None,
    failures: set[str] | frozenset[str] = frozenset(),
    unsupported: set[str] | frozenset[str] = frozenset(),
    revert_failures: set[str] | frozenset[str] = frozenset(),
    revert_unsupported: set[str] | frozenset[str] = frozenset(),
) -> type[Connector]:
    """Build a connector double whose behaviour is keyed by the external id it touches.

    Every call lands in the returned class's `calls` list as `(operation, target)`.
    """

    calls: list[tuple[str, str]] = []

    class ScriptedConnector(Connector):
        async def _probe(self) -> bool:
            return True

        async def fetch_audit_data(self) -> AuditData:
            calls.append(("fetch_audit_data", self.platform.value))
            if isinstance(audit, Exception):
                raise audit
            return audit or AuditData(files=[], users=[], storage_used_gb=0.0, total_licenses=0, active_users=0)

        def _forward(self, operation: str, target: str, **details) -> OperationResult:
            calls.append((operation, target))
            if target in failures:
                raise RuntimeError(f"{operation} failed for {target}")
            if target in unsupported:
                return self._unsupported(operation)
            return OperationResult.success(**details)

        def _inverse(self, operation: str, target: str) -> OperationResult:
            calls.append((operation, target))
            if target in revert_failures:
                return OperationResult.failure(OperationErrorKind.FAILED, f"{operation} failed for {target}")
            if target in revert_unsupported:
                return self._unsupported(operation)
            return OperationResult.success()

        async def archive_file(self, file_id, metadata):
            return self._forward("archive_file", file_id, original_path=metadata.path or f"/{file_id}")

        async def update_permissions(self, file_id, metadata):
            return self._forward(
                "update_permissions", file_id, original_sharing={"is_public": True, "shared_with": []}
            )

        async def archive_channel(self, channel_id, metadata):
            return self._forward("archive_channel", channel_id)

        async def remove_guest(self, user_id, metadata):
            return self._forward("remove_guest", user_id, user_id=user_id)

        async def restore_file(self, action):
            return self._inverse("restore_file", action.file_id)

        async def restore_permissions(self, action):
            return self._inverse("restore_permissions", action.file_id)

        async def restore_channel(self, action):
            return self._inverse("restore_channel", action.channel_id)

        async def restore_user(self, action):
            return self._inverse("restore_user", action.user_id)

        async def download_file(self, file_id, metadata):
            calls.append(("download_file", file_id))
            return f"payload-{file_id}".encode(), "application/pdf"

        async def upload_file(self, content, *, file_name, mime_type, target_location):
            calls.append(("upload_file", file_name))
            if file_name in failures:
                raise RuntimeError(f"upload failed for {file_name}")
            return f"restored-{file_name}"

    ScriptedConnector.platform = platform
    ScriptedConnector.calls = calls
    return ScriptedConnector


@pytest.fixture(scope="session")
def test_engine():
    db_path = Path("test.db")
    if db_path.exists():
        db_path.unlink()
    engine = create_async_engine(
        "sqlite+aiosqlite:///./test.db",
        connect_args={"check_same_thread": False, "timeout": 30},
        poolclass=StaticPool,
    )

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    yield engine
    asyncio.run(engine.dispose())


@pytest.fixture(scope="session")
def async_session_maker(test_engine):
    return async_sessionmaker(test_engine, expire_on_commit=False)


@pytest.fixture(autouse=True)
def clean_database(test_engine):
    async def truncate_tables() -> None:
        async with test_engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                await conn.execute(table.delete())

    asyncio.run(truncate_tables())
    yield


@pytest.fixture(autouse=True)
def restore_settings():
    original_app_env = settings.app_env
    original_metrics = settings.metrics_enabled
    original_metrics_token = settings.metrics_token
    original_job_heartbeat = settings.job_heartbeat_required
    original_job_heartbeat_ttl = settings.job_heartbeat_ttl_seconds
    original_free_audits = settings.free_audits_per_month
    original_automation_tiers = settings.automation_tiers_raw
    original_slack_secret = settings.slack_signing_secret
    original_linear_secret = settings.linear_webhook_secret
    original_dropbox_secret = settings.dropbox_app_secret
    original_google_token = settings.google_channel_token
    yield
    settings.app_env = original_app_env
    settings.metrics_enabled = original_metrics
    settings.metrics_token = original_metrics_token
    settings.job_heartbeat_required = original_job_heartbeat
    settings.job_heartbeat_ttl_seconds = original_job_heartbeat_ttl
    settings.free_audits_per_month = original_free_audits
    settings.automation_tiers_raw = original_automation_tiers
    settings.slack_signing_secret = original_slack_secret
    settings.linear_webhook_secret = original_linear_secret
    settings.dropbox_app_secret = original_dropbox_secret
    settings.google_channel_token = original_google_token


@pytest.fixture()
def storage():
    return InMemoryStorageBackend()


@pytest.fixture()
def notifier():
    return RecordingNotifier()


@pytest.fixture()
def connector_registry():
    """Registry whose connectors all talk to a transport that refuses every call."""

    def _refuse(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"error": "unexpected request", "url": str(request.url)})

    return ConnectorRegistry(transport=httpx.MockTransport(_refuse))


@pytest.fixture()
def services(storage, notifier, connector_registry):
    return AppServices(
        storage=storage,
        storage_backends={"memory": storage, "local": storage},
        connector_registry=connector_registry,
        notifier=notifier,
        refresh_locks=RefreshLocks(),
        tenant_locks=TenantLocks(),
        webhook_registry=default_webhook_registry(settings),
        metrics=metrics,
    )


@pytest.fixture()
def client(async_session_maker, services):
    async def override_db_session():
        async with async_session_maker() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_db_session
    original_factory = getattr(app.state, "db_session_factory", None)
    original_services = getattr(app.state, "services", None)
    app.state.db_session_factory = async_session_maker
    app.state.services = services
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.db_session_factory = original_factory
    app.state.services = original_services


@pytest.fixture()
def client_no_raise(async_session_maker, services):
    """Test client that returns HTTP responses instead of raising server exceptions."""

    async def override_db_session():
        async with async_session_maker() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_db_session
    original_factory = getattr(app.state, "db_session_factory", None)
    original_services = getattr(app.state, "services", None)
    app.state.db_session_factory = async_session_maker
    app.state.services = services
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.db_session_factory = original_factory
    app.state.services = original_services
