from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx

from clutterscore.domain.connectors.registry import ConnectorRegistry, default_connector_registry
from clutterscore.domain.integrations.service import RefreshLocks
from clutterscore.domain.playbooks.executor import TenantLocks
from clutterscore.domain.webhooks.registry import WebhookRegistry, default_webhook_registry
from clutterscore.infra.metrics import Metrics, configure_metrics
from clutterscore.infra.notifier import LoggingNotifier, Notifier
from clutterscore.infra.storage import StorageBackend, configured_storage_backends


@dataclass
class AppServices:
    """Typed container for runtime services stored on `app.state.services`."""

    storage: StorageBackend
    storage_backends: dict[str, StorageBackend]
    connector_registry: ConnectorRegistry
    notifier: Notifier
    refresh_locks: RefreshLocks
    tenant_locks: TenantLocks
    webhook_registry: WebhookRegistry
    metrics: Metrics
    http_transport: httpx.AsyncBaseTransport | None = None


def build_app_services(
    app_settings,
    *,
    metrics: Metrics | None = None,
    http_transport: httpx.AsyncBaseTransport | None = None,
) -> AppServices:
    metrics_client = metrics or configure_metrics(app_settings.metrics_enabled)
    backends = configured_storage_backends()
    return AppServices(
        storage=backends[app_settings.archive_storage_backend],
        storage_backends=backends,
        connector_registry=default_connector_registry(http_transport),
        notifier=LoggingNotifier(),
        refresh_locks=RefreshLocks(),
        tenant_locks=TenantLocks(),
        webhook_registry=default_webhook_registry(app_settings),
        metrics=metrics_client,
        http_transport=http_transport,
    )


def resolve_services(container_like: Any) -> AppServices | None:
    if isinstance(container_like, AppServices):
        return container_like
    if container_like is None:
        return None
    state = getattr(container_like, "state", container_like)
    return getattr(state, "services", None)
