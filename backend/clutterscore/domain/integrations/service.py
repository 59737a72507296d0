from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from clutterscore.domain.connectors.base import Connector, is_token_expired
from clutterscore.domain.connectors.errors import TokenError
from clutterscore.domain.connectors.registry import ConnectorRegistry
from clutterscore.domain.connectors.types import AuditData, Platform, TokenGrant
from clutterscore.domain.errors import IntegrationNotFoundError
from clutterscore.domain.integrations.db_models import Integration, SyncStatus
from clutterscore.infra.metrics import metrics
from clutterscore.shared.clock import utcnow

logger = logging.getLogger(__name__)


class RefreshLocks:
    """Per-integration refresh serialisation within one process.

    The most recent grant is remembered so a waiter that acquires the lock after
    another coroutine refreshed reuses that grant instead of refreshing again.
    """

    def __init__(self) -> None:
        self._locks: dict[uuid.UUID, asyncio.Lock] = {}
        self._grants: dict[uuid.UUID, TokenGrant] = {}

    def lock_for(self, integration_id: uuid.UUID) -> asyncio.Lock:
        return self._locks.setdefault(integration_id, asyncio.Lock())

    def latest(self, integration_id: uuid.UUID) -> TokenGrant | None:
        return self._grants.get(integration_id)

    def remember(self, integration_id: uuid.UUID, grant: TokenGrant) -> None:
        self._grants[integration_id] = grant


@dataclass
class SyncResults:
    data: dict[Platform, AuditData] = field(default_factory=dict)
    errors: dict[Platform, str] = field(default_factory=dict)


async def get_active_integrations(session: AsyncSession, tenant_id: uuid.UUID) -> list[Integration]:
    stmt = (
        select(Integration)
        .where(Integration.tenant_id == tenant_id, Integration.is_active.is_(True))
        .order_by(Integration.platform)
    )
    return list((await session.scalars(stmt)).all())


async def get_integration(
    session: AsyncSession, tenant_id: uuid.UUID, platform: Platform
) -> Integration | None:
    stmt = select(Integration).where(
        Integration.tenant_id == tenant_id,
        Integration.platform == platform,
        Integration.is_active.is_(True),
    )
    return await session.scalar(stmt)


async def refresh_if_needed(
    connector: Connector, integration_id: uuid.UUID, locks: RefreshLocks | None = None
) -> TokenGrant | None:
    if not connector.token_expired():
        return None
    lock = locks.lock_for(integration_id) if locks else contextlib.nullcontext()
    async with lock:
        cached = locks.latest(integration_id) if locks else None
        if cached is not None and not is_token_expired(cached.expires_at):
            connector.apply_grant(cached)
            return cached
        grant = await connector.refresh_token()
        connector.apply_grant(grant)
        if locks:
            locks.remember(integration_id, grant)
        logger.info(
            "integration_token_refreshed",
            extra={"extra": {"integration_id": str(integration_id), "platform": connector.platform.value}},
        )
        return grant


def _store_grant(integration: Integration, grant: TokenGrant) -> None:
    integration.access_token = grant.access_token
    if grant.refresh_token:
        integration.refresh_token = grant.refresh_token
    integration.expires_at = grant.expires_at


def _mark_error(integration: Integration, exc: BaseException) -> str:
    message = str(exc) or type(exc).__name__
    integration.sync_status = SyncStatus.ERROR
    integration.last_error = message
    integration.last_error_at = utcnow()
    return message


def _mark_synced(integration: Integration) -> None:
    integration.sync_status = SyncStatus.IDLE
    integration.last_sync_at = utcnow()
    integration.last_error = None
    integration.last_error_at = None


async def _fetch(
    integration: Integration, registry: ConnectorRegistry, locks: RefreshLocks | None
) -> AuditData:
    """Refresh if needed and fetch.

    A grant obtained before the fetch fails is still copied onto the integration;
    providers that rotate refresh tokens have already revoked the old one.
    """

    connector = registry.create(integration.platform, integration.connector_config())
    async with connector:
        try:
            await refresh_if_needed(connector, integration.integration_id, locks)
            return await connector.fetch_audit_data()
        finally:
            if connector.rotated_grant is not None:
                _store_grant(integration, connector.rotated_grant)


async def sync_all_integrations(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    registry: ConnectorRegistry,
    *,
    locks: RefreshLocks | None = None,
) -> SyncResults:
    """Fetch every active integration concurrently; one platform failing never stops the rest."""

    integrations = await get_active_integrations(session, tenant_id)
    results = SyncResults()
    if not integrations:
        return results

    for integration in integrations:
        integration.sync_status = SyncStatus.SYNCING
    await session.commit()

    outcomes = await asyncio.gather(
        *(_fetch(integration, registry, locks) for integration in integrations),
        return_exceptions=True,
    )

    for integration, outcome in zip(integrations, outcomes):
        platform = integration.platform
        if isinstance(outcome, BaseException):
            if not isinstance(outcome, Exception):
                raise outcome
            results.errors[platform] = _mark_error(integration, outcome)
            metrics.record_connector_sync(platform.value, "error")
            logger.warning(
                "integration_sync_failed",
                extra={
                    "extra": {
                        "tenant_id": str(tenant_id),
                        "platform": platform.value,
                        "error_type": type(outcome).__name__,
                        "token_error": isinstance(outcome, TokenError),
                    }
                },
            )
            continue
        _mark_synced(integration)
        results.data[platform] = outcome
        metrics.record_connector_sync(platform.value, "success")

    await session.commit()
    logger.info(
        "integrations_synced",
        extra={
            "extra": {
                "tenant_id": str(tenant_id),
                "succeeded": len(results.data),
                "failed": len(results.errors),
            }
        },
    )
    return results


async def sync_integration(
    session: AsyncSession,
    integration: Integration,
    registry: ConnectorRegistry,
    *,
    locks: RefreshLocks | None = None,
) -> AuditData:
    integration.sync_status = SyncStatus.SYNCING
    await session.commit()
    try:
        data = await _fetch(integration, registry, locks)
    except Exception as exc:
        _mark_error(integration, exc)
        await session.commit()
        metrics.record_connector_sync(integration.platform.value, "error")
        raise
    _mark_synced(integration)
    await session.commit()
    metrics.record_connector_sync(integration.platform.value, "success")
    return data


async def test_integration_connection(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    platform: Platform,
    registry: ConnectorRegistry,
    *,
    locks: RefreshLocks | None = None,
) -> bool:
    integration = await get_integration(session, tenant_id, platform)
    if integration is None:
        raise IntegrationNotFoundError(platform.value)
    connector = registry.create(integration.platform, integration.connector_config())
    async with connector:
        try:
            grant = await refresh_if_needed(connector, integration.integration_id, locks)
        except TokenError as exc:
            _mark_error(integration, exc)
            await session.commit()
            return False
        ok = await connector.test_connection()
    if grant is not None:
        _store_grant(integration, grant)
        await session.commit()
    return ok
