from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from clutterscore.domain.activity.service import record_activity
from clutterscore.domain.connectors.types import Platform
from clutterscore.domain.integrations.db_models import Integration
from clutterscore.domain.job_events.service import enqueue_job_event
from clutterscore.domain.webhooks import verifiers
from clutterscore.shared.clock import utcnow

logger = logging.getLogger(__name__)

INTEGRATIONS_SYNC_EVENT = "integrations/sync"


@dataclass
class WebhookEvent:
    platform: Platform
    event_type: str
    data: dict[str, Any] = field(default_factory=dict)
    received_at: datetime = field(default_factory=utcnow)


def _lower(headers: Mapping[str, str]) -> dict[str, str]:
    return {key.lower(): value for key, value in headers.items()}


async def _active_integrations(session: AsyncSession, platform: Platform) -> list[Integration]:
    stmt = select(Integration).where(Integration.platform == platform, Integration.is_active.is_(True))
    return list((await session.scalars(stmt)).all())


class WebhookHandler:
    """Verifies and applies one platform's webhook deliveries.

    `handle` returns how many tenants were touched. For each one it records a
    `webhook.<kind>_changed` activity row and queues an `integrations/sync` hint;
    hints are coalesced per tenant and platform within the same minute.
    """

    platform: Platform

    def verify(self, headers: Mapping[str, str], body: bytes, *, now: float | None = None) -> bool:
        raise NotImplementedError

    def parse(self, headers: Mapping[str, str], body: bytes) -> WebhookEvent:
        payload = json.loads(body or b"{}")
        inner = payload.get("event") if isinstance(payload.get("event"), dict) else None
        event_type = payload.get("type") or (inner or {}).get("type") or "unknown"
        return WebhookEvent(platform=self.platform, event_type=str(event_type), data=inner or payload)

    async def handle(self, session: AsyncSession, event: WebhookEvent) -> int:
        raise NotImplementedError

    async def _touch(
        self, session: AsyncSession, integrations: list[Integration], kind: str, metadata: dict[str, Any]
    ) -> int:
        bucket = utcnow().strftime("%Y%m%d%H%M")
        tenants = {integration.tenant_id for integration in integrations}
        for tenant_id in tenants:
            await record_activity(
                session,
                tenant_id,
                f"webhook.{kind}_changed",
                metadata={"source": self.platform.value, **metadata},
            )
            await enqueue_job_event(
                session,
                name=INTEGRATIONS_SYNC_EVENT,
                payload={"tenant_id": str(tenant_id), "platform": self.platform.value, "reason": "webhook"},
                dedupe_key=f"{INTEGRATIONS_SYNC_EVENT}:{tenant_id}:{self.platform.value}:{bucket}",
                tenant_id=tenant_id,
            )
        await session.commit()
        logger.info(
            "webhook_applied",
            extra={"extra": {"platform": self.platform.value, "kind": kind, "tenants": len(tenants)}},
        )
        return len(tenants)


class SlackWebhookHandler(WebhookHandler):
    platform = Platform.SLACK

    EVENT_KINDS = {
        "file_created": "file",
        "file_deleted": "file",
        "file_shared": "file",
        "channel_created": "channel",
        "channel_deleted": "channel",
        "channel_archive": "channel",
        "user_change": "user",
        "team_join": "user",
    }

    def __init__(self, signing_secret: str | None, *, window_seconds: int = 300) -> None:
        self.signing_secret = signing_secret
        self.window_seconds = window_seconds

    def verify(self, headers: Mapping[str, str], body: bytes, *, now: float | None = None) -> bool:
        return verifiers.verify_slack_signature(
            headers, body, self.signing_secret, now=now, window_seconds=self.window_seconds
        )

    async def handle(self, session: AsyncSession, event: WebhookEvent) -> int:
        kind = self.EVENT_KINDS.get(event.event_type)
        if kind is None:
            logger.warning("webhook_event_unhandled", extra={"extra": {"platform": "SLACK", "event": event.event_type}})
            return 0
        integrations = await _active_integrations(session, self.platform)
        return await self._touch(session, integrations, kind, {"event": event.event_type})


class DropboxWebhookHandler(WebhookHandler):
    platform = Platform.DROPBOX

    def __init__(self, app_secret: str | None) -> None:
        self.app_secret = app_secret

    def verify(self, headers: Mapping[str, str], body: bytes, *, now: float | None = None) -> bool:
        return verifiers.verify_dropbox_signature(headers, body, self.app_secret)

    def parse(self, headers: Mapping[str, str], body: bytes) -> WebhookEvent:
        payload = json.loads(body or b"{}")
        return WebhookEvent(platform=self.platform, event_type="list_folder", data=payload)

    async def handle(self, session: AsyncSession, event: WebhookEvent) -> int:
        accounts = set((event.data.get("list_folder") or {}).get("accounts") or [])
        if not accounts:
            return 0
        integrations = [
            integration
            for integration in await _active_integrations(session, self.platform)
            if (integration.metadata_json or {}).get("account_id") in accounts
        ]
        return await self._touch(session, integrations, "files", {"accounts": sorted(accounts)})


class GoogleWebhookHandler(WebhookHandler):
    platform = Platform.GOOGLE

    CHANGE_STATES = {"add", "remove", "update", "trash", "change"}

    def __init__(self, channel_token: str | None) -> None:
        self.channel_token = channel_token

    def verify(self, headers: Mapping[str, str], body: bytes, *, now: float | None = None) -> bool:
        return verifiers.verify_google_channel_token(headers, self.channel_token)

    def parse(self, headers: Mapping[str, str], body: bytes) -> WebhookEvent:
        lowered = _lower(headers)
        return WebhookEvent(
            platform=self.platform,
            event_type=lowered.get("x-goog-resource-state", "unknown"),
            data={
                "id": lowered.get("x-goog-resource-id"),
                "channel_id": lowered.get("x-goog-channel-id"),
                "changed": lowered.get("x-goog-changed"),
            },
        )

    async def handle(self, session: AsyncSession, event: WebhookEvent) -> int:
        if event.event_type not in self.CHANGE_STATES:
            return 0
        resource_id = event.data.get("id")
        if not resource_id:
            return 0
        integrations = [
            integration
            for integration in await _active_integrations(session, self.platform)
            if (integration.metadata_json or {}).get("watch_resource_id") == resource_id
        ]
        return await self._touch(session, integrations, "drive", {"state": event.event_type})


class LinearWebhookHandler(WebhookHandler):
    platform = Platform.LINEAR

    ENTITY_KINDS = {"Issue": "issue", "Project": "project", "User": "user", "Team": "team", "Comment": "comment"}

    def __init__(self, webhook_secret: str | None) -> None:
        self.webhook_secret = webhook_secret

    def verify(self, headers: Mapping[str, str], body: bytes, *, now: float | None = None) -> bool:
        return verifiers.verify_linear_signature(headers, body, self.webhook_secret)

    def parse(self, headers: Mapping[str, str], body: bytes) -> WebhookEvent:
        payload = json.loads(body or b"{}")
        return WebhookEvent(platform=self.platform, event_type=str(payload.get("type") or "unknown"), data=payload)

    async def handle(self, session: AsyncSession, event: WebhookEvent) -> int:
        kind = self.ENTITY_KINDS.get(event.event_type)
        organization_id = event.data.get("organizationId")
        if kind is None or not organization_id:
            logger.info("webhook_event_unhandled", extra={"extra": {"platform": "LINEAR", "event": event.event_type}})
            return 0
        integrations = [
            integration
            for integration in await _active_integrations(session, self.platform)
            if (integration.metadata_json or {}).get("organization_id") == organization_id
        ]
        entity = event.data.get("data") or {}
        return await self._touch(
            session,
            integrations,
            kind,
            {"action": event.data.get("action"), "entity_id": entity.get("id")},
        )
