from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from clutterscore.dependencies import get_services
from clutterscore.domain.connectors.types import Platform
from clutterscore.domain.webhooks.handlers import WebhookHandler
from clutterscore.infra.db import get_db_session
from clutterscore.services import AppServices

router = APIRouter(tags=["webhooks"])
logger = logging.getLogger(__name__)


def _resolve_handler(platform: str, services: AppServices) -> WebhookHandler:
    try:
        resolved = Platform(platform.upper())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown platform {platform}") from None
    handler = services.webhook_registry.get(resolved)
    if handler is None:
        raise HTTPException(status_code=404, detail=f"No webhook handler for {resolved.value}")
    return handler


@router.get("/v1/webhooks/{platform}")
async def webhook_challenge(
    platform: str,
    challenge: str | None = Query(None, max_length=512),
    services: AppServices = Depends(get_services),
) -> Response:
    _resolve_handler(platform, services)
    if not challenge:
        raise HTTPException(status_code=400, detail="Missing challenge")
    return Response(content=challenge, media_type="text/plain", headers={"X-Content-Type-Options": "nosniff"})


@router.post("/v1/webhooks/{platform}")
async def receive_webhook(
    platform: str,
    request: Request,
    session: AsyncSession = Depends(get_db_session),
    services: AppServices = Depends(get_services),
) -> dict:
    handler = _resolve_handler(platform, services)
    body = await request.body()
    headers = dict(request.headers)
    if not handler.verify(headers, body):
        services.metrics.record_webhook(handler.platform.value, "rejected")
        logger.warning("webhook_signature_invalid", extra={"extra": {"platform": handler.platform.value}})
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        event = handler.parse(headers, body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        services.metrics.record_webhook(handler.platform.value, "invalid")
        raise HTTPException(status_code=400, detail="Invalid payload") from None

    if event.event_type == "url_verification":
        return {"challenge": event.data.get("challenge")}

    tenants = await handler.handle(session, event)
    services.metrics.record_webhook(handler.platform.value, "accepted" if tenants else "ignored")
    return {"ok": True, "event": event.event_type, "tenants": tenants}
