from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notification:
    tenant_id: uuid.UUID | None
    title: str
    message: str
    metadata: dict[str, Any] = field(default_factory=dict)


class Notifier(Protocol):
    async def notify(
        self,
        tenant_id: uuid.UUID | None,
        title: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None: ...


class LoggingNotifier:
    """Delivery channels live outside this service; notifications are logged for operators."""

    async def notify(
        self,
        tenant_id: uuid.UUID | None,
        title: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        logger.info(
            "notification_emitted",
            extra={
                "extra": {
                    "tenant_id": str(tenant_id) if tenant_id else None,
                    "title": title,
                    "notification": message,
                    **(metadata or {}),
                }
            },
        )


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[Notification] = []

    async def notify(
        self,
        tenant_id: uuid.UUID | None,
        title: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self.sent.append(Notification(tenant_id, title, message, dict(metadata or {})))
