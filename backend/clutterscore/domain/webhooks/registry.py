from __future__ import annotations

from clutterscore.domain.connectors.types import Platform
from clutterscore.domain.webhooks.handlers import (
    DropboxWebhookHandler,
    GoogleWebhookHandler,
    LinearWebhookHandler,
    SlackWebhookHandler,
    WebhookHandler,
)


class WebhookRegistry:
    def __init__(self, handlers: dict[Platform, WebhookHandler] | None = None) -> None:
        self._handlers: dict[Platform, WebhookHandler] = dict(handlers or {})

    def register(self, handler: WebhookHandler) -> None:
        self._handlers[handler.platform] = handler

    def get(self, platform: Platform) -> WebhookHandler | None:
        return self._handlers.get(platform)

    @property
    def platforms(self) -> list[Platform]:
        return list(self._handlers)


def default_webhook_registry(app_settings) -> WebhookRegistry:
    registry = WebhookRegistry()
    registry.register(
        SlackWebhookHandler(
            app_settings.slack_signing_secret, window_seconds=app_settings.webhook_replay_window_seconds
        )
    )
    registry.register(DropboxWebhookHandler(app_settings.dropbox_app_secret))
    registry.register(GoogleWebhookHandler(app_settings.google_channel_token))
    registry.register(LinearWebhookHandler(app_settings.linear_webhook_secret))
    return registry
