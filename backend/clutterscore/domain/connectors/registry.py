from __future__ import annotations

import httpx

from clutterscore.domain.connectors.base import Connector
from clutterscore.domain.connectors.dropbox import DropboxConnector
from clutterscore.domain.connectors.errors import ConnectorError
from clutterscore.domain.connectors.figma import FigmaConnector
from clutterscore.domain.connectors.google import GoogleConnector
from clutterscore.domain.connectors.jira import JiraConnector
from clutterscore.domain.connectors.linear import LinearConnector
from clutterscore.domain.connectors.notion import NotionConnector
from clutterscore.domain.connectors.slack import SlackConnector
from clutterscore.domain.connectors.types import ConnectorConfig, Platform
from clutterscore.settings import settings
from clutterscore.shared.circuit_breaker import CircuitBreakers

DEFAULT_CONNECTORS: dict[Platform, type[Connector]] = {
    Platform.SLACK: SlackConnector,
    Platform.GOOGLE: GoogleConnector,
    Platform.DROPBOX: DropboxConnector,
    Platform.NOTION: NotionConnector,
    Platform.FIGMA: FigmaConnector,
    Platform.LINEAR: LinearConnector,
    Platform.JIRA: JiraConnector,
}


def _is_outage(exc: BaseException) -> bool:
    if not isinstance(exc, ConnectorError) or not exc.retryable:
        return False
    return exc.status_code is None or exc.status_code >= 500


class UnsupportedPlatformError(ValueError):
    pass


class ConnectorRegistry:
    """Maps a platform plus stored credentials to a live connector.

    The platform map is passed in, so tests register fakes without touching
    module state. A shared transport (e.g. `httpx.MockTransport`) is handed to
    every connector the registry builds, together with the platform's circuit
    breaker. Only retryable server-side failures count towards tripping it.
    """

    def __init__(
        self,
        connectors: dict[Platform, type[Connector]] | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._connectors = dict(DEFAULT_CONNECTORS if connectors is None else connectors)
        self._transport = transport
        self.breakers = CircuitBreakers(
            failure_threshold=settings.connector_circuit_failure_threshold,
            recovery_time=settings.connector_circuit_recovery_seconds,
            window_seconds=settings.connector_circuit_window_seconds,
            counts=_is_outage,
        )

    @property
    def platforms(self) -> list[Platform]:
        return list(self._connectors)

    def supports(self, platform: Platform | str) -> bool:
        try:
            return Platform(platform) in self._connectors
        except ValueError:
            return False

    def register(self, platform: Platform, connector_cls: type[Connector]) -> None:
        self._connectors[platform] = connector_cls

    def create(self, platform: Platform | str, config: ConnectorConfig) -> Connector:
        try:
            key = Platform(platform)
            connector_cls = self._connectors[key]
        except (ValueError, KeyError) as exc:
            raise UnsupportedPlatformError(f"Unsupported platform: {platform}") from exc
        return connector_cls(config, transport=self._transport, breaker=self.breakers.get(key.value))

    def capabilities(self) -> dict[str, list[str]]:
        return {
            platform.value: sorted(connector_cls.capabilities())
            for platform, connector_cls in self._connectors.items()
        }


def default_connector_registry(transport: httpx.AsyncBaseTransport | None = None) -> ConnectorRegistry:
    return ConnectorRegistry(transport=transport)
