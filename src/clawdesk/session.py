"""
session.py — Desktop Session

The one explicitly owned object that ties a gateway connection to the
application's lifetime. Created after onboarding has produced a gateway
token, closed at shutdown. Whatever needs the gateway receives the session;
nothing reaches for a module-level connection.

Usage:
    async with DesktopSession(load_settings()) as session:
        await session.connection.wait_ready(timeout=10)
        await session.chat.send("Hello")
"""

from __future__ import annotations

from typing import Optional

from clawdesk.config.settings import Settings
from clawdesk.gateway.chat import ChatChannel
from clawdesk.gateway.events import EventBus
from clawdesk.gateway.gateway_client import (
    GatewayConnection,
    StatusCallback,
    TransportFactory,
)
from clawdesk.gateway.protocol import ClientInfo
from clawdesk.gateway.reconnect import ExponentialBackoff, FixedDelay, ReconnectPolicy
from clawdesk.observability.logger import bind_connection, clear_connection, get_logger

log = get_logger(__name__)


def build_reconnect_policy(settings: Settings) -> ReconnectPolicy:
    cfg = settings.gateway.reconnect
    if cfg.strategy == "exponential":
        return ExponentialBackoff(cfg.base_delay, cfg.max_delay, cfg.jitter)
    return FixedDelay(cfg.delay_seconds)


def build_connection(
    settings: Settings,
    *,
    token: Optional[str] = None,
    on_status: Optional[StatusCallback] = None,
    events: Optional[EventBus] = None,
    transport_factory: Optional[TransportFactory] = None,
) -> GatewayConnection:
    """Construct (but do not open) a GatewayConnection from settings."""
    gw = settings.gateway
    return GatewayConnection(
        gw.url,
        token or settings.resolve_gateway_token(),
        on_status=on_status,
        events=events,
        client=ClientInfo(**settings.client.model_dump()),
        role=gw.role,
        min_protocol=gw.min_protocol,
        max_protocol=gw.max_protocol,
        reconnect_policy=build_reconnect_policy(settings),
        request_timeout=gw.request_timeout_seconds,
        require_auth=gw.require_auth,
        transport_factory=transport_factory,
    )


class DesktopSession:
    """Owns one GatewayConnection and its chat channel for one app session."""

    def __init__(
        self,
        settings: Settings,
        *,
        token: Optional[str] = None,
        on_status: Optional[StatusCallback] = None,
        transport_factory: Optional[TransportFactory] = None,
    ) -> None:
        self._settings = settings
        self._token = token
        self._on_status = on_status
        self._transport_factory = transport_factory
        self.events = EventBus()
        self._connection: Optional[GatewayConnection] = None
        self._chat: Optional[ChatChannel] = None

    @property
    def started(self) -> bool:
        return self._connection is not None

    @property
    def connection(self) -> GatewayConnection:
        if self._connection is None:
            raise RuntimeError("DesktopSession.start() has not been called")
        return self._connection

    @property
    def chat(self) -> ChatChannel:
        if self._chat is None:
            raise RuntimeError("DesktopSession.start() has not been called")
        return self._chat

    async def start(self) -> None:
        """Build the connection and open it. Raises ConfigError without a token."""
        if self._connection is not None:
            return
        conn = build_connection(
            self._settings,
            token=self._token,
            on_status=self._on_status,
            events=self.events,
            transport_factory=self._transport_factory,
        )
        self._connection = conn
        self._chat = ChatChannel(conn)
        bind_connection(conn.url, self._settings.client.id)
        log.info("session.started", url=conn.url)
        await conn.connect()

    async def close(self) -> None:
        """Disconnect and drop every subscription. Safe to call twice."""
        if self._connection is None:
            return
        conn, self._connection = self._connection, None
        if self._chat is not None:
            self._chat.close()
            self._chat = None
        await conn.disconnect()
        self.events.clear()
        log.info("session.closed", url=conn.url)
        clear_connection()

    async def __aenter__(self) -> "DesktopSession":
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()
