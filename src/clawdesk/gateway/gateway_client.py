"""
gateway/gateway_client.py — Async Gateway Connection

Persistent duplex WebSocket connection to the locally running gateway.
Owns the transport, the connect handshake, the pending-request table and
the reconnection timer. Exposes a call/response RPC (`request`) and an
event feed (`events`).

State machine:

    DISCONNECTED --connect()--> CONNECTING --open--> AUTHENTICATING
    AUTHENTICATING --handshake ok-->   READY (authenticated)
    AUTHENTICATING --handshake fail--> READY (degraded, unauthenticated)
    CONNECTING|AUTHENTICATING|READY --closed--> DISCONNECTED --> RECONNECTING --(delay)--> CONNECTING
    any --disconnect()--> DISCONNECTED (no automatic reconnect)

Usage:
    async with GatewayConnection("ws://127.0.0.1:18789", token) as conn:
        await conn.wait_ready(timeout=10)
        sessions = await conn.request("sessions.list")
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

import websockets

from clawdesk.exceptions import (
    AuthenticationError,
    ConnectionLostError,
    FrameDecodeError,
    GatewayRequestError,
    NotConnectedError,
    RequestTimeoutError,
)
from clawdesk.gateway.events import EventBus, Subscription, WILDCARD, schedule_awaitable
from clawdesk.gateway.protocol import (
    PROTOCOL_VERSION,
    ClientInfo,
    ErrorShape,
    EventFrame,
    Method,
    RequestFrame,
    ResponseFrame,
    decode_frame,
    encode_frame,
    make_connect_params,
    new_request_id,
)
from clawdesk.gateway.reconnect import FixedDelay, ReconnectPolicy
from clawdesk.observability.logger import get_logger

log = get_logger(__name__)

StatusCallback = Callable[[bool], Any]
EventCallback = Callable[[str, Any], Any]
TransportFactory = Callable[..., Any]

_USE_DEFAULT = object()


class ConnectionState(str, Enum):
    DISCONNECTED   = "disconnected"
    CONNECTING     = "connecting"
    AUTHENTICATING = "authenticating"
    READY          = "ready"
    RECONNECTING   = "reconnecting"


@dataclass
class PendingRequest:
    """An outstanding request awaiting its response frame."""
    id: str
    method: str
    future: asyncio.Future


class GatewayConnection:
    """
    Async WebSocket connection to the gateway with transparent reconnection.

    Async context manager: connects on enter, disconnects on exit.
    All state is mutated from the event loop only; no locks are needed.
    """

    def __init__(
        self,
        url: str,
        token: str,
        *,
        on_status: Optional[StatusCallback] = None,
        on_event: Optional[EventCallback] = None,
        events: Optional[EventBus] = None,
        client: Optional[ClientInfo] = None,
        role: str = "operator",
        min_protocol: int = PROTOCOL_VERSION,
        max_protocol: int = PROTOCOL_VERSION,
        reconnect_policy: Optional[ReconnectPolicy] = None,
        request_timeout: Optional[float] = 30.0,
        require_auth: bool = True,
        transport_factory: Optional[TransportFactory] = None,
        max_size: int = 2**22,
    ):
        self._url = url
        self._token = token
        self._on_status = on_status
        self._events = events if events is not None else EventBus()
        self._client = client or ClientInfo()
        self._role = role
        self._min_protocol = min_protocol
        self._max_protocol = max_protocol
        self._policy: ReconnectPolicy = reconnect_policy or FixedDelay(3.0)
        self._request_timeout = request_timeout
        self._require_auth = require_auth
        self._transport_factory = transport_factory or websockets.connect
        self._max_size = max_size

        self._transport = None
        self._pending: dict[str, PendingRequest] = {}
        self._state = ConnectionState.DISCONNECTED
        self._authenticated = False
        self._auth_error: Optional[ErrorShape] = None
        self._server_info: Any = None
        self._status_up = False
        self._closing = False
        self._generation = 0
        self.last_seq: Optional[int] = None

        self._reader_task: Optional[asyncio.Task] = None
        self._handshake_task: Optional[asyncio.Task] = None
        self._connect_task: Optional[asyncio.Task] = None
        self._reconnect_handle: Optional[asyncio.TimerHandle] = None
        self._status_tasks: set[asyncio.Task] = set()
        self._handshake_done = asyncio.Event()
        self._ready = asyncio.Event()

        self._on_event_sub: Optional[Subscription] = None
        if on_event is not None:
            self._on_event_sub = self._events.subscribe(WILDCARD, on_event)

    async def __aenter__(self) -> "GatewayConnection":
        await self.connect()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.disconnect()

    # ─────────────────────────────────────────────────────────────────────────
    # Introspection
    # ─────────────────────────────────────────────────────────────────────────

    @property
    def url(self) -> str:
        return self._url

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._transport is not None

    @property
    def authenticated(self) -> bool:
        return self._authenticated

    @property
    def server_info(self) -> Any:
        """Payload of the accepted connect handshake (server hello)."""
        return self._server_info

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def reconnect_scheduled(self) -> bool:
        return self._reconnect_handle is not None

    # ─────────────────────────────────────────────────────────────────────────
    # Connection lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    async def connect(self) -> None:
        """
        Open the transport and start the handshake.

        Returns once the transport is open (or the attempt has failed and a
        reconnect is scheduled). Use wait_ready() to await the handshake.
        """
        if self._state in (
            ConnectionState.CONNECTING,
            ConnectionState.AUTHENTICATING,
            ConnectionState.READY,
        ):
            return
        self._closing = False
        self._cancel_reconnect()
        generation = self._generation
        self._set_state(ConnectionState.CONNECTING)
        log.info("gateway_client.connecting", url=self._url)

        try:
            transport = await self._transport_factory(self._url, max_size=self._max_size)
        except (OSError, websockets.InvalidHandshake, websockets.InvalidURI, asyncio.TimeoutError) as e:
            log.warning(
                "gateway_client.connect_failed",
                url=self._url,
                error=str(e),
                error_type=type(e).__name__,
            )
            if generation == self._generation:
                self._handle_close(None, str(e))
            return

        if self._closing or generation != self._generation:
            # disconnect() ran while the transport was opening
            log.info("gateway_client.stale_open_closed", url=self._url)
            await self._close_transport(transport)
            return
        self._handle_open(transport)

    async def disconnect(self) -> None:
        """Close the transport and stop reconnecting until connect() is called again."""
        self._closing = True
        self._generation += 1
        self._cancel_reconnect()
        transport, self._transport = self._transport, None

        current = asyncio.current_task()
        for task in (self._handshake_task, self._reader_task, self._connect_task):
            if task is None or task is current or task.done():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._handshake_task = self._reader_task = self._connect_task = None

        if transport is not None:
            await self._close_transport(transport)

        self._drain_pending()
        self._authenticated = False
        self._handshake_done.set()
        self._ready.clear()
        self._set_state(ConnectionState.DISCONNECTED)
        self._notify_status(False)
        log.info("gateway_client.disconnected", url=self._url)

    async def wait_ready(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until the handshake has completed.

        Returns True for an authenticated session, False for a degraded one.
        Raises asyncio.TimeoutError if READY is not reached in time.
        """
        await asyncio.wait_for(self._ready.wait(), timeout)
        return self._authenticated

    def close_listener(self) -> None:
        """Detach the constructor's on_event callback."""
        if self._on_event_sub is not None:
            self._on_event_sub.cancel()
            self._on_event_sub = None

    # ─────────────────────────────────────────────────────────────────────────
    # Public API — request/response
    # ─────────────────────────────────────────────────────────────────────────

    async def request(
        self,
        method: str,
        params: Optional[dict[str, Any]] = None,
        *,
        timeout: Any = _USE_DEFAULT,
    ) -> Any:
        """
        Send one request and wait for its response payload.

        Raises:
            NotConnectedError:   transport not open; nothing was sent.
            GatewayRequestError: gateway answered ok=false.
            AuthenticationError: session is unauthenticated (require_auth=True).
            ConnectionLostError: transport closed before the response arrived.
            RequestTimeoutError: no response before the deadline.
        """
        if not isinstance(method, str) or not method:
            raise ValueError("method must be a non-empty string")
        if self._transport is None:
            raise NotConnectedError()

        effective: Optional[float] = self._request_timeout if timeout is _USE_DEFAULT else timeout
        if self._require_auth and method != Method.CONNECT.value:
            effective = await self._await_authenticated(method, effective)
        return await self._call(method, params or {}, effective)

    # ─────────────────────────────────────────────────────────────────────────
    # Internals — transport callbacks
    # ─────────────────────────────────────────────────────────────────────────

    def _handle_open(self, transport: Any) -> None:
        self._transport = transport
        self._authenticated = False
        self._auth_error = None
        self._server_info = None
        self.last_seq = None
        self._handshake_done.clear()
        self._ready.clear()
        self._set_state(ConnectionState.AUTHENTICATING)
        log.info("gateway_client.connected", url=self._url)
        self._notify_status(True)

        self._reader_task = asyncio.create_task(self._reader_loop(transport))
        self._handshake_task = asyncio.create_task(self._authenticate())

    def _handle_close(self, transport: Any, reason: str) -> None:
        if transport is not None and transport is not self._transport:
            return  # stale close from an already-replaced transport
        was_open = self._transport is not None
        self._transport = None

        # An in-flight handshake is rejected by the drain like any other request.
        self._drain_pending()
        self._authenticated = False
        self._handshake_done.set()
        self._ready.clear()
        self._set_state(ConnectionState.DISCONNECTED)
        if was_open:
            log.warning("gateway_client.connection_lost", url=self._url, reason=reason)
        self._notify_status(False)

        if not self._closing:
            self._schedule_reconnect()

    async def _reader_loop(self, transport: Any) -> None:
        """Read frames until the transport closes, then run close handling."""
        reason = "closed"
        try:
            async for raw in transport:
                self._handle_message(raw)
        except websockets.ConnectionClosed as e:
            reason = str(e)
        except OSError as e:
            reason = f"{type(e).__name__}: {e}"
        except Exception as e:
            log.error("gateway_client.reader_failed", error=str(e), error_type=type(e).__name__)
            reason = f"reader failed: {type(e).__name__}"
            await self._close_transport(transport)
        finally:
            # disconnect() detaches the transport before cancelling, so this is a no-op there
            self._handle_close(transport, reason)

    def _handle_message(self, raw: Any) -> None:
        try:
            frame = decode_frame(raw)
        except FrameDecodeError as e:
            log.warning("gateway_client.bad_frame", error=str(e))
            return

        if isinstance(frame, ResponseFrame):
            self._resolve(frame)
        elif isinstance(frame, EventFrame):
            if frame.seq is not None:
                self.last_seq = frame.seq
            self._events.publish(frame.event, frame.payload)
        else:
            log.debug("gateway_client.unexpected_request", method=frame.method)

    # ─────────────────────────────────────────────────────────────────────────
    # Internals — handshake
    # ─────────────────────────────────────────────────────────────────────────

    async def _authenticate(self) -> None:
        params = make_connect_params(
            self._token,
            self._client,
            role=self._role,
            min_protocol=self._min_protocol,
            max_protocol=self._max_protocol,
        )
        try:
            payload = await self._call(Method.CONNECT.value, params, self._request_timeout)
        except GatewayRequestError as e:
            log.error("gateway_client.handshake_failed", code=e.code, error=e.message)
            self._finish_handshake(ErrorShape(e.code, e.message, e.details))
            return
        except RequestTimeoutError as e:
            log.error("gateway_client.handshake_failed", code="timeout", error=str(e))
            self._finish_handshake(ErrorShape("timeout", str(e)))
            return
        except (ConnectionLostError, NotConnectedError):
            return  # close handling already ran

        self._server_info = payload
        self._authenticated = True
        self._policy.reset()
        self._finish_handshake(None)
        log.info("gateway_client.authenticated", url=self._url, role=self._role)

    def _finish_handshake(self, error: Optional[ErrorShape]) -> None:
        self._auth_error = error
        self._set_state(ConnectionState.READY)
        self._handshake_done.set()
        self._ready.set()

    async def _await_authenticated(self, method: str, timeout: Optional[float]) -> Optional[float]:
        """Hold a request until the handshake outcome is known; return the remaining timeout."""
        if self._state is ConnectionState.AUTHENTICATING:
            loop = asyncio.get_running_loop()
            started = loop.time()
            try:
                await asyncio.wait_for(self._handshake_done.wait(), timeout)
            except asyncio.TimeoutError:
                raise RequestTimeoutError(method, timeout) from None
            if self._transport is None:
                raise ConnectionLostError(method)
            if timeout is not None:
                timeout = max(timeout - (loop.time() - started), 0.0)

        if not self._authenticated:
            err = self._auth_error or ErrorShape("unauthenticated", "Gateway session is not authenticated")
            raise AuthenticationError(err.code, err.message, err.details, method=method)
        return timeout

    # ─────────────────────────────────────────────────────────────────────────
    # Internals — pending-request table
    # ─────────────────────────────────────────────────────────────────────────

    async def _call(self, method: str, params: dict[str, Any], timeout: Optional[float]) -> Any:
        transport = self._transport
        if transport is None:
            raise NotConnectedError()

        req_id = new_request_id()
        while req_id in self._pending:
            req_id = new_request_id()
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[req_id] = PendingRequest(id=req_id, method=method, future=future)

        try:
            try:
                await transport.send(encode_frame(RequestFrame(method=method, params=params, id=req_id)))
            except (websockets.ConnectionClosed, OSError) as e:
                if future.done() and not future.cancelled():
                    future.exception()  # drained concurrently; mark retrieved
                raise ConnectionLostError(method) from e
            log.debug("gateway_client.request_sent", method=method, id=req_id)

            if timeout is None:
                return await future
            try:
                return await asyncio.wait_for(future, timeout)
            except asyncio.TimeoutError:
                log.warning("gateway_client.request_timeout", method=method, id=req_id, timeout_s=timeout)
                raise RequestTimeoutError(method, timeout) from None
        finally:
            entry = self._pending.get(req_id)
            if entry is not None and entry.future is future:
                del self._pending[req_id]

    def _resolve(self, frame: ResponseFrame) -> None:
        entry = self._pending.pop(frame.id, None)
        if entry is None:
            log.debug("gateway_client.unmatched_response", id=frame.id)
            return
        if entry.future.done():
            return
        if frame.ok:
            entry.future.set_result(frame.payload)
            return
        err = frame.error or ErrorShape("unknown", "Request failed")
        exc_type = AuthenticationError if entry.method == Method.CONNECT.value else GatewayRequestError
        entry.future.set_exception(exc_type(err.code, err.message, err.details, method=entry.method))

    def _drain_pending(self) -> None:
        pending, self._pending = self._pending, {}
        for entry in pending.values():
            if not entry.future.done():
                entry.future.set_exception(ConnectionLostError(entry.method))
        if pending:
            log.warning("gateway_client.pending_drained", count=len(pending))

    # ─────────────────────────────────────────────────────────────────────────
    # Internals — reconnection
    # ─────────────────────────────────────────────────────────────────────────

    def _schedule_reconnect(self) -> None:
        if self._closing:
            return
        if self._reconnect_handle is None:
            delay = self._policy.next_delay()
            loop = asyncio.get_running_loop()
            self._reconnect_handle = loop.call_later(delay, self._fire_reconnect)
            log.info("gateway_client.reconnect_scheduled", url=self._url, delay_s=round(delay, 2))
        self._set_state(ConnectionState.RECONNECTING)

    def _fire_reconnect(self) -> None:
        self._reconnect_handle = None
        if self._closing:
            return
        log.info("gateway_client.reconnecting", url=self._url)
        self._connect_task = asyncio.create_task(self.connect())

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    # ─────────────────────────────────────────────────────────────────────────
    # Internals — helpers
    # ─────────────────────────────────────────────────────────────────────────

    def _set_state(self, state: ConnectionState) -> None:
        if state is not self._state:
            log.debug("gateway_client.state", old=self._state.value, new=state.value)
            self._state = state

    def _notify_status(self, connected: bool) -> None:
        if connected == self._status_up:
            return
        self._status_up = connected
        if self._on_status is None:
            return
        try:
            result = self._on_status(connected)
        except Exception as e:
            log.error("gateway_client.status_callback_failed", error=str(e), error_type=type(e).__name__)
            return
        if inspect.isawaitable(result):
            schedule_awaitable(result, self._status_tasks, "gateway_client.status_callback_failed")

    @staticmethod
    async def _close_transport(transport: Any) -> None:
        try:
            await transport.close()
        except (websockets.ConnectionClosed, OSError) as e:
            log.debug("gateway_client.close_failed", error=str(e))
