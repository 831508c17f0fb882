"""
gateway/chat.py — Chat Channel over the Gateway Connection

Sends user messages with `chat.send` and folds the gateway's streamed reply
into a transcript:

    chat.stream  {delta}  → appended to `streaming`
    chat.done    {text}   → agent message appended to `messages`, `streaming` reset
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Optional

from clawdesk.exceptions import GatewayError, GatewayRequestError
from clawdesk.gateway.events import Subscription
from clawdesk.gateway.gateway_client import GatewayConnection
from clawdesk.gateway.protocol import EventName, Method
from clawdesk.observability.logger import get_logger

log = get_logger(__name__)


@dataclass
class ChatMessage:
    role: str
    content: str
    attachments: list[str] = field(default_factory=list)


def default_session_key(today: Optional[date] = None) -> str:
    """One gateway chat session per UTC calendar day."""
    return f"desktop-session-{(today or datetime.now(timezone.utc).date()).isoformat()}"


class ChatChannel:
    """Transcript plus streaming buffer fed by gateway chat events."""

    def __init__(self, connection: GatewayConnection) -> None:
        self._conn = connection
        self.messages: list[ChatMessage] = []
        self.streaming: str = ""
        self._done_waiters: list[asyncio.Future] = []
        self._subs: list[Subscription] = [
            connection.events.subscribe(EventName.CHAT_STREAM.value, self._on_stream),
            connection.events.subscribe(EventName.CHAT_DONE.value, self._on_done),
        ]

    async def send(
        self,
        message: str,
        attachments: Iterable[str] = (),
        *,
        session_key: Optional[str] = None,
    ) -> Any:
        """Append the user message and issue `chat.send`; returns the ack payload."""
        files = list(attachments)
        if not message.strip() and not files:
            raise ValueError("chat message must have text or attachments")

        self.messages.append(ChatMessage(role="user", content=message, attachments=files))
        params = {
            "message": message,
            "attachments": files,
            "sessionKey": session_key or default_session_key(),
            "idempotencyKey": str(uuid.uuid4()),
        }
        try:
            result = await self._conn.request(Method.CHAT_SEND.value, params)
        except GatewayError as e:
            log.warning("chat.send_failed", error=str(e), error_type=type(e).__name__)
            text = e.message if isinstance(e, GatewayRequestError) else str(e)
            self.messages.append(ChatMessage(role="agent", content=f"Error: {text}"))
            raise
        log.info("chat.sent", session_key=params["sessionKey"], attachments=len(files))
        return result

    async def wait_done(self, timeout: Optional[float] = None) -> ChatMessage:
        """Wait for the next `chat.done` and return the agent message it produced."""
        waiter: asyncio.Future = asyncio.get_running_loop().create_future()
        self._done_waiters.append(waiter)
        try:
            return await asyncio.wait_for(waiter, timeout)
        finally:
            if waiter in self._done_waiters:
                self._done_waiters.remove(waiter)

    def close(self) -> None:
        for sub in self._subs:
            sub.cancel()
        self._subs.clear()

    # ─────────────────────────────────────────────────────────────────────────

    def _on_stream(self, event: str, payload: Any) -> None:
        if isinstance(payload, dict):
            self.streaming += str(payload.get("delta") or "")

    def _on_done(self, event: str, payload: Any) -> None:
        text = payload.get("text") if isinstance(payload, dict) else None
        msg = ChatMessage(role="agent", content=str(text or ""))
        self.messages.append(msg)
        self.streaming = ""
        waiters, self._done_waiters = self._done_waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(msg)
