"""
gateway/protocol.py — Gateway WebSocket Frame Protocol

Typed frame schema for all client↔gateway communication.
Every frame is a JSON object discriminated by its `kind` field:

    req    {kind, id, method, params}           client → gateway
    res    {kind, id, ok, payload?, error?}     gateway → client
    event  {kind, event, payload?, seq?}        gateway → client

The deployed gateway spells the discriminator `type`; decoding accepts
either key, encoding always writes `kind`.
"""

from __future__ import annotations

import json
import sys
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from clawdesk.exceptions import FrameDecodeError


# ─────────────────────────────────────────────────────────────────────────────
# Frame kinds and well-known names
# ─────────────────────────────────────────────────────────────────────────────

class FrameKind(str, Enum):
    """Discriminator values for the three frame kinds."""

    REQUEST  = "req"
    RESPONSE = "res"
    EVENT    = "event"


class Method(str, Enum):
    """Gateway methods the desktop client calls."""

    CONNECT   = "connect"
    CHAT_SEND = "chat.send"


class EventName(str, Enum):
    """Push events the desktop client listens for."""

    CHAT_STREAM = "chat.stream"
    CHAT_DONE   = "chat.done"


DISCRIMINATOR = "kind"
_DISCRIMINATOR_ALIASES = ("kind", "type")

PROTOCOL_VERSION = 3


# ─────────────────────────────────────────────────────────────────────────────
# Frames
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class ErrorShape:
    """Structured error carried by a failed response."""
    code: str
    message: str
    details: Any = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details is not None:
            d["details"] = self.details
        return d

    @classmethod
    def from_dict(cls, raw: Any) -> "ErrorShape":
        if not isinstance(raw, dict):
            return cls(code="unknown", message=str(raw) if raw is not None else "Request failed")
        return cls(
            code=str(raw.get("code") or "unknown"),
            message=str(raw.get("message") or "Request failed"),
            details=raw.get("details"),
        )


@dataclass
class RequestFrame:
    method: str
    params: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: new_request_id())

    def to_dict(self) -> dict[str, Any]:
        return {
            DISCRIMINATOR: FrameKind.REQUEST.value,
            "id": self.id,
            "method": self.method,
            "params": self.params,
        }


@dataclass
class ResponseFrame:
    id: str
    ok: bool
    payload: Any = None
    error: Optional[ErrorShape] = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {DISCRIMINATOR: FrameKind.RESPONSE.value, "id": self.id, "ok": self.ok}
        if self.payload is not None:
            d["payload"] = self.payload
        if self.error is not None:
            d["error"] = self.error.to_dict()
        return d


@dataclass
class EventFrame:
    event: str
    payload: Any = None
    seq: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {DISCRIMINATOR: FrameKind.EVENT.value, "event": self.event}
        if self.payload is not None:
            d["payload"] = self.payload
        if self.seq is not None:
            d["seq"] = self.seq
        return d


Frame = Union[RequestFrame, ResponseFrame, EventFrame]


# ─────────────────────────────────────────────────────────────────────────────
# Codec
# ─────────────────────────────────────────────────────────────────────────────

def new_request_id() -> str:
    """Return a fresh opaque correlation ID."""
    return uuid.uuid4().hex


def encode_frame(frame: Frame) -> str:
    """Serialize a frame to its JSON wire form."""
    return json.dumps(frame.to_dict())


def decode_frame(raw: Union[str, bytes]) -> Frame:
    """
    Parse one wire message into a typed frame.

    Raises FrameDecodeError for anything that is not a well-formed frame;
    callers drop such messages without touching connection state.
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise FrameDecodeError(f"Frame is not valid JSON: {e}") from e
    except RecursionError as e:
        raise FrameDecodeError("Frame is nested too deeply") from e
    if not isinstance(data, dict):
        raise FrameDecodeError("Frame must be a JSON object")

    kind = next((data[k] for k in _DISCRIMINATOR_ALIASES if k in data), None)

    if kind == FrameKind.RESPONSE.value:
        frame_id = data.get("id")
        if not isinstance(frame_id, str) or not frame_id:
            raise FrameDecodeError("Response frame is missing 'id'")
        ok = bool(data.get("ok"))
        return ResponseFrame(
            id=frame_id,
            ok=ok,
            payload=data.get("payload"),
            error=None if ok else ErrorShape.from_dict(data.get("error")),
        )

    if kind == FrameKind.EVENT.value:
        name = data.get("event")
        if not isinstance(name, str) or not name:
            raise FrameDecodeError("Event frame is missing 'event'")
        seq = data.get("seq")
        return EventFrame(
            event=name,
            payload=data.get("payload"),
            seq=seq if isinstance(seq, int) and not isinstance(seq, bool) else None,
        )

    if kind == FrameKind.REQUEST.value:
        method = data.get("method")
        frame_id = data.get("id")
        if not isinstance(method, str) or not method or not isinstance(frame_id, str):
            raise FrameDecodeError("Request frame is missing 'id' or 'method'")
        params = data.get("params")
        return RequestFrame(method=method, params=params if isinstance(params, dict) else {}, id=frame_id)

    raise FrameDecodeError(f"Unknown frame kind: {kind!r}")


# ─────────────────────────────────────────────────────────────────────────────
# Handshake
# ─────────────────────────────────────────────────────────────────────────────

def default_platform() -> str:
    """Map the host OS onto the gateway's platform vocabulary."""
    if sys.platform == "darwin":
        return "macos"
    if sys.platform.startswith("win"):
        return "windows"
    return "linux"


@dataclass
class ClientInfo:
    """Identity the desktop client declares in the connect handshake."""
    id: str = "openclaw-macos"
    version: str = "0.1.0"
    platform: str = field(default_factory=default_platform)
    mode: str = "webchat"

    def to_dict(self) -> dict[str, str]:
        return {
            "id": self.id,
            "version": self.version,
            "platform": self.platform,
            "mode": self.mode,
        }


def make_connect_params(
    token: str,
    client: ClientInfo,
    *,
    role: str = "operator",
    min_protocol: int = PROTOCOL_VERSION,
    max_protocol: int = PROTOCOL_VERSION,
) -> dict[str, Any]:
    """Build the params of the `connect` handshake request."""
    return {
        "minProtocol": min_protocol,
        "maxProtocol": max_protocol,
        "client": client.to_dict(),
        "role": role,
        "auth": {"token": token},
    }
