"""
gateway/ — Gateway Client Protocol Layer

Persistent WebSocket connection to the locally running gateway: connect
handshake, correlated request/response calls, and push events fanned out
to any number of subscribers.
"""

from clawdesk.gateway.protocol import (
    ClientInfo,
    ErrorShape,
    EventFrame,
    FrameKind,
    RequestFrame,
    ResponseFrame,
    decode_frame,
    encode_frame,
)
from clawdesk.gateway.events import EventBus, Subscription
from clawdesk.gateway.reconnect import ExponentialBackoff, FixedDelay
from clawdesk.gateway.gateway_client import ConnectionState, GatewayConnection
from clawdesk.gateway.chat import ChatChannel, ChatMessage

__all__ = [
    "ClientInfo",
    "ErrorShape",
    "EventFrame",
    "FrameKind",
    "RequestFrame",
    "ResponseFrame",
    "decode_frame",
    "encode_frame",
    "EventBus",
    "Subscription",
    "ExponentialBackoff",
    "FixedDelay",
    "ConnectionState",
    "GatewayConnection",
    "ChatChannel",
    "ChatMessage",
]
