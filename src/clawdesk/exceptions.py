"""
exceptions.py — ClawDesk Unified Error Hierarchy

All ClawDesk-specific exceptions live here. The gateway layer raises typed
subclasses of ClawDeskError — never bare Exception.

Import from here, not from individual modules:
    from clawdesk.exceptions import NotConnectedError, GatewayRequestError

Hierarchy:
    ClawDeskError
    ├── GatewayError
    │   ├── NotConnectedError
    │   ├── ConnectionLostError
    │   ├── RequestTimeoutError
    │   ├── FrameDecodeError
    │   └── GatewayRequestError
    │       └── AuthenticationError
    └── ConfigError  (defined in clawdesk.config.settings)
"""

from __future__ import annotations

from typing import Any, Optional


# ─────────────────────────────────────────────────────────────────────────────
# Root
# ─────────────────────────────────────────────────────────────────────────────

class ClawDeskError(Exception):
    """Base class for all ClawDesk exceptions."""


# ─────────────────────────────────────────────────────────────────────────────
# Gateway layer
# ─────────────────────────────────────────────────────────────────────────────

class GatewayError(ClawDeskError):
    """Base for gateway connection and protocol errors."""


class NotConnectedError(GatewayError):
    """request() was called while the transport is not open."""

    def __init__(self, message: str = "Not connected to gateway") -> None:
        super().__init__(message)


class ConnectionLostError(GatewayError):
    """The transport closed while a request was outstanding."""

    def __init__(self, method: str = "", message: str = "") -> None:
        self.method = method
        super().__init__(message or "Connection to gateway lost")


class RequestTimeoutError(GatewayError):
    """No response arrived before the request deadline."""

    def __init__(self, method: str, timeout: float) -> None:
        self.method = method
        self.timeout = timeout
        super().__init__(f"Gateway request '{method}' timed out after {timeout:g}s")


class FrameDecodeError(GatewayError):
    """An inbound frame is not valid JSON or does not match the frame schema."""


class GatewayRequestError(GatewayError):
    """The gateway answered a request with ok=false."""

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[Any] = None,
        *,
        method: str = "",
    ) -> None:
        self.code = code
        self.message = message
        self.details = details
        self.method = method
        super().__init__(message)

    def __str__(self) -> str:
        return f"{self.code}: {self.message}" if self.code else self.message


class AuthenticationError(GatewayRequestError):
    """The connect handshake was rejected; the session is unauthenticated."""


__all__ = [
    "ClawDeskError",
    "GatewayError",
    "NotConnectedError",
    "ConnectionLostError",
    "RequestTimeoutError",
    "FrameDecodeError",
    "GatewayRequestError",
    "AuthenticationError",
]
