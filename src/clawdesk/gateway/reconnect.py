"""
gateway/reconnect.py — Reconnection Delay Policies

A policy answers one question: how long to wait before the next reconnect
attempt. Retries are unbounded; the connection keeps trying while its
owning session is alive.

    FixedDelay(3.0)                        — same delay every time (default)
    ExponentialBackoff(1.0, 30.0, 0.5)     — min(base * 2^attempt + jitter, max)
"""

from __future__ import annotations

import random
from typing import Optional, Protocol


class ReconnectPolicy(Protocol):
    def next_delay(self) -> float:
        """Return the delay in seconds before the next attempt."""
        ...

    def reset(self) -> None:
        """Forget previous failures after a successful connection."""
        ...


class FixedDelay:
    """Retry after the same delay forever. Suits a gateway on localhost."""

    def __init__(self, delay: float = 3.0) -> None:
        if delay < 0:
            raise ValueError("delay must be >= 0")
        self.delay = delay

    def next_delay(self) -> float:
        return self.delay

    def reset(self) -> None:
        pass


class ExponentialBackoff:
    """
    Capped exponential backoff with additive jitter.

    Backoff formula: min(base_delay * 2^attempt + uniform(0, jitter), max_delay)
    The attempt counter resets after a successful handshake.
    """

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        jitter: float = 0.5,
        rng: Optional[random.Random] = None,
    ) -> None:
        if base_delay <= 0 or max_delay < base_delay or jitter < 0:
            raise ValueError("require 0 < base_delay <= max_delay and jitter >= 0")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self._rng = rng or random.Random()
        self._attempt = 0

    @property
    def attempt(self) -> int:
        return self._attempt

    def next_delay(self) -> float:
        # Cap the exponent so 2**attempt stays a small float on long outages.
        exp = min(self._attempt, 32)
        self._attempt += 1
        jitter = self._rng.uniform(0, self.jitter) if self.jitter else 0.0
        return min(self.base_delay * (2 ** exp) + jitter, self.max_delay)

    def reset(self) -> None:
        self._attempt = 0
