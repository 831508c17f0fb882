"""
gateway/events.py — Gateway Push-Event Registry

In-memory publish/subscribe registry keyed by event name. Any number of
independent subscribers may listen to one event name, or to every event via
the "*" wildcard. Each subscribe() returns a Subscription whose cancel()
removes exactly that handler.

Delivery is synchronous and in publish order. Events published with no
subscriber are dropped; there is no buffering or replay.

Usage:
    bus = EventBus()
    sub = bus.subscribe("chat.stream", lambda event, payload: print(payload["delta"]))
    bus.publish("chat.stream", {"delta": "hi"})
    sub.cancel()
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Callable
from typing import Any

from clawdesk.observability.logger import get_logger

log = get_logger(__name__)

EventHandler = Callable[[str, Any], Any]

WILDCARD = "*"


class Subscription:
    """Handle returned by EventBus.subscribe()."""

    def __init__(self, bus: "EventBus", event: str, handler: EventHandler) -> None:
        self._bus = bus
        self.event = event
        self.handler = handler
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self) -> None:
        """Stop delivering events to this handler. Idempotent."""
        if self._active:
            self._active = False
            self._bus._remove(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc) -> None:
        self.cancel()


class EventBus:
    """Multi-subscriber event registry keyed by event name."""

    def __init__(self) -> None:
        self._subs: dict[str, list[Subscription]] = {}
        self._tasks: set[asyncio.Task] = set()

    def subscribe(self, event: str, handler: EventHandler) -> Subscription:
        """Register `handler(event, payload)` for `event` ("*" for all events)."""
        if not event:
            raise ValueError("event name must be a non-empty string")
        sub = Subscription(self, event, handler)
        self._subs.setdefault(event, []).append(sub)
        return sub

    def subscriber_count(self, event: str | None = None) -> int:
        if event is None:
            return sum(len(subs) for subs in self._subs.values())
        return len(self._subs.get(event, []))

    def publish(self, event: str, payload: Any = None) -> int:
        """
        Deliver one event to its named subscribers, then to wildcard ones.

        Returns the number of handlers invoked. A handler that raises is
        logged and does not prevent delivery to the remaining handlers.
        Coroutine handlers are scheduled as tasks on the running loop.
        """
        targets = list(self._subs.get(event, []))
        if event != WILDCARD:
            targets += self._subs.get(WILDCARD, [])

        delivered = 0
        for sub in targets:
            if not sub.active:
                continue
            try:
                result = sub.handler(event, payload)
            except Exception as e:
                log.error(
                    "events.handler_failed",
                    event_name=event,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue
            delivered += 1
            if inspect.isawaitable(result):
                self._schedule(result)
        return delivered

    def clear(self) -> None:
        """Cancel every subscription."""
        for subs in list(self._subs.values()):
            for sub in list(subs):
                sub.cancel()

    # ─────────────────────────────────────────────────────────────────────────

    def _remove(self, sub: Subscription) -> None:
        subs = self._subs.get(sub.event)
        if not subs:
            return
        try:
            subs.remove(sub)
        except ValueError:
            return
        if not subs:
            del self._subs[sub.event]

    def _schedule(self, awaitable: Any) -> None:
        schedule_awaitable(awaitable, self._tasks, "events.async_handler_failed")


def schedule_awaitable(awaitable: Any, tasks: set[asyncio.Task], failure_event: str) -> None:
    """
    Run the awaitable returned by a callback as a task on the running loop.

    The task is held in `tasks` until it finishes; a failure is logged as
    `failure_event`. Without a running loop the awaitable is discarded.
    """
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        log.warning("events.async_handler_dropped", reason="no running event loop")
        if inspect.iscoroutine(awaitable):
            awaitable.close()
        return
    task = loop.create_task(awaitable) if inspect.iscoroutine(awaitable) else asyncio.ensure_future(awaitable)
    tasks.add(task)

    def _done(t: asyncio.Task) -> None:
        tasks.discard(t)
        if t.cancelled():
            return
        exc = t.exception()
        if exc is not None:
            log.error(failure_event, error=str(exc), error_type=type(exc).__name__)

    task.add_done_callback(_done)
