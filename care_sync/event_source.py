"""
Change event source contract and an in-process implementation.

A change event source delivers row-level change notifications for a topic,
filtered server-side by a PostgREST-style expression (``column=eq.value``).
Delivery is at-least-once, unordered across topics, and there is no replay
after a reconnect: ``on_reconnect`` tells the subscriber it may have missed
events.

The in-memory source is used by tests and local development. Keep it
interface-compatible with ``SSEChangeEventSource``.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol

import structlog

from .errors import SubscriptionError
from .models import ChangeEvent

log = structlog.get_logger()

EventHandler = Callable[[ChangeEvent], Awaitable[None]]
ReconnectHandler = Callable[[], Awaitable[None]]


@dataclass(eq=False)
class SubscriptionHandle:
    """One open subscription for a (topic, filter) pair."""

    id: str
    topic: str
    filter_expr: str
    closed: bool = False


class ChangeEventSource(Protocol):
    async def subscribe(
        self,
        topic: str,
        filter_expr: str,
        on_event: EventHandler,
        on_reconnect: ReconnectHandler | None = None,
    ) -> SubscriptionHandle: ...

    async def unsubscribe(self, handle: SubscriptionHandle) -> None: ...


def parse_filter(filter_expr: str) -> tuple[str, str]:
    """Split ``column=eq.value`` into ``(column, value)``."""
    column, sep, rest = filter_expr.partition("=")
    if not sep or not rest.startswith("eq."):
        raise ValueError(f"unsupported filter expression: {filter_expr!r}")
    return column, rest[3:]


def filter_matches(filter_expr: str, payload: dict[str, Any]) -> bool:
    # Rows without the filtered column (e.g. key-only deletes) pass.
    column, value = parse_filter(filter_expr)
    if column not in payload:
        return True
    return str(payload[column]) == value


@dataclass
class _Registration:
    handle: SubscriptionHandle
    on_event: EventHandler
    on_reconnect: ReconnectHandler | None


class InMemoryChangeEventSource:
    """In-process pub/sub implementing the change event source contract."""

    def __init__(self) -> None:
        self._registrations: dict[str, _Registration] = {}
        self._ids = itertools.count(1)
        # Topics whose subscribe() fails, for exercising fallback paths.
        self.fail_topics: set[str] = set()

    async def subscribe(
        self,
        topic: str,
        filter_expr: str,
        on_event: EventHandler,
        on_reconnect: ReconnectHandler | None = None,
    ) -> SubscriptionHandle:
        if topic in self.fail_topics:
            raise SubscriptionError(f"subscribe refused for {topic}", topic=topic)
        parse_filter(filter_expr)
        handle = SubscriptionHandle(f"mem-{next(self._ids)}", topic, filter_expr)
        self._registrations[handle.id] = _Registration(handle, on_event, on_reconnect)
        return handle

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        self._registrations.pop(handle.id, None)

    def open_handles(self, topic: str | None = None) -> list[SubscriptionHandle]:
        return [
            r.handle
            for r in self._registrations.values()
            if topic is None or r.handle.topic == topic
        ]

    async def publish(self, event: ChangeEvent) -> int:
        """Deliver an event to matching subscribers. Returns the delivery count."""
        delivered = 0
        for reg in list(self._registrations.values()):
            if reg.handle.topic != event.topic:
                continue
            if not filter_matches(reg.handle.filter_expr, event.payload):
                continue
            try:
                await reg.on_event(event)
            except Exception:
                log.exception("event_source.handler_error", topic=event.topic)
            delivered += 1
        return delivered

    async def reconnect(self) -> None:
        """Simulate a dropped and restored connection on every subscription."""
        for reg in list(self._registrations.values()):
            if reg.on_reconnect is not None:
                await reg.on_reconnect()
