"""
Subscription lifecycle management.

Owns every change-event subscription handle. Stores only declare logical
subscriptions (topic + subject column + callbacks); the manager opens one
handle per declaration for the current subject and swaps them when the
subject changes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable

import structlog

from .errors import SubscriptionError
from .event_source import ChangeEventSource, EventHandler, ReconnectHandler, SubscriptionHandle
from .metrics import MetricsCollector
from .models import ChangeEvent, Subject

log = structlog.get_logger()

ErrorHandler = Callable[[SubscriptionError], Awaitable[None]]


@dataclass(frozen=True)
class TopicSubscription:
    """A store's request to receive events for rows that belong to the subject."""

    topic: str
    subject_column: str
    on_event: EventHandler
    on_reconnect: ReconnectHandler | None = None
    on_error: ErrorHandler | None = None

    def filter_for(self, subject: Subject) -> str:
        return f"{self.subject_column}=eq.{subject}"


class SubscriptionManager:
    """Opens and releases subscriptions bound to the current subject."""

    def __init__(
        self,
        source: ChangeEventSource,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._source = source
        self._metrics = metrics
        self._declared: dict[tuple[str, str], TopicSubscription] = {}
        self._handles: dict[tuple[str, str], SubscriptionHandle] = {}
        self._subject: Subject | None = None

    @property
    def subject(self) -> Subject | None:
        return self._subject

    def declare(self, owner: str, subscription: TopicSubscription) -> None:
        key = (owner, subscription.topic)
        if key in self._declared:
            raise ValueError(f"{owner} already declared topic {subscription.topic}")
        self._declared[key] = subscription

    def active_topics(self) -> list[tuple[str, str]]:
        return sorted(self._handles)

    async def on_subject_change(self, subject: Subject | None) -> list[SubscriptionError]:
        """
        Release every handle of the previous subject, then open one per
        declaration for the new one.

        The subject is recorded before anything is awaited, so events still
        in flight on the old handles are dropped by the delivery guard.
        """
        self._subject = subject
        await self.close_all()

        failures: list[SubscriptionError] = []
        if subject is None:
            return failures

        for owner, topic in list(self._declared):
            if self._subject != subject:
                break
            try:
                await self.open(owner, topic)
            except SubscriptionError as exc:
                if self._subject != subject:
                    break
                failures.append(exc)
                on_error = self._declared[(owner, topic)].on_error
                if on_error is not None:
                    await on_error(exc)
        return failures

    async def open(self, owner: str, topic: str) -> SubscriptionHandle:
        """(Re)open the subscription for one declaration under the current subject."""
        key = (owner, topic)
        subscription = self._declared[key]
        subject = self._subject
        if subject is None:
            raise SubscriptionError("no active subject", topic=topic)

        previous = self._handles.pop(key, None)
        if previous is not None:
            await self._release(previous)

        async def deliver(event: ChangeEvent) -> None:
            current = self._handles.get(key)
            if current is None or current.id != handle_id or self._subject != subject:
                log.debug("subscriptions.stale_event_dropped", owner=owner, topic=topic)
                return
            if self._metrics:
                self._metrics.inc("events_received_total", topic=topic)
            await subscription.on_event(event)

        async def reconnected() -> None:
            current = self._handles.get(key)
            if current is None or current.id != handle_id or self._subject != subject:
                return
            log.info("subscriptions.reconnected", owner=owner, topic=topic)
            if subscription.on_reconnect is not None:
                await subscription.on_reconnect()

        filter_expr = subscription.filter_for(subject)
        try:
            handle = await self._source.subscribe(topic, filter_expr, deliver, reconnected)
        except SubscriptionError as exc:
            self._record_failure(owner, topic, exc)
            raise
        except Exception as exc:
            self._record_failure(owner, topic, exc)
            raise SubscriptionError(f"subscribe to {topic} failed: {exc!r}", topic=topic) from exc

        handle_id = handle.id
        if self._subject != subject:
            # Subject changed while we were subscribing
            await self._release(handle)
            raise SubscriptionError("subject changed during subscribe", topic=topic)

        self._handles[key] = handle
        self._update_gauge()
        log.info("subscriptions.opened", owner=owner, topic=topic, filter=filter_expr)
        return handle

    async def close_all(self) -> None:
        handles = list(self._handles.values())
        self._handles.clear()
        for handle in handles:
            await self._release(handle)
        self._update_gauge()

    async def _release(self, handle: SubscriptionHandle) -> None:
        if handle.closed:
            return
        handle.closed = True
        try:
            await self._source.unsubscribe(handle)
        except Exception as exc:
            log.warning("subscriptions.release_failed", topic=handle.topic, error=str(exc))
            return
        log.info("subscriptions.closed", topic=handle.topic)

    def _record_failure(self, owner: str, topic: str, exc: Exception) -> None:
        log.warning("subscriptions.open_failed", owner=owner, topic=topic, error=str(exc))
        if self._metrics:
            self._metrics.inc("subscription_errors_total", topic=topic)

    def _update_gauge(self) -> None:
        if self._metrics:
            self._metrics.set_gauge("subscriptions_active", len(self._handles))
