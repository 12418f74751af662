"""
Sync engine orchestrator.

Wires the identity provider, subscription manager and both stores together
and exposes the read model and mutations the UI consumes. Handles lifecycle:
startup, subject switches, shutdown and signal handling.
"""

from __future__ import annotations

import asyncio
import signal
from enum import Enum
from typing import Any, Awaitable

import structlog

from .config import SyncConfig
from .counters import CounterStore
from .data_access import DataAccess, RestDataAccess
from .event_source import ChangeEventSource
from .feed import NotificationFeedStore
from .health import HealthServer
from .identity import IdentityProvider
from .metrics import MetricsCollector
from .models import NotificationRecord, Subject, badge_label
from .sse_listener import SSEChangeEventSource
from .subscriptions import SubscriptionManager

log = structlog.get_logger()

SHUTDOWN_TIMEOUT = 15.0
STATUS_INTERVAL = 30.0


class SyncEngine:
    """
    Keeps counters and the notification feed in sync for the current subject.
    """

    def __init__(
        self,
        config: SyncConfig,
        data: DataAccess,
        source: ChangeEventSource,
        identity: IdentityProvider | None = None,
        metrics: MetricsCollector | None = None,
    ):
        self._config = config
        self._data = data
        self._source = source
        self._identity = identity or IdentityProvider()
        self._metrics = metrics or MetricsCollector()

        self._subscriptions = SubscriptionManager(source, self._metrics)
        self._counters = CounterStore(data, config.counters, config.reconcile, self._metrics)
        self._feed = NotificationFeedStore(data, config.feed, config.reconcile, self._metrics)
        for subscription in self._counters.subscriptions():
            self._subscriptions.declare(self._counters.name, subscription)
        for subscription in self._feed.subscriptions():
            self._subscriptions.declare(self._feed.name, subscription)

        self._identity.on_subject_change(self._on_subject_change)

        self._health = HealthServer(
            status=self.status,
            state=self.snapshot,
            host=config.health.host,
            port=config.health.port,
            metrics=self._metrics,
        )
        self._running = False
        self._shutdown_event = asyncio.Event()

    @classmethod
    def from_config(
        cls,
        config: SyncConfig,
        identity: IdentityProvider | None = None,
    ) -> SyncEngine:
        """Build an engine backed by the REST API and the SSE realtime stream."""
        api_key = config.backend.api_key
        if not api_key:
            raise ValueError(f"missing API key: set ${config.backend.api_key_env}")
        metrics = MetricsCollector()
        data = RestDataAccess(
            url=config.backend.url,
            api_key=api_key,
            rest_path=config.backend.rest_path,
            verify_tls=config.backend.verify_tls,
            request_timeout=config.backend.request_timeout_seconds,
            metrics=metrics,
            # Reads are retried by read_with_retry; a failed mutation reverts
            max_retries=1,
        )
        source = SSEChangeEventSource(
            url=config.backend.url,
            api_key=api_key,
            realtime_path=config.backend.realtime_path,
            connect_timeout=config.realtime.connect_timeout_seconds,
            heartbeat_timeout=config.realtime.heartbeat_timeout_seconds,
            reconnect_base=config.realtime.reconnect_base_seconds,
            reconnect_max=config.realtime.reconnect_max_seconds,
            verify_tls=config.backend.verify_tls,
        )
        return cls(config, data, source, identity=identity, metrics=metrics)

    @property
    def identity(self) -> IdentityProvider:
        return self._identity

    @property
    def counters(self) -> CounterStore:
        return self._counters

    @property
    def feed(self) -> NotificationFeedStore:
        return self._feed

    @property
    def subscriptions(self) -> SubscriptionManager:
        return self._subscriptions

    @property
    def data(self) -> DataAccess:
        return self._data

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics

    # --- Lifecycle ---

    async def start(self) -> None:
        """Open the data layer and health server, then sync the current subject."""
        log.info("engine.starting", counters=self._counters.kinds())

        opener = getattr(self._data, "open", None)
        if opener is not None:
            await opener()

        if self._config.health.enabled:
            try:
                await self._health.start()
                log.info(
                    "engine.health_started",
                    host=self._config.health.host,
                    port=self._config.health.port,
                )
            except Exception as exc:
                log.warning("engine.health_start_failed", error=str(exc))

        self._running = True
        subject = self._identity.current_subject()
        if subject is not None:
            await self._on_subject_change(subject)
        log.info("engine.started", subject=subject)

    async def stop(self) -> None:
        """Graceful shutdown: release subscriptions, cancel in-flight work, close connections."""
        if not self._running:
            return
        self._running = False
        log.info("engine.stopping")

        await self._subscriptions.close_all()
        await self._counters.teardown()
        await self._feed.teardown()

        await self._health.stop()
        for resource in (self._source, self._data):
            closer = getattr(resource, "close", None)
            if closer is not None:
                await closer()

        log.info("engine.stopped")

    async def run_forever(self) -> None:
        """Run until shutdown signal."""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._shutdown_event.set)

        await self.start()

        try:
            while not self._shutdown_event.is_set():
                self._update_gauges()
                try:
                    await asyncio.wait_for(
                        self._shutdown_event.wait(), timeout=STATUS_INTERVAL
                    )
                except asyncio.TimeoutError:
                    pass
        finally:
            await asyncio.wait_for(self.stop(), timeout=SHUTDOWN_TIMEOUT)

    async def _on_subject_change(self, subject: Subject | None) -> None:
        # Stores drop the old subject's state before any new handle can deliver.
        self._counters.bind(subject)
        self._feed.bind(subject)

        failures = await self._subscriptions.on_subject_change(subject)
        if self._identity.current_subject() != subject:
            # A later sign-in or sign-out took over while we were subscribing
            log.info("engine.subject_change_superseded", subject=subject)
            return
        if failures:
            log.warning(
                "engine.subscriptions_degraded",
                subject=subject,
                topics=[f.topic for f in failures],
            )
        if subject is None:
            self._update_gauges()
            return

        await asyncio.gather(
            self._counters.resync(subject),
            self._feed.resync(subject),
        )
        self._update_gauges()

    def _update_gauges(self) -> None:
        self._metrics.set_gauge("polling_stores", sum(
            1 for store in (self._counters, self._feed) if store.polling
        ))
        self._metrics.set_gauge("notifications_unread", self._feed.unread_count())

    # --- Presentation surface ---

    def counter_value(self, kind: str | Enum) -> int:
        return self._counters.value(kind)

    def notifications(self) -> list[NotificationRecord]:
        return self._feed.notifications()

    def unread_notification_count(self) -> int:
        return self._feed.unread_count()

    def mark_as_read(self, record_id: str) -> Awaitable[None]:
        return self._feed.mark_as_read(record_id)

    def mark_all_as_read(self) -> Awaitable[None]:
        return self._feed.mark_all_as_read()

    def delete_notification(self, record_id: str) -> Awaitable[None]:
        return self._feed.delete_notification(record_id)

    async def refetch(self) -> None:
        await asyncio.gather(self._counters.refetch(), self._feed.refetch())

    def status(self) -> dict[str, Any]:
        polling = [s.name for s in (self._counters, self._feed) if s.polling]
        subject = self._identity.current_subject()
        status = "healthy" if not polling else "degraded"
        body: dict[str, Any] = {
            "status": status,
            "subject": subject,
            "subscriptions": [
                {"owner": owner, "topic": topic}
                for owner, topic in self._subscriptions.active_topics()
            ],
            "polling": polling,
        }
        if isinstance(self._source, SSEChangeEventSource):
            body["streams"] = self._source.status()
        return body

    def snapshot(self) -> dict[str, Any]:
        unread = self._feed.unread_count()
        return {
            "subject": self._identity.current_subject(),
            "counters": self._counters.values(),
            "notifications": [
                record.model_dump(mode="json") for record in self._feed.notifications()
            ],
            "unread_notifications": unread,
            "badge": badge_label(unread),
        }
