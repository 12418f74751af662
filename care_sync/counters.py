"""
Synchronized counter store.

Keeps one exact count per counter kind for the current subject. Change
events never adjust a count locally: a row-level change cannot tell whether
the row entered or left the counted predicate, so every relevant event
triggers a fresh authoritative count.
"""

from __future__ import annotations

import asyncio
from enum import Enum

import structlog

from .config import CounterConfig, ReconcileConfig
from .data_access import DataAccess
from .errors import ReconciliationReadError
from .metrics import MetricsCollector
from .models import ChangeEvent
from .reconcile import ReconcilingStore
from .subscriptions import TopicSubscription

log = structlog.get_logger()


def _kind_name(kind: str | Enum) -> str:
    return kind.value if isinstance(kind, Enum) else kind


class CounterStore(ReconcilingStore):
    """One integer per counter kind, reconciled against the backend."""

    name = "counters"

    def __init__(
        self,
        data: DataAccess,
        counters: list[CounterConfig],
        policy: ReconcileConfig,
        metrics: MetricsCollector | None = None,
    ):
        super().__init__(policy, metrics)
        self._data = data
        self._counters = {c.kind: c for c in counters}
        self._values: dict[str, int] = {}

    def _reset(self) -> None:
        self._values = {}

    def kinds(self) -> list[str]:
        return list(self._counters)

    def kinds_for(self, topic: str) -> list[str]:
        return [kind for kind, c in self._counters.items() if c.table == topic]

    def value(self, kind: str | Enum) -> int:
        return self._values.get(_kind_name(kind), 0)

    def values(self) -> dict[str, int]:
        return {kind: self._values.get(kind, 0) for kind in self._counters}

    def subscriptions(self) -> list[TopicSubscription]:
        """One subscription per counted table."""
        columns: dict[str, str] = {}
        for counter in self._counters.values():
            existing = columns.setdefault(counter.table, counter.subject_column)
            if existing != counter.subject_column:
                raise ValueError(
                    f"counters on {counter.table} disagree on the subject column"
                )
        return [
            TopicSubscription(
                topic=table,
                subject_column=column,
                on_event=self.on_change_event,
                on_reconnect=self.refetch,
                on_error=self.on_subscription_error,
            )
            for table, column in columns.items()
        ]

    async def refetch(self) -> None:
        if self._subject is None:
            return
        await asyncio.gather(*(self._reconcile(kind) for kind in self._counters))

    async def on_change_event(self, event: ChangeEvent) -> None:
        kinds = self.kinds_for(event.topic)
        if not kinds:
            return
        log.debug(
            "counters.change_event",
            topic=event.topic,
            operation=event.operation.value,
            kinds=kinds,
        )
        await asyncio.gather(*(self._reconcile(kind) for kind in kinds))

    async def _reconcile(self, kind: str) -> None:
        subject = self._subject
        if subject is None:
            return
        counter = self._counters[kind]
        generation = self._generations.issue(kind)
        predicate = {counter.subject_column: subject, **counter.predicate}

        try:
            count = await self._read(
                lambda: self._data.count_where(counter.table, predicate),
                generation,
                what=f"count:{kind}",
            )
        except ReconciliationReadError:
            return

        if not self._is_live(generation):
            self._discard_stale(f"count:{kind}")
            return

        value = max(0, int(count))
        changed = self._values.get(kind) != value
        self._values[kind] = value
        if self._metrics:
            self._metrics.inc("reconciliations_total", store=self.name, kind=kind)
            self._metrics.set_gauge("counter_value", value, kind=kind)
        log.debug("counters.reconciled", kind=kind, value=value)
        if changed:
            self._notify()
