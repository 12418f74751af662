"""
Notification feed store.

Holds the newest page of notifications for the current subject, sorted by
``created_at`` descending (ties keep arrival order). Mark-read, mark-all-read
and delete are applied locally first and confirmed by the backend afterwards;
a failed confirmation reverts the local change.

``unread_count`` is a projection over the loaded page only. It matches the
backend's unread total only while every unread row fits in ``page_size``.
"""

from __future__ import annotations

import asyncio
import bisect
import itertools
from dataclasses import dataclass
from typing import Any, Awaitable

import structlog
from pydantic import ValidationError

from .config import FeedConfig, ReconcileConfig
from .data_access import DataAccess, Mutation
from .errors import MutationError, ReconciliationReadError
from .metrics import MetricsCollector
from .models import ChangeEvent, ChangeOperation, NotificationRecord, RecordState, Subject
from .reconcile import ReconcilingStore
from .subscriptions import TopicSubscription

log = structlog.get_logger()


@dataclass
class FeedEntry:
    record: NotificationRecord  # last server-confirmed version
    arrival: int
    state: RecordState = RecordState.CONFIRMED

    @property
    def view(self) -> NotificationRecord:
        if self.state is RecordState.OPTIMISTIC_READ and not self.record.is_read:
            return self.record.model_copy(update={"is_read": True})
        return self.record

    @property
    def sort_key(self) -> tuple[float, int]:
        return (-self.record.created_at.timestamp(), self.arrival)


@dataclass
class PendingRemoval:
    """An optimistically deleted entry and where it was, until the backend confirms."""

    entry: FeedEntry
    index: int


def _settled() -> asyncio.Future:
    future = asyncio.get_running_loop().create_future()
    future.set_result(None)
    return future


class NotificationFeedStore(ReconcilingStore):
    """Ordered notification cache with optimistic mutations."""

    name = "feed"

    def __init__(
        self,
        data: DataAccess,
        feed: FeedConfig,
        policy: ReconcileConfig,
        metrics: MetricsCollector | None = None,
    ):
        super().__init__(policy, metrics)
        self._data = data
        self._feed = feed
        self._entries: list[FeedEntry] = []
        self._removed: dict[str, PendingRemoval] = {}
        self._arrivals = itertools.count()

    def _reset(self) -> None:
        self._entries = []
        self._removed = {}

    def subscriptions(self) -> list[TopicSubscription]:
        return [
            TopicSubscription(
                topic=self._feed.table,
                subject_column=self._feed.subject_column,
                on_event=self.on_change_event,
                on_reconnect=self.refetch,
                on_error=self.on_subscription_error,
            )
        ]

    # --- Read model ---

    def notifications(self) -> list[NotificationRecord]:
        return [entry.view for entry in self._entries]

    def unread_count(self) -> int:
        return sum(1 for entry in self._entries if not entry.view.is_read)

    def get(self, record_id: str) -> NotificationRecord | None:
        index = self._index_of(record_id)
        return self._entries[index].view if index is not None else None

    def state_of(self, record_id: str) -> RecordState | None:
        index = self._index_of(record_id)
        return self._entries[index].state if index is not None else None

    def pending_removals(self) -> list[str]:
        return list(self._removed)

    def _index_of(self, record_id: str) -> int | None:
        for i, entry in enumerate(self._entries):
            if entry.record.id == record_id:
                return i
        return None

    def _find(self, record_id: str) -> FeedEntry | None:
        index = self._index_of(record_id)
        if index is not None:
            return self._entries[index]
        pending = self._removed.get(record_id)
        return pending.entry if pending else None

    def _insert_sorted(self, entry: FeedEntry) -> None:
        keys = [e.sort_key for e in self._entries]
        self._entries.insert(bisect.bisect_right(keys, entry.sort_key), entry)

    def _fits_at(self, index: int, entry: FeedEntry) -> bool:
        key = entry.sort_key
        if index > 0 and self._entries[index - 1].sort_key > key:
            return False
        if index < len(self._entries) and key > self._entries[index].sort_key:
            return False
        return True

    def _trim(self) -> None:
        if len(self._entries) > self._feed.page_size:
            del self._entries[self._feed.page_size:]

    def _parse(self, row: dict[str, Any]) -> NotificationRecord | None:
        try:
            return NotificationRecord.model_validate(row)
        except ValidationError as exc:
            log.warning("feed.invalid_row", row_id=row.get("id"), errors=exc.error_count())
            return None

    # --- Reconciliation ---

    async def refetch(self) -> None:
        """Replace the cache with the newest page from the backend."""
        subject = self._subject
        if subject is None:
            return
        generation = self._generations.issue("page")
        issued_at = next(self._arrivals)
        try:
            rows = await self._read(
                lambda: self._data.read_page(
                    self._feed.table,
                    {self._feed.subject_column: subject},
                    order="created_at.desc",
                    limit=self._feed.page_size,
                ),
                generation,
                what="page",
            )
        except ReconciliationReadError:
            return

        if not self._is_live(generation):
            self._discard_stale("page")
            return

        pending_read = {
            e.record.id for e in self._entries if e.state is RecordState.OPTIMISTIC_READ
        }
        seen: set[str] = set()
        entries: list[FeedEntry] = []
        for row in rows:
            record = self._parse(row)
            if record is None or record.id in seen:
                continue
            seen.add(record.id)
            if record.id in self._removed:
                self._removed[record.id].entry.record = record
                continue
            state = RecordState.CONFIRMED
            if record.id in pending_read and not record.is_read:
                state = RecordState.OPTIMISTIC_READ
            entries.append(FeedEntry(record, next(self._arrivals), state))

        # Inserts merged while the read was in flight may postdate the page
        for entry in self._entries:
            if entry.arrival > issued_at and entry.record.id not in seen:
                entries.append(entry)

        entries.sort(key=lambda e: e.sort_key)
        self._entries = entries[: self._feed.page_size]
        if self._metrics:
            self._metrics.inc("reconciliations_total", store=self.name, kind="page")
        log.debug("feed.reconciled", count=len(self._entries), unread=self.unread_count())
        self._notify()

    async def on_change_event(self, event: ChangeEvent) -> None:
        if event.topic != self._feed.table or self._subject is None:
            return
        if event.operation is ChangeOperation.INSERT:
            await self._on_insert(event)
        elif event.operation is ChangeOperation.UPDATE:
            await self._on_update(event)
        elif event.operation is ChangeOperation.DELETE:
            await self._on_delete(event)

    async def _on_insert(self, event: ChangeEvent) -> None:
        owner = event.payload.get(self._feed.subject_column)
        try:
            record = NotificationRecord.model_validate(event.payload)
        except ValidationError:
            record = None
        if record is None or owner is None:
            log.info("feed.incomplete_insert", record_id=event.record_id)
            await self.refetch()
            return
        if str(owner) != self._subject:
            log.debug("feed.foreign_insert_ignored", record_id=record.id)
            return
        if self._index_of(record.id) is not None or record.id in self._removed:
            log.debug("feed.duplicate_insert", record_id=record.id)
            return

        self._insert_sorted(FeedEntry(record, next(self._arrivals)))
        self._trim()
        log.debug("feed.merged", record_id=record.id)
        self._notify()

    async def _on_update(self, event: ChangeEvent) -> None:
        record_id = event.record_id
        if record_id is None:
            await self.refetch()
            return
        if self._find(record_id) is None:
            return
        await self._reconcile_record(record_id)

    async def _on_delete(self, event: ChangeEvent) -> None:
        record_id = event.record_id
        if record_id is None:
            await self.refetch()
            return
        self._drop(record_id)

    async def _reconcile_record(self, record_id: str) -> None:
        """Re-read one record instead of trusting a partial update payload."""
        subject = self._subject
        if subject is None:
            return
        generation = self._generations.issue(f"record:{record_id}")
        try:
            row = await self._read(
                lambda: self._data.read_one(
                    self._feed.table, {"id": record_id, self._feed.subject_column: subject}
                ),
                generation,
                what=f"record:{record_id}",
            )
        except ReconciliationReadError:
            return

        if not self._is_live(generation):
            self._discard_stale(f"record:{record_id}")
            return
        if row is None:
            self._drop(record_id)
            return
        record = self._parse(row)
        if record is None:
            return

        pending = self._removed.get(record_id)
        if pending is not None:
            pending.entry.record = record
            return
        index = self._index_of(record_id)
        if index is None:
            return
        entry = self._entries.pop(index)
        entry.record = record
        if entry.state is RecordState.OPTIMISTIC_READ and record.is_read:
            entry.state = RecordState.CONFIRMED
        self._insert_sorted(entry)
        self._notify()

    def _drop(self, record_id: str) -> None:
        self._removed.pop(record_id, None)
        index = self._index_of(record_id)
        if index is None:
            return
        del self._entries[index]
        log.debug("feed.removed", record_id=record_id)
        self._notify()

    # --- Optimistic mutations ---
    #
    # Each applies its local change before returning and hands back an
    # awaitable that settles once the backend confirmed or the change was
    # reverted. Must be called from the running event loop.

    def mark_as_read(self, record_id: str) -> Awaitable[None]:
        subject = self._subject
        index = self._index_of(record_id)
        if subject is None or index is None:
            return _settled()
        entry = self._entries[index]
        if entry.view.is_read:
            return _settled()

        entry.state = RecordState.OPTIMISTIC_READ
        self._notify()
        return self._tasks.spawn(
            self._confirm_read(record_id, subject, self._generations.epoch)
        )

    async def _confirm_read(self, record_id: str, subject: Subject, epoch: int) -> None:
        mutation = Mutation.update(
            {"id": record_id, self._feed.subject_column: subject}, {"is_read": True}
        )
        try:
            await self._data.mutate(self._feed.table, mutation)
        except MutationError as exc:
            if self._generations.epoch != epoch:
                return
            self._mutation_failed("mark_as_read", exc, record_id=record_id)
            self._revert_read(record_id)
            self._notify()
            return

        if self._generations.epoch != epoch:
            return
        self._confirm_read_locally(record_id)
        self._notify()

    def mark_all_as_read(self) -> Awaitable[None]:
        subject = self._subject
        if subject is None:
            return _settled()
        flipped = [e.record.id for e in self._entries if not e.view.is_read]
        if not flipped:
            return _settled()

        for entry in self._entries:
            if entry.record.id in flipped:
                entry.state = RecordState.OPTIMISTIC_READ
        self._notify()
        return self._tasks.spawn(
            self._confirm_read_all(flipped, subject, self._generations.epoch)
        )

    async def _confirm_read_all(self, flipped: list[str], subject: Subject, epoch: int) -> None:
        mutation = Mutation.update(
            {self._feed.subject_column: subject, "is_read": False}, {"is_read": True}
        )
        try:
            await self._data.mutate(self._feed.table, mutation)
        except MutationError as exc:
            if self._generations.epoch != epoch:
                return
            self._mutation_failed("mark_all_as_read", exc, count=len(flipped))
            for record_id in flipped:
                self._revert_read(record_id)
        else:
            if self._generations.epoch != epoch:
                return
            for record_id in flipped:
                self._confirm_read_locally(record_id)
        self._notify()

        # Some rows may have been updated and others not; only the backend knows.
        await self.refetch()

    def delete_notification(self, record_id: str) -> Awaitable[None]:
        subject = self._subject
        index = self._index_of(record_id)
        if subject is None or index is None:
            return _settled()

        entry = self._entries.pop(index)
        self._removed[record_id] = PendingRemoval(entry, index)
        self._notify()
        return self._tasks.spawn(
            self._confirm_delete(record_id, subject, self._generations.epoch)
        )

    async def _confirm_delete(self, record_id: str, subject: Subject, epoch: int) -> None:
        mutation = Mutation.delete({"id": record_id, self._feed.subject_column: subject})
        try:
            await self._data.mutate(self._feed.table, mutation)
        except MutationError as exc:
            if self._generations.epoch != epoch:
                return
            self._mutation_failed("delete_notification", exc, record_id=record_id)
            pending = self._removed.pop(record_id, None)
            # A delete event may already have confirmed the row is gone.
            if pending is None or self._index_of(record_id) is not None:
                return
            self._restore(pending)
            self._notify()
            return

        if self._generations.epoch != epoch:
            return
        self._removed.pop(record_id, None)
        log.debug("feed.delete_confirmed", record_id=record_id)

    def _restore(self, pending: PendingRemoval) -> None:
        index = min(pending.index, len(self._entries))
        if self._fits_at(index, pending.entry):
            self._entries.insert(index, pending.entry)
        else:
            self._insert_sorted(pending.entry)
        self._trim()

    def _revert_read(self, record_id: str) -> None:
        entry = self._find(record_id)
        if entry is not None and entry.state is RecordState.OPTIMISTIC_READ:
            entry.state = RecordState.CONFIRMED

    def _confirm_read_locally(self, record_id: str) -> None:
        entry = self._find(record_id)
        if entry is None:
            return
        if not entry.record.is_read:
            entry.record = entry.record.model_copy(update={"is_read": True})
        entry.state = RecordState.CONFIRMED

    def _mutation_failed(self, action: str, exc: MutationError, **context: Any) -> None:
        log.warning(f"feed.{action}_reverted", error=str(exc), status=exc.status, **context)
        if self._metrics:
            self._metrics.inc("mutation_reverts_total", action=action)
