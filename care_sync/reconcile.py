"""
Shared reconciliation machinery for subject-scoped stores.

- GenerationTracker: tags every authoritative read so only the most recently
  issued one for a key may commit, and an epoch so nothing issued for a
  previous subject commits at all
- read_with_retry: per-attempt timeout plus bounded exponential backoff
- BackgroundTasks: owns fire-and-forget confirmation tasks
- ReconcilingStore: subject binding, change listeners and polling fallback
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Coroutine, TypeVar

import structlog

from .config import ReconcileConfig
from .errors import ReconciliationReadError, SubscriptionError
from .metrics import MetricsCollector
from .models import Subject

log = structlog.get_logger()

T = TypeVar("T")

Listener = Callable[[], None]


@dataclass(frozen=True)
class Generation:
    epoch: int
    key: str
    number: int


class GenerationTracker:
    """Monotonic per-key generation counters scoped by an epoch."""

    def __init__(self) -> None:
        self._epoch = 0
        self._issued: dict[str, int] = {}

    @property
    def epoch(self) -> int:
        return self._epoch

    def issue(self, key: str) -> Generation:
        number = self._issued.get(key, 0) + 1
        self._issued[key] = number
        return Generation(self._epoch, key, number)

    def is_current(self, generation: Generation) -> bool:
        return (
            generation.epoch == self._epoch
            and self._issued.get(generation.key) == generation.number
        )

    def invalidate(self) -> None:
        """Start a new epoch; every outstanding generation becomes stale."""
        self._epoch += 1
        self._issued.clear()


async def read_with_retry(
    read: Callable[[], Awaitable[T]],
    policy: ReconcileConfig,
    wanted: Callable[[], bool] = lambda: True,
    what: str = "read",
) -> T:
    """
    Run an authoritative read with a timeout per attempt.

    Retries ReconciliationReadError and timeouts with exponential backoff up
    to ``policy.max_attempts``, giving up early once ``wanted()`` is false.
    """
    backoff = policy.backoff_base_seconds
    last_exc: ReconciliationReadError | None = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await asyncio.wait_for(read(), timeout=policy.read_timeout_seconds)
        except asyncio.TimeoutError:
            last_exc = ReconciliationReadError(
                f"{what} timed out after {policy.read_timeout_seconds}s"
            )
        except ReconciliationReadError as exc:
            last_exc = exc

        if attempt == policy.max_attempts or not wanted():
            break
        log.warning(
            "reconcile.retry",
            what=what,
            attempt=attempt,
            backoff=backoff,
            error=str(last_exc),
        )
        await asyncio.sleep(backoff)
        backoff = min(backoff * 2, policy.backoff_max_seconds)
        if not wanted():
            break

    assert last_exc is not None
    raise last_exc


class BackgroundTasks:
    """Keeps references to fire-and-forget tasks until they finish."""

    def __init__(self, name: str) -> None:
        self._name = name
        self._tasks: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, T]) -> asyncio.Task[T]:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._done)
        return task

    def _done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("tasks.crashed", owner=self._name, error=repr(exc), exc_info=exc)

    async def cancel_all(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


class ReconcilingStore:
    """
    Base for stores whose state is scoped to one subject.

    Subclasses implement ``refetch`` (full reconciliation) and ``_reset``
    (drop cached state). Every commit must be guarded with ``_is_live`` so a
    completion for a previous subject or an outdated generation is ignored.
    """

    name = "store"

    def __init__(self, policy: ReconcileConfig, metrics: MetricsCollector | None = None):
        self._policy = policy
        self._metrics = metrics
        self._subject: Subject | None = None
        self._generations = GenerationTracker()
        self._tasks = BackgroundTasks(self.name)
        self._listeners: list[Listener] = []
        self._poll_task: asyncio.Task | None = None

    @property
    def subject(self) -> Subject | None:
        return self._subject

    @property
    def polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    async def refetch(self) -> None:
        raise NotImplementedError

    def _reset(self) -> None:
        raise NotImplementedError

    # --- Reactive read model ---

    def on_change(self, listener: Listener) -> Callable[[], None]:
        """Register a callback run after every state change. Returns an unsubscribe."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                log.exception(f"{self.name}.listener_error")

    # --- Subject lifecycle ---

    def bind(self, subject: Subject | None) -> bool:
        """Scope the store to ``subject``. Returns False if it already was."""
        if subject == self._subject:
            return False
        self._subject = subject
        self._generations.invalidate()
        self._stop_polling()
        self._reset()
        log.info(f"{self.name}.bound", subject=subject)
        self._notify()
        return True

    async def initialize(self, subject: Subject) -> None:
        """Bind to ``subject`` and run a full authoritative read."""
        self.bind(subject)
        await self.refetch()

    async def resync(self, subject: Subject) -> bool:
        """
        Full read for ``subject`` without rebinding.

        Skipped, returning False, when the store has meanwhile been bound to
        another subject.
        """
        if subject != self._subject:
            log.debug(f"{self.name}.resync_skipped", subject=subject, bound=self._subject)
            return False
        await self.refetch()
        return True

    async def teardown(self) -> None:
        self._subject = None
        self._generations.invalidate()
        self._stop_polling()
        await self._tasks.cancel_all()
        self._reset()
        self._notify()

    def _is_live(self, generation: Generation) -> bool:
        return self._subject is not None and self._generations.is_current(generation)

    async def _read(
        self,
        read: Callable[[], Awaitable[T]],
        generation: Generation,
        what: str,
    ) -> T:
        try:
            return await read_with_retry(
                read, self._policy, wanted=lambda: self._is_live(generation), what=what
            )
        except ReconciliationReadError as exc:
            if self._is_live(generation):
                log.warning(f"{self.name}.read_failed", what=what, error=str(exc))
                if self._metrics:
                    self._metrics.inc("reconciliation_errors_total", store=self.name)
            raise

    def _discard_stale(self, what: str) -> None:
        log.debug(f"{self.name}.stale_result_discarded", what=what)
        if self._metrics:
            self._metrics.inc("stale_results_discarded_total", store=self.name)

    # --- Polling fallback ---

    async def on_subscription_error(self, exc: SubscriptionError) -> None:
        log.warning(
            f"{self.name}.degraded_to_polling",
            topic=exc.topic,
            interval=self._policy.poll_interval_seconds,
        )
        self.start_polling()

    def start_polling(self) -> None:
        if self.polling or self._subject is None:
            return
        self._poll_task = asyncio.create_task(self._poll_loop(self._generations.epoch))

    def _stop_polling(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None

    async def _poll_loop(self, epoch: int) -> None:
        while self._generations.epoch == epoch:
            await asyncio.sleep(self._policy.poll_interval_seconds)
            if self._generations.epoch != epoch:
                break
            try:
                await self.refetch()
            except Exception:
                log.exception(f"{self.name}.poll_failed")
