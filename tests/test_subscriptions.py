"""Tests for subscription lifecycle management."""

import asyncio

import pytest

from care_sync.errors import SubscriptionError
from care_sync.event_source import InMemoryChangeEventSource
from care_sync.models import ChangeEvent, ChangeOperation
from care_sync.subscriptions import SubscriptionManager, TopicSubscription

from .fakes import SlowSubscribeSource


class Recorder:
    def __init__(self):
        self.events = []
        self.reconnects = 0
        self.errors = []

    async def on_event(self, event):
        self.events.append(event)

    async def on_reconnect(self):
        self.reconnects += 1

    async def on_error(self, exc):
        self.errors.append(exc)

    def subscription(self, topic="messages", column="receiver_id"):
        return TopicSubscription(
            topic=topic,
            subject_column=column,
            on_event=self.on_event,
            on_reconnect=self.on_reconnect,
            on_error=self.on_error,
        )


class CountingSource(InMemoryChangeEventSource):
    def __init__(self):
        super().__init__()
        self.unsubscribed: list[str] = []

    async def unsubscribe(self, handle):
        self.unsubscribed.append(handle.id)
        await super().unsubscribe(handle)


def _event(receiver):
    return ChangeEvent(
        topic="messages", operation=ChangeOperation.INSERT, payload={"receiver_id": receiver}
    )


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def manager(source, recorder):
    m = SubscriptionManager(source)
    m.declare("counters", recorder.subscription())
    return m


async def test_opens_one_filtered_handle_per_declaration(manager, source):
    await manager.on_subject_change("A")

    handles = source.open_handles("messages")
    assert len(handles) == 1
    assert handles[0].filter_expr == "receiver_id=eq.A"
    assert manager.active_topics() == [("counters", "messages")]


async def test_reopen_releases_previous_handle(recorder):
    source = CountingSource()
    manager = SubscriptionManager(source)
    manager.declare("counters", recorder.subscription())
    await manager.on_subject_change("A")
    first = source.open_handles()[0]

    await manager.open("counters", "messages")

    assert source.unsubscribed == [first.id]
    assert first.closed
    assert len(source.open_handles()) == 1


async def test_subject_switch_isolates_events(manager, source, recorder):
    await manager.on_subject_change("A")
    await source.publish(_event("A"))
    await manager.on_subject_change("B")

    delivered = await source.publish(_event("A"))
    await source.publish(_event("B"))

    assert delivered == 0
    assert [e.payload["receiver_id"] for e in recorder.events] == ["A", "B"]


async def test_events_on_released_handle_are_dropped(recorder):
    source = InMemoryChangeEventSource()
    manager = SubscriptionManager(source)
    manager.declare("counters", recorder.subscription())
    captured = {}

    original = source.subscribe

    async def capture(topic, filter_expr, on_event, on_reconnect=None):
        captured["deliver"] = on_event
        return await original(topic, filter_expr, on_event, on_reconnect)

    source.subscribe = capture
    await manager.on_subject_change("A")
    stale_deliver = captured["deliver"]
    await manager.on_subject_change("B")

    await stale_deliver(_event("A"))

    assert recorder.events == []


async def test_sign_out_closes_everything(manager, source):
    await manager.on_subject_change("A")

    await manager.on_subject_change(None)

    assert source.open_handles() == []
    assert manager.active_topics() == []


async def test_release_is_idempotent(recorder):
    source = CountingSource()
    manager = SubscriptionManager(source)
    manager.declare("counters", recorder.subscription())
    await manager.on_subject_change("A")

    await manager.close_all()
    await manager.close_all()
    await manager.on_subject_change(None)

    assert len(source.unsubscribed) == 1


async def test_open_failure_reports_error_and_keeps_no_handle(source, recorder, metrics):
    manager = SubscriptionManager(source, metrics)
    manager.declare("counters", recorder.subscription())
    source.fail_topics.add("messages")

    failures = await manager.on_subject_change("A")

    assert len(failures) == 1
    assert isinstance(failures[0], SubscriptionError)
    assert recorder.errors == failures
    assert manager.active_topics() == []
    assert metrics.get("subscription_errors_total", topic="messages") == 1


async def test_one_failing_topic_does_not_block_others(source):
    ok, bad = Recorder(), Recorder()
    manager = SubscriptionManager(source)
    manager.declare("feed", bad.subscription(topic="notifications", column="user_id"))
    manager.declare("counters", ok.subscription())
    source.fail_topics.add("notifications")

    await manager.on_subject_change("A")

    assert manager.active_topics() == [("counters", "messages")]
    assert len(bad.errors) == 1
    assert ok.errors == []


async def test_superseded_switch_stops_opening_and_reports_nothing():
    source = SlowSubscribeSource({"A"})
    recorders = [Recorder() for _ in range(3)]
    manager = SubscriptionManager(source)
    manager.declare("counters", recorders[0].subscription())
    manager.declare("counters", recorders[1].subscription(topic="contact_requests", column="target_id"))
    manager.declare("feed", recorders[2].subscription(topic="notifications", column="user_id"))

    switch_to_a = asyncio.create_task(manager.on_subject_change("A"))
    await asyncio.sleep(0)
    failures_b = await manager.on_subject_change("B")
    failures_a = await switch_to_a

    assert failures_a == []
    assert failures_b == []
    assert all(r.errors == [] for r in recorders)
    assert len(manager.active_topics()) == 3
    assert len(source.open_handles()) == 3
    assert all(h.filter_expr.endswith("=eq.B") for h in source.open_handles())


async def test_transport_exception_is_wrapped(recorder):
    class BrokenSource(InMemoryChangeEventSource):
        async def subscribe(self, topic, filter_expr, on_event, on_reconnect=None):
            raise OSError("connection refused")

    manager = SubscriptionManager(BrokenSource())
    manager.declare("counters", recorder.subscription())

    failures = await manager.on_subject_change("A")

    assert failures[0].topic == "messages"
    assert isinstance(failures[0].__cause__, OSError)


async def test_reconnect_is_forwarded(manager, source, recorder):
    await manager.on_subject_change("A")

    await source.reconnect()

    assert recorder.reconnects == 1


async def test_open_without_subject_fails(manager):
    with pytest.raises(SubscriptionError):
        await manager.open("counters", "messages")


def test_duplicate_declaration_rejected(manager, recorder):
    with pytest.raises(ValueError):
        manager.declare("counters", recorder.subscription())

