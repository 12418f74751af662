"""End-to-end tests: identity -> subscriptions -> stores, over in-memory collaborators."""

import asyncio

import pytest

from care_sync.engine import SyncEngine
from care_sync.identity import IdentityProvider
from care_sync.models import ChangeEvent, ChangeOperation, CounterKind

from .fakes import SlowSubscribeSource, notification, wait_until


@pytest.fixture
def identity():
    return IdentityProvider()


@pytest.fixture
async def engine(sync_config, data, source, identity):
    eng = SyncEngine(sync_config, data, source, identity=identity)
    await eng.start()
    yield eng
    await eng.stop()


def _seed(data, subject):
    data.add("messages", id=f"{subject}-m1", receiver_id=subject, is_read=False)
    data.add("messages", id=f"{subject}-m2", receiver_id=subject, is_read=False)
    data.add("contact_requests", id=f"{subject}-r1", target_id=subject, status="pending")
    data.add("notifications", **notification(f"{subject}-n1", day=2, user_id=subject))
    data.add("notifications", **notification(f"{subject}-n2", day=1, user_id=subject))


async def test_sign_in_opens_subscriptions_and_loads_state(engine, identity, data, source):
    _seed(data, "S")

    await identity.sign_in("S")

    assert engine.counter_value(CounterKind.UNREAD_MESSAGES) == 2
    assert engine.counter_value(CounterKind.PENDING_REQUESTS) == 1
    assert [n.id for n in engine.notifications()] == ["S-n1", "S-n2"]
    assert engine.unread_notification_count() == 2
    assert {h.topic for h in source.open_handles()} == {
        "messages",
        "contact_requests",
        "notifications",
    }
    assert all(h.filter_expr.endswith("=eq.S") for h in source.open_handles())


async def test_message_event_reconciles_counter(engine, identity, data, source):
    _seed(data, "S")
    await identity.sign_in("S")

    row = data.add("messages", id="m3", receiver_id="S", is_read=False)
    await source.publish(ChangeEvent("messages", ChangeOperation.INSERT, payload=row))

    assert engine.counter_value("unread_messages") == 3


async def test_notification_insert_event_reaches_feed(engine, identity, data, source):
    _seed(data, "S")
    await identity.sign_in("S")

    await source.publish(
        ChangeEvent("notifications", ChangeOperation.INSERT, payload=notification("n9", day=9))
    )

    assert engine.notifications()[0].id == "n9"
    assert engine.unread_notification_count() == 3


async def test_subject_switch_isolates_state(engine, identity, data, source):
    _seed(data, "A")
    _seed(data, "B")
    data.tables["messages"].append({"id": "B-m3", "receiver_id": "B", "is_read": False})
    await identity.sign_in("A")

    await identity.sign_in("B")
    delivered = await source.publish(
        ChangeEvent("notifications", ChangeOperation.INSERT, payload=notification("a9", day=9, user_id="A"))
    )

    assert delivered == 0
    assert engine.counter_value("unread_messages") == 3
    assert [n.id for n in engine.notifications()] == ["B-n1", "B-n2"]
    assert len(source.open_handles()) == 3


async def test_stale_read_for_previous_subject_is_ignored(engine, identity, data):
    _seed(data, "B")
    data.hold_reads = True
    first = asyncio.create_task(identity.sign_in("A"))
    await wait_until(lambda: len(data.held) == 3)

    data.hold_reads = False
    await identity.sign_in("B")
    for index, (kind, _table, _predicate) in enumerate(data.calls[:3]):
        data.release(index, [] if kind == "page" else 99)
    await first

    assert engine.counter_value("unread_messages") == 2
    assert engine.counter_value("pending_requests") == 1


async def test_sign_out_clears_everything(engine, identity, data, source):
    _seed(data, "S")
    await identity.sign_in("S")

    await identity.sign_out()

    assert engine.counter_value("unread_messages") == 0
    assert engine.notifications() == []
    assert source.open_handles() == []


async def test_reconnect_forces_full_reconciliation(engine, identity, data, source):
    _seed(data, "S")
    await identity.sign_in("S")
    data.add("contact_requests", id="r2", target_id="S", status="pending")
    data.add("notifications", **notification("missed", day=5))

    await source.reconnect()

    assert engine.counter_value("pending_requests") == 2
    assert engine.notifications()[0].id == "missed"


async def test_subscription_failure_degrades_to_polling(sync_config, data, source, identity):
    source.fail_topics.add("notifications")
    engine = SyncEngine(sync_config, data, source, identity=identity)
    await engine.start()
    try:
        await identity.sign_in("S")
        assert engine.feed.polling
        assert not engine.counters.polling
        assert engine.status()["status"] == "degraded"

        data.add("notifications", **notification("polled", day=3))
        await wait_until(lambda: [n.id for n in engine.notifications()] == ["polled"])
    finally:
        await engine.stop()


async def test_mark_all_as_read_end_to_end(engine, identity, data):
    data.add("notifications", **notification("1", day=2))
    data.add("notifications", **notification("2", day=1))
    await identity.sign_in("S")

    await engine.mark_all_as_read()

    assert engine.unread_notification_count() == 0
    assert all(n.is_read for n in engine.notifications())


async def test_snapshot_reports_presentation_state(engine, identity, data):
    _seed(data, "S")
    await identity.sign_in("S")

    snap = engine.snapshot()

    assert snap["subject"] == "S"
    assert snap["counters"] == {"unread_messages": 2, "pending_requests": 1}
    assert snap["unread_notifications"] == 2
    assert snap["badge"] == "2"
    assert snap["notifications"][0]["id"] == "S-n1"


async def test_start_with_existing_subject(sync_config, data, source):
    _seed(data, "S")
    engine = SyncEngine(sync_config, data, source, identity=IdentityProvider("S"))

    await engine.start()
    try:
        assert engine.counter_value("unread_messages") == 2
        assert engine.status()["subscriptions"] == [
            {"owner": "counters", "topic": "contact_requests"},
            {"owner": "counters", "topic": "messages"},
            {"owner": "feed", "topic": "notifications"},
        ]
    finally:
        await engine.stop()


def test_from_config_requires_api_key(sync_config, monkeypatch):
    monkeypatch.delenv(sync_config.backend.api_key_env, raising=False)
    with pytest.raises(ValueError):
        SyncEngine.from_config(sync_config)


def test_from_config_builds_engine(sync_config, monkeypatch):
    monkeypatch.setenv(sync_config.backend.api_key_env, "anon-key")
    engine = SyncEngine.from_config(sync_config, identity=IdentityProvider())
    assert engine.counter_value("unread_messages") == 0


async def test_overlapping_sign_ins_settle_on_latest_subject(sync_config, data):
    _seed(data, "A")
    _seed(data, "B")
    data.add("messages", id="B-m3", receiver_id="B", is_read=False)
    source = SlowSubscribeSource({"A"})
    identity = IdentityProvider()
    engine = SyncEngine(sync_config, data, source, identity=identity)
    await engine.start()
    try:
        first = asyncio.create_task(identity.sign_in("A"))
        await asyncio.sleep(0)
        await identity.sign_in("B")
        await first

        assert identity.current_subject() == "B"
        assert engine.counters.subject == "B"
        assert engine.feed.subject == "B"
        assert engine.counter_value("unread_messages") == 3
        assert [n.id for n in engine.notifications()] == ["B-n1", "B-n2"]
        assert all(h.filter_expr.endswith("=eq.B") for h in source.open_handles())
        assert engine.status()["status"] == "healthy"
        assert not engine.counters.polling and not engine.feed.polling
    finally:
        await engine.stop()


def test_from_config_leaves_retries_to_reconciliation(sync_config, monkeypatch):
    monkeypatch.setenv(sync_config.backend.api_key_env, "anon-key")
    engine = SyncEngine.from_config(sync_config)
    assert engine.data.max_retries == 1
