"""
Shared fixtures for sync core tests.
"""

import pytest

from care_sync.config import FeedConfig, ReconcileConfig, SyncConfig, default_counters
from care_sync.counters import CounterStore
from care_sync.event_source import InMemoryChangeEventSource
from care_sync.feed import NotificationFeedStore
from care_sync.metrics import MetricsCollector

from .fakes import FakeDataAccess


@pytest.fixture
def policy():
    return ReconcileConfig(
        read_timeout_seconds=1.0,
        max_attempts=1,
        backoff_base_seconds=0.0,
        backoff_max_seconds=0.0,
        poll_interval_seconds=0.01,
    )


@pytest.fixture
def data():
    return FakeDataAccess()


@pytest.fixture
def source():
    return InMemoryChangeEventSource()


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
def counters(data, policy, metrics):
    return CounterStore(data, default_counters(), policy, metrics)


@pytest.fixture
def feed(data, policy, metrics):
    return NotificationFeedStore(data, FeedConfig(page_size=10), policy, metrics)


@pytest.fixture
def sync_config(policy):
    return SyncConfig(
        reconcile=policy,
        feed=FeedConfig(page_size=10),
        health={"enabled": False},
    )
