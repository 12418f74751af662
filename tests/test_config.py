"""Tests for configuration loading."""

import pytest
import yaml
from pydantic import ValidationError

from care_sync.config import ReconcileConfig, SyncConfig, load_config


def test_load_config_from_yaml(tmp_path):
    config_data = {
        "backend": {"url": "https://db.example.com", "api_key_env": "TEST_KEY"},
        "counters": [
            {
                "kind": "open_tickets",
                "table": "tickets",
                "subject_column": "assignee_id",
                "predicate": {"status": "open"},
            }
        ],
        "feed": {"page_size": 20},
    }
    path = tmp_path / "care-sync.yaml"
    path.write_text(yaml.dump(config_data))

    cfg = load_config(path)
    assert cfg.backend.url == "https://db.example.com"
    assert len(cfg.counters) == 1
    assert cfg.counters[0].kind == "open_tickets"
    assert cfg.counters[0].predicate == {"status": "open"}
    assert cfg.feed.page_size == 20
    assert cfg.feed.table == "notifications"


def test_load_config_defaults():
    cfg = SyncConfig()
    assert cfg.backend.url == "http://localhost:54321"
    assert cfg.reconcile.read_timeout_seconds == 10.0
    assert cfg.reconcile.max_attempts == 3
    assert cfg.reconcile.poll_interval_seconds == 30.0
    assert cfg.realtime.reconnect_max_seconds == 60.0
    assert [c.kind for c in cfg.counters] == ["unread_messages", "pending_requests"]
    assert cfg.health.port == 9091


def test_empty_file_gives_defaults(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")
    assert load_config(path).feed.page_size == 50


def test_load_config_file_not_found():
    with pytest.raises(FileNotFoundError):
        load_config("/nonexistent/path.yaml")


def test_api_key_read_from_environment(monkeypatch):
    cfg = SyncConfig()
    monkeypatch.setenv(cfg.backend.api_key_env, "secret")
    assert cfg.backend.api_key == "secret"
    monkeypatch.delenv(cfg.backend.api_key_env)
    assert cfg.backend.api_key is None


def test_duplicate_counter_kinds_rejected():
    counter = {"kind": "x", "table": "t", "subject_column": "owner"}
    with pytest.raises(ValidationError):
        SyncConfig(counters=[counter, counter])


def test_invalid_policy_rejected():
    with pytest.raises(ValidationError):
        ReconcileConfig(max_attempts=0)
    with pytest.raises(ValidationError):
        SyncConfig(feed={"page_size": 0})
