"""
Configuration loading and validation.

Loads sync configuration from a YAML file. Secrets (the backend API key) are
resolved from the environment variable named in the file and never stored in
it.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, field_validator

from .models import CounterKind


class BackendConfig(BaseModel):
    url: str = "http://localhost:54321"
    api_key_env: str = "CARE_SYNC_API_KEY"
    rest_path: str = "/rest/v1"
    realtime_path: str = "/realtime/v1/stream"
    verify_tls: bool = True
    request_timeout_seconds: float = 30.0

    @property
    def api_key(self) -> str | None:
        return os.environ.get(self.api_key_env)


class RealtimeConfig(BaseModel):
    connect_timeout_seconds: float = 10.0
    heartbeat_timeout_seconds: float = 90.0
    reconnect_base_seconds: float = 1.0
    reconnect_max_seconds: float = 60.0


class ReconcileConfig(BaseModel):
    read_timeout_seconds: float = 10.0
    max_attempts: int = 3
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 8.0
    poll_interval_seconds: float = 30.0

    @field_validator("max_attempts")
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        if value < 1:
            raise ValueError("max_attempts must be >= 1")
        return value


class CounterConfig(BaseModel):
    """One counter: exact count of ``table`` rows where ``subject_column`` is the subject."""

    kind: str
    table: str
    subject_column: str
    predicate: dict[str, Any] = Field(default_factory=dict)


def default_counters() -> list[CounterConfig]:
    return [
        CounterConfig(
            kind=CounterKind.UNREAD_MESSAGES.value,
            table="messages",
            subject_column="receiver_id",
            predicate={"is_read": False},
        ),
        CounterConfig(
            kind=CounterKind.PENDING_REQUESTS.value,
            table="contact_requests",
            subject_column="target_id",
            predicate={"status": "pending"},
        ),
    ]


class FeedConfig(BaseModel):
    table: str = "notifications"
    subject_column: str = "user_id"
    page_size: int = 50

    @field_validator("page_size")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("page_size must be >= 1")
        return value


class LoggingConfig(BaseModel):
    level: str = "info"
    format: Literal["json", "text"] = "json"


class HealthConfig(BaseModel):
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 9091


class SyncConfig(BaseModel):
    backend: BackendConfig = Field(default_factory=BackendConfig)
    realtime: RealtimeConfig = Field(default_factory=RealtimeConfig)
    reconcile: ReconcileConfig = Field(default_factory=ReconcileConfig)
    counters: list[CounterConfig] = Field(default_factory=default_counters)
    feed: FeedConfig = Field(default_factory=FeedConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)

    @field_validator("counters")
    @classmethod
    def _unique_kinds(cls, value: list[CounterConfig]) -> list[CounterConfig]:
        kinds = [c.kind for c in value]
        if len(kinds) != len(set(kinds)):
            raise ValueError("counter kinds must be unique")
        return value


def load_config(path: str | Path) -> SyncConfig:
    """Load and validate sync configuration from a YAML file."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    return SyncConfig.model_validate(raw)
