"""
Shared types: counter kinds, change events and notification records.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator

Subject = str

_INTERNAL_LINK = re.compile(r"^/[a-zA-Z0-9/_-]*$")


class CounterKind(str, Enum):
    UNREAD_MESSAGES = "unread_messages"
    PENDING_REQUESTS = "pending_requests"


class ChangeOperation(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class RecordState(str, Enum):
    """Client-side state of a rendered notification."""

    CONFIRMED = "confirmed"
    OPTIMISTIC_READ = "optimistic_read"


@dataclass
class ChangeEvent:
    """A row-level change notification for one topic."""

    topic: str
    operation: ChangeOperation
    payload: dict[str, Any] = field(default_factory=dict)
    old_payload: dict[str, Any] = field(default_factory=dict)

    @property
    def record_id(self) -> str | None:
        raw = self.payload.get("id", self.old_payload.get("id"))
        return str(raw) if raw is not None else None

    @classmethod
    def from_wire(cls, data: dict[str, Any], topic: str | None = None) -> ChangeEvent:
        """
        Build an event from its wire form.

        Accepts ``{"topic", "operation" | "type", "record" | "payload",
        "old_record"}``. Delete events carry the removed row in ``old_record``,
        which becomes the payload.
        """
        raw_op = data.get("operation") or data.get("type") or data.get("eventType")
        if not raw_op:
            raise ValueError("change event has no operation")
        operation = ChangeOperation(str(raw_op).lower())

        resolved_topic = data.get("topic") or data.get("table") or topic
        if not resolved_topic:
            raise ValueError("change event has no topic")

        record = data.get("record", data.get("payload")) or {}
        old_record = data.get("old_record") or {}
        if operation is ChangeOperation.DELETE and not record:
            record = old_record

        return cls(
            topic=str(resolved_topic),
            operation=operation,
            payload=dict(record) if isinstance(record, dict) else {},
            old_payload=dict(old_record) if isinstance(old_record, dict) else {},
        )


class NotificationRecord(BaseModel):
    """One entry of the notification feed, as stored server-side."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    title: str
    message: str
    link: str | None = None
    is_read: bool = False
    created_at: datetime
    type: str = "info"
    user_id: str | None = None

    @field_validator("id", "user_id", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            return value
        return str(value)

    @field_validator("created_at")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @property
    def safe_link(self) -> str | None:
        """The link, if it is an internal path the UI may navigate to."""
        if self.link and _INTERNAL_LINK.match(self.link):
            return self.link
        return None


def badge_label(count: int) -> str:
    """Bell badge text for an unread count."""
    if count <= 0:
        return ""
    if count > 9:
        return "9+"
    return str(count)
