"""
Error types for the sync core.

- SyncError: base exception
- SubscriptionError: a live change subscription could not be opened or kept
- ReconciliationReadError: an authoritative count/page read failed
- MutationError: a backend mutation backing an optimistic change failed

None of these are fatal: every failure degrades to "stale cache, retry later".
"""

from __future__ import annotations

from typing import Any


class SyncError(Exception):
    """Base exception for all sync core errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class SubscriptionError(SyncError):
    """Opening or maintaining a change-event subscription failed."""

    def __init__(self, message: str, topic: str | None = None) -> None:
        super().__init__(message, details={"topic": topic})
        self.topic = topic


class ReconciliationReadError(SyncError):
    """An authoritative read (count, page or single record) failed."""

    def __init__(
        self,
        message: str,
        table: str | None = None,
        status: int | None = None,
    ) -> None:
        super().__init__(message, details={"table": table, "status": status})
        self.table = table
        self.status = status


class MutationError(SyncError):
    """A backend mutation failed; the optimistic change must be reverted."""

    def __init__(
        self,
        message: str,
        table: str | None = None,
        status: int | None = None,
    ) -> None:
        super().__init__(message, details={"table": table, "status": status})
        self.table = table
        self.status = status
