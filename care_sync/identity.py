"""
Identity provider: the authenticated subject that scopes all synced state.
"""

from __future__ import annotations

from typing import Any, Callable, Coroutine

import structlog

from .models import Subject

log = structlog.get_logger()

SubjectHandler = Callable[[Subject | None], Coroutine[Any, Any, None]]


class IdentityProvider:
    """Holds the current subject and notifies handlers when it changes."""

    def __init__(self, subject: Subject | None = None) -> None:
        self._subject = subject
        self._handlers: list[SubjectHandler] = []

    def current_subject(self) -> Subject | None:
        return self._subject

    def on_subject_change(self, handler: SubjectHandler) -> None:
        self._handlers.append(handler)

    async def set_subject(self, subject: Subject | None) -> None:
        if subject == self._subject:
            return
        previous, self._subject = self._subject, subject
        log.info("identity.changed", previous=previous, subject=subject)

        for handler in self._handlers:
            try:
                await handler(subject)
            except Exception:
                log.exception("identity.handler_error", subject=subject)

    async def sign_in(self, subject: Subject) -> None:
        await self.set_subject(subject)

    async def sign_out(self) -> None:
        await self.set_subject(None)
