"""
Post-commit notifications.

Authorities emit a ``Notification`` only after their transaction has
committed. Delivery runs on its own task; a failing notifier is logged and
never reaches the caller.
"""

from __future__ import annotations

import asyncio
from typing import Any, Protocol

import structlog
from pydantic import BaseModel, Field

log = structlog.get_logger()

USER_WELCOME = "user.welcome"
INVITATION_CREATED = "invitation.created"
INVITATION_ACCEPTED = "invitation.accepted"
PASSWORD_RESET_REQUESTED = "password_reset.requested"


class Notification(BaseModel):
    kind: str
    recipient: str
    data: dict[str, Any] = Field(default_factory=dict)


class Notifier(Protocol):
    async def deliver(self, notification: Notification) -> None: ...


class LogNotifier:
    """Default notifier: records the notification instead of sending mail."""

    async def deliver(self, notification: Notification) -> None:
        log.info(
            "notification.delivered",
            kind=notification.kind,
            recipient=notification.recipient,
        )


class NotificationDispatcher:
    def __init__(self, notifier: Notifier | None = None):
        self.notifier = notifier or LogNotifier()
        self._pending: set[asyncio.Task] = set()

    def emit(self, notification: Notification) -> None:
        """Schedule delivery and return immediately."""
        try:
            task = asyncio.get_running_loop().create_task(self._deliver(notification))
        except RuntimeError:
            log.error("notification.not_scheduled", kind=notification.kind, exc_info=True)
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, notification: Notification) -> None:
        try:
            await self.notifier.deliver(notification)
        except Exception:
            log.error(
                "notification.failed",
                kind=notification.kind,
                recipient=notification.recipient,
                exc_info=True,
            )

    async def drain(self) -> None:
        """Wait for every scheduled delivery to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending))
