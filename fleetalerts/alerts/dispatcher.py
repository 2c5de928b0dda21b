from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Iterable, Protocol

from pydantic import BaseModel, Field

from fleetalerts.models.alert import Alert, Channel, utcnow

logger = logging.getLogger(__name__)


class Notification(BaseModel):
    alert: Alert
    roles: list[str]
    channels: list[Channel]
    reason: str = "created"
    created_at: datetime = Field(default_factory=utcnow)


Notifier = Callable[[Notification], Awaitable[None]]


class NotificationDispatcher(Protocol):
    async def dispatch(
        self,
        alert: Alert,
        target_roles: Iterable[str],
        channels: Iterable[Channel],
        reason: str = "created",
    ) -> None: ...


class ChannelDispatcher:
    """Routes notifications to the notifiers registered for each channel.

    Every notifier is retried on its own schedule; a notifier that still
    fails after the last retry is logged and skipped.
    """

    def __init__(self, retry_delays: list[float] | None = None) -> None:
        self._routes: list[tuple[Channel, Notifier]] = []
        self._retry_delays = list(retry_delays) if retry_delays is not None else [5.0, 15.0, 30.0]

    def add_route(self, channel: Channel, notifier: Notifier) -> None:
        self._routes.append((channel, notifier))

    async def dispatch(
        self,
        alert: Alert,
        target_roles: Iterable[str],
        channels: Iterable[Channel],
        reason: str = "created",
    ) -> None:
        notification = Notification(
            alert=alert, roles=list(target_roles), channels=list(channels), reason=reason
        )
        for channel in notification.channels:
            notifiers = [n for c, n in self._routes if c == channel]
            if not notifiers:
                logger.warning("No notifier routed for channel %s (alert %s)", channel.value, alert.id)
                continue
            for notifier in notifiers:
                await self._deliver(notifier, notification, channel)

    async def _deliver(self, notifier: Notifier, notification: Notification, channel: Channel) -> bool:
        for attempt in range(1 + len(self._retry_delays)):
            try:
                await notifier(notification)
                return True
            except Exception as exc:
                if attempt < len(self._retry_delays):
                    delay = self._retry_delays[attempt]
                    logger.warning(
                        "Notifier %s failed for alert %s via %s, retry %d in %.1fs: %s",
                        notifier, notification.alert.id, channel.value, attempt + 1, delay, exc,
                    )
                    await asyncio.sleep(delay)
                    continue
                logger.exception(
                    "Giving up delivering alert %s via %s after %d attempts",
                    notification.alert.id, channel.value, attempt + 1,
                )
        return False


class BackgroundDispatch:
    """Fire-and-forget wrapper: state transitions never wait on delivery."""

    def __init__(self, dispatcher: NotificationDispatcher) -> None:
        self._dispatcher = dispatcher
        self._tasks: set[asyncio.Task] = set()

    def submit(
        self,
        alert: Alert,
        target_roles: Iterable[str],
        channels: Iterable[Channel],
        reason: str = "created",
    ) -> asyncio.Task:
        task = asyncio.create_task(self._run(alert, list(target_roles), list(channels), reason))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, alert: Alert, roles: list[str], channels: list[Channel], reason: str) -> None:
        try:
            await self._dispatcher.dispatch(alert, roles, channels, reason=reason)
        except Exception:
            logger.exception("Dispatch of alert %s (%s) failed", alert.id, reason)

    async def drain(self) -> None:
        """Wait for every in-flight dispatch."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._tasks)
