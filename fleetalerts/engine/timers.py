from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable

import aiosqlite

from fleetalerts.db import database as db
from fleetalerts.errors import TimerSchedulingError
from fleetalerts.models.alert import utcnow
from fleetalerts.models.timer import Timer, TimerKind

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
TimerHandler = Callable[[Timer], Awaitable[None]]
Reconciler = Callable[[], Awaitable[int]]


class TimerScheduler:
    """Durable single-fire timers keyed by (alert id, kind).

    Timers live in the ``timers`` table, so a restart loses nothing: the
    poll loop (and :meth:`recover` at startup) fires whatever is due.
    A timer row is removed only after its handler returned, so a crash
    mid-fire means the handler runs again; handlers must be idempotent.
    """

    def __init__(
        self,
        handler: TimerHandler | None = None,
        clock: Clock = utcnow,
        interval: float = 5.0,
        retry_delays: list[float] | None = None,
        reconcile_interval: float = 60.0,
    ) -> None:
        self._handler = handler
        self._reconciler: Reconciler | None = None
        self._reconcile_interval = reconcile_interval
        self._clock = clock
        self._interval = interval
        self._retry_delays = list(retry_delays) if retry_delays is not None else [0.5, 2.0, 5.0]
        self._running = False
        self._task: asyncio.Task | None = None

    def set_handler(self, handler: TimerHandler) -> None:
        self._handler = handler

    def set_reconciler(self, reconciler: Reconciler) -> None:
        """Called from the sweep loop every ``reconcile_interval`` seconds to re-create lost timers."""
        self._reconciler = reconciler

    # ── scheduling ───────────────────────────────────────

    async def schedule(self, alert_id: str, kind: TimerKind, fire_at: datetime) -> None:
        """Schedule ``kind`` for the alert, replacing any earlier timer of that kind."""
        await self._with_retry(f"schedule {kind.value} for {alert_id}", db.upsert_timer, alert_id, kind, fire_at)
        logger.debug("Scheduled %s timer for alert %s at %s", kind.value, alert_id, fire_at.isoformat())

    async def cancel(self, alert_id: str, *kinds: TimerKind) -> int:
        """Cancel the given kinds, or every timer of the alert when none are named."""
        removed = await self._with_retry(
            f"cancel timers for {alert_id}", db.delete_timers, alert_id, list(kinds) or None
        )
        if removed:
            logger.debug("Cancelled %d timer(s) for alert %s", removed, alert_id)
        return removed

    async def _with_retry(self, what: str, fn, *args):
        for attempt in range(1 + len(self._retry_delays)):
            try:
                return await fn(*args)
            except (aiosqlite.Error, OSError) as exc:
                if attempt < len(self._retry_delays):
                    delay = self._retry_delays[attempt]
                    logger.warning("Timer store error (%s), retry %d in %.1fs: %s", what, attempt + 1, delay, exc)
                    await asyncio.sleep(delay)
                    continue
                logger.error("Timer store unavailable, giving up on %s: %s", what, exc)
                raise TimerSchedulingError(f"Could not {what}: {exc}") from exc

    # ── firing ───────────────────────────────────────────

    async def run_due(self, now: datetime | None = None) -> int:
        """Fire every timer due at ``now`` in deadline order; returns how many ran."""
        if self._handler is None:
            raise RuntimeError("TimerScheduler has no handler")
        now = now or self._clock()
        fired = 0
        for timer in await db.get_due_timers(now):
            try:
                await self._handler(timer)
            except Exception:
                # Left in place: the next sweep retries it
                logger.exception("Timer %s for alert %s failed", timer.kind.value, timer.alert_id)
                continue
            await db.delete_timer_if_unchanged(timer)
            fired += 1
        return fired

    async def recover(self) -> int:
        """Startup sweep: fire everything that came due while we were down."""
        now = self._clock()
        backlog = len(await db.get_due_timers(now))
        if backlog:
            logger.warning("Recovering %d overdue timer(s)", backlog)
        return await self.run_due(now)

    # ── lifecycle ────────────────────────────────────────

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info("TimerScheduler started (interval %.1fs)", self._interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("TimerScheduler stopped")

    async def _sweep_loop(self) -> None:
        loop = asyncio.get_running_loop()
        last_reconcile = loop.time()
        while self._running:
            try:
                if self._reconciler is not None and loop.time() - last_reconcile >= self._reconcile_interval:
                    last_reconcile = loop.time()
                    await self._reconciler()
                await self.run_due()
            except (aiosqlite.Error, OSError, TimerSchedulingError):
                logger.exception("Timer sweep failed")
            await asyncio.sleep(self._interval)

    @property
    def running(self) -> bool:
        return self._running
