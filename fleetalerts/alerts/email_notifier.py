from __future__ import annotations

import asyncio
import logging
import smtplib
from datetime import datetime, timezone, timedelta
from email.mime.text import MIMEText
from typing import Any

from fleetalerts.alerts.dispatcher import Notification
from fleetalerts.config import EmailSettings
from fleetalerts.models.alert import SEVERITY_ORDER

logger = logging.getLogger(__name__)


class EmailNotifier:
    """Email channel that batches notifications arriving inside the throttle window.

    Held notifications go out with the next unthrottled send, from the
    background flush loop once the window has passed, or on ``stop()``.
    Escalations are never held.
    """

    def __init__(
        self,
        config: EmailSettings,
        smtp_class: Any = None,
    ) -> None:
        self._config = config
        self._throttle = timedelta(minutes=config.throttle_minutes)
        self._flush_interval = config.flush_interval_seconds
        self._smtp_class = smtp_class or smtplib.SMTP
        self._last_sent: datetime | None = None
        self._pending: list[Notification] = []
        self._send_lock = asyncio.Lock()
        self._task: asyncio.Task | None = None

    async def notify(self, notification: Notification) -> None:
        # A retried notification is still pending from the failed attempt
        if not any(n is notification for n in self._pending):
            self._pending.append(notification)
        if notification.reason != "escalated" and self._throttled():
            logger.debug("Email throttled, holding notification for alert %s", notification.alert.id)
            return
        await self._send_batch()

    async def flush(self) -> None:
        """Send everything held, ignoring the throttle."""
        await self._send_batch()

    @property
    def pending(self) -> int:
        return len(self._pending)

    # ── background flush ─────────────────────────────────

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._flush_loop())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._pending:
            try:
                await self.flush()
            except Exception:
                logger.exception("Could not send %d held notification(s) at shutdown", len(self._pending))

    @property
    def running(self) -> bool:
        return self._task is not None

    async def _flush_loop(self) -> None:
        while True:
            await asyncio.sleep(self._flush_interval)
            if not self._pending or self._throttled():
                continue
            try:
                await self._send_batch()
            except Exception:
                logger.exception("Periodic email flush failed; %d notification(s) still held", len(self._pending))

    # ── sending ──────────────────────────────────────────

    def _throttled(self) -> bool:
        return self._last_sent is not None and datetime.now(timezone.utc) - self._last_sent < self._throttle

    async def _send_batch(self) -> None:
        async with self._send_lock:
            if not self._pending:
                return
            batch = sorted(self._pending, key=lambda n: SEVERITY_ORDER[n.alert.severity], reverse=True)
            self._pending.clear()
            msg = self._compose(batch)
            try:
                await asyncio.to_thread(self._deliver, msg)
            except Exception:
                # Held again for the next send; the dispatcher's retry sees the failure
                self._pending.extend(batch)
                raise
            self._last_sent = datetime.now(timezone.utc)
            logger.info("Sent email with %d notification(s)", len(batch))

    def _compose(self, batch: list[Notification]) -> MIMEText:
        lines = []
        for n in batch:
            a = n.alert
            lines.append(
                f"[{a.severity.value}] {n.reason.upper()} {a.title}\n"
                f"  Category: {a.category.value}\n"
                f"  Vessel: {a.vessel_id or 'fleet-wide'}\n"
                f"  For: {', '.join(n.roles) or '-'}\n"
                f"  Raised: {a.created_at.isoformat()}\n"
            )
        msg = MIMEText("\n".join(lines))
        msg["Subject"] = f"Fleet alerts: {len(batch)} notification(s), highest: {batch[0].alert.severity.value}"
        msg["From"] = self._config.sender_address
        msg["To"] = self._config.recipient_address
        return msg

    def _deliver(self, msg: MIMEText) -> None:
        with self._smtp_class(self._config.smtp_host, self._config.smtp_port) as server:
            server.starttls()
            if self._config.sender_address and self._config.sender_password:
                server.login(self._config.sender_address, self._config.sender_password)
            server.send_message(msg)
