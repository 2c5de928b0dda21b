from __future__ import annotations

import logging

from fleetalerts.alerts.dispatcher import Notification

logger = logging.getLogger("fleetalerts.notifications")

_LEVELS = {
    "RED": logging.ERROR,
    "ORANGE": logging.WARNING,
    "YELLOW": logging.INFO,
    "GREEN": logging.INFO,
}


async def log_notify(notification: Notification) -> None:
    """In-app channel: log the notification using Python logging."""
    alert = notification.alert
    level = _LEVELS.get(alert.severity.value, logging.INFO)
    if notification.reason == "escalated":
        level = logging.CRITICAL
    logger.log(
        level,
        "[%s] %s %s: %s (vessel=%s, roles=%s)",
        alert.severity.value,
        notification.reason,
        alert.category.value,
        alert.title,
        alert.vessel_id or "fleet",
        ",".join(notification.roles),
    )
