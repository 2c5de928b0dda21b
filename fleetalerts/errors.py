from __future__ import annotations

from enum import StrEnum


class ReasonCode(StrEnum):
    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    INVALID_TRANSITION = "invalid_transition"
    ALERT_TERMINAL = "alert_terminal"
    SNOOZE_NOT_ALLOWED = "snooze_not_allowed"
    MAX_SNOOZES_REACHED = "max_snoozes_reached"
    DURATION_EXCEEDS_MAX = "duration_exceeds_max"
    INVALID_DURATION = "invalid_duration"
    REASON_REQUIRED = "reason_required"
    CONCURRENCY_CONFLICT = "concurrency_conflict"
    TIMER_STORE_UNAVAILABLE = "timer_store_unavailable"


class AlertEngineError(Exception):
    """Base class for every error raised by the engine."""


class ConfigurationError(AlertEngineError):
    """Rule table problem or a fact the table does not know how to classify."""


class OperationRejected(AlertEngineError):
    """A caller operation that was refused without changing any state."""

    default_code = ReasonCode.INVALID_TRANSITION

    def __init__(self, message: str, code: ReasonCode | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code


class InvalidTransition(OperationRejected):
    default_code = ReasonCode.INVALID_TRANSITION


class SnoozeRejected(OperationRejected):
    default_code = ReasonCode.SNOOZE_NOT_ALLOWED


class ConcurrencyConflict(OperationRejected):
    default_code = ReasonCode.CONCURRENCY_CONFLICT


class AlertNotFound(OperationRejected):
    default_code = ReasonCode.NOT_FOUND

    def __init__(self, alert_id: str) -> None:
        super().__init__(f"Alert {alert_id} not found")
        self.alert_id = alert_id


class PermissionDenied(OperationRejected):
    default_code = ReasonCode.PERMISSION_DENIED


class TimerSchedulingError(AlertEngineError):
    """Timer store could not be written after all retries."""
