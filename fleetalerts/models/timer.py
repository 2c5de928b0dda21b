from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, field_validator

from .alert import as_utc


class TimerKind(StrEnum):
    ESCALATION = "escalation"
    WAKE = "wake"
    AUTO_DISMISS = "auto_dismiss"


class Timer(BaseModel):
    alert_id: str
    kind: TimerKind
    fire_at: datetime

    @field_validator("fire_at")
    @classmethod
    def normalize_fire_at(cls, value: datetime) -> datetime:
        return as_utc(value)
