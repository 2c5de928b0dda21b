from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import StrEnum

from pydantic import BaseModel, Field, computed_field, field_validator


class Severity(StrEnum):
    RED = "RED"
    ORANGE = "ORANGE"
    YELLOW = "YELLOW"
    GREEN = "GREEN"


SEVERITY_ORDER: dict[Severity, int] = {
    Severity.GREEN: 0,
    Severity.YELLOW: 1,
    Severity.ORANGE: 2,
    Severity.RED: 3,
}


class AlertStatus(StrEnum):
    OPEN = "OPEN"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    SNOOZED = "SNOOZED"
    RESOLVED = "RESOLVED"
    ESCALATED = "ESCALATED"
    AUTO_DISMISSED = "AUTO_DISMISSED"


TERMINAL_STATUSES: frozenset[AlertStatus] = frozenset(
    {AlertStatus.RESOLVED, AlertStatus.AUTO_DISMISSED}
)
ACTIVE_STATUSES: frozenset[AlertStatus] = frozenset(
    {AlertStatus.OPEN, AlertStatus.ACKNOWLEDGED, AlertStatus.SNOOZED, AlertStatus.ESCALATED}
)


class AlertCategory(StrEnum):
    INCIDENT = "incident"
    MEDICAL_REPORT = "medical_report"
    DEFECT = "defect"
    SAFE_MANNING = "safe_manning"
    CERTIFICATE = "certificate"
    NON_COMPLIANCE = "non_compliance"
    HOURS_OF_REST = "hours_of_rest"
    CAPA = "capa"
    CORRECTIVE_ACTION = "corrective_action"
    TRAINING = "training"
    DRILL_PARTICIPATION = "drill_participation"
    MEETING_MINUTES = "meeting_minutes"
    AUDIT = "audit"
    SURVEY = "survey"
    DRILL = "drill"
    SUBMISSION = "submission"
    REMINDER = "reminder"


CATEGORY_LABELS: dict[AlertCategory, str] = {
    AlertCategory.INCIDENT: "Incident",
    AlertCategory.MEDICAL_REPORT: "Medical Emergency",
    AlertCategory.DEFECT: "ISM Critical Defect",
    AlertCategory.SAFE_MANNING: "Safe Manning Breach",
    AlertCategory.CERTIFICATE: "Certificate",
    AlertCategory.NON_COMPLIANCE: "Non-Compliance",
    AlertCategory.HOURS_OF_REST: "Hours of Rest Violation",
    AlertCategory.CAPA: "CAPA Overdue",
    AlertCategory.CORRECTIVE_ACTION: "Corrective Action Overdue",
    AlertCategory.TRAINING: "Training Overdue",
    AlertCategory.DRILL_PARTICIPATION: "Drill Participation",
    AlertCategory.MEETING_MINUTES: "Meeting Minutes",
    AlertCategory.AUDIT: "Upcoming Audit",
    AlertCategory.SURVEY: "Upcoming Survey",
    AlertCategory.DRILL: "Drill Due",
    AlertCategory.SUBMISSION: "Submission Complete",
    AlertCategory.REMINDER: "Reminder",
}


class Channel(StrEnum):
    IN_APP = "in_app"
    EMAIL = "email"
    SMS = "sms"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Naive datetimes are taken to be UTC; aware ones are converted to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Alert(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    category: AlertCategory
    severity: Severity
    status: AlertStatus = AlertStatus.OPEN
    title: str = ""
    description: str | None = None
    company_id: str
    vessel_id: str | None = None
    source_module: str | None = None
    related_entity_type: str | None = None
    related_entity_id: str | None = None
    assigned_to_user_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    due_at: datetime | None = None
    acknowledged_at: datetime | None = None
    acknowledged_by: str | None = None
    snoozed_until: datetime | None = None
    last_snooze_reason: str | None = None
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    escalated_at: datetime | None = None
    auto_dismissed_at: datetime | None = None
    escalation_deadline_at: datetime | None = None
    snooze_count: int = 0
    escalation_target_roles: list[str] = Field(default_factory=list)
    rule_version: str = ""
    metadata: dict = Field(default_factory=dict)
    version: int = 0

    @field_validator(
        "created_at", "due_at", "acknowledged_at", "snoozed_until", "resolved_at",
        "escalated_at", "auto_dismissed_at", "escalation_deadline_at",
    )
    @classmethod
    def normalize_timestamps(cls, value: datetime | None) -> datetime | None:
        return as_utc(value)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def overdue_at(self, now: datetime) -> bool:
        return self.due_at is not None and self.due_at < now and not self.is_terminal

    @computed_field  # type: ignore[prop-decorator]
    @property
    def is_overdue(self) -> bool:
        return self.overdue_at(utcnow())


class AlertTransition(BaseModel):
    """One row of an alert's audit history."""

    alert_id: str
    from_status: AlertStatus | None
    to_status: AlertStatus
    actor: str = "system"
    reason: str | None = None
    at: datetime = Field(default_factory=utcnow)

    @field_validator("at")
    @classmethod
    def normalize_at(cls, value: datetime) -> datetime:
        return as_utc(value)
