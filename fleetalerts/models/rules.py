from __future__ import annotations

from datetime import timedelta
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, model_validator

from .alert import AlertCategory, Channel, Severity


class PredicateOp(StrEnum):
    ANY = "any"
    EQ = "eq"
    NE = "ne"
    LT = "lt"
    LE = "le"
    GT = "gt"
    GE = "ge"
    IN = "in"
    TRUTHY = "truthy"
    FALSY = "falsy"


class Predicate(BaseModel):
    attr: str | None = None
    op: PredicateOp
    value: Any = None
    # Compare against another attribute of the same fact instead of a literal
    value_attr: str | None = None

    @model_validator(mode="after")
    def _check_attr(self) -> Predicate:
        if self.op != PredicateOp.ANY and not self.attr:
            raise ValueError(f"predicate op {self.op.value!r} needs an attr")
        return self


class Trigger(BaseModel):
    category: AlertCategory
    description: str = ""
    all_of: list[Predicate] = Field(default_factory=list)


class EscalationPolicy(BaseModel):
    deadline_minutes: float | None = None
    deadline_hours: float | None = None
    escalate_to: list[str] = Field(min_length=1)
    notify_channels: list[Channel] = Field(min_length=1)

    @model_validator(mode="after")
    def _one_unit(self) -> EscalationPolicy:
        if (self.deadline_minutes is None) == (self.deadline_hours is None):
            raise ValueError("escalation policy needs exactly one of deadline_minutes / deadline_hours")
        if self.deadline.total_seconds() <= 0:
            raise ValueError("escalation deadline must be positive")
        return self

    @property
    def deadline(self) -> timedelta:
        if self.deadline_minutes is not None:
            return timedelta(minutes=self.deadline_minutes)
        return timedelta(hours=self.deadline_hours or 0)


class SnoozePolicy(BaseModel):
    allowed: bool
    max_duration_hours: float
    max_snoozes: int = Field(ge=0)
    requires_reason: bool = False

    @property
    def max_duration(self) -> timedelta:
        return timedelta(hours=self.max_duration_hours)


class SeverityRule(BaseModel):
    severity: Severity
    triggers: list[Trigger]
    escalation: EscalationPolicy | None = None
    snooze: SnoozePolicy
    auto_dismiss_after_hours: float | None = Field(default=None, gt=0)
    notify_on_create: bool = False
    # Who hears about creation-time notifications
    notify_roles: list[str] = Field(default_factory=list)
    notify_channels: list[Channel] = Field(default_factory=list)

    @property
    def auto_dismiss_after(self) -> timedelta | None:
        if self.auto_dismiss_after_hours is None:
            return None
        return timedelta(hours=self.auto_dismiss_after_hours)


class RuleTable(BaseModel):
    version: str
    rules: dict[Severity, SeverityRule]

    @model_validator(mode="after")
    def _keys_match(self) -> RuleTable:
        for key, rule in self.rules.items():
            if key != rule.severity:
                raise ValueError(f"rule keyed {key.value} declares severity {rule.severity.value}")
        return self

    def rule_for(self, severity: Severity) -> SeverityRule | None:
        return self.rules.get(severity)

    def categories(self) -> set[str]:
        return {t.category.value for rule in self.rules.values() for t in rule.triggers}
