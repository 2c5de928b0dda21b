from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from .alert import Severity, as_utc, utcnow


class Fact(BaseModel):
    """Normalized event emitted by a domain collaborator.

    ``category`` is kept as a plain string: an unknown category must reach
    the evaluator and be reported there, not fail at the edge.
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    category: str
    entity_id: str
    company_id: str
    vessel_id: str | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)
    cleared: bool = False
    source_module: str | None = None
    related_entity_type: str | None = None
    title: str | None = None
    due_at: datetime | None = None
    observed_at: datetime = Field(default_factory=utcnow)

    @field_validator("due_at", "observed_at")
    @classmethod
    def normalize_timestamps(cls, value: datetime | None) -> datetime | None:
        # ISO strings without an offset are read as UTC
        return as_utc(value)


class CreateAlertIntent(BaseModel):
    kind: Literal["create"] = "create"
    fact: Fact
    severity: Severity
    trigger: str
    rule_version: str
    supersedes: list[str] = Field(default_factory=list)


class ResolveAlertIntent(BaseModel):
    kind: Literal["resolve"] = "resolve"
    fact: Fact
    alert_ids: list[str]
    reason: str = "condition_cleared"


AlertIntent = CreateAlertIntent | ResolveAlertIntent
