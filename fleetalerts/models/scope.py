from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, Field, model_validator

from .alert import AlertCategory, AlertStatus, Severity


class Role(StrEnum):
    SUPERADMIN = "superadmin"
    DPA = "dpa"
    SHORE_MANAGEMENT = "shore_management"
    FLEET_MASTER = "fleet_master"
    CAPTAIN = "captain"
    PURSER = "purser"
    CHIEF_OFFICER = "chief_officer"
    CHIEF_ENGINEER = "chief_engineer"
    HOD = "hod"
    OFFICER = "officer"
    CREW = "crew"
    AUDITOR_FLAG = "auditor_flag"
    AUDITOR_CLASS = "auditor_class"


class AccessGrant(BaseModel):
    """Either one vessel or the whole fleet of one company."""

    company_id: str
    vessel_id: str | None = None
    fleet_wide: bool = False

    @model_validator(mode="after")
    def _one_scope(self) -> AccessGrant:
        if self.fleet_wide == (self.vessel_id is not None):
            raise ValueError("grant must be fleet-wide or name exactly one vessel")
        return self


class Caller(BaseModel):
    user_id: str
    role: Role
    grant: AccessGrant


class AlertFilters(BaseModel):
    severity: Severity | None = None
    category: AlertCategory | None = None
    status: AlertStatus | None = None
    vessel_id: str | None = None
    include_terminal: bool = False
    limit: int = Field(default=200, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)


class AlertCounts(BaseModel):
    by_severity: dict[Severity, int] = Field(
        default_factory=lambda: {s: 0 for s in Severity}
    )
    by_category: dict[str, int] = Field(default_factory=dict)
    total: int = 0
    overdue: int = 0

    def __add__(self, other: AlertCounts) -> AlertCounts:
        by_category = dict(self.by_category)
        for cat, n in other.by_category.items():
            by_category[cat] = by_category.get(cat, 0) + n
        return AlertCounts(
            by_severity={s: self.by_severity.get(s, 0) + other.by_severity.get(s, 0) for s in Severity},
            by_category=by_category,
            total=self.total + other.total,
            overdue=self.overdue + other.overdue,
        )
