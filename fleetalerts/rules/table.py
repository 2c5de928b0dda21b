"""Severity Rule Table.

The table is declarative data: categories map to severities through trigger
predicates, and each severity carries its escalation, snooze and auto-dismiss
policy. It is validated into a :class:`RuleTable` once at process start.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from fleetalerts.errors import ConfigurationError
from fleetalerts.models.rules import RuleTable

logger = logging.getLogger(__name__)


def _p(attr: str, op: str, value: Any = None, value_attr: str | None = None) -> dict:
    clause: dict[str, Any] = {"attr": attr, "op": op, "value": value}
    if value_attr:
        clause["value_attr"] = value_attr
    return clause


_ANY = {"op": "any"}

DEFAULT_RULE_TABLE: dict[str, Any] = {
    "version": "3.2",
    "rules": {
        "RED": {
            "severity": "RED",
            "triggers": [
                {"category": "incident", "description": "severity >= HIGH",
                 "all_of": [_p("severity", "in", ["HIGH", "CRITICAL"])]},
                {"category": "medical_report", "description": "any", "all_of": [_ANY]},
                {"category": "defect", "description": "ism_critical and status OPEN",
                 "all_of": [_p("ism_critical", "truthy"), _p("status", "eq", "OPEN")]},
                {"category": "safe_manning", "description": "crew_count < minimum_required",
                 "all_of": [_p("crew_count", "lt", value_attr="minimum_required")]},
                {"category": "certificate", "description": "expired and mandatory",
                 "all_of": [_p("is_expired", "truthy"), _p("is_mandatory", "truthy")]},
                {"category": "non_compliance", "description": "pre-departure checklist missed",
                 "all_of": [_p("type", "eq", "PRE_DEPARTURE_MISSED")]},
                {"category": "hours_of_rest", "description": "3+ violations in 7 days",
                 "all_of": [_p("violation_count_7d", "ge", 3)]},
            ],
            "escalation": {
                "deadline_minutes": 30,
                "escalate_to": ["DPA", "CAPTAIN", "FLEET_MASTER"],
                "notify_channels": ["in_app", "email", "sms"],
            },
            "snooze": {"allowed": True, "max_duration_hours": 4, "max_snoozes": 2, "requires_reason": True},
            "notify_on_create": True,
            "notify_roles": ["CAPTAIN", "DPA"],
            "notify_channels": ["in_app", "email"],
        },
        "ORANGE": {
            "severity": "ORANGE",
            "triggers": [
                {"category": "capa", "description": "open and overdue",
                 "all_of": [_p("status", "eq", "OPEN"), _p("days_overdue", "gt", 0)]},
                {"category": "corrective_action", "description": "past due date",
                 "all_of": [_p("days_overdue", "gt", 0)]},
                {"category": "training", "description": "required and overdue",
                 "all_of": [_p("required", "truthy"), _p("overdue", "truthy")]},
                {"category": "drill_participation", "description": "crew missed a required drill",
                 "all_of": [_p("missed_required_drill", "truthy")]},
                {"category": "certificate", "description": "mandatory, expires within 30 days",
                 "all_of": [_p("is_mandatory", "truthy"), _p("expires_within_days", "le", 30)]},
            ],
            "escalation": {
                "deadline_hours": 24,
                "escalate_to": ["DPA"],
                "notify_channels": ["in_app", "email"],
            },
            "snooze": {"allowed": True, "max_duration_hours": 48, "max_snoozes": 3, "requires_reason": False},
        },
        "YELLOW": {
            "severity": "YELLOW",
            "triggers": [
                {"category": "certificate", "description": "expires within 90 days",
                 "all_of": [_p("expires_within_days", "le", 90)]},
                {"category": "meeting_minutes", "description": "minutes incomplete",
                 "all_of": [_p("status", "eq", "INCOMPLETE")]},
                {"category": "audit", "description": "scheduled within 30 days",
                 "all_of": [_p("scheduled_within_days", "le", 30)]},
                {"category": "survey", "description": "window opens within 60 days",
                 "all_of": [_p("window_opens_within_days", "le", 60)]},
                {"category": "drill", "description": "next due within 14 days",
                 "all_of": [_p("next_due_within_days", "le", 14)]},
            ],
            "escalation": None,
            "snooze": {"allowed": True, "max_duration_hours": 168, "max_snoozes": 5, "requires_reason": False},
        },
        "GREEN": {
            "severity": "GREEN",
            "triggers": [
                {"category": "submission", "description": "submission completed",
                 "all_of": [_p("status", "eq", "COMPLETED")]},
                {"category": "certificate", "description": "certificate approved",
                 "all_of": [_p("status", "eq", "APPROVED")]},
                {"category": "capa", "description": "CAPA closed",
                 "all_of": [_p("status", "eq", "CLOSED")]},
                {"category": "drill", "description": "drill completed today",
                 "all_of": [_p("completed_today", "truthy")]},
                {"category": "reminder", "description": "reminder acknowledged",
                 "all_of": [_p("acknowledged", "truthy")]},
            ],
            "escalation": None,
            "snooze": {"allowed": False, "max_duration_hours": 0, "max_snoozes": 0, "requires_reason": False},
            "auto_dismiss_after_hours": 72,
        },
    },
}


def parse_rule_table(data: dict[str, Any]) -> RuleTable:
    try:
        return RuleTable.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(f"Malformed severity rule table: {exc}") from exc


def load_rule_table(path: str | Path | None = None) -> RuleTable:
    """Load the rule table from a JSON file, or the bundled default."""
    if path is None:
        table = parse_rule_table(DEFAULT_RULE_TABLE)
    else:
        try:
            raw = json.loads(Path(path).read_text())
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigurationError(f"Cannot read rule table {path}: {exc}") from exc
        table = parse_rule_table(raw)
    logger.info(
        "Loaded severity rule table v%s (%d severities, %d categories)",
        table.version, len(table.rules), len(table.categories()),
    )
    return table
