from .alert import (
    Alert, AlertCategory, AlertStatus, AlertTransition, Channel, Severity,
    SEVERITY_ORDER, TERMINAL_STATUSES, ACTIVE_STATUSES, CATEGORY_LABELS,
)
from .fact import Fact, CreateAlertIntent, ResolveAlertIntent, AlertIntent
from .rules import (
    Predicate, PredicateOp, Trigger, EscalationPolicy, SnoozePolicy, SeverityRule, RuleTable,
)
from .scope import Role, AccessGrant, Caller, AlertFilters, AlertCounts
from .timer import Timer, TimerKind

__all__ = [
    "Alert", "AlertCategory", "AlertStatus", "AlertTransition", "Channel", "Severity",
    "SEVERITY_ORDER", "TERMINAL_STATUSES", "ACTIVE_STATUSES", "CATEGORY_LABELS",
    "Fact", "CreateAlertIntent", "ResolveAlertIntent", "AlertIntent",
    "Predicate", "PredicateOp", "Trigger", "EscalationPolicy", "SnoozePolicy",
    "SeverityRule", "RuleTable",
    "Role", "AccessGrant", "Caller", "AlertFilters", "AlertCounts",
    "Timer", "TimerKind",
]
