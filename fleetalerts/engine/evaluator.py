from __future__ import annotations

import logging
import operator
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from fleetalerts.errors import ConfigurationError
from fleetalerts.models.alert import ACTIVE_STATUSES, Alert, SEVERITY_ORDER
from fleetalerts.models.fact import AlertIntent, CreateAlertIntent, Fact, ResolveAlertIntent
from fleetalerts.models.rules import Predicate, PredicateOp, RuleTable, SeverityRule, Trigger

logger = logging.getLogger(__name__)

ActiveAlertLookup = Callable[[Fact], Iterable[Alert]]

_MISSING = object()

_COMPARATORS: dict[PredicateOp, Callable[[Any, Any], bool]] = {
    PredicateOp.EQ: operator.eq,
    PredicateOp.NE: operator.ne,
    PredicateOp.LT: operator.lt,
    PredicateOp.LE: operator.le,
    PredicateOp.GT: operator.gt,
    PredicateOp.GE: operator.ge,
}


def predicate_matches(predicate: Predicate, attributes: dict[str, Any]) -> bool:
    if predicate.op == PredicateOp.ANY:
        return True
    actual = attributes.get(predicate.attr, _MISSING)
    if actual is _MISSING or actual is None:
        return False
    if predicate.op == PredicateOp.TRUTHY:
        return bool(actual)
    if predicate.op == PredicateOp.FALSY:
        return not actual
    if predicate.op == PredicateOp.IN:
        return actual in (predicate.value or ())
    if predicate.value_attr:
        expected = attributes.get(predicate.value_attr)
        if expected is None:
            return False
    else:
        expected = predicate.value
    try:
        return _COMPARATORS[predicate.op](actual, expected)
    except TypeError:
        # e.g. "5" < 3: a malformed attribute never satisfies a rule
        return False


def trigger_matches(trigger: Trigger, fact: Fact) -> bool:
    return all(predicate_matches(p, fact.attributes) for p in trigger.all_of)


@dataclass
class BatchResult:
    intents: list[AlertIntent] = field(default_factory=list)
    dropped: list[tuple[Fact, str]] = field(default_factory=list)


class TriggerEvaluator:
    """Classifies facts against the severity rule table.

    Pure with respect to its inputs: given the same fact, table and set of
    active alerts it always returns the same intent, and it never touches
    storage itself.
    """

    def __init__(self, rule_table: RuleTable) -> None:
        self._table = rule_table
        self._known_categories = rule_table.categories()
        # Highest severity first; triggers keep declaration order
        self._ordered_rules: list[SeverityRule] = sorted(
            rule_table.rules.values(),
            key=lambda r: SEVERITY_ORDER[r.severity],
            reverse=True,
        )

    @property
    def rule_table(self) -> RuleTable:
        return self._table

    def match(self, fact: Fact) -> tuple[SeverityRule, Trigger] | None:
        for rule in self._ordered_rules:
            for trigger in rule.triggers:
                if trigger.category == fact.category and trigger_matches(trigger, fact):
                    return rule, trigger
        return None

    def evaluate(self, fact: Fact, active_alerts: Iterable[Alert] = ()) -> AlertIntent | None:
        """Return at most one intent for ``fact``.

        ``active_alerts`` are the caller's view of existing alerts; only the
        non-terminal ones for the fact's category and entity are considered.
        """
        # Validate category before anything else, cleared facts included
        if fact.category not in self._known_categories:
            raise ConfigurationError(f"Unrecognized alert category {fact.category!r}")

        existing = [
            a for a in active_alerts
            if a.status in ACTIVE_STATUSES
            and a.category.value == fact.category
            and a.related_entity_id == fact.entity_id
        ]

        if fact.cleared:
            if not existing:
                return None
            return ResolveAlertIntent(fact=fact, alert_ids=[a.id for a in existing])

        matched = self.match(fact)
        if matched is None:
            return None
        rule, trigger = matched

        if any(a.severity == rule.severity for a in existing):
            logger.debug(
                "Fact %s: %s alert already active for %s/%s",
                fact.id, rule.severity.value, fact.category, fact.entity_id,
            )
            return None

        return CreateAlertIntent(
            fact=fact,
            severity=rule.severity,
            trigger=trigger.description,
            rule_version=self._table.version,
            supersedes=[a.id for a in existing],
        )

    def evaluate_batch(self, facts: Iterable[Fact], lookup: ActiveAlertLookup) -> BatchResult:
        result = BatchResult()
        # Creates already emitted in this batch; the lookup cannot see them yet
        pending: set[tuple[str, str, str]] = set()
        for fact in facts:
            try:
                intent = self.evaluate(fact, lookup(fact))
            except ConfigurationError as exc:
                logger.error("Dropping fact %s: %s", fact.id, exc)
                result.dropped.append((fact, str(exc)))
                continue
            if isinstance(intent, CreateAlertIntent):
                key = (fact.category, fact.entity_id, intent.severity.value)
                if key in pending:
                    continue
                pending.add(key)
            if intent is not None:
                result.intents.append(intent)
        return result
