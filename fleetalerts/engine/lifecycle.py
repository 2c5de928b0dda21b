"""Alert lifecycle state machine.

    OPEN ──ack──> ACKNOWLEDGED ──resolve──> RESOLVED
    OPEN / ACKNOWLEDGED ──snooze──> SNOOZED ──wake──> OPEN
    OPEN ──deadline──> ESCALATED ──ack──> ACKNOWLEDGED
    any non-terminal ──auto-dismiss──> AUTO_DISMISSED
    any non-terminal ──resolve──> RESOLVED

Every transition for one alert runs under that alert's lock and is written
with an optimistic version check, so a second process racing on the same
row gets a ConcurrencyConflict instead of a lost update.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Awaitable, Callable, Hashable

from fleetalerts.alerts.dispatcher import BackgroundDispatch
from fleetalerts.db import database as db
from fleetalerts.engine.timers import Clock, TimerScheduler
from fleetalerts.errors import (
    AlertNotFound,
    ConcurrencyConflict,
    ConfigurationError,
    InvalidTransition,
    ReasonCode,
    SnoozeRejected,
    TimerSchedulingError,
)
from fleetalerts.models.alert import (
    CATEGORY_LABELS,
    Alert,
    AlertCategory,
    AlertStatus,
    AlertTransition,
    Channel,
    utcnow,
)
from fleetalerts.models.fact import AlertIntent, CreateAlertIntent, ResolveAlertIntent
from fleetalerts.models.rules import RuleTable, SeverityRule
from fleetalerts.models.timer import Timer, TimerKind

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"

OnChangeCallback = Callable[[Alert, AlertTransition], Awaitable[None]]


class _LockEntry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        # Holder plus waiters; the entry is dropped when this reaches zero
        self.users = 0


class AlertLifecycleManager:
    """Owns every status change of every alert."""

    def __init__(
        self,
        rule_table: RuleTable,
        scheduler: TimerScheduler,
        dispatch: BackgroundDispatch | None = None,
        clock: Clock = utcnow,
        notify_on_auto_dismiss: bool = False,
        on_change: OnChangeCallback | None = None,
    ) -> None:
        self._table = rule_table
        self._scheduler = scheduler
        self._dispatch = dispatch
        self._clock = clock
        self._notify_on_auto_dismiss = notify_on_auto_dismiss
        self._on_change = on_change
        self._alert_locks: dict[str, _LockEntry] = {}
        self._entity_locks: dict[tuple[str, str, str], _LockEntry] = {}
        scheduler.set_handler(self.on_timer)
        scheduler.set_reconciler(self.restore_timers)

    # ── caller-facing operations ─────────────────────────

    async def create(self, intent: CreateAlertIntent) -> Alert | None:
        """Open a new alert; returns None when an identical one is already active."""
        fact = intent.fact
        rule = self._rule(intent.severity)
        async with self._locked(self._entity_locks, (fact.company_id, fact.category, fact.entity_id)):
            active = await db.get_active_alerts_for_entity(fact.company_id, fact.category, fact.entity_id)
            if any(a.severity == intent.severity for a in active):
                logger.debug("Skipping duplicate %s alert for %s/%s", intent.severity.value, fact.category, fact.entity_id)
                return None

            for alert_id in intent.supersedes:
                try:
                    await self.resolve(alert_id, actor=SYSTEM_ACTOR, reason="superseded")
                except (AlertNotFound, InvalidTransition):
                    logger.debug("Superseded alert %s already closed", alert_id)

            now = self._clock()
            category = AlertCategory(fact.category)
            alert = Alert(
                category=category,
                severity=intent.severity,
                title=fact.title or f"{CATEGORY_LABELS[category]}: {fact.entity_id}",
                description=intent.trigger,
                company_id=fact.company_id,
                vessel_id=fact.vessel_id,
                source_module=fact.source_module,
                related_entity_type=fact.related_entity_type,
                related_entity_id=fact.entity_id,
                created_at=now,
                due_at=fact.due_at,
                rule_version=intent.rule_version,
                metadata={"fact_id": fact.id, "trigger": intent.trigger, "attributes": fact.attributes},
            )
            if rule.escalation is not None:
                alert.escalation_deadline_at = now + rule.escalation.deadline
            transition = AlertTransition(
                alert_id=alert.id, from_status=None, to_status=AlertStatus.OPEN,
                actor=SYSTEM_ACTOR, reason=intent.trigger, at=now,
            )
            await db.insert_alert(alert, transition)

        logger.info(
            "Opened %s %s alert %s for %s (vessel=%s)",
            alert.severity.value, alert.category.value, alert.id, fact.entity_id, alert.vessel_id or "fleet",
        )
        try:
            if alert.escalation_deadline_at is not None:
                await self._scheduler.schedule(alert.id, TimerKind.ESCALATION, alert.escalation_deadline_at)
            if rule.auto_dismiss_after is not None:
                await self._scheduler.schedule(alert.id, TimerKind.AUTO_DISMISS, now + rule.auto_dismiss_after)
        except TimerSchedulingError:
            # The alert stays OPEN; the periodic restore_timers() puts them back
            logger.error("Alert %s opened without its timers; operator attention needed", alert.id)

        await self._changed(alert, transition)
        if rule.notify_on_create:
            self._notify(alert, rule.notify_roles, rule.notify_channels, "created")
        return alert

    async def acknowledge(self, alert_id: str, actor: str, notes: str | None = None) -> Alert:
        async with self._locked(self._alert_locks, alert_id):
            alert = await self._load(alert_id)
            self._ensure_not_terminal(alert, "acknowledge")
            now = self._clock()
            if self._escalation_due(alert, now):
                # The deadline passed before the sweep noticed; escalate first
                alert = await self._escalate(alert, now)
            if alert.status not in (AlertStatus.OPEN, AlertStatus.ESCALATED):
                raise InvalidTransition(f"Cannot acknowledge an alert that is {alert.status.value}")
            metadata = dict(alert.metadata)
            if notes:
                metadata["acknowledgement_notes"] = notes
            alert = await self._transition(
                alert, AlertStatus.ACKNOWLEDGED, actor, notes,
                acknowledged_at=now, acknowledged_by=actor, metadata=metadata,
            )
            await self._cancel(alert_id, TimerKind.ESCALATION, TimerKind.AUTO_DISMISS)
        return alert

    async def snooze(
        self,
        alert_id: str,
        duration: timedelta,
        reason: str | None = None,
        actor: str = SYSTEM_ACTOR,
    ) -> Alert:
        async with self._locked(self._alert_locks, alert_id):
            alert = await self._load(alert_id)
            self._ensure_not_terminal(alert, "snooze")
            rule = self._rule(alert.severity)
            policy = rule.snooze
            now = self._clock()

            if alert.status == AlertStatus.ESCALATED:
                raise SnoozeRejected(
                    "Escalated alerts cannot be snoozed; acknowledge or resolve it",
                    ReasonCode.INVALID_TRANSITION,
                )
            if alert.status not in (AlertStatus.OPEN, AlertStatus.ACKNOWLEDGED):
                raise InvalidTransition(f"Cannot snooze an alert that is {alert.status.value}")
            if not policy.allowed:
                raise SnoozeRejected("This alert cannot be snoozed", ReasonCode.SNOOZE_NOT_ALLOWED)
            if alert.snooze_count >= policy.max_snoozes:
                raise SnoozeRejected(
                    f"Maximum snoozes ({policy.max_snoozes}) reached", ReasonCode.MAX_SNOOZES_REACHED
                )
            if duration <= timedelta(0):
                raise SnoozeRejected("Snooze duration must be positive", ReasonCode.INVALID_DURATION)
            if duration > policy.max_duration:
                raise SnoozeRejected(
                    f"Maximum snooze duration is {policy.max_duration_hours:g} hours",
                    ReasonCode.DURATION_EXCEEDS_MAX,
                )
            if policy.requires_reason and not (reason and reason.strip()):
                raise SnoozeRejected("A reason is required to snooze this alert", ReasonCode.REASON_REQUIRED)
            if self._escalation_due(alert, now):
                await self._escalate(alert, now)
                raise SnoozeRejected(
                    "Escalation deadline has passed; the alert was escalated instead",
                    ReasonCode.INVALID_TRANSITION,
                )

            until = now + duration
            # The wake timer must exist before the escalation timer goes away.
            # A wake firing on a non-snoozed alert is a no-op.
            await self._scheduler.schedule(alert_id, TimerKind.WAKE, until)
            alert = await self._transition(
                alert, AlertStatus.SNOOZED, actor, reason,
                snoozed_until=until,
                snooze_count=alert.snooze_count + 1,
                last_snooze_reason=reason,
            )
            await self._cancel(alert_id, TimerKind.ESCALATION)
            if rule.auto_dismiss_after is not None and alert.acknowledged_at is None:
                try:
                    await self._scheduler.schedule(
                        alert_id, TimerKind.AUTO_DISMISS, until + rule.auto_dismiss_after
                    )
                except TimerSchedulingError:
                    logger.error("Alert %s snoozed without its auto-dismiss timer", alert_id)
        return alert

    async def resolve(
        self,
        alert_id: str,
        actor: str = SYSTEM_ACTOR,
        reason: str | None = None,
        notes: str | None = None,
    ) -> Alert:
        async with self._locked(self._alert_locks, alert_id):
            alert = await self._load(alert_id)
            self._ensure_not_terminal(alert, "resolve")
            metadata = dict(alert.metadata)
            if notes:
                metadata["resolution_notes"] = notes
            alert = await self._transition(
                alert, AlertStatus.RESOLVED, actor, reason or notes,
                resolved_at=self._clock(), resolved_by=actor, metadata=metadata,
            )
            await self._cancel(alert_id)
        return alert

    async def reassign(self, alert_id: str, user_id: str, actor: str) -> Alert:
        async with self._locked(self._alert_locks, alert_id):
            alert = await self._load(alert_id)
            self._ensure_not_terminal(alert, "reassign")
            return await self._transition(
                alert, alert.status, actor, f"reassigned to {user_id}", assigned_to_user_id=user_id
            )

    async def apply(self, intent: AlertIntent) -> list[Alert]:
        """Carry out an intent emitted by the trigger evaluator."""
        if isinstance(intent, CreateAlertIntent):
            created = await self.create(intent)
            return [created] if created else []
        if isinstance(intent, ResolveAlertIntent):
            resolved: list[Alert] = []
            for alert_id in intent.alert_ids:
                try:
                    resolved.append(await self.resolve(alert_id, SYSTEM_ACTOR, reason=intent.reason))
                except (AlertNotFound, InvalidTransition):
                    logger.debug("Alert %s already closed, nothing to resolve", alert_id)
            return resolved
        raise TypeError(f"Unknown intent {intent!r}")

    # ── timers ───────────────────────────────────────────

    async def on_timer(self, timer: Timer) -> None:
        async with self._locked(self._alert_locks, timer.alert_id):
            alert = await db.get_alert(timer.alert_id)
            if alert is None:
                logger.warning("Timer %s fired for unknown alert %s", timer.kind.value, timer.alert_id)
                return
            if alert.is_terminal:
                logger.debug("Timer %s fired for %s alert %s, ignoring", timer.kind.value, alert.status.value, alert.id)
                return
            now = self._clock()
            if timer.kind == TimerKind.ESCALATION:
                await self._on_escalation_timer(alert, now)
            elif timer.kind == TimerKind.WAKE:
                await self._on_wake_timer(alert, now)
            elif timer.kind == TimerKind.AUTO_DISMISS:
                await self._on_auto_dismiss_timer(alert, now)

    async def _on_escalation_timer(self, alert: Alert, now: datetime) -> None:
        if alert.status != AlertStatus.OPEN:
            # Snoozed alerts are escalated by their wake timer
            return
        if self._escalation_due(alert, now):
            await self._escalate(alert, now)
        elif alert.escalation_deadline_at is not None and alert.acknowledged_at is None:
            await self._scheduler.schedule(alert.id, TimerKind.ESCALATION, alert.escalation_deadline_at)

    async def _on_wake_timer(self, alert: Alert, now: datetime) -> None:
        if alert.status != AlertStatus.SNOOZED:
            return
        if alert.snoozed_until is not None and alert.snoozed_until > now:
            await self._scheduler.schedule(alert.id, TimerKind.WAKE, alert.snoozed_until)
            return
        alert = await self._transition(
            alert, AlertStatus.OPEN, SYSTEM_ACTOR, "snooze expired", snoozed_until=None
        )
        if self._escalation_due(alert, now):
            # Waking never buys a fresh deadline
            await self._escalate(alert, now)
        elif alert.escalation_deadline_at is not None and alert.acknowledged_at is None:
            await self._scheduler.schedule(alert.id, TimerKind.ESCALATION, alert.escalation_deadline_at)

    async def _on_auto_dismiss_timer(self, alert: Alert, now: datetime) -> None:
        if alert.acknowledged_at is not None:
            return
        rule = self._rule(alert.severity)
        alert = await self._transition(
            alert, AlertStatus.AUTO_DISMISSED, SYSTEM_ACTOR, "no activity", auto_dismissed_at=now
        )
        await self._cancel(alert.id)
        if self._notify_on_auto_dismiss:
            self._notify(alert, rule.notify_roles, rule.notify_channels or [Channel.IN_APP], "auto_dismissed")

    async def restore_timers(self) -> int:
        """Re-derive timers missing for active alerts; returns how many were put back.

        Runs at startup and periodically from the sweep loop, so a timer
        write that failed after its retries is repaired without a restart.
        """
        restored = 0
        for candidate in await db.list_all_active_alerts():
            async with self._locked(self._alert_locks, candidate.id):
                alert = await db.get_alert(candidate.id)
                if alert is None or alert.is_terminal:
                    continue
                kinds = {t.kind for t in await db.get_timers(alert.id)}
                for kind, fire_at in self._wanted_timers(alert):
                    if kind not in kinds:
                        await self._scheduler.schedule(alert.id, kind, fire_at)
                        restored += 1
        if restored:
            logger.warning("Restored %d missing timer(s)", restored)
        return restored

    async def recover(self) -> int:
        """Re-derive missing timers, then fire the overdue backlog."""
        await self.restore_timers()
        return await self._scheduler.recover()

    def _wanted_timers(self, alert: Alert) -> list[tuple[TimerKind, datetime]]:
        rule = self._table.rule_for(alert.severity)
        wanted: list[tuple[TimerKind, datetime]] = []
        if alert.status == AlertStatus.SNOOZED and alert.snoozed_until is not None:
            wanted.append((TimerKind.WAKE, alert.snoozed_until))
        elif (
            alert.status == AlertStatus.OPEN
            and alert.acknowledged_at is None
            and alert.escalated_at is None
            and alert.escalation_deadline_at is not None
        ):
            wanted.append((TimerKind.ESCALATION, alert.escalation_deadline_at))
        if rule is not None and rule.auto_dismiss_after is not None and alert.acknowledged_at is None:
            start = alert.snoozed_until or alert.created_at
            wanted.append((TimerKind.AUTO_DISMISS, start + rule.auto_dismiss_after))
        return wanted

    # ── internals ────────────────────────────────────────

    @staticmethod
    @asynccontextmanager
    async def _locked(locks: dict[Any, _LockEntry], key: Hashable) -> AsyncIterator[None]:
        entry = locks.get(key)
        if entry is None:
            entry = locks[key] = _LockEntry()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del locks[key]

    def _rule(self, severity) -> SeverityRule:
        rule = self._table.rule_for(severity)
        if rule is None:
            raise ConfigurationError(f"No rule configured for severity {severity}")
        return rule

    async def _load(self, alert_id: str) -> Alert:
        alert = await db.get_alert(alert_id)
        if alert is None:
            raise AlertNotFound(alert_id)
        return alert

    @staticmethod
    def _ensure_not_terminal(alert: Alert, action: str) -> None:
        if alert.is_terminal:
            raise InvalidTransition(
                f"Cannot {action} an alert that is {alert.status.value}", ReasonCode.ALERT_TERMINAL
            )

    def _escalation_due(self, alert: Alert, now: datetime) -> bool:
        rule = self._table.rule_for(alert.severity)
        return (
            rule is not None
            and rule.escalation is not None
            and alert.status in (AlertStatus.OPEN, AlertStatus.SNOOZED)
            and alert.acknowledged_at is None
            and alert.escalated_at is None
            and alert.escalation_deadline_at is not None
            and alert.escalation_deadline_at <= now
        )

    async def _escalate(self, alert: Alert, now: datetime) -> Alert:
        policy = self._rule(alert.severity).escalation
        alert = await self._transition(
            alert, AlertStatus.ESCALATED, SYSTEM_ACTOR, "not acknowledged before deadline",
            escalated_at=now, escalation_target_roles=list(policy.escalate_to),
        )
        await self._cancel(alert.id, TimerKind.ESCALATION)
        logger.warning(
            "Escalated %s alert %s to %s", alert.severity.value, alert.id, ", ".join(policy.escalate_to)
        )
        self._notify(alert, policy.escalate_to, policy.notify_channels, "escalated")
        return alert

    async def _transition(
        self,
        alert: Alert,
        to_status: AlertStatus,
        actor: str,
        reason: str | None,
        **changes: Any,
    ) -> Alert:
        updated = alert.model_copy(update={"status": to_status, "version": alert.version + 1, **changes})
        transition = AlertTransition(
            alert_id=alert.id, from_status=alert.status, to_status=to_status,
            actor=actor, reason=reason, at=self._clock(),
        )
        if not await db.update_alert(updated, alert.version, transition):
            raise ConcurrencyConflict(f"Alert {alert.id} was modified concurrently; re-read and retry")
        await self._changed(updated, transition)
        return updated

    async def _cancel(self, alert_id: str, *kinds: TimerKind) -> None:
        try:
            await self._scheduler.cancel(alert_id, *kinds)
        except TimerSchedulingError:
            # Stale timers are no-ops when they fire against the new state
            logger.error("Could not cancel timers for alert %s", alert_id)

    async def _changed(self, alert: Alert, transition: AlertTransition) -> None:
        if self._on_change is None:
            return
        try:
            await self._on_change(alert, transition)
        except Exception:
            logger.exception("on_change callback failed for alert %s", alert.id)

    def _notify(self, alert: Alert, roles, channels, reason: str) -> None:
        if self._dispatch is None or not channels:
            return
        self._dispatch.submit(alert, roles, channels, reason)
