from __future__ import annotations

import logging
from dataclasses import dataclass

from fleetalerts.alerts.dispatcher import BackgroundDispatch, NotificationDispatcher
from fleetalerts.config import Settings
from fleetalerts.engine.evaluator import TriggerEvaluator
from fleetalerts.engine.ingest import FactBus, FactProcessor
from fleetalerts.engine.lifecycle import AlertLifecycleManager, OnChangeCallback
from fleetalerts.engine.scope import ScopeResolver
from fleetalerts.engine.timers import Clock, TimerScheduler
from fleetalerts.models.alert import utcnow
from fleetalerts.models.rules import RuleTable

logger = logging.getLogger(__name__)


@dataclass
class AlertEngine:
    rule_table: RuleTable
    evaluator: TriggerEvaluator
    scheduler: TimerScheduler
    lifecycle: AlertLifecycleManager
    scope: ScopeResolver
    bus: FactBus
    processor: FactProcessor
    background: BackgroundDispatch | None = None

    async def start(self) -> None:
        await self.processor.start()
        await self.bus.start()
        fired = await self.lifecycle.recover()
        if fired:
            logger.info("Recovery sweep fired %d timer(s)", fired)
        await self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()
        # Lanes drain into the processor, so it unsubscribes last
        await self.bus.stop()
        await self.processor.stop()
        if self.background is not None:
            await self.background.drain()


def build_engine(
    rule_table: RuleTable,
    settings: Settings,
    dispatcher: NotificationDispatcher | None = None,
    clock: Clock = utcnow,
    on_change: OnChangeCallback | None = None,
) -> AlertEngine:
    scheduler = TimerScheduler(
        clock=clock,
        interval=settings.sweep_interval,
        retry_delays=settings.timer_retry_delays,
        reconcile_interval=settings.timer_reconcile_interval,
    )
    background = BackgroundDispatch(dispatcher) if dispatcher is not None else None
    lifecycle = AlertLifecycleManager(
        rule_table,
        scheduler,
        dispatch=background,
        clock=clock,
        notify_on_auto_dismiss=settings.notify_on_auto_dismiss,
        on_change=on_change,
    )
    evaluator = TriggerEvaluator(rule_table)
    bus = FactBus(max_concurrency=settings.fact_concurrency)
    return AlertEngine(
        rule_table=rule_table,
        evaluator=evaluator,
        scheduler=scheduler,
        lifecycle=lifecycle,
        scope=ScopeResolver(clock=clock),
        bus=bus,
        processor=FactProcessor(bus, evaluator, lifecycle),
        background=background,
    )
