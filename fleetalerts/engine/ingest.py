from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Awaitable, Callable, Iterable

from fleetalerts.db import database as db
from fleetalerts.engine.evaluator import TriggerEvaluator
from fleetalerts.engine.lifecycle import AlertLifecycleManager
from fleetalerts.errors import ConfigurationError
from fleetalerts.models.alert import Alert
from fleetalerts.models.fact import Fact

logger = logging.getLogger(__name__)

Subscriber = Callable[[Fact], Awaitable[None]]
LaneKey = tuple[str, str, str]


def lane_key(fact: Fact) -> LaneKey:
    """Facts sharing this key describe the same entity and must stay ordered."""
    return (fact.company_id, fact.category, fact.entity_id)


class FactBus:
    """Delivers published facts to subscribers, one ordered lane per entity.

    Facts about one entity reach subscribers strictly in publish order.
    Lanes for different entities run concurrently, at most
    ``max_concurrency`` at a time.
    """

    def __init__(self, max_concurrency: int = 8, maxsize: int = 0, drain_timeout: float = 5.0) -> None:
        self._inbox: asyncio.Queue[Fact] = asyncio.Queue(maxsize=maxsize)
        self._lanes: dict[LaneKey, deque[Fact]] = {}
        self._lane_tasks: set[asyncio.Task] = set()
        self._slots = asyncio.Semaphore(max_concurrency)
        self._drain_timeout = drain_timeout
        self._subscribers: list[Subscriber] = []
        self._router: asyncio.Task | None = None

    def subscribe(self, callback: Subscriber) -> None:
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        self._subscribers.remove(callback)

    async def publish(self, fact: Fact) -> None:
        await self._inbox.put(fact)

    async def start(self) -> None:
        if self._router is not None:
            return
        self._router = asyncio.create_task(self._route())
        logger.info("FactBus started")

    async def stop(self) -> None:
        """Stop taking facts from the inbox and let open lanes finish."""
        if self._router is not None:
            self._router.cancel()
            try:
                await self._router
            except asyncio.CancelledError:
                pass
            self._router = None
        if self._lane_tasks:
            _, stuck = await asyncio.wait(set(self._lane_tasks), timeout=self._drain_timeout)
            for task in stuck:
                task.cancel()
            if stuck:
                logger.warning("Cancelled %d fact lane(s) still busy at shutdown", len(stuck))
        logger.info("FactBus stopped (%d fact(s) left in inbox)", self._inbox.qsize())

    @property
    def running(self) -> bool:
        return self._router is not None

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def active_lanes(self) -> int:
        return len(self._lanes)

    @property
    def pending(self) -> int:
        return self._inbox.qsize() + sum(len(lane) for lane in self._lanes.values())

    async def _route(self) -> None:
        while True:
            fact = await self._inbox.get()
            key = lane_key(fact)
            lane = self._lanes.get(key)
            if lane is not None:
                lane.append(fact)
                continue
            self._lanes[key] = deque([fact])
            task = asyncio.create_task(self._run_lane(key))
            self._lane_tasks.add(task)
            task.add_done_callback(self._lane_tasks.discard)

    async def _run_lane(self, key: LaneKey) -> None:
        lane = self._lanes[key]
        try:
            async with self._slots:
                while lane:
                    await self._deliver(lane.popleft())
        finally:
            # Nothing awaits between the empty check and here, so no fact is stranded
            self._lanes.pop(key, None)

    async def _deliver(self, fact: Fact) -> None:
        for sub in list(self._subscribers):
            try:
                await sub(fact)
            except Exception:
                logger.exception("Subscriber %s failed for fact %s (%s %s)", sub, fact.id, fact.category, fact.entity_id)


class FactProcessor:
    """Logs incoming facts and turns them into alert transitions."""

    def __init__(
        self,
        fact_bus: FactBus,
        evaluator: TriggerEvaluator,
        lifecycle: AlertLifecycleManager,
    ) -> None:
        self._bus = fact_bus
        self._evaluator = evaluator
        self._lifecycle = lifecycle

    async def start(self) -> None:
        self._bus.subscribe(self._handle_fact)
        logger.info("FactProcessor started")

    async def stop(self) -> None:
        self._bus.unsubscribe(self._handle_fact)
        logger.info("FactProcessor stopped")

    async def _handle_fact(self, fact: Fact) -> None:
        try:
            await db.insert_fact(fact)
        except Exception:
            logger.exception("Failed to log fact %s", fact.id)
        await self.process(fact)

    async def process(self, fact: Fact) -> list[Alert]:
        active = await db.get_active_alerts_for_entity(fact.company_id, fact.category, fact.entity_id)
        try:
            intent = self._evaluator.evaluate(fact, active)
        except ConfigurationError as exc:
            logger.error("Dropping fact %s from %s: %s", fact.id, fact.source_module or "unknown", exc)
            return []
        if intent is None:
            return []
        return await self._lifecycle.apply(intent)

    async def process_batch(self, facts: Iterable[Fact]) -> list[Alert]:
        """Process facts one by one; a failing fact never stops the rest."""
        changed: list[Alert] = []
        for fact in facts:
            try:
                changed.extend(await self.process(fact))
            except Exception:
                logger.exception("Failed to process fact %s", fact.id)
        return changed
