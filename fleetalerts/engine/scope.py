from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from typing import Iterable

from fleetalerts.db import database as db
from fleetalerts.engine.timers import Clock
from fleetalerts.errors import AlertNotFound
from fleetalerts.models.alert import Alert, utcnow
from fleetalerts.models.scope import AccessGrant, AlertCounts, AlertFilters, Caller

# Key of the company-level view (alerts with no vessel) in per-view counts
COMPANY_VIEW = "__company__"


def can_access(grant: AccessGrant, alert: Alert) -> bool:
    if alert.company_id != grant.company_id:
        return False
    if grant.fleet_wide:
        return True
    return alert.vessel_id is not None and alert.vessel_id == grant.vessel_id


def count_alerts(alerts: Iterable[Alert], now: datetime) -> AlertCounts:
    counts = AlertCounts()
    for alert in alerts:
        counts.by_severity[alert.severity] = counts.by_severity.get(alert.severity, 0) + 1
        category = alert.category.value
        counts.by_category[category] = counts.by_category.get(category, 0) + 1
        counts.total += 1
        if alert.overdue_at(now):
            counts.overdue += 1
    return counts


class ScopeResolver:
    """Restricts alerts and counts to what a caller's grant covers."""

    def __init__(self, clock: Clock = utcnow) -> None:
        self._clock = clock

    def filter_visible(self, caller: Caller, alerts: Iterable[Alert]) -> list[Alert]:
        return [a for a in alerts if can_access(caller.grant, a)]

    async def visible_alerts(self, caller: Caller, filters: AlertFilters | None = None) -> list[Alert]:
        filters = filters or AlertFilters()
        return await self._load(caller, filters, paginate=True)

    async def get_alert(self, caller: Caller, alert_id: str) -> Alert:
        """Fetch one alert; alerts outside the grant look exactly like missing ones."""
        alert = await db.get_alert(alert_id)
        if alert is None or not can_access(caller.grant, alert):
            raise AlertNotFound(alert_id)
        return alert

    async def per_vessel_counts(
        self, caller: Caller, filters: AlertFilters | None = None
    ) -> dict[str, AlertCounts]:
        """Counts per view: one per vessel, plus the company-level view for fleet grants."""
        alerts = await self._load(caller, filters or AlertFilters(), paginate=False)
        grouped: defaultdict[str, list[Alert]] = defaultdict(list)
        for alert in alerts:
            grouped[alert.vessel_id or COMPANY_VIEW].append(alert)
        now = self._clock()
        return {view: count_alerts(items, now) for view, items in grouped.items()}

    async def aggregate_counts(self, caller: Caller, filters: AlertFilters | None = None) -> AlertCounts:
        # Always the sum of the per-view counts, so "all vessels" and the
        # per-vessel tiles can never disagree
        views = await self.per_vessel_counts(caller, filters)
        return sum(views.values(), AlertCounts())

    async def _load(self, caller: Caller, filters: AlertFilters, paginate: bool) -> list[Alert]:
        grant = caller.grant
        if grant.fleet_wide:
            vessel_id = filters.vessel_id
        else:
            if filters.vessel_id and filters.vessel_id != grant.vessel_id:
                return []
            vessel_id = grant.vessel_id
        alerts = await db.list_alerts(
            grant.company_id,
            vessel_id=vessel_id,
            severity=filters.severity.value if filters.severity else None,
            category=filters.category.value if filters.category else None,
            status=filters.status.value if filters.status else None,
            include_terminal=filters.include_terminal,
            limit=filters.limit if paginate else None,
            offset=filters.offset if paginate else 0,
        )
        return self.filter_visible(caller, alerts)
