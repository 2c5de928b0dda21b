from __future__ import annotations

from datetime import timedelta

import pytest

from fleetalerts.db import database as db_mod
from fleetalerts.engine.scope import COMPANY_VIEW, ScopeResolver, can_access, count_alerts
from fleetalerts.errors import AlertNotFound
from fleetalerts.models.alert import AlertCategory, AlertStatus, Severity
from fleetalerts.models.scope import AccessGrant, AlertCounts, AlertFilters, Caller, Role


def _fleet(company: str = "acme") -> Caller:
    return Caller(user_id="dpa-1", role=Role.DPA, grant=AccessGrant(company_id=company, fleet_wide=True))


def _vessel(vessel: str = "V1", company: str = "acme") -> Caller:
    return Caller(user_id="cap-1", role=Role.CAPTAIN, grant=AccessGrant(company_id=company, vessel_id=vessel))


@pytest.fixture()
def resolver(clock):
    return ScopeResolver(clock=clock)


@pytest.fixture()
async def seeded(db, make_alert, clock):
    alerts = [
        make_alert(vessel_id="V1", severity=Severity.RED),
        make_alert(vessel_id="V1", severity=Severity.YELLOW, category=AlertCategory.AUDIT,
                   due_at=clock.now - timedelta(days=1)),
        make_alert(vessel_id="V2", severity=Severity.ORANGE, category=AlertCategory.CAPA),
        make_alert(vessel_id=None, severity=Severity.ORANGE, category=AlertCategory.TRAINING),
        make_alert(vessel_id="V1", status=AlertStatus.RESOLVED),
        make_alert(company_id="other", vessel_id="V1"),
    ]
    for a in alerts:
        await db_mod.insert_alert(a)
    return alerts


class TestCanAccess:
    def test_fleet_grant_sees_whole_company(self, make_alert):
        grant = AccessGrant(company_id="acme", fleet_wide=True)
        assert can_access(grant, make_alert(vessel_id="V9"))
        assert can_access(grant, make_alert(vessel_id=None))
        assert not can_access(grant, make_alert(company_id="other"))

    def test_vessel_grant_sees_only_its_vessel(self, make_alert):
        grant = AccessGrant(company_id="acme", vessel_id="V1")
        assert can_access(grant, make_alert(vessel_id="V1"))
        assert not can_access(grant, make_alert(vessel_id="V2"))
        assert not can_access(grant, make_alert(vessel_id=None))
        assert not can_access(AccessGrant(company_id="other", vessel_id="V1"), make_alert(vessel_id="V1"))


class TestVisibleAlerts:
    @pytest.mark.asyncio
    async def test_vessel_caller(self, resolver, seeded):
        alerts = await resolver.visible_alerts(_vessel("V1"))
        assert len(alerts) == 2
        assert all(a.vessel_id == "V1" and a.company_id == "acme" for a in alerts)

    @pytest.mark.asyncio
    async def test_vessel_caller_cannot_widen(self, resolver, seeded):
        assert await resolver.visible_alerts(_vessel("V1"), AlertFilters(vessel_id="V2")) == []

    @pytest.mark.asyncio
    async def test_fleet_caller(self, resolver, seeded):
        assert len(await resolver.visible_alerts(_fleet())) == 4
        assert len(await resolver.visible_alerts(_fleet(), AlertFilters(vessel_id="V2"))) == 1
        assert len(await resolver.visible_alerts(_fleet(), AlertFilters(include_terminal=True))) == 5

    @pytest.mark.asyncio
    async def test_filters(self, resolver, seeded):
        reds = await resolver.visible_alerts(_fleet(), AlertFilters(severity=Severity.RED))
        assert len(reds) == 1
        capa = await resolver.visible_alerts(_fleet(), AlertFilters(category=AlertCategory.CAPA))
        assert [a.vessel_id for a in capa] == ["V2"]

    @pytest.mark.asyncio
    async def test_other_company(self, resolver, seeded):
        assert len(await resolver.visible_alerts(_fleet("other"))) == 1

    @pytest.mark.asyncio
    async def test_get_alert_outside_grant_is_not_found(self, resolver, seeded):
        v2_alert = seeded[2]
        assert (await resolver.get_alert(_fleet(), v2_alert.id)).id == v2_alert.id
        with pytest.raises(AlertNotFound):
            await resolver.get_alert(_vessel("V1"), v2_alert.id)
        with pytest.raises(AlertNotFound):
            await resolver.get_alert(_vessel("V1"), "missing")


class TestCounts:
    def test_count_alerts(self, make_alert, clock):
        counts = count_alerts(
            [make_alert(), make_alert(severity=Severity.GREEN, due_at=clock.now - timedelta(hours=1))],
            clock.now,
        )
        assert counts.total == 2
        assert counts.overdue == 1
        assert counts.by_severity[Severity.RED] == 1
        assert counts.by_severity[Severity.YELLOW] == 0
        assert counts.by_category == {"defect": 2}

    @pytest.mark.asyncio
    async def test_per_vessel_views(self, resolver, seeded):
        views = await resolver.per_vessel_counts(_fleet())
        assert set(views) == {"V1", "V2", COMPANY_VIEW}
        assert views["V1"].total == 2
        assert views["V1"].overdue == 1
        assert views[COMPANY_VIEW].total == 1

    @pytest.mark.asyncio
    async def test_aggregate_equals_sum_of_views(self, resolver, seeded):
        views = await resolver.per_vessel_counts(_fleet())
        total = await resolver.aggregate_counts(_fleet())
        assert total == sum(views.values(), AlertCounts())
        assert total.total == 4
        assert total.by_severity[Severity.ORANGE] == 2

    @pytest.mark.asyncio
    async def test_vessel_caller_counts(self, resolver, seeded):
        total = await resolver.aggregate_counts(_vessel("V2"))
        assert total.total == 1
        assert total.by_category == {"capa": 1}

    @pytest.mark.asyncio
    async def test_counts_ignore_pagination(self, resolver, db, make_alert):
        for _ in range(5):
            await db_mod.insert_alert(make_alert())
        total = await resolver.aggregate_counts(_fleet(), AlertFilters(limit=2))
        assert total.total == 5
