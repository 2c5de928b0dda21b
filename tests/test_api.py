from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from fleetalerts.api.routes import router, ws_router
from fleetalerts.config import Settings
from fleetalerts.db import database as db_mod
from fleetalerts.engine.runtime import build_engine
from fleetalerts.errors import TimerSchedulingError


def _headers(role: str = "dpa", vessel: str | None = None, user: str = "u1", company: str = "acme") -> dict:
    headers = {"X-User-Id": user, "X-Role": role, "X-Company-Id": company}
    if vessel:
        headers["X-Vessel-Id"] = vessel
    return headers


DPA = _headers("dpa")
CAPTAIN_V1 = _headers("captain", "V1", user="cap-1")
CAPTAIN_V2 = _headers("captain", "V2", user="cap-2")


@pytest.fixture()
def engine(db, rule_table, clock):
    return build_engine(rule_table, Settings(timer_retry_delays=[]), clock=clock)


@pytest.fixture()
def app(engine):
    """Test app with a real database but no background loops."""
    test_app = FastAPI()
    test_app.include_router(router)
    test_app.include_router(ws_router)
    test_app.state.engine = engine
    return test_app


@pytest.fixture()
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture()
def raise_alert(engine, make_fact):
    async def _raise(**kwargs):
        (alert,) = await engine.processor.process(make_fact(**kwargs))
        return alert
    return _raise


class TestCallerHeaders:
    @pytest.mark.asyncio
    async def test_missing_headers(self, client):
        resp = await client.get("/api/alerts")
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_unknown_role(self, client):
        resp = await client.get("/api/alerts", headers=_headers("admiral"))
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_shipboard_role_without_vessel(self, client):
        resp = await client.get("/api/alerts", headers=_headers("captain"))
        assert resp.status_code == 403
        assert resp.json()["detail"]["code"] == "permission_denied"


class TestListAlerts:
    @pytest.mark.asyncio
    async def test_empty(self, client):
        resp = await client.get("/api/alerts", headers=DPA)
        assert resp.status_code == 200
        assert resp.json() == {"alerts": [], "count": 0}

    @pytest.mark.asyncio
    async def test_scope(self, client, raise_alert):
        await raise_alert(vessel_id="V1")
        await raise_alert(vessel_id="V2", entity_id="DEF-002")
        assert (await client.get("/api/alerts", headers=DPA)).json()["count"] == 2
        data = (await client.get("/api/alerts", headers=CAPTAIN_V1)).json()
        assert data["count"] == 1
        assert data["alerts"][0]["vessel_id"] == "V1"

    @pytest.mark.asyncio
    async def test_filters(self, client, raise_alert):
        await raise_alert()
        await raise_alert(category="audit", entity_id="AUD-1", attributes={"scheduled_within_days": 5})
        resp = await client.get("/api/alerts", params={"severity": "YELLOW"}, headers=DPA)
        assert resp.json()["count"] == 1
        assert resp.json()["alerts"][0]["category"] == "audit"

    @pytest.mark.asyncio
    async def test_crew_cannot_list(self, client):
        resp = await client.get("/api/alerts", headers=_headers("crew", "V1"))
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_limit_bounds(self, client):
        resp = await client.get("/api/alerts", params={"limit": 5000}, headers=DPA)
        assert resp.status_code == 422


class TestSingleAlert:
    @pytest.mark.asyncio
    async def test_get(self, client, raise_alert):
        alert = await raise_alert()
        resp = await client.get(f"/api/alerts/{alert.id}", headers=CAPTAIN_V1)
        assert resp.status_code == 200
        assert resp.json()["id"] == alert.id

    @pytest.mark.asyncio
    async def test_outside_scope_is_404(self, client, raise_alert):
        alert = await raise_alert()
        resp = await client.get(f"/api/alerts/{alert.id}", headers=CAPTAIN_V2)
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_history(self, client, raise_alert):
        alert = await raise_alert()
        await client.post(f"/api/alerts/{alert.id}/acknowledge", headers=CAPTAIN_V1)
        resp = await client.get(f"/api/alerts/{alert.id}/history", headers=DPA)
        statuses = [t["to_status"] for t in resp.json()["transitions"]]
        assert statuses == ["OPEN", "ACKNOWLEDGED"]


class TestActions:
    @pytest.mark.asyncio
    async def test_acknowledge(self, client, raise_alert):
        alert = await raise_alert()
        resp = await client.post(
            f"/api/alerts/{alert.id}/acknowledge", json={"notes": "crew informed"}, headers=CAPTAIN_V1
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "ACKNOWLEDGED"
        assert resp.json()["alert"]["acknowledged_by"] == "cap-1"

    @pytest.mark.asyncio
    async def test_acknowledge_twice(self, client, raise_alert):
        alert = await raise_alert()
        await client.post(f"/api/alerts/{alert.id}/acknowledge", headers=CAPTAIN_V1)
        resp = await client.post(f"/api/alerts/{alert.id}/acknowledge", headers=CAPTAIN_V1)
        assert resp.status_code == 422
        assert resp.json()["detail"]["code"] == "invalid_transition"

    @pytest.mark.asyncio
    async def test_acknowledge_nonexistent(self, client):
        resp = await client.post("/api/alerts/nope/acknowledge", headers=DPA)
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_acknowledge_other_vessel(self, client, raise_alert):
        alert = await raise_alert()
        resp = await client.post(f"/api/alerts/{alert.id}/acknowledge", headers=CAPTAIN_V2)
        assert resp.status_code == 404
        assert (await db_mod.get_alert(alert.id)).status == "OPEN"

    @pytest.mark.asyncio
    async def test_snooze_requires_reason_for_red(self, client, raise_alert):
        alert = await raise_alert()
        resp = await client.post(f"/api/alerts/{alert.id}/snooze", json={"hours": 2}, headers=CAPTAIN_V1)
        assert resp.status_code == 422
        assert resp.json()["detail"]["code"] == "reason_required"

    @pytest.mark.asyncio
    async def test_snooze(self, client, raise_alert):
        alert = await raise_alert()
        resp = await client.post(
            f"/api/alerts/{alert.id}/snooze", json={"hours": 2, "reason": "awaiting spares"}, headers=CAPTAIN_V1
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "SNOOZED"
        assert resp.json()["until"] is not None

    @pytest.mark.asyncio
    async def test_purser_cannot_snooze(self, client, raise_alert):
        alert = await raise_alert()
        resp = await client.post(
            f"/api/alerts/{alert.id}/snooze", json={"hours": 2, "reason": "x"}, headers=_headers("purser", "V1")
        )
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_resolve(self, client, raise_alert):
        alert = await raise_alert()
        resp = await client.post(f"/api/alerts/{alert.id}/resolve", json={"notes": "repaired"}, headers=CAPTAIN_V1)
        assert resp.status_code == 200
        assert resp.json()["status"] == "RESOLVED"
        resp = await client.post(f"/api/alerts/{alert.id}/resolve", headers=CAPTAIN_V1)
        assert resp.json()["detail"]["code"] == "alert_terminal"

    @pytest.mark.asyncio
    async def test_reassign(self, client, raise_alert):
        alert = await raise_alert()
        resp = await client.post(f"/api/alerts/{alert.id}/reassign", json={"user_id": "ce-1"}, headers=DPA)
        assert resp.status_code == 200
        assert resp.json()["alert"]["assigned_to_user_id"] == "ce-1"
        resp = await client.post(f"/api/alerts/{alert.id}/reassign", json={"user_id": "x"}, headers=CAPTAIN_V1)
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_version_conflict_is_409(self, client, raise_alert):
        alert = await raise_alert()
        with patch.object(db_mod, "update_alert", AsyncMock(return_value=False)):
            resp = await client.post(f"/api/alerts/{alert.id}/acknowledge", headers=CAPTAIN_V1)
        assert resp.status_code == 409

    @pytest.mark.asyncio
    async def test_timer_store_down_is_503(self, client, raise_alert, engine):
        alert = await raise_alert()
        failing = AsyncMock(side_effect=TimerSchedulingError("store down"))
        with patch.object(engine.scheduler, "schedule", failing):
            resp = await client.post(
                f"/api/alerts/{alert.id}/snooze", json={"hours": 2, "reason": "awaiting spares"}, headers=CAPTAIN_V1
            )
        assert resp.status_code == 503
        assert resp.json()["detail"]["code"] == "timer_store_unavailable"
        assert (await db_mod.get_alert(alert.id)).status == "OPEN"


class TestCounts:
    @pytest.mark.asyncio
    async def test_counts(self, client, raise_alert):
        await raise_alert(vessel_id="V1")
        await raise_alert(vessel_id="V2", entity_id="DEF-002")
        await raise_alert(vessel_id=None, category="training", entity_id="TR-1",
                          attributes={"required": True, "overdue": True})
        data = (await client.get("/api/alerts/counts", headers=DPA)).json()
        assert data["total"] == 3
        assert data["by_severity"]["RED"] == 2
        assert data["by_severity"]["ORANGE"] == 1
        assert (await client.get("/api/alerts/counts", headers=CAPTAIN_V1)).json()["total"] == 1

    @pytest.mark.asyncio
    async def test_vessel_views_sum_to_total(self, client, raise_alert):
        await raise_alert(vessel_id="V1")
        await raise_alert(vessel_id="V2", entity_id="DEF-002")
        views = (await client.get("/api/alerts/counts/vessels", headers=DPA)).json()["views"]
        total = (await client.get("/api/alerts/counts", headers=DPA)).json()["total"]
        assert sum(v["total"] for v in views.values()) == total == 2

    @pytest.mark.asyncio
    async def test_hod_cannot_view_summary(self, client):
        resp = await client.get("/api/alerts/counts", headers=_headers("hod", "V1"))
        assert resp.status_code == 403


class TestFactsAndStatus:
    @pytest.mark.asyncio
    async def test_ingest_queues_facts(self, client, engine):
        facts = [
            {"category": "defect", "entity_id": "DEF-9", "company_id": "acme", "vessel_id": "V1",
             "attributes": {"ism_critical": True, "status": "OPEN"}},
            {"category": "weather", "entity_id": "W-1", "company_id": "acme"},
        ]
        resp = await client.post("/api/facts", json=facts)
        assert resp.status_code == 202
        assert resp.json()["count"] == 2
        assert engine.bus.pending == 2

    @pytest.mark.asyncio
    async def test_rules(self, client):
        resp = await client.get("/api/rules")
        assert resp.status_code == 200
        assert resp.json()["version"] == "3.2"
        assert resp.json()["rules"]["RED"]["escalation"]["deadline_minutes"] == 30

    @pytest.mark.asyncio
    async def test_status(self, client):
        resp = await client.get("/api/status")
        assert resp.status_code == 200
        assert resp.json()["status"] == "running"
        assert resp.json()["rule_version"] == "3.2"
