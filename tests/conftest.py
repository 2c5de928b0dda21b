from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from fleetalerts.alerts.dispatcher import BackgroundDispatch
from fleetalerts.engine.lifecycle import AlertLifecycleManager
from fleetalerts.engine.timers import TimerScheduler
from fleetalerts.models.alert import Alert, AlertCategory, Severity
from fleetalerts.models.fact import Fact
from fleetalerts.rules.table import parse_rule_table, DEFAULT_RULE_TABLE


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingDispatcher:
    """Stands in for a notification dispatcher and records every call."""

    def __init__(self):
        self.calls: list[tuple[Alert, list[str], list, str]] = []

    async def dispatch(self, alert, target_roles, channels, reason="created"):
        self.calls.append((alert, list(target_roles), list(channels), reason))

    def reasons(self) -> list[str]:
        return [c[3] for c in self.calls]


@pytest.fixture()
def db_path(tmp_path):
    path = str(tmp_path / "test_fleetalerts.db")
    with patch("fleetalerts.db.database.settings") as mock_settings:
        mock_settings.db_path = path
        yield path


@pytest.fixture()
async def db(db_path):
    from fleetalerts.db.database import init_db
    await init_db()
    yield db_path


@pytest.fixture()
def rule_table():
    return parse_rule_table(DEFAULT_RULE_TABLE)


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def recorder():
    return RecordingDispatcher()


@pytest.fixture()
def scheduler(clock):
    return TimerScheduler(clock=clock, interval=0.05, retry_delays=[])


@pytest.fixture()
def background(recorder):
    return BackgroundDispatch(recorder)


@pytest.fixture()
def lifecycle(db, rule_table, scheduler, background, clock):
    return AlertLifecycleManager(rule_table, scheduler, dispatch=background, clock=clock)


@pytest.fixture()
def make_fact():
    def _factory(**kwargs):
        defaults = dict(
            category="defect",
            entity_id="DEF-001",
            company_id="acme",
            vessel_id="V1",
            attributes={"ism_critical": True, "status": "OPEN"},
            source_module="defects",
        )
        defaults.update(kwargs)
        return Fact(**defaults)
    return _factory


@pytest.fixture()
def make_alert():
    def _factory(**kwargs):
        defaults = dict(
            category=AlertCategory.DEFECT,
            severity=Severity.RED,
            title="Test alert",
            company_id="acme",
            vessel_id="V1",
            related_entity_id="DEF-001",
        )
        defaults.update(kwargs)
        return Alert(**defaults)
    return _factory
