from __future__ import annotations

import asyncio
import logging

import pytest

from fleetalerts.alerts.dispatcher import BackgroundDispatch, ChannelDispatcher, Notification
from fleetalerts.alerts.log_notifier import log_notify
from fleetalerts.models.alert import Alert, AlertCategory, Channel, Severity


def _make_alert(severity: Severity = Severity.RED) -> Alert:
    return Alert(category=AlertCategory.DEFECT, severity=severity, title="test", company_id="acme", vessel_id="V1")


class TestChannelDispatcher:
    @pytest.mark.asyncio
    async def test_routes_to_matching_channel(self):
        dispatcher = ChannelDispatcher(retry_delays=[])
        received: list[Notification] = []

        async def notifier(n: Notification):
            received.append(n)

        dispatcher.add_route(Channel.IN_APP, notifier)
        await dispatcher.dispatch(_make_alert(), ["DPA"], [Channel.IN_APP])
        assert len(received) == 1
        assert received[0].roles == ["DPA"]
        assert received[0].reason == "created"

    @pytest.mark.asyncio
    async def test_skips_unrouted_channel(self):
        dispatcher = ChannelDispatcher(retry_delays=[])
        received: list[Notification] = []

        async def notifier(n: Notification):
            received.append(n)

        dispatcher.add_route(Channel.EMAIL, notifier)
        await dispatcher.dispatch(_make_alert(), ["DPA"], [Channel.IN_APP, Channel.SMS])
        assert received == []

    @pytest.mark.asyncio
    async def test_multiple_channels(self):
        dispatcher = ChannelDispatcher(retry_delays=[])
        in_app: list[Notification] = []
        email: list[Notification] = []

        async def app_notifier(n): in_app.append(n)
        async def email_notifier(n): email.append(n)

        dispatcher.add_route(Channel.IN_APP, app_notifier)
        dispatcher.add_route(Channel.EMAIL, email_notifier)
        await dispatcher.dispatch(_make_alert(), ["DPA", "CAPTAIN"], [Channel.IN_APP, Channel.EMAIL], "escalated")
        assert len(in_app) == 1
        assert len(email) == 1
        assert email[0].reason == "escalated"

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        dispatcher = ChannelDispatcher(retry_delays=[0, 0])
        attempts = {"n": 0}

        async def flaky(n):
            attempts["n"] += 1
            if attempts["n"] < 3:
                raise ConnectionError("down")

        dispatcher.add_route(Channel.EMAIL, flaky)
        await dispatcher.dispatch(_make_alert(), ["DPA"], [Channel.EMAIL])
        assert attempts["n"] == 3

    @pytest.mark.asyncio
    async def test_failing_notifier_does_not_block_others(self):
        dispatcher = ChannelDispatcher(retry_delays=[0])
        received: list[Notification] = []

        async def bad(n):
            raise RuntimeError("boom")

        async def good(n):
            received.append(n)

        dispatcher.add_route(Channel.EMAIL, bad)
        dispatcher.add_route(Channel.IN_APP, good)
        await dispatcher.dispatch(_make_alert(), ["DPA"], [Channel.EMAIL, Channel.IN_APP])
        assert len(received) == 1


class TestBackgroundDispatch:
    @pytest.mark.asyncio
    async def test_submit_does_not_wait(self):
        gate = asyncio.Event()
        received: list[Notification] = []

        async def slow(n):
            await gate.wait()
            received.append(n)

        dispatcher = ChannelDispatcher(retry_delays=[])
        dispatcher.add_route(Channel.IN_APP, slow)
        background = BackgroundDispatch(dispatcher)
        background.submit(_make_alert(), ["DPA"], [Channel.IN_APP])
        assert background.pending == 1
        assert received == []
        gate.set()
        await background.drain()
        assert len(received) == 1
        assert background.pending == 0

    @pytest.mark.asyncio
    async def test_dispatcher_error_is_contained(self):
        class Broken:
            async def dispatch(self, *args, **kwargs):
                raise RuntimeError("boom")

        background = BackgroundDispatch(Broken())
        task = background.submit(_make_alert(), ["DPA"], [Channel.IN_APP])
        await background.drain()
        assert task.exception() is None


class TestLogNotifier:
    @pytest.mark.asyncio
    async def test_levels(self, caplog):
        caplog.set_level(logging.DEBUG, logger="fleetalerts.notifications")
        await log_notify(Notification(alert=_make_alert(Severity.RED), roles=["DPA"], channels=[Channel.IN_APP]))
        await log_notify(Notification(alert=_make_alert(Severity.YELLOW), roles=[], channels=[Channel.IN_APP]))
        await log_notify(Notification(
            alert=_make_alert(Severity.ORANGE), roles=["DPA"], channels=[Channel.IN_APP], reason="escalated",
        ))
        levels = [r.levelno for r in caplog.records]
        assert levels == [logging.ERROR, logging.INFO, logging.CRITICAL]
