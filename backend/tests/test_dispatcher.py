"""Tests for notification delivery and the idempotent dispatcher."""

import asyncio

import httpx
import pytest

from core import metrics
from notifications.channels import (
    Notification,
    NotificationPriority,
    SlackChannel,
    TeamsChannel,
    WebhookChannel,
)
from notifications.dispatcher import NotificationDispatcher, dispatch_key, run_failure_key
from notifications.manager import NotificationManager

from conftest import ExplodingChannel, RecordingChannel, RecordingSleep


def _dispatcher(*channels, attempts: int = 3, sleep=None) -> NotificationDispatcher:
    manager = NotificationManager()
    for channel in channels:
        manager.register_channel(channel)
    return NotificationDispatcher(
        manager,
        escalation_channels=[c.channel_type for c in channels] or ["email"],
        escalation_recipients=["oncall@example.com"],
        max_delivery_attempts=attempts,
        retry_delay=2.0,
        sleep=sleep or RecordingSleep(),
    )


@pytest.mark.unit
class TestNotificationManager:

    async def test_unconfigured_channel_fails_softly(self):
        manager = NotificationManager()
        result = await manager.send(Notification(title="t", message="m", channel="pager"))
        assert result.success is False
        assert "not configured" in result.error

    async def test_send_multi_fans_out(self):
        email = RecordingChannel("email")
        slack = RecordingChannel("slack")
        manager = NotificationManager()
        manager.register_channel(email)
        manager.register_channel(slack)

        results = await manager.send_multi("t", "m", ["email", "slack"], recipients=["a", "b"])

        assert len(results) == 4
        assert [n.recipient for n in email.sent] == ["a", "b"]
        assert [n.recipient for n in slack.sent] == ["a", "b"]

    def test_configure_channels(self):
        manager = NotificationManager()
        manager.configure_channels({
            "slack": {"webhook_url": "https://hooks.slack.test/x"},
            "webhook": {"url": "https://ops.test/hook"},
        })
        assert manager.get_status() == {"initialized": True, "channels": ["slack", "webhook"]}
        assert manager.has_channel("slack")
        assert not manager.has_channel("email")


@pytest.mark.unit
class TestHttpChannels:

    async def test_webhook_sends_idempotency_key(self):
        seen = {}

        def respond(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["key"] = request.headers.get("Idempotency-Key")
            return httpx.Response(200)

        channel = WebhookChannel(
            {"url": "https://ops.test/hook"},
            client=httpx.AsyncClient(transport=httpx.MockTransport(respond)),
        )
        result = await channel.send(Notification(
            title="t", message="m", channel="webhook", idempotency_key="escalation:r:s:4",
        ))

        assert result.success is True
        assert seen == {"url": "https://ops.test/hook", "key": "escalation:r:s:4"}

    async def test_slack_failure_is_a_result_not_an_exception(self):
        channel = SlackChannel(
            {"webhook_url": "https://hooks.slack.test/x"},
            client=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500, text="boom"))),
        )
        result = await channel.send(Notification(title="t", message="m", channel="slack"))
        assert result.success is False
        assert result.error

    async def test_teams_invalid_url_is_a_result_not_an_exception(self):
        channel = TeamsChannel({"webhook_url": "http://exa mple.com:notaport/x"})
        result = await channel.send(Notification(title="t", message="m", channel="teams"))
        assert result.success is False
        assert result.error


@pytest.mark.unit
class TestDispatcher:

    def test_dispatch_key(self):
        assert dispatch_key("escalation", "run-1", "sync", 4) == "escalation:run-1:sync:4"

    async def test_escalation_is_idempotent(self):
        email = RecordingChannel("email")
        dispatcher = _dispatcher(email)

        first = await dispatcher.escalate("run-1", "sync", "boom", 4, workflow_name="Inventory")
        second = await dispatcher.escalate("run-1", "sync", "boom", 4, workflow_name="Inventory")

        assert first is second
        assert len(email.sent) == 1
        notification = email.sent[0]
        assert notification.priority == NotificationPriority.CRITICAL
        assert notification.idempotency_key == "escalation:run-1:sync:4"
        assert "Inventory" in notification.title
        assert metrics.counter_value("dispatch_duplicates_total", {"kind": "escalation"}) == 1

    async def test_new_attempt_set_is_a_new_escalation(self):
        email = RecordingChannel("email")
        dispatcher = _dispatcher(email)

        await dispatcher.escalate("run-1", "sync", "boom", 4)
        await dispatcher.escalate("run-1", "sync", "boom", 8)

        assert len(email.sent) == 2
        assert len(dispatcher.records("escalation")) == 2

    async def test_concurrent_duplicates_share_one_delivery(self):
        email = RecordingChannel("email")
        dispatcher = _dispatcher(email)

        records = await asyncio.gather(*(
            dispatcher.escalate("run-1", "sync", "boom", 4) for _ in range(3)
        ))

        assert len(email.sent) == 1
        assert all(r.key == records[0].key for r in records)

    async def test_retry_reuses_key(self):
        sleep = RecordingSleep()
        email = RecordingChannel("email", fail_times=2)
        dispatcher = _dispatcher(email, attempts=3, sleep=sleep)

        record = await dispatcher.notify(
            ["email"], ["ops@company.com"], {"title": "t", "message": "m"}, key="notification:r:s:1",
        )

        assert record.delivered is True
        assert record.tries == 3
        assert email.attempts == 3
        assert sleep.delays == [2.0, 2.0]
        assert [n.idempotency_key for n in email.sent] == ["notification:r:s:1"]

    async def test_only_failed_targets_are_retried(self):
        email = RecordingChannel("email")
        slack = RecordingChannel("slack", fail_times=1)
        dispatcher = _dispatcher(email, slack)

        record = await dispatcher.notify(["email", "slack"], [], {"title": "t", "message": "m"}, key="k")

        assert record.delivered is True
        assert email.attempts == 1
        assert slack.attempts == 2

    async def test_exhausted_delivery_is_logged_not_raised(self):
        email = RecordingChannel("email", fail_times=10)
        dispatcher = _dispatcher(email, attempts=2)

        record = await dispatcher.escalate("run-1", "sync", "boom", 1)

        assert record.delivered is False
        assert record.tries == 2
        assert record.errors
        assert metrics.counter_value("dispatches_total", {"kind": "escalation", "outcome": "failed"}) == 1

        # a failed key is not re-sent either
        again = await dispatcher.escalate("run-1", "sync", "boom", 1)
        assert again is record
        assert email.attempts == 2

    async def test_unconfigured_escalation_channel(self):
        dispatcher = _dispatcher(attempts=1)
        record = await dispatcher.escalate("run-1", "sync", "boom", 1)
        assert record.delivered is False
        assert "not configured" in record.errors[-1]

    async def test_raising_channel_does_not_stop_other_targets(self):
        teams = ExplodingChannel("teams")
        email = RecordingChannel("email")
        dispatcher = _dispatcher(teams, email, attempts=2)

        record = await dispatcher.notify(
            ["teams", "email"], ["ops"], {"title": "t", "message": "m"}, key="notification:r:s:1",
        )

        assert record.delivered is False
        assert record.tries == 2
        assert "RuntimeError: transport exploded" in record.errors[-1]
        assert teams.attempts == 2
        assert [n.recipient for n in email.sent] == ["ops"]
        assert dispatcher.get_record("notification:r:s:1") is record

    async def test_run_failure_alert_is_sent_once(self):
        email = RecordingChannel("email")
        dispatcher = _dispatcher(email)

        first = await dispatcher.notify_run_failure("run-1", "step 'sync' failed", workflow_name="inventory")
        again = await dispatcher.notify_run_failure("run-1", "step 'sync' failed", workflow_name="inventory")

        assert again is first
        assert first.kind == "run_failure"
        assert first.key == run_failure_key("run-1") == "run-failure:run-1"
        [alert] = email.sent
        assert alert.recipient == "oncall@example.com"
        assert alert.priority == NotificationPriority.HIGH
        assert alert.metadata["reason"] == "step 'sync' failed"

    async def test_oldest_records_are_evicted(self):
        manager = NotificationManager()
        manager.register_channel(RecordingChannel("email"))
        dispatcher = NotificationDispatcher(manager, max_records=2, sleep=RecordingSleep())

        for run_id in ("run-1", "run-2", "run-3"):
            await dispatcher.escalate(run_id, "sync", "boom", 1)

        assert [r.key for r in dispatcher.records()] == [
            "escalation:run-2:sync:1",
            "escalation:run-3:sync:1",
        ]
        assert dispatcher.get_record("escalation:run-1:sync:1") is None
