from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

from config.constants import AlertKind, AlertState, CheckOutcome, ErrorKind, PlanTier
from config.settings import MonitoringSettings
from monitoring.alerts import AlertStateMachine
from monitoring.notifications import NotificationDispatcher
from tests.conftest import RecordingNotifier, _no_sleep


T0 = datetime(2026, 1, 1, 12, 0, 0)


async def _record(checks, target, outcome: CheckOutcome, at: datetime, error: str = None):
    return await checks.record(
        target.id,
        outcome=outcome,
        checked_at=at,
        latency_ms=120.0 if outcome == CheckOutcome.UP else None,
        status_code=200 if outcome == CheckOutcome.UP else None,
        error=error,
        error_kind=None if outcome == CheckOutcome.UP else ErrorKind.CONNECTION,
    )


async def _feed(machine, checks, target, outcome: CheckOutcome, at: datetime):
    check = await _record(checks, target, outcome, at, error=None if outcome == CheckOutcome.UP else "Connection refused")
    return await machine.handle_result(target, check)


async def test_single_failure_is_only_suspect(alert_machine, targets, checks, alerts, notifier) -> None:
    target = await targets.add("owner-1", "https://example.com/", name="Example")

    transition = await _feed(alert_machine, checks, target, CheckOutcome.DOWN, T0)

    assert transition.state == AlertState.SUSPECT
    assert transition.action == "suspect"
    assert await alerts.get_open(target.id) is None
    assert notifier.sent == []
    assert await alert_machine.current_state(target.id) == AlertState.SUSPECT


async def test_blip_then_recovery_sends_nothing(alert_machine, targets, checks, notifier) -> None:
    target = await targets.add("owner-1", "https://example.com/")

    await _feed(alert_machine, checks, target, CheckOutcome.DOWN, T0)
    transition = await _feed(alert_machine, checks, target, CheckOutcome.UP, T0 + timedelta(minutes=1))

    assert transition.state == AlertState.HEALTHY
    assert transition.action == "none"
    assert notifier.sent == []
    assert len(alert_machine._locks) == 0


async def test_outage_opens_once_and_recovers_once(alert_machine, targets, checks, alerts, notifier) -> None:
    target = await targets.add("owner-1", "https://example.com/", name="Example")

    await _feed(alert_machine, checks, target, CheckOutcome.DOWN, T0)
    opened = await _feed(alert_machine, checks, target, CheckOutcome.DOWN, T0 + timedelta(minutes=1))
    still_down = await _feed(alert_machine, checks, target, CheckOutcome.DOWN, T0 + timedelta(minutes=2))

    assert opened.action == "opened"
    assert opened.notified
    assert still_down.action == "none"
    assert notifier.subjects() == ["🚨 Example is DOWN"]
    assert notifier.sent[0]["recipient"] == "owner1@example.com"
    assert "Connection refused" in notifier.sent[0]["body"]
    assert await alert_machine.current_state(target.id) == AlertState.ALERTING

    recovered = await _feed(alert_machine, checks, target, CheckOutcome.UP, T0 + timedelta(minutes=6))
    again = await _feed(alert_machine, checks, target, CheckOutcome.UP, T0 + timedelta(minutes=7))

    assert recovered.action == "resolved"
    assert recovered.downtime_seconds == 300
    assert again.action == "none"
    assert notifier.subjects() == ["🚨 Example is DOWN", "✅ Example is BACK UP"]
    assert "5m" in notifier.sent[1]["body"]

    history = await alerts.history(target.id)
    assert len(history) == 1
    assert history[0].resolved_at == T0 + timedelta(minutes=6)


async def test_concurrent_workers_open_a_single_alert(
    alerts, checks, targets, dispatcher, identity, monitoring_settings, notifier
) -> None:
    target = await targets.add("owner-1", "https://example.com/", name="Example")
    first = AlertStateMachine(alerts, checks, dispatcher, identity, monitoring_settings)
    second = AlertStateMachine(alerts, checks, dispatcher, identity, monitoring_settings)

    await _record(checks, target, CheckOutcome.DOWN, T0, error="HTTP 503")
    check = await _record(checks, target, CheckOutcome.DOWN, T0 + timedelta(minutes=1), error="HTTP 503")

    results = await asyncio.gather(first.handle_result(target, check), second.handle_result(target, check))

    assert sorted(r.action for r in results) == ["none", "opened"]
    assert len(notifier.sent) == 1
    assert len(await alerts.history(target.id)) == 1


async def test_concurrent_workers_send_a_single_recovery(
    alerts, checks, targets, dispatcher, identity, monitoring_settings, notifier
) -> None:
    target = await targets.add("owner-1", "https://example.com/", name="Example")
    first = AlertStateMachine(alerts, checks, dispatcher, identity, monitoring_settings)
    second = AlertStateMachine(alerts, checks, dispatcher, identity, monitoring_settings)

    await _feed(first, checks, target, CheckOutcome.DOWN, T0)
    await _feed(first, checks, target, CheckOutcome.DOWN, T0 + timedelta(minutes=1))
    up = await _record(checks, target, CheckOutcome.UP, T0 + timedelta(minutes=2))

    results = await asyncio.gather(first.handle_result(target, up), second.handle_result(target, up))

    assert sorted(r.action for r in results) == ["none", "resolved"]
    assert notifier.subjects().count("✅ Example is BACK UP") == 1


async def test_reminders_are_spaced_and_capped(
    alerts, checks, targets, dispatcher, identity, limiter, notifier
) -> None:
    settings = MonitoringSettings(debounce_threshold=2, reminder_interval=60, max_reminders_per_hour=2)
    machine = AlertStateMachine(alerts, checks, dispatcher, identity, settings, limiter=limiter)
    target = await targets.add("owner-1", "https://example.com/", name="Example")

    await _feed(machine, checks, target, CheckOutcome.DOWN, T0)
    await _feed(machine, checks, target, CheckOutcome.DOWN, T0 + timedelta(seconds=60))
    too_soon = await _feed(machine, checks, target, CheckOutcome.DOWN, T0 + timedelta(seconds=90))
    first = await _feed(machine, checks, target, CheckOutcome.DOWN, T0 + timedelta(seconds=120))
    second = await _feed(machine, checks, target, CheckOutcome.DOWN, T0 + timedelta(seconds=180))
    capped = await _feed(machine, checks, target, CheckOutcome.DOWN, T0 + timedelta(seconds=240))

    assert too_soon.action == "none"
    assert first.action == "reminded"
    assert second.action == "reminded"
    assert capped.action == "none"
    assert notifier.subjects().count("⏰ Example is still DOWN") == 2

    open_alert = await alerts.get_open(target.id, AlertKind.AVAILABILITY)
    assert open_alert.reminder_count == 2


async def test_failed_delivery_does_not_undo_the_alert(
    alerts, checks, targets, identity, monitoring_settings, notification_settings
) -> None:
    notifier = RecordingNotifier(fail_times=100)
    dispatcher = NotificationDispatcher(notifier, notification_settings, sleep=_no_sleep)
    machine = AlertStateMachine(alerts, checks, dispatcher, identity, monitoring_settings)
    target = await targets.add("owner-1", "https://example.com/", plan=PlanTier.PRO)

    await _feed(machine, checks, target, CheckOutcome.DOWN, T0)
    opened = await _feed(machine, checks, target, CheckOutcome.DOWN, T0 + timedelta(minutes=1))

    assert opened.action == "opened"
    assert not opened.notified
    assert notifier.attempts == notification_settings.max_retries + 1
    assert dispatcher.get_stats()["failed"] == 1
    assert await alerts.get_open(target.id) is not None


async def test_transient_delivery_failure_is_retried(
    alerts, checks, targets, identity, monitoring_settings, notification_settings
) -> None:
    notifier = RecordingNotifier(fail_times=1)
    dispatcher = NotificationDispatcher(notifier, notification_settings, sleep=_no_sleep)
    machine = AlertStateMachine(alerts, checks, dispatcher, identity, monitoring_settings)
    target = await targets.add("owner-1", "https://example.com/", name="Example")

    await _feed(machine, checks, target, CheckOutcome.DOWN, T0)
    opened = await _feed(machine, checks, target, CheckOutcome.DOWN, T0 + timedelta(minutes=1))

    assert opened.notified
    assert notifier.attempts == 2
    assert notifier.subjects() == ["🚨 Example is DOWN"]
