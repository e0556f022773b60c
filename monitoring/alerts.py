"""
============================================================================
UPTIME SENTINEL - ALERT STATE MACHINE
============================================================================
Turns the stream of persisted check results into alert lifecycle events:
debounced "down" alerts, a single recovery notification, and optional
reminders while a target stays down.

States
------
healthy    no open alert, latest check up (or no checks yet)
suspect    latest check down, debounce threshold not reached yet
alerting   an open availability AlertRecord exists

The state is DERIVED from storage rather than kept in memory, so several
workers looking at the same database agree on it.

Deduplication
-------------
• Within one process, a per-target asyncio.Lock serializes transitions.
• Across processes, the partial unique index on open alerts makes the
  insert conditional: the worker that loses the race gets no row and
  sends nothing.
• Resolution is ``UPDATE ... WHERE resolved_at IS NULL``; only the caller
  whose update changed the row sends the recovery notification.

Reminders
---------
While an alert stays open, a reminder is sent every
MONITOR_REMINDER_INTERVAL seconds (0 disables), capped at
MONITOR_MAX_REMINDERS_PER_HOUR per target through the rate limiter.

License: MIT
============================================================================
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

from config.constants import AlertKind, AlertState, Buckets, CheckOutcome, RateLimitScope
from config.settings import MonitoringSettings, RateRule
from database.models import CheckResult, MonitoredTarget
from database.repositories import AlertRepository, CheckRepository
from monitoring.notifications import (
    IdentityResolver,
    NotificationDispatcher,
    render_down,
    render_recovered,
    render_reminder,
)
from monitoring.rate_limiter import SlidingWindowRateLimiter
from utils.helpers import KeyedLocks
from utils.logger import MonitorLogger, get_logger


logger = get_logger("AlertStateMachine")


# ============================================================================
# TRANSITION (returned to the caller)
# ============================================================================

@dataclass
class AlertTransition:
    """
    What ``handle_result`` did for one check result.

    ``action`` is one of ``none``, ``suspect``, ``opened``, ``resolved``,
    ``reminded``.
    """
    target_id: int
    state: AlertState
    action: str = "none"
    alert_id: Optional[int] = None
    notified: bool = False
    downtime_seconds: Optional[float] = None


# ============================================================================
# ALERT STATE MACHINE
# ============================================================================

class AlertStateMachine:
    """
    Per-target alert lifecycle.

    Parameters
    ----------
    alerts : AlertRepository
        Alert storage with conditional open/resolve.
    checks : CheckRepository
        Check history, used for the debounce count.
    dispatcher : NotificationDispatcher
        Outgoing notifications (fire-and-forget).
    identity : IdentityResolver
        Maps the target owner to a notification address.
    settings : MonitoringSettings
        Debounce threshold and reminder cadence.
    limiter : SlidingWindowRateLimiter, optional
        Caps reminders per target per hour. Without it reminders are
        only spaced by the reminder interval.
    """

    def __init__(
        self,
        alerts: AlertRepository,
        checks: CheckRepository,
        dispatcher: NotificationDispatcher,
        identity: IdentityResolver,
        settings: MonitoringSettings,
        limiter: Optional[SlidingWindowRateLimiter] = None,
    ):
        self.alerts = alerts
        self.checks = checks
        self.dispatcher = dispatcher
        self.identity = identity
        self.settings = settings
        self.limiter = limiter

        self._locks = KeyedLocks()
        self._monitor_logger = MonitorLogger()

        self._reminder_rule = RateRule(
            max_count=settings.max_reminders_per_hour,
            window_seconds=3600,
        )

        logger.info(
            f"[AlertStateMachine] Created, debounce={settings.debounce_threshold}, "
            f"reminder_interval={settings.reminder_interval}s"
        )

    # ------------------------------------------------------------------
    # PUBLIC API
    # ------------------------------------------------------------------

    async def handle_result(self, target: MonitoredTarget, check: CheckResult) -> AlertTransition:
        """
        Apply one persisted check result to the target's alert state.

        Parameters
        ----------
        target : MonitoredTarget
            The probed target.
        check : CheckResult
            The result, already persisted.

        Returns
        -------
        AlertTransition
        """
        async with self._locks.hold(target.id):
            open_alert = await self.alerts.get_open(target.id, AlertKind.AVAILABILITY)

            if check.outcome == CheckOutcome.DOWN:
                if open_alert is None:
                    return await self._on_down_without_alert(target, check)
                return await self._on_down_with_alert(target, check, open_alert)

            if open_alert is not None:
                return await self._on_recovery(target, check, open_alert)

            return AlertTransition(target_id=target.id, state=AlertState.HEALTHY)

    async def current_state(self, target_id: int) -> AlertState:
        """Derive the target's alert state from storage."""
        if await self.alerts.get_open(target_id, AlertKind.AVAILABILITY) is not None:
            return AlertState.ALERTING
        latest = await self.checks.latest(target_id)
        if latest is not None and latest.outcome == CheckOutcome.DOWN:
            return AlertState.SUSPECT
        return AlertState.HEALTHY

    # ------------------------------------------------------------------
    # TRANSITIONS
    # ------------------------------------------------------------------

    async def _on_down_without_alert(
        self,
        target: MonitoredTarget,
        check: CheckResult,
    ) -> AlertTransition:
        threshold = self.settings.debounce_threshold
        streak = await self.checks.consecutive_down_count(target.id, limit=threshold)

        if streak < threshold:
            logger.debug(
                f"[AlertStateMachine] target={target.id} suspect ({streak}/{threshold} down)"
            )
            return AlertTransition(target_id=target.id, state=AlertState.SUSPECT, action="suspect")

        alert = await self.alerts.open_if_absent(
            target.id,
            opened_at=check.checked_at,
            message=self._describe(check),
        )
        if alert is None:
            # Another worker holds the open alert and has notified
            return AlertTransition(target_id=target.id, state=AlertState.ALERTING)

        self._monitor_logger.log_downtime(target.id, target.url, self._describe(check))
        rendered = render_down(target, check)
        notified = await self._notify(target, rendered, kind="down")

        return AlertTransition(
            target_id=target.id,
            state=AlertState.ALERTING,
            action="opened",
            alert_id=alert.id,
            notified=notified,
        )

    async def _on_recovery(self, target: MonitoredTarget, check: CheckResult, open_alert) -> AlertTransition:
        resolved = await self.alerts.resolve_open(open_alert.id, check.checked_at)
        if not resolved:
            return AlertTransition(target_id=target.id, state=AlertState.HEALTHY)

        downtime = max(0.0, (check.checked_at - open_alert.opened_at).total_seconds())
        self._monitor_logger.log_recovery(target.id, target.url, int(downtime))

        rendered = render_recovered(target, check, downtime)
        notified = await self._notify(target, rendered, kind="recovered")

        return AlertTransition(
            target_id=target.id,
            state=AlertState.HEALTHY,
            action="resolved",
            alert_id=open_alert.id,
            notified=notified,
            downtime_seconds=downtime,
        )

    async def _on_down_with_alert(self, target: MonitoredTarget, check: CheckResult, open_alert) -> AlertTransition:
        transition = AlertTransition(
            target_id=target.id,
            state=AlertState.ALERTING,
            alert_id=open_alert.id,
        )

        if not self._reminder_due(open_alert, check.checked_at):
            return transition

        if self.limiter is not None:
            decision = await self.limiter.check(
                Buckets.REMINDER,
                f"target:{target.id}",
                rule=self._reminder_rule,
                scope=RateLimitScope.USER,
            )
            if not decision.allowed:
                logger.info(
                    f"[AlertStateMachine] Reminder cap reached for target {target.id}"
                )
                return transition

        await self.alerts.record_reminder(open_alert.id, check.checked_at)
        rendered = render_reminder(target, check, open_alert.opened_at, check.checked_at)
        transition.notified = await self._notify(target, rendered, kind="reminder")
        transition.action = "reminded"
        return transition

    # ------------------------------------------------------------------
    # HELPERS
    # ------------------------------------------------------------------

    def _reminder_due(self, open_alert, now: datetime) -> bool:
        interval = self.settings.reminder_interval
        if interval <= 0:
            return False
        last = open_alert.last_notified_at or open_alert.opened_at
        return now - last >= timedelta(seconds=interval)

    async def _notify(self, target: MonitoredTarget, rendered: Dict[str, str], kind: str) -> bool:
        """Best effort; delivery problems are logged by the dispatcher."""
        recipient = await self.identity.resolve_contact(target.owner_id)
        return await self.dispatcher.notify(
            recipient,
            rendered["subject"],
            rendered["body"],
            kind=kind,
            target_id=target.id,
        )

    @staticmethod
    def _describe(check: CheckResult) -> str:
        if check.error:
            return check.error
        if check.status_code is not None:
            return f"HTTP {check.status_code}"
        return "unreachable"
