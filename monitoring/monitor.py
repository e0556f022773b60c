"""
============================================================================
UPTIME SENTINEL - MONITORING ENGINE
============================================================================
The scheduled half of the system: decides which targets are due, probes
them through the safety guard and the check executor under a bounded
worker pool, persists every result and hands it to the alert state
machine.

Architecture
------------
MonitoringEngine
├── interval_for_plan()   ← cadence table (MONITOR_PLAN_INTERVALS)
├── is_due()              ← never checked, or interval elapsed
└── run_pass()            ← one sweep: load → select due → batches
    └── _run_guarded()    ← semaphore + per-target in-flight lock
        └── check_target()
            ├── OutboundSafetyGuard.validate_url()
            ├── CheckExecutor.probe()      (skipped when blocked)
            ├── CheckRepository.record()   (check + target status)
            └── AlertStateMachine.handle_result()

A target the guard refuses is recorded as a ``down`` check with
error_kind ``blocked``; it is never silently skipped.

Failures are contained per target: one target's error is logged and
counted, the rest of the batch carries on. When persistence fails the
target's last_checked stays stale, so the next pass retries it.

License: MIT
============================================================================
"""

import asyncio
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set

from config.constants import CheckOutcome, ErrorKind, PlanTier, TargetStatus
from config.settings import MonitoringSettings
from database.models import CheckResult, MonitoredTarget
from database.repositories import CheckRepository, TargetRepository
from exceptions import DatabaseException, UnsafeTargetError
from monitoring.alerts import AlertStateMachine
from monitoring.executor import CheckExecutor, ProbeResult
from monitoring.safety import OutboundSafetyGuard
from utils.helpers import BatchProcessor, KeyedLocks, TimeHelper
from utils.logger import MonitorLogger, get_logger


logger = get_logger("MonitoringEngine")


# ============================================================================
# PASS SUMMARY
# ============================================================================

@dataclass
class PassSummary:
    """Counters for one monitoring pass."""
    started_at: datetime
    finished_at: Optional[datetime] = None
    active: int = 0
    due: int = 0
    skipped_in_flight: int = 0
    checked: int = 0
    up: int = 0
    down: int = 0
    blocked: int = 0
    failed: int = 0
    failed_target_ids: List[int] = field(default_factory=list)

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        data["duration_seconds"] = round(self.duration_seconds, 3)
        return data


# ============================================================================
# MONITORING ENGINE
# ============================================================================

class MonitoringEngine:
    """
    Due computation, bounded fan-out and the per-target check pipeline.

    ``run_pass()`` is driven by the periodic Scheduler and by the trigger
    HTTP surface. A cancelled check leaves last_checked untouched.
    """

    def __init__(
        self,
        settings: MonitoringSettings,
        targets: TargetRepository,
        checks: CheckRepository,
        guard: OutboundSafetyGuard,
        executor: CheckExecutor,
        alert_machine: Optional[AlertStateMachine] = None,
    ):
        """
        Parameters
        ----------
        settings : MonitoringSettings
            Cadence table, concurrency cap and batching.
        targets, checks : repositories
            Persistence for targets and check history.
        guard : OutboundSafetyGuard
            Hard gate in front of every probe.
        executor : CheckExecutor
            Performs the probe.
        alert_machine : AlertStateMachine, optional
            Receives every persisted result. Without it, results are
            only recorded.
        """
        self.settings = settings
        self.targets = targets
        self.checks = checks
        self.guard = guard
        self.executor = executor
        self.alert_machine = alert_machine

        # --- concurrency control ---
        self._semaphore = asyncio.Semaphore(settings.max_concurrent_checks)
        self._target_locks = KeyedLocks()

        self._monitor_logger = MonitorLogger()

        logger.info(
            f"MonitoringEngine created — "
            f"max_concurrent={settings.max_concurrent_checks}, "
            f"pass_interval={settings.sweep_interval}s, "
            f"batch_size={settings.batch_size}"
        )

    # ------------------------------------------------------------------
    # CADENCE
    # ------------------------------------------------------------------

    def interval_for_plan(self, plan) -> timedelta:
        """Check interval for a plan tier; unknown tiers use the free cadence."""
        intervals = self.settings.plan_intervals
        tier = PlanTier.parse(plan).value
        seconds = intervals.get(tier, intervals.get(PlanTier.FREE.value, 300))
        return timedelta(seconds=seconds)

    def is_due(self, target: MonitoredTarget, now: datetime) -> bool:
        """Never-checked targets are always due."""
        if target.last_checked is None:
            return True
        return now - target.last_checked >= self.interval_for_plan(target.plan)

    # ------------------------------------------------------------------
    # PASS
    # ------------------------------------------------------------------

    async def run_pass(self, now: Optional[datetime] = None) -> PassSummary:
        """
        Run one monitoring pass over all active targets.

        Parameters
        ----------
        now : datetime, optional
            Reference time for due computation (naive UTC).

        Returns
        -------
        PassSummary
        """
        now = now or TimeHelper.get_utc_now()
        summary = PassSummary(started_at=TimeHelper.get_utc_now())

        targets = await self.targets.list_active()
        due = [target for target in targets if self.is_due(target, now)]
        runnable = [target for target in due if not self.is_in_flight(target.id)]

        summary.active = len(targets)
        summary.due = len(due)
        summary.skipped_in_flight = len(due) - len(runnable)

        if runnable:
            logger.debug(f"[Engine] Pass found {len(runnable)} due targets")

        async def run_batch(batch: List[MonitoredTarget]) -> List[Any]:
            return await asyncio.gather(
                *(self._run_guarded(target) for target in batch),
                return_exceptions=True,
            )

        results = await BatchProcessor.process_in_batches(
            runnable,
            batch_size=self.settings.batch_size,
            process_func=run_batch,
            delay_between_batches=self.settings.batch_delay,
        )

        for target, result in zip(runnable, results):
            if isinstance(result, BaseException):
                summary.failed += 1
                summary.failed_target_ids.append(target.id)
                logger.error(f"[Engine] Check for target {target.id} ({target.url}) failed: {result}")
                continue

            summary.checked += 1
            if result.outcome == CheckOutcome.UP:
                summary.up += 1
            else:
                summary.down += 1
                if result.error_kind == ErrorKind.BLOCKED:
                    summary.blocked += 1

        summary.finished_at = TimeHelper.get_utc_now()

        logger.info(
            f"[Engine] Pass complete: active={summary.active} due={summary.due} "
            f"checked={summary.checked} up={summary.up} down={summary.down} "
            f"blocked={summary.blocked} failed={summary.failed} "
            f"({summary.duration_seconds:.2f}s)"
        )
        return summary

    async def _run_guarded(self, target: MonitoredTarget) -> CheckResult:
        async with self._semaphore:
            return await self.check_target(target)

    # ------------------------------------------------------------------
    # PER-TARGET PIPELINE
    # ------------------------------------------------------------------

    async def check_target(self, target: MonitoredTarget, strict: bool = False) -> CheckResult:
        """
        Guard → probe → persist → alert state machine, for one target.

        Parameters
        ----------
        target : MonitoredTarget
            Target to check.
        strict : bool
            When True a guard rejection is raised to the caller instead of
            being recorded (on-demand pings answer "target unsafe").

        Returns
        -------
        CheckResult
            The persisted check.

        Raises
        ------
        UnsafeTargetError
            Only in strict mode.
        DatabaseException
            When the check could not be persisted.
        """
        async with self._target_locks.hold(target.id):
            try:
                await self.guard.validate_url(target.url)
            except UnsafeTargetError as e:
                if strict:
                    raise
                logger.warning(f"[Engine] ✗ target={target.id} blocked: {e.reason.value}")
                probe = ProbeResult.blocked(target.url, e)
            else:
                probe = await self.executor.probe(target.url)

            checked_at = TimeHelper.get_utc_now()
            check = await self.checks.record(
                target.id,
                outcome=probe.outcome,
                checked_at=checked_at,
                latency_ms=probe.latency_ms,
                status_code=probe.status_code,
                error=probe.error,
                error_kind=probe.error_kind,
            )

            # Keep the in-memory row consistent with what was written
            target.status = TargetStatus.UP if probe.is_up else TargetStatus.DOWN
            target.last_checked = checked_at
            target.last_status_code = probe.status_code
            target.last_response_time_ms = probe.latency_ms

            self._monitor_logger.log_check(
                target.id, target.url, probe.is_up, probe.latency_ms, probe.error
            )

            if self.alert_machine is not None:
                try:
                    await self.alert_machine.handle_result(target, check)
                except DatabaseException as e:
                    logger.error(
                        f"[Engine] Alert handling failed for target {target.id}, "
                        f"retrying next cycle: {e.message}"
                    )

            return check

    def is_in_flight(self, target_id: int) -> bool:
        return self._target_locks.is_held(target_id)

    @property
    def in_flight(self) -> Set[int]:
        return self._target_locks.held_keys()

