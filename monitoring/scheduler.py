"""
============================================================================
UPTIME SENTINEL - BACKGROUND TASK SCHEDULER
============================================================================
A lightweight, asyncio-native task scheduler that runs the monitoring
pass and housekeeping jobs. All jobs run as coroutines in the same event
loop; no broker is needed.

Registered Jobs
---------------
1.  monitoring_pass         (every MONITOR_SWEEP_INTERVAL)
    One MonitoringEngine pass over all due targets.

2.  rate_limit_gc           (every RATE_LIMIT_IDLE_PURGE_INTERVAL)
    Drops idle rate-limit windows from the counter store.

3.  check_history_cleanup   (every 24 h)
    Deletes CheckResult rows older than MONITOR_CHECK_RETENTION_DAYS.

4.  health_heartbeat        (every 10 min)
    Writes a heartbeat entry so operators can see the process is alive
    during quiet periods.

A job whose previous run is still executing is not started again.

License: MIT
============================================================================
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from config.settings import Settings
from database.connection import DatabaseManager
from database.repositories import CheckRepository
from monitoring.monitor import MonitoringEngine
from monitoring.rate_limiter import SlidingWindowRateLimiter
from utils.helpers import PerformanceHelper, TimeHelper
from utils.logger import get_logger


logger = get_logger("Scheduler")


# ============================================================================
# JOB DEFINITION
# ============================================================================

@dataclass
class ScheduledJob:
    """
    Describes a single periodic background job.

    Attributes
    ----------
    name : str
        Identifier used in logs.
    interval_seconds : float
        How often the job runs.
    coroutine_factory : Callable
        An async callable (no arguments) that performs the work.
    enabled : bool
        Can be toggled at runtime.
    last_run : Optional[float]
        Epoch timestamp of the last successful execution.
    next_run : float
        Epoch timestamp when the job should next execute.
    run_count : int
        Successful executions since startup.
    error_count : int
        Failed executions since startup.
    """
    name: str
    interval_seconds: float
    coroutine_factory: Callable[[], Awaitable[Any]]
    enabled: bool = True
    last_run: Optional[float] = None
    next_run: float = field(default_factory=time.time)
    run_count: int = 0
    error_count: int = 0
    task: Optional[asyncio.Task] = None

    @property
    def is_executing(self) -> bool:
        return self.task is not None and not self.task.done()


# ============================================================================
# SCHEDULER
# ============================================================================

class Scheduler:
    """
    Asyncio-based periodic job scheduler.

    Usage
    -----
        scheduler = Scheduler(settings, db_manager, engine, limiter)
        scheduler.register_job("my_job", 300, my_async_func)
        await scheduler.start()
        # ... later ...
        await scheduler.stop()
    """

    def __init__(
        self,
        settings: Settings,
        db_manager: DatabaseManager,
        engine: Optional[MonitoringEngine] = None,
        limiter: Optional[SlidingWindowRateLimiter] = None,
        tick_interval: float = 1.0,
    ):
        self.settings = settings
        self.db_manager = db_manager
        self.engine = engine
        self.limiter = limiter
        self.checks = CheckRepository(db_manager)

        self._jobs: Dict[str, ScheduledJob] = {}
        self._running = False
        self._loop_task: Optional[asyncio.Task] = None
        self._tick_interval = tick_interval

        self._register_builtin_jobs()

        logger.info(f"Scheduler created with {len(self._jobs)} built-in jobs")

    # ------------------------------------------------------------------
    # JOB REGISTRATION
    # ------------------------------------------------------------------

    def register_job(
        self,
        name: str,
        interval_seconds: float,
        coroutine_factory: Callable[[], Awaitable[Any]],
        enabled: bool = True,
    ) -> None:
        """
        Register a new periodic job.

        Parameters
        ----------
        name : str
            Unique job name.
        interval_seconds : float
            Period in seconds.
        coroutine_factory : Callable
            An async callable that takes no arguments.
        enabled : bool
            Whether the job starts enabled.
        """
        if name in self._jobs:
            logger.warning(f"[Scheduler] Job '{name}' already registered, overwriting")

        self._jobs[name] = ScheduledJob(
            name=name,
            interval_seconds=interval_seconds,
            coroutine_factory=coroutine_factory,
            enabled=enabled,
            next_run=time.time(),  # run on first tick
        )
        logger.debug(f"[Scheduler] Registered job '{name}' (interval={interval_seconds}s)")

    def disable_job(self, name: str) -> bool:
        """Disable a job by name. Returns True if found."""
        if name in self._jobs:
            self._jobs[name].enabled = False
            return True
        return False

    @property
    def job_names(self) -> List[str]:
        return list(self._jobs)

    # ------------------------------------------------------------------
    # LIFECYCLE
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the scheduler loop."""
        if self._running:
            logger.warning("Scheduler is already running")
            return
        self._running = True
        self._loop_task = asyncio.create_task(self._main_loop())
        logger.info("✓ Scheduler started")

    async def stop(self) -> None:
        """Stop the scheduler loop and cancel jobs still executing."""
        self._running = False
        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        running = [job.task for job in self._jobs.values() if job.is_executing]
        for task in running:
            task.cancel()
        if running:
            await asyncio.gather(*running, return_exceptions=True)
        logger.info("✓ Scheduler stopped")

    # ------------------------------------------------------------------
    # MAIN LOOP
    # ------------------------------------------------------------------

    async def _main_loop(self) -> None:
        """
        Wake up every tick. For each enabled job whose next_run has
        arrived and which is not still executing, launch it as a task.
        """
        logger.info("[Scheduler] Main loop started")
        while self._running:
            now = time.time()
            for job in self._jobs.values():
                if job.enabled and now >= job.next_run and not job.is_executing:
                    job.task = asyncio.create_task(self._execute_job(job))
                    # Advance next_run immediately so we don't re-trigger
                    job.next_run = now + job.interval_seconds

            await asyncio.sleep(self._tick_interval)

        logger.info("[Scheduler] Main loop exited")

    # ------------------------------------------------------------------
    # JOB EXECUTION
    # ------------------------------------------------------------------

    async def run_job(self, name: str) -> None:
        """Run a registered job once, immediately."""
        await self._execute_job(self._jobs[name])

    async def _execute_job(self, job: ScheduledJob) -> None:
        """
        Run a single job, capture timing and errors.
        """
        start_time = time.time()
        try:
            logger.debug(f"[Scheduler] Running job '{job.name}'…")
            await job.coroutine_factory()
            elapsed = time.time() - start_time

            job.run_count += 1
            job.last_run = time.time()
            logger.debug(
                f"[Scheduler] Job '{job.name}' completed in {elapsed:.2f}s "
                f"(run #{job.run_count})"
            )

        except Exception as e:
            job.error_count += 1
            elapsed = time.time() - start_time
            logger.opt(exception=e).error(
                f"[Scheduler] Job '{job.name}' FAILED after {elapsed:.2f}s: {e}"
            )

    # ------------------------------------------------------------------
    # DIAGNOSTICS
    # ------------------------------------------------------------------

    def get_job_stats(self) -> List[Dict[str, Any]]:
        """Return status of all registered jobs."""
        stats = []
        for job in self._jobs.values():
            stats.append({
                "name": job.name,
                "interval_seconds": job.interval_seconds,
                "enabled": job.enabled,
                "executing": job.is_executing,
                "run_count": job.run_count,
                "error_count": job.error_count,
                "last_run": (
                    datetime.fromtimestamp(job.last_run).isoformat()
                    if job.last_run else None
                ),
                "next_run": (
                    datetime.fromtimestamp(job.next_run).isoformat()
                    if job.next_run else None
                ),
            })
        return stats

    # ==================================================================
    # BUILT-IN JOBS
    # ==================================================================

    def _register_builtin_jobs(self) -> None:
        """Register all built-in periodic jobs."""

        # 1. Monitoring pass
        self.register_job(
            "monitoring_pass",
            interval_seconds=self.settings.monitoring.sweep_interval,
            coroutine_factory=self._job_monitoring_pass,
            enabled=self.engine is not None,
        )

        # 2. Rate-limit window GC
        self.register_job(
            "rate_limit_gc",
            interval_seconds=self.settings.rate_limit.idle_purge_interval,
            coroutine_factory=self._job_rate_limit_gc,
            enabled=self.limiter is not None,
        )

        # 3. Check history cleanup (every 24 hours)
        self.register_job(
            "check_history_cleanup",
            interval_seconds=86400,
            coroutine_factory=self._job_check_history_cleanup,
        )

        # 4. Health heartbeat (every 10 minutes)
        self.register_job(
            "health_heartbeat",
            interval_seconds=600,
            coroutine_factory=self._job_health_heartbeat,
        )

    # ------------------------------------------------------------------
    # JOB: Monitoring pass
    # ------------------------------------------------------------------

    async def _job_monitoring_pass(self) -> None:
        await self.engine.run_pass()

    # ------------------------------------------------------------------
    # JOB: Rate-limit GC
    # ------------------------------------------------------------------

    async def _job_rate_limit_gc(self) -> None:
        purged = await self.limiter.purge_idle()
        if purged:
            logger.info(f"[Scheduler] Rate-limit GC removed {purged} idle windows")

    # ------------------------------------------------------------------
    # JOB: Check history cleanup
    # ------------------------------------------------------------------

    async def _job_check_history_cleanup(self) -> None:
        """
        Delete check results older than the retention period.
        """
        retention_days = self.settings.monitoring.check_retention_days
        cutoff = TimeHelper.get_utc_now() - timedelta(days=retention_days)
        deleted = await self.checks.cleanup_older_than(cutoff)
        logger.info(
            f"[Scheduler] Check history cleanup — removed {deleted} rows "
            f"older than {retention_days} days"
        )

    # ------------------------------------------------------------------
    # JOB: Health Heartbeat
    # ------------------------------------------------------------------

    async def _job_health_heartbeat(self) -> None:
        """
        Write a simple heartbeat log entry. If you see heartbeats in the
        log, the process is alive.
        """
        is_alive = await self.db_manager.health_check()
        in_flight = len(self.engine.in_flight) if self.engine is not None else 0
        logger.info(
            f"[Heartbeat] ✓ Sentinel alive — db={'OK' if is_alive else 'FAIL'}, "
            f"in_flight={in_flight}, "
            f"memory={PerformanceHelper.get_memory_usage():.1f}MB, "
            f"time={TimeHelper.format_datetime(TimeHelper.get_utc_now())}"
        )


# ============================================================================
# END OF SCHEDULER MODULE
# ============================================================================
