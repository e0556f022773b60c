from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from config.constants import CheckOutcome
from config.settings import Settings
from monitoring.scheduler import Scheduler
from utils.helpers import TimeHelper


class _Engine:
    def __init__(self) -> None:
        self.passes = 0
        self.in_flight = set()

    async def run_pass(self) -> None:
        self.passes += 1


@pytest.fixture
def settings(monitoring_settings, rate_limit_settings) -> Settings:
    return Settings(monitoring=monitoring_settings, rate_limit=rate_limit_settings)


async def test_builtin_jobs_are_registered(settings, db, limiter) -> None:
    scheduler = Scheduler(settings, db, engine=_Engine(), limiter=limiter)

    assert scheduler.job_names == [
        "monitoring_pass",
        "rate_limit_gc",
        "check_history_cleanup",
        "health_heartbeat",
    ]


async def test_jobs_without_a_collaborator_start_disabled(settings, db) -> None:
    scheduler = Scheduler(settings, db)

    enabled = {job["name"]: job["enabled"] for job in scheduler.get_job_stats()}
    assert not enabled["monitoring_pass"]
    assert not enabled["rate_limit_gc"]
    assert enabled["health_heartbeat"]


async def test_monitoring_pass_job_runs_the_engine(settings, db) -> None:
    engine = _Engine()
    scheduler = Scheduler(settings, db, engine=engine)

    await scheduler.run_job("monitoring_pass")

    assert engine.passes == 1
    stats = {job["name"]: job for job in scheduler.get_job_stats()}
    assert stats["monitoring_pass"]["run_count"] == 1


async def test_failing_job_is_counted_and_does_not_raise(settings, db) -> None:
    scheduler = Scheduler(settings, db)

    async def broken() -> None:
        raise RuntimeError("boom")

    scheduler.register_job("broken", 60, broken)
    await scheduler.run_job("broken")

    stats = {job["name"]: job for job in scheduler.get_job_stats()}
    assert stats["broken"]["error_count"] == 1
    assert stats["broken"]["run_count"] == 0


async def test_history_cleanup_respects_retention(settings, db, targets, checks) -> None:
    target = await targets.add("owner-1", "https://example.com/")
    now = TimeHelper.get_utc_now()
    await checks.record(target.id, outcome=CheckOutcome.UP, checked_at=now - timedelta(days=90), latency_ms=50.0)
    await checks.record(target.id, outcome=CheckOutcome.UP, checked_at=now, latency_ms=50.0)

    scheduler = Scheduler(settings, db)
    await scheduler.run_job("check_history_cleanup")

    assert len(await checks.recent(target.id)) == 1


async def test_loop_starts_due_jobs_and_stops_cleanly(settings, db) -> None:
    engine = _Engine()
    scheduler = Scheduler(settings, db, engine=engine, tick_interval=0.01)
    for name in ("rate_limit_gc", "check_history_cleanup", "health_heartbeat"):
        scheduler.disable_job(name)

    await scheduler.start()
    for _ in range(100):
        if engine.passes:
            break
        await asyncio.sleep(0.01)
    await scheduler.stop()

    assert engine.passes == 1
