from __future__ import annotations

import httpx
import pytest

from config.constants import Buckets, CheckOutcome, CrawlStatus, PlanTier
from config.settings import BucketPolicy, RateLimitSettings, RateRule
from exceptions import InvalidURLError, RateLimitExceededError, TargetNotFoundError, UnsafeTargetError
from monitoring.crawler import DeadLinkCrawler
from monitoring.monitor import MonitoringEngine
from monitoring.rate_limiter import MemoryCounterStore, SlidingWindowRateLimiter
from monitoring.service import MonitoringService


def _handler(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/":
        return httpx.Response(200, text='<a href="/about">About</a>')
    return httpx.Response(200)


@pytest.fixture
def tight_limiter(clock) -> SlidingWindowRateLimiter:
    hour = 3600
    settings = RateLimitSettings(
        enabled=True,
        backend="memory",
        buckets={
            Buckets.PING: BucketPolicy(users={"free": RateRule(max_count=2, window_seconds=hour)}),
            Buckets.CRAWL: BucketPolicy(users={"free": RateRule(max_count=1, window_seconds=hour)}),
            Buckets.PASS: BucketPolicy(ip=RateRule(max_count=1, window_seconds=hour)),
        },
    )
    return SlidingWindowRateLimiter(settings, MemoryCounterStore(), clock=clock)


@pytest.fixture
def service(
    monitoring_settings,
    crawler_settings,
    targets,
    checks,
    alerts,
    crawls,
    guard,
    make_executor,
    alert_machine,
    dispatcher,
    identity,
    tight_limiter,
) -> MonitoringService:
    executor = make_executor(_handler)
    engine = MonitoringEngine(monitoring_settings, targets, checks, guard, executor, alert_machine=alert_machine)
    crawler = DeadLinkCrawler(
        crawler_settings, crawls, alerts, guard, executor, dispatcher=dispatcher, identity=identity
    )
    return MonitoringService(
        targets,
        checks,
        crawls,
        engine,
        crawler,
        tight_limiter,
        identity,
        guard,
        alert_machine=alert_machine,
    )


async def test_register_normalizes_and_uses_actor_plan(service) -> None:
    target = await service.register_target("pro-user", "Example.COM/status", name="Status")

    assert target.url == "https://example.com/status"
    assert target.plan == PlanTier.PRO
    assert target.name == "Status"


async def test_register_rejects_internal_destinations(service, targets) -> None:
    with pytest.raises(UnsafeTargetError):
        await service.register_target("owner-1", "https://metadata.example.com/")

    with pytest.raises(UnsafeTargetError):
        await service.register_target("owner-1", "https://rebind.example.com/")

    assert await targets.list_owned("owner-1") == []


async def test_register_rejects_malformed_urls(service) -> None:
    with pytest.raises(InvalidURLError):
        await service.register_target("owner-1", "ftp://example.com/")

    with pytest.raises(InvalidURLError):
        await service.register_target("owner-1", "   ")


async def test_ping_checks_now_and_reports_quota(service) -> None:
    target = await service.register_target("owner-1", "https://example.com/")

    outcome = await service.ping_now("owner-1", target.id)

    assert outcome.result.outcome == CheckOutcome.UP
    assert outcome.rate_limit.allowed
    assert outcome.rate_limit.remaining == 1

    described = await service.describe_target("owner-1", target.id)
    assert described["latest_check"]["outcome"] == "up"
    assert described["alert_state"] == "healthy"
    assert described["latest_crawl"] is None
    assert described["crawl_running"] is False


async def test_ping_is_rate_limited(service, checks) -> None:
    target = await service.register_target("owner-1", "https://example.com/")

    await service.ping_now("owner-1", target.id)
    await service.ping_now("owner-1", target.id)

    with pytest.raises(RateLimitExceededError) as exc_info:
        await service.ping_now("owner-1", target.id)

    assert exc_info.value.retry_after > 0
    assert len(await checks.recent(target.id)) == 2


async def test_ping_of_foreign_target_is_not_found(service) -> None:
    target = await service.register_target("owner-1", "https://example.com/")

    with pytest.raises(TargetNotFoundError):
        await service.ping_now("someone-else", target.id)

    with pytest.raises(TargetNotFoundError):
        await service.ping_now("owner-1", 9999)


async def test_ping_of_blocked_target_raises_and_records_nothing(service, targets, checks) -> None:
    # added directly: registration would have refused it
    target = await targets.add("owner-1", "https://internal.example.com/")

    with pytest.raises(UnsafeTargetError):
        await service.ping_now("owner-1", target.id)

    assert await checks.latest(target.id) is None


async def test_scan_uses_the_plan_crawl_quota(service) -> None:
    target = await service.register_target("owner-1", "https://example.com/")

    outcome = await service.scan_now("owner-1", target.id)
    assert outcome.result.status == CrawlStatus.COMPLETED
    assert outcome.result.total_links == 1

    with pytest.raises(RateLimitExceededError) as exc_info:
        await service.scan_now("owner-1", target.id)
    assert exc_info.value.bucket == Buckets.CRAWL


async def test_reset_rate_limit_restores_quota(service) -> None:
    target = await service.register_target("owner-1", "https://example.com/")
    await service.ping_now("owner-1", target.id)
    await service.ping_now("owner-1", target.id)

    await service.reset_rate_limit(Buckets.PING, "owner-1")

    assert (await service.ping_now("owner-1", target.id)).rate_limit.allowed


async def test_scheduled_pass_is_not_rate_limited(service) -> None:
    await service.register_target("owner-1", "https://example.com/")

    first = await service.run_monitoring_pass()
    second = await service.run_monitoring_pass()

    assert first.rate_limit is None
    assert first.result.checked == 1
    assert second.result.due == 0


async def test_external_pass_is_limited_per_address(service) -> None:
    await service.run_monitoring_pass(client_ip="203.0.113.9")

    with pytest.raises(RateLimitExceededError):
        await service.run_monitoring_pass(client_ip="203.0.113.9")


async def test_delete_is_owner_scoped(service, targets) -> None:
    target = await service.register_target("owner-1", "https://example.com/")

    with pytest.raises(TargetNotFoundError):
        await service.delete_target("someone-else", target.id)

    await service.delete_target("owner-1", target.id)
    assert await targets.get(target.id) is None
