from __future__ import annotations

from typing import Callable, Dict, List, Optional

import httpx
import pytest

from config.settings import (
    CrawlerSettings,
    DatabaseSettings,
    IdentitySettings,
    MonitoringSettings,
    NotificationSettings,
    RateLimitSettings,
    SafetySettings,
)
from database.connection import DatabaseManager
from database.repositories import AlertRepository, CheckRepository, CrawlRepository, TargetRepository
from exceptions import NoRecordsError, NotificationError
from monitoring.alerts import AlertStateMachine
from monitoring.executor import CheckExecutor
from monitoring.notifications import NotificationDispatcher, Notifier, StaticIdentityResolver
from monitoring.rate_limiter import MemoryCounterStore, SlidingWindowRateLimiter
from monitoring.safety import OutboundSafetyGuard


PUBLIC_IP = "93.184.216.34"


class FakeResolver:
    """Hostname → addresses map standing in for DNS."""

    def __init__(self, records: Optional[Dict[str, List[str]]] = None, default: Optional[List[str]] = None) -> None:
        self.records = dict(records or {})
        self.default = [PUBLIC_IP] if default is None else default
        self.lookups: List[str] = []

    async def __call__(self, hostname: str) -> List[str]:
        self.lookups.append(hostname)
        addresses = self.records.get(hostname, self.default)
        if not addresses:
            raise NoRecordsError(f"{hostname} has no records", hostname=hostname)
        return addresses


class RecordingNotifier(Notifier):
    """Collects sent messages; can be told to fail the first N sends."""

    name = "recording"

    def __init__(self, fail_times: int = 0) -> None:
        self.sent: List[Dict[str, str]] = []
        self.attempts = 0
        self.fail_times = fail_times

    async def send(self, recipient: str, subject: str, body: str) -> None:
        self.attempts += 1
        if self.attempts <= self.fail_times:
            raise NotificationError("collaborator down", recipient=recipient, status_code=503)
        self.sent.append({"recipient": recipient, "subject": subject, "body": body})

    def subjects(self) -> List[str]:
        return [message["subject"] for message in self.sent]


class FakeClock:
    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def _no_sleep(_: float) -> None:
    return None


# ============================================================================
# SETTINGS
# ============================================================================

@pytest.fixture
def monitoring_settings() -> MonitoringSettings:
    return MonitoringSettings(
        request_timeout=5.0,
        max_redirects=3,
        max_concurrent_checks=4,
        batch_size=10,
        batch_delay=0.0,
        debounce_threshold=2,
        reminder_interval=0,
    )


@pytest.fixture
def safety_settings() -> SafetySettings:
    return SafetySettings(dns_timeout=0.5, ipv6_allowlist=[], blocked_domains=set())


@pytest.fixture
def crawler_settings() -> CrawlerSettings:
    return CrawlerSettings(batch_size=5, batch_delay=0.0, max_links=50)


@pytest.fixture
def notification_settings() -> NotificationSettings:
    return NotificationSettings(mail_endpoint=None, max_retries=2, retry_base_delay=0.01)


@pytest.fixture
def rate_limit_settings() -> RateLimitSettings:
    return RateLimitSettings(enabled=True, backend="memory")


# ============================================================================
# STORAGE
# ============================================================================

@pytest.fixture
async def db(tmp_path) -> DatabaseManager:
    manager = DatabaseManager(DatabaseSettings(type="sqlite", sqlite_path=tmp_path / "sentinel.db"))
    await manager.connect()
    yield manager
    await manager.disconnect()


@pytest.fixture
def targets(db) -> TargetRepository:
    return TargetRepository(db)


@pytest.fixture
def checks(db) -> CheckRepository:
    return CheckRepository(db)


@pytest.fixture
def alerts(db) -> AlertRepository:
    return AlertRepository(db)


@pytest.fixture
def crawls(db) -> CrawlRepository:
    return CrawlRepository(db)


# ============================================================================
# NETWORK
# ============================================================================

@pytest.fixture
def resolver() -> FakeResolver:
    return FakeResolver(
        records={
            "internal.example.com": ["10.0.0.5"],
            "rebind.example.com": [PUBLIC_IP, "127.0.0.1"],
            "metadata.example.com": ["169.254.169.254"],
            "nowhere.example.com": [],
        }
    )


@pytest.fixture
def guard(safety_settings, resolver) -> OutboundSafetyGuard:
    return OutboundSafetyGuard(safety_settings, resolve_func=resolver)


@pytest.fixture
async def make_executor(monitoring_settings, guard):
    """Build an executor whose HTTP traffic goes to ``handler``; records every request."""
    created: List[CheckExecutor] = []

    def factory(handler: Callable[[httpx.Request], httpx.Response], requests: Optional[List[httpx.Request]] = None) -> CheckExecutor:
        def recording(request: httpx.Request) -> httpx.Response:
            if requests is not None:
                requests.append(request)
            return handler(request)

        executor = CheckExecutor(monitoring_settings, guard=guard, transport=httpx.MockTransport(recording))
        created.append(executor)
        return executor

    yield factory

    for executor in created:
        await executor.close()


# ============================================================================
# ALERTING
# ============================================================================

@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def dispatcher(notifier, notification_settings) -> NotificationDispatcher:
    return NotificationDispatcher(notifier, notification_settings, sleep=_no_sleep)


@pytest.fixture
def identity() -> StaticIdentityResolver:
    return StaticIdentityResolver(
        IdentitySettings(
            plans={"pro-user": "pro"},
            contacts={"owner-1": "owner1@example.com"},
        )
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def limiter(rate_limit_settings, clock) -> SlidingWindowRateLimiter:
    return SlidingWindowRateLimiter(rate_limit_settings, MemoryCounterStore(), clock=clock)


@pytest.fixture
def alert_machine(alerts, checks, dispatcher, identity, monitoring_settings, limiter) -> AlertStateMachine:
    return AlertStateMachine(alerts, checks, dispatcher, identity, monitoring_settings, limiter=limiter)
