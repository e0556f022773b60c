"""
============================================================================
UPTIME SENTINEL - MONITORING PACKAGE
============================================================================
Runtime monitoring infrastructure:
    • OutboundSafetyGuard       — SSRF gate for every outbound request
    • CheckExecutor             — HEAD-first httpx prober
    • AlertStateMachine         — debounced down / recovery / reminders
    • MonitoringEngine          — due computation + bounded fan-out
    • DeadLinkCrawler           — on-demand broken-link scans
    • SlidingWindowRateLimiter  — per-bucket IP / user windows
    • NotificationDispatcher    — queued delivery with retries
    • MonitoringService         — trigger facade
    • TriggerServer             — aiohttp trigger API
    • Scheduler                 — periodic background job runner

File layout
-----------
monitoring/
├── __init__.py          ← this file
├── safety.py            ← OutboundSafetyGuard
├── executor.py          ← CheckExecutor, ProbeResult
├── alerts.py            ← AlertStateMachine
├── monitor.py           ← MonitoringEngine, PassSummary
├── crawler.py           ← DeadLinkCrawler, extract_links
├── rate_limiter.py      ← SlidingWindowRateLimiter + counter stores
├── notifications.py     ← notifiers, dispatcher, templates, identity
├── service.py           ← MonitoringService
├── server.py            ← TriggerServer
└── scheduler.py         ← Scheduler + built-in periodic jobs

============================================================================
"""

from monitoring.safety import OutboundSafetyGuard, SafetyVerdict
from monitoring.executor import CheckExecutor, ProbeResult, FetchedPage
from monitoring.alerts import AlertStateMachine, AlertTransition
from monitoring.monitor import MonitoringEngine, PassSummary
from monitoring.crawler import DeadLinkCrawler, LinkCheck, extract_links
from monitoring.rate_limiter import (
    RateLimitDecision,
    CounterStore,
    MemoryCounterStore,
    RedisCounterStore,
    SlidingWindowRateLimiter,
    build_counter_store,
)
from monitoring.notifications import (
    Notifier,
    LoggingNotifier,
    MailDispatchNotifier,
    NotificationDispatcher,
    IdentityResolver,
    StaticIdentityResolver,
    build_notifier,
)
from monitoring.service import MonitoringService, TriggerResult
from monitoring.server import TriggerServer
from monitoring.scheduler import Scheduler, ScheduledJob

__all__ = [
    # Safety & probing
    "OutboundSafetyGuard",
    "SafetyVerdict",
    "CheckExecutor",
    "ProbeResult",
    "FetchedPage",

    # Engine & alerts
    "AlertStateMachine",
    "AlertTransition",
    "MonitoringEngine",
    "PassSummary",

    # Crawler
    "DeadLinkCrawler",
    "LinkCheck",
    "extract_links",

    # Rate limiting
    "RateLimitDecision",
    "CounterStore",
    "MemoryCounterStore",
    "RedisCounterStore",
    "SlidingWindowRateLimiter",
    "build_counter_store",

    # Notifications
    "Notifier",
    "LoggingNotifier",
    "MailDispatchNotifier",
    "NotificationDispatcher",
    "IdentityResolver",
    "StaticIdentityResolver",
    "build_notifier",

    # Triggers
    "MonitoringService",
    "TriggerResult",
    "TriggerServer",

    # Scheduler
    "Scheduler",
    "ScheduledJob",
]
