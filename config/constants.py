"""
Constants Module for Uptime Sentinel

Contains the enumerations, limits, templates and static values
shared by the monitoring engine, the crawler and the trigger surface.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Final, FrozenSet, Tuple


class PlanTier(str, Enum):
    """
    Plan Tier Enumeration

    The subscription tier of an actor. Drives check cadence
    and the per-user rate-limit quotas.
    """

    FREE = "free"
    PRO = "pro"
    FOUNDER = "founder"

    @classmethod
    def parse(cls, value: object) -> "PlanTier":
        """Coerce a raw plan value, falling back to FREE for unknown tiers."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.FREE


class TargetStatus(str, Enum):
    """Last observed status of a monitored target."""

    UP = "up"
    DOWN = "down"
    UNKNOWN = "unknown"


class CheckOutcome(str, Enum):
    """Outcome of a single probe."""

    UP = "up"
    DOWN = "down"


class ErrorKind(str, Enum):
    """
    Short machine code describing why a probe came back down.
    """

    BLOCKED = "blocked"
    TIMEOUT = "timeout"
    CONNECTION = "connection"
    TLS = "tls"
    HTTP_STATUS = "http_status"
    REDIRECT = "redirect"
    UNKNOWN = "unknown"


class AlertKind(str, Enum):
    """Kinds of alert records."""

    AVAILABILITY = "availability"
    DEAD_LINKS = "dead_links"


class AlertState(str, Enum):
    """
    Alert State Enumeration

    Per-target availability state. Derived from persisted history,
    never held only in memory.
    """

    HEALTHY = "healthy"
    SUSPECT = "suspect"
    ALERTING = "alerting"


class CrawlStatus(str, Enum):
    """Lifecycle of a dead-link crawl."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class BlockReason(str, Enum):
    """Reasons the outbound safety guard refuses a destination."""

    INVALID_URL = "invalid_url"
    INVALID_SCHEME = "invalid_scheme"
    PORT_NOT_ALLOWED = "port_not_allowed"
    BLOCKED_HOSTNAME = "blocked_hostname"
    PRIVATE_ADDRESS = "private_address"
    METADATA_SERVICE = "metadata_service"
    IPV6_RESTRICTED = "ipv6_restricted"
    NO_RECORDS = "no_records"
    DNS_TIMEOUT = "dns_timeout"


class RateLimitScope(str, Enum):
    """Identity dimension a rate-limit decision applies to."""

    IP = "ip"
    USER = "user"


class Buckets:
    """Rate-limit bucket names used by the trigger interfaces."""

    PING: Final[str] = "ping"
    CRAWL: Final[str] = "crawl"
    PASS: Final[str] = "pass"
    REMINDER: Final[str] = "reminder"


class NetworkPolicy:
    """
    Static network policy for outbound requests.
    """

    # Cloud provider instance metadata endpoints
    METADATA_ADDRESSES: Final[FrozenSet[str]] = frozenset({
        "169.254.169.254",
        "169.254.170.2",
        "100.100.100.200",
        "fd00:ec2::254",
    })

    BLOCKED_HOSTNAMES: Final[FrozenSet[str]] = frozenset({
        "localhost",
        "localhost.localdomain",
        "metadata.google.internal",
    })

    BLOCKED_SUFFIXES: Final[Tuple[str, ...]] = (
        ".localhost",
        ".local",
        ".internal",
    )

    ALLOWED_SCHEMES: Final[FrozenSet[str]] = frozenset({"http", "https"})

    DEFAULT_PORTS: Final[dict] = {"http": 80, "https": 443}


class Defaults:
    """
    Default Values
    """

    USER_AGENT: Final[str] = "UptimeSentinel/2.0 (SSRF-Protected Monitor)"
    REQUEST_TIMEOUT: Final[float] = 15.0
    DNS_TIMEOUT: Final[float] = 3.0
    MAX_REDIRECTS: Final[int] = 5

    # HEAD is retried as GET for these statuses
    HEAD_FALLBACK_STATUSES: Final[FrozenSet[int]] = frozenset({405, 501})

    # Treated as "unknown" by the crawler rather than broken
    SOFT_BLOCK_STATUSES: Final[FrozenSet[int]] = frozenset({429, 999})

    DATETIME_FORMAT: Final[str] = "%Y-%m-%d %H:%M:%S UTC"


class Limits:
    """
    Hard limits independent of configuration.
    """

    MIN_TIMEOUT: Final[float] = 1.0
    MAX_TIMEOUT: Final[float] = 60.0
    MAX_URL_LENGTH: Final[int] = 2048
    MAX_PAGE_BYTES: Final[int] = 2 * 1024 * 1024
    MAX_ERROR_LENGTH: Final[int] = 500


class ErrorCodes:
    """Application error codes."""

    # General errors (1xxx)
    UNKNOWN_ERROR: Final[int] = 1000
    CONFIGURATION_ERROR: Final[int] = 1100
    INITIALIZATION_ERROR: Final[int] = 1200
    RATE_LIMITED: Final[int] = 1500

    # Database errors (2xxx)
    DB_ERROR: Final[int] = 2000
    DB_CONNECTION_ERROR: Final[int] = 2100
    DB_QUERY_ERROR: Final[int] = 2200
    DB_INTEGRITY_ERROR: Final[int] = 2300
    STORAGE_UNAVAILABLE: Final[int] = 2400

    # Validation errors (3xxx)
    VALIDATION_ERROR: Final[int] = 3000
    INVALID_URL: Final[int] = 3100

    # Monitoring errors (5xxx)
    MONITORING_ERROR: Final[int] = 5000
    UNSAFE_TARGET: Final[int] = 5100
    NO_RECORDS: Final[int] = 5110
    PROBE_ERROR: Final[int] = 5200
    PROBE_TIMEOUT: Final[int] = 5210
    PROBE_CONNECTION: Final[int] = 5220
    TARGET_NOT_FOUND: Final[int] = 5300
    CRAWL_ALREADY_RUNNING: Final[int] = 5400
    NOTIFICATION_FAILED: Final[int] = 5500


@dataclass(frozen=True)
class NotificationTemplates:
    """
    Notification Templates

    Subjects and plain-text bodies handed to the mail collaborator.
    Rendered with ``str.format``.
    """

    DOWN_SUBJECT: Final[str] = "🚨 {name} is DOWN"
    DOWN_BODY: Final[str] = """\
Your website {name} is not responding.

URL: {url}
Detected at: {checked_at}
Status code: {status_code}
Error: {error}

We will let you know as soon as it is back up.
"""

    RECOVERED_SUBJECT: Final[str] = "✅ {name} is BACK UP"
    RECOVERED_BODY: Final[str] = """\
Good news: {name} is responding again.

URL: {url}
Recovered at: {checked_at}
Total downtime: {downtime}
Response time: {latency}
"""

    REMINDER_SUBJECT: Final[str] = "⏰ {name} is still DOWN"
    REMINDER_BODY: Final[str] = """\
{name} has been down since {opened_at} ({downtime}).

URL: {url}
Last error: {error}
"""

    DEAD_LINKS_SUBJECT: Final[str] = "🔗 {broken} broken link(s) found on {name}"
    DEAD_LINKS_BODY: Final[str] = """\
The link scan of {name} has finished.

Page: {url}
Links checked: {total}
Broken links: {broken}

{details}
"""
