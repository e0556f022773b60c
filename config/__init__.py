"""
Configuration Package for Uptime Sentinel

This package contains all configuration-related modules including:
- Settings management with environment variable support
- Constants and enums used throughout the application
"""

from config.settings import (
    Settings,
    DatabaseSettings,
    MonitoringSettings,
    SafetySettings,
    RateLimitSettings,
    RateRule,
    BucketPolicy,
    CrawlerSettings,
    NotificationSettings,
    IdentitySettings,
    LoggingSettings,
    ServerSettings,
    Environment,
    DatabaseType,
    RateLimitBackend,
    get_settings,
)

from config.constants import (
    PlanTier,
    TargetStatus,
    CheckOutcome,
    ErrorKind,
    AlertKind,
    AlertState,
    CrawlStatus,
    BlockReason,
    RateLimitScope,
    Buckets,
    NetworkPolicy,
    Defaults,
    Limits,
    ErrorCodes,
    NotificationTemplates,
)

__all__ = [
    # Settings
    "Settings",
    "DatabaseSettings",
    "MonitoringSettings",
    "SafetySettings",
    "RateLimitSettings",
    "RateRule",
    "BucketPolicy",
    "CrawlerSettings",
    "NotificationSettings",
    "IdentitySettings",
    "LoggingSettings",
    "ServerSettings",
    "Environment",
    "DatabaseType",
    "RateLimitBackend",
    "get_settings",

    # Constants
    "PlanTier",
    "TargetStatus",
    "CheckOutcome",
    "ErrorKind",
    "AlertKind",
    "AlertState",
    "CrawlStatus",
    "BlockReason",
    "RateLimitScope",
    "Buckets",
    "NetworkPolicy",
    "Defaults",
    "Limits",
    "ErrorCodes",
    "NotificationTemplates",
]
