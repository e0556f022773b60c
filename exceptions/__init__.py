"""
Exceptions Package for Uptime Sentinel

Provides the exception hierarchy used for error handling
throughout the application.
"""

from exceptions.base import (
    SentinelException,
    ConfigurationError,
    InitializationError,
    RateLimitExceededError,
)

from exceptions.database import (
    DatabaseException,
    DatabaseConnectionError,
    DatabaseQueryError,
    DatabaseIntegrityError,
    StorageUnavailableError,
)

from exceptions.validation import (
    ValidationException,
    InvalidURLError,
)

from exceptions.monitoring import (
    MonitoringException,
    UnsafeTargetError,
    NoRecordsError,
    ProbeException,
    ProbeTimeoutError,
    ProbeConnectionError,
    TargetNotFoundError,
    CrawlAlreadyRunningError,
    NotificationError,
)

__all__ = [
    # Base exceptions
    "SentinelException",
    "ConfigurationError",
    "InitializationError",
    "RateLimitExceededError",

    # Database exceptions
    "DatabaseException",
    "DatabaseConnectionError",
    "DatabaseQueryError",
    "DatabaseIntegrityError",
    "StorageUnavailableError",

    # Validation exceptions
    "ValidationException",
    "InvalidURLError",

    # Monitoring exceptions
    "MonitoringException",
    "UnsafeTargetError",
    "NoRecordsError",
    "ProbeException",
    "ProbeTimeoutError",
    "ProbeConnectionError",
    "TargetNotFoundError",
    "CrawlAlreadyRunningError",
    "NotificationError",
]
