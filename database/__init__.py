"""
Database Package for Uptime Sentinel

Provides database connectivity, models, and repositories for
data persistence using SQLAlchemy with async support.
"""

from database.connection import DatabaseManager

from database.models import (
    Base,
    MonitoredTarget,
    CheckResult,
    AlertRecord,
    CrawlResult,
    BrokenLink,
)

from database.repositories import (
    BaseRepository,
    TargetRepository,
    CheckRepository,
    AlertRepository,
    CrawlRepository,
)

__all__ = [
    # Connection
    "DatabaseManager",

    # Models
    "Base",
    "MonitoredTarget",
    "CheckResult",
    "AlertRecord",
    "CrawlResult",
    "BrokenLink",

    # Repositories
    "BaseRepository",
    "TargetRepository",
    "CheckRepository",
    "AlertRepository",
    "CrawlRepository",
]
