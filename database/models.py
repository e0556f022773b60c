"""
============================================================================
UPTIME SENTINEL - DATABASE MODELS
============================================================================
SQLAlchemy ORM models for monitored targets, check history, alerts
and dead-link crawl results.

All timestamps are naive UTC datetimes.

License: MIT
============================================================================
"""

from typing import Any, Dict, Optional

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Text, Float,
    Enum, ForeignKey, Index, text
)
from sqlalchemy.orm import declarative_base

from config.constants import (
    AlertKind,
    CheckOutcome,
    CrawlStatus,
    ErrorKind,
    PlanTier,
    TargetStatus,
)
from utils.helpers import TimeHelper


# ============================================================================
# BASE MODEL CONFIGURATION
# ============================================================================

Base = declarative_base()


def _enum(enum_cls) -> Enum:
    """String-backed enum column storing member values."""
    return Enum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


class TimestampMixin:
    """
    Mixin to add created_at and updated_at timestamps to models.
    """
    created_at = Column(
        DateTime,
        nullable=False,
        default=TimeHelper.get_utc_now,
        index=True
    )
    updated_at = Column(
        DateTime,
        nullable=False,
        default=TimeHelper.get_utc_now,
        onupdate=TimeHelper.get_utc_now
    )


# ============================================================================
# MONITORED TARGET MODEL
# ============================================================================

class MonitoredTarget(Base, TimestampMixin):
    """
    A registered endpoint probed on its owner's plan cadence.
    """
    __tablename__ = "monitored_targets"

    id = Column(Integer, primary_key=True, autoincrement=True)

    # Ownership
    owner_id = Column(String(64), nullable=False, index=True)
    plan = Column(_enum(PlanTier), nullable=False, default=PlanTier.FREE)

    # Target information
    url = Column(Text, nullable=False)
    name = Column(String(255), nullable=False)

    # Monitoring state
    is_active = Column(Boolean, default=True, nullable=False)
    status = Column(_enum(TargetStatus), nullable=False, default=TargetStatus.UNKNOWN)
    last_checked = Column(DateTime, nullable=True)
    last_status_code = Column(Integer, nullable=True)
    last_response_time_ms = Column(Float, nullable=True)

    __table_args__ = (
        Index("idx_target_active_checked", "is_active", "last_checked"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert target to dictionary"""
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "name": self.name,
            "url": self.url,
            "plan": self.plan.value if self.plan else None,
            "is_active": self.is_active,
            "status": self.status.value if self.status else None,
            "last_checked": _iso(self.last_checked),
            "last_status_code": self.last_status_code,
            "last_response_time_ms": self.last_response_time_ms,
        }

    def __repr__(self) -> str:
        return f"<MonitoredTarget(id={self.id}, url='{self.url}', status={self.status})>"


# ============================================================================
# CHECK RESULT MODEL
# ============================================================================

class CheckResult(Base):
    """
    One probe outcome. Append-only; ordered by ``checked_at`` per target.
    """
    __tablename__ = "check_results"

    id = Column(Integer, primary_key=True, autoincrement=True)

    target_id = Column(
        Integer,
        ForeignKey("monitored_targets.id", ondelete="CASCADE"),
        nullable=False
    )

    outcome = Column(_enum(CheckOutcome), nullable=False)
    latency_ms = Column(Float, nullable=True)
    status_code = Column(Integer, nullable=True)
    error = Column(Text, nullable=True)
    error_kind = Column(_enum(ErrorKind), nullable=True)
    checked_at = Column(DateTime, nullable=False, default=TimeHelper.get_utc_now)

    __table_args__ = (
        Index("idx_check_target_time", "target_id", "checked_at"),
        Index("idx_check_time", "checked_at"),
    )

    @property
    def is_up(self) -> bool:
        return self.outcome == CheckOutcome.UP

    def to_dict(self) -> Dict[str, Any]:
        """Convert check result to dictionary"""
        return {
            "id": self.id,
            "target_id": self.target_id,
            "outcome": self.outcome.value,
            "latency_ms": round(self.latency_ms, 1) if self.latency_ms is not None else None,
            "status_code": self.status_code,
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "checked_at": _iso(self.checked_at),
        }


# ============================================================================
# ALERT MODEL
# ============================================================================

class AlertRecord(Base, TimestampMixin):
    """
    An alert episode for a target. At most one unresolved record per
    (target, kind); the partial unique index enforces it in storage.
    """
    __tablename__ = "alert_records"

    id = Column(Integer, primary_key=True, autoincrement=True)

    target_id = Column(
        Integer,
        ForeignKey("monitored_targets.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    kind = Column(_enum(AlertKind), nullable=False, default=AlertKind.AVAILABILITY)
    message = Column(Text, nullable=True)
    opened_at = Column(DateTime, nullable=False, default=TimeHelper.get_utc_now)
    resolved_at = Column(DateTime, nullable=True)

    # Reminder bookkeeping
    last_notified_at = Column(DateTime, nullable=True)
    reminder_count = Column(Integer, default=0, nullable=False)

    __table_args__ = (
        Index(
            "uq_alert_open_target_kind",
            "target_id",
            "kind",
            unique=True,
            sqlite_where=text("resolved_at IS NULL"),
            postgresql_where=text("resolved_at IS NULL"),
        ),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert alert to dictionary"""
        return {
            "id": self.id,
            "target_id": self.target_id,
            "kind": self.kind.value,
            "message": self.message,
            "opened_at": _iso(self.opened_at),
            "resolved_at": _iso(self.resolved_at),
            "reminder_count": self.reminder_count,
        }


# ============================================================================
# CRAWL MODELS
# ============================================================================

class CrawlResult(Base):
    """
    A dead-link crawl of a target's page.
    """
    __tablename__ = "crawl_results"

    id = Column(Integer, primary_key=True, autoincrement=True)

    target_id = Column(
        Integer,
        ForeignKey("monitored_targets.id", ondelete="CASCADE"),
        nullable=False
    )

    status = Column(_enum(CrawlStatus), nullable=False, default=CrawlStatus.RUNNING)
    total_links = Column(Integer, default=0, nullable=False)
    broken_count = Column(Integer, default=0, nullable=False)
    error = Column(Text, nullable=True)
    started_at = Column(DateTime, nullable=False, default=TimeHelper.get_utc_now)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_crawl_target_started", "target_id", "started_at"),
        Index(
            "uq_crawl_running_target",
            "target_id",
            unique=True,
            sqlite_where=text("status = 'running'"),
            postgresql_where=text("status = 'running'"),
        ),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert crawl result to dictionary"""
        return {
            "id": self.id,
            "target_id": self.target_id,
            "status": self.status.value,
            "total_links": self.total_links,
            "broken_count": self.broken_count,
            "error": self.error,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
        }


class BrokenLink(Base):
    """
    A link found broken by the most recent completed crawl of a target.
    """
    __tablename__ = "broken_links"

    id = Column(Integer, primary_key=True, autoincrement=True)

    crawl_id = Column(
        Integer,
        ForeignKey("crawl_results.id", ondelete="CASCADE"),
        nullable=False
    )
    target_id = Column(
        Integer,
        ForeignKey("monitored_targets.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    source_url = Column(Text, nullable=False)
    url = Column(Text, nullable=False)
    status_code = Column(Integer, nullable=True)
    error = Column(Text, nullable=True)
    found_at = Column(DateTime, nullable=False, default=TimeHelper.get_utc_now)

    def to_dict(self) -> Dict[str, Any]:
        """Convert broken link to dictionary"""
        return {
            "url": self.url,
            "source_url": self.source_url,
            "status_code": self.status_code,
            "error": self.error,
            "found_at": _iso(self.found_at),
        }
