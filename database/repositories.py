"""
============================================================================
UPTIME SENTINEL - REPOSITORIES
============================================================================
Data access for targets, check history, alerts and crawl results.

Repositories propagate storage errors (DatabaseQueryError and friends);
callers decide whether a failure is contained or surfaced.

License: MIT
============================================================================
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import delete, func, select, update

from config.constants import (
    AlertKind,
    CheckOutcome,
    CrawlStatus,
    ErrorKind,
    Limits,
    PlanTier,
    TargetStatus,
)
from database.connection import DatabaseManager
from database.models import (
    AlertRecord,
    BrokenLink,
    CheckResult,
    CrawlResult,
    MonitoredTarget,
)
from exceptions import CrawlAlreadyRunningError, DatabaseIntegrityError
from utils.helpers import StringHelper, TimeHelper
from utils.logger import get_logger


# ============================================================================
# BASE REPOSITORY
# ============================================================================

class BaseRepository:
    """
    Base repository class for database operations.
    Provides common CRUD operations.
    """

    model = None

    def __init__(self, db_manager: DatabaseManager):
        """
        Initialize repository.

        Args:
            db_manager: DatabaseManager instance
        """
        self.db = db_manager
        self.logger = get_logger(self.__class__.__name__)

    async def get_by_id(self, record_id: int):
        """
        Get record by ID.

        Args:
            record_id: Record ID

        Returns:
            Model instance or None
        """
        async with self.db.session() as session:
            return await session.get(self.model, record_id)

    async def create(self, model_instance):
        """
        Create new record.

        Args:
            model_instance: Model instance to create

        Returns:
            Created model instance
        """
        async with self.db.session() as session:
            session.add(model_instance)
            await session.flush()
            await session.refresh(model_instance)
        return model_instance

    async def count(self) -> int:
        """Count all records of the model."""
        async with self.db.session() as session:
            result = await session.execute(select(func.count()).select_from(self.model))
            return int(result.scalar_one())


# ============================================================================
# TARGET REPOSITORY
# ============================================================================

class TargetRepository(BaseRepository):
    """Repository for monitored targets."""

    model = MonitoredTarget

    async def add(
        self,
        owner_id: str,
        url: str,
        name: Optional[str] = None,
        plan: PlanTier = PlanTier.FREE,
        is_active: bool = True,
    ) -> MonitoredTarget:
        """Register a new target."""
        target = MonitoredTarget(
            owner_id=str(owner_id),
            url=url,
            name=name or url,
            plan=PlanTier.parse(plan),
            is_active=is_active,
            status=TargetStatus.UNKNOWN,
        )
        return await self.create(target)

    async def get(self, target_id: int) -> Optional[MonitoredTarget]:
        return await self.get_by_id(target_id)

    async def get_owned(self, target_id: int, owner_id: str) -> Optional[MonitoredTarget]:
        """Get a target only if it belongs to ``owner_id``."""
        async with self.db.session() as session:
            result = await session.execute(
                select(MonitoredTarget).where(
                    MonitoredTarget.id == target_id,
                    MonitoredTarget.owner_id == str(owner_id),
                )
            )
            return result.scalar_one_or_none()

    async def list_active(self) -> List[MonitoredTarget]:
        """All active targets, least recently checked first."""
        async with self.db.session() as session:
            result = await session.execute(
                select(MonitoredTarget)
                .where(MonitoredTarget.is_active.is_(True))
                .order_by(MonitoredTarget.last_checked.is_not(None), MonitoredTarget.last_checked, MonitoredTarget.id)
            )
            return list(result.scalars().all())

    async def list_owned(self, owner_id: str) -> List[MonitoredTarget]:
        async with self.db.session() as session:
            result = await session.execute(
                select(MonitoredTarget)
                .where(MonitoredTarget.owner_id == str(owner_id))
                .order_by(MonitoredTarget.id)
            )
            return list(result.scalars().all())

    async def set_active(self, target_id: int, is_active: bool) -> bool:
        async with self.db.session() as session:
            result = await session.execute(
                update(MonitoredTarget)
                .where(MonitoredTarget.id == target_id)
                .values(is_active=is_active, updated_at=TimeHelper.get_utc_now())
            )
            return result.rowcount == 1

    async def delete_owned(self, target_id: int, owner_id: str) -> bool:
        """
        Delete a target and everything recorded for it.

        Owner scoped: returns False when the target does not exist or
        belongs to someone else.
        """
        async with self.db.transaction() as session:
            owned = await session.execute(
                select(MonitoredTarget.id).where(
                    MonitoredTarget.id == target_id,
                    MonitoredTarget.owner_id == str(owner_id),
                )
            )
            if owned.scalar_one_or_none() is None:
                return False

            for model in (BrokenLink, CrawlResult, AlertRecord, CheckResult):
                await session.execute(delete(model).where(model.target_id == target_id))
            await session.execute(delete(MonitoredTarget).where(MonitoredTarget.id == target_id))

        self.logger.info(f"Deleted target {target_id} for owner {owner_id}")
        return True


# ============================================================================
# CHECK REPOSITORY
# ============================================================================

class CheckRepository(BaseRepository):
    """Repository for the append-only check history."""

    model = CheckResult

    async def record(
        self,
        target_id: int,
        outcome: CheckOutcome,
        checked_at: datetime,
        latency_ms: Optional[float] = None,
        status_code: Optional[int] = None,
        error: Optional[str] = None,
        error_kind: Optional[ErrorKind] = None,
    ) -> CheckResult:
        """
        Persist a check result and update the target's last observed
        state in the same transaction.
        """
        check = CheckResult(
            target_id=target_id,
            outcome=outcome,
            latency_ms=latency_ms,
            status_code=status_code,
            error=StringHelper.truncate(error, Limits.MAX_ERROR_LENGTH),
            error_kind=error_kind,
            checked_at=checked_at,
        )
        status = TargetStatus.UP if outcome == CheckOutcome.UP else TargetStatus.DOWN

        async with self.db.transaction() as session:
            session.add(check)
            await session.execute(
                update(MonitoredTarget)
                .where(MonitoredTarget.id == target_id)
                .values(
                    status=status,
                    last_checked=checked_at,
                    last_status_code=status_code,
                    last_response_time_ms=latency_ms,
                    updated_at=TimeHelper.get_utc_now(),
                )
            )
            await session.flush()

        return check

    async def recent(self, target_id: int, limit: int = 10) -> List[CheckResult]:
        """Most recent checks first."""
        async with self.db.session() as session:
            result = await session.execute(
                select(CheckResult)
                .where(CheckResult.target_id == target_id)
                .order_by(CheckResult.checked_at.desc(), CheckResult.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def latest(self, target_id: int) -> Optional[CheckResult]:
        checks = await self.recent(target_id, limit=1)
        return checks[0] if checks else None

    async def consecutive_down_count(self, target_id: int, limit: int) -> int:
        """Number of trailing ``down`` results, looking back at most ``limit``."""
        count = 0
        for check in await self.recent(target_id, limit=limit):
            if check.outcome != CheckOutcome.DOWN:
                break
            count += 1
        return count

    async def cleanup_older_than(self, cutoff: datetime) -> int:
        """Delete check history older than ``cutoff``."""
        async with self.db.session() as session:
            result = await session.execute(
                delete(CheckResult).where(CheckResult.checked_at < cutoff)
            )
            deleted = result.rowcount or 0

        if deleted:
            self.logger.info(f"Deleted {deleted} check results older than {cutoff:%Y-%m-%d}")
        return deleted


# ============================================================================
# ALERT REPOSITORY
# ============================================================================

class AlertRepository(BaseRepository):
    """
    Repository for alert records.

    Opening and resolving are conditional writes so that concurrent
    workers can race safely: only one opens, only one resolves.
    """

    model = AlertRecord

    async def get_open(
        self,
        target_id: int,
        kind: AlertKind = AlertKind.AVAILABILITY,
    ) -> Optional[AlertRecord]:
        async with self.db.session() as session:
            result = await session.execute(
                select(AlertRecord).where(
                    AlertRecord.target_id == target_id,
                    AlertRecord.kind == kind,
                    AlertRecord.resolved_at.is_(None),
                )
            )
            return result.scalar_one_or_none()

    async def open_if_absent(
        self,
        target_id: int,
        opened_at: datetime,
        message: Optional[str] = None,
        kind: AlertKind = AlertKind.AVAILABILITY,
    ) -> Optional[AlertRecord]:
        """
        Insert an open alert unless one already exists.

        Returns:
            The new record, or None if another writer already holds
            the open alert for this (target, kind).
        """
        alert = AlertRecord(
            target_id=target_id,
            kind=kind,
            message=message,
            opened_at=opened_at,
            last_notified_at=opened_at,
            reminder_count=0,
        )
        try:
            async with self.db.session() as session:
                session.add(alert)
                await session.flush()
        except DatabaseIntegrityError:
            self.logger.debug(f"Open {kind.value} alert already exists for target {target_id}")
            return None
        return alert

    async def resolve_open(self, alert_id: int, resolved_at: datetime) -> bool:
        """
        Resolve an alert if it is still open.

        Returns:
            True only for the caller whose update changed the row.
        """
        async with self.db.session() as session:
            result = await session.execute(
                update(AlertRecord)
                .where(AlertRecord.id == alert_id, AlertRecord.resolved_at.is_(None))
                .values(resolved_at=resolved_at, updated_at=TimeHelper.get_utc_now())
            )
            return result.rowcount == 1

    async def record_reminder(self, alert_id: int, notified_at: datetime) -> None:
        async with self.db.session() as session:
            await session.execute(
                update(AlertRecord)
                .where(AlertRecord.id == alert_id)
                .values(
                    last_notified_at=notified_at,
                    reminder_count=AlertRecord.reminder_count + 1,
                )
            )

    async def add_resolved(
        self,
        target_id: int,
        kind: AlertKind,
        message: str,
        at: datetime,
    ) -> AlertRecord:
        """Record an informational alert that is closed on creation."""
        return await self.create(
            AlertRecord(
                target_id=target_id,
                kind=kind,
                message=message,
                opened_at=at,
                resolved_at=at,
                last_notified_at=at,
            )
        )

    async def history(self, target_id: int, limit: int = 20) -> List[AlertRecord]:
        async with self.db.session() as session:
            result = await session.execute(
                select(AlertRecord)
                .where(AlertRecord.target_id == target_id)
                .order_by(AlertRecord.opened_at.desc(), AlertRecord.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())


# ============================================================================
# CRAWL REPOSITORY
# ============================================================================

class CrawlRepository(BaseRepository):
    """Repository for dead-link crawls and their broken links."""

    model = CrawlResult

    async def get_running(self, target_id: int) -> Optional[CrawlResult]:
        async with self.db.session() as session:
            result = await session.execute(
                select(CrawlResult).where(
                    CrawlResult.target_id == target_id,
                    CrawlResult.status == CrawlStatus.RUNNING,
                )
            )
            return result.scalar_one_or_none()

    async def start(self, target_id: int, started_at: datetime) -> CrawlResult:
        """
        Record a running crawl.

        Raises:
            CrawlAlreadyRunningError: If the target already has one
        """
        crawl = CrawlResult(
            target_id=target_id,
            status=CrawlStatus.RUNNING,
            started_at=started_at,
        )
        try:
            return await self.create(crawl)
        except DatabaseIntegrityError as e:
            raise CrawlAlreadyRunningError(target_id=target_id, cause=e)

    async def fail(self, crawl_id: int, error: str, completed_at: datetime) -> Optional[CrawlResult]:
        """Mark a crawl failed. Previous broken links are left untouched."""
        async with self.db.session() as session:
            await session.execute(
                update(CrawlResult)
                .where(CrawlResult.id == crawl_id)
                .values(
                    status=CrawlStatus.FAILED,
                    error=StringHelper.truncate(error, Limits.MAX_ERROR_LENGTH),
                    completed_at=completed_at,
                )
            )
            await session.flush()
            return await session.get(CrawlResult, crawl_id, populate_existing=True)

    async def fail_stale(self, target_id: int, started_before: datetime, completed_at: datetime) -> int:
        """
        Fail running crawls of a target that started before ``started_before``.

        Returns:
            Number of crawls marked failed
        """
        async with self.db.session() as session:
            result = await session.execute(
                update(CrawlResult)
                .where(
                    CrawlResult.target_id == target_id,
                    CrawlResult.status == CrawlStatus.RUNNING,
                    CrawlResult.started_at < started_before,
                )
                .values(
                    status=CrawlStatus.FAILED,
                    error="Crawl abandoned",
                    completed_at=completed_at,
                )
            )
            expired = result.rowcount or 0

        if expired:
            self.logger.warning(f"Marked {expired} abandoned crawl(s) failed for target {target_id}")
        return expired

    async def complete_with_links(
        self,
        crawl_id: int,
        target_id: int,
        total_links: int,
        broken: Iterable[Dict[str, Any]],
        completed_at: datetime,
    ) -> CrawlResult:
        """
        Replace the target's broken links and complete the crawl,
        atomically.
        """
        rows = [
            BrokenLink(
                crawl_id=crawl_id,
                target_id=target_id,
                source_url=item["source_url"],
                url=item["url"],
                status_code=item.get("status_code"),
                error=StringHelper.truncate(item.get("error"), Limits.MAX_ERROR_LENGTH),
                found_at=completed_at,
            )
            for item in broken
        ]

        async with self.db.transaction() as session:
            await session.execute(delete(BrokenLink).where(BrokenLink.target_id == target_id))
            session.add_all(rows)
            await session.execute(
                update(CrawlResult)
                .where(CrawlResult.id == crawl_id)
                .values(
                    status=CrawlStatus.COMPLETED,
                    total_links=total_links,
                    broken_count=len(rows),
                    completed_at=completed_at,
                )
            )
            await session.flush()
            crawl = await session.get(CrawlResult, crawl_id, populate_existing=True)

        return crawl

    async def broken_links(self, target_id: int) -> List[BrokenLink]:
        async with self.db.session() as session:
            result = await session.execute(
                select(BrokenLink)
                .where(BrokenLink.target_id == target_id)
                .order_by(BrokenLink.id)
            )
            return list(result.scalars().all())

    async def latest(self, target_id: int) -> Optional[CrawlResult]:
        async with self.db.session() as session:
            result = await session.execute(
                select(CrawlResult)
                .where(CrawlResult.target_id == target_id)
                .order_by(CrawlResult.started_at.desc(), CrawlResult.id.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()
