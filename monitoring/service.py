"""
============================================================================
UPTIME SENTINEL - TRIGGER SERVICE
============================================================================
Facade used by external collaborators (dashboard, cron, admin tooling):
register targets, run a monitoring pass, ping a target now, scan a target
for dead links, reset a rate-limit window.

Every on-demand trigger passes through the rate limiter, keyed by the
actor id and the client IP, before anything is executed.

License: MIT
============================================================================
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from config.constants import Buckets, PlanTier
from database.models import MonitoredTarget
from database.repositories import CheckRepository, CrawlRepository, TargetRepository
from exceptions import TargetNotFoundError
from monitoring.alerts import AlertStateMachine
from monitoring.crawler import DeadLinkCrawler
from monitoring.monitor import MonitoringEngine
from monitoring.notifications import IdentityResolver
from monitoring.rate_limiter import RateLimitDecision, SlidingWindowRateLimiter
from monitoring.safety import OutboundSafetyGuard
from utils.logger import get_logger
from utils.validators import URLValidator


logger = get_logger("MonitoringService")


@dataclass
class TriggerResult:
    """Result of an on-demand trigger plus the rate-limit decision that admitted it."""
    result: Any
    rate_limit: Optional[RateLimitDecision] = None


class MonitoringService:
    """
    Trigger interfaces over the engine, the crawler and the limiter.

    Args:
        targets: Target repository
        checks: Check history repository
        crawls: Crawl repository
        engine: MonitoringEngine running the check pipeline
        crawler: DeadLinkCrawler
        limiter: SlidingWindowRateLimiter guarding the triggers
        identity: Resolves actor plans
        guard: Safety guard used to vet new targets
        alert_machine: Source of the derived alert state
    """

    def __init__(
        self,
        targets: TargetRepository,
        checks: CheckRepository,
        crawls: CrawlRepository,
        engine: MonitoringEngine,
        crawler: DeadLinkCrawler,
        limiter: SlidingWindowRateLimiter,
        identity: IdentityResolver,
        guard: OutboundSafetyGuard,
        alert_machine: Optional[AlertStateMachine] = None,
    ):
        self.targets = targets
        self.checks = checks
        self.crawls = crawls
        self.engine = engine
        self.crawler = crawler
        self.limiter = limiter
        self.identity = identity
        self.guard = guard
        self.alert_machine = alert_machine

    # ------------------------------------------------------------------
    # TARGETS
    # ------------------------------------------------------------------

    async def register_target(
        self,
        owner_id: str,
        url: str,
        name: Optional[str] = None,
        plan: Optional[PlanTier] = None,
    ) -> MonitoredTarget:
        """
        Register a new target after URL and safety validation.

        Raises:
            InvalidURLError: If the URL is malformed
            UnsafeTargetError: If the destination is not publicly routable
        """
        normalized = URLValidator.normalize_url(url)
        await self.guard.validate_url(normalized)

        tier = PlanTier.parse(plan) if plan is not None else await self.identity.resolve_plan(owner_id)
        target = await self.targets.add(owner_id=owner_id, url=normalized, name=name, plan=tier)
        logger.info(f"[Service] Target {target.id} registered for {owner_id}: {normalized} ({tier.value})")
        return target

    async def delete_target(self, actor_id: str, target_id: int) -> None:
        """Owner-scoped delete of a target and its history."""
        if not await self.targets.delete_owned(target_id, actor_id):
            raise TargetNotFoundError(target_id=target_id)

    async def describe_target(self, actor_id: str, target_id: int) -> Dict[str, Any]:
        """Target row, latest check, derived alert state and latest crawl."""
        target = await self._owned_target(actor_id, target_id)
        latest = await self.checks.latest(target.id)
        crawl = await self.crawls.latest(target.id)
        running = await self.crawls.get_running(target.id)
        state = await self.alert_machine.current_state(target.id) if self.alert_machine else None
        return {
            "target": target.to_dict(),
            "latest_check": latest.to_dict() if latest else None,
            "alert_state": state.value if state else None,
            "latest_crawl": crawl.to_dict() if crawl else None,
            "crawl_running": running is not None,
        }

    # ------------------------------------------------------------------
    # TRIGGERS
    # ------------------------------------------------------------------

    async def run_monitoring_pass(
        self,
        actor_id: Optional[str] = None,
        client_ip: Optional[str] = None,
    ) -> TriggerResult:
        """
        Run one monitoring pass. Scheduled callers pass no identity and
        are not rate limited.

        Raises:
            RateLimitExceededError: If the caller's window is exhausted
        """
        decision = None
        if actor_id or client_ip:
            plan = await self.identity.resolve_plan(actor_id) if actor_id else None
            decision = await self.limiter.enforce(
                Buckets.PASS,
                ip=client_ip,
                user_id=actor_id,
                plan=plan.value if plan else None,
            )
        summary = await self.engine.run_pass()
        return TriggerResult(result=summary, rate_limit=decision)

    async def ping_now(
        self,
        actor_id: str,
        target_id: int,
        client_ip: Optional[str] = None,
    ) -> TriggerResult:
        """
        Check one owned target immediately.

        Raises:
            TargetNotFoundError: Unknown or foreign target
            RateLimitExceededError: Window exhausted
            UnsafeTargetError: The guard refused the destination
        """
        target = await self._owned_target(actor_id, target_id)
        plan = await self.identity.resolve_plan(actor_id, default=PlanTier.parse(target.plan))
        decision = await self.limiter.enforce(
            Buckets.PING,
            ip=client_ip,
            user_id=actor_id,
            plan=plan.value,
        )
        check = await self.engine.check_target(target, strict=True)
        return TriggerResult(result=check, rate_limit=decision)

    async def scan_now(
        self,
        actor_id: str,
        target_id: int,
        client_ip: Optional[str] = None,
    ) -> TriggerResult:
        """
        Run a dead-link crawl of one owned target.

        Raises:
            TargetNotFoundError: Unknown or foreign target
            RateLimitExceededError: Window exhausted (also the plan crawl quota)
            CrawlAlreadyRunningError: A crawl is in progress
        """
        target = await self._owned_target(actor_id, target_id)
        plan = await self.identity.resolve_plan(actor_id, default=PlanTier.parse(target.plan))
        decision = await self.limiter.enforce(
            Buckets.CRAWL,
            ip=client_ip,
            user_id=actor_id,
            plan=plan.value,
        )
        crawl = await self.crawler.crawl(target)
        return TriggerResult(result=crawl, rate_limit=decision)

    async def reset_rate_limit(self, bucket: str, identity: str) -> None:
        """Admin: clear the windows of ``identity`` in ``bucket``."""
        await self.limiter.reset(bucket, identity)

    # ------------------------------------------------------------------
    # HELPERS
    # ------------------------------------------------------------------

    async def _owned_target(self, actor_id: str, target_id: int) -> MonitoredTarget:
        target = await self.targets.get_owned(target_id, actor_id)
        if target is None:
            raise TargetNotFoundError(target_id=target_id)
        return target
