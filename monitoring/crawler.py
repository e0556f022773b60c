"""
============================================================================
UPTIME SENTINEL - DEAD-LINK CRAWLER
============================================================================
On-demand scan of one target page for broken outbound links.

Pipeline
--------
1. Refuse when a crawl for the target is already running.
2. Record a ``running`` CrawlResult.
3. Guarded GET of the page (bounded size).
4. Extract ``a[href]`` links with BeautifulSoup, resolve them against the
   page base (``<base href>`` honoured), strip fragments, dedupe, keep
   http/https only, cap the count.
5. Check every link (guard → HEAD-first probe) in paced batches.
6. Atomically replace the target's BrokenLink rows and complete the crawl.
7. When something is broken: informational ``dead_links`` alert record and
   a summary notification (best effort).

A link answering with a soft-block status (429, 999) is "unknown", not
broken: the remote site is rate-limiting the crawler.

When the page itself cannot be fetched the crawl is recorded as
``failed`` and the previous broken links stay as they were.

License: MIT
============================================================================
"""

import asyncio
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, List, Optional
from urllib.parse import urljoin, urlsplit

from bs4 import BeautifulSoup

from config.constants import AlertKind, NetworkPolicy
from config.settings import CrawlerSettings
from database.models import CrawlResult, MonitoredTarget
from database.repositories import AlertRepository, CrawlRepository
from exceptions import (
    CrawlAlreadyRunningError,
    DatabaseException,
    ProbeException,
    UnsafeTargetError,
)
from monitoring.executor import CheckExecutor
from monitoring.notifications import IdentityResolver, NotificationDispatcher, render_dead_links
from monitoring.safety import OutboundSafetyGuard
from utils.helpers import BatchProcessor, KeyedLocks, TimeHelper
from utils.logger import get_logger
from utils.validators import URLValidator


logger = get_logger("DeadLinkCrawler")


@dataclass
class LinkCheck:
    """Outcome of checking one extracted link."""
    url: str
    source_url: str
    status_code: Optional[int] = None
    error: Optional[str] = None
    broken: bool = False
    unknown: bool = False

    def as_broken_row(self) -> Dict[str, object]:
        return {
            "url": self.url,
            "source_url": self.source_url,
            "status_code": self.status_code,
            "error": self.error,
        }


def extract_links(html: str, page_url: str, max_links: int) -> List[str]:
    """
    Absolute, fragment-free, de-duplicated http(s) links of a page, in
    document order, at most ``max_links``.
    """
    soup = BeautifulSoup(html, "html.parser")

    base = page_url
    base_tag = soup.find("base", href=True)
    if base_tag is not None:
        try:
            base = urljoin(page_url, base_tag["href"].strip())
        except ValueError:
            base = page_url

    links: Dict[str, None] = {}
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if not href or href.startswith("#"):
            continue
        try:
            absolute = URLValidator.strip_fragment(urljoin(base, href))
            scheme = urlsplit(absolute).scheme.lower()
        except ValueError:
            continue
        if scheme not in NetworkPolicy.ALLOWED_SCHEMES:
            continue
        links.setdefault(absolute, None)
        if len(links) >= max_links:
            break

    return list(links)


class DeadLinkCrawler:
    """
    Crawls one page of a target for broken links.

    Parameters
    ----------
    settings : CrawlerSettings
        Batching, caps and soft-block statuses.
    crawls : CrawlRepository
        Crawl and broken-link storage.
    alerts : AlertRepository
        Used for the informational ``dead_links`` record.
    guard : OutboundSafetyGuard
        Validates the page and every extracted link.
    executor : CheckExecutor
        Fetches the page and probes links.
    dispatcher : NotificationDispatcher, optional
        Sends the dead-link summary.
    identity : IdentityResolver, optional
        Resolves the owner's notification address.
    """

    def __init__(
        self,
        settings: CrawlerSettings,
        crawls: CrawlRepository,
        alerts: AlertRepository,
        guard: OutboundSafetyGuard,
        executor: CheckExecutor,
        dispatcher: Optional[NotificationDispatcher] = None,
        identity: Optional[IdentityResolver] = None,
    ):
        self.settings = settings
        self.crawls = crawls
        self.alerts = alerts
        self.guard = guard
        self.executor = executor
        self.dispatcher = dispatcher
        self.identity = identity

        self._locks = KeyedLocks()

    # ------------------------------------------------------------------
    # PUBLIC API
    # ------------------------------------------------------------------

    async def crawl(self, target: MonitoredTarget) -> CrawlResult:
        """
        Run one dead-link crawl for ``target``.

        Parameters
        ----------
        target : MonitoredTarget
            Target whose page is scanned.

        Returns
        -------
        CrawlResult
            ``completed`` with totals, or ``failed`` with the error.

        Raises
        ------
        CrawlAlreadyRunningError
            A crawl for this target is already in progress.
        """
        if self._locks.is_held(target.id):
            raise CrawlAlreadyRunningError(target_id=target.id, url=target.url)

        async with self._locks.hold(target.id):
            now = TimeHelper.get_utc_now()
            await self.crawls.fail_stale(
                target.id,
                started_before=now - timedelta(seconds=self.settings.stale_after),
                completed_at=now,
            )
            crawl = await self.crawls.start(target.id, started_at=now)
            logger.info(f"[Crawler] Scan {crawl.id} started for target {target.id} ({target.url})")

            try:
                return await self._run(target, crawl)
            except (UnsafeTargetError, ProbeException) as e:
                reason = f"{e.down_reason} ({e.message})" if isinstance(e, UnsafeTargetError) else e.message
                return await self._fail(crawl, reason)
            except Exception as e:
                await self._fail(crawl, f"Crawl aborted: {e}")
                raise

    # ------------------------------------------------------------------
    # PIPELINE
    # ------------------------------------------------------------------

    async def _run(self, target: MonitoredTarget, crawl: CrawlResult) -> CrawlResult:
        await self.guard.validate_url(target.url)
        page = await self.executor.fetch_page(target.url, max_bytes=self.settings.max_page_bytes)

        if not 200 <= page.status_code < 300:
            return await self._fail(crawl, f"Page returned HTTP {page.status_code}")

        links = extract_links(page.text, page.final_url, self.settings.max_links)
        logger.info(f"[Crawler] Scan {crawl.id}: {len(links)} links to check")

        checks: List[LinkCheck] = await BatchProcessor.process_in_batches(
            links,
            batch_size=self.settings.batch_size,
            process_func=lambda batch: self._check_batch(batch, page.final_url),
            delay_between_batches=self.settings.batch_delay,
        )

        broken = [check for check in checks if check.broken]
        unknown = sum(1 for check in checks if check.unknown)

        completed = await self.crawls.complete_with_links(
            crawl.id,
            target.id,
            total_links=len(links),
            broken=[check.as_broken_row() for check in broken],
            completed_at=TimeHelper.get_utc_now(),
        )

        logger.info(
            f"[Crawler] ✓ Scan {crawl.id} complete — {len(links)} links, "
            f"{len(broken)} broken, {unknown} unknown"
        )

        if broken:
            await self._report(target, len(links), broken)

        return completed

    async def _check_batch(self, batch: List[str], source_url: str) -> List[LinkCheck]:
        return await asyncio.gather(*(self._check_link(url, source_url) for url in batch))

    async def _check_link(self, url: str, source_url: str) -> LinkCheck:
        try:
            await self.guard.validate_url(url)
        except UnsafeTargetError as e:
            return LinkCheck(url=url, source_url=source_url, error=e.down_reason, broken=True)

        result = await self.executor.probe(url, max_redirects=self.settings.max_redirects)
        check = LinkCheck(
            url=url,
            source_url=source_url,
            status_code=result.status_code,
            error=result.error,
        )
        if result.is_up:
            return check
        if result.status_code in self.settings.soft_block_status_codes:
            check.unknown = True
            return check
        check.broken = True
        return check

    async def _fail(self, crawl: CrawlResult, error: str) -> CrawlResult:
        logger.warning(f"[Crawler] ✗ Scan {crawl.id} failed: {error}")
        failed = await self.crawls.fail(crawl.id, error, TimeHelper.get_utc_now())
        return failed or crawl

    async def _report(self, target: MonitoredTarget, total: int, broken: List[LinkCheck]) -> None:
        """Informational alert record plus summary notification, best effort."""
        rows = [check.as_broken_row() for check in broken]
        rendered = render_dead_links(target, total, rows)

        try:
            await self.alerts.add_resolved(
                target.id,
                AlertKind.DEAD_LINKS,
                message=rendered["subject"],
                at=TimeHelper.get_utc_now(),
            )
        except DatabaseException as e:
            logger.error(f"[Crawler] Could not record dead-link alert for target {target.id}: {e.message}")

        if self.dispatcher is None or self.identity is None:
            return

        recipient = await self.identity.resolve_contact(target.owner_id)
        await self.dispatcher.notify(
            recipient,
            rendered["subject"],
            rendered["body"],
            kind="dead_links",
            target_id=target.id,
        )
