"""
============================================================================
UPTIME SENTINEL - MAIN APPLICATION
============================================================================
Wires every layer of the service together and owns the startup and
shutdown order.

    Layer 1 - Core & Storage
        • Settings (pydantic-settings)
        • SQLAlchemy async engine + repositories
        • Logging, validators, helpers

    Layer 2 - Monitoring
        • OutboundSafetyGuard  - SSRF gate in front of every request
        • CheckExecutor        - HEAD-first httpx probes
        • AlertStateMachine    - debounced down / recovery / reminders
        • MonitoringEngine     - due computation + bounded fan-out
        • DeadLinkCrawler      - on-demand broken-link scans

    Layer 3 - Triggers & Infra
        • SlidingWindowRateLimiter  - memory or Redis counter store
        • NotificationDispatcher    - queued mail delivery with retries
        • Scheduler                 - monitoring pass + housekeeping jobs
        • TriggerServer             - aiohttp trigger API on SERVER_PORT

Startup Order
-------------
1.  Load settings & configure logging
2.  Connect the database (create tables if enabled)
3.  Build the rate limiter and its counter store
4.  Build notifier, dispatcher and identity resolver
5.  Build guard, executor, alert machine, engine, crawler, service
6.  Start dispatcher → scheduler → trigger server

Shutdown Order (reverse)
------------------------
On SIGINT or SIGTERM:
    stop trigger server → stop scheduler → stop dispatcher (drain) →
    close HTTP client → close counter store → close DB → exit

License: MIT
============================================================================
"""

import asyncio
import signal
import sys
from typing import Optional

from pydantic import ValidationError

from config.settings import Settings, get_settings
from database.connection import DatabaseManager
from database.repositories import AlertRepository, CheckRepository, CrawlRepository, TargetRepository
from exceptions import ConfigurationError, InitializationError, SentinelException
from monitoring.alerts import AlertStateMachine
from monitoring.crawler import DeadLinkCrawler
from monitoring.executor import CheckExecutor
from monitoring.monitor import MonitoringEngine
from monitoring.notifications import NotificationDispatcher, StaticIdentityResolver, build_notifier
from monitoring.rate_limiter import CounterStore, SlidingWindowRateLimiter, build_counter_store
from monitoring.safety import OutboundSafetyGuard
from monitoring.scheduler import Scheduler
from monitoring.server import TriggerServer
from monitoring.service import MonitoringService
from utils.logger import get_logger, setup_logging


logger = get_logger("Main")


# ============================================================================
# APPLICATION CLASS
# ============================================================================

class SentinelApplication:
    """
    Top-level application orchestrator.

    Owns every subsystem and is the single place that knows the startup /
    shutdown order. Subsystems receive their collaborators through their
    constructors; only Settings is cached process-wide.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

        # --- subsystems (populated during startup) ---
        self.db_manager: Optional[DatabaseManager] = None
        self.counter_store: Optional[CounterStore] = None
        self.limiter: Optional[SlidingWindowRateLimiter] = None
        self.dispatcher: Optional[NotificationDispatcher] = None
        self.executor: Optional[CheckExecutor] = None
        self.engine: Optional[MonitoringEngine] = None
        self.service: Optional[MonitoringService] = None
        self.scheduler: Optional[Scheduler] = None
        self.server: Optional[TriggerServer] = None

        self._shutdown_event = asyncio.Event()
        self._is_running = False

    def _print_banner(self) -> None:
        db = self.settings.database
        logger.info("=" * 74)
        logger.info(f"  {self.settings.app_name} v{self.settings.app_version} ({self.settings.environment.value})")
        logger.info(f"  Database : {db.type.value:<10}   Rate limit store : {self.settings.rate_limit.backend.value}")
        logger.info(f"  Trigger API : {'on port ' + str(self.settings.server.port) if self.settings.server.enabled else 'disabled'}")
        logger.info("=" * 74)

    # ==================================================================
    # PHASE 1 - DATABASE
    # ==================================================================

    async def _init_database(self) -> bool:
        """Connect the database manager and verify connectivity."""
        logger.info("── Phase 1: Database ─────────────────────────────")
        try:
            self.db_manager = DatabaseManager(self.settings.database)
            await self.db_manager.connect()
            logger.info(f"  ✓ Connected to {self.settings.database.type.value}")
            return True

        except SentinelException as e:
            logger.error(f"  ✗ Database init failed: {e.log_format()}")
            return False

    # ==================================================================
    # PHASE 2 - RATE LIMITER & NOTIFICATIONS
    # ==================================================================

    async def _init_infra(self) -> None:
        """Counter store, limiter, notifier and dispatcher."""
        logger.info("── Phase 2: Rate limiter & notifications ─────────")
        self.counter_store = build_counter_store(self.settings.rate_limit)
        if not await self.counter_store.ping():
            logger.warning("  ⚠ Counter store unreachable, rate limiting will fail open")
        self.limiter = SlidingWindowRateLimiter(self.settings.rate_limit, self.counter_store)

        notifier = build_notifier(self.settings.notifications)
        self.dispatcher = NotificationDispatcher(notifier, self.settings.notifications)
        logger.info(f"  ✓ Limiter and {type(notifier).__name__} ready")

    # ==================================================================
    # PHASE 3 - MONITORING
    # ==================================================================

    def _init_monitoring(self) -> None:
        """Guard, executor, alert machine, engine, crawler and the service facade."""
        logger.info("── Phase 3: Monitoring ───────────────────────────")
        targets = TargetRepository(self.db_manager)
        checks = CheckRepository(self.db_manager)
        alerts = AlertRepository(self.db_manager)
        crawls = CrawlRepository(self.db_manager)

        identity = StaticIdentityResolver(self.settings.identity)
        guard = OutboundSafetyGuard(self.settings.safety)
        self.executor = CheckExecutor(self.settings.monitoring, guard=guard)

        alert_machine = AlertStateMachine(
            alerts=alerts,
            checks=checks,
            dispatcher=self.dispatcher,
            identity=identity,
            settings=self.settings.monitoring,
            limiter=self.limiter,
        )
        self.engine = MonitoringEngine(
            self.settings.monitoring,
            targets=targets,
            checks=checks,
            guard=guard,
            executor=self.executor,
            alert_machine=alert_machine,
        )
        crawler = DeadLinkCrawler(
            self.settings.crawler,
            crawls=crawls,
            alerts=alerts,
            guard=guard,
            executor=self.executor,
            dispatcher=self.dispatcher,
            identity=identity,
        )
        self.service = MonitoringService(
            targets=targets,
            checks=checks,
            crawls=crawls,
            engine=self.engine,
            crawler=crawler,
            limiter=self.limiter,
            identity=identity,
            guard=guard,
            alert_machine=alert_machine,
        )
        self.scheduler = Scheduler(
            self.settings,
            self.db_manager,
            engine=self.engine,
            limiter=self.limiter,
        )

        if self.settings.server.enabled:
            self.server = TriggerServer(
                self.settings.server,
                self.service,
                db_manager=self.db_manager,
                dispatcher=self.dispatcher,
                app_version=self.settings.app_version,
            )
        logger.info(f"  ✓ Engine, crawler and scheduler ({len(self.scheduler.job_names)} jobs) created")

    # ==================================================================
    # FULL STARTUP SEQUENCE
    # ==================================================================

    async def startup(self) -> bool:
        """
        Execute the complete startup sequence.
        Returns False (and logs errors) if a critical phase fails.
        """
        self._print_banner()

        if not await self._init_database():
            return False

        await self._init_infra()
        self._init_monitoring()

        logger.info("── Starting background services ───────────────────")
        await self.dispatcher.start()
        await self.scheduler.start()
        if self.server is not None:
            try:
                await self.server.start()
            except InitializationError as e:
                logger.error(f"  ✗ {e.log_format()}")
                return False

        self._is_running = True
        logger.info("  ✓ ALL SYSTEMS OPERATIONAL")
        return True

    # ==================================================================
    # SHUTDOWN SEQUENCE
    # ==================================================================

    async def shutdown(self) -> None:
        """
        Graceful shutdown in reverse order. A failure in one subsystem is
        logged and does not prevent the others from cleaning up.
        """
        if not self._is_running and self.db_manager is None:
            return
        logger.info("  SHUTTING DOWN …")
        self._is_running = False

        steps = [
            ("TriggerServer", self.server.stop if self.server else None),
            ("Scheduler", self.scheduler.stop if self.scheduler else None),
            ("NotificationDispatcher", self.dispatcher.stop if self.dispatcher else None),
            ("CheckExecutor", self.executor.close if self.executor else None),
            ("CounterStore", self.counter_store.close if self.counter_store else None),
            ("Database", self.db_manager.disconnect if self.db_manager else None),
        ]
        for name, stop in steps:
            if stop is None:
                continue
            try:
                await stop()
            except Exception as e:
                logger.opt(exception=e).error(f"  ✗ {name} stop error: {e}")

        self.db_manager = None
        logger.info("  ✓ SHUTDOWN COMPLETE")

    # ==================================================================
    # RUN
    # ==================================================================

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    async def run(self) -> None:
        """Block until a shutdown is requested."""
        await self._shutdown_event.wait()


# ============================================================================
# SIGNAL HANDLER SETUP
# ============================================================================

def _install_signal_handlers(app: SentinelApplication) -> None:
    """
    SIGTERM / SIGINT trigger a graceful shutdown.
    """
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, app.request_shutdown)
        except (NotImplementedError, OSError):
            # Not supported on Windows; KeyboardInterrupt still applies
            logger.debug(f"Signal handler for {sig.name} not installed")


# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

async def main() -> int:
    """Create the app, start it, and run until shutdown."""
    try:
        settings = get_settings()
    except ValidationError as e:
        first = e.errors()[0] if e.error_count() else {}
        error = ConfigurationError(
            f"Invalid configuration ({e.error_count()} errors)",
            config_key=".".join(str(part) for part in first.get("loc", ())),
            cause=e,
        )
        logger.error(f"✗ {error.log_format()}\n{e}")
        return 2
    setup_logging(settings)

    app = SentinelApplication(settings)
    _install_signal_handlers(app)

    try:
        if not await app.startup():
            logger.error("  ✗ Startup failed, exiting")
            return 1
        logger.info("  ⚡ Running, press Ctrl+C to stop")
        await app.run()
        return 0
    finally:
        await app.shutdown()


def cli() -> None:
    """Console entry point."""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(0)


if __name__ == "__main__":
    cli()
