"""
============================================================================
UPTIME SENTINEL - TRIGGER HTTP SERVER
============================================================================
A lightweight aiohttp server exposing the trigger interfaces to external
collaborators (dashboard backend, cron, admin tooling).

Routes
------
    GET    /health                                  → liveness JSON
    POST   /api/v1/monitoring/pass                  → run one pass
    GET    /api/v1/targets/{target_id}              → target state
    POST   /api/v1/targets/{target_id}/ping         → check now
    POST   /api/v1/targets/{target_id}/crawl        → dead-link scan
    DELETE /api/v1/rate-limits/{bucket}/{identity}  → reset a window

Everything under /api/ requires ``Authorization: Bearer <SERVER_SERVICE_TOKEN>``
when a token is configured. The acting user is passed by the caller in
``X-Actor-Id``. The client IP is the socket peer address; with
SERVER_TRUST_FORWARDED_HEADERS on (only behind a proxy that rewrites
them) it comes from ``X-Forwarded-For`` or ``X-Real-IP``.

Error mapping
-------------
RateLimitExceededError    429  + Retry-After, X-RateLimit-*
UnsafeTargetError         422  "target unsafe"
InvalidURLError           400
TargetNotFoundError       404
CrawlAlreadyRunningError  409
DatabaseException         503

License: MIT
============================================================================
"""

import hmac
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from aiohttp import web

from config.settings import ServerSettings
from database.connection import DatabaseManager
from exceptions import (
    CrawlAlreadyRunningError,
    DatabaseException,
    InitializationError,
    RateLimitExceededError,
    TargetNotFoundError,
    UnsafeTargetError,
    ValidationException,
)
from monitoring.notifications import NotificationDispatcher
from monitoring.rate_limiter import RateLimitDecision
from monitoring.service import MonitoringService
from utils.helpers import PerformanceHelper, TimeHelper
from utils.logger import get_logger


logger = get_logger("TriggerServer")

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


# ============================================================================
# HELPERS
# ============================================================================

def client_ip(request: web.Request, trust_forwarded: bool = True) -> Optional[str]:
    """Best-effort client address of ``request``."""
    if trust_forwarded:
        forwarded = request.headers.get("X-Forwarded-For", "")
        first = forwarded.split(",")[0].strip()
        if first:
            return first
        real_ip = request.headers.get("X-Real-IP", "").strip()
        if real_ip:
            return real_ip
    return request.remote


def _json_error(status: int, error: str, message: str, headers: Optional[Dict[str, str]] = None, **extra: Any) -> web.Response:
    body = {"error": error, "message": message}
    body.update(extra)
    return web.json_response(body, status=status, headers=headers)


def _with_rate_headers(response: web.Response, decision: Optional[RateLimitDecision]) -> web.Response:
    if decision is not None and decision.limit:
        response.headers.update(decision.headers())
    return response


# ============================================================================
# TRIGGER SERVER
# ============================================================================

class TriggerServer:
    """
    aiohttp application serving the trigger interfaces.

    Attributes
    ----------
    app : aiohttp.web.Application
    _runner : aiohttp.web.AppRunner
    _site : aiohttp.web.TCPSite
    _start_time : float          epoch seconds when the server started
    _request_count : int         total requests served
    """

    def __init__(
        self,
        settings: ServerSettings,
        service: MonitoringService,
        db_manager: Optional[DatabaseManager] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        app_version: str = "",
    ):
        self.settings = settings
        self.service = service
        self.db_manager = db_manager
        self.dispatcher = dispatcher
        self.app_version = app_version

        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None
        self._start_time: float = time.time()
        self._request_count: int = 0

        self.app = web.Application(middlewares=[self._error_middleware, self._auth_middleware])
        self.app.router.add_get("/health", self._handle_health)
        self.app.router.add_post("/api/v1/monitoring/pass", self._handle_pass)
        self.app.router.add_get("/api/v1/targets/{target_id}", self._handle_describe)
        self.app.router.add_post("/api/v1/targets/{target_id}/ping", self._handle_ping)
        self.app.router.add_post("/api/v1/targets/{target_id}/crawl", self._handle_crawl)
        self.app.router.add_delete("/api/v1/rate-limits/{bucket}/{identity}", self._handle_reset)

    # ------------------------------------------------------------------
    # LIFECYCLE
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Bind and start serving."""
        self._start_time = time.time()
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self.settings.host, self.settings.port)
        try:
            await self._site.start()
        except OSError as e:
            await self._runner.cleanup()
            self._runner = None
            self._site = None
            raise InitializationError(
                f"Cannot bind {self.settings.host}:{self.settings.port}: {e}",
                component="TriggerServer",
                cause=e,
            )
        logger.info(f"✓ TriggerServer listening on {self.settings.host}:{self.settings.port}")

    async def stop(self) -> None:
        """Gracefully shut down the server."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            self._site = None
        logger.info("✓ TriggerServer stopped")

    # ------------------------------------------------------------------
    # MIDDLEWARE
    # ------------------------------------------------------------------

    @web.middleware
    async def _error_middleware(self, request: web.Request, handler: Handler) -> web.StreamResponse:
        self._request_count += 1
        try:
            return await handler(request)

        except RateLimitExceededError as e:
            headers = {
                "Retry-After": str(e.retry_after),
                "X-RateLimit-Limit": str(e.limit or 0),
                "X-RateLimit-Remaining": "0",
            }
            if e.reset_at is not None:
                headers["X-RateLimit-Reset"] = str(int(e.reset_at))
            return _json_error(
                429, "rate_limited", e.user_message(), headers=headers,
                retry_after=e.retry_after, scope=e.scope,
            )

        except UnsafeTargetError as e:
            return _json_error(422, "target_unsafe", e.user_message(), reason=e.reason.value)

        except ValidationException as e:
            return _json_error(400, "invalid_request", e.user_message())

        except TargetNotFoundError as e:
            return _json_error(404, "not_found", e.user_message())

        except CrawlAlreadyRunningError as e:
            return _json_error(409, "crawl_running", e.message)

        except DatabaseException as e:
            logger.error(f"[TriggerServer] {request.method} {request.path} storage failure: {e.message}")
            return _json_error(503, "unavailable", e.user_message())

    @web.middleware
    async def _auth_middleware(self, request: web.Request, handler: Handler) -> web.StreamResponse:
        if request.path.startswith("/api/") and self.settings.service_token is not None:
            expected = f"Bearer {self.settings.service_token.get_secret_value()}"
            provided = request.headers.get("Authorization", "")
            if not hmac.compare_digest(provided.encode(), expected.encode()):
                logger.warning(f"[TriggerServer] ✗ Unauthorized {request.method} {request.path}")
                return _json_error(401, "unauthorized", "A valid service token is required")
        return await handler(request)

    # ------------------------------------------------------------------
    # ROUTE HANDLERS
    # ------------------------------------------------------------------

    async def _handle_health(self, request: web.Request) -> web.Response:
        """GET /health — liveness JSON."""
        uptime_seconds = time.time() - self._start_time
        db_ok = await self.db_manager.health_check() if self.db_manager is not None else None

        health = {
            "status": "healthy" if db_ok is not False else "degraded",
            "uptime_seconds": round(uptime_seconds, 1),
            "uptime_human": TimeHelper.seconds_to_human_readable(uptime_seconds),
            "requests_served": self._request_count,
            "timestamp": TimeHelper.get_utc_now().isoformat(),
            "version": self.app_version,
            "memory_mb": round(PerformanceHelper.get_memory_usage(), 1),
            "database": db_ok,
            "in_flight_checks": len(self.service.engine.in_flight),
            "rate_limiter": self.service.limiter.get_stats(),
        }
        if self.dispatcher is not None:
            health["notifications"] = self.dispatcher.get_stats()

        return web.json_response(health, status=200)

    async def _handle_pass(self, request: web.Request) -> web.Response:
        """POST /api/v1/monitoring/pass — run one monitoring pass."""
        outcome = await self.service.run_monitoring_pass(
            actor_id=request.headers.get("X-Actor-Id") or None,
            client_ip=client_ip(request, self.settings.trust_forwarded_headers),
        )
        response = web.json_response(outcome.result.to_dict())
        return _with_rate_headers(response, outcome.rate_limit)

    async def _handle_describe(self, request: web.Request) -> web.Response:
        actor_id = self._require_actor(request)
        target_id = self._target_id(request)
        return web.json_response(await self.service.describe_target(actor_id, target_id))

    async def _handle_ping(self, request: web.Request) -> web.Response:
        """POST /api/v1/targets/{id}/ping — check one target now."""
        actor_id = self._require_actor(request)
        outcome = await self.service.ping_now(
            actor_id,
            self._target_id(request),
            client_ip=client_ip(request, self.settings.trust_forwarded_headers),
        )
        response = web.json_response(outcome.result.to_dict())
        return _with_rate_headers(response, outcome.rate_limit)

    async def _handle_crawl(self, request: web.Request) -> web.Response:
        """POST /api/v1/targets/{id}/crawl — dead-link scan."""
        actor_id = self._require_actor(request)
        outcome = await self.service.scan_now(
            actor_id,
            self._target_id(request),
            client_ip=client_ip(request, self.settings.trust_forwarded_headers),
        )
        response = web.json_response(outcome.result.to_dict())
        return _with_rate_headers(response, outcome.rate_limit)

    async def _handle_reset(self, request: web.Request) -> web.Response:
        """DELETE /api/v1/rate-limits/{bucket}/{identity} — admin reset."""
        bucket = request.match_info["bucket"]
        identity = request.match_info["identity"]
        await self.service.reset_rate_limit(bucket, identity)
        return web.json_response({"bucket": bucket, "identity": identity, "reset": True})

    # ------------------------------------------------------------------
    # REQUEST HELPERS
    # ------------------------------------------------------------------

    @staticmethod
    def _require_actor(request: web.Request) -> str:
        actor_id = request.headers.get("X-Actor-Id", "").strip()
        if not actor_id:
            raise web.HTTPBadRequest(
                text='{"error": "missing_actor", "message": "X-Actor-Id header is required"}',
                content_type="application/json",
            )
        return actor_id

    @staticmethod
    def _target_id(request: web.Request) -> int:
        try:
            return int(request.match_info["target_id"])
        except ValueError:
            raise TargetNotFoundError("Target not found")
