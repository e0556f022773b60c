"""
============================================================================
UPTIME SENTINEL - NOTIFICATION DISPATCH
============================================================================
Delivers alert notifications to the external mail collaborator.

Design
------
``NotificationDispatcher`` owns an internal asyncio.Queue. Callers (the
AlertStateMachine, the DeadLinkCrawler) call ``notify()`` which, once the
dispatcher is started, simply pushes a payload onto the queue. A separate
``_dispatch_loop()`` task pulls items off one at a time and hands them to
the configured ``Notifier``. When the dispatcher has not been started,
``notify()`` delivers inline, which keeps tests and one-shot commands
deterministic.

This decouples the monitoring path from the (potentially slow) mail
call: a slow send never blocks other checks.

Retry
-----
If a send fails the notification is retried up to ``NOTIFY_MAX_RETRIES``
times with exponential back-off. Exhausted retries are logged; a failed
notification never rolls back the alert transition that produced it.

Identity
--------
``IdentityResolver`` answers "which plan is this actor on" and "where do
their notifications go". ``StaticIdentityResolver`` reads both from the
IDENTITY_ configuration maps.

License: MIT
============================================================================
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

import httpx

from config.constants import NotificationTemplates, PlanTier
from config.settings import IdentitySettings, NotificationSettings
from exceptions import NotificationError
from utils.helpers import StringHelper, TimeHelper
from utils.logger import get_logger


logger = get_logger("Notifications")


# ============================================================================
# NOTIFICATION PAYLOAD (internal queue item)
# ============================================================================

@dataclass
class Notification:
    """
    Payload that travels through the dispatch queue.
    """
    recipient: str
    subject: str
    body: str
    kind: str = "generic"
    target_id: Optional[int] = None
    enqueued_at: float = field(default_factory=time.time)


# ============================================================================
# NOTIFIERS
# ============================================================================

class Notifier(ABC):
    """Delivery channel for a rendered notification."""

    name: str = "abstract"

    @abstractmethod
    async def send(self, recipient: str, subject: str, body: str) -> None:
        """
        Deliver one message.

        Raises
        ------
        NotificationError
            When the message could not be delivered.
        """

    async def close(self) -> None:
        return None


class LoggingNotifier(Notifier):
    """Writes notifications to the log instead of sending them."""

    name = "log"

    async def send(self, recipient: str, subject: str, body: str) -> None:
        logger.info(f"[Notify] (log only) to={recipient} subject={subject!r}")
        logger.debug(f"[Notify] body:\n{body}")


class MailDispatchNotifier(Notifier):
    """
    Posts JSON messages to the external mail collaborator.

    Parameters
    ----------
    settings : NotificationSettings
        Endpoint, bearer token, sender and timeout.
    transport : httpx.AsyncBaseTransport, optional
        Injected in tests (``httpx.MockTransport``).
    """

    name = "mail"

    def __init__(
        self,
        settings: NotificationSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not settings.mail_endpoint:
            raise ValueError("MailDispatchNotifier requires NOTIFY_MAIL_ENDPOINT")
        self.settings = settings
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {"Content-Type": "application/json"}
            if self.settings.api_token is not None:
                headers["Authorization"] = f"Bearer {self.settings.api_token.get_secret_value()}"
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.settings.timeout),
                headers=headers,
                transport=self._transport,
            )
        return self._client

    async def send(self, recipient: str, subject: str, body: str) -> None:
        payload = {
            "to": recipient.strip().lower(),
            "from": self.settings.sender,
            "subject": subject[:200],
            "text": body,
        }
        try:
            response = await self._get_client().post(self.settings.mail_endpoint, json=payload)
        except httpx.HTTPError as e:
            raise NotificationError(
                f"Mail collaborator unreachable: {e}",
                recipient=recipient,
                cause=e,
            )

        if response.status_code >= 400:
            raise NotificationError(
                f"Mail collaborator answered HTTP {response.status_code}",
                recipient=recipient,
                status_code=response.status_code,
            )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def build_notifier(settings: NotificationSettings) -> Notifier:
    """Mail notifier when an endpoint is configured, else log only."""
    if settings.mail_endpoint:
        logger.info(f"[Notify] Using mail collaborator at {settings.mail_endpoint}")
        return MailDispatchNotifier(settings)
    logger.warning("[Notify] NOTIFY_MAIL_ENDPOINT not set, notifications will only be logged")
    return LoggingNotifier()


# ============================================================================
# DISPATCHER
# ============================================================================

class NotificationDispatcher:
    """
    Fire-and-forget notification queue with retries.

    Parameters
    ----------
    notifier : Notifier
        Delivery channel.
    settings : NotificationSettings
        Queue size and retry policy.
    sleep : callable, optional
        Back-off sleep; injected in tests.
    """

    def __init__(
        self,
        notifier: Notifier,
        settings: NotificationSettings,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.notifier = notifier
        self.settings = settings
        self._sleep = sleep

        self._queue: asyncio.Queue = asyncio.Queue(maxsize=settings.queue_size)
        self._max_retries = settings.max_retries

        self._sent = 0
        self._failed = 0
        self._dropped = 0

        self._running = False
        self._dispatch_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # LIFECYCLE
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the background dispatch loop."""
        if self._running:
            logger.warning("[Notify] Dispatcher is already running")
            return
        self._running = True
        self._dispatch_task = asyncio.create_task(self._dispatch_loop())
        logger.info(f"[Notify] ✓ Dispatcher started ({self.notifier.name})")

    async def stop(self) -> None:
        """Stop the dispatch loop and deliver what is still queued (one attempt each)."""
        self._running = False
        if self._dispatch_task:
            self._dispatch_task.cancel()
            try:
                await self._dispatch_task
            except asyncio.CancelledError:
                pass
            self._dispatch_task = None

        drained = 0
        while not self._queue.empty():
            try:
                notification = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            await self._deliver(notification, max_retries=0)
            drained += 1
        if drained:
            logger.info(f"[Notify] Drained {drained} queued notifications on shutdown")

        await self.notifier.close()
        logger.info("[Notify] ✓ Dispatcher stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # PUBLIC API
    # ------------------------------------------------------------------

    async def notify(
        self,
        recipient: Optional[str],
        subject: str,
        body: str,
        kind: str = "generic",
        target_id: Optional[int] = None,
    ) -> bool:
        """
        Queue (or, when not started, deliver) one notification.

        Returns
        -------
        bool
            True if the notification was queued or delivered.
        """
        if not recipient:
            logger.warning(f"[Notify] No recipient for {kind} notification (target={target_id})")
            return False

        notification = Notification(
            recipient=recipient,
            subject=subject,
            body=body,
            kind=kind,
            target_id=target_id,
        )

        if not self._running:
            return await self._deliver(notification)

        try:
            self._queue.put_nowait(notification)
            logger.debug(
                f"[Notify] Enqueued {kind} notification for target={target_id}, "
                f"queue_size={self._queue.qsize()}"
            )
            return True
        except asyncio.QueueFull:
            self._dropped += 1
            logger.warning(
                f"[Notify] Queue is full ({self._queue.maxsize}). Dropping: {subject}"
            )
            return False

    async def join(self) -> None:
        """Wait until every queued notification has been processed."""
        await self._queue.join()

    # ------------------------------------------------------------------
    # DISPATCH LOOP
    # ------------------------------------------------------------------

    async def _dispatch_loop(self) -> None:
        logger.debug("[Notify] Dispatch loop started")
        while self._running:
            try:
                notification = await asyncio.wait_for(self._queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue

            try:
                await self._deliver(notification)
            finally:
                self._queue.task_done()
        logger.debug("[Notify] Dispatch loop exited")

    async def _deliver(self, notification: Notification, max_retries: Optional[int] = None) -> bool:
        """
        Send with exponential back-off. Returns True on success.
        """
        retries = self._max_retries if max_retries is None else max_retries
        delay = self.settings.retry_base_delay

        for attempt in range(retries + 1):
            try:
                await self.notifier.send(
                    notification.recipient,
                    notification.subject,
                    notification.body,
                )
                self._sent += 1
                logger.info(
                    f"[Notify] ✓ {notification.kind} sent to {notification.recipient}: "
                    f"{StringHelper.truncate(notification.subject, 60)}"
                )
                return True

            except Exception as e:
                logger.warning(
                    f"[Notify] Send attempt {attempt + 1}/{retries + 1} failed "
                    f"for {notification.recipient}: {e}"
                )
                if attempt < retries:
                    await self._sleep(delay)
                    delay *= 2

        self._failed += 1
        logger.error(
            f"[Notify] ✗ All {retries + 1} attempts exhausted for: "
            f"{StringHelper.truncate(notification.subject, 60)}"
        )
        return False

    # ------------------------------------------------------------------
    # DIAGNOSTIC
    # ------------------------------------------------------------------

    def get_stats(self) -> Dict[str, Any]:
        return {
            "notifier": self.notifier.name,
            "queue_size": self._queue.qsize(),
            "sent": self._sent,
            "failed": self._failed,
            "dropped": self._dropped,
            "is_running": self._running,
        }


# ============================================================================
# TEMPLATES
# ============================================================================

def _format_latency(latency_ms: Optional[float]) -> str:
    return f"{latency_ms:.0f} ms" if latency_ms is not None else "n/a"


def render_down(target, check) -> Dict[str, str]:
    """Subject and body for a newly opened availability alert."""
    values = {
        "name": target.name or target.url,
        "url": target.url,
        "checked_at": TimeHelper.format_datetime(check.checked_at),
        "status_code": check.status_code if check.status_code is not None else "none",
        "error": check.error or "n/a",
    }
    return {
        "subject": NotificationTemplates.DOWN_SUBJECT.format(**values),
        "body": NotificationTemplates.DOWN_BODY.format(**values),
    }


def render_recovered(target, check, downtime_seconds: float) -> Dict[str, str]:
    values = {
        "name": target.name or target.url,
        "url": target.url,
        "checked_at": TimeHelper.format_datetime(check.checked_at),
        "downtime": TimeHelper.seconds_to_human_readable(downtime_seconds),
        "latency": _format_latency(check.latency_ms),
    }
    return {
        "subject": NotificationTemplates.RECOVERED_SUBJECT.format(**values),
        "body": NotificationTemplates.RECOVERED_BODY.format(**values),
    }


def render_reminder(target, check, opened_at: datetime, now: datetime) -> Dict[str, str]:
    values = {
        "name": target.name or target.url,
        "url": target.url,
        "opened_at": TimeHelper.format_datetime(opened_at),
        "downtime": TimeHelper.seconds_to_human_readable((now - opened_at).total_seconds()),
        "error": check.error or "n/a",
    }
    return {
        "subject": NotificationTemplates.REMINDER_SUBJECT.format(**values),
        "body": NotificationTemplates.REMINDER_BODY.format(**values),
    }


def render_dead_links(target, total: int, broken: Iterable[Dict[str, Any]], max_listed: int = 20) -> Dict[str, str]:
    """Summary of a completed crawl; lists at most ``max_listed`` links."""
    broken = list(broken)
    lines = []
    for item in broken[:max_listed]:
        reason = item.get("status_code") or item.get("error") or "unreachable"
        lines.append(f"• {item['url']} ({reason})")
    if len(broken) > max_listed:
        lines.append(f"… and {len(broken) - max_listed} more")

    values = {
        "name": target.name or target.url,
        "url": target.url,
        "total": total,
        "broken": len(broken),
        "details": "\n".join(lines),
    }
    return {
        "subject": NotificationTemplates.DEAD_LINKS_SUBJECT.format(**values),
        "body": NotificationTemplates.DEAD_LINKS_BODY.format(**values),
    }


# ============================================================================
# IDENTITY
# ============================================================================

class IdentityResolver(ABC):
    """Resolves an actor's plan tier and notification contact."""

    @abstractmethod
    async def resolve_plan(self, actor_id: str, default: Optional[PlanTier] = None) -> PlanTier:
        """Plan tier of ``actor_id``."""

    @abstractmethod
    async def resolve_contact(self, actor_id: str) -> Optional[str]:
        """Notification address of ``actor_id`` or None."""


class StaticIdentityResolver(IdentityResolver):
    """
    Identity backed by the IDENTITY_PLANS / IDENTITY_CONTACTS maps.

    Unknown actors get ``default`` (normally the target's plan) and their
    actor id as contact address.
    """

    def __init__(self, settings: IdentitySettings):
        self._plans = {str(k): PlanTier.parse(v) for k, v in settings.plans.items()}
        self._contacts = {str(k): v for k, v in settings.contacts.items()}

    async def resolve_plan(self, actor_id: str, default: Optional[PlanTier] = None) -> PlanTier:
        plan = self._plans.get(str(actor_id))
        if plan is not None:
            return plan
        return default or PlanTier.FREE

    async def resolve_contact(self, actor_id: str) -> Optional[str]:
        if actor_id is None:
            return None
        return self._contacts.get(str(actor_id), str(actor_id))
