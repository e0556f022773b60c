"""
Monitoring Exception Classes for Uptime Sentinel

Exceptions raised by the outbound safety guard, the probe
client, and the trigger facade.
"""

from __future__ import annotations

from typing import Any, Optional, Sequence

from config.constants import BlockReason
from exceptions.base import SentinelException


class MonitoringException(SentinelException):
    """
    Base Monitoring Exception

    Parent class for all monitoring-related exceptions.
    """

    default_error_code = 5000
    default_recoverable = True

    def __init__(
        self,
        message: str,
        url: Optional[str] = None,
        target_id: Optional[int] = None,
        **kwargs: Any
    ) -> None:
        super().__init__(message, **kwargs)

        self.url = url
        self.target_id = target_id

        if url:
            self.details["url"] = url

        if target_id is not None:
            self.details["target_id"] = target_id


class UnsafeTargetError(MonitoringException):
    """
    Unsafe Target Error

    Raised by the outbound safety guard when a destination resolves
    to a private, loopback, link-local, metadata or otherwise
    non-public address, or violates the scheme/port policy.
    Never retried.
    """

    default_error_code = 5100

    def __init__(
        self,
        message: str = "Target is not allowed",
        reason: BlockReason = BlockReason.PRIVATE_ADDRESS,
        hostname: Optional[str] = None,
        addresses: Optional[Sequence[str]] = None,
        **kwargs: Any
    ) -> None:
        """
        Initialize unsafe target error.

        Args:
            message: Error message
            reason: Machine-readable block reason
            hostname: Hostname that was checked
            addresses: Resolved addresses, if any
            **kwargs: Additional arguments
        """
        super().__init__(message, **kwargs)

        self.reason = BlockReason(reason)
        self.hostname = hostname
        self.addresses = list(addresses or [])

        self.details["reason"] = self.reason.value

        if hostname:
            self.details["hostname"] = hostname

        if self.addresses:
            self.details["addresses"] = self.addresses

    @property
    def down_reason(self) -> str:
        """Text persisted on the check record for a blocked probe."""
        return f"blocked: {self.reason.value}"

    def user_message(self) -> str:
        """Get user-friendly error message."""
        return "Target unsafe: this URL points to an address that cannot be monitored."


class NoRecordsError(UnsafeTargetError):
    """
    No DNS Records

    The hostname resolved to zero addresses. Treated as unsafe
    (fail closed), but reported distinctly.
    """

    default_error_code = 5110

    def __init__(
        self,
        message: str = "Hostname has no address records",
        **kwargs: Any
    ) -> None:
        kwargs.setdefault("reason", BlockReason.NO_RECORDS)
        super().__init__(message, **kwargs)

    def user_message(self) -> str:
        """Get user-friendly error message."""
        return "The domain does not resolve to any address."


class ProbeException(MonitoringException):
    """
    Base Probe Exception

    Raised when an outbound fetch cannot produce a response.
    """

    default_error_code = 5200

    def __init__(
        self,
        message: str,
        response_time: Optional[float] = None,
        **kwargs: Any
    ) -> None:
        super().__init__(message, **kwargs)

        if response_time is not None:
            self.details["response_time_ms"] = response_time


class ProbeTimeoutError(ProbeException):
    """
    Probe Timeout Error

    Raised when a request exceeds its hard timeout.
    """

    default_error_code = 5210

    def __init__(
        self,
        message: str = "Request timed out",
        timeout: Optional[float] = None,
        **kwargs: Any
    ) -> None:
        super().__init__(message, **kwargs)

        if timeout:
            self.details["timeout"] = timeout


class ProbeConnectionError(ProbeException):
    """
    Probe Connection Error

    Raised on connection refused, reset, TLS failure and similar.
    """

    default_error_code = 5220

    def __init__(
        self,
        message: str = "Connection failed",
        error_type: Optional[str] = None,
        **kwargs: Any
    ) -> None:
        super().__init__(message, **kwargs)

        if error_type:
            self.details["error_type"] = error_type


class TargetNotFoundError(MonitoringException):
    """
    Target Not Found

    Raised when a target does not exist or is not owned by the actor.
    """

    default_error_code = 5300

    def __init__(
        self,
        message: str = "Target not found",
        **kwargs: Any
    ) -> None:
        super().__init__(message, **kwargs)


class CrawlAlreadyRunningError(MonitoringException):
    """
    Crawl Already Running

    Raised when a dead-link crawl is requested for a target that
    already has one in progress.
    """

    default_error_code = 5400

    def __init__(
        self,
        message: str = "A scan is already running for this site",
        crawl_id: Optional[int] = None,
        **kwargs: Any
    ) -> None:
        super().__init__(message, **kwargs)

        if crawl_id is not None:
            self.details["crawl_id"] = crawl_id


class NotificationError(MonitoringException):
    """
    Notification Delivery Failed

    Raised by notifiers when the mail collaborator rejects or cannot
    receive a message. The dispatcher retries it with back-off.
    """

    default_error_code = 5500
    default_recoverable = True

    def __init__(
        self,
        message: str = "Notification delivery failed",
        recipient: Optional[str] = None,
        status_code: Optional[int] = None,
        **kwargs: Any
    ) -> None:
        """
        Initialize notification error.

        Args:
            message: Error message
            recipient: Address the notification was meant for
            status_code: HTTP status returned by the collaborator, if any
            **kwargs: Additional arguments
        """
        super().__init__(message, **kwargs)

        self.recipient = recipient
        self.status_code = status_code

        if recipient:
            self.details["recipient"] = recipient

        if status_code is not None:
            self.details["status_code"] = status_code
