"""
Base Exception Classes for Uptime Sentinel

Provides the foundation exception hierarchy from which all
other exceptions inherit.
"""

from __future__ import annotations

from typing import Any, Dict, Optional
from datetime import datetime, timezone
import math


class SentinelException(Exception):
    """
    Base Exception Class

    All custom exceptions in Uptime Sentinel inherit from this
    class. Provides common functionality for error handling,
    logging, and serialization.

    Attributes:
        message: Human-readable error message
        error_code: Numeric error code for categorization
        details: Additional error details as dictionary
        timestamp: When the exception occurred (UTC)
        recoverable: Whether the error is recoverable
    """

    default_error_code: int = 1000
    default_recoverable: bool = True

    def __init__(
        self,
        message: str = "An error occurred",
        error_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
        recoverable: Optional[bool] = None
    ) -> None:
        """
        Initialize the exception.

        Args:
            message: Human-readable error message
            error_code: Numeric error code
            details: Additional error details
            cause: The underlying exception that caused this one
            recoverable: Whether the error is recoverable
        """
        super().__init__(message)

        self.message = message
        self.error_code = error_code or self.default_error_code
        self.details = dict(details) if details else {}
        self.cause = cause
        self.recoverable = recoverable if recoverable is not None else self.default_recoverable
        self.timestamp = datetime.now(timezone.utc)

        if cause is not None:
            self.__cause__ = cause

    @property
    def full_message(self) -> str:
        """Get full error message with code."""
        return f"[{self.error_code}] {self.message}"

    def log_format(self) -> str:
        """
        Format exception for logging.

        Returns:
            Formatted string for logging
        """
        parts = [
            f"Exception: {self.__class__.__name__}",
            f"Code: {self.error_code}",
            f"Message: {self.message}"
        ]

        if self.details:
            parts.append(f"Details: {self.details}")

        if self.cause:
            parts.append(f"Cause: {self.cause}")

        return " | ".join(parts)

    def user_message(self) -> str:
        """
        Get user-friendly error message.

        Returns:
            Message suitable for returning to callers
        """
        return self.message

    def __str__(self) -> str:
        return self.full_message

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"error_code={self.error_code}, "
            f"details={self.details})"
        )


class ConfigurationError(SentinelException):
    """
    Configuration Error

    Raised when there are issues with application configuration,
    environment variables, or settings files.
    """

    default_error_code = 1100
    default_recoverable = False

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        **kwargs: Any
    ) -> None:
        """
        Initialize configuration error.

        Args:
            message: Error message
            config_key: The first setting that failed validation
            **kwargs: Additional arguments
        """
        super().__init__(message, **kwargs)

        if config_key:
            self.details["config_key"] = config_key


class InitializationError(SentinelException):
    """
    Initialization Error

    Raised when the application fails to initialize properly:
    database connection, counter store, HTTP server.
    """

    default_error_code = 1200
    default_recoverable = False

    def __init__(
        self,
        message: str,
        component: Optional[str] = None,
        **kwargs: Any
    ) -> None:
        super().__init__(message, **kwargs)

        if component:
            self.details["component"] = component


class RateLimitExceededError(SentinelException):
    """
    Rate Limit Exceeded

    Raised by trigger interfaces when the caller's IP or user
    window for a bucket is exhausted.
    """

    default_error_code = 1500
    default_recoverable = True

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        retry_after: Optional[int] = None,
        limit: Optional[int] = None,
        bucket: Optional[str] = None,
        scope: Optional[str] = None,
        reset_at: Optional[float] = None,
        **kwargs: Any
    ) -> None:
        """
        Initialize rate limit error.

        Args:
            message: Error message
            retry_after: Seconds until a call would be admitted again
            limit: The allowance that was exceeded
            bucket: Rate-limit bucket name
            scope: Which identity was exhausted ("ip" or "user")
            reset_at: Epoch seconds when the window frees a slot
            **kwargs: Additional arguments
        """
        super().__init__(message, **kwargs)

        self.retry_after = max(1, int(math.ceil(retry_after))) if retry_after else 1
        self.limit = limit
        self.bucket = bucket
        self.scope = scope
        self.reset_at = reset_at

        self.details["retry_after"] = self.retry_after

        if limit is not None:
            self.details["limit"] = limit

        if bucket:
            self.details["bucket"] = bucket

        if scope:
            self.details["scope"] = scope

    def user_message(self) -> str:
        """Get user-friendly error message."""
        return f"Too many requests. Please wait {self.retry_after} seconds before trying again."
