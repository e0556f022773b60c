"""
Validation Exception Classes for Uptime Sentinel

Exceptions for malformed input reaching the engine: target
URLs and trigger request parameters.
"""

from __future__ import annotations

from typing import Any, Optional

from exceptions.base import SentinelException


class ValidationException(SentinelException):
    """
    Base Validation Exception

    Parent class for all validation-related exceptions.
    """

    default_error_code = 3000
    default_recoverable = True

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        **kwargs: Any
    ) -> None:
        """
        Initialize validation exception.

        Args:
            message: Error message
            field: The field that failed validation
            value: The invalid value (sanitized)
            **kwargs: Additional arguments
        """
        super().__init__(message, **kwargs)

        if field:
            self.details["field"] = field

        if value is not None:
            self.details["value"] = self._sanitize_value(value)

    @staticmethod
    def _sanitize_value(value: Any) -> str:
        str_value = str(value)

        if len(str_value) > 100:
            str_value = str_value[:100] + "..."

        return str_value


class InvalidURLError(ValidationException):
    """
    Invalid URL Error

    Raised when a provided URL is syntactically invalid.
    """

    default_error_code = 3100

    def __init__(
        self,
        message: str = "Invalid URL format",
        url: Optional[str] = None,
        reason: Optional[str] = None,
        **kwargs: Any
    ) -> None:
        """
        Initialize invalid URL error.

        Args:
            message: Error message
            url: The invalid URL
            reason: Specific reason for invalidity
            **kwargs: Additional arguments
        """
        super().__init__(message, field="url", value=url, **kwargs)

        if reason:
            self.details["reason"] = reason

    def user_message(self) -> str:
        """Get user-friendly error message."""
        reasons = {
            "empty": "URL cannot be empty",
            "no_scheme": "URL must start with http:// or https://",
            "invalid_domain": "The domain name is invalid",
            "too_long": "URL is too long (max 2048 characters)",
        }

        reason = self.details.get("reason", "")
        return reasons.get(reason, "Please provide a valid URL (e.g., https://example.com)")
