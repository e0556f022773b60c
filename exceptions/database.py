"""
Database Exception Classes for Uptime Sentinel

Specialized exceptions for storage failures: the relational
database and the shared rate-limit counter store.
"""

from __future__ import annotations

import re
from typing import Any, Optional

from exceptions.base import SentinelException


class DatabaseException(SentinelException):
    """
    Base Database Exception

    Parent class for all storage-related exceptions.
    """

    default_error_code = 2000
    default_recoverable = False

    def __init__(
        self,
        message: str,
        query: Optional[str] = None,
        **kwargs: Any
    ) -> None:
        """
        Initialize database exception.

        Args:
            message: Error message
            query: The SQL statement that failed (sanitized)
            **kwargs: Additional arguments
        """
        super().__init__(message, **kwargs)

        if query:
            self.details["query"] = self._sanitize_query(query)

    @staticmethod
    def _sanitize_query(query: str) -> str:
        """Strip literal values out of a SQL statement and truncate it."""
        query = re.sub(r"'[^']*'", "'***'", query)
        query = re.sub(r"= \d+", "= ***", query)

        if len(query) > 500:
            query = query[:500] + "..."

        return query


class DatabaseConnectionError(DatabaseException):
    """
    Database Connection Error

    Raised when unable to establish or maintain database connection.
    """

    default_error_code = 2100

    def __init__(
        self,
        message: str = "Unable to connect to database",
        host: Optional[str] = None,
        port: Optional[int] = None,
        database: Optional[str] = None,
        **kwargs: Any
    ) -> None:
        super().__init__(message, **kwargs)

        if host:
            self.details["host"] = host

        if port:
            self.details["port"] = port

        if database:
            self.details["database"] = database

    def user_message(self) -> str:
        """Get user-friendly error message."""
        return "Unable to access the database. Please try again later."


class DatabaseQueryError(DatabaseException):
    """
    Database Query Error

    Raised when a database query fails to execute.
    """

    default_error_code = 2200
    default_recoverable = True

    def __init__(
        self,
        message: str = "Database query failed",
        **kwargs: Any
    ) -> None:
        super().__init__(message, **kwargs)

    def user_message(self) -> str:
        """Get user-friendly error message."""
        return "An error occurred while processing your request."


class DatabaseIntegrityError(DatabaseQueryError):
    """
    Database Integrity Error

    Raised when a database integrity constraint is violated,
    e.g. a second open alert for the same target and kind.
    """

    default_error_code = 2300

    def __init__(
        self,
        message: str = "Data integrity violation",
        **kwargs: Any
    ) -> None:
        super().__init__(message, **kwargs)


class StorageUnavailableError(DatabaseException):
    """
    Storage Unavailable Error

    Raised when a backing store cannot be reached at all. The
    rate limiter fails open on it; schedulers retry next cycle.
    """

    default_error_code = 2400
    default_recoverable = True

    def __init__(
        self,
        message: str = "Storage backend unavailable",
        backend: Optional[str] = None,
        **kwargs: Any
    ) -> None:
        super().__init__(message, **kwargs)

        if backend:
            self.details["backend"] = backend

    def user_message(self) -> str:
        """Get user-friendly error message."""
        return "The service is temporarily unavailable. Please try again in a moment."
