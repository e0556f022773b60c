"""
Database Connection Module for Uptime Sentinel

Manages database connections, session factories, and connection pooling
using SQLAlchemy's async engine and session maker.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine
)
from sqlalchemy.pool import NullPool
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from config.settings import DatabaseSettings
from database.models import Base
from exceptions import (
    DatabaseConnectionError,
    DatabaseIntegrityError,
    DatabaseQueryError,
)
from utils.helpers import retry
from utils.logger import get_logger


logger = get_logger("Database")


class DatabaseManager:
    """
    Database Manager Class

    Owns the async engine and session factory. One instance is built
    by the application and handed to the repositories.

    Attributes:
        engine: SQLAlchemy async engine
        session_factory: Async session maker
        is_connected: Connection status flag
    """

    def __init__(self, settings: DatabaseSettings) -> None:
        """Initialize database manager."""
        self.engine: Optional[AsyncEngine] = None
        self.session_factory: Optional[async_sessionmaker[AsyncSession]] = None
        self.is_connected: bool = False
        self._settings = settings
        self._lock = asyncio.Lock()

    @retry(max_attempts=3, delay=1.0, backoff=2.0, exceptions=(DatabaseConnectionError,))
    async def connect(self) -> None:
        """
        Establish database connection.

        Creates the async engine and session factory, verifies the
        connection and creates missing tables when configured to.

        Raises:
            DatabaseConnectionError: If connection fails
        """
        async with self._lock:
            if self.is_connected:
                logger.warning("Database already connected")
                return

            try:
                logger.info("Connecting to database...")

                self.engine = create_async_engine(
                    self._settings.url,
                    **self._get_engine_kwargs()
                )
                self._setup_event_listeners()

                self.session_factory = async_sessionmaker(
                    bind=self.engine,
                    class_=AsyncSession,
                    expire_on_commit=False,
                    autoflush=False
                )

                await self._test_connection()

                if self._settings.auto_create_tables:
                    await self.create_tables()

                self.is_connected = True
                logger.info("Database connection established successfully")

            except SQLAlchemyError as e:
                if self.engine is not None:
                    await self.engine.dispose()
                    self.engine = None
                error_msg = f"Failed to connect to database: {e}"
                logger.error(error_msg)
                raise DatabaseConnectionError(
                    message=error_msg,
                    host=None if self._settings.is_sqlite else self._settings.host,
                    port=None if self._settings.is_sqlite else self._settings.port,
                    database=self._settings.name,
                    cause=e
                )

    def _get_engine_kwargs(self) -> Dict[str, Any]:
        """
        Get engine configuration kwargs based on settings.

        Returns:
            Dictionary of engine configuration options
        """
        kwargs: Dict[str, Any] = {
            "echo": self._settings.echo,
        }

        # NullPool for SQLite, default async queue pool for others
        if self._settings.is_sqlite:
            kwargs["poolclass"] = NullPool
            kwargs["connect_args"] = {"timeout": 30}
        else:
            kwargs["pool_size"] = self._settings.pool_size
            kwargs["max_overflow"] = self._settings.max_overflow
            kwargs["pool_timeout"] = self._settings.pool_timeout
            kwargs["pool_recycle"] = self._settings.pool_recycle
            kwargs["pool_pre_ping"] = self._settings.pool_pre_ping

        return kwargs

    async def _test_connection(self) -> None:
        """
        Test database connection.

        Raises:
            DatabaseConnectionError: If connection test fails
        """
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))

        except SQLAlchemyError as e:
            raise DatabaseConnectionError(
                message=f"Connection test failed: {e}",
                cause=e
            )

    def _setup_event_listeners(self) -> None:
        """Set up SQLAlchemy event listeners."""
        is_sqlite = self._settings.is_sqlite

        @event.listens_for(self.engine.sync_engine, "connect")
        def on_connect(dbapi_connection, connection_record):
            if is_sqlite:
                cursor = dbapi_connection.cursor()
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.close()
            logger.debug("New database connection established")

    async def create_tables(self) -> None:
        """Create all tables that do not exist yet."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database schema ensured")

    async def disconnect(self) -> None:
        """
        Close database connection.

        Disposes of the engine and cleans up resources.
        """
        async with self._lock:
            if not self.is_connected:
                logger.warning("Database not connected")
                return

            logger.info("Disconnecting from database...")

            if self.engine:
                await self.engine.dispose()
                self.engine = None

            self.session_factory = None
            self.is_connected = False

            logger.info("Database disconnected successfully")

    async def health_check(self) -> bool:
        """Return True when a trivial query succeeds."""
        if not self.is_connected or self.engine is None:
            return False
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.warning(f"Database health check failed: {e}")
            return False

    @staticmethod
    def _translate(error: SQLAlchemyError) -> DatabaseQueryError:
        statement = getattr(error, "statement", None)
        if isinstance(error, IntegrityError):
            return DatabaseIntegrityError(message=str(error.orig), query=statement, cause=error)
        return DatabaseQueryError(message=str(error), query=statement, cause=error)

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Context manager for database sessions.

        Provides a session that is automatically committed on success
        or rolled back on failure.

        Yields:
            AsyncSession: Database session

        Raises:
            DatabaseConnectionError: If not connected
            DatabaseIntegrityError: If a constraint is violated
            DatabaseQueryError: If query fails
        """
        if not self.is_connected or not self.session_factory:
            raise DatabaseConnectionError("Database not connected")

        session = self.session_factory()

        try:
            yield session
            await session.commit()

        except SQLAlchemyError as e:
            await session.rollback()
            if isinstance(e, IntegrityError):
                logger.debug(f"Integrity constraint rejected write: {e.orig}")
            else:
                logger.error(f"Database session error: {e}")
            raise self._translate(e)

        except BaseException:
            await session.rollback()
            raise

        finally:
            await session.close()

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Context manager for explicit transactions.

        Everything executed inside commits or rolls back as one unit.

        Yields:
            AsyncSession: Database session with active transaction
        """
        if not self.is_connected or not self.session_factory:
            raise DatabaseConnectionError("Database not connected")

        session = self.session_factory()

        try:
            async with session.begin():
                yield session

        except SQLAlchemyError as e:
            logger.error(f"Transaction error: {e}")
            raise self._translate(e)

        finally:
            await session.close()
