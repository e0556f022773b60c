"""
============================================================================
UPTIME SENTINEL - HELPERS UTILITY
============================================================================
Time formatting, string trimming, process metrics, per-key locks, retry
and batching helpers shared by the monitoring engine and the crawler.

License: MIT
============================================================================
"""

import asyncio
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from functools import wraps
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Hashable, List, Optional, Sequence, Set

import psutil

from utils.logger import get_logger


logger = get_logger("Helpers")


# ============================================================================
# TIME UTILITIES
# ============================================================================

class TimeHelper:
    """
    Time and date manipulation utilities.

    All persisted timestamps are naive UTC datetimes.
    """

    @staticmethod
    def get_utc_now() -> datetime:
        """Get current UTC datetime (naive)."""
        return datetime.now(timezone.utc).replace(tzinfo=None)

    @staticmethod
    def format_datetime(dt: Optional[datetime], fmt: str = "%Y-%m-%d %H:%M:%S UTC") -> str:
        """
        Format datetime to string.

        Args:
            dt: Datetime to format
            fmt: Format string

        Returns:
            Formatted string, or "n/a" for None
        """
        if dt is None:
            return "n/a"
        return dt.strftime(fmt)

    @staticmethod
    def seconds_to_human_readable(seconds: float) -> str:
        """
        Convert seconds to human-readable format.

        Args:
            seconds: Number of seconds

        Returns:
            Human-readable string (e.g., "2h 30m 15s")
        """
        seconds = int(seconds)
        if seconds < 0:
            return "0s"

        days, remainder = divmod(seconds, 86400)
        hours, remainder = divmod(remainder, 3600)
        minutes, secs = divmod(remainder, 60)

        parts = []
        if days > 0:
            parts.append(f"{days}d")
        if hours > 0:
            parts.append(f"{hours}h")
        if minutes > 0:
            parts.append(f"{minutes}m")
        if secs > 0 or not parts:
            parts.append(f"{secs}s")

        return " ".join(parts)


# ============================================================================
# STRING UTILITIES
# ============================================================================

class StringHelper:
    """
    String manipulation utilities.
    """

    @staticmethod
    def truncate(text: Optional[str], max_length: int = 100, suffix: str = "...") -> Optional[str]:
        """
        Truncate string to maximum length.

        Args:
            text: Text to truncate
            max_length: Maximum length
            suffix: Suffix to add if truncated

        Returns:
            Truncated string
        """
        if text is None or len(text) <= max_length:
            return text

        return text[:max_length - len(suffix)] + suffix


# ============================================================================
# PERFORMANCE UTILITIES
# ============================================================================

class PerformanceHelper:
    """
    Process resource figures reported by /health and the heartbeat job.
    """

    @staticmethod
    def get_memory_usage() -> float:
        """
        Get current memory usage in MB.

        Returns:
            Resident set size of this process in MB
        """
        process = psutil.Process(os.getpid())
        return process.memory_info().rss / 1024 / 1024


# ============================================================================
# KEYED LOCKS
# ============================================================================

class KeyedLocks:
    """
    One ``asyncio.Lock`` per key, dropped when its last user leaves.

    A key counts as held from the moment a caller starts waiting for it
    until that caller releases it, so ``is_held`` never reports a key
    free while a woken waiter is about to run.
    """

    def __init__(self) -> None:
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._users: Dict[Hashable, int] = {}

    def is_held(self, key: Hashable) -> bool:
        return self._users.get(key, 0) > 0

    def held_keys(self) -> Set[Hashable]:
        return set(self._users)

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


# ============================================================================
# RETRY DECORATOR
# ============================================================================

def retry(
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    exceptions: tuple = (Exception,)
):
    """
    Retry decorator for async functions.

    Args:
        max_attempts: Maximum number of attempts
        delay: Initial delay between retries (seconds)
        backoff: Multiplier for delay after each retry
        exceptions: Tuple of exceptions to catch

    Returns:
        Decorator function
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            current_delay = delay

            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if attempt >= max_attempts:
                        logger.error(
                            f"All {max_attempts} attempts failed for {func.__name__}: {e}"
                        )
                        raise
                    logger.warning(
                        f"Attempt {attempt}/{max_attempts} failed for {func.__name__}: {e}. "
                        f"Retrying in {current_delay}s..."
                    )
                    await asyncio.sleep(current_delay)
                    current_delay *= backoff

        return wrapper
    return decorator


# ============================================================================
# BATCH PROCESSOR
# ============================================================================

class BatchProcessor:
    """
    Process items in batches.
    """

    @staticmethod
    async def process_in_batches(
        items: Sequence[Any],
        batch_size: int,
        process_func: Callable[[List[Any]], Awaitable[List[Any]]],
        delay_between_batches: float = 0.0
    ) -> List[Any]:
        """
        Process items in batches.

        Args:
            items: Items to process
            batch_size: Number of items per batch
            process_func: Async function to process each batch
            delay_between_batches: Delay between batches in seconds

        Returns:
            List of results, in input order
        """
        results: List[Any] = []
        items = list(items)

        for i in range(0, len(items), batch_size):
            batch = items[i:i + batch_size]
            logger.debug(f"Processing batch {i // batch_size + 1} ({len(batch)} items)")

            batch_results = await process_func(batch)
            results.extend(batch_results)

            if delay_between_batches > 0 and i + batch_size < len(items):
                await asyncio.sleep(delay_between_batches)

        return results
