"""
Database retry utilities for handling transient database errors.

Retry logic with exponential backoff for errors that clear up on their own,
on both supported backends:

SQLite errors:
- "database is locked" - concurrent write contention
- "SQLITE_BUSY" / "SQLITE_LOCKED" - database busy states

PostgreSQL errors:
- Deadlocks (40P01)
- Serialization failures (40001)
- Connection errors
- "could not obtain lock" - lock contention
"""

import asyncio
import logging
import random
import time
from typing import Any, Callable, Optional, TypeVar

from databases import Database

logger = logging.getLogger(__name__)

# Slow query threshold in seconds
SLOW_QUERY_THRESHOLD = 1.0

T = TypeVar("T")

# Default retry configuration
DEFAULT_MAX_RETRIES = 5
DEFAULT_BASE_DELAY = 0.1  # 100ms
DEFAULT_MAX_DELAY = 2.0  # 2 seconds
DEFAULT_EXPONENTIAL_BASE = 2

_SQLITE_PATTERNS = (
    "database is locked",
    "database table is locked",
    "sqlite_busy",
    "sqlite_locked",
)

_POSTGRES_PATTERNS = (
    "deadlock detected",  # 40P01
    "could not serialize access",  # 40001 serialization failure
    "could not obtain lock",
    "connection refused",
    "connection reset",
    "server closed the connection unexpectedly",
    "canceling statement due to lock timeout",
    "lock timeout",
)


class DatabaseRetryableError(Exception):
    """Raised when a database operation fails after all retries exhausted."""

    pass


def is_retryable_database_error(exc: BaseException) -> bool:
    """
    Check if an exception is a retryable database error.

    Supports both SQLite and PostgreSQL error patterns, and looks through
    wrapped driver exceptions.
    """
    error_str = str(exc).lower()

    if any(pattern in error_str for pattern in _SQLITE_PATTERNS):
        return True
    if any(pattern in error_str for pattern in _POSTGRES_PATTERNS):
        return True

    # asyncpg exposes the SQLSTATE code
    if getattr(exc, "sqlstate", "") in ("40P01", "40001"):
        return True

    if exc.__cause__ is not None:
        return is_retryable_database_error(exc.__cause__)

    return False


async def execute_with_retry(
    func: Callable,
    *args,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    **kwargs,
) -> T:
    """
    Execute an async function with retry logic for transient database errors.

    Uses exponential backoff with jitter to reduce contention.

    Args:
        func: Async function to execute
        *args: Positional arguments for func
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay between retries (seconds)
        max_delay: Maximum delay between retries (seconds)
        **kwargs: Keyword arguments for func

    Returns:
        Result of the function

    Raises:
        DatabaseRetryableError: If all retries are exhausted
        Other exceptions: Non-retryable errors are re-raised immediately
    """
    last_exception: Optional[BaseException] = None

    for attempt in range(max_retries + 1):
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if not is_retryable_database_error(e):
                raise

            last_exception = e

            if attempt < max_retries:
                delay = min(base_delay * (DEFAULT_EXPONENTIAL_BASE**attempt), max_delay)
                # Add jitter (±25%) to prevent thundering herd
                jitter = delay * 0.25 * (2 * random.random() - 1)
                delay = max(0.01, delay + jitter)

                logger.warning(
                    f"Database error (attempt {attempt + 1}/{max_retries + 1}), retrying in {delay:.2f}s: {e}"
                )
                await asyncio.sleep(delay)
            else:
                logger.error(f"Database error after {max_retries + 1} attempts, giving up: {e}")

    raise DatabaseRetryableError(f"Database operation failed after {max_retries + 1} attempts: {last_exception}")


# =============================================================================
# Database Operation Wrappers
# =============================================================================


def _log_if_slow(query: Any, started: float) -> None:
    elapsed = time.monotonic() - started
    if elapsed >= SLOW_QUERY_THRESHOLD:
        logger.warning(f"Slow query ({elapsed:.2f}s): {str(query)[:500]}")


async def fetch_one(db: Database, query, values: Optional[dict] = None):
    """fetch_one with retry and slow-query logging. Returns a row or None."""

    async def _fetch():
        started = time.monotonic()
        result = await db.fetch_one(query, values)
        _log_if_slow(query, started)
        return result

    return await execute_with_retry(_fetch)


async def fetch_all(db: Database, query, values: Optional[dict] = None):
    """fetch_all with retry and slow-query logging. Returns a list of rows."""

    async def _fetch():
        started = time.monotonic()
        result = await db.fetch_all(query, values)
        _log_if_slow(query, started)
        return result

    return await execute_with_retry(_fetch)


async def fetch_val(db: Database, query, values: Optional[dict] = None):
    """fetch_val with retry and slow-query logging. Returns a scalar or None."""

    async def _fetch():
        started = time.monotonic()
        result = await db.fetch_val(query, values)
        _log_if_slow(query, started)
        return result

    return await execute_with_retry(_fetch)


async def execute(db: Database, query, values: Optional[dict] = None):
    """
    Execute a write query with retry logic for transient database errors.

    Returns:
        The driver result (typically the row ID for inserts)
    """

    async def _execute():
        started = time.monotonic()
        result = await db.execute(query, values)
        _log_if_slow(query, started)
        return result

    return await execute_with_retry(_execute)
