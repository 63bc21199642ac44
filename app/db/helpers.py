# app/db/helpers.py
"""
Query helpers shared by the queue and intelligence repositories.

Each helper runs on the caller's connection when one is passed, so several
statements can share one db_pool.transaction(), and borrows a pooled
connection otherwise. psycopg errors surface as DatabaseError whose
``recoverable`` flag tells the queue worker whether the entry is worth
another attempt: connection loss, lock timeouts, serialization failures
and deadlocks are; query, constraint and data errors are not.
"""

import asyncio
import functools
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import psycopg

from app.db.pool import db_pool
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class DatabaseError(Exception):
    """Custom exception for database operations."""

    def __init__(self, message: str, operation: str = "unknown", recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


def _is_transient(error: Exception) -> bool:
    """OperationalError covers dropped connections, lock timeouts and rollbacks (deadlock, serialization)."""
    if isinstance(error, DatabaseError):
        error = error.__cause__
    return isinstance(error, psycopg.OperationalError)


def _query_failed(error: psycopg.Error, operation: str, query: str) -> DatabaseError:
    recoverable = _is_transient(error)
    logger.error(
        "Database query failed",
        operation=operation,
        query=query[:100],
        error=str(error),
        error_type=type(error).__name__,
        recoverable=recoverable,
    )
    return DatabaseError(f"Query failed: {error}", operation=operation, recoverable=recoverable)


@asynccontextmanager
async def _borrow(
    connection: psycopg.AsyncConnection | None,
) -> AsyncGenerator[psycopg.AsyncConnection, None]:
    if connection is not None:
        yield connection
        return

    async with db_pool.connection() as conn:
        yield conn


async def fetch_one(
    query: str, params: tuple = (), *, connection: psycopg.AsyncConnection | None = None
) -> dict[str, Any] | None:
    """
    Execute query and return the first row as a dict, or None.

    ``RETURNING`` statements (queue claims, upserts) go through here too.
    """
    try:
        async with _borrow(connection) as conn:
            async with conn.cursor() as cur:
                await cur.execute(query, params)
                return await cur.fetchone()

    except psycopg.Error as e:
        raise _query_failed(e, "fetch_one", query) from e


async def fetch_all(
    query: str, params: tuple = (), *, connection: psycopg.AsyncConnection | None = None
) -> list[dict[str, Any]]:
    """Execute query and return all rows as dicts."""
    try:
        async with _borrow(connection) as conn:
            async with conn.cursor() as cur:
                await cur.execute(query, params)
                return await cur.fetchall()

    except psycopg.Error as e:
        raise _query_failed(e, "fetch_all", query) from e


async def execute_query(
    query: str, params: tuple = (), *, connection: psycopg.AsyncConnection | None = None
) -> int:
    """
    Execute a statement and return the number of affected rows.

    Lease-guarded updates rely on the row count: 0 means the lease was lost.
    """
    try:
        async with _borrow(connection) as conn:
            cursor = await conn.execute(query, params)
            return cursor.rowcount

    except psycopg.Error as e:
        raise _query_failed(e, "execute", query) from e


def with_db_retry(max_retries: int = 3, base_delay: float = 0.1):
    """
    Retry a repository call on transient database failures.

    Non-transient errors propagate on the first attempt. When retries run
    out the DatabaseError stays recoverable, so the queue entry itself is
    retried later.
    """

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)

                except (psycopg.Error, DatabaseError) as e:
                    if not _is_transient(e):
                        if isinstance(e, DatabaseError):
                            raise
                        raise DatabaseError(
                            f"Permanent database error: {e}",
                            operation=func.__name__,
                            recoverable=False,
                        ) from e

                    if attempt < max_retries:
                        delay = base_delay * (2**attempt)
                        logger.warning(
                            "Database operation failed, retrying",
                            operation=func.__name__,
                            attempt=attempt + 1,
                            max_retries=max_retries,
                            delay=delay,
                            error=str(e),
                        )
                        await asyncio.sleep(delay)
                        continue

                    logger.error(
                        "Database operation failed after all retries",
                        operation=func.__name__,
                        attempts=max_retries + 1,
                        error=str(e),
                    )
                    raise DatabaseError(
                        f"Operation failed after {max_retries} retries: {e}",
                        operation=func.__name__,
                        recoverable=True,
                    ) from e

        return wrapper

    return decorator
