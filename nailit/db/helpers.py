"""
Query helpers for the repository layer.

Every psycopg failure leaves this module as DatabaseError (or its
UniqueConstraintError subclass) so services never import psycopg.
"""

import asyncio
import functools
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import psycopg
from psycopg import errors as pg_errors

from nailit.db.pool import db_pool
from nailit.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

Params = tuple | dict


class DatabaseError(Exception):
    """A query failed. recoverable=False means retrying the same statement cannot help."""

    def __init__(self, message: str, operation: str = "unknown", recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


class UniqueConstraintError(DatabaseError):
    """An insert lost a race against a unique index."""

    def __init__(self, message: str, constraint: str | None = None):
        super().__init__(message, operation="insert", recoverable=False)
        self.constraint = constraint


@asynccontextmanager
async def _connection(
    connection: psycopg.AsyncConnection | None,
) -> AsyncGenerator[psycopg.AsyncConnection, None]:
    if connection is not None:
        yield connection
        return
    async with db_pool.connection() as conn:
        yield conn


def _translate(e: psycopg.Error, operation: str, query: str) -> DatabaseError:
    if isinstance(e, pg_errors.UniqueViolation):
        constraint = getattr(e.diag, "constraint_name", None)
        logger.debug("Unique constraint violated", constraint=constraint)
        return UniqueConstraintError(f"Unique constraint violated: {e}", constraint)

    logger.error(f"Database {operation} error", query=" ".join(query.split())[:120], error=str(e))
    return DatabaseError(
        f"Query failed: {e}",
        operation=operation,
        recoverable=isinstance(e, psycopg.OperationalError),
    )


async def fetch_one(
    query: str, params: Params = (), *, connection: psycopg.AsyncConnection | None = None
) -> dict[str, Any] | None:
    """Run query and return the first row as a dict, or None."""
    try:
        async with _connection(connection) as conn:
            async with conn.cursor() as cur:
                await cur.execute(query, params)
                return await cur.fetchone()
    except psycopg.Error as e:
        raise _translate(e, "fetch_one", query) from e


async def fetch_all(
    query: str, params: Params = (), *, connection: psycopg.AsyncConnection | None = None
) -> list[dict[str, Any]]:
    try:
        async with _connection(connection) as conn:
            async with conn.cursor() as cur:
                await cur.execute(query, params)
                return await cur.fetchall()
    except psycopg.Error as e:
        raise _translate(e, "fetch_all", query) from e


async def fetch_val(
    query: str, params: Params = (), *, connection: psycopg.AsyncConnection | None = None
) -> Any:
    row = await fetch_one(query, params, connection=connection)
    return next(iter(row.values())) if row else None


async def execute_query(
    query: str, params: Params = (), *, connection: psycopg.AsyncConnection | None = None
) -> int:
    """
    Run a write statement and return the affected row count.

    Raises:
        UniqueConstraintError: If the statement violates a unique index
        DatabaseError: For every other database failure
    """
    try:
        async with _connection(connection) as conn:
            cursor = await conn.execute(query, params)
            return cursor.rowcount
    except psycopg.Error as e:
        raise _translate(e, "execute", query) from e


def with_db_retry(max_retries: int = 3, base_delay: float = 0.1):
    """Retry a read on connection-level failures with exponential backoff."""

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except DatabaseError as e:
                    if not e.recoverable or attempt >= max_retries:
                        raise
                    delay = base_delay * (2**attempt)
                    logger.warning(
                        "Database read failed, retrying",
                        operation=func.__name__,
                        attempt=attempt + 1,
                        delay=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)

        return wrapper

    return decorator
