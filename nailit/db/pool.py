"""
Async Postgres pool for the ingestion store.

One pool per process: the API lifespan, the worker jobs and the CLI each
open it on start and close it on exit. A closed pool cannot be reopened.
"""

import asyncio
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from importlib import resources
from typing import Any

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from nailit.config import settings
from nailit.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

SCHEMA_FILE = "schema.sql"
CLOSE_TIMEOUT_SECONDS = 30.0


async def _configure_connection(conn: psycopg.AsyncConnection) -> None:
    conn.row_factory = dict_row
    # Autocommit keeps idle connections out of INTRANS state
    await conn.set_autocommit(True)
    for statement in (
        sql.SQL("SET application_name = {}").format(
            sql.Literal(f"nailit-ingestion-{settings.environment}")
        ),
        sql.SQL("SET statement_timeout = {}").format(
            sql.Literal(f"{settings.DB_STATEMENT_TIMEOUT_SECONDS}s")
        ),
        sql.SQL("SET timezone = 'UTC'"),
    ):
        await conn.execute(statement)


class DatabasePoolManager:
    """Owns the AsyncConnectionPool and hands out connections."""

    def __init__(self):
        self.pool: AsyncConnectionPool | None = None
        self._closed = False

    @property
    def initialized(self) -> bool:
        return self.pool is not None and not self._closed

    async def initialize(self) -> None:
        if self.initialized:
            logger.warning("Database pool already open")
            return
        if self._closed:
            raise RuntimeError("Database pool was closed and cannot be reopened")
        if not settings.DATABASE_URL:
            raise RuntimeError("DATABASE_URL is not configured")

        options = settings.get_db_pool_config()
        pool = AsyncConnectionPool(
            conninfo=settings.DATABASE_URL,
            open=False,
            check=AsyncConnectionPool.check_connection,
            configure=_configure_connection,
            **options,
        )
        try:
            await pool.open(wait=True)
            async with pool.connection() as conn:
                await conn.execute("SELECT 1")
        except (psycopg.Error, TimeoutError) as e:
            logger.error("Could not open database pool", error=str(e))
            await pool.close()
            raise RuntimeError(f"Database pool initialization failed: {e}") from e

        self.pool = pool
        logger.info("Database pool open", **options)

    async def close(self) -> None:
        if not self.initialized:
            return
        try:
            await asyncio.wait_for(self.pool.close(), timeout=CLOSE_TIMEOUT_SECONDS)
            logger.info("Database pool closed")
        except TimeoutError:
            logger.warning("Database pool did not drain in time", timeout=CLOSE_TIMEOUT_SECONDS)
        finally:
            self._closed = True

    def _require_pool(self) -> AsyncConnectionPool:
        if self._closed:
            raise RuntimeError("Database pool is closed")
        if self.pool is None:
            raise RuntimeError("Database pool not initialized")
        return self.pool

    @asynccontextmanager
    async def connection(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        async with self._require_pool().connection() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        """Commits when the block exits cleanly, rolls back otherwise."""
        async with self.connection() as conn, conn.transaction():
            yield conn

    async def apply_schema(self) -> None:
        """Create the ingestion tables and indexes if they do not exist."""
        ddl = resources.files("nailit.db").joinpath(SCHEMA_FILE).read_text(encoding="utf-8")
        async with self.transaction() as conn:
            await conn.execute(ddl)
        logger.info("Ingestion schema applied")

    async def health_check(self) -> dict[str, Any]:
        report: dict[str, Any] = {"service": "database_pool", "healthy": False}
        if not self.initialized:
            report["error"] = "Pool is closed" if self._closed else "Pool not initialized"
            return report

        started = time.perf_counter()
        try:
            async with self.connection() as conn:
                await conn.execute("SELECT 1")
        except (psycopg.Error, TimeoutError) as e:
            logger.error("Database health check failed", error=str(e))
            report.update(error=str(e), error_type=type(e).__name__)
            return report

        stats = self.pool.get_stats()
        report.update(
            healthy=True,
            connection_time_ms=round((time.perf_counter() - started) * 1000, 2),
            pool_stats={
                key: stats.get(key, 0)
                for key in ("pool_size", "pool_available", "requests_waiting")
            },
        )
        return report


db_pool = DatabasePoolManager()


async def db_health_check() -> dict[str, Any]:
    return await db_pool.health_check()
