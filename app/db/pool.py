# app/db/pool.py
"""
PostgreSQL connection pool manager using psycopg_pool.

The API process and every worker job own one pool each. Connections are
tagged with the process role in application_name so queue claims and
sweep commits can be told apart in pg_stat_activity.
"""

import asyncio
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

QUEUE_TABLE = "activity_processing_queue"


class DatabasePoolManager:
    """
    Database connection pool manager.

    Owns the AsyncConnectionPool lifecycle and hands out plain or
    transactional connections. Outside transaction() connections run in
    autocommit, so single-statement queue updates are durable on return.
    """

    def __init__(self):
        self.pool: AsyncConnectionPool | None = None
        self.role = "api"
        self._initialized = False
        self._closed = False

    @property
    def initialized(self) -> bool:
        return self._initialized and not self._closed

    @property
    def application_name(self) -> str:
        return f"activity-intelligence-{self.role}-{settings.environment}"

    async def initialize(self, role: str = "api") -> None:
        """Open the pool for one process role (api, activity_queue, queue_cleanup)."""
        if self._initialized:
            logger.warning("Database pool already initialized", role=self.role)
            return

        if self._closed:
            raise RuntimeError("Cannot reinitialize closed pool")

        self.role = role
        pool_config = settings.get_db_pool_config()

        try:
            logger.info("Initializing database connection pool", role=role)
            self.pool = AsyncConnectionPool(
                conninfo=settings.DATABASE_URL,
                open=False,
                check=AsyncConnectionPool.check_connection,
                configure=self._configure_connection,
                **pool_config,
            )
            await self.pool.open()
            await self.pool.wait()

            # connection() refuses requests until the pool is marked initialized
            self._initialized = True
            await self._check_queue_table()

            logger.info(
                "Database pool initialized successfully",
                role=role,
                min_size=pool_config["min_size"],
                max_size=pool_config["max_size"],
                timeout=pool_config["timeout"],
            )

        except Exception as e:
            logger.error("Failed to initialize database pool", role=role, error=str(e))
            self._initialized = False
            if self.pool:
                try:
                    await self.pool.close()
                except Exception as close_error:
                    logger.warning("Error closing pool after failed init", error=str(close_error))
                self.pool = None
            raise RuntimeError(f"Database pool initialization failed: {e}") from e

    async def _configure_connection(self, conn: psycopg.AsyncConnection) -> None:
        """Session settings applied to every new pooled connection."""
        conn.row_factory = dict_row
        await conn.set_autocommit(True)
        await conn.execute(
            sql.SQL("SET application_name = {}").format(sql.Literal(self.application_name))
        )
        await conn.execute("SET timezone = 'UTC'")
        await conn.execute(
            sql.SQL("SET statement_timeout = {}").format(
                sql.Literal(f"{settings.DB_STATEMENT_TIMEOUT_MS}ms")
            )
        )
        await conn.execute(
            sql.SQL("SET lock_timeout = {}").format(
                sql.Literal(f"{settings.DB_LOCK_TIMEOUT_MS}ms")
            )
        )

    async def _check_queue_table(self) -> bool:
        """Warn early when the schema has not been applied; workers would fail every poll."""
        async with self.connection() as conn:
            cursor = await conn.execute("SELECT to_regclass(%s) AS queue_table", (QUEUE_TABLE,))
            row = await cursor.fetchone()

        present = bool(row and row["queue_table"])
        if not present:
            logger.warning(
                "Queue table missing, apply app/db/schema.sql", table=QUEUE_TABLE, role=self.role
            )
        return present

    async def close(self) -> None:
        """Close the connection pool gracefully."""
        if not self._initialized or self._closed:
            return

        try:
            logger.info("Closing database connection pool", role=self.role)
            if self.pool:
                await asyncio.wait_for(self.pool.close(), timeout=30.0)

            self._initialized = False
            self._closed = True
            logger.info("Database pool closed successfully", role=self.role)

        except TimeoutError:
            logger.warning("Database pool close timed out, forcing shutdown", role=self.role)
        except Exception as e:
            logger.error("Error closing database pool", role=self.role, error=str(e))

    @asynccontextmanager
    async def connection(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        """Borrow an autocommit connection from the pool."""
        if not self._initialized:
            raise RuntimeError("Database pool not initialized. Call initialize() first.")

        if self._closed:
            raise RuntimeError("Database pool is closed")

        async with self.pool.connection() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        """
        Borrow a connection inside one transaction.

        Usage:
            async with db_pool.transaction() as conn:
                await execute_query("UPDATE ...", params, connection=conn)
                await execute_query("INSERT ...", params, connection=conn)
                # Commit on success, rollback on exception
        """
        async with self.connection() as conn:
            async with conn.transaction():
                yield conn

    async def health_check(self) -> dict[str, Any]:
        """
        Pool statistics, round-trip latency and presence of the queue table.

        Healthy requires the queue table, a round trip under 100ms and
        utilization under 90%.
        """
        if not self._initialized:
            return {"healthy": False, "error": "Pool not initialized", "service": "database_pool"}

        if self._closed:
            return {"healthy": False, "error": "Pool is closed", "service": "database_pool"}

        try:
            stats = self.pool.get_stats()
            pool_size = stats.get("pool_size", 0)
            pool_available = stats.get("pool_available", 0)
            requests_waiting = stats.get("requests_waiting", 0)

            start_time = time.time()
            queue_table_present = await self._check_queue_table()
            connection_time_ms = (time.time() - start_time) * 1000

            pool_utilization = (
                (pool_size - pool_available) / pool_size * 100 if pool_size > 0 else 0
            )

            health_data = {
                "healthy": queue_table_present
                and pool_utilization < 90
                and connection_time_ms < 100,
                "service": "database_pool",
                "role": self.role,
                "queue_table_present": queue_table_present,
                "connection_time_ms": round(connection_time_ms, 2),
                "pool_stats": {
                    "pool_size": pool_size,
                    "pool_available": pool_available,
                    "pool_utilization_percent": round(pool_utilization, 2),
                    "requests_waiting": requests_waiting,
                },
            }

            warnings = []
            if not queue_table_present:
                warnings.append(f"Table {QUEUE_TABLE} does not exist")
            if pool_utilization > 80:
                warnings.append(f"High pool utilization: {pool_utilization:.1f}%")
            if requests_waiting > 0:
                warnings.append(f"Requests waiting for connections: {requests_waiting}")
            if warnings:
                health_data["warnings"] = warnings

            return health_data

        except Exception as e:
            logger.error("Database pool health check failed", error=str(e))
            return {
                "healthy": False,
                "service": "database_pool",
                "error": str(e),
                "error_type": type(e).__name__,
            }


db_pool = DatabasePoolManager()


async def db_health_check() -> dict[str, Any]:
    """Get database pool health status."""
    return await db_pool.health_check()
