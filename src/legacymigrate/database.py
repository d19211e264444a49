"""
Read-only database access to the legacy system through the SSH tunnel.

The DatabaseClient owns both the SQLAlchemy async engine (and its bounded
connection pool) and the SSH tunnel the engine connects through. All legacy
database access funnels through it.

Queries are never retried here. Callers that want retries wrap a whole
read-only transaction in ``with_retry`` so a transaction either returns a
consistent result or fails outright.

This module provides:
- PoolStats: Snapshot of connection pool usage
- DatabaseClient: Query and read-only transaction access
- connect_database: Build a client and verify it with a handshake
"""

from __future__ import annotations

import logging
import re
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, TypeVar

from sqlalchemy import URL, text
from sqlalchemy import exc as sa_exc
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
from sqlalchemy.pool import AsyncAdaptedQueuePool

from legacymigrate.config import DatabaseConfig
from legacymigrate.exceptions import (
    DatabaseConnectionError,
    ErrorCategory,
    MigrationError,
    QueryError,
    categorize_error,
)
from legacymigrate.retry import RetryConfig, RetryStats, with_retry
from legacymigrate.ssh_tunnel import SSHTunnel

logger = logging.getLogger(__name__)

T = TypeVar("T")

_IDENTIFIER = re.compile(r"[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)?")


@dataclass(frozen=True)
class PoolStats:
    """
    Snapshot of connection pool usage.

    Attributes:
        max_size: Configured pool size (the hard upper bound)
        checked_out: Connections currently in use
        idle: Connections sitting in the pool
    """

    max_size: int
    checked_out: int
    idle: int

    def to_dict(self) -> dict[str, int]:
        return {"max_size": self.max_size, "checked_out": self.checked_out, "idle": self.idle}


def _as_database_error(error: sa_exc.SQLAlchemyError, sql: str | None) -> MigrationError:
    categorized = categorize_error(error)
    if categorized.category is ErrorCategory.DATABASE_CONNECTION:
        return DatabaseConnectionError(f"Database connection lost: {categorized.message}")
    return QueryError(f"Query failed: {categorized.message}", sql=sql)


class DatabaseClient:
    """
    Query access to the legacy database over a bounded connection pool.

    Args:
        engine: Async engine created with a bounded pool
        tunnel: SSH tunnel the engine connects through; closed with the client
        read_only: When True, ``query`` runs inside a read-only transaction
        server_version: Version string reported by the handshake
    """

    def __init__(
        self,
        engine: AsyncEngine,
        tunnel: SSHTunnel | None = None,
        read_only: bool = True,
        server_version: str | None = None,
    ) -> None:
        self._engine = engine
        self._tunnel = tunnel
        self.read_only = read_only
        self.server_version = server_version
        self._closed = False

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    @property
    def dialect(self) -> str:
        """Dialect name, e.g. ``postgresql`` or ``sqlite``."""
        return self._engine.dialect.name

    @property
    def is_closed(self) -> bool:
        return self._closed

    @asynccontextmanager
    async def _read_only_connection(self) -> AsyncIterator[AsyncConnection]:
        """
        Yield a connection inside a read-only transaction.

        The transaction commits when the block exits normally and rolls back
        otherwise; the connection always goes back to the pool.
        """
        async with self._engine.connect() as conn:
            try:
                async with conn.begin():
                    if self.dialect == "postgresql":
                        await conn.execute(text("SET TRANSACTION READ ONLY"))
                    elif self.dialect == "sqlite":
                        await conn.execute(text("PRAGMA query_only = ON"))
                    yield conn
            finally:
                if self.dialect == "sqlite":
                    # query_only is a connection setting; reset it before pooling
                    await conn.execute(text("PRAGMA query_only = OFF"))

    async def with_read_only_transaction(
        self,
        fn: Callable[[AsyncConnection], Awaitable[T]],
    ) -> T:
        """
        Run ``fn`` inside a read-only transaction.

        Args:
            fn: Async callable receiving the AsyncConnection

        Returns:
            Whatever ``fn`` returns

        Raises:
            QueryError: If a statement fails, including any write attempt
            DatabaseConnectionError: If the connection is lost

        Example:
            >>> async def load(conn):
            ...     result = await conn.execute(text("SELECT * FROM users"))
            ...     return result.mappings().all()
            >>> rows = await client.with_read_only_transaction(load)
        """
        self._ensure_open()
        try:
            async with self._read_only_connection() as conn:
                return await fn(conn)
        except sa_exc.SQLAlchemyError as e:
            raise _as_database_error(e, getattr(e, "statement", None)) from e

    async def query(self, sql: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        """
        Execute a statement and return its rows as dictionaries.

        Never retried. In read-only mode the statement runs inside a
        read-only transaction.

        Raises:
            QueryError: If the statement fails
        """
        self._ensure_open()

        async def fetch(conn: AsyncConnection) -> list[dict[str, Any]]:
            result = await conn.execute(text(sql), params or {})
            if not result.returns_rows:
                return []
            return [dict(row) for row in result.mappings().all()]

        if self.read_only:
            return await self.with_read_only_transaction(fetch)

        try:
            async with self._engine.begin() as conn:
                return await fetch(conn)
        except sa_exc.SQLAlchemyError as e:
            raise _as_database_error(e, sql) from e

    async def stream_query(
        self,
        sql: str,
        params: dict[str, Any] | None = None,
        batch_size: int = 1000,
    ) -> AsyncIterator[list[dict[str, Any]]]:
        """
        Iterate over the rows of a large result in chunks.

        Uses a server-side cursor inside a read-only transaction.

        Example:
            >>> async for chunk in client.stream_query("SELECT * FROM recipes", batch_size=500):
            ...     handle(chunk)
        """
        self._ensure_open()
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}.")
        try:
            async with self._read_only_connection() as conn:
                result = await conn.stream(text(sql), params or {})
                async for partition in result.mappings().partitions(batch_size):
                    yield [dict(row) for row in partition]
        except sa_exc.SQLAlchemyError as e:
            raise _as_database_error(e, sql) from e

    async def get_table_count(self, table: str) -> int:
        """
        Number of rows in a table.

        Raises:
            QueryError: If ``table`` is not a plain identifier or the query fails
        """
        if not _IDENTIFIER.fullmatch(table):
            raise QueryError(f"Invalid table name: {table!r}")
        preparer = self._engine.dialect.identifier_preparer
        quoted = ".".join(preparer.quote(part) for part in table.split("."))
        rows = await self.query(f"SELECT COUNT(*) AS count FROM {quoted}")
        return int(rows[0]["count"])

    async def get_version(self) -> str:
        """Server version string."""
        if self.dialect == "sqlite":
            rows = await self.query("SELECT sqlite_version() AS version")
        else:
            rows = await self.query("SELECT version() AS version")
        return str(rows[0]["version"])

    async def test_connection(self) -> bool:
        """
        Run ``SELECT 1``.

        Returns:
            True if the database answered, False otherwise
        """
        try:
            await self.query("SELECT 1 AS ok")
        except MigrationError as e:
            logger.warning(f"Database connection test failed: {e}")
            return False
        return True

    def get_pool_stats(self) -> PoolStats:
        """Current connection pool usage."""
        pool = self._engine.pool
        if not isinstance(pool, AsyncAdaptedQueuePool):
            return PoolStats(max_size=0, checked_out=0, idle=0)
        return PoolStats(max_size=pool.size(), checked_out=pool.checkedout(), idle=pool.checkedin())

    async def close(self) -> None:
        """
        Dispose the connection pool, then close the SSH tunnel.

        Safe to call more than once and after a partially failed start-up.
        """
        if self._closed:
            return
        self._closed = True
        try:
            await self._engine.dispose()
            logger.info("Database connection pool closed")
        finally:
            if self._tunnel is not None:
                await self._tunnel.close()

    def _ensure_open(self) -> None:
        if self._closed:
            raise QueryError("Database client is closed")


def build_database_url(db_config: DatabaseConfig, tunnel: SSHTunnel | None = None) -> URL:
    """
    asyncpg connection URL for the legacy database.

    With a tunnel the URL points at the tunnel's local end; without one it
    points at the configured host directly.
    """
    return URL.create(
        "postgresql+asyncpg",
        username=db_config.username,
        password=db_config.password.get_secret_value() or None,
        host=tunnel.local_host if tunnel else db_config.host,
        port=tunnel.local_port if tunnel else db_config.port,
        database=db_config.database,
    )


def create_engine_for(url: URL | str, pool_size: int) -> AsyncEngine:
    """Create an async engine whose pool never grows past ``pool_size``."""
    return create_async_engine(
        url,
        poolclass=AsyncAdaptedQueuePool,
        pool_size=pool_size,
        max_overflow=0,
        pool_pre_ping=True,
    )


async def _handshake(engine: AsyncEngine) -> str:
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))
        sql = (
            "SELECT sqlite_version()" if engine.dialect.name == "sqlite" else "SELECT version()"
        )
        version = (await conn.execute(text(sql))).scalar_one()
    return str(version)


async def connect_database(
    db_config: DatabaseConfig,
    tunnel: SSHTunnel | None = None,
    read_only: bool = True,
    max_retries: int | None = None,
    retry_delay: float | None = None,
    *,
    url: URL | str | None = None,
) -> DatabaseClient:
    """
    Create a DatabaseClient and verify the connection.

    The handshake (``SELECT 1`` plus the server version) is attempted up to
    ``max_retries`` times with a fixed delay; a fresh engine is created for
    every attempt and the failed one is disposed.

    Args:
        db_config: Legacy database settings
        tunnel: Open tunnel to connect through; owned by the client afterwards
        read_only: Run queries in read-only transactions
        max_retries: Total handshake attempts (defaults to the config value)
        retry_delay: Seconds between attempts (defaults to the config value)
        url: Explicit connection URL, overriding the tunnel-derived one

    Returns:
        Connected DatabaseClient

    Raises:
        DatabaseConnectionError: If every handshake attempt failed. The tunnel
            is closed before raising.
    """
    attempts = max_retries if max_retries is not None else db_config.connect_retries
    delay = retry_delay if retry_delay is not None else db_config.connect_retry_delay
    target = url if url is not None else build_database_url(db_config, tunnel)
    stats = RetryStats()

    async def attempt() -> tuple[AsyncEngine, str]:
        engine = create_engine_for(target, db_config.pool_size)
        try:
            version = await _handshake(engine)
        except BaseException:
            await engine.dispose()
            raise
        return engine, version

    try:
        engine, version = await with_retry(
            attempt,
            config=RetryConfig.fixed(attempts, delay),
            classifier=lambda _e: True,
            operation_name="database_handshake",
            stats=stats,
        )
    except Exception as e:
        if tunnel is not None:
            await tunnel.close()
        raise DatabaseConnectionError(
            f"Failed to connect to database {db_config.database!r} "
            f"after {stats.attempts} attempts: {e}",
            attempts=stats.attempts,
            metadata={"database": db_config.database},
        ) from e

    logger.info(
        f"Database connection established{' (read only)' if read_only else ''}",
        extra={
            "database": db_config.database,
            "pool_size": db_config.pool_size,
            "server_version": version,
            "attempts": stats.attempts,
        },
    )
    return DatabaseClient(engine, tunnel=tunnel, read_only=read_only, server_version=version)


__all__ = [
    "DatabaseClient",
    "PoolStats",
    "build_database_url",
    "connect_database",
    "create_engine_for",
]
