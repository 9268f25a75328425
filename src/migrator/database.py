"""Database connection and query management using asyncpg."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any, Optional

import asyncpg
from structlog import BoundLogger

from migrator.config import DatabaseConfig
from migrator.exceptions import ConfigurationError, DatabaseError
from utils.logging import get_logger


def is_unique_violation(error: BaseException) -> bool:
    """Return True if ``error`` is (or wraps) a PostgreSQL unique violation."""
    while error is not None:
        if isinstance(error, asyncpg.UniqueViolationError):
            return True
        error = error.__cause__
    return False


class DatabaseManager:
    """Manages PostgreSQL database connections and operations.

    Every query method accepts an optional ``connection``; when given, the
    statement runs on it (typically inside :meth:`transaction`) instead of a
    pooled connection.
    """

    def __init__(
        self,
        config: DatabaseConfig,
        pool_size: Optional[int] = None,
        logger: Optional[BoundLogger] = None,
    ) -> None:
        """Initialize database manager.

        Args:
            config: Database configuration
            pool_size: Connection pool size (defaults to config.pool_size)
            logger: Optional logger instance
        """
        self.config = config
        self.pool_size = pool_size or config.pool_size
        self.logger = logger or get_logger("database")
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self) -> None:
        """Create connection pool."""
        try:
            password = self.config.get_password()
        except ConfigurationError as e:
            raise DatabaseError(str(e), context={"database": self.config.name}) from e

        try:
            self.logger.debug(
                "Creating connection pool",
                database=self.config.name,
                host=self.config.host,
                pool_size=self.pool_size,
            )

            self.pool = await asyncpg.create_pool(
                host=self.config.host,
                port=self.config.port,
                user=self.config.user,
                password=password,
                database=self.config.name,
                min_size=1,
                max_size=self.pool_size,
                command_timeout=self.config.command_timeout,
                server_settings={
                    "application_name": self.config.application_name,
                },
            )

            async with self.pool.acquire() as conn:
                version = await conn.fetchval("SELECT version()")
                self.logger.debug(
                    "Database connection established",
                    database=self.config.name,
                    version=version.split(",")[0] if version else "unknown",
                )

        except Exception as e:
            raise DatabaseError(
                f"Failed to create connection pool: {e}",
                context={"database": self.config.name, "host": self.config.host},
            ) from e

    async def disconnect(self) -> None:
        """Close connection pool."""
        if self.pool:
            self.logger.debug("Closing connection pool", database=self.config.name)
            await self.pool.close()
            self.pool = None

    async def health_check(self) -> bool:
        """Check database connection health.

        Returns:
            True if healthy, False otherwise
        """
        if not self.pool:
            return False

        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except (asyncpg.PostgresError, OSError) as e:
            self.logger.warning("Health check failed", error=str(e))
            return False

    @asynccontextmanager
    async def acquire_connection(
        self, connection: Optional[asyncpg.Connection] = None
    ) -> AsyncGenerator[asyncpg.Connection, None]:
        """Acquire a connection from the pool, or reuse ``connection``.

        Yields:
            Database connection

        Raises:
            DatabaseError: If pool is not initialized
        """
        if connection is not None:
            yield connection
            return

        if not self.pool:
            raise DatabaseError(
                "Connection pool not initialized. Call connect() first.",
                context={"database": self.config.name},
            )

        conn = await self.pool.acquire()
        try:
            yield conn
        finally:
            await self.pool.release(conn)

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[asyncpg.Connection, None]:
        """Start a database transaction.

        Commits when the block exits normally and rolls back when it raises.

        Yields:
            Database connection in transaction

        Raises:
            DatabaseError: If pool is not initialized
        """
        if not self.pool:
            raise DatabaseError(
                "Connection pool not initialized. Call connect() first.",
                context={"database": self.config.name},
            )

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    async def execute(
        self, query: str, *args: Any, connection: Optional[asyncpg.Connection] = None
    ) -> str:
        """Execute a query that doesn't return rows.

        Args:
            query: SQL query
            *args: Query parameters
            connection: Optional connection to run on

        Returns:
            Command status string

        Raises:
            DatabaseError: If execution fails
        """
        try:
            async with self.acquire_connection(connection) as conn:
                return await conn.execute(query, *args)
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError(
                f"Query execution failed: {e}",
                context={"database": self.config.name, "query": query[:100]},
            ) from e

    async def executemany(
        self,
        query: str,
        args: list[tuple[Any, ...]],
        connection: Optional[asyncpg.Connection] = None,
    ) -> None:
        """Execute a query once per parameter tuple.

        Raises:
            DatabaseError: If execution fails
        """
        try:
            async with self.acquire_connection(connection) as conn:
                await conn.executemany(query, args)
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError(
                f"Query execution failed: {e}",
                context={"database": self.config.name, "query": query[:100]},
            ) from e

    async def fetch(
        self, query: str, *args: Any, connection: Optional[asyncpg.Connection] = None
    ) -> list[asyncpg.Record]:
        """Execute a query and return all rows.

        Args:
            query: SQL query
            *args: Query parameters
            connection: Optional connection to run on

        Returns:
            List of records

        Raises:
            DatabaseError: If execution fails
        """
        try:
            async with self.acquire_connection(connection) as conn:
                return await conn.fetch(query, *args)
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError(
                f"Query execution failed: {e}",
                context={"database": self.config.name, "query": query[:100]},
            ) from e

    async def fetchrow(
        self, query: str, *args: Any, connection: Optional[asyncpg.Connection] = None
    ) -> Optional[asyncpg.Record]:
        """Execute a query and return one row.

        Args:
            query: SQL query
            *args: Query parameters
            connection: Optional connection to run on

        Returns:
            Single record or None

        Raises:
            DatabaseError: If execution fails
        """
        try:
            async with self.acquire_connection(connection) as conn:
                return await conn.fetchrow(query, *args)
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError(
                f"Query execution failed: {e}",
                context={"database": self.config.name, "query": query[:100]},
            ) from e

    async def fetchone(
        self, query: str, *args: Any, connection: Optional[asyncpg.Connection] = None
    ) -> Optional[dict[str, Any]]:
        """Execute a query and return one row as dictionary.

        Raises:
            DatabaseError: If execution fails
        """
        row = await self.fetchrow(query, *args, connection=connection)
        return dict(row) if row else None

    async def fetchval(
        self, query: str, *args: Any, connection: Optional[asyncpg.Connection] = None
    ) -> Any:
        """Execute a query and return a single value.

        Args:
            query: SQL query
            *args: Query parameters
            connection: Optional connection to run on

        Returns:
            Single value or None

        Raises:
            DatabaseError: If execution fails
        """
        try:
            async with self.acquire_connection(connection) as conn:
                return await conn.fetchval(query, *args)
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError(
                f"Query execution failed: {e}",
                context={"database": self.config.name, "query": query[:100]},
            ) from e
