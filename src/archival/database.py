"""Database connection and query management using asyncpg."""

from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Optional

import asyncpg
from structlog import BoundLogger

from archival.config import ColdVaultConfig, DatabaseConfig
from archival.exceptions import ConfigurationError, DatabaseError
from utils.logging import get_logger


class DatabaseManager:
    """Manages one PostgreSQL connection pool."""

    def __init__(
        self,
        config: DatabaseConfig,
        logger: Optional[BoundLogger] = None,
    ) -> None:
        """Initialize database manager.

        Args:
            config: Database configuration
            logger: Optional logger instance
        """
        self.config = config
        self.logger = logger or get_logger("database")
        self.pool: Optional[asyncpg.Pool] = None
        self._dsn: Optional[str] = None

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def dsn(self) -> str:
        """Get database connection DSN."""
        if self._dsn is None:
            try:
                password = self.config.get_password()
            except ValueError as e:
                raise ConfigurationError(
                    str(e),
                    context={"database": self.config.name},
                ) from e

            self._dsn = (
                f"postgresql://{self.config.user}:{password}@"
                f"{self.config.host}:{self.config.port}/{self.config.database_name}"
            )
        return self._dsn

    async def connect(self) -> None:
        """Create connection pool."""
        try:
            self.logger.debug(
                "Creating connection pool",
                database=self.config.name,
                host=self.config.host,
                pool_size=self.config.pool_size,
            )
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=1,
                max_size=self.config.pool_size,
                command_timeout=self.config.command_timeout,
                server_settings={"application_name": "coldvault"},
            )
        except ConfigurationError:
            raise
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

    @asynccontextmanager
    async def acquire_connection(self) -> AsyncGenerator[asyncpg.Connection, None]:
        """Acquire a connection from the pool.

        Raises:
            DatabaseError: If pool is not initialized
        """
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
        """Run the enclosed block in one transaction on one pooled connection."""
        async with self.acquire_connection() as conn:
            async with conn.transaction():
                yield conn

    async def stream(
        self,
        query: str,
        *args: Any,
        prefetch: int = 1000,
    ) -> AsyncIterator[asyncpg.Record]:
        """Iterate a query through a forward-only server-side cursor.

        The cursor lives inside a read-only transaction held for the whole
        iteration, so the full result set is never materialized client-side.

        Args:
            query: SQL query
            *args: Query parameters
            prefetch: Rows fetched per round trip

        Yields:
            Records in server order
        """
        async with self.acquire_connection() as conn:
            async with conn.transaction(readonly=True):
                async for record in conn.cursor(query, *args, prefetch=prefetch):
                    yield record

    async def execute(self, query: str, *args: Any) -> str:
        """Execute a query that doesn't return rows.

        Returns:
            Command status string

        Raises:
            DatabaseError: If execution fails
        """
        try:
            async with self.acquire_connection() as conn:
                return await conn.execute(query, *args)
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError(
                f"Query execution failed: {e}",
                context={"database": self.config.name, "query": query[:100]},
            ) from e

    async def executemany(self, query: str, args: list[tuple[Any, ...]]) -> None:
        """Execute one statement for every argument tuple in a single transaction.

        Raises:
            DatabaseError: If execution fails
        """
        if not args:
            return
        try:
            async with self.transaction() as conn:
                await conn.executemany(query, args)
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError(
                f"Batch execution failed: {e}",
                context={"database": self.config.name, "query": query[:100], "rows": len(args)},
            ) from e

    async def fetch(self, query: str, *args: Any) -> list[asyncpg.Record]:
        """Execute a query and return all rows.

        Raises:
            DatabaseError: If execution fails
        """
        try:
            async with self.acquire_connection() as conn:
                return await conn.fetch(query, *args)
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError(
                f"Query execution failed: {e}",
                context={"database": self.config.name, "query": query[:100]},
            ) from e

    async def fetchrow(self, query: str, *args: Any) -> Optional[asyncpg.Record]:
        """Execute a query and return one row.

        Raises:
            DatabaseError: If execution fails
        """
        try:
            async with self.acquire_connection() as conn:
                return await conn.fetchrow(query, *args)
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError(
                f"Query execution failed: {e}",
                context={"database": self.config.name, "query": query[:100]},
            ) from e

    async def fetchval(self, query: str, *args: Any) -> Any:
        """Execute a query and return a single value.

        Raises:
            DatabaseError: If execution fails
        """
        try:
            async with self.acquire_connection() as conn:
                return await conn.fetchval(query, *args)
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError(
                f"Query execution failed: {e}",
                context={"database": self.config.name, "query": query[:100]},
            ) from e


class DatabaseRegistry:
    """Lazily connected pools for every configured source database."""

    def __init__(
        self,
        config: ColdVaultConfig,
        logger: Optional[BoundLogger] = None,
    ) -> None:
        self.config = config
        self.logger = logger or get_logger("database_registry")
        self._managers: dict[str, DatabaseManager] = {}

    async def get(self, database_name: str) -> DatabaseManager:
        """Return a connected manager for a configured database.

        Raises:
            ConfigurationError: If the database is not configured
        """
        manager = self._managers.get(database_name)
        if manager is not None:
            return manager

        db_config = self.config.get_source_database(database_name)
        if db_config is None:
            raise ConfigurationError(
                f"No connection configured for database '{database_name}'",
                context={"database": database_name},
            )
        manager = DatabaseManager(db_config, logger=self.logger)
        await manager.connect()
        self._managers[database_name] = manager
        return manager

    async def close(self) -> None:
        for manager in self._managers.values():
            await manager.disconnect()
        self._managers.clear()
