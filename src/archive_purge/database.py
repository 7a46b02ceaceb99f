"""Database connection and query management using asyncpg."""

import json
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Optional

import asyncpg
from structlog import BoundLogger

from archive_purge.config import DatabaseConfig
from archive_purge.exceptions import DatabaseError, TransactionError
from utils import qualified_table
from utils.logging import get_logger


def _decode_json(text: str) -> Any:
    """Objects and arrays become Python structures; scalars keep their JSON text.

    A jsonb string such as ``"abc"`` stays ``'"abc"'`` so the archive still
    holds valid JSON for it.
    """
    value = json.loads(text)
    if isinstance(value, (dict, list)):
        return value
    return text


async def _init_connection(conn: asyncpg.Connection) -> None:
    for type_name in ("json", "jsonb"):
        await conn.set_type_codec(
            type_name,
            encoder=json.dumps,
            decoder=_decode_json,
            schema="pg_catalog",
        )


class DatabaseManager:
    """Manages PostgreSQL connections, transactions and bulk loads."""

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
        self.pool_size = config.pool_size
        self.logger = logger or get_logger("database")
        self.pool: Optional[asyncpg.Pool] = None
        self._dsn: Optional[str] = None

    @property
    def dsn(self) -> str:
        """Get database connection DSN."""
        if self._dsn is None:
            try:
                password = self.config.get_password()
            except ValueError as e:
                raise DatabaseError(
                    str(e),
                    context={"database": self.config.name},
                ) from e

            self._dsn = (
                f"postgresql://{self.config.user}:{password}@"
                f"{self.config.host}:{self.config.port}/{self.config.name}"
            )
        return self._dsn

    async def connect(self) -> None:
        """Create connection pool."""
        try:
            self.logger.debug(
                "Creating connection pool",
                database=self.config.name,
                host=self.config.host,
                pool_size=self.pool_size,
            )

            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=1,
                max_size=self.pool_size,
                init=_init_connection,
                server_settings={
                    "application_name": "archive_purge",
                },
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

    def _require_pool(self) -> asyncpg.Pool:
        if not self.pool:
            raise DatabaseError(
                "Connection pool not initialized. Call connect() first.",
                context={"database": self.config.name},
            )
        return self.pool

    @asynccontextmanager
    async def acquire_connection(self) -> AsyncGenerator[asyncpg.Connection, None]:
        """Acquire a connection from the pool.

        Yields:
            Database connection

        Raises:
            DatabaseError: If pool is not initialized
        """
        pool = self._require_pool()
        conn = await pool.acquire()
        try:
            yield conn
        finally:
            await pool.release(conn)

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[asyncpg.Connection, None]:
        """Run the enclosed block in one transaction with a statement timeout.

        The transaction commits when the block exits normally and rolls back
        when it raises. PostgreSQL errors (including a failed COMMIT) are
        re-raised as TransactionError; other exceptions propagate unchanged.

        Yields:
            Database connection in transaction
        """
        timeout_ms = self.config.statement_timeout_seconds * 1000
        async with self.acquire_connection() as conn:
            try:
                async with conn.transaction():
                    await conn.execute(f"SET LOCAL statement_timeout = {timeout_ms}")
                    yield conn
            except asyncpg.PostgresError as e:
                self.logger.error(
                    "Transaction rolled back",
                    database=self.config.name,
                    error=str(e),
                    error_code=getattr(e, "sqlstate", None),
                )
                raise TransactionError(
                    f"Transaction failed: {e}",
                    context={
                        "database": self.config.name,
                        "error_code": getattr(e, "sqlstate", None),
                    },
                ) from e

    async def execute(self, query: str, *args: Any) -> str:
        """Execute a query that doesn't return rows.

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

    async def get_columns(self, table_name: str) -> list[str]:
        """Get the table's column names in ordinal order.

        Args:
            table_name: Table name (in the configured schema)

        Returns:
            Ordered column names

        Raises:
            DatabaseError: If the table has no visible columns
        """
        records = await self.fetch(
            """
            SELECT column_name
            FROM information_schema.columns
            WHERE table_schema = $1 AND table_name = $2
            ORDER BY ordinal_position
            """,
            self.config.schema_name,
            table_name,
        )
        columns = [record["column_name"] for record in records]
        if not columns:
            raise DatabaseError(
                f"Table not found or has no columns: {table_name}",
                context={"database": self.config.name, "schema": self.config.schema_name},
            )
        return columns

    async def get_column_types(self, table_name: str) -> dict[str, str]:
        """Get a mapping of column name to information_schema data_type."""
        records = await self.fetch(
            """
            SELECT column_name, data_type
            FROM information_schema.columns
            WHERE table_schema = $1 AND table_name = $2
            ORDER BY ordinal_position
            """,
            self.config.schema_name,
            table_name,
        )
        return {record["column_name"]: record["data_type"] for record in records}

    async def get_not_null_columns(self, table_name: str) -> set[str]:
        """Names of the table's columns declared NOT NULL."""
        records = await self.fetch(
            """
            SELECT column_name
            FROM information_schema.columns
            WHERE table_schema = $1 AND table_name = $2 AND is_nullable = 'NO'
            """,
            self.config.schema_name,
            table_name,
        )
        return {record["column_name"] for record in records}

    async def count_rows(self, table_name: str) -> int:
        """Count all rows in a table."""
        table = qualified_table(self.config.schema_name, table_name)
        count = await self.fetchval(f"SELECT COUNT(*) FROM {table}")
        return count or 0

    async def copy_csv_to_table(
        self,
        conn: asyncpg.Connection,
        table_name: str,
        columns: list[str],
        csv_path: Path,
    ) -> int:
        """Stream a CSV file with a header row into a table using COPY.

        Equivalent to ``COPY table (columns) FROM STDIN WITH (FORMAT csv,
        HEADER true, DELIMITER ',')``. Must run on a connection inside a
        transaction owned by the caller.

        Returns:
            Number of rows loaded
        """
        status = await conn.copy_to_table(
            table_name,
            source=csv_path,
            columns=columns,
            schema_name=self.config.schema_name,
            format="csv",
            header=True,
            delimiter=",",
        )
        # asyncpg returns the command tag, e.g. "COPY 10000"
        try:
            return int(status.split()[-1])
        except (AttributeError, ValueError, IndexError):
            self.logger.warning("Unexpected COPY status", status=status)
            return 0
