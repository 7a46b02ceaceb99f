"""Batch selection: pick, delete and return one batch of a monthly window."""

from datetime import datetime, timezone
from typing import Any, Optional

import asyncpg
import structlog

from archive_purge.database import DatabaseManager
from archive_purge.exceptions import DatabaseError
from archive_purge.keys import BatchWindow
from utils import qualified_table, safe_identifier
from utils.logging import get_logger


class BatchSelector:
    """Selects and removes the oldest rows of a window in one statement."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        table_name: str,
        timestamp_column: str = "created_at",
        primary_key: str = "id",
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize batch selector.

        Args:
            db_manager: Database manager instance
            table_name: Table to purge
            timestamp_column: Column the monthly windows are applied to
            primary_key: Primary key column used to address the selected rows
            logger: Optional logger instance
        """
        self.db_manager = db_manager
        self.table_name = table_name
        self.timestamp_column = timestamp_column
        self.primary_key = primary_key
        self.logger = logger or get_logger("batch_selector")
        self._timestamp_type: Optional[str] = None

    @property
    def qualified_table(self) -> str:
        return qualified_table(self.db_manager.config.schema_name, self.table_name)

    async def _get_timestamp_type(self) -> str:
        """Look up (once) the data_type of the timestamp column."""
        if self._timestamp_type is None:
            query = """
                SELECT data_type
                FROM information_schema.columns
                WHERE table_schema = $1
                  AND table_name = $2
                  AND column_name = $3
            """
            data_type = await self.db_manager.fetchval(
                query,
                self.db_manager.config.schema_name,
                self.table_name,
                self.timestamp_column,
            )
            if data_type is None:
                raise DatabaseError(
                    f"Timestamp column not found: {self.timestamp_column}",
                    context={"table": self.table_name},
                )
            self._timestamp_type = data_type
        return self._timestamp_type

    async def window_bounds(self, window: BatchWindow) -> tuple[Any, Any]:
        """Window bounds typed for the timestamp column.

        timestamptz columns get UTC-aware datetimes, timestamp columns naive
        datetimes and date columns plain dates.
        """
        data_type = await self._get_timestamp_type()
        if data_type == "date":
            return window.start, window.end

        start = datetime.combine(window.start, datetime.min.time())
        end = datetime.combine(window.end, datetime.min.time())
        if data_type == "timestamp with time zone":
            return start.replace(tzinfo=timezone.utc), end.replace(tzinfo=timezone.utc)
        return start, end

    async def select_and_remove(
        self,
        conn: asyncpg.Connection,
        window: BatchWindow,
        max_rows: int,
    ) -> list[dict[str, Any]]:
        """Delete up to max_rows of the window's oldest rows and return them.

        Must run on a connection with an open transaction: the rows returned
        are exactly the rows deleted, and both disappear together on rollback.
        An empty list means the window is exhausted.

        Raises:
            DatabaseError: If the statement fails
        """
        if max_rows <= 0:
            raise ValueError(f"max_rows must be positive, got {max_rows}")

        start, end = await self.window_bounds(window)
        table = self.qualified_table
        timestamp_col = safe_identifier(self.timestamp_column)
        primary_key = safe_identifier(self.primary_key)

        query = f"""
            WITH batch AS (
                SELECT {primary_key}
                FROM {table}
                WHERE {timestamp_col} >= $1 AND {timestamp_col} < $2
                ORDER BY {timestamp_col} ASC
                LIMIT $3
                FOR UPDATE
            )
            DELETE FROM {table}
            WHERE {primary_key} IN (SELECT {primary_key} FROM batch)
            RETURNING *
        """

        try:
            records = await conn.fetch(query, start, end, max_rows)
        except Exception as e:
            raise DatabaseError(
                f"Failed to select and delete batch: {e}",
                context={
                    "table": self.table_name,
                    "window": window.year_month,
                    "max_rows": max_rows,
                },
            ) from e

        self.logger.debug(
            "Batch selected and deleted",
            table=self.table_name,
            window=window.year_month,
            count=len(records),
        )
        return [dict(record) for record in records]

    async def count_window(self, window: BatchWindow) -> int:
        """Count rows currently inside a window (used for dry runs)."""
        start, end = await self.window_bounds(window)
        timestamp_col = safe_identifier(self.timestamp_column)
        query = f"""
            SELECT COUNT(*)
            FROM {self.qualified_table}
            WHERE {timestamp_col} >= $1 AND {timestamp_col} < $2
        """
        count = await self.db_manager.fetchval(query, start, end)
        return count or 0
