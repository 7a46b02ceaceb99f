"""Durable per-month batch numbering.

Each committed batch records its number in ``archive_batch_sequences`` inside
the same transaction that deletes its rows, so a later run of the same month
continues after the last committed number instead of reusing archive keys.
"""

from typing import Optional

import asyncpg
import structlog

from archive_purge.database import DatabaseManager
from archive_purge.exceptions import DatabaseError
from archive_purge.keys import BatchWindow
from utils import qualified_table
from utils.logging import get_logger

DEFAULT_SEQUENCE_TABLE = "archive_batch_sequences"


class BatchSequenceStore:
    """Reads and advances the last committed batch number of (table, month)."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        table_name: str = DEFAULT_SEQUENCE_TABLE,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize sequence store.

        Args:
            db_manager: Database manager instance
            table_name: Control table name (created in the configured schema)
            logger: Optional logger instance
        """
        self.db_manager = db_manager
        self.logger = logger or get_logger("sequence_store")
        self.qualified_table = qualified_table(db_manager.config.schema_name, table_name)

    async def ensure_table(self) -> None:
        """Create the control table if it doesn't exist."""
        await self.db_manager.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {self.qualified_table} (
                table_name TEXT NOT NULL,
                year_month TEXT NOT NULL,
                last_batch_number INTEGER NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                PRIMARY KEY (table_name, year_month)
            )
            """
        )

    async def last_batch_number(self, window: BatchWindow) -> int:
        """Last committed batch number of the window, 0 if none."""
        value = await self.db_manager.fetchval(
            f"""
            SELECT last_batch_number
            FROM {self.qualified_table}
            WHERE table_name = $1 AND year_month = $2
            """,
            window.table,
            window.year_month,
        )
        return value or 0

    async def record_batch(
        self,
        conn: asyncpg.Connection,
        window: BatchWindow,
        batch_number: int,
    ) -> None:
        """Record batch_number as committed; runs inside the batch transaction.

        Raises:
            DatabaseError: If the upsert fails or would move the counter backwards
        """
        try:
            stored = await conn.fetchval(
                f"""
                INSERT INTO {self.qualified_table} (table_name, year_month, last_batch_number, updated_at)
                VALUES ($1, $2, $3, NOW())
                ON CONFLICT (table_name, year_month)
                DO UPDATE SET
                    last_batch_number = GREATEST(
                        {self.qualified_table}.last_batch_number, EXCLUDED.last_batch_number
                    ),
                    updated_at = NOW()
                RETURNING last_batch_number
                """,
                window.table,
                window.year_month,
                batch_number,
            )
        except Exception as e:
            raise DatabaseError(
                f"Failed to record batch number: {e}",
                context={"table": window.table, "window": window.year_month},
            ) from e

        if stored != batch_number:
            raise DatabaseError(
                "Batch number already used by another run",
                context={
                    "table": window.table,
                    "window": window.year_month,
                    "batch_number": batch_number,
                    "stored": stored,
                },
            )
        self.logger.debug(
            "Batch number recorded",
            table=window.table,
            window=window.year_month,
            batch_number=batch_number,
        )
