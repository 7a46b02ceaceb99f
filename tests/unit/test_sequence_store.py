"""Unit tests for the batch sequence store."""

from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest

from archive_purge.config import DatabaseConfig
from archive_purge.exceptions import DatabaseError
from archive_purge.keys import BatchWindow
from archive_purge.sequence_store import BatchSequenceStore

MARCH = BatchWindow("events", 2024, 3)


@pytest.fixture
def db_manager(db_config: DatabaseConfig) -> MagicMock:
    manager = MagicMock()
    manager.config = db_config
    manager.execute = AsyncMock(return_value="CREATE TABLE")
    manager.fetchval = AsyncMock(return_value=None)
    return manager


@pytest.mark.asyncio
async def test_ensure_table(db_manager: MagicMock) -> None:
    """Test the control table is created in the configured schema."""
    await BatchSequenceStore(db_manager).ensure_table()
    query = db_manager.execute.call_args.args[0]
    assert 'CREATE TABLE IF NOT EXISTS "public"."archive_batch_sequences"' in query
    assert "PRIMARY KEY (table_name, year_month)" in query


@pytest.mark.asyncio
async def test_last_batch_number_defaults_to_zero(db_manager: MagicMock) -> None:
    """Test a month never archived starts from zero."""
    assert await BatchSequenceStore(db_manager).last_batch_number(MARCH) == 0
    assert db_manager.fetchval.call_args.args[1:] == ("events", "2024-03")


@pytest.mark.asyncio
async def test_last_batch_number(db_manager: MagicMock) -> None:
    """Test the stored number is returned."""
    db_manager.fetchval.return_value = 3
    assert await BatchSequenceStore(db_manager).last_batch_number(MARCH) == 3


@pytest.mark.asyncio
async def test_record_batch(db_manager: MagicMock) -> None:
    """Test the upsert runs on the batch connection."""
    conn = MagicMock()
    conn.fetchval = AsyncMock(return_value=4)

    await BatchSequenceStore(db_manager).record_batch(conn, MARCH, 4)

    query, table, year_month, number = conn.fetchval.call_args.args
    assert "ON CONFLICT (table_name, year_month)" in query
    assert "GREATEST" in query
    assert (table, year_month, number) == ("events", "2024-03", 4)
    db_manager.fetchval.assert_not_awaited()


@pytest.mark.asyncio
async def test_record_batch_number_already_used(db_manager: MagicMock) -> None:
    """Test a concurrent run that got further is detected."""
    conn = MagicMock()
    conn.fetchval = AsyncMock(return_value=6)

    with pytest.raises(DatabaseError, match="already used"):
        await BatchSequenceStore(db_manager).record_batch(conn, MARCH, 4)


@pytest.mark.asyncio
async def test_record_batch_failure(db_manager: MagicMock) -> None:
    """Test upsert errors are wrapped."""
    conn = MagicMock()
    conn.fetchval = AsyncMock(side_effect=asyncpg.PostgresError("permission denied"))

    with pytest.raises(DatabaseError, match="Failed to record batch number"):
        await BatchSequenceStore(db_manager).record_batch(conn, MARCH, 1)
