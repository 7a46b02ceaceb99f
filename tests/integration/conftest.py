"""Fixtures for tests against live PostgreSQL and MinIO.

Expects the development services: PostgreSQL on localhost:5432 (database
``test_db``, user ``archiver``) and MinIO on localhost:9000 with a
``test-archives`` bucket. Tests are skipped when either is unreachable.
"""

import os
import uuid
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio

from archive_purge.config import DatabaseConfig, S3Config
from archive_purge.database import DatabaseManager
from archive_purge.exceptions import DatabaseError, S3Error
from archive_purge.s3_client import S3Client
from archive_purge.sequence_store import BatchSequenceStore


@pytest.fixture
def integration_db_config() -> DatabaseConfig:
    """Database configuration for the development PostgreSQL."""
    os.environ["TEST_DB_PASSWORD"] = "archiver_password"
    return DatabaseConfig(
        name="test_db",
        host=os.getenv("TEST_DB_HOST", "localhost"),
        port=int(os.getenv("TEST_DB_PORT", "5432")),
        user="archiver",
        password_env="TEST_DB_PASSWORD",
    )


@pytest.fixture
def integration_s3_config() -> S3Config:
    """S3 configuration for the development MinIO."""
    return S3Config(
        bucket="test-archives",
        endpoint=os.getenv("TEST_S3_ENDPOINT", "http://localhost:9000"),
        access_key_id="minioadmin",
        secret_access_key="minioadmin",
    )


@pytest_asyncio.fixture
async def db_manager(integration_db_config: DatabaseConfig) -> AsyncGenerator[DatabaseManager, None]:
    """Connected database manager."""
    manager = DatabaseManager(integration_db_config)
    try:
        await manager.connect()
        await manager.fetchval("SELECT 1")
    except DatabaseError as e:
        await manager.disconnect()
        pytest.skip(f"PostgreSQL not available: {e}")

    yield manager
    await manager.disconnect()


@pytest.fixture
def s3_client(integration_s3_config: S3Config) -> S3Client:
    """S3 client for the test bucket."""
    client = S3Client(integration_s3_config)
    try:
        client.validate_bucket()
    except S3Error as e:
        pytest.skip(f"MinIO not available: {e}")
    return client


@pytest_asyncio.fixture
async def test_table(db_manager: DatabaseManager) -> AsyncGenerator[str, None]:
    """A fresh events-like table, dropped afterwards.

    The name is unique per test so archive keys never collide with objects
    left in the bucket by earlier runs.
    """
    table = f"it_events_{uuid.uuid4().hex[:10]}"
    await db_manager.execute(
        f"""
        CREATE TABLE "{table}" (
            id BIGSERIAL PRIMARY KEY,
            created_at TIMESTAMPTZ NOT NULL,
            name TEXT NOT NULL DEFAULT '',
            payload JSONB,
            tags TEXT[]
        )
        """
    )

    yield table

    await db_manager.execute(f'DROP TABLE IF EXISTS "{table}"')
    sequences = BatchSequenceStore(db_manager)
    await sequences.ensure_table()
    await db_manager.execute(
        f"DELETE FROM {sequences.qualified_table} WHERE table_name = $1", table
    )


@pytest.fixture
def insert_rows(db_manager: DatabaseManager, test_table: str):
    """Insert (created_at, name, payload, tags) tuples into the test table."""

    async def insert(rows: list[tuple]) -> None:
        async with db_manager.transaction() as conn:
            await conn.executemany(
                f'INSERT INTO "{test_table}" (created_at, name, payload, tags) VALUES ($1, $2, $3, $4)',
                rows,
            )

    return insert
