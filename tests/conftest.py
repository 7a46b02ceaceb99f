"""Pytest configuration and shared fixtures."""

import os
from pathlib import Path

import pytest

from archive_purge.config import (
    ArchivePurgeConfig,
    BackupConfig,
    DatabaseConfig,
    LoggingConfig,
    S3Config,
)


@pytest.fixture
def db_config() -> DatabaseConfig:
    """Create test database configuration."""
    os.environ["TEST_DB_PASSWORD"] = "test_password"
    return DatabaseConfig(
        name="test_db",
        host="localhost",
        port=5432,
        user="test_user",
        password_env="TEST_DB_PASSWORD",
    )


@pytest.fixture
def s3_config() -> S3Config:
    """Create test S3 configuration."""
    return S3Config(bucket="test-bucket", region="us-east-1")


@pytest.fixture
def app_config(db_config: DatabaseConfig, s3_config: S3Config, tmp_path: Path) -> ArchivePurgeConfig:
    """Create a full configuration whose local files live under tmp_path."""
    return ArchivePurgeConfig(
        version="1.0",
        s3=s3_config,
        database=db_config,
        backup=BackupConfig(table="events", staging_dir=str(tmp_path / "staging")),
        logging=LoggingConfig(log_dir=str(tmp_path / "logs")),
    )


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    """Write a minimal YAML configuration file."""
    os.environ["TEST_DB_PASSWORD"] = "test_password"
    path = tmp_path / "config.yaml"
    path.write_text(
        f"""
version: "1.0"
s3:
  bucket: "test-bucket"
  endpoint: "http://localhost:9000"
database:
  name: "test_db"
  host: "localhost"
  port: 5432
  user: "test_user"
  password_env: "TEST_DB_PASSWORD"
backup:
  table: "events"
  batch_size: 10000
  staging_dir: "{tmp_path / 'staging'}"
logging:
  log_dir: "{tmp_path / 'logs'}"
"""
    )
    return path
