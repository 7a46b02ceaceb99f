"""YAML configuration for the backup and restore commands.

Values may reference the environment as ``${VAR}`` or ``${VAR:-default}``.
Secrets (database password, S3 keys) should come from the environment; the
inline forms exist for local development and warn when used.
"""

import os
import re
import warnings
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from archive_purge.exceptions import ConfigurationError
from utils import safe_identifier

_ENV_REFERENCE = re.compile(r"\$\{([^}:]+)(?::-([^}]*))?\}")


def _substitute_env_vars(value: str) -> str:
    def replace(match: re.Match[str]) -> str:
        name, default = match.group(1), match.group(2)
        resolved = os.getenv(name, default)
        if resolved is None:
            raise ValueError(f"Environment variable {name} not set and no default provided")
        return resolved

    return _ENV_REFERENCE.sub(replace, value)


def _substitute_env_in_dict(data: Any) -> Any:
    """Apply environment substitution to every string in a parsed YAML tree."""
    if isinstance(data, dict):
        return {key: _substitute_env_in_dict(value) for key, value in data.items()}
    if isinstance(data, list):
        return [_substitute_env_in_dict(item) for item in data]
    if isinstance(data, str):
        return _substitute_env_vars(data)
    return data


class S3Config(BaseModel):
    """Bucket holding the archives and how to reach it."""

    model_config = {"populate_by_name": True}

    bucket: str = Field(description="Bucket that receives db_backup/... objects")
    endpoint: Optional[str] = Field(
        default=None,
        description="Endpoint URL for S3-compatible stores (null for AWS)",
    )
    region: str = Field(default="us-east-1", description="AWS region")
    prefix: str = Field(default="", description="Key prefix for buckets shared with other data")
    aws_access_key_id: Optional[str] = Field(default=None, alias="access_key_id")
    aws_secret_access_key: Optional[str] = Field(default=None, alias="secret_access_key")

    def get_credentials(self) -> Optional[dict[str, str]]:
        """Explicit credentials for boto3, or None to use its default chain.

        Config file keys win over AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY.

        Raises:
            ValueError: If only one of the two config keys is set
        """
        key, secret = self.aws_access_key_id, self.aws_secret_access_key
        if (key is None) != (secret is None):
            raise ValueError(
                "Both access_key_id and secret_access_key must be provided together, "
                "or use environment variables (AWS_ACCESS_KEY_ID, AWS_SECRET_ACCESS_KEY)"
            )
        if key is not None and secret is not None:
            warnings.warn(
                "Using S3 credentials from the config file; "
                "set AWS_ACCESS_KEY_ID and AWS_SECRET_ACCESS_KEY instead outside development.",
                UserWarning,
                stacklevel=2,
            )
            return {"aws_access_key_id": key, "aws_secret_access_key": secret}

        env_key = os.getenv("AWS_ACCESS_KEY_ID")
        env_secret = os.getenv("AWS_SECRET_ACCESS_KEY")
        if env_key and env_secret:
            return {"aws_access_key_id": env_key, "aws_secret_access_key": env_secret}
        return None


class DatabaseConfig(BaseModel):
    """PostgreSQL connection settings."""

    model_config = {"populate_by_name": True}

    name: str = Field(description="Database name")
    host: str = Field(description="Database host")
    port: int = Field(default=5432, gt=0, lt=65536)
    user: str = Field(description="Database user")
    password_env: Optional[str] = Field(
        default=None,
        description="Environment variable holding the password",
    )
    password: Optional[str] = Field(default=None, description="Inline password (development)")
    schema_name: str = Field(default="public", alias="schema")
    pool_size: int = Field(default=2, gt=0, le=50)
    statement_timeout_seconds: int = Field(
        default=1800,
        description="SET LOCAL statement_timeout for every batch and restore transaction",
        gt=0,
    )

    @field_validator("schema_name")
    @classmethod
    def validate_schema_name(cls, v: str) -> str:
        safe_identifier(v)
        return v

    @model_validator(mode="after")
    def validate_password_source(self) -> "DatabaseConfig":
        """Exactly one of password_env and password."""
        if not self.password_env and not self.password:
            raise ValueError("Either 'password_env' or 'password' must be provided")
        if self.password_env and self.password:
            raise ValueError("Cannot specify both 'password_env' and 'password'")
        return self

    def get_password(self) -> str:
        """Resolve the password.

        Raises:
            ValueError: If password_env names an unset variable
        """
        if self.password_env:
            password = os.getenv(self.password_env)
            if not password:
                raise ValueError(f"Environment variable {self.password_env} not set")
            return password

        warnings.warn(
            f"Using the inline password for database '{self.name}'; "
            "use 'password_env' outside development.",
            UserWarning,
            stacklevel=2,
        )
        return self.password or ""


class BackupConfig(BaseModel):
    """Archive-and-purge settings. CLI flags override table and batch_size."""

    table: Optional[str] = Field(default=None, description="Table to archive")
    batch_size: int = Field(default=10000, description="Rows per archive file", gt=0)
    timestamp_column: str = Field(
        default="created_at",
        description="Column whose value assigns a row to a month",
    )
    primary_key: str = Field(default="id", description="Column the batch delete matches on")
    compression_level: int = Field(default=6, ge=1, le=9)
    staging_dir: str = Field(
        default="backup_logs",
        description="Local directory for archive files before upload",
    )

    @field_validator("table", "timestamp_column", "primary_key")
    @classmethod
    def validate_identifiers(cls, v: Optional[str]) -> Optional[str]:
        """Names end up in SQL text, so they must be plain identifiers."""
        if v is not None:
            safe_identifier(v)
        return v


class RestoreConfig(BaseModel):
    """Restore settings."""

    strict_schema: bool = Field(
        default=True,
        description="Abort when the table has columns the archive lacks",
    )
    relaxed_column_count: bool = Field(
        default=True,
        description="Load records shorter than the header, missing fields as NULL",
    )


class LoggingConfig(BaseModel):
    """Console and per-table file logging."""

    log_dir: Optional[str] = Field(
        default="backup_logs",
        description="Directory for {table}_backup_log.txt / {table}_restore_log.txt (null: console only)",
    )
    level: str = Field(default="INFO")
    format: str = Field(default="console")

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        if v not in ("console", "json"):
            raise ValueError("format must be 'console' or 'json'")
        return v


class MonitoringConfig(BaseModel):
    """Metrics export."""

    metrics_textfile: Optional[str] = Field(
        default=None,
        description="Prometheus textfile written after each run",
    )


class ArchivePurgeConfig(BaseModel):
    """Root configuration model."""

    version: str
    s3: S3Config
    database: DatabaseConfig
    backup: BackupConfig = Field(default_factory=BackupConfig)
    restore: RestoreConfig = Field(default_factory=RestoreConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        if v != "1.0":
            raise ValueError(f"Unsupported configuration version: {v}")
        return v


def load_config(config_path: Path) -> ArchivePurgeConfig:
    """Load, substitute and validate a YAML configuration file.

    Raises:
        ConfigurationError: If the file is missing, not YAML, empty, refers to
            an unset environment variable or fails validation
    """
    try:
        with open(config_path, encoding="utf-8") as f:
            raw_config = yaml.safe_load(f)
        if not raw_config:
            raise ValueError("Configuration file is empty")
        return ArchivePurgeConfig.model_validate(_substitute_env_in_dict(raw_config))

    except FileNotFoundError:
        raise ConfigurationError(f"Configuration file not found: {config_path}") from None
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in configuration file: {e}") from e
    except Exception as e:
        raise ConfigurationError(f"Configuration validation failed: {e}") from e
