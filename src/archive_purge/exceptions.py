"""Exception hierarchy for archive-purge.

Every failure a backup or restore run can stop on is an ArchiverError, so the
CLIs catch one type and exit with status 1.
"""

from typing import Any, Optional


class ArchiverError(Exception):
    """Base exception for all archive-purge errors."""

    def __init__(
        self,
        message: str,
        *,
        correlation_id: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        """Initialize archiver error.

        Args:
            message: Error message
            correlation_id: Optional correlation ID for tracing
            context: Table, window, key or other details of the failing step
        """
        super().__init__(message)
        self.message = message
        self.correlation_id = correlation_id
        self.context = context or {}

    def __str__(self) -> str:
        text = self.message
        if self.context:
            details = ", ".join(f"{k}={v}" for k, v in self.context.items())
            text = f"{text} ({details})"
        if self.correlation_id:
            text = f"{text} [correlation_id={self.correlation_id}]"
        return text


class ConfigurationError(ArchiverError):
    """Invalid config file, missing password or bad CLI override."""


class DatabaseError(ArchiverError):
    """Connection, catalog, selection or bulk load failure."""


class TransactionError(ArchiverError):
    """A batch transaction failed and was rolled back."""


class S3Error(ArchiverError):
    """Bucket access, upload, download or listing failure."""


class ArchiveExistsError(S3Error):
    """An object is already stored under the archive key about to be written."""


class SerializationError(ArchiverError):
    """Row encoding failed or archive content is empty or unreadable."""


class SchemaMismatchError(ArchiverError):
    """Archive header does not match the target table's columns."""
