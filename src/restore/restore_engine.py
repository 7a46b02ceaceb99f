"""Restore engine for bulk loading an archived batch back into PostgreSQL."""

import tempfile
from pathlib import Path
from typing import Any, Iterator, Optional, Union

import structlog

from archive_purge.codec import RowCodec
from archive_purge.compressor import Compressor
from archive_purge.database import DatabaseManager
from archive_purge.exceptions import DatabaseError, SchemaMismatchError, SerializationError
from archive_purge.keys import ArchiveKey
from archive_purge.metrics import ArchiverMetrics
from archive_purge.s3_client import S3Client
from utils.logging import get_logger


class RestoreEngine:
    """Loads one archive object into its table with a single COPY."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        s3_client: S3Client,
        strict_schema: bool = True,
        relaxed_column_count: bool = True,
        staging_dir: Optional[Path] = None,
        metrics: Optional[ArchiverMetrics] = None,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize restore engine.

        Args:
            db_manager: Connected database manager
            s3_client: S3 client used to fetch archives
            strict_schema: If True, table columns absent from the archive abort the restore
            relaxed_column_count: If True, short records are padded with empty fields
            staging_dir: Directory for temporary files (default: system temp dir)
            metrics: Optional metrics collector
            logger: Optional logger instance
        """
        self.db_manager = db_manager
        self.s3_client = s3_client
        self.strict_schema = strict_schema
        self.relaxed_column_count = relaxed_column_count
        self.staging_dir = staging_dir
        self.metrics = metrics
        self.logger = logger or get_logger("restore_engine")
        self.codec = RowCodec(logger=self.logger)
        self.compressor = Compressor(logger=self.logger)
        self.last_skipped = 0

    def map_columns(self, archive_columns: list[str], table_columns: list[str]) -> dict[str, str]:
        """Map archive header names onto the table's column names, ignoring case.

        Raises:
            SchemaMismatchError: If the archive has columns the table lacks, or
                (in strict mode) the table has columns the archive lacks
        """
        by_lower = {column.lower(): column for column in table_columns}

        unknown = [column for column in archive_columns if column.lower() not in by_lower]
        if unknown:
            raise SchemaMismatchError(
                f"Archive columns not found in table: {', '.join(unknown)}",
                context={"unknown_columns": unknown},
            )

        archived = {column.lower() for column in archive_columns}
        missing = [column for column in table_columns if column.lower() not in archived]
        if missing:
            if self.strict_schema:
                raise SchemaMismatchError(
                    f"Table columns missing from archive: {', '.join(missing)}",
                    context={"missing_columns": missing},
                )
            self.logger.warning(
                "Table columns missing from archive, they will be loaded with defaults",
                missing_columns=missing,
            )

        return {column: by_lower[column.lower()] for column in archive_columns}

    async def restore(self, key: Union[ArchiveKey, str], table_name: str) -> int:
        """Restore one archived batch into table_name.

        Args:
            key: Archive key (or raw object key) to restore
            table_name: Target table

        Returns:
            Number of rows loaded

        Raises:
            S3Error: If the archive can't be fetched
            SerializationError: If the archive has no header or no data records
            SchemaMismatchError: If the archive header doesn't fit the table
            DatabaseError: If the bulk load fails (nothing is loaded)
        """
        object_key = key.path if isinstance(key, ArchiveKey) else key
        self.logger.info("Starting restore", key=object_key, table=table_name)

        column_types = await self.db_manager.get_column_types(table_name)
        if not column_types:
            raise DatabaseError(
                f"Table not found or has no columns: {table_name}",
                context={"table": table_name},
            )
        not_null = await self.db_manager.get_not_null_columns(table_name)

        compressed = self.s3_client.get_object_bytes(object_key)

        if self.staging_dir is not None:
            self.staging_dir.mkdir(parents=True, exist_ok=True)

        with tempfile.TemporaryDirectory(dir=self.staging_dir, prefix="restore_") as tmp_dir:
            raw_path = Path(tmp_dir) / "archive.csv"
            canonical_path = Path(tmp_dir) / "canonical.csv"

            raw_size = self.compressor.decompress_to_file(compressed, raw_path)
            self.logger.debug(
                "Archive downloaded",
                key=object_key,
                compressed_size=len(compressed),
                uncompressed_size=raw_size,
            )

            with open(raw_path, encoding="utf-8", newline="") as source:
                reader = self.codec.iter_records(source, relaxed=self.relaxed_column_count)
                mapping = self.map_columns(reader.columns, list(column_types))
                target_columns = [mapping[column] for column in reader.columns]

                with open(canonical_path, "w", encoding="utf-8", newline="") as target:
                    written = self.codec.write_canonical(
                        target_columns,
                        self._rename(reader, mapping),
                        target,
                        column_types=column_types,
                        not_null=not_null,
                    )

            self.last_skipped = reader.skipped
            if reader.skipped:
                self.logger.warning(
                    "Malformed records skipped",
                    key=object_key,
                    skipped=reader.skipped,
                )

            if written == 0:
                raise SerializationError(
                    "Archive contains no data records",
                    context={"key": object_key, "skipped": reader.skipped},
                )

            self.logger.info("Loading rows", table=table_name, rows=written)
            async with self.db_manager.transaction() as conn:
                try:
                    loaded = await self.db_manager.copy_csv_to_table(
                        conn, table_name, target_columns, canonical_path
                    )
                except Exception as e:
                    raise DatabaseError(
                        f"Bulk load failed: {e}",
                        context={"table": table_name, "key": object_key},
                    ) from e

        if self.metrics:
            self.metrics.record_restore(table_name, loaded)

        self.logger.info(
            "Restore completed",
            key=object_key,
            table=table_name,
            rows_loaded=loaded,
            records_skipped=self.last_skipped,
        )
        return loaded

    def _rename(
        self, records: Any, mapping: dict[str, str]
    ) -> Iterator[dict[str, Any]]:
        for record in records:
            yield {mapping[column]: value for column, value in record.items()}
