"""Backup pipeline: archive and purge a table month by month."""

import time
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Optional

import structlog

from archive_purge.archive_writer import ArchiveWriter
from archive_purge.batch_selector import BatchSelector
from archive_purge.codec import RowCodec
from archive_purge.compressor import Compressor
from archive_purge.config import ArchivePurgeConfig
from archive_purge.database import DatabaseManager
from archive_purge.exceptions import ConfigurationError
from archive_purge.keys import BatchWindow, iter_month_windows
from archive_purge.metrics import ArchiverMetrics
from archive_purge.s3_client import S3Client
from archive_purge.sequence_store import BatchSequenceStore
from utils.logging import get_logger


class BackupPipeline:
    """Archives and deletes one table's rows, one monthly window at a time.

    Every batch runs in its own transaction: the rows are deleted, uploaded as
    one archive object and the batch number is recorded before the commit. A
    failed upload therefore rolls the delete back. Any error stops the run.
    """

    def __init__(
        self,
        config: ArchivePurgeConfig,
        db_manager: DatabaseManager,
        s3_client: S3Client,
        dry_run: bool = False,
        metrics: Optional[ArchiverMetrics] = None,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize backup pipeline.

        Args:
            config: Full configuration
            db_manager: Connected database manager
            s3_client: S3 client
            dry_run: If True, only count rows per window
            metrics: Optional metrics collector
            logger: Optional logger instance
        """
        self.config = config
        self.db_manager = db_manager
        self.s3_client = s3_client
        self.dry_run = dry_run
        self.metrics = metrics
        self.logger = logger or get_logger("pipeline")

        backup = config.backup
        self.codec = RowCodec(logger=self.logger)
        self.writer = ArchiveWriter(
            s3_client,
            codec=self.codec,
            compressor=Compressor(compression_level=backup.compression_level, logger=self.logger),
            staging_dir=Path(backup.staging_dir),
            logger=self.logger,
        )
        self.sequence_store = BatchSequenceStore(db_manager, logger=self.logger)
        self._phase = "init"

    def _make_selector(self, table: str) -> BatchSelector:
        return BatchSelector(
            self.db_manager,
            table,
            timestamp_column=self.config.backup.timestamp_column,
            primary_key=self.config.backup.primary_key,
            logger=self.logger,
        )

    async def run(
        self,
        table: str,
        start_date: date,
        end_date: date,
        batch_size: Optional[int] = None,
    ) -> dict[str, Any]:
        """Archive and purge every month from start_date's month through end_date's.

        Returns:
            Run statistics

        Raises:
            ConfigurationError: If the batch size is not positive
            ArchiverError: Any component failure (the run stops at the first one)
        """
        batch_size = batch_size or self.config.backup.batch_size
        if batch_size <= 0:
            raise ConfigurationError(f"Batch size must be positive, got {batch_size}")

        stats: dict[str, Any] = {
            "table": table,
            "dry_run": self.dry_run,
            "months_processed": 0,
            "batches_archived": 0,
            "rows_archived": 0,
            "rows_eligible": 0,
            "bytes_uploaded": 0,
            "archive_keys": [],
            "start_time": datetime.now(timezone.utc).isoformat(),
        }

        try:
            self._phase = "count"
            stats["initial_row_count"] = await self.db_manager.count_rows(table)
            self.logger.info(
                "Processing table",
                table=table,
                rows=stats["initial_row_count"],
                start_date=start_date.isoformat(),
                end_date=end_date.isoformat(),
                batch_size=batch_size,
                dry_run=self.dry_run,
            )

            # Fetched once; every batch of the run uses the same column order
            self._phase = "schema"
            columns = await self.db_manager.get_columns(table)
            selector = self._make_selector(table)

            if not self.dry_run:
                await self.sequence_store.ensure_table()

            for window in iter_month_windows(table, start_date, end_date):
                await self._process_window(selector, window, columns, batch_size, stats)
                stats["months_processed"] += 1

            self._phase = "count"
            stats["final_row_count"] = await self.db_manager.count_rows(table)

        except Exception as e:
            self.logger.error(
                "Archive run failed",
                table=table,
                phase=self._phase,
                batches_archived=stats["batches_archived"],
                rows_archived=stats["rows_archived"],
                error=str(e),
            )
            if self.metrics:
                self.metrics.record_error(type(e).__name__, table)
                self.metrics.record_run_status("failure")
                self._write_metrics()
            raise
        finally:
            stats["end_time"] = datetime.now(timezone.utc).isoformat()

        if self.metrics:
            self.metrics.record_run_status("success")
            self._write_metrics()

        self.logger.info(
            "Processed table",
            table=table,
            rows=stats["final_row_count"],
            rows_archived=stats["rows_archived"],
            batches_archived=stats["batches_archived"],
        )
        return stats

    async def _process_window(
        self,
        selector: BatchSelector,
        window: BatchWindow,
        columns: list[str],
        batch_size: int,
        stats: dict[str, Any],
    ) -> None:
        """Archive batches of one window until a selection comes back empty."""
        self.logger.info(
            "Processing window",
            table=window.table,
            window=window.year_month,
            start=window.start.isoformat(),
            end=window.end.isoformat(),
        )

        if self.dry_run:
            self._phase = "count"
            count = await selector.count_window(window)
            stats["rows_eligible"] += count
            self.logger.info(
                "Dry run: rows in window",
                table=window.table,
                window=window.year_month,
                rows=count,
            )
            return

        self._phase = "sequence"
        batch_number = await self.sequence_store.last_batch_number(window) + 1
        window_rows = 0

        while True:
            started = time.monotonic()
            async with self.db_manager.transaction() as conn:
                self._phase = "select"
                rows = await selector.select_and_remove(conn, window, batch_size)
                if not rows:
                    break

                key = window.key(batch_number)
                self._phase = "upload"
                size = self.writer.write(rows, columns, key)

                self._phase = "commit"
                await self.sequence_store.record_batch(conn, window, batch_number)

            window_rows += len(rows)
            stats["batches_archived"] += 1
            stats["rows_archived"] += len(rows)
            stats["bytes_uploaded"] += size
            stats["archive_keys"].append(key.path)
            if self.metrics:
                self.metrics.record_batch(
                    window.table, len(rows), size, duration=time.monotonic() - started
                )

            self.logger.info(
                "Processed and deleted rows",
                table=window.table,
                window=window.year_month,
                batch=batch_number,
                rows=len(rows),
                key=key.path,
            )
            batch_number += 1

        self.logger.info(
            "Completed window",
            table=window.table,
            window=window.year_month,
            rows_deleted=window_rows,
        )

    def _write_metrics(self) -> None:
        path = self.config.monitoring.metrics_textfile
        if not self.metrics or not path:
            return
        try:
            self.metrics.write_textfile(Path(path))
        except OSError as e:
            self.logger.warning("Failed to write metrics file", path=path, error=str(e))
