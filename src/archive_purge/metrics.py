"""Prometheus metrics for archive and restore runs."""

import time
from pathlib import Path
from typing import Optional

import structlog
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, write_to_textfile

from utils.logging import get_logger


class ArchiverMetrics:
    """Per-run Prometheus metrics, optionally written to a textfile."""

    def __init__(
        self,
        logger: Optional[structlog.BoundLogger] = None,
        registry: Optional[CollectorRegistry] = None,
    ) -> None:
        """Initialize metrics.

        Args:
            logger: Optional logger instance
            registry: Optional Prometheus registry (default: a fresh one)
        """
        self.logger = logger or get_logger("metrics")
        self.registry = registry or CollectorRegistry()

        self.rows_archived_total = Counter(
            "archive_purge_rows_archived_total",
            "Rows archived and deleted",
            ["table"],
            registry=self.registry,
        )
        self.bytes_uploaded_total = Counter(
            "archive_purge_bytes_uploaded_total",
            "Compressed bytes uploaded to object storage",
            ["table"],
            registry=self.registry,
        )
        self.batches_archived_total = Counter(
            "archive_purge_batches_archived_total",
            "Batches archived and committed",
            ["table"],
            registry=self.registry,
        )
        self.rows_restored_total = Counter(
            "archive_purge_rows_restored_total",
            "Rows bulk-loaded by restore",
            ["table"],
            registry=self.registry,
        )
        self.errors_total = Counter(
            "archive_purge_errors_total",
            "Errors by type",
            ["type", "table"],
            registry=self.registry,
        )
        self.runs_total = Counter(
            "archive_purge_runs_total",
            "Runs by status",
            ["status"],
            registry=self.registry,
        )
        self.batch_duration_seconds = Histogram(
            "archive_purge_batch_duration_seconds",
            "Select, upload and commit time of one batch",
            ["table"],
            buckets=(0.5, 1, 2.5, 5, 10, 30, 60, 120, 300, 600),
            registry=self.registry,
        )
        self.last_success_timestamp = Gauge(
            "archive_purge_last_success_timestamp",
            "Unix timestamp of the last successful run",
            registry=self.registry,
        )

    def record_batch(
        self, table: str, rows: int, bytes_uploaded: int, duration: Optional[float] = None
    ) -> None:
        """Record one committed batch."""
        self.rows_archived_total.labels(table=table).inc(rows)
        self.bytes_uploaded_total.labels(table=table).inc(bytes_uploaded)
        self.batches_archived_total.labels(table=table).inc()
        if duration is not None:
            self.batch_duration_seconds.labels(table=table).observe(duration)

    def record_restore(self, table: str, rows: int) -> None:
        self.rows_restored_total.labels(table=table).inc(rows)

    def record_error(self, error_type: str, table: Optional[str] = None) -> None:
        self.errors_total.labels(type=error_type, table=table or "unknown").inc()

    def record_run_status(self, status: str) -> None:
        """Record run status (success or failure)."""
        self.runs_total.labels(status=status).inc()
        if status == "success":
            self.last_success_timestamp.set(time.time())

    def write_textfile(self, path: Path) -> None:
        """Write all metrics in Prometheus text format (for the node exporter)."""
        path.parent.mkdir(parents=True, exist_ok=True)
        write_to_textfile(str(path), self.registry)
        self.logger.debug("Metrics written", path=str(path))
