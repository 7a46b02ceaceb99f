"""Unit tests for the backup pipeline, run against an in-memory table."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any, Optional
from unittest.mock import MagicMock

import pytest
from prometheus_client import CollectorRegistry

from archive_purge.config import ArchivePurgeConfig
from archive_purge.exceptions import ConfigurationError, S3Error
from archive_purge.keys import ArchiveKey, BatchWindow
from archive_purge.metrics import ArchiverMetrics
from archive_purge.pipeline import BackupPipeline

COLUMNS = ["id", "created_at", "payload"]


class FakeDatabase:
    """Table rows plus the batch sequence table, with transactional rollback."""

    def __init__(self, config: Any, rows: list[dict[str, Any]]) -> None:
        self.config = config
        self.rows = rows
        self.sequences: dict[tuple[str, str], int] = {}
        self.commits = 0
        self.rollbacks = 0

    async def count_rows(self, table_name: str) -> int:
        return len(self.rows)

    async def get_columns(self, table_name: str) -> list[str]:
        return list(COLUMNS)

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[Any, None]:
        rows, sequences = list(self.rows), dict(self.sequences)
        try:
            yield object()
        except BaseException:
            self.rows, self.sequences = rows, sequences
            self.rollbacks += 1
            raise
        self.commits += 1


class FakeSelector:
    def __init__(self, db: FakeDatabase) -> None:
        self.db = db
        self.calls = 0

    def _in_window(self, window: BatchWindow) -> list[dict[str, Any]]:
        return [r for r in self.db.rows if window.contains(r["created_at"].date())]

    async def select_and_remove(self, conn: Any, window: BatchWindow, max_rows: int) -> list[dict[str, Any]]:
        self.calls += 1
        batch = sorted(self._in_window(window), key=lambda r: r["created_at"])[:max_rows]
        selected = {id(r) for r in batch}
        self.db.rows = [r for r in self.db.rows if id(r) not in selected]
        return [dict(r) for r in batch]

    async def count_window(self, window: BatchWindow) -> int:
        return len(self._in_window(window))


class FakeSequenceStore:
    def __init__(self, db: FakeDatabase) -> None:
        self.db = db
        self.ensured = False

    async def ensure_table(self) -> None:
        self.ensured = True

    async def last_batch_number(self, window: BatchWindow) -> int:
        return self.db.sequences.get((window.table, window.year_month), 0)

    async def record_batch(self, conn: Any, window: BatchWindow, batch_number: int) -> None:
        self.db.sequences[(window.table, window.year_month)] = batch_number


class FakeWriter:
    """Object store keyed by archive path; never overwrites."""

    def __init__(self) -> None:
        self.objects: dict[str, list[dict[str, Any]]] = {}
        self.fail_on: Optional[str] = None

    def write(self, rows: list[dict[str, Any]], columns: list[str], key: ArchiveKey) -> int:
        if key.path == self.fail_on:
            raise S3Error(f"File upload failed: {key.path}")
        if key.path in self.objects:
            raise S3Error(f"Archive already exists, refusing to overwrite: {key.path}")
        assert columns == COLUMNS
        self.objects[key.path] = rows
        return 100 * len(rows)


def make_rows(start: datetime, count: int, step: timedelta = timedelta(seconds=100)) -> list[dict[str, Any]]:
    return [
        {"id": i, "created_at": start + step * i, "payload": {"n": i}}
        for i in range(count)
    ]


def make_pipeline(
    config: ArchivePurgeConfig,
    db: FakeDatabase,
    dry_run: bool = False,
    metrics: Optional[ArchiverMetrics] = None,
) -> tuple[BackupPipeline, FakeSelector, FakeWriter]:
    pipeline = BackupPipeline(config, db, MagicMock(), dry_run=dry_run, metrics=metrics)
    selector = FakeSelector(db)
    writer = FakeWriter()
    pipeline._make_selector = lambda table: selector
    pipeline.writer = writer
    pipeline.sequence_store = FakeSequenceStore(db)
    return pipeline, selector, writer


def march_key(n: int) -> str:
    return ArchiveKey("events", 2024, 3, n).path


@pytest.mark.asyncio
async def test_march_archived_in_three_batches(app_config: ArchivePurgeConfig) -> None:
    """Test 25,000 March rows become batches of 10000, 10000 and 5000."""
    db = FakeDatabase(app_config.database, make_rows(datetime(2024, 3, 1), 25000))
    pipeline, selector, writer = make_pipeline(app_config, db)

    stats = await pipeline.run("events", date(2024, 3, 1), date(2024, 3, 31), batch_size=10000)

    assert list(writer.objects) == [march_key(1), march_key(2), march_key(3)]
    assert [len(writer.objects[march_key(n)]) for n in (1, 2, 3)] == [10000, 10000, 5000]
    assert db.rows == []
    assert stats["rows_archived"] == 25000
    assert stats["batches_archived"] == 3
    assert stats["months_processed"] == 1
    assert stats["initial_row_count"] == 25000
    assert stats["final_row_count"] == 0
    assert stats["archive_keys"] == [march_key(1), march_key(2), march_key(3)]
    # Three batches plus the empty selection that ends the window
    assert selector.calls == 4
    assert db.sequences[("events", "2024-03")] == 3


@pytest.mark.asyncio
async def test_exact_multiple_of_batch_size(app_config: ArchivePurgeConfig) -> None:
    """Test 20,000 rows at 10,000 per batch give two files and a final empty selection."""
    db = FakeDatabase(app_config.database, make_rows(datetime(2024, 3, 1), 20000))
    pipeline, selector, writer = make_pipeline(app_config, db)

    stats = await pipeline.run("events", date(2024, 3, 1), date(2024, 3, 31), batch_size=10000)

    assert list(writer.objects) == [march_key(1), march_key(2)]
    assert [len(rows) for rows in writer.objects.values()] == [10000, 10000]
    assert selector.calls == 3
    assert stats["batches_archived"] == 2
    assert db.rows == []
    assert db.sequences[("events", "2024-03")] == 2


@pytest.mark.asyncio
async def test_batches_are_oldest_first(app_config: ArchivePurgeConfig) -> None:
    """Test earlier batches hold older rows."""
    rows = make_rows(datetime(2024, 3, 1), 30)
    rows.reverse()
    db = FakeDatabase(app_config.database, rows)
    pipeline, _, writer = make_pipeline(app_config, db)

    await pipeline.run("events", date(2024, 3, 1), date(2024, 3, 31), batch_size=10)

    batches = [writer.objects[march_key(n)] for n in (1, 2, 3)]
    for older, newer in zip(batches, batches[1:]):
        assert max(r["created_at"] for r in older) <= min(r["created_at"] for r in newer)


@pytest.mark.asyncio
async def test_every_month_in_range_is_processed(app_config: ArchivePurgeConfig) -> None:
    """Test months are visited in order, including empty ones, and nothing outside is touched."""
    outside = make_rows(datetime(2023, 12, 31, 23, 0), 1) + make_rows(datetime(2024, 4, 1), 1)
    january = make_rows(datetime(2024, 1, 10), 3)
    march = make_rows(datetime(2024, 3, 5), 2)
    db = FakeDatabase(app_config.database, outside + january + march)
    pipeline, _, writer = make_pipeline(app_config, db)

    stats = await pipeline.run("events", date(2024, 1, 15), date(2024, 3, 2), batch_size=2)

    assert list(writer.objects) == [
        ArchiveKey("events", 2024, 1, 1).path,
        ArchiveKey("events", 2024, 1, 2).path,
        ArchiveKey("events", 2024, 3, 1).path,
    ]
    assert stats["months_processed"] == 3
    assert stats["rows_archived"] == 5
    assert db.rows == outside


@pytest.mark.asyncio
async def test_upload_failure_rolls_back_batch_and_stops(app_config: ArchivePurgeConfig) -> None:
    """Test a failed upload keeps the batch's rows and ends the run."""
    db = FakeDatabase(app_config.database, make_rows(datetime(2024, 3, 1), 25))
    pipeline, selector, writer = make_pipeline(app_config, db)
    writer.fail_on = march_key(2)

    with pytest.raises(S3Error, match="File upload failed"):
        await pipeline.run("events", date(2024, 3, 1), date(2024, 4, 30), batch_size=10)

    assert list(writer.objects) == [march_key(1)]
    assert len(db.rows) == 15
    assert db.sequences[("events", "2024-03")] == 1
    assert db.rollbacks == 1
    # April was never started
    assert selector.calls == 2


@pytest.mark.asyncio
async def test_rerun_continues_batch_numbering(app_config: ArchivePurgeConfig) -> None:
    """Test a second run after a failure never reuses an archive key."""
    db = FakeDatabase(app_config.database, make_rows(datetime(2024, 3, 1), 25))
    pipeline, _, writer = make_pipeline(app_config, db)
    writer.fail_on = march_key(2)
    with pytest.raises(S3Error):
        await pipeline.run("events", date(2024, 3, 1), date(2024, 3, 31), batch_size=10)

    writer.fail_on = None
    stats = await pipeline.run("events", date(2024, 3, 1), date(2024, 3, 31), batch_size=10)

    assert list(writer.objects) == [march_key(1), march_key(2), march_key(3)]
    assert stats["rows_archived"] == 15
    assert db.rows == []
    archived_ids = sorted(r["id"] for rows in writer.objects.values() for r in rows)
    assert archived_ids == list(range(25))


@pytest.mark.asyncio
async def test_rerun_of_archived_month_is_a_no_op(app_config: ArchivePurgeConfig) -> None:
    """Test running the same month twice archives nothing the second time."""
    db = FakeDatabase(app_config.database, make_rows(datetime(2024, 3, 1), 5))
    pipeline, _, writer = make_pipeline(app_config, db)

    await pipeline.run("events", date(2024, 3, 1), date(2024, 3, 31))
    stats = await pipeline.run("events", date(2024, 3, 1), date(2024, 3, 31))

    assert stats["batches_archived"] == 0
    assert list(writer.objects) == [march_key(1)]


@pytest.mark.asyncio
async def test_dry_run_changes_nothing(app_config: ArchivePurgeConfig) -> None:
    """Test dry runs only count rows."""
    db = FakeDatabase(app_config.database, make_rows(datetime(2024, 3, 1), 25))
    pipeline, selector, writer = make_pipeline(app_config, db, dry_run=True)

    stats = await pipeline.run("events", date(2024, 3, 1), date(2024, 4, 30), batch_size=10)

    assert stats["dry_run"] is True
    assert stats["rows_eligible"] == 25
    assert stats["rows_archived"] == 0
    assert writer.objects == {}
    assert len(db.rows) == 25
    assert selector.calls == 0
    assert pipeline.sequence_store.ensured is False


@pytest.mark.asyncio
async def test_default_batch_size_from_config(app_config: ArchivePurgeConfig) -> None:
    """Test the configured batch size applies when none is given."""
    app_config.backup.batch_size = 4
    db = FakeDatabase(app_config.database, make_rows(datetime(2024, 3, 1), 10))
    pipeline, _, writer = make_pipeline(app_config, db)

    await pipeline.run("events", date(2024, 3, 1), date(2024, 3, 31))

    assert [len(rows) for rows in writer.objects.values()] == [4, 4, 2]


@pytest.mark.asyncio
async def test_rejects_non_positive_batch_size(app_config: ArchivePurgeConfig) -> None:
    """Test a negative batch size is a configuration error."""
    db = FakeDatabase(app_config.database, [])
    pipeline, _, _ = make_pipeline(app_config, db)

    with pytest.raises(ConfigurationError, match="Batch size must be positive"):
        await pipeline.run("events", date(2024, 3, 1), date(2024, 3, 31), batch_size=-1)


@pytest.mark.asyncio
async def test_metrics_recorded_and_written(app_config: ArchivePurgeConfig, tmp_path: Path) -> None:
    """Test batch metrics and the textfile export."""
    metrics_file = tmp_path / "archive_purge.prom"
    app_config.monitoring.metrics_textfile = str(metrics_file)
    registry = CollectorRegistry()
    db = FakeDatabase(app_config.database, make_rows(datetime(2024, 3, 1), 25))
    pipeline, _, _ = make_pipeline(app_config, db, metrics=ArchiverMetrics(registry=registry))

    await pipeline.run("events", date(2024, 3, 1), date(2024, 3, 31), batch_size=10)

    labels = {"table": "events"}
    assert registry.get_sample_value("archive_purge_rows_archived_total", labels) == 25
    assert registry.get_sample_value("archive_purge_batches_archived_total", labels) == 3
    assert registry.get_sample_value("archive_purge_runs_total", {"status": "success"}) == 1
    assert metrics_file.exists()


@pytest.mark.asyncio
async def test_metrics_record_failure(app_config: ArchivePurgeConfig) -> None:
    """Test a failed run is counted with its error type."""
    registry = CollectorRegistry()
    db = FakeDatabase(app_config.database, make_rows(datetime(2024, 3, 1), 5))
    pipeline, _, writer = make_pipeline(app_config, db, metrics=ArchiverMetrics(registry=registry))
    writer.fail_on = march_key(1)

    with pytest.raises(S3Error):
        await pipeline.run("events", date(2024, 3, 1), date(2024, 3, 31))

    assert registry.get_sample_value("archive_purge_runs_total", {"status": "failure"}) == 1
    assert registry.get_sample_value(
        "archive_purge_errors_total", {"type": "S3Error", "table": "events"}
    ) == 1
