"""CLI entry point for restore utility."""

import asyncio
import sys
from pathlib import Path
from typing import Any, Optional

import click
import structlog

from archive_purge.config import ArchivePurgeConfig, load_config
from archive_purge.database import DatabaseManager
from archive_purge.exceptions import ArchiverError, ConfigurationError
from archive_purge.keys import ArchiveKey, table_prefix
from archive_purge.metrics import ArchiverMetrics
from archive_purge.s3_client import S3Client
from restore.restore_engine import RestoreEngine
from utils import safe_identifier
from utils.logging import configure_logging, table_log_file
from utils.output import (
    format_bytes,
    print_error,
    print_header,
    print_info,
    print_summary,
    print_table,
    print_warning,
)


@click.command()
@click.option(
    "--config",
    "-c",
    required=True,
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file (YAML)",
)
@click.option(
    "--table",
    type=str,
    help="Target table (overrides backup.table; taken from --s3-key if omitted)",
)
@click.option(
    "--year-month",
    type=str,
    help="Archived month in YYYY-MM form",
)
@click.option(
    "--batch",
    "batch_number",
    type=int,
    help="Batch number within the month (1-based)",
)
@click.option(
    "--s3-key",
    type=str,
    help="Full key of the archive to restore (e.g., db_backup/events/2024-03/backup_2024-03_batch1.csv.gz)",
)
@click.option(
    "--list",
    "list_only",
    is_flag=True,
    help="List the archived batches of the table (optionally one --year-month) and exit",
)
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Verbose output",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Log level (default: logging.level from the config)",
)
@click.option(
    "--log-format",
    default=None,
    type=click.Choice(["console", "json"], case_sensitive=False),
    help="Log format: 'console' for human-readable output, 'json' for structured logs",
)
def main(
    config: Path,
    table: Optional[str],
    year_month: Optional[str],
    batch_number: Optional[int],
    s3_key: Optional[str],
    list_only: bool,
    verbose: bool,
    log_level: Optional[str],
    log_format: Optional[str],
) -> None:
    """Restore one archived batch from S3 into PostgreSQL.

    Examples:

    \b
    # Restore the first March 2024 batch of the events table
    archive-restore -c config.yaml --table events --year-month 2024-03 --batch 1

    \b
    # Restore from an explicit key
    archive-restore -c config.yaml --s3-key db_backup/events/2024-03/backup_2024-03_batch1.csv.gz

    \b
    # List what has been archived for March 2024
    archive-restore -c config.yaml --table events --year-month 2024-03 --list
    """
    try:
        app_config = load_config(config)
    except ConfigurationError as e:
        print_error(f"Configuration error: {e}")
        sys.exit(1)

    parsed_key = ArchiveKey.parse(s3_key) if s3_key else None
    table_name = table or (parsed_key.table if parsed_key else None) or app_config.backup.table
    if not table_name:
        print_error("No table given (use --table, --s3-key or set backup.table in the config)")
        sys.exit(1)
    try:
        safe_identifier(table_name)
    except ValueError as e:
        print_error(str(e))
        sys.exit(1)

    effective_log_level = "DEBUG" if verbose else (log_level or app_config.logging.level)
    if list_only and not verbose:
        # Keep the listing readable
        effective_log_level = "WARNING"
    logger = configure_logging(
        log_level=effective_log_level,
        log_format=log_format or app_config.logging.format,
        log_file=table_log_file(app_config.logging.log_dir, table_name, "restore"),
        command="restore",
        table=table_name,
    )
    logger = logger.bind(component="restore_cli")

    try:
        if list_only:
            _list_archives(app_config, table_name, year_month, logger)
            return

        if s3_key:
            key: Any = parsed_key or s3_key
        elif year_month and batch_number is not None:
            try:
                key = ArchiveKey.from_year_month(table_name, year_month, batch_number)
            except ValueError as e:
                print_error(str(e))
                sys.exit(1)
        else:
            print_error("Give either --s3-key or both --year-month and --batch (or use --list)")
            sys.exit(1)

        stats = asyncio.run(_restore(app_config, key, table_name, logger))
    except ArchiverError as e:
        logger.error(
            "Restore failed",
            error=str(e),
            error_type=type(e).__name__,
            correlation_id=e.correlation_id,
        )
        sys.exit(1)
    except KeyboardInterrupt:
        logger.warning("Restore interrupted by user")
        sys.exit(130)
    except Exception as e:
        logger.exception("Unexpected error", error=str(e))
        sys.exit(1)

    print_summary(stats, title="Restore Summary")


def _list_archives(
    app_config: ArchivePurgeConfig,
    table_name: str,
    year_month: Optional[str],
    logger: structlog.BoundLogger,
) -> None:
    """Print the archived batches of a table, oldest first."""
    s3_client = S3Client(app_config.s3, logger=logger)
    objects = s3_client.list_objects(table_prefix(table_name, year_month))

    rows = []
    for obj in objects:
        key = ArchiveKey.parse(obj["key"])
        if key is None or key.table != table_name:
            continue
        rows.append((key, obj))
    rows.sort(key=lambda item: (item[0].year, item[0].month, item[0].batch_number))

    title = f"Archives: {table_name}" + (f" ({year_month})" if year_month else "")
    print_header(title)
    if not rows:
        print_warning("No archived batches found")
        return

    print_info(f"Found {len(rows)} archived batch(es)")
    print_table(
        ["Month", "Batch", "Size", "Key"],
        [
            [key.year_month, key.batch_number, format_bytes(obj["size"]), key.path]
            for key, obj in rows
        ],
    )


async def _restore(
    app_config: ArchivePurgeConfig,
    key: Any,
    table_name: str,
    logger: structlog.BoundLogger,
) -> dict[str, Any]:
    """Perform the restore and return its statistics."""
    db_manager = DatabaseManager(app_config.database, logger=logger)
    s3_client = S3Client(app_config.s3, logger=logger)
    metrics = ArchiverMetrics(logger=logger)

    await db_manager.connect()
    try:
        engine = RestoreEngine(
            db_manager,
            s3_client,
            strict_schema=app_config.restore.strict_schema,
            relaxed_column_count=app_config.restore.relaxed_column_count,
            staging_dir=Path(app_config.backup.staging_dir),
            metrics=metrics,
            logger=logger,
        )
        try:
            rows_loaded = await engine.restore(key, table_name)
        except ArchiverError as e:
            metrics.record_error(type(e).__name__, table_name)
            metrics.record_run_status("failure")
            raise
        metrics.record_run_status("success")
    finally:
        await db_manager.disconnect()
        _write_metrics(app_config, metrics, logger)

    return {
        "key": str(key),
        "table": table_name,
        "rows_loaded": rows_loaded,
        "records_skipped": engine.last_skipped,
    }


def _write_metrics(
    app_config: ArchivePurgeConfig,
    metrics: ArchiverMetrics,
    logger: structlog.BoundLogger,
) -> None:
    path = app_config.monitoring.metrics_textfile
    if not path:
        return
    try:
        metrics.write_textfile(Path(path))
    except OSError as e:
        logger.warning("Failed to write metrics file", path=path, error=str(e))


if __name__ == "__main__":
    main()
