"""Main entry point for the archive-purge CLI."""

import asyncio
import sys
from datetime import date, datetime
from pathlib import Path
from typing import Any, Optional

import click
import structlog

from archive_purge.config import ArchivePurgeConfig, load_config
from archive_purge.database import DatabaseManager
from archive_purge.exceptions import ArchiverError, ConfigurationError
from archive_purge.metrics import ArchiverMetrics
from archive_purge.pipeline import BackupPipeline
from archive_purge.s3_client import S3Client
from utils import safe_identifier
from utils.logging import configure_logging, table_log_file
from utils.output import print_error, print_info, print_summary


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
    help="Table to archive (overrides backup.table in the config)",
)
@click.option(
    "--start-date",
    required=True,
    type=click.DateTime(formats=["%Y-%m-%d"]),
    help="First day of the range (YYYY-MM-DD); its whole month is processed",
)
@click.option(
    "--end-date",
    required=True,
    type=click.DateTime(formats=["%Y-%m-%d"]),
    help="Last day of the range (YYYY-MM-DD); its whole month is processed",
)
@click.option(
    "--batch-size",
    type=int,
    default=None,
    help="Rows per archive file (overrides backup.batch_size)",
)
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="Count rows per month without deleting or uploading anything",
)
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    default=False,
    help="Enable verbose output",
)
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
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
    start_date: datetime,
    end_date: datetime,
    batch_size: Optional[int],
    dry_run: bool,
    verbose: bool,
    log_level: Optional[str],
    log_format: Optional[str],
) -> None:
    """Archive a PostgreSQL table to S3 month by month, deleting what was archived.

    Examples:

    \b
    # Archive January through March 2024
    archive-purge -c config.yaml --table events --start-date 2024-01-01 --end-date 2024-03-31

    \b
    # See how many rows each month holds
    archive-purge -c config.yaml --table events --start-date 2024-01-01 \\
        --end-date 2024-03-31 --dry-run
    """
    try:
        app_config = load_config(config)
    except ConfigurationError as e:
        print_error(f"Configuration error: {e}")
        sys.exit(1)

    table_name = table or app_config.backup.table
    if not table_name:
        print_error("No table given (use --table or set backup.table in the config)")
        sys.exit(1)
    try:
        safe_identifier(table_name)
    except ValueError as e:
        print_error(str(e))
        sys.exit(1)

    effective_log_level = "DEBUG" if verbose else (log_level or app_config.logging.level)
    log_file = table_log_file(app_config.logging.log_dir, table_name, "backup")
    logger = configure_logging(
        log_level=effective_log_level,
        log_format=log_format or app_config.logging.format,
        log_file=log_file,
        command="backup",
        table=table_name,
    )
    logger = logger.bind(component="main")

    if dry_run:
        print_info("DRY RUN MODE - No changes will be made")

    try:
        stats = asyncio.run(
            _run_backup(
                app_config,
                table_name,
                start_date.date(),
                end_date.date(),
                batch_size,
                dry_run,
                logger,
            )
        )
    except ArchiverError as e:
        logger.error(
            "Backup failed",
            error=str(e),
            error_type=type(e).__name__,
            correlation_id=e.correlation_id,
        )
        sys.exit(1)
    except Exception as e:
        logger.exception("Unexpected error", error=str(e))
        sys.exit(1)

    title = "Dry Run Summary" if dry_run else "Backup Summary"
    print_summary(stats, title=title)


async def _run_backup(
    app_config: ArchivePurgeConfig,
    table_name: str,
    start_date: date,
    end_date: date,
    batch_size: Optional[int],
    dry_run: bool,
    logger: structlog.BoundLogger,
) -> dict[str, Any]:
    db_manager = DatabaseManager(app_config.database, logger=logger)
    s3_client = S3Client(app_config.s3, logger=logger)
    metrics = ArchiverMetrics(logger=logger)

    if not dry_run:
        s3_client.validate_bucket()

    await db_manager.connect()
    try:
        pipeline = BackupPipeline(
            app_config,
            db_manager,
            s3_client,
            dry_run=dry_run,
            metrics=metrics,
            logger=logger,
        )
        return await pipeline.run(table_name, start_date, end_date, batch_size=batch_size)
    finally:
        await db_manager.disconnect()


if __name__ == "__main__":
    main()
