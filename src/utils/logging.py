"""Structured logging configuration using structlog.

Both commands log to the console and append a copy to a per-table file,
``{log_dir}/{table}_backup_log.txt`` or ``{log_dir}/{table}_restore_log.txt``.
Run-wide fields (command, table) are bound as context variables so every
component's lines carry them without being passed around.
"""

import logging
import sys
from pathlib import Path
from typing import Any, Optional

import structlog

# Chatty at DEBUG; never useful for an archive run
_LIBRARY_LOGGERS = ("boto3", "botocore", "urllib3", "asyncio")


def configure_logging(
    log_level: str = "INFO",
    log_format: str = "console",
    log_file: Optional[Path] = None,
    **run_context: Any,
) -> structlog.BoundLogger:
    """Configure structlog over stdlib logging.

    Args:
        log_level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: 'console' or 'json'
        log_file: File that receives a copy of every line (appended, never truncated)
        **run_context: Fields added to every line of this run, e.g. command="backup"

    Returns:
        Configured logger instance
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, mode="a", encoding="utf-8"))

    logging.basicConfig(format="%(message)s", level=level, handlers=handlers, force=True)
    for name in _LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        # Colour codes would end up in the log file
        processors.append(structlog.dev.ConsoleRenderer(colors=log_file is None))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.clear_contextvars()
    if run_context:
        structlog.contextvars.bind_contextvars(**run_context)

    return structlog.get_logger("archive_purge")


def get_logger(name: Optional[str] = None) -> structlog.BoundLogger:
    if name:
        return structlog.get_logger(name)
    return structlog.get_logger()


def table_log_file(log_dir: Optional[str], table: str, kind: str) -> Optional[Path]:
    """Per-table log file path, e.g. ``backup_logs/events_backup_log.txt``.

    Returns None when log_dir is not set (console only).
    """
    if not log_dir:
        return None
    return Path(log_dir) / f"{table}_{kind}_log.txt"
