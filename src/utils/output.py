"""Click-styled console output for the backup and restore commands."""

from datetime import datetime
from typing import Any

import click


def print_header(title: str, width: int = 70) -> None:
    """Print a title between two rules."""
    rule = click.style("=" * width, fg="cyan")
    click.echo()
    click.echo(rule)
    click.echo(click.style(title, fg="cyan", bold=True))
    click.echo(rule)
    click.echo()


def print_section(title: str) -> None:
    click.echo(click.style(f"\n{title}:", fg="yellow", bold=True))


def print_key_value(key: str, value: Any) -> None:
    click.echo(f"  {key}: " + click.style(str(value), fg="cyan", bold=True))


def print_error(message: str) -> None:
    """Print an error message (to stdout, so CliRunner output captures it)."""
    click.echo(click.style(f"✗ {message}", fg="red", bold=True))


def print_warning(message: str) -> None:
    click.echo(click.style(f"⚠ {message}", fg="yellow", bold=True))


def print_info(message: str) -> None:
    click.echo(click.style(f"ℹ {message}", fg="blue"))


def print_table(headers: list[str], rows: list[list[Any]]) -> None:
    """Print rows as left-aligned columns padded to the widest cell.

    Nothing is printed for an empty row list.
    """
    if not rows:
        return

    widths = [
        max(len(str(cell)) for cell in column)
        for column in zip(headers, *rows)
    ]

    def line(cells: list[Any]) -> str:
        return " | ".join(str(cell).ljust(width) for cell, width in zip(cells, widths))

    header_line = line(headers)
    click.echo(click.style(header_line, fg="cyan", bold=True))
    click.echo(click.style("-" * len(header_line), dim=True))
    for row in rows:
        click.echo(line(row))


def format_bytes(size: int) -> str:
    """Byte count with thousands separators and a binary-unit approximation."""
    value = float(size)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if value < 1024 or unit == "GiB":
            break
        value /= 1024
    if unit == "B":
        return f"{size:,} B"
    return f"{size:,} ({value:.1f} {unit})"


def _format_duration(start_time: str, end_time: str) -> str:
    start = datetime.fromisoformat(start_time.replace("Z", "+00:00"))
    end = datetime.fromisoformat(end_time.replace("Z", "+00:00"))
    seconds = int((end - start).total_seconds())
    return f"{seconds // 3600:02d}:{seconds % 3600 // 60:02d}:{seconds % 60:02d}"


def _backup_summary(stats: dict[str, Any]) -> None:
    print_section("Table")
    print_key_value("Name", stats.get("table", "unknown"))
    print_key_value("Months Processed", stats.get("months_processed", 0))
    if "initial_row_count" in stats:
        print_key_value("Rows Before", f"{stats['initial_row_count']:,}")
    if "final_row_count" in stats:
        print_key_value("Rows After", f"{stats['final_row_count']:,}")

    print_section("Records")
    if stats.get("dry_run"):
        print_key_value("Eligible (Dry Run)", f"{stats.get('rows_eligible', 0):,}")
        return
    print_key_value("Archived and Deleted", f"{stats.get('rows_archived', 0):,}")

    print_section("Archive Files")
    print_key_value("Batches", stats.get("batches_archived", 0))
    print_key_value("Uploaded", format_bytes(stats.get("bytes_uploaded", 0)))
    for key in stats.get("archive_keys", []):
        click.echo(f"    • {key}")


def _restore_summary(stats: dict[str, Any]) -> None:
    print_section("Archive")
    print_key_value("Key", stats.get("key", "unknown"))
    print_key_value("Table", stats.get("table", "unknown"))

    print_section("Records")
    print_key_value("Restored", f"{stats.get('rows_loaded', 0):,}")
    print_key_value("Skipped", f"{stats.get('records_skipped', 0):,}")


def print_summary(stats: dict[str, Any], title: str = "Summary") -> None:
    """Print the statistics of a backup run or a restore.

    Backup stats are recognised by ``months_processed``, restore stats by
    ``rows_loaded``.
    """
    print_header(title)

    if "months_processed" in stats:
        _backup_summary(stats)
    elif "rows_loaded" in stats:
        _restore_summary(stats)

    if stats.get("start_time") and stats.get("end_time"):
        print_section("Duration")
        print_key_value("Total Time", _format_duration(stats["start_time"], stats["end_time"]))

    click.echo()
