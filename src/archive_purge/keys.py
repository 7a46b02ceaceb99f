"""Monthly batch windows and deterministic archive keys."""

import re
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import date
from typing import Optional

ARCHIVE_ROOT = "db_backup"

_KEY_PATTERN = re.compile(
    r"^(?:.*/)?db_backup/(?P<table>[^/]+)/(?P<year>\d{4})-(?P<month>\d{2})/"
    r"backup_(?P=year)-(?P=month)_batch(?P<batch>[1-9]\d*)\.csv\.gz$"
)


@dataclass(frozen=True)
class BatchWindow:
    """One calendar month of a table: ``[start, end)``."""

    table: str
    year: int
    month: int

    def __post_init__(self) -> None:
        if not 1 <= self.month <= 12:
            raise ValueError(f"Month must be between 1 and 12, got {self.month}")

    @property
    def start(self) -> date:
        """First day of the month (inclusive)."""
        return date(self.year, self.month, 1)

    @property
    def end(self) -> date:
        """First day of the following month (exclusive)."""
        if self.month == 12:
            return date(self.year + 1, 1, 1)
        return date(self.year, self.month + 1, 1)

    @property
    def year_month(self) -> str:
        return f"{self.year}-{self.month:02d}"

    def contains(self, day: date) -> bool:
        return self.start <= day < self.end

    def key(self, batch_number: int) -> "ArchiveKey":
        """Archive key of the given batch within this window."""
        return ArchiveKey(self.table, self.year, self.month, batch_number)


def iter_month_windows(table: str, start_date: date, end_date: date) -> Iterator[BatchWindow]:
    """Yield the monthly windows covering ``start_date`` through ``end_date``.

    The first window starts on the first day of ``start_date``'s month and the
    last one contains ``end_date``. Nothing is yielded when the start is after
    the end.
    """
    if start_date > end_date:
        return

    year, month = start_date.year, start_date.month
    while (year, month) <= (end_date.year, end_date.month):
        yield BatchWindow(table, year, month)
        month += 1
        if month > 12:
            year, month = year + 1, 1


@dataclass(frozen=True)
class ArchiveKey:
    """Object storage identity of one archived batch."""

    table: str
    year: int
    month: int
    batch_number: int

    def __post_init__(self) -> None:
        if not 1 <= self.month <= 12:
            raise ValueError(f"Month must be between 1 and 12, got {self.month}")
        if self.batch_number < 1:
            raise ValueError(f"Batch number must be >= 1, got {self.batch_number}")

    @property
    def year_month(self) -> str:
        return f"{self.year}-{self.month:02d}"

    @property
    def file_name(self) -> str:
        return f"backup_{self.year_month}_batch{self.batch_number}.csv.gz"

    @property
    def path(self) -> str:
        """Key in the form ``db_backup/{table}/{YYYY}-{MM}/backup_{YYYY}-{MM}_batch{N}.csv.gz``."""
        return f"{ARCHIVE_ROOT}/{self.table}/{self.year_month}/{self.file_name}"

    def __str__(self) -> str:
        return self.path

    @classmethod
    def from_year_month(cls, table: str, year_month: str, batch_number: int) -> "ArchiveKey":
        """Build a key from a ``YYYY-MM`` string.

        Raises:
            ValueError: If year_month is not in YYYY-MM form
        """
        match = re.fullmatch(r"(\d{4})-(\d{2})", year_month)
        if not match:
            raise ValueError(f"Invalid year-month (expected YYYY-MM): {year_month!r}")
        return cls(table, int(match.group(1)), int(match.group(2)), batch_number)

    @classmethod
    def parse(cls, path: str) -> Optional["ArchiveKey"]:
        """Parse an object key back into an ArchiveKey, or None if it isn't one."""
        match = _KEY_PATTERN.match(path)
        if not match:
            return None
        return cls(
            match.group("table"),
            int(match.group("year")),
            int(match.group("month")),
            int(match.group("batch")),
        )


def table_prefix(table: str, year_month: Optional[str] = None) -> str:
    """Key prefix of all archives of a table, optionally narrowed to one month."""
    if year_month:
        return f"{ARCHIVE_ROOT}/{table}/{year_month}/"
    return f"{ARCHIVE_ROOT}/{table}/"
