"""Row codec: database rows to and from the archived CSV format.

Archive files are UTF-8 CSV, comma delimited, with every field double quoted
and ``\\n`` line endings. The first line holds the upper-cased column names.
Values are flattened to text:

* NULL becomes an empty field
* timestamps become ``YYYY-MM-DDTHH:MM:SS.mmmZ``
* json/jsonb and array values become compact JSON with ``"`` doubled and the
  whole text wrapped in literal quotes, so the CSV layer escapes it a second time

Archive text cannot tell NULL apart from an empty string; both decode to None.
"""

import csv
import io
import json
import sys
from collections.abc import Iterable, Iterator
from datetime import date, datetime, time, timezone
from typing import Any, Optional, TextIO

import structlog

from archive_purge.exceptions import SerializationError
from utils.logging import get_logger

# Archived values can exceed csv's default 128 KiB field limit.
# Capped at the C long range for platforms where sys.maxsize is wider.
_FIELD_SIZE_LIMIT = min(sys.maxsize, 2**31 - 1)


class RowCodec:
    """Encodes rows into archive records and decodes them back."""

    def __init__(self, logger: Optional[structlog.BoundLogger] = None) -> None:
        """Initialize codec.

        Args:
            logger: Optional logger instance
        """
        self.logger = logger or get_logger("codec")

    def format_value(self, value: Any) -> str:
        """Flatten a single column value to its archive text."""
        if value is None:
            return ""
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, datetime):
            return self._format_datetime(value)
        if isinstance(value, date):
            return value.isoformat()
        if isinstance(value, time):
            return value.isoformat(timespec="milliseconds")
        if isinstance(value, (dict, list, tuple)):
            return self._wrap_nested(value)
        if isinstance(value, (bytes, bytearray, memoryview)):
            # bytea hex input format
            return "\\x" + bytes(value).hex()
        return str(value)

    def _format_datetime(self, value: datetime) -> str:
        # Naive timestamps are written as stored; aware ones are shifted to UTC
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"

    def _json_default(self, value: Any) -> Any:
        if isinstance(value, (datetime, date, time, bytes, bytearray, memoryview)):
            return self.format_value(value)
        return str(value)

    def _wrap_nested(self, value: Any) -> str:
        text = json.dumps(
            value,
            ensure_ascii=False,
            separators=(",", ":"),
            default=self._json_default,
        )
        return '"' + text.replace('"', '""') + '"'

    def parse_value(self, text: str) -> Any:
        """Invert format_value as far as the archive text allows.

        Empty fields become None and quote-wrapped JSON objects or arrays become
        Python structures. Everything else stays text. Text that was itself a
        quote-wrapped JSON object or array, such as '"[1]"', reads back as the
        structure.
        """
        if text == "":
            return None
        if len(text) >= 2 and text[0] == '"' and text[-1] == '"':
            inner = text[1:-1].replace('""', '"')
            try:
                parsed = json.loads(inner)
            except ValueError:
                return text
            if isinstance(parsed, (dict, list)):
                return parsed
        return text

    def encode_row(self, row: dict[str, Any], columns: list[str]) -> list[str]:
        """Flatten a row into archive fields in column order.

        Raises:
            SerializationError: If the row lacks one of the columns
        """
        try:
            return [self.format_value(row[column]) for column in columns]
        except KeyError as e:
            raise SerializationError(
                f"Row is missing column {e.args[0]!r}",
                context={"columns": columns},
            ) from e

    def decode_row(self, fields: list[str], columns: list[str]) -> dict[str, Any]:
        """Rebuild a row from archive fields.

        Raises:
            SerializationError: If the field count differs from the column count
        """
        if len(fields) != len(columns):
            raise SerializationError(
                f"Expected {len(columns)} fields, got {len(fields)}",
                context={"columns": columns},
            )
        return {column: self.parse_value(field) for column, field in zip(columns, fields)}

    def encode_batch(self, rows: Iterable[dict[str, Any]], columns: list[str]) -> bytes:
        """Serialize rows into archive CSV content (header line plus one line per row).

        Raises:
            SerializationError: If any row cannot be encoded
        """
        buffer = io.StringIO()
        writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
        try:
            writer.writerow([column.upper() for column in columns])
            for row in rows:
                writer.writerow(self.encode_row(row, columns))
        except SerializationError:
            raise
        except Exception as e:
            raise SerializationError(f"Failed to encode batch: {e}") from e

        return buffer.getvalue().encode("utf-8")

    def iter_records(self, stream: TextIO, relaxed: bool = True) -> "RecordReader":
        """Read archive records from a text stream opened with ``newline=""``.

        Raises:
            SerializationError: If the stream has no header line
        """
        return RecordReader(self, stream, relaxed=relaxed, logger=self.logger)

    def write_canonical(
        self,
        columns: list[str],
        rows: Iterable[dict[str, Any]],
        stream: TextIO,
        column_types: Optional[dict[str, str]] = None,
        not_null: Optional[set[str]] = None,
    ) -> int:
        """Write rows as a COPY-ready CSV file.

        Non-null fields are quoted and nulls are left as bare empty fields, which
        COPY loads as NULL. Nested values are written as JSON, or as PostgreSQL
        array literals for ARRAY columns. json/jsonb text that isn't valid JSON
        is written as a JSON string.

        The archive holds an empty string and NULL the same way. Columns in
        ``not_null`` cannot have held NULL, so their empty fields load as ''.

        Returns:
            Number of data rows written
        """
        column_types = column_types or {}
        not_null = not_null or set()
        writer = csv.writer(stream, quoting=csv.QUOTE_NOTNULL, lineterminator="\n")
        writer.writerow(columns)

        count = 0
        for row in rows:
            fields = []
            for column in columns:
                value = self._canonical_value(row.get(column), column_types.get(column))
                if value is None and column in not_null:
                    value = ""
                fields.append(value)
            writer.writerow(fields)
            count += 1
        return count

    def _canonical_value(self, value: Any, data_type: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        if isinstance(value, list) and data_type == "ARRAY":
            return self._pg_array_literal(value)
        if isinstance(value, (dict, list)):
            return json.dumps(value, ensure_ascii=False)
        if data_type in ("json", "jsonb") and isinstance(value, str):
            try:
                json.loads(value)
            except ValueError:
                return json.dumps(value, ensure_ascii=False)
        return value

    def _pg_array_literal(self, items: list[Any]) -> str:
        parts = []
        for item in items:
            if item is None:
                parts.append("NULL")
            elif isinstance(item, list):
                parts.append(self._pg_array_literal(item))
            else:
                if isinstance(item, str):
                    text = item
                elif isinstance(item, (dict, bool)):
                    text = json.dumps(item, ensure_ascii=False)
                else:
                    text = str(item)
                parts.append('"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"')
        return "{" + ",".join(parts) + "}"


class RecordReader:
    """Iterates decoded rows of an archive stream, skipping malformed records."""

    def __init__(
        self,
        codec: RowCodec,
        stream: TextIO,
        relaxed: bool = True,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        self.codec = codec
        self.relaxed = relaxed
        self.logger = logger or get_logger("codec")
        self.skipped = 0
        csv.field_size_limit(_FIELD_SIZE_LIMIT)
        self._reader = csv.reader(stream, strict=True)

        try:
            header = next(self._reader)
        except StopIteration:
            raise SerializationError("Archive has no header line") from None
        except csv.Error as e:
            raise SerializationError(f"Archive header is malformed: {e}") from e

        self.columns = [name.strip().lower() for name in header]
        if not any(self.columns):
            raise SerializationError("Archive header is empty")

    def __iter__(self) -> Iterator[dict[str, Any]]:
        width = len(self.columns)
        while True:
            try:
                fields = next(self._reader)
            except StopIteration:
                return
            except csv.Error as e:
                self._skip(str(e))
                continue

            if not fields:
                continue

            if len(fields) != width:
                if self.relaxed and len(fields) < width:
                    fields = fields + [""] * (width - len(fields))
                else:
                    self._skip(f"expected {width} fields, got {len(fields)}")
                    continue

            yield self.codec.decode_row(fields, self.columns)

    def _skip(self, reason: str) -> None:
        self.skipped += 1
        self.logger.warning(
            "Skipping malformed archive record",
            line=self._reader.line_num,
            reason=reason,
        )
