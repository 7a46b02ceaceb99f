"""Helpers shared by the backup and restore commands."""

import re

_IDENTIFIER = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


def safe_identifier(name: str) -> str:
    """Quote a single table, schema or column name for use in SQL text.

    Names are interpolated into queries (asyncpg only binds values), so
    anything other than letters, digits and underscores is rejected,
    including dots: a schema-qualified reference is built with
    qualified_table. Quoting keeps the name's case, which restore relies on
    for mixed-case columns.

    Raises:
        ValueError: If the name is not a plain identifier
    """
    if not _IDENTIFIER.fullmatch(name):
        raise ValueError(
            f"Invalid SQL identifier: {name!r}. "
            "Only letters, digits, and underscores are allowed."
        )
    return f'"{name}"'


def qualified_table(schema: str, table: str) -> str:
    """Quoted ``"schema"."table"`` reference."""
    return f"{safe_identifier(schema)}.{safe_identifier(table)}"
