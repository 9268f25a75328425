"""Migrator - Shared utilities."""

import re
from collections.abc import Iterable

_IDENTIFIER_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


def safe_identifier(name: str) -> str:
    """Validate and quote a PostgreSQL identifier.

    Table and column names reach the engine from configuration and from
    caller-supplied comparison criteria, so they are never interpolated
    unquoted. Schema-qualified names (``schema.table``) are quoted part by part.

    Args:
        name: SQL identifier (table name, column name, schema name)

    Returns:
        Safely quoted identifier (e.g., '"public"."offices"')

    Raises:
        ValueError: If the identifier contains invalid characters
    """
    if "." in name:
        schema, rest = name.split(".", 1)
        return f"{safe_identifier(schema)}.{safe_identifier(rest)}"

    if not _IDENTIFIER_RE.match(name):
        raise ValueError(
            f"Invalid SQL identifier: {name!r}. "
            "Only letters, digits, and underscores are allowed."
        )

    return f'"{name}"'


def chunked(values: list, size: int) -> Iterable[list]:
    """Yield consecutive slices of ``values`` holding at most ``size`` items."""
    if size < 1:
        raise ValueError(f"Chunk size must be at least 1, got {size}")
    for start in range(0, len(values), size):
        yield values[start : start + size]
