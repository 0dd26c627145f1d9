"""Cold table archival - shared utilities."""

import re

_IDENTIFIER_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_$]*$")


def safe_identifier(name: str) -> str:
    """Validate and quote a PostgreSQL identifier for dynamic SQL.

    Source tables, schemas and as-of columns come from table configuration rows,
    so they are interpolated into queries and must never carry SQL.

    Args:
        name: SQL identifier (table name, column name, schema name)

    Returns:
        Safely quoted identifier (e.g., '"public"."trades"')

    Raises:
        ValueError: If the identifier contains invalid characters
    """
    if "." in name:
        schema, table = name.split(".", 1)
        return f"{safe_identifier(schema)}.{safe_identifier(table)}"

    if not _IDENTIFIER_RE.match(name):
        raise ValueError(
            f"Invalid SQL identifier: {name!r}. "
            "Only letters, digits, underscores and '$' are allowed."
        )

    return f'"{name}"'


def qualified_table(schema_name: str, table_name: str) -> str:
    """Return the quoted ``schema.table`` reference for a source table."""
    return f"{safe_identifier(schema_name or 'public')}.{safe_identifier(table_name)}"


def quote_identifier(name: str) -> str:
    """Quote a column name read from the catalog.

    Catalog names are any legal PostgreSQL identifier (spaces, non-ASCII,
    dots), so nothing is rejected or split; embedded quotes are doubled.
    """
    return '"' + name.replace('"', '""') + '"'
