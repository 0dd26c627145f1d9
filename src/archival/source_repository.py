"""Access to the operational source tables being archived."""

from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import date
from typing import Any, Optional

import asyncpg
import structlog

from archival.database import DatabaseRegistry
from archival.exceptions import ConfigurationError, DatabaseError
from archival.models import TableConfiguration
from utils import qualified_table, quote_identifier, safe_identifier
from utils.logging import get_logger


@dataclass(frozen=True)
class SourceTableRef:
    """A source table filtered by equality on its as-of column."""

    database_name: str
    schema_name: str
    table_name: str
    as_of_column: str

    @classmethod
    def from_config(cls, table_config: TableConfiguration) -> "SourceTableRef":
        """Build a reference from a table configuration.

        Raises:
            ConfigurationError: If the table has no as-of column configured
        """
        if not table_config.as_of_date_column:
            raise ConfigurationError(
                "Table configuration has no as-of date column",
                context={"table_config_id": table_config.id, "table": table_config.full_name},
            )
        return cls(
            database_name=table_config.database_name,
            schema_name=table_config.schema_name or "public",
            table_name=table_config.table_name,
            as_of_column=table_config.as_of_date_column,
        )

    @property
    def full_name(self) -> str:
        return f"{self.schema_name}.{self.table_name}"


@dataclass(frozen=True)
class SourceColumn:
    """Declared type of one source column, as reported by information_schema."""

    name: str
    data_type: str
    udt_name: str
    numeric_precision: Optional[int] = None
    numeric_scale: Optional[int] = None


class SourceTableRepository:
    """Reads, enumerates and deletes source rows by as-of date."""

    def __init__(
        self,
        databases: DatabaseRegistry,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize source table repository.

        Args:
            databases: Registry resolving database names to connection pools
            logger: Optional logger instance
        """
        self.databases = databases
        self.logger = logger or get_logger("source_repository")

    async def get_column_schema(self, table: SourceTableRef) -> list[SourceColumn]:
        """Get declared column types in ordinal order.

        Raises:
            ConfigurationError: If the table does not exist or has no columns
        """
        db = await self.databases.get(table.database_name)
        rows = await db.fetch(
            """
            SELECT column_name, data_type, udt_name, numeric_precision, numeric_scale
            FROM information_schema.columns
            WHERE table_schema = $1 AND table_name = $2
            ORDER BY ordinal_position
            """,
            table.schema_name,
            table.table_name,
        )
        if not rows:
            raise ConfigurationError(
                f"Source table {table.full_name} not found or has no columns",
                context={"database": table.database_name},
            )
        return [
            SourceColumn(
                name=row["column_name"],
                data_type=row["data_type"],
                udt_name=row["udt_name"],
                numeric_precision=row["numeric_precision"],
                numeric_scale=row["numeric_scale"],
            )
            for row in rows
        ]

    async def stream_rows(
        self,
        table: SourceTableRef,
        as_of_date: date,
        column_names: list[str],
        prefetch: int = 1000,
    ) -> AsyncIterator[tuple[Any, ...]]:
        """Stream rows for one as-of date through a forward-only cursor.

        Rows come back in server order and as tuples aligned with column_names.
        """
        db = await self.databases.get(table.database_name)
        columns = ", ".join(quote_identifier(name) for name in column_names)
        query = (
            f"SELECT {columns} FROM {qualified_table(table.schema_name, table.table_name)} "
            f"WHERE {safe_identifier(table.as_of_column)} = $1::date"
        )
        self.logger.debug(
            "Opening source cursor",
            database=table.database_name,
            table=table.full_name,
            as_of_date=as_of_date.isoformat(),
        )
        async for record in db.stream(query, as_of_date, prefetch=prefetch):
            yield tuple(record.values())

    async def get_distinct_as_of_dates(self, table: SourceTableRef) -> list[date]:
        """Get every as-of date present in the source table, ascending."""
        db = await self.databases.get(table.database_name)
        column = safe_identifier(table.as_of_column)
        rows = await db.fetch(
            f"SELECT DISTINCT {column}::date AS as_of FROM "
            f"{qualified_table(table.schema_name, table.table_name)} "
            f"WHERE {column} IS NOT NULL ORDER BY 1"
        )
        return [row["as_of"] for row in rows]

    async def delete_by_as_of_in_batches(
        self,
        table: SourceTableRef,
        as_of_date: date,
        batch_size: int,
    ) -> int:
        """Delete all rows for an as-of date using short repeated transactions.

        Args:
            table: Source table reference
            as_of_date: As-of date whose rows are removed
            batch_size: Maximum rows removed per transaction

        Returns:
            Total number of rows deleted

        Raises:
            DatabaseError: If a batch fails (earlier batches stay committed)
        """
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")

        db = await self.databases.get(table.database_name)
        target = qualified_table(table.schema_name, table.table_name)
        query = (
            f"DELETE FROM {target} WHERE ctid IN ("
            f"SELECT ctid FROM {target} WHERE {safe_identifier(table.as_of_column)} = $1::date "
            f"LIMIT $2)"
        )

        total = 0
        while True:
            try:
                async with db.transaction() as conn:
                    result = await conn.execute(query, as_of_date, batch_size)
            except asyncpg.PostgresError as e:
                raise DatabaseError(
                    f"Batched delete failed: {e}",
                    context={"table": table.full_name, "deleted_so_far": total},
                ) from e

            deleted = _parse_row_count(result)
            total += deleted
            self.logger.debug(
                "Deleted source batch",
                table=table.full_name,
                as_of_date=as_of_date.isoformat(),
                deleted=deleted,
                total=total,
            )
            if deleted < batch_size:
                return total


def _parse_row_count(status: Optional[str]) -> int:
    """Parse the row count from a command status such as ``DELETE 42``."""
    if status:
        try:
            return int(status.split()[-1])
        except (ValueError, IndexError):
            pass
    return 0
