"""Streaming export of one table snapshot into size-bounded Parquet parts."""

import asyncio
import base64
import json
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, BinaryIO, Optional

import pyarrow as pa
import pyarrow.parquet as pq
import structlog

from archival.config import ExportSettings
from archival.models import BlobInfo, ExportPartResult
from archival.source_repository import SourceColumn, SourceTableRef, SourceTableRepository
from archival.spillable_buffer import SpillableBuffer
from utils.logging import get_logger

UploadPart = Callable[[int, BinaryIO], Awaitable[BlobInfo]]

FIXED_VALUE_SIZE = 8
STRING_OVERHEAD = 8
MAX_DECIMAL_PRECISION = 38


class ColumnType(Enum):
    """Columnar types a source column can be archived as."""

    INT32 = "int32"
    INT64 = "int64"
    DECIMAL = "decimal"
    FLOAT64 = "float64"
    FLOAT32 = "float32"
    BOOL = "bool"
    TIMESTAMP = "timestamp"
    STRING = "string"


_UDT_COLUMN_TYPES = {
    "int2": ColumnType.INT32,
    "int4": ColumnType.INT32,
    "int8": ColumnType.INT64,
    "float4": ColumnType.FLOAT32,
    "float8": ColumnType.FLOAT64,
    "bool": ColumnType.BOOL,
    "timestamp": ColumnType.TIMESTAMP,
    "timestamptz": ColumnType.TIMESTAMP,
    "date": ColumnType.TIMESTAMP,
}


@dataclass(frozen=True)
class ColumnSpec:
    """How one source column is written to Parquet."""

    name: str
    column_type: ColumnType
    precision: Optional[int] = None
    scale: Optional[int] = None
    timezone: Optional[str] = None
    source_is_date: bool = False

    def arrow_type(self) -> pa.DataType:
        if self.column_type is ColumnType.INT32:
            return pa.int32()
        if self.column_type is ColumnType.INT64:
            return pa.int64()
        if self.column_type is ColumnType.DECIMAL:
            return pa.decimal128(self.precision or MAX_DECIMAL_PRECISION, self.scale or 0)
        if self.column_type is ColumnType.FLOAT64:
            return pa.float64()
        if self.column_type is ColumnType.FLOAT32:
            return pa.float32()
        if self.column_type is ColumnType.BOOL:
            return pa.bool_()
        if self.column_type is ColumnType.TIMESTAMP:
            return pa.timestamp("us", tz=self.timezone)
        return pa.string()

    def convert(self, value: Any) -> Any:
        """Convert a driver value into what the arrow type accepts."""
        if value is None:
            return None
        if self.column_type is ColumnType.TIMESTAMP:
            if self.source_is_date and not isinstance(value, datetime):
                return datetime(value.year, value.month, value.day)
            return value
        if self.column_type is ColumnType.STRING:
            return _to_text(value)
        return value

    def estimate_size(self, value: Any) -> int:
        """Cheap memory-pressure estimate for a converted value."""
        if value is None or self.column_type is not ColumnType.STRING:
            return FIXED_VALUE_SIZE
        return len(value) * 2 + STRING_OVERHEAD


def map_column(column: SourceColumn) -> ColumnSpec:
    """Map a declared PostgreSQL column type to its archived column type.

    Anything outside the fixed set (uuid, json, arrays, bytea, intervals,
    unconstrained numeric) is archived as text.
    """
    udt = (column.udt_name or "").lower()
    if udt == "numeric":
        precision = column.numeric_precision
        if precision is not None and 0 < precision <= MAX_DECIMAL_PRECISION:
            return ColumnSpec(
                column.name,
                ColumnType.DECIMAL,
                precision=precision,
                scale=column.numeric_scale or 0,
            )
        return ColumnSpec(column.name, ColumnType.STRING)

    column_type = _UDT_COLUMN_TYPES.get(udt, ColumnType.STRING)
    return ColumnSpec(
        column.name,
        column_type,
        timezone="UTC" if udt == "timestamptz" else None,
        source_is_date=udt == "date",
    )


def _to_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, default=str)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


class _PartWriter:
    """Accumulates rows for one part and writes them as row groups."""

    def __init__(
        self,
        part_index: int,
        columns: list[ColumnSpec],
        schema: pa.Schema,
        settings: ExportSettings,
    ) -> None:
        self.part_index = part_index
        self.columns = columns
        self.schema = schema
        self.row_group_target_bytes = settings.row_group_target_bytes
        self.row_group_max_rows = max(1, settings.row_group_target_bytes // 1024)
        self.buffer = SpillableBuffer(
            settings.spill_threshold_bytes, spill_directory=settings.spill_directory
        )
        self.writer = pq.ParquetWriter(self.buffer, schema, compression=settings.compression)
        self.row_count = 0
        self.row_group_sizes: list[int] = []
        self.write_duration = 0.0
        self._pending: list[list[Any]] = [[] for _ in columns]
        self._pending_rows = 0
        self._pending_bytes = 0

    def append(self, row: tuple[Any, ...]) -> None:
        for position, column in enumerate(self.columns):
            value = column.convert(row[position])
            self._pending[position].append(value)
            self._pending_bytes += column.estimate_size(value)
        self._pending_rows += 1
        self.row_count += 1

        if (
            self._pending_bytes >= self.row_group_target_bytes
            or self._pending_rows >= self.row_group_max_rows
        ):
            self.flush_row_group()

    def flush_row_group(self) -> None:
        if self._pending_rows == 0:
            return
        started = time.perf_counter()
        arrays = [
            pa.array(values, type=column.arrow_type())
            for column, values in zip(self.columns, self._pending)
        ]
        batch = pa.Table.from_arrays(arrays, schema=self.schema)
        self.writer.write_table(batch, row_group_size=self._pending_rows)
        self.write_duration += time.perf_counter() - started

        self.row_group_sizes.append(self._pending_rows)
        self._pending = [[] for _ in self.columns]
        self._pending_rows = 0
        self._pending_bytes = 0

    def finish(self) -> BinaryIO:
        """Flush, close the Parquet footer and hand over the part stream."""
        self.flush_row_group()
        started = time.perf_counter()
        self.writer.close()
        self.write_duration += time.perf_counter() - started
        return self.buffer.get_read_stream()

    @property
    def size_bytes(self) -> int:
        return self.buffer.size

    def dispose(self) -> None:
        try:
            self.writer.close()
        except (OSError, ValueError, pa.ArrowException):
            pass
        self.buffer.dispose()


@dataclass
class _DispatchedPart:
    part_index: int
    row_count: int
    size_bytes: int
    write_duration: float
    stream: BinaryIO
    task: "asyncio.Task[ExportPartResult]"


class ColumnarExportEngine:
    """Streams a source snapshot into Parquet parts and uploads them concurrently.

    Production is sequential against a single forward-only cursor. Each
    finished part is uploaded by its own task while the next part is being
    written, and at most ``upload_parallelism`` uploads are outstanding at
    any time: producing a new part waits for a free upload slot.

    The engine does not retry. An upload failure stops production at the
    next part boundary and is re-raised; a cursor error or cancellation
    cancels outstanding uploads and releases their buffers.
    """

    def __init__(
        self,
        source_repository: SourceTableRepository,
        settings: Optional[ExportSettings] = None,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize export engine.

        Args:
            source_repository: Source table access (schema + cursor)
            settings: Export tuning; defaults when None
            logger: Optional logger instance
        """
        self.source_repository = source_repository
        self.settings = settings or ExportSettings()
        self.logger = logger or get_logger("columnar_export")

    async def export_table_to_parts(
        self,
        table: SourceTableRef,
        as_of_date: date,
        upload_part: UploadPart,
        max_rows_per_part: Optional[int] = None,
        base_part_index: int = 1,
    ) -> list[ExportPartResult]:
        """Export all rows for an as-of date as one or more uploaded parts.

        Args:
            table: Source table and as-of column
            as_of_date: Snapshot date to export
            upload_part: Callback uploading a finished part stream; the engine
                closes the stream after the callback returns
            max_rows_per_part: Rows per part (settings default when None)
            base_part_index: Index of the first part

        Returns:
            Part results ordered by part index. A snapshot with no rows still
            yields one empty part.
        """
        max_rows = max_rows_per_part or self.settings.max_rows_per_part
        if max_rows <= 0:
            raise ValueError("max_rows_per_part must be positive")

        source_columns = await self.source_repository.get_column_schema(table)
        columns = [map_column(column) for column in source_columns]
        schema = pa.schema([pa.field(column.name, column.arrow_type()) for column in columns])
        semaphore = asyncio.Semaphore(self.settings.upload_parallelism)
        dispatched: list[_DispatchedPart] = []
        part: Optional[_PartWriter] = None
        part_index = base_part_index
        completed = False

        log = self.logger.bind(table=table.full_name, as_of_date=as_of_date.isoformat())
        log.debug("Starting columnar export", columns=len(columns), max_rows_per_part=max_rows)

        try:
            rows = self.source_repository.stream_rows(
                table, as_of_date, [column.name for column in columns]
            )
            async for row in rows:
                if part is None:
                    self._raise_if_upload_failed(dispatched)
                    part = _PartWriter(part_index, columns, schema, self.settings)
                part.append(row)
                if part.row_count >= max_rows:
                    current, part = part, None
                    await self._dispatch(current, semaphore, upload_part, dispatched)
                    part_index += 1

            if part is None and not dispatched:
                part = _PartWriter(part_index, columns, schema, self.settings)
            if part is not None:
                current, part = part, None
                await self._dispatch(current, semaphore, upload_part, dispatched)

            results = await asyncio.gather(*(item.task for item in dispatched))
            completed = True
        finally:
            if not completed:
                await self._abort(part, dispatched)

        results.sort(key=lambda result: result.part_index)
        log.info(
            "Columnar export completed",
            parts=len(results),
            rows=sum(result.row_count for result in results),
        )
        return results

    async def _dispatch(
        self,
        part: _PartWriter,
        semaphore: asyncio.Semaphore,
        upload_part: UploadPart,
        dispatched: list[_DispatchedPart],
    ) -> None:
        try:
            stream = part.finish()
        except BaseException:
            part.dispose()
            raise

        try:
            await semaphore.acquire()
        except BaseException:
            stream.close()
            raise

        self.logger.debug(
            "Dispatching part upload",
            part_index=part.part_index,
            rows=part.row_count,
            size_bytes=part.size_bytes,
            row_groups=len(part.row_group_sizes),
        )
        task = asyncio.create_task(
            self._upload(part, stream, semaphore, upload_part),
            name=f"upload-part-{part.part_index}",
        )
        dispatched.append(
            _DispatchedPart(
                part_index=part.part_index,
                row_count=part.row_count,
                size_bytes=part.size_bytes,
                write_duration=part.write_duration,
                stream=stream,
                task=task,
            )
        )

    async def _upload(
        self,
        part: _PartWriter,
        stream: BinaryIO,
        semaphore: asyncio.Semaphore,
        upload_part: UploadPart,
    ) -> ExportPartResult:
        try:
            started = time.perf_counter()
            blob = await upload_part(part.part_index, stream)
            return ExportPartResult(
                part_index=part.part_index,
                row_count=part.row_count,
                column_count=len(part.columns),
                size_bytes=part.size_bytes,
                blob=blob,
                write_duration=part.write_duration,
                upload_duration=time.perf_counter() - started,
            )
        finally:
            stream.close()
            semaphore.release()

    @staticmethod
    def _raise_if_upload_failed(dispatched: list[_DispatchedPart]) -> None:
        for item in dispatched:
            if item.task.done() and not item.task.cancelled():
                error = item.task.exception()
                if error is not None:
                    raise error

    async def _abort(
        self,
        part: Optional[_PartWriter],
        dispatched: list[_DispatchedPart],
    ) -> None:
        if part is not None:
            part.dispose()
        for item in dispatched:
            item.task.cancel()
        await asyncio.gather(*(item.task for item in dispatched), return_exceptions=True)
        # Tasks cancelled before they started never reach their finally block
        for item in dispatched:
            item.stream.close()
        self.logger.debug("Columnar export aborted", outstanding_parts=len(dispatched))
