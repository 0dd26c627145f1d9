"""Export of one table snapshot to object storage with per-part file tracking."""

from datetime import date
from typing import BinaryIO, Optional

import structlog

from archival.columnar_export import ColumnarExportEngine
from archival.config import ExportSettings
from archival.exceptions import TransientUploadError
from archival.metadata_repository import MetadataRepository
from archival.models import (
    AccessTier,
    ArchivalFile,
    ArchivalFileStatus,
    BlobInfo,
    DateType,
    ExportResult,
    TableConfiguration,
)
from archival.object_store import S3ObjectStore
from archival.source_repository import SourceTableRef
from archival.tagging import TaggingService
from utils.logging import get_logger
from utils.retry import RetryConfig, retry_async

PARQUET_CONTENT_TYPE = "application/vnd.apache.parquet"


def build_blob_path(table_config: TableConfiguration, as_of_date: date, part_index: int) -> str:
    """Object key of one part.

    ``{prefix}/{schema}/{table}/{yyyy}/{mm}/{dd}/{table}_{yyyymmdd}_part0001.parquet``
    """
    segments = [
        table_config.path_prefix.strip("/"),
        table_config.schema_name or "public",
        table_config.table_name,
        f"{as_of_date:%Y}",
        f"{as_of_date:%m}",
        f"{as_of_date:%d}",
        f"{table_config.table_name}_{as_of_date:%Y%m%d}_part{part_index:04d}.parquet",
    ]
    return "/".join(segment for segment in segments if segment)


class ParquetExportService:
    """Runs the export engine and keeps archival_file rows in step with uploads.

    A file row is written with status Created before its part upload starts,
    so an interrupted export still leaves a record behind. Once every part
    has uploaded, all rows are finalized to Active in one bulk update.
    Transient upload failures are retried with exponential backoff.
    """

    def __init__(
        self,
        engine: ColumnarExportEngine,
        object_store: S3ObjectStore,
        metadata: MetadataRepository,
        settings: Optional[ExportSettings] = None,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        self.engine = engine
        self.object_store = object_store
        self.metadata = metadata
        self.settings = settings or ExportSettings()
        self.logger = logger or get_logger("export_service")
        self.retry_config = RetryConfig(
            max_attempts=self.settings.upload_max_attempts,
            initial_delay=self.settings.upload_retry_base_delay,
            exponential_base=2.0,
            jitter=False,
            retryable_exceptions=(TransientUploadError,),
        )

    async def export(
        self,
        table_config: TableConfiguration,
        as_of_date: date,
        date_type: DateType,
        run_id: int,
    ) -> ExportResult:
        """Export a table snapshot and record every part.

        Args:
            table_config: Table to export
            as_of_date: Snapshot date
            date_type: Classification of the snapshot date
            run_id: Run the export belongs to

        Returns:
            Aggregated export result

        Raises:
            ConfigurationError: If the table has no as-of column
            StorageOperationError: If an upload fails after all retries
            DatabaseError: If reading the source fails
        """
        table = SourceTableRef.from_config(table_config)
        log = self.logger.bind(
            run_id=run_id,
            table_config_id=table_config.id,
            as_of_date=as_of_date.isoformat(),
        )
        tags = TaggingService.build_tags(
            table_config.id, as_of_date, date_type, table_config.policy_tag, is_exempt=False
        )
        files: dict[int, ArchivalFile] = {}

        async def upload_part(part_index: int, stream: BinaryIO) -> BlobInfo:
            path = build_blob_path(table_config, as_of_date, part_index)
            file = ArchivalFile(
                table_configuration_id=table_config.id,
                storage_account_name=table_config.storage_account_name,
                container_name=table_config.container_name,
                blob_path=path,
                as_of_date=as_of_date,
                date_type=date_type,
                part_index=part_index,
                content_type=PARQUET_CONTENT_TYPE,
                status=ArchivalFileStatus.CREATED,
                archival_policy_tag=table_config.policy_tag,
            )
            await self.metadata.upsert_file(file)
            files[part_index] = file

            log.debug("Uploading part", part_index=part_index, blob_path=path)
            return await retry_async(
                self.object_store.upload,
                table_config.storage_account_name,
                table_config.container_name,
                path,
                PARQUET_CONTENT_TYPE,
                stream,
                tags=tags,
                config=self.retry_config,
                logger=log,
                before_attempt=lambda attempt: stream.seek(0),
            )

        parts = await self.engine.export_table_to_parts(
            table,
            as_of_date,
            upload_part,
            max_rows_per_part=self.settings.max_rows_per_part,
        )

        finalized = []
        for part in parts:
            file = files[part.part_index]
            file.status = ArchivalFileStatus.ACTIVE
            file.etag = part.blob.etag
            file.content_type = part.blob.content_type or PARQUET_CONTENT_TYPE
            file.size_bytes = (
                part.blob.size_bytes if part.blob.size_bytes is not None else part.size_bytes
            )
            file.row_count = part.row_count
            file.current_access_tier = AccessTier.HOT
            finalized.append(file)
        await self.metadata.update_files(finalized)

        result = ExportResult(parts=parts)
        log.info(
            "Export finished",
            parts=len(parts),
            rows=result.row_count,
            size_bytes=result.size_bytes,
        )
        return result
