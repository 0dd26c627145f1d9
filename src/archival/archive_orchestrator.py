"""Archival of one table for one as-of date."""

from datetime import date
from typing import Optional

import structlog

from archival.exceptions import ConfigurationError, describe_error
from archival.export_service import ParquetExportService
from archival.metadata_repository import MetadataRepository
from archival.models import (
    ArchivalRunDetail,
    DateType,
    RunDetailPhase,
    RunDetailStatus,
    TableConfiguration,
)
from archival.source_deleter import SourceDataDeleter
from utils.logging import get_logger

ALREADY_ARCHIVED = "Already archived (archival_file exists)."
EXEMPT = "Table/date is exempt from archival."
NO_ROWS = "Export produced no rows."


class ArchiveOrchestrator:
    """Archives a table snapshot and records exactly one Export run detail.

    Outcomes, checked in order:

    * a file row already exists for the table/date: Skipped
    * the table/date is exempt: Skipped
    * the export raises: Failed, then the error is re-raised
    * the export produced no rows: Skipped
    * otherwise Success, after optional source deletion

    Source deletion records its own Delete detail and never changes the
    Export outcome. Cancellation is re-raised without a detail.
    """

    def __init__(
        self,
        metadata: MetadataRepository,
        exporter: ParquetExportService,
        deleter: SourceDataDeleter,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        self.metadata = metadata
        self.exporter = exporter
        self.deleter = deleter
        self.logger = logger or get_logger("archive_orchestrator")

    async def archive_table_for_date(
        self,
        table_config: TableConfiguration,
        as_of_date: date,
        date_type: DateType,
        run_id: int,
    ) -> RunDetailStatus:
        """Archive one table/date.

        Args:
            table_config: Table to archive
            as_of_date: Snapshot date
            date_type: Classification of the snapshot date
            run_id: Run the archival belongs to

        Returns:
            Status of the Export detail that was recorded

        Raises:
            ConfigurationError: If the table has no as-of column
            Exception: Whatever the export raised, after recording it
        """
        if not table_config.as_of_date_column:
            raise ConfigurationError(
                f"Table configuration {table_config.id} has no as-of date column configured",
                context={"table_config_id": table_config.id},
            )

        log = self.logger.bind(
            run_id=run_id,
            table_config_id=table_config.id,
            table=table_config.full_name,
            as_of_date=as_of_date.isoformat(),
        )

        if await self.metadata.exists_for_table_date(table_config.id, as_of_date):
            log.info("Skipping already archived date")
            await self._record(
                run_id,
                table_config,
                as_of_date,
                date_type,
                RunDetailStatus.SKIPPED,
                rows=0,
                message=ALREADY_ARCHIVED,
            )
            return RunDetailStatus.SKIPPED

        if await self.metadata.is_table_exempt(table_config.id, as_of_date):
            log.info("Skipping exempt date")
            await self._record(
                run_id,
                table_config,
                as_of_date,
                date_type,
                RunDetailStatus.SKIPPED,
                rows=0,
                message=EXEMPT,
            )
            return RunDetailStatus.SKIPPED

        try:
            result = await self.exporter.export(table_config, as_of_date, date_type, run_id)
        except Exception as e:
            log.error("Export failed", error=str(e), error_type=type(e).__name__)
            await self._record(
                run_id,
                table_config,
                as_of_date,
                date_type,
                RunDetailStatus.FAILED,
                rows=None,
                message=describe_error(e),
            )
            raise

        rows_exported = result.row_count
        if rows_exported <= 0:
            log.info("Export produced no rows")
            await self._record(
                run_id,
                table_config,
                as_of_date,
                date_type,
                RunDetailStatus.SKIPPED,
                rows=0,
                message=NO_ROWS,
            )
            return RunDetailStatus.SKIPPED

        if table_config.delete_from_source:
            await self.deleter.delete(table_config, as_of_date, rows_exported, run_id, date_type)

        first_blob = result.first_blob
        await self._record(
            run_id,
            table_config,
            as_of_date,
            date_type,
            RunDetailStatus.SUCCESS,
            rows=rows_exported,
            file_path=first_blob.blob_path if first_blob else None,
        )
        log.info("Table date archived", rows=rows_exported, parts=len(result.parts))
        return RunDetailStatus.SUCCESS

    async def _record(
        self,
        run_id: int,
        table_config: TableConfiguration,
        as_of_date: date,
        date_type: DateType,
        status: RunDetailStatus,
        rows: Optional[int],
        message: Optional[str] = None,
        file_path: Optional[str] = None,
    ) -> None:
        await self.metadata.log_detail(
            ArchivalRunDetail(
                run_id=run_id,
                phase=RunDetailPhase.EXPORT,
                status=status,
                table_configuration_id=table_config.id,
                as_of_date=as_of_date,
                date_type=date_type,
                rows_affected=rows,
                file_path=file_path,
                error_message=message,
            )
        )
