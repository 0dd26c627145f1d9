"""Best-effort removal of archived rows from the source table."""

from datetime import date
from typing import Optional

import structlog

from archival.exceptions import RowCountMismatchError, describe_error
from archival.metadata_repository import MetadataRepository
from archival.models import (
    ArchivalRunDetail,
    DateType,
    RunDetailPhase,
    RunDetailStatus,
    TableConfiguration,
)
from archival.source_repository import SourceTableRef, SourceTableRepository
from utils.logging import get_logger

DEFAULT_DELETE_BATCH_SIZE = 10_000


class SourceDataDeleter:
    """Deletes source rows for a table/date in batches and records the outcome.

    Failures are recorded as a Delete/Failed detail and never raised, so a
    deletion problem cannot undo an export that already succeeded. A row count
    different from the exported count is recorded on a Delete/Success detail.
    """

    def __init__(
        self,
        source_repository: SourceTableRepository,
        metadata: MetadataRepository,
        batch_size: int = DEFAULT_DELETE_BATCH_SIZE,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        self.source_repository = source_repository
        self.metadata = metadata
        self.batch_size = batch_size
        self.logger = logger or get_logger("source_deleter")

    async def delete(
        self,
        table_config: TableConfiguration,
        as_of_date: date,
        expected_rows: int,
        run_id: int,
        date_type: DateType,
    ) -> int:
        """Delete rows for an as-of date.

        Args:
            table_config: Table whose rows are removed
            as_of_date: As-of date of the exported snapshot
            expected_rows: Rows exported for that date (0 skips the count check)
            run_id: Run the deletion belongs to
            date_type: Classification of the as-of date

        Returns:
            Rows deleted, or 0 when the deletion failed

        Raises:
            ConfigurationError: If the table has no as-of column
        """
        table = SourceTableRef.from_config(table_config)
        log = self.logger.bind(
            run_id=run_id,
            table_config_id=table_config.id,
            as_of_date=as_of_date.isoformat(),
        )

        def detail(
            status: RunDetailStatus, rows: Optional[int], message: Optional[str]
        ) -> ArchivalRunDetail:
            return ArchivalRunDetail(
                run_id=run_id,
                phase=RunDetailPhase.DELETE,
                status=status,
                table_configuration_id=table_config.id,
                as_of_date=as_of_date,
                date_type=date_type,
                rows_affected=rows,
                error_message=message,
            )

        try:
            deleted = await self.source_repository.delete_by_as_of_in_batches(
                table, as_of_date, self.batch_size
            )
        except Exception as e:
            log.warning("Source deletion failed", error=str(e))
            await self.metadata.log_detail(detail(RunDetailStatus.FAILED, None, describe_error(e)))
            return 0

        message = None
        if expected_rows > 0 and deleted != expected_rows:
            mismatch = RowCountMismatchError(expected_rows, deleted)
            message = mismatch.message
            log.warning(
                "Delete-from-source row count mismatch",
                expected=expected_rows,
                deleted=deleted,
            )
        else:
            log.info("Source rows deleted", rows=deleted)

        await self.metadata.log_detail(detail(RunDetailStatus.SUCCESS, deleted, message))
        return deleted
