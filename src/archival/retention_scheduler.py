"""Retention-driven archival of a table, one as-of date at a time."""

from datetime import date
from typing import Optional

import structlog

from archival.archive_orchestrator import ArchiveOrchestrator
from archival.exceptions import ConfigurationError
from archival.models import DateType, RunDetailStatus, TableConfiguration
from archival.retention import RetentionService
from utils.logging import get_logger


class RetentionScheduler:
    """Archives every retention candidate date of a table, sequentially.

    Dates are processed oldest first. A failure on one date is logged and the
    next date is attempted; the orchestrator has already recorded it.
    Cancellation stops the whole table.
    """

    def __init__(
        self,
        retention: RetentionService,
        orchestrator: ArchiveOrchestrator,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        self.retention = retention
        self.orchestrator = orchestrator
        self.logger = logger or get_logger("retention_scheduler")

    async def archive(
        self, table_config: TableConfiguration, run_id: int
    ) -> dict[date, RunDetailStatus]:
        """Archive all candidate dates of a table.

        Args:
            table_config: Table to archive
            run_id: Run the archival belongs to

        Returns:
            Export outcome per candidate date (FAILED where the date raised)

        Raises:
            ConfigurationError: If the table has no as-of column
        """
        if not table_config.as_of_date_column:
            raise ConfigurationError(
                f"Table configuration {table_config.id} has no as-of date column configured",
                context={"table_config_id": table_config.id},
            )

        log = self.logger.bind(run_id=run_id, table_config_id=table_config.id)
        log.info(
            "Processing table",
            database=table_config.database_name,
            table=table_config.full_name,
        )

        plan = await self.retention.compute_retention(table_config)
        candidates = sorted(plan.candidates)
        if not candidates:
            log.info("No candidate dates for archival")
            return {}

        outcomes: dict[date, RunDetailStatus] = {}
        for as_of_date in candidates:
            date_type = plan.date_types.get(as_of_date, DateType.EOD)
            try:
                outcomes[as_of_date] = await self.orchestrator.archive_table_for_date(
                    table_config, as_of_date, date_type, run_id
                )
            except Exception as e:
                log.error(
                    "Archiving failed for date, continuing",
                    as_of_date=as_of_date.isoformat(),
                    error=str(e),
                )
                outcomes[as_of_date] = RunDetailStatus.FAILED

        log.info(
            "Table processed",
            candidates=len(candidates),
            failed=sum(1 for status in outcomes.values() if status is RunDetailStatus.FAILED),
        )
        return outcomes
