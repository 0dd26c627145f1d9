"""Top-level archival run over every active table configuration."""

from collections.abc import Iterable
from typing import Optional

import structlog

from archival.exceptions import describe_error
from archival.metadata_repository import MetadataRepository
from archival.models import (
    ArchivalRunDetail,
    RunDetailPhase,
    RunDetailStatus,
    RunStatus,
)
from archival.retention_scheduler import RetentionScheduler
from utils.logging import get_logger


class ArchivalRunner:
    """Wraps one archival pass in a Run and derives its final status."""

    def __init__(
        self,
        metadata: MetadataRepository,
        scheduler: RetentionScheduler,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        self.metadata = metadata
        self.scheduler = scheduler
        self.logger = logger or get_logger("archival_runner")

    async def run(self, table_ids: Optional[Iterable[int]] = None) -> RunStatus:
        """Archive every active table (or only the given ids).

        A table that fails before reaching the per-date loop gets a Failed
        Export detail so the run reflects it. The run ends Partial when any
        detail failed, Success otherwise, and Failed when the table list
        cannot be loaded.

        Returns:
            Final run status
        """
        run_id = await self.metadata.start_run(note="archive")
        log = self.logger.bind(run_id=run_id)

        try:
            tables = await self.metadata.get_all_active()
        except Exception as e:
            log.error("Failed to load table configurations", error=str(e))
            await self.metadata.complete_run(run_id, RunStatus.FAILED, describe_error(e))
            raise

        if table_ids is not None:
            wanted = set(table_ids)
            tables = [table for table in tables if table.id in wanted]

        log.info("Archival run started", tables=len(tables))
        for table in tables:
            try:
                await self.scheduler.archive(table, run_id)
            except Exception as e:
                log.error("Table archival failed", table_config_id=table.id, error=str(e))
                await self.metadata.log_detail(
                    ArchivalRunDetail(
                        run_id=run_id,
                        phase=RunDetailPhase.EXPORT,
                        status=RunDetailStatus.FAILED,
                        table_configuration_id=table.id,
                        error_message=describe_error(e),
                    )
                )

        failed = await self.metadata.count_failed_details(run_id)
        status = RunStatus.PARTIAL if failed > 0 else RunStatus.SUCCESS
        await self.metadata.complete_run(run_id, status, f"Tables={len(tables)} Failed={failed}")
        log.info("Archival run completed", status=status.value, failed_details=failed)
        return status
