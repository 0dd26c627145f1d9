"""Main entry point for the coldvault CLI."""

import asyncio
import sys
from pathlib import Path
from typing import Optional

import click
import structlog

from archival.archive_orchestrator import ArchiveOrchestrator
from archival.columnar_export import ColumnarExportEngine
from archival.config import ColdVaultConfig, load_config
from archival.database import DatabaseRegistry
from archival.exceptions import ConfigurationError
from archival.export_service import ParquetExportService
from archival.metadata_repository import MetadataRepository
from archival.models import LifecycleResult, RunStatus
from archival.object_store import S3ObjectStore
from archival.retention import RetentionService
from archival.retention_scheduler import RetentionScheduler
from archival.runner import ArchivalRunner
from archival.source_deleter import SourceDataDeleter
from archival.source_repository import SourceTableRepository
from lifecycle.enforcer import LifecycleEnforcer
from lifecycle.executor import LifecycleExecutor
from utils.logging import configure_logging

LOG_LEVELS = click.Choice(["DEBUG", "INFO", "WARN", "ERROR", "CRITICAL"])
LOG_FORMATS = click.Choice(["console", "json"], case_sensitive=False)


async def run_archive(
    config: ColdVaultConfig,
    table_ids: Optional[list[int]],
    logger: structlog.BoundLogger,
) -> RunStatus:
    """Wire the export pipeline and run one archival pass."""
    databases = DatabaseRegistry(config, logger=logger)
    try:
        metadata = MetadataRepository(
            await databases.get(config.metadata_database.name), logger=logger
        )
        await metadata.ensure_schema()

        source_repository = SourceTableRepository(databases, logger=logger)
        object_store = S3ObjectStore(config.storage_accounts, logger=logger)
        exporter = ParquetExportService(
            ColumnarExportEngine(source_repository, config.export, logger=logger),
            object_store,
            metadata,
            config.export,
            logger=logger,
        )
        deleter = SourceDataDeleter(
            source_repository, metadata, batch_size=config.deletion.batch_size, logger=logger
        )
        orchestrator = ArchiveOrchestrator(metadata, exporter, deleter, logger=logger)
        scheduler = RetentionScheduler(
            RetentionService(source_repository, config.retention, logger=logger),
            orchestrator,
            logger=logger,
        )
        runner = ArchivalRunner(metadata, scheduler, logger=logger)
        return await runner.run(table_ids)
    finally:
        await databases.close()


async def run_lifecycle(
    config: ColdVaultConfig,
    scope: str,
    account: Optional[str],
    container: Optional[str],
    prefix: Optional[str],
    table_ids: Optional[list[int]],
    dry_run: bool,
    parallelism: Optional[int],
    logger: structlog.BoundLogger,
) -> dict[str, LifecycleResult]:
    """Wire the lifecycle engine and enforce the requested scopes.

    Returns:
        Result per scope; table scopes are keyed by their id as text
    """
    databases = DatabaseRegistry(config, logger=logger)
    try:
        metadata = MetadataRepository(
            await databases.get(config.metadata_database.name), logger=logger
        )
        await metadata.ensure_schema()

        object_store = S3ObjectStore(config.storage_accounts, logger=logger)
        enforcer = LifecycleEnforcer(metadata, object_store, config.lifecycle, logger=logger)
        executor = LifecycleExecutor(enforcer, metadata, config.lifecycle, logger=logger)

        if scope == "tables":
            by_table = await executor.execute_per_table_configuration(
                table_ids, dry_run=dry_run, max_parallelism=parallelism
            )
            return {str(table_id): result for table_id, result in by_table.items()}
        if account:
            result = await executor.execute_for_account(account, container, prefix, dry_run)
            return {f"{account}/{container}" if container else account: result}
        return await executor.execute_for_all_accounts(
            container, prefix, dry_run=dry_run, max_parallelism=parallelism
        )
    finally:
        await databases.close()


def _load(config_path: Path, logger: structlog.BoundLogger) -> ColdVaultConfig:
    try:
        return load_config(config_path)
    except ValueError as e:
        logger.error("Configuration error", error=str(e), config_path=str(config_path))
        sys.exit(1)


@click.group()
def main() -> None:
    """Archive cold PostgreSQL table snapshots to Parquet and manage their lifecycle."""


@main.command()
@click.option(
    "--config",
    "-c",
    required=True,
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file (YAML)",
)
@click.option(
    "--table-id",
    "table_ids",
    multiple=True,
    type=int,
    help="Archive only this table configuration id (repeatable)",
)
@click.option("--log-level", default="INFO", type=LOG_LEVELS, help="Log level")
@click.option(
    "--log-format",
    default="console",
    type=LOG_FORMATS,
    help="Log format: 'console' for human-readable output, 'json' for structured logs",
)
def archive(config: Path, table_ids: tuple[int, ...], log_level: str, log_format: str) -> None:
    """Export every retention candidate date of the active tables."""
    logger = configure_logging(log_level=log_level, log_format=log_format, command="archive")
    coldvault_config = _load(config, logger)

    try:
        status = asyncio.run(run_archive(coldvault_config, list(table_ids) or None, logger))
    except ConfigurationError as e:
        logger.error("Configuration error", error=str(e), correlation_id=e.correlation_id)
        sys.exit(1)
    except Exception as e:
        logger.exception("Archival failed", error=str(e))
        sys.exit(1)

    logger.info("Archival finished", status=status.value)
    if status is RunStatus.FAILED:
        sys.exit(1)


@main.command()
@click.option(
    "--config",
    "-c",
    required=True,
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file (YAML)",
)
@click.option(
    "--scope",
    default="accounts",
    type=click.Choice(["accounts", "tables"], case_sensitive=False),
    help="Fan out over storage accounts or over table configurations",
)
@click.option("--account", help="Enforce only this storage account")
@click.option("--container", help="Restrict enforcement to this container")
@click.option("--prefix", help="Restrict enforcement to this blob path prefix")
@click.option(
    "--table-id",
    "table_ids",
    multiple=True,
    type=int,
    help="Enforce only this table configuration id (repeatable, --scope tables)",
)
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="Show what would be tiered or deleted without making changes",
)
@click.option("--parallelism", type=click.IntRange(min=1), help="Concurrent scopes")
@click.option("--log-level", default="INFO", type=LOG_LEVELS, help="Log level")
@click.option("--log-format", default="console", type=LOG_FORMATS, help="Log format")
def lifecycle(
    config: Path,
    scope: str,
    account: Optional[str],
    container: Optional[str],
    prefix: Optional[str],
    table_ids: tuple[int, ...],
    dry_run: bool,
    parallelism: Optional[int],
    log_level: str,
    log_format: str,
) -> None:
    """Tier and expire archived files according to their lifecycle policy."""
    logger = configure_logging(log_level=log_level, log_format=log_format, command="lifecycle")
    coldvault_config = _load(config, logger)

    if dry_run:
        logger.info("DRY RUN MODE - No changes will be made")

    try:
        results = asyncio.run(
            run_lifecycle(
                coldvault_config,
                scope.lower(),
                account,
                container,
                prefix,
                list(table_ids) or None,
                dry_run,
                parallelism,
                logger,
            )
        )
    except ConfigurationError as e:
        logger.error("Configuration error", error=str(e), correlation_id=e.correlation_id)
        sys.exit(1)
    except Exception as e:
        logger.exception("Lifecycle enforcement failed", error=str(e))
        sys.exit(1)

    for key, result in sorted(results.items()):
        logger.info("Lifecycle scope result", scope=key, **result.as_dict())
    total = LifecycleResult(
        tiered=sum(result.tiered for result in results.values()),
        deleted=sum(result.deleted for result in results.values()),
        failed=sum(result.failed for result in results.values()),
    )
    logger.info("Lifecycle enforcement finished", scopes=len(results), **total.as_dict())


if __name__ == "__main__":
    main()
