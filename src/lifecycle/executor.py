"""Fan-out of lifecycle enforcement over accounts, containers or tables."""

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from typing import Optional, TypeVar

import structlog

from archival.config import LifecycleSettings
from archival.exceptions import describe_error
from archival.metadata_repository import MetadataRepository
from archival.models import LifecycleResult, RunStatus, TableConfiguration
from lifecycle.enforcer import LifecycleEnforcer
from utils.logging import get_logger

K = TypeVar("K")

# Raised by a metadata repository that lacks a discovery query
CAPABILITY_UNAVAILABLE = (NotImplementedError, AttributeError)


class LifecycleExecutor:
    """Runs the enforcer once per scope, each scope in its own Run.

    A scope that raises is recorded as a single failure and never stops
    the other scopes. Cancellation propagates.
    """

    def __init__(
        self,
        enforcer: LifecycleEnforcer,
        metadata: MetadataRepository,
        settings: Optional[LifecycleSettings] = None,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize lifecycle executor.

        Args:
            enforcer: Enforcer applied to each scope
            metadata: Metadata repository used for discovery and runs
            settings: Lifecycle tuning; supplies the default fan-out widths
            logger: Optional logger instance
        """
        self.enforcer = enforcer
        self.metadata = metadata
        self.settings = settings or LifecycleSettings()
        self.logger = logger or get_logger("lifecycle_executor")

    async def execute_for_account(
        self,
        account_name: str,
        container_name: Optional[str] = None,
        prefix: Optional[str] = None,
        dry_run: bool = False,
    ) -> LifecycleResult:
        """Enforce one scope inside a new Run.

        The Run ends Partial when any file failed and Success otherwise. An
        exception from the enforcer ends the Run Failed and is returned as a
        synthetic all-failed result.
        """
        if not account_name:
            raise ValueError("account_name is required")

        log = self.logger.bind(
            storage_account=account_name,
            container=container_name or "*",
            prefix=prefix or "*",
            dry_run=dry_run,
        )

        try:
            run_id = await self.metadata.start_run(
                note=f"Executor: lifecycle enforcement for {account_name}/"
                f"{container_name or '*'} prefix={prefix or ''}"
            )
        except Exception as e:
            log.error("Failed to start lifecycle run", error=str(e))
            return LifecycleResult.failure()

        log = log.bind(run_id=run_id)
        log.info("Starting lifecycle executor scope")

        try:
            result = await self.enforcer.enforce(
                account_name,
                container_name,
                prefix,
                dry_run=dry_run,
                run_id=run_id,
            )
        except asyncio.CancelledError:
            log.info("Lifecycle enforcement cancelled")
            raise
        except Exception as e:
            log.error("Lifecycle enforcement failed", error=str(e))
            await self._complete(run_id, RunStatus.FAILED, describe_error(e))
            return LifecycleResult.failure()

        status = RunStatus.PARTIAL if result.failed > 0 else RunStatus.SUCCESS
        await self._complete(run_id, status, result.summary())
        log.info("Lifecycle executor scope finished", status=status.value, **result.as_dict())
        return result

    async def execute_for_all_accounts(
        self,
        container_name: Optional[str] = None,
        prefix: Optional[str] = None,
        dry_run: bool = False,
        max_parallelism: Optional[int] = None,
    ) -> dict[str, LifecycleResult]:
        """Enforce every account (or account/container pair) with active tables.

        Args:
            container_name: Restrict every scope to this container
            prefix: Restrict every scope to this blob path prefix
            dry_run: Decide and record without touching storage
            max_parallelism: Concurrent scopes; ``account_parallelism`` when None

        Returns:
            Result per scope keyed by ``account`` or ``account/container``
        """
        scopes = await self._discover_scopes()
        if container_name:
            scopes = [(account, container_name) for account, _ in scopes]
        scopes = list(dict.fromkeys(scopes))
        self.logger.info("Lifecycle scopes discovered", scopes=len(scopes))

        async def run_scope(scope: tuple[str, Optional[str]]) -> LifecycleResult:
            account, container = scope
            return await self.execute_for_account(account, container, prefix, dry_run)

        keyed = {_scope_key(account, container): (account, container) for account, container in scopes}
        return await self._fan_out(
            keyed,
            run_scope,
            max_parallelism or self.settings.account_parallelism,
        )

    async def execute_per_table_configuration(
        self,
        table_configuration_ids: Optional[Iterable[int]] = None,
        dry_run: bool = False,
        max_parallelism: Optional[int] = None,
    ) -> dict[int, LifecycleResult]:
        """Enforce the storage scope of each table configuration.

        A table's scope is its account and container narrowed by its
        discovery path prefix. Unknown ids are skipped.

        Args:
            table_configuration_ids: Tables to enforce; all active tables when None
            dry_run: Decide and record without touching storage
            max_parallelism: Concurrent scopes; ``table_parallelism`` when None

        Returns:
            Result per table configuration id
        """
        if table_configuration_ids is None:
            configs = await self.metadata.get_all_active()
        else:
            configs = []
            for table_config_id in table_configuration_ids:
                config = await self.metadata.get_table_configuration(table_config_id)
                if config is None:
                    self.logger.warning(
                        "Table configuration not found", table_config_id=table_config_id
                    )
                    continue
                configs.append(config)

        async def run_table(config: TableConfiguration) -> LifecycleResult:
            return await self.execute_for_account(
                config.storage_account_name,
                config.container_name,
                config.discovery_path_prefix,
                dry_run,
            )

        return await self._fan_out(
            {config.id: config for config in configs},
            run_table,
            max_parallelism or self.settings.table_parallelism,
        )

    async def _discover_scopes(self) -> list[tuple[str, Optional[str]]]:
        try:
            pairs = await self.metadata.get_distinct_active_account_container_pairs()
            return [(account, container) for account, container in pairs]
        except CAPABILITY_UNAVAILABLE:
            self.logger.info("Account/container discovery unavailable, using account names")

        try:
            accounts = await self.metadata.get_distinct_active_account_names()
        except CAPABILITY_UNAVAILABLE:
            self.logger.info("Account name discovery unavailable, using active configurations")
            configs = await self.metadata.get_all_active()
            accounts = [config.storage_account_name for config in configs]

        unique = dict.fromkeys(account for account in accounts if account)
        return [(account, None) for account in unique]

    async def _fan_out(
        self,
        scopes: dict[K, object],
        run: Callable[..., Awaitable[LifecycleResult]],
        max_parallelism: int,
    ) -> dict[K, LifecycleResult]:
        semaphore = asyncio.Semaphore(max(1, max_parallelism))

        async def guarded(key: K, scope: object) -> tuple[K, LifecycleResult]:
            async with semaphore:
                try:
                    return key, await run(scope)
                except Exception as e:
                    self.logger.error(
                        "Lifecycle scope failed, storing failure result",
                        scope=str(key),
                        error=str(e),
                    )
                    return key, LifecycleResult.failure()

        outcomes = await asyncio.gather(*(guarded(key, scope) for key, scope in scopes.items()))
        return dict(outcomes)

    async def _complete(self, run_id: int, status: RunStatus, note: str) -> None:
        try:
            await self.metadata.complete_run(run_id, status, note)
        except Exception as e:
            self.logger.warning("Failed to complete run", run_id=run_id, error=str(e))


def _scope_key(account: str, container: Optional[str]) -> str:
    return f"{account}/{container}" if container else account
