"""Tiering and expiry of archived files for one storage scope."""

import asyncio
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Optional

import structlog

from archival.config import LifecycleSettings
from archival.exceptions import PolicyResolutionError, TierUnsupportedError, describe_error
from archival.metadata_repository import MetadataRepository
from archival.models import (
    AccessTier,
    ArchivalFile,
    ArchivalFileStatus,
    ArchivalRunDetail,
    LifecyclePolicy,
    LifecycleResult,
    RunDetailPhase,
    RunDetailStatus,
    RunStatus,
    TableConfiguration,
)
from archival.object_store import S3ObjectStore
from archival.retention import utc_now
from lifecycle.policy import ActionKind, decide_action, file_age_days, resolve_policy
from utils.logging import get_logger

NO_POLICY_RESOLVED = "No lifecycle policy resolved"


@dataclass
class FileOutcome:
    """Result of evaluating one file, sent from a worker to the collector."""

    file: ArchivalFile
    modified: bool = False
    detail: Optional[ArchivalRunDetail] = None
    tiered: bool = False
    deleted: bool = False
    failed: bool = False


@dataclass
class _Batch:
    """Accumulated outcomes of one enforcement pass. Owned by the collector."""

    modified_files: list[ArchivalFile] = field(default_factory=list)
    details: list[ArchivalRunDetail] = field(default_factory=list)
    result: LifecycleResult = field(default_factory=LifecycleResult)

    def add(self, outcome: FileOutcome) -> None:
        if outcome.modified:
            self.modified_files.append(outcome.file)
        if outcome.detail is not None:
            self.details.append(outcome.detail)
        if outcome.tiered:
            self.result.tiered += 1
        if outcome.deleted:
            self.result.deleted += 1
        if outcome.failed:
            self.result.failed += 1


@dataclass(frozen=True)
class _Pass:
    """Inputs shared by every file of one enforcement pass."""

    run_id: int
    now: datetime
    today: date
    dry_run: bool
    policies: Mapping[int, LifecyclePolicy]
    table_configs: Mapping[int, TableConfiguration]


class LifecycleEnforcer:
    """Applies lifecycle policy to the archived files of one storage scope.

    Candidates are files in scope that are not Deleted and were not checked
    within ``min_age_between_tier_checks_hours``. Each file's policy is its
    override, else its table's, else the configured default. Files are
    evaluated by a bounded pool of workers; every outcome is sent to a
    single collector, and the pass is persisted once at the end with one
    bulk file update and one bulk run-detail insert.

    Tiers only move colder. When the Archive tier is not supported by the
    account the file is moved to Cool instead and Cool is recorded.

    A dry run makes the same decisions and records the same details but
    never touches storage and never changes status or tier. It stamps the
    last-checked time only when ``dry_run_advances_last_checked`` is set.
    """

    def __init__(
        self,
        metadata: MetadataRepository,
        object_store: S3ObjectStore,
        settings: Optional[LifecycleSettings] = None,
        now: Callable[[], datetime] = utc_now,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize lifecycle enforcer.

        Args:
            metadata: Metadata repository
            object_store: Object store applying tier changes and deletes
            settings: Lifecycle tuning; defaults when None
            now: Clock returning an aware UTC datetime
            logger: Optional logger instance
        """
        self.metadata = metadata
        self.object_store = object_store
        self.settings = settings or LifecycleSettings()
        self.now = now
        self.logger = logger or get_logger("lifecycle_enforcer")

    @property
    def min_age_between_tier_checks(self) -> timedelta:
        return timedelta(hours=self.settings.min_age_between_tier_checks_hours)

    async def enforce(
        self,
        account_name: str,
        container_name: Optional[str] = None,
        prefix: Optional[str] = None,
        dry_run: bool = False,
        run_id: Optional[int] = None,
    ) -> LifecycleResult:
        """Evaluate and apply lifecycle actions for a scope.

        Args:
            account_name: Storage account to enforce
            container_name: Optional container to narrow the scope
            prefix: Optional blob path prefix to narrow the scope
            dry_run: Decide and record without touching storage
            run_id: Run to record details against; when None the enforcer
                starts and completes its own run

        Returns:
            Tiered, deleted and failed counts
        """
        if not account_name:
            raise ValueError("account_name is required")

        log = self.logger.bind(
            storage_account=account_name,
            container=container_name or "*",
            prefix=prefix or "*",
            dry_run=dry_run,
        )
        owns_run = run_id is None
        if run_id is None:
            run_id = await self.metadata.start_run(
                note=f"Lifecycle enforcement for {account_name}/{container_name or '*'} "
                f"(prefix={prefix or ''})"
            )
        log = log.bind(run_id=run_id)
        log.info("Starting lifecycle enforcement")

        now = self.now()
        candidates = await self.metadata.get_lifecycle_candidates(
            now - self.min_age_between_tier_checks,
            account_name=account_name,
            container_name=container_name,
            path_prefix=prefix,
        )
        if not candidates:
            log.info("No archival files found for enforcement")
            if owns_run:
                await self.metadata.complete_run(run_id, RunStatus.SUCCESS, "No candidates found")
            return LifecycleResult()

        table_configs = await self.metadata.get_table_configurations_by_ids(
            {file.table_configuration_id for file in candidates}
        )
        policy_ids = {
            file.override_file_lifecycle_policy_id
            for file in candidates
            if file.override_file_lifecycle_policy_id is not None
        }
        policy_ids.update(
            config.file_lifecycle_policy_id
            for config in table_configs.values()
            if config.file_lifecycle_policy_id is not None
        )
        if self.settings.default_policy_id is not None:
            policy_ids.add(self.settings.default_policy_id)
        policies = await self.metadata.get_policies_by_ids(policy_ids)

        context = _Pass(
            run_id=run_id,
            now=now,
            today=now.date(),
            dry_run=dry_run,
            policies=policies,
            table_configs=table_configs,
        )
        batch = await self._process_all(candidates, context)

        if batch.modified_files:
            await self.metadata.update_files(batch.modified_files)
        if batch.details:
            await self.metadata.bulk_insert_run_details(batch.details)

        result = batch.result
        if owns_run:
            status = RunStatus.PARTIAL if result.failed > 0 else RunStatus.SUCCESS
            await self.metadata.complete_run(run_id, status, result.summary())

        log.info(
            "Lifecycle enforcement completed",
            candidates=len(candidates),
            **result.as_dict(),
        )
        return result

    async def _process_all(self, candidates: list[ArchivalFile], context: _Pass) -> _Batch:
        outcomes: asyncio.Queue[Optional[FileOutcome]] = asyncio.Queue()
        pending: Iterator[ArchivalFile] = iter(candidates)

        async def worker() -> None:
            # The iterator is shared; next() never interleaves with another worker
            for file in pending:
                await outcomes.put(await self._process_file(file, context))

        async def collect() -> _Batch:
            batch = _Batch()
            while True:
                outcome = await outcomes.get()
                if outcome is None:
                    return batch
                batch.add(outcome)

        collector = asyncio.create_task(collect())
        workers = [
            asyncio.create_task(worker())
            for _ in range(min(self.settings.degree_of_parallelism, len(candidates)))
        ]
        try:
            await asyncio.gather(*workers)
        except BaseException:
            for task in workers:
                task.cancel()
            collector.cancel()
            await asyncio.gather(*workers, collector, return_exceptions=True)
            raise

        await outcomes.put(None)
        return await collector

    async def _process_file(self, file: ArchivalFile, context: _Pass) -> FileOutcome:
        try:
            return await self._evaluate(file, context)
        except Exception as e:
            self.logger.error(
                "Unhandled error while enforcing lifecycle",
                blob_path=file.blob_path,
                error=str(e),
            )
            return self._failed(file, context, describe_error(e))

    async def _evaluate(self, file: ArchivalFile, context: _Pass) -> FileOutcome:
        policy = resolve_policy(
            file,
            context.policies,
            context.table_configs,
            self.settings.default_policy_id,
        )
        if policy is None:
            error = PolicyResolutionError(
                NO_POLICY_RESOLVED,
                context={"archival_file_id": file.id, "table_config_id": file.table_configuration_id},
            )
            self.logger.warning(error.message, blob_path=file.blob_path)
            return self._failed(file, context, error.message)

        age_days = file_age_days(file, context.today)
        action = decide_action(age_days, policy.thresholds_for(file.date_type))

        if action.kind is ActionKind.DELETE:
            return await self._delete(file, context)
        if action.kind is ActionKind.TIER and action.target_tier is not None:
            current = file.current_access_tier
            if current is None or not current.is_at_least_as_cold_as(action.target_tier):
                return await self._set_tier(file, action.target_tier, context)
        return FileOutcome(file=file, modified=self._stamp(file, context))

    async def _delete(self, file: ArchivalFile, context: _Pass) -> FileOutcome:
        if context.dry_run:
            return FileOutcome(
                file=file,
                modified=self._stamp(file, context),
                detail=self._detail(file, context, RunDetailStatus.SUCCESS, "Deleted (dry-run)"),
                deleted=True,
            )

        try:
            await self.object_store.delete_if_exists(
                file.storage_account_name,
                file.container_name,
                file.blob_path,
                include_versions=True,
            )
        except Exception as e:
            self.logger.warning("Delete failed", blob_path=file.blob_path, error=str(e))
            return self._failed(file, context, describe_error(e))

        file.status = ArchivalFileStatus.DELETED
        self._stamp(file, context)
        return FileOutcome(
            file=file,
            modified=True,
            detail=self._detail(file, context, RunDetailStatus.SUCCESS, "Deleted"),
            deleted=True,
        )

    async def _set_tier(
        self, file: ArchivalFile, target: AccessTier, context: _Pass
    ) -> FileOutcome:
        if context.dry_run:
            return FileOutcome(
                file=file,
                modified=self._stamp(file, context),
                detail=self._detail(
                    file, context, RunDetailStatus.SUCCESS, f"SetTier={target.value} (dry-run)"
                ),
                tiered=True,
            )

        achieved = target
        try:
            await self._apply_tier(file, target)
        except TierUnsupportedError as e:
            if target is not AccessTier.ARCHIVE:
                return self._failed(file, context, describe_error(e))
            current = file.current_access_tier
            if current is not None and current.is_at_least_as_cold_as(AccessTier.COOL):
                self.logger.info(
                    "Archive tier unsupported and file already Cool",
                    blob_path=file.blob_path,
                )
                return FileOutcome(file=file, modified=self._stamp(file, context))
            self.logger.info(
                "Archive tier unsupported, falling back to Cool",
                blob_path=file.blob_path,
                storage_account=file.storage_account_name,
            )
            try:
                await self._apply_tier(file, AccessTier.COOL)
            except Exception as fallback_error:
                return self._failed(file, context, describe_error(fallback_error))
            achieved = AccessTier.COOL
        except Exception as e:
            self.logger.warning("Set tier failed", blob_path=file.blob_path, error=str(e))
            return self._failed(file, context, describe_error(e))

        file.current_access_tier = achieved
        self._stamp(file, context)
        message = f"SetTier={achieved.value}"
        if achieved is not target:
            message += f" (fallback from {target.value})"
        return FileOutcome(
            file=file,
            modified=True,
            detail=self._detail(file, context, RunDetailStatus.SUCCESS, message),
            tiered=True,
        )

    async def _apply_tier(self, file: ArchivalFile, tier: AccessTier) -> None:
        await self.object_store.set_access_tier(
            file.storage_account_name, file.container_name, file.blob_path, tier
        )

    def _stamp(self, file: ArchivalFile, context: _Pass) -> bool:
        """Advance last-checked time. Returns whether the file changed."""
        if context.dry_run and not self.settings.dry_run_advances_last_checked:
            return False
        file.last_tier_checked_at = context.now
        return True

    def _failed(self, file: ArchivalFile, context: _Pass, message: str) -> FileOutcome:
        return FileOutcome(
            file=file,
            detail=self._detail(file, context, RunDetailStatus.FAILED, message),
            failed=True,
        )

    @staticmethod
    def _detail(
        file: ArchivalFile, context: _Pass, status: RunDetailStatus, message: str
    ) -> ArchivalRunDetail:
        return ArchivalRunDetail(
            run_id=context.run_id,
            phase=RunDetailPhase.LIFECYCLE,
            status=status,
            table_configuration_id=file.table_configuration_id,
            as_of_date=file.as_of_date,
            date_type=file.date_type,
            archival_file_id=file.id,
            file_path=file.blob_path,
            error_message=message,
            created_at=context.now,
        )
