"""Pytest configuration and shared fixtures."""

import dataclasses
import itertools
from collections.abc import AsyncIterator, Iterable
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, BinaryIO, Optional

import pytest

from archival.config import ExportSettings, LifecycleSettings
from archival.exceptions import DatabaseError, StorageOperationError, TierUnsupportedError
from archival.models import (
    AccessTier,
    ArchivalFile,
    ArchivalFileStatus,
    ArchivalRunDetail,
    BlobInfo,
    LifecyclePolicy,
    RunDetailStatus,
    RunStatus,
    TableConfiguration,
)
from archival.source_repository import SourceColumn, SourceTableRef

FIXED_NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


class FakeMetadataRepository:
    """In-memory stand-in for MetadataRepository.

    Files are copied on the way in and out so callers only change stored
    state through upsert_file and update_files, as with the real database.
    """

    def __init__(self) -> None:
        self.table_configs: dict[int, TableConfiguration] = {}
        self.policies: dict[int, LifecyclePolicy] = {}
        self.files: dict[int, ArchivalFile] = {}
        self.runs: dict[int, dict[str, Any]] = {}
        self.details: list[ArchivalRunDetail] = []
        self.exemptions: set[tuple[int, Optional[date]]] = set()
        self.update_calls = 0
        self.bulk_detail_calls = 0
        self._file_ids = itertools.count(1)
        self._run_ids = itertools.count(1)

    # Seeding helpers

    def add_table(self, config: TableConfiguration) -> TableConfiguration:
        self.table_configs[config.id] = config
        return config

    def add_policy(self, policy: LifecyclePolicy) -> LifecyclePolicy:
        self.policies[policy.id] = policy
        return policy

    def add_file(self, file: ArchivalFile) -> ArchivalFile:
        file.id = next(self._file_ids)
        self.files[file.id] = dataclasses.replace(file)
        return file

    # Table configurations and policies

    async def ensure_schema(self) -> None:
        return None

    async def get_table_configuration(self, table_config_id: int) -> Optional[TableConfiguration]:
        return self.table_configs.get(table_config_id)

    async def get_table_configurations_by_ids(
        self, ids: Iterable[int]
    ) -> dict[int, TableConfiguration]:
        return {i: self.table_configs[i] for i in set(ids) if i in self.table_configs}

    async def get_all_active(self) -> list[TableConfiguration]:
        return [c for _, c in sorted(self.table_configs.items()) if c.is_active]

    async def get_distinct_active_account_container_pairs(self) -> list[tuple[str, str]]:
        return sorted(
            {(c.storage_account_name, c.container_name) for c in await self.get_all_active()}
        )

    async def get_distinct_active_account_names(self) -> list[str]:
        return sorted({c.storage_account_name for c in await self.get_all_active()})

    async def get_policies_by_ids(self, ids: Iterable[int]) -> dict[int, LifecyclePolicy]:
        return {
            i: self.policies[i]
            for i in set(ids)
            if i in self.policies and self.policies[i].is_active
        }

    # Archive guards

    async def exists_for_table_date(self, table_config_id: int, as_of_date: date) -> bool:
        return any(
            f.table_configuration_id == table_config_id and f.as_of_date == as_of_date
            for f in self.files.values()
        )

    async def is_table_exempt(self, table_config_id: int, as_of_date: date) -> bool:
        return (table_config_id, None) in self.exemptions or (
            table_config_id,
            as_of_date,
        ) in self.exemptions

    # Files

    async def upsert_file(self, file: ArchivalFile) -> int:
        for existing_id, existing in self.files.items():
            if (existing.storage_account_name, existing.container_name, existing.blob_path) == (
                file.storage_account_name,
                file.container_name,
                file.blob_path,
            ):
                file.id = existing_id
                break
        else:
            file.id = next(self._file_ids)
        self.files[file.id] = dataclasses.replace(file)
        return file.id

    async def update_files(self, files: list[ArchivalFile]) -> None:
        self.update_calls += 1
        for file in files:
            if file.id is not None:
                self.files[file.id] = dataclasses.replace(file)

    async def get_lifecycle_candidates(
        self,
        checked_before: datetime,
        account_name: Optional[str] = None,
        container_name: Optional[str] = None,
        path_prefix: Optional[str] = None,
        table_configuration_id: Optional[int] = None,
    ) -> list[ArchivalFile]:
        return [
            dataclasses.replace(f)
            for _, f in sorted(self.files.items())
            if f.status is not ArchivalFileStatus.DELETED
            and (f.last_tier_checked_at is None or f.last_tier_checked_at < checked_before)
            and (account_name is None or f.storage_account_name == account_name)
            and (container_name is None or f.container_name == container_name)
            and (path_prefix is None or f.blob_path.startswith(path_prefix))
            and (table_configuration_id is None or f.table_configuration_id == table_configuration_id)
        ]

    # Runs

    async def start_run(self, note: Optional[str] = None) -> int:
        run_id = next(self._run_ids)
        self.runs[run_id] = {"status": RunStatus.STARTED, "note": note, "ended": False}
        return run_id

    async def complete_run(self, run_id: int, status: RunStatus, note: Optional[str] = None) -> None:
        run = self.runs[run_id]
        run["status"] = status
        run["ended"] = True
        if note is not None:
            run["note"] = note

    async def log_detail(self, detail: ArchivalRunDetail) -> None:
        self.details.append(detail)

    async def bulk_insert_run_details(self, details: list[ArchivalRunDetail]) -> None:
        self.bulk_detail_calls += 1
        self.details.extend(details)

    async def count_failed_details(self, run_id: int) -> int:
        return sum(
            1 for d in self.details if d.run_id == run_id and d.status is RunDetailStatus.FAILED
        )

    def details_for(self, run_id: int) -> list[ArchivalRunDetail]:
        return [d for d in self.details if d.run_id == run_id]


class FakeObjectStore:
    """In-memory stand-in for S3ObjectStore."""

    def __init__(self) -> None:
        self.objects: dict[tuple[str, str, str], bytes] = {}
        self.tags: dict[tuple[str, str, str], dict[str, str]] = {}
        self.tiers: dict[tuple[str, str, str], AccessTier] = {}
        self.tier_calls: list[tuple[str, AccessTier]] = []
        self.delete_calls: list[str] = []
        self.unsupported_tiers: set[AccessTier] = set()
        self.failing_paths: set[str] = set()
        self.upload_failures: list[Exception] = []
        self.upload_attempts = 0

    async def upload(
        self,
        account_name: str,
        container: str,
        path: str,
        content_type: str,
        stream: BinaryIO,
        tags: Optional[dict[str, str]] = None,
    ) -> BlobInfo:
        self.upload_attempts += 1
        data = stream.read()
        if self.upload_failures:
            raise self.upload_failures.pop(0)
        key = (account_name, container, path)
        self.objects[key] = data
        self.tags[key] = dict(tags or {})
        self.tiers[key] = AccessTier.HOT
        return BlobInfo(
            storage_account_name=account_name,
            container_name=container,
            blob_path=path,
            etag=f'"etag-{len(self.objects)}"',
            content_type=content_type,
            size_bytes=len(data),
        )

    async def set_access_tier(
        self, account_name: str, container: str, path: str, tier: AccessTier
    ) -> None:
        self.tier_calls.append((path, tier))
        if path in self.failing_paths:
            raise StorageOperationError(f"Set tier failed for {path}")
        if tier in self.unsupported_tiers:
            raise TierUnsupportedError(f"{tier.value} is not supported", tier=tier.value)
        self.tiers[(account_name, container, path)] = tier

    async def delete_if_exists(
        self, account_name: str, container: str, path: str, include_versions: bool = True
    ) -> bool:
        self.delete_calls.append(path)
        if path in self.failing_paths:
            raise StorageOperationError(f"Delete failed for {path}")
        self.tiers.pop((account_name, container, path), None)
        return self.objects.pop((account_name, container, path), None) is not None


class FakeSourceRepository:
    """In-memory source tables keyed by (table name, as-of date)."""

    def __init__(
        self,
        columns: list[SourceColumn],
        rows: Optional[dict[date, list[tuple[Any, ...]]]] = None,
    ) -> None:
        self.columns = columns
        self.rows = rows or {}
        self.fail_after: Optional[int] = None
        self.deleted: list[tuple[date, int]] = []
        self.delete_error: Optional[Exception] = None
        self.delete_result: Optional[int] = None

    async def get_column_schema(self, table: SourceTableRef) -> list[SourceColumn]:
        return list(self.columns)

    async def stream_rows(
        self,
        table: SourceTableRef,
        as_of_date: date,
        column_names: list[str],
        prefetch: int = 1000,
    ) -> AsyncIterator[tuple[Any, ...]]:
        for position, row in enumerate(self.rows.get(as_of_date, [])):
            if self.fail_after is not None and position >= self.fail_after:
                raise DatabaseError("cursor failed", context={"table": table.full_name})
            yield row

    async def get_distinct_as_of_dates(self, table: SourceTableRef) -> list[date]:
        return sorted(self.rows)

    async def delete_by_as_of_in_batches(
        self, table: SourceTableRef, as_of_date: date, batch_size: int
    ) -> int:
        if self.delete_error is not None:
            raise self.delete_error
        removed = len(self.rows.pop(as_of_date, []))
        if self.delete_result is not None:
            removed = self.delete_result
        self.deleted.append((as_of_date, removed))
        return removed


TRADE_COLUMNS = [
    SourceColumn("id", "bigint", "int8"),
    SourceColumn("symbol", "text", "text"),
    SourceColumn("price", "numeric", "numeric", numeric_precision=18, numeric_scale=4),
    SourceColumn("as_of", "date", "date"),
]


def trade_rows(as_of: date, count: int) -> list[tuple[Any, ...]]:
    return [
        (i, f"SYM{i % 50}", Decimal(f"{i % 1000}.2500"), as_of) for i in range(1, count + 1)
    ]


@pytest.fixture
def fake_metadata() -> FakeMetadataRepository:
    """Empty in-memory metadata repository."""
    return FakeMetadataRepository()


@pytest.fixture
def fake_object_store() -> FakeObjectStore:
    """Empty in-memory object store."""
    return FakeObjectStore()


@pytest.fixture
def make_source_repository():
    """Factory for in-memory source repositories over the trades columns."""

    def factory(
        rows: Optional[dict[date, list[tuple[Any, ...]]]] = None,
        columns: Optional[list[SourceColumn]] = None,
    ) -> FakeSourceRepository:
        return FakeSourceRepository(columns or TRADE_COLUMNS, rows)

    return factory


@pytest.fixture
def make_trade_rows():
    """Factory producing ``count`` trade rows for an as-of date."""
    return trade_rows


@pytest.fixture
def trades_config() -> TableConfiguration:
    """Table configuration for public.trades."""
    return TableConfiguration(
        id=1,
        database_name="ops",
        schema_name="public",
        table_name="trades",
        as_of_date_column="as_of",
        storage_account_name="archive-acct",
        container_name="cold",
        path_prefix="warehouse",
        file_lifecycle_policy_id=10,
        policy_tag="standard",
    )


@pytest.fixture
def export_settings() -> ExportSettings:
    """Small export settings so tests exercise part and row-group boundaries."""
    return ExportSettings(
        upload_parallelism=4,
        row_group_target_bytes=1024 * 1024,
        spill_threshold_bytes=256 * 1024,
        max_rows_per_part=50_000,
        upload_retry_base_delay=0.0,
    )


@pytest.fixture
def lifecycle_settings() -> LifecycleSettings:
    """Lifecycle settings with a small worker pool."""
    return LifecycleSettings(degree_of_parallelism=3)


@pytest.fixture
def fixed_now() -> datetime:
    return FIXED_NOW
