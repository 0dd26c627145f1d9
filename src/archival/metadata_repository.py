"""Persistence of table configurations, policies, archived files and runs."""

from collections.abc import Iterable, Mapping
from datetime import date, datetime
from typing import Any, Optional

import structlog

from archival.database import DatabaseManager
from archival.models import (
    AccessTier,
    ArchivalFile,
    ArchivalFileStatus,
    ArchivalRunDetail,
    DateType,
    LifecyclePolicy,
    RunDetailStatus,
    RunStatus,
    TableConfiguration,
)
from utils.logging import get_logger

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS archival_file_lifecycle_policy (
        id SERIAL PRIMARY KEY,
        name TEXT NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        eod_cool_days INTEGER, eod_archive_days INTEGER, eod_delete_days INTEGER,
        eom_cool_days INTEGER, eom_archive_days INTEGER, eom_delete_days INTEGER,
        eoq_cool_days INTEGER, eoq_archive_days INTEGER, eoq_delete_days INTEGER,
        eoy_cool_days INTEGER, eoy_archive_days INTEGER, eoy_delete_days INTEGER,
        external_cool_days INTEGER, external_archive_days INTEGER, external_delete_days INTEGER
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS archival_table_configuration (
        id SERIAL PRIMARY KEY,
        database_name TEXT NOT NULL,
        schema_name TEXT NOT NULL DEFAULT 'public',
        table_name TEXT NOT NULL,
        as_of_date_column TEXT,
        storage_account_name TEXT NOT NULL,
        container_name TEXT NOT NULL,
        path_prefix TEXT NOT NULL DEFAULT '',
        delete_from_source BOOLEAN NOT NULL DEFAULT FALSE,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        file_lifecycle_policy_id INTEGER REFERENCES archival_file_lifecycle_policy (id),
        policy_tag TEXT,
        discovery_path_prefix TEXT,
        keep_last_eod INTEGER NOT NULL DEFAULT 0,
        keep_last_eom INTEGER NOT NULL DEFAULT 0,
        keep_last_eoq INTEGER NOT NULL DEFAULT 0,
        keep_last_eoy INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS archival_exemption (
        id SERIAL PRIMARY KEY,
        table_configuration_id INTEGER NOT NULL REFERENCES archival_table_configuration (id),
        as_of_date DATE,
        reason TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS archival_file (
        id BIGSERIAL PRIMARY KEY,
        table_configuration_id INTEGER NOT NULL REFERENCES archival_table_configuration (id),
        as_of_date DATE,
        date_type TEXT,
        storage_account_name TEXT NOT NULL,
        container_name TEXT NOT NULL,
        blob_path TEXT NOT NULL,
        part_index INTEGER NOT NULL DEFAULT 1,
        etag TEXT,
        content_type TEXT,
        size_bytes BIGINT,
        row_count BIGINT,
        status TEXT NOT NULL,
        current_access_tier TEXT,
        last_tier_checked_at TIMESTAMPTZ,
        override_file_lifecycle_policy_id INTEGER
            REFERENCES archival_file_lifecycle_policy (id),
        archival_policy_tag TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE (storage_account_name, container_name, blob_path)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_archival_file_table_date
        ON archival_file (table_configuration_id, as_of_date)
    """,
    """
    CREATE TABLE IF NOT EXISTS archival_run (
        id BIGSERIAL PRIMARY KEY,
        started_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        ended_at TIMESTAMPTZ,
        status TEXT NOT NULL,
        note TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS archival_run_detail (
        id BIGSERIAL PRIMARY KEY,
        run_id BIGINT NOT NULL REFERENCES archival_run (id),
        table_configuration_id INTEGER,
        as_of_date DATE,
        date_type TEXT,
        phase TEXT NOT NULL,
        status TEXT NOT NULL,
        archival_file_id BIGINT,
        rows_affected BIGINT,
        file_path TEXT,
        error_message TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
)

_POLICY_COLUMNS = tuple(
    f"{kind}_{action}_days"
    for kind in ("eod", "eom", "eoq", "eoy", "external")
    for action in ("cool", "archive", "delete")
)

_INSERT_DETAIL = """
    INSERT INTO archival_run_detail (
        run_id, table_configuration_id, as_of_date, date_type, phase, status,
        archival_file_id, rows_affected, file_path, error_message
    )
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
"""


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _table_configuration(row: Mapping[str, Any]) -> TableConfiguration:
    return TableConfiguration(
        id=row["id"],
        database_name=row["database_name"],
        schema_name=row["schema_name"],
        table_name=row["table_name"],
        as_of_date_column=row["as_of_date_column"],
        storage_account_name=row["storage_account_name"],
        container_name=row["container_name"],
        path_prefix=row["path_prefix"] or "",
        delete_from_source=row["delete_from_source"],
        is_active=row["is_active"],
        file_lifecycle_policy_id=row["file_lifecycle_policy_id"],
        policy_tag=row["policy_tag"],
        discovery_path_prefix=row["discovery_path_prefix"],
        keep_last_eod=row["keep_last_eod"],
        keep_last_eom=row["keep_last_eom"],
        keep_last_eoq=row["keep_last_eoq"],
        keep_last_eoy=row["keep_last_eoy"],
    )


def _policy(row: Mapping[str, Any]) -> LifecyclePolicy:
    thresholds = {column: row[column] for column in _POLICY_COLUMNS}
    return LifecyclePolicy(id=row["id"], name=row["name"], is_active=row["is_active"], **thresholds)


def _archival_file(row: Mapping[str, Any]) -> ArchivalFile:
    return ArchivalFile(
        id=row["id"],
        table_configuration_id=row["table_configuration_id"],
        as_of_date=row["as_of_date"],
        date_type=DateType.parse(row["date_type"]) if row["date_type"] else None,
        storage_account_name=row["storage_account_name"],
        container_name=row["container_name"],
        blob_path=row["blob_path"],
        part_index=row["part_index"],
        etag=row["etag"],
        content_type=row["content_type"],
        size_bytes=row["size_bytes"],
        row_count=row["row_count"],
        status=ArchivalFileStatus(row["status"]),
        current_access_tier=AccessTier.parse(row["current_access_tier"]),
        last_tier_checked_at=row["last_tier_checked_at"],
        override_file_lifecycle_policy_id=row["override_file_lifecycle_policy_id"],
        archival_policy_tag=row["archival_policy_tag"],
        created_at=row["created_at"],
    )


def _detail_args(detail: ArchivalRunDetail) -> tuple[Any, ...]:
    return (
        detail.run_id,
        detail.table_configuration_id,
        detail.as_of_date,
        detail.date_type.value if detail.date_type else None,
        detail.phase.value,
        detail.status.value,
        detail.archival_file_id,
        detail.rows_affected,
        detail.file_path,
        detail.error_message,
    )


class MetadataRepository:
    """Archival metadata stored in PostgreSQL."""

    def __init__(
        self,
        db: DatabaseManager,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize metadata repository.

        Args:
            db: Connected manager for the metadata database
            logger: Optional logger instance
        """
        self.db = db
        self.logger = logger or get_logger("metadata_repository")

    async def ensure_schema(self) -> None:
        """Create metadata tables that do not exist yet."""
        async with self.db.transaction() as conn:
            for statement in SCHEMA_STATEMENTS:
                await conn.execute(statement)
        self.logger.debug("Metadata schema ensured")

    # Table configurations and policies

    async def get_table_configuration(self, table_config_id: int) -> Optional[TableConfiguration]:
        row = await self.db.fetchrow(
            "SELECT * FROM archival_table_configuration WHERE id = $1", table_config_id
        )
        return _table_configuration(row) if row else None

    async def get_table_configurations_by_ids(
        self, ids: Iterable[int]
    ) -> dict[int, TableConfiguration]:
        id_list = sorted(set(ids))
        if not id_list:
            return {}
        rows = await self.db.fetch(
            "SELECT * FROM archival_table_configuration WHERE id = ANY($1::int[])", id_list
        )
        return {row["id"]: _table_configuration(row) for row in rows}

    async def get_all_active(self) -> list[TableConfiguration]:
        rows = await self.db.fetch(
            "SELECT * FROM archival_table_configuration WHERE is_active ORDER BY id"
        )
        return [_table_configuration(row) for row in rows]

    async def get_distinct_active_account_container_pairs(self) -> list[tuple[str, str]]:
        rows = await self.db.fetch(
            """
            SELECT DISTINCT storage_account_name, container_name
            FROM archival_table_configuration
            WHERE is_active
            ORDER BY storage_account_name, container_name
            """
        )
        return [(row["storage_account_name"], row["container_name"]) for row in rows]

    async def get_distinct_active_account_names(self) -> list[str]:
        rows = await self.db.fetch(
            """
            SELECT DISTINCT storage_account_name
            FROM archival_table_configuration
            WHERE is_active
            ORDER BY storage_account_name
            """
        )
        return [row["storage_account_name"] for row in rows]

    async def get_policies_by_ids(self, ids: Iterable[int]) -> dict[int, LifecyclePolicy]:
        """Load active lifecycle policies by id. Inactive policies are left out."""
        id_list = sorted({policy_id for policy_id in ids if policy_id is not None})
        if not id_list:
            return {}
        rows = await self.db.fetch(
            """
            SELECT * FROM archival_file_lifecycle_policy
            WHERE id = ANY($1::int[]) AND is_active
            """,
            id_list,
        )
        return {row["id"]: _policy(row) for row in rows}

    # Archive guards

    async def exists_for_table_date(self, table_config_id: int, as_of_date: date) -> bool:
        return bool(
            await self.db.fetchval(
                """
                SELECT EXISTS (
                    SELECT 1 FROM archival_file
                    WHERE table_configuration_id = $1 AND as_of_date = $2
                )
                """,
                table_config_id,
                as_of_date,
            )
        )

    async def is_table_exempt(self, table_config_id: int, as_of_date: date) -> bool:
        """Whether the table, or this one as-of date of it, is exempt from archival."""
        return bool(
            await self.db.fetchval(
                """
                SELECT EXISTS (
                    SELECT 1 FROM archival_exemption
                    WHERE table_configuration_id = $1
                      AND (as_of_date IS NULL OR as_of_date = $2)
                )
                """,
                table_config_id,
                as_of_date,
            )
        )

    # Archived files

    async def upsert_file(self, file: ArchivalFile) -> int:
        """Insert or refresh a file row keyed by its storage location.

        Returns:
            The file id (also assigned to ``file.id``)
        """
        file_id = await self.db.fetchval(
            """
            INSERT INTO archival_file (
                table_configuration_id, as_of_date, date_type, storage_account_name,
                container_name, blob_path, part_index, etag, content_type, size_bytes,
                row_count, status, current_access_tier, archival_policy_tag
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
            ON CONFLICT (storage_account_name, container_name, blob_path)
            DO UPDATE SET
                table_configuration_id = EXCLUDED.table_configuration_id,
                as_of_date = EXCLUDED.as_of_date,
                date_type = EXCLUDED.date_type,
                part_index = EXCLUDED.part_index,
                etag = EXCLUDED.etag,
                content_type = EXCLUDED.content_type,
                size_bytes = EXCLUDED.size_bytes,
                row_count = EXCLUDED.row_count,
                status = EXCLUDED.status,
                current_access_tier = EXCLUDED.current_access_tier,
                archival_policy_tag = EXCLUDED.archival_policy_tag
            RETURNING id
            """,
            file.table_configuration_id,
            file.as_of_date,
            file.date_type.value if file.date_type else None,
            file.storage_account_name,
            file.container_name,
            file.blob_path,
            file.part_index,
            file.etag,
            file.content_type,
            file.size_bytes,
            file.row_count,
            file.status.value,
            file.current_access_tier.value if file.current_access_tier else None,
            file.archival_policy_tag,
        )
        file.id = file_id
        return file_id

    async def update_files(self, files: list[ArchivalFile]) -> None:
        """Persist mutable state of many files in one transaction."""
        rows = [
            (
                file.id,
                file.status.value,
                file.etag,
                file.content_type,
                file.size_bytes,
                file.row_count,
                file.current_access_tier.value if file.current_access_tier else None,
                file.last_tier_checked_at,
            )
            for file in files
            if file.id is not None
        ]
        await self.db.executemany(
            """
            UPDATE archival_file SET
                status = $2,
                etag = $3,
                content_type = $4,
                size_bytes = $5,
                row_count = $6,
                current_access_tier = $7,
                last_tier_checked_at = $8
            WHERE id = $1
            """,
            rows,
        )

    async def get_lifecycle_candidates(
        self,
        checked_before: datetime,
        account_name: Optional[str] = None,
        container_name: Optional[str] = None,
        path_prefix: Optional[str] = None,
        table_configuration_id: Optional[int] = None,
    ) -> list[ArchivalFile]:
        """Files in scope that are not deleted and were not checked recently."""
        rows = await self.db.fetch(
            r"""
            SELECT * FROM archival_file
            WHERE status <> $1
              AND (last_tier_checked_at IS NULL OR last_tier_checked_at < $2)
              AND ($3::text IS NULL OR storage_account_name = $3)
              AND ($4::text IS NULL OR container_name = $4)
              AND ($5::text IS NULL OR blob_path LIKE $5 || '%' ESCAPE '\')
              AND ($6::int IS NULL OR table_configuration_id = $6)
            ORDER BY id
            """,
            ArchivalFileStatus.DELETED.value,
            checked_before,
            account_name,
            container_name,
            _escape_like(path_prefix) if path_prefix else None,
            table_configuration_id,
        )
        return [_archival_file(row) for row in rows]

    # Runs

    async def start_run(self, note: Optional[str] = None) -> int:
        run_id = await self.db.fetchval(
            "INSERT INTO archival_run (status, note) VALUES ($1, $2) RETURNING id",
            RunStatus.STARTED.value,
            note,
        )
        self.logger.debug("Run started", run_id=run_id, note=note)
        return run_id

    async def complete_run(
        self, run_id: int, status: RunStatus, note: Optional[str] = None
    ) -> None:
        await self.db.execute(
            """
            UPDATE archival_run
            SET status = $2, ended_at = NOW(), note = COALESCE($3, note)
            WHERE id = $1
            """,
            run_id,
            status.value,
            note,
        )
        self.logger.debug("Run completed", run_id=run_id, status=status.value, note=note)

    async def log_detail(self, detail: ArchivalRunDetail) -> None:
        await self.db.execute(_INSERT_DETAIL, *_detail_args(detail))

    async def bulk_insert_run_details(self, details: list[ArchivalRunDetail]) -> None:
        await self.db.executemany(_INSERT_DETAIL, [_detail_args(detail) for detail in details])

    async def count_failed_details(self, run_id: int) -> int:
        return await self.db.fetchval(
            "SELECT COUNT(*) FROM archival_run_detail WHERE run_id = $1 AND status = $2",
            run_id,
            RunDetailStatus.FAILED.value,
        )
