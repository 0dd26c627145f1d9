"""Domain records shared by the export pipeline and lifecycle enforcement."""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional


class DateType(Enum):
    """Kind of as-of date a snapshot represents."""

    EOD = "EOD"
    EOM = "EOM"
    EOQ = "EOQ"
    EOY = "EOY"
    EXT = "EXT"

    @classmethod
    def parse(cls, value: Optional[str]) -> "DateType":
        """Parse a stored date type; unknown or missing values become EOD."""
        if value:
            try:
                return cls(value.strip().upper())
            except ValueError:
                pass
        return cls.EOD


class ArchivalFileStatus(Enum):
    """Lifecycle status of an archived part."""

    CREATED = "Created"
    ACTIVE = "Active"
    DELETED = "Deleted"


class RunStatus(Enum):
    """Status of a top-level run."""

    STARTED = "Started"
    SUCCESS = "Success"
    PARTIAL = "Partial"
    FAILED = "Failed"


class RunDetailPhase(Enum):
    """Phase a run detail belongs to."""

    EXPORT = "Export"
    DELETE = "Delete"
    LIFECYCLE = "Lifecycle"


class RunDetailStatus(Enum):
    """Outcome of a single run detail."""

    SKIPPED = "Skipped"
    SUCCESS = "Success"
    FAILED = "Failed"


class AccessTier(Enum):
    """Storage access tier, ordered from warmest to coldest."""

    HOT = "Hot"
    COOL = "Cool"
    ARCHIVE = "Archive"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]

    def is_at_least_as_cold_as(self, other: "AccessTier") -> bool:
        return self.rank >= other.rank

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["AccessTier"]:
        """Parse a tier name; "Cold" is an alias of Archive.

        Returns:
            The tier, or None when the value is empty or unrecognized
        """
        if not value:
            return None
        normalized = value.strip().lower()
        if normalized in ("archive", "cold"):
            return cls.ARCHIVE
        if normalized == "cool":
            return cls.COOL
        if normalized == "hot":
            return cls.HOT
        return None


_TIER_RANK = {AccessTier.HOT: 0, AccessTier.COOL: 1, AccessTier.ARCHIVE: 2}


@dataclass(frozen=True)
class TierThresholds:
    """Age thresholds in days for one date type. None means "never"."""

    cool_days: Optional[int] = None
    archive_days: Optional[int] = None
    delete_days: Optional[int] = None


@dataclass(frozen=True)
class LifecyclePolicy:
    """Per date-type tiering and expiry thresholds."""

    id: int
    name: str
    is_active: bool = True
    eod_cool_days: Optional[int] = None
    eod_archive_days: Optional[int] = None
    eod_delete_days: Optional[int] = None
    eom_cool_days: Optional[int] = None
    eom_archive_days: Optional[int] = None
    eom_delete_days: Optional[int] = None
    eoq_cool_days: Optional[int] = None
    eoq_archive_days: Optional[int] = None
    eoq_delete_days: Optional[int] = None
    eoy_cool_days: Optional[int] = None
    eoy_archive_days: Optional[int] = None
    eoy_delete_days: Optional[int] = None
    external_cool_days: Optional[int] = None
    external_archive_days: Optional[int] = None
    external_delete_days: Optional[int] = None

    def thresholds_for(self, date_type: Optional[DateType]) -> TierThresholds:
        """Return the thresholds that apply to a date type.

        Args:
            date_type: Date type of the archived file; None uses the external triple

        Returns:
            Cool/archive/delete thresholds
        """
        prefix = {
            DateType.EOD: "eod",
            DateType.EOM: "eom",
            DateType.EOQ: "eoq",
            DateType.EOY: "eoy",
        }.get(date_type, "external")  # type: ignore[arg-type]
        return TierThresholds(
            cool_days=getattr(self, f"{prefix}_cool_days"),
            archive_days=getattr(self, f"{prefix}_archive_days"),
            delete_days=getattr(self, f"{prefix}_delete_days"),
        )


@dataclass(frozen=True)
class TableConfiguration:
    """A source table and where its snapshots are archived."""

    id: int
    database_name: str
    schema_name: str
    table_name: str
    as_of_date_column: Optional[str]
    storage_account_name: str
    container_name: str
    path_prefix: str = ""
    delete_from_source: bool = False
    is_active: bool = True
    file_lifecycle_policy_id: Optional[int] = None
    policy_tag: Optional[str] = None
    discovery_path_prefix: Optional[str] = None
    keep_last_eod: int = 0
    keep_last_eom: int = 0
    keep_last_eoq: int = 0
    keep_last_eoy: int = 0
    lifecycle_policy: Optional[LifecyclePolicy] = None

    @property
    def full_name(self) -> str:
        return f"{self.schema_name}.{self.table_name}"


@dataclass
class ArchivalFile:
    """One exported part and its storage lifecycle state."""

    table_configuration_id: int
    storage_account_name: str
    container_name: str
    blob_path: str
    as_of_date: Optional[date] = None
    date_type: Optional[DateType] = None
    id: Optional[int] = None
    part_index: int = 1
    etag: Optional[str] = None
    content_type: Optional[str] = None
    size_bytes: Optional[int] = None
    row_count: Optional[int] = None
    status: ArchivalFileStatus = ArchivalFileStatus.CREATED
    current_access_tier: Optional[AccessTier] = None
    last_tier_checked_at: Optional[datetime] = None
    override_file_lifecycle_policy_id: Optional[int] = None
    archival_policy_tag: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class ArchivalRun:
    """One top-level invocation (archive run or lifecycle scope)."""

    id: int
    started_at: datetime
    status: RunStatus = RunStatus.STARTED
    ended_at: Optional[datetime] = None
    note: Optional[str] = None


@dataclass
class ArchivalRunDetail:
    """Per-item outcome inside a run."""

    run_id: int
    phase: RunDetailPhase
    status: RunDetailStatus
    table_configuration_id: Optional[int] = None
    as_of_date: Optional[date] = None
    date_type: Optional[DateType] = None
    archival_file_id: Optional[int] = None
    rows_affected: Optional[int] = None
    file_path: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class BlobInfo:
    """Where an uploaded object landed and what storage reported about it."""

    storage_account_name: str
    container_name: str
    blob_path: str
    etag: Optional[str] = None
    content_type: Optional[str] = None
    size_bytes: Optional[int] = None


@dataclass(frozen=True)
class ExportPartResult:
    """Outcome of writing and uploading one part. Never persisted on its own."""

    part_index: int
    row_count: int
    column_count: int
    size_bytes: int
    blob: BlobInfo
    write_duration: float
    upload_duration: float


@dataclass
class ExportResult:
    """Aggregated outcome of exporting one table for one as-of date."""

    parts: list[ExportPartResult] = field(default_factory=list)

    @property
    def row_count(self) -> int:
        return sum(part.row_count for part in self.parts)

    @property
    def column_count(self) -> int:
        return self.parts[0].column_count if self.parts else 0

    @property
    def size_bytes(self) -> int:
        return sum(part.size_bytes for part in self.parts)

    @property
    def first_blob(self) -> Optional[BlobInfo]:
        return self.parts[0].blob if self.parts else None


@dataclass
class LifecycleResult:
    """Counters returned by one enforcement pass."""

    tiered: int = 0
    deleted: int = 0
    failed: int = 0

    @classmethod
    def failure(cls) -> "LifecycleResult":
        """Synthetic result for a scope that could not be enforced at all."""
        return cls(tiered=0, deleted=0, failed=1)

    def summary(self) -> str:
        return f"Tiered={self.tiered} Deleted={self.deleted} Failed={self.failed}"

    def as_dict(self) -> dict[str, Any]:
        return {"tiered": self.tiered, "deleted": self.deleted, "failed": self.failed}
