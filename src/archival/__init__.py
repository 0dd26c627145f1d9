"""Cold table archival - export of PostgreSQL table snapshots to Parquet parts in S3."""

__version__ = "0.1.0"

__all__ = [
    "ArchiveOrchestrator",
    "ArchivalRunner",
    "ColumnarExportEngine",
    "DatabaseManager",
    "MetadataRepository",
    "ParquetExportService",
    "RetentionScheduler",
    "S3ObjectStore",
    "SpillableBuffer",
]
