"""Custom exception hierarchy for archival and lifecycle enforcement."""

from typing import Any, Optional


class ArchivalError(Exception):
    """Base exception for all archival errors."""

    def __init__(
        self,
        message: str,
        *,
        correlation_id: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        """Initialize archival error.

        Args:
            message: Error message
            correlation_id: Optional correlation ID (usually the run id)
            context: Optional context dictionary with additional details
        """
        super().__init__(message)
        self.message = message
        self.correlation_id = correlation_id
        self.context = context or {}

    def __str__(self) -> str:
        """Return formatted error message."""
        parts = [self.message]
        if self.correlation_id:
            parts.append(f"[correlation_id={self.correlation_id}]")
        if self.context:
            parts.append(f"[context={self.context}]")
        return " ".join(parts)


class ConfigurationError(ArchivalError):
    """Missing or invalid configuration (connection, column, account)."""

    pass


class DatabaseError(ArchivalError):
    """Database-related errors."""

    pass


class StorageOperationError(ArchivalError):
    """Object storage operation failed."""

    pass


class TransientUploadError(StorageOperationError):
    """Upload failed for a reason that is worth retrying (throttling, 5xx, connection)."""

    pass


class TierUnsupportedError(StorageOperationError):
    """The storage account does not support the requested access tier."""

    def __init__(
        self,
        message: str,
        *,
        tier: Optional[str] = None,
        correlation_id: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, correlation_id=correlation_id, context=context)
        self.tier = tier


class PolicyResolutionError(ArchivalError):
    """No lifecycle policy could be resolved for an archived file."""

    pass


class RowCountMismatchError(ArchivalError):
    """Source deletion removed a different number of rows than were exported."""

    def __init__(
        self,
        expected: int,
        actual: int,
        *,
        correlation_id: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            f"ExpectedDeleteCount={expected},ActualDeleted={actual}",
            correlation_id=correlation_id,
            context=context,
        )
        self.expected = expected
        self.actual = actual


def describe_error(error: BaseException) -> str:
    """Text stored in a run detail or run note for a failure."""
    return f"{type(error).__name__}: {error}"
