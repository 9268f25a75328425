"""Custom exception hierarchy for the migration engine."""

from typing import Any, Optional


class MigratorError(Exception):
    """Base exception for all migrator errors."""

    def __init__(
        self,
        message: str,
        *,
        correlation_id: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        """Initialize migrator error.

        Args:
            message: Error message
            correlation_id: Optional correlation ID for tracing
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


class ConfigurationError(MigratorError):
    """Configuration-related errors."""

    pass


class DatabaseError(MigratorError):
    """Database-related errors."""

    pass


class CheckpointError(MigratorError):
    """Checkpoint persistence errors. Always fatal to a run."""

    pass


class RunAlreadyActiveError(CheckpointError):
    """Another run holds a live IN_PROGRESS checkpoint for the same entity/operation."""

    pass


class MappingError(MigratorError):
    """Identifier mapping errors."""

    pass


class ComparisonError(MigratorError):
    """Source/target comparison errors."""

    pass


class ResolutionError(MigratorError):
    """Conflict resolution errors (scoped to a single differential)."""

    pass


class RecordValidationError(MigratorError):
    """A single record failed validation and should be skipped."""

    pass


class BatchTimeoutError(MigratorError):
    """A batch attempt exceeded its timeout."""

    pass
