"""Value objects shared by the checkpoint store, engine, comparator and resolver."""

import json
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def _parse_json(value: Any, default: Any) -> Any:
    # asyncpg hands JSONB back as text unless a codec is registered
    if value is None:
        return default
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


class OperationType(str, Enum):
    """Kinds of checkpointed operations."""

    DIFFERENTIAL_MIGRATION = "differential_migration"
    SYNC_OPERATION = "sync_operation"
    VALIDATION = "validation"


class CheckpointStatus(str, Enum):
    """Checkpoint lifecycle: PENDING -> IN_PROGRESS -> COMPLETED | FAILED | PAUSED."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"

    @property
    def is_active(self) -> bool:
        return self in (CheckpointStatus.PENDING, CheckpointStatus.IN_PROGRESS)


class ComparisonType(str, Enum):
    """Divergence classes between source and target."""

    MISSING = "missing_records"
    CONFLICTED = "conflicted_records"
    DELETED = "deleted_records"


class ResolutionStrategy(str, Enum):
    """Policies for reconciling a differential."""

    SOURCE_WINS = "source_wins"
    TARGET_WINS = "target_wins"
    MANUAL_REVIEW = "manual_review"
    SKIP = "skip"


class CheckpointRecord:
    """Durable progress marker for one (entity, operation) pair."""

    def __init__(
        self,
        entity: str,
        operation: str,
        batch_size: int,
        *,
        id: Optional[str] = None,
        batch_number: int = 0,
        last_source_id: Optional[str] = None,
        records_processed: int = 0,
        records_total: Optional[int] = None,
        status: CheckpointStatus = CheckpointStatus.PENDING,
        started_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
        completed_at: Optional[datetime] = None,
        error_message: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        """Initialize checkpoint record.

        Args:
            entity: Entity name (e.g. "offices")
            operation: Operation identifier
            batch_size: Batch size the run uses
            id: Checkpoint ID (assigned by the store)
            batch_number: Number of batches committed so far
            last_source_id: Last processed source index/identifier, as text
            records_processed: Items covered by committed batches
            records_total: Total items, if known
            status: Lifecycle status
            started_at: When the run started
            updated_at: Last persistence time (drives staleness)
            completed_at: When the run reached a terminal state
            error_message: Error that failed the run
            metadata: Opaque JSON blob (stats snapshot, pause reason, ...)
        """
        self.id = id
        self.entity = entity
        self.operation = str(operation.value if isinstance(operation, Enum) else operation)
        self.batch_size = batch_size
        self.batch_number = batch_number
        self.last_source_id = last_source_id
        self.records_processed = records_processed
        self.records_total = records_total
        self.status = CheckpointStatus(status)
        self.started_at = started_at
        self.updated_at = updated_at
        self.completed_at = completed_at
        self.error_message = error_message
        self.metadata = metadata or {}

    @property
    def last_processed_index(self) -> int:
        """Last processed item index, or -1 if nothing was processed yet."""
        if self.last_source_id is None:
            return -1
        try:
            return int(self.last_source_id)
        except ValueError:
            return -1

    @property
    def progress_percentage(self) -> Optional[int]:
        if not self.records_total:
            return None
        return round(self.records_processed / self.records_total * 100)

    def to_dict(self) -> dict[str, Any]:
        """Convert checkpoint to a JSON-serialisable dictionary."""
        return {
            "version": "1.0",
            "id": self.id,
            "entity": self.entity,
            "operation": self.operation,
            "batch_number": self.batch_number,
            "last_source_id": self.last_source_id,
            "records_processed": self.records_processed,
            "records_total": self.records_total,
            "batch_size": self.batch_size,
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error_message": self.error_message,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CheckpointRecord":
        """Create a checkpoint from a dictionary or database row.

        Raises:
            KeyError, ValueError, TypeError: If data is invalid
        """
        last_source_id = data.get("last_source_id")
        return cls(
            id=str(data["id"]) if data.get("id") is not None else None,
            entity=data["entity"],
            operation=data["operation"],
            batch_size=int(data["batch_size"]),
            batch_number=int(data.get("batch_number") or 0),
            last_source_id=str(last_source_id) if last_source_id is not None else None,
            records_processed=int(data.get("records_processed") or 0),
            records_total=data.get("records_total"),
            status=CheckpointStatus(data["status"]),
            started_at=_parse_datetime(data.get("started_at")),
            updated_at=_parse_datetime(data.get("updated_at")),
            completed_at=_parse_datetime(data.get("completed_at")),
            error_message=data.get("error_message"),
            metadata=_parse_json(data.get("metadata"), {}),
        )

    def __repr__(self) -> str:
        return (
            f"CheckpointRecord(entity={self.entity!r}, operation={self.operation!r}, "
            f"status={self.status.value}, records_processed={self.records_processed})"
        )


class IdentifierMapping:
    """One legacy-id -> generated-id correspondence."""

    def __init__(
        self,
        entity_type: str,
        legacy_id: str,
        generated_id: str,
        batch_tag: Optional[str] = None,
        source_table: Optional[str] = None,
        target_table: Optional[str] = None,
        checksum: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        created_at: Optional[datetime] = None,
    ) -> None:
        self.entity_type = entity_type
        self.legacy_id = str(legacy_id)
        self.generated_id = str(generated_id)
        self.batch_tag = batch_tag
        self.source_table = source_table
        self.target_table = target_table
        self.checksum = checksum
        self.metadata = metadata or {}
        self.created_at = created_at

    @classmethod
    def from_row(cls, row: Any) -> "IdentifierMapping":
        return cls(
            entity_type=row["entity_type"],
            legacy_id=row["legacy_id"],
            generated_id=row["generated_id"],
            batch_tag=row.get("batch_tag"),
            source_table=row.get("source_table"),
            target_table=row.get("target_table"),
            checksum=row.get("checksum"),
            metadata=_parse_json(row.get("metadata"), {}),
            created_at=row.get("created_at"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "legacy_id": self.legacy_id,
            "generated_id": self.generated_id,
            "batch_tag": self.batch_tag,
            "source_table": self.source_table,
            "target_table": self.target_table,
            "checksum": self.checksum,
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class Differential:
    """A detected divergence between source and target for one entity."""

    def __init__(
        self,
        source_table: str,
        target_table: str,
        comparison_type: ComparisonType,
        legacy_ids: list[str],
        *,
        id: Optional[str] = None,
        record_count: Optional[int] = None,
        comparison_criteria: Optional[dict[str, Any]] = None,
        resolution_strategy: ResolutionStrategy = ResolutionStrategy.SOURCE_WINS,
        resolved: bool = False,
        resolved_at: Optional[datetime] = None,
        created_at: Optional[datetime] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        self.id = id
        self.source_table = source_table
        self.target_table = target_table
        self.comparison_type = ComparisonType(comparison_type)
        self.legacy_ids = [str(legacy_id) for legacy_id in legacy_ids]
        self.record_count = record_count if record_count is not None else len(self.legacy_ids)
        self.comparison_criteria = comparison_criteria or {}
        self.resolution_strategy = ResolutionStrategy(resolution_strategy)
        self.resolved = resolved
        self.resolved_at = resolved_at
        self.created_at = created_at
        self.metadata = metadata or {}

    @property
    def entity_type(self) -> str:
        return self.metadata.get("entity_type") or self.comparison_criteria.get(
            "entity_type", self.source_table
        )

    @property
    def is_full_scan(self) -> bool:
        """False when the differential came from a sampled comparison."""
        rate = self.comparison_criteria.get("sampling_rate")
        return rate is None or float(rate) >= 1.0

    @property
    def field_differences(self) -> dict[str, dict[str, Any]]:
        """Per legacy id: ``{field: {"source": value, "target": value}}``."""
        return self.comparison_criteria.get("differences", {})

    @classmethod
    def from_row(cls, row: Any) -> "Differential":
        return cls(
            id=str(row["id"]),
            source_table=row["source_table"],
            target_table=row["target_table"],
            comparison_type=row["comparison_type"],
            legacy_ids=_parse_json(row["legacy_ids"], []),
            record_count=row["record_count"],
            comparison_criteria=_parse_json(row.get("comparison_criteria"), {}),
            resolution_strategy=row["resolution_strategy"],
            resolved=bool(row["resolved"]),
            resolved_at=row.get("resolved_at"),
            created_at=row.get("created_at"),
            metadata=_parse_json(row.get("metadata"), {}),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "source_table": self.source_table,
            "target_table": self.target_table,
            "comparison_type": self.comparison_type.value,
            "legacy_ids": self.legacy_ids,
            "record_count": self.record_count,
            "comparison_criteria": self.comparison_criteria,
            "resolution_strategy": self.resolution_strategy.value,
            "resolved": self.resolved,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "metadata": self.metadata,
        }

    def __repr__(self) -> str:
        return (
            f"Differential(id={self.id!r}, type={self.comparison_type.value}, "
            f"records={self.record_count}, resolved={self.resolved})"
        )


class BatchError:
    """Error attached to a batch or a single item of a batch."""

    def __init__(
        self,
        batch_index: int,
        error: str,
        item_index: Optional[int] = None,
        item: Any = None,
        retry_count: int = 0,
        timestamp: Optional[datetime] = None,
    ) -> None:
        self.batch_index = batch_index
        self.item_index = item_index
        self.item = item
        self.error = error
        self.retry_count = retry_count
        self.timestamp = timestamp or utcnow()

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_index": self.batch_index,
            "item_index": self.item_index,
            "item": repr(self.item) if self.item is not None else None,
            "error": self.error,
            "retry_count": self.retry_count,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BatchError":
        return cls(
            batch_index=data["batch_index"],
            error=data["error"],
            item_index=data.get("item_index"),
            item=data.get("item"),
            retry_count=data.get("retry_count", 0),
            timestamp=_parse_datetime(data.get("timestamp")),
        )


class BatchResult:
    """Outcome of one batch. Transient: folded into RunStats, then dropped."""

    def __init__(
        self,
        attempted: int,
        succeeded: int = 0,
        failed: int = 0,
        skipped: int = 0,
        errors: Optional[list[BatchError]] = None,
        results: Optional[list[Any]] = None,
        batch_index: int = 0,
    ) -> None:
        self.batch_index = batch_index
        self.start_index = 0
        self.attempted = attempted
        self.succeeded = succeeded
        self.failed = failed
        self.skipped = skipped
        self.errors = errors or []
        self.results = results or []
        self.attempts = 0
        self.retry_delays: list[float] = []
        self.duration = 0.0

    @property
    def batch_failed(self) -> bool:
        """True when the whole batch failed after exhausting retries."""
        return self.attempted > 0 and self.failed == self.attempted and self.succeeded == 0

    @property
    def end_index(self) -> int:
        return self.start_index + self.attempted - 1

    @classmethod
    def failure(cls, batch_index: int, size: int, error: BatchError) -> "BatchResult":
        return cls(attempted=size, failed=size, errors=[error], batch_index=batch_index)


class RunStats:
    """Aggregate statistics of one engine run."""

    def __init__(self, max_errors: int = 100) -> None:
        self.max_errors = max_errors
        self.total_processed = 0
        self.succeeded = 0
        self.failed = 0
        self.skipped = 0
        self.batches_completed = 0
        self.batches_failed = 0
        # batches that stopped the run; they are reprocessed on resume
        self.batches_aborted = 0
        self.errors: list[BatchError] = []
        self.errors_dropped = 0
        self.retries = 0
        self.batch_time_total = 0.0
        self.last_processed_index = -1
        self.status: Optional[CheckpointStatus] = None
        self.checkpoint_id: Optional[str] = None
        self.resumed_from_index: Optional[int] = None
        self.start_time = utcnow()
        self.end_time: Optional[datetime] = None
        self._monotonic_start = time.monotonic()
        # processed count restored from a checkpoint, excluded from throughput
        self._seeded_processed = 0

    def add_error(self, error: BatchError) -> None:
        if len(self.errors) < self.max_errors:
            self.errors.append(error)
        else:
            self.errors_dropped += 1

    def fold(self, result: BatchResult) -> None:
        """Fold one committed batch into the totals."""
        self.total_processed += result.attempted
        self.succeeded += result.succeeded
        self.failed += result.failed
        self.skipped += result.skipped
        self.retries += max(result.attempts - 1, 0)
        self.batch_time_total += result.duration
        if result.batch_failed:
            self.batches_failed += 1
        else:
            self.batches_completed += 1
        for error in result.errors:
            self.add_error(error)
        self.last_processed_index = max(self.last_processed_index, result.end_index)

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self._monotonic_start

    @property
    def throughput(self) -> float:
        """Items per second processed during this run."""
        processed_this_run = self.total_processed - self._seeded_processed
        elapsed = self.elapsed_seconds
        return processed_this_run / elapsed if elapsed > 0 else 0.0

    @property
    def avg_batch_time(self) -> Optional[float]:
        batches = self.batches_completed + self.batches_failed
        return self.batch_time_total / batches if batches else None

    def snapshot(self) -> dict[str, Any]:
        """Serialisable statistics stored in checkpoint metadata."""
        return {
            "total_processed": self.total_processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "batches_completed": self.batches_completed,
            "batches_failed": self.batches_failed,
            "batches_aborted": self.batches_aborted,
            "retries": self.retries,
            "errors": [error.to_dict() for error in self.errors],
            "errors_dropped": self.errors_dropped,
            "last_processed_index": self.last_processed_index,
            "start_time": self.start_time.isoformat(),
        }

    @classmethod
    def from_snapshot(cls, data: dict[str, Any], max_errors: int = 100) -> "RunStats":
        """Rebuild stats from a checkpoint snapshot so a resumed run continues the totals."""
        stats = cls(max_errors=max_errors)
        stats.total_processed = data.get("total_processed", 0)
        stats.succeeded = data.get("succeeded", 0)
        stats.failed = data.get("failed", 0)
        stats.skipped = data.get("skipped", 0)
        stats.batches_completed = data.get("batches_completed", 0)
        stats.batches_failed = data.get("batches_failed", 0)
        stats.batches_aborted = data.get("batches_aborted", 0)
        stats.retries = data.get("retries", 0)
        stats.errors = [BatchError.from_dict(e) for e in data.get("errors", [])][:max_errors]
        stats.errors_dropped = data.get("errors_dropped", 0)
        stats.last_processed_index = data.get("last_processed_index", -1)
        stats._seeded_processed = stats.total_processed
        return stats

    def summary(self, error_limit: int = 10) -> dict[str, Any]:
        """Final user-facing summary."""
        return {
            "status": self.status.value if self.status else None,
            "processed": self.total_processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "batches_completed": self.batches_completed,
            "batches_failed": self.batches_failed,
            "batches_aborted": self.batches_aborted,
            "retries": self.retries,
            "errors": [error.to_dict() for error in self.errors[:error_limit]],
            "errors_total": len(self.errors) + self.errors_dropped,
            "checkpoint": {
                "id": self.checkpoint_id,
                "last_processed_index": self.last_processed_index,
                "resumed_from_index": self.resumed_from_index,
            },
            "duration_seconds": round(self.elapsed_seconds, 3),
            "avg_batch_seconds": round(self.avg_batch_time, 3) if self.avg_batch_time else None,
        }


class ResolutionResult:
    """Outcome of resolving one differential."""

    def __init__(
        self,
        differential_id: Optional[str],
        strategy: ResolutionStrategy,
        success: bool,
        resolved: bool,
        records_affected: int = 0,
        backup_id: Optional[str] = None,
        error: Optional[str] = None,
        comparison_type: Optional[ComparisonType] = None,
        dry_run: bool = False,
    ) -> None:
        self.differential_id = differential_id
        self.strategy = ResolutionStrategy(strategy)
        self.success = success
        self.resolved = resolved
        self.records_affected = records_affected
        self.backup_id = backup_id
        self.error = error
        self.comparison_type = comparison_type
        self.dry_run = dry_run

    @property
    def pending_review(self) -> bool:
        return self.success and not self.resolved

    def to_dict(self) -> dict[str, Any]:
        return {
            "differential_id": self.differential_id,
            "strategy": self.strategy.value,
            "comparison_type": self.comparison_type.value if self.comparison_type else None,
            "success": self.success,
            "resolved": self.resolved,
            "records_affected": self.records_affected,
            "backup_id": self.backup_id,
            "error": self.error,
            "dry_run": self.dry_run,
        }
