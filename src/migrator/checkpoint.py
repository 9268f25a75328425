"""Checkpoint management for resuming interrupted migration runs."""

import json
import os
import tempfile
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Optional

import structlog

from migrator.config import CheckpointConfig, EngineOptions
from migrator.database import DatabaseManager, is_unique_violation
from migrator.exceptions import CheckpointError, DatabaseError, RunAlreadyActiveError
from migrator.models import CheckpointRecord, CheckpointStatus, RunStats, utcnow
from utils.logging import get_logger

CHECKPOINTS_TABLE = "migration_checkpoints"

_SCHEMA_SQL = f"""
CREATE TABLE IF NOT EXISTS {CHECKPOINTS_TABLE} (
    id UUID PRIMARY KEY,
    operation TEXT NOT NULL,
    entity TEXT NOT NULL,
    batch_number INTEGER NOT NULL DEFAULT 0,
    last_source_id TEXT,
    records_processed BIGINT NOT NULL DEFAULT 0,
    records_total BIGINT,
    batch_size INTEGER NOT NULL,
    status TEXT NOT NULL,
    error_message TEXT,
    metadata JSONB NOT NULL DEFAULT '{{}}'::jsonb,
    started_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    completed_at TIMESTAMPTZ,
    CONSTRAINT migration_checkpoints_processed_le_total
        CHECK (records_total IS NULL OR records_processed <= records_total)
);
CREATE UNIQUE INDEX IF NOT EXISTS migration_checkpoints_active_idx
    ON {CHECKPOINTS_TABLE} (entity, operation)
    WHERE status IN ('pending', 'in_progress');
CREATE INDEX IF NOT EXISTS migration_checkpoints_entity_idx
    ON {CHECKPOINTS_TABLE} (entity, operation, started_at DESC);
"""

# In-progress checkpoints untouched for this long are reported by validate_integrity
INTEGRITY_STALE_AFTER = timedelta(hours=4)


class CheckpointManager:
    """Durable store of run progress, keyed by (entity, operation).

    Two storage backends are supported: ``database`` keeps one row per run in
    ``migration_checkpoints``; ``local`` keeps the run history of each
    (entity, operation) pair in a JSON file under ``local_path``.
    """

    def __init__(
        self,
        storage_type: str = "database",
        db_manager: Optional[DatabaseManager] = None,
        local_path: Optional[Path] = None,
        checkpoint_interval: int = 1,
        stale_after_seconds: float = 3600.0,
        retention_days: int = 7,
        clock: Callable[[], datetime] = utcnow,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize checkpoint manager.

        Args:
            storage_type: Storage type for checkpoints ("database" or "local")
            db_manager: Database manager (required if storage_type is "database")
            local_path: Directory for checkpoint files (required if storage_type is "local")
            checkpoint_interval: Save checkpoint every N batches (default: 1)
            stale_after_seconds: Age after which an IN_PROGRESS checkpoint may be resumed
            retention_days: Default age for cleanup_old
            clock: Source of the current UTC time
            logger: Optional logger instance
        """
        if storage_type not in ("database", "local"):
            raise ValueError(
                f"Invalid storage_type: {storage_type}. Must be 'database' or 'local'"
            )
        if storage_type == "database" and db_manager is None:
            raise ValueError("db_manager is required for database storage type")
        if storage_type == "local" and local_path is None:
            raise ValueError("local_path is required for local storage type")
        if checkpoint_interval < 1:
            raise ValueError(f"checkpoint_interval must be at least 1, got {checkpoint_interval}")

        self.storage_type = storage_type
        self.db_manager = db_manager
        self.local_path = Path(local_path) if local_path is not None else None
        self.checkpoint_interval = checkpoint_interval
        self.stale_after = timedelta(seconds=stale_after_seconds)
        self.retention_days = retention_days
        self.clock = clock
        self.logger = logger or get_logger("checkpoint_manager")
        self._schema_ready = False

    @classmethod
    def from_config(
        cls,
        config: CheckpointConfig,
        db_manager: Optional[DatabaseManager] = None,
        engine_options: Optional[EngineOptions] = None,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> "CheckpointManager":
        """Create a checkpoint manager from the ``checkpoints`` config section.

        Args:
            config: Checkpoint storage configuration
            db_manager: State database (required for database storage)
            engine_options: Engine options supplying save interval and staleness
            logger: Optional logger instance
        """
        engine_options = engine_options or EngineOptions()
        return cls(
            storage_type=config.storage_type,
            db_manager=db_manager,
            local_path=Path(config.local_directory) if config.storage_type == "local" else None,
            checkpoint_interval=engine_options.checkpoint_interval,
            stale_after_seconds=engine_options.stale_after_seconds,
            retention_days=config.retention_days,
            logger=logger,
        )

    async def ensure_schema(self) -> None:
        """Create the checkpoint table (database) or directory (local) if missing.

        Raises:
            CheckpointError: If the schema cannot be created
        """
        if self._schema_ready:
            return

        if self.storage_type == "database":
            try:
                await self.db_manager.execute(_SCHEMA_SQL)
            except DatabaseError as e:
                raise CheckpointError(
                    f"Failed to create checkpoint table: {e}",
                    context={"table": CHECKPOINTS_TABLE},
                ) from e
        else:
            try:
                self.local_path.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise CheckpointError(
                    f"Failed to create checkpoint directory: {e}",
                    context={"path": str(self.local_path)},
                ) from e

        self._schema_ready = True

    def should_save_checkpoint(self, batch_number: int, interval: Optional[int] = None) -> bool:
        """Check if checkpoint should be saved for this batch number.

        Args:
            batch_number: Number of batches committed so far
            interval: Override of the manager's checkpoint interval

        Returns:
            True if checkpoint should be saved
        """
        return batch_number % (interval or self.checkpoint_interval) == 0

    def is_stale(
        self,
        record: CheckpointRecord,
        now: Optional[datetime] = None,
        stale_after_seconds: Optional[float] = None,
    ) -> bool:
        """True if the checkpoint was not updated within the staleness window."""
        last_update = record.updated_at or record.started_at
        if last_update is None:
            return True
        now = now or self.clock()
        window = (
            timedelta(seconds=stale_after_seconds)
            if stale_after_seconds is not None
            else self.stale_after
        )
        return now - last_update > window

    def can_resume(
        self,
        record: Optional[CheckpointRecord],
        now: Optional[datetime] = None,
        stale_after_seconds: Optional[float] = None,
    ) -> bool:
        """Check whether a run may continue from this checkpoint.

        FAILED and PAUSED checkpoints are resumable, COMPLETED ones never are.
        PENDING and IN_PROGRESS checkpoints are resumable only once stale,
        since a fresh one belongs to a run that may still be alive.

        Args:
            record: Checkpoint to inspect
            now: Current time (defaults to the manager clock)
            stale_after_seconds: Override of the manager's staleness window

        Returns:
            True if the run may resume from ``record``
        """
        if record is None:
            return False
        if record.status in (CheckpointStatus.FAILED, CheckpointStatus.PAUSED):
            return True
        if record.status.is_active:
            return self.is_stale(record, now, stale_after_seconds)
        return False

    async def get_latest(self, entity: str, operation: str) -> Optional[CheckpointRecord]:
        """Load the most recent checkpoint for (entity, operation).

        Returns:
            Checkpoint or None if the pair has never run

        Raises:
            CheckpointError: If checkpoint load fails
        """
        await self.ensure_schema()

        if self.storage_type == "database":
            try:
                row = await self.db_manager.fetchrow(
                    f"""
                    SELECT * FROM {CHECKPOINTS_TABLE}
                    WHERE entity = $1 AND operation = $2
                    ORDER BY started_at DESC, updated_at DESC
                    LIMIT 1
                    """,
                    entity,
                    operation,
                )
            except DatabaseError as e:
                raise CheckpointError(
                    f"Failed to load checkpoint: {e}",
                    context={"entity": entity, "operation": operation},
                ) from e
            record = self._from_row(row) if row else None
        else:
            history = self._read_local(entity, operation)
            record = history[-1] if history else None

        if record is None:
            self.logger.debug(
                "No checkpoint found (first run)",
                entity=entity,
                operation=operation,
            )
        else:
            self.logger.info(
                "Checkpoint loaded",
                entity=entity,
                operation=operation,
                checkpoint_id=record.id,
                status=record.status.value,
                batch_number=record.batch_number,
                records_processed=record.records_processed,
            )
        return record

    async def begin(
        self,
        entity: str,
        operation: str,
        batch_size: int,
        records_total: Optional[int] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> CheckpointRecord:
        """Create a PENDING checkpoint for a new run.

        Raises:
            RunAlreadyActiveError: If an active checkpoint exists for the pair
            CheckpointError: If the checkpoint cannot be persisted
        """
        await self.ensure_schema()

        now = self.clock()
        record = CheckpointRecord(
            entity=entity,
            operation=operation,
            batch_size=batch_size,
            id=str(uuid.uuid4()),
            records_total=records_total,
            status=CheckpointStatus.PENDING,
            started_at=now,
            updated_at=now,
            metadata=metadata,
        )

        if self.storage_type == "database":
            try:
                await self.db_manager.execute(
                    f"""
                    INSERT INTO {CHECKPOINTS_TABLE} (
                        id, operation, entity, batch_number, last_source_id,
                        records_processed, records_total, batch_size, status,
                        metadata, started_at, updated_at
                    ) VALUES ($1::uuid, $2, $3, 0, NULL, 0, $4, $5, $6, $7::jsonb, $8, $8)
                    """,
                    record.id,
                    record.operation,
                    record.entity,
                    records_total,
                    batch_size,
                    record.status.value,
                    json.dumps(record.metadata, default=str),
                    now,
                )
            except DatabaseError as e:
                if is_unique_violation(e):
                    raise RunAlreadyActiveError(
                        "Another run is already active",
                        context={"entity": entity, "operation": operation},
                    ) from e
                raise CheckpointError(
                    f"Failed to create checkpoint: {e}",
                    context={"entity": entity, "operation": operation},
                ) from e
        else:
            history = self._read_local(entity, operation)
            active = [r for r in history if r.status.is_active]
            if active:
                raise RunAlreadyActiveError(
                    "Another run is already active",
                    context={
                        "entity": entity,
                        "operation": operation,
                        "checkpoint_id": active[-1].id,
                    },
                )
            history.append(record)
            self._write_local(entity, operation, history)

        self.logger.info(
            "Checkpoint created",
            entity=entity,
            operation=record.operation,
            checkpoint_id=record.id,
            records_total=records_total,
        )
        return record

    async def save(self, record: CheckpointRecord, force: bool = False) -> None:
        """Persist progress of a running checkpoint; status becomes IN_PROGRESS.

        Args:
            record: Checkpoint carrying the new progress
            force: Log at info level (used for boundary saves)

        Raises:
            CheckpointError: If progress is inconsistent or persistence fails
        """
        record.status = CheckpointStatus.IN_PROGRESS
        await self._persist(record)
        log = self.logger.info if force else self.logger.debug
        log(
            "Checkpoint saved",
            entity=record.entity,
            operation=record.operation,
            checkpoint_id=record.id,
            batch_number=record.batch_number,
            last_source_id=record.last_source_id,
            records_processed=record.records_processed,
        )

    async def complete(self, record: CheckpointRecord, stats: Optional[RunStats] = None) -> None:
        """Mark the run COMPLETED.

        Raises:
            CheckpointError: If persistence fails
        """
        record.status = CheckpointStatus.COMPLETED
        record.completed_at = self.clock()
        record.error_message = None
        if stats is not None:
            record.metadata["stats"] = stats.snapshot()
        await self._persist(record)
        self.logger.info(
            "Checkpoint completed",
            entity=record.entity,
            operation=record.operation,
            checkpoint_id=record.id,
            records_processed=record.records_processed,
        )

    async def fail(
        self,
        record: CheckpointRecord,
        error: Any,
        stats: Optional[RunStats] = None,
    ) -> None:
        """Mark the run FAILED, recording the error.

        Raises:
            CheckpointError: If persistence fails
        """
        record.status = CheckpointStatus.FAILED
        record.completed_at = self.clock()
        record.error_message = str(error)
        if stats is not None:
            record.metadata["stats"] = stats.snapshot()
        await self._persist(record)
        self.logger.warning(
            "Checkpoint marked failed",
            entity=record.entity,
            operation=record.operation,
            checkpoint_id=record.id,
            error=record.error_message,
        )

    async def pause(
        self,
        record: CheckpointRecord,
        reason: str = "pause requested",
        stats: Optional[RunStats] = None,
    ) -> None:
        """Mark the run PAUSED.

        Raises:
            CheckpointError: If persistence fails
        """
        record.status = CheckpointStatus.PAUSED
        record.metadata["pause_reason"] = reason
        if stats is not None:
            record.metadata["stats"] = stats.snapshot()
        await self._persist(record)
        self.logger.info(
            "Checkpoint paused",
            entity=record.entity,
            operation=record.operation,
            checkpoint_id=record.id,
            reason=reason,
        )

    async def list_checkpoints(
        self,
        entity: str,
        operation: Optional[str] = None,
        status: Optional[CheckpointStatus] = None,
    ) -> list[CheckpointRecord]:
        """List checkpoints of an entity, newest first.

        Raises:
            CheckpointError: If checkpoint load fails
        """
        await self.ensure_schema()

        if self.storage_type == "database":
            conditions = ["entity = $1"]
            params: list[Any] = [entity]
            if operation is not None:
                params.append(operation)
                conditions.append(f"operation = ${len(params)}")
            if status is not None:
                params.append(CheckpointStatus(status).value)
                conditions.append(f"status = ${len(params)}")
            try:
                rows = await self.db_manager.fetch(
                    f"SELECT * FROM {CHECKPOINTS_TABLE} WHERE {' AND '.join(conditions)} "
                    "ORDER BY started_at DESC",
                    *params,
                )
            except DatabaseError as e:
                raise CheckpointError(
                    f"Failed to list checkpoints: {e}",
                    context={"entity": entity},
                ) from e
            return [self._from_row(row) for row in rows]

        records = [
            record
            for file_operation, history in self._iter_local(entity)
            if operation is None or file_operation == operation
            for record in history
        ]
        if status is not None:
            records = [r for r in records if r.status == CheckpointStatus(status)]
        return sorted(
            records,
            key=lambda r: r.started_at.timestamp() if r.started_at else 0.0,
            reverse=True,
        )

    async def cleanup_old(
        self,
        older_than_days: Optional[int] = None,
        entity: Optional[str] = None,
    ) -> int:
        """Delete COMPLETED and FAILED checkpoints not updated for ``older_than_days``.

        Returns:
            Number of checkpoints removed

        Raises:
            CheckpointError: If cleanup fails
        """
        await self.ensure_schema()

        days = self.retention_days if older_than_days is None else older_than_days
        cutoff = self.clock() - timedelta(days=days)
        terminal = (CheckpointStatus.COMPLETED, CheckpointStatus.FAILED)

        if self.storage_type == "database":
            query = (
                f"DELETE FROM {CHECKPOINTS_TABLE} "
                "WHERE status IN ('completed', 'failed') AND updated_at < $1"
            )
            params: list[Any] = [cutoff]
            if entity is not None:
                query += " AND entity = $2"
                params.append(entity)
            try:
                rows = await self.db_manager.fetch(query + " RETURNING id", *params)
            except DatabaseError as e:
                raise CheckpointError(f"Failed to clean up checkpoints: {e}") from e
            removed = len(rows)
        else:
            removed = 0
            for file_entity, file_operation, history in self._iter_all_local():
                if entity is not None and file_entity != entity:
                    continue
                kept = [
                    r
                    for r in history
                    if not (r.status in terminal and r.updated_at and r.updated_at < cutoff)
                ]
                if len(kept) != len(history):
                    removed += len(history) - len(kept)
                    self._write_local(file_entity, file_operation, kept)

        self.logger.info(
            "Old checkpoints cleaned up",
            removed=removed,
            older_than_days=days,
            entity=entity,
        )
        return removed

    async def validate_integrity(self, entity: Optional[str] = None) -> dict[str, Any]:
        """Look for inconsistent checkpoints.

        Reports processed counts above the total, in-progress checkpoints
        untouched for more than four hours, and completed checkpoints
        without a completion time.

        Returns:
            ``{"valid": bool, "issues": [str, ...]}``

        Raises:
            CheckpointError: If checkpoints cannot be loaded
        """
        await self.ensure_schema()

        if self.storage_type == "database":
            query = f"SELECT * FROM {CHECKPOINTS_TABLE}"
            params: list[Any] = []
            if entity is not None:
                query += " WHERE entity = $1"
                params.append(entity)
            try:
                rows = await self.db_manager.fetch(query, *params)
            except DatabaseError as e:
                raise CheckpointError(f"Failed to validate checkpoints: {e}") from e
            records = [self._from_row(row) for row in rows]
        else:
            records = [
                record
                for file_entity, _, history in self._iter_all_local()
                if entity is None or file_entity == entity
                for record in history
            ]

        now = self.clock()
        issues: list[str] = []
        for record in records:
            if record.records_total is not None and record.records_processed > record.records_total:
                issues.append(f"Checkpoint {record.id}: processed count exceeds total count")
            if (
                record.status == CheckpointStatus.IN_PROGRESS
                and record.updated_at is not None
                and now - record.updated_at > INTEGRITY_STALE_AFTER
            ):
                issues.append(f"Checkpoint {record.id}: stale in-progress checkpoint")
            if record.status == CheckpointStatus.COMPLETED and record.completed_at is None:
                issues.append(f"Checkpoint {record.id}: completed without completion time")

        if issues:
            self.logger.warning("Checkpoint integrity issues found", issues=len(issues))
        return {"valid": not issues, "issues": issues}

    async def _persist(self, record: CheckpointRecord) -> None:
        """Write the full state of an existing checkpoint.

        Raises:
            CheckpointError: If the record is inconsistent or persistence fails
        """
        if record.id is None:
            raise CheckpointError(
                "Checkpoint has no id; call begin() first",
                context={"entity": record.entity, "operation": record.operation},
            )
        if record.records_total is not None and record.records_processed > record.records_total:
            raise CheckpointError(
                "records_processed exceeds records_total",
                context={
                    "checkpoint_id": record.id,
                    "records_processed": record.records_processed,
                    "records_total": record.records_total,
                },
            )

        await self.ensure_schema()
        record.updated_at = self.clock()

        if self.storage_type == "database":
            try:
                status = await self.db_manager.execute(
                    f"""
                    UPDATE {CHECKPOINTS_TABLE} SET
                        batch_number = $2,
                        last_source_id = $3,
                        records_processed = $4,
                        records_total = $5,
                        status = $6,
                        error_message = $7,
                        metadata = $8::jsonb,
                        updated_at = $9,
                        completed_at = $10
                    WHERE id = $1::uuid
                    """,
                    record.id,
                    record.batch_number,
                    record.last_source_id,
                    record.records_processed,
                    record.records_total,
                    record.status.value,
                    record.error_message,
                    json.dumps(record.metadata, default=str),
                    record.updated_at,
                    record.completed_at,
                )
            except DatabaseError as e:
                raise CheckpointError(
                    f"Failed to save checkpoint: {e}",
                    context={"checkpoint_id": record.id, "entity": record.entity},
                ) from e
            if status == "UPDATE 0":
                raise CheckpointError(
                    "Checkpoint row not found",
                    context={"checkpoint_id": record.id, "entity": record.entity},
                )
            return

        history = self._read_local(record.entity, record.operation)
        for position, existing in enumerate(history):
            if existing.id == record.id:
                history[position] = record
                break
        else:
            raise CheckpointError(
                "Checkpoint not found in local storage",
                context={"checkpoint_id": record.id, "entity": record.entity},
            )
        self._write_local(record.entity, record.operation, history)

    @staticmethod
    def _from_row(row: Any) -> CheckpointRecord:
        try:
            return CheckpointRecord.from_dict(dict(row))
        except (KeyError, ValueError, TypeError) as e:
            raise CheckpointError(f"Invalid checkpoint data: {e}") from e

    def _local_file(self, entity: str, operation: str) -> Path:
        return self.local_path / f"{entity}__{operation}.checkpoints.json"

    def _read_local(self, entity: str, operation: str) -> list[CheckpointRecord]:
        return self._read_local_file(self._local_file(entity, operation))

    def _read_local_file(self, checkpoint_file: Path) -> list[CheckpointRecord]:
        if not checkpoint_file.exists():
            return []
        try:
            data = json.loads(checkpoint_file.read_text(encoding="utf-8"))
            return [CheckpointRecord.from_dict(item) for item in data["checkpoints"]]
        except (OSError, json.JSONDecodeError, KeyError, ValueError, TypeError) as e:
            raise CheckpointError(
                f"Failed to load checkpoint from local file: {e}",
                context={"file": str(checkpoint_file)},
            ) from e

    def _write_local(self, entity: str, operation: str, history: list[CheckpointRecord]) -> None:
        checkpoint_file = self._local_file(entity, operation)
        payload = {
            "entity": entity,
            "operation": operation,
            "checkpoints": [record.to_dict() for record in history],
        }
        tmp_name = None
        try:
            self.local_path.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                mode="w",
                delete=False,
                dir=self.local_path,
                suffix=".tmp",
                encoding="utf-8",
            ) as tmp_file:
                tmp_name = tmp_file.name
                json.dump(payload, tmp_file, indent=2, default=str)
            os.replace(tmp_name, checkpoint_file)
        except OSError as e:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise CheckpointError(
                f"Failed to save checkpoint to local file: {e}",
                context={"file": str(checkpoint_file)},
            ) from e

    def _iter_all_local(self):
        """Yield (entity, operation, history) for every local checkpoint file."""
        if not self.local_path.exists():
            return
        for checkpoint_file in sorted(self.local_path.glob("*.checkpoints.json")):
            stem = checkpoint_file.name[: -len(".checkpoints.json")]
            if "__" not in stem:
                continue
            entity, operation = stem.split("__", 1)
            yield entity, operation, self._read_local_file(checkpoint_file)

    def _iter_local(self, entity: str):
        for file_entity, operation, history in self._iter_all_local():
            if file_entity == entity:
                yield operation, history
