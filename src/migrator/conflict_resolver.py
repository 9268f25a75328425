"""Reconciliation of detected differentials, with row backups."""

import asyncio
import json
import time
from collections.abc import Awaitable
from typing import Any, Callable, Optional

import asyncpg
import structlog

from migrator.config import ResolutionOptions
from migrator.database import DatabaseManager
from migrator.differentials import DifferentialStore
from migrator.exceptions import DatabaseError, ResolutionError
from migrator.metrics import MigratorMetrics
from migrator.models import (
    ComparisonType,
    Differential,
    ResolutionResult,
    ResolutionStrategy,
)
from utils import chunked, safe_identifier
from utils.logging import get_logger
from utils.retry import RetryConfig, retry_async

BACKUPS_TABLE = "migration_backups"

_SCHEMA_SQL = f"""
CREATE TABLE IF NOT EXISTS {BACKUPS_TABLE} (
    id BIGSERIAL PRIMARY KEY,
    backup_id TEXT NOT NULL,
    differential_id UUID,
    target_table TEXT NOT NULL,
    generated_id TEXT NOT NULL,
    row_data JSONB NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS migration_backups_backup_id_idx ON {BACKUPS_TABLE} (backup_id);
"""

# handler(entity_type, legacy_ids, connection) -> rows inserted
MissingHandler = Callable[[str, list[str], asyncpg.Connection], Awaitable[int]]


def _affected(status: str) -> int:
    """Row count from a command status such as ``UPDATE 3``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0


class ConflictResolver:
    """Applies resolution strategies to differentials.

    Each differential is resolved in its own transaction: row backup, target
    mutation and the ``resolved`` flag commit together or not at all.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        store: DifferentialStore,
        missing_handler: Optional[MissingHandler] = None,
        options: Optional[ResolutionOptions] = None,
        metrics: Optional[MigratorMetrics] = None,
        logger: Optional[structlog.BoundLogger] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Initialize conflict resolver.

        Args:
            db_manager: Target database (also holding differentials and backups)
            store: Differential store
            missing_handler: Inserts missing records; without one, SOURCE_WINS
                cannot resolve missing-record differentials
            options: Default resolution options
            metrics: Optional metrics collector
            logger: Optional logger instance
            sleep: Awaitable sleep used for retry backoff
        """
        self.db_manager = db_manager
        self.store = store
        self.missing_handler = missing_handler
        self.options = options or ResolutionOptions()
        self.metrics = metrics
        self.logger = logger or get_logger("conflict_resolver")
        self._sleep = sleep
        self._schema_ready = False

    async def ensure_schema(self) -> None:
        """Create the backup table if it does not exist.

        Raises:
            ResolutionError: If the table cannot be created
        """
        if self._schema_ready:
            return
        try:
            await self.db_manager.execute(_SCHEMA_SQL)
        except DatabaseError as e:
            raise ResolutionError(
                f"Failed to create backup table: {e}",
                context={"table": BACKUPS_TABLE},
            ) from e
        self._schema_ready = True

    async def resolve(
        self,
        differentials: list[Differential],
        strategy: Optional[ResolutionStrategy] = None,
        options: Optional[ResolutionOptions] = None,
    ) -> list[ResolutionResult]:
        """Resolve differentials one by one.

        Args:
            differentials: Differentials to resolve
            strategy: Strategy for all of them (None uses each differential's own)
            options: Resolution options (defaults to the resolver's)

        Returns:
            One result per differential, in input order
        """
        opts = options or self.options
        if opts.enable_backups and not opts.dry_run:
            await self.ensure_schema()

        results: list[ResolutionResult] = []
        sub_batches = list(chunked(differentials, opts.sub_batch_size))
        for number, sub_batch in enumerate(sub_batches, start=1):
            self.logger.info(
                "Resolving sub-batch",
                sub_batch=number,
                sub_batches=len(sub_batches),
                differentials=len(sub_batch),
            )
            for differential in sub_batch:
                effective = ResolutionStrategy(strategy or differential.resolution_strategy)
                result = await self._resolve_one(differential, effective, opts)
                results.append(result)

                if self.metrics is not None:
                    self.metrics.record_resolution(effective.value, self._outcome(result))

        summary = self.summarize(results)
        self.logger.info(
            "Resolution finished",
            total=summary["total"],
            resolved=summary["resolved"],
            pending_review=summary["pending_review"],
            failed=summary["failed"],
            records_affected=summary["records_affected"],
            dry_run=opts.dry_run,
        )
        return results

    async def resolve_all_unresolved(
        self,
        strategy: Optional[ResolutionStrategy] = None,
        entity_type: Optional[str] = None,
        options: Optional[ResolutionOptions] = None,
    ) -> list[ResolutionResult]:
        """Load every unresolved differential from the store and resolve it."""
        pending = await self.store.list_differentials(resolved=False, entity_type=entity_type)
        self.logger.info(
            "Resolving unresolved differentials",
            count=len(pending),
            entity_type=entity_type,
            strategy=strategy.value if strategy else None,
        )
        return await self.resolve(pending, strategy, options)

    @staticmethod
    def summarize(results: list[ResolutionResult]) -> dict[str, Any]:
        """Totals per outcome, pending manual reviews and errors."""
        return {
            "total": len(results),
            "resolved": sum(1 for r in results if r.resolved),
            "pending_review": sum(1 for r in results if r.pending_review and not r.dry_run),
            "dry_run": sum(1 for r in results if r.dry_run),
            "failed": sum(1 for r in results if not r.success),
            "records_affected": sum(r.records_affected for r in results),
            "pending_review_ids": [
                r.differential_id for r in results if r.pending_review and not r.dry_run
            ],
            "errors": [
                {"differential_id": r.differential_id, "error": r.error}
                for r in results
                if not r.success
            ],
        }

    async def _resolve_one(
        self,
        differential: Differential,
        strategy: ResolutionStrategy,
        opts: ResolutionOptions,
    ) -> ResolutionResult:
        log = self.logger.bind(
            differential_id=differential.id,
            comparison_type=differential.comparison_type.value,
            strategy=strategy.value,
        )

        def result(**kwargs: Any) -> ResolutionResult:
            return ResolutionResult(
                differential_id=differential.id,
                strategy=strategy,
                comparison_type=differential.comparison_type,
                **kwargs,
            )

        if differential.resolved:
            return result(success=True, resolved=True)

        if strategy == ResolutionStrategy.MANUAL_REVIEW:
            log.info("Differential left for manual review", record_count=differential.record_count)
            return result(success=True, resolved=False)

        if opts.dry_run:
            affected = (
                differential.record_count if strategy == ResolutionStrategy.SOURCE_WINS else 0
            )
            log.info("Dry run, no changes written", records_affected=affected)
            return result(success=True, resolved=False, records_affected=affected, dry_run=True)

        if differential.id is None:
            return result(success=False, resolved=False, error="Differential was never persisted")

        backup_id = None
        if (
            opts.enable_backups
            and strategy == ResolutionStrategy.SOURCE_WINS
            and differential.comparison_type != ComparisonType.MISSING
        ):
            backup_id = f"backup_{differential.id}_{int(time.time() * 1000)}"

        try:
            affected = await retry_async(
                self._apply,
                differential,
                strategy,
                opts,
                backup_id,
                config=RetryConfig(
                    max_attempts=opts.max_retries,
                    initial_delay=opts.retry_delay,
                    retryable_exceptions=(DatabaseError,),
                ),
                logger=log,
                sleep=self._sleep,
            )
        except Exception as e:
            log.error("Differential resolution failed", error=str(e))
            return result(success=False, resolved=False, backup_id=None, error=str(e))

        log.info("Differential resolved", records_affected=affected, backup_id=backup_id)
        return result(success=True, resolved=True, records_affected=affected, backup_id=backup_id)

    async def _apply(
        self,
        differential: Differential,
        strategy: ResolutionStrategy,
        opts: ResolutionOptions,
        backup_id: Optional[str],
    ) -> int:
        """Mutate the target and mark the differential resolved in one transaction."""
        async with self.db_manager.transaction() as conn:
            affected = 0
            if strategy == ResolutionStrategy.SOURCE_WINS:
                affected = await self._apply_source_wins(differential, opts, backup_id, conn)

            resolved = await self.store.mark_resolved(
                differential.id,
                connection=conn,
                resolution_details={
                    "strategy": strategy.value,
                    "records_affected": affected,
                    "backup_id": backup_id,
                },
            )
            if not resolved:
                raise ResolutionError(
                    "Differential already resolved",
                    context={"differential_id": differential.id},
                )
            return affected

    async def _apply_source_wins(
        self,
        differential: Differential,
        opts: ResolutionOptions,
        backup_id: Optional[str],
        conn: asyncpg.Connection,
    ) -> int:
        table = safe_identifier(differential.target_table)
        id_column = safe_identifier(opts.target_id_column)
        generated_ids = differential.comparison_criteria.get("generated_ids", {})

        if differential.comparison_type == ComparisonType.MISSING:
            if self.missing_handler is None:
                raise ResolutionError(
                    "No missing-record handler configured",
                    context={"differential_id": differential.id},
                )
            inserted = 0
            for legacy_ids in chunked(differential.legacy_ids, opts.sub_batch_size):
                inserted += await self.missing_handler(differential.entity_type, legacy_ids, conn)
            return inserted

        targets = [generated_ids[legacy] for legacy in differential.legacy_ids if legacy in generated_ids]
        if len(targets) != len(differential.legacy_ids):
            raise ResolutionError(
                "Differential references legacy ids without generated ids",
                context={"differential_id": differential.id},
            )

        if backup_id is not None:
            for chunk in chunked(targets, opts.sub_batch_size):
                await self._backup_rows(backup_id, differential, table, id_column, chunk, conn)

        if differential.comparison_type == ComparisonType.DELETED:
            deleted = 0
            for chunk in chunked(targets, opts.sub_batch_size):
                status = await self.db_manager.execute(
                    f"DELETE FROM {table} WHERE {id_column}::text = ANY($1::text[])",
                    chunk,
                    connection=conn,
                )
                deleted += _affected(status)
            return deleted

        return await self._update_conflicts(differential, opts, table, id_column, conn)

    async def _update_conflicts(
        self,
        differential: Differential,
        opts: ResolutionOptions,
        table: str,
        id_column: str,
        conn: asyncpg.Connection,
    ) -> int:
        """Write source values of disagreeing fields; protected columns are never written."""
        generated_ids = differential.comparison_criteria.get("generated_ids", {})
        differences = differential.field_differences
        protected = set(opts.protected_columns) | {opts.target_id_column}
        updated = 0

        for legacy in differential.legacy_ids:
            values = {
                field: change["source"]
                for field, change in differences.get(legacy, {}).items()
                if field not in protected
            }
            if not values:
                continue
            assignments = ", ".join(
                f"{safe_identifier(field)} = r.{safe_identifier(field)}" for field in sorted(values)
            )
            # jsonb_populate_record casts each JSON value to the column's type
            status = await self.db_manager.execute(
                f"""
                UPDATE {table} AS t SET {assignments}
                FROM jsonb_populate_record(NULL::{table}, $2::jsonb) AS r
                WHERE t.{id_column}::text = $1
                """,
                generated_ids[legacy],
                json.dumps(values),
                connection=conn,
            )
            updated += _affected(status)
        return updated

    async def _backup_rows(
        self,
        backup_id: str,
        differential: Differential,
        table: str,
        id_column: str,
        generated_ids: list[str],
        conn: asyncpg.Connection,
    ) -> None:
        await self.db_manager.execute(
            f"""
            INSERT INTO {BACKUPS_TABLE} (
                backup_id, differential_id, target_table, generated_id, row_data
            )
            SELECT $1, $2::uuid, $3, t.{id_column}::text, to_jsonb(t)
            FROM {table} AS t
            WHERE t.{id_column}::text = ANY($4::text[])
            """,
            backup_id,
            differential.id,
            differential.target_table,
            generated_ids,
            connection=conn,
        )

    async def list_backup(self, backup_id: str) -> list[dict[str, Any]]:
        """Rows saved under ``backup_id``.

        Raises:
            ResolutionError: If the backup cannot be read
        """
        await self.ensure_schema()
        try:
            rows = await self.db_manager.fetch(
                f"SELECT generated_id, target_table, row_data, created_at FROM {BACKUPS_TABLE} "
                "WHERE backup_id = $1 ORDER BY id",
                backup_id,
            )
        except DatabaseError as e:
            raise ResolutionError(
                f"Failed to read backup: {e}",
                context={"backup_id": backup_id},
            ) from e
        return [
            {
                "generated_id": row["generated_id"],
                "target_table": row["target_table"],
                "row_data": (
                    json.loads(row["row_data"])
                    if isinstance(row["row_data"], str)
                    else row["row_data"]
                ),
                "created_at": row["created_at"],
            }
            for row in rows
        ]

    @staticmethod
    def _outcome(result: ResolutionResult) -> str:
        if not result.success:
            return "failed"
        if result.dry_run:
            return "dry_run"
        return "resolved" if result.resolved else "pending_review"
