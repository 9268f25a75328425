"""Checkpointed, resumable batch processing engine."""

import asyncio
import math
import time
from collections.abc import Awaitable, Sequence
from typing import Any, Callable, Optional

import structlog

from migrator.checkpoint import CheckpointManager
from migrator.config import EngineOptions
from migrator.database import is_unique_violation
from migrator.exceptions import (
    BatchTimeoutError,
    CheckpointError,
    RecordValidationError,
    RunAlreadyActiveError,
)
from migrator.metrics import MigratorMetrics
from migrator.models import (
    BatchError,
    BatchResult,
    CheckpointRecord,
    CheckpointStatus,
    OperationType,
    RunStats,
    utcnow,
)
from migrator.progress_tracker import ProgressTracker
from utils.logging import get_logger, log_context
from utils.retry import BackoffSchedule, RetryConfig

__all__ = ["BatchEngine", "BatchProcessor", "EngineOptions", "item_processor"]

# processor(batch, batch_index, total_batches) -> BatchResult
BatchProcessor = Callable[[list[Any], int, int], Awaitable[Optional[BatchResult]]]


def item_processor(
    handler: Callable[[Any], Awaitable[Any]],
    duplicate_check: Optional[Callable[[Any], Awaitable[Any]]] = None,
) -> BatchProcessor:
    """Build a batch processor from a per-item coroutine.

    Per item: a ``RecordValidationError`` skips the item and records it; a
    unique violation counts as success, since the item was already written
    by an earlier attempt. Any other exception propagates and fails the
    attempt, so the whole batch is retried.

    Args:
        handler: ``await handler(item)`` migrates one item
        duplicate_check: Optional ``await duplicate_check(item)``; a truthy
            result marks the item as already migrated and it is skipped

    Returns:
        Batch processor usable with :meth:`BatchEngine.run`
    """

    async def process(batch: list[Any], batch_index: int, total_batches: int) -> BatchResult:
        result = BatchResult(attempted=len(batch), batch_index=batch_index)
        for offset, item in enumerate(batch):
            if duplicate_check is not None and await duplicate_check(item):
                result.skipped += 1
                continue
            try:
                value = await handler(item)
            except RecordValidationError as e:
                result.skipped += 1
                result.errors.append(
                    BatchError(batch_index=batch_index, error=str(e), item_index=offset, item=item)
                )
                continue
            except Exception as e:
                if not is_unique_violation(e):
                    raise
                result.succeeded += 1
                continue
            result.succeeded += 1
            if value is not None:
                result.results.append(value)
        return result

    return process


class BatchEngine:
    """Runs a batch processor over a list of items with retries and checkpoints.

    The input is split into consecutive batches. Each committed batch advances
    a cursor (the last processed index) that is persisted through the
    checkpoint manager, so a failed, paused or killed run resumes right after
    the last committed batch.
    """

    def __init__(
        self,
        checkpoint_manager: Optional[CheckpointManager] = None,
        options: Optional[EngineOptions] = None,
        progress_tracker: Optional[ProgressTracker] = None,
        metrics: Optional[MigratorMetrics] = None,
        logger: Optional[structlog.BoundLogger] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Initialize batch engine.

        Args:
            checkpoint_manager: Checkpoint store (checkpointing is off without one)
            options: Default engine options
            progress_tracker: Progress tracker (a default tracker if None)
            metrics: Optional metrics collector
            logger: Optional logger instance
            sleep: Awaitable sleep used for retry backoff
        """
        self.checkpoint_manager = checkpoint_manager
        self.options = options or EngineOptions()
        self.progress_tracker = progress_tracker or ProgressTracker()
        self.metrics = metrics
        self.logger = logger or get_logger("batch_engine")
        self._sleep = sleep
        self._pause_event = asyncio.Event()
        self._pause_reason = "pause requested"

    def request_pause(self, reason: str = "pause requested") -> None:
        """Ask the running engine to stop at the next batch boundary."""
        self._pause_reason = reason
        self._pause_event.set()
        self.logger.info("Pause requested", reason=reason)

    @property
    def pause_requested(self) -> bool:
        return self._pause_event.is_set()

    async def run(
        self,
        items: Sequence[Any],
        processor: BatchProcessor,
        options: Optional[EngineOptions] = None,
        *,
        entity: str,
        operation: str = OperationType.DIFFERENTIAL_MIGRATION.value,
    ) -> RunStats:
        """Process ``items`` in batches.

        Args:
            items: Items to process; must be the same ordered set on resume
            processor: Batch processor, idempotent at batch granularity
            options: Engine options for this run (defaults to the engine's)
            entity: Entity name, part of the checkpoint key
            operation: Operation name, part of the checkpoint key

        Returns:
            Run statistics with the terminal status

        Raises:
            RunAlreadyActiveError: If a live run holds the checkpoint
            CheckpointError: If checkpoint persistence fails
        """
        opts = options or self.options
        operation = str(getattr(operation, "value", operation))
        with log_context(entity=entity, operation=operation):
            return await self._run(items, processor, opts, entity, operation)

    async def _run(
        self,
        items: Sequence[Any],
        processor: BatchProcessor,
        opts: EngineOptions,
        entity: str,
        operation: str,
    ) -> RunStats:
        self._pause_event.clear()
        total = len(items)
        total_batches = math.ceil(total / opts.batch_size) if total else 0
        log = self.logger.bind(entity=entity, operation=operation)

        record, stats, start_index = await self._start(entity, operation, total, opts, log)

        self.progress_tracker.start(
            entity=entity,
            operation=operation,
            records_total=total,
            batches_total=total_batches,
            initial_records_processed=start_index,
        )

        specs = [
            (start // opts.batch_size, start, min(start + opts.batch_size, total))
            for start in range(start_index, total, opts.batch_size)
        ]
        run_context = _RunContext(
            entity=entity,
            operation=operation,
            options=opts,
            record=record,
            stats=stats,
            total=total,
            total_batches=total_batches,
            log=log,
        )

        try:
            await self._process(items, processor, specs, run_context)
        except CheckpointError as e:
            await self._mark_failed(run_context, e)
            raise
        except Exception as e:
            log.error("Engine error", error=str(e), exc_info=True)
            await self._mark_failed(run_context, e)
            raise

        return await self._finish(run_context, remaining=len(specs) - run_context.committed)

    async def _start(
        self,
        entity: str,
        operation: str,
        total: int,
        opts: EngineOptions,
        log: structlog.BoundLogger,
    ) -> tuple[Optional[CheckpointRecord], RunStats, int]:
        """Load or create the checkpoint and the starting cursor."""
        manager = self.checkpoint_manager
        if not opts.enable_checkpointing or manager is None:
            return None, RunStats(max_errors=opts.max_reported_errors), 0

        latest = await manager.get_latest(entity, operation)
        now = manager.clock()
        stale_after = opts.stale_after_seconds

        if (
            latest is not None
            and latest.status.is_active
            and not manager.is_stale(latest, now, stale_after)
        ):
            raise RunAlreadyActiveError(
                "A run for this entity and operation is still active",
                context={
                    "entity": entity,
                    "operation": operation,
                    "checkpoint_id": latest.id,
                    "updated_at": latest.updated_at.isoformat() if latest.updated_at else None,
                },
            )

        if latest is not None and manager.can_resume(latest, now, stale_after):
            start_index = min(latest.last_processed_index + 1, total)
            stats = RunStats.from_snapshot(
                latest.metadata.get("stats", {}), max_errors=opts.max_reported_errors
            )
            stats.last_processed_index = start_index - 1
            stats.resumed_from_index = start_index
            record = latest
            record.records_total = total
            record.error_message = None
            record.completed_at = None
            record.metadata.pop("pause_reason", None)
            if record.batch_size != opts.batch_size:
                log.warning(
                    "Batch size changed since checkpoint, resuming from item index",
                    checkpoint_batch_size=record.batch_size,
                    batch_size=opts.batch_size,
                )
                record.batch_size = opts.batch_size
            log.info(
                "Resuming from checkpoint",
                checkpoint_id=record.id,
                previous_status=latest.status.value,
                start_index=start_index,
                records_processed=record.records_processed,
            )
        else:
            record = await manager.begin(
                entity,
                operation,
                batch_size=opts.batch_size,
                records_total=total,
                metadata={"options": opts.model_dump()},
            )
            stats = RunStats(max_errors=opts.max_reported_errors)
            start_index = 0

        stats.checkpoint_id = record.id
        record.metadata["stats"] = stats.snapshot()
        await manager.save(record, force=True)
        return record, stats, start_index

    async def _process(
        self,
        items: Sequence[Any],
        processor: BatchProcessor,
        specs: list[tuple[int, int, int]],
        ctx: "_RunContext",
    ) -> None:
        """Run batches with bounded concurrency, committing results in order."""
        running: dict[asyncio.Task, int] = {}
        finished: dict[int, BatchResult] = {}
        next_start = 0

        try:
            while True:
                while (
                    next_start < len(specs)
                    and len(running) < ctx.options.parallelism
                    and not ctx.aborted
                    and not self._pause_event.is_set()
                ):
                    batch_index, start, end = specs[next_start]
                    task = asyncio.create_task(
                        self._run_batch(
                            processor,
                            list(items[start:end]),
                            batch_index,
                            start,
                            ctx,
                        )
                    )
                    running[task] = next_start
                    next_start += 1

                if not running:
                    break

                done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    finished[running.pop(task)] = task.result()

                while not ctx.aborted and ctx.committed in finished:
                    result = finished.pop(ctx.committed)
                    if result.batch_failed and not ctx.options.continue_on_error:
                        self._record_abort(result, ctx)
                        break
                    await self._commit(result, ctx)
        finally:
            for task in running:
                task.cancel()
            if running:
                await asyncio.gather(*running, return_exceptions=True)

    async def _run_batch(
        self,
        processor: BatchProcessor,
        batch: list[Any],
        batch_index: int,
        start: int,
        ctx: "_RunContext",
    ) -> BatchResult:
        """Run one batch with retries; never raises for processor failures."""
        opts = ctx.options
        schedule = BackoffSchedule(
            RetryConfig(
                max_attempts=opts.max_retries,
                initial_delay=opts.retry_delay,
                max_delay=opts.max_retry_delay,
            )
        )
        started = time.monotonic()
        last_error: Optional[Exception] = None

        for attempt in range(1, opts.max_retries + 1):
            try:
                call = processor(batch, batch_index, ctx.total_batches)
                if opts.batch_timeout is not None:
                    try:
                        result = await asyncio.wait_for(call, timeout=opts.batch_timeout)
                    except asyncio.TimeoutError as e:
                        raise BatchTimeoutError(
                            f"Batch {batch_index} timed out after {opts.batch_timeout}s",
                            context={"batch_index": batch_index, "attempt": attempt},
                        ) from e
                else:
                    result = await call
            except Exception as e:
                last_error = e
                if attempt >= opts.max_retries:
                    break
                delay = schedule.next_delay(attempt)
                ctx.log.warning(
                    "Batch attempt failed, retrying",
                    batch_index=batch_index,
                    attempt=attempt,
                    max_attempts=opts.max_retries,
                    delay=delay,
                    error=str(e),
                )
                if self.metrics is not None:
                    self.metrics.record_retry(ctx.entity, ctx.operation)
                await self._sleep(delay)
                continue

            if result is None:
                result = BatchResult(attempted=len(batch), succeeded=len(batch))
            result.batch_index = batch_index
            result.start_index = start
            result.attempted = len(batch)
            result.attempts = attempt
            result.retry_delays = list(schedule.delays)
            result.duration = time.monotonic() - started
            return result

        ctx.log.error(
            "Batch failed after all retries",
            batch_index=batch_index,
            attempts=opts.max_retries,
            error=str(last_error),
        )
        result = BatchResult.failure(
            batch_index,
            len(batch),
            BatchError(
                batch_index=batch_index,
                error=f"{type(last_error).__name__}: {last_error}",
                retry_count=opts.max_retries - 1,
            ),
        )
        result.start_index = start
        result.attempts = opts.max_retries
        result.retry_delays = list(schedule.delays)
        result.duration = time.monotonic() - started
        return result

    async def _commit(self, result: BatchResult, ctx: "_RunContext") -> None:
        """Fold a batch into the stats and advance the cursor."""
        stats = ctx.stats
        stats.fold(result)
        ctx.committed += 1

        if self.metrics is not None:
            self.metrics.record_batch(
                ctx.entity,
                ctx.operation,
                succeeded=result.succeeded,
                failed=result.failed,
                skipped=result.skipped,
                duration_seconds=result.duration,
                batch_failed=result.batch_failed,
            )
            self.metrics.set_run_progress(
                ctx.entity, ctx.operation, stats.last_processed_index + 1, ctx.total
            )

        ctx.log.debug(
            "Batch committed",
            batch_index=result.batch_index,
            succeeded=result.succeeded,
            failed=result.failed,
            skipped=result.skipped,
            attempts=result.attempts,
        )

        record = ctx.record
        if record is not None:
            record.batch_number += 1
            record.last_source_id = str(stats.last_processed_index)
            record.records_processed = stats.last_processed_index + 1
            if self.checkpoint_manager.should_save_checkpoint(
                record.batch_number, ctx.options.checkpoint_interval
            ):
                record.metadata["stats"] = stats.snapshot()
                await self.checkpoint_manager.save(record)
                if self.metrics is not None:
                    self.metrics.record_checkpoint_save(ctx.entity, ctx.operation)

        if ctx.committed % ctx.options.progress_reporting_interval == 0:
            await self.progress_tracker.update(
                records_processed=stats.last_processed_index + 1,
                batches_completed=ctx.committed,
                batch_index=result.batch_index,
                stats=stats,
            )

    def _record_abort(self, result: BatchResult, ctx: "_RunContext") -> None:
        """Keep the failure in the stats without advancing the cursor."""
        ctx.aborted = True
        ctx.abort_error = result.errors[0].error if result.errors else "batch failed"
        ctx.stats.batches_aborted += 1
        for error in result.errors:
            ctx.stats.add_error(error)
        if self.metrics is not None:
            self.metrics.record_batch(
                ctx.entity,
                ctx.operation,
                succeeded=0,
                failed=result.failed,
                skipped=0,
                duration_seconds=result.duration,
                batch_failed=True,
            )
        ctx.log.error(
            "Aborting run after failed batch",
            batch_index=result.batch_index,
            last_processed_index=ctx.stats.last_processed_index,
        )

    async def _finish(self, ctx: "_RunContext", remaining: int) -> RunStats:
        """Persist the terminal checkpoint state and log the summary."""
        stats = ctx.stats
        manager = self.checkpoint_manager
        record = ctx.record

        if ctx.aborted:
            stats.status = CheckpointStatus.FAILED
        elif remaining > 0:
            stats.status = CheckpointStatus.PAUSED
        else:
            stats.status = CheckpointStatus.COMPLETED
        stats.end_time = utcnow()

        if record is not None:
            record.metadata["stats"] = stats.snapshot()
            try:
                if stats.status == CheckpointStatus.FAILED:
                    await manager.fail(record, ctx.abort_error, stats)
                elif stats.status == CheckpointStatus.PAUSED:
                    await manager.pause(record, self._pause_reason, stats)
                else:
                    await manager.complete(record, stats)
            except CheckpointError as e:
                await self._mark_failed(ctx, e)
                raise

        self._pause_event.clear()
        self.progress_tracker.finish(stats.status.value)
        if self.metrics is not None:
            self.metrics.record_run_status(ctx.entity, ctx.operation, stats.status.value)

        summary = stats.summary()
        log_method = ctx.log.info if stats.status != CheckpointStatus.FAILED else ctx.log.error
        log_method(
            "Run finished",
            status=summary["status"],
            processed=summary["processed"],
            succeeded=summary["succeeded"],
            failed=summary["failed"],
            skipped=summary["skipped"],
            batches_failed=summary["batches_failed"],
            batches_aborted=summary["batches_aborted"],
            errors_total=summary["errors_total"],
            checkpoint=summary["checkpoint"],
            duration_seconds=summary["duration_seconds"],
        )
        return stats

    async def _mark_failed(self, ctx: "_RunContext", error: Exception) -> None:
        """Best-effort FAILED transition before an engine error propagates."""
        ctx.stats.status = CheckpointStatus.FAILED
        ctx.stats.end_time = utcnow()
        if self.metrics is not None:
            self.metrics.record_run_status(ctx.entity, ctx.operation, "failed")
        if ctx.record is None or ctx.record.status == CheckpointStatus.FAILED:
            return
        try:
            await self.checkpoint_manager.fail(ctx.record, error, ctx.stats)
        except CheckpointError as fail_error:
            ctx.log.error(
                "Could not mark checkpoint failed",
                checkpoint_id=ctx.record.id,
                error=str(fail_error),
                original_error=str(error),
            )


class _RunContext:
    """Mutable state of one run, shared by the engine's helpers."""

    def __init__(
        self,
        entity: str,
        operation: str,
        options: EngineOptions,
        record: Optional[CheckpointRecord],
        stats: RunStats,
        total: int,
        total_batches: int,
        log: structlog.BoundLogger,
    ) -> None:
        self.entity = entity
        self.operation = operation
        self.options = options
        self.record = record
        self.stats = stats
        self.total = total
        self.total_batches = total_batches
        self.log = log
        self.committed = 0
        self.aborted = False
        self.abort_error: Optional[str] = None
