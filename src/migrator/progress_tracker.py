"""Progress tracking, ETA calculation and progress listener fan-out."""

import inspect
import time
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import structlog

from migrator.models import RunStats
from utils.logging import get_logger

# listener(processed, total, batch_index, stats); may be sync or async
ProgressListener = Callable[[int, Optional[int], int, RunStats], Any]


class ProgressTracker:
    """Tracks progress of one engine run and notifies listeners."""

    def __init__(
        self,
        quiet: bool = False,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize progress tracker.

        Args:
            quiet: If True, do not log progress lines
            logger: Optional logger instance
        """
        self.quiet = quiet
        self.logger = logger or get_logger("progress")
        self.listeners: list[ProgressListener] = []

        self.start_time: Optional[datetime] = None
        self.entity: Optional[str] = None
        self.operation: Optional[str] = None

        self.batches_completed: int = 0
        self.batches_total: Optional[int] = None
        self.records_processed: int = 0
        self.records_total: Optional[int] = None
        self.initial_records_from_checkpoint: int = 0
        self.records_per_second: float = 0.0
        self._started_at: Optional[float] = None

    def add_listener(self, listener: ProgressListener) -> None:
        self.listeners.append(listener)

    def remove_listener(self, listener: ProgressListener) -> None:
        if listener in self.listeners:
            self.listeners.remove(listener)

    def start(
        self,
        entity: str,
        operation: str,
        records_total: Optional[int] = None,
        batches_total: Optional[int] = None,
        initial_records_processed: int = 0,
    ) -> None:
        """Start tracking progress.

        Args:
            entity: Entity being processed
            operation: Operation name
            records_total: Total items of the run (including already processed ones)
            batches_total: Total number of batches
            initial_records_processed: Items already processed before a resume
        """
        self.start_time = datetime.now(timezone.utc)
        self._started_at = time.time()
        self.entity = entity
        self.operation = operation
        self.records_total = records_total
        self.batches_total = batches_total
        self.initial_records_from_checkpoint = initial_records_processed
        self.records_processed = initial_records_processed
        self.batches_completed = 0
        self.records_per_second = 0.0

        if not self.quiet:
            self.logger.info(
                "Starting run",
                entity=entity,
                operation=operation,
                records_total=records_total,
                resumed_from=initial_records_processed or None,
            )

    async def update(
        self,
        records_processed: int,
        batches_completed: int,
        batch_index: int,
        stats: RunStats,
    ) -> None:
        """Record progress and notify listeners.

        Args:
            records_processed: Items processed so far (including checkpointed ones)
            batches_completed: Batches committed so far
            batch_index: Index of the batch that triggered the update
            stats: Current run statistics
        """
        self.records_processed = records_processed
        self.batches_completed = batches_completed

        elapsed = time.time() - (self._started_at or time.time())
        processed_this_run = records_processed - self.initial_records_from_checkpoint
        if elapsed > 0:
            self.records_per_second = processed_this_run / elapsed

        if not self.quiet:
            eta = self.get_eta()
            self.logger.info(
                "Progress",
                entity=self.entity,
                operation=self.operation,
                processed=records_processed,
                total=self.records_total,
                percentage=round(self.get_progress_percentage(), 1),
                batches=batches_completed,
                batches_total=self.batches_total,
                rate=f"{self.records_per_second:.0f} rec/s",
                eta=str(eta) if eta is not None else "N/A",
            )

        for listener in list(self.listeners):
            try:
                outcome = listener(records_processed, self.records_total, batch_index, stats)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                self.logger.warning(
                    "Progress listener failed",
                    listener=getattr(listener, "__name__", repr(listener)),
                    error=str(e),
                )

    def finish(self, status: str) -> None:
        """Log the final progress line.

        Args:
            status: Terminal status of the run
        """
        if self.quiet or not self.start_time:
            return

        elapsed = datetime.now(timezone.utc) - self.start_time
        self.logger.info(
            f"Run {status}",
            entity=self.entity,
            operation=self.operation,
            records_processed=self.records_processed,
            batches_completed=self.batches_completed,
            elapsed=str(elapsed).split(".")[0],
            average_rate=(
                f"{self.records_per_second:.0f} rec/s" if self.records_per_second > 0 else "N/A"
            ),
        )

    def get_eta(self) -> Optional[timedelta]:
        """Get estimated time remaining.

        Returns:
            Estimated time remaining, or None if cannot calculate
        """
        if (
            not self.records_total
            or self.records_per_second <= 0
            or self.records_processed >= self.records_total
        ):
            return None

        remaining = self.records_total - self.records_processed
        return timedelta(seconds=int(remaining / self.records_per_second))

    def get_progress_percentage(self) -> float:
        """Get current progress percentage.

        Returns:
            Progress percentage (0.0 to 100.0), or 0.0 if unknown
        """
        if not self.records_total:
            return 0.0
        return min(100.0, (self.records_processed / self.records_total) * 100)
