"""Unit tests for progress tracker."""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from migrator.models import RunStats
from migrator.progress_tracker import ProgressTracker


def test_progress_percentage() -> None:
    """Test percentage calculation."""
    tracker = ProgressTracker(quiet=True)
    assert tracker.get_progress_percentage() == 0.0

    tracker.start("offices", "differential_migration", records_total=200)
    tracker.records_processed = 50
    assert tracker.get_progress_percentage() == 25.0

    tracker.records_processed = 250
    assert tracker.get_progress_percentage() == 100.0


def test_eta() -> None:
    """Test ETA calculation."""
    tracker = ProgressTracker(quiet=True)
    tracker.start("offices", "differential_migration", records_total=1000)
    assert tracker.get_eta() is None

    tracker.records_processed = 400
    tracker.records_per_second = 100.0
    assert tracker.get_eta() == timedelta(seconds=6)

    tracker.records_processed = 1000
    assert tracker.get_eta() is None


def test_start_resets_counters() -> None:
    """Test that start seeds the count from a checkpoint."""
    tracker = ProgressTracker(quiet=True)
    tracker.batches_completed = 7

    tracker.start("offices", "differential_migration", records_total=100, initial_records_processed=40)

    assert tracker.records_processed == 40
    assert tracker.initial_records_from_checkpoint == 40
    assert tracker.batches_completed == 0


@pytest.mark.asyncio
async def test_update_notifies_sync_and_async_listeners() -> None:
    """Test listener fan-out."""
    tracker = ProgressTracker(quiet=True)
    sync_listener = MagicMock()
    async_listener = AsyncMock()
    tracker.add_listener(sync_listener)
    tracker.add_listener(async_listener)
    tracker.start("offices", "differential_migration", records_total=100)
    stats = RunStats()

    await tracker.update(records_processed=20, batches_completed=2, batch_index=1, stats=stats)

    sync_listener.assert_called_once_with(20, 100, 1, stats)
    async_listener.assert_awaited_once_with(20, 100, 1, stats)
    assert tracker.records_processed == 20
    assert tracker.batches_completed == 2


@pytest.mark.asyncio
async def test_listener_failure_is_logged() -> None:
    """Test that a failing listener does not stop the others."""
    logger = MagicMock()
    tracker = ProgressTracker(quiet=True, logger=logger)
    failing = MagicMock(side_effect=RuntimeError("listener down"))
    failing.__name__ = "failing"
    healthy = MagicMock()
    tracker.add_listener(failing)
    tracker.add_listener(healthy)
    tracker.start("offices", "differential_migration")

    await tracker.update(records_processed=5, batches_completed=1, batch_index=0, stats=RunStats())

    healthy.assert_called_once()
    logger.warning.assert_called_once_with(
        "Progress listener failed", listener="failing", error="listener down"
    )


def test_remove_listener() -> None:
    """Test listener removal."""
    tracker = ProgressTracker(quiet=True)
    listener = MagicMock()
    tracker.add_listener(listener)

    tracker.remove_listener(listener)
    tracker.remove_listener(listener)

    assert tracker.listeners == []


def test_finish_logs_final_line() -> None:
    """Test final progress line."""
    logger = MagicMock()
    tracker = ProgressTracker(logger=logger)
    tracker.finish("completed")
    logger.info.assert_not_called()

    tracker.start("offices", "differential_migration", records_total=10)
    tracker.finish("completed")

    assert logger.info.call_args[0][0] == "Run completed"
