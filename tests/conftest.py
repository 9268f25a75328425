"""Pytest configuration and shared fixtures."""

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from prometheus_client import CollectorRegistry

from migrator.checkpoint import CheckpointManager
from migrator.database import DatabaseManager
from migrator.metrics import MigratorMetrics


class FakeClock:
    """Controllable UTC clock for staleness and retention tests."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    """Create a controllable clock."""
    return FakeClock()


@pytest.fixture
def connection() -> MagicMock:
    """Connection handed out by the mocked transaction."""
    return MagicMock(name="connection")


@pytest.fixture
def mock_db(connection: MagicMock) -> MagicMock:
    """Create a mocked DatabaseManager."""
    db = MagicMock(spec=DatabaseManager)
    db.execute = AsyncMock(return_value="CREATE TABLE")
    db.executemany = AsyncMock()
    db.fetch = AsyncMock(return_value=[])
    db.fetchrow = AsyncMock(return_value=None)
    db.fetchval = AsyncMock(return_value=None)

    @asynccontextmanager
    async def transaction():
        yield connection

    db.transaction = MagicMock(side_effect=transaction)
    return db


@pytest.fixture
def checkpoint_dir(tmp_path: Path) -> Path:
    """Directory for local checkpoint files."""
    return tmp_path / "checkpoints"


@pytest.fixture
def local_checkpoints(checkpoint_dir: Path, clock: FakeClock) -> CheckpointManager:
    """Create a checkpoint manager with local storage."""
    return CheckpointManager(storage_type="local", local_path=checkpoint_dir, clock=clock)


@pytest.fixture
def registry() -> CollectorRegistry:
    """Create an isolated Prometheus registry."""
    return CollectorRegistry()


@pytest.fixture
def metrics(registry: CollectorRegistry) -> MigratorMetrics:
    """Create metrics bound to an isolated registry."""
    return MigratorMetrics(registry=registry)
