"""Unit tests for database module."""

from unittest.mock import AsyncMock, MagicMock, patch

import asyncpg
import pytest

from migrator.config import DatabaseConfig
from migrator.database import DatabaseManager, is_unique_violation
from migrator.exceptions import DatabaseError


@pytest.fixture
def db_config() -> DatabaseConfig:
    return DatabaseConfig(name="migration_state", user="migrator", password="secret")


def test_is_unique_violation() -> None:
    """Test unique violation detection through wrapping errors."""
    violation = asyncpg.UniqueViolationError("duplicate key")
    assert is_unique_violation(violation) is True

    try:
        try:
            raise violation
        except asyncpg.UniqueViolationError as e:
            raise DatabaseError("Query execution failed") from e
    except DatabaseError as wrapped:
        assert is_unique_violation(wrapped) is True

    assert is_unique_violation(DatabaseError("other")) is False


@pytest.mark.asyncio
async def test_execute_without_pool(db_config: DatabaseConfig) -> None:
    """Test that queries fail before connect()."""
    manager = DatabaseManager(db_config)

    with pytest.raises(DatabaseError, match="not initialized"):
        await manager.execute("SELECT 1")


@pytest.mark.asyncio
async def test_execute_on_given_connection(db_config: DatabaseConfig) -> None:
    """Test that a supplied connection is used instead of the pool."""
    manager = DatabaseManager(db_config)
    connection = MagicMock()
    connection.execute = AsyncMock(return_value="UPDATE 3")

    status = await manager.execute("UPDATE t SET a = $1", 1, connection=connection)

    assert status == "UPDATE 3"
    connection.execute.assert_awaited_once_with("UPDATE t SET a = $1", 1)


@pytest.mark.asyncio
async def test_query_errors_are_wrapped(db_config: DatabaseConfig) -> None:
    """Test that driver errors become DatabaseError."""
    manager = DatabaseManager(db_config)
    connection = MagicMock()
    connection.fetch = AsyncMock(side_effect=asyncpg.PostgresError("boom"))

    with pytest.raises(DatabaseError, match="Query execution failed") as exc_info:
        await manager.fetch("SELECT * FROM t", connection=connection)

    assert exc_info.value.context["database"] == "migration_state"
    assert isinstance(exc_info.value.__cause__, asyncpg.PostgresError)


@pytest.mark.asyncio
async def test_fetchone_returns_dict(db_config: DatabaseConfig) -> None:
    """Test fetchone conversion."""
    manager = DatabaseManager(db_config)
    connection = MagicMock()
    connection.fetchrow = AsyncMock(side_effect=[{"id": 1}, None])

    assert await manager.fetchone("SELECT 1", connection=connection) == {"id": 1}
    assert await manager.fetchone("SELECT 1", connection=connection) is None


@pytest.mark.asyncio
async def test_connect_failure(db_config: DatabaseConfig) -> None:
    """Test that pool creation errors are wrapped."""
    manager = DatabaseManager(db_config)

    with patch("asyncpg.create_pool", AsyncMock(side_effect=OSError("connection refused"))):
        with pytest.raises(DatabaseError, match="Failed to create connection pool"):
            await manager.connect()

    assert manager.pool is None


@pytest.mark.asyncio
async def test_connect_missing_password_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Test that a missing password variable is reported as a database error."""
    monkeypatch.delenv("MIGRATOR_MISSING_PASSWORD", raising=False)
    manager = DatabaseManager(
        DatabaseConfig(name="db", user="u", password_env="MIGRATOR_MISSING_PASSWORD")
    )

    with pytest.raises(DatabaseError, match="MIGRATOR_MISSING_PASSWORD"):
        await manager.connect()


@pytest.mark.asyncio
async def test_health_check_without_pool(db_config: DatabaseConfig) -> None:
    """Test health check before connect()."""
    manager = DatabaseManager(db_config)

    assert await manager.health_check() is False


@pytest.mark.asyncio
async def test_transaction_without_pool(db_config: DatabaseConfig) -> None:
    """Test that transactions require a pool."""
    manager = DatabaseManager(db_config)

    with pytest.raises(DatabaseError, match="not initialized"):
        async with manager.transaction():
            pass


@pytest.mark.asyncio
async def test_disconnect(db_config: DatabaseConfig) -> None:
    """Test closing the pool."""
    manager = DatabaseManager(db_config)
    pool = MagicMock()
    pool.close = AsyncMock()
    manager.pool = pool

    await manager.disconnect()

    pool.close.assert_awaited_once()
    assert manager.pool is None
