"""Unit tests for conflict resolver module."""

import json
from unittest.mock import AsyncMock, MagicMock, call

import pytest

from migrator.config import ResolutionOptions
from migrator.conflict_resolver import ConflictResolver
from migrator.exceptions import DatabaseError
from migrator.metrics import MigratorMetrics
from migrator.models import ComparisonType, Differential, ResolutionResult, ResolutionStrategy


def make_differential(
    comparison_type: ComparisonType,
    legacy_ids: list,
    strategy: ResolutionStrategy = ResolutionStrategy.SOURCE_WINS,
    **criteria,
) -> Differential:
    """Create a persisted differential for the offices entity."""
    return Differential(
        source_table="legacy_offices",
        target_table="offices",
        comparison_type=comparison_type,
        legacy_ids=legacy_ids,
        id="5f0c7a38-1b0e-4d47-9d2c-3a1f7e9b2c10",
        comparison_criteria={"entity_type": "offices", **criteria},
        resolution_strategy=strategy,
        metadata={"entity_type": "offices"},
    )


@pytest.fixture
def conflicted() -> Differential:
    """Conflicted differential over two records."""
    return make_differential(
        ComparisonType.CONFLICTED,
        ["1", "2"],
        generated_ids={"1": "g1", "2": "g2"},
        differences={
            "1": {
                "name": {"source": "Downtown", "target": "Down town"},
                "id": {"source": 1, "target": "g1"},
            },
            "2": {"rent": {"source": 900.0, "target": 950.0}},
        },
    )


@pytest.fixture
def store() -> MagicMock:
    """Differential store whose rows are always unresolved."""
    store = MagicMock()
    store.mark_resolved = AsyncMock(return_value=True)
    store.list_differentials = AsyncMock(return_value=[])
    return store


@pytest.fixture
def resolver(mock_db: MagicMock, store: MagicMock) -> ConflictResolver:
    """Create resolver with immediate retry sleeps."""
    mock_db.execute.return_value = "UPDATE 1"
    return ConflictResolver(mock_db, store, sleep=AsyncMock())


def executed(mock_db: MagicMock, prefix: str) -> list:
    """Calls of execute whose statement starts with ``prefix``."""
    return [c for c in mock_db.execute.call_args_list if c.args[0].lstrip().startswith(prefix)]


@pytest.mark.asyncio
async def test_source_wins_updates_conflicting_fields(
    resolver: ConflictResolver,
    mock_db: MagicMock,
    store: MagicMock,
    connection: MagicMock,
    conflicted: Differential,
) -> None:
    """Test that source values are written to the target rows."""
    [result] = await resolver.resolve([conflicted])

    assert result.success is True
    assert result.resolved is True
    assert result.records_affected == 2
    assert result.backup_id.startswith(f"backup_{conflicted.id}_")

    updates = executed(mock_db, "UPDATE")
    assert len(updates) == 2
    first = updates[0]
    assert 'UPDATE "offices" AS t SET "name" = r."name"' in first.args[0]
    assert "jsonb_populate_record(NULL::\"offices\", $2::jsonb)" in first.args[0]
    assert 'WHERE t."id"::text = $1' in first.args[0]
    assert '"id" = r."id"' not in first.args[0]
    assert first.args[1] == "g1"
    assert json.loads(first.args[2]) == {"name": "Downtown"}
    assert first.kwargs == {"connection": connection}
    assert json.loads(updates[1].args[2]) == {"rent": 900.0}

    [backup] = executed(mock_db, "INSERT INTO migration_backups")
    assert backup.args[1:] == (result.backup_id, conflicted.id, "offices", ["g1", "g2"])

    store.mark_resolved.assert_awaited_once()
    assert store.mark_resolved.call_args.args == (conflicted.id,)
    assert store.mark_resolved.call_args.kwargs["connection"] is connection
    assert store.mark_resolved.call_args.kwargs["resolution_details"]["records_affected"] == 2


@pytest.mark.asyncio
async def test_source_wins_without_backups(
    resolver: ConflictResolver, mock_db: MagicMock, conflicted: Differential
) -> None:
    """Test that backups can be disabled."""
    [result] = await resolver.resolve([conflicted], options=ResolutionOptions(enable_backups=False))

    assert result.backup_id is None
    assert executed(mock_db, "INSERT INTO migration_backups") == []
    assert executed(mock_db, "CREATE TABLE") == []


@pytest.mark.asyncio
async def test_missing_without_handler_fails(
    resolver: ConflictResolver, store: MagicMock
) -> None:
    """Test that missing records cannot be resolved without a handler."""
    differential = make_differential(ComparisonType.MISSING, ["3"])

    [result] = await resolver.resolve([differential])

    assert result.success is False
    assert result.resolved is False
    assert "No missing-record handler" in result.error
    store.mark_resolved.assert_not_awaited()


@pytest.mark.asyncio
async def test_missing_with_handler(
    mock_db: MagicMock, store: MagicMock, connection: MagicMock
) -> None:
    """Test missing records are inserted through the handler in sub-batches."""
    handler = AsyncMock(return_value=2)
    resolver = ConflictResolver(mock_db, store, missing_handler=handler)
    differential = make_differential(ComparisonType.MISSING, ["3", "4", "5"])

    [result] = await resolver.resolve([differential], options=ResolutionOptions(sub_batch_size=2))

    assert handler.await_args_list == [
        call("offices", ["3", "4"], connection),
        call("offices", ["5"], connection),
    ]
    assert result.records_affected == 4
    assert result.resolved is True
    assert result.backup_id is None


@pytest.mark.asyncio
async def test_deleted_records_removed(resolver: ConflictResolver, mock_db: MagicMock) -> None:
    """Test that SOURCE_WINS deletes target rows of deleted records."""
    mock_db.execute.return_value = "DELETE 2"
    differential = make_differential(
        ComparisonType.DELETED, ["4", "5"], generated_ids={"4": "g4", "5": "g5"}
    )

    [result] = await resolver.resolve([differential], ResolutionStrategy.SOURCE_WINS)

    [delete] = executed(mock_db, "DELETE")
    assert delete.args[0] == 'DELETE FROM "offices" WHERE "id"::text = ANY($1::text[])'
    assert delete.args[1] == ["g4", "g5"]
    assert result.records_affected == 2
    assert result.resolved is True


@pytest.mark.asyncio
async def test_unmapped_conflict_fails(resolver: ConflictResolver, store: MagicMock) -> None:
    """Test that legacy ids without generated ids cannot be applied."""
    differential = make_differential(ComparisonType.CONFLICTED, ["1"], generated_ids={})

    [result] = await resolver.resolve([differential])

    assert result.success is False
    assert "without generated ids" in result.error
    store.mark_resolved.assert_not_awaited()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "strategy", [ResolutionStrategy.TARGET_WINS, ResolutionStrategy.SKIP]
)
async def test_acknowledging_strategies(
    resolver: ConflictResolver,
    mock_db: MagicMock,
    store: MagicMock,
    conflicted: Differential,
    strategy: ResolutionStrategy,
) -> None:
    """Test strategies that only mark the differential resolved."""
    [result] = await resolver.resolve([conflicted], strategy)

    assert result.resolved is True
    assert result.records_affected == 0
    assert result.backup_id is None
    assert executed(mock_db, "UPDATE") == []
    store.mark_resolved.assert_awaited_once()


@pytest.mark.asyncio
async def test_manual_review(
    resolver: ConflictResolver, store: MagicMock, conflicted: Differential
) -> None:
    """Test that manual review leaves the differential unresolved."""
    [result] = await resolver.resolve([conflicted], ResolutionStrategy.MANUAL_REVIEW)

    assert result.success is True
    assert result.resolved is False
    assert result.pending_review is True
    store.mark_resolved.assert_not_awaited()


@pytest.mark.asyncio
async def test_uses_stored_strategy(resolver: ConflictResolver, store: MagicMock) -> None:
    """Test that each differential's own strategy applies when none is given."""
    deleted = make_differential(
        ComparisonType.DELETED,
        ["4"],
        ResolutionStrategy.MANUAL_REVIEW,
        generated_ids={"4": "g4"},
    )

    [result] = await resolver.resolve([deleted])

    assert result.strategy == ResolutionStrategy.MANUAL_REVIEW
    assert result.pending_review is True


@pytest.mark.asyncio
async def test_dry_run(
    resolver: ConflictResolver, mock_db: MagicMock, store: MagicMock, conflicted: Differential
) -> None:
    """Test that a dry run writes nothing."""
    [result] = await resolver.resolve([conflicted], options=ResolutionOptions(dry_run=True))

    assert result.dry_run is True
    assert result.resolved is False
    assert result.records_affected == 2
    mock_db.execute.assert_not_awaited()
    store.mark_resolved.assert_not_awaited()


@pytest.mark.asyncio
async def test_already_resolved_is_noop(
    resolver: ConflictResolver, store: MagicMock, conflicted: Differential
) -> None:
    """Test that resolved differentials are not resolved again."""
    conflicted.resolved = True

    [result] = await resolver.resolve([conflicted])

    assert result.success is True
    assert result.resolved is True
    store.mark_resolved.assert_not_awaited()


@pytest.mark.asyncio
async def test_concurrently_resolved_rolls_back(
    resolver: ConflictResolver, store: MagicMock, conflicted: Differential
) -> None:
    """Test that losing the resolved flag race fails the differential."""
    store.mark_resolved.return_value = False

    [result] = await resolver.resolve([conflicted], ResolutionStrategy.TARGET_WINS)

    assert result.success is False
    assert "already resolved" in result.error
    store.mark_resolved.assert_awaited_once()


@pytest.mark.asyncio
async def test_transient_error_is_retried(
    resolver: ConflictResolver, mock_db: MagicMock, conflicted: Differential
) -> None:
    """Test that a transient database error retries the whole differential."""
    failures = {"remaining": 1}

    async def execute(query, *args, connection=None):
        if query.lstrip().startswith("UPDATE") and failures["remaining"]:
            failures["remaining"] -= 1
            raise DatabaseError("connection reset")
        return "UPDATE 1"

    mock_db.execute.side_effect = execute

    [result] = await resolver.resolve(
        [conflicted], options=ResolutionOptions(max_retries=2, retry_delay=0.5)
    )

    assert result.success is True
    assert result.records_affected == 2
    resolver._sleep.assert_awaited_once_with(0.5)
    assert mock_db.transaction.call_count == 2


@pytest.mark.asyncio
async def test_failure_is_scoped_to_one_differential(
    resolver: ConflictResolver, mock_db: MagicMock, conflicted: Differential
) -> None:
    """Test that one failing differential does not stop the others."""
    mock_db.execute.side_effect = DatabaseError("deadlock detected")
    skipped = make_differential(ComparisonType.DELETED, ["9"], ResolutionStrategy.SKIP)

    results = await resolver.resolve(
        [conflicted, skipped], options=ResolutionOptions(enable_backups=False, max_retries=1)
    )

    assert [r.success for r in results] == [False, True]
    assert "deadlock detected" in results[0].error
    assert results[1].resolved is True


def test_summarize(conflicted: Differential) -> None:
    """Test summary totals per outcome."""

    results = [
        ResolutionResult("a", ResolutionStrategy.SOURCE_WINS, True, True, records_affected=3),
        ResolutionResult("b", ResolutionStrategy.MANUAL_REVIEW, True, False),
        ResolutionResult("c", ResolutionStrategy.SOURCE_WINS, False, False, error="boom"),
        ResolutionResult("d", ResolutionStrategy.SOURCE_WINS, True, False, 2, dry_run=True),
    ]

    summary = ConflictResolver.summarize(results)

    assert summary == {
        "total": 4,
        "resolved": 1,
        "pending_review": 1,
        "dry_run": 1,
        "failed": 1,
        "records_affected": 5,
        "pending_review_ids": ["b"],
        "errors": [{"differential_id": "c", "error": "boom"}],
    }


@pytest.mark.asyncio
async def test_resolve_all_unresolved(
    resolver: ConflictResolver, store: MagicMock, conflicted: Differential
) -> None:
    """Test resolving every unresolved differential of an entity type."""
    store.list_differentials.return_value = [conflicted]

    results = await resolver.resolve_all_unresolved(
        ResolutionStrategy.TARGET_WINS, entity_type="offices"
    )

    store.list_differentials.assert_awaited_once_with(resolved=False, entity_type="offices")
    assert [r.resolved for r in results] == [True]


@pytest.mark.asyncio
async def test_resolution_metrics(
    mock_db: MagicMock,
    store: MagicMock,
    conflicted: Differential,
    metrics: MigratorMetrics,
    registry,
) -> None:
    """Test resolutions are counted per strategy and outcome."""
    resolver = ConflictResolver(mock_db, store, metrics=metrics)

    await resolver.resolve([conflicted], ResolutionStrategy.TARGET_WINS)
    await resolver.resolve([conflicted], ResolutionStrategy.MANUAL_REVIEW)

    for outcome, strategy in (("resolved", "target_wins"), ("pending_review", "manual_review")):
        assert (
            registry.get_sample_value(
                "migrator_resolutions_total", {"strategy": strategy, "outcome": outcome}
            )
            == 1
        )


@pytest.mark.asyncio
async def test_list_backup(resolver: ConflictResolver, mock_db: MagicMock) -> None:
    """Test reading rows saved under a backup id."""
    mock_db.fetch.return_value = [
        {
            "generated_id": "g1",
            "target_table": "offices",
            "row_data": '{"id": "g1", "name": "Down town"}',
            "created_at": None,
        }
    ]

    rows = await resolver.list_backup("backup_x_1")

    assert rows[0]["row_data"] == {"id": "g1", "name": "Down town"}
    assert mock_db.fetch.call_args.args[1:] == ("backup_x_1",)


@pytest.mark.asyncio
async def test_resolve_in_sub_batches(mock_db: MagicMock, store: MagicMock) -> None:
    """Test that differentials are resolved in sub-batches, in input order."""
    logger = MagicMock()
    resolver = ConflictResolver(
        mock_db, store, options=ResolutionOptions(sub_batch_size=2), logger=logger
    )
    differentials = []
    for index in range(5):
        differential = make_differential(ComparisonType.MISSING, [str(index)], ResolutionStrategy.SKIP)
        differential.id = f"d{index}"
        differentials.append(differential)

    results = await resolver.resolve(differentials)

    assert [r.differential_id for r in results] == ["d0", "d1", "d2", "d3", "d4"]
    sub_batch_logs = [
        c.kwargs for c in logger.info.call_args_list if c.args == ("Resolving sub-batch",)
    ]
    assert sub_batch_logs == [
        {"sub_batch": 1, "sub_batches": 3, "differentials": 2},
        {"sub_batch": 2, "sub_batches": 3, "differentials": 2},
        {"sub_batch": 3, "sub_batches": 3, "differentials": 1},
    ]
    assert store.mark_resolved.await_count == 5
