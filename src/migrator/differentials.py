"""Durable store of detected source/target differentials."""

import json
import uuid
from typing import Any, Optional

import asyncpg
import structlog

from migrator.database import DatabaseManager
from migrator.exceptions import ComparisonError, DatabaseError
from migrator.models import ComparisonType, Differential
from utils.logging import get_logger

DIFFERENTIALS_TABLE = "data_differentials"

_SCHEMA_SQL = f"""
CREATE TABLE IF NOT EXISTS {DIFFERENTIALS_TABLE} (
    id UUID PRIMARY KEY,
    source_table TEXT NOT NULL,
    target_table TEXT NOT NULL,
    comparison_type TEXT NOT NULL CHECK (
        comparison_type IN ('missing_records', 'conflicted_records', 'deleted_records')
    ),
    legacy_ids JSONB NOT NULL DEFAULT '[]'::jsonb,
    record_count INTEGER NOT NULL DEFAULT 0 CHECK (record_count >= 0),
    comparison_criteria JSONB NOT NULL DEFAULT '{{}}'::jsonb,
    resolution_strategy TEXT NOT NULL CHECK (
        resolution_strategy IN ('source_wins', 'target_wins', 'manual_review', 'skip')
    ),
    resolved BOOLEAN NOT NULL DEFAULT FALSE,
    resolved_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    metadata JSONB NOT NULL DEFAULT '{{}}'::jsonb,
    CONSTRAINT data_differentials_resolved_at CHECK (resolved = FALSE OR resolved_at IS NOT NULL)
);
CREATE INDEX IF NOT EXISTS data_differentials_table_type_idx
    ON {DIFFERENTIALS_TABLE} (source_table, comparison_type);
CREATE INDEX IF NOT EXISTS data_differentials_resolved_idx
    ON {DIFFERENTIALS_TABLE} (resolved, created_at);
"""


class DifferentialStore:
    """Persists Differential rows in ``data_differentials``."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        self.db_manager = db_manager
        self.logger = logger or get_logger("differential_store")
        self._schema_ready = False

    async def ensure_schema(self) -> None:
        """Create the differentials table if it does not exist.

        Raises:
            ComparisonError: If the table cannot be created
        """
        if self._schema_ready:
            return
        try:
            await self.db_manager.execute(_SCHEMA_SQL)
        except DatabaseError as e:
            raise ComparisonError(
                f"Failed to create differentials table: {e}",
                context={"table": DIFFERENTIALS_TABLE},
            ) from e
        self._schema_ready = True

    async def save(self, differential: Differential) -> Differential:
        """Insert a differential, or refresh the matching unresolved one.

        An unresolved row with the same tables, comparison type and entity
        type is updated in place so re-running a comparison does not pile up
        duplicates. Full-scan rows are only refreshed by full scans and sampled
        rows only by sampled scans, so a sampled pass never shrinks the id list
        of a full-scan detection. Resolved rows are never touched.

        Returns:
            The differential with its persisted id

        Raises:
            ComparisonError: If persistence fails
        """
        await self.ensure_schema()
        differential.metadata.setdefault("entity_type", differential.entity_type)

        try:
            existing_id = await self.db_manager.fetchval(
                f"""
                SELECT id FROM {DIFFERENTIALS_TABLE}
                WHERE source_table = $1 AND target_table = $2
                  AND comparison_type = $3 AND resolved = FALSE
                  AND metadata->>'entity_type' = $4
                  AND (COALESCE((comparison_criteria->>'sampling_rate')::float8, 1.0) >= 1.0) = $5
                ORDER BY created_at DESC
                LIMIT 1
                """,
                differential.source_table,
                differential.target_table,
                differential.comparison_type.value,
                differential.entity_type,
                differential.is_full_scan,
            )

            if existing_id is not None:
                differential.id = str(existing_id)
                await self.db_manager.execute(
                    f"""
                    UPDATE {DIFFERENTIALS_TABLE} SET
                        legacy_ids = $2::jsonb,
                        record_count = $3,
                        comparison_criteria = $4::jsonb,
                        resolution_strategy = $5,
                        metadata = $6::jsonb
                    WHERE id = $1::uuid AND resolved = FALSE
                    """,
                    differential.id,
                    json.dumps(differential.legacy_ids),
                    differential.record_count,
                    json.dumps(differential.comparison_criteria, default=str),
                    differential.resolution_strategy.value,
                    json.dumps(differential.metadata, default=str),
                )
                self.logger.debug(
                    "Differential refreshed",
                    differential_id=differential.id,
                    comparison_type=differential.comparison_type.value,
                    record_count=differential.record_count,
                )
                return differential

            differential.id = str(uuid.uuid4())
            await self.db_manager.execute(
                f"""
                INSERT INTO {DIFFERENTIALS_TABLE} (
                    id, source_table, target_table, comparison_type, legacy_ids,
                    record_count, comparison_criteria, resolution_strategy, metadata
                ) VALUES ($1::uuid, $2, $3, $4, $5::jsonb, $6, $7::jsonb, $8, $9::jsonb)
                """,
                differential.id,
                differential.source_table,
                differential.target_table,
                differential.comparison_type.value,
                json.dumps(differential.legacy_ids),
                differential.record_count,
                json.dumps(differential.comparison_criteria, default=str),
                differential.resolution_strategy.value,
                json.dumps(differential.metadata, default=str),
            )
        except DatabaseError as e:
            raise ComparisonError(
                f"Failed to save differential: {e}",
                context={
                    "source_table": differential.source_table,
                    "comparison_type": differential.comparison_type.value,
                },
            ) from e

        self.logger.debug(
            "Differential created",
            differential_id=differential.id,
            comparison_type=differential.comparison_type.value,
            record_count=differential.record_count,
        )
        return differential

    async def list_differentials(
        self,
        resolved: Optional[bool] = None,
        entity_type: Optional[str] = None,
        comparison_type: Optional[ComparisonType] = None,
        limit: Optional[int] = None,
    ) -> list[Differential]:
        """List differentials, oldest first.

        Raises:
            ComparisonError: If the query fails
        """
        await self.ensure_schema()

        conditions: list[str] = []
        params: list[Any] = []
        if resolved is not None:
            params.append(resolved)
            conditions.append(f"resolved = ${len(params)}")
        if entity_type is not None:
            params.append(entity_type)
            conditions.append(f"metadata->>'entity_type' = ${len(params)}")
        if comparison_type is not None:
            params.append(ComparisonType(comparison_type).value)
            conditions.append(f"comparison_type = ${len(params)}")

        query = f"SELECT * FROM {DIFFERENTIALS_TABLE}"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY created_at"
        if limit is not None:
            params.append(limit)
            query += f" LIMIT ${len(params)}"

        try:
            rows = await self.db_manager.fetch(query, *params)
        except DatabaseError as e:
            raise ComparisonError(f"Failed to list differentials: {e}") from e
        return [Differential.from_row(dict(row)) for row in rows]

    async def get(self, differential_id: str) -> Optional[Differential]:
        """Load one differential.

        Raises:
            ComparisonError: If the query fails
        """
        await self.ensure_schema()
        try:
            row = await self.db_manager.fetchrow(
                f"SELECT * FROM {DIFFERENTIALS_TABLE} WHERE id = $1::uuid",
                differential_id,
            )
        except DatabaseError as e:
            raise ComparisonError(
                f"Failed to load differential: {e}",
                context={"differential_id": differential_id},
            ) from e
        return Differential.from_row(dict(row)) if row else None

    async def mark_resolved(
        self,
        differential_id: str,
        connection: Optional[asyncpg.Connection] = None,
        resolution_details: Optional[dict[str, Any]] = None,
    ) -> bool:
        """Flip ``resolved`` to true, at most once.

        Args:
            differential_id: Differential to mark
            connection: Optional connection (to join the resolver's transaction)
            resolution_details: Merged into the row metadata under ``resolution``

        Returns:
            True if this call resolved the row, False if it was already resolved

        Raises:
            DatabaseError: If the update fails
        """
        status = await self.db_manager.execute(
            f"""
            UPDATE {DIFFERENTIALS_TABLE}
            SET resolved = TRUE,
                resolved_at = NOW(),
                metadata = metadata || jsonb_build_object('resolution', $2::jsonb)
            WHERE id = $1::uuid AND resolved = FALSE
            """,
            differential_id,
            json.dumps(resolution_details or {}, default=str),
            connection=connection,
        )
        return status == "UPDATE 1"

    async def get_statistics(self, source_table: Optional[str] = None) -> list[dict[str, Any]]:
        """Differential counts per comparison type.

        Raises:
            ComparisonError: If the query fails
        """
        await self.ensure_schema()
        query = f"""
            SELECT
                comparison_type,
                COUNT(*) AS total,
                COUNT(*) FILTER (WHERE resolved) AS resolved,
                COUNT(*) FILTER (WHERE NOT resolved) AS unresolved,
                COALESCE(SUM(record_count), 0) AS total_records
            FROM {DIFFERENTIALS_TABLE}
        """
        params: list[Any] = []
        if source_table is not None:
            query += " WHERE source_table = $1"
            params.append(source_table)
        query += " GROUP BY comparison_type ORDER BY comparison_type"

        try:
            rows = await self.db_manager.fetch(query, *params)
        except DatabaseError as e:
            raise ComparisonError(f"Failed to get differential statistics: {e}") from e

        return [
            {
                "comparison_type": row["comparison_type"],
                "total": int(row["total"]),
                "resolved": int(row["resolved"]),
                "unresolved": int(row["unresolved"]),
                "total_records": int(row["total_records"]),
            }
            for row in rows
        ]

    async def cleanup(self, older_than_days: int = 7) -> int:
        """Delete resolved differentials older than ``older_than_days``.

        Returns:
            Number of rows removed

        Raises:
            ComparisonError: If the delete fails
        """
        await self.ensure_schema()
        try:
            rows = await self.db_manager.fetch(
                f"""
                DELETE FROM {DIFFERENTIALS_TABLE}
                WHERE resolved = TRUE AND resolved_at < NOW() - make_interval(days => $1)
                RETURNING id
                """,
                older_than_days,
            )
        except DatabaseError as e:
            raise ComparisonError(f"Failed to clean up differentials: {e}") from e

        self.logger.info(
            "Resolved differentials cleaned up",
            removed=len(rows),
            older_than_days=older_than_days,
        )
        return len(rows)
