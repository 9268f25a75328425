"""Durable legacy-id to generated-id mapping with an explicit in-memory cache."""

import asyncio
import json
import re
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

import asyncpg
import structlog

from migrator.config import MappingConfig
from migrator.database import DatabaseManager, is_unique_violation
from migrator.exceptions import DatabaseError, MappingError
from migrator.metrics import MigratorMetrics
from migrator.models import IdentifierMapping
from utils.checksum import ChecksumCalculator
from utils.logging import get_logger

MAPPINGS_TABLE = "migration_mappings"

_SCHEMA_SQL = f"""
CREATE TABLE IF NOT EXISTS {MAPPINGS_TABLE} (
    entity_type TEXT NOT NULL,
    legacy_id TEXT NOT NULL,
    generated_id UUID NOT NULL,
    batch_tag TEXT,
    checksum TEXT,
    source_table TEXT,
    target_table TEXT,
    metadata JSONB NOT NULL DEFAULT '{{}}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (entity_type, legacy_id)
);
CREATE INDEX IF NOT EXISTS migration_mappings_generated_idx
    ON {MAPPINGS_TABLE} (entity_type, generated_id);
"""

# The stored generated_id is never part of the update set
_UPSERT_SQL = f"""
INSERT INTO {MAPPINGS_TABLE} (
    entity_type, legacy_id, generated_id, batch_tag,
    source_table, target_table, checksum, metadata
) VALUES ($1, $2, $3::uuid, $4, $5, $6, $7, $8::jsonb)
ON CONFLICT (entity_type, legacy_id) DO UPDATE SET
    batch_tag = COALESCE(EXCLUDED.batch_tag, {MAPPINGS_TABLE}.batch_tag),
    metadata = {MAPPINGS_TABLE}.metadata || EXCLUDED.metadata
RETURNING generated_id
"""

_BULK_INSERT_SQL = f"""
INSERT INTO {MAPPINGS_TABLE} (
    entity_type, legacy_id, generated_id, batch_tag,
    source_table, target_table, checksum
)
SELECT $1, t.legacy_id, t.generated_id::uuid, $4, $5, $6, t.checksum
FROM unnest($2::text[], $3::text[], $7::text[]) AS t(legacy_id, generated_id, checksum)
ON CONFLICT (entity_type, legacy_id) DO NOTHING
"""

_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$")


def default_batch_tag(entity_type: str, prefix: str = "mapping") -> str:
    """Batch tag such as ``offices_mapping_20240131_1706700000000``."""
    now = datetime.now(timezone.utc)
    return f"{entity_type}_{prefix}_{now:%Y%m%d}_{int(time.time() * 1000)}"


class MappingCache:
    """In-memory (entity_type, legacy_id) -> generated_id cache.

    Owned by whoever constructs the mapper; pass the same instance to
    several mappers to share it.
    """

    def __init__(self, enabled: bool = True) -> None:
        self.enabled = enabled
        self._entries: dict[tuple[str, str], str] = {}
        self.hits = 0
        self.misses = 0

    def get(self, entity_type: str, legacy_id: str) -> Optional[str]:
        if not self.enabled:
            return None
        value = self._entries.get((entity_type, legacy_id))
        if value is None:
            self.misses += 1
        else:
            self.hits += 1
        return value

    def put(self, entity_type: str, legacy_id: str, generated_id: str) -> None:
        if self.enabled:
            self._entries[(entity_type, legacy_id)] = generated_id

    def put_many(self, entity_type: str, mappings: dict[str, str]) -> None:
        if self.enabled:
            for legacy_id, generated_id in mappings.items():
                self._entries[(entity_type, legacy_id)] = generated_id

    def clear(self) -> None:
        self._entries.clear()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> dict[str, Any]:
        lookups = self.hits + self.misses
        return {
            "enabled": self.enabled,
            "size": len(self._entries),
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hits / lookups, 4) if lookups else 0.0,
        }


class MappingValidationResult:
    """Result of validating stored mappings."""

    def __init__(self, checked: int, violations: list[dict[str, str]]) -> None:
        self.checked = checked
        self.violations = violations

    @property
    def valid(self) -> bool:
        return not self.violations


class IdentifierMapper:
    """Assigns each legacy identifier a stable generated UUID.

    A legacy id's generated id is created once, persisted through a
    conflict-safe upsert, and never replaced afterwards: concurrent or
    repeated resolution of the same legacy id always yields the value that
    won the insert.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        cache: Optional[MappingCache] = None,
        checksum_calculator: Optional[ChecksumCalculator] = None,
        metrics: Optional[MigratorMetrics] = None,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize identifier mapper.

        Args:
            db_manager: Database holding the mapping table
            cache: Mapping cache (a fresh enabled cache if None)
            checksum_calculator: Checksum calculator for mapping rows
            metrics: Optional metrics collector
            logger: Optional logger instance
        """
        self.db_manager = db_manager
        self.cache = cache if cache is not None else MappingCache()
        self.checksum = checksum_calculator or ChecksumCalculator()
        self.metrics = metrics
        self.logger = logger or get_logger("identifier_mapper")
        self._lock = asyncio.Lock()
        self._schema_ready = False

    @classmethod
    async def from_config(
        cls,
        config: MappingConfig,
        db_manager: DatabaseManager,
        metrics: Optional[MigratorMetrics] = None,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> "IdentifierMapper":
        """Create a mapper from the ``mapping`` config section.

        The cache follows ``cache_enabled`` and every entity type listed in
        ``preload_entity_types`` is loaded before the mapper is returned.

        Raises:
            MappingError: If a preload fails
        """
        mapper = cls(
            db_manager,
            cache=MappingCache(enabled=config.cache_enabled),
            metrics=metrics,
            logger=logger,
        )
        for entity_type in config.preload_entity_types:
            await mapper.preload(entity_type)
        return mapper

    @staticmethod
    def generate() -> str:
        """Generate a random UUID v4 in canonical lower-case form."""
        return str(uuid.uuid4())

    async def ensure_schema(self) -> None:
        """Create the mapping table if it does not exist.

        Raises:
            MappingError: If the table cannot be created
        """
        if self._schema_ready:
            return
        try:
            await self.db_manager.execute(_SCHEMA_SQL)
        except DatabaseError as e:
            raise MappingError(
                f"Failed to create mapping table: {e}",
                context={"table": MAPPINGS_TABLE},
            ) from e
        self._schema_ready = True

    async def create(
        self,
        entity_type: str,
        legacy_id: Any,
        generated_id: Optional[str] = None,
        batch_tag: Optional[str] = None,
        source_table: Optional[str] = None,
        target_table: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        connection: Optional[asyncpg.Connection] = None,
    ) -> str:
        """Create (or confirm) the mapping of one legacy id.

        Args:
            entity_type: Entity type
            legacy_id: Legacy identifier (normalised to text)
            generated_id: Identifier to assign (generated if None)
            batch_tag: Tag of the migration batch creating the mapping
            source_table: Source table name
            target_table: Target table name
            metadata: Extra JSON metadata, merged on conflict
            connection: Optional connection (to join the caller's transaction)

        Returns:
            The persisted generated id, which differs from ``generated_id``
            when the legacy id was already mapped

        Raises:
            MappingError: If the mapping cannot be persisted
        """
        await self.ensure_schema()

        legacy = str(legacy_id)
        candidate = self._normalise_uuid(generated_id) if generated_id else self.generate()
        checksum = self.checksum.mapping_checksum(legacy, candidate, entity_type)

        try:
            row = await self.db_manager.fetchrow(
                _UPSERT_SQL,
                entity_type,
                legacy,
                candidate,
                batch_tag or default_batch_tag(entity_type),
                source_table,
                target_table,
                checksum,
                json.dumps(metadata or {}, default=str),
                connection=connection,
            )
        except DatabaseError as e:
            if is_unique_violation(e):
                existing = await self._fetch_generated_id(entity_type, legacy, connection)
                if existing is not None:
                    self.cache.put(entity_type, legacy, existing)
                    return existing
            raise MappingError(
                f"Mapping creation failed: {e}",
                context={"entity_type": entity_type, "legacy_id": legacy},
            ) from e

        stored = str(row["generated_id"])
        self.cache.put(entity_type, legacy, stored)

        if stored != candidate:
            self.logger.debug(
                "Mapping already existed, kept stored identifier",
                entity_type=entity_type,
                legacy_id=legacy,
                generated_id=stored,
            )
        return stored

    async def lookup(self, entity_type: str, legacy_id: Any) -> Optional[str]:
        """Find the generated id of a legacy id (cache first, then table).

        Raises:
            MappingError: If the lookup query fails
        """
        legacy = str(legacy_id)
        cached = self.cache.get(entity_type, legacy)
        self._record_cache(entity_type, cached is not None)
        if cached is not None:
            return cached

        await self.ensure_schema()
        generated = await self._fetch_generated_id(entity_type, legacy)
        if generated is not None:
            self.cache.put(entity_type, legacy, generated)
        return generated

    async def bulk_lookup(self, entity_type: str, legacy_ids: list[Any]) -> dict[str, str]:
        """Look up many legacy ids with one query for all cache misses.

        Returns:
            ``{legacy_id: generated_id}`` for the ids that are mapped

        Raises:
            MappingError: If the lookup query fails
        """
        found: dict[str, str] = {}
        misses: list[str] = []
        for legacy in dict.fromkeys(str(legacy_id) for legacy_id in legacy_ids):
            cached = self.cache.get(entity_type, legacy)
            self._record_cache(entity_type, cached is not None)
            if cached is None:
                misses.append(legacy)
            else:
                found[legacy] = cached

        if misses:
            await self.ensure_schema()
            fetched = await self._fetch_many(entity_type, misses)
            self.cache.put_many(entity_type, fetched)
            found.update(fetched)

        return found

    async def resolve(self, entity_type: str, legacy_id: Any, **create_kwargs: Any) -> str:
        """Return the generated id of a legacy id, creating the mapping if needed.

        Raises:
            MappingError: If lookup or creation fails
        """
        existing = await self.lookup(entity_type, legacy_id)
        if existing is not None:
            return existing

        async with self._lock:
            generated = await self.create(entity_type, legacy_id, **create_kwargs)
        self.logger.debug(
            "Created new identifier mapping",
            entity_type=entity_type,
            legacy_id=str(legacy_id),
            generated_id=generated,
        )
        return generated

    async def bulk_resolve(
        self,
        entity_type: str,
        legacy_ids: list[Any],
        batch_tag: Optional[str] = None,
        source_table: Optional[str] = None,
        target_table: Optional[str] = None,
    ) -> dict[str, str]:
        """Resolve many legacy ids, creating missing mappings in one statement.

        Missing ids are inserted with ``ON CONFLICT DO NOTHING`` and then read
        back, so ids inserted concurrently by another writer converge on the
        stored value.

        Returns:
            ``{legacy_id: generated_id}`` for every requested id

        Raises:
            MappingError: If a mapping cannot be created or read back
        """
        resolved = await self.bulk_lookup(entity_type, legacy_ids)
        missing = [
            legacy
            for legacy in dict.fromkeys(str(legacy_id) for legacy_id in legacy_ids)
            if legacy not in resolved
        ]
        if not missing:
            return resolved

        candidates = [self.generate() for _ in missing]
        checksums = [
            self.checksum.mapping_checksum(legacy, generated, entity_type)
            for legacy, generated in zip(missing, candidates)
        ]

        async with self._lock:
            try:
                await self.db_manager.execute(
                    _BULK_INSERT_SQL,
                    entity_type,
                    missing,
                    candidates,
                    batch_tag or default_batch_tag(entity_type, "bulk"),
                    source_table,
                    target_table,
                    checksums,
                )
            except DatabaseError as e:
                raise MappingError(
                    f"Bulk mapping creation failed: {e}",
                    context={"entity_type": entity_type, "count": len(missing)},
                ) from e

            stored = await self._fetch_many(entity_type, missing)

        absent = [legacy for legacy in missing if legacy not in stored]
        if absent:
            raise MappingError(
                "Mappings missing after bulk creation",
                context={"entity_type": entity_type, "legacy_ids": absent[:10]},
            )

        self.cache.put_many(entity_type, stored)
        resolved.update(stored)
        self.logger.info(
            "Created identifier mappings",
            entity_type=entity_type,
            created=len(missing),
        )
        return resolved

    async def validate(self, entity_type: Optional[str] = None) -> MappingValidationResult:
        """Check stored checksums and identifier formats.

        Raises:
            MappingError: If mappings cannot be read
        """
        mappings = await self.list_mappings(entity_type)
        violations: list[dict[str, str]] = []

        for mapping in mappings:
            if not self.checksum.verify_mapping(
                mapping.legacy_id,
                mapping.generated_id,
                mapping.entity_type,
                mapping.checksum,
            ):
                violations.append(
                    {
                        "entity_type": mapping.entity_type,
                        "legacy_id": mapping.legacy_id,
                        "issue": f"Invalid checksum for {mapping.entity_type}[{mapping.legacy_id}]",
                    }
                )
            if not _UUID_RE.match(mapping.generated_id):
                violations.append(
                    {
                        "entity_type": mapping.entity_type,
                        "legacy_id": mapping.legacy_id,
                        "issue": (
                            f"Invalid UUID format for {mapping.entity_type}"
                            f"[{mapping.legacy_id}]: {mapping.generated_id}"
                        ),
                    }
                )

        result = MappingValidationResult(checked=len(mappings), violations=violations)
        self.logger.info(
            "Mappings validated",
            entity_type=entity_type,
            checked=result.checked,
            violations=len(violations),
        )
        return result

    async def preload(self, entity_type: str) -> int:
        """Load every mapping of an entity type into the cache.

        Returns:
            Number of mappings loaded (0 when the cache is disabled)

        Raises:
            MappingError: If mappings cannot be read
        """
        if not self.cache.enabled:
            return 0

        await self.ensure_schema()
        try:
            rows = await self.db_manager.fetch(
                f"SELECT legacy_id, generated_id FROM {MAPPINGS_TABLE} WHERE entity_type = $1",
                entity_type,
            )
        except DatabaseError as e:
            raise MappingError(
                f"Failed to preload mappings: {e}",
                context={"entity_type": entity_type},
            ) from e

        async with self._lock:
            self.cache.put_many(
                entity_type, {row["legacy_id"]: str(row["generated_id"]) for row in rows}
            )

        self.logger.info("Preloaded identifier mappings", entity_type=entity_type, count=len(rows))
        return len(rows)

    def clear_cache(self) -> None:
        self.cache.clear()
        self.logger.debug("Identifier mapping cache cleared")

    def cache_stats(self) -> dict[str, Any]:
        return self.cache.stats()

    async def list_mappings(self, entity_type: Optional[str] = None) -> list[IdentifierMapping]:
        """Export stored mappings, optionally for one entity type.

        Raises:
            MappingError: If mappings cannot be read
        """
        await self.ensure_schema()
        query = f"SELECT * FROM {MAPPINGS_TABLE}"
        params: list[Any] = []
        if entity_type is not None:
            query += " WHERE entity_type = $1"
            params.append(entity_type)
        query += " ORDER BY entity_type, created_at, legacy_id"

        try:
            rows = await self.db_manager.fetch(query, *params)
        except DatabaseError as e:
            raise MappingError(
                f"Failed to list mappings: {e}",
                context={"entity_type": entity_type},
            ) from e
        return [IdentifierMapping.from_row(dict(row)) for row in rows]

    async def get_stats(self, entity_type: Optional[str] = None) -> list[dict[str, Any]]:
        """Per-entity mapping counts.

        Raises:
            MappingError: If the statistics query fails
        """
        await self.ensure_schema()
        query = f"""
            SELECT
                entity_type,
                COUNT(*) AS total_mappings,
                COUNT(DISTINCT batch_tag) AS unique_batches,
                MIN(created_at) AS first_created,
                MAX(created_at) AS last_created
            FROM {MAPPINGS_TABLE}
        """
        params: list[Any] = []
        if entity_type is not None:
            query += " WHERE entity_type = $1"
            params.append(entity_type)
        query += " GROUP BY entity_type ORDER BY entity_type"

        try:
            rows = await self.db_manager.fetch(query, *params)
        except DatabaseError as e:
            raise MappingError(f"Failed to get mapping statistics: {e}") from e

        return [
            {
                "entity_type": row["entity_type"],
                "total_mappings": int(row["total_mappings"]),
                "unique_batches": int(row["unique_batches"]),
                "first_created": row["first_created"],
                "last_created": row["last_created"],
            }
            for row in rows
        ]

    async def _fetch_generated_id(
        self,
        entity_type: str,
        legacy_id: str,
        connection: Optional[asyncpg.Connection] = None,
    ) -> Optional[str]:
        try:
            value = await self.db_manager.fetchval(
                f"SELECT generated_id FROM {MAPPINGS_TABLE} "
                "WHERE entity_type = $1 AND legacy_id = $2",
                entity_type,
                legacy_id,
                connection=connection,
            )
        except DatabaseError as e:
            raise MappingError(
                f"Mapping lookup failed: {e}",
                context={"entity_type": entity_type, "legacy_id": legacy_id},
            ) from e
        return str(value) if value is not None else None

    async def _fetch_many(self, entity_type: str, legacy_ids: list[str]) -> dict[str, str]:
        try:
            rows = await self.db_manager.fetch(
                f"SELECT legacy_id, generated_id FROM {MAPPINGS_TABLE} "
                "WHERE entity_type = $1 AND legacy_id = ANY($2::text[])",
                entity_type,
                legacy_ids,
            )
        except DatabaseError as e:
            raise MappingError(
                f"Bulk mapping lookup failed: {e}",
                context={"entity_type": entity_type, "count": len(legacy_ids)},
            ) from e
        return {row["legacy_id"]: str(row["generated_id"]) for row in rows}

    def _record_cache(self, entity_type: str, hit: bool) -> None:
        if self.metrics is not None and self.cache.enabled:
            self.metrics.record_cache_lookup(entity_type, hit)

    @staticmethod
    def _normalise_uuid(value: str) -> str:
        try:
            return str(uuid.UUID(str(value)))
        except ValueError as e:
            raise MappingError(
                f"Invalid generated identifier: {value!r}",
                context={"generated_id": str(value)},
            ) from e
