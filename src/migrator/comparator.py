"""Detection of divergence between source and target record sets."""

import json
import random
import uuid
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Optional, Protocol

import structlog

from migrator.config import ComparisonOptions
from migrator.differentials import DifferentialStore
from migrator.exceptions import ComparisonError, MigratorError
from migrator.identifier_mapper import IdentifierMapper
from migrator.metrics import MigratorMetrics
from migrator.models import ComparisonType, Differential, ResolutionStrategy
from utils.logging import get_logger


class RecordReader(Protocol):
    """Supplies the records of one entity from both sides.

    ``read_source`` is keyed by legacy id, ``read_target`` by generated id.
    """

    async def read_source(self, entity_type: str) -> dict[Any, dict[str, Any]]: ...

    async def read_target(self, entity_type: str) -> dict[Any, dict[str, Any]]: ...


def jsonable(value: Any) -> Any:
    """Convert a column value into a JSON-safe value that PostgreSQL can cast back."""
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, bytes):
        return value.hex()
    if isinstance(value, dict):
        return {str(k): jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [jsonable(v) for v in value]
    return value


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def _normalise(value: Any, strip_whitespace: bool = False) -> str:
    if value is None:
        return ""
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, (dict, list)):
        return json.dumps(jsonable(value), sort_keys=True)
    text = str(value)
    return text.strip() if strip_whitespace else text


def values_differ(
    source_value: Any,
    target_value: Any,
    threshold: float = 0.0,
    strip_whitespace: bool = False,
) -> bool:
    """Compare two field values.

    Numbers differ when their absolute difference exceeds ``threshold``;
    everything else is compared on a normalised text form. Surrounding
    whitespace is significant unless ``strip_whitespace`` is set.
    """
    if _is_number(source_value) and _is_number(target_value):
        return abs(float(source_value) - float(target_value)) > threshold
    return _normalise(source_value, strip_whitespace) != _normalise(
        target_value, strip_whitespace
    )


class DifferentialComparator:
    """Classifies legacy ids of an entity as missing, conflicted or deleted."""

    def __init__(
        self,
        mapper: IdentifierMapper,
        store: Optional[DifferentialStore] = None,
        metrics: Optional[MigratorMetrics] = None,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize comparator.

        Args:
            mapper: Identifier mapper joining source and target rows
            store: Differential store (required to persist results)
            metrics: Optional metrics collector
            logger: Optional logger instance
        """
        self.mapper = mapper
        self.store = store
        self.metrics = metrics
        self.logger = logger or get_logger("comparator")

    async def compare(
        self,
        entity_type: str,
        reader: RecordReader,
        options: Optional[ComparisonOptions] = None,
    ) -> list[Differential]:
        """Compare the source and target records of one entity.

        Args:
            entity_type: Entity type (mapping namespace)
            reader: Record reader for both sides
            options: Comparison options

        Returns:
            One differential per non-empty comparison type

        Raises:
            ComparisonError: If reading or persisting fails
        """
        options = options or ComparisonOptions()
        if options.persist and self.store is None:
            raise ComparisonError(
                "A differential store is required to persist comparison results",
                context={"entity_type": entity_type},
            )

        source_table = options.source_table or entity_type
        target_table = options.target_table or entity_type

        try:
            source = {str(k): v for k, v in (await reader.read_source(entity_type)).items()}
            target = {str(k): v for k, v in (await reader.read_target(entity_type)).items()}
        except MigratorError:
            raise
        except Exception as e:
            raise ComparisonError(
                f"Failed to read records: {e}",
                context={"entity_type": entity_type},
            ) from e

        mapped = {m.legacy_id: m.generated_id for m in await self.mapper.list_mappings(entity_type)}

        universe = set(source)
        universe.update(legacy for legacy, generated in mapped.items() if generated in target)
        candidates = self._sample(sorted(universe), options)

        missing: list[str] = []
        deleted: list[str] = []
        conflicted: list[str] = []
        differences: dict[str, dict[str, dict[str, Any]]] = {}
        compared_fields: set[str] = set()

        for legacy in candidates:
            generated = mapped.get(legacy)
            source_record = source.get(legacy)
            target_record = target.get(generated) if generated is not None else None

            if source_record is not None and target_record is None:
                missing.append(legacy)
            elif source_record is None and target_record is not None:
                deleted.append(legacy)
            elif source_record is not None:
                fields = self._fields(source_record, target_record, options)
                compared_fields.update(fields)
                diff = {
                    field: {
                        "source": jsonable(source_record.get(field)),
                        "target": jsonable(target_record.get(field)),
                    }
                    for field in fields
                    if values_differ(
                        source_record.get(field),
                        target_record.get(field),
                        options.conflict_threshold,
                        options.strip_whitespace,
                    )
                }
                if diff:
                    conflicted.append(legacy)
                    differences[legacy] = diff

        base_criteria = {
            "entity_type": entity_type,
            "conflict_threshold": options.conflict_threshold,
            "strip_whitespace": options.strip_whitespace,
            "sampling_rate": options.sampling_rate,
            "sample_seed": options.sample_seed,
            "compared_records": len(candidates),
        }
        metadata = {
            "entity_type": entity_type,
            "total_source": len(source),
            "total_target": len(target),
            "unmapped_target": len(set(target) - set(mapped.values())),
        }

        differentials: list[Differential] = []
        for comparison_type, legacy_ids in (
            (ComparisonType.MISSING, missing),
            (ComparisonType.CONFLICTED, conflicted),
            (ComparisonType.DELETED, deleted),
        ):
            if not legacy_ids:
                continue
            criteria = dict(base_criteria)
            criteria["generated_ids"] = {
                legacy: mapped[legacy] for legacy in legacy_ids if legacy in mapped
            }
            if comparison_type == ComparisonType.CONFLICTED:
                criteria["compared_fields"] = sorted(compared_fields)
                criteria["differences"] = differences
            differentials.append(
                Differential(
                    source_table=source_table,
                    target_table=target_table,
                    comparison_type=comparison_type,
                    legacy_ids=legacy_ids,
                    comparison_criteria=criteria,
                    # deletions are never applied without review by default
                    resolution_strategy=(
                        ResolutionStrategy.MANUAL_REVIEW
                        if comparison_type == ComparisonType.DELETED
                        else options.resolution_strategy
                    ),
                    metadata=dict(metadata),
                )
            )

        if options.persist:
            for differential in differentials:
                await self.store.save(differential)

        if self.metrics is not None:
            for differential in differentials:
                self.metrics.record_differentials(
                    entity_type, differential.comparison_type.value, differential.record_count
                )

        self.logger.info(
            "Comparison finished",
            entity_type=entity_type,
            compared=len(candidates),
            missing=len(missing),
            conflicted=len(conflicted),
            deleted=len(deleted),
            sampling_rate=options.sampling_rate,
        )
        return differentials

    @staticmethod
    def _sample(legacy_ids: list[str], options: ComparisonOptions) -> list[str]:
        if options.sampling_rate >= 1.0 or not legacy_ids:
            return legacy_ids
        size = max(1, round(len(legacy_ids) * options.sampling_rate))
        sample = random.Random(options.sample_seed).sample(legacy_ids, size)
        return sorted(sample)

    @staticmethod
    def _fields(
        source_record: dict[str, Any],
        target_record: dict[str, Any],
        options: ComparisonOptions,
    ) -> list[str]:
        if options.compare_fields is not None:
            fields = set(options.compare_fields)
        else:
            fields = set(source_record) & set(target_record)
        return sorted(fields - set(options.ignore_fields))
