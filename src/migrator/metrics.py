"""Prometheus metrics for monitoring migration runs."""

import time
from typing import Optional

import structlog
from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    start_http_server,
)

from migrator.config import MonitoringConfig
from utils.logging import get_logger


class MigratorMetrics:
    """Prometheus metrics for the migrator."""

    def __init__(
        self,
        logger: Optional[structlog.BoundLogger] = None,
        registry: Optional[CollectorRegistry] = None,
    ) -> None:
        """Initialize metrics.

        Args:
            logger: Optional logger instance
            registry: Optional Prometheus registry (defaults to global REGISTRY)
        """
        self.logger = logger or get_logger("metrics")
        self.registry = registry or REGISTRY

        # Counters
        self.batches_total = Counter(
            "migrator_batches_total",
            "Total number of batches processed",
            ["entity", "operation", "status"],  # status: succeeded, failed
            registry=self.registry,
        )

        self.items_total = Counter(
            "migrator_items_total",
            "Total number of items processed",
            ["entity", "operation", "outcome"],  # outcome: succeeded, failed, skipped
            registry=self.registry,
        )

        self.retries_total = Counter(
            "migrator_batch_retries_total",
            "Total number of batch retry attempts",
            ["entity", "operation"],
            registry=self.registry,
        )

        self.checkpoint_saves_total = Counter(
            "migrator_checkpoint_saves_total",
            "Total number of checkpoint saves",
            ["entity", "operation"],
            registry=self.registry,
        )

        self.runs_total = Counter(
            "migrator_runs_total",
            "Total number of engine runs by terminal status",
            ["entity", "operation", "status"],  # completed, failed, paused
            registry=self.registry,
        )

        self.mapping_cache_total = Counter(
            "migrator_mapping_cache_lookups_total",
            "Identifier mapping cache lookups",
            ["entity_type", "result"],  # hit, miss
            registry=self.registry,
        )

        self.differentials_detected_total = Counter(
            "migrator_differentials_detected_total",
            "Records found divergent between source and target",
            ["entity_type", "comparison_type"],
            registry=self.registry,
        )

        self.resolutions_total = Counter(
            "migrator_resolutions_total",
            "Differential resolution outcomes",
            ["strategy", "outcome"],  # resolved, pending_review, dry_run, failed
            registry=self.registry,
        )

        # Histograms
        self.batch_duration_seconds = Histogram(
            "migrator_batch_duration_seconds",
            "Duration of a batch including retries",
            ["entity", "operation"],
            buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0],
            registry=self.registry,
        )

        # Gauges
        self.run_progress = Gauge(
            "migrator_run_progress",
            "Fraction of items processed in the current run (0.0 to 1.0)",
            ["entity", "operation"],
            registry=self.registry,
        )

        self.last_success_timestamp = Gauge(
            "migrator_last_success_timestamp",
            "Unix timestamp of last completed run",
            ["entity", "operation"],
            registry=self.registry,
        )

    @classmethod
    def from_config(
        cls,
        config: MonitoringConfig,
        registry: Optional[CollectorRegistry] = None,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> Optional["MigratorMetrics"]:
        """Create metrics from the ``monitoring`` config section.

        Returns:
            None when metrics are disabled; otherwise metrics whose HTTP
            endpoint is already listening on ``metrics_port``
        """
        if not config.metrics_enabled:
            return None
        metrics = cls(logger=logger, registry=registry)
        metrics.start_metrics_server(config.metrics_port)
        return metrics

    def record_batch(
        self,
        entity: str,
        operation: str,
        succeeded: int,
        failed: int,
        skipped: int,
        duration_seconds: float,
        batch_failed: bool = False,
    ) -> None:
        """Record a committed batch.

        Args:
            entity: Entity name
            operation: Operation name
            succeeded: Items that succeeded
            failed: Items that failed
            skipped: Items skipped
            duration_seconds: Batch duration including retries
            batch_failed: Whether the whole batch failed
        """
        status = "failed" if batch_failed else "succeeded"
        self.batches_total.labels(entity=entity, operation=operation, status=status).inc()
        for outcome, count in (("succeeded", succeeded), ("failed", failed), ("skipped", skipped)):
            if count:
                self.items_total.labels(entity=entity, operation=operation, outcome=outcome).inc(
                    count
                )
        self.batch_duration_seconds.labels(entity=entity, operation=operation).observe(
            duration_seconds
        )

    def record_retry(self, entity: str, operation: str) -> None:
        self.retries_total.labels(entity=entity, operation=operation).inc()

    def record_checkpoint_save(self, entity: str, operation: str) -> None:
        self.checkpoint_saves_total.labels(entity=entity, operation=operation).inc()

    def record_run_status(self, entity: str, operation: str, status: str) -> None:
        """Record the terminal status of a run.

        Args:
            entity: Entity name
            operation: Operation name
            status: Run status (completed, failed, paused)
        """
        self.runs_total.labels(entity=entity, operation=operation, status=status).inc()
        if status == "completed":
            self.last_success_timestamp.labels(entity=entity, operation=operation).set(time.time())

    def set_run_progress(
        self, entity: str, operation: str, processed: int, total: Optional[int]
    ) -> None:
        if total:
            self.run_progress.labels(entity=entity, operation=operation).set(processed / total)

    def record_cache_lookup(self, entity_type: str, hit: bool) -> None:
        self.mapping_cache_total.labels(
            entity_type=entity_type, result="hit" if hit else "miss"
        ).inc()

    def record_differentials(self, entity_type: str, comparison_type: str, count: int) -> None:
        self.differentials_detected_total.labels(
            entity_type=entity_type, comparison_type=comparison_type
        ).inc(count)

    def record_resolution(self, strategy: str, outcome: str) -> None:
        self.resolutions_total.labels(strategy=strategy, outcome=outcome).inc()

    def get_metrics(self) -> bytes:
        """Get Prometheus metrics in text format.

        Returns:
            Metrics in Prometheus text format
        """
        return generate_latest(self.registry)

    def start_metrics_server(self, port: int = 8000) -> None:
        """Start HTTP server for Prometheus metrics.

        Args:
            port: Port to listen on (default: 8000)
        """
        try:
            start_http_server(port, registry=self.registry)
            self.logger.info(
                "Prometheus metrics server started",
                port=port,
                endpoint=f"http://localhost:{port}/metrics",
            )
        except OSError as e:
            self.logger.error(
                "Failed to start metrics server",
                port=port,
                error=str(e),
            )
            raise
