"""Prometheus metrics collection for recordops.

Counts batches, per-record outcomes, savepoint rollbacks and retry rounds so
partial-failure rates can be watched from outside the process.
"""

from enum import Enum
from threading import Lock
from typing import Any, Dict, Optional

from prometheus_client import REGISTRY, Counter, Histogram

from recordops.logging import get_logger

logger = get_logger(__name__, component="metrics")


class MetricLabels(str, Enum):
    """Standard metric label names."""

    OPERATION = "operation"
    OUTCOME = "outcome"
    STATUS_CODE = "status_code"


class MetricsCollector:
    """Centralized metrics collector for recordops.

    Singleton: every executor, transaction manager and retry coordinator in
    the process reports into the same Prometheus registry.

    Example:
        >>> metrics = MetricsCollector()
        >>> metrics.increment_batch_count(operation="insert")
    """

    _instance: Optional["MetricsCollector"] = None
    _lock = Lock()

    def __new__(cls) -> "MetricsCollector":
        """Ensure singleton instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self) -> None:
        if self._initialized:
            return

        logger.info("initializing_metrics_collector")

        self.batches_total = Counter(
            "recordops_batches_total",
            "Total number of batches executed",
            [MetricLabels.OPERATION.value],
        )

        self.batch_size = Histogram(
            "recordops_batch_size_records",
            "Number of records per executed batch",
            [MetricLabels.OPERATION.value],
            buckets=(1, 5, 10, 25, 50, 100, 200, 500, 1000, 5000),
        )

        self.records_total = Counter(
            "recordops_records_total",
            "Total number of records processed by outcome",
            [MetricLabels.OPERATION.value, MetricLabels.OUTCOME.value],
        )

        self.record_errors_total = Counter(
            "recordops_record_errors_total",
            "Total number of per-record errors by status code",
            [MetricLabels.STATUS_CODE.value],
        )

        self.batch_failures_total = Counter(
            "recordops_batch_failures_total",
            "Total number of batches that failed as a whole",
            [MetricLabels.OPERATION.value],
        )

        self.rollbacks_total = Counter(
            "recordops_rollbacks_total",
            "Total number of savepoint rollbacks",
        )

        self.retry_rounds_total = Counter(
            "recordops_retry_rounds_total",
            "Total number of resubmission rounds",
        )

        self.retry_terminal_total = Counter(
            "recordops_retry_terminal_total",
            "Total number of records that failed terminally after retry",
        )

        self._initialized = True
        logger.info("metrics_collector_initialized")

    def increment_batch_count(self, operation: str, size: int = 0) -> None:
        self.batches_total.labels(operation=operation).inc()
        self.batch_size.labels(operation=operation).observe(size)

    def record_outcome(self, operation: str, success: bool, count: int = 1) -> None:
        if count <= 0:
            return
        outcome = "success" if success else "failure"
        self.records_total.labels(operation=operation, outcome=outcome).inc(count)

    def increment_error_count(self, status_code: str) -> None:
        self.record_errors_total.labels(status_code=status_code).inc()

    def increment_batch_failure(self, operation: str) -> None:
        self.batch_failures_total.labels(operation=operation).inc()

    def increment_rollback(self) -> None:
        self.rollbacks_total.inc()

    def increment_retry_round(self) -> None:
        self.retry_rounds_total.inc()

    def increment_retry_terminal(self, count: int = 1) -> None:
        if count > 0:
            self.retry_terminal_total.inc(count)

    def get_metrics_summary(self) -> Dict[str, Any]:
        """Current counter values, keyed by sample name and labels."""
        summary: Dict[str, Any] = {}
        for metric in REGISTRY.collect():
            if not metric.name.startswith("recordops_"):
                continue
            for sample in metric.samples:
                if sample.name.endswith("_created"):
                    continue
                key = sample.name
                if sample.labels:
                    key += "{" + ",".join(f"{k}={v}" for k, v in sorted(sample.labels.items())) + "}"
                summary[key] = sample.value
        return summary


# Create global instance for convenience
_global_metrics: Optional[MetricsCollector] = None


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector instance.

    Returns:
        Global MetricsCollector singleton.
    """
    global _global_metrics
    if _global_metrics is None:
        _global_metrics = MetricsCollector()
    return _global_metrics
