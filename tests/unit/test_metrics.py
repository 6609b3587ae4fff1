"""Tests for the Prometheus metrics module."""

from prometheus_client import REGISTRY

from recordops.metrics import MetricsCollector, get_metrics_collector
from recordops.models import BatchRequest


def sample(name, **labels):
    return REGISTRY.get_sample_value(name, labels) or 0.0


class TestMetricsCollector:
    """Test MetricsCollector functionality."""

    def test_singleton_pattern(self):
        assert MetricsCollector() is MetricsCollector()
        assert get_metrics_collector() is MetricsCollector()

    def test_batch_counters(self, executor, make_account):
        """Test executing a batch counts the batch and each outcome."""
        batches = sample("recordops_batches_total", operation="insert")
        ok = sample("recordops_records_total", operation="insert", outcome="success")
        failed = sample("recordops_records_total", operation="insert", outcome="failure")
        errors = sample("recordops_record_errors_total", status_code="validation_error")

        executor.execute(BatchRequest.insert([make_account("A"), make_account(None)]))

        assert sample("recordops_batches_total", operation="insert") == batches + 1
        assert sample("recordops_records_total", operation="insert", outcome="success") == ok + 1
        assert sample("recordops_records_total", operation="insert", outcome="failure") == failed + 1
        assert sample("recordops_record_errors_total", status_code="validation_error") == errors + 1

    def test_rollback_counter(self, tm):
        before = sample("recordops_rollbacks_total")
        tm.begin()
        tm.rollback_to(tm.mark())
        tm.rollback()

        assert sample("recordops_rollbacks_total") == before + 2

    def test_summary(self):
        collector = get_metrics_collector()
        collector.increment_retry_round()

        summary = collector.get_metrics_summary()

        assert summary["recordops_retry_rounds_total"] >= 1
        assert all(key.startswith("recordops_") for key in summary)
