"""Tests for observability.py: structured logging and metrics."""

import logging

import pytest

from product_images.core.observability import (
    LogContext,
    LogLevel,
    MetricsCollector,
    PerformanceMetrics,
    StructuredLogger,
    timed_operation,
)


class TestLogContext:
    """Tests for LogContext."""

    def test_with_operation_keeps_correlation_id(self):
        context = LogContext(component="orchestrator")
        derived = context.with_operation("probe")
        assert derived.correlation_id == context.correlation_id
        assert derived.operation == "probe"
        assert derived.component == "orchestrator"

    def test_with_metadata_does_not_mutate_original(self):
        context = LogContext(metadata={"product_id": 1})
        derived = context.with_metadata(file_index=2)
        assert derived.metadata == {"product_id": 1, "file_index": 2}
        assert context.metadata == {"product_id": 1}


class TestStructuredLogger:
    """Tests for StructuredLogger formatting."""

    def test_formats_context_and_metadata(self, caplog):
        logger = StructuredLogger("test-structured-logger", LogLevel.DEBUG)
        logger._logger.propagate = True
        context = LogContext(correlation_id="abc", operation="store").with_metadata(path="x")

        with caplog.at_level(logging.DEBUG, logger="test-structured-logger"):
            logger.info("stored", context, size=10)

        assert "[store] [abc] stored (path=x, size=10)" in caplog.text

    def test_kwargs_without_context(self, caplog):
        logger = StructuredLogger("test-structured-kwargs", LogLevel.DEBUG)
        logger._logger.propagate = True

        with caplog.at_level(logging.DEBUG, logger="test-structured-kwargs"):
            logger.warning("limit hit", key="image_upload_ip:1.2.3.4")

        assert "limit hit (key=image_upload_ip:1.2.3.4)" in caplog.text


class TestMetricsCollector:
    """Tests for MetricsCollector and timed_operation."""

    def test_timed_operation_records_success(self):
        collector = MetricsCollector()
        with timed_operation("probe", collector, file_index=0):
            pass

        metrics = collector.get_metrics("probe")
        assert len(metrics) == 1
        assert metrics[0].success
        assert metrics[0].metadata == {"file_index": 0}

    def test_timed_operation_records_failure_and_reraises(self):
        collector = MetricsCollector()
        with pytest.raises(RuntimeError):
            with timed_operation("store", collector):
                raise RuntimeError("disk full")

        metric = collector.get_metrics("store")[0]
        assert not metric.success
        assert metric.error_message == "disk full"

    def test_timed_operation_without_collector(self):
        with timed_operation("derive"):
            pass

    def test_summary(self):
        collector = MetricsCollector()
        collector.record_metric(PerformanceMetrics("derive", 0.0, 1.0, True))
        collector.record_metric(PerformanceMetrics("derive", 0.0, 3.0, False))

        summary = collector.get_summary("derive")
        assert summary["total_operations"] == 2
        assert summary["failed_operations"] == 1
        assert summary["avg_duration"] == 2.0
        assert collector.get_summary("missing") == {}

        collector.clear_metrics()
        assert collector.get_metrics() == []
