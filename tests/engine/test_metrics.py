"""
Metrics collector tests.
"""

from datetime import timedelta
from unittest.mock import patch

import pytest

from job_engine.engine import (
    ErrorCategory,
    ErrorInfo,
    ExecutionMetric,
    JobType,
    MetricsCollector,
    MetricsConfig,
)
from job_engine.engine.entities import format_timestamp
from job_engine.engine.metrics import current_memory_bytes

from .conftest import MockClock


def _metric(clock: MockClock, **overrides) -> ExecutionMetric:
    fields = dict(
        job_id="job-1",
        job_type="webhook-processing",
        status="completed",
        outcome="completed",
        duration_ms=42,
        attempts=1,
        memory_usage_bytes=1024,
        queue_depth_at_dispatch=3,
        timestamp=format_timestamp(clock.now()),
    )
    fields.update(overrides)
    return ExecutionMetric(**fields)


class TestRecording:
    """In-memory aggregates."""

    def test_execution_counters_and_histogram(self):
        clock = MockClock()
        collector = MetricsCollector(clock=clock.now)

        collector.record_job_execution(_metric(clock, duration_ms=5))
        collector.record_job_execution(_metric(clock, duration_ms=700))
        collector.record_job_execution(
            _metric(
                clock,
                status="failed",
                outcome="retry_scheduled",
                duration_ms=90_000,
                error_category="network",
            )
        )

        snapshot = collector.snapshot()
        executions = snapshot["counters"]["job_executions"]["webhook-processing"]
        assert executions == {"completed": 2, "retry_scheduled": 1}
        assert snapshot["counters"]["job_errors"]["webhook-processing"] == {"network": 1}

        histogram = snapshot["histograms"]["job_duration_ms"]["webhook-processing"]
        assert histogram["count"] == 3
        assert histogram["sum_ms"] == 90_705
        assert histogram["buckets"]["10"] == 1
        assert histogram["buckets"]["1000"] == 2
        assert histogram["buckets"]["+Inf"] == 3
        assert snapshot["gauges"]["queue_depth"] == 3

    def test_enqueue_and_dead_letter_counters_accept_enum(self):
        collector = MetricsCollector()

        collector.record_job_enqueued(JobType.REMINDER_PROCESSING, "tenant-a")
        collector.record_dead_letter_job(JobType.REMINDER_PROCESSING)
        collector.record_dead_letter_recovery(JobType.REMINDER_PROCESSING, "recovered")

        counters = collector.snapshot()["counters"]
        assert counters["jobs_enqueued"] == {"reminder-processing": 1}
        assert counters["jobs_dead_lettered"] == {"reminder-processing": 1}
        assert counters["dead_letter_recoveries"]["reminder-processing"] == {"recovered": 1}

    def test_circuit_state_changes(self):
        collector = MetricsCollector()

        collector.record_circuit_state_change("payments-api", "CLOSED", "OPEN")
        collector.record_circuit_state_change("payments-api", "OPEN", "HALF_OPEN")

        snapshot = collector.snapshot()
        assert snapshot["gauges"]["circuit_states"] == {"payments-api": "HALF_OPEN"}
        assert snapshot["counters"]["circuit_transitions"]["payments-api"] == {
            "OPEN": 1,
            "HALF_OPEN": 1,
        }

    def test_job_error_counter(self):
        collector = MetricsCollector()
        error = ErrorInfo(category=ErrorCategory.TIMEOUT, message="timed out", retryable=True)

        collector.record_job_error(JobType.WEBHOOK_PROCESSING, error, operation="dlq_recovery")

        assert collector.snapshot()["counters"]["job_errors"] == {
            "webhook-processing": {"timeout": 1}
        }

    def test_disabled_collector_records_nothing(self):
        collector = MetricsCollector(config=MetricsConfig(enabled=False))

        collector.record_job_enqueued("webhook-processing")
        collector.record_job_execution(_metric(MockClock()))

        counters = collector.snapshot()["counters"]
        assert counters["jobs_enqueued"] == {}
        assert counters["job_executions"] == {}

    def test_store_failure_is_swallowed(self):
        class BrokenStore:
            def insert_execution_metric(self, metric):
                raise RuntimeError("disk full")

        collector = MetricsCollector(store=BrokenStore())

        collector.record_job_execution(_metric(MockClock()))

        assert collector.snapshot()["counters"]["job_executions"] == {
            "webhook-processing": {"completed": 1}
        }

    def test_reset(self):
        collector = MetricsCollector()
        collector.record_job_enqueued("webhook-processing")

        collector.reset()

        assert collector.snapshot()["counters"]["jobs_enqueued"] == {}


class TestMemoryPressure:
    """Pressure levels relative to memory_threshold_mb."""

    def test_levels(self):
        collector = MetricsCollector(config=MetricsConfig(memory_threshold_mb=100))

        assert collector.record_memory_pressure(50, active_jobs=1) == "normal"
        assert collector.record_memory_pressure(70, active_jobs=1) == "warning"
        assert collector.record_memory_pressure(95, active_jobs=1) == "critical"

        snapshot = collector.snapshot()
        assert snapshot["gauges"]["memory_pressure_level"] == "critical"
        assert snapshot["counters"]["memory_pressure_events"] == {"warning": 1, "critical": 1}

    def test_current_memory_bytes_reads_process_rss(self):
        with patch("job_engine.engine.metrics.psutil.Process") as process:
            process.return_value.memory_info.return_value.rss = 123

            assert current_memory_bytes() == 123


class TestPerformanceAlerts:
    """Threshold alerts raised while recording executions."""

    def test_each_threshold_raises_its_alert(self):
        clock = MockClock()
        collector = MetricsCollector(
            config=MetricsConfig(
                memory_threshold_mb=100, alert_duration_ms=1000, alert_queue_depth=10
            ),
            clock=clock.now,
        )

        with patch("job_engine.engine.metrics.logger") as log:
            collector.record_job_execution(_metric(clock, job_id="slow", duration_ms=1001))
            collector.record_job_execution(
                _metric(
                    clock,
                    job_id="heavy",
                    memory_usage_bytes=101 * 1024 * 1024,
                    queue_depth_at_dispatch=11,
                )
            )
            collector.record_job_execution(_metric(clock, job_id="fine", duration_ms=1000))

        assert collector.snapshot()["counters"]["performance_alerts"] == {
            "processing_time": 1,
            "memory": 1,
            "queue_depth": 1,
        }
        warnings = [call.args[0] for call in log.warning.call_args_list]
        assert len(warnings) == 2
        assert "job slow" in warnings[0]
        assert "memory, queue_depth" in warnings[1]

    def test_check_returns_alert_kinds(self):
        collector = MetricsCollector(config=MetricsConfig(alert_duration_ms=10))

        assert collector.check_performance_alerts(_metric(MockClock(), duration_ms=11)) == [
            "processing_time"
        ]
        assert collector.check_performance_alerts(_metric(MockClock(), duration_ms=10)) == []

    def test_alerts_disabled(self):
        collector = MetricsCollector(
            config=MetricsConfig(alerts_enabled=False, alert_duration_ms=10)
        )

        collector.record_job_execution(_metric(MockClock(), duration_ms=5000))

        assert collector.snapshot()["counters"]["performance_alerts"] == {}


class TestPerformanceTrends:
    """Hourly trend points from persisted metrics."""

    def test_points_are_bucketed_by_hour(self, persistence, mock_clock):
        collector = MetricsCollector(store=persistence, clock=mock_clock.now)
        collector.record_job_execution(_metric(mock_clock, job_id="a", duration_ms=100))
        collector.record_job_execution(
            _metric(mock_clock, job_id="b", status="failed", outcome="failed", duration_ms=300)
        )
        mock_clock.tick(3601)
        collector.record_job_execution(
            _metric(mock_clock, job_id="c", memory_usage_bytes=2 * 1024 * 1024)
        )

        points = collector.get_performance_trends("24h")

        assert [p["timestamp"] for p in points] == [
            "2026-01-01T00:00:00Z",
            "2026-01-01T01:00:00Z",
        ]
        assert points[0]["throughput"] == 2
        assert points[0]["average_duration_ms"] == 200.0
        assert points[0]["error_rate"] == 0.5
        assert points[1]["throughput"] == 1
        assert points[1]["error_rate"] == 0.0
        assert points[1]["memory_usage_mb"] == 2.0

        last_hour = collector.get_performance_trends("1h")
        assert [p["timestamp"] for p in last_hour] == ["2026-01-01T01:00:00Z"]

    def test_job_type_filter(self, persistence, mock_clock):
        collector = MetricsCollector(store=persistence, clock=mock_clock.now)
        collector.record_job_execution(_metric(mock_clock, job_id="a"))
        collector.record_job_execution(
            _metric(mock_clock, job_id="b", job_type="reminder-processing")
        )

        points = collector.get_performance_trends("7d", job_type="reminder-processing")

        assert len(points) == 1
        assert points[0]["throughput"] == 1

    def test_unknown_range_rejected(self, persistence, mock_clock):
        collector = MetricsCollector(store=persistence, clock=mock_clock.now)

        with pytest.raises(ValueError):
            collector.get_performance_trends("2w")

    def test_no_store_means_no_trends(self):
        assert MetricsCollector().get_performance_trends("30d") == []


class TestPersistedStats:
    """Stats and retention backed by the job store."""

    def test_stats_from_store(self, persistence, mock_clock):
        collector = MetricsCollector(store=persistence, clock=mock_clock.now)
        collector.record_job_execution(_metric(mock_clock, job_id="a", duration_ms=100))
        collector.record_job_execution(
            _metric(
                mock_clock,
                job_id="b",
                status="failed",
                outcome="dead_lettered",
                duration_ms=300,
                error_category="validation",
                tenant_id="tenant-a",
            )
        )

        stats = collector.get_stats()
        assert stats["total"] == 2
        assert stats["by_outcome"] == {"completed": 1, "dead_lettered": 1}
        assert stats["by_error_category"] == {"validation": 1}
        assert stats["average_duration_ms"] == 200.0
        assert stats["max_duration_ms"] == 300

        assert stats["success_rate"] == 50.0

        tenant_stats = collector.get_stats(tenant_id="tenant-a")
        assert tenant_stats["total"] == 1

    def test_hourly_and_daily_throughput(self, persistence, mock_clock):
        collector = MetricsCollector(store=persistence, clock=mock_clock.now)
        collector.record_job_execution(_metric(mock_clock, job_id="yesterday"))
        mock_clock.tick(23 * 3600)
        collector.record_job_execution(_metric(mock_clock, job_id="earlier"))
        mock_clock.tick(2 * 3600)
        collector.record_job_execution(_metric(mock_clock, job_id="recent"))

        stats = collector.get_stats()

        assert stats["total"] == 3
        assert stats["last_hour_throughput"] == 1
        assert stats["last_day_throughput"] == 2

    def test_stats_since_filter(self, persistence, mock_clock):
        collector = MetricsCollector(store=persistence, clock=mock_clock.now)
        collector.record_job_execution(_metric(mock_clock, job_id="old"))
        mock_clock.tick(3600)
        collector.record_job_execution(_metric(mock_clock, job_id="new"))

        stats = collector.get_stats(since=mock_clock.now() - timedelta(minutes=1))

        assert stats["total"] == 1

    def test_cleanup_respects_retention(self, persistence, mock_clock):
        collector = MetricsCollector(store=persistence, clock=mock_clock.now)
        collector.record_job_execution(_metric(mock_clock, job_id="old"))
        mock_clock.tick(91 * 86400)
        collector.record_job_execution(_metric(mock_clock, job_id="recent"))

        deleted = collector.cleanup()

        assert deleted == 1
        assert persistence.list_execution_metrics("old") == []
        assert len(persistence.list_execution_metrics("recent")) == 1

    def test_in_memory_stats_without_store(self):
        clock = MockClock()
        collector = MetricsCollector(clock=clock.now)
        collector.record_job_execution(_metric(clock, duration_ms=10))
        collector.record_job_execution(_metric(clock, duration_ms=30, outcome="failed"))

        stats = collector.get_stats(job_type="webhook-processing")

        assert stats["total"] == 2
        assert stats["average_duration_ms"] == 20.0
        assert stats["success_rate"] == 50.0
