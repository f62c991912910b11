"""
Execution Metrics Collector.

Append-only recorder for job lifecycle events:
- enqueued / executed / errored / dead-lettered / recovered
- circuit breaker transitions
- memory pressure samples

Aggregates live in memory (counters, gauges, a duration histogram). When a
store is attached and persistence is enabled, every ExecutionMetric is also
written to the job store for historical queries.

Recording never raises. A failure to record is logged and swallowed so that
telemetry can never fail a job.
"""

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

import psutil

from .entities import (
    ErrorInfo,
    ExecutionMetric,
    enum_value,
    format_timestamp,
    utc_now,
)


logger = logging.getLogger(__name__)


DURATION_BUCKETS_MS = (10, 50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000, 60000)

PRESSURE_NORMAL = "normal"
PRESSURE_WARNING = "warning"
PRESSURE_CRITICAL = "critical"

ALERT_PROCESSING_TIME = "processing_time"
ALERT_MEMORY = "memory"
ALERT_QUEUE_DEPTH = "queue_depth"

BYTES_PER_MB = 1024 * 1024

# Trend and stats windows
TIME_RANGES = {
    "1h": timedelta(hours=1),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}


@dataclass
class MetricsConfig:
    enabled: bool = True
    persist: bool = True
    retention_days: int = 90
    memory_threshold_mb: int = 512
    alerts_enabled: bool = True
    alert_duration_ms: int = 30000
    alert_queue_depth: int = 100


def current_memory_bytes() -> int:
    """Resident set size of this process."""
    return psutil.Process().memory_info().rss


class MetricsCollector:
    """
    Collects and aggregates job execution metrics.

    Thread-safe: all workers write concurrently through a single lock held
    only for in-memory updates.
    """

    def __init__(
        self,
        store=None,
        config: Optional[MetricsConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.config = config or MetricsConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._started_at = clock()
        self._reset_aggregates()

    def _reset_aggregates(self) -> None:
        self._enqueued: dict = defaultdict(int)
        self._executions: dict = defaultdict(int)  # (job_type, outcome)
        self._errors: dict = defaultdict(int)  # (job_type, category)
        self._dead_lettered: dict = defaultdict(int)
        self._recoveries: dict = defaultdict(int)  # (job_type, outcome)
        self._circuit_transitions: dict = defaultdict(int)  # (name, to_state)
        self._circuit_states: dict = {}
        self._duration_buckets: dict = defaultdict(lambda: [0] * (len(DURATION_BUCKETS_MS) + 1))
        self._duration_sum: dict = defaultdict(int)
        self._duration_count: dict = defaultdict(int)
        self._memory_pressure_events: dict = defaultdict(int)
        self._performance_alerts: dict = defaultdict(int)
        self._last_memory_mb = 0.0
        self._last_pressure_level = PRESSURE_NORMAL
        self._queue_depth = 0

    # =========================================================================
    # Recording
    # =========================================================================

    def record_job_enqueued(self, job_type: str, tenant_id: Optional[str] = None) -> None:
        if not self.config.enabled:
            return
        try:
            with self._lock:
                self._enqueued[enum_value(job_type)] += 1
            logger.debug(f"Metric: enqueued {enum_value(job_type)} (tenant={tenant_id})")
        except Exception as e:
            logger.error(f"Failed to record enqueue metric: {e}")

    def record_job_execution(self, metric: ExecutionMetric) -> None:
        """Record a terminal attempt. Exactly one call per attempt."""
        if not self.config.enabled:
            return
        try:
            with self._lock:
                self._executions[(metric.job_type, metric.outcome)] += 1
                if metric.error_category:
                    self._errors[(metric.job_type, metric.error_category)] += 1
                self._observe_duration(metric.job_type, metric.duration_ms)
                self._queue_depth = metric.queue_depth_at_dispatch
        except Exception as e:
            logger.error(f"Failed to record execution metric for {metric.job_id}: {e}")
            return

        if self.config.alerts_enabled:
            self.check_performance_alerts(metric)

        if self.store is not None and self.config.persist:
            try:
                self.store.insert_execution_metric(metric)
            except Exception as e:
                logger.error(
                    f"Failed to persist execution metric for {metric.job_id}: {e}",
                    exc_info=True,
                )

    def check_performance_alerts(self, metric: ExecutionMetric) -> list[str]:
        """
        Compare one execution against the alert thresholds.

        Returns:
            Alert kinds raised: "processing_time", "memory", "queue_depth"
        """
        alerts = []
        memory_mb = metric.memory_usage_bytes / BYTES_PER_MB
        if metric.duration_ms > self.config.alert_duration_ms:
            alerts.append(ALERT_PROCESSING_TIME)
        if memory_mb > self.config.memory_threshold_mb:
            alerts.append(ALERT_MEMORY)
        if metric.queue_depth_at_dispatch > self.config.alert_queue_depth:
            alerts.append(ALERT_QUEUE_DEPTH)
        if not alerts:
            return alerts

        with self._lock:
            for kind in alerts:
                self._performance_alerts[kind] += 1
        logger.warning(
            f"Performance alerts for job {metric.job_id} ({metric.job_type}): "
            f"{', '.join(alerts)} (duration={metric.duration_ms}ms, "
            f"memory={memory_mb:.1f}MB, queue_depth={metric.queue_depth_at_dispatch})"
        )
        return alerts

    def _observe_duration(self, job_type: str, duration_ms: int) -> None:
        """Caller holds lock."""
        buckets = self._duration_buckets[job_type]
        for i, bound in enumerate(DURATION_BUCKETS_MS):
            if duration_ms <= bound:
                buckets[i] += 1
                break
        else:
            buckets[-1] += 1
        self._duration_sum[job_type] += duration_ms
        self._duration_count[job_type] += 1

    def record_job_error(
        self, job_type: str, error_info: ErrorInfo, operation: str = "execute"
    ) -> None:
        """Record a categorized error that did not end in an ExecutionMetric."""
        if not self.config.enabled:
            return
        try:
            with self._lock:
                self._errors[(enum_value(job_type), error_info.category.value)] += 1
            logger.debug(
                f"Metric: {operation} error for {enum_value(job_type)} "
                f"[{error_info.category.value}] {error_info.message}"
            )
        except Exception as e:
            logger.error(f"Failed to record error metric: {e}")

    def record_dead_letter_job(self, job_type: str, tenant_id: Optional[str] = None) -> None:
        if not self.config.enabled:
            return
        try:
            with self._lock:
                self._dead_lettered[enum_value(job_type)] += 1
            logger.debug(f"Metric: dead-lettered {enum_value(job_type)} (tenant={tenant_id})")
        except Exception as e:
            logger.error(f"Failed to record dead-letter metric: {e}")

    def record_dead_letter_recovery(self, job_type: str, outcome: str) -> None:
        """outcome is "recovered" or "failed"."""
        if not self.config.enabled:
            return
        try:
            with self._lock:
                self._recoveries[(enum_value(job_type), outcome)] += 1
        except Exception as e:
            logger.error(f"Failed to record recovery metric: {e}")

    def record_circuit_state_change(self, name: str, old_state: str, new_state: str) -> None:
        if not self.config.enabled:
            return
        try:
            with self._lock:
                self._circuit_transitions[(name, new_state)] += 1
                self._circuit_states[name] = new_state
        except Exception as e:
            logger.error(f"Failed to record circuit metric: {e}")

    def record_memory_pressure(self, memory_mb: float, active_jobs: int) -> str:
        """
        Record a memory sample and classify it.

        Returns:
            "critical" at >= 90% of the threshold, "warning" at >= 70%,
            otherwise "normal"
        """
        threshold = self.config.memory_threshold_mb
        ratio = memory_mb / threshold if threshold > 0 else 0.0
        if ratio >= 0.9:
            level = PRESSURE_CRITICAL
        elif ratio >= 0.7:
            level = PRESSURE_WARNING
        else:
            level = PRESSURE_NORMAL

        if not self.config.enabled:
            return level
        try:
            with self._lock:
                self._last_memory_mb = memory_mb
                self._last_pressure_level = level
                if level != PRESSURE_NORMAL:
                    self._memory_pressure_events[level] += 1
            if level != PRESSURE_NORMAL:
                logger.warning(
                    f"Memory pressure {level}: {memory_mb:.1f}MB / {threshold}MB "
                    f"({active_jobs} active jobs)"
                )
        except Exception as e:
            logger.error(f"Failed to record memory pressure: {e}")
        return level

    def set_queue_depth(self, depth: int) -> None:
        with self._lock:
            self._queue_depth = depth

    # =========================================================================
    # Reading
    # =========================================================================

    def snapshot(self) -> dict:
        """
        Export counters, gauges and histograms for scraping.

        Keys are flat strings so the result serializes to JSON as-is.
        """
        with self._lock:
            histograms = {}
            for job_type, buckets in self._duration_buckets.items():
                cumulative = 0
                bucket_counts = {}
                for bound, count in zip(list(DURATION_BUCKETS_MS) + ["+Inf"], buckets):
                    cumulative += count
                    bucket_counts[str(bound)] = cumulative
                histograms[job_type] = {
                    "buckets": bucket_counts,
                    "sum_ms": self._duration_sum[job_type],
                    "count": self._duration_count[job_type],
                }

            return {
                "counters": {
                    "jobs_enqueued": dict(self._enqueued),
                    "job_executions": _nest(self._executions),
                    "job_errors": _nest(self._errors),
                    "jobs_dead_lettered": dict(self._dead_lettered),
                    "dead_letter_recoveries": _nest(self._recoveries),
                    "circuit_transitions": _nest(self._circuit_transitions),
                    "memory_pressure_events": dict(self._memory_pressure_events),
                    "performance_alerts": dict(self._performance_alerts),
                },
                "gauges": {
                    "queue_depth": self._queue_depth,
                    "memory_usage_mb": round(self._last_memory_mb, 2),
                    "memory_pressure_level": self._last_pressure_level,
                    "circuit_states": dict(self._circuit_states),
                },
                "histograms": {"job_duration_ms": histograms},
                "uptime_seconds": int((self._clock() - self._started_at).total_seconds()),
            }

    def get_stats(
        self,
        job_type: Optional[str] = None,
        tenant_id: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> dict:
        """
        Aggregate execution statistics.

        Uses persisted ExecutionMetric rows when a store is attached,
        otherwise the in-memory counters (tenant filter unsupported there).
        """
        if self.store is not None and self.config.persist:
            since_ts = format_timestamp(since) if since is not None else None
            stats = self.store.get_metric_stats(
                job_type=job_type, tenant_id=tenant_id, since=since_ts
            )
            now = self._clock()
            stats["last_hour_throughput"] = self.store.count_metrics_since(
                format_timestamp(now - TIME_RANGES["1h"]), job_type=job_type
            )
            stats["last_day_throughput"] = self.store.count_metrics_since(
                format_timestamp(now - TIME_RANGES["24h"]), job_type=job_type
            )
            return stats

        with self._lock:
            totals: dict = defaultdict(int)
            for (metric_job_type, outcome), count in self._executions.items():
                if job_type is None or metric_job_type == job_type:
                    totals[outcome] += count
            duration_sum = sum(
                v for k, v in self._duration_sum.items() if job_type is None or k == job_type
            )
            duration_count = sum(
                v for k, v in self._duration_count.items() if job_type is None or k == job_type
            )
        total = sum(totals.values())
        return {
            "total": total,
            "by_outcome": dict(totals),
            "average_duration_ms": (duration_sum / duration_count) if duration_count else 0.0,
            "success_rate": (totals.get("completed", 0) / total * 100) if total else 0.0,
        }

    def get_performance_trends(
        self, time_range: str = "24h", job_type: Optional[str] = None
    ) -> list[dict]:
        """
        Hourly throughput, duration, error rate and memory over a time range.

        Args:
            time_range: One of TIME_RANGES ("1h", "24h", "7d", "30d")
            job_type: Restrict to one job type

        Returns:
            One point per hour that saw executions, oldest first. Empty when
            no store is attached.

        Raises:
            ValueError: Unknown time_range
        """
        if time_range not in TIME_RANGES:
            raise ValueError(
                f"Unknown time range '{time_range}', expected one of {sorted(TIME_RANGES)}"
            )
        if self.store is None or not self.config.persist:
            return []

        since = format_timestamp(self._clock() - TIME_RANGES[time_range])
        try:
            rows = self.store.get_metric_trends(since, job_type=job_type)
        except Exception as e:
            logger.error(f"Failed to load performance trends: {e}", exc_info=True)
            return []
        return [
            {
                "timestamp": f"{row['hour']}:00:00Z",
                "throughput": row["throughput"],
                "average_duration_ms": row["average_duration_ms"],
                "error_rate": row["error_rate"],
                "memory_usage_mb": round(row["average_memory_bytes"] / BYTES_PER_MB, 2),
            }
            for row in rows
        ]

    def cleanup(self, retention_days: Optional[int] = None) -> int:
        """Delete persisted metrics older than the retention horizon."""
        if self.store is None:
            return 0
        days = retention_days if retention_days is not None else self.config.retention_days
        cutoff = format_timestamp(self._clock() - timedelta(days=days))
        try:
            deleted = self.store.delete_metrics_before(cutoff)
        except Exception as e:
            logger.error(f"Metrics cleanup failed: {e}", exc_info=True)
            return 0
        if deleted:
            logger.info(f"Cleaned up {deleted} execution metrics older than {days} days")
        return deleted

    def reset(self) -> None:
        with self._lock:
            self._reset_aggregates()


def _nest(counter: dict) -> dict:
    """Turn {(a, b): n} into {a: {b: n}}."""
    nested: dict = {}
    for (outer, inner), count in counter.items():
        nested.setdefault(outer, {})[inner] = count
    return nested
