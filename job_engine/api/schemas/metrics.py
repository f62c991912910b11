"""
Metrics export schemas.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from job_engine.engine.entities import ExecutionMetric


class MetricsResponse(BaseModel):
    """Counters, gauges and histograms keyed by job type, dependency and outcome."""

    counters: Dict[str, Any] = Field(default_factory=dict)
    gauges: Dict[str, Any] = Field(default_factory=dict)
    histograms: Dict[str, Any] = Field(default_factory=dict)
    uptime_seconds: int = Field(default=0, description="Seconds since the collector started")
    circuits: Dict[str, Any] = Field(default_factory=dict, description="Per-breaker counters")


class ExecutionStatsResponse(BaseModel):
    """Aggregated execution statistics."""

    total: int = Field(default=0, description="Terminal or retry-scheduled executions")
    by_outcome: Dict[str, int] = Field(default_factory=dict)
    by_error_category: Dict[str, int] = Field(default_factory=dict)
    average_duration_ms: float = 0.0
    max_duration_ms: Optional[int] = None
    success_rate: float = Field(default=0.0, description="Completed share of executions, percent")
    last_hour_throughput: Optional[int] = Field(default=None, description="Executions in the past hour")
    last_day_throughput: Optional[int] = Field(default=None, description="Executions in the past 24 hours")


class PerformanceTrendPoint(BaseModel):
    """One hour of execution history."""

    timestamp: str = Field(..., description="Start of the hour (UTC)")
    throughput: int
    average_duration_ms: float
    error_rate: float = Field(..., description="Failed share of executions, 0..1")
    memory_usage_mb: float


class PerformanceTrendsResponse(BaseModel):
    """Hourly performance trend over a time range."""

    time_range: str
    job_type: Optional[str] = None
    points: List[PerformanceTrendPoint] = Field(default_factory=list)


class ExecutionMetricResponse(BaseModel):
    """One recorded execution of a job."""

    job_id: str
    job_type: str
    status: str = Field(..., description="completed/failed")
    outcome: str = Field(..., description="completed/retry_scheduled/dead_lettered/failed")
    duration_ms: int
    attempts: int
    memory_usage_bytes: int
    queue_depth_at_dispatch: int
    timestamp: str
    error_category: Optional[str] = None
    tenant_id: Optional[str] = None

    @classmethod
    def from_metric(cls, metric: ExecutionMetric) -> "ExecutionMetricResponse":
        return cls(**metric.to_dict())


class ExecutionMetricListResponse(BaseModel):
    """Execution history of one job."""

    job_id: str
    metrics: List[ExecutionMetricResponse] = Field(default_factory=list)
