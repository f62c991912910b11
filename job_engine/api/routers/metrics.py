"""
Metrics router.

Observability export. Field names match ExecutionMetric.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from job_engine.engine.entities import JobType

from ..schemas.metrics import (
    ExecutionStatsResponse,
    MetricsResponse,
    PerformanceTrendPoint,
    PerformanceTrendsResponse,
)
from .._engine_state import get_engine_service


router = APIRouter()


@router.get("", response_model=MetricsResponse)
def get_metrics():
    """
    Counters, gauges and duration histograms since process start,
    plus per-breaker counters.
    """
    service = get_engine_service()

    try:
        snapshot = service.get_metrics()
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to get metrics: {str(e)}")

    return MetricsResponse(**snapshot)


@router.get("/stats", response_model=ExecutionStatsResponse)
def get_execution_stats(
    job_type: Optional[JobType] = Query(default=None, description="Filter by job type"),
    tenant_id: Optional[str] = Query(default=None, description="Filter by tenant"),
    since: Optional[datetime] = Query(default=None, description="Only executions at or after this time"),
):
    """
    Aggregated execution statistics from persisted metrics.
    """
    service = get_engine_service()

    try:
        stats = service.get_execution_stats(job_type=job_type, tenant_id=tenant_id, since=since)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to get execution stats: {str(e)}")

    return ExecutionStatsResponse(**stats)


@router.get("/trends", response_model=PerformanceTrendsResponse)
def get_performance_trends(
    time_range: str = Query(default="24h", description="1h, 24h, 7d or 30d"),
    job_type: Optional[JobType] = Query(default=None, description="Filter by job type"),
):
    """
    Hourly throughput, average duration, error rate and memory usage.
    """
    service = get_engine_service()

    try:
        points = service.get_performance_trends(time_range=time_range, job_type=job_type)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to get performance trends: {str(e)}")

    return PerformanceTrendsResponse(
        time_range=time_range,
        job_type=job_type.value if job_type is not None else None,
        points=[PerformanceTrendPoint(**point) for point in points],
    )
