"""
API Schemas package.

Pydantic models for request/response validation.
"""

from .jobs import (
    ErrorInfoResponse,
    JobSubmitRequest,
    JobSubmitResponse,
    JobResponse,
    JobListResponse,
    JobCancelResponse,
)
from .dead_letter import (
    DeadLetterResponse,
    DeadLetterListResponse,
    RecoveryResponse,
    DeadLetterDeleteResponse,
    DeadLetterPurgeRequest,
    DeadLetterPurgeResponse,
    DeadLetterProcessRequest,
    DeadLetterProcessResponse,
)
from .engine import (
    EngineStartRequest,
    EngineStartResponse,
    EngineStopRequest,
    EngineStopResponse,
    EngineStatusResponse,
    CircuitHealth,
    CircuitMetricsResponse,
    CircuitListResponse,
    CircuitResetResponse,
)
from .metrics import (
    MetricsResponse,
    ExecutionStatsResponse,
    ExecutionMetricResponse,
    ExecutionMetricListResponse,
    PerformanceTrendPoint,
    PerformanceTrendsResponse,
)

__all__ = [
    "ErrorInfoResponse",
    "JobSubmitRequest",
    "JobSubmitResponse",
    "JobResponse",
    "JobListResponse",
    "JobCancelResponse",
    "DeadLetterResponse",
    "DeadLetterListResponse",
    "RecoveryResponse",
    "DeadLetterDeleteResponse",
    "DeadLetterPurgeRequest",
    "DeadLetterPurgeResponse",
    "DeadLetterProcessRequest",
    "DeadLetterProcessResponse",
    "EngineStartRequest",
    "EngineStartResponse",
    "EngineStopRequest",
    "EngineStopResponse",
    "EngineStatusResponse",
    "CircuitHealth",
    "CircuitMetricsResponse",
    "CircuitListResponse",
    "CircuitResetResponse",
    "MetricsResponse",
    "ExecutionStatsResponse",
    "ExecutionMetricResponse",
    "ExecutionMetricListResponse",
    "PerformanceTrendPoint",
    "PerformanceTrendsResponse",
]
