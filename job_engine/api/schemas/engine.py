"""
Engine control API schemas.

Worker pool start/stop, status and circuit breaker administration
under /engine.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class EngineStartRequest(BaseModel):
    """Request to start the worker pool."""

    run_recovery: bool = Field(
        default=True,
        description="Whether to reclaim orphaned active claims before starting",
    )


class EngineStartResponse(BaseModel):
    """Response from engine start."""

    success: bool
    message: str
    recovery_stats: Optional[dict] = Field(
        default=None,
        description="Recovery statistics if recovery was run",
    )


class EngineStopRequest(BaseModel):
    """Request to stop the worker pool."""

    timeout: float = Field(
        default=30.0,
        ge=1.0,
        le=300.0,
        description="Maximum wait time for in-flight jobs to complete (seconds)",
    )


class EngineStopResponse(BaseModel):
    """Response from engine stop."""

    success: bool
    message: str
    drained: bool = Field(default=True, description="Whether every in-flight job finished")


class CircuitHealth(BaseModel):
    """Aggregate breaker health."""

    healthy: bool = Field(..., description="True if no breaker is OPEN")
    open_circuits: List[str] = Field(default_factory=list)
    half_open_circuits: List[str] = Field(default_factory=list)
    total_circuits: int = Field(default=0)


class EngineStatusResponse(BaseModel):
    """Response from engine status endpoint."""

    is_running: bool = Field(..., description="Whether workers are claiming jobs")
    dispatcher_state: str = Field(..., description="STOPPED/RUNNING/STOPPING")
    worker_count: int = Field(..., description="Configured worker pool size")
    allowed_workers: int = Field(..., description="Workers allowed to claim under memory pressure")
    in_flight: int = Field(default=0, description="Jobs executing right now")
    jobs: Dict[str, int] = Field(default_factory=dict, description="Job count per status")
    dead_letter: Dict[str, Any] = Field(default_factory=dict, description="DLQ statistics")
    circuits: CircuitHealth
    registered_job_types: List[str] = Field(default_factory=list)


class CircuitMetricsResponse(BaseModel):
    """Per-breaker counters."""

    name: str
    state: str = Field(..., description="CLOSED/OPEN/HALF_OPEN")
    failure_count: int = Field(default=0, description="Failures inside the monitoring window")
    success_count: int = Field(default=0, description="Consecutive HALF_OPEN successes")
    requests: int = 0
    successes: int = 0
    failures: int = 0
    timeouts: int = 0
    rejections: int = 0
    average_response_time_ms: float = 0.0
    last_failure_time: Optional[float] = None
    last_success_time: Optional[float] = None
    opened_at: Optional[float] = None
    next_attempt_in_ms: int = Field(default=0, description="Time until an OPEN breaker admits a probe")


class CircuitListResponse(BaseModel):
    """Response for circuit list endpoint."""

    circuits: List[CircuitMetricsResponse] = Field(default_factory=list)
    health: CircuitHealth


class CircuitResetResponse(BaseModel):
    """Response from manual breaker reset."""

    name: str
    success: bool
    state: str
