"""
Job API schemas.

Submission, query and cancellation of jobs under /jobs.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from job_engine.engine.entities import ErrorInfo, Job


# =============================================================================
# Shared
# =============================================================================


class ErrorInfoResponse(BaseModel):
    """Categorized failure of one attempt."""

    category: str = Field(..., description="Error category (network, timeout, validation, ...)")
    message: str = Field(..., description="Error message")
    retryable: bool = Field(..., description="Whether the failure may succeed on retry")
    error_type: str = Field(default="Exception", description="Exception class name")
    attempt: int = Field(default=0, description="Attempt number that failed")
    occurred_at: Optional[str] = Field(default=None, description="Failure timestamp (UTC)")

    @classmethod
    def from_error(cls, error: ErrorInfo) -> "ErrorInfoResponse":
        return cls(**error.to_dict())


# =============================================================================
# Requests
# =============================================================================


class JobSubmitRequest(BaseModel):
    """Request to submit a job."""

    job_type: str = Field(
        ...,
        description="Job type: 'webhook-processing' or 'reminder-processing'",
    )
    payload: Any = Field(..., description="JSON payload passed to the handler")
    singleton_key: Optional[str] = Field(
        default=None,
        min_length=1,
        description="Idempotency key; duplicates while pending/active return the existing job",
    )
    tenant_id: Optional[str] = Field(default=None, description="Tenant the job belongs to")
    priority: int = Field(
        default=0,
        ge=0,
        le=100,
        description="Job priority (higher = dispatched sooner)",
    )


# =============================================================================
# Responses
# =============================================================================


class JobResponse(BaseModel):
    """Response representing a Job."""

    job_id: str = Field(..., description="Unique job identifier")
    job_type: str = Field(..., description="Job type")
    status: str = Field(..., description="pending/active/completed/failed/dead-lettered/cancelled")
    payload: Any = Field(default=None, description="Job payload")
    max_attempts: int = Field(..., description="Attempt budget from the retry profile")
    attempts: int = Field(default=0, description="Attempts consumed so far")
    singleton_key: Optional[str] = Field(default=None, description="Idempotency key")
    tenant_id: Optional[str] = Field(default=None, description="Tenant ID")
    priority: int = Field(default=0, description="Job priority")
    created_at: str = Field(..., description="Submission timestamp (UTC)")
    last_attempt_at: Optional[str] = Field(default=None, description="Last claim timestamp")
    next_attempt_at: Optional[str] = Field(default=None, description="Earliest next dispatch")
    finished_at: Optional[str] = Field(default=None, description="Terminal transition timestamp")
    last_error: Optional[ErrorInfoResponse] = Field(default=None, description="Most recent failure")
    failure_history: List[ErrorInfoResponse] = Field(
        default_factory=list,
        description="Every failed attempt in order",
    )
    dead_letter_id: Optional[str] = Field(default=None, description="DLQ entry if dead-lettered")

    @classmethod
    def from_job(cls, job: Job) -> "JobResponse":
        return cls(
            job_id=job.job_id,
            job_type=job.job_type.value,
            status=job.status.value,
            payload=job.payload,
            max_attempts=job.max_attempts,
            attempts=job.attempts,
            singleton_key=job.singleton_key,
            tenant_id=job.tenant_id,
            priority=job.priority,
            created_at=job.created_at,
            last_attempt_at=job.last_attempt_at,
            next_attempt_at=job.next_attempt_at,
            finished_at=job.finished_at,
            last_error=ErrorInfoResponse.from_error(job.last_error) if job.last_error else None,
            failure_history=[ErrorInfoResponse.from_error(e) for e in job.failure_history],
            dead_letter_id=job.dead_letter_id,
        )


class JobSubmitResponse(BaseModel):
    """Response from job submission."""

    job_id: str = Field(..., description="ID of the new or existing job")
    created: bool = Field(..., description="False if an active job with the same singleton_key existed")
    status: str = Field(..., description="Current job status")


class JobListResponse(BaseModel):
    """Response for job list endpoint."""

    jobs: List[JobResponse] = Field(default_factory=list)
    total: int = Field(..., description="Number of jobs returned")
    status_counts: Dict[str, int] = Field(
        default_factory=dict,
        description="Job count per status across the whole store",
    )


class JobCancelResponse(BaseModel):
    """Response from job cancellation."""

    job_id: str
    success: bool
    message: Optional[str] = None
