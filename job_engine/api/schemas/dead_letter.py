"""
Dead-letter API schemas.

Listing, manual retry and purge of quarantined jobs under /dead-letter.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from job_engine.engine.entities import DeadLetterEntry

from .jobs import ErrorInfoResponse


class DeadLetterResponse(BaseModel):
    """Response representing a dead-letter entry."""

    dlq_id: str = Field(..., description="Dead-letter entry ID (dlq_ prefix)")
    original_job_id: str = Field(..., description="Quarantined job ID")
    job_type: str = Field(..., description="Job type")
    payload: Any = Field(default=None, description="Original job payload")
    tenant_id: Optional[str] = Field(default=None, description="Tenant ID")
    priority: int = Field(default=0, description="Original job priority")
    failure_history: List[ErrorInfoResponse] = Field(default_factory=list)
    enqueued_at: str = Field(..., description="Quarantine timestamp (UTC)")
    recovery_attempts: int = Field(default=0, description="Recovery attempts so far")
    max_retries: int = Field(..., description="Recovery attempt budget")
    next_retry_at: Optional[str] = Field(default=None, description="Next automatic recovery")
    auto_recovery_enabled: bool = Field(..., description="Whether automatic recovery is on")
    last_recovery_error: Optional[str] = Field(default=None, description="Last recovery failure")
    updated_at: Optional[str] = Field(default=None, description="Last update timestamp")

    @classmethod
    def from_entry(cls, entry: DeadLetterEntry) -> "DeadLetterResponse":
        return cls(
            dlq_id=entry.dlq_id,
            original_job_id=entry.original_job_id,
            job_type=entry.job_type.value,
            payload=entry.payload,
            tenant_id=entry.tenant_id,
            priority=entry.priority,
            failure_history=[ErrorInfoResponse.from_error(e) for e in entry.failure_history],
            enqueued_at=entry.enqueued_at,
            recovery_attempts=entry.recovery_attempts,
            max_retries=entry.max_retries,
            next_retry_at=entry.next_retry_at,
            auto_recovery_enabled=entry.auto_recovery_enabled,
            last_recovery_error=entry.last_recovery_error,
            updated_at=entry.updated_at,
        )


class DeadLetterListResponse(BaseModel):
    """Response for dead-letter list endpoint."""

    entries: List[DeadLetterResponse] = Field(default_factory=list)
    total: int = Field(..., description="Number of entries returned")
    stats: Dict[str, Any] = Field(default_factory=dict, description="Queue-wide DLQ statistics")


class RecoveryResponse(BaseModel):
    """Result of a manual recovery attempt."""

    dlq_id: str
    recovered: bool = Field(..., description="True if the handler succeeded and the entry was removed")
    recovery_attempts: int = Field(..., description="Recovery attempts after this run")
    auto_recovery_enabled: bool = Field(..., description="False once max_retries is reached")
    error: Optional[ErrorInfoResponse] = Field(default=None, description="Failure if not recovered")


class DeadLetterDeleteResponse(BaseModel):
    """Response from purging one entry."""

    dlq_id: str
    success: bool
    message: Optional[str] = None


class DeadLetterPurgeRequest(BaseModel):
    """Request to purge entries by age."""

    older_than: Optional[datetime] = Field(
        default=None,
        description="Purge entries enqueued before this time (default: now - retention_days)",
    )


class DeadLetterPurgeResponse(BaseModel):
    """Response from bulk purge."""

    cleaned: int = Field(default=0, description="Entries removed")
    errors: int = Field(default=0, description="Storage errors encountered")


class DeadLetterProcessRequest(BaseModel):
    """Request to run one recovery batch now."""

    batch_size: Optional[int] = Field(
        default=None,
        ge=1,
        le=1000,
        description="Maximum entries to attempt (default: configured batch size)",
    )


class DeadLetterProcessResponse(BaseModel):
    """Counts from one recovery batch."""

    processed: int = Field(default=0, description="Entries attempted")
    recovered: int = Field(default=0, description="Entries recovered and removed")
    failed: int = Field(default=0, description="Entries that failed again")
