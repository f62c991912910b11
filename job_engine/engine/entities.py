"""
Job Engine Domain Entities.

- Job: Single unit of deferred work
- ErrorInfo: Categorized failure of one attempt
- DeadLetterEntry: Quarantined job awaiting recovery
- ExecutionMetric: Immutable record of a terminal attempt

Timestamps are stored as fixed-width UTC ISO strings so that lexical order in
SQLite matches chronological order.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Any
import uuid


TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


class JobType(str, Enum):
    """
    Closed set of job types.

    Each type selects a handler, a retry profile and a breaker dependency.
    """

    WEBHOOK_PROCESSING = "webhook-processing"
    REMINDER_PROCESSING = "reminder-processing"


class JobStatus(str, Enum):
    """
    Job status values.

    - PENDING: Waiting for a worker (first run or retry scheduled)
    - ACTIVE: Claimed by exactly one worker
    - COMPLETED: Handler succeeded
    - FAILED: Retries exhausted with no DLQ handoff
    - DEAD_LETTERED: Quarantined in the dead-letter queue
    - CANCELLED: Removed from dispatch while pending
    """

    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD_LETTERED = "dead-lettered"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = (
    JobStatus.COMPLETED,
    JobStatus.FAILED,
    JobStatus.DEAD_LETTERED,
    JobStatus.CANCELLED,
)


class ErrorCategory(str, Enum):
    """Failure categories used for retry decisions and metrics."""

    NETWORK = "network"
    TIMEOUT = "timeout"
    EXTERNAL_SERVICE = "external_service"
    DATABASE = "database"
    VALIDATION = "validation"
    BUSINESS_RULE = "business_rule"
    CIRCUIT_OPEN = "circuit_open"
    MEMORY_PRESSURE = "memory_pressure"
    SYSTEM = "system"
    UNKNOWN = "unknown"


class MetricOutcome(str, Enum):
    """What happened to the job after an attempt."""

    COMPLETED = "completed"
    RETRY_SCHEDULED = "retry_scheduled"
    DEAD_LETTERED = "dead_lettered"
    FAILED = "failed"


def generate_uuid() -> str:
    """Generate a new UUID string."""
    return str(uuid.uuid4())


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Format a datetime as a fixed-width UTC ISO string."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


@dataclass
class ErrorInfo:
    """Categorized failure from a single attempt."""

    category: ErrorCategory
    message: str
    retryable: bool
    error_type: str = "Exception"
    attempt: int = 0
    occurred_at: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["category"] = self.category.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ErrorInfo":
        return cls(
            category=ErrorCategory(data.get("category", ErrorCategory.UNKNOWN.value)),
            message=data.get("message", ""),
            retryable=bool(data.get("retryable", True)),
            error_type=data.get("error_type", "Exception"),
            attempt=int(data.get("attempt", 0)),
            occurred_at=data.get("occurred_at"),
        )


@dataclass
class Job:
    """
    Single unit of deferred work.

    Mutability rules:
    - job_id, job_type, payload, singleton_key, tenant_id, created_at: Immutable
    - priority: Fixed at submission
    - status, attempts, last_attempt_at, next_attempt_at, last_error,
      failure_history: Owned by the worker holding the claim
    """

    job_id: str
    job_type: JobType
    payload: Any
    status: JobStatus
    max_attempts: int
    singleton_key: Optional[str] = None
    tenant_id: Optional[str] = None
    priority: int = 0
    attempts: int = 0
    created_at: str = field(default_factory=lambda: format_timestamp(utc_now()))
    last_attempt_at: Optional[str] = None
    next_attempt_at: Optional[str] = None
    finished_at: Optional[str] = None
    last_error: Optional[ErrorInfo] = None
    failure_history: list = field(default_factory=list)
    dead_letter_id: Optional[str] = None

    @classmethod
    def create(
        cls,
        job_type: JobType,
        payload: Any,
        max_attempts: int,
        singleton_key: Optional[str] = None,
        tenant_id: Optional[str] = None,
        priority: int = 0,
        now: Optional[datetime] = None,
    ) -> "Job":
        """Create a new Job with generated ID and PENDING status."""
        created = format_timestamp(now or utc_now())
        return cls(
            job_id=generate_uuid(),
            job_type=job_type,
            payload=payload,
            status=JobStatus.PENDING,
            max_attempts=max_attempts,
            singleton_key=singleton_key,
            tenant_id=tenant_id,
            priority=priority,
            created_at=created,
            next_attempt_at=created,
        )

    def is_terminal(self) -> bool:
        """Check if job is in a terminal state."""
        return self.status in TERMINAL_STATUSES


@dataclass
class DeadLetterEntry:
    """
    Quarantined job.

    Created only when a job exhausts its attempts or fails fatally.
    Removed by successful recovery, operator purge or retention cleanup.
    """

    dlq_id: str
    original_job_id: str
    job_type: JobType
    payload: Any
    failure_history: list
    enqueued_at: str
    max_retries: int
    tenant_id: Optional[str] = None
    priority: int = 0
    recovery_attempts: int = 0
    next_retry_at: Optional[str] = None
    auto_recovery_enabled: bool = True
    last_recovery_error: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def create(
        cls,
        original_job_id: str,
        job_type: JobType,
        payload: Any,
        failure_history: list,
        max_retries: int,
        next_retry_at: str,
        tenant_id: Optional[str] = None,
        priority: int = 0,
        now: Optional[datetime] = None,
    ) -> "DeadLetterEntry":
        enqueued = format_timestamp(now or utc_now())
        return cls(
            dlq_id=f"dlq_{generate_uuid()}",
            original_job_id=original_job_id,
            job_type=job_type,
            payload=payload,
            failure_history=list(failure_history),
            enqueued_at=enqueued,
            max_retries=max_retries,
            tenant_id=tenant_id,
            priority=priority,
            next_retry_at=next_retry_at,
            updated_at=enqueued,
        )


@dataclass(frozen=True)
class ExecutionMetric:
    """Immutable record emitted on every terminal attempt."""

    job_id: str
    job_type: str
    status: str  # "completed" | "failed"
    outcome: str
    duration_ms: int
    attempts: int
    memory_usage_bytes: int
    queue_depth_at_dispatch: int
    timestamp: str
    error_category: Optional[str] = None
    tenant_id: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


def enum_value(value: Any) -> Any:
    """Plain value of an Enum member, or the value unchanged."""
    return value.value if isinstance(value, Enum) else value
