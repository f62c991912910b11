"""
Queue Manager for the Job Engine.

- Validates and persists submissions
- Enforces idempotency by singleton key
- Cancels pending jobs and lists jobs for operators

What QueueManager MUST NOT do:
- Execute jobs (Executor's responsibility)
- Claim jobs (Dispatcher's responsibility)
- Decide retry timing (RetryPolicy's responsibility)
"""

import json
import logging
from datetime import datetime
from typing import Any, Callable, Optional, Union

from .entities import Job, JobStatus, JobType, utc_now
from .errors import (
    ConcurrencyViolationError,
    InvalidJobTypeError,
    InvalidOperationError,
    JobNotFoundError,
    PayloadTooLargeError,
)
from .executor import HandlerRegistry
from .metrics import MetricsCollector
from .persistence import PersistenceAdapter
from .retry_policy import RetryPolicy


logger = logging.getLogger(__name__)


DEFAULT_MAX_PAYLOAD_BYTES = 256 * 1024


class QueueManager:
    """
    Submission and queue administration.

    Key behaviors:
    - Submission: validate type and size, then insert-or-get by singleton key
    - Ordering: priority DESC, next_attempt_at ASC, created_at ASC
    - Cancellation: PENDING -> CANCELLED only
    """

    def __init__(
        self,
        persistence: PersistenceAdapter,
        registry: HandlerRegistry,
        retry_policy: RetryPolicy,
        metrics: Optional[MetricsCollector] = None,
        max_payload_bytes: int = DEFAULT_MAX_PAYLOAD_BYTES,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.persistence = persistence
        self.registry = registry
        self.retry_policy = retry_policy
        self.metrics = metrics
        self.max_payload_bytes = max_payload_bytes
        self._clock = clock

    # =========================================================================
    # Submission
    # =========================================================================

    def submit(
        self,
        job_type: Union[JobType, str],
        payload: Any,
        singleton_key: Optional[str] = None,
        tenant_id: Optional[str] = None,
        priority: int = 0,
    ) -> str:
        """
        Submit a job and return its ID.

        If a pending or active job already holds singleton_key, its ID is
        returned and nothing is created.

        Raises:
            InvalidJobTypeError: Unknown type or no registered handler
            PayloadTooLargeError: Serialized payload exceeds the ceiling
        """
        job, _ = self.submit_job(job_type, payload, singleton_key, tenant_id, priority)
        return job.job_id

    def submit_job(
        self,
        job_type: Union[JobType, str],
        payload: Any,
        singleton_key: Optional[str] = None,
        tenant_id: Optional[str] = None,
        priority: int = 0,
    ) -> tuple[Job, bool]:
        """
        Submit a job.

        Returns:
            (job, created): created is False when an existing job with the
            same singleton key was returned
        """
        job_type = self._validate_job_type(job_type)
        self._validate_payload(payload)

        job = Job.create(
            job_type=job_type,
            payload=payload,
            max_attempts=self.retry_policy.max_attempts(job_type),
            singleton_key=singleton_key,
            tenant_id=tenant_id,
            priority=priority,
            now=self._clock(),
        )
        stored, created = self.persistence.create_or_get_job(job)

        if created:
            logger.info(
                f"Submitted job {stored.job_id} ({job_type.value}, "
                f"priority={priority}, key={singleton_key})"
            )
            if self.metrics is not None:
                self.metrics.record_job_enqueued(job_type, tenant_id)
        else:
            logger.info(
                f"Duplicate submission for key {singleton_key}; "
                f"returning existing job {stored.job_id} ({stored.status.value})"
            )
        return stored, created

    def _validate_job_type(self, job_type: Union[JobType, str]) -> JobType:
        try:
            resolved = JobType(job_type)
        except ValueError:
            raise InvalidJobTypeError(str(job_type)) from None
        if not self.registry.is_registered(resolved):
            raise InvalidJobTypeError(resolved.value)
        return resolved

    def _validate_payload(self, payload: Any) -> None:
        try:
            encoded = json.dumps(payload).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise InvalidOperationError(f"Payload is not JSON-serializable: {e}") from e
        if len(encoded) > self.max_payload_bytes:
            raise PayloadTooLargeError(len(encoded), self.max_payload_bytes)

    # =========================================================================
    # Cancellation
    # =========================================================================

    def cancel(self, job_id: str) -> Job:
        """
        Cancel a pending job.

        Raises:
            JobNotFoundError: If job doesn't exist
            InvalidOperationError: If job is not PENDING
        """
        try:
            job = self.persistence.cancel_job(job_id, self._clock())
        except ConcurrencyViolationError as e:
            raise InvalidOperationError(
                f"Cannot cancel job in {e.actual_status} status. "
                "Only pending jobs can be cancelled."
            ) from e
        logger.info(f"Cancelled job {job_id}")
        return job

    # =========================================================================
    # Queries
    # =========================================================================

    def get_job(self, job_id: str) -> Job:
        """
        Raises:
            JobNotFoundError: If job doesn't exist
        """
        job = self.persistence.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        job_type: Optional[JobType] = None,
        tenant_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Job]:
        return self.persistence.list_jobs(
            status=status,
            job_type=job_type,
            tenant_id=tenant_id,
            limit=limit,
            offset=offset,
        )

    def get_queue_depth(self) -> int:
        """Number of pending jobs."""
        return self.persistence.count_jobs_by_status(JobStatus.PENDING)

    def get_status_counts(self) -> dict[str, int]:
        counts = self.persistence.count_jobs_grouped()
        return {status.value: counts.get(status.value, 0) for status in JobStatus}
