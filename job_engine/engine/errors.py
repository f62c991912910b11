"""
Job engine exceptions.

Two families live here:
- Engine errors raised to callers (submission, admin operations)
- Handler outcome errors raised by job handlers and the circuit breaker,
  which the dispatcher captures and turns into state transitions
"""

from typing import Optional


class JobEngineError(Exception):
    """Base exception for all job engine errors."""
    pass


class InvalidOperationError(JobEngineError):
    """
    Raised when an operation violates engine invariants.

    Examples:
    - Cancelling a job that is no longer pending
    - Retrying a dead-letter entry that is already being processed
    """
    pass


class InvalidJobTypeError(JobEngineError):
    """Raised when a job type is unknown or has no registered handler."""

    def __init__(self, job_type: str):
        self.job_type = job_type
        super().__init__(f"Invalid job type: {job_type}")


class PayloadTooLargeError(JobEngineError):
    """Raised when a serialized payload exceeds the configured ceiling."""

    def __init__(self, size_bytes: int, max_bytes: int):
        self.size_bytes = size_bytes
        self.max_bytes = max_bytes
        super().__init__(
            f"Payload too large: {size_bytes} bytes (max {max_bytes})"
        )


class JobNotFoundError(JobEngineError):
    """Raised when a requested job does not exist."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class DeadLetterNotFoundError(JobEngineError):
    """Raised when a requested dead-letter entry does not exist."""

    def __init__(self, dlq_id: str):
        self.dlq_id = dlq_id
        super().__init__(f"Dead-letter entry not found: {dlq_id}")


class ConcurrencyViolationError(JobEngineError):
    """
    Raised when a concurrent modification is detected.

    Used for conditional updates where the job was already claimed or moved
    by another worker.
    """

    def __init__(self, job_id: str, expected_status: str, actual_status: str):
        self.job_id = job_id
        self.expected_status = expected_status
        self.actual_status = actual_status
        super().__init__(
            f"Concurrency violation for job {job_id}: "
            f"expected status '{expected_status}', got '{actual_status}'"
        )


# =============================================================================
# Handler outcomes
# =============================================================================


class HandlerError(Exception):
    """
    Base class for errors a job handler raises on purpose.

    Handlers may also raise arbitrary exceptions; those are categorized by
    message (see executor.categorize_error).
    """

    retryable = True

    def __init__(self, message: str, category: Optional[str] = None):
        self.category = category
        super().__init__(message)


class RetryableError(HandlerError):
    """Transient failure: network timeout, downstream 5xx."""

    retryable = True


class FatalError(HandlerError):
    """
    Permanent failure: malformed payload, business-rule rejection.

    Bypasses remaining retries and routes the job straight to the DLQ.
    """

    retryable = False


class CircuitOpenError(RetryableError):
    """Raised by the circuit breaker when a call is rejected without running."""

    def __init__(self, circuit_name: str, retry_after_ms: Optional[int] = None):
        self.circuit_name = circuit_name
        self.retry_after_ms = retry_after_ms
        message = f"Circuit breaker is OPEN for {circuit_name}"
        if retry_after_ms is not None:
            message += f" (retry in {retry_after_ms}ms)"
        super().__init__(message, category="circuit_open")


class CircuitTimeoutError(RetryableError):
    """Raised when an operation exceeds the circuit breaker's timeout."""

    def __init__(self, circuit_name: str, timeout_ms: int):
        self.circuit_name = circuit_name
        self.timeout_ms = timeout_ms
        super().__init__(
            f"Operation timed out after {timeout_ms}ms on {circuit_name}",
            category="timeout",
        )
