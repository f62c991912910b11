"""
Executor for the Job Engine.

- Holds the closed registry of handlers, one per JobType
- Invokes a handler through the circuit breaker of its declared dependency
- Categorizes whatever the handler raised into an ErrorInfo

What Executor MUST NOT do:
- Modify Jobs (the dispatcher owns transitions)
- Decide retry timing (RetryPolicy's responsibility)
- Raise out of execute(): every outcome is captured
"""

import logging
import re
import sqlite3
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional, Union

from .circuit_breaker import CircuitBreakerRegistry
from .entities import (
    ErrorCategory,
    ErrorInfo,
    Job,
    JobType,
    format_timestamp,
    utc_now,
)
from .errors import CircuitOpenError, HandlerError, InvalidJobTypeError


logger = logging.getLogger(__name__)


class JobHandler(ABC):
    """
    Abstract base class for job type handlers.

    Plain callables with the same signature are accepted too.
    """

    @abstractmethod
    def handle(self, payload: Any, tenant_id: Optional[str]) -> Any:
        """
        Do the work for one job.

        Raises:
            RetryableError: Transient failure, retry with backoff
            FatalError: Permanent failure, dead-letter immediately
        """
        ...


HandlerFunc = Callable[[Any, Optional[str]], Any]


@dataclass(frozen=True)
class HandlerRegistration:
    job_type: JobType
    handler: HandlerFunc
    dependency: str
    timeout_ms: Optional[int] = None


class HandlerRegistry:
    """
    Closed mapping JobType -> handler.

    Populated at startup; submission rejects types with no registration.
    """

    def __init__(self):
        self._registrations: dict[JobType, HandlerRegistration] = {}

    def register(
        self,
        job_type: Union[JobType, str],
        handler: Union[JobHandler, HandlerFunc],
        dependency: Optional[str] = None,
        timeout_ms: Optional[int] = None,
    ) -> None:
        """
        Register the handler for a job type.

        Args:
            job_type: One of JobType
            handler: JobHandler instance or callable (payload, tenant_id)
            dependency: Breaker name guarding the handler; defaults to the
                job type value
            timeout_ms: Per-call timeout overriding the breaker's default
        """
        try:
            job_type = JobType(job_type)
        except ValueError:
            raise InvalidJobTypeError(str(job_type)) from None

        func = handler.handle if isinstance(handler, JobHandler) else handler
        if not callable(func):
            raise TypeError(f"Handler for {job_type.value} is not callable")

        if job_type in self._registrations:
            logger.warning(f"Replacing handler for job type {job_type.value}")

        self._registrations[job_type] = HandlerRegistration(
            job_type=job_type,
            handler=func,
            dependency=dependency or job_type.value,
            timeout_ms=timeout_ms,
        )
        logger.info(
            f"Registered handler for {job_type.value} "
            f"(dependency={dependency or job_type.value})"
        )

    def get(self, job_type: Union[JobType, str]) -> HandlerRegistration:
        """
        Raises:
            InvalidJobTypeError: If the type is unknown or unregistered
        """
        try:
            job_type = JobType(job_type)
        except ValueError:
            raise InvalidJobTypeError(str(job_type)) from None
        registration = self._registrations.get(job_type)
        if registration is None:
            raise InvalidJobTypeError(job_type.value)
        return registration

    def is_registered(self, job_type: Union[JobType, str]) -> bool:
        try:
            return JobType(job_type) in self._registrations
        except ValueError:
            return False

    def registered_types(self) -> list[JobType]:
        return list(self._registrations)

    def dependencies(self) -> list[str]:
        return sorted({r.dependency for r in self._registrations.values()})


# =============================================================================
# Error categorization
# =============================================================================


# (pattern, category, retryable); first match wins
ERROR_PATTERNS: list[tuple[re.Pattern, ErrorCategory, bool]] = [
    (re.compile(r"connection.*timeout|connection.*refused|database.*unreachable", re.I),
     ErrorCategory.DATABASE, True),
    (re.compile(r"duplicate.*key|unique.*constraint|violation.*unique", re.I),
     ErrorCategory.DATABASE, False),
    (re.compile(r"syntax.*error|invalid.*sql|query.*failed", re.I),
     ErrorCategory.DATABASE, False),
    (re.compile(r"ETIMEDOUT|ENOTFOUND|ECONNREFUSED|ECONNRESET|network.*error", re.I),
     ErrorCategory.NETWORK, True),
    (re.compile(r"timeout|timed out", re.I),
     ErrorCategory.TIMEOUT, True),
    (re.compile(r"validation.*failed|invalid|malformed|bad.*request", re.I),
     ErrorCategory.VALIDATION, False),
    (re.compile(r"required.*field|missing.*parameter", re.I),
     ErrorCategory.VALIDATION, False),
    (re.compile(r"rate.*limit|quota.*exceeded|too many requests", re.I),
     ErrorCategory.EXTERNAL_SERVICE, True),
    (re.compile(r"service.*unavailable|maintenance.*mode|bad gateway|\b5\d\d\b", re.I),
     ErrorCategory.EXTERNAL_SERVICE, True),
    (re.compile(r"not allowed|business rule|already (processed|cancelled)", re.I),
     ErrorCategory.BUSINESS_RULE, False),
]


def categorize_error(
    exc: BaseException,
    attempt: int = 0,
    occurred_at: Optional[datetime] = None,
) -> ErrorInfo:
    """
    Turn an exception into an ErrorInfo.

    Typed HandlerErrors decide retryability themselves. Other exceptions
    are matched by type, then by message; anything unrecognized is
    UNKNOWN and retryable.
    """
    message = str(exc) or exc.__class__.__name__
    timestamp = format_timestamp(occurred_at or utc_now())

    def info(category: ErrorCategory, retryable: bool) -> ErrorInfo:
        return ErrorInfo(
            category=category,
            message=message,
            retryable=retryable,
            error_type=exc.__class__.__name__,
            attempt=attempt,
            occurred_at=timestamp,
        )

    if isinstance(exc, HandlerError):
        category = None
        if exc.category:
            try:
                category = ErrorCategory(exc.category)
            except ValueError:
                category = None
        if category is None:
            matched = _match_message(message)
            if matched is not None:
                category = matched[0]
            elif exc.retryable:
                category = ErrorCategory.EXTERNAL_SERVICE
            else:
                category = ErrorCategory.BUSINESS_RULE
        return info(category, exc.retryable)

    if isinstance(exc, TimeoutError):
        return info(ErrorCategory.TIMEOUT, True)
    if isinstance(exc, ConnectionError):
        return info(ErrorCategory.NETWORK, True)
    if isinstance(exc, MemoryError):
        return info(ErrorCategory.MEMORY_PRESSURE, True)
    if isinstance(exc, sqlite3.Error):
        return info(ErrorCategory.DATABASE, True)

    matched = _match_message(message)
    if matched is not None:
        return info(*matched)

    if isinstance(exc, (OSError, RuntimeError)):
        return info(ErrorCategory.SYSTEM, True)
    return info(ErrorCategory.UNKNOWN, True)


def _match_message(message: str) -> Optional[tuple[ErrorCategory, bool]]:
    for pattern, category, retryable in ERROR_PATTERNS:
        if pattern.search(message):
            return category, retryable
    return None


# =============================================================================
# Execution
# =============================================================================


@dataclass
class ExecutionOutcome:
    """Result of one handler invocation."""

    success: bool
    duration_ms: int
    result: Any = None
    error: Optional[ErrorInfo] = None
    circuit_open: bool = False
    retry_after_ms: int = 0


class JobExecutor:
    """
    Runs handlers through the breaker registry.

    The same path serves first-run dispatch and dead-letter recovery.
    """

    def __init__(
        self,
        registry: HandlerRegistry,
        breakers: CircuitBreakerRegistry,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.registry = registry
        self.breakers = breakers
        self._clock = clock

    def invoke(
        self,
        job_type: Union[JobType, str],
        payload: Any,
        tenant_id: Optional[str] = None,
    ) -> Any:
        """
        Call the handler through its dependency's breaker.

        Raises whatever the breaker or handler raised.
        """
        registration = self.registry.get(job_type)
        breaker = self.breakers.get(registration.dependency)
        return breaker.execute(
            registration.handler,
            payload,
            tenant_id,
            timeout_ms=registration.timeout_ms,
        )

    def execute(self, job: Job) -> ExecutionOutcome:
        """Execute a claimed job. Never raises."""
        return self.execute_payload(
            job.job_type, job.payload, job.tenant_id, attempt=job.attempts
        )

    def execute_payload(
        self,
        job_type: Union[JobType, str],
        payload: Any,
        tenant_id: Optional[str],
        attempt: int = 0,
    ) -> ExecutionOutcome:
        """Execute a handler for raw job data. Never raises."""
        started = time.monotonic()
        try:
            result = self.invoke(job_type, payload, tenant_id)
        except CircuitOpenError as e:
            return ExecutionOutcome(
                success=False,
                duration_ms=_elapsed_ms(started),
                error=ErrorInfo(
                    category=ErrorCategory.CIRCUIT_OPEN,
                    message=str(e),
                    retryable=True,
                    error_type=e.__class__.__name__,
                    attempt=attempt,
                    occurred_at=format_timestamp(self._clock()),
                ),
                circuit_open=True,
                retry_after_ms=e.retry_after_ms or 0,
            )
        except Exception as e:
            error = categorize_error(e, attempt=attempt, occurred_at=self._clock())
            logger.debug(
                f"Handler for {getattr(job_type, 'value', job_type)} failed "
                f"[{error.category.value}, retryable={error.retryable}]: {error.message}"
            )
            return ExecutionOutcome(
                success=False,
                duration_ms=_elapsed_ms(started),
                error=error,
            )

        return ExecutionOutcome(
            success=True,
            duration_ms=_elapsed_ms(started),
            result=result,
        )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
