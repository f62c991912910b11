"""
Job Engine Core Module.

Durable job processing with idempotent submission, per-type retry and
backoff, per-dependency circuit breakers, a dead-letter queue with
recovery, and execution metrics.
"""

from .entities import (
    JobType,
    JobStatus,
    ErrorCategory,
    MetricOutcome,
    ErrorInfo,
    Job,
    DeadLetterEntry,
    ExecutionMetric,
)
from .errors import (
    JobEngineError,
    InvalidOperationError,
    InvalidJobTypeError,
    PayloadTooLargeError,
    JobNotFoundError,
    DeadLetterNotFoundError,
    ConcurrencyViolationError,
    HandlerError,
    RetryableError,
    FatalError,
    CircuitOpenError,
    CircuitTimeoutError,
)
from .persistence import PersistenceAdapter
from .retry_policy import RetryPolicy, RetryProfile, RetryConfig
from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)
from .metrics import MetricsCollector, MetricsConfig
from .executor import (
    HandlerRegistry,
    JobHandler,
    JobExecutor,
    ExecutionOutcome,
    categorize_error,
)
from .queue_manager import QueueManager
from .dead_letter import DeadLetterQueue, DeadLetterConfig, RecoveryOutcome
from .dispatcher import Dispatcher, DispatcherConfig, DispatcherState, DispatchResult
from .recovery import RecoveryManager
from .service import JobEngineService, EngineConfig

__all__ = [
    # Entities
    "JobType",
    "JobStatus",
    "ErrorCategory",
    "MetricOutcome",
    "ErrorInfo",
    "Job",
    "DeadLetterEntry",
    "ExecutionMetric",
    # Errors
    "JobEngineError",
    "InvalidOperationError",
    "InvalidJobTypeError",
    "PayloadTooLargeError",
    "JobNotFoundError",
    "DeadLetterNotFoundError",
    "ConcurrencyViolationError",
    "HandlerError",
    "RetryableError",
    "FatalError",
    "CircuitOpenError",
    "CircuitTimeoutError",
    # Persistence
    "PersistenceAdapter",
    # Retry
    "RetryPolicy",
    "RetryProfile",
    "RetryConfig",
    # Circuit breaker
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitState",
    # Metrics
    "MetricsCollector",
    "MetricsConfig",
    # Executor
    "HandlerRegistry",
    "JobHandler",
    "JobExecutor",
    "ExecutionOutcome",
    "categorize_error",
    # Queue
    "QueueManager",
    # Dead letter
    "DeadLetterQueue",
    "DeadLetterConfig",
    "RecoveryOutcome",
    # Dispatcher
    "Dispatcher",
    "DispatcherConfig",
    "DispatcherState",
    "DispatchResult",
    # Recovery
    "RecoveryManager",
    # Service
    "JobEngineService",
    "EngineConfig",
]
