"""
Job Engine Test Fixtures.

Base fixtures:
  - Temporary SQLite database
  - Mocked wall clock and monotonic clock at a fixed time
  - Controllable handlers for both job types

Component fixtures are wired the same way JobEngineService.create() wires
them, with jitter disabled so delays are deterministic.
"""

import random
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Generator, Optional

import pytest

from job_engine.engine import (
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    DeadLetterConfig,
    DeadLetterQueue,
    Dispatcher,
    DispatcherConfig,
    EngineConfig,
    HandlerRegistry,
    Job,
    JobEngineService,
    JobExecutor,
    JobStatus,
    JobType,
    MetricsCollector,
    PersistenceAdapter,
    QueueManager,
    RecoveryManager,
    RetryConfig,
    RetryPolicy,
    RetryProfile,
)


FIXED_DATETIME = datetime(2026, 1, 1, 0, 0, 0, tzinfo=timezone.utc)
MEMORY_BYTES = 100 * 1024 * 1024

WEBHOOK_DEPENDENCY = "payments-api"
REMINDER_DEPENDENCY = "email-api"


class MockClock:
    """
    Mock clock for deterministic time control.

    - Starts at a fixed epoch
    - Advances only when explicitly ticked
    - now() feeds timestamps; monotonic() feeds circuit breakers
    """

    def __init__(self, start_time: datetime = FIXED_DATETIME):
        self._current = start_time
        self._monotonic = 1000.0

    def now(self) -> datetime:
        return self._current

    def monotonic(self) -> float:
        return self._monotonic

    def tick(self, seconds: float = 1) -> None:
        """Advance both clocks by specified seconds."""
        self._current += timedelta(seconds=seconds)
        self._monotonic += seconds

    def set(self, time: datetime) -> None:
        self._current = time


class ControllableHandler:
    """
    Handler whose outcome is set per test.

    Scripted outcomes are consumed first, in order; after that the default
    error (if any) is raised, otherwise the default result is returned.
    An outcome that is an exception instance is raised.
    """

    def __init__(self):
        self.calls: list[tuple[Any, Optional[str]]] = []
        self._script: list = []
        self.default_error: Optional[BaseException] = None
        self.default_result: Any = {"ok": True}

    def script(self, *outcomes) -> None:
        self._script.extend(outcomes)

    def always_fail(self, error: BaseException) -> None:
        self.default_error = error

    def succeed(self) -> None:
        self.default_error = None

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def __call__(self, payload: Any, tenant_id: Optional[str]) -> Any:
        self.calls.append((payload, tenant_id))
        if self._script:
            outcome = self._script.pop(0)
        elif self.default_error is not None:
            outcome = self.default_error
        else:
            outcome = self.default_result
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class BlockingHandler:
    """
    Handler that blocks until `release` is set.

    Tracks how many calls run at the same time so tests can assert that a
    job never executes on two workers at once.
    """

    def __init__(self):
        self.started = threading.Event()
        self.release = threading.Event()
        self.calls = 0
        self.running = 0
        self.max_running = 0
        self._lock = threading.Lock()

    def __call__(self, payload: Any, tenant_id: Optional[str]) -> Any:
        with self._lock:
            self.calls += 1
            self.running += 1
            self.max_running = max(self.max_running, self.running)
        self.started.set()
        try:
            self.release.wait(10)
        finally:
            with self._lock:
                self.running -= 1
        return {"ok": True}


def deterministic_retry_config() -> RetryConfig:
    """Default profiles with jitter disabled."""
    return RetryConfig(
        default=RetryProfile(jitter_enabled=False),
        profiles={
            JobType.WEBHOOK_PROCESSING: RetryProfile(max_attempts=3, jitter_enabled=False),
            JobType.REMINDER_PROCESSING: RetryProfile(max_attempts=2, jitter_enabled=False),
        },
    )


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture
def temp_db_path(tmp_path: Path) -> str:
    return str(tmp_path / "job_engine.db")


@pytest.fixture
def persistence(temp_db_path: str) -> PersistenceAdapter:
    """Create a fresh PersistenceAdapter with empty database."""
    return PersistenceAdapter(temp_db_path)


# =============================================================================
# Handler Fixtures
# =============================================================================


@pytest.fixture
def mock_clock() -> MockClock:
    return MockClock()


@pytest.fixture
def webhook_handler() -> ControllableHandler:
    return ControllableHandler()


@pytest.fixture
def reminder_handler() -> ControllableHandler:
    return ControllableHandler()


@pytest.fixture
def blocking_handler() -> Generator[BlockingHandler, None, None]:
    handler = BlockingHandler()
    yield handler
    handler.release.set()


@pytest.fixture
def registry(
    webhook_handler: ControllableHandler, reminder_handler: ControllableHandler
) -> HandlerRegistry:
    reg = HandlerRegistry()
    reg.register(JobType.WEBHOOK_PROCESSING, webhook_handler, dependency=WEBHOOK_DEPENDENCY)
    reg.register(JobType.REMINDER_PROCESSING, reminder_handler, dependency=REMINDER_DEPENDENCY)
    return reg


# =============================================================================
# Component Fixtures
# =============================================================================


@pytest.fixture
def metrics(persistence: PersistenceAdapter, mock_clock: MockClock) -> MetricsCollector:
    return MetricsCollector(store=persistence, clock=mock_clock.now)


@pytest.fixture
def breaker_config() -> CircuitBreakerConfig:
    """Breaker defaults with calls run inline (no timeout pool)."""
    return CircuitBreakerConfig(timeout_ms=None)


@pytest.fixture
def breakers(
    breaker_config: CircuitBreakerConfig,
    mock_clock: MockClock,
    metrics: MetricsCollector,
) -> Generator[CircuitBreakerRegistry, None, None]:
    registry = CircuitBreakerRegistry(
        default_config=breaker_config,
        clock=mock_clock.monotonic,
        metrics=metrics,
    )
    yield registry
    registry.shutdown()


@pytest.fixture
def retry_policy() -> RetryPolicy:
    return RetryPolicy(deterministic_retry_config(), rng=random.Random(0))


@pytest.fixture
def executor(
    registry: HandlerRegistry, breakers: CircuitBreakerRegistry, mock_clock: MockClock
) -> JobExecutor:
    return JobExecutor(registry, breakers, clock=mock_clock.now)


@pytest.fixture
def queue_manager(
    persistence: PersistenceAdapter,
    registry: HandlerRegistry,
    retry_policy: RetryPolicy,
    metrics: MetricsCollector,
    mock_clock: MockClock,
) -> QueueManager:
    return QueueManager(
        persistence=persistence,
        registry=registry,
        retry_policy=retry_policy,
        metrics=metrics,
        clock=mock_clock.now,
    )


@pytest.fixture
def dead_letter_config() -> DeadLetterConfig:
    return DeadLetterConfig(jitter_factor=0.0)


@pytest.fixture
def dead_letter(
    persistence: PersistenceAdapter,
    executor: JobExecutor,
    metrics: MetricsCollector,
    dead_letter_config: DeadLetterConfig,
    mock_clock: MockClock,
) -> DeadLetterQueue:
    return DeadLetterQueue(
        persistence=persistence,
        executor=executor,
        metrics=metrics,
        config=dead_letter_config,
        clock=mock_clock.now,
        rng=random.Random(0),
    )


@pytest.fixture
def dispatcher(
    persistence: PersistenceAdapter,
    executor: JobExecutor,
    retry_policy: RetryPolicy,
    dead_letter: DeadLetterQueue,
    metrics: MetricsCollector,
    mock_clock: MockClock,
) -> Dispatcher:
    return Dispatcher(
        persistence=persistence,
        executor=executor,
        retry_policy=retry_policy,
        dead_letter=dead_letter,
        metrics=metrics,
        config=DispatcherConfig(worker_count=2, poll_interval_seconds=0.05),
        clock=mock_clock.now,
        memory_probe=lambda: MEMORY_BYTES,
    )


@pytest.fixture
def recovery_manager(
    persistence: PersistenceAdapter, dispatcher: Dispatcher, mock_clock: MockClock
) -> RecoveryManager:
    return RecoveryManager(
        persistence=persistence,
        dispatcher=dispatcher,
        claim_timeout_seconds=300,
        clock=mock_clock.now,
    )


@pytest.fixture
def engine_config(temp_db_path: str) -> EngineConfig:
    return EngineConfig(
        db_path=temp_db_path,
        maintenance_interval_seconds=3600,
        shutdown_timeout_seconds=5,
        dispatcher=DispatcherConfig(worker_count=2, poll_interval_seconds=0.05),
        retry=deterministic_retry_config(),
        circuit_breaker=CircuitBreakerConfig(timeout_ms=None),
        dead_letter=DeadLetterConfig(jitter_factor=0.0),
    )


@pytest.fixture
def engine_service(
    engine_config: EngineConfig, registry: HandlerRegistry, mock_clock: MockClock
) -> Generator[JobEngineService, None, None]:
    """JobEngineService on the mock clock; not started."""
    service = JobEngineService.create(
        config=engine_config,
        registry=registry,
        clock=mock_clock.now,
        monotonic=mock_clock.monotonic,
        rng=random.Random(0),
        memory_probe=lambda: MEMORY_BYTES,
    )
    yield service
    service.shutdown()


# =============================================================================
# Job Factory Fixtures
# =============================================================================


@pytest.fixture
def create_job(persistence: PersistenceAdapter, mock_clock: MockClock) -> Callable:
    """
    Factory fixture for creating jobs directly in the store.

    Bypasses QueueManager validation so tests can seed any job type.
    """

    def _create(
        job_type: JobType = JobType.WEBHOOK_PROCESSING,
        payload: Any = None,
        max_attempts: int = 3,
        singleton_key: Optional[str] = None,
        tenant_id: Optional[str] = None,
        priority: int = 0,
        now: Optional[datetime] = None,
    ) -> Job:
        job = Job.create(
            job_type=job_type,
            payload=payload if payload is not None else {"test": True},
            max_attempts=max_attempts,
            singleton_key=singleton_key,
            tenant_id=tenant_id,
            priority=priority,
            now=now or mock_clock.now(),
        )
        stored, _ = persistence.create_or_get_job(job)
        return stored

    return _create


# =============================================================================
# Assertion Helpers
# =============================================================================


def assert_job_status(persistence: PersistenceAdapter, job_id: str, expected: JobStatus):
    """Assert a job has the expected status."""
    job = persistence.get_job(job_id)
    assert job is not None, f"Job {job_id} not found"
    assert job.status == expected, f"Expected {expected}, got {job.status}"
