"""
Job Engine Service - Main entry point for the job engine.

This service orchestrates all engine components:
- PersistenceAdapter (storage)
- QueueManager (submission, cancellation)
- JobExecutor + HandlerRegistry (handler invocation)
- CircuitBreakerRegistry (per-dependency health gates)
- RetryPolicy (backoff per job type)
- DeadLetterQueue (quarantine and recovery)
- MetricsCollector (telemetry)
- Dispatcher (worker pool)
- RecoveryManager (stale claims)

Usage:
    registry = HandlerRegistry()
    registry.register(JobType.WEBHOOK_PROCESSING, handle_webhook, dependency="payments-api")
    service = JobEngineService.create(config, registry)
    service.start()
    job_id = service.submit("webhook-processing", payload, singleton_key=event_id)
    service.stop()
"""

import logging
import random
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional, Union

from .circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from .dead_letter import DeadLetterConfig, DeadLetterQueue, RecoveryOutcome
from .dispatcher import Dispatcher, DispatcherConfig, DispatcherState
from .entities import DeadLetterEntry, ExecutionMetric, Job, JobStatus, JobType, utc_now
from .errors import InvalidOperationError
from .executor import HandlerRegistry, JobExecutor
from .metrics import MetricsCollector, MetricsConfig, current_memory_bytes
from .persistence import PersistenceAdapter
from .queue_manager import DEFAULT_MAX_PAYLOAD_BYTES, QueueManager
from .recovery import DEFAULT_CLAIM_TIMEOUT_SECONDS, RecoveryManager
from .retry_policy import RetryConfig, RetryPolicy


logger = logging.getLogger(__name__)


CLEANUP_INTERVAL_SECONDS = 3600


@dataclass
class EngineConfig:
    """Static engine configuration, loaded once at startup."""

    db_path: str = "data/job_engine.db"
    max_payload_bytes: int = DEFAULT_MAX_PAYLOAD_BYTES
    claim_timeout_seconds: int = DEFAULT_CLAIM_TIMEOUT_SECONDS
    maintenance_interval_seconds: float = 60.0
    reclaim_all_on_startup: bool = True
    shutdown_timeout_seconds: float = 30.0
    dispatcher: DispatcherConfig = field(default_factory=DispatcherConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    circuit_breakers: dict = field(default_factory=dict)
    dead_letter: DeadLetterConfig = field(default_factory=DeadLetterConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)


class JobEngineService:
    """
    Main service that coordinates all engine components.

    Provides:
    - Component initialization and wiring
    - Startup with recovery
    - Graceful shutdown with drain
    - A maintenance thread for stale claims, DLQ auto recovery and retention
    - API-friendly methods for submission and administration
    """

    def __init__(
        self,
        config: EngineConfig,
        persistence: PersistenceAdapter,
        registry: HandlerRegistry,
        queue_manager: QueueManager,
        breakers: CircuitBreakerRegistry,
        executor: JobExecutor,
        retry_policy: RetryPolicy,
        dead_letter: DeadLetterQueue,
        metrics: MetricsCollector,
        dispatcher: Dispatcher,
        recovery_manager: RecoveryManager,
    ):
        """
        Initialize JobEngineService with all components.

        Use JobEngineService.create() for convenient construction.
        """
        self.config = config
        self.persistence = persistence
        self.registry = registry
        self.queue_manager = queue_manager
        self.breakers = breakers
        self.executor = executor
        self.retry_policy = retry_policy
        self.dead_letter = dead_letter
        self.metrics = metrics
        self.dispatcher = dispatcher
        self.recovery_manager = recovery_manager

        self._started = False
        self._maintenance_thread: Optional[threading.Thread] = None
        self._maintenance_stop = threading.Event()
        self._last_dlq_run: Optional[float] = None
        self._last_cleanup: Optional[float] = None

    @classmethod
    def create(
        cls,
        config: Optional[EngineConfig] = None,
        registry: Optional[HandlerRegistry] = None,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
        memory_probe: Callable[[], int] = current_memory_bytes,
    ) -> "JobEngineService":
        """
        Create a JobEngineService with all components wired together.

        Args:
            config: Engine configuration; defaults apply when omitted
            registry: Handler registry populated by the caller
            clock: Wall clock for timestamps and scheduling
            monotonic: Clock for circuit breaker timing
            rng: Random source for retry and DLQ jitter
            memory_probe: Returns process memory in bytes

        Returns:
            Configured JobEngineService
        """
        config = config or EngineConfig()
        registry = registry or HandlerRegistry()
        rng = rng or random.Random()

        persistence = PersistenceAdapter(config.db_path)

        metrics = MetricsCollector(
            store=persistence,
            config=config.metrics,
            clock=clock,
        )

        breakers = CircuitBreakerRegistry(
            default_config=config.circuit_breaker,
            configs=config.circuit_breakers,
            clock=monotonic,
            metrics=metrics,
            pool_size=max(1, config.dispatcher.worker_count) * 2,
        )

        retry_policy = RetryPolicy(config.retry, rng=rng)
        executor = JobExecutor(registry, breakers, clock=clock)

        queue_manager = QueueManager(
            persistence=persistence,
            registry=registry,
            retry_policy=retry_policy,
            metrics=metrics,
            max_payload_bytes=config.max_payload_bytes,
            clock=clock,
        )

        dead_letter = DeadLetterQueue(
            persistence=persistence,
            executor=executor,
            metrics=metrics,
            config=config.dead_letter,
            clock=clock,
            rng=rng,
        )

        dispatcher = Dispatcher(
            persistence=persistence,
            executor=executor,
            retry_policy=retry_policy,
            dead_letter=dead_letter,
            metrics=metrics,
            config=config.dispatcher,
            clock=clock,
            memory_probe=memory_probe,
        )

        recovery_manager = RecoveryManager(
            persistence=persistence,
            dispatcher=dispatcher,
            claim_timeout_seconds=config.claim_timeout_seconds,
            clock=clock,
        )

        return cls(
            config=config,
            persistence=persistence,
            registry=registry,
            queue_manager=queue_manager,
            breakers=breakers,
            executor=executor,
            retry_policy=retry_policy,
            dead_letter=dead_letter,
            metrics=metrics,
            dispatcher=dispatcher,
            recovery_manager=recovery_manager,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self, run_recovery: bool = True) -> dict:
        """
        Start the worker pool and maintenance thread.

        Args:
            run_recovery: Whether to reclaim orphaned claims first

        Returns:
            Recovery statistics if recovery was run

        Raises:
            RuntimeError: If already started
            InvalidOperationError: If workers from a timed-out stop are
                still running their jobs
        """
        if self._started:
            raise RuntimeError("Job engine already started")
        if self.dispatcher.state != DispatcherState.STOPPED:
            raise InvalidOperationError(
                f"Previous workers still draining {self.dispatcher.in_flight} "
                "in-flight jobs; stop again or wait before restarting"
            )

        logger.info("Starting job engine...")

        recovery_stats = {}
        if run_recovery:
            recovery_stats = self.recovery_manager.recover_on_startup(
                reclaim_all=self.config.reclaim_all_on_startup
            )

        self.dispatcher.start()

        self._maintenance_stop.clear()
        self._maintenance_thread = threading.Thread(
            target=self._maintenance_loop,
            name="job-engine-maintenance",
            daemon=True,
        )
        self._maintenance_thread.start()

        self._started = True
        logger.info("Job engine started")
        return recovery_stats

    def stop(self, timeout: Optional[float] = None) -> bool:
        """
        Stop the engine gracefully.

        Waits for in-flight jobs (no preemption).

        Args:
            timeout: Maximum wait for in-flight jobs

        Returns:
            True if all in-flight jobs drained
        """
        if not self._started:
            # Waits again for workers left by an earlier timed-out stop
            return self.dispatcher.stop(
                timeout=timeout if timeout is not None else self.config.shutdown_timeout_seconds
            )

        logger.info("Stopping job engine...")
        self._maintenance_stop.set()
        drained = self.dispatcher.stop(
            timeout=timeout if timeout is not None else self.config.shutdown_timeout_seconds
        )
        if self._maintenance_thread is not None:
            self._maintenance_thread.join(timeout=5.0)
            self._maintenance_thread = None
        self._started = False
        logger.info("Job engine stopped")
        return drained

    def shutdown(self) -> None:
        """Stop and release breaker thread pools."""
        self.stop()
        self.breakers.shutdown()

    @property
    def is_running(self) -> bool:
        """Check if the engine is running."""
        return self._started and self.dispatcher.is_running()

    # =========================================================================
    # Maintenance
    # =========================================================================

    def _maintenance_loop(self) -> None:
        logger.info("Maintenance loop started")
        while not self._maintenance_stop.wait(self.config.maintenance_interval_seconds):
            try:
                self.run_maintenance()
            except Exception as e:
                logger.error(f"Error in maintenance loop: {e}", exc_info=True)
        logger.info("Maintenance loop ended")

    def run_maintenance(self, force: bool = False) -> dict:
        """
        Run one maintenance pass.

        - Reclaim stale claims (every pass)
        - DLQ auto recovery (every auto_recovery_interval_seconds)
        - DLQ and metric retention cleanup (hourly)

        Args:
            force: Run every task regardless of its interval
        """
        now = time.monotonic()
        results: dict[str, Any] = {
            "reclaimed": self.recovery_manager.reclaim_stale_claims()
        }

        dlq_config = self.config.dead_letter
        if dlq_config.enabled and dlq_config.auto_recovery and (
            force
            or self._last_dlq_run is None
            or now - self._last_dlq_run >= dlq_config.auto_recovery_interval_seconds
        ):
            self._last_dlq_run = now
            results["dead_letter"] = self.dead_letter.process_jobs()

        if force or self._last_cleanup is None or now - self._last_cleanup >= CLEANUP_INTERVAL_SECONDS:
            self._last_cleanup = now
            results["dead_letter_cleanup"] = self.dead_letter.cleanup()
            results["metrics_cleaned"] = self.metrics.cleanup()

        return results

    # =========================================================================
    # Jobs
    # =========================================================================

    def submit(
        self,
        job_type: Union[JobType, str],
        payload: Any,
        singleton_key: Optional[str] = None,
        tenant_id: Optional[str] = None,
        priority: int = 0,
    ) -> str:
        """Submit a job; see QueueManager.submit."""
        return self.queue_manager.submit(job_type, payload, singleton_key, tenant_id, priority)

    def submit_job(
        self,
        job_type: Union[JobType, str],
        payload: Any,
        singleton_key: Optional[str] = None,
        tenant_id: Optional[str] = None,
        priority: int = 0,
    ) -> tuple[Job, bool]:
        return self.queue_manager.submit_job(
            job_type, payload, singleton_key, tenant_id, priority
        )

    def get_job(self, job_id: str) -> Job:
        return self.queue_manager.get_job(job_id)

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        job_type: Optional[JobType] = None,
        tenant_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Job]:
        return self.queue_manager.list_jobs(status, job_type, tenant_id, limit, offset)

    def cancel_job(self, job_id: str) -> Job:
        return self.queue_manager.cancel(job_id)

    # =========================================================================
    # Dead Letter Administration
    # =========================================================================

    def list_dead_lettered(
        self,
        job_type: Optional[JobType] = None,
        tenant_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[DeadLetterEntry]:
        return self.dead_letter.list_entries(job_type, tenant_id, limit, offset)

    def get_dead_letter(self, dlq_id: str) -> DeadLetterEntry:
        return self.dead_letter.get_entry(dlq_id)

    def retry_dead_letter(self, dlq_id: str) -> RecoveryOutcome:
        return self.dead_letter.retry(dlq_id)

    def purge_dead_letter(self, dlq_id: str) -> None:
        self.dead_letter.purge(dlq_id)

    def purge_dead_letters(self, older_than: Optional[datetime] = None) -> dict[str, int]:
        return self.dead_letter.cleanup(older_than)

    def process_dead_letters(self, batch_size: Optional[int] = None) -> dict[str, int]:
        return self.dead_letter.process_jobs(batch_size=batch_size)

    # =========================================================================
    # Circuits and Telemetry
    # =========================================================================

    def get_circuit_metrics(self) -> dict[str, dict]:
        return self.breakers.get_all_metrics()

    def reset_circuit(self, name: str) -> bool:
        """
        Manually close a breaker.

        Returns:
            False if no breaker with that name exists
        """
        breaker = self.breakers.find(name)
        if breaker is None:
            return False
        breaker.reset()
        return True

    def get_metrics(self) -> dict:
        """Observability export with a fresh queue depth gauge."""
        self.metrics.set_queue_depth(self.queue_manager.get_queue_depth())
        snapshot = self.metrics.snapshot()
        snapshot["circuits"] = self.breakers.get_all_metrics()
        return snapshot

    def get_execution_stats(
        self,
        job_type: Optional[JobType] = None,
        tenant_id: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> dict:
        return self.metrics.get_stats(
            job_type=job_type.value if job_type is not None else None,
            tenant_id=tenant_id,
            since=since,
        )

    def get_performance_trends(
        self, time_range: str = "24h", job_type: Optional[JobType] = None
    ) -> list[dict]:
        """Hourly trend points; raises ValueError for an unknown time range."""
        return self.metrics.get_performance_trends(
            time_range=time_range,
            job_type=job_type.value if job_type is not None else None,
        )

    def list_job_metrics(self, job_id: str) -> list[ExecutionMetric]:
        """
        Execution metrics recorded for one job, oldest first.

        Raises:
            JobNotFoundError: If job doesn't exist
        """
        self.queue_manager.get_job(job_id)
        return self.persistence.list_execution_metrics(job_id)

    def get_status(self) -> dict:
        health = self.breakers.get_health_status()
        return {
            "is_running": self.is_running,
            "dispatcher_state": self.dispatcher.state.value,
            "worker_count": self.config.dispatcher.worker_count,
            "allowed_workers": self.dispatcher.allowed_workers,
            "in_flight": self.dispatcher.in_flight,
            "jobs": self.queue_manager.get_status_counts(),
            "dead_letter": self.dead_letter.get_stats(),
            "circuits": health,
            "registered_job_types": [t.value for t in self.registry.registered_types()],
        }
