"""
Dispatcher for the Job Engine.

- Runs a bounded pool of worker threads
- Each worker claims the next due job and hands it to the Executor
- Turns every execution outcome into exactly one state transition and
  exactly one ExecutionMetric
- Throttles claiming under memory pressure

Outcome handling:
    success                        -> completed
    retryable, attempts < max      -> pending, next_attempt_at = now + delay
    retryable exhausted, or fatal  -> DLQ handoff, dead-lettered
    DLQ disabled or handoff failed -> failed
    circuit open                   -> pending after the breaker cooldown,
                                      attempt refunded

What Dispatcher MUST NOT do:
- Run handlers directly (Executor's responsibility)
- Modify a job it does not hold the claim for
- Let a handler error escape a worker
"""

import logging
import sqlite3
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from .dead_letter import DeadLetterQueue
from .entities import (
    ErrorInfo,
    ExecutionMetric,
    Job,
    JobStatus,
    MetricOutcome,
    format_timestamp,
    utc_now,
)
from .errors import ConcurrencyViolationError, JobNotFoundError
from .executor import ExecutionOutcome, JobExecutor
from .metrics import BYTES_PER_MB, MetricsCollector, current_memory_bytes
from .persistence import PersistenceAdapter
from .retry_policy import RetryPolicy


logger = logging.getLogger(__name__)


class DispatcherState(str, Enum):
    """Dispatcher lifecycle states."""

    STOPPED = "STOPPED"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"


@dataclass
class DispatcherConfig:
    worker_count: int = 4
    poll_interval_seconds: float = 1.0
    memory_pressure_enabled: bool = True
    memory_threshold_mb: int = 512
    memory_check_interval_seconds: float = 30.0


@dataclass
class DispatchResult:
    """What one claim/execute cycle did."""

    job: Job
    outcome: MetricOutcome
    error: Optional[ErrorInfo] = None
    delay_ms: int = 0


class Dispatcher:
    """
    Claims due jobs and applies execution outcomes.

    dispatch_one() runs a single cycle synchronously and is what each worker
    thread calls in its loop.
    """

    def __init__(
        self,
        persistence: PersistenceAdapter,
        executor: JobExecutor,
        retry_policy: RetryPolicy,
        dead_letter: Optional[DeadLetterQueue] = None,
        metrics: Optional[MetricsCollector] = None,
        config: Optional[DispatcherConfig] = None,
        clock: Callable[[], datetime] = utc_now,
        memory_probe: Callable[[], int] = current_memory_bytes,
    ):
        self.persistence = persistence
        self.executor = executor
        self.retry_policy = retry_policy
        self.dead_letter = dead_letter
        self.metrics = metrics
        self.config = config or DispatcherConfig()
        self._clock = clock
        self._memory_probe = memory_probe

        self._state = DispatcherState.STOPPED
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []

        self._lock = threading.Lock()
        self._held: set[str] = set()
        self._allowed_workers = self.config.worker_count
        self._last_memory_check: Optional[float] = None

    @property
    def state(self) -> DispatcherState:
        self._reap_workers()
        return self._state

    @property
    def in_flight(self) -> int:
        with self._lock:
            return len(self._held)

    def held_job_ids(self) -> set[str]:
        """Ids of jobs whose claim is held by a running cycle in this process."""
        with self._lock:
            return set(self._held)

    @property
    def allowed_workers(self) -> int:
        with self._lock:
            return self._allowed_workers

    # =========================================================================
    # Single cycle
    # =========================================================================

    def dispatch_one(self) -> Optional[DispatchResult]:
        """
        Claim and execute at most one job.

        Returns:
            DispatchResult, or None if nothing was due or the cycle was
            abandoned on a persistence error
        """
        try:
            job = self.persistence.claim_next_job(self._clock())
        except sqlite3.Error as e:
            logger.error(f"Claim failed, skipping cycle: {e}", exc_info=True)
            return None

        if job is None:
            return None

        logger.info(
            f"Claimed job {job.job_id} ({job.job_type.value}, "
            f"attempt {job.attempts}/{job.max_attempts})"
        )
        with self._lock:
            self._held.add(job.job_id)
        try:
            return self.process_job(job)
        finally:
            with self._lock:
                self._held.discard(job.job_id)

    def process_job(self, job: Job) -> Optional[DispatchResult]:
        """Execute a job this worker has claimed and record the outcome."""
        queue_depth = self._queue_depth()
        memory_bytes = self._memory_bytes()

        outcome = self.executor.execute(job)

        try:
            if outcome.success:
                result = self._complete(job)
            elif outcome.circuit_open:
                result = self._defer_for_circuit(job, outcome)
            else:
                result = self._handle_failure(job, outcome.error)
        except (sqlite3.Error, ConcurrencyViolationError, JobNotFoundError) as e:
            # Claim stays active and is reclaimed by recovery
            logger.error(
                f"Failed to record outcome for job {job.job_id}: {e}",
                exc_info=True,
            )
            return None

        self._emit_metric(result, outcome, queue_depth, memory_bytes)
        return result

    def fail_abandoned(self, job: Job, error: ErrorInfo) -> Optional[DispatchResult]:
        """
        Apply a failure to an active job whose worker went away.

        Used by stale-claim recovery for jobs that have no attempts left.
        """
        try:
            result = self._handle_failure(job, error)
        except (sqlite3.Error, ConcurrencyViolationError, JobNotFoundError) as e:
            logger.error(
                f"Failed to resolve abandoned job {job.job_id}: {e}",
                exc_info=True,
            )
            return None
        self._emit_metric(
            result,
            ExecutionOutcome(success=False, duration_ms=0, error=error),
            self._queue_depth(),
            self._memory_bytes(),
        )
        return result

    def _complete(self, job: Job) -> DispatchResult:
        updated = self.persistence.complete_job(job.job_id, self._clock())
        logger.info(f"Job {job.job_id} completed (attempt {updated.attempts})")
        return DispatchResult(job=updated, outcome=MetricOutcome.COMPLETED)

    def _defer_for_circuit(self, job: Job, outcome: ExecutionOutcome) -> DispatchResult:
        delay_ms = max(
            self.retry_policy.delay_ms(max(0, job.attempts - 1), job.job_type),
            outcome.retry_after_ms,
        )
        next_attempt = self._clock() + timedelta(milliseconds=delay_ms)
        updated = self.persistence.reschedule_job(
            job.job_id,
            next_attempt_at=next_attempt,
            error=outcome.error,
            failure_history=job.failure_history,
            refund_attempt=True,
        )
        logger.warning(
            f"Job {job.job_id} deferred {delay_ms}ms: {outcome.error.message}"
        )
        return DispatchResult(
            job=updated,
            outcome=MetricOutcome.RETRY_SCHEDULED,
            error=outcome.error,
            delay_ms=delay_ms,
        )

    def _handle_failure(self, job: Job, error: ErrorInfo) -> DispatchResult:
        history = list(job.failure_history) + [error]

        if error.retryable and job.attempts < job.max_attempts:
            delay_ms = self.retry_policy.delay_ms(job.attempts - 1, job.job_type)
            next_attempt = self._clock() + timedelta(milliseconds=delay_ms)
            updated = self.persistence.reschedule_job(
                job.job_id,
                next_attempt_at=next_attempt,
                error=error,
                failure_history=history,
            )
            logger.warning(
                f"Job {job.job_id} failed attempt {job.attempts}/{job.max_attempts} "
                f"[{error.category.value}]: {error.message}; retry in {delay_ms}ms"
            )
            return DispatchResult(
                job=updated,
                outcome=MetricOutcome.RETRY_SCHEDULED,
                error=error,
                delay_ms=delay_ms,
            )

        if not error.retryable:
            logger.warning(
                f"Job {job.job_id} failed fatally on attempt {job.attempts} "
                f"[{error.category.value}]: {error.message}"
            )
        else:
            logger.warning(
                f"Job {job.job_id} exhausted {job.attempts}/{job.max_attempts} attempts"
            )
        return self._quarantine(job, error, history)

    def _quarantine(
        self, job: Job, error: ErrorInfo, history: list[ErrorInfo]
    ) -> DispatchResult:
        now = self._clock()
        dlq_id = None
        if self.dead_letter is not None and self.dead_letter.config.enabled:
            try:
                dlq_id = self.dead_letter.add_job(
                    original_job_id=job.job_id,
                    job_type=job.job_type,
                    payload=job.payload,
                    error=error,
                    tenant_id=job.tenant_id,
                    priority=job.priority,
                    failure_history=history,
                )
            except Exception as e:
                logger.error(
                    f"DLQ handoff failed for job {job.job_id}, marking failed: {e}",
                    exc_info=True,
                )

        if dlq_id is not None:
            updated = self.persistence.mark_job_dead_lettered(
                job.job_id, dlq_id, error, history, now
            )
            return DispatchResult(
                job=updated, outcome=MetricOutcome.DEAD_LETTERED, error=error
            )

        updated = self.persistence.mark_job_failed(job.job_id, error, history, now)
        logger.warning(f"Job {job.job_id} marked failed without DLQ handoff")
        return DispatchResult(job=updated, outcome=MetricOutcome.FAILED, error=error)

    def _emit_metric(
        self,
        result: DispatchResult,
        outcome: ExecutionOutcome,
        queue_depth: int,
        memory_bytes: int,
    ) -> None:
        if self.metrics is None:
            return
        job = result.job
        self.metrics.record_job_execution(
            ExecutionMetric(
                job_id=job.job_id,
                job_type=job.job_type.value,
                status="completed" if job.status == JobStatus.COMPLETED else "failed",
                outcome=result.outcome.value,
                duration_ms=outcome.duration_ms,
                attempts=job.attempts,
                memory_usage_bytes=memory_bytes,
                queue_depth_at_dispatch=queue_depth,
                timestamp=format_timestamp(self._clock()),
                error_category=result.error.category.value if result.error else None,
                tenant_id=job.tenant_id,
            )
        )

    def _queue_depth(self) -> int:
        try:
            return self.persistence.count_jobs_by_status(JobStatus.PENDING)
        except sqlite3.Error as e:
            logger.warning(f"Could not read queue depth: {e}")
            return 0

    def _memory_bytes(self) -> int:
        try:
            return int(self._memory_probe())
        except Exception as e:
            logger.warning(f"Memory probe failed: {e}")
            return 0

    # =========================================================================
    # Memory pressure
    # =========================================================================

    def check_memory_pressure(self) -> bool:
        """
        Sample process memory and adjust the number of claiming workers.

        Returns:
            True if memory is above the threshold
        """
        memory_mb = self._memory_bytes() / BYTES_PER_MB
        threshold = self.config.memory_threshold_mb
        if self.metrics is not None:
            self.metrics.record_memory_pressure(memory_mb, self.in_flight)

        over = memory_mb >= threshold
        target = max(1, self.config.worker_count // 2) if over else self.config.worker_count
        with self._lock:
            previous = self._allowed_workers
            self._allowed_workers = target
        if target != previous:
            if over:
                logger.warning(
                    f"Memory {memory_mb:.1f}MB over {threshold}MB; "
                    f"throttling to {target} workers"
                )
            else:
                logger.info(
                    f"Memory back to {memory_mb:.1f}MB; restoring {target} workers"
                )
        return over

    def _maybe_check_memory(self) -> None:
        if not self.config.memory_pressure_enabled:
            return
        now = time.monotonic()
        with self._lock:
            due = (
                self._last_memory_check is None
                or now - self._last_memory_check >= self.config.memory_check_interval_seconds
            )
            if due:
                self._last_memory_check = now
        if due:
            self.check_memory_pressure()

    # =========================================================================
    # Worker pool
    # =========================================================================

    def start(self) -> None:
        """
        Start the worker threads.

        Raises:
            RuntimeError: If running, or if workers left by a timed-out stop
                are still finishing their jobs
        """
        self._reap_workers()
        if self._state != DispatcherState.STOPPED:
            raise RuntimeError(
                f"Cannot start dispatcher in {self._state.value} state "
                f"({self.in_flight} jobs in flight)"
            )

        self._stop_event.clear()
        self._state = DispatcherState.RUNNING
        self._threads = [
            threading.Thread(
                target=self._worker_loop,
                args=(index,),
                name=f"job-worker-{index}",
                daemon=True,
            )
            for index in range(self.config.worker_count)
        ]
        for thread in self._threads:
            thread.start()
        logger.info(f"Dispatcher started with {self.config.worker_count} workers")

    def stop(self, timeout: float = 30.0) -> bool:
        """
        Stop claiming and wait for in-flight jobs.

        No preemption: a running handler is allowed to finish. If the timeout
        expires first, the dispatcher stays STOPPING until the remaining
        workers exit; calling stop() again waits for them once more.

        Returns:
            True if every worker finished within the timeout
        """
        if self._state == DispatcherState.STOPPED:
            return True

        if self._state == DispatcherState.RUNNING:
            logger.info("Stopping dispatcher...")
            self._state = DispatcherState.STOPPING
            self._stop_event.set()

        deadline = time.monotonic() + timeout
        for thread in self._threads:
            thread.join(timeout=max(0.0, deadline - time.monotonic()))

        if not self._reap_workers():
            logger.warning(
                f"Dispatcher stop timed out with {self.in_flight} jobs in flight; "
                "staying STOPPING until they finish"
            )
            return False
        logger.info("Dispatcher stopped")
        return True

    def _reap_workers(self) -> bool:
        """Drop exited workers; STOPPING becomes STOPPED once none remain."""
        self._threads = [t for t in self._threads if t.is_alive()]
        if self._state == DispatcherState.STOPPING and not self._threads:
            self._state = DispatcherState.STOPPED
        return not self._threads

    def _worker_loop(self, index: int) -> None:
        logger.debug(f"Worker {index} started")
        while not self._stop_event.is_set():
            try:
                self._maybe_check_memory()
                if index >= self.allowed_workers:
                    self._stop_event.wait(self.config.poll_interval_seconds)
                    continue

                if self.dispatch_one() is None:
                    self._stop_event.wait(self.config.poll_interval_seconds)
            except Exception as e:
                logger.error(f"Error in worker {index}: {e}", exc_info=True)
                self._stop_event.wait(self.config.poll_interval_seconds)
        logger.debug(f"Worker {index} stopped")

    def is_running(self) -> bool:
        return self._state == DispatcherState.RUNNING
