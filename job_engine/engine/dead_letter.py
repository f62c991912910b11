"""
Dead Letter Queue for the Job Engine.

Quarantine for jobs that exhausted their attempts or failed fatally.

- add_job: persist an entry with the job's full failure history
- process_jobs: batch auto-recovery through the same executor/breaker path
- retry: manual recovery of a single entry
- purge / cleanup: operator removal and retention

Entries leave the queue only through successful recovery, purge or
retention cleanup. A failed recovery keeps the entry and backs off its
next_retry_at; once recovery_attempts reaches max_retries, auto recovery is
disabled and only a manual retry can run it again.
"""

import logging
import random
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from .entities import (
    DeadLetterEntry,
    ErrorInfo,
    JobType,
    format_timestamp,
    utc_now,
)
from .errors import DeadLetterNotFoundError, InvalidOperationError
from .executor import JobExecutor
from .metrics import MetricsCollector
from .persistence import PersistenceAdapter


logger = logging.getLogger(__name__)


@dataclass
class DeadLetterConfig:
    enabled: bool = True
    max_retries: int = 5
    initial_delay_ms: int = 60_000
    max_delay_ms: int = 3_600_000
    backoff_multiplier: float = 2.0
    jitter_factor: float = 0.1
    retention_days: int = 30
    batch_size: int = 10
    auto_recovery: bool = True
    auto_recovery_interval_seconds: int = 300


@dataclass
class RecoveryOutcome:
    """Result of one recovery attempt."""

    dlq_id: str
    recovered: bool
    recovery_attempts: int
    auto_recovery_enabled: bool
    error: Optional[ErrorInfo] = None

    def to_dict(self) -> dict:
        return {
            "dlq_id": self.dlq_id,
            "recovered": self.recovered,
            "recovery_attempts": self.recovery_attempts,
            "auto_recovery_enabled": self.auto_recovery_enabled,
            "error": self.error.to_dict() if self.error else None,
        }


class DeadLetterQueue:
    """
    Durable quarantine with manual and automatic recovery.

    Only one process_jobs batch runs at a time per instance; a concurrent
    call returns zero counts. An entry being recovered cannot be retried
    manually until its attempt finishes.
    """

    def __init__(
        self,
        persistence: PersistenceAdapter,
        executor: JobExecutor,
        metrics: Optional[MetricsCollector] = None,
        config: Optional[DeadLetterConfig] = None,
        clock: Callable[[], datetime] = utc_now,
        rng: Optional[random.Random] = None,
    ):
        self.persistence = persistence
        self.executor = executor
        self.metrics = metrics
        self.config = config or DeadLetterConfig()
        self._clock = clock
        self._rng = rng or random.Random()
        self._processing = threading.Lock()
        self._in_flight: set[str] = set()
        self._in_flight_lock = threading.Lock()

    # =========================================================================
    # Quarantine
    # =========================================================================

    def add_job(
        self,
        original_job_id: str,
        job_type: JobType,
        payload: Any,
        error: ErrorInfo,
        max_retries: Optional[int] = None,
        tenant_id: Optional[str] = None,
        priority: int = 0,
        failure_history: Optional[list[ErrorInfo]] = None,
    ) -> str:
        """
        Quarantine a job.

        Args:
            error: The terminal error; appended to failure_history if absent

        Returns:
            The new dlq_id
        """
        now = self._clock()
        history = list(failure_history or [])
        if error not in history:
            history.append(error)

        entry = DeadLetterEntry.create(
            original_job_id=original_job_id,
            job_type=JobType(job_type),
            payload=payload,
            failure_history=history,
            max_retries=max_retries if max_retries is not None else self.config.max_retries,
            next_retry_at=format_timestamp(
                now + timedelta(milliseconds=self.config.initial_delay_ms)
            ),
            tenant_id=tenant_id,
            priority=priority,
            now=now,
        )
        self.persistence.insert_dead_letter(entry)

        logger.warning(
            f"Job {original_job_id} ({entry.job_type.value}) moved to DLQ as "
            f"{entry.dlq_id} after {len(history)} failures "
            f"[{error.category.value}]: {error.message}"
        )
        if self.metrics is not None:
            self.metrics.record_dead_letter_job(entry.job_type, tenant_id)
        return entry.dlq_id

    # =========================================================================
    # Recovery
    # =========================================================================

    def process_jobs(
        self,
        batch_size: Optional[int] = None,
        job_types: Optional[list[JobType]] = None,
        tenant_id: Optional[str] = None,
    ) -> dict[str, int]:
        """
        Attempt recovery of a batch of eligible entries.

        Eligible: auto recovery enabled and next_retry_at <= now, ordered by
        priority DESC then enqueue time.

        Returns:
            {"processed", "recovered", "failed"} counts
        """
        results = {"processed": 0, "recovered": 0, "failed": 0}
        if not self._processing.acquire(blocking=False):
            logger.debug("DLQ processing already in progress, skipping")
            return results

        try:
            entries = self.persistence.get_eligible_dead_letters(
                now=self._clock(),
                limit=batch_size or self.config.batch_size,
                job_types=job_types,
                tenant_id=tenant_id,
            )
            if not entries:
                return results

            logger.info(f"Processing {len(entries)} dead-letter entries")
            for entry in entries:
                if not self._claim_entry(entry.dlq_id):
                    continue
                try:
                    outcome = self._attempt_recovery(entry)
                finally:
                    self._release_entry(entry.dlq_id)

                results["processed"] += 1
                if outcome.recovered:
                    results["recovered"] += 1
                else:
                    results["failed"] += 1

            logger.info(
                f"DLQ batch done: processed={results['processed']} "
                f"recovered={results['recovered']} failed={results['failed']}"
            )
            return results
        finally:
            self._processing.release()

    def retry(self, dlq_id: str) -> RecoveryOutcome:
        """
        Manually run recovery for one entry now.

        Re-enables auto recovery before running, so an exhausted entry gets
        a fresh chance.

        Raises:
            DeadLetterNotFoundError: If the entry doesn't exist
            InvalidOperationError: If the entry is being recovered right now
        """
        entry = self.persistence.get_dead_letter(dlq_id)
        if entry is None:
            raise DeadLetterNotFoundError(dlq_id)
        if not self._claim_entry(dlq_id):
            raise InvalidOperationError(
                f"Dead-letter entry {dlq_id} is already being processed"
            )
        try:
            if not entry.auto_recovery_enabled:
                self.persistence.update_dead_letter(
                    dlq_id,
                    auto_recovery_enabled=True,
                    updated_at=format_timestamp(self._clock()),
                )
                entry.auto_recovery_enabled = True
            logger.info(f"Manual retry of dead-letter entry {dlq_id}")
            return self._attempt_recovery(entry)
        finally:
            self._release_entry(dlq_id)

    def _claim_entry(self, dlq_id: str) -> bool:
        with self._in_flight_lock:
            if dlq_id in self._in_flight:
                return False
            self._in_flight.add(dlq_id)
            return True

    def _release_entry(self, dlq_id: str) -> None:
        with self._in_flight_lock:
            self._in_flight.discard(dlq_id)

    def _attempt_recovery(self, entry: DeadLetterEntry) -> RecoveryOutcome:
        outcome = self.executor.execute_payload(
            entry.job_type,
            entry.payload,
            entry.tenant_id,
            attempt=entry.recovery_attempts + 1,
        )

        if outcome.success:
            self.persistence.delete_dead_letter(entry.dlq_id)
            logger.info(
                f"Recovered dead-letter entry {entry.dlq_id} "
                f"(job {entry.original_job_id}, {entry.job_type.value})"
            )
            self._record_recovery(entry.job_type, "recovered")
            return RecoveryOutcome(
                dlq_id=entry.dlq_id,
                recovered=True,
                recovery_attempts=entry.recovery_attempts + 1,
                auto_recovery_enabled=entry.auto_recovery_enabled,
            )

        return self._record_failure(entry, outcome.error, outcome.circuit_open, outcome.retry_after_ms)

    def _record_failure(
        self,
        entry: DeadLetterEntry,
        error: ErrorInfo,
        circuit_open: bool,
        retry_after_ms: int,
    ) -> RecoveryOutcome:
        now = self._clock()
        history = list(entry.failure_history)

        if circuit_open:
            # Dependency is down; wait it out without burning a recovery attempt
            attempts = entry.recovery_attempts
            delay_ms = max(retry_after_ms, self.config.initial_delay_ms)
        else:
            attempts = entry.recovery_attempts + 1
            history.append(error)
            delay_ms = self.next_retry_delay_ms(attempts)

        auto_enabled = entry.auto_recovery_enabled and attempts < entry.max_retries
        self.persistence.update_dead_letter(
            entry.dlq_id,
            recovery_attempts=attempts,
            failure_history=history,
            next_retry_at=format_timestamp(now + timedelta(milliseconds=delay_ms)),
            auto_recovery_enabled=auto_enabled,
            last_recovery_error=error.message,
            updated_at=format_timestamp(now),
        )

        if not auto_enabled:
            logger.warning(
                f"Dead-letter entry {entry.dlq_id} exhausted {attempts}/"
                f"{entry.max_retries} recovery attempts; auto recovery disabled"
            )
        else:
            logger.warning(
                f"Recovery of {entry.dlq_id} failed [{error.category.value}]: "
                f"{error.message} (attempt {attempts}/{entry.max_retries}, "
                f"next in {delay_ms}ms)"
            )
        self._record_recovery(entry.job_type, "failed")
        if self.metrics is not None:
            self.metrics.record_job_error(entry.job_type, error, operation="dlq_recovery")

        return RecoveryOutcome(
            dlq_id=entry.dlq_id,
            recovered=False,
            recovery_attempts=attempts,
            auto_recovery_enabled=auto_enabled,
            error=error,
        )

    def next_retry_delay_ms(self, recovery_attempts: int) -> int:
        """
        Backoff after a failed recovery.

        initial_delay * multiplier^(recovery_attempts - 1), capped, with
        +/- jitter_factor randomization.
        """
        exponent = max(0, recovery_attempts - 1)
        delay = min(
            float(self.config.max_delay_ms),
            self.config.initial_delay_ms * (self.config.backoff_multiplier ** exponent),
        )
        if self.config.jitter_factor > 0:
            delay += delay * self.config.jitter_factor * (self._rng.random() * 2 - 1)
        return int(max(0.0, min(float(self.config.max_delay_ms), delay)))

    def _record_recovery(self, job_type: JobType, outcome: str) -> None:
        if self.metrics is not None:
            self.metrics.record_dead_letter_recovery(job_type, outcome)

    # =========================================================================
    # Administration
    # =========================================================================

    def get_entry(self, dlq_id: str) -> DeadLetterEntry:
        entry = self.persistence.get_dead_letter(dlq_id)
        if entry is None:
            raise DeadLetterNotFoundError(dlq_id)
        return entry

    def list_entries(
        self,
        job_type: Optional[JobType] = None,
        tenant_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[DeadLetterEntry]:
        return self.persistence.list_dead_letters(
            job_type=job_type, tenant_id=tenant_id, limit=limit, offset=offset
        )

    def purge(self, dlq_id: str) -> None:
        """
        Raises:
            DeadLetterNotFoundError: If the entry doesn't exist
        """
        if not self.persistence.delete_dead_letter(dlq_id):
            raise DeadLetterNotFoundError(dlq_id)
        logger.info(f"Purged dead-letter entry {dlq_id}")

    def cleanup(self, older_than: Optional[datetime] = None) -> dict[str, int]:
        """
        Delete entries enqueued before older_than.

        Defaults to now - retention_days.

        Returns:
            {"cleaned": n, "errors": n}
        """
        cutoff = older_than or (self._clock() - timedelta(days=self.config.retention_days))
        try:
            cleaned = self.persistence.delete_dead_letters_before(cutoff)
        except Exception as e:
            logger.error(f"DLQ cleanup failed: {e}", exc_info=True)
            return {"cleaned": 0, "errors": 1}
        if cleaned:
            logger.info(
                f"Cleaned up {cleaned} dead-letter entries enqueued before "
                f"{format_timestamp(cutoff)}"
            )
        return {"cleaned": cleaned, "errors": 0}

    def get_stats(self) -> dict:
        stats = self.persistence.get_dead_letter_stats()
        stats["processing"] = self._processing.locked()
        return stats

