"""
Persistence invariant tests.

- Singleton key: at most one pending/active job per key
- Atomic claim: a job is claimed by at most one worker
- Claim order: priority DESC, next_attempt_at ASC, created_at ASC
- Conditional transitions reject jobs in the wrong status
"""

import threading
from datetime import timedelta

import pytest

from job_engine.engine import (
    ConcurrencyViolationError,
    ErrorCategory,
    ErrorInfo,
    Job,
    JobNotFoundError,
    JobStatus,
    JobType,
    PersistenceAdapter,
)
from job_engine.engine.entities import DeadLetterEntry, format_timestamp

from .conftest import assert_job_status


def _error(attempt: int = 1) -> ErrorInfo:
    return ErrorInfo(
        category=ErrorCategory.NETWORK,
        message="ECONNRESET",
        retryable=True,
        attempt=attempt,
    )


class TestSingletonKey:
    """Idempotent insert by singleton key."""

    def test_duplicate_returns_existing(self, persistence, create_job, mock_clock):
        first = create_job(singleton_key="evt_1")
        duplicate = Job.create(
            JobType.WEBHOOK_PROCESSING, {"other": True}, 3, singleton_key="evt_1",
            now=mock_clock.now(),
        )

        stored, created = persistence.create_or_get_job(duplicate)

        assert created is False
        assert stored.job_id == first.job_id
        assert stored.payload == {"test": True}
        assert persistence.count_jobs_by_status(JobStatus.PENDING) == 1

    def test_key_reusable_after_terminal(self, persistence, create_job, mock_clock):
        first = create_job(singleton_key="evt_1")
        persistence.cancel_job(first.job_id, mock_clock.now())

        second = create_job(singleton_key="evt_1")

        assert second.job_id != first.job_id
        assert second.status == JobStatus.PENDING

    def test_active_job_still_holds_key(self, persistence, create_job, mock_clock):
        first = create_job(singleton_key="evt_1")
        persistence.claim_next_job(mock_clock.now())

        again = create_job(singleton_key="evt_1")

        assert again.job_id == first.job_id
        assert again.status == JobStatus.ACTIVE

    def test_concurrent_submissions_create_one_job(self, temp_db_path, mock_clock):
        """Two adapters (as two processes would) race on the same key."""
        adapters = [PersistenceAdapter(temp_db_path) for _ in range(8)]
        barrier = threading.Barrier(len(adapters))
        results = []
        lock = threading.Lock()

        def submit(adapter):
            job = Job.create(
                JobType.WEBHOOK_PROCESSING, {"n": 1}, 3, singleton_key="evt_1",
                now=mock_clock.now(),
            )
            barrier.wait()
            stored, created = adapter.create_or_get_job(job)
            with lock:
                results.append((stored.job_id, created))

        threads = [threading.Thread(target=submit, args=(a,)) for a in adapters]
        for t in threads:
            t.start()
        for t in threads:
            t.join(10)

        assert len(results) == 8
        assert len({job_id for job_id, _ in results}) == 1
        assert sum(1 for _, created in results if created) == 1
        assert len(adapters[0].list_jobs()) == 1

    def test_jobs_without_key_never_collide(self, persistence, create_job):
        create_job()
        create_job()

        assert persistence.count_jobs_by_status(JobStatus.PENDING) == 2


class TestClaim:
    """Atomic claim and ordering."""

    def test_claim_increments_attempts(self, persistence, create_job, mock_clock):
        job = create_job()

        claimed = persistence.claim_next_job(mock_clock.now())

        assert claimed.job_id == job.job_id
        assert claimed.status == JobStatus.ACTIVE
        assert claimed.attempts == 1
        assert claimed.last_attempt_at == format_timestamp(mock_clock.now())

    def test_nothing_due(self, persistence, create_job, mock_clock):
        create_job(now=mock_clock.now() + timedelta(seconds=30))

        assert persistence.claim_next_job(mock_clock.now()) is None

    def test_priority_then_due_time_then_creation(self, persistence, create_job, mock_clock):
        base = mock_clock.now()
        low = create_job(priority=0, now=base - timedelta(seconds=30))
        high_later = create_job(priority=5, now=base - timedelta(seconds=10))
        high_earlier = create_job(priority=5, now=base - timedelta(seconds=20))

        order = [persistence.claim_next_job(base).job_id for _ in range(3)]

        assert order == [high_earlier.job_id, high_later.job_id, low.job_id]

    def test_no_double_claim_under_concurrency(self, temp_db_path, mock_clock):
        seed = PersistenceAdapter(temp_db_path)
        job_ids = set()
        for i in range(20):
            job = Job.create(JobType.WEBHOOK_PROCESSING, {"i": i}, 3, now=mock_clock.now())
            seed.create_or_get_job(job)
            job_ids.add(job.job_id)

        claimed = []
        lock = threading.Lock()

        def worker():
            adapter = PersistenceAdapter(temp_db_path)
            while True:
                job = adapter.claim_next_job(mock_clock.now())
                if job is None:
                    return
                with lock:
                    claimed.append(job.job_id)

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(30)

        assert sorted(claimed) == sorted(job_ids)
        assert len(claimed) == len(set(claimed))
        assert seed.count_jobs_by_status(JobStatus.ACTIVE) == 20


class TestTransitions:
    """Conditional status updates."""

    def test_complete(self, persistence, create_job, mock_clock):
        job = create_job()
        persistence.claim_next_job(mock_clock.now())

        done = persistence.complete_job(job.job_id, mock_clock.now())

        assert done.status == JobStatus.COMPLETED
        assert done.finished_at is not None

    def test_complete_requires_active(self, persistence, create_job, mock_clock):
        job = create_job()

        with pytest.raises(ConcurrencyViolationError):
            persistence.complete_job(job.job_id, mock_clock.now())

        assert_job_status(persistence, job.job_id, JobStatus.PENDING)

    def test_complete_missing_job(self, persistence, mock_clock):
        with pytest.raises(JobNotFoundError):
            persistence.complete_job("missing", mock_clock.now())

    def test_reschedule_keeps_history(self, persistence, create_job, mock_clock):
        job = create_job()
        persistence.claim_next_job(mock_clock.now())
        later = mock_clock.now() + timedelta(seconds=5)

        updated = persistence.reschedule_job(
            job.job_id, later, _error(), [_error()]
        )

        assert updated.status == JobStatus.PENDING
        assert updated.attempts == 1
        assert updated.next_attempt_at == format_timestamp(later)
        assert updated.last_error.category == ErrorCategory.NETWORK
        assert len(updated.failure_history) == 1

    def test_reschedule_with_refund(self, persistence, create_job, mock_clock):
        job = create_job()
        persistence.claim_next_job(mock_clock.now())

        updated = persistence.reschedule_job(
            job.job_id, mock_clock.now(), _error(), [], refund_attempt=True
        )

        assert updated.attempts == 0

    def test_mark_dead_lettered(self, persistence, create_job, mock_clock):
        job = create_job()
        persistence.claim_next_job(mock_clock.now())

        updated = persistence.mark_job_dead_lettered(
            job.job_id, "dlq_x", _error(), [_error()], mock_clock.now()
        )

        assert updated.status == JobStatus.DEAD_LETTERED
        assert updated.dead_letter_id == "dlq_x"

    def test_cancel_only_pending(self, persistence, create_job, mock_clock):
        job = create_job()
        persistence.claim_next_job(mock_clock.now())

        with pytest.raises(ConcurrencyViolationError):
            persistence.cancel_job(job.job_id, mock_clock.now())

    def test_stale_and_release(self, persistence, create_job, mock_clock):
        job = create_job()
        persistence.claim_next_job(mock_clock.now())
        mock_clock.tick(600)

        stale = persistence.get_stale_active_jobs(mock_clock.now() - timedelta(seconds=300))
        assert [j.job_id for j in stale] == [job.job_id]

        released = persistence.release_claim(job.job_id, mock_clock.now())
        assert released.status == JobStatus.PENDING
        assert released.attempts == 1

    def test_status_counts(self, persistence, create_job, mock_clock):
        create_job()
        create_job()
        persistence.claim_next_job(mock_clock.now())

        assert persistence.count_jobs_grouped() == {"pending": 1, "active": 1}


class TestDeadLetterStorage:
    """Dead-letter table operations."""

    def _entry(self, mock_clock, **overrides) -> DeadLetterEntry:
        fields = dict(
            original_job_id="job-1",
            job_type=JobType.WEBHOOK_PROCESSING,
            payload={"id": "evt_1"},
            failure_history=[_error()],
            max_retries=5,
            next_retry_at=format_timestamp(mock_clock.now()),
            now=mock_clock.now(),
        )
        fields.update(overrides)
        return DeadLetterEntry.create(**fields)

    def test_round_trip(self, persistence, mock_clock):
        entry = self._entry(mock_clock, tenant_id="tenant-a", priority=3)
        persistence.insert_dead_letter(entry)

        loaded = persistence.get_dead_letter(entry.dlq_id)

        assert loaded.dlq_id.startswith("dlq_")
        assert loaded.payload == {"id": "evt_1"}
        assert loaded.failure_history[0].message == "ECONNRESET"
        assert loaded.auto_recovery_enabled is True
        assert loaded.recovery_attempts == 0

    def test_eligible_excludes_disabled_and_future(self, persistence, mock_clock):
        due = self._entry(mock_clock)
        future = self._entry(
            mock_clock,
            next_retry_at=format_timestamp(mock_clock.now() + timedelta(hours=1)),
        )
        disabled = self._entry(mock_clock)
        for e in (due, future, disabled):
            persistence.insert_dead_letter(e)
        persistence.update_dead_letter(disabled.dlq_id, auto_recovery_enabled=False)

        eligible = persistence.get_eligible_dead_letters(mock_clock.now(), limit=10)

        assert [e.dlq_id for e in eligible] == [due.dlq_id]

    def test_eligible_orders_by_priority(self, persistence, mock_clock):
        low = self._entry(mock_clock, priority=0)
        high = self._entry(mock_clock, priority=9)
        persistence.insert_dead_letter(low)
        persistence.insert_dead_letter(high)

        eligible = persistence.get_eligible_dead_letters(mock_clock.now(), limit=10)

        assert [e.dlq_id for e in eligible] == [high.dlq_id, low.dlq_id]

    def test_delete_before(self, persistence, mock_clock):
        old = self._entry(mock_clock)
        persistence.insert_dead_letter(old)
        mock_clock.tick(86400)
        recent = self._entry(mock_clock)
        persistence.insert_dead_letter(recent)

        deleted = persistence.delete_dead_letters_before(mock_clock.now() - timedelta(hours=1))

        assert deleted == 1
        assert persistence.get_dead_letter(old.dlq_id) is None
        assert persistence.get_dead_letter(recent.dlq_id) is not None

    def test_stats(self, persistence, mock_clock):
        persistence.insert_dead_letter(self._entry(mock_clock))
        exhausted = self._entry(mock_clock, job_type=JobType.REMINDER_PROCESSING)
        persistence.insert_dead_letter(exhausted)
        persistence.update_dead_letter(
            exhausted.dlq_id, recovery_attempts=5, auto_recovery_enabled=False
        )

        stats = persistence.get_dead_letter_stats()

        assert stats["total"] == 2
        assert stats["exhausted"] == 1
        assert stats["auto_recovery_enabled"] == 1
        assert stats["by_job_type"] == {"webhook-processing": 1, "reminder-processing": 1}
