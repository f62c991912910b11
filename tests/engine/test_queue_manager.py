"""
Queue manager tests: submission validation, idempotency and cancellation.
"""

import threading

import pytest

from job_engine.engine import (
    HandlerRegistry,
    InvalidJobTypeError,
    InvalidOperationError,
    JobNotFoundError,
    JobStatus,
    JobType,
    PayloadTooLargeError,
    QueueManager,
    RetryPolicy,
)


class TestSubmit:
    """Submission path."""

    def test_submit_creates_pending_job(self, queue_manager, persistence, mock_clock):
        job_id = queue_manager.submit(
            "webhook-processing", {"id": "evt_1"}, singleton_key="evt_1", tenant_id="t1"
        )

        job = persistence.get_job(job_id)
        assert job.status == JobStatus.PENDING
        assert job.job_type == JobType.WEBHOOK_PROCESSING
        assert job.max_attempts == 3
        assert job.attempts == 0
        assert job.tenant_id == "t1"
        assert job.next_attempt_at == job.created_at

    def test_max_attempts_from_type_profile(self, queue_manager, persistence):
        job_id = queue_manager.submit(JobType.REMINDER_PROCESSING, {"user": 1})

        assert persistence.get_job(job_id).max_attempts == 2

    def test_duplicate_key_returns_same_id(self, queue_manager, persistence):
        ids = [
            queue_manager.submit("webhook-processing", {"n": i}, singleton_key="evt_1")
            for i in range(5)
        ]

        assert len(set(ids)) == 1
        assert len(persistence.list_jobs()) == 1

    def test_submit_job_reports_created(self, queue_manager):
        _, created = queue_manager.submit_job("webhook-processing", {}, singleton_key="k")
        _, created_again = queue_manager.submit_job("webhook-processing", {}, singleton_key="k")

        assert created is True
        assert created_again is False

    def test_concurrent_duplicate_submission(self, queue_manager, persistence):
        """Concurrent submissions with the same key resolve to one job."""
        barrier = threading.Barrier(5)
        ids = []
        lock = threading.Lock()

        def submit():
            barrier.wait()
            job_id = queue_manager.submit("webhook-processing", {"id": "evt_1"}, singleton_key="evt_1")
            with lock:
                ids.append(job_id)

        threads = [threading.Thread(target=submit) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(10)

        assert len(ids) == 5
        assert len(set(ids)) == 1
        assert len(persistence.list_jobs()) == 1

    def test_enqueue_metric_only_for_new_jobs(self, queue_manager, metrics):
        queue_manager.submit("webhook-processing", {}, singleton_key="k")
        queue_manager.submit("webhook-processing", {}, singleton_key="k")

        assert metrics.snapshot()["counters"]["jobs_enqueued"] == {"webhook-processing": 1}

    def test_unknown_type_rejected(self, queue_manager):
        with pytest.raises(InvalidJobTypeError) as exc_info:
            queue_manager.submit("email-blast", {})

        assert exc_info.value.job_type == "email-blast"

    def test_unregistered_type_rejected(self, persistence):
        registry = HandlerRegistry()
        registry.register(JobType.WEBHOOK_PROCESSING, lambda payload, tenant_id: None)
        manager = QueueManager(persistence, registry, RetryPolicy())

        with pytest.raises(InvalidJobTypeError):
            manager.submit(JobType.REMINDER_PROCESSING, {})

    def test_payload_too_large(self, persistence, registry, retry_policy):
        manager = QueueManager(persistence, registry, retry_policy, max_payload_bytes=64)

        with pytest.raises(PayloadTooLargeError) as exc_info:
            manager.submit("webhook-processing", {"blob": "x" * 100})

        assert exc_info.value.max_bytes == 64
        assert exc_info.value.size_bytes > 64
        assert persistence.list_jobs() == []

    def test_payload_must_be_json(self, queue_manager):
        with pytest.raises(InvalidOperationError):
            queue_manager.submit("webhook-processing", {"when": object()})


class TestCancel:
    """PENDING -> CANCELLED only."""

    def test_cancel_pending(self, queue_manager):
        job_id = queue_manager.submit("webhook-processing", {})

        job = queue_manager.cancel(job_id)

        assert job.status == JobStatus.CANCELLED
        assert job.is_terminal()

    def test_cancel_active_rejected(self, queue_manager, persistence, mock_clock):
        job_id = queue_manager.submit("webhook-processing", {})
        persistence.claim_next_job(mock_clock.now())

        with pytest.raises(InvalidOperationError):
            queue_manager.cancel(job_id)

    def test_cancel_missing(self, queue_manager):
        with pytest.raises(JobNotFoundError):
            queue_manager.cancel("missing")


class TestQueries:
    def test_get_job_missing(self, queue_manager):
        with pytest.raises(JobNotFoundError):
            queue_manager.get_job("missing")

    def test_queue_depth_and_counts(self, queue_manager, persistence, mock_clock):
        queue_manager.submit("webhook-processing", {})
        queue_manager.submit("reminder-processing", {})
        persistence.claim_next_job(mock_clock.now())

        assert queue_manager.get_queue_depth() == 1
        counts = queue_manager.get_status_counts()
        assert counts["pending"] == 1
        assert counts["active"] == 1
        assert counts["dead-lettered"] == 0

    def test_list_filters(self, queue_manager):
        queue_manager.submit("webhook-processing", {}, tenant_id="a")
        queue_manager.submit("reminder-processing", {}, tenant_id="b")

        assert len(queue_manager.list_jobs(job_type=JobType.REMINDER_PROCESSING)) == 1
        assert len(queue_manager.list_jobs(tenant_id="a")) == 1
        assert len(queue_manager.list_jobs(status=JobStatus.CANCELLED)) == 0
