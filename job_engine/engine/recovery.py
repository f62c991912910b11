"""
Recovery Manager for the Job Engine.

- Reclaims active jobs whose worker crashed or timed out
- Runs on startup and periodically from the maintenance loop

A stale claim with attempts left goes back to pending and is due
immediately; the attempt it consumed stays counted. A stale claim with no
attempts left is failed through the dispatcher, which dead-letters it.

Recovery is idempotent: every transition is conditional on the job still
being active. Claims held by a worker of this process are never reclaimed,
however old.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from .dispatcher import Dispatcher
from .entities import ErrorCategory, ErrorInfo, format_timestamp, utc_now
from .errors import ConcurrencyViolationError, JobNotFoundError
from .persistence import PersistenceAdapter


logger = logging.getLogger(__name__)


DEFAULT_CLAIM_TIMEOUT_SECONDS = 300


class RecoveryManager:
    """Handles crash recovery and stale-claim cleanup."""

    def __init__(
        self,
        persistence: PersistenceAdapter,
        dispatcher: Dispatcher,
        claim_timeout_seconds: int = DEFAULT_CLAIM_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize RecoveryManager.

        Args:
            persistence: PersistenceAdapter for storage
            dispatcher: Dispatcher used to fail exhausted claims
            claim_timeout_seconds: Age after which an active claim is stale
        """
        self.persistence = persistence
        self.dispatcher = dispatcher
        self.claim_timeout_seconds = claim_timeout_seconds
        self._clock = clock

    def recover_on_startup(self, reclaim_all: bool = True) -> dict:
        """
        Perform recovery on engine startup.

        Args:
            reclaim_all: Treat every active claim as orphaned. Right for a
                single engine process per database; pass False when several
                processes share the store.

        Returns:
            Recovery statistics
        """
        logger.info("Starting crash recovery...")
        cutoff = self._clock() if reclaim_all else None
        stats = self.reclaim_stale_claims(cutoff=cutoff)
        logger.info(
            f"Recovery complete: {stats['released']} claims released, "
            f"{stats['failed']} exhausted claims failed"
        )
        return stats

    def reclaim_stale_claims(self, cutoff: Optional[datetime] = None) -> dict:
        """
        Release or fail active claims older than cutoff.

        Args:
            cutoff: Defaults to now - claim_timeout_seconds

        Returns:
            {"released": n, "failed": n, "errors": [...]}
        """
        stats = {"released": 0, "failed": 0, "errors": []}
        now = self._clock()
        if cutoff is None:
            cutoff = now - timedelta(seconds=self.claim_timeout_seconds)

        try:
            stale = self.persistence.get_stale_active_jobs(cutoff)
        except Exception as e:
            logger.error(f"Error loading stale claims: {e}", exc_info=True)
            stats["errors"].append(f"Load: {e}")
            return stats

        held = self.dispatcher.held_job_ids()
        for job in stale:
            if job.job_id in held:
                # Still executing in this process; not abandoned
                logger.debug(f"Skipping job {job.job_id}: claim held by a live worker")
                continue
            try:
                if job.attempts < job.max_attempts:
                    self.persistence.release_claim(job.job_id, now)
                    stats["released"] += 1
                    logger.warning(
                        f"Released stale claim on job {job.job_id} "
                        f"(claimed at {job.last_attempt_at}, attempt {job.attempts})"
                    )
                    continue

                error = ErrorInfo(
                    category=ErrorCategory.SYSTEM,
                    message=f"Claim abandoned (claimed at {job.last_attempt_at})",
                    retryable=True,
                    error_type="AbandonedClaim",
                    attempt=job.attempts,
                    occurred_at=format_timestamp(now),
                )
                if self.dispatcher.fail_abandoned(job, error) is not None:
                    stats["failed"] += 1
            except (ConcurrencyViolationError, JobNotFoundError):
                # Worker finished it after all
                logger.debug(f"Job {job.job_id} left active state during recovery")
            except Exception as e:
                logger.error(f"Error recovering job {job.job_id}: {e}", exc_info=True)
                stats["errors"].append(f"{job.job_id}: {e}")

        return stats
