"""
Persistence Adapter for the Job Engine.

- SQLite job store with WAL mode
- Atomic claim of pending jobs (conditional UPDATE, rowcount check)
- Singleton-key enforcement via a partial unique index
- Dead-letter and execution-metric tables

Every operation opens its own connection, so one adapter can be shared by
all worker threads and by several processes pointing at the same file.
Write paths that read-then-write use BEGIN IMMEDIATE so the write lock is
taken before the read.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterable, Iterator, Optional

from .entities import (
    DeadLetterEntry,
    ErrorInfo,
    ExecutionMetric,
    Job,
    JobStatus,
    JobType,
    format_timestamp,
)
from .errors import ConcurrencyViolationError, JobNotFoundError


# Candidates inspected per claim cycle before giving up
CLAIM_CANDIDATE_LIMIT = 10


def _dump_errors(errors: Iterable[ErrorInfo]) -> str:
    return json.dumps([e.to_dict() for e in errors])


def _load_errors(raw: Optional[str]) -> list[ErrorInfo]:
    if not raw:
        return []
    return [ErrorInfo.from_dict(item) for item in json.loads(raw)]


class PersistenceAdapter:
    """
    SQLite-based persistence for jobs, dead-letter entries and metrics.

    - Does NOT contain retry or recovery logic
    - Does NOT validate beyond schema constraints
    - Conditional updates raise ConcurrencyViolationError when the row is
      not in the expected status
    """

    def __init__(self, db_path: str | Path, busy_timeout_seconds: float = 30.0):
        """
        Initialize persistence adapter.

        Args:
            db_path: Path to SQLite database file
            busy_timeout_seconds: How long a connection waits on a locked database
        """
        self.db_path = str(db_path)
        self.busy_timeout_seconds = busy_timeout_seconds
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with WAL mode enabled."""
        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout_seconds)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """Context manager for read-only connections."""
        conn = self._get_connection()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions."""
        conn = self._get_connection()
        try:
            if immediate:
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS jobs (
                    job_id TEXT PRIMARY KEY,
                    job_type TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    singleton_key TEXT,
                    tenant_id TEXT,
                    priority INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    max_attempts INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    last_attempt_at TEXT,
                    next_attempt_at TEXT,
                    finished_at TEXT,
                    last_error TEXT,
                    failure_history TEXT NOT NULL DEFAULT '[]',
                    dead_letter_id TEXT
                )
            """)

            # Claim ordering: priority DESC, next_attempt_at ASC, created_at ASC
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_claim_order
                ON jobs (status, priority DESC, next_attempt_at ASC, created_at ASC)
            """)

            # At most one pending/active job per singleton key
            conn.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_jobs_singleton_active
                ON jobs (singleton_key)
                WHERE singleton_key IS NOT NULL AND status IN ('pending', 'active')
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS dead_letter_entries (
                    dlq_id TEXT PRIMARY KEY,
                    original_job_id TEXT NOT NULL,
                    job_type TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    tenant_id TEXT,
                    priority INTEGER NOT NULL DEFAULT 0,
                    failure_history TEXT NOT NULL DEFAULT '[]',
                    enqueued_at TEXT NOT NULL,
                    recovery_attempts INTEGER NOT NULL DEFAULT 0,
                    max_retries INTEGER NOT NULL,
                    next_retry_at TEXT,
                    auto_recovery_enabled INTEGER NOT NULL DEFAULT 1,
                    last_recovery_error TEXT,
                    updated_at TEXT
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_dlq_eligible
                ON dead_letter_entries (auto_recovery_enabled, next_retry_at)
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS execution_metrics (
                    metric_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_id TEXT NOT NULL,
                    job_type TEXT NOT NULL,
                    status TEXT NOT NULL,
                    outcome TEXT NOT NULL,
                    duration_ms INTEGER NOT NULL,
                    attempts INTEGER NOT NULL,
                    memory_usage_bytes INTEGER NOT NULL,
                    queue_depth_at_dispatch INTEGER NOT NULL,
                    error_category TEXT,
                    tenant_id TEXT,
                    timestamp TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_metrics_type_time
                ON execution_metrics (job_type, timestamp)
            """)

    # =========================================================================
    # Job Operations
    # =========================================================================

    def create_or_get_job(self, job: Job) -> tuple[Job, bool]:
        """
        Insert a job unless its singleton key is already held.

        Returns:
            (job, created): the stored job and whether it was inserted. When a
            pending or active job holds the same singleton key, that job is
            returned with created=False.
        """
        try:
            with self._transaction(immediate=True) as conn:
                if job.singleton_key is not None:
                    existing = self._find_active_by_singleton(conn, job.singleton_key)
                    if existing is not None:
                        return existing, False
                self._insert_job(conn, job)
                return job, True
        except sqlite3.IntegrityError:
            # Another process won the partial unique index
            if job.singleton_key is None:
                raise
            with self._connection() as conn:
                existing = self._find_active_by_singleton(conn, job.singleton_key)
            if existing is None:
                raise
            return existing, False

    def _find_active_by_singleton(
        self, conn: sqlite3.Connection, singleton_key: str
    ) -> Optional[Job]:
        row = conn.execute(
            """
            SELECT * FROM jobs
            WHERE singleton_key = ? AND status IN (?, ?)
            """,
            (singleton_key, JobStatus.PENDING.value, JobStatus.ACTIVE.value),
        ).fetchone()
        return self._row_to_job(row) if row else None

    def _insert_job(self, conn: sqlite3.Connection, job: Job) -> None:
        conn.execute(
            """
            INSERT INTO jobs (
                job_id, job_type, payload, singleton_key, tenant_id, priority,
                status, attempts, max_attempts, created_at, last_attempt_at,
                next_attempt_at, finished_at, last_error, failure_history,
                dead_letter_id
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                job.job_id,
                job.job_type.value,
                json.dumps(job.payload),
                job.singleton_key,
                job.tenant_id,
                job.priority,
                job.status.value,
                job.attempts,
                job.max_attempts,
                job.created_at,
                job.last_attempt_at,
                job.next_attempt_at,
                job.finished_at,
                json.dumps(job.last_error.to_dict()) if job.last_error else None,
                _dump_errors(job.failure_history),
                job.dead_letter_id,
            ),
        )

    def get_job(self, job_id: str) -> Optional[Job]:
        """Get a job by ID."""
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM jobs WHERE job_id = ?",
                (job_id,),
            ).fetchone()
            return self._row_to_job(row) if row else None

    def _row_to_job(self, row: sqlite3.Row) -> Job:
        """Convert a database row to a Job entity."""
        last_error = json.loads(row["last_error"]) if row["last_error"] else None
        return Job(
            job_id=row["job_id"],
            job_type=JobType(row["job_type"]),
            payload=json.loads(row["payload"]),
            status=JobStatus(row["status"]),
            max_attempts=row["max_attempts"],
            singleton_key=row["singleton_key"],
            tenant_id=row["tenant_id"],
            priority=row["priority"],
            attempts=row["attempts"],
            created_at=row["created_at"],
            last_attempt_at=row["last_attempt_at"],
            next_attempt_at=row["next_attempt_at"],
            finished_at=row["finished_at"],
            last_error=ErrorInfo.from_dict(last_error) if last_error else None,
            failure_history=_load_errors(row["failure_history"]),
            dead_letter_id=row["dead_letter_id"],
        )

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        job_type: Optional[JobType] = None,
        tenant_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Job]:
        """List jobs, newest first."""
        clauses = []
        params: list = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if job_type is not None:
            clauses.append("job_type = ?")
            params.append(job_type.value)
        if tenant_id is not None:
            clauses.append("tenant_id = ?")
            params.append(tenant_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._connection() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM jobs {where}
                ORDER BY created_at DESC
                LIMIT ? OFFSET ?
                """,
                (*params, limit, offset),
            ).fetchall()
            return [self._row_to_job(row) for row in rows]

    def count_jobs_by_status(self, status: JobStatus) -> int:
        """Count jobs with a given status."""
        with self._connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM jobs WHERE status = ?",
                (status.value,),
            ).fetchone()
            return row[0]

    def count_jobs_grouped(self) -> dict[str, int]:
        """Job counts keyed by status value."""
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS n FROM jobs GROUP BY status"
            ).fetchall()
            return {row["status"]: row["n"] for row in rows}

    # =========================================================================
    # Claiming
    # =========================================================================

    def claim_next_job(self, now: datetime) -> Optional[Job]:
        """
        Claim the highest-priority due pending job.

        Candidates are ordered by priority DESC, next_attempt_at ASC,
        created_at ASC. Each claim is a conditional pending -> active update
        that increments attempts; a zero rowcount means another worker won,
        so the next candidate is tried.

        Returns:
            The claimed job, or None if nothing is due
        """
        now_ts = format_timestamp(now)
        with self._transaction(immediate=True) as conn:
            candidates = conn.execute(
                """
                SELECT job_id FROM jobs
                WHERE status = ? AND next_attempt_at <= ?
                ORDER BY priority DESC, next_attempt_at ASC, created_at ASC
                LIMIT ?
                """,
                (JobStatus.PENDING.value, now_ts, CLAIM_CANDIDATE_LIMIT),
            ).fetchall()

            for candidate in candidates:
                cursor = conn.execute(
                    """
                    UPDATE jobs
                    SET status = ?, attempts = attempts + 1, last_attempt_at = ?
                    WHERE job_id = ? AND status = ?
                    """,
                    (
                        JobStatus.ACTIVE.value,
                        now_ts,
                        candidate["job_id"],
                        JobStatus.PENDING.value,
                    ),
                )
                if cursor.rowcount == 1:
                    row = conn.execute(
                        "SELECT * FROM jobs WHERE job_id = ?",
                        (candidate["job_id"],),
                    ).fetchone()
                    return self._row_to_job(row)

        return None

    def _raise_for_status(
        self, conn: sqlite3.Connection, job_id: str, expected: JobStatus
    ) -> None:
        row = conn.execute(
            "SELECT status FROM jobs WHERE job_id = ?",
            (job_id,),
        ).fetchone()
        if row is None:
            raise JobNotFoundError(job_id)
        raise ConcurrencyViolationError(
            job_id,
            expected_status=expected.value,
            actual_status=row["status"],
        )

    # =========================================================================
    # Transitions (owned by the worker holding the claim)
    # =========================================================================

    def _transition(
        self,
        job_id: str,
        expected: JobStatus,
        updates: dict,
    ) -> Job:
        """Apply updates only if the job is in the expected status."""
        assignments = ", ".join(f"{column} = ?" for column in updates)
        with self._transaction() as conn:
            cursor = conn.execute(
                f"UPDATE jobs SET {assignments} WHERE job_id = ? AND status = ?",
                (*updates.values(), job_id, expected.value),
            )
            if cursor.rowcount == 0:
                self._raise_for_status(conn, job_id, expected)
            row = conn.execute(
                "SELECT * FROM jobs WHERE job_id = ?",
                (job_id,),
            ).fetchone()
            return self._row_to_job(row)

    def complete_job(self, job_id: str, now: datetime) -> Job:
        """active -> completed."""
        return self._transition(
            job_id,
            JobStatus.ACTIVE,
            {
                "status": JobStatus.COMPLETED.value,
                "finished_at": format_timestamp(now),
            },
        )

    def reschedule_job(
        self,
        job_id: str,
        next_attempt_at: datetime,
        error: ErrorInfo,
        failure_history: list[ErrorInfo],
        refund_attempt: bool = False,
    ) -> Job:
        """
        active -> pending with a future next_attempt_at.

        Args:
            refund_attempt: Undo the attempt counted at claim time (the
                handler never ran)
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE jobs
                SET status = ?, next_attempt_at = ?, last_error = ?,
                    failure_history = ?
                    {", attempts = MAX(0, attempts - 1)" if refund_attempt else ""}
                WHERE job_id = ? AND status = ?
                """,
                (
                    JobStatus.PENDING.value,
                    format_timestamp(next_attempt_at),
                    json.dumps(error.to_dict()),
                    _dump_errors(failure_history),
                    job_id,
                    JobStatus.ACTIVE.value,
                ),
            )
            if cursor.rowcount == 0:
                self._raise_for_status(conn, job_id, JobStatus.ACTIVE)
            row = conn.execute(
                "SELECT * FROM jobs WHERE job_id = ?",
                (job_id,),
            ).fetchone()
            return self._row_to_job(row)

    def mark_job_dead_lettered(
        self,
        job_id: str,
        dlq_id: str,
        error: ErrorInfo,
        failure_history: list[ErrorInfo],
        now: datetime,
    ) -> Job:
        """active -> dead-lettered."""
        return self._transition(
            job_id,
            JobStatus.ACTIVE,
            {
                "status": JobStatus.DEAD_LETTERED.value,
                "dead_letter_id": dlq_id,
                "last_error": json.dumps(error.to_dict()),
                "failure_history": _dump_errors(failure_history),
                "finished_at": format_timestamp(now),
            },
        )

    def mark_job_failed(
        self,
        job_id: str,
        error: ErrorInfo,
        failure_history: list[ErrorInfo],
        now: datetime,
    ) -> Job:
        """active -> failed (no DLQ handoff)."""
        return self._transition(
            job_id,
            JobStatus.ACTIVE,
            {
                "status": JobStatus.FAILED.value,
                "last_error": json.dumps(error.to_dict()),
                "failure_history": _dump_errors(failure_history),
                "finished_at": format_timestamp(now),
            },
        )

    def cancel_job(self, job_id: str, now: datetime) -> Job:
        """pending -> cancelled."""
        return self._transition(
            job_id,
            JobStatus.PENDING,
            {
                "status": JobStatus.CANCELLED.value,
                "finished_at": format_timestamp(now),
            },
        )

    # =========================================================================
    # Recovery Queries
    # =========================================================================

    def get_stale_active_jobs(self, cutoff: datetime) -> list[Job]:
        """Active jobs claimed at or before cutoff."""
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM jobs
                WHERE status = ? AND last_attempt_at <= ?
                ORDER BY last_attempt_at ASC
                """,
                (JobStatus.ACTIVE.value, format_timestamp(cutoff)),
            ).fetchall()
            return [self._row_to_job(row) for row in rows]

    def release_claim(self, job_id: str, now: datetime) -> Job:
        """active -> pending, due immediately. Attempts are kept."""
        return self._transition(
            job_id,
            JobStatus.ACTIVE,
            {
                "status": JobStatus.PENDING.value,
                "next_attempt_at": format_timestamp(now),
            },
        )

    # =========================================================================
    # Dead Letter Operations
    # =========================================================================

    def insert_dead_letter(self, entry: DeadLetterEntry) -> DeadLetterEntry:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO dead_letter_entries (
                    dlq_id, original_job_id, job_type, payload, tenant_id,
                    priority, failure_history, enqueued_at, recovery_attempts,
                    max_retries, next_retry_at, auto_recovery_enabled,
                    last_recovery_error, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.dlq_id,
                    entry.original_job_id,
                    entry.job_type.value,
                    json.dumps(entry.payload),
                    entry.tenant_id,
                    entry.priority,
                    _dump_errors(entry.failure_history),
                    entry.enqueued_at,
                    entry.recovery_attempts,
                    entry.max_retries,
                    entry.next_retry_at,
                    1 if entry.auto_recovery_enabled else 0,
                    entry.last_recovery_error,
                    entry.updated_at,
                ),
            )
        return entry

    def get_dead_letter(self, dlq_id: str) -> Optional[DeadLetterEntry]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM dead_letter_entries WHERE dlq_id = ?",
                (dlq_id,),
            ).fetchone()
            return self._row_to_dead_letter(row) if row else None

    def _row_to_dead_letter(self, row: sqlite3.Row) -> DeadLetterEntry:
        """Convert a database row to a DeadLetterEntry entity."""
        return DeadLetterEntry(
            dlq_id=row["dlq_id"],
            original_job_id=row["original_job_id"],
            job_type=JobType(row["job_type"]),
            payload=json.loads(row["payload"]),
            failure_history=_load_errors(row["failure_history"]),
            enqueued_at=row["enqueued_at"],
            max_retries=row["max_retries"],
            tenant_id=row["tenant_id"],
            priority=row["priority"],
            recovery_attempts=row["recovery_attempts"],
            next_retry_at=row["next_retry_at"],
            auto_recovery_enabled=bool(row["auto_recovery_enabled"]),
            last_recovery_error=row["last_recovery_error"],
            updated_at=row["updated_at"],
        )

    def list_dead_letters(
        self,
        job_type: Optional[JobType] = None,
        tenant_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[DeadLetterEntry]:
        """List quarantined entries, newest first."""
        clauses = []
        params: list = []
        if job_type is not None:
            clauses.append("job_type = ?")
            params.append(job_type.value)
        if tenant_id is not None:
            clauses.append("tenant_id = ?")
            params.append(tenant_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._connection() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM dead_letter_entries {where}
                ORDER BY enqueued_at DESC
                LIMIT ? OFFSET ?
                """,
                (*params, limit, offset),
            ).fetchall()
            return [self._row_to_dead_letter(row) for row in rows]

    def get_eligible_dead_letters(
        self,
        now: datetime,
        limit: int,
        job_types: Optional[list[JobType]] = None,
        tenant_id: Optional[str] = None,
    ) -> list[DeadLetterEntry]:
        """Entries with auto recovery enabled and next_retry_at due."""
        clauses = ["auto_recovery_enabled = 1", "next_retry_at <= ?"]
        params: list = [format_timestamp(now)]
        if job_types:
            clauses.append(f"job_type IN ({', '.join('?' for _ in job_types)})")
            params.extend(jt.value for jt in job_types)
        if tenant_id is not None:
            clauses.append("tenant_id = ?")
            params.append(tenant_id)

        with self._connection() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM dead_letter_entries
                WHERE {' AND '.join(clauses)}
                ORDER BY priority DESC, enqueued_at ASC
                LIMIT ?
                """,
                (*params, limit),
            ).fetchall()
            return [self._row_to_dead_letter(row) for row in rows]

    def update_dead_letter(self, dlq_id: str, **fields) -> bool:
        """
        Update columns of a dead-letter entry.

        failure_history is serialized; auto_recovery_enabled is stored as int.

        Returns:
            True if a row was updated
        """
        if not fields:
            return False
        if "failure_history" in fields:
            fields["failure_history"] = _dump_errors(fields["failure_history"])
        if "auto_recovery_enabled" in fields:
            fields["auto_recovery_enabled"] = 1 if fields["auto_recovery_enabled"] else 0
        assignments = ", ".join(f"{column} = ?" for column in fields)
        with self._transaction() as conn:
            cursor = conn.execute(
                f"UPDATE dead_letter_entries SET {assignments} WHERE dlq_id = ?",
                (*fields.values(), dlq_id),
            )
            return cursor.rowcount == 1

    def delete_dead_letter(self, dlq_id: str) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM dead_letter_entries WHERE dlq_id = ?",
                (dlq_id,),
            )
            return cursor.rowcount == 1

    def delete_dead_letters_before(self, cutoff: datetime) -> int:
        """Delete entries enqueued before cutoff. Returns rows deleted."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM dead_letter_entries WHERE enqueued_at < ?",
                (format_timestamp(cutoff),),
            )
            return cursor.rowcount

    def get_dead_letter_stats(self) -> dict:
        with self._connection() as conn:
            totals = conn.execute(
                """
                SELECT
                    COUNT(*) AS total,
                    SUM(CASE WHEN auto_recovery_enabled = 1 THEN 1 ELSE 0 END) AS auto_enabled,
                    SUM(CASE WHEN recovery_attempts >= max_retries THEN 1 ELSE 0 END) AS exhausted,
                    MIN(enqueued_at) AS oldest
                FROM dead_letter_entries
                """
            ).fetchone()
            by_type = conn.execute(
                """
                SELECT job_type, COUNT(*) AS n
                FROM dead_letter_entries
                GROUP BY job_type
                """
            ).fetchall()
        return {
            "total": totals["total"] or 0,
            "auto_recovery_enabled": totals["auto_enabled"] or 0,
            "exhausted": totals["exhausted"] or 0,
            "oldest_enqueued_at": totals["oldest"],
            "by_job_type": {row["job_type"]: row["n"] for row in by_type},
        }

    # =========================================================================
    # Execution Metrics
    # =========================================================================

    def insert_execution_metric(self, metric: ExecutionMetric) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO execution_metrics (
                    job_id, job_type, status, outcome, duration_ms, attempts,
                    memory_usage_bytes, queue_depth_at_dispatch,
                    error_category, tenant_id, timestamp
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    metric.job_id,
                    metric.job_type,
                    metric.status,
                    metric.outcome,
                    metric.duration_ms,
                    metric.attempts,
                    metric.memory_usage_bytes,
                    metric.queue_depth_at_dispatch,
                    metric.error_category,
                    metric.tenant_id,
                    metric.timestamp,
                ),
            )

    def list_execution_metrics(self, job_id: str) -> list[ExecutionMetric]:
        """All metrics recorded for one job, oldest first."""
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM execution_metrics
                WHERE job_id = ?
                ORDER BY metric_id ASC
                """,
                (job_id,),
            ).fetchall()
        return [
            ExecutionMetric(
                job_id=row["job_id"],
                job_type=row["job_type"],
                status=row["status"],
                outcome=row["outcome"],
                duration_ms=row["duration_ms"],
                attempts=row["attempts"],
                memory_usage_bytes=row["memory_usage_bytes"],
                queue_depth_at_dispatch=row["queue_depth_at_dispatch"],
                timestamp=row["timestamp"],
                error_category=row["error_category"],
                tenant_id=row["tenant_id"],
            )
            for row in rows
        ]

    def get_metric_stats(
        self,
        job_type: Optional[str] = None,
        tenant_id: Optional[str] = None,
        since: Optional[str] = None,
    ) -> dict:
        clauses = []
        params: list = []
        if job_type is not None:
            clauses.append("job_type = ?")
            params.append(job_type)
        if tenant_id is not None:
            clauses.append("tenant_id = ?")
            params.append(tenant_id)
        if since is not None:
            clauses.append("timestamp >= ?")
            params.append(since)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._connection() as conn:
            totals = conn.execute(
                f"""
                SELECT COUNT(*) AS total, AVG(duration_ms) AS avg_duration,
                       MAX(duration_ms) AS max_duration
                FROM execution_metrics {where}
                """,
                params,
            ).fetchone()
            outcomes = conn.execute(
                f"""
                SELECT outcome, COUNT(*) AS n FROM execution_metrics {where}
                GROUP BY outcome
                """,
                params,
            ).fetchall()
            categories = conn.execute(
                f"""
                SELECT error_category, COUNT(*) AS n FROM execution_metrics
                {where} {'AND' if where else 'WHERE'} error_category IS NOT NULL
                GROUP BY error_category
                """,
                params,
            ).fetchall()
        total = totals["total"] or 0
        by_outcome = {row["outcome"]: row["n"] for row in outcomes}
        return {
            "total": total,
            "by_outcome": by_outcome,
            "by_error_category": {row["error_category"]: row["n"] for row in categories},
            "average_duration_ms": float(totals["avg_duration"] or 0.0),
            "max_duration_ms": totals["max_duration"] or 0,
            "success_rate": (by_outcome.get("completed", 0) / total * 100) if total else 0.0,
        }

    def count_metrics_since(self, since: str, job_type: Optional[str] = None) -> int:
        """Executions recorded at or after since (throughput)."""
        query = "SELECT COUNT(*) FROM execution_metrics WHERE timestamp >= ?"
        params: list = [since]
        if job_type is not None:
            query += " AND job_type = ?"
            params.append(job_type)
        with self._connection() as conn:
            return conn.execute(query, params).fetchone()[0]

    def get_metric_trends(self, since: str, job_type: Optional[str] = None) -> list[dict]:
        """
        Hourly buckets of executions recorded at or after since, oldest first.

        Each bucket: hour (YYYY-MM-DDTHH), throughput, average duration,
        failed share of executions and average memory in bytes.
        """
        params: list = [since]
        type_clause = ""
        if job_type is not None:
            type_clause = "AND job_type = ?"
            params.append(job_type)

        with self._connection() as conn:
            rows = conn.execute(
                f"""
                SELECT strftime('%Y-%m-%dT%H', timestamp) AS hour,
                       COUNT(*) AS throughput,
                       AVG(duration_ms) AS avg_duration,
                       SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END) * 1.0
                           / COUNT(*) AS error_rate,
                       AVG(memory_usage_bytes) AS avg_memory
                FROM execution_metrics
                WHERE timestamp >= ? {type_clause}
                GROUP BY hour
                ORDER BY hour ASC
                """,
                params,
            ).fetchall()
        return [
            {
                "hour": row["hour"],
                "throughput": row["throughput"],
                "average_duration_ms": float(row["avg_duration"] or 0.0),
                "error_rate": float(row["error_rate"] or 0.0),
                "average_memory_bytes": float(row["avg_memory"] or 0.0),
            }
            for row in rows
        ]

    def delete_metrics_before(self, cutoff: str) -> int:
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM execution_metrics WHERE timestamp < ?",
                (cutoff,),
            )
            return cursor.rowcount
