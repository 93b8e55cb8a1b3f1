"""
Job Store - Central persistence for distributed encoding jobs.

The JobStore is the single source of truth for job state. Workers claim
jobs with a compare-and-swap on the job row and hold a time-bounded
lease; abandoned leases are reclaimed by the LeaseReaper.

Usage:
    from jobs.store import get_store

    store = get_store()

    # Worker claims next available job
    claim = store.claim("desktop-alice-1", EncoderType.DESKTOP)
    if claim.claimed:
        store.update_progress(claim.job.job_id, claim.lease_id, "encoding_720p", 50)
        store.mark_complete(claim.job.job_id, claim.lease_id, result)

Architecture:
    - SQLite database (WAL) shared by any number of store instances
    - Claim = candidate SELECT + `UPDATE ... WHERE id = ? AND status = 'queued'`
    - Read-modify-write transitions run under BEGIN IMMEDIATE
    - Every transition writes an audit event in the same transaction
"""

import json
import logging
import sqlite3
import threading
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from core.config import SchedulerConfig, get_scheduler_config
from jobs.errors import InvalidSignature, JobStateError, LeaseConflict, NotFoundError
from jobs.job_types import (
    ACTIVE_STATUSES,
    PROCESSING_STATUSES,
    TERMINAL_STATUSES,
    ClaimResult,
    EncodeResult,
    Encoder,
    EncoderType,
    EncodingMode,
    Job,
    JobEvent,
    JobEventType,
    JobStatus,
    QueueStats,
    UserEncodingSettings,
    parse_dt,
    utcnow,
)
from jobs.progress import calculate_total_progress, clamp, status_for_stage
from jobs.reputation import completion_update, failure_update
from jobs.routing import encoder_can_run_job, get_capability, parse_encoder_type

logger = logging.getLogger("job_store")

Clock = Callable[[], datetime]

_ACTIVE_SQL = ", ".join(f"'{s.value}'" for s in sorted(ACTIVE_STATUSES, key=lambda s: s.value))
_TERMINAL_SQL = ", ".join(f"'{s.value}'" for s in sorted(TERMINAL_STATUSES, key=lambda s: s.value))


def _first(cursor: sqlite3.Cursor) -> Optional[sqlite3.Row]:
    """First row of an UPDATE ... RETURNING; drains it so the write finishes before commit."""
    rows = cursor.fetchall()
    return rows[0] if rows else None


# =============================================================================
# ABSTRACT BASE
# =============================================================================

class JobStore(ABC):
    """
    Abstract base class for job storage.

    Any implementation must provide an atomic conditional update for
    claim; correctness never depends on process-local locks.
    """

    @abstractmethod
    def submit(self, job: Job) -> Job:
        """Insert a new queued job."""
        pass

    @abstractmethod
    def get(self, job_id: str) -> Optional[Job]:
        """Get a job by ID."""
        pass

    @abstractmethod
    def claim(self, encoder_id: str, encoder_type: Union[str, EncoderType]) -> ClaimResult:
        """
        Atomically assign the best eligible queued job to a worker.

        Returns:
            ClaimResult with job=None when no work is available
        """
        pass

    @abstractmethod
    def renew_lease(self, job_id: str, lease_id: str) -> Optional[datetime]:
        """Extend a live lease. Returns the new expiry, or None if not held."""
        pass

    @abstractmethod
    def release(
        self,
        job_id: str,
        reason: str,
        expected_lease_id: Optional[str] = None,
        only_if_expired: bool = False,
    ) -> Optional[Job]:
        """Return an active job to the queue with backoff, or fail it."""
        pass

    @abstractmethod
    def update_progress(self, job_id: str, lease_id: str, stage: str, stage_percent: float) -> Job:
        """Record worker progress for the current lease holder."""
        pass

    @abstractmethod
    def mark_complete(self, job_id: str, lease_id: str, result: EncodeResult) -> Job:
        """Finalize a job as completed."""
        pass

    @abstractmethod
    def mark_failed(self, job_id: str, lease_id: str, error: str) -> Job:
        """Finalize a job as failed without retry."""
        pass

    @abstractmethod
    def cancel(self, job_id: str, requestor: str) -> bool:
        """Cancel a non-terminal job on behalf of its owner."""
        pass

    @abstractmethod
    def expire_stale_leases(self) -> List[Job]:
        """Release every job whose lease has lapsed. Returns the released jobs."""
        pass

    @abstractmethod
    def get_queue_stats(self) -> QueueStats:
        """Job counts per status bucket."""
        pass

    @abstractmethod
    def list_jobs_by_owner(self, owner: str, limit: int = 50) -> List[Job]:
        pass

    @abstractmethod
    def get_next_jobs(self, limit: int = 10) -> List[Job]:
        pass

    @abstractmethod
    def get_events(self, job_id: str, limit: int = 100) -> List[JobEvent]:
        pass

    @abstractmethod
    def set_webhook_delivered(self, job_id: str, delivered: bool = True) -> None:
        pass

    @abstractmethod
    def get_user_settings(self, username: str) -> Optional[UserEncodingSettings]:
        pass

    @abstractmethod
    def set_user_settings(self, settings: UserEncodingSettings) -> UserEncodingSettings:
        pass


# =============================================================================
# SQLITE IMPLEMENTATION
# =============================================================================

SCHEMA = """
CREATE TABLE IF NOT EXISTS encoding_jobs (
    id TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    permlink TEXT NOT NULL,
    input_cid TEXT NOT NULL,
    original_filename TEXT,
    input_size_bytes INTEGER,
    is_short INTEGER NOT NULL DEFAULT 0,
    encoding_mode TEXT NOT NULL DEFAULT 'auto',
    status TEXT NOT NULL DEFAULT 'queued',
    priority INTEGER NOT NULL DEFAULT 0,
    progress INTEGER NOT NULL DEFAULT 0,
    current_stage TEXT,
    stage_progress INTEGER,
    assigned_encoder_id TEXT,
    encoder_type TEXT,
    assigned_at TEXT,
    lease_expires_at TEXT,
    lease_id TEXT,
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 3,
    next_retry_at TEXT,
    last_error TEXT,
    error_message TEXT,
    webhook_url TEXT,
    webhook_secret TEXT NOT NULL,
    webhook_delivered INTEGER NOT NULL DEFAULT 0,
    output_cid TEXT,
    video_url TEXT,
    qualities_encoded TEXT,
    processing_time_sec REAL,
    output_size_bytes INTEGER,
    created_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    updated_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_encoding_jobs_status ON encoding_jobs(status);
CREATE INDEX IF NOT EXISTS idx_encoding_jobs_owner ON encoding_jobs(owner);
CREATE INDEX IF NOT EXISTS idx_encoding_jobs_queue ON encoding_jobs(status, priority, created_at);
CREATE INDEX IF NOT EXISTS idx_encoding_jobs_lease ON encoding_jobs(lease_expires_at);

CREATE TABLE IF NOT EXISTS encoding_job_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    previous_status TEXT,
    new_status TEXT NOT NULL,
    encoder_id TEXT,
    details_json TEXT,
    timestamp TEXT NOT NULL,

    FOREIGN KEY (job_id) REFERENCES encoding_jobs(id)
);

CREATE INDEX IF NOT EXISTS idx_encoding_job_events_job ON encoding_job_events(job_id);

CREATE TABLE IF NOT EXISTS encoders (
    id TEXT PRIMARY KEY,
    encoder_type TEXT NOT NULL,
    jobs_completed INTEGER NOT NULL DEFAULT 0,
    jobs_in_progress INTEGER NOT NULL DEFAULT 0,
    jobs_failed INTEGER NOT NULL DEFAULT 0,
    success_rate REAL NOT NULL DEFAULT 100.0,
    reputation_score INTEGER NOT NULL DEFAULT 500,
    first_seen_at TEXT NOT NULL,
    last_seen_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS user_encoding_settings (
    username TEXT PRIMARY KEY,
    preferred_mode TEXT,
    webhook_url TEXT,
    desktop_agent_enabled INTEGER NOT NULL DEFAULT 0,
    desktop_agent_endpoint TEXT,
    updated_at TEXT NOT NULL
);
"""


class SQLiteJobStore(JobStore):
    """
    SQLite-backed job store.

    Features:
    - Compare-and-swap claim, safe across store instances and processes
    - Lease renewal and expiry with exponential retry backoff
    - Monotonic progress tracking
    - Encoder reputation bookkeeping
    - Per-job audit trail

    Thread-safe via thread-local connections.
    """

    def __init__(
        self,
        db_path: Optional[Path] = None,
        config: Optional[SchedulerConfig] = None,
        clock: Optional[Clock] = None,
    ):
        """
        Initialize SQLite job store.

        Args:
            db_path: Path to SQLite database file.
                    Defaults to config.db_path, then data/encoding_jobs.db
            config: Scheduler tunables (lease duration, backoff, reputation)
            clock: Callable returning the current aware UTC datetime
        """
        self.config = config or get_scheduler_config()
        self._clock = clock or utcnow

        if db_path:
            self.db_path = Path(db_path)
        elif self.config.db_path:
            self.db_path = Path(self.config.db_path).expanduser()
        else:
            from core.paths import get_default_db_path
            self.db_path = get_default_db_path()

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()
        self._init_db()

        logger.info(f"SQLiteJobStore initialized at {self.db_path}")

    # =========================================================================
    # CONNECTION
    # =========================================================================

    def _get_conn(self) -> sqlite3.Connection:
        """Get thread-local connection."""
        if not hasattr(self._local, "conn") or self._local.conn is None:
            self._local.conn = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False,
                timeout=30,
            )
            self._local.conn.row_factory = sqlite3.Row
            # Enable WAL mode for better concurrency
            self._local.conn.execute("PRAGMA journal_mode=WAL")
            self._local.conn.execute("PRAGMA busy_timeout=5000")
        return self._local.conn

    def close(self):
        """Close this thread's connection."""
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None

    def _init_db(self):
        """Initialize database schema."""
        conn = self._get_conn()
        conn.executescript(SCHEMA)
        conn.commit()

    @contextmanager
    def _transaction(self, immediate: bool = False):
        """
        Context manager for transactions.

        immediate=True takes the write lock up front, so reads inside the
        transaction see the state the following write applies to.
        """
        conn = self._get_conn()
        if immediate:
            conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    # =========================================================================
    # CONVERSION
    # =========================================================================

    def _now(self) -> datetime:
        return self._clock().astimezone(timezone.utc)

    @staticmethod
    def _ts(value: Optional[datetime]) -> Optional[str]:
        """Fixed-width ISO timestamp so string comparison orders correctly."""
        if value is None:
            return None
        return value.astimezone(timezone.utc).isoformat(timespec="microseconds")

    def _row_to_job(self, row: sqlite3.Row) -> Job:
        """Convert database row to Job."""
        return Job(
            job_id=row["id"],
            owner=row["owner"],
            permlink=row["permlink"],
            input_cid=row["input_cid"],
            webhook_secret=row["webhook_secret"],
            status=JobStatus(row["status"]),
            encoding_mode=EncodingMode(row["encoding_mode"]),
            is_short=bool(row["is_short"]),
            priority=row["priority"],
            original_filename=row["original_filename"],
            input_size_bytes=row["input_size_bytes"],
            progress=row["progress"],
            current_stage=row["current_stage"],
            stage_progress=row["stage_progress"],
            assigned_encoder_id=row["assigned_encoder_id"],
            encoder_type=EncoderType(row["encoder_type"]) if row["encoder_type"] else None,
            assigned_at=parse_dt(row["assigned_at"]),
            lease_expires_at=parse_dt(row["lease_expires_at"]),
            lease_id=row["lease_id"],
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            next_retry_at=parse_dt(row["next_retry_at"]),
            last_error=row["last_error"],
            error_message=row["error_message"],
            webhook_url=row["webhook_url"],
            webhook_delivered=bool(row["webhook_delivered"]),
            output_cid=row["output_cid"],
            video_url=row["video_url"],
            qualities_encoded=json.loads(row["qualities_encoded"]) if row["qualities_encoded"] else [],
            processing_time_sec=row["processing_time_sec"],
            output_size_bytes=row["output_size_bytes"],
            created_at=parse_dt(row["created_at"]),
            started_at=parse_dt(row["started_at"]),
            completed_at=parse_dt(row["completed_at"]),
            updated_at=parse_dt(row["updated_at"]),
        )

    def _row_to_encoder(self, row: sqlite3.Row) -> Encoder:
        return Encoder(
            encoder_id=row["id"],
            encoder_type=EncoderType(row["encoder_type"]),
            jobs_completed=row["jobs_completed"],
            jobs_in_progress=row["jobs_in_progress"],
            jobs_failed=row["jobs_failed"],
            success_rate=row["success_rate"],
            reputation_score=row["reputation_score"],
            first_seen_at=parse_dt(row["first_seen_at"]),
            last_seen_at=parse_dt(row["last_seen_at"]),
        )

    def _fetch_job(self, conn: sqlite3.Connection, job_id: str) -> Job:
        row = conn.execute("SELECT * FROM encoding_jobs WHERE id = ?", (job_id,)).fetchone()
        if not row:
            raise NotFoundError(job_id)
        return self._row_to_job(row)

    def _require_lease(self, job: Job, lease_id: str, action: str):
        """Raise unless `lease_id` is the live lease on an active job."""
        if not job.status.is_active:
            raise JobStateError(job.job_id, job.status.value, action)
        if job.lease_id != lease_id:
            raise InvalidSignature(job.job_id)

    # =========================================================================
    # EVENTS
    # =========================================================================

    def _insert_event(
        self,
        conn: sqlite3.Connection,
        job_id: str,
        event_type: JobEventType,
        previous_status: Optional[JobStatus],
        new_status: JobStatus,
        encoder_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None,
    ) -> int:
        """Insert an event row on the caller's open transaction."""
        cursor = conn.execute(
            """
            INSERT INTO encoding_job_events
                (job_id, event_type, previous_status, new_status, encoder_id, details_json, timestamp)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                job_id,
                event_type.value,
                previous_status.value if previous_status else None,
                new_status.value,
                encoder_id,
                json.dumps(details) if details else None,
                self._ts(timestamp or self._now()),
            ),
        )
        return cursor.lastrowid

    def get_events(self, job_id: str, limit: int = 100) -> List[JobEvent]:
        """
        Get events for a job.

        Returns:
            List of JobEvent objects, oldest first
        """
        conn = self._get_conn()
        cursor = conn.execute(
            """
            SELECT * FROM encoding_job_events
            WHERE job_id = ?
            ORDER BY id ASC
            LIMIT ?
            """,
            (job_id, limit),
        )

        events = []
        for row in cursor.fetchall():
            try:
                event_type = JobEventType(row["event_type"])
            except ValueError:
                continue

            events.append(JobEvent(
                event_id=row["id"],
                job_id=row["job_id"],
                event_type=event_type,
                previous_status=row["previous_status"],
                new_status=row["new_status"],
                timestamp=datetime.fromisoformat(row["timestamp"]),
                encoder_id=row["encoder_id"],
                details=json.loads(row["details_json"]) if row["details_json"] else None,
            ))
        return events

    # =========================================================================
    # CORE OPERATIONS
    # =========================================================================

    def submit(self, job: Job) -> Job:
        """Insert a new job with status=queued and record a CREATED event."""
        now = self._now()
        job.status = JobStatus.QUEUED
        job.attempts = 0
        job.created_at = now
        job.updated_at = now

        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO encoding_jobs (
                    id, owner, permlink, input_cid, original_filename, input_size_bytes,
                    is_short, encoding_mode, status, priority, attempts, max_attempts,
                    webhook_url, webhook_secret, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job.job_id,
                    job.owner,
                    job.permlink,
                    job.input_cid,
                    job.original_filename,
                    job.input_size_bytes,
                    int(job.is_short),
                    job.encoding_mode.value,
                    job.status.value,
                    job.priority,
                    job.attempts,
                    job.max_attempts,
                    job.webhook_url,
                    job.webhook_secret,
                    self._ts(now),
                    self._ts(now),
                ),
            )
            self._insert_event(
                conn, job.job_id, JobEventType.CREATED, None, JobStatus.QUEUED,
                details={"encoding_mode": job.encoding_mode.value, "is_short": job.is_short},
                timestamp=now,
            )

        logger.info(
            f"Job {job.job_id} queued for {job.owner}/{job.permlink} "
            f"(mode={job.encoding_mode.value}, short={job.is_short}, priority={job.priority})"
        )
        return job

    def get(self, job_id: str) -> Optional[Job]:
        """Get a job by ID."""
        conn = self._get_conn()
        row = conn.execute("SELECT * FROM encoding_jobs WHERE id = ?", (job_id,)).fetchone()
        return self._row_to_job(row) if row else None

    def _find_candidate(self, mode: EncodingMode, short_only: bool, now: datetime) -> Optional[Job]:
        """Best queued job for one mode bucket, read outside any transaction."""
        conditions = [
            "status = 'queued'",
            "(encoding_mode = ? OR encoding_mode = 'auto')",
            "(next_retry_at IS NULL OR next_retry_at <= ?)",
        ]
        if short_only:
            conditions.append("is_short = 1")

        rows = self._get_conn().execute(
            f"""
            SELECT * FROM encoding_jobs
            WHERE {' AND '.join(conditions)}
            ORDER BY priority DESC, created_at ASC, rowid ASC
            LIMIT 1
            """,
            (mode.value, self._ts(now)),
        ).fetchall()
        return self._row_to_job(rows[0]) if rows else None

    def _try_assign(
        self,
        candidate: Job,
        encoder_id: str,
        encoder_type: EncoderType,
        now: datetime,
    ) -> ClaimResult:
        """
        Compare-and-swap a queued candidate to assigned.

        Raises:
            LeaseConflict: another claimer assigned the job first
        """
        lease_id = str(uuid.uuid4())
        lease_expires = now + timedelta(seconds=self.config.lease_duration_sec)

        with self._transaction() as conn:
            row = _first(conn.execute(
                """
                UPDATE encoding_jobs SET
                    status = 'assigned',
                    assigned_encoder_id = ?,
                    encoder_type = ?,
                    assigned_at = ?,
                    lease_expires_at = ?,
                    lease_id = ?,
                    next_retry_at = NULL,
                    progress = 0,
                    current_stage = NULL,
                    stage_progress = NULL,
                    updated_at = ?
                WHERE id = ? AND status = 'queued'
                RETURNING *
                """,
                (
                    encoder_id,
                    encoder_type.value,
                    self._ts(now),
                    self._ts(lease_expires),
                    lease_id,
                    self._ts(now),
                    candidate.job_id,
                ),
            ))

            if row is None:
                raise LeaseConflict(candidate.job_id)

            self._insert_event(
                conn, candidate.job_id, JobEventType.ASSIGNED, JobStatus.QUEUED, JobStatus.ASSIGNED,
                encoder_id=encoder_id,
                details={
                    "encoder_type": encoder_type.value,
                    "attempt": row["attempts"] + 1,
                    "lease_expires_at": self._ts(lease_expires),
                },
                timestamp=now,
            )
            conn.execute(
                """
                INSERT INTO encoders (
                    id, encoder_type, jobs_in_progress, reputation_score, first_seen_at, last_seen_at
                ) VALUES (?, ?, 1, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    encoder_type = excluded.encoder_type,
                    jobs_in_progress = jobs_in_progress + 1,
                    last_seen_at = excluded.last_seen_at
                """,
                (
                    encoder_id,
                    encoder_type.value,
                    self.config.initial_reputation,
                    self._ts(now),
                    self._ts(now),
                ),
            )

        job = self._row_to_job(row)
        logger.info(
            f"Job {job.job_id} assigned to {encoder_id} ({encoder_type.value}), "
            f"lease expires {self._ts(lease_expires)}"
        )
        return ClaimResult(job=job, lease_id=lease_id)

    def claim(self, encoder_id: str, encoder_type: Union[str, EncoderType]) -> ClaimResult:
        """
        Atomically claim the next job this worker may run.

        Walks the encoder type's mode buckets in order. Within a bucket the
        candidate is the highest-priority, oldest queued job whose retry
        time has passed. A lost CAS moves on to the next bucket.
        """
        encoder_type = parse_encoder_type(encoder_type)
        capability = get_capability(encoder_type)
        now = self._now()

        for mode in capability.accepted_modes:
            candidate = self._find_candidate(mode, capability.short_only, now)
            if candidate is None:
                continue

            can_run, reason = encoder_can_run_job(encoder_type, candidate)
            if not can_run:
                logger.warning(f"Candidate {candidate.job_id} rejected for {encoder_type.value}: {reason}")
                continue

            try:
                return self._try_assign(candidate, encoder_id, encoder_type, now)
            except LeaseConflict as e:
                logger.debug(f"{e} ({encoder_id}, bucket={mode.value})")

        return ClaimResult()

    def renew_lease(self, job_id: str, lease_id: str) -> Optional[datetime]:
        """Push lease expiry to now + lease duration while the lease is live."""
        now = self._now()
        lease_expires = now + timedelta(seconds=self.config.lease_duration_sec)

        with self._transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE encoding_jobs SET
                    lease_expires_at = ?,
                    updated_at = ?
                WHERE id = ? AND lease_id = ? AND status IN ({_ACTIVE_SQL})
                """,
                (self._ts(lease_expires), self._ts(now), job_id, lease_id),
            )
            renewed = cursor.rowcount > 0

        if renewed:
            logger.debug(f"Lease on job {job_id} renewed until {self._ts(lease_expires)}")
            return lease_expires
        return None

    def _decrement_in_progress(self, conn: sqlite3.Connection, encoder_id: Optional[str], now: datetime):
        if not encoder_id:
            return
        conn.execute(
            """
            UPDATE encoders SET
                jobs_in_progress = MAX(0, jobs_in_progress - 1),
                last_seen_at = ?
            WHERE id = ?
            """,
            (self._ts(now), encoder_id),
        )

    def backoff_seconds(self, attempts: int) -> int:
        """Retry delay after the given (1-based) attempt count."""
        return self.config.retry_backoff_base_sec * (2 ** (attempts - 1))

    def release(
        self,
        job_id: str,
        reason: str,
        expected_lease_id: Optional[str] = None,
        only_if_expired: bool = False,
    ) -> Optional[Job]:
        """
        Release an active job after a lost lease or retryable failure.

        Increments attempts. Below max_attempts the job is requeued with
        exponential backoff; otherwise it becomes failed.

        Args:
            job_id: Job ID
            reason: Stored as last_error (and error_message when failing)
            expected_lease_id: Only release if this is still the live lease
            only_if_expired: Only release if the lease has actually lapsed

        Returns:
            The updated job, or None if the guard no longer holds
        """
        now = self._now()

        with self._transaction(immediate=True) as conn:
            job = self._fetch_job(conn, job_id)

            if not job.status.is_active:
                return None
            if expected_lease_id is not None and job.lease_id != expected_lease_id:
                return None
            if only_if_expired and (job.lease_expires_at is None or job.lease_expires_at >= now):
                return None

            attempts = job.attempts + 1

            if attempts < job.max_attempts:
                delay = self.backoff_seconds(attempts)
                next_retry = now + timedelta(seconds=delay)
                row = _first(conn.execute(
                    f"""
                    UPDATE encoding_jobs SET
                        status = 'queued',
                        attempts = ?,
                        next_retry_at = ?,
                        last_error = ?,
                        assigned_encoder_id = NULL,
                        encoder_type = NULL,
                        assigned_at = NULL,
                        lease_expires_at = NULL,
                        lease_id = NULL,
                        progress = 0,
                        current_stage = NULL,
                        stage_progress = NULL,
                        updated_at = ?
                    WHERE id = ? AND attempts = ? AND status IN ({_ACTIVE_SQL})
                    RETURNING *
                    """,
                    (attempts, self._ts(next_retry), reason, self._ts(now), job_id, job.attempts),
                ))
                if row is None:
                    return None

                self._insert_event(
                    conn, job_id, JobEventType.RETRIED, job.status, JobStatus.QUEUED,
                    encoder_id=job.assigned_encoder_id,
                    details={
                        "reason": reason,
                        "attempt": attempts,
                        "backoff_sec": delay,
                        "next_retry_at": self._ts(next_retry),
                    },
                    timestamp=now,
                )
                logger.info(
                    f"Job {job_id} released ({reason}), attempt {attempts}/{job.max_attempts}, "
                    f"retry in {delay}s"
                )
            else:
                row = _first(conn.execute(
                    f"""
                    UPDATE encoding_jobs SET
                        status = 'failed',
                        attempts = ?,
                        last_error = ?,
                        error_message = ?,
                        lease_expires_at = NULL,
                        completed_at = ?,
                        updated_at = ?
                    WHERE id = ? AND attempts = ? AND status IN ({_ACTIVE_SQL})
                    RETURNING *
                    """,
                    (attempts, reason, reason, self._ts(now), self._ts(now), job_id, job.attempts),
                ))
                if row is None:
                    return None

                self._insert_event(
                    conn, job_id, JobEventType.FAILED, job.status, JobStatus.FAILED,
                    encoder_id=job.assigned_encoder_id,
                    details={"reason": reason, "attempt": attempts, "max_attempts_reached": True},
                    timestamp=now,
                )
                logger.info(f"Job {job_id} failed after {attempts} attempts: {reason}")

            self._decrement_in_progress(conn, job.assigned_encoder_id, now)

        return self._row_to_job(row)

    def update_progress(self, job_id: str, lease_id: str, stage: str, stage_percent: float) -> Job:
        """
        Record progress reported by the lease holder.

        Overall progress never decreases within a run. A known stage moves
        the job into the matching processing status and stamps started_at
        once.

        Raises:
            NotFoundError, JobStateError, InvalidSignature
        """
        now = self._now()
        total = calculate_total_progress(stage, stage_percent)
        stage_status = status_for_stage(stage)

        with self._transaction(immediate=True) as conn:
            job = self._fetch_job(conn, job_id)
            self._require_lease(job, lease_id, "report progress on")

            new_status = stage_status or job.status
            row = _first(conn.execute(
                f"""
                UPDATE encoding_jobs SET
                    status = ?,
                    progress = MAX(progress, ?),
                    current_stage = ?,
                    stage_progress = ?,
                    started_at = COALESCE(started_at, ?),
                    updated_at = ?
                WHERE id = ? AND lease_id = ? AND status IN ({_ACTIVE_SQL})
                RETURNING *
                """,
                (
                    new_status.value,
                    total,
                    stage,
                    int(clamp(stage_percent)),
                    self._ts(now) if stage_status else None,
                    self._ts(now),
                    job_id,
                    lease_id,
                ),
            ))

            if new_status != job.status:
                self._insert_event(
                    conn, job_id, JobEventType.STATUS_CHANGED, job.status, new_status,
                    encoder_id=job.assigned_encoder_id,
                    details={"stage": stage, "progress": row["progress"]},
                    timestamp=now,
                )

        updated = self._row_to_job(row)
        logger.debug(f"Job {job_id} progress {updated.progress}% ({stage} {stage_percent}%)")
        return updated

    def mark_complete(self, job_id: str, lease_id: str, result: EncodeResult) -> Job:
        """
        Finalize a job as completed and credit the encoder.

        Raises:
            NotFoundError, JobStateError, InvalidSignature
        """
        now = self._now()

        with self._transaction(immediate=True) as conn:
            job = self._fetch_job(conn, job_id)
            self._require_lease(job, lease_id, "complete")

            row = _first(conn.execute(
                f"""
                UPDATE encoding_jobs SET
                    status = 'completed',
                    progress = 100,
                    output_cid = ?,
                    video_url = ?,
                    qualities_encoded = ?,
                    processing_time_sec = ?,
                    output_size_bytes = ?,
                    current_stage = NULL,
                    stage_progress = NULL,
                    lease_expires_at = NULL,
                    completed_at = ?,
                    updated_at = ?
                WHERE id = ? AND lease_id = ? AND status IN ({_ACTIVE_SQL})
                RETURNING *
                """,
                (
                    result.output_cid,
                    result.video_url,
                    json.dumps(result.qualities_encoded),
                    result.processing_time_sec,
                    result.output_size_bytes,
                    self._ts(now),
                    self._ts(now),
                    job_id,
                    lease_id,
                ),
            ))

            self._insert_event(
                conn, job_id, JobEventType.COMPLETED, job.status, JobStatus.COMPLETED,
                encoder_id=job.assigned_encoder_id,
                details={
                    "output_cid": result.output_cid,
                    "qualities_encoded": result.qualities_encoded,
                    "processing_time_sec": result.processing_time_sec,
                },
                timestamp=now,
            )
            self._credit_encoder(conn, job.assigned_encoder_id, now)

        logger.info(f"Job {job_id} completed by {job.assigned_encoder_id} -> {result.video_url}")
        return self._row_to_job(row)

    def _credit_encoder(self, conn: sqlite3.Connection, encoder_id: Optional[str], now: datetime):
        row = conn.execute("SELECT * FROM encoders WHERE id = ?", (encoder_id,)).fetchone()
        if row is None:
            logger.warning(f"No encoder record for {encoder_id}, skipping reputation update")
            return

        success_rate, reputation = completion_update(
            row["success_rate"],
            row["reputation_score"],
            row["jobs_completed"],
            max_boost=self.config.max_reputation_boost,
            max_reputation=self.config.max_reputation,
        )
        conn.execute(
            """
            UPDATE encoders SET
                jobs_completed = jobs_completed + 1,
                jobs_in_progress = MAX(0, jobs_in_progress - 1),
                success_rate = ?,
                reputation_score = ?,
                last_seen_at = ?
            WHERE id = ?
            """,
            (success_rate, reputation, self._ts(now), encoder_id),
        )

    def _penalize_encoder(self, conn: sqlite3.Connection, encoder_id: Optional[str], now: datetime):
        row = conn.execute("SELECT * FROM encoders WHERE id = ?", (encoder_id,)).fetchone()
        if row is None:
            logger.warning(f"No encoder record for {encoder_id}, skipping reputation update")
            return

        success_rate, reputation = failure_update(
            row["success_rate"],
            row["reputation_score"],
            row["jobs_completed"],
            penalty=self.config.failure_penalty,
        )
        conn.execute(
            """
            UPDATE encoders SET
                jobs_failed = jobs_failed + 1,
                jobs_in_progress = MAX(0, jobs_in_progress - 1),
                success_rate = ?,
                reputation_score = ?,
                last_seen_at = ?
            WHERE id = ?
            """,
            (success_rate, reputation, self._ts(now), encoder_id),
        )

    def mark_failed(self, job_id: str, lease_id: str, error: str) -> Job:
        """
        Finalize a job as failed without retry and penalize the encoder.

        Raises:
            NotFoundError, JobStateError, InvalidSignature
        """
        now = self._now()

        with self._transaction(immediate=True) as conn:
            job = self._fetch_job(conn, job_id)
            self._require_lease(job, lease_id, "fail")

            row = _first(conn.execute(
                f"""
                UPDATE encoding_jobs SET
                    status = 'failed',
                    last_error = ?,
                    error_message = ?,
                    lease_expires_at = NULL,
                    completed_at = ?,
                    updated_at = ?
                WHERE id = ? AND lease_id = ? AND status IN ({_ACTIVE_SQL})
                RETURNING *
                """,
                (error, error, self._ts(now), self._ts(now), job_id, lease_id),
            ))

            self._insert_event(
                conn, job_id, JobEventType.FAILED, job.status, JobStatus.FAILED,
                encoder_id=job.assigned_encoder_id,
                details={"error": error, "retryable": False},
                timestamp=now,
            )
            self._penalize_encoder(conn, job.assigned_encoder_id, now)

        logger.info(f"Job {job_id} failed on {job.assigned_encoder_id}: {error}")
        return self._row_to_job(row)

    def cancel(self, job_id: str, requestor: str) -> bool:
        """
        Cancel a job on behalf of its owner.

        Returns:
            True if cancelled, False if requestor is not the owner or the
            job is already terminal

        Raises:
            NotFoundError: unknown job id
        """
        now = self._now()

        with self._transaction(immediate=True) as conn:
            job = self._fetch_job(conn, job_id)

            if job.owner != requestor:
                logger.warning(f"Cancel of job {job_id} by non-owner {requestor} rejected")
                return False
            if job.is_terminal:
                return False

            # lease_id is kept so a late report from the holder is refused as terminal
            cursor = conn.execute(
                f"""
                UPDATE encoding_jobs SET
                    status = 'cancelled',
                    error_message = ?,
                    lease_expires_at = NULL,
                    completed_at = ?,
                    updated_at = ?
                WHERE id = ? AND status NOT IN ({_TERMINAL_SQL})
                """,
                (f"Cancelled by owner: {requestor}", self._ts(now), self._ts(now), job_id),
            )
            if cursor.rowcount == 0:
                return False

            self._insert_event(
                conn, job_id, JobEventType.CANCELLED, job.status, JobStatus.CANCELLED,
                encoder_id=job.assigned_encoder_id,
                details={"requestor": requestor},
                timestamp=now,
            )
            if job.status.is_active:
                self._decrement_in_progress(conn, job.assigned_encoder_id, now)

        logger.info(f"Job {job_id} cancelled by {requestor}")
        return True

    def set_webhook_delivered(self, job_id: str, delivered: bool = True) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE encoding_jobs SET webhook_delivered = ? WHERE id = ?",
                (int(delivered), job_id),
            )

    # =========================================================================
    # MAINTENANCE
    # =========================================================================

    def expire_stale_leases(self) -> List[Job]:
        """
        Release every active job whose lease has lapsed.

        Each release re-checks "still active and still expired" under the
        write lock, so a job finalized or renewed in between is untouched.

        Returns:
            Released jobs (requeued or failed)
        """
        now = self._now()
        rows = self._get_conn().execute(
            f"""
            SELECT id FROM encoding_jobs
            WHERE status IN ({_ACTIVE_SQL})
            AND lease_expires_at < ?
            """,
            (self._ts(now),),
        ).fetchall()

        released = []
        for row in rows:
            job = self.release(row["id"], "Lease expired", only_if_expired=True)
            if job is not None:
                released.append(job)

        if released:
            logger.info(f"Expired {len(released)} stale job leases")
        return released

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_queue_stats(self) -> QueueStats:
        conn = self._get_conn()
        rows = conn.execute(
            "SELECT status, COUNT(*) AS count FROM encoding_jobs GROUP BY status"
        ).fetchall()
        counts = {row["status"]: row["count"] for row in rows}

        return QueueStats(
            queued=counts.get(JobStatus.QUEUED.value, 0),
            assigned=counts.get(JobStatus.ASSIGNED.value, 0),
            processing=sum(counts.get(s.value, 0) for s in PROCESSING_STATUSES),
            completed=counts.get(JobStatus.COMPLETED.value, 0),
            failed=counts.get(JobStatus.FAILED.value, 0),
            cancelled=counts.get(JobStatus.CANCELLED.value, 0),
        )

    def list_jobs_by_owner(self, owner: str, limit: int = 50) -> List[Job]:
        """Owner's jobs, newest first."""
        conn = self._get_conn()
        rows = conn.execute(
            """
            SELECT * FROM encoding_jobs
            WHERE owner = ?
            ORDER BY created_at DESC, rowid DESC
            LIMIT ?
            """,
            (owner, limit),
        ).fetchall()
        return [self._row_to_job(row) for row in rows]

    def get_next_jobs(self, limit: int = 10) -> List[Job]:
        """Queued jobs in claim order."""
        conn = self._get_conn()
        rows = conn.execute(
            """
            SELECT * FROM encoding_jobs
            WHERE status = 'queued'
            ORDER BY priority DESC, created_at ASC, rowid ASC
            LIMIT ?
            """,
            (limit,),
        ).fetchall()
        return [self._row_to_job(row) for row in rows]

    def list_jobs(self, status: Optional[JobStatus] = None, limit: int = 100) -> List[Job]:
        """List jobs, newest first, optionally filtered by status."""
        conn = self._get_conn()
        if status:
            rows = conn.execute(
                "SELECT * FROM encoding_jobs WHERE status = ? ORDER BY created_at DESC LIMIT ?",
                (status.value, limit),
            ).fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM encoding_jobs ORDER BY created_at DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [self._row_to_job(row) for row in rows]

    def get_encoder(self, encoder_id: str) -> Optional[Encoder]:
        conn = self._get_conn()
        row = conn.execute("SELECT * FROM encoders WHERE id = ?", (encoder_id,)).fetchone()
        return self._row_to_encoder(row) if row else None

    # =========================================================================
    # USER SETTINGS
    # =========================================================================

    def get_user_settings(self, username: str) -> Optional[UserEncodingSettings]:
        conn = self._get_conn()
        row = conn.execute(
            "SELECT * FROM user_encoding_settings WHERE username = ?", (username,)
        ).fetchone()
        if not row:
            return None
        return UserEncodingSettings(
            username=row["username"],
            preferred_mode=EncodingMode(row["preferred_mode"]) if row["preferred_mode"] else None,
            webhook_url=row["webhook_url"],
            desktop_agent_enabled=bool(row["desktop_agent_enabled"]),
            desktop_agent_endpoint=row["desktop_agent_endpoint"],
        )

    def set_user_settings(self, settings: UserEncodingSettings) -> UserEncodingSettings:
        """Insert or replace a user's encoding preferences."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO user_encoding_settings (
                    username, preferred_mode, webhook_url,
                    desktop_agent_enabled, desktop_agent_endpoint, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(username) DO UPDATE SET
                    preferred_mode = excluded.preferred_mode,
                    webhook_url = excluded.webhook_url,
                    desktop_agent_enabled = excluded.desktop_agent_enabled,
                    desktop_agent_endpoint = excluded.desktop_agent_endpoint,
                    updated_at = excluded.updated_at
                """,
                (
                    settings.username,
                    settings.preferred_mode.value if settings.preferred_mode else None,
                    settings.webhook_url,
                    int(settings.desktop_agent_enabled),
                    settings.desktop_agent_endpoint,
                    self._ts(self._now()),
                ),
            )
        logger.info(f"Saved encoding settings for {settings.username}")
        return settings


# =============================================================================
# SINGLETON
# =============================================================================

_store: Optional[SQLiteJobStore] = None
_store_lock = threading.Lock()


def get_store(db_path: Optional[Path] = None) -> SQLiteJobStore:
    """Get or create the job store singleton."""
    global _store
    if _store is None:
        with _store_lock:
            if _store is None:
                _store = SQLiteJobStore(db_path)
    return _store


def reset_store():
    """Reset the store singleton (for testing)."""
    global _store
    _store = None


# =============================================================================
# CLI
# =============================================================================

if __name__ == "__main__":
    import argparse

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
    )

    parser = argparse.ArgumentParser(description="Encoding job store CLI")
    parser.add_argument(
        "command",
        choices=["stats", "list", "next", "reap", "events"],
        help="Command to run",
    )
    parser.add_argument("job_id", nargs="?", help="Job ID (for events)")
    parser.add_argument("--db", help="Database path")
    parser.add_argument("--owner", help="Filter by owner")
    parser.add_argument("--status", help="Filter by status")
    parser.add_argument("--limit", type=int, default=20, help="Limit results")
    parser.add_argument("--json", action="store_true", help="JSON output")

    args = parser.parse_args()

    store = get_store(Path(args.db) if args.db else None)

    if args.command == "stats":
        stats = store.get_queue_stats()
        if args.json:
            print(json.dumps(stats.to_dict(), indent=2))
        else:
            print("\nEncoding Queue")
            print("=" * 40)
            for key, value in stats.to_dict().items():
                print(f"  {key}: {value}")

    elif args.command in ("list", "next"):
        if args.command == "next":
            jobs = store.get_next_jobs(limit=args.limit)
        elif args.owner:
            jobs = store.list_jobs_by_owner(args.owner, limit=args.limit)
        else:
            status = JobStatus(args.status) if args.status else None
            jobs = store.list_jobs(status=status, limit=args.limit)

        if args.json:
            print(json.dumps([j.to_dict() for j in jobs], indent=2))
        else:
            print(f"\nJobs ({len(jobs)} shown):")
            print("-" * 70)
            for job in jobs:
                print(
                    f"  {job.job_id}: {job.owner}/{job.permlink} "
                    f"[{job.status.value} {job.progress}%] → {job.assigned_encoder_id or 'unassigned'}"
                )

    elif args.command == "reap":
        released = store.expire_stale_leases()
        print(f"Released {len(released)} stale leases")

    elif args.command == "events":
        if not args.job_id:
            parser.error("events requires a job_id")
        events = store.get_events(args.job_id, limit=args.limit)
        if args.json:
            print(json.dumps([e.to_dict() for e in events], indent=2))
        else:
            for event in events:
                print(
                    f"  {event.timestamp.isoformat()} {event.event_type.value}: "
                    f"{event.previous_status} -> {event.new_status} {event.details or ''}"
                )
