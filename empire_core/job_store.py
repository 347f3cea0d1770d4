"""Durable job queue with atomic claiming and lock-timeout recovery."""
from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from .config import Settings, get_settings
from .errors import JobStateError, LockTimeoutRecovered
from .models import Job, JobStatus
from .storage import ensure_schema, ensure_utc, from_iso, reading, to_iso, transaction
from .telemetry import get_telemetry

logger = logging.getLogger(__name__)

_DB_SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    kind TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    payload TEXT NOT NULL,
    run_at TEXT NOT NULL,
    priority INTEGER NOT NULL DEFAULT 50,
    timeout_seconds INTEGER NOT NULL DEFAULT 300,
    retries INTEGER NOT NULL DEFAULT 0,
    max_retries INTEGER NOT NULL DEFAULT 3,
    last_error TEXT,
    locked_by TEXT,
    locked_at TEXT,
    result TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    CHECK ((status = 'in_progress') = (locked_by IS NOT NULL AND locked_at IS NOT NULL))
);
CREATE INDEX IF NOT EXISTS idx_jobs_pending_run_at
    ON jobs (run_at) WHERE status = 'pending';
CREATE INDEX IF NOT EXISTS idx_jobs_locked_by
    ON jobs (locked_by) WHERE locked_by IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_jobs_kind_status
    ON jobs (kind, status);
"""

_JOB_COLUMNS = (
    "id, kind, status, payload, run_at, priority, timeout_seconds, retries, max_retries, "
    "last_error, locked_by, locked_at, result, created_at, updated_at"
)

InsertListener = Callable[[int, str], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def kind_name(kind: object) -> str:
    """Plain string for a job kind given as text or as a :class:`JobKind`."""

    return str(getattr(kind, "value", kind))


def _row_to_job(row: Sequence) -> Job:
    return Job(
        id=int(row[0]),
        kind=row[1],
        status=JobStatus(row[2]),
        payload=json.loads(row[3]) if row[3] else {},
        run_at=from_iso(row[4]),
        priority=int(row[5]),
        timeout_seconds=int(row[6]),
        retries=int(row[7]),
        max_retries=int(row[8]),
        last_error=row[9],
        locked_by=row[10],
        locked_at=from_iso(row[11]),
        result=json.loads(row[12]) if row[12] else None,
        created_at=from_iso(row[13]),
        updated_at=from_iso(row[14]),
    )


class JobStore:
    """SQLite-backed job records.

    Every state transition is a single ``BEGIN IMMEDIATE`` transaction whose
    ``UPDATE`` is guarded by the expected current status, so any number of
    threads or processes sharing the database file can call these methods
    concurrently without double-claiming a job.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        settings: Optional[Settings] = None,
        busy_timeout: float = 5.0,
    ) -> None:
        self._db_path = db_path
        self._settings = settings or get_settings()
        self._timeout = busy_timeout
        self._listeners: List[InsertListener] = []
        ensure_schema(self._db_path, _DB_SCHEMA)

    @property
    def db_path(self) -> Path:
        return self._db_path

    def add_listener(self, listener: InsertListener) -> None:
        """Call ``listener(job_id, kind)`` after every committed insert."""

        self._listeners.append(listener)

    def backoff_delay(self, retries: int) -> timedelta:
        """Delay before retry number ``retries`` (1-based), doubling up to the cap."""

        base = self._settings.backoff_base_seconds
        seconds = min(base * (2 ** max(0, retries - 1)), self._settings.backoff_max_seconds)
        return timedelta(seconds=seconds)

    # Creation ---------------------------------------------------------
    def _normalise(self, job: Job) -> Job:
        if JobStatus(job.status) is not JobStatus.PENDING:
            raise ValueError("Only pending jobs can be inserted")
        if job.timeout_seconds <= 0:
            raise ValueError("Job timeout must be positive")
        if job.max_retries < 0:
            raise ValueError("max_retries must not be negative")
        job.kind = kind_name(job.kind)
        job.run_at = ensure_utc(job.run_at)
        return job

    def _insert_row(self, conn, job: Job, now: datetime) -> int:
        cursor = conn.execute(
            """INSERT INTO jobs
                   (kind, status, payload, run_at, priority, timeout_seconds, retries, max_retries,
                    created_at, updated_at)
                   VALUES (?, 'pending', ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                job.kind,
                json.dumps(job.payload or {}),
                to_iso(job.run_at),
                int(job.priority),
                int(job.timeout_seconds),
                int(job.retries),
                int(job.max_retries),
                to_iso(now),
                to_iso(now),
            ),
        )
        job.id = int(cursor.lastrowid)
        job.created_at = now
        job.updated_at = now
        return job.id

    def insert(self, job: Job, *, now: Optional[datetime] = None) -> int:
        now = ensure_utc(now or _utcnow())
        self._normalise(job)
        with transaction(self._db_path, self._timeout) as conn:
            job_id = self._insert_row(conn, job, now)
        logger.debug("Enqueued job #%s (%s) for %s", job_id, job.kind, job.run_at.isoformat())
        self._after_insert([job], now)
        return job_id

    def enqueue(
        self,
        kind: str,
        payload: Mapping[str, Any],
        run_at: datetime,
        priority: Optional[int] = None,
        max_retries: Optional[int] = None,
        timeout: Optional[int] = None,
        *,
        now: Optional[datetime] = None,
    ) -> int:
        return self.insert(self.build_job(kind, payload, run_at, priority, max_retries, timeout), now=now)

    def build_job(
        self,
        kind: str,
        payload: Mapping[str, Any],
        run_at: datetime,
        priority: Optional[int] = None,
        max_retries: Optional[int] = None,
        timeout: Optional[int] = None,
    ) -> Job:
        """Fill unset scheduling fields from the configured defaults."""

        settings = self._settings
        return Job(
            kind=kind_name(kind),
            payload=dict(payload),
            run_at=run_at,
            priority=int(settings.default_priority if priority is None else priority),
            max_retries=int(settings.default_max_retries if max_retries is None else max_retries),
            timeout_seconds=int(settings.default_timeout_seconds if timeout is None else timeout),
        )

    def enqueue_batch(self, jobs: Iterable[Job], *, now: Optional[datetime] = None) -> List[int]:
        """Insert several jobs in one transaction; all or none are stored."""

        now = ensure_utc(now or _utcnow())
        batch = [self._normalise(job) for job in jobs]
        with transaction(self._db_path, self._timeout) as conn:
            ids = [self._insert_row(conn, job, now) for job in batch]
        if batch:
            logger.debug("Enqueued %d jobs in batch", len(batch))
            self._after_insert(batch, now)
        return ids

    def _after_insert(self, jobs: Sequence[Job], now: datetime) -> None:
        self.record_snapshot(now, event="enqueue")
        for job in jobs:
            for listener in list(self._listeners):
                try:
                    listener(job.id, job.kind)
                except Exception:  # pragma: no cover - wake-ups are best effort; polling covers misses
                    logger.exception("Insert listener failed for job #%s", job.id)

    # Transitions ------------------------------------------------------
    def claim_next(
        self,
        worker_id: str,
        now: datetime,
        kinds: Optional[Iterable[str]] = None,
    ) -> Optional[Job]:
        """Atomically move the best eligible pending job to ``in_progress``.

        Eligible jobs have ``run_at <= now``; the highest priority wins, then
        the earliest ``run_at``. ``kinds`` restricts the claim to the given
        job kinds.
        """

        now = ensure_utc(now)
        query = f"SELECT {_JOB_COLUMNS} FROM jobs WHERE status = 'pending' AND run_at <= ?"
        params: List[object] = [to_iso(now)]
        if kinds is not None:
            kind_list = sorted({kind_name(kind) for kind in kinds})
            if not kind_list:
                return None
            query += f" AND kind IN ({', '.join('?' for _ in kind_list)})"
            params.extend(kind_list)
        query += " ORDER BY priority DESC, run_at ASC, id ASC LIMIT 1"

        with transaction(self._db_path, self._timeout) as conn:
            row = conn.execute(query, params).fetchone()
            if not row:
                return None
            job = _row_to_job(row)
            cursor = conn.execute(
                """UPDATE jobs
                       SET status = 'in_progress', locked_by = ?, locked_at = ?, updated_at = ?
                       WHERE id = ? AND status = 'pending'""",
                (worker_id, to_iso(now), to_iso(now), job.id),
            )
            if cursor.rowcount != 1:
                return None
        job.status = JobStatus.IN_PROGRESS
        job.locked_by = worker_id
        job.locked_at = now
        job.updated_at = now
        logger.debug("Job #%s (%s) claimed by %s", job.id, job.kind, worker_id)
        return job

    def complete(
        self,
        job_id: int,
        *,
        worker_id: Optional[str] = None,
        result: Optional[Mapping[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """Mark an in-progress job completed.

        Returns ``False`` when the job is no longer held (by ``worker_id``,
        when given), e.g. because it was reaped and claimed again.
        """

        now = ensure_utc(now or _utcnow())
        query = """UPDATE jobs
                       SET status = 'completed', locked_by = NULL, locked_at = NULL,
                           result = ?, updated_at = ?
                       WHERE id = ? AND status = 'in_progress'"""
        params: List[object] = [
            json.dumps(dict(result)) if result is not None else None,
            to_iso(now),
            job_id,
        ]
        if worker_id is not None:
            query += " AND locked_by = ?"
            params.append(worker_id)
        with transaction(self._db_path, self._timeout) as conn:
            updated = conn.execute(query, params).rowcount == 1
            if not updated:
                self._require_job(conn, job_id)
        if not updated:
            logger.warning("Job #%s no longer held by %s; completion ignored", job_id, worker_id)
        return updated

    def fail(
        self,
        job_id: int,
        error: str,
        *,
        worker_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[Job]:
        """Record a failed attempt.

        The retry counter is incremented first. While it stays below
        ``max_retries`` the job returns to ``pending`` with an exponential
        backoff ``run_at``; otherwise it becomes terminally ``failed``.
        Returns the updated job, or ``None`` if the claim had been lost.
        """

        now = ensure_utc(now or _utcnow())
        with transaction(self._db_path, self._timeout) as conn:
            job = self._require_job(conn, job_id)
            if job.status is not JobStatus.IN_PROGRESS or (
                worker_id is not None and job.locked_by != worker_id
            ):
                logger.warning(
                    "Job #%s no longer held by %s; failure ignored (%s)", job_id, worker_id, error
                )
                return None
            job.retries += 1
            job.last_error = error
            if job.retries < job.max_retries:
                job.status = JobStatus.PENDING
                job.run_at = now + self.backoff_delay(job.retries)
            else:
                job.status = JobStatus.FAILED
            conn.execute(
                """UPDATE jobs
                       SET status = ?, retries = ?, last_error = ?, run_at = ?,
                           locked_by = NULL, locked_at = NULL, updated_at = ?
                       WHERE id = ? AND status = 'in_progress'""",
                (
                    job.status.value,
                    job.retries,
                    error,
                    to_iso(job.run_at),
                    to_iso(now),
                    job_id,
                ),
            )
        job.locked_by = None
        job.locked_at = None
        job.updated_at = now
        if job.status is JobStatus.FAILED:
            logger.error(
                "Job #%s (%s) failed permanently after %d attempts: %s",
                job_id,
                job.kind,
                job.retries,
                error,
            )
        else:
            logger.warning(
                "Job #%s (%s) failed (attempt %d/%d), retrying at %s: %s",
                job_id,
                job.kind,
                job.retries,
                job.max_retries,
                job.run_at.isoformat(),
                error,
            )
        return job

    def cancel(self, job_id: int, *, now: Optional[datetime] = None) -> bool:
        """Cancel a pending job. In-progress jobs cannot be cancelled."""

        now = ensure_utc(now or _utcnow())
        with transaction(self._db_path, self._timeout) as conn:
            cursor = conn.execute(
                """UPDATE jobs SET status = 'cancelled', updated_at = ?
                       WHERE id = ? AND status = 'pending'""",
                (to_iso(now), job_id),
            )
            cancelled = cursor.rowcount == 1
            if not cancelled:
                self._require_job(conn, job_id)
        if cancelled:
            logger.info("Cancelled job #%s", job_id)
        return cancelled

    def reap_expired_locks(self, now: datetime) -> List[LockTimeoutRecovered]:
        """Return jobs whose lock outlived its timeout to ``pending``.

        A lock taken at ``T`` with timeout ``t`` is reclaimable only when
        ``T + t < now``. Reaping does not count as a failed attempt.
        """

        now = ensure_utc(now)
        recovered: List[LockTimeoutRecovered] = []
        with transaction(self._db_path, self._timeout) as conn:
            rows = conn.execute(
                f"SELECT {_JOB_COLUMNS} FROM jobs WHERE status = 'in_progress'"
            ).fetchall()
            for job in (_row_to_job(row) for row in rows):
                if job.lock_expires_at() >= now:
                    continue
                note = f"Lock held by {job.locked_by} expired after {job.timeout_seconds}s"
                cursor = conn.execute(
                    """UPDATE jobs
                           SET status = 'pending', locked_by = NULL, locked_at = NULL,
                               last_error = ?, updated_at = ?
                           WHERE id = ? AND status = 'in_progress' AND locked_by = ?""",
                    (
                        f"{job.last_error}; {note}" if job.last_error else note,
                        to_iso(now),
                        job.id,
                        job.locked_by,
                    ),
                )
                if cursor.rowcount == 1:
                    recovered.append(
                        LockTimeoutRecovered(
                            job_id=job.id,
                            kind=job.kind,
                            locked_by=job.locked_by,
                            locked_at=job.locked_at,
                            timeout_seconds=job.timeout_seconds,
                            reaped_at=now,
                        )
                    )
        for record in recovered:
            logger.warning(record.describe())
        return recovered

    # Queries ----------------------------------------------------------
    @staticmethod
    def _require_job(conn, job_id: int) -> Job:
        row = conn.execute(f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = ?", (job_id,)).fetchone()
        if not row:
            raise JobStateError(f"Job #{job_id} does not exist")
        return _row_to_job(row)

    def get(self, job_id: int) -> Optional[Job]:
        with reading(self._db_path, self._timeout) as conn:
            row = conn.execute(
                f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = ?", (job_id,)
            ).fetchone()
        return _row_to_job(row) if row else None

    def list_jobs(
        self,
        kind: Optional[str] = None,
        status: Optional[JobStatus] = None,
        *,
        limit: Optional[int] = None,
    ) -> List[Job]:
        query = f"SELECT {_JOB_COLUMNS} FROM jobs"
        conditions: List[str] = []
        params: List[object] = []
        if kind:
            conditions.append("kind = ?")
            params.append(kind_name(kind))
        if status:
            conditions.append("status = ?")
            params.append(JobStatus(status).value)
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY id"
        if limit is not None:
            query += " LIMIT ?"
            params.append(int(limit))
        with reading(self._db_path, self._timeout) as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_job(row) for row in rows]

    def pending_stats(self, now: datetime) -> Dict[str, Any]:
        """Backlog summary: pending, due, and in-progress counts plus the oldest due age."""

        now = ensure_utc(now)
        with reading(self._db_path, self._timeout) as conn:
            row = conn.execute(
                """SELECT
                       SUM(CASE WHEN status = 'pending' THEN 1 ELSE 0 END),
                       SUM(CASE WHEN status = 'pending' AND run_at <= ? THEN 1 ELSE 0 END),
                       SUM(CASE WHEN status = 'in_progress' THEN 1 ELSE 0 END),
                       MIN(CASE WHEN status = 'pending' AND run_at <= ? THEN run_at END)
                   FROM jobs""",
                (to_iso(now), to_iso(now)),
            ).fetchone()
        oldest = from_iso(row[3]) if row and row[3] else None
        return {
            "pending": int(row[0] or 0) if row else 0,
            "due": int(row[1] or 0) if row else 0,
            "in_progress": int(row[2] or 0) if row else 0,
            "oldest_due_seconds": max(0.0, (now - oldest).total_seconds()) if oldest else None,
        }

    def record_snapshot(self, now: datetime, *, event: str = "poll") -> Dict[str, Optional[str]]:
        """Emit a telemetry snapshot of the backlog and log any alerts."""

        try:
            stats = self.pending_stats(now)
            alerts = get_telemetry().track_queue_snapshot(
                event=event,
                pending_count=stats["pending"],
                oldest_pending_seconds=stats["oldest_due_seconds"],
                max_pending=self._settings.alert_max_pending_jobs,
                max_age_hours=self._settings.alert_max_pending_age_hours,
            )
        except Exception:  # best effort
            logger.warning("Queue snapshot (%s) unavailable", event, exc_info=True)
            return {"pending_alert": None, "stale_alert": None}
        for message in alerts.values():
            if message:
                logger.warning(message)
        return alerts

    def purge_finished(self, before: datetime, *, include_failed: bool = False) -> int:
        """Delete completed and cancelled jobs last updated before ``before``."""

        before = ensure_utc(before)
        statuses = ["completed", "cancelled"] + (["failed"] if include_failed else [])
        with transaction(self._db_path, self._timeout) as conn:
            cursor = conn.execute(
                f"""DELETE FROM jobs
                        WHERE status IN ({', '.join('?' for _ in statuses)})
                          AND updated_at < ?""",
                (*statuses, to_iso(before)),
            )
            deleted = cursor.rowcount
        if deleted:
            logger.info("Purged %d finished jobs", deleted)
        return deleted


__all__ = ["JobStore", "kind_name"]
