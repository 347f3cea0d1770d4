"""Polling job dispatcher built on APScheduler."""
from __future__ import annotations

import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from apscheduler.schedulers.background import BackgroundScheduler

from .config import Settings, get_settings
from .errors import HandlerError, TransientStoreError
from .job_store import JobStore, kind_name
from .models import Job, JobStatus
from .retry import retry_transient
from .storage import ensure_utc
from .telemetry import get_telemetry, track_duration

logger = logging.getLogger(__name__)

JobHandler = Callable[[Job, datetime], Optional[Mapping[str, Any]]]

# Upper bound on jobs one worker processes per scheduler tick.
_MAX_JOBS_PER_TICK = 100


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def make_worker_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class JobDispatcher:
    """Claims due jobs from a :class:`JobStore` and runs registered handlers.

    Several dispatchers, in one process or many, may share a store; the
    atomic claim is the only coordination between them. Each worker id gets
    its own APScheduler interval job so a slow handler never blocks the other
    workers.
    """

    def __init__(
        self,
        store: JobStore,
        *,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
        worker_ids: Optional[Iterable[str]] = None,
    ) -> None:
        self._store = store
        self._settings = settings or get_settings()
        self._clock = clock or _utcnow
        self._handlers: Dict[str, JobHandler] = {}
        self._lock = threading.Lock()
        if worker_ids is None:
            worker_ids = [
                make_worker_id(self._settings.worker_prefix)
                for _ in range(self._settings.dispatcher_workers)
            ]
        self._worker_ids: List[str] = list(worker_ids)
        if not self._worker_ids:
            raise ValueError("Dispatcher needs at least one worker id")
        self._scheduler: Optional[BackgroundScheduler] = None
        store.add_listener(self._on_insert)

    @property
    def worker_ids(self) -> List[str]:
        return list(self._worker_ids)

    def register_handler(self, kind: str, handler: JobHandler) -> None:
        """Route jobs of ``kind`` to ``handler(job, now)``; replaces any previous handler."""

        name = kind_name(kind)
        with self._lock:
            if name in self._handlers:
                logger.info("Replacing handler for job kind %s", name)
            self._handlers[name] = handler

    def handled_kinds(self) -> List[str]:
        with self._lock:
            return sorted(self._handlers)

    def _handler_for(self, kind: str) -> Optional[JobHandler]:
        with self._lock:
            return self._handlers.get(kind)

    def _call_store(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        return retry_transient(
            func,
            *args,
            attempts=self._settings.claim_retry_attempts,
            delay=self._settings.claim_retry_delay_seconds,
            **kwargs,
        )

    # Processing -------------------------------------------------------
    def run_once(self, worker_id: Optional[str] = None, now: Optional[datetime] = None) -> Optional[Job]:
        """Reap stale locks, then claim and execute at most one job.

        Returns the processed job with its resulting status, or ``None`` when
        nothing was eligible.
        """

        worker_id = worker_id or self._worker_ids[0]
        now = ensure_utc(now or self._clock())

        for record in self._call_store(self._store.reap_expired_locks, now):
            self._emit_outcome(record.kind, "reaped")

        kinds = self.handled_kinds()
        if not kinds:
            return None
        job = self._call_store(self._store.claim_next, worker_id, now, kinds)
        if job is None:
            return None
        return self._execute(job, worker_id, now)

    def _execute(self, job: Job, worker_id: str, now: datetime) -> Job:
        handler = self._handler_for(job.kind)
        started = time.perf_counter()
        if handler is None:
            # Handler was unregistered between the claim and now.
            return self._record_failure(job, worker_id, now, f"No handler registered for {job.kind!r}", started)

        try:
            result = handler(job, now)
        except HandlerError as exc:
            logger.warning("Job #%s (%s) handler error: %s", job.id, job.kind, exc)
            return self._record_failure(job, worker_id, now, str(exc), started)
        except Exception as exc:
            logger.exception("Job #%s (%s) handler crashed", job.id, job.kind)
            return self._record_failure(job, worker_id, now, f"{type(exc).__name__}: {exc}", started)

        completed = self._call_store(
            self._store.complete,
            job.id,
            worker_id=worker_id,
            result=dict(result) if result else None,
            now=now,
        )
        duration_ms = (time.perf_counter() - started) * 1000
        if completed:
            job.status = JobStatus.COMPLETED
            job.result = dict(result) if result else None
            logger.debug("Job #%s (%s) completed by %s", job.id, job.kind, worker_id)
            self._emit_outcome(job.kind, "completed", duration_ms=duration_ms, retries=job.retries)
        else:
            self._emit_outcome(job.kind, "lost_claim", duration_ms=duration_ms, retries=job.retries)
        job.locked_by = None
        job.locked_at = None
        return job

    def _record_failure(
        self, job: Job, worker_id: str, now: datetime, error: str, started: float
    ) -> Job:
        updated = self._call_store(self._store.fail, job.id, error, worker_id=worker_id, now=now)
        duration_ms = (time.perf_counter() - started) * 1000
        if updated is None:
            self._emit_outcome(job.kind, "lost_claim", duration_ms=duration_ms, retries=job.retries)
            return job
        outcome = "failed" if updated.status is JobStatus.FAILED else "retry"
        self._emit_outcome(job.kind, outcome, duration_ms=duration_ms, retries=updated.retries)
        if outcome == "failed":
            self._emit_error("job_failed", job, error)
        return updated

    def drain(
        self,
        now: Optional[datetime] = None,
        *,
        worker_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Job]:
        """Process jobs until none is eligible at ``now`` (or ``limit`` is hit)."""

        processed: List[Job] = []
        while limit is None or len(processed) < limit:
            job = self.run_once(worker_id=worker_id, now=now)
            if job is None:
                break
            processed.append(job)
        return processed

    # Scheduling -------------------------------------------------------
    def _tick(self, worker_id: str) -> None:
        now = self._clock()
        try:
            self._store.record_snapshot(now)
            with track_duration("dispatcher_tick", {"worker": worker_id}):
                self.drain(worker_id=worker_id, limit=_MAX_JOBS_PER_TICK)
        except TransientStoreError as exc:
            # The next poll retries; claimed jobs are recovered by reaping.
            logger.warning("Worker %s skipped a poll: %s", worker_id, exc)

    def start(self) -> None:
        """Start one interval poller per worker id."""

        with self._lock:
            if self._scheduler is not None:
                return
            scheduler = BackgroundScheduler()
            for worker_id in self._worker_ids:
                scheduler.add_job(
                    self._tick,
                    "interval",
                    seconds=self._settings.poll_interval_seconds,
                    args=[worker_id],
                    id=f"dispatch:{worker_id}",
                    max_instances=1,
                    coalesce=True,
                    next_run_time=_utcnow(),
                )
            scheduler.start()
            self._scheduler = scheduler
        logger.info(
            "Started job dispatcher with %d workers polling every %.1fs",
            len(self._worker_ids),
            self._settings.poll_interval_seconds,
        )

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            scheduler, self._scheduler = self._scheduler, None
        if scheduler is None:
            return
        scheduler.shutdown(wait=wait)
        try:
            get_telemetry().flush()
        except Exception:  # pragma: no cover - telemetry failures shouldn't block shutdown
            logger.debug("Telemetry flush failed during shutdown", exc_info=True)
        logger.info("Job dispatcher stopped")

    @property
    def running(self) -> bool:
        return self._scheduler is not None

    def notify(self) -> None:
        """Wake every worker now instead of waiting for the next poll."""

        with self._lock:
            scheduler = self._scheduler
        if scheduler is None:
            return
        wake_at = _utcnow()
        for worker_id in self._worker_ids:
            scheduler.modify_job(f"dispatch:{worker_id}", next_run_time=wake_at)

    def _on_insert(self, job_id: int, kind: str) -> None:
        if self._handler_for(kind) is not None:
            self.notify()

    # Telemetry --------------------------------------------------------
    @staticmethod
    def _emit_outcome(kind: str, outcome: str, **kwargs: Any) -> None:
        try:
            get_telemetry().track_job_outcome(kind, outcome, **kwargs)
        except Exception:  # pragma: no cover - telemetry failures shouldn't break dispatch
            logger.debug("Job telemetry unavailable", exc_info=True)

    @staticmethod
    def _emit_error(error_type: str, job: Job, error: str) -> None:
        try:
            get_telemetry().track_error(error_type, context=job.kind, error_details=error)
        except Exception:  # pragma: no cover - telemetry failures shouldn't break dispatch
            logger.debug("Job telemetry unavailable", exc_info=True)


__all__ = ["JobDispatcher", "JobHandler", "make_worker_id"]
