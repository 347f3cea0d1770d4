"""Jobs that keep the active modifier registry and the cache tidy."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from ..errors import HandlerError
from ..job_store import JobStore
from ..modifier_cache import ModifierCache
from ..models import ActiveModifier, Job, JobKind, JobPriority
from ..state import EmpireState

logger = logging.getLogger(__name__)

ACTION_EXPIRE = "expire"
ACTION_SWEEP = "sweep"
ACTION_REFRESH_CACHE = "refresh_cache"


def schedule_expiration(
    store: JobStore, active: ActiveModifier, *, now: Optional[datetime] = None
) -> int:
    """Queue removal of ``active`` at its expiry time."""

    if active.expires_at is None or active.id is None:
        raise ValueError("Only stored modifiers with an expiry can be scheduled for expiration")
    return store.enqueue(
        JobKind.MODIFIER,
        {"action": ACTION_EXPIRE, "active_modifier_id": active.id, "subject_id": active.subject_id},
        active.expires_at,
        priority=int(JobPriority.HIGH),
        now=now,
    )


def schedule_sweep(
    store: JobStore,
    run_at: datetime,
    *,
    interval_seconds: Optional[float] = None,
    now: Optional[datetime] = None,
) -> int:
    """Queue a sweep of all expired modifiers, optionally repeating."""

    payload: Dict[str, Any] = {"action": ACTION_SWEEP}
    if interval_seconds:
        payload["interval_seconds"] = float(interval_seconds)
    return store.enqueue(JobKind.MODIFIER, payload, run_at, priority=int(JobPriority.LOW), now=now)


class ModifierMaintenanceHandler:
    """Handles ``modifier`` jobs.

    Expiry decisions always re-read the registry; the cache is only
    invalidated afterwards.
    """

    def __init__(
        self,
        state: EmpireState,
        cache: ModifierCache,
        store: Optional[JobStore] = None,
    ) -> None:
        self._state = state
        self._cache = cache
        self._store = store

    def __call__(self, job: Job, now: datetime) -> Dict[str, Any]:
        action = job.payload.get("action")
        if action == ACTION_EXPIRE:
            return self._expire(job, now)
        if action == ACTION_SWEEP:
            return self._sweep(job, now)
        if action == ACTION_REFRESH_CACHE:
            subject_id = job.payload.get("subject_id")
            if not subject_id:
                raise HandlerError(f"Modifier job #{job.id} has no subject_id")
            return {"action": action, "invalidated": self._cache.invalidate(subject_id)}
        raise HandlerError(f"Modifier job #{job.id} has unknown action {action!r}")

    def _expire(self, job: Job, now: datetime) -> Dict[str, Any]:
        active_id = job.payload.get("active_modifier_id")
        if active_id is None:
            raise HandlerError(f"Modifier job #{job.id} has no active_modifier_id")
        removed = self._state.expire_active_modifier(int(active_id), now=now)
        if removed is None:
            # Already gone, or its expiry was extended after this job was queued.
            return {"action": ACTION_EXPIRE, "expired": False}
        self._cache.invalidate(removed.subject_id)
        logger.info("Expired modifier %s on %s", removed.modifier_id, removed.subject_id)
        return {"action": ACTION_EXPIRE, "expired": True, "subject_id": removed.subject_id}

    def _sweep(self, job: Job, now: datetime) -> Dict[str, Any]:
        subjects = self._state.expire_modifiers(now)
        for subject_id in subjects:
            self._cache.invalidate(subject_id)
        result: Dict[str, Any] = {"action": ACTION_SWEEP, "subjects": subjects}
        interval = job.payload.get("interval_seconds")
        if interval and self._store is not None:
            result["next_job_id"] = schedule_sweep(
                self._store,
                now + timedelta(seconds=float(interval)),
                interval_seconds=float(interval),
                now=now,
            )
        return result


__all__ = [
    "ACTION_EXPIRE",
    "ACTION_REFRESH_CACHE",
    "ACTION_SWEEP",
    "ModifierMaintenanceHandler",
    "schedule_expiration",
    "schedule_sweep",
]
