"""Unit training: queue a job whose duration depends on training modifiers."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Mapping, Optional

from ..errors import HandlerError
from ..job_store import JobStore
from ..modifier_cache import ModifierCache
from ..models import Job, JobKind, ModifierTarget, ResourceType
from ..state import EmpireState

logger = logging.getLogger(__name__)


def schedule_training(
    state: EmpireState,
    store: JobStore,
    cache: ModifierCache,
    subject_id: str,
    unit: str,
    quantity: int,
    *,
    base_seconds: float,
    now: datetime,
    costs: Optional[Mapping[ResourceType, int]] = None,
    priority: Optional[int] = None,
) -> Dict[str, Any]:
    """Pay for ``quantity`` units and queue their completion.

    The duration is ``base_seconds * quantity / multiplier`` where the
    multiplier comes from the subject's training modifiers, so a 1.2 bonus
    shortens training. ``costs`` are per unit.
    """

    if quantity <= 0:
        raise ValueError("Quantity must be positive")
    if base_seconds <= 0:
        raise ValueError("Base training time must be positive")
    multiplier = cache.get_or_compute(subject_id, ModifierTarget.TRAINING, unit, now)
    if multiplier <= 0:
        raise ValueError(f"Training multiplier for {subject_id} is {multiplier}; cannot schedule")

    duration = timedelta(seconds=base_seconds * quantity / multiplier)
    completes_at = now + duration
    job_id = store.enqueue(
        JobKind.TRAINING,
        {"subject_id": subject_id, "unit": unit, "quantity": quantity},
        completes_at,
        priority=priority,
        now=now,
    )
    if costs:
        total = {ResourceType(resource): int(cost) * quantity for resource, cost in costs.items()}
        try:
            state.deduct_resources(subject_id, total)
        except ValueError:
            store.cancel(job_id, now=now)
            raise
    logger.info(
        "Training %d %s for %s, ready at %s", quantity, unit, subject_id, completes_at.isoformat()
    )
    return {
        "job_id": job_id,
        "completes_at": completes_at,
        "duration_seconds": duration.total_seconds(),
        "multiplier": multiplier,
    }


class TrainingCompletionHandler:
    """Adds the trained units to the subject once the job comes due."""

    def __init__(self, state: EmpireState) -> None:
        self._state = state

    def __call__(self, job: Job, now: datetime) -> Dict[str, Any]:
        payload = job.payload
        subject_id = payload.get("subject_id")
        unit = payload.get("unit")
        quantity = int(payload.get("quantity") or 0)
        if not subject_id or not unit or quantity <= 0:
            raise HandlerError(f"Training job #{job.id} has an incomplete payload: {payload}")
        try:
            total = self._state.credit_units(subject_id, unit, quantity)
        except ValueError as exc:
            raise HandlerError(str(exc)) from exc
        logger.info("%s finished training %d %s (now %d)", subject_id, quantity, unit, total)
        return {"subject_id": subject_id, "unit": unit, "quantity": quantity, "total": total}


__all__ = ["TrainingCompletionHandler", "schedule_training"]
