"""Periodic resource production driven by the job queue."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from ..config import Settings, get_settings
from ..errors import HandlerError
from ..job_store import JobStore
from ..modifier_cache import ModifierCache
from ..models import Job, JobKind, ModifierTarget, ProductionReport, ResourceType
from ..state import EmpireState
from ..storage import ensure_utc
from ..telemetry import get_telemetry

logger = logging.getLogger(__name__)

_SECONDS_PER_HOUR = 3600.0


def production_payload(subject_id: str, *, reschedule: bool = True) -> Dict[str, Any]:
    return {"subject_id": subject_id, "reschedule": reschedule}


def schedule_production(
    store: JobStore,
    subject_id: str,
    run_at: datetime,
    *,
    reschedule: bool = True,
    priority: Optional[int] = None,
    now: Optional[datetime] = None,
) -> int:
    """Queue a production run for one subject."""

    return store.enqueue(
        JobKind.RESOURCE,
        production_payload(subject_id, reschedule=reschedule),
        run_at,
        priority=priority,
        now=now,
    )


def batch_schedule_production(
    store: JobStore,
    subject_ids: Iterable[str],
    run_at: datetime,
    *,
    reschedule: bool = True,
    now: Optional[datetime] = None,
) -> List[int]:
    """Queue production runs for many subjects in one transaction."""

    jobs = [
        store.build_job(JobKind.RESOURCE, production_payload(subject_id, reschedule=reschedule), run_at)
        for subject_id in subject_ids
    ]
    return store.enqueue_batch(jobs, now=now)


def collect_resources(state: EmpireState, subject_id: str) -> Dict[str, int]:
    """Move accumulated production into storage; returns whole units moved."""

    moved = state.collect_resources(subject_id)
    if moved:
        logger.info(
            "Collected %s for %s",
            ", ".join(f"{amount} {resource.value}" for resource, amount in moved.items()),
            subject_id,
        )
    return {resource.value: amount for resource, amount in moved.items()}


class ResourceProductionHandler:
    """Credits multiplier-adjusted production to a subject's accumulators.

    Production for each resource is ``base_rate * multiplier * elapsed_hours``
    where the elapsed time runs from the resource's previous production. The
    first production of a resource credits one production interval. Whatever
    exceeds the storage or accumulator cap is discarded.
    """

    def __init__(
        self,
        state: EmpireState,
        cache: ModifierCache,
        store: JobStore,
        *,
        settings: Optional[Settings] = None,
    ) -> None:
        self._state = state
        self._cache = cache
        self._store = store
        self._settings = settings or get_settings()

    @property
    def interval(self) -> timedelta:
        return timedelta(seconds=self._settings.production_interval_seconds)

    def produce(self, subject_id: str, now: datetime) -> ProductionReport:
        now = ensure_utc(now)
        rates = self._state.base_rates(subject_id)
        ledgers = self._state.get_ledger(subject_id)
        report = ProductionReport(subject_id=subject_id)
        deltas: Dict[ResourceType, float] = {}

        for resource, rate in rates.items():
            if rate <= 0:
                continue
            previous = ledgers[resource].last_produced_at
            if previous is None:
                elapsed = self._settings.production_interval_seconds
            else:
                elapsed = max(0.0, (now - previous).total_seconds())
            multiplier = self._cache.get_or_compute(
                subject_id, ModifierTarget.RESOURCE, resource.value, now
            )
            report.multipliers[resource] = multiplier
            report.elapsed_seconds = max(report.elapsed_seconds, elapsed)
            deltas[resource] = rate * multiplier * elapsed / _SECONDS_PER_HOUR

        if not deltas:
            return report

        credited, discarded = self._state.credit_production(subject_id, deltas, now)
        report.credited = credited
        report.discarded = discarded
        for resource, amount in discarded.items():
            if amount > 0:
                logger.info(
                    "Discarded %.2f %s for %s: storage full", amount, resource.value, subject_id
                )
        self._track(report)
        return report

    def _track(self, report: ProductionReport) -> None:
        try:
            telemetry = get_telemetry()
            for resource, amount in report.credited.items():
                telemetry.track_production(
                    report.subject_id,
                    resource.value,
                    amount,
                    discarded=report.discarded.get(resource, 0.0),
                    multiplier=report.multipliers.get(resource, 1.0),
                )
        except Exception:  # pragma: no cover - telemetry failures shouldn't break production
            logger.debug("Production telemetry unavailable", exc_info=True)

    def __call__(self, job: Job, now: datetime) -> Dict[str, Any]:
        subject_id = job.payload.get("subject_id")
        if not subject_id:
            raise HandlerError(f"Production job #{job.id} has no subject_id")
        if self._state.get_subject(subject_id) is None:
            raise HandlerError(f"Production job #{job.id} references unknown subject {subject_id}")

        report = self.produce(subject_id, now)
        result = report.as_dict()
        if job.payload.get("reschedule", True):
            result["next_job_id"] = self._store.enqueue(
                JobKind.RESOURCE,
                production_payload(subject_id),
                now + self.interval,
                priority=job.priority,
                max_retries=job.max_retries,
                timeout=job.timeout_seconds,
                now=now,
            )
        return result


__all__ = [
    "ResourceProductionHandler",
    "batch_schedule_production",
    "collect_resources",
    "production_payload",
    "schedule_production",
]
