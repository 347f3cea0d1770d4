"""Service layer wiring the modifier engine to the job scheduler."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from .config import Settings, get_settings
from .dispatcher import JobDispatcher, JobHandler
from .errors import ConfigurationError
from .job_store import JobStore
from .modifier_cache import ModifierCache
from .models import (
    ActiveModifier,
    Job,
    JobKind,
    ModifierDefinition,
    ModifierSource,
    ModifierTarget,
    ResourceType,
    Subject,
)
from .services.factions import (
    NEUTRAL_FACTION,
    apply_faction_modifiers,
    faction_definitions,
    seed_definitions,
)
from .services.modifier_jobs import ModifierMaintenanceHandler, schedule_expiration
from .services.production import (
    ResourceProductionHandler,
    collect_resources,
    schedule_production,
)
from .services.training import TrainingCompletionHandler, schedule_training
from .state import EmpireState

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EmpireService:
    """Entry point for the surrounding application.

    State, job records and the modifier cache share one SQLite file. Several
    services (for example one per process) may point at the same file; the
    job store's atomic claim keeps their dispatchers from running a job twice.
    """

    def __init__(
        self,
        db_path: Path,
        settings: Settings | None = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        worker_ids: Optional[Iterable[str]] = None,
        seed: bool = True,
    ) -> None:
        self.settings = settings or get_settings()
        self._clock = clock or _utcnow
        self.state = EmpireState(db_path, settings=self.settings)
        self.jobs = JobStore(db_path, settings=self.settings)
        self.cache = ModifierCache(
            self.state.modifier_snapshot,
            ttl=timedelta(seconds=self.settings.cache_ttl_seconds),
            max_entries=self.settings.cache_max_entries,
            floor=self.settings.multiplier_floor,
            ceiling=self.settings.multiplier_ceiling,
            clock=self._clock,
        )
        self.dispatcher = JobDispatcher(
            self.jobs,
            settings=self.settings,
            clock=self._clock,
            worker_ids=worker_ids,
        )
        self.dispatcher.register_handler(
            JobKind.RESOURCE,
            ResourceProductionHandler(self.state, self.cache, self.jobs, settings=self.settings),
        )
        self.dispatcher.register_handler(JobKind.TRAINING, TrainingCompletionHandler(self.state))
        self.dispatcher.register_handler(
            JobKind.MODIFIER, ModifierMaintenanceHandler(self.state, self.cache, self.jobs)
        )
        if seed:
            seed_definitions(self.state)

    def now(self) -> datetime:
        return self._clock()

    # Core operations --------------------------------------------------
    def get_effective_multiplier(
        self,
        subject_id: str,
        target: ModifierTarget,
        sub_target: Optional[str] = None,
    ) -> float:
        return self.cache.get_or_compute(subject_id, ModifierTarget(target), sub_target, self.now())

    def enqueue_job(
        self,
        kind: str,
        payload: Mapping[str, Any],
        run_at: datetime,
        priority: Optional[int] = None,
        max_retries: Optional[int] = None,
        timeout: Optional[int] = None,
    ) -> int:
        return self.jobs.enqueue(
            kind, payload, run_at, priority, max_retries, timeout, now=self.now()
        )

    def register_handler(self, kind: str, handler: JobHandler) -> None:
        self.dispatcher.register_handler(kind, handler)

    # Subjects and modifiers -------------------------------------------
    def create_subject(
        self,
        subject_id: str,
        display_name: str,
        *,
        faction: str = NEUTRAL_FACTION,
        start_production: bool = False,
    ) -> Subject:
        """Create a subject together with its initial faction modifiers."""

        faction = faction.strip().lower()
        definitions: List[ModifierDefinition] = []
        if faction != NEUTRAL_FACTION:
            definitions = faction_definitions(self.state, faction)
            if not definitions:
                raise ConfigurationError(f"No modifier definitions found for faction {faction!r}")
        subject = self.state.create_subject(
            subject_id,
            display_name,
            now=self.now(),
            faction=faction,
            faction_modifiers=definitions,
        )
        self.cache.invalidate(subject_id)
        if start_production:
            self.schedule_production(subject_id)
        return subject

    def change_faction(self, subject_id: str, faction: str) -> List[ActiveModifier]:
        subject = self.state.get_subject(subject_id)
        if subject is None:
            raise ValueError(f"Unknown subject {subject_id}")
        return apply_faction_modifiers(
            self.state, self.cache, subject_id, subject.faction, faction, self.now()
        )

    def apply_modifier(
        self,
        subject_id: str,
        modifier_name: str,
        *,
        source: ModifierSource,
        duration: Optional[timedelta] = None,
        source_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> ActiveModifier:
        """Apply a named definition; timed modifiers also get an expiration job."""

        definition = self.state.get_modifier_definition_by_name(modifier_name)
        if definition is None:
            raise ValueError(f"Unknown modifier {modifier_name!r}")
        now = self.now()
        active = self.state.apply_modifier(
            subject_id,
            definition.id,
            source=source,
            started_at=now,
            expires_at=now + duration if duration is not None else None,
            source_id=source_id,
            reason=reason,
        )
        self.cache.invalidate(subject_id)
        if active.expires_at is not None:
            schedule_expiration(self.jobs, active, now=now)
        return active

    def remove_modifier(self, active_id: int, *, reason: Optional[str] = None) -> bool:
        removed = self.state.remove_active_modifier(active_id, now=self.now(), reason=reason)
        if removed is None:
            return False
        self.cache.invalidate(removed.subject_id)
        return True

    def extend_modifier(
        self, active_id: int, expires_at: Optional[datetime], *, reason: Optional[str] = None
    ) -> Optional[ActiveModifier]:
        """Move a modifier's expiry; ``None`` makes it permanent."""

        now = self.now()
        active = self.state.update_active_modifier_expiry(
            active_id, expires_at, now=now, reason=reason
        )
        if active is None:
            return None
        self.cache.invalidate(active.subject_id)
        if active.expires_at is not None:
            # The earlier expiration job re-checks the registry and becomes a no-op.
            schedule_expiration(self.jobs, active, now=now)
        return active

    # Resources and units ----------------------------------------------
    def schedule_production(self, subject_id: str, run_at: Optional[datetime] = None) -> int:
        now = self.now()
        return schedule_production(self.jobs, subject_id, run_at or now, now=now)

    def collect_resources(self, subject_id: str) -> Dict[str, int]:
        return collect_resources(self.state, subject_id)

    def train_units(
        self,
        subject_id: str,
        unit: str,
        quantity: int,
        *,
        base_seconds: float,
        costs: Optional[Mapping[ResourceType, int]] = None,
    ) -> Dict[str, Any]:
        return schedule_training(
            self.state,
            self.jobs,
            self.cache,
            subject_id,
            unit,
            quantity,
            base_seconds=base_seconds,
            costs=costs,
            now=self.now(),
        )

    # Jobs -------------------------------------------------------------
    def cancel_job(self, job_id: int) -> bool:
        return self.jobs.cancel(job_id, now=self.now())

    def get_job(self, job_id: int) -> Optional[Job]:
        return self.jobs.get(job_id)

    def run_pending(self, *, limit: Optional[int] = None) -> List[Job]:
        """Synchronously process every job due now."""

        return self.dispatcher.drain(self.now(), limit=limit)

    def start(self) -> None:
        self.dispatcher.start()

    def shutdown(self, wait: bool = True) -> None:
        self.dispatcher.shutdown(wait=wait)


__all__ = ["EmpireService"]
