"""Core data models for the modifier engine and job queue."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum, IntEnum
from typing import Any, Dict, Optional

from .storage import ensure_utc


class ModifierTarget(str, Enum):
    RESOURCE = "resource"
    COMBAT = "combat"
    TRAINING = "training"
    RESEARCH = "research"


class ModifierKind(str, Enum):
    PERCENTAGE = "percentage"
    FLAT = "flat"
    MULTIPLIER = "multiplier"


class StackingBehaviour(str, Enum):
    ADDITIVE = "additive"
    MULTIPLICATIVE = "multiplicative"
    HIGHEST = "highest"


class ResourceType(str, Enum):
    POPULATION = "population"
    FOOD = "food"
    WOOD = "wood"
    STONE = "stone"
    GOLD = "gold"


class ModifierSource(str, Enum):
    FACTION = "faction"
    ITEM = "item"
    SKILL = "skill"
    RESEARCH = "research"
    EVENT = "event"


class HistoryAction(str, Enum):
    APPLIED = "applied"
    REMOVED = "removed"
    EXPIRED = "expired"
    UPDATED = "updated"


class JobStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobKind(str, Enum):
    MODIFIER = "modifier"
    RESOURCE = "resource"
    TRAINING = "training"


class JobPriority(IntEnum):
    """Claim priority; higher values are claimed first."""

    HIGH = 100
    NORMAL = 50
    LOW = 0


@dataclass
class ModifierDefinition:
    """Reusable template describing a bonus or penalty."""

    name: str
    target: ModifierTarget
    magnitude: float
    kind: ModifierKind = ModifierKind.PERCENTAGE
    stacking_behaviour: StackingBehaviour = StackingBehaviour.ADDITIVE
    stacking_group: Optional[str] = None
    sub_target: Optional[str] = None
    description: str = ""
    id: Optional[int] = None

    def matches(self, target: ModifierTarget, sub_target: Optional[str]) -> bool:
        """A definition without a sub-target applies to every sub-target."""

        if self.target != target:
            return False
        if self.sub_target is None:
            return True
        return self.sub_target == sub_target


@dataclass
class ActiveModifier:
    """A definition currently applied to a subject."""

    subject_id: str
    modifier_id: int
    started_at: datetime
    source: ModifierSource
    expires_at: Optional[datetime] = None
    source_id: Optional[str] = None
    id: Optional[int] = None

    def is_active(self, now: datetime) -> bool:
        return self.expires_at is None or ensure_utc(self.expires_at) > ensure_utc(now)


@dataclass(frozen=True)
class ModifierHistoryRecord:
    """Append-only log entry for modifier lifecycle events."""

    subject_id: str
    modifier_id: int
    action: HistoryAction
    occurred_at: datetime
    magnitude: float
    source: ModifierSource
    source_id: Optional[str] = None
    previous_state: Optional[Dict[str, Any]] = None
    reason: Optional[str] = None
    id: Optional[int] = None


@dataclass
class Job:
    """Deferred unit of work tracked by the job store."""

    kind: str
    payload: Dict[str, Any]
    run_at: datetime
    priority: int = int(JobPriority.NORMAL)
    timeout_seconds: int = 300
    max_retries: int = 3
    retries: int = 0
    status: JobStatus = JobStatus.PENDING
    last_error: Optional[str] = None
    locked_by: Optional[str] = None
    locked_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    result: Optional[Dict[str, Any]] = None
    id: Optional[int] = None

    def lock_expires_at(self) -> Optional[datetime]:
        if self.locked_at is None:
            return None
        return self.locked_at + timedelta(seconds=self.timeout_seconds)


@dataclass
class Subject:
    id: str
    display_name: str
    faction: str = "neutral"
    created_at: Optional[datetime] = None


@dataclass
class ResourceLedger:
    """Stored and accumulated amounts of a single resource for a subject."""

    resource: ResourceType
    amount: int
    storage_cap: int
    accumulated: float = 0.0
    accumulator_cap: int = 0
    last_produced_at: Optional[datetime] = None

    def headroom(self) -> float:
        """Production that can still be credited before either cap is hit."""

        storage_room = self.storage_cap - self.amount - self.accumulated
        accumulator_room = self.accumulator_cap - self.accumulated
        return max(0.0, min(storage_room, accumulator_room))


@dataclass
class ProductionReport:
    """Outcome of a production run for one subject."""

    subject_id: str
    credited: Dict[ResourceType, float] = field(default_factory=dict)
    discarded: Dict[ResourceType, float] = field(default_factory=dict)
    multipliers: Dict[ResourceType, float] = field(default_factory=dict)
    elapsed_seconds: float = 0.0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "credited": {res.value: amount for res, amount in self.credited.items()},
            "discarded": {res.value: amount for res, amount in self.discarded.items()},
            "multipliers": {res.value: value for res, value in self.multipliers.items()},
            "elapsed_seconds": self.elapsed_seconds,
        }
