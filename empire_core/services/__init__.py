"""Job handlers and domain event services built on the core stores."""

from .factions import apply_faction_modifiers, load_definition_seeds, seed_definitions
from .modifier_jobs import ModifierMaintenanceHandler, schedule_expiration, schedule_sweep
from .production import (
    ResourceProductionHandler,
    batch_schedule_production,
    collect_resources,
    schedule_production,
)
from .training import TrainingCompletionHandler, schedule_training

__all__ = [
    "ModifierMaintenanceHandler",
    "ResourceProductionHandler",
    "TrainingCompletionHandler",
    "apply_faction_modifiers",
    "batch_schedule_production",
    "collect_resources",
    "load_definition_seeds",
    "schedule_expiration",
    "schedule_production",
    "schedule_sweep",
    "schedule_training",
    "seed_definitions",
]
