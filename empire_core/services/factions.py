"""Faction membership modifiers."""
from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Sequence

import yaml

from ..config import DEFAULT_MODIFIERS_PATH
from ..errors import ConfigurationError
from ..modifier_cache import ModifierCache
from ..models import (
    ActiveModifier,
    ModifierDefinition,
    ModifierKind,
    ModifierSource,
    ModifierTarget,
    StackingBehaviour,
)
from ..modifiers import validate_definition
from ..state import EmpireState

logger = logging.getLogger(__name__)

NEUTRAL_FACTION = "neutral"


def load_definition_seeds(path: Optional[Path] = None) -> List[ModifierDefinition]:
    """Parse modifier definitions from a YAML seed file."""

    path = path or DEFAULT_MODIFIERS_PATH
    with Path(path).open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
    definitions: List[ModifierDefinition] = []
    for entry in data.get("definitions", []):
        try:
            definition = ModifierDefinition(
                name=str(entry["name"]),
                description=str(entry.get("description", "")),
                target=ModifierTarget(entry["target"]),
                sub_target=entry.get("sub_target"),
                magnitude=float(entry["magnitude"]),
                kind=ModifierKind(entry.get("kind", ModifierKind.PERCENTAGE.value)),
                stacking_group=entry.get("stacking_group"),
                stacking_behaviour=StackingBehaviour(
                    entry.get("stacking_behaviour", StackingBehaviour.ADDITIVE.value)
                ),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid modifier seed {entry!r} in {path}: {exc}") from exc
        definitions.append(validate_definition(definition))
    return definitions


def seed_definitions(
    state: EmpireState, definitions: Optional[Sequence[ModifierDefinition]] = None
) -> List[ModifierDefinition]:
    """Store seed definitions, updating existing ones by name."""

    if definitions is None:
        definitions = load_definition_seeds()
    stored = [state.upsert_modifier_definition(definition) for definition in definitions]
    logger.info("Seeded %d modifier definitions", len(stored))
    return stored


def faction_definitions(state: EmpireState, faction: str) -> List[ModifierDefinition]:
    return state.list_modifier_definitions(prefix=f"{faction}_")


def apply_faction_modifiers(
    state: EmpireState,
    cache: ModifierCache,
    subject_id: str,
    old_faction: Optional[str],
    new_faction: str,
    now: datetime,
) -> List[ActiveModifier]:
    """Replace the subject's faction modifiers with those of ``new_faction``.

    Every definition named ``<faction>_*`` is applied. Joining the neutral
    faction only removes the old bonuses. The faction column, the removals
    and the new modifiers are written in one transaction.
    """

    new_faction = new_faction.strip().lower()
    if not new_faction:
        raise ValueError("Faction name must not be empty")
    if new_faction == NEUTRAL_FACTION:
        definitions: List[ModifierDefinition] = []
    else:
        definitions = faction_definitions(state, new_faction)
        if not definitions:
            raise ConfigurationError(f"No modifier definitions found for faction {new_faction!r}")

    reason = "Initial faction modifiers" if old_faction is None else "Faction change"
    applied = state.replace_source_modifiers(
        subject_id,
        ModifierSource.FACTION,
        definitions,
        now=now,
        source_id=new_faction,
        reason=reason,
        faction=new_faction,
    )
    cache.invalidate(subject_id)
    logger.info(
        "%s: %s -> %s, applied %d faction modifiers",
        subject_id,
        old_faction or "none",
        new_faction,
        len(applied),
    )
    return applied


__all__ = [
    "NEUTRAL_FACTION",
    "apply_faction_modifiers",
    "faction_definitions",
    "load_definition_seeds",
    "seed_definitions",
]
