"""Modifier aggregation and write-time validation.

The aggregator is a pure function: it receives the active modifiers of a
subject together with their definitions and folds them into a single
effective multiplier. Stacking happens in two layers. Modifiers are first
combined inside their stacking group according to the group's behaviour, then
the groups are combined with each other multiplicatively. Flat-kind entries do
not scale anything; they are summed into an offset that is added once every
multiplicative group has been resolved.
"""
from __future__ import annotations

import math
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from .errors import ConfigurationError
from .models import (
    ActiveModifier,
    ModifierDefinition,
    ModifierKind,
    ModifierTarget,
    ResourceType,
    StackingBehaviour,
)
from .storage import ensure_utc

Contribution = Tuple[ActiveModifier, ModifierDefinition]

_RESOURCE_NAMES = {resource.value for resource in ResourceType}


def _coerce_behaviour(value: object) -> StackingBehaviour:
    try:
        return StackingBehaviour(value)
    except ValueError as exc:
        raise ConfigurationError(f"Unknown stacking behaviour: {value!r}") from exc


def _coerce_kind(value: object) -> ModifierKind:
    try:
        return ModifierKind(value)
    except ValueError as exc:
        raise ConfigurationError(f"Unknown modifier kind: {value!r}") from exc


def validate_definition(definition: ModifierDefinition) -> ModifierDefinition:
    """Reject definitions the aggregator cannot fold.

    Called by every writer of the definition store so that aggregation never
    meets an unknown behaviour at read time.
    """

    if not definition.name or not definition.name.strip():
        raise ConfigurationError("Modifier definitions require a name")
    try:
        target = ModifierTarget(definition.target)
    except ValueError as exc:
        raise ConfigurationError(
            f"{definition.name}: unknown target {definition.target!r}"
        ) from exc
    kind = _coerce_kind(definition.kind)
    _coerce_behaviour(definition.stacking_behaviour)

    magnitude = float(definition.magnitude)
    if not math.isfinite(magnitude):
        raise ConfigurationError(f"{definition.name}: magnitude must be finite")
    if kind in (ModifierKind.PERCENTAGE, ModifierKind.MULTIPLIER) and magnitude <= 0:
        raise ConfigurationError(
            f"{definition.name}: {kind.value} magnitude must be positive, got {magnitude}"
        )
    if (
        target is ModifierTarget.RESOURCE
        and definition.sub_target is not None
        and definition.sub_target not in _RESOURCE_NAMES
    ):
        raise ConfigurationError(
            f"{definition.name}: unknown resource sub-target {definition.sub_target!r}"
        )
    if definition.stacking_group is not None and not definition.stacking_group.strip():
        raise ConfigurationError(f"{definition.name}: stacking group must not be blank")
    return definition


def contributing_modifiers(
    subject_id: str,
    target: ModifierTarget,
    sub_target: Optional[str],
    active_modifiers: Iterable[ActiveModifier],
    definitions: Mapping[int, ModifierDefinition],
    now: datetime,
) -> List[Contribution]:
    """Return the active modifiers that apply to ``(subject, target, sub_target)``."""

    matches: List[Contribution] = []
    for active in active_modifiers:
        if active.subject_id != subject_id or not active.is_active(now):
            continue
        definition = definitions.get(active.modifier_id)
        if definition is None:
            raise ConfigurationError(
                f"Active modifier {active.id} references unknown definition {active.modifier_id}"
            )
        if definition.matches(target, sub_target):
            matches.append((active, definition))
    return matches


def nearest_expiry(contributions: Iterable[Contribution]) -> Optional[datetime]:
    """Earliest expiry among ``contributions``; ``None`` when all are permanent."""

    expiries = [ensure_utc(active.expires_at) for active, _ in contributions if active.expires_at]
    return min(expiries) if expiries else None


def _group_key(active: ActiveModifier, definition: ModifierDefinition) -> str:
    if definition.stacking_group:
        return f"group:{definition.stacking_group}"
    # Ungrouped modifiers never stack with each other inside a group.
    return f"solo:{active.id if active.id is not None else id(active)}"


def _fold_group(members: List[ModifierDefinition]) -> Tuple[float, float]:
    """Return ``(ratio, flat)`` for a single stacking group."""

    behaviours = {_coerce_behaviour(member.stacking_behaviour) for member in members}
    if len(behaviours) > 1:
        names = ", ".join(sorted(member.name for member in members))
        raise ConfigurationError(f"Mixed stacking behaviours in one group: {names}")
    behaviour = behaviours.pop()

    ratios = [
        float(m.magnitude) for m in members if _coerce_kind(m.kind) is not ModifierKind.FLAT
    ]
    flats = [float(m.magnitude) for m in members if _coerce_kind(m.kind) is ModifierKind.FLAT]

    if behaviour is StackingBehaviour.ADDITIVE:
        ratio = 1.0 + sum(value - 1.0 for value in ratios)
        flat = sum(flats)
    elif behaviour is StackingBehaviour.MULTIPLICATIVE:
        ratio = math.prod(ratios) if ratios else 1.0
        flat = sum(flats)
    elif behaviour is StackingBehaviour.HIGHEST:
        ratio = max(ratios) if ratios else 1.0
        flat = max(flats) if flats else 0.0
    else:  # pragma: no cover - enum is exhaustive
        raise ConfigurationError(f"Unhandled stacking behaviour: {behaviour!r}")
    return ratio, flat


def fold_contributions(
    contributions: Iterable[Contribution],
    *,
    floor: Optional[float] = None,
    ceiling: Optional[float] = None,
) -> float:
    """Combine pre-filtered contributions into an effective multiplier."""

    groups: Dict[str, List[ModifierDefinition]] = {}
    for active, definition in contributions:
        groups.setdefault(_group_key(active, definition), []).append(definition)

    multiplier = 1.0
    offset = 0.0
    for members in groups.values():
        ratio, flat = _fold_group(members)
        multiplier *= ratio
        offset += flat
    result = multiplier + offset

    if floor is not None and ceiling is not None and floor > ceiling:
        raise ConfigurationError(f"Multiplier floor {floor} exceeds ceiling {ceiling}")
    if floor is not None:
        result = max(floor, result)
    if ceiling is not None:
        result = min(ceiling, result)
    return result


def compute_multiplier(
    subject_id: str,
    target: ModifierTarget,
    sub_target: Optional[str],
    active_modifiers: Iterable[ActiveModifier],
    definitions: Mapping[int, ModifierDefinition],
    now: datetime,
    *,
    floor: Optional[float] = None,
    ceiling: Optional[float] = None,
) -> float:
    """Effective multiplier for ``(subject, target, sub_target)`` at ``now``.

    Returns exactly ``1.0`` when nothing applies. ``floor``/``ceiling`` are
    the caller's balance policy; the engine imposes no bounds of its own.
    """

    contributions = contributing_modifiers(
        subject_id, target, sub_target, active_modifiers, definitions, now
    )
    return fold_contributions(contributions, floor=floor, ceiling=ceiling)


__all__ = [
    "Contribution",
    "compute_multiplier",
    "contributing_modifiers",
    "fold_contributions",
    "nearest_expiry",
    "validate_definition",
]
