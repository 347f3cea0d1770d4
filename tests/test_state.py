"""Tests for the persistent registry and resource ledgers."""
from __future__ import annotations

from datetime import timedelta

import pytest

from empire_core.errors import ConfigurationError
from empire_core.models import (
    HistoryAction,
    ModifierDefinition,
    ModifierSource,
    ModifierTarget,
    ResourceType,
)
from empire_core.state import EmpireState


@pytest.fixture
def state(tmp_path, settings):
    return EmpireState(tmp_path / "state.db", settings=settings)


@pytest.fixture
def wood_bonus(state):
    return state.upsert_modifier_definition(
        ModifierDefinition(
            name="lumber_guild",
            target=ModifierTarget.RESOURCE,
            sub_target="wood",
            magnitude=1.1,
            stacking_group="guilds",
        )
    )


def test_create_subject_builds_ledgers(state, t0, settings):
    subject = state.create_subject("empire-1", "First Empire", now=t0)

    assert subject.faction == "neutral"
    assert state.get_subject("empire-1").created_at == t0
    ledgers = state.get_ledger("empire-1")
    assert set(ledgers) == set(ResourceType)
    wood = ledgers[ResourceType.WOOD]
    assert wood.amount == settings.starting_balance
    assert wood.storage_cap == settings.default_storage_cap
    assert wood.accumulated == 0.0
    assert wood.last_produced_at is None

    with pytest.raises(ValueError):
        state.create_subject("empire-1", "Duplicate", now=t0)


def test_create_subject_applies_faction_modifiers_atomically(state, wood_bonus, t0):
    subject = state.create_subject(
        "empire-1", "First", now=t0, faction="lumber", faction_modifiers=[wood_bonus]
    )

    assert subject.faction == "lumber"
    active = state.list_active_modifiers("empire-1", t0)
    assert [(a.modifier_id, a.source, a.source_id) for a in active] == [
        (wood_bonus.id, ModifierSource.FACTION, "lumber")
    ]
    history = state.list_modifier_history("empire-1")
    assert [record.reason for record in history] == ["Initial faction modifiers"]

    unsaved = ModifierDefinition(name="draft", target=ModifierTarget.COMBAT, magnitude=1.5)
    with pytest.raises(ValueError):
        state.create_subject("empire-2", "Second", now=t0, faction="lumber", faction_modifiers=[unsaved])
    assert state.get_subject("empire-2") is None


def test_naive_timestamps_are_read_as_utc(state, wood_bonus, t0):
    naive = t0.replace(tzinfo=None)
    state.create_subject("empire-1", "First", now=naive)
    active = state.apply_modifier(
        "empire-1",
        wood_bonus.id,
        source=ModifierSource.EVENT,
        started_at=naive,
        expires_at=naive + timedelta(minutes=30),
    )

    assert active.expires_at == t0 + timedelta(minutes=30)
    assert state.get_subject("empire-1").created_at == t0
    assert active.is_active(naive + timedelta(minutes=29))
    assert state.expire_active_modifier(active.id, now=naive + timedelta(minutes=29)) is None
    assert state.update_active_modifier_expiry(
        active.id, naive + timedelta(hours=1), now=naive
    ).expires_at == t0 + timedelta(hours=1)
    removed = state.expire_active_modifier(active.id, now=naive + timedelta(hours=1))
    assert removed.id == active.id


def test_definition_names_are_unique(state, wood_bonus):
    updated = state.upsert_modifier_definition(
        ModifierDefinition(
            name="lumber_guild",
            target=ModifierTarget.RESOURCE,
            sub_target="wood",
            magnitude=1.25,
            stacking_group="guilds",
        )
    )
    assert updated.id == wood_bonus.id
    assert state.get_modifier_definition(wood_bonus.id).magnitude == 1.25
    assert [d.name for d in state.list_modifier_definitions()] == ["lumber_guild"]


def test_invalid_definitions_are_rejected_on_write(state):
    with pytest.raises(ConfigurationError):
        state.upsert_modifier_definition(
            ModifierDefinition(name="broken", target=ModifierTarget.RESOURCE, magnitude=-2.0)
        )
    assert state.list_modifier_definitions() == []


def test_prefix_listing_treats_underscore_literally(state):
    for name in ("orc_stone", "orcish_rage", "elf_food"):
        state.upsert_modifier_definition(
            ModifierDefinition(name=name, target=ModifierTarget.COMBAT, magnitude=1.1)
        )
    assert [d.name for d in state.list_modifier_definitions(prefix="orc_")] == ["orc_stone"]


def test_apply_modifier_writes_history(state, wood_bonus, t0):
    state.create_subject("empire-1", "First", now=t0)
    active = state.apply_modifier(
        "empire-1",
        wood_bonus.id,
        source=ModifierSource.ITEM,
        started_at=t0,
        expires_at=t0 + timedelta(hours=2),
        source_id="axe-7",
        reason="Used a lumber charter",
    )

    assert state.get_active_modifier(active.id).expires_at == t0 + timedelta(hours=2)
    history = state.list_modifier_history("empire-1")
    assert len(history) == 1
    assert history[0].action is HistoryAction.APPLIED
    assert history[0].magnitude == pytest.approx(1.1)
    assert history[0].source_id == "axe-7"


def test_expiry_must_follow_start(state, wood_bonus, t0):
    state.create_subject("empire-1", "First", now=t0)
    with pytest.raises(ValueError):
        state.apply_modifier(
            "empire-1", wood_bonus.id, source=ModifierSource.ITEM, started_at=t0, expires_at=t0
        )
    assert state.list_active_modifiers("empire-1") == []
    assert state.list_modifier_history("empire-1") == []


def test_lazy_filter_and_sweep_of_expired_modifiers(state, wood_bonus, t0):
    state.create_subject("empire-1", "First", now=t0)
    state.create_subject("empire-2", "Second", now=t0)
    short = state.apply_modifier(
        "empire-1", wood_bonus.id, source=ModifierSource.EVENT, started_at=t0,
        expires_at=t0 + timedelta(minutes=30),
    )
    state.apply_modifier("empire-2", wood_bonus.id, source=ModifierSource.EVENT, started_at=t0)

    later = t0 + timedelta(hours=1)
    assert state.list_active_modifiers("empire-1", now=later) == []
    assert [a.id for a in state.list_active_modifiers("empire-1")] == [short.id]

    assert state.expire_modifiers(later) == ["empire-1"]
    assert state.list_active_modifiers("empire-1") == []
    assert len(state.list_active_modifiers("empire-2")) == 1
    actions = [record.action for record in state.list_modifier_history("empire-1")]
    assert actions == [HistoryAction.APPLIED, HistoryAction.EXPIRED]


def test_expire_active_modifier_rechecks_registry(state, wood_bonus, t0):
    state.create_subject("empire-1", "First", now=t0)
    active = state.apply_modifier(
        "empire-1", wood_bonus.id, source=ModifierSource.EVENT, started_at=t0,
        expires_at=t0 + timedelta(minutes=30),
    )
    state.update_active_modifier_expiry(active.id, t0 + timedelta(hours=3), now=t0)

    assert state.expire_active_modifier(active.id, now=t0 + timedelta(hours=1)) is None
    removed = state.expire_active_modifier(active.id, now=t0 + timedelta(hours=3))
    assert removed.id == active.id
    history = state.list_modifier_history("empire-1")
    assert [record.action for record in history] == [
        HistoryAction.APPLIED,
        HistoryAction.UPDATED,
        HistoryAction.EXPIRED,
    ]
    assert history[1].previous_state["expires_at"].startswith("2024-03-01T12:30:00")


def test_modifier_snapshot_returns_only_live_definitions(state, wood_bonus, t0):
    state.create_subject("empire-1", "First", now=t0)
    state.apply_modifier("empire-1", wood_bonus.id, source=ModifierSource.SKILL, started_at=t0)
    active, definitions = state.modifier_snapshot("empire-1", t0 + timedelta(minutes=1))
    assert [a.modifier_id for a in active] == [wood_bonus.id]
    assert set(definitions) == {wood_bonus.id}


def test_credit_production_respects_caps(state, t0):
    state.create_subject("empire-1", "First", now=t0)
    state.set_storage_cap("empire-1", ResourceType.WOOD, 150, accumulator_cap=1000)
    state.set_storage_cap("empire-1", ResourceType.STONE, 2000, accumulator_cap=30)

    credited, discarded = state.credit_production(
        "empire-1", {ResourceType.WOOD: 80.0, ResourceType.STONE: 45.0}, t0
    )

    # 100 wood already stored, so only 50 fits under the 150 cap.
    assert credited[ResourceType.WOOD] == pytest.approx(50.0)
    assert discarded[ResourceType.WOOD] == pytest.approx(30.0)
    assert credited[ResourceType.STONE] == pytest.approx(30.0)
    assert discarded[ResourceType.STONE] == pytest.approx(15.0)
    ledgers = state.get_ledger("empire-1")
    assert ledgers[ResourceType.WOOD].accumulated == pytest.approx(50.0)
    assert ledgers[ResourceType.WOOD].last_produced_at == t0


def test_credit_production_is_all_or_nothing(state, t0):
    state.create_subject("empire-1", "First", now=t0)
    with pytest.raises(ValueError):
        state.credit_production("empire-1", {ResourceType.WOOD: 10.0, "mana": 5.0}, t0)

    wood = state.get_ledger("empire-1")[ResourceType.WOOD]
    assert wood.accumulated == 0.0
    assert wood.last_produced_at is None


def test_collect_moves_whole_units_up_to_storage_cap(state, t0):
    state.create_subject("empire-1", "First", now=t0)
    state.set_storage_cap("empire-1", ResourceType.FOOD, 130)
    state.credit_production("empire-1", {ResourceType.WOOD: 12.75, ResourceType.FOOD: 25.0}, t0)
    state.set_storage_cap("empire-1", ResourceType.FOOD, 110)

    moved = state.collect_resources("empire-1")

    assert moved == {ResourceType.WOOD: 12, ResourceType.FOOD: 10}
    ledgers = state.get_ledger("empire-1")
    assert ledgers[ResourceType.WOOD].amount == 112
    assert ledgers[ResourceType.WOOD].accumulated == pytest.approx(0.75)
    assert ledgers[ResourceType.FOOD].amount == 110
    assert ledgers[ResourceType.FOOD].accumulated == pytest.approx(15.0)


def test_deduct_resources_is_atomic(state, t0):
    state.create_subject("empire-1", "First", now=t0)
    with pytest.raises(ValueError):
        state.deduct_resources("empire-1", {ResourceType.WOOD: 50, ResourceType.GOLD: 500})
    assert state.get_ledger("empire-1")[ResourceType.WOOD].amount == 100

    state.deduct_resources("empire-1", {ResourceType.WOOD: 50, ResourceType.GOLD: 20})
    ledgers = state.get_ledger("empire-1")
    assert ledgers[ResourceType.WOOD].amount == 50
    assert ledgers[ResourceType.GOLD].amount == 80


def test_production_sources_sum_per_resource(state, t0):
    state.create_subject("empire-1", "First", now=t0)
    state.set_production_source("empire-1", "sawmill-1", ResourceType.WOOD, 60)
    state.set_production_source("empire-1", "sawmill-2", ResourceType.WOOD, 60)
    state.set_production_source("empire-1", "farm-1", ResourceType.FOOD, 30)
    assert state.base_rates("empire-1") == {ResourceType.WOOD: 120.0, ResourceType.FOOD: 30.0}

    assert state.remove_production_source("empire-1", "sawmill-2") == 1
    assert state.base_rates("empire-1")[ResourceType.WOOD] == 60.0


def test_units_accumulate(state, t0):
    state.create_subject("empire-1", "First", now=t0)
    assert state.credit_units("empire-1", "archer", 5) == 5
    assert state.credit_units("empire-1", "archer", 3) == 8
    assert state.get_units("empire-1") == {"archer": 8}
