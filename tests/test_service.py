"""End-to-end tests for the service facade."""
from __future__ import annotations

from datetime import timedelta

import pytest

from empire_core import EmpireService
from empire_core import dispatcher as dispatcher_module
from empire_core.errors import ConfigurationError, TransientStoreError
from empire_core.models import JobKind, JobStatus, ModifierSource, ModifierTarget, ResourceType
from empire_core.state import EmpireState


@pytest.fixture
def service(tmp_path, settings, clock):
    return EmpireService(tmp_path / "empire.db", settings, clock=clock, worker_ids=["worker-a"])


def test_faction_bonus_flows_into_production(service, clock, t0):
    service.create_subject("empire-1", "Woodland", faction="human", start_production=True)
    service.state.set_production_source("empire-1", "sawmill", ResourceType.WOOD, 120)

    assert service.get_effective_multiplier("empire-1", ModifierTarget.RESOURCE, "wood") == pytest.approx(1.15)

    first = service.run_pending()
    assert [job.status for job in first] == [JobStatus.COMPLETED]

    clock.advance(hours=1)
    second = service.run_pending()

    assert len(second) == 1
    assert second[0].result["credited"]["wood"] == pytest.approx(138.0)
    pending = service.jobs.list_jobs(kind=JobKind.RESOURCE, status=JobStatus.PENDING)
    assert len(pending) == 1
    assert pending[0].run_at == t0 + timedelta(hours=1, seconds=service.settings.production_interval_seconds)


def test_timed_modifier_expires_through_the_queue(service, clock):
    service.create_subject("empire-1", "First")
    active = service.apply_modifier(
        "empire-1",
        "goblin_population_production",
        source=ModifierSource.EVENT,
        duration=timedelta(minutes=30),
        reason="Spawning season",
    )
    assert service.get_effective_multiplier("empire-1", ModifierTarget.RESOURCE, "population") == pytest.approx(1.2)

    clock.advance(minutes=15)
    assert service.run_pending() == []

    clock.advance(minutes=16)
    processed = service.run_pending()

    assert [job.result["expired"] for job in processed] == [True]
    assert service.state.get_active_modifier(active.id) is None
    assert service.get_effective_multiplier("empire-1", ModifierTarget.RESOURCE, "population") == 1.0


def test_extending_a_modifier_defers_its_expiry(service, clock):
    service.create_subject("empire-1", "First")
    active = service.apply_modifier(
        "empire-1", "elf_food_production", source=ModifierSource.ITEM, duration=timedelta(minutes=10)
    )
    service.extend_modifier(active.id, service.now() + timedelta(hours=1))

    clock.advance(minutes=11)
    results = [job.result for job in service.run_pending()]

    assert results == [{"action": "expire", "expired": False}]
    assert service.get_effective_multiplier("empire-1", ModifierTarget.RESOURCE, "food") == pytest.approx(1.15)

    clock.advance(hours=1)
    assert [job.result["expired"] for job in service.run_pending()] == [True]


def test_remove_modifier_invalidates_cache(service):
    service.create_subject("empire-1", "First")
    active = service.apply_modifier("empire-1", "dwarf_gold_production", source=ModifierSource.SKILL)
    assert service.get_effective_multiplier("empire-1", ModifierTarget.RESOURCE, "gold") == pytest.approx(1.15)

    assert service.remove_modifier(active.id) is True
    assert service.remove_modifier(active.id) is False
    assert service.get_effective_multiplier("empire-1", ModifierTarget.RESOURCE, "gold") == 1.0


def test_unknown_names_are_rejected(service):
    with pytest.raises(ConfigurationError):
        service.create_subject("empire-1", "First", faction="pixie")
    assert service.state.get_subject("empire-1") is None

    service.create_subject("empire-1", "First")
    with pytest.raises(ValueError):
        service.apply_modifier("empire-1", "no_such_bonus", source=ModifierSource.EVENT)


def test_change_faction_updates_multipliers(service):
    service.create_subject("empire-1", "First", faction="orc")
    assert service.get_effective_multiplier("empire-1", ModifierTarget.RESOURCE, "stone") == pytest.approx(1.15)

    service.change_faction("empire-1", "dwarf")

    assert service.state.get_subject("empire-1").faction == "dwarf"
    assert service.get_effective_multiplier("empire-1", ModifierTarget.RESOURCE, "stone") == 1.0
    assert service.get_effective_multiplier("empire-1", ModifierTarget.RESOURCE, "gold") == pytest.approx(1.15)


def test_training_round_trip(service, clock):
    service.create_subject("empire-1", "First", faction="goblin")
    plan = service.train_units(
        "empire-1", "spearman", 2, base_seconds=120, costs={ResourceType.FOOD: 10}
    )
    assert plan["duration_seconds"] == pytest.approx(200.0)

    clock.advance(seconds=199)
    assert service.run_pending() == []
    clock.advance(seconds=1)
    assert [job.result["total"] for job in service.run_pending()] == [2]
    assert service.state.get_units("empire-1") == {"spearman": 2}


def test_custom_handlers_and_cancellation(service, clock):
    calls = []
    assert "building" not in {kind.value for kind in JobKind}
    service.register_handler("building", lambda job, now: calls.append(job.payload) or {"built": True})
    keep = service.enqueue_job("building", {"what": "wall"}, service.now())
    dropped = service.enqueue_job("building", {"what": "moat"}, service.now() + timedelta(hours=1))

    assert service.cancel_job(dropped) is True
    service.run_pending()
    clock.advance(hours=2)
    service.run_pending()

    assert calls == [{"what": "wall"}]
    assert service.get_job(keep).result == {"built": True}
    assert service.get_job(dropped).status is JobStatus.CANCELLED


def test_start_and_shutdown_use_background_scheduler(service, monkeypatch):
    class FakeScheduler:
        def __init__(self):
            self.jobs = []
            self.running = False

        def add_job(self, func, trigger, **kwargs):
            self.jobs.append(kwargs["id"])

        def modify_job(self, job_id, **changes):
            pass

        def start(self):
            self.running = True

        def shutdown(self, wait=True):
            self.running = False

    monkeypatch.setattr(dispatcher_module, "BackgroundScheduler", FakeScheduler)
    service.start()
    assert service.dispatcher.running
    service.shutdown()
    assert not service.dispatcher.running


def test_failed_faction_setup_leaves_no_subject(service, monkeypatch):
    def broken_insert(self, conn, active, *, reason):
        raise TransientStoreError("database is locked")

    with monkeypatch.context() as patch:
        patch.setattr(EmpireState, "_insert_active", broken_insert)
        with pytest.raises(TransientStoreError):
            service.create_subject("empire-1", "Woodland", faction="human")

    assert service.state.get_subject("empire-1") is None
    assert service.state.list_active_modifiers("empire-1") == []
    with pytest.raises(ValueError):
        service.state.get_ledger("empire-1")

    subject = service.create_subject("empire-1", "Woodland", faction="human")

    assert subject.faction == "human"
    assert service.state.get_subject("empire-1").faction == "human"
    assert service.get_effective_multiplier("empire-1", ModifierTarget.RESOURCE, "wood") == pytest.approx(1.15)
