"""Tests for the job dispatcher."""
from __future__ import annotations

from datetime import timedelta

import pytest

from empire_core import dispatcher as dispatcher_module
from empire_core.dispatcher import JobDispatcher, make_worker_id
from empire_core.errors import HandlerError, TransientStoreError
from empire_core.job_store import JobStore
from empire_core.models import JobKind, JobStatus
from empire_core.telemetry import get_telemetry


class FakeScheduler:
    """Records APScheduler calls without starting threads."""

    instances: list = []

    def __init__(self) -> None:
        self.jobs = {}
        self.started = False
        self.stopped = False
        self.modified = []
        FakeScheduler.instances.append(self)

    def add_job(self, func, trigger, **kwargs):
        self.jobs[kwargs["id"]] = (func, trigger, kwargs)

    def modify_job(self, job_id, **changes):
        self.modified.append((job_id, changes))

    def start(self):
        self.started = True

    def shutdown(self, wait=True):
        self.stopped = True


@pytest.fixture(autouse=True)
def fake_scheduler(monkeypatch):
    FakeScheduler.instances = []
    monkeypatch.setattr(dispatcher_module, "BackgroundScheduler", FakeScheduler)
    return FakeScheduler


@pytest.fixture
def store(tmp_path, settings):
    return JobStore(tmp_path / "jobs.db", settings=settings)


@pytest.fixture
def dispatcher(store, settings, clock):
    return JobDispatcher(store, settings=settings, clock=clock, worker_ids=["worker-a", "worker-b"])


def test_successful_handler_completes_job(dispatcher, store, t0):
    seen = []

    def handler(job, now):
        seen.append((job.payload["subject_id"], now))
        return {"ok": True}

    dispatcher.register_handler(JobKind.RESOURCE, handler)
    job_id = store.enqueue(JobKind.RESOURCE, {"subject_id": "empire-1"}, t0, now=t0)

    processed = dispatcher.run_once()

    assert processed.id == job_id
    assert processed.status is JobStatus.COMPLETED
    assert seen == [("empire-1", t0)]
    stored = store.get(job_id)
    assert stored.status is JobStatus.COMPLETED
    assert stored.result == {"ok": True}
    assert get_telemetry().get_job_outcome_summary() == {"resource": {"completed": 1}}


def test_handler_error_consumes_a_retry(dispatcher, store, t0):
    def handler(job, now):
        raise HandlerError("subject has no ledger")

    dispatcher.register_handler("resource", handler)
    job_id = store.enqueue("resource", {}, t0, now=t0)

    processed = dispatcher.run_once()

    assert processed.status is JobStatus.PENDING
    assert processed.retries == 1
    stored = store.get(job_id)
    assert stored.last_error == "subject has no ledger"
    assert stored.run_at > t0


def test_unexpected_exception_is_recorded_as_failure(dispatcher, store, t0):
    def handler(job, now):
        raise KeyError("wood")

    dispatcher.register_handler("resource", handler)
    job_id = store.enqueue("resource", {}, t0, max_retries=1, now=t0)

    processed = dispatcher.run_once()

    assert processed.status is JobStatus.FAILED
    assert store.get(job_id).last_error.startswith("KeyError")
    summary = get_telemetry().get_job_outcome_summary()
    assert summary["resource"] == {"failed": 1}


def test_only_registered_kinds_are_claimed(dispatcher, store, t0):
    store.enqueue("building", {}, t0, now=t0)
    assert dispatcher.run_once() is None

    dispatcher.register_handler("resource", lambda job, now: None)
    assert dispatcher.run_once() is None
    assert store.list_jobs()[0].status is JobStatus.PENDING


def test_drain_processes_every_due_job(dispatcher, store, clock, t0):
    dispatcher.register_handler("resource", lambda job, now: {"subject": job.payload["n"]})
    for n in range(3):
        store.enqueue("resource", {"n": n}, t0, now=t0)
    store.enqueue("resource", {"n": 99}, t0 + timedelta(hours=1), now=t0)

    processed = dispatcher.drain()

    assert [job.payload["n"] for job in processed] == [0, 1, 2]
    assert len(dispatcher.drain(limit=5)) == 0
    clock.advance(hours=1)
    assert [job.payload["n"] for job in dispatcher.drain()] == [99]


def test_reaped_job_is_rerun_and_stale_completion_ignored(store, settings, clock, t0):
    slow = JobDispatcher(store, settings=settings, clock=clock, worker_ids=["worker-slow"])
    fast = JobDispatcher(store, settings=settings, clock=clock, worker_ids=["worker-fast"])
    fast.register_handler("resource", lambda job, now: {"by": "fast"})
    job_id = store.enqueue("resource", {}, t0, timeout=60, now=t0)

    # The slow worker claims and then stalls past its lock timeout.
    claimed = store.claim_next("worker-slow", t0)
    assert claimed.id == job_id

    processed = fast.run_once(now=t0 + timedelta(seconds=61))
    assert processed.status is JobStatus.COMPLETED
    assert store.get(job_id).result == {"by": "fast"}

    slow.register_handler("resource", lambda job, now: {"by": "slow"})
    late = slow._execute(claimed, "worker-slow", t0 + timedelta(seconds=62))
    assert late.status is JobStatus.IN_PROGRESS
    assert store.get(job_id).result == {"by": "fast"}
    summary = get_telemetry().get_job_outcome_summary()
    assert summary["resource"]["reaped"] == 1
    assert summary["resource"]["lost_claim"] == 1


def test_transient_errors_are_retried(dispatcher, store, t0, monkeypatch):
    dispatcher.register_handler("resource", lambda job, now: None)
    store.enqueue("resource", {}, t0, now=t0)
    real_claim = store.claim_next
    calls = []

    def flaky_claim(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            raise TransientStoreError("database is locked")
        return real_claim(*args, **kwargs)

    monkeypatch.setattr(store, "claim_next", flaky_claim)

    assert dispatcher.run_once().status is JobStatus.COMPLETED
    assert len(calls) == 2


def test_start_registers_one_poller_per_worker(dispatcher, settings):
    dispatcher.start()
    dispatcher.start()

    assert len(FakeScheduler.instances) == 1
    scheduler = FakeScheduler.instances[0]
    assert scheduler.started
    assert set(scheduler.jobs) == {"dispatch:worker-a", "dispatch:worker-b"}
    func, trigger, kwargs = scheduler.jobs["dispatch:worker-a"]
    assert trigger == "interval"
    assert kwargs["seconds"] == settings.poll_interval_seconds
    assert kwargs["args"] == ["worker-a"]
    assert kwargs["max_instances"] == 1
    assert dispatcher.running

    dispatcher.shutdown()
    assert scheduler.stopped
    assert not dispatcher.running


def test_insert_of_handled_kind_wakes_workers(dispatcher, store, t0):
    dispatcher.register_handler("resource", lambda job, now: None)
    dispatcher.start()
    scheduler = FakeScheduler.instances[0]

    store.enqueue("building", {}, t0, now=t0)
    assert scheduler.modified == []

    store.enqueue("resource", {}, t0, now=t0)
    assert sorted(job_id for job_id, _ in scheduler.modified) == [
        "dispatch:worker-a",
        "dispatch:worker-b",
    ]


def test_tick_processes_jobs_for_one_worker(dispatcher, store, t0):
    dispatcher.register_handler("resource", lambda job, now: None)
    job_id = store.enqueue("resource", {}, t0, now=t0)

    dispatcher._tick("worker-b")

    assert store.get(job_id).status is JobStatus.COMPLETED


def test_dispatcher_generates_worker_ids(store, settings):
    dispatcher = JobDispatcher(store, settings=settings)
    assert len(dispatcher.worker_ids) == settings.dispatcher_workers
    assert all(worker.startswith(settings.worker_prefix + "-") for worker in dispatcher.worker_ids)
    assert make_worker_id("orc") != make_worker_id("orc")
