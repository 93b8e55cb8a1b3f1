"""Tests for jobs/reaper.py - background lease reclamation."""

import time
from unittest.mock import Mock

from conftest import make_job
from jobs.job_types import JobStatus
from jobs.reaper import LeaseReaper


def test_sweep_requeues_expired(store, clock):
    job = store.submit(make_job())
    store.claim("desktop-1", "desktop")
    clock.advance(301)

    reaper = LeaseReaper(store)
    released = reaper.sweep()

    assert [j.job_id for j in released] == [job.job_id]
    assert store.get(job.job_id).status == JobStatus.QUEUED


def test_on_terminal_only_for_failed(store, clock):
    requeued = store.submit(make_job(max_attempts=3))
    exhausted = store.submit(make_job(max_attempts=1))
    store.claim("desktop-1", "desktop")
    store.claim("desktop-2", "desktop")
    clock.advance(301)

    callback = Mock()
    LeaseReaper(store, on_terminal=callback).sweep()

    callback.assert_called_once()
    failed = callback.call_args[0][0]
    assert failed.job_id == exhausted.job_id
    assert failed.status == JobStatus.FAILED
    assert store.get(requeued.job_id).status == JobStatus.QUEUED


def test_callback_error_does_not_stop_sweep(store, clock):
    ids = {store.submit(make_job(max_attempts=1)).job_id for _ in range(2)}
    store.claim("d1", "desktop")
    store.claim("d2", "desktop")
    clock.advance(301)

    callback = Mock(side_effect=RuntimeError("webhook exploded"))
    released = LeaseReaper(store, on_terminal=callback).sweep()

    assert {j.job_id for j in released} == ids
    assert callback.call_count == 2


def test_sweep_with_nothing_expired(store):
    store.submit(make_job())
    store.claim("desktop-1", "desktop")
    assert LeaseReaper(store).sweep() == []


def test_thread_start_stop():
    store = Mock()
    store.expire_stale_leases.return_value = []

    reaper = LeaseReaper(store, interval=0.01)
    reaper.start()
    assert reaper.running

    deadline = time.time() + 5
    while store.expire_stale_leases.call_count < 2 and time.time() < deadline:
        time.sleep(0.01)
    reaper.stop()

    assert not reaper.running
    assert store.expire_stale_leases.call_count >= 2


def test_loop_survives_store_errors():
    store = Mock()
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("database is locked")
        return []

    store.expire_stale_leases.side_effect = flaky

    reaper = LeaseReaper(store, interval=0.01)
    reaper.start()

    deadline = time.time() + 5
    while store.expire_stale_leases.call_count < 2 and time.time() < deadline:
        time.sleep(0.01)
    reaper.stop()

    assert store.expire_stale_leases.call_count >= 2
