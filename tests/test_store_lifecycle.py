"""Tests for SQLiteJobStore lease lifecycle: renew, release, progress, finalize, cancel."""

import unittest
from datetime import timedelta

import pytest

from conftest import FakeClock, make_job
from core.config import SchedulerConfig
from jobs.errors import InvalidSignature, JobStateError, NotFoundError
from jobs.job_types import (
    EncodeResult,
    EncodingMode,
    JobEventType,
    JobStatus,
    UserEncodingSettings,
)
from jobs.store import SQLiteJobStore


def _claim(store, encoder_id="desktop-1", encoder_type="desktop"):
    result = store.claim(encoder_id, encoder_type)
    assert result.claimed
    return result


def _result(**overrides):
    fields = dict(
        output_cid="QmOutput",
        qualities_encoded=["1080p", "720p", "480p"],
        processing_time_sec=42.5,
        output_size_bytes=1024,
    )
    fields.update(overrides)
    return EncodeResult(**fields)


class TestRenew:
    def test_renew_extends_from_now(self, store, clock):
        job = store.submit(make_job())
        claim = _claim(store)

        clock.advance(200)
        expires = store.renew_lease(job.job_id, claim.lease_id)

        assert expires == clock() + timedelta(seconds=300)
        assert store.get(job.job_id).lease_expires_at == expires

    def test_renew_with_wrong_lease(self, store):
        job = store.submit(make_job())
        _claim(store)
        assert store.renew_lease(job.job_id, "not-the-lease") is None

    def test_renew_after_release(self, store):
        job = store.submit(make_job())
        claim = _claim(store)
        store.release(job.job_id, "boom", expected_lease_id=claim.lease_id)
        assert store.renew_lease(job.job_id, claim.lease_id) is None

    def test_renewed_lease_is_not_reaped(self, store, clock):
        job = store.submit(make_job())
        claim = _claim(store)

        clock.advance(200)
        store.renew_lease(job.job_id, claim.lease_id)
        clock.advance(200)

        assert store.expire_stale_leases() == []
        assert store.get(job.job_id).status == JobStatus.ASSIGNED


class TestRelease:
    def test_backoff_doubles(self, store, clock):
        job = store.submit(make_job(max_attempts=4))

        for attempt, delay in [(1, 30), (2, 60), (3, 120)]:
            claim = _claim(store)
            released = store.release(job.job_id, "worker crashed", expected_lease_id=claim.lease_id)

            assert released.status == JobStatus.QUEUED
            assert released.attempts == attempt
            assert released.next_retry_at == clock() + timedelta(seconds=delay)
            clock.advance(delay)

    def test_release_clears_assignment(self, store):
        job = store.submit(make_job())
        claim = _claim(store)
        store.update_progress(job.job_id, claim.lease_id, "encoding_1080p", 50)

        released = store.release(job.job_id, "network down", expected_lease_id=claim.lease_id)

        assert released.assigned_encoder_id is None
        assert released.lease_id is None
        assert released.lease_expires_at is None
        assert released.progress == 0
        assert released.current_stage is None
        assert released.last_error == "network down"
        assert store.get_encoder("desktop-1").jobs_in_progress == 0

    def test_exhausted_attempts_fail(self, store, clock):
        job = store.submit(make_job(max_attempts=2))

        claim = _claim(store)
        store.release(job.job_id, "first", expected_lease_id=claim.lease_id)
        clock.advance(30)
        claim = _claim(store)
        failed = store.release(job.job_id, "second", expected_lease_id=claim.lease_id)

        assert failed.status == JobStatus.FAILED
        assert failed.attempts == 2
        assert failed.error_message == "second"
        assert failed.completed_at == clock()
        assert failed.lease_expires_at is None

        last = store.get_events(job.job_id)[-1]
        assert last.event_type == JobEventType.FAILED
        assert last.details["max_attempts_reached"] is True

    def test_stale_lease_id_is_ignored(self, store):
        job = store.submit(make_job())
        _claim(store)
        assert store.release(job.job_id, "boom", expected_lease_id="old") is None
        assert store.get(job.job_id).status == JobStatus.ASSIGNED

    def test_release_of_queued_job_is_noop(self, store):
        job = store.submit(make_job())
        assert store.release(job.job_id, "boom") is None
        assert store.get(job.job_id).attempts == 0

    def test_unknown_job(self, store):
        with pytest.raises(NotFoundError):
            store.release("missing", "boom")


class TestLeaseExpiry:
    def test_three_expiries_end_in_failure(self, store, clock):
        job = store.submit(make_job(max_attempts=3))

        _claim(store)
        clock.advance(301)
        [released] = store.expire_stale_leases()
        assert released.status == JobStatus.QUEUED
        assert released.attempts == 1
        assert released.next_retry_at == clock() + timedelta(seconds=30)

        clock.advance(31)
        _claim(store)
        clock.advance(301)
        [released] = store.expire_stale_leases()
        assert released.status == JobStatus.QUEUED
        assert released.attempts == 2
        assert released.next_retry_at == clock() + timedelta(seconds=60)

        clock.advance(61)
        _claim(store)
        clock.advance(301)
        [released] = store.expire_stale_leases()
        assert released.status == JobStatus.FAILED
        assert released.attempts == 3
        assert released.error_message == "Lease expired"

        assert store.get(job.job_id).status == JobStatus.FAILED

    def test_live_lease_untouched(self, store, clock):
        job = store.submit(make_job())
        _claim(store)
        clock.advance(300)
        assert store.expire_stale_leases() == []
        assert store.get(job.job_id).status == JobStatus.ASSIGNED

    def test_processing_jobs_are_reaped(self, store, clock):
        job = store.submit(make_job())
        claim = _claim(store)
        store.update_progress(job.job_id, claim.lease_id, "encoding_720p", 10)

        clock.advance(301)
        [released] = store.expire_stale_leases()
        assert released.job_id == job.job_id
        assert released.last_error == "Lease expired"

    def test_completed_jobs_never_reaped(self, store, clock):
        job = store.submit(make_job())
        claim = _claim(store)
        store.mark_complete(job.job_id, claim.lease_id, _result())

        clock.advance(10_000)
        assert store.expire_stale_leases() == []
        assert store.get(job.job_id).status == JobStatus.COMPLETED


class TestProgress:
    def test_stage_sets_status_and_progress(self, store, clock):
        job = store.submit(make_job())
        claim = _claim(store)

        updated = store.update_progress(job.job_id, claim.lease_id, "downloading", 50)
        assert updated.status == JobStatus.DOWNLOADING
        assert updated.progress == 5
        assert updated.current_stage == "downloading"
        assert updated.stage_progress == 50
        assert updated.started_at == clock()

        clock.advance(10)
        updated = store.update_progress(job.job_id, claim.lease_id, "encoding_720p", 100)
        assert updated.status == JobStatus.ENCODING
        assert updated.progress == 65
        assert updated.started_at == clock() - timedelta(seconds=10)

    def test_progress_never_decreases(self, store):
        job = store.submit(make_job())
        claim = _claim(store)
        store.update_progress(job.job_id, claim.lease_id, "encoding_720p", 100)

        updated = store.update_progress(job.job_id, claim.lease_id, "downloading", 50)
        assert updated.progress == 65
        assert updated.current_stage == "downloading"

    def test_unknown_stage_keeps_status(self, store):
        job = store.submit(make_job())
        claim = _claim(store)
        updated = store.update_progress(job.job_id, claim.lease_id, "thumbnailing", 30)
        assert updated.status == JobStatus.ASSIGNED
        assert updated.progress == 30

    def test_unknown_stage_leaves_started_at_unset(self, store, clock):
        job = store.submit(make_job())
        claim = _claim(store)
        updated = store.update_progress(job.job_id, claim.lease_id, "thumbnailing", 30)
        assert updated.started_at is None

        clock.advance(5)
        updated = store.update_progress(job.job_id, claim.lease_id, "downloading", 10)
        assert updated.started_at == clock()

    def test_status_change_events(self, store):
        job = store.submit(make_job())
        claim = _claim(store)
        store.update_progress(job.job_id, claim.lease_id, "encoding_1080p", 10)
        store.update_progress(job.job_id, claim.lease_id, "encoding_1080p", 90)
        store.update_progress(job.job_id, claim.lease_id, "uploading", 0)

        changes = [
            (e.previous_status, e.new_status)
            for e in store.get_events(job.job_id)
            if e.event_type == JobEventType.STATUS_CHANGED
        ]
        assert changes == [("assigned", "encoding"), ("encoding", "uploading")]

    def test_wrong_lease(self, store):
        job = store.submit(make_job())
        _claim(store)
        with pytest.raises(InvalidSignature):
            store.update_progress(job.job_id, "other", "downloading", 10)

    def test_queued_job(self, store):
        job = store.submit(make_job())
        with pytest.raises(JobStateError):
            store.update_progress(job.job_id, "any", "downloading", 10)


class TestFinalize:
    def test_complete(self, store, clock):
        job = store.submit(make_job())
        claim = _claim(store)

        done = store.mark_complete(job.job_id, claim.lease_id, _result())

        assert done.status == JobStatus.COMPLETED
        assert done.progress == 100
        assert done.output_cid == "QmOutput"
        assert done.video_url == "ipfs://QmOutput/master.m3u8"
        assert done.qualities_encoded == ["1080p", "720p", "480p"]
        assert done.processing_time_sec == 42.5
        assert done.completed_at == clock()
        assert done.lease_expires_at is None

        encoder = store.get_encoder("desktop-1")
        assert encoder.jobs_completed == 1
        assert encoder.jobs_in_progress == 0
        assert encoder.success_rate == 100.0
        assert encoder.reputation_score == 500

    def test_complete_twice(self, store):
        job = store.submit(make_job())
        claim = _claim(store)
        store.mark_complete(job.job_id, claim.lease_id, _result())

        with pytest.raises(JobStateError):
            store.mark_complete(job.job_id, claim.lease_id, _result())

    def test_complete_with_stale_lease(self, store, clock):
        job = store.submit(make_job())
        old = _claim(store, "desktop-1")
        store.release(job.job_id, "crash", expected_lease_id=old.lease_id)
        clock.advance(30)
        _claim(store, "desktop-2")

        with pytest.raises(InvalidSignature):
            store.mark_complete(job.job_id, old.lease_id, _result())
        assert store.get(job.job_id).assigned_encoder_id == "desktop-2"

    def test_fail_is_terminal(self, store):
        job = store.submit(make_job(max_attempts=5))
        claim = _claim(store)

        failed = store.mark_failed(job.job_id, claim.lease_id, "Unsupported codec")

        assert failed.status == JobStatus.FAILED
        assert failed.error_message == "Unsupported codec"
        assert failed.attempts == 0

        encoder = store.get_encoder("desktop-1")
        assert encoder.jobs_failed == 1
        assert encoder.jobs_in_progress == 0
        assert encoder.success_rate == 0.0
        assert encoder.reputation_score == 475

    def test_reputation_accumulates(self, store, clock):
        for _ in range(3):
            job = store.submit(make_job())
            claim = _claim(store)
            store.mark_complete(job.job_id, claim.lease_id, _result())

        job = store.submit(make_job())
        claim = _claim(store)
        store.mark_failed(job.job_id, claim.lease_id, "corrupt input")

        encoder = store.get_encoder("desktop-1")
        assert encoder.jobs_completed == 3
        assert encoder.jobs_failed == 1
        assert encoder.success_rate == pytest.approx(75.0)
        assert encoder.reputation_score == 475


class TestCancel(unittest.TestCase):
    def setUp(self):
        import tempfile
        from pathlib import Path

        self.tmp = tempfile.TemporaryDirectory()
        self.clock = FakeClock()
        self.store = SQLiteJobStore(
            Path(self.tmp.name) / "jobs.db", config=SchedulerConfig(), clock=self.clock
        )

    def tearDown(self):
        self.store.close()
        self.tmp.cleanup()

    def test_owner_cancels_queued(self):
        job = self.store.submit(make_job(owner="alice"))

        self.assertTrue(self.store.cancel(job.job_id, "alice"))

        cancelled = self.store.get(job.job_id)
        self.assertEqual(cancelled.status, JobStatus.CANCELLED)
        self.assertEqual(cancelled.error_message, "Cancelled by owner: alice")
        self.assertEqual(cancelled.completed_at, self.clock())

    def test_non_owner_rejected(self):
        job = self.store.submit(make_job(owner="alice"))
        self.assertFalse(self.store.cancel(job.job_id, "mallory"))
        self.assertEqual(self.store.get(job.job_id).status, JobStatus.QUEUED)

    def test_unknown_job(self):
        with self.assertRaises(NotFoundError):
            self.store.cancel("missing", "alice")

    def test_terminal_job_unchanged(self):
        job = self.store.submit(make_job())
        claim = self.store.claim("desktop-1", "desktop")
        self.store.mark_complete(job.job_id, claim.lease_id, _result())
        before = self.store.get(job.job_id)

        self.assertFalse(self.store.cancel(job.job_id, "alice"))

        after = self.store.get(job.job_id)
        self.assertEqual(after.status, JobStatus.COMPLETED)
        self.assertEqual(after.updated_at, before.updated_at)
        self.assertIsNone(after.error_message)

    def test_cancel_twice(self):
        job = self.store.submit(make_job())
        self.assertTrue(self.store.cancel(job.job_id, "alice"))
        self.assertFalse(self.store.cancel(job.job_id, "alice"))

    def test_cancel_active_job_refuses_late_reports(self):
        job = self.store.submit(make_job())
        claim = self.store.claim("desktop-1", "desktop")

        self.assertTrue(self.store.cancel(job.job_id, "alice"))
        self.assertEqual(self.store.get_encoder("desktop-1").jobs_in_progress, 0)

        with self.assertRaises(JobStateError):
            self.store.mark_complete(job.job_id, claim.lease_id, _result())
        with self.assertRaises(JobStateError):
            self.store.update_progress(job.job_id, claim.lease_id, "uploading", 10)
        self.assertIsNone(self.store.renew_lease(job.job_id, claim.lease_id))

    def test_cancelled_job_not_reaped(self):
        job = self.store.submit(make_job())
        self.store.claim("desktop-1", "desktop")
        self.store.cancel(job.job_id, "alice")

        self.clock.advance(1000)
        self.assertEqual(self.store.expire_stale_leases(), [])


class TestQueries:
    def test_queue_stats(self, store):
        ids = [store.submit(make_job()).job_id for _ in range(5)]
        first = _claim(store)
        second = _claim(store)
        store.update_progress(second.job.job_id, second.lease_id, "encoding", 10)
        store.cancel(ids[4], "alice")

        stats = store.get_queue_stats()
        assert stats.queued == 2
        assert stats.assigned == 1
        assert stats.processing == 1
        assert stats.cancelled == 1
        assert stats.total_pending == 4

        store.mark_complete(first.job.job_id, first.lease_id, _result())
        assert store.get_queue_stats().completed == 1

    def test_list_by_owner_newest_first(self, store, clock):
        older = store.submit(make_job(owner="alice"))
        clock.advance(5)
        newer = store.submit(make_job(owner="alice"))
        store.submit(make_job(owner="bob"))

        jobs = store.list_jobs_by_owner("alice")
        assert [j.job_id for j in jobs] == [newer.job_id, older.job_id]
        assert len(store.list_jobs_by_owner("alice", limit=1)) == 1

    def test_next_jobs_in_claim_order(self, store):
        low = store.submit(make_job(priority=0))
        high = store.submit(make_job(priority=3))
        claimed = store.submit(make_job(priority=9))
        _claim(store)

        assert [j.job_id for j in store.get_next_jobs()] == [high.job_id, low.job_id]
        assert claimed.job_id not in [j.job_id for j in store.get_next_jobs()]

    def test_event_history(self, store):
        job = store.submit(make_job())
        claim = _claim(store)
        store.update_progress(job.job_id, claim.lease_id, "downloading", 0)
        store.mark_complete(job.job_id, claim.lease_id, _result())

        assert [e.event_type for e in store.get_events(job.job_id)] == [
            JobEventType.CREATED,
            JobEventType.ASSIGNED,
            JobEventType.STATUS_CHANGED,
            JobEventType.COMPLETED,
        ]

    def test_webhook_delivered_flag(self, store):
        job = store.submit(make_job())
        assert not store.get(job.job_id).webhook_delivered
        store.set_webhook_delivered(job.job_id)
        assert store.get(job.job_id).webhook_delivered


class TestUserSettings:
    def test_missing(self, store):
        assert store.get_user_settings("nobody") is None

    def test_upsert(self, store):
        store.set_user_settings(UserEncodingSettings(
            username="alice",
            preferred_mode=EncodingMode.SELF,
            webhook_url="https://example.com/hook",
            desktop_agent_enabled=True,
            desktop_agent_endpoint="http://alice.local:3002",
        ))
        store.set_user_settings(UserEncodingSettings(username="alice", preferred_mode=EncodingMode.COMMUNITY))

        settings = store.get_user_settings("alice")
        assert settings.preferred_mode == EncodingMode.COMMUNITY
        assert settings.webhook_url is None
        assert not settings.desktop_agent_enabled
