"""
Encoding Orchestrator - Facade over the job store, reaper and notifier.

This is the surface the HTTP API calls. It resolves submission defaults
from user settings, signs leases handed to workers, verifies signatures
on every worker mutation, and emits webhooks after state changes.

Usage:
    orchestrator = EncodingOrchestrator()
    orchestrator.start()  # lease reaper

    result = orchestrator.submit(JobSubmission(owner="alice", permlink="p1", input_cid="Qm..."))

    claim = orchestrator.claim("agent-1", "desktop")
    orchestrator.report_progress(claim.job.job_id, "encoding_720p", 40, claim.signature)
    orchestrator.complete(claim.job.job_id, {"output_cid": "QmOut"}, claim.signature)
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

import requests

from core.config import SchedulerConfig, get_scheduler_config
from jobs.errors import InvalidSignature, JobStateError, NotFoundError, ValidationError
from jobs.job_types import (
    ClaimResult,
    EncodeResult,
    EncoderStatus,
    EncoderType,
    EncodingMode,
    Job,
    JobEvent,
    JobStatus,
    JobSubmission,
    QueueStats,
    SubmitResult,
    UserEncodingSettings,
    utcnow,
)
from jobs.reaper import LeaseReaper
from jobs.signing import generate_secret, sign_lease, verify_lease
from jobs.store import JobStore, get_store
from jobs.webhooks import TERMINAL_EVENTS, WebhookNotifier

logger = logging.getLogger("orchestrator")


class EncodingOrchestrator:
    """Lifecycle operations for encoding jobs."""

    def __init__(
        self,
        store: Optional[JobStore] = None,
        notifier: Optional[WebhookNotifier] = None,
        config: Optional[SchedulerConfig] = None,
        session: Optional[requests.Session] = None,
    ):
        self.config = config or get_scheduler_config()
        self.store = store or get_store()
        self.notifier = notifier or WebhookNotifier(self.config)
        self.session = session or requests.Session()
        self.reaper = LeaseReaper(
            self.store,
            interval=self.config.reaper_interval_sec,
            on_terminal=self._on_lease_exhausted,
        )

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self):
        """Start background lease reclamation."""
        self.reaper.start()

    def stop(self):
        self.reaper.stop()

    # =========================================================================
    # NOTIFICATION
    # =========================================================================

    def _notify(self, job: Job, event: str, data: Dict[str, Any]) -> bool:
        delivered = self.notifier.notify(job, event, data)
        if delivered and event in TERMINAL_EVENTS:
            self.store.set_webhook_delivered(job.job_id)
        return delivered

    def _on_lease_exhausted(self, job: Job):
        self._notify(job, "failed", {"error": job.error_message})

    # =========================================================================
    # SUBMISSION
    # =========================================================================

    def submit(self, submission: Union[JobSubmission, Dict[str, Any]]) -> SubmitResult:
        """
        Queue a new encoding job.

        Mode and webhook fall back to the owner's stored settings; is_short
        is inferred from input size when not given.

        Raises:
            ValidationError: before anything is written
        """
        if isinstance(submission, dict):
            submission = JobSubmission.from_dict(submission)
        submission.validate()

        settings = self.store.get_user_settings(submission.owner)

        mode = submission.encoding_mode
        if mode is None:
            mode = (settings.preferred_mode if settings else None) or EncodingMode.AUTO

        webhook_url = submission.webhook_url or (settings.webhook_url if settings else None)

        if submission.is_short is not None:
            is_short = submission.is_short
        elif submission.input_size_bytes:
            is_short = submission.input_size_bytes < self.config.short_video_threshold_bytes
        else:
            is_short = False

        job = Job(
            job_id=Job.new_id(),
            owner=submission.owner,
            permlink=submission.permlink,
            input_cid=submission.input_cid,
            webhook_secret=generate_secret(),
            encoding_mode=mode,
            is_short=is_short,
            priority=submission.priority,
            original_filename=submission.original_filename,
            input_size_bytes=submission.input_size_bytes,
            max_attempts=submission.max_attempts or self.config.default_max_attempts,
            webhook_url=webhook_url,
        )
        self.store.submit(job)

        stats = self.store.get_queue_stats()
        return SubmitResult(
            job_id=job.job_id,
            status=JobStatus.QUEUED,
            estimated_wait_sec=stats.total_pending * self.config.avg_job_duration_sec,
        )

    # =========================================================================
    # WORKER HEALTH
    # =========================================================================

    def check_worker_health(self, username: str) -> EncoderStatus:
        """
        Probe a user's desktop agent.

        Available only when the agent is enabled, reachable within the
        health-check timeout and reports status "ready". Never raises.
        """
        settings = self.store.get_user_settings(username)
        if not settings or not settings.desktop_agent_enabled or not settings.desktop_agent_endpoint:
            return EncoderStatus(encoder_type=EncoderType.DESKTOP, available=False)

        endpoint = settings.desktop_agent_endpoint.rstrip("/")
        try:
            response = self.session.get(
                f"{endpoint}/health",
                headers={"X-Hive-User": username},
                timeout=self.config.health_check_timeout_sec,
            )
            if not response.ok:
                return EncoderStatus(encoder_type=EncoderType.DESKTOP, available=False)
            health = response.json()
        except (requests.RequestException, ValueError) as e:
            logger.debug(f"Desktop agent health check for {username} failed: {e}")
            return EncoderStatus(encoder_type=EncoderType.DESKTOP, available=False)

        return EncoderStatus(
            encoder_type=EncoderType.DESKTOP,
            available=isinstance(health, dict) and health.get("status") == "ready",
            endpoint=settings.desktop_agent_endpoint,
            last_seen=utcnow(),
        )

    # =========================================================================
    # WORKER OPERATIONS
    # =========================================================================

    def claim(self, encoder_id: str, encoder_type: Union[str, EncoderType]) -> ClaimResult:
        """Claim the next eligible job and sign the lease for the worker."""
        if not encoder_id or not isinstance(encoder_id, str):
            raise ValidationError("'encoder_id' is required", field="encoder_id")

        result = self.store.claim(encoder_id, encoder_type)
        if result.claimed:
            result.signature = sign_lease(result.job.webhook_secret, result.job.job_id, result.lease_id)
        return result

    def _verify(self, job_id: str, signature: Optional[str]) -> Job:
        """Load a job and check the caller holds its current lease."""
        job = self.get_job(job_id)
        if not job.lease_id or not verify_lease(job.webhook_secret, job_id, job.lease_id, signature):
            logger.warning(f"Rejected unsigned or stale report for job {job_id}")
            raise InvalidSignature(job_id)
        return job

    def renew_lease(self, job_id: str, signature: str) -> datetime:
        """
        Extend the caller's lease.

        Returns:
            New lease expiry

        Raises:
            NotFoundError, InvalidSignature, JobStateError
        """
        job = self._verify(job_id, signature)
        expires = self.store.renew_lease(job_id, job.lease_id)
        if expires is None:
            current = self.get_job(job_id)
            raise JobStateError(job_id, current.status.value, "renew lease on")
        return expires

    def report_progress(self, job_id: str, stage: str, progress: float, signature: str) -> Job:
        if not stage or not isinstance(stage, str):
            raise ValidationError("'stage' is required", field="stage")
        if isinstance(progress, bool) or not isinstance(progress, (int, float)):
            raise ValidationError("'progress' must be a number", field="progress")

        job = self._verify(job_id, signature)
        updated = self.store.update_progress(job_id, job.lease_id, stage, progress)
        self._notify(updated, "progress", {"stage": stage, "progress": updated.progress})
        return updated

    def complete(
        self,
        job_id: str,
        result: Union[EncodeResult, Dict[str, Any]],
        signature: str,
    ) -> Job:
        """Finalize a job with the worker's output."""
        if isinstance(result, dict):
            result = EncodeResult.from_dict(result)

        job = self._verify(job_id, signature)
        completed = self.store.mark_complete(job_id, job.lease_id, result)
        self._notify(completed, "completed", {
            "outputCid": result.output_cid,
            "qualities": result.qualities_encoded,
            "videoUrl": result.video_url,
            "processingTimeSec": result.processing_time_sec,
        })
        return completed

    def fail(self, job_id: str, error: str, retryable: bool, signature: str) -> Job:
        """
        Report a failed attempt.

        Retryable failures release the job with backoff (or fail it once
        attempts run out); non-retryable failures are terminal.
        """
        if not error or not isinstance(error, str):
            raise ValidationError("'error' is required", field="error")

        job = self._verify(job_id, signature)

        if not retryable:
            failed = self.store.mark_failed(job_id, job.lease_id, error)
            self._notify(failed, "failed", {"error": error})
            return failed

        released = self.store.release(job_id, error, expected_lease_id=job.lease_id)
        if released is None:
            current = self.get_job(job_id)
            if current.lease_id != job.lease_id:
                raise InvalidSignature(job_id)
            raise JobStateError(job_id, current.status.value, "fail")

        if released.status == JobStatus.FAILED:
            self._notify(released, "failed", {"error": error})
        return released

    # =========================================================================
    # OWNER OPERATIONS
    # =========================================================================

    def cancel(self, job_id: str, requestor: str) -> bool:
        """Cancel a job. False if not the owner or already terminal."""
        if not self.store.cancel(job_id, requestor):
            return False

        job = self.get_job(job_id)
        self._notify(job, "cancelled", {"reason": "User cancelled"})
        return True

    def set_user_settings(
        self,
        settings: Union[UserEncodingSettings, Dict[str, Any]],
    ) -> UserEncodingSettings:
        if isinstance(settings, dict):
            settings = UserEncodingSettings.from_dict(settings)
        return self.store.set_user_settings(settings)

    def get_user_settings(self, username: str) -> Optional[UserEncodingSettings]:
        return self.store.get_user_settings(username)

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_job(self, job_id: str) -> Job:
        job = self.store.get(job_id)
        if job is None:
            raise NotFoundError(job_id)
        return job

    def get_jobs_by_owner(self, owner: str, limit: int = 50) -> List[Job]:
        return self.store.list_jobs_by_owner(owner, limit=limit)

    def get_queue_stats(self) -> QueueStats:
        return self.store.get_queue_stats()

    def get_next_jobs(self, limit: int = 10) -> List[Job]:
        return self.store.get_next_jobs(limit=limit)

    def get_job_events(self, job_id: str) -> List[JobEvent]:
        self.get_job(job_id)
        return self.store.get_events(job_id)
