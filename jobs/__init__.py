"""
Jobs - Distributed encoding job leasing and lifecycle.

Components:
- JobStore: Central persistence for jobs, encoders and events (SQLite-backed)
- LeaseReaper: Reclaims leases from workers that went away
- WebhookNotifier: Signed, best-effort owner notifications
- EncodingOrchestrator: Facade used by the HTTP API
- EncodingJobClient: HTTP client for worker agents

Usage:
    from jobs import EncodingOrchestrator, JobSubmission

    orchestrator = EncodingOrchestrator()
    result = orchestrator.submit(JobSubmission(owner="alice", permlink="p1", input_cid="Qm..."))

Architecture:
    - All jobs go through the central store
    - Workers claim jobs with a compare-and-swap on the job row
    - Lease-based claiming with backoff for crash recovery
    - Every worker report carries an HMAC lease signature
"""

from jobs.store import (
    JobStore,
    SQLiteJobStore,
    get_store,
    reset_store,
)
from jobs.reaper import LeaseReaper
from jobs.webhooks import WebhookNotifier
from jobs.orchestrator import EncodingOrchestrator
from jobs.client import EncodingJobClient
from jobs.errors import (
    EncodingJobError,
    ValidationError,
    NotFoundError,
    LeaseConflict,
    InvalidSignature,
    JobStateError,
    RetryableFailure,
    TerminalFailure,
    WebhookDeliveryFailure,
)
from jobs.job_types import (
    Job,
    JobStatus,
    JobSubmission,
    EncodeResult,
    EncodingMode,
    EncoderType,
    ClaimResult,
    QueueStats,
)

__all__ = [
    # Store
    "JobStore",
    "SQLiteJobStore",
    "get_store",
    "reset_store",
    "LeaseReaper",
    # Facade and clients
    "EncodingOrchestrator",
    "WebhookNotifier",
    "EncodingJobClient",
    # Errors
    "EncodingJobError",
    "ValidationError",
    "NotFoundError",
    "LeaseConflict",
    "InvalidSignature",
    "JobStateError",
    "RetryableFailure",
    "TerminalFailure",
    "WebhookDeliveryFailure",
    # Types
    "Job",
    "JobStatus",
    "JobSubmission",
    "EncodeResult",
    "EncodingMode",
    "EncoderType",
    "ClaimResult",
    "QueueStats",
]
