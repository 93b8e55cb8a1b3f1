"""
Job Types - Data model for distributed encoding jobs.

This module defines the job, encoder and event records shared by the
store, the orchestrator and the HTTP API.

Usage:
    from jobs.job_types import JobSubmission, EncodingMode, EncoderType

    submission = JobSubmission(
        owner="alice",
        permlink="my-first-video",
        input_cid="QmInput...",
        input_size_bytes=12_000_000,
        encoding_mode=EncodingMode.AUTO,
    )

    result = orchestrator.submit(submission)
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from jobs.errors import ValidationError


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class JobStatus(str, Enum):
    """Status of an encoding job."""
    QUEUED = "queued"              # Waiting for a worker
    ASSIGNED = "assigned"          # Leased to a worker, no progress yet
    DOWNLOADING = "downloading"    # Worker fetching the input
    ENCODING = "encoding"          # Transcoding in progress
    UPLOADING = "uploading"        # Publishing the output
    COMPLETED = "completed"        # Finished successfully
    FAILED = "failed"              # Attempts exhausted or non-retryable error
    CANCELLED = "cancelled"        # Cancelled by owner

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        """Whether a job in this status holds a lease."""
        return self in ACTIVE_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})

ACTIVE_STATUSES = frozenset({
    JobStatus.ASSIGNED,
    JobStatus.DOWNLOADING,
    JobStatus.ENCODING,
    JobStatus.UPLOADING,
})

PROCESSING_STATUSES = frozenset({JobStatus.DOWNLOADING, JobStatus.ENCODING, JobStatus.UPLOADING})


class EncodingMode(str, Enum):
    """Who is allowed to encode a job."""
    SELF = "self"              # Owner's own desktop agent
    COMMUNITY = "community"    # Community encoder nodes
    AUTO = "auto"              # Any capable worker


class EncoderType(str, Enum):
    """Kinds of workers that poll for jobs."""
    DESKTOP = "desktop"
    BROWSER = "browser"
    COMMUNITY = "community"


class JobEventType(str, Enum):
    """
    Event types for the job audit trail.

    Every state transition is recorded as an event. Events are for
    debugging and audit only; scheduling never reads them back.
    """
    CREATED = "created"
    ASSIGNED = "assigned"
    STATUS_CHANGED = "status_changed"  # Progress moved the job to a new processing state
    RETRIED = "retried"                # Released back to the queue with backoff
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class JobSubmission:
    """
    Request to encode a piece of content.

    Optional fields fall back to the owner's stored settings and then
    to engine defaults when the orchestrator resolves them.
    """
    owner: str
    permlink: str
    input_cid: str
    input_size_bytes: Optional[int] = None
    is_short: Optional[bool] = None
    encoding_mode: Optional[EncodingMode] = None
    priority: int = 0
    webhook_url: Optional[str] = None
    original_filename: Optional[str] = None
    max_attempts: Optional[int] = None

    def validate(self) -> None:
        """Raise ValidationError if the submission is malformed."""
        for name in ("owner", "permlink", "input_cid"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value.strip():
                raise ValidationError(f"'{name}' is required", field=name)

        if self.encoding_mode is not None and not isinstance(self.encoding_mode, EncodingMode):
            try:
                self.encoding_mode = EncodingMode(self.encoding_mode)
            except ValueError:
                raise ValidationError(
                    f"Invalid encoding_mode: {self.encoding_mode}", field="encoding_mode"
                )

        if self.input_size_bytes is not None:
            if isinstance(self.input_size_bytes, bool) or not isinstance(self.input_size_bytes, int):
                raise ValidationError("'input_size_bytes' must be an integer", field="input_size_bytes")
            if self.input_size_bytes < 0:
                raise ValidationError("'input_size_bytes' must be >= 0", field="input_size_bytes")

        if self.is_short is not None and not isinstance(self.is_short, bool):
            raise ValidationError("'is_short' must be a boolean", field="is_short")

        if isinstance(self.priority, bool) or not isinstance(self.priority, int):
            raise ValidationError("'priority' must be an integer", field="priority")

        if self.max_attempts is not None:
            if isinstance(self.max_attempts, bool) or not isinstance(self.max_attempts, int):
                raise ValidationError("'max_attempts' must be an integer", field="max_attempts")
            if self.max_attempts < 1:
                raise ValidationError("'max_attempts' must be >= 1", field="max_attempts")

        if self.webhook_url is not None:
            if not isinstance(self.webhook_url, str) or not self.webhook_url.startswith(("http://", "https://")):
                raise ValidationError("'webhook_url' must be an http(s) URL", field="webhook_url")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobSubmission":
        missing = [k for k in ("owner", "permlink", "input_cid") if k not in data]
        if missing:
            raise ValidationError(f"Missing fields: {', '.join(missing)}", field=missing[0])
        return cls(
            owner=data["owner"],
            permlink=data["permlink"],
            input_cid=data["input_cid"],
            input_size_bytes=data.get("input_size_bytes"),
            is_short=data.get("is_short"),
            encoding_mode=data.get("encoding_mode"),
            priority=data.get("priority", 0),
            webhook_url=data.get("webhook_url"),
            original_filename=data.get("original_filename"),
            max_attempts=data.get("max_attempts"),
        )


@dataclass
class EncodeResult:
    """Output reported by a worker when it finishes a job."""
    output_cid: str
    qualities_encoded: List[str] = field(default_factory=list)
    processing_time_sec: float = 0
    output_size_bytes: Optional[int] = None

    @property
    def video_url(self) -> str:
        """Manifest location of the encoded output."""
        return f"ipfs://{self.output_cid}/master.m3u8"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "output_cid": self.output_cid,
            "qualities_encoded": self.qualities_encoded,
            "processing_time_sec": self.processing_time_sec,
            "output_size_bytes": self.output_size_bytes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EncodeResult":
        output_cid = data.get("output_cid")
        if not output_cid or not isinstance(output_cid, str):
            raise ValidationError("'output_cid' is required", field="output_cid")
        qualities = data.get("qualities_encoded") or []
        if not isinstance(qualities, list):
            raise ValidationError("'qualities_encoded' must be a list", field="qualities_encoded")
        return cls(
            output_cid=output_cid,
            qualities_encoded=[str(q) for q in qualities],
            processing_time_sec=float(data.get("processing_time_sec") or 0),
            output_size_bytes=data.get("output_size_bytes"),
        )


@dataclass
class Job:
    """
    An encoding job with full lifecycle tracking.

    `webhook_secret` is server-side only; it is excluded from to_dict()
    unless explicitly requested.
    """
    job_id: str
    owner: str
    permlink: str
    input_cid: str
    webhook_secret: str
    status: JobStatus = JobStatus.QUEUED
    encoding_mode: EncodingMode = EncodingMode.AUTO
    is_short: bool = False
    priority: int = 0
    original_filename: Optional[str] = None
    input_size_bytes: Optional[int] = None

    progress: int = 0
    current_stage: Optional[str] = None
    stage_progress: Optional[int] = None

    assigned_encoder_id: Optional[str] = None
    encoder_type: Optional[EncoderType] = None
    assigned_at: Optional[datetime] = None
    lease_expires_at: Optional[datetime] = None
    lease_id: Optional[str] = None

    attempts: int = 0
    max_attempts: int = 3
    next_retry_at: Optional[datetime] = None
    last_error: Optional[str] = None
    error_message: Optional[str] = None

    webhook_url: Optional[str] = None
    webhook_delivered: bool = False

    output_cid: Optional[str] = None
    video_url: Optional[str] = None
    qualities_encoded: List[str] = field(default_factory=list)
    processing_time_sec: Optional[float] = None
    output_size_bytes: Optional[int] = None

    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def new_id(cls) -> str:
        return str(uuid.uuid4())

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self, include_secret: bool = False) -> Dict[str, Any]:
        data = {
            "job_id": self.job_id,
            "owner": self.owner,
            "permlink": self.permlink,
            "input_cid": self.input_cid,
            "original_filename": self.original_filename,
            "input_size_bytes": self.input_size_bytes,
            "is_short": self.is_short,
            "encoding_mode": self.encoding_mode.value,
            "status": self.status.value,
            "priority": self.priority,
            "progress": self.progress,
            "current_stage": self.current_stage,
            "stage_progress": self.stage_progress,
            "assigned_encoder_id": self.assigned_encoder_id,
            "encoder_type": self.encoder_type.value if self.encoder_type else None,
            "assigned_at": iso(self.assigned_at),
            "lease_expires_at": iso(self.lease_expires_at),
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "next_retry_at": iso(self.next_retry_at),
            "last_error": self.last_error,
            "error_message": self.error_message,
            "webhook_url": self.webhook_url,
            "webhook_delivered": self.webhook_delivered,
            "output_cid": self.output_cid,
            "video_url": self.video_url,
            "qualities_encoded": self.qualities_encoded,
            "processing_time_sec": self.processing_time_sec,
            "output_size_bytes": self.output_size_bytes,
            "created_at": iso(self.created_at),
            "started_at": iso(self.started_at),
            "completed_at": iso(self.completed_at),
            "updated_at": iso(self.updated_at),
        }
        if include_secret:
            data["webhook_secret"] = self.webhook_secret
        return data


@dataclass
class JobEvent:
    """
    A single event in a job's history.

    Events are immutable once recorded.
    """
    event_id: int
    job_id: str
    event_type: JobEventType
    previous_status: Optional[str]
    new_status: str
    timestamp: datetime
    encoder_id: Optional[str] = None
    details: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "job_id": self.job_id,
            "event_type": self.event_type.value,
            "previous_status": self.previous_status,
            "new_status": self.new_status,
            "encoder_id": self.encoder_id,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class Encoder:
    """Aggregate statistics for a worker identity."""
    encoder_id: str
    encoder_type: EncoderType
    jobs_completed: int = 0
    jobs_in_progress: int = 0
    jobs_failed: int = 0
    success_rate: float = 100.0
    reputation_score: int = 500
    first_seen_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "encoder_id": self.encoder_id,
            "encoder_type": self.encoder_type.value,
            "jobs_completed": self.jobs_completed,
            "jobs_in_progress": self.jobs_in_progress,
            "jobs_failed": self.jobs_failed,
            "success_rate": self.success_rate,
            "reputation_score": self.reputation_score,
            "first_seen_at": iso(self.first_seen_at),
            "last_seen_at": iso(self.last_seen_at),
        }


@dataclass
class UserEncodingSettings:
    """Per-user encoding preferences."""
    username: str
    preferred_mode: Optional[EncodingMode] = None
    webhook_url: Optional[str] = None
    desktop_agent_enabled: bool = False
    desktop_agent_endpoint: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "username": self.username,
            "preferred_mode": self.preferred_mode.value if self.preferred_mode else None,
            "webhook_url": self.webhook_url,
            "desktop_agent_enabled": self.desktop_agent_enabled,
            "desktop_agent_endpoint": self.desktop_agent_endpoint,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserEncodingSettings":
        username = data.get("username")
        if not username:
            raise ValidationError("'username' is required", field="username")
        mode = data.get("preferred_mode")
        try:
            preferred_mode = EncodingMode(mode) if mode else None
        except ValueError:
            raise ValidationError(f"Invalid preferred_mode: {mode}", field="preferred_mode")
        return cls(
            username=username,
            preferred_mode=preferred_mode,
            webhook_url=data.get("webhook_url"),
            desktop_agent_enabled=bool(data.get("desktop_agent_enabled", False)),
            desktop_agent_endpoint=data.get("desktop_agent_endpoint"),
        )


@dataclass
class QueueStats:
    """Job counts per status bucket."""
    queued: int = 0
    assigned: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0

    @property
    def total_pending(self) -> int:
        return self.queued + self.assigned + self.processing

    def to_dict(self) -> Dict[str, int]:
        return {
            "queued": self.queued,
            "assigned": self.assigned,
            "processing": self.processing,
            "completed": self.completed,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "total_pending": self.total_pending,
        }


@dataclass
class ClaimResult:
    """Outcome of a claim attempt. `job` is None when no work is available."""
    job: Optional[Job] = None
    lease_id: Optional[str] = None
    signature: Optional[str] = None

    @property
    def claimed(self) -> bool:
        return self.job is not None

    def to_dict(self) -> Dict[str, Any]:
        if not self.job:
            return {"claimed": False, "job": None}
        return {
            "claimed": True,
            "job": self.job.to_dict(),
            "lease_id": self.lease_id,
            "signature": self.signature,
        }


@dataclass
class SubmitResult:
    job_id: str
    status: JobStatus
    estimated_wait_sec: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status.value,
            "estimated_wait_sec": self.estimated_wait_sec,
        }


@dataclass
class EncoderStatus:
    """Availability of a user's worker, as seen by the scheduler."""
    encoder_type: EncoderType
    available: bool
    endpoint: Optional[str] = None
    last_seen: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.encoder_type.value,
            "available": self.available,
            "endpoint": self.endpoint,
            "last_seen": iso(self.last_seen),
        }
