"""
Encoding job errors - Exception hierarchy for the leasing engine.

Usage:
    from jobs.errors import NotFoundError, InvalidSignature

    try:
        orchestrator.complete(job_id, result, signature)
    except InvalidSignature:
        # Worker does not hold the current lease
        ...
    except JobStateError as e:
        # Job already terminal (cancelled while the worker was encoding)
        logger.warning(f"Report rejected: {e}")

Propagation:
    - ValidationError is raised before any store write
    - LeaseConflict never leaves the claim loop
    - WebhookDeliveryFailure never leaves the notifier
    - sqlite3 errors propagate from the operation that hit them
"""

from typing import Optional


class EncodingJobError(Exception):
    """Base error for the encoding job engine."""
    pass


class ValidationError(EncodingJobError):
    """Malformed submission or request argument."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class NotFoundError(EncodingJobError):
    """Operation on an unknown job id."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class LeaseConflict(EncodingJobError):
    """Another claimer won the compare-and-swap on a candidate job."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Lost claim race for job {job_id}")


class InvalidSignature(EncodingJobError):
    """Caller's signature does not match the job's current lease."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Invalid lease signature for job {job_id}")


class JobStateError(EncodingJobError):
    """Transition rejected because the job is not in an expected state."""

    def __init__(self, job_id: str, status: str, action: str):
        self.job_id = job_id
        self.status = status
        self.action = action
        super().__init__(f"Cannot {action} job {job_id} in status '{status}'")


class RetryableFailure(EncodingJobError):
    """Encoding failed but may succeed on another attempt."""
    pass


class TerminalFailure(EncodingJobError):
    """Encoding failed permanently (bad input, unsupported codec, ...)."""
    pass


class WebhookDeliveryFailure(EncodingJobError):
    """Webhook POST failed or returned a non-2xx status."""

    def __init__(self, url: str, status: Optional[int] = None, cause: Optional[Exception] = None):
        self.url = url
        self.status = status
        self.cause = cause
        message = f"Webhook delivery to {url} failed"
        if status is not None:
            message += f" (HTTP {status})"
        if cause:
            message += f": {cause}"
        super().__init__(message)
