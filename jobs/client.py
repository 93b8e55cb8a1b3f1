"""
Encoding Job Client - HTTP client for the encoding API.

Used by worker agents and by owners' tooling:
- Submit and cancel jobs
- Claim jobs, renew leases and report results (workers)
- Query queue and job state

Usage:
    from jobs.client import EncodingJobClient

    client = EncodingJobClient("http://scheduler.local:8790")

    lease = client.claim("agent-1", "desktop")
    if lease:
        job_id = lease["job"]["job_id"]
        client.progress(job_id, "downloading", 100, lease["signature"])
        client.complete(job_id, {"output_cid": "QmOut"}, lease["signature"])

Errors from the server are raised as the matching jobs.errors types
(ValidationError, InvalidSignature, NotFoundError, JobStateError).
"""

import json
import logging
import os
from typing import Any, Dict, List, Optional, Union

import requests

from jobs.errors import InvalidSignature, JobStateError, NotFoundError, ValidationError
from jobs.job_types import EncodeResult, JobSubmission

logger = logging.getLogger("job_client")

DEFAULT_SERVER_URL = "http://localhost:8790"


class EncodingJobClient:
    """
    HTTP client for the encoding API.

    Worker methods raise on rejection so the caller can tell a lost
    lease (InvalidSignature) from a cancelled job (JobStateError).
    """

    def __init__(self, server_url: Optional[str] = None, timeout: float = 10):
        """
        Initialize encoding job client.

        Args:
            server_url: API server URL. Defaults to ENCODING_API_URL env
                       or http://localhost:8790
            timeout: Per-request timeout in seconds
        """
        self.server_url = (
            server_url or
            os.environ.get("ENCODING_API_URL") or
            DEFAULT_SERVER_URL
        ).rstrip("/")
        self.timeout = timeout

        self.session = requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})

    def _url(self, path: str) -> str:
        return f"{self.server_url}/api/encoding{path}"

    def _check(self, response: requests.Response, job_id: Optional[str] = None, action: str = "update"):
        """Raise the error type matching a non-2xx response."""
        if response.ok:
            return

        try:
            data = response.json()
        except ValueError:
            data = {}
        message = data.get("error") or response.text

        if response.status_code == 400:
            raise ValidationError(message, field=data.get("field"))
        if response.status_code == 403:
            raise InvalidSignature(job_id or "")
        if response.status_code == 404:
            raise NotFoundError(job_id or "")
        if response.status_code == 409:
            raise JobStateError(job_id or "", data.get("job_status", "unknown"), action)
        raise RuntimeError(f"{action} failed (HTTP {response.status_code}): {message}")

    # =========================================================================
    # SUBMISSION
    # =========================================================================

    def submit(self, submission: Union[JobSubmission, Dict[str, Any]]) -> Dict[str, Any]:
        """
        Submit a job.

        Returns:
            {"job_id", "status", "estimated_wait_sec"}
        """
        if isinstance(submission, JobSubmission):
            payload = {
                "owner": submission.owner,
                "permlink": submission.permlink,
                "input_cid": submission.input_cid,
                "input_size_bytes": submission.input_size_bytes,
                "is_short": submission.is_short,
                "encoding_mode": submission.encoding_mode.value if submission.encoding_mode else None,
                "priority": submission.priority,
                "webhook_url": submission.webhook_url,
                "original_filename": submission.original_filename,
                "max_attempts": submission.max_attempts,
            }
            payload = {k: v for k, v in payload.items() if v is not None}
        else:
            payload = submission

        response = self.session.post(self._url("/jobs"), json=payload, timeout=self.timeout)
        self._check(response, action="submit")
        return response.json()

    def cancel(self, job_id: str, username: str) -> bool:
        """Cancel a job. False if not the owner or already finished."""
        response = self.session.post(
            self._url(f"/jobs/{job_id}/cancel"),
            json={"username": username},
            timeout=self.timeout,
        )
        if response.status_code in (403, 409):
            return False
        self._check(response, job_id, "cancel")
        return True

    def set_settings(self, settings: Dict[str, Any]) -> Dict[str, Any]:
        response = self.session.post(self._url("/settings"), json=settings, timeout=self.timeout)
        self._check(response, action="save settings")
        return response.json()

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Get a job by ID."""
        response = self.session.get(self._url(f"/jobs/{job_id}"), timeout=self.timeout)
        if response.status_code == 404:
            return None
        self._check(response, job_id, "get")
        return response.json()

    def list_by_owner(self, owner: str, limit: int = 50) -> List[Dict[str, Any]]:
        response = self.session.get(
            self._url("/jobs"),
            params={"owner": owner, "limit": limit},
            timeout=self.timeout,
        )
        self._check(response, action="list")
        return response.json().get("jobs", [])

    def queue_stats(self) -> Dict[str, Any]:
        response = self.session.get(self._url("/queue"), timeout=self.timeout)
        self._check(response, action="queue stats")
        return response.json()

    def next_jobs(self, limit: int = 10) -> List[Dict[str, Any]]:
        response = self.session.get(self._url("/queue/next"), params={"limit": limit}, timeout=self.timeout)
        self._check(response, action="next jobs")
        return response.json().get("jobs", [])

    def events(self, job_id: str) -> List[Dict[str, Any]]:
        response = self.session.get(self._url(f"/jobs/{job_id}/events"), timeout=self.timeout)
        self._check(response, job_id, "events")
        return response.json().get("events", [])

    def agent_health(self, username: str) -> Dict[str, Any]:
        response = self.session.get(self._url(f"/agents/{username}/health"), timeout=self.timeout)
        self._check(response, action="agent health")
        return response.json()

    # =========================================================================
    # WORKER OPERATIONS
    # =========================================================================

    def claim(self, encoder_id: str, encoder_type: str) -> Optional[Dict[str, Any]]:
        """
        Claim the next available job.

        Returns:
            {"job", "lease_id", "signature"} if claimed, None if no work
        """
        response = self.session.post(
            self._url("/claim"),
            json={"encoder_id": encoder_id, "encoder_type": encoder_type},
            timeout=self.timeout,
        )
        self._check(response, action="claim")

        data = response.json()
        if data.get("claimed"):
            return data
        return None

    def renew(self, job_id: str, signature: str) -> str:
        """Extend the lease. Returns the new expiry (ISO string)."""
        response = self.session.post(
            self._url(f"/jobs/{job_id}/renew"),
            json={"signature": signature},
            timeout=self.timeout,
        )
        self._check(response, job_id, "renew lease on")
        return response.json()["lease_expires_at"]

    def progress(self, job_id: str, stage: str, progress: float, signature: str) -> Dict[str, Any]:
        response = self.session.post(
            self._url(f"/jobs/{job_id}/progress"),
            json={"stage": stage, "progress": progress, "signature": signature},
            timeout=self.timeout,
        )
        self._check(response, job_id, "report progress on")
        return response.json()

    def complete(
        self,
        job_id: str,
        result: Union[EncodeResult, Dict[str, Any]],
        signature: str,
    ) -> Dict[str, Any]:
        if isinstance(result, EncodeResult):
            result = result.to_dict()
        response = self.session.post(
            self._url(f"/jobs/{job_id}/complete"),
            json={"result": result, "signature": signature},
            timeout=self.timeout,
        )
        self._check(response, job_id, "complete")
        return response.json()

    def fail(self, job_id: str, error: str, retryable: bool, signature: str) -> Dict[str, Any]:
        response = self.session.post(
            self._url(f"/jobs/{job_id}/fail"),
            json={"error": error, "retryable": retryable, "signature": signature},
            timeout=self.timeout,
        )
        self._check(response, job_id, "fail")
        return response.json()

    # =========================================================================
    # HEALTH
    # =========================================================================

    def health_check(self) -> bool:
        """Check if server is reachable."""
        try:
            response = self.session.get(f"{self.server_url}/health", timeout=5)
            return response.status_code == 200
        except requests.RequestException:
            return False


# =============================================================================
# CLI
# =============================================================================

if __name__ == "__main__":
    import argparse

    logging.basicConfig(level=logging.INFO)

    parser = argparse.ArgumentParser(description="Encoding Job Client")
    parser.add_argument(
        "command",
        choices=["health", "stats", "next", "get", "list", "events"],
        help="Command to run",
    )
    parser.add_argument("--server", help="Server URL")
    parser.add_argument("--job-id", help="Job ID (for get/events)")
    parser.add_argument("--owner", help="Owner (for list)")
    parser.add_argument("--limit", type=int, default=10)

    args = parser.parse_args()

    client = EncodingJobClient(args.server)

    if args.command == "health":
        ok = client.health_check()
        print(f"Server: {client.server_url}")
        print(f"Status: {'OK' if ok else 'UNREACHABLE'}")

    elif args.command == "stats":
        print(json.dumps(client.queue_stats(), indent=2))

    elif args.command == "next":
        for job in client.next_jobs(limit=args.limit):
            print(f"{job['job_id']}: {job['owner']}/{job['permlink']} [priority {job['priority']}]")

    elif args.command == "list":
        if not args.owner:
            parser.error("list requires --owner")
        for job in client.list_by_owner(args.owner, limit=args.limit):
            print(f"{job['job_id']}: {job['permlink']} [{job['status']} {job['progress']}%]")

    elif args.command in ("get", "events"):
        if not args.job_id:
            parser.error(f"{args.command} requires --job-id")
        if args.command == "get":
            job = client.get(args.job_id)
            print(json.dumps(job, indent=2) if job else "Not found")
        else:
            print(json.dumps(client.events(args.job_id), indent=2))
