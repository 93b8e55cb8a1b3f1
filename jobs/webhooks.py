"""
Webhook Notifier - Signed, best-effort owner notifications.

Each notification is a single JSON POST:

    {"event": "completed", "jobId": "...", "timestamp": "...", "data": {...}}

with header X-SPK-Signature = hex HMAC-SHA256(job secret, exact body).
Receivers verify with jobs.signing.verify_payload().

Delivery is at-most-once: failures are logged and never retried, and a
notification never changes job state.
"""

import json
import logging
from typing import Any, Dict, Optional

import requests

from core.config import SchedulerConfig, get_scheduler_config
from jobs.errors import WebhookDeliveryFailure
from jobs.job_types import Job, utcnow
from jobs.signing import sign_payload

logger = logging.getLogger("webhooks")

TERMINAL_EVENTS = frozenset({"completed", "failed", "cancelled"})


def build_payload(event: str, job_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "event": event,
        "jobId": job_id,
        "timestamp": utcnow().isoformat(),
        "data": data,
    }


class WebhookNotifier:
    """POSTs signed job events to the job's webhook_url."""

    def __init__(
        self,
        config: Optional[SchedulerConfig] = None,
        session: Optional[requests.Session] = None,
    ):
        self.config = config or get_scheduler_config()
        self.session = session or requests.Session()

    def _post(self, url: str, body: str, signature: str):
        """Raise WebhookDeliveryFailure unless the receiver answers 2xx."""
        try:
            response = self.session.post(
                url,
                data=body.encode("utf-8"),
                headers={
                    "Content-Type": "application/json",
                    self.config.webhook_signature_header: signature,
                },
                timeout=self.config.webhook_timeout_sec,
            )
        except requests.RequestException as e:
            raise WebhookDeliveryFailure(url, cause=e)

        if not 200 <= response.status_code < 300:
            raise WebhookDeliveryFailure(url, status=response.status_code)

    def notify(self, job: Job, event: str, data: Dict[str, Any]) -> bool:
        """
        Send one event for a job.

        Returns:
            True if the receiver acknowledged with 2xx, False if the job
            has no webhook or delivery failed
        """
        if not job.webhook_url:
            return False

        body = json.dumps(build_payload(event, job.job_id, data))
        signature = sign_payload(job.webhook_secret, body)

        try:
            self._post(job.webhook_url, body, signature)
        except WebhookDeliveryFailure as e:
            logger.warning(f"Webhook '{event}' for job {job.job_id}: {e}")
            return False

        logger.info(f"Webhook '{event}' delivered for job {job.job_id}")
        return True
