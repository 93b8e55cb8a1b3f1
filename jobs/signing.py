"""
HMAC signing for lease proofs and webhook payloads.

Both use the per-job secret stored on the job record:
    lease signature   = HMAC-SHA256(secret, "<job_id>:<lease_id>")
    webhook signature = HMAC-SHA256(secret, <exact request body>)
"""

import hashlib
import hmac
import secrets
from typing import Optional, Union


def generate_secret() -> str:
    """Fresh 32-byte hex secret for a new job."""
    return secrets.token_hex(32)


def _hmac_hex(secret: str, message: Union[str, bytes]) -> str:
    if isinstance(message, str):
        message = message.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def sign_lease(secret: str, job_id: str, lease_id: str) -> str:
    return _hmac_hex(secret, f"{job_id}:{lease_id}")


def verify_lease(secret: str, job_id: str, lease_id: Optional[str], signature: Optional[str]) -> bool:
    """Constant-time check of a worker's lease signature."""
    if not lease_id or not signature:
        return False
    return hmac.compare_digest(sign_lease(secret, job_id, lease_id), signature)


def sign_payload(secret: str, body: Union[str, bytes]) -> str:
    return _hmac_hex(secret, body)


def verify_payload(secret: str, body: Union[str, bytes], signature: str) -> bool:
    return hmac.compare_digest(sign_payload(secret, body), signature)
