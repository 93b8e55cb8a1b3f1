"""
Encoding API Server - REST API for job submission and worker leasing.

Owners submit and cancel jobs; workers claim, renew, report progress and
finish them. Every worker mutation carries the lease signature returned
by /api/encoding/claim.

Usage:
    # Start server
    python -m api.server --port 8790

    # Submit and inspect
    curl -X POST localhost:8790/api/encoding/jobs \\
        -d '{"owner": "alice", "permlink": "p1", "input_cid": "QmInput"}'
    curl localhost:8790/api/encoding/queue

Errors:
    400 ValidationError, 403 InvalidSignature, 404 NotFoundError,
    409 JobStateError, 500 anything else
"""

import argparse
import json
import logging
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any, Callable, Dict, Optional
from urllib.parse import parse_qs, urlparse

from core.config import get_scheduler_config
from jobs.errors import (
    InvalidSignature,
    JobStateError,
    NotFoundError,
    ValidationError,
)
from jobs.job_types import utcnow
from jobs.orchestrator import EncodingOrchestrator

logger = logging.getLogger("encoding_api")

API_PREFIX = "/api/encoding"

ERROR_STATUS = {
    ValidationError: 400,
    InvalidSignature: 403,
    NotFoundError: 404,
    JobStateError: 409,
}


class EncodingAPIHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the encoding API."""

    # Set by create_server
    orchestrator: Optional[EncodingOrchestrator] = None

    def log_message(self, format, *args):
        """Override to use our logger."""
        logger.debug(f"{self.address_string()} - {format % args}")

    def _send_json(self, data: Any, status: int = 200):
        """Send a JSON response."""
        body = json.dumps(data, indent=2).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Access-Control-Allow-Origin", "*")
        self.end_headers()
        self.wfile.write(body)

    def _send_error(self, message: str, status: int = 400, **extra):
        """Send an error response."""
        data = {"error": message, "status": status}
        data.update({k: v for k, v in extra.items() if v is not None})
        self._send_json(data, status)

    def _parse_body(self) -> Dict[str, Any]:
        """Parse JSON object body. Empty body is {}."""
        try:
            content_length = int(self.headers.get("Content-Length", 0))
        except ValueError:
            content_length = -1
        if content_length < 0:
            raise ValidationError("Invalid Content-Length header")
        if content_length == 0:
            return {}
        body = self.rfile.read(content_length)
        try:
            data = json.loads(body.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise ValidationError("Request body is not valid JSON")
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object")
        return data

    def _call(self, handler: Callable, *args):
        """Run a handler, mapping engine errors to HTTP status codes."""
        try:
            handler(*args)
        except tuple(ERROR_STATUS) as e:
            status = next(code for cls, code in ERROR_STATUS.items() if isinstance(e, cls))
            self._send_error(
                str(e),
                status,
                field=getattr(e, "field", None),
                job_status=e.status if isinstance(e, JobStateError) else None,
            )
        except Exception as e:
            logger.exception(f"Unhandled error on {self.command} {self.path}: {e}")
            self._send_error("Internal server error", 500)

    @staticmethod
    def _query_int(query: Dict[str, list], name: str, default: int) -> int:
        values = query.get(name)
        if not values:
            return default
        try:
            value = int(values[0])
        except ValueError:
            raise ValidationError(f"'{name}' must be an integer", field=name)
        if value < 1:
            raise ValidationError(f"'{name}' must be >= 1", field=name)
        return value

    @staticmethod
    def _job_path(path: str, suffix: str = "") -> str:
        """Extract {id} from /api/encoding/jobs/{id}{suffix}."""
        job_id = path[len(f"{API_PREFIX}/jobs/"):]
        if suffix:
            job_id = job_id[: -len(suffix)]
        return job_id

    def do_OPTIONS(self):
        """Handle CORS preflight."""
        self.send_response(200)
        self.send_header("Access-Control-Allow-Origin", "*")
        self.send_header("Access-Control-Allow-Methods", "GET, POST, OPTIONS")
        self.send_header("Access-Control-Allow-Headers", "Content-Type")
        self.end_headers()

    def do_GET(self):
        """Handle GET requests."""
        parsed = urlparse(self.path)
        path = parsed.path.rstrip("/") or "/"
        query = parse_qs(parsed.query)

        if path == "/health":
            self._call(self._handle_health)
        elif path == f"{API_PREFIX}/queue":
            self._call(self._handle_queue_stats)
        elif path == f"{API_PREFIX}/queue/next":
            self._call(self._handle_queue_next, query)
        elif path == f"{API_PREFIX}/jobs":
            self._call(self._handle_jobs_by_owner, query)
        elif path.startswith(f"{API_PREFIX}/jobs/") and path.endswith("/events"):
            self._call(self._handle_job_events, self._job_path(path, "/events"))
        elif path.startswith(f"{API_PREFIX}/jobs/"):
            self._call(self._handle_get_job, self._job_path(path))
        elif path.startswith(f"{API_PREFIX}/agents/") and path.endswith("/health"):
            username = path[len(f"{API_PREFIX}/agents/"):-len("/health")]
            self._call(self._handle_agent_health, username)
        else:
            self._send_error(f"Unknown endpoint: {path}", 404)

    def do_POST(self):
        """Handle POST requests."""
        path = urlparse(self.path).path.rstrip("/")

        routes = {
            "/renew": self._handle_renew,
            "/progress": self._handle_progress,
            "/complete": self._handle_complete,
            "/fail": self._handle_fail,
            "/cancel": self._handle_cancel,
        }

        if path == f"{API_PREFIX}/jobs":
            self._call(lambda: self._handle_submit(self._parse_body()))
        elif path == f"{API_PREFIX}/claim":
            self._call(lambda: self._handle_claim(self._parse_body()))
        elif path == f"{API_PREFIX}/settings":
            self._call(lambda: self._handle_settings(self._parse_body()))
        elif path.startswith(f"{API_PREFIX}/jobs/"):
            suffix = "/" + path.rsplit("/", 1)[-1]
            handler = routes.get(suffix)
            if handler is None:
                self._send_error(f"Unknown endpoint: {path}", 404)
                return
            job_id = self._job_path(path, suffix)
            self._call(lambda: handler(job_id, self._parse_body()))
        else:
            self._send_error(f"Unknown endpoint: {path}", 404)

    # =========================================================================
    # QUERY HANDLERS
    # =========================================================================

    def _handle_health(self):
        """Health check endpoint."""
        self._send_json({
            "status": "healthy",
            "service": "encoding_api",
            "timestamp": utcnow().isoformat(),
        })

    def _handle_queue_stats(self):
        self._send_json(self.orchestrator.get_queue_stats().to_dict())

    def _handle_queue_next(self, query: Dict[str, list]):
        limit = self._query_int(query, "limit", 10)
        jobs = self.orchestrator.get_next_jobs(limit=limit)
        self._send_json({"jobs": [j.to_dict() for j in jobs], "count": len(jobs)})

    def _handle_jobs_by_owner(self, query: Dict[str, list]):
        owner = query.get("owner", [None])[0]
        if not owner:
            raise ValidationError("'owner' query parameter is required", field="owner")
        limit = self._query_int(query, "limit", 50)
        jobs = self.orchestrator.get_jobs_by_owner(owner, limit=limit)
        self._send_json({"jobs": [j.to_dict() for j in jobs], "count": len(jobs)})

    def _handle_get_job(self, job_id: str):
        self._send_json(self.orchestrator.get_job(job_id).to_dict())

    def _handle_job_events(self, job_id: str):
        events = self.orchestrator.get_job_events(job_id)
        self._send_json({
            "job_id": job_id,
            "events": [e.to_dict() for e in events],
            "count": len(events),
        })

    def _handle_agent_health(self, username: str):
        self._send_json(self.orchestrator.check_worker_health(username).to_dict())

    # =========================================================================
    # OWNER HANDLERS
    # =========================================================================

    def _handle_submit(self, body: Dict[str, Any]):
        """Submit a new encoding job."""
        result = self.orchestrator.submit(body)
        self._send_json(result.to_dict(), 201)

    def _handle_cancel(self, job_id: str, body: Dict[str, Any]):
        username = body.get("username")
        if not username:
            raise ValidationError("'username' is required", field="username")

        if self.orchestrator.cancel(job_id, username):
            self._send_json({"success": True, "status": "cancelled"})
            return

        job = self.orchestrator.get_job(job_id)
        if job.owner != username:
            self._send_error(f"Only the owner can cancel job {job_id}", 403)
        else:
            raise JobStateError(job_id, job.status.value, "cancel")

    def _handle_settings(self, body: Dict[str, Any]):
        settings = self.orchestrator.set_user_settings(body)
        self._send_json(settings.to_dict())

    # =========================================================================
    # WORKER HANDLERS
    # =========================================================================

    def _handle_claim(self, body: Dict[str, Any]):
        """Claim the next job for a worker. 200 with claimed=false when idle."""
        result = self.orchestrator.claim(body.get("encoder_id"), body.get("encoder_type"))
        self._send_json(result.to_dict())

    def _handle_renew(self, job_id: str, body: Dict[str, Any]):
        expires = self.orchestrator.renew_lease(job_id, body.get("signature"))
        self._send_json({"success": True, "lease_expires_at": expires.isoformat()})

    def _handle_progress(self, job_id: str, body: Dict[str, Any]):
        job = self.orchestrator.report_progress(
            job_id,
            body.get("stage"),
            body.get("progress"),
            body.get("signature"),
        )
        self._send_json({"success": True, "status": job.status.value, "progress": job.progress})

    def _handle_complete(self, job_id: str, body: Dict[str, Any]):
        result = body.get("result")
        if not isinstance(result, dict):
            raise ValidationError("'result' object is required", field="result")
        job = self.orchestrator.complete(job_id, result, body.get("signature"))
        self._send_json({"success": True, "status": job.status.value, "video_url": job.video_url})

    def _handle_fail(self, job_id: str, body: Dict[str, Any]):
        retryable = body.get("retryable", True)
        if not isinstance(retryable, bool):
            raise ValidationError("'retryable' must be a boolean", field="retryable")
        job = self.orchestrator.fail(job_id, body.get("error"), retryable, body.get("signature"))
        self._send_json({
            "success": True,
            "status": job.status.value,
            "attempts": job.attempts,
            "next_retry_at": job.next_retry_at.isoformat() if job.next_retry_at else None,
        })


def create_server(
    orchestrator: EncodingOrchestrator,
    host: str = "0.0.0.0",
    port: int = 8790,
) -> ThreadingHTTPServer:
    """Build a server bound to an orchestrator (port 0 picks a free port)."""
    handler = type("BoundEncodingAPIHandler", (EncodingAPIHandler,), {"orchestrator": orchestrator})
    return ThreadingHTTPServer((host, port), handler)


def run_server(
    host: Optional[str] = None,
    port: Optional[int] = None,
    db_path: Optional[str] = None,
):
    """Run the encoding API server with the lease reaper."""
    from jobs.store import get_store

    config = get_scheduler_config()
    host = host or config.server_host
    port = port or config.server_port

    store = get_store(Path(db_path) if db_path else None)
    orchestrator = EncodingOrchestrator(store=store, config=config)
    orchestrator.start()

    # ThreadingHTTPServer handles concurrent workers without blocking
    server = create_server(orchestrator, host, port)
    logger.info(f"Encoding API starting on {host}:{port}")
    logger.info(f"Jobs DB: {store.db_path}")

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    finally:
        orchestrator.stop()
        server.server_close()


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
    )

    parser = argparse.ArgumentParser(description="Encoding Job API Server")
    parser.add_argument("--host", type=str, default=None, help="Interface to bind")
    parser.add_argument("--port", type=int, default=None, help="Port to listen on")
    parser.add_argument("--db", type=str, default=None, help="Job database path")
    args = parser.parse_args()

    run_server(host=args.host, port=args.port, db_path=args.db)


if __name__ == "__main__":
    main()
