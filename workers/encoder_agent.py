"""
Encoder Agent - Worker that claims encoding jobs from the scheduler (pull model).

The agent polls /api/encoding/claim, keeps its lease alive in a background
thread while encoding, and reports progress and the final result with the
lease signature it was given.

Usage:
    # Desktop agent with a custom encode function
    python -m workers.encoder_agent \
        --encoder-id desktop-alice-1 \
        --type desktop \
        --server http://scheduler.local:8790 \
        --encode-fn my_encoder.pipeline:encode

The encode function receives the job dict and a progress callback:

    def encode(job, report_progress):
        report_progress("downloading", 100)
        ...
        report_progress("encoding_720p", 50)
        ...
        return EncodeResult(output_cid="Qm...", qualities_encoded=["720p"])

Raise jobs.errors.TerminalFailure for inputs that can never succeed and
jobs.errors.RetryableFailure for expected transient problems. Any other
exception is logged with its traceback and reported as retryable.

Stopping the agent does not release the current job. Its lease lapses
and the scheduler's reaper requeues it.
"""

import importlib
import logging
import os
import signal
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Union

from jobs.client import EncodingJobClient
from jobs.errors import InvalidSignature, JobStateError, RetryableFailure, TerminalFailure
from jobs.job_types import EncodeResult, EncoderType

logger = logging.getLogger("encoder_agent")

ProgressCallback = Callable[[str, float], None]
EncodeFn = Callable[[Dict[str, Any], ProgressCallback], Union[EncodeResult, Dict[str, Any]]]


@dataclass
class EncoderAgentConfig:
    """Configuration for an encoder agent."""
    encoder_id: str
    encoder_type: str = EncoderType.DESKTOP.value
    server_url: str = "http://localhost:8790"
    claim_interval: float = 5.0         # Seconds between claim attempts when idle
    renew_interval: float = 60.0        # Must be well under the server's lease duration
    max_consecutive_errors: int = 10    # Shutdown after this many loop errors


class LeaseRenewer:
    """Background thread that renews one job's lease until stopped."""

    def __init__(self, client: EncodingJobClient, job_id: str, signature: str, interval: float):
        self.client = client
        self.job_id = job_id
        self.signature = signature
        self.interval = interval
        self.lease_lost = threading.Event()
        self._stop_event = threading.Event()
        self._thread = threading.Thread(target=self._run, name=f"renew-{job_id[:8]}", daemon=True)

    def start(self):
        self._thread.start()

    def stop(self):
        self._stop_event.set()
        self._thread.join(timeout=5)

    def _run(self):
        while not self._stop_event.wait(self.interval):
            try:
                self.client.renew(self.job_id, self.signature)
            except (InvalidSignature, JobStateError) as e:
                logger.warning(f"Lease on job {self.job_id} lost: {e}")
                self.lease_lost.set()
                return
            except Exception as e:
                logger.warning(f"Lease renewal for job {self.job_id} failed, will retry: {e}")


class EncoderAgent:
    """
    Worker that claims encoding jobs from the scheduler.

    Runs an infinite loop:
    1. Claim next job
    2. Encode it while renewing the lease
    3. Report completion or failure
    4. Sleep when idle and repeat

    Handles graceful shutdown via SIGTERM/SIGINT.
    """

    def __init__(
        self,
        config: EncoderAgentConfig,
        encode_fn: EncodeFn,
        client: Optional[EncodingJobClient] = None,
        install_signal_handlers: bool = True,
    ):
        self.config = config
        self.encode_fn = encode_fn
        self.client = client or EncodingJobClient(config.server_url)

        self._running = False
        self._current_job_id: Optional[str] = None
        self._consecutive_errors = 0

        self._stats = {
            "jobs_claimed": 0,
            "jobs_completed": 0,
            "jobs_failed": 0,
            "jobs_abandoned": 0,
            "total_duration": 0.0,
        }

        if install_signal_handlers:
            signal.signal(signal.SIGTERM, self._handle_signal)
            signal.signal(signal.SIGINT, self._handle_signal)

    @property
    def stats(self) -> Dict[str, Any]:
        return dict(self._stats)

    def _handle_signal(self, signum, frame):
        """Handle shutdown signals."""
        logger.info(f"Received signal {signum}, shutting down...")
        self.stop()

    def stop(self):
        self._running = False
        if self._current_job_id:
            logger.info(f"Leaving job {self._current_job_id} to lease expiry")

    def run(self):
        """Run the agent loop."""
        self._running = True
        start_time = time.time()

        logger.info("EncoderAgent starting")
        logger.info(f"  Encoder ID: {self.config.encoder_id}")
        logger.info(f"  Type: {self.config.encoder_type}")
        logger.info(f"  Server: {self.config.server_url}")

        if not self.client.health_check():
            logger.error(f"Cannot reach server at {self.config.server_url}")
            return

        while self._running:
            try:
                claimed = self.run_once()
                self._consecutive_errors = 0
                if not claimed:
                    time.sleep(self.config.claim_interval)

            except Exception as e:
                logger.error(f"Agent loop error: {e}")
                self._consecutive_errors += 1

                if self._consecutive_errors >= self.config.max_consecutive_errors:
                    logger.error("Too many consecutive errors, shutting down")
                    break

                time.sleep(self.config.claim_interval)

        self._print_stats(time.time() - start_time)

    def run_once(self) -> bool:
        """Claim and process at most one job. Returns True if a job was claimed."""
        lease = self.client.claim(self.config.encoder_id, self.config.encoder_type)
        if not lease:
            return False

        self._stats["jobs_claimed"] += 1
        self._execute_job(lease["job"], lease["signature"])
        return True

    def _execute_job(self, job: Dict[str, Any], signature: str):
        """Encode a claimed job and report the outcome."""
        job_id = job["job_id"]
        self._current_job_id = job_id
        logger.info(f"Encoding job {job_id}: {job['owner']}/{job['permlink']} ({job['input_cid']})")

        renewer = LeaseRenewer(self.client, job_id, signature, self.config.renew_interval)
        renewer.start()
        start_time = time.time()

        def report_progress(stage: str, percent: float):
            if renewer.lease_lost.is_set():
                raise JobStateError(job_id, "unknown", "report progress on")
            self.client.progress(job_id, stage, percent, signature)

        try:
            result = self.encode_fn(job, report_progress)
            self.client.complete(job_id, result, signature)

            duration = time.time() - start_time
            self._stats["jobs_completed"] += 1
            self._stats["total_duration"] += duration
            logger.info(f"Job {job_id} completed in {duration:.1f}s")

        except (InvalidSignature, JobStateError) as e:
            # Cancelled, or the lease went to someone else
            self._stats["jobs_abandoned"] += 1
            logger.warning(f"Abandoning job {job_id}: {e}")

        except TerminalFailure as e:
            logger.error(f"Job {job_id} failed (terminal): {e}")
            self._report_failure(job_id, e, False, signature)

        except RetryableFailure as e:
            logger.warning(f"Job {job_id} failed (retryable): {e}")
            self._report_failure(job_id, e, True, signature)

        except Exception as e:
            logger.exception(f"Unexpected error encoding job {job_id}")
            self._report_failure(job_id, e, True, signature)

        finally:
            renewer.stop()
            self._current_job_id = None

    def _report_failure(self, job_id: str, error: Exception, retryable: bool, signature: str):
        self._stats["jobs_failed"] += 1
        try:
            self.client.fail(job_id, str(error) or type(error).__name__, retryable, signature)
        except (InvalidSignature, JobStateError) as e:
            logger.warning(f"Failure report for job {job_id} rejected: {e}")

    def _print_stats(self, uptime: float):
        """Print agent statistics."""
        logger.info("Agent Statistics:")
        logger.info(f"  Uptime: {uptime:.0f}s")
        logger.info(f"  Jobs claimed: {self._stats['jobs_claimed']}")
        logger.info(f"  Jobs completed: {self._stats['jobs_completed']}")
        logger.info(f"  Jobs failed: {self._stats['jobs_failed']}")
        logger.info(f"  Jobs abandoned: {self._stats['jobs_abandoned']}")
        if self._stats["jobs_completed"] > 0:
            avg = self._stats["total_duration"] / self._stats["jobs_completed"]
            logger.info(f"  Avg job duration: {avg:.1f}s")


def load_encode_fn(target: str) -> EncodeFn:
    """Resolve "package.module:function" to a callable."""
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Expected 'module:function', got {target!r}")
    return getattr(importlib.import_module(module_name), attr)


# =============================================================================
# CLI
# =============================================================================

def main():
    import argparse

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
    )

    parser = argparse.ArgumentParser(
        description="Encoder Agent - Pull encoding jobs from the scheduler"
    )
    parser.add_argument(
        "--encoder-id",
        default=os.environ.get("ENCODER_ID", "encoder"),
        help="Encoder ID (default: from ENCODER_ID env)",
    )
    parser.add_argument(
        "--type",
        default=EncoderType.DESKTOP.value,
        choices=[t.value for t in EncoderType],
        help="Encoder type",
    )
    parser.add_argument(
        "--server",
        default=os.environ.get("ENCODING_API_URL", "http://localhost:8790"),
        help="Scheduler API URL",
    )
    parser.add_argument(
        "--encode-fn",
        required=True,
        help="Encode function as module:function",
    )
    parser.add_argument("--interval", type=float, default=5.0, help="Idle claim interval (s)")
    parser.add_argument("--renew", type=float, default=60.0, help="Lease renewal interval (s)")

    args = parser.parse_args()

    config = EncoderAgentConfig(
        encoder_id=args.encoder_id,
        encoder_type=args.type,
        server_url=args.server,
        claim_interval=args.interval,
        renew_interval=args.renew,
    )

    agent = EncoderAgent(config, load_encode_fn(args.encode_fn))
    agent.run()


if __name__ == "__main__":
    main()
