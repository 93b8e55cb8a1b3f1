"""
Lease Reaper - Background reclamation of abandoned leases.

Workers disappear (closed tabs, sleeping laptops, crashed agents). Every
`reaper_interval_sec` the reaper releases jobs whose lease has lapsed,
which requeues them with backoff or fails them once attempts run out.

Usage:
    reaper = LeaseReaper(store, interval=60, on_terminal=notify_failed)
    reaper.start()
    ...
    reaper.stop()
"""

import logging
import threading
from typing import Callable, List, Optional

from jobs.job_types import Job, JobStatus
from jobs.store import JobStore

logger = logging.getLogger("lease_reaper")


class LeaseReaper:
    """
    Periodic sweep over expired leases.

    `on_terminal` is called for each job a sweep moved to failed, so the
    owner can be notified. Errors in a sweep are logged and the loop
    carries on.
    """

    def __init__(
        self,
        store: JobStore,
        interval: float = 60,
        on_terminal: Optional[Callable[[Job], None]] = None,
    ):
        self.store = store
        self.interval = interval
        self.on_terminal = on_terminal
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        """Start the reaper thread."""
        if self.running:
            return

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="lease-reaper", daemon=True)
        self._thread.start()
        logger.info(f"Lease reaper started (interval {self.interval}s)")

    def stop(self):
        """Stop the reaper thread."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None
        logger.info("Lease reaper stopped")

    def sweep(self) -> List[Job]:
        """Run one pass. Returns the jobs that were released."""
        released = self.store.expire_stale_leases()

        for job in released:
            if job.status == JobStatus.FAILED and self.on_terminal:
                try:
                    self.on_terminal(job)
                except Exception as e:
                    logger.error(f"Terminal callback failed for job {job.job_id}: {e}")

        return released

    def _run(self):
        """Main loop."""
        while not self._stop_event.is_set():
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Reaper sweep error: {e}")

            self._stop_event.wait(self.interval)
