"""
Shared pytest fixtures for CI-safe testing.

All fixtures use temporary directories - no hardcoded paths.
"""

import sys
from pathlib import Path

# Add project root to sys.path for imports
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

import shutil
import tempfile
import threading
from datetime import datetime, timedelta, timezone
from typing import Generator, List, Optional
from unittest.mock import Mock

import pytest

from core.config import SchedulerConfig
from jobs.job_types import Job, JobSubmission
from jobs.orchestrator import EncodingOrchestrator
from jobs.signing import generate_secret
from jobs.store import SQLiteJobStore


class FakeClock:
    """Controllable UTC clock for lease and backoff tests."""

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> datetime:
        with self._lock:
            self._now += timedelta(seconds=seconds)
            return self._now


class RecordingNotifier:
    """Stands in for WebhookNotifier; records every notification."""

    def __init__(self, delivered: bool = True):
        self.delivered = delivered
        self.sent: List[tuple] = []

    def notify(self, job: Job, event: str, data: dict) -> bool:
        self.sent.append((job.job_id, event, data))
        return self.delivered and bool(job.webhook_url)

    def events_for(self, job_id: str) -> List[str]:
        return [event for jid, event, _ in self.sent if jid == job_id]


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """
    Provides a temporary directory for tests.

    Automatically cleaned up after test completes.
    """
    tmpdir = tempfile.mkdtemp()
    yield Path(tmpdir)
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
def scheduler_config() -> SchedulerConfig:
    return SchedulerConfig()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db_path(temp_dir: Path) -> Path:
    return temp_dir / "encoding_jobs.db"


@pytest.fixture
def store(db_path: Path, scheduler_config: SchedulerConfig, clock: FakeClock) -> SQLiteJobStore:
    s = SQLiteJobStore(db_path, config=scheduler_config, clock=clock)
    yield s
    s.close()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def orchestrator(store, notifier, scheduler_config) -> EncodingOrchestrator:
    orch = EncodingOrchestrator(
        store=store,
        notifier=notifier,
        config=scheduler_config,
        session=Mock(),
    )
    yield orch
    orch.stop()


def make_job(**overrides) -> Job:
    """Build a queued Job with sensible defaults."""
    fields = dict(
        job_id=Job.new_id(),
        owner="alice",
        permlink="my-video",
        input_cid="QmInput",
        webhook_secret=generate_secret(),
    )
    fields.update(overrides)
    return Job(**fields)


def make_submission(**overrides) -> JobSubmission:
    fields = dict(owner="alice", permlink="my-video", input_cid="QmInput")
    fields.update(overrides)
    return JobSubmission(**fields)


def pytest_configure(config):
    """Add custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
