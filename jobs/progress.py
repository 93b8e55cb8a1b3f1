"""
Progress translation - Worker (stage, percent) → overall job progress.

Workers report progress per pipeline stage. Each stage owns a slice of
the 0-100 range:

    downloading      0 - 10
    encoding_1080p  10 - 40
    encoding_720p   40 - 65
    encoding_480p   65 - 85
    encoding        10 - 85   (single-pass encoders)
    uploading       85 - 100
"""

import math
from typing import Dict, NamedTuple, Optional

from jobs.job_types import JobStatus


class StageWeight(NamedTuple):
    start: int
    weight: int


STAGE_WEIGHTS: Dict[str, StageWeight] = {
    "downloading": StageWeight(0, 10),
    "encoding_1080p": StageWeight(10, 30),
    "encoding_720p": StageWeight(40, 25),
    "encoding_480p": StageWeight(65, 20),
    "encoding": StageWeight(10, 75),
    "uploading": StageWeight(85, 15),
}

# Unknown stages map onto the whole range
DEFAULT_STAGE_WEIGHT = StageWeight(0, 100)

STAGE_STATUS: Dict[str, JobStatus] = {
    "downloading": JobStatus.DOWNLOADING,
    "encoding": JobStatus.ENCODING,
    "encoding_1080p": JobStatus.ENCODING,
    "encoding_720p": JobStatus.ENCODING,
    "encoding_480p": JobStatus.ENCODING,
    "uploading": JobStatus.UPLOADING,
}


def clamp(value: float, low: float = 0, high: float = 100) -> float:
    return max(low, min(high, value))


def calculate_total_progress(stage: str, stage_percent: float) -> int:
    """Overall progress for a stage and the percentage done within it."""
    config = STAGE_WEIGHTS.get(stage, DEFAULT_STAGE_WEIGHT)
    stage_percent = clamp(stage_percent)
    return int(clamp(math.floor(config.start + stage_percent * config.weight / 100)))


def status_for_stage(stage: str) -> Optional[JobStatus]:
    """Processing status implied by a stage, or None for unknown stages."""
    return STAGE_STATUS.get(stage)
