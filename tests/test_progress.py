"""Tests for jobs/progress.py - stage-weighted progress."""

import pytest

from jobs.job_types import JobStatus
from jobs.progress import STAGE_WEIGHTS, calculate_total_progress, status_for_stage


@pytest.mark.parametrize("stage,percent,expected", [
    ("downloading", 0, 0),
    ("downloading", 50, 5),
    ("downloading", 100, 10),
    ("encoding_1080p", 50, 25),
    ("encoding_720p", 0, 40),
    ("encoding_720p", 100, 65),
    ("encoding_480p", 50, 75),
    ("encoding", 50, 47),
    ("uploading", 100, 100),
])
def test_stage_progress(stage, percent, expected):
    assert calculate_total_progress(stage, percent) == expected


def test_unknown_stage_uses_full_range():
    assert calculate_total_progress("thumbnailing", 42) == 42


def test_percent_is_clamped():
    assert calculate_total_progress("uploading", 250) == 100
    assert calculate_total_progress("downloading", -20) == 0


def test_forward_stages_never_decrease():
    sequence = [
        ("downloading", 0), ("downloading", 100),
        ("encoding_1080p", 0), ("encoding_1080p", 100),
        ("encoding_720p", 0), ("encoding_720p", 100),
        ("encoding_480p", 0), ("encoding_480p", 100),
        ("uploading", 0), ("uploading", 100),
    ]
    values = [calculate_total_progress(stage, pct) for stage, pct in sequence]
    assert values == sorted(values)
    assert values[-1] == 100


def test_stage_slices_are_contiguous():
    ladder = ["downloading", "encoding_1080p", "encoding_720p", "encoding_480p", "uploading"]
    for current, following in zip(ladder, ladder[1:]):
        weight = STAGE_WEIGHTS[current]
        assert weight.start + weight.weight == STAGE_WEIGHTS[following].start


def test_status_for_stage():
    assert status_for_stage("downloading") is JobStatus.DOWNLOADING
    assert status_for_stage("encoding_480p") is JobStatus.ENCODING
    assert status_for_stage("uploading") is JobStatus.UPLOADING
    assert status_for_stage("thumbnailing") is None
