"""
Encoder reputation math.

Completion and non-retryable failure both recompute the running success
rate; reputation moves by a bounded boost or a fixed penalty and stays
within [0, max_reputation].
"""

from typing import Tuple


def success_rate_after_completion(success_rate: float, jobs_completed: int) -> float:
    """Running average including one more successful job."""
    total = jobs_completed + 1
    return (success_rate * (total - 1) + 100) / total


def success_rate_after_failure(success_rate: float, jobs_completed: int) -> float:
    total = jobs_completed + 1
    return max(0.0, (success_rate * total - 100) / total)


def reputation_after_completion(
    reputation: int,
    jobs_completed: int,
    max_boost: int = 10,
    max_reputation: int = 1000,
) -> int:
    """Reputation grows with consistent work: +min(max_boost, total // 10)."""
    total = jobs_completed + 1
    boost = min(max_boost, total // 10)
    return min(reputation + boost, max_reputation)


def reputation_after_failure(reputation: int, penalty: int = 25) -> int:
    return max(reputation - penalty, 0)


def completion_update(
    success_rate: float,
    reputation: int,
    jobs_completed: int,
    max_boost: int = 10,
    max_reputation: int = 1000,
) -> Tuple[float, int]:
    """(new_success_rate, new_reputation) after a successful job."""
    return (
        success_rate_after_completion(success_rate, jobs_completed),
        reputation_after_completion(reputation, jobs_completed, max_boost, max_reputation),
    )


def failure_update(
    success_rate: float,
    reputation: int,
    jobs_completed: int,
    penalty: int = 25,
) -> Tuple[float, int]:
    """(new_success_rate, new_reputation) after a non-retryable failure."""
    return (
        success_rate_after_failure(success_rate, jobs_completed),
        reputation_after_failure(reputation, penalty),
    )
