"""Retry and backoff rules shared by every failure path."""

from datetime import datetime, timedelta
from typing import NamedTuple, Optional

from job_delivery.models import JobStatus

BASE_DELAY_SECONDS = 60
MAX_DELAY_SECONDS = 86400


def calculate_backoff(
    retry_count: int,
    base_seconds: int = BASE_DELAY_SECONDS,
    max_seconds: int = MAX_DELAY_SECONDS,
) -> int:
    """
    Calculate the delay before the next attempt.

    Args:
        retry_count: Number of failed attempts so far (1-indexed)
        base_seconds: Delay unit
        max_seconds: Ceiling for the delay

    Returns:
        min(2^retry_count * base_seconds, max_seconds)
    """
    # Any realistic cap is below 2**64 units, keep the power bounded
    return min((2 ** min(retry_count, 64)) * base_seconds, max_seconds)


class RetryDecision(NamedTuple):
    """Outcome of a failed attempt."""

    status: JobStatus
    retry_count: int
    next_retry_at: Optional[datetime]

    @property
    def is_terminal(self) -> bool:
        return self.status == JobStatus.FAILED


def decide_retry(retry_count: int, max_retries: int, now: datetime) -> RetryDecision:
    """
    Apply the backoff policy to a job whose attempt just failed.

    Args:
        retry_count: Retry count before this failure
        max_retries: Maximum retries allowed for the job
        now: Time of the failure

    Returns:
        RetryDecision with the new status, count and next retry time
    """
    new_count = retry_count + 1
    if new_count >= max_retries:
        return RetryDecision(JobStatus.FAILED, new_count, None)

    delay = calculate_backoff(new_count)
    return RetryDecision(JobStatus.RETRYING, new_count, now + timedelta(seconds=delay))
