"""Retry policy for failed uploads.

Only transient failures are retried automatically. The delay before the next
attempt grows exponentially with the attempt number and is capped, so the
schedule never decreases: with the defaults attempt 2 waits 2s, attempt 3
waits 4s, attempt 4 waits 8s, and so on up to `max_delay`.

Classes:
    RetryDecision: The outcome of consulting the policy for a failed job.
    RetryPolicy: Decides whether, and after how long, a failed job is retried.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from ..models import ErrorKind, JobStatus, UploadJob

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryDecision:
    """Whether a failed job should be retried automatically.

    Attributes:
        retry: True if another attempt should be scheduled.
        delay_seconds: How long to wait before the next attempt (0 when stopping).
        next_attempt: The attempt number the retry will run as.
        exhausted: True if the job stopped because it used up its attempts.
        reason: Human readable explanation, used for logging.
    """
    retry: bool
    delay_seconds: float = 0.0
    next_attempt: Optional[int] = None
    exhausted: bool = False
    reason: str = ""

    @classmethod
    def stop(cls, reason: str, exhausted: bool = False) -> "RetryDecision":
        return cls(retry=False, exhausted=exhausted, reason=reason)


class RetryPolicy:
    """Bounded, attempt-indexed exponential backoff for transient failures.

    Attributes:
        max_attempts: Total attempts allowed for automatic retries (first try included).
        base_delay: Delay before the second attempt, in seconds.
        backoff: Factor applied to the delay for every further attempt.
        max_delay: Upper bound for any delay, in seconds.
    """

    def __init__(self, max_attempts: int = 3, base_delay: float = 2.0, backoff: float = 2.0, max_delay: float = 30.0):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if base_delay < 0 or max_delay < 0:
            raise ValueError("Retry delays must not be negative")
        if backoff < 1:
            raise ValueError("backoff must be >= 1 so delays never decrease")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.backoff = backoff
        self.max_delay = max_delay

    def delay_for_attempt(self, attempt: int) -> float:
        """Returns the wait before `attempt` (2 for the first retry)."""
        if attempt <= 1:
            return 0.0
        return min(self.base_delay * (self.backoff ** (attempt - 2)), self.max_delay)

    def should_retry(self, job: UploadJob) -> RetryDecision:
        """Decides what happens to a job that just failed.

        Args:
            job: A snapshot of the failed job, with `last_error` set.

        Returns:
            A `RetryDecision`. Jobs that have used `max_attempts` attempts are
            stopped with `exhausted=True`, whatever their error kind.
        """
        error = job.last_error
        if job.status != JobStatus.ERROR or error is None:
            return RetryDecision.stop(f"job is '{job.status.value}', not failed")

        if job.attempts >= self.max_attempts:
            logger.error(
                f"Transfer permanently failed for {job.file_name} "
                f"after {job.attempts} attempts: {error.detail or error.message}"
            )
            return RetryDecision.stop(f"reached {self.max_attempts} attempts", exhausted=True)

        if error.kind is not ErrorKind.TRANSIENT:
            return RetryDecision.stop(f"{error.kind.value} errors are not retried automatically")

        next_attempt = job.attempts + 1
        delay = self.delay_for_attempt(next_attempt)
        logger.warning(
            f"Transfer failed for {job.file_name} "
            f"(attempt {job.attempts}/{self.max_attempts}). "
            f"Will retry in {delay:g}s. Error: {error.detail or error.message}"
        )
        return RetryDecision(retry=True, delay_seconds=delay, next_attempt=next_attempt)
