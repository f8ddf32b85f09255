"""Retry decisions for failed jobs."""

from enum import Enum

from .models import Job, JobStatus


class RetryDecision(str, Enum):
    REQUEUE = "requeue"
    TERMINAL_FAIL = "terminal_fail"


class RetryCoordinator:
    """Bounds automatic retries.

    A failed job is requeued while ``retry_count < max_retries``; a requeued
    job goes back through ordinary queue ordering with no precedence over
    fresh jobs.
    """

    def __init__(self, max_retries: int = 3):
        self.max_retries = max_retries

    def can_retry(self, job: Job) -> bool:
        return job.retry_count < self.max_retries

    def is_terminal(self, job: Job) -> bool:
        """True for absorbing states: completed, cancelled or failed with no retries left."""
        if job.status in (JobStatus.COMPLETED, JobStatus.CANCELLED):
            return True
        return job.status == JobStatus.FAILED and not self.can_retry(job)

    def on_failure(self, job: Job) -> RetryDecision:
        """Decide what happens to a job that just failed.

        On REQUEUE the retry counter is incremented; the caller resets the
        job to queued through the job table.
        """
        if self.can_retry(job):
            job.retry_count += 1
            return RetryDecision.REQUEUE
        return RetryDecision.TERMINAL_FAIL
