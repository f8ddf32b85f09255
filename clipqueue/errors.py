"""
Scheduler error types.

All errors inherit from ClipQueueError. Waiting for capacity is not an
error: the job simply stays queued.
"""

from typing import Optional


class ClipQueueError(Exception):
    """Base exception for scheduler failures."""
    pass


class InvalidJobRequest(ClipQueueError):
    """Raised when a submission is malformed or not allowed on the plan."""
    pass


class InsufficientCredits(ClipQueueError):
    """Raised when a free-tier user asks for more jobs than credits left."""

    def __init__(self, remaining: int, requested: int):
        self.remaining = remaining
        self.requested = requested
        super().__init__(
            f"Not enough credits. You have {remaining} remaining, but need {requested}"
        )


class StageFailure(ClipQueueError):
    """Raised by a stage handler when its unit of work fails."""

    def __init__(self, message: str, stage: Optional[str] = None):
        self.stage = stage
        super().__init__(message)


class RetriesExhausted(ClipQueueError):
    """Raised when a job has used all of its automatic retries."""

    def __init__(self, job_id: str, last_error: Optional[str] = None):
        self.job_id = job_id
        self.last_error = last_error
        super().__init__(f"Job {job_id} has no retries left: {last_error or 'unknown error'}")


class JobNotFound(ClipQueueError):
    """Raised when a job id is unknown."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")
