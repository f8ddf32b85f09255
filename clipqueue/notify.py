"""Notification boundary for terminal job transitions."""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import List, Sequence, Tuple

from pydantic import BaseModel, Field

from .models import JobSnapshot, JobStatus

logger = logging.getLogger(__name__)


def message_for(job: JobSnapshot) -> Tuple[str, str]:
    """Title and body shown to the user for a finished job."""
    if job.status == JobStatus.COMPLETED:
        return "Video ready", f"Your video {job.id} was generated successfully."
    return "Video failed", f"Video {job.id} could not be generated: {job.error or 'unknown error'}"


class Notifier(ABC):
    """Receives completed and finally-failed jobs. Delivery is best effort."""

    @abstractmethod
    async def notify(self, job: JobSnapshot) -> None:
        ...


class LoggingNotifier(Notifier):
    """Writes notifications to the log."""

    async def notify(self, job: JobSnapshot) -> None:
        title, body = message_for(job)
        logger.info("[%s] %s: %s", job.user_id, title, body)


class FanoutResult(BaseModel):
    success_count: int = 0
    failure_count: int = 0
    failed: List[int] = Field(default_factory=list)  # indexes into the sink list


class FanoutNotifier(Notifier):
    """Delivers to many sinks in batches; one sink failing does not stop the others."""

    def __init__(self, sinks: Sequence[Notifier], batch_size: int = 100):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.sinks = list(sinks)
        self.batch_size = batch_size

    async def notify(self, job: JobSnapshot) -> None:
        await self.deliver(job)

    async def deliver(self, job: JobSnapshot) -> FanoutResult:
        result = FanoutResult()
        for offset in range(0, len(self.sinks), self.batch_size):
            batch = self.sinks[offset:offset + self.batch_size]
            outcomes = await asyncio.gather(
                *(sink.notify(job) for sink in batch), return_exceptions=True
            )
            for index, outcome in enumerate(outcomes, start=offset):
                if isinstance(outcome, Exception):
                    result.failure_count += 1
                    result.failed.append(index)
                    logger.warning("Notification for job %s to sink %d failed: %s", job.id, index, outcome)
                else:
                    result.success_count += 1
        logger.info(
            "Notified job %s: %d sent, %d failed",
            job.id, result.success_count, result.failure_count,
        )
        return result
