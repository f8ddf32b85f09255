"""Job table and lifecycle transitions."""

import logging
from typing import Dict, List, Optional, Set, Tuple

from .models import Job, JobStatus, utcnow
from .storage import Storage

logger = logging.getLogger(__name__)

_TRANSITIONS: Set[Tuple[JobStatus, JobStatus]] = {
    (JobStatus.QUEUED, JobStatus.PROCESSING),
    (JobStatus.QUEUED, JobStatus.CANCELLED),
    (JobStatus.PROCESSING, JobStatus.COMPLETED),
    (JobStatus.PROCESSING, JobStatus.FAILED),
    (JobStatus.PROCESSING, JobStatus.CANCELLED),
    (JobStatus.PROCESSING, JobStatus.QUEUED),  # interrupted run
    (JobStatus.FAILED, JobStatus.QUEUED),
    (JobStatus.FAILED, JobStatus.CANCELLED),
    (JobStatus.CANCELLED, JobStatus.QUEUED),  # resubmission
}


class JobQueue:
    """Holds every known job in memory and writes each change through to storage."""

    def __init__(self, storage: Storage):
        self.storage = storage
        self._jobs: Dict[str, Job] = {job.id: job for job in storage.load_all()}
        self._next_seq = max((job.seq for job in self._jobs.values()), default=0) + 1

    def _transition(self, job: Job, target: JobStatus) -> None:
        if (job.status, target) not in _TRANSITIONS:
            raise ValueError(
                f"Job {job.id}: invalid transition {job.status.value} -> {target.value}"
            )
        job.status = target
        job.updated_at = utcnow()

    def save(self, job: Job) -> None:
        job.updated_at = utcnow()
        self.storage.save(job)

    def enqueue(self, job: Job) -> Job:
        """Add a new job to the table."""
        job.status = JobStatus.QUEUED
        job.seq = self._next_seq
        self._next_seq += 1
        job.created_at = job.updated_at = utcnow()
        self._jobs[job.id] = job
        self.storage.save(job)
        return job

    def get(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def all(self, user_id: Optional[str] = None) -> List[Job]:
        """Jobs in submission order, optionally for one user."""
        jobs = sorted(self._jobs.values(), key=lambda j: j.seq)
        if user_id is not None:
            jobs = [job for job in jobs if job.user_id == user_id]
        return jobs

    def by_status(self, status: JobStatus, user_id: Optional[str] = None) -> List[Job]:
        return [job for job in self.all(user_id) if job.status == status]

    def pending(self, user_id: Optional[str] = None) -> List[Job]:
        return self.by_status(JobStatus.QUEUED, user_id)

    def in_flight(self, user_id: Optional[str] = None) -> List[Job]:
        return self.by_status(JobStatus.PROCESSING, user_id)

    def users_with_pending(self) -> List[str]:
        users: List[str] = []
        for job in self.pending():
            if job.user_id not in users:
                users.append(job.user_id)
        return users

    def mark_processing(self, job: Job) -> None:
        """Mark a job as dispatched."""
        self._transition(job, JobStatus.PROCESSING)
        if job.started_at is None:
            job.started_at = utcnow()
        job.current_stage = None
        job.error = None
        self.save(job)

    def mark_completed(self, job: Job) -> None:
        """Mark a job as successfully completed."""
        self._transition(job, JobStatus.COMPLETED)
        job.progress = 100
        job.current_stage = None
        job.error = None
        job.completed_at = utcnow()
        self.save(job)

    def mark_failed(self, job: Job, error_message: str) -> None:
        """Mark a job as failed, keeping the progress it reached."""
        self._transition(job, JobStatus.FAILED)
        job.error = error_message
        job.current_stage = None
        self.save(job)

    def mark_cancelled(self, job: Job) -> None:
        self._transition(job, JobStatus.CANCELLED)
        job.current_stage = None
        self.save(job)

    def requeue(self, job: Job, reset_retries: bool = False) -> None:
        """Put a job back in the pending set with its progress cleared."""
        self._transition(job, JobStatus.QUEUED)
        job.progress = 0
        job.error = None
        job.started_at = None
        job.completed_at = None
        job.current_stage = None
        if reset_retries:
            job.retry_count = 0
        self.save(job)

    def recover_interrupted(self) -> List[Job]:
        """Return jobs left processing by a previous run to the queue."""
        recovered = self.in_flight()
        for job in recovered:
            logger.warning("Job %s was interrupted while processing; requeueing", job.id)
            self.requeue(job)
        return recovered
