"""Dispatcher slot accounting."""

from typing import List, Optional, Sequence

from .models import BatchPolicy, Job, JobStatus, Plan, plan_features
from .selector import order


def capacity_for(plan: Plan) -> int:
    """Concurrent jobs allowed by a plan."""
    return plan_features(plan).max_concurrent_jobs


def free_slots(in_flight: Sequence[Job], capacity: int) -> int:
    return max(0, capacity - len(in_flight))


class Dispatcher:
    """Chooses which pending jobs to start given the free capacity.

    ``tick`` does not start anything itself; the caller marks the returned
    jobs as processing before it next calls ``tick``, so a repeated tick with
    no state change returns nothing.
    """

    def __init__(self, policy: BatchPolicy = BatchPolicy.PARALLEL):
        self.policy = policy

    def tick(
        self,
        pending: Sequence[Job],
        in_flight: Sequence[Job],
        capacity: int,
        policy: Optional[BatchPolicy] = None,
    ) -> List[Job]:
        slots = free_slots(in_flight, capacity)
        if slots == 0:
            return []
        candidates = [job for job in pending if job.status == JobStatus.QUEUED]
        return order(candidates, policy or self.policy)[:slots]
