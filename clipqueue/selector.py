"""Ordering of pending jobs under a batch policy."""

from datetime import datetime
from typing import List, Sequence, Tuple

from .models import BatchPolicy, Job, Quality

_QUALITY_SCORE = {Quality.UHD_4K: 3, Quality.FHD: 2, Quality.HD: 1}


def fifo_key(job: Job) -> Tuple[datetime, int, str]:
    return (job.created_at, job.seq, job.id)


def priority_score(job: Job) -> int:
    """2 for having reference images, plus 3/2/1 for 4k/fhd/hd."""
    score = 2 if job.has_references else 0
    return score + _QUALITY_SCORE.get(job.settings.quality, 1)


def order(pending: Sequence[Job], policy: BatchPolicy) -> List[Job]:
    """Return pending jobs in dispatch order. Pure: the input is not modified."""
    if policy == BatchPolicy.SEQUENTIAL:
        return sorted(pending, key=fifo_key)
    if policy == BatchPolicy.PRIORITY:
        # sorted() is stable, so equal scores keep FIFO order
        return sorted(sorted(pending, key=fifo_key), key=priority_score, reverse=True)
    return list(pending)
