"""The job scheduler.

A single asyncio loop owns the job table and slot accounting. Each user's
bookkeeping (admission, credit charges, slot counts, dispatch) runs under
that user's lock, so two jobs finishing at the same moment cannot both
start work into the same free slot or read a stale credit count.

Every terminal transition releases the job's slot and re-runs dispatch for
its owner, which keeps the queue draining while capacity and work remain.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from pydantic import ValidationError

from .admission import AdmissionController, validate_requests
from .dispatcher import Dispatcher, capacity_for
from .errors import (
    ClipQueueError,
    InvalidJobRequest,
    JobNotFound,
    RetriesExhausted,
    StageFailure,
)
from .models import (
    Account,
    BatchPolicy,
    Config,
    Job,
    JobEvent,
    JobRequest,
    JobSnapshot,
    JobStatus,
    Plan,
    utcnow,
)
from .notify import LoggingNotifier, Notifier
from .queue import JobQueue
from .retry import RetryCoordinator, RetryDecision
from .runner import RunOutcome, StageRunner
from .selector import fifo_key
from .storage import Storage

logger = logging.getLogger(__name__)

EventListener = Callable[[JobEvent], None]


class CancelOutcome(str, Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    ALREADY_TERMINAL = "already_terminal"


class RetryOutcome(str, Enum):
    OK = "ok"
    RETRIES_EXHAUSTED = "retries_exhausted"
    NOT_FOUND = "not_found"
    NOT_RETRYABLE = "not_retryable"


def parse_requests(data: Any) -> List[JobRequest]:
    """Build job requests from a JSON object or a list of them."""
    items = data if isinstance(data, list) else [data]
    requests = []
    for item in items:
        if isinstance(item, JobRequest):
            requests.append(item)
            continue
        try:
            requests.append(JobRequest.model_validate(item))
        except ValidationError as e:
            raise InvalidJobRequest(f"Invalid job request: {e}") from e
    return requests


class Scheduler:
    """Admits, orders, dispatches and runs video jobs for all users."""

    def __init__(
        self,
        storage: Storage,
        config: Optional[Config] = None,
        runner: Optional[StageRunner] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.storage = storage
        self.config = config or storage.get_config()
        self.queue = JobQueue(storage)
        self.admission = AdmissionController(self.config.max_free_credits)
        self.dispatcher = Dispatcher(self.config.default_batch_policy)
        self.retries = RetryCoordinator(self.config.max_retries)
        self.runner = runner or StageRunner(stage_delay=self.config.stage_delay)
        self.notifier = notifier or LoggingNotifier()

        self._locks: Dict[str, asyncio.Lock] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._cancel_requested: Set[str] = set()
        self._deliveries: Set[asyncio.Task] = set()
        self._waiters: Dict[str, List[asyncio.Future]] = {}
        self._listeners: List[EventListener] = []
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def _lock(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock

    # Lifecycle

    async def start(self) -> None:
        """Begin dispatching. Jobs interrupted by an earlier run are requeued."""
        if self._running:
            return
        self._running = True
        self.queue.recover_interrupted()
        for user_id in self.queue.users_with_pending():
            await self.tick(user_id)
        logger.info("Scheduler started with %d pending job(s)", len(self.queue.pending()))

    async def join(self) -> None:
        """Wait until nothing is in flight and all notifications are delivered."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)
        while self._deliveries:
            await asyncio.gather(*list(self._deliveries), return_exceptions=True)

    async def shutdown(self, drain: bool = False) -> None:
        """Stop the scheduler, either draining all work or cancelling it."""
        if drain:
            await self.join()
        else:
            self._running = False
            for job in self.queue.pending() + self.queue.in_flight():
                await self.cancel(job.id)
            await self.join()
        self._running = False
        logger.info("Scheduler stopped")

    # Events

    def subscribe(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: EventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, kind: str, job: Job) -> None:
        event = JobEvent(kind=kind, job=job.snapshot())
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Event listener failed for job %s", job.id)

    # Submission

    async def submit(self, request: Any) -> str:
        """Admit one job and return its id."""
        return (await self.submit_batch([request]))[0]

    async def submit_batch(self, requests: Iterable[Any]) -> List[str]:
        """Admit several jobs for one user with a single credit check."""
        parsed = parse_requests(list(requests))
        if not parsed:
            raise InvalidJobRequest("No jobs requested")
        owners = {request.user_id for request in parsed}
        if len(owners) != 1:
            raise InvalidJobRequest("All jobs in a batch must belong to the same user")
        user_id = parsed[0].user_id

        async with self._lock(user_id):
            account = self.storage.get_account(user_id)
            validate_requests(parsed, account.plan)
            admission = self.admission.admit_account(account, len(parsed))
            if not admission.accepted:
                logger.info(
                    "Rejected %d job(s) for %s: %d credit(s) remaining",
                    len(parsed), user_id, admission.remaining,
                )
                admission.raise_for_rejection()

            self.admission.reserve(account, len(parsed))
            self.storage.save_account(account)

            jobs = []
            for request in parsed:
                job = Job.from_request(request)
                if job.settings.batch_policy is None:
                    job.settings.batch_policy = self.dispatcher.policy
                job.credit_reserved = not account.features.unlimited_credits
                self.queue.enqueue(job)
                self._emit("status", job)
                jobs.append(job)
            logger.info("Queued %d job(s) for %s", len(jobs), user_id)
            self._dispatch_locked(user_id)
        return [job.id for job in jobs]

    async def resubmit(self, job_id: str) -> None:
        """Put a finished-but-failed or cancelled job back in the queue with fresh retries."""
        job = self._get(job_id)
        async with self._lock(job.user_id):
            if job.status not in (JobStatus.FAILED, JobStatus.CANCELLED):
                raise InvalidJobRequest(f"Job {job_id} is {job.status.value} and cannot be resubmitted")
            account = self.storage.get_account(job.user_id)
            request = JobRequest(
                user_id=job.user_id,
                image=job.image,
                reference_images=job.reference_images,
                settings=job.settings,
            )
            validate_requests([request], account.plan)
            if not job.credit_reserved:
                self.admission.admit_account(account, 1).raise_for_rejection()
                self.admission.reserve(account, 1)
                self.storage.save_account(account)
                job.credit_reserved = not account.features.unlimited_credits
            self.queue.requeue(job, reset_retries=True)
            self._emit("status", job)
            logger.info("Job %s resubmitted", job.id)
            self._dispatch_locked(job.user_id)

    # Caller operations

    async def cancel(self, job_id: str) -> CancelOutcome:
        job = self.queue.get(job_id)
        if job is None:
            return CancelOutcome.NOT_FOUND
        async with self._lock(job.user_id):
            if self.retries.is_terminal(job):
                return CancelOutcome.ALREADY_TERMINAL
            if job.status == JobStatus.PROCESSING and job.id in self._tasks:
                # honoured by the stage runner at the next stage boundary
                self._cancel_requested.add(job.id)
                logger.info("Cancellation requested for running job %s", job.id)
                return CancelOutcome.OK
            self.queue.mark_cancelled(job)
            self._release_credit(job)
            self._emit("status", job)
            self._resolve_waiters(job)
            logger.info("Job %s cancelled", job.id)
            return CancelOutcome.OK

    async def retry(self, job_id: str) -> RetryOutcome:
        """Requeue a failed job if it still has retries left."""
        job = self.queue.get(job_id)
        if job is None:
            return RetryOutcome.NOT_FOUND
        async with self._lock(job.user_id):
            if job.status != JobStatus.FAILED:
                return RetryOutcome.NOT_RETRYABLE
            if self.retries.on_failure(job) == RetryDecision.TERMINAL_FAIL:
                return RetryOutcome.RETRIES_EXHAUSTED
            self.queue.requeue(job)
            self._emit("status", job)
            logger.info("Retrying job %s (attempt %d)", job.id, job.retry_count + 1)
            self._dispatch_locked(job.user_id)
            return RetryOutcome.OK

    def get_status(self, job_id: str) -> JobSnapshot:
        return self._get(job_id).snapshot()

    def list_jobs(
        self, status: Optional[JobStatus] = None, user_id: Optional[str] = None
    ) -> List[JobSnapshot]:
        jobs = self.queue.all(user_id) if status is None else self.queue.by_status(status, user_id)
        return [job.snapshot() for job in jobs]

    def list_pending(self, user_id: Optional[str] = None) -> List[JobSnapshot]:
        return self.list_jobs(JobStatus.QUEUED, user_id)

    def list_in_flight(self, user_id: Optional[str] = None) -> List[JobSnapshot]:
        return self.list_jobs(JobStatus.PROCESSING, user_id)

    def stats(self) -> Dict[str, int]:
        return self.storage.get_stats()

    async def wait(self, job_id: str) -> JobSnapshot:
        """Wait for a job to settle.

        Returns the snapshot of a completed or cancelled job. Raises
        RetriesExhausted when the job failed for good, or StageFailure when
        it failed and is waiting for a manual retry.
        """
        job = self._get(job_id)
        if not self._settled(job):
            future = asyncio.get_running_loop().create_future()
            self._waiters.setdefault(job_id, []).append(future)
            return await future
        snapshot, error = self._outcome(job)
        if error is not None:
            raise error
        return snapshot

    # Accounts

    def get_account(self, user_id: str) -> Account:
        return self.storage.get_account(user_id)

    async def set_plan(self, user_id: str, plan: Plan) -> Account:
        """Apply a plan change made by the billing system."""
        async with self._lock(user_id):
            account = self.storage.get_account(user_id)
            account.plan = plan
            self.storage.save_account(account)
            logger.info("Account %s moved to plan %s", user_id, plan.value)
            self._dispatch_locked(user_id)
            return account

    async def reset_credits(self, user_id: str) -> Account:
        """Start a new weekly credit allowance. Live reservations are kept."""
        async with self._lock(user_id):
            account = self.storage.get_account(user_id)
            account.credits_used = 0
            account.credits_reset_at = utcnow()
            self.storage.save_account(account)
            return account

    # Dispatch

    async def tick(self, user_id: str) -> List[JobSnapshot]:
        """Start as many of a user's pending jobs as their plan allows."""
        async with self._lock(user_id):
            return [job.snapshot() for job in self._dispatch_locked(user_id)]

    def _policy_for(self, pending: List[Job]) -> BatchPolicy:
        newest = max(pending, key=fifo_key)
        return newest.settings.batch_policy or self.dispatcher.policy

    def _dispatch_locked(self, user_id: str) -> List[Job]:
        if not self._running:
            return []
        pending = self.queue.pending(user_id)
        if not pending:
            return []
        account = self.storage.get_account(user_id)
        to_start = self.dispatcher.tick(
            pending,
            self.queue.in_flight(user_id),
            capacity_for(account.plan),
            self._policy_for(pending),
        )
        for job in to_start:
            self.queue.mark_processing(job)
            self._emit("status", job)
            self._tasks[job.id] = asyncio.create_task(self._run_job(job))
            logger.info("Dispatched job %s for %s", job.id, user_id)
        return to_start

    async def _run_job(self, job: Job) -> None:
        try:
            outcome = await self.runner.run(
                job,
                cancel_requested=lambda: job.id in self._cancel_requested,
                on_stage=self._on_stage,
                on_progress=self._on_progress,
            )
        except asyncio.CancelledError:
            # hard stop: the job stays processing and is requeued on the next start
            self._tasks.pop(job.id, None)
            raise
        try:
            await self._finish(job, outcome)
        except Exception:
            logger.exception("Failed to record outcome of job %s", job.id)
        finally:
            self._tasks.pop(job.id, None)

    def _on_stage(self, job: Job) -> None:
        # stage and progress live in memory; the job file is written on status transitions
        self._emit("progress", job)

    def _on_progress(self, job: Job) -> None:
        self._emit("progress", job)

    async def _finish(self, job: Job, outcome: RunOutcome) -> None:
        async with self._lock(job.user_id):
            # cancel flags a job whose task is still registered
            self._tasks.pop(job.id, None)
            if job.id in self._cancel_requested:
                self._cancel_requested.discard(job.id)
                outcome = RunOutcome.CANCELLED
            if job.status != JobStatus.PROCESSING:
                logger.warning("Job %s already settled as %s", job.id, job.status.value)
            elif outcome == RunOutcome.COMPLETED:
                account = self.storage.get_account(job.user_id)
                self.admission.charge(account, job.credit_reserved)
                self.storage.save_account(account)
                job.credit_reserved = False
                self.queue.mark_completed(job)
                self._emit("status", job)
                self._resolve_waiters(job)
                self._deliver(job)
                logger.info("Job %s completed", job.id)
            elif outcome == RunOutcome.CANCELLED:
                self.queue.mark_cancelled(job)
                self._release_credit(job)
                self._emit("status", job)
                self._resolve_waiters(job)
            else:
                self.queue.mark_failed(job, job.error or "Stage failed")
                self._emit("status", job)
                self._handle_failure(job)
            self._dispatch_locked(job.user_id)

    def _handle_failure(self, job: Job) -> None:
        if not self.config.auto_retry and self.retries.can_retry(job):
            logger.info("Job %s failed; waiting for a manual retry", job.id)
            self._resolve_waiters(job)
            return
        if self.retries.on_failure(job) == RetryDecision.REQUEUE:
            self.queue.requeue(job)
            self._emit("status", job)
            logger.info("Job %s requeued (retry %d of %d)", job.id, job.retry_count, self.retries.max_retries)
            return
        logger.warning("Job %s failed permanently: %s", job.id, job.error)
        self._release_credit(job)
        self._resolve_waiters(job)
        self._deliver(job)

    def _release_credit(self, job: Job) -> None:
        if not job.credit_reserved:
            return
        account = self.storage.get_account(job.user_id)
        self.admission.release(account)
        self.storage.save_account(account)
        job.credit_reserved = False
        self.queue.save(job)

    # Settlement

    def _get(self, job_id: str) -> Job:
        job = self.queue.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def _settled(self, job: Job) -> bool:
        if job.status in (JobStatus.COMPLETED, JobStatus.CANCELLED):
            return True
        if job.status == JobStatus.FAILED:
            return not self.config.auto_retry or not self.retries.can_retry(job)
        return False

    def _outcome(self, job: Job) -> Tuple[Optional[JobSnapshot], Optional[ClipQueueError]]:
        if job.status == JobStatus.FAILED:
            if self.retries.can_retry(job):
                return None, StageFailure(job.error or "Stage failed")
            return None, RetriesExhausted(job.id, job.error)
        return job.snapshot(), None

    def _resolve_waiters(self, job: Job) -> None:
        snapshot, error = self._outcome(job)
        for future in self._waiters.pop(job.id, []):
            if future.done():
                continue
            if error is not None:
                future.set_exception(error)
            else:
                future.set_result(snapshot)

    def _deliver(self, job: Job) -> None:
        """Hand a settled job to the notifier without waiting for it."""
        task = asyncio.create_task(self._notify(job.snapshot()))
        self._deliveries.add(task)
        task.add_done_callback(self._deliveries.discard)

    async def _notify(self, snapshot: JobSnapshot) -> None:
        try:
            await self.notifier.notify(snapshot)
        except Exception:
            logger.exception("Notification for job %s failed", snapshot.id)
