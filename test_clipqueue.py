"""Tests for ClipQueue building blocks: models, storage, queue, admission,
ordering, dispatch, retries, stages and notifications."""

import asyncio
import shutil
import tempfile
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from clipqueue.admission import AdmissionController, validate_requests
from clipqueue.dispatcher import Dispatcher, capacity_for, free_slots
from clipqueue.errors import InsufficientCredits, InvalidJobRequest, StageFailure
from clipqueue.models import (
    Account,
    AssetRef,
    BatchPolicy,
    Config,
    Job,
    JobRequest,
    JobSettings,
    JobStatus,
    MusicTrack,
    Plan,
    Quality,
)
from clipqueue.notify import FanoutNotifier, Notifier, message_for
from clipqueue.queue import JobQueue
from clipqueue.retry import RetryCoordinator, RetryDecision
from clipqueue.runner import (
    ProgressReporter,
    RunOutcome,
    Stage,
    StageRunner,
    default_stages,
    stage_bounds,
)
from clipqueue.selector import order, priority_score
from clipqueue.storage import Storage

BASE_TIME = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


def make_job(job_id, quality="hd", refs=0, seq=0, offset=0, user_id="u1", prompt=""):
    job = Job(
        id=job_id,
        user_id=user_id,
        seq=seq,
        image=AssetRef(id=f"img-{job_id}", name=f"{job_id}.png"),
        reference_images=[AssetRef(id=f"ref-{job_id}-{i}") for i in range(refs)],
        settings=JobSettings(quality=quality, prompt=prompt),
    )
    job.created_at = BASE_TIME + timedelta(seconds=offset)
    return job


def make_request(user_id="u1", quality="hd", refs=0, music="none", custom_audio=None):
    return JobRequest(
        user_id=user_id,
        image=AssetRef(id="img"),
        reference_images=[AssetRef(id=f"ref{i}") for i in range(refs)],
        settings=JobSettings(quality=quality, music=music, custom_audio=custom_audio),
    )


class TestModels:

    def test_job_creation_defaults(self):
        """Test: Create a job with default settings."""
        job = Job(user_id="u1", image=AssetRef(id="img1"))
        assert job.status == JobStatus.QUEUED
        assert job.progress == 0
        assert job.retry_count == 0
        assert job.error is None
        assert job.started_at is None
        assert job.settings.duration == 3
        assert job.settings.motion_intensity == 50
        assert len(job.id) == 32

    def test_settings_bounds(self):
        """Test: Duration and motion intensity are range checked."""
        with pytest.raises(ValidationError):
            JobSettings(duration=11)
        with pytest.raises(ValidationError):
            JobSettings(duration=0)
        with pytest.raises(ValidationError):
            JobSettings(motion_intensity=5)
        with pytest.raises(ValidationError):
            JobSettings(style="spin")

    def test_custom_music_requires_audio(self):
        """Test: Custom music needs an uploaded track and only then."""
        with pytest.raises(ValidationError):
            JobSettings(music="custom")
        with pytest.raises(ValidationError):
            JobSettings(music="epic", custom_audio=AssetRef(id="a1"))
        settings = JobSettings(music="custom", custom_audio=AssetRef(id="a1"))
        assert settings.music == MusicTrack.CUSTOM

    def test_snapshot_hides_stage_when_not_processing(self):
        """Test: current stage is only reported while processing."""
        job = make_job("j1")
        job.current_stage = "Rendering with music integration"
        assert job.snapshot().current_stage is None
        job.status = JobStatus.PROCESSING
        assert job.snapshot().current_stage == "Rendering with music integration"

    def test_plan_features(self):
        """Test: Plan tiers map to concurrency and credit policy."""
        assert capacity_for(Plan.FREE) == 1
        assert capacity_for(Plan.PRO_MONTHLY) == 3
        assert capacity_for(Plan.PRO_ANNUAL) == 3
        assert capacity_for(Plan.PRO_PLUS_MONTHLY) == 5
        assert capacity_for(Plan.PRO_PLUS_ANNUAL) == 5
        assert Account(user_id="u1").remaining_credits(2) == 2
        assert Account(user_id="u1", plan=Plan.PRO_MONTHLY).remaining_credits(2) is None

    def test_remaining_credits_counts_reservations(self):
        account = Account(user_id="u1", credits_used=1, credits_reserved=1)
        assert account.remaining_credits(2) == 0
        assert account.remaining_credits(5) == 3


class TestStorage:

    def setup_method(self):
        self.test_dir = tempfile.mkdtemp(prefix="clipqueue_test_")
        self.storage = Storage(self.test_dir)

    def teardown_method(self):
        shutil.rmtree(self.test_dir, ignore_errors=True)

    def test_job_persistence(self):
        """Test: Jobs persist across storage instances."""
        job = make_job("persist1", quality="fhd", refs=2)
        self.storage.save(job)

        new_job = Storage(self.test_dir).load("persist1")
        assert new_job is not None
        assert new_job.settings.quality == Quality.FHD
        assert len(new_job.reference_images) == 2
        assert new_job.created_at == job.created_at

    def test_save_replaces_existing(self):
        job = make_job("j1")
        self.storage.save(job)
        job.progress = 40
        self.storage.save(job)

        assert len(self.storage.load_all()) == 1
        assert self.storage.load("j1").progress == 40

    def test_load_pending_for_user(self):
        """Test: Pending jobs are filtered by owner and status."""
        self.storage.save(make_job("a", seq=1, user_id="u1"))
        self.storage.save(make_job("b", seq=2, user_id="u2"))
        done = make_job("c", seq=3, user_id="u1")
        done.status = JobStatus.COMPLETED
        self.storage.save(done)
        self.storage.save(make_job("d", seq=4, user_id="u1"))

        assert [j.id for j in self.storage.load_pending_for_user("u1")] == ["a", "d"]

    def test_account_defaults_to_free(self):
        account = self.storage.get_account("nobody")
        assert account.plan == Plan.FREE
        assert account.credits_used == 0

    def test_account_persistence(self):
        self.storage.save_account(Account(user_id="u1", plan=Plan.PRO_ANNUAL, total_videos=4))
        account = Storage(self.test_dir).get_account("u1")
        assert account.plan == Plan.PRO_ANNUAL
        assert account.total_videos == 4

    def test_config_persistence(self):
        """Test: Configuration persists."""
        self.storage.set_config(Config(max_retries=5, default_batch_policy="priority"))
        config = Storage(self.test_dir).get_config()
        assert config.max_retries == 5
        assert config.default_batch_policy == BatchPolicy.PRIORITY

    def test_stats(self):
        """Test: Get job statistics."""
        self.storage.save(make_job("j1", seq=1))
        self.storage.save(make_job("j2", seq=2))
        done = make_job("j3", seq=3)
        done.status = JobStatus.COMPLETED
        self.storage.save(done)

        stats = self.storage.get_stats()
        assert stats["total"] == 3
        assert stats["queued"] == 2
        assert stats["completed"] == 1
        assert stats["failed"] == 0


class TestJobQueue:

    def setup_method(self):
        self.test_dir = tempfile.mkdtemp(prefix="clipqueue_test_")
        self.storage = Storage(self.test_dir)
        self.queue = JobQueue(self.storage)

    def teardown_method(self):
        shutil.rmtree(self.test_dir, ignore_errors=True)

    def test_enqueue_assigns_sequence(self):
        first = self.queue.enqueue(make_job("a"))
        second = self.queue.enqueue(make_job("b"))
        assert second.seq == first.seq + 1
        assert JobQueue(self.storage).enqueue(make_job("c")).seq == second.seq + 1

    def test_lifecycle(self):
        """Test: queued -> processing -> completed."""
        job = self.queue.enqueue(make_job("j1"))
        self.queue.mark_processing(job)
        assert job.status == JobStatus.PROCESSING
        assert job.started_at is not None
        assert [j.id for j in self.queue.in_flight("u1")] == ["j1"]

        self.queue.mark_completed(job)
        stored = self.storage.load("j1")
        assert stored.status == JobStatus.COMPLETED
        assert stored.progress == 100
        assert stored.completed_at is not None

    def test_failure_keeps_progress(self):
        job = self.queue.enqueue(make_job("j1"))
        self.queue.mark_processing(job)
        job.progress = 37
        self.queue.mark_failed(job, "Rendering: encoder crashed")
        assert job.status == JobStatus.FAILED
        assert job.progress == 37
        assert job.error == "Rendering: encoder crashed"

    def test_requeue_resets_progress(self):
        job = self.queue.enqueue(make_job("j1"))
        self.queue.mark_processing(job)
        job.progress = 60
        job.retry_count = 2
        self.queue.mark_failed(job, "boom")
        self.queue.requeue(job)

        assert job.status == JobStatus.QUEUED
        assert job.progress == 0
        assert job.error is None
        assert job.started_at is None
        assert job.retry_count == 2

        self.queue.mark_processing(job)
        self.queue.mark_failed(job, "boom")
        self.queue.requeue(job, reset_retries=True)
        assert job.retry_count == 0

    def test_invalid_transition(self):
        job = self.queue.enqueue(make_job("j1"))
        with pytest.raises(ValueError):
            self.queue.mark_completed(job)
        self.queue.mark_processing(job)
        self.queue.mark_completed(job)
        with pytest.raises(ValueError):
            self.queue.requeue(job)

    def test_recover_interrupted(self):
        job = self.queue.enqueue(make_job("j1"))
        self.queue.mark_processing(job)
        job.progress = 50

        reloaded = JobQueue(self.storage)
        recovered = reloaded.recover_interrupted()
        assert [j.id for j in recovered] == ["j1"]
        assert reloaded.get("j1").status == JobStatus.QUEUED
        assert reloaded.get("j1").retry_count == 0


class TestAdmission:

    def test_free_user_rejected_beyond_credits(self):
        """Free user with 2 credits asking for 3 jobs is rejected."""
        admission = AdmissionController(max_free_credits=2).try_admit(Plan.FREE, 0, 3)
        assert not admission.accepted
        assert admission.reason == "InsufficientCredits"
        assert admission.remaining == 2
        assert admission.requested == 3
        with pytest.raises(InsufficientCredits) as exc:
            admission.raise_for_rejection()
        assert exc.value.remaining == 2
        assert exc.value.requested == 3

    def test_free_user_within_credits(self):
        controller = AdmissionController(max_free_credits=2)
        assert controller.try_admit(Plan.FREE, 0, 2).accepted
        assert controller.try_admit(Plan.FREE, 1, 1).accepted
        assert not controller.try_admit(Plan.FREE, 2, 1).accepted
        assert not controller.try_admit(Plan.FREE, 1, 1, credits_reserved=1).accepted

    def test_paid_plans_unlimited(self):
        controller = AdmissionController(max_free_credits=2)
        for plan in (Plan.PRO_MONTHLY, Plan.PRO_ANNUAL, Plan.PRO_PLUS_MONTHLY, Plan.PRO_PLUS_ANNUAL):
            admission = controller.try_admit(plan, 999, 50)
            assert admission.accepted
            assert admission.remaining is None

    def test_reserve_charge_release(self):
        controller = AdmissionController(max_free_credits=2)
        account = Account(user_id="u1")
        controller.reserve(account, 2)
        assert account.credits_reserved == 2

        controller.charge(account, reserved=True)
        assert account.credits_reserved == 1
        assert account.credits_used == 1
        assert account.total_videos == 1

        controller.release(account)
        assert account.credits_reserved == 0
        assert account.credits_used == 1

    def test_paid_charge_only_counts_videos(self):
        controller = AdmissionController()
        account = Account(user_id="u1", plan=Plan.PRO_MONTHLY)
        controller.reserve(account, 3)
        controller.charge(account, reserved=False)
        assert account.credits_reserved == 0
        assert account.credits_used == 0
        assert account.total_videos == 1

    def test_unreserved_charge_after_downgrade(self):
        controller = AdmissionController(max_free_credits=2)
        account = Account(user_id="u1", credits_used=2)
        controller.charge(account, reserved=False)
        assert account.credits_used == 2
        assert account.total_videos == 1

    def test_plan_constraints(self):
        validate_requests([make_request(quality="hd")], Plan.FREE)
        validate_requests([make_request(quality="fhd", refs=1)], Plan.PRO_MONTHLY)
        validate_requests([make_request(quality="4k", refs=2)], Plan.PRO_PLUS_ANNUAL)

        with pytest.raises(InvalidJobRequest):
            validate_requests([make_request(quality="fhd")], Plan.FREE)
        with pytest.raises(InvalidJobRequest):
            validate_requests([make_request(quality="4k")], Plan.PRO_ANNUAL)
        with pytest.raises(InvalidJobRequest):
            validate_requests([make_request(refs=1)], Plan.FREE)
        with pytest.raises(InvalidJobRequest):
            validate_requests(
                [make_request(music="custom", custom_audio=AssetRef(id="a1"))], Plan.FREE
            )


class TestSelector:

    def test_sequential_is_fifo(self):
        jobs = [make_job("c", offset=2), make_job("a", offset=0), make_job("b", offset=1)]
        assert [j.id for j in order(jobs, BatchPolicy.SEQUENTIAL)] == ["a", "b", "c"]

    def test_sequential_tie_break(self):
        """Same timestamp keeps submission order, then id."""
        jobs = [make_job("z", seq=2), make_job("y", seq=1), make_job("x", seq=2)]
        assert [j.id for j in order(jobs, BatchPolicy.SEQUENTIAL)] == ["y", "x", "z"]

    def test_priority_score(self):
        assert priority_score(make_job("a", quality="4k", refs=1)) == 5
        assert priority_score(make_job("b", quality="4k")) == 3
        assert priority_score(make_job("c", quality="fhd", refs=3)) == 4
        assert priority_score(make_job("d", quality="hd")) == 1

    def test_priority_prefers_4k_with_references(self):
        """The 4k job with references goes first regardless of submission order."""
        hd = make_job("hd", quality="hd", offset=0)
        uhd = make_job("uhd", quality="4k", refs=1, offset=5)
        assert [j.id for j in order([hd, uhd], BatchPolicy.PRIORITY)] == ["uhd", "hd"]
        assert [j.id for j in order([uhd, hd], BatchPolicy.PRIORITY)] == ["uhd", "hd"]

    def test_priority_ties_are_fifo(self):
        jobs = [
            make_job("late", quality="fhd", offset=3),
            make_job("top", quality="4k", offset=9),
            make_job("early", quality="fhd", offset=1),
            make_job("low", quality="hd", offset=0),
        ]
        assert [j.id for j in order(jobs, BatchPolicy.PRIORITY)] == ["top", "early", "late", "low"]

    def test_parallel_preserves_input_order(self):
        jobs = [make_job("c", offset=2), make_job("a", quality="4k", refs=1), make_job("b", offset=1)]
        assert [j.id for j in order(jobs, BatchPolicy.PARALLEL)] == ["c", "a", "b"]

    def test_order_is_pure_and_deterministic(self):
        jobs = [make_job(f"j{i}", quality=q, refs=i % 2, offset=i) for i, q in
                enumerate(["hd", "4k", "fhd", "hd", "4k", "fhd"])]
        before = [j.id for j in jobs]
        first = [j.id for j in order(jobs, BatchPolicy.PRIORITY)]
        assert [j.id for j in order(jobs, BatchPolicy.PRIORITY)] == first
        assert [j.id for j in jobs] == before


class TestDispatcher:

    def test_free_slots(self):
        assert free_slots([], 3) == 3
        assert free_slots([make_job("a"), make_job("b")], 3) == 1
        assert free_slots([make_job("a"), make_job("b")], 1) == 0

    def test_tick_fills_free_capacity(self):
        pending = [make_job(f"p{i}", offset=i) for i in range(5)]
        started = Dispatcher(BatchPolicy.SEQUENTIAL).tick(pending, [], 3)
        assert [j.id for j in started] == ["p0", "p1", "p2"]

    def test_tick_respects_in_flight(self):
        pending = [make_job(f"p{i}", offset=i) for i in range(5)]
        running = [make_job("r0"), make_job("r1")]
        started = Dispatcher().tick(pending, running, 3, BatchPolicy.SEQUENTIAL)
        assert [j.id for j in started] == ["p0"]

    def test_tick_no_capacity_or_work(self):
        dispatcher = Dispatcher()
        assert dispatcher.tick([make_job("p")], [make_job("r")], 1) == []
        assert dispatcher.tick([], [], 5) == []

    def test_tick_uses_policy(self):
        pending = [make_job("hd", offset=0), make_job("uhd", quality="4k", refs=1, offset=1)]
        started = Dispatcher().tick(pending, [], 1, BatchPolicy.PRIORITY)
        assert [j.id for j in started] == ["uhd"]

    def test_tick_skips_jobs_already_started(self):
        pending = [make_job("a"), make_job("b", offset=1)]
        pending[0].status = JobStatus.PROCESSING
        started = Dispatcher(BatchPolicy.SEQUENTIAL).tick(pending, [pending[0]], 3)
        assert [j.id for j in started] == ["b"]


class TestRetryCoordinator:

    def test_requeue_until_bound(self):
        coordinator = RetryCoordinator(max_retries=3)
        job = make_job("j1")
        for expected in (1, 2, 3):
            assert coordinator.on_failure(job) == RetryDecision.REQUEUE
            assert job.retry_count == expected
        assert coordinator.on_failure(job) == RetryDecision.TERMINAL_FAIL
        assert job.retry_count == 3

    def test_zero_retries(self):
        job = make_job("j1")
        assert RetryCoordinator(max_retries=0).on_failure(job) == RetryDecision.TERMINAL_FAIL
        assert job.retry_count == 0

    def test_is_terminal(self):
        coordinator = RetryCoordinator(max_retries=1)
        job = make_job("j1")
        job.status = JobStatus.FAILED
        assert not coordinator.is_terminal(job)
        job.retry_count = 1
        assert coordinator.is_terminal(job)
        job.status = JobStatus.CANCELLED
        assert coordinator.is_terminal(job)


class TestStageRunner:

    def test_default_stages(self):
        plain = default_stages(make_job("a"))
        rich = default_stages(make_job("b", refs=1, prompt="sunset over the sea"))
        assert [s.name for s in plain][0] == "Analyzing image composition"
        assert [s.name for s in plain][-1] == "Final quality optimization"
        assert len(plain) == 7
        assert sum(s.weight for s in plain) == 95
        assert sum(s.weight for s in rich) == 120

    def test_stage_bounds(self):
        bounds = stage_bounds([Stage("a", 1), Stage("b", 1), Stage("c", 2)])
        assert bounds == [(0, 25), (25, 50), (50, 100)]

    def test_reporter_is_monotonic(self):
        job = make_job("j1")
        report = ProgressReporter(job, 20, 40)
        report.advance(0.5)
        assert job.progress == 30
        report.advance(0.25)
        assert job.progress == 30
        report.advance(3)
        assert job.progress == 40

    def test_runs_stages_in_order(self):
        seen = []
        progress = []

        async def handler(job, stage, report):
            seen.append(job.current_stage)
            report.advance(0.5)

        job = make_job("j1")
        runner = StageRunner(handler=handler)
        outcome = asyncio.run(runner.run(job, on_progress=lambda j: progress.append(j.progress)))

        assert outcome == RunOutcome.COMPLETED
        assert seen == [s.name for s in default_stages(job)]
        assert progress == sorted(progress)
        assert job.progress == 100

    def test_simulated_stage_completes(self):
        job = make_job("j1")
        outcome = asyncio.run(StageRunner(stage_delay=0).run(job))
        assert outcome == RunOutcome.COMPLETED
        assert job.progress == 100

    def test_stage_failure(self):
        async def handler(job, stage, report):
            if stage.name == "Generating motion effects":
                raise StageFailure("motion model unavailable")
            report.finish()

        job = make_job("j1")
        outcome = asyncio.run(StageRunner(handler=handler).run(job))
        assert outcome == RunOutcome.FAILED
        assert job.error == "motion model unavailable"
        assert job.current_stage == "Generating motion effects"
        assert 0 < job.progress < 100

    def test_unexpected_exception_is_a_failure(self):
        async def handler(job, stage, report):
            raise RuntimeError("disk full")

        job = make_job("j1")
        outcome = asyncio.run(StageRunner(handler=handler).run(job))
        assert outcome == RunOutcome.FAILED
        assert job.error == "Analyzing image composition: RuntimeError: disk full"

    def test_per_stage_handler(self):
        calls = []

        async def default(job, stage, report):
            calls.append("default")

        async def special(job, stage, report):
            calls.append("special")

        def plan(job):
            return [Stage("one", 1), Stage("two", 1, handler=special)]

        outcome = asyncio.run(StageRunner(handler=default, plan=plan).run(make_job("j1")))
        assert outcome == RunOutcome.COMPLETED
        assert calls == ["default", "special"]

    def test_cancel_checked_between_stages(self):
        seen = []
        flag = {"cancel": False}

        async def handler(job, stage, report):
            seen.append(stage.name)
            flag["cancel"] = True

        job = make_job("j1")
        outcome = asyncio.run(
            StageRunner(handler=handler).run(job, cancel_requested=lambda: flag["cancel"])
        )
        assert outcome == RunOutcome.CANCELLED
        assert seen == ["Analyzing image composition"]

    def test_cancel_after_last_stage(self):
        flag = {"cancel": False}

        async def handler(job, stage, report):
            if stage.name == "Final quality optimization":
                flag["cancel"] = True

        job = make_job("j1")
        outcome = asyncio.run(
            StageRunner(handler=handler).run(job, cancel_requested=lambda: flag["cancel"])
        )
        assert outcome == RunOutcome.CANCELLED
        assert job.progress == 100


class _Sink(Notifier):

    def __init__(self, fail=False):
        self.fail = fail
        self.received = []

    async def notify(self, job):
        if self.fail:
            raise ConnectionError("endpoint gone")
        self.received.append(job.id)


class TestNotify:

    def test_message_for(self):
        job = make_job("j1")
        job.status = JobStatus.COMPLETED
        assert message_for(job.snapshot())[0] == "Video ready"
        job.status = JobStatus.FAILED
        job.error = "encoder crashed"
        assert "encoder crashed" in message_for(job.snapshot())[1]

    def test_fanout_isolates_failures(self):
        sinks = [_Sink(fail=(i % 50 == 0)) for i in range(250)]
        notifier = FanoutNotifier(sinks, batch_size=100)
        job = make_job("j1")
        job.status = JobStatus.COMPLETED

        result = asyncio.run(notifier.deliver(job.snapshot()))
        assert result.failure_count == 5
        assert result.success_count == 245
        assert result.failed == [0, 50, 100, 150, 200]
        assert sinks[1].received == ["j1"]

    def test_fanout_batch_size(self):
        with pytest.raises(ValueError):
            FanoutNotifier([], batch_size=0)
