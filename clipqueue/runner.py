"""Stage runner: drives one dispatched job through its processing stages.

Each stage is an awaitable unit of work. The default handler only waits
(``stage_delay`` seconds per weight unit) and reports progress; a real
media step is plugged in by passing another handler, or by giving a
``Stage`` its own handler, without touching the runner itself.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Tuple

from .errors import StageFailure
from .models import Job

logger = logging.getLogger(__name__)


class RunOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ProgressReporter:
    """Moves a job's progress forward inside one stage's share of 0-100."""

    def __init__(
        self,
        job: Job,
        start: int,
        end: int,
        on_progress: Optional[Callable[[Job], None]] = None,
    ):
        self.job = job
        self.start = start
        self.end = end
        self.on_progress = on_progress

    def advance(self, fraction: float) -> None:
        """Report the fraction (0.0-1.0) of the current stage that is done."""
        fraction = min(max(fraction, 0.0), 1.0)
        value = self.start + int((self.end - self.start) * fraction)
        if value > self.job.progress:
            self.job.progress = value
            if self.on_progress:
                self.on_progress(self.job)

    def finish(self) -> None:
        self.advance(1.0)


StageHandler = Callable[[Job, "Stage", ProgressReporter], Awaitable[None]]


@dataclass
class Stage:
    """One named processing step with a relative duration weight."""
    name: str
    weight: float
    handler: Optional[StageHandler] = None


def default_stages(job: Job) -> List[Stage]:
    """The image-to-video pipeline, weighted by expected duration."""
    return [
        Stage("Analyzing image composition", 15),
        Stage("Processing reference images", 20 if job.has_references else 5),
        Stage("Applying AI prompt enhancement", 15 if job.settings.prompt else 5),
        Stage("Generating motion effects", 25),
        Stage("Applying advanced motion control", 15),
        Stage("Rendering with music integration", 20),
        Stage("Final quality optimization", 10),
    ]


def simulated_stage(delay_per_unit: float, steps: int = 5) -> StageHandler:
    """Stand-in for real media work: sleeps in a few steps, reporting as it goes."""

    async def handler(job: Job, stage: Stage, report: ProgressReporter) -> None:
        pause = stage.weight * delay_per_unit / steps
        for i in range(1, steps + 1):
            await asyncio.sleep(pause)
            report.advance(i / steps)

    return handler


def stage_bounds(stages: List[Stage]) -> List[Tuple[int, int]]:
    """Progress range covered by each stage; the last one ends at 100."""
    total = sum(stage.weight for stage in stages) or 1
    bounds = []
    done = 0.0
    for stage in stages:
        start = int(round(done / total * 100))
        done += stage.weight
        bounds.append((start, int(round(done / total * 100))))
    return bounds


class StageRunner:
    """Executes a job's stages in declared order.

    The runner only moves ``progress`` and ``current_stage`` and reports the
    outcome. Status transitions belong to the scheduler.
    """

    def __init__(
        self,
        handler: Optional[StageHandler] = None,
        plan: Callable[[Job], List[Stage]] = default_stages,
        stage_delay: float = 0.05,
    ):
        self.handler = handler or simulated_stage(stage_delay)
        self.plan = plan

    async def run(
        self,
        job: Job,
        cancel_requested: Optional[Callable[[], bool]] = None,
        on_stage: Optional[Callable[[Job], None]] = None,
        on_progress: Optional[Callable[[Job], None]] = None,
    ) -> RunOutcome:
        stages = self.plan(job)
        for stage, (start, end) in zip(stages, stage_bounds(stages)):
            # cancellation is only honoured between stages
            if cancel_requested is not None and cancel_requested():
                logger.info("Job %s cancelled before stage '%s'", job.id, stage.name)
                return RunOutcome.CANCELLED

            job.current_stage = stage.name
            if on_stage:
                on_stage(job)

            report = ProgressReporter(job, start, end, on_progress)
            handler = stage.handler or self.handler
            try:
                await handler(job, stage, report)
            except asyncio.CancelledError:
                raise
            except StageFailure as e:
                if e.stage is None:
                    e.stage = stage.name
                job.error = str(e)
                logger.info("Job %s failed in stage '%s': %s", job.id, stage.name, e)
                return RunOutcome.FAILED
            except Exception as e:
                job.error = f"{stage.name}: {type(e).__name__}: {e}"
                logger.exception("Job %s crashed in stage '%s'", job.id, stage.name)
                return RunOutcome.FAILED
            report.finish()

        if cancel_requested is not None and cancel_requested():
            logger.info("Job %s cancelled after its final stage", job.id)
            return RunOutcome.CANCELLED
        return RunOutcome.COMPLETED
