"""Event dispatcher - turns bursts of new-mail events into pipeline runs.

A single pending flag sits between the supervisor and the pipeline. Events
that arrive while a run is executing collapse into one follow-up run, and
runs never overlap.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional, Sequence

from mailwatch.core.imap.events import ChangeEvent
from mailwatch.pipeline.base import PipelineContext, PipelineStage, StageSkipped
from mailwatch.utils.errors import ErrorHandler, StageTimeoutError, WatcherError
from mailwatch.utils.logging import get_logger, log_event

logger = get_logger(__name__)


class StageOutcome(Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class PipelineRun:
    """One triggered reaction and how each stage fared."""

    trigger: ChangeEvent
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    outcomes: Dict[str, StageOutcome] = field(default_factory=dict)
    finished_at: Optional[datetime] = None

    @property
    def succeeded(self) -> bool:
        return all(outcome is not StageOutcome.FAILED for outcome in self.outcomes.values())

    @property
    def duration(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()


class EventDispatcher:
    """Single worker with a queue depth of one."""

    def __init__(
        self,
        stages: Sequence[PipelineStage],
        shutdown: asyncio.Event,
        stage_timeout: float = 120.0,
    ):
        self.stages = list(stages)
        self._shutdown = shutdown
        self.stage_timeout = stage_timeout

        self._pending = asyncio.Event()
        self._trigger: Optional[ChangeEvent] = None
        self._running = False

        self.runs_started = 0
        self.last_run: Optional[PipelineRun] = None

    @property
    def pending(self) -> bool:
        return self._pending.is_set()

    @property
    def running(self) -> bool:
        return self._running

    def submit(self, event: ChangeEvent) -> None:
        """Request a run for ``event``. Never blocks."""
        if self._pending.is_set() or self._running:
            logger.debug("Coalescing event into pending run", extra={"value": event.value})
        self._trigger = event
        self._pending.set()

    async def run(self) -> None:
        """Execute runs until shutdown. A run in progress is allowed to finish."""
        logger.info("Event dispatcher started")

        while True:
            await self._wait_for_work()
            if self._shutdown.is_set():
                break

            self._pending.clear()
            trigger, self._trigger = self._trigger, None
            await self.execute(trigger)

        logger.info("Event dispatcher stopped", extra={"runs": self.runs_started})

    async def _wait_for_work(self) -> None:
        if self._pending.is_set() or self._shutdown.is_set():
            return

        pending = asyncio.ensure_future(self._pending.wait())
        shutdown = asyncio.ensure_future(self._shutdown.wait())
        try:
            await asyncio.wait({pending, shutdown}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (pending, shutdown):
                if not task.done():
                    task.cancel()

    async def execute(self, trigger: ChangeEvent) -> PipelineRun:
        """Run every stage once for ``trigger``.

        A failed required stage skips the remaining stages.
        """
        run = PipelineRun(trigger=trigger)
        context = PipelineContext(trigger=trigger)
        self.runs_started += 1
        self._running = True
        aborted = False

        logger.info("Pipeline run started", extra={"run": self.runs_started})

        try:
            for stage in self.stages:
                if aborted:
                    run.outcomes[stage.name] = StageOutcome.SKIPPED
                    continue

                outcome = await self._run_stage(stage, context)
                run.outcomes[stage.name] = outcome
                if outcome is StageOutcome.FAILED and stage.required:
                    aborted = True

        finally:
            self._running = False
            run.finished_at = datetime.now(timezone.utc)
            self.last_run = run

        log_event(
            "pipeline_run_completed",
            f"Pipeline run {'succeeded' if run.succeeded else 'failed'}",
            succeeded=run.succeeded,
            outcomes={name: outcome.value for name, outcome in run.outcomes.items()},
            duration_seconds=run.duration,
        )
        return run

    async def _run_stage(self, stage: PipelineStage, context: PipelineContext) -> StageOutcome:
        try:
            await asyncio.wait_for(stage.run(context), timeout=self.stage_timeout)

        except StageSkipped as e:
            logger.debug(f"Stage {stage.name} skipped: {e}")
            return StageOutcome.SKIPPED

        except asyncio.TimeoutError:
            error = StageTimeoutError(
                f"Stage {stage.name} timed out after {self.stage_timeout}s",
                details={"stage": stage.name},
            )
            self._report(stage, error)
            return StageOutcome.FAILED

        except Exception as e:
            self._report(stage, e)
            return StageOutcome.FAILED

        return StageOutcome.SUCCESS

    def _report(self, stage: PipelineStage, error: Exception) -> None:
        if stage.required:
            ErrorHandler.handle(
                error,
                context=f"Pipeline stage {stage.name}",
                log_traceback=not isinstance(error, WatcherError),
            )
        else:
            logger.warning(f"Best-effort stage {stage.name} failed: {error}")
