"""Timeout-guarded execution of units of work.

An invocation may be killed by the platform without warning once it runs
past its hard limit, so every invocation works against a self-imposed
ceiling. Running out of budget with work remaining is a normal outcome:
progress is checkpointed and the rest is handed to a fresh invocation
through the continuation callback (the dispatcher's re-enqueue), exactly as
if an operator had resumed the job.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence, Tuple, TypeVar

from jobengine.jobs.models import JobEventLevel
from jobengine.jobs.state_machine import JobService

logger = logging.getLogger(__name__)

U = TypeVar("U")

Continuation = Callable[[str], Awaitable[None]]


class LoopOutcome(str, Enum):
    COMPLETED = "completed"      # every unit processed
    HALTED = "halted"            # paused, canceled or finished elsewhere
    HANDED_OFF = "handed_off"    # budget exhausted, continuation scheduled
    WAITING = "waiting"          # remaining units are in backoff


@dataclass
class Progress:
    """What one processed unit contributes to the next checkpoint."""
    done_delta: int = 0
    failed_delta: int = 0
    total: Optional[int] = None
    message: Optional[str] = None
    context_patch: Dict[str, Any] = field(default_factory=dict)


class InvocationGuard:
    """Elapsed-time budget and cooperative cancellation for one invocation."""

    def __init__(
        self,
        jobs: JobService,
        job_id: str,
        ceiling_seconds: float,
        continuation: Continuation,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.jobs = jobs
        self.job_id = job_id
        self.ceiling_seconds = ceiling_seconds
        self._continuation = continuation
        self._clock = clock
        self._started = clock()
        self.handed_off = False

    def elapsed(self) -> float:
        return self._clock() - self._started

    def over_budget(self) -> bool:
        return self.elapsed() > self.ceiling_seconds

    async def should_stop(self) -> bool:
        halted = await self.jobs.is_halted(self.job_id)
        if halted:
            logger.info("Job %s was paused/canceled, stopping", self.job_id)
        return halted

    async def hand_off(self, context_patch: Optional[Dict[str, Any]] = None) -> None:
        """Checkpoint the context snapshot and schedule a fresh invocation."""
        current = await self.jobs.get(self.job_id)
        finished = current.progress_done + current.progress_failed
        job = await self.jobs.checkpoint(
            self.job_id,
            message=f"Continuing in a new invocation ({finished}/{current.progress_total})",
            context_patch=context_patch,
        )
        logger.info(
            "Job %s approaching time limit after %.1fs (%d done), continuing in new invocation",
            self.job_id, self.elapsed(), job.progress_done,
        )
        await self.jobs.log_event(
            self.job_id,
            "Invocation budget reached, continuing in a new invocation",
            level=JobEventLevel.INFO,
            elapsed_seconds=round(self.elapsed(), 1),
            progress_done=job.progress_done,
        )
        await self._continuation(self.job_id)
        self.handed_off = True


async def run_units(
    guard: InvocationGuard,
    units: Sequence[U],
    process: Callable[[U], Awaitable[Progress]],
    *,
    delay_between: float = 0.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> LoopOutcome:
    """Process ``units`` in order, checkpointing after each one.

    Pause/cancel is checked before every unit; a unit already started is
    allowed to finish. After each checkpoint the elapsed time is compared
    with the ceiling and, when exceeded, the job is handed off.
    """
    for index, unit in enumerate(units):
        if await guard.should_stop():
            return LoopOutcome.HALTED

        progress = await process(unit)
        await guard.jobs.checkpoint(
            guard.job_id,
            done_delta=progress.done_delta,
            failed_delta=progress.failed_delta,
            total=progress.total,
            message=progress.message,
            context_patch=progress.context_patch or None,
        )

        more = index < len(units) - 1
        if more and guard.over_budget():
            # A pause during the last unit wins over the continuation
            if await guard.should_stop():
                return LoopOutcome.HALTED
            await guard.hand_off()
            return LoopOutcome.HANDED_OFF
        if more and delay_between:
            await sleep(delay_between)

    return LoopOutcome.COMPLETED


Step = Tuple[str, Callable[[], Awaitable[LoopOutcome]]]


async def run_steps(
    guard: InvocationGuard,
    steps: Sequence[Step],
    current_step: int = 1,
) -> LoopOutcome:
    """Run a multi-step job from ``current_step`` (1-based).

    Each step resumes from its own context fields. When a step completes,
    ``current_step`` advances and the per-step processed/failed sets reset,
    so a later invocation never re-enters a finished step.
    """
    total = len(steps)
    for number in range(current_step, total + 1):
        name, run = steps[number - 1]
        if await guard.should_stop():
            return LoopOutcome.HALTED

        await guard.jobs.checkpoint(guard.job_id, message=f"Step {number}/{total}: {name}")
        outcome = await run()
        if outcome != LoopOutcome.COMPLETED:
            return outcome

        await guard.jobs.checkpoint(
            guard.job_id,
            message=f"Step {number}/{total}: {name} done",
            context_patch={"current_step": number + 1, "processed_ids": [], "failed_ids": []},
        )
        if number < total and guard.over_budget():
            if await guard.should_stop():
                return LoopOutcome.HALTED
            await guard.hand_off()
            return LoopOutcome.HANDED_OFF

    return LoopOutcome.COMPLETED
