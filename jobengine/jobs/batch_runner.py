"""Bounded-parallel batch processing with per-item failure isolation."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import (
    Any, Awaitable, Callable, Dict, Generic, Iterable, List, Optional, Sequence, TypeVar,
)

from jobengine.jobs.errors import StoreUnavailable
from jobengine.jobs.retry import RetryPolicy, is_retryable, retry_call
from jobengine.jobs.step_loop import InvocationGuard, LoopOutcome, Progress, run_units

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class ItemDeferred(Exception):
    """Raised by a worker to leave an item for a later invocation (e.g. in backoff)."""

    def __init__(self, reason: str = "", retry_after: Optional[datetime] = None):
        super().__init__(reason)
        self.retry_after = retry_after


@dataclass
class ItemFailure(Generic[T]):
    item: T
    error: BaseException


@dataclass
class BatchOutcome(Generic[T, R]):
    succeeded: List[R] = field(default_factory=list)
    failed: List[ItemFailure[T]] = field(default_factory=list)
    deferred: List[T] = field(default_factory=list)


async def run_batch(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
    width: int,
    retry: Optional[RetryPolicy] = None,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> BatchOutcome:
    """Run ``worker`` over ``items``, at most ``width`` at a time.

    Each call goes through the retrier; a worker that still fails is
    recorded in ``failed`` and never aborts the rest of the batch. A store
    outage is not an item failure: once the group has settled it is raised
    so the invocation stops without recording the group.
    """
    if width < 1:
        raise ValueError("width must be at least 1")
    policy = retry or RetryPolicy(max_attempts=1)
    semaphore = asyncio.Semaphore(width)

    async def run_one(item: T):
        async with semaphore:
            try:
                result = await retry_call(
                    lambda: worker(item), policy, sleep=sleep, retryable=_retryable,
                )
                return item, result, None
            except Exception as e:
                return item, None, e

    outcome: BatchOutcome = BatchOutcome()
    results = await asyncio.gather(*(run_one(i) for i in items))
    for _, _, error in results:
        if isinstance(error, StoreUnavailable):
            raise error
    for item, result, error in results:
        if error is None:
            outcome.succeeded.append(result)
        elif isinstance(error, ItemDeferred):
            outcome.deferred.append(item)
        else:
            outcome.failed.append(ItemFailure(item, error))
    return outcome


def _retryable(exc: BaseException) -> bool:
    return not isinstance(exc, ItemDeferred) and is_retryable(exc)


def _chunks(items: Sequence[T], size: int) -> List[List[T]]:
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


class BatchRunner:
    """Drives a list of items through ``run_batch`` one group at a time.

    Every group is one guarded unit: pause/cancel is checked before it,
    progress and the processed/failed id sets are checkpointed after it, and
    the invocation hands off when its budget runs out. Items whose id is
    already in the processed set are skipped, which makes a resumed run
    pick up exactly the items the interrupted one did not finish.
    """

    def __init__(
        self,
        guard: InvocationGuard,
        *,
        width: int = 3,
        retry: Optional[RetryPolicy] = None,
        delay_between: float = 0.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.guard = guard
        self.width = width
        self.retry = retry or RetryPolicy()
        self.delay_between = delay_between
        self._sleep = sleep
        self.deferred: List = []

    async def run(
        self,
        items: Iterable[T],
        worker: Callable[[T], Awaitable[R]],
        *,
        key: Callable[[T], str],
        label: str,
        processed_ids: Iterable[str] = (),
        failed_ids: Iterable[str] = (),
        on_failure: Optional[Callable[[T, BaseException], Awaitable[None]]] = None,
        context_extra: Optional[Callable[[], Dict[str, Any]]] = None,
    ) -> LoopOutcome:
        processed = list(processed_ids)
        failed = list(failed_ids)
        seen = set(processed)
        remaining = [i for i in items if key(i) not in seen]
        self.deferred = []

        job = await self.guard.jobs.get(self.guard.job_id)
        total = job.progress_done + job.progress_failed + len(remaining)
        finished = len(processed)
        step_total = finished + len(remaining)

        if not remaining:
            logger.info("Job %s: %s has no remaining items", self.guard.job_id, label)
            return LoopOutcome.COMPLETED

        await self.guard.jobs.checkpoint(
            self.guard.job_id,
            total=total,
            message=f"{label}: {finished}/{step_total}",
        )

        async def process(group: List[T]) -> Progress:
            nonlocal finished
            outcome = await run_batch(group, worker, self.width, self.retry, sleep=self._sleep)
            for failure in outcome.failed:
                logger.warning(
                    "Job %s: %s failed for %s: %s",
                    self.guard.job_id, label, key(failure.item), failure.error,
                )
                if on_failure is not None:
                    await on_failure(failure.item, failure.error)
            self.deferred.extend(outcome.deferred)

            deferred_keys = {key(i) for i in outcome.deferred}
            failed_keys = [key(f.item) for f in outcome.failed]
            for item in group:
                if key(item) not in deferred_keys:
                    processed.append(key(item))
            failed.extend(failed_keys)
            finished += len(group) - len(outcome.deferred)

            return Progress(
                done_delta=len(outcome.succeeded),
                failed_delta=len(outcome.failed),
                message=f"{label}: {finished}/{step_total}",
                context_patch={
                    "processed_ids": list(processed),
                    "failed_ids": list(failed),
                    **(context_extra() if context_extra else {}),
                },
            )

        outcome = await run_units(
            self.guard,
            _chunks(remaining, self.width),
            process,
            delay_between=self.delay_between,
            sleep=self._sleep,
        )
        if outcome == LoopOutcome.COMPLETED and self.deferred:
            return LoopOutcome.WAITING
        return outcome
