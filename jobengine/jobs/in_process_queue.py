"""In-process job dispatcher using asyncio.

A fixed pool of worker tasks pulls job ids from a queue and runs one
invocation each. No external broker (Redis, Celery) is needed; the job
record in the store carries everything an invocation needs.

Single-flight per job id: if a job is submitted while an invocation of it
is still executing (a self-continuation scheduled just before the running
invocation returns, or a watchdog resume racing an operator resume), the
submission is held and re-queued once the running invocation finishes.
"""

import asyncio
import logging
from typing import List, Optional, Set

from jobengine.jobs.dispatcher import InvocationRunner, JobDispatcher

logger = logging.getLogger(__name__)


class InProcessQueue(JobDispatcher):
    """Local async dispatcher. Runs up to ``max_concurrent`` invocations at once."""

    def __init__(self, max_concurrent: int = 2, runner: Optional[InvocationRunner] = None):
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._runner = runner
        self._max_concurrent = max(1, max_concurrent)
        self._tasks: List[asyncio.Task] = []
        self._active: Set[str] = set()
        self._rerun: Set[str] = set()
        self._running = False

    def bind(self, runner: InvocationRunner) -> None:
        self._runner = runner

    async def submit(self, job_id: str) -> None:
        await self._queue.put(job_id)

    def is_active(self, job_id: str) -> bool:
        return job_id in self._active

    async def start(self) -> None:
        if self._runner is None:
            raise RuntimeError("InProcessQueue.start() called before bind()")
        self._running = True
        self._tasks = [
            asyncio.create_task(self._worker_loop(n)) for n in range(self._max_concurrent)
        ]

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []

    async def join(self) -> None:
        """Wait until every submitted invocation (and its continuations) has run."""
        await self._queue.join()

    async def _worker_loop(self, worker_id: int) -> None:
        """Process job ids one at a time from the queue."""
        while self._running:
            try:
                job_id = await asyncio.wait_for(self._queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break

            try:
                if job_id in self._active:
                    self._rerun.add(job_id)
                    continue
                await self._invoke(worker_id, job_id)
            finally:
                self._queue.task_done()

    async def _invoke(self, worker_id: int, job_id: str) -> None:
        self._active.add(job_id)
        try:
            logger.debug("Worker %d running invocation of job %s", worker_id, job_id)
            await self._runner(job_id)
        except Exception:
            # The runner supervises its own failures; anything reaching here is a bug.
            logger.exception("Invocation of job %s raised past its supervisor", job_id)
        finally:
            self._active.discard(job_id)
            if job_id in self._rerun:
                self._rerun.discard(job_id)
                await self._queue.put(job_id)
