"""Auto-resume watchdog.

Polls RUNNING jobs that work through an item queue. When a job has items
ready to process (queued, no backoff timer pending) but none running, its
invocation must have died without scheduling a continuation, so the
watchdog resumes it.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from jobengine.db.gateway import TableGateway, guarded
from jobengine.jobs.errors import EngineError
from jobengine.jobs.models import JobRecord, JobStatus, utcnow
from jobengine.jobs.registry import ItemQueue, ResumeHandlerRegistry
from jobengine.jobs.state_machine import JobService

logger = logging.getLogger(__name__)


@dataclass
class QueueStats:
    ready: int = 0
    backoff: int = 0
    running: int = 0
    next_retry_at: Optional[datetime] = None

    @property
    def stalled(self) -> bool:
        return self.ready > 0 and self.running == 0


def _parse_time(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


async def queue_stats(
    gateway: TableGateway,
    queue: ItemQueue,
    key: str,
    now: Optional[datetime] = None,
) -> QueueStats:
    now = now or utcnow()
    stats = QueueStats()
    rows = await gateway.select(
        queue.table,
        eq={queue.foreign_key: key},
        in_={"status": ["queued", "running"]},
    )
    for row in rows:
        if row.get("status") == "running":
            stats.running += 1
            continue
        retry_after = _parse_time(row.get("retry_after"))
        if retry_after is None or retry_after <= now:
            stats.ready += 1
        else:
            stats.backoff += 1
            if stats.next_retry_at is None or retry_after < stats.next_retry_at:
                stats.next_retry_at = retry_after
    return stats


class AutoResumeWatchdog:
    def __init__(
        self,
        jobs: JobService,
        gateway: TableGateway,
        registry: ResumeHandlerRegistry,
        interval_seconds: float = 30.0,
        now: Callable[[], datetime] = utcnow,
    ):
        self._jobs = jobs
        self._gateway = guarded(gateway)
        self._registry = registry
        self._interval = interval_seconds
        self._now = now
        self._task: Optional[asyncio.Task] = None
        self.last_check_time: Optional[datetime] = None

    async def check_job(self, job: JobRecord) -> bool:
        """Resume ``job`` if its queue is stalled. Returns True when a resume was issued."""
        queue = self._registry.item_queue(job.type)
        if queue is None or self._registry.is_executing(job.id):
            return False
        key = job.context.get(queue.context_key)
        if not key:
            return False

        stats = await queue_stats(self._gateway, queue, key, now=self._now())
        if not stats.stalled:
            return False

        logger.info("Job %s: detected %d stalled items, resuming", job.id, stats.ready)
        await self._registry.resume(job.id)
        await self._jobs.log_event(job.id, f"Auto-resumed {stats.ready} pending items")
        return True

    async def check_once(self) -> List[str]:
        """One polling pass. Returns the ids of resumed jobs."""
        self.last_check_time = self._now()
        resumed = []
        for job in await self._jobs.list_jobs(JobStatus.RUNNING):
            try:
                if await self.check_job(job):
                    resumed.append(job.id)
            except EngineError as e:
                logger.error("Auto-resume of job %s failed: %s", job.id, e)
        return resumed

    async def start(self) -> None:
        self._task = asyncio.create_task(self._poll_loop())

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _poll_loop(self) -> None:
        # Only cancellation ends the loop; a failed pass is retried next interval
        while True:
            try:
                await self.check_once()
            except EngineError as e:
                logger.error("Watchdog check failed: %s", e)
            except Exception:
                logger.exception("Unexpected error in watchdog check")
            await asyncio.sleep(self._interval)
