"""Resume handler registry: job type -> the coroutine that continues it.

The handler table is passed in once at startup. ``resume`` validates the
request synchronously (job exists, type supported, transition legal), marks
the job RUNNING and hands the invocation to the dispatcher, returning before
any work is done. The dispatcher calls back into ``run_invocation``, which
supervises the handler: an exception escaping it becomes a FAILED transition,
except a store outage, which leaves the job untouched for a later resume.
"""

import logging
import time
import traceback
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from jobengine.db.gateway import TableGateway, guarded
from jobengine.jobs.contexts import dump_context, load_context
from jobengine.jobs.dispatcher import JobDispatcher
from jobengine.jobs.errors import (
    InvalidTransition,
    JobNotFound,
    StoreUnavailable,
    UnsupportedJobType,
)
from jobengine.jobs.models import JobRecord, JobStatus, JobType
from jobengine.jobs.state_machine import JobService, can_transition
from jobengine.jobs.step_loop import InvocationGuard

logger = logging.getLogger(__name__)


@dataclass
class Invocation:
    """Everything a handler gets for one run: the job as loaded, services and budget."""
    job: JobRecord
    jobs: JobService
    gateway: TableGateway
    guard: InvocationGuard
    services: Mapping[str, Any]

    def service(self, name: str) -> Any:
        return self.services[name]


Handler = Callable[[Invocation], Awaitable[None]]


@dataclass(frozen=True)
class ItemQueue:
    """Rows a job type works through, addressed by a key stored in its context."""
    table: str
    foreign_key: str
    context_key: str


@dataclass
class ResumeAccepted:
    accepted: bool
    job_id: str
    type: JobType
    message: str


class ResumeHandlerRegistry:
    def __init__(
        self,
        handlers: Mapping[JobType, Handler],
        jobs: JobService,
        gateway: TableGateway,
        dispatcher: JobDispatcher,
        *,
        ceiling_seconds: float = 50.0,
        item_queues: Optional[Mapping[JobType, ItemQueue]] = None,
        services: Optional[Mapping[str, Any]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._handlers: Dict[JobType, Handler] = dict(handlers)
        self._jobs = jobs
        self._gateway = guarded(gateway)
        self._dispatcher = dispatcher
        self._ceiling = ceiling_seconds
        self._item_queues: Dict[JobType, ItemQueue] = dict(item_queues or {})
        self._services = dict(services or {})
        self._clock = clock
        dispatcher.bind(self.run_invocation)

    @property
    def supported_types(self) -> List[JobType]:
        return list(self._handlers)

    def is_executing(self, job_id: str) -> bool:
        return self._dispatcher.is_active(job_id)

    def item_queue(self, job_type: JobType) -> Optional[ItemQueue]:
        return self._item_queues.get(job_type)

    def _handler_for(self, job: JobRecord) -> Handler:
        handler = self._handlers.get(job.type)
        if handler is None:
            raise UnsupportedJobType(job.type.value, [t.value for t in self._handlers])
        return handler

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    async def resume(self, job_id: str) -> ResumeAccepted:
        job = await self._jobs.get(job_id)
        self._handler_for(job)
        if not can_transition(job.status, JobStatus.RUNNING):
            raise InvalidTransition(job_id, job.status.value, JobStatus.RUNNING.value)

        logger.info("Starting resume for %s job %s", job.type.value, job_id)
        await self._jobs.transition_to(job_id, JobStatus.RUNNING, "Resuming...")
        await self._jobs.log_event(job_id, "Resume requested", previous_status=job.status.value)
        await self._dispatcher.submit(job_id)
        return ResumeAccepted(
            accepted=True,
            job_id=job_id,
            type=job.type,
            message=f"{job.type.value} job resume started in background",
        )

    async def continue_job(self, job_id: str) -> None:
        """Self-continuation: schedule a fresh invocation without touching status."""
        await self._dispatcher.submit(job_id)

    async def pause(self, job_id: str) -> JobRecord:
        job = await self._jobs.get(job_id)
        if not job.supports_pause:
            raise InvalidTransition(job_id, job.status.value, JobStatus.PAUSED.value)
        job = await self._jobs.transition_to(job_id, JobStatus.PAUSED, "Paused by operator")
        await self._jobs.log_event(job_id, "Paused by operator")
        return job

    async def cancel(self, job_id: str) -> JobRecord:
        job = await self._jobs.transition_to(job_id, JobStatus.CANCELED, "Canceled by operator")
        await self._jobs.log_event(job_id, "Canceled by operator")
        return job

    async def requeue_failed(self, job_id: str) -> ResumeAccepted:
        """Bulk retry: failed items back to queued with cleared counters, then resume."""
        job = await self._jobs.get(job_id)
        self._handler_for(job)
        if not job.supports_retry or not can_transition(job.status, JobStatus.RUNNING):
            raise InvalidTransition(job_id, job.status.value, JobStatus.RUNNING.value)

        reset = await self._requeue_failed_items(job)

        context = load_context(job)
        failed = set(context.failed_ids)
        context.processed_ids = [i for i in context.processed_ids if i not in failed]
        context.failed_ids = []
        reset = max(reset, len(failed))

        await self._jobs.reset_failed(
            job_id,
            context_patch=dump_context(context),
            message=f"Reset {reset} failed items",
        )
        await self._jobs.log_event(job_id, f"Reset {reset} failed items to queued", reset=reset)
        return await self.resume(job_id)

    async def restart(self, job_id: str) -> JobRecord:
        """Start the same work over as a new job seeded from the old job's context."""
        job = await self._jobs.get(job_id)
        self._handler_for(job)
        if not job.supports_restart:
            raise InvalidTransition(job_id, job.status.value, "RESTART")

        seed = load_context(job).seed()
        fresh = await self._jobs.create(
            job.type,
            seed,
            title=job.title,
            supports_pause=job.supports_pause,
            supports_retry=job.supports_retry,
            supports_restart=job.supports_restart,
            source_job_id=job.id,
        )
        reset = await self._requeue_failed_items(job)
        await self._jobs.log_event(job_id, f"Restarted as job {fresh.id}", new_job_id=fresh.id)
        if reset:
            await self._jobs.log_event(fresh.id, f"Reset {reset} failed items to queued", reset=reset)
        await self.resume(fresh.id)
        return await self._jobs.get(fresh.id)

    async def _requeue_failed_items(self, job: JobRecord) -> int:
        """Failed rows of the job's item queue back to queued with cleared counters."""
        queue = self._item_queues.get(job.type)
        key = job.context.get(queue.context_key) if queue else None
        if key is None:
            return 0
        rows = await self._gateway.update(
            queue.table,
            {"status": "queued", "retry_count": 0, "retry_after": None, "error_message": None},
            eq={queue.foreign_key: key, "status": "failed"},
        )
        return len(rows)

    # ------------------------------------------------------------------
    # Supervised execution (called by the dispatcher)
    # ------------------------------------------------------------------

    async def run_invocation(self, job_id: str) -> None:
        try:
            job = await self._jobs.get(job_id)
            handler = self._handler_for(job)
            if job.status.is_halted:
                logger.info("Job %s is %s, skipping invocation", job_id, job.status.value)
                return

            guard = InvocationGuard(
                self._jobs, job_id, self._ceiling, self.continue_job, clock=self._clock,
            )
            invocation = Invocation(
                job=job,
                jobs=self._jobs,
                gateway=self._gateway,
                guard=guard,
                services=self._services,
            )
            await handler(invocation)
        except JobNotFound:
            logger.error("Job %s no longer exists, dropping invocation", job_id)
        except StoreUnavailable as e:
            # Without durable progress there is nothing safe to record; the
            # watchdog or an operator resumes from the last checkpoint.
            logger.error("Store unavailable during job %s, aborting invocation: %s", job_id, e)
        except Exception as e:
            logger.error(
                "Handler error for job %s: %s\n%s", job_id, e, traceback.format_exc()
            )
            await self._mark_failed(job_id, str(e) or type(e).__name__)

    async def _mark_failed(self, job_id: str, message: str) -> None:
        try:
            await self._jobs.fail(job_id, message)
        except InvalidTransition as e:
            logger.warning("Could not mark job %s failed: %s", job_id, e)
        except StoreUnavailable as e:
            logger.error("Could not record failure of job %s: %s", job_id, e)
