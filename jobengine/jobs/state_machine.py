"""Job state machine and durable progress checkpoints.

JobService is the only writer of ``pipeline_jobs`` rows. Every method awaits
its store write before returning, so a caller that proceeds after a
checkpoint knows the progress it reported is durable.
"""

import logging
from typing import Any, Dict, List, Optional

from jobengine.db.gateway import TableGateway, guarded
from jobengine.jobs.errors import (
    CheckpointError,
    InvalidCheckpoint,
    InvalidTransition,
    JobNotFound,
    StoreUnavailable,
)
from jobengine.jobs.models import (
    JobEvent,
    JobEventLevel,
    JobRecord,
    JobStatus,
    JobType,
    utcnow,
)

logger = logging.getLogger(__name__)

JOBS_TABLE = "pipeline_jobs"
EVENTS_TABLE = "pipeline_job_events"

ALLOWED_TRANSITIONS: Dict[JobStatus, frozenset] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.CANCELED}),
    JobStatus.RUNNING: frozenset({
        JobStatus.RUNNING,
        JobStatus.PAUSED,
        JobStatus.CANCELED,
        JobStatus.COMPLETED,
        JobStatus.FAILED,
    }),
    JobStatus.PAUSED: frozenset({JobStatus.RUNNING, JobStatus.CANCELED}),
    JobStatus.CANCELED: frozenset({JobStatus.RUNNING}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


class JobService:
    """Creates jobs, moves them through the state machine and records progress."""

    def __init__(self, gateway: TableGateway):
        self._gateway = guarded(gateway)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def find(self, job_id: str) -> Optional[JobRecord]:
        try:
            row = await self._gateway.get(JOBS_TABLE, job_id)
        except Exception as e:
            raise StoreUnavailable(f"Could not read job {job_id}: {e}") from e
        return JobRecord.from_row(row) if row else None

    async def get(self, job_id: str) -> JobRecord:
        job = await self.find(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    async def list_jobs(self, status: Optional[JobStatus] = None) -> List[JobRecord]:
        eq = {"status": status.value} if status else None
        try:
            rows = await self._gateway.select(JOBS_TABLE, eq=eq, order_by="created_at")
        except Exception as e:
            raise StoreUnavailable(f"Could not list jobs: {e}") from e
        return [JobRecord.from_row(r) for r in rows]

    async def is_halted(self, job_id: str) -> bool:
        """Cooperative cancellation point: has the job been paused, canceled or finished?"""
        job = await self.get(job_id)
        return job.status.is_halted

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create(
        self,
        job_type: JobType,
        initial_context: Optional[Dict[str, Any]] = None,
        *,
        title: str = "",
        total: int = 0,
        start: bool = False,
        supports_pause: bool = True,
        supports_retry: bool = True,
        supports_restart: bool = True,
        source_job_id: Optional[str] = None,
    ) -> JobRecord:
        job = JobRecord(
            type=job_type,
            title=title or job_type.value.replace("_", " ").title(),
            status=JobStatus.RUNNING if start else JobStatus.PENDING,
            progress_total=total,
            context=dict(initial_context or {}),
            supports_pause=supports_pause,
            supports_retry=supports_retry,
            supports_restart=supports_restart,
            source_job_id=source_job_id,
        )
        if start:
            job.started_at = job.created_at
        await self._gateway.insert(JOBS_TABLE, job.to_row())
        logger.info("Created %s job %s (%s)", job.type.value, job.id, job.status.value)
        return job

    async def transition_to(
        self,
        job_id: str,
        status: JobStatus,
        message: Optional[str] = None,
    ) -> JobRecord:
        job = await self.get(job_id)
        if not can_transition(job.status, status):
            raise InvalidTransition(job_id, job.status.value, status.value)

        now = utcnow()
        values: Dict[str, Any] = {"status": status.value, "updated_at": now.isoformat()}
        if status == JobStatus.RUNNING:
            values["started_at"] = now.isoformat()
        if status.is_terminal:
            values["completed_at"] = now.isoformat()
        if message is not None:
            values["progress_message"] = message
        return await self._write(job_id, values)

    async def finish(self, job_id: str, message: Optional[str] = None) -> JobRecord:
        """Terminal transition at the end of a handler: FAILED only when every unit failed."""
        job = await self.get(job_id)
        if job.progress_failed > 0 and job.progress_done == 0:
            return await self.transition_to(
                job_id, JobStatus.FAILED,
                message or f"All {job.progress_failed} items failed",
            )
        if message is None:
            message = (
                f"Completed with {job.progress_failed} failures"
                if job.progress_failed else "Completed successfully"
            )
        return await self.transition_to(job_id, JobStatus.COMPLETED, message)

    async def fail(self, job_id: str, message: str) -> JobRecord:
        job = await self.transition_to(job_id, JobStatus.FAILED, message)
        await self.log_event(job_id, message, level=JobEventLevel.ERROR)
        return job

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    async def checkpoint(
        self,
        job_id: str,
        *,
        done: Optional[int] = None,
        failed: Optional[int] = None,
        done_delta: int = 0,
        failed_delta: int = 0,
        total: Optional[int] = None,
        message: Optional[str] = None,
        context_patch: Optional[Dict[str, Any]] = None,
    ) -> JobRecord:
        """Merge progress into the job record.

        Counters may be given as absolute values or deltas; either way they
        may only grow. ``context_patch`` is shallow-merged into the context.
        Raises CheckpointError when the store cannot be written.
        """
        job = await self.get(job_id)

        new_done = (job.progress_done if done is None else done) + done_delta
        new_failed = (job.progress_failed if failed is None else failed) + failed_delta
        if new_done < job.progress_done or new_failed < job.progress_failed:
            raise InvalidCheckpoint(
                f"Job {job_id}: progress cannot decrease "
                f"(done {job.progress_done}->{new_done}, failed {job.progress_failed}->{new_failed})"
            )

        values: Dict[str, Any] = {
            "progress_done": new_done,
            "progress_failed": new_failed,
            "updated_at": utcnow().isoformat(),
        }
        new_total = job.progress_total if total is None else total
        values["progress_total"] = max(new_total, new_done + new_failed)
        if message is not None:
            values["progress_message"] = message
        if context_patch:
            values["context"] = {**job.context, **context_patch}

        try:
            return await self._write(job_id, values)
        except StoreUnavailable as e:
            raise CheckpointError(str(e)) from e

    async def reset_failed(
        self,
        job_id: str,
        context_patch: Optional[Dict[str, Any]] = None,
        message: Optional[str] = None,
    ) -> JobRecord:
        """Operator bulk-retry: the one place progress_failed is allowed to drop."""
        job = await self.get(job_id)
        values: Dict[str, Any] = {
            "progress_failed": 0,
            "updated_at": utcnow().isoformat(),
        }
        if context_patch:
            values["context"] = {**job.context, **context_patch}
        if message is not None:
            values["progress_message"] = message
        return await self._write(job_id, values)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def log_event(
        self,
        job_id: str,
        message: str,
        level: JobEventLevel = JobEventLevel.INFO,
        **metadata: Any,
    ) -> JobEvent:
        event = JobEvent(job_id=job_id, level=level, message=message, metadata=metadata)
        await self._gateway.insert(EVENTS_TABLE, event.model_dump(mode="json"))
        return event

    async def events(self, job_id: str) -> List[JobEvent]:
        rows = await self._gateway.select(EVENTS_TABLE, eq={"job_id": job_id}, order_by="timestamp")
        return [JobEvent.model_validate(r) for r in rows]

    # ------------------------------------------------------------------

    async def _write(self, job_id: str, values: Dict[str, Any]) -> JobRecord:
        try:
            rows = await self._gateway.update(JOBS_TABLE, values, eq={"id": job_id})
        except Exception as e:
            raise StoreUnavailable(f"Could not write job {job_id}: {e}") from e
        if not rows:
            raise JobNotFound(job_id)
        return JobRecord.from_row(rows[0])
