"""Job management API: create jobs, read them, and the operator actions."""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field, ValidationError

from jobengine.jobs.contexts import CONTEXT_MODELS
from jobengine.jobs.errors import (
    EngineError,
    InvalidTransition,
    JobNotFound,
    StoreUnavailable,
    UnsupportedJobType,
)
from jobengine.jobs.models import JobEvent, JobRecord, JobStatus, JobType

router = APIRouter()

# These will be set by main.py during lifespan
_jobs = None
_registry = None


def set_jobs(jobs):
    global _jobs
    _jobs = jobs


def set_registry(registry):
    global _registry
    _registry = registry


def _require():
    if _jobs is None or _registry is None:
        raise HTTPException(status_code=503, detail="Job engine not initialized")


def _http_error(e: EngineError) -> HTTPException:
    if isinstance(e, JobNotFound):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, UnsupportedJobType):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, InvalidTransition):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, StoreUnavailable):
        return HTTPException(status_code=503, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


class JobCreateRequest(BaseModel):
    type: JobType
    context: Dict[str, Any] = Field(default_factory=dict)
    title: Optional[str] = None
    start: bool = True


class JobCreateResponse(BaseModel):
    job_id: str
    status: JobStatus


class ResumeResponse(BaseModel):
    accepted: bool
    job_id: str
    type: JobType
    message: str


@router.post("/jobs", response_model=JobCreateResponse)
async def create_job(request: JobCreateRequest):
    """Create a job and, unless ``start`` is false, begin running it."""
    _require()
    try:
        context = CONTEXT_MODELS[request.type].model_validate(request.context)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False))

    try:
        job = await _jobs.create(request.type, context.model_dump(), title=request.title or "")
        if request.start:
            await _registry.resume(job.id)
            job = await _jobs.get(job.id)
    except EngineError as e:
        raise _http_error(e)
    return JobCreateResponse(job_id=job.id, status=job.status)


@router.get("/jobs", response_model=List[JobRecord])
async def list_jobs(status: Optional[JobStatus] = None):
    _require()
    try:
        return await _jobs.list_jobs(status)
    except EngineError as e:
        raise _http_error(e)


@router.get("/jobs/{job_id}", response_model=JobRecord)
async def get_job(job_id: str):
    _require()
    try:
        return await _jobs.get(job_id)
    except EngineError as e:
        raise _http_error(e)


@router.get("/jobs/{job_id}/events", response_model=List[JobEvent])
async def get_job_events(job_id: str):
    _require()
    try:
        await _jobs.get(job_id)
        return await _jobs.events(job_id)
    except EngineError as e:
        raise _http_error(e)


@router.post("/jobs/{job_id}/resume", response_model=ResumeResponse)
async def resume_job(job_id: str):
    """Continue a paused, canceled or stalled job from its last checkpoint."""
    _require()
    try:
        accepted = await _registry.resume(job_id)
    except EngineError as e:
        raise _http_error(e)
    return ResumeResponse(**accepted.__dict__)


@router.post("/jobs/{job_id}/pause", response_model=JobRecord)
async def pause_job(job_id: str):
    _require()
    try:
        return await _registry.pause(job_id)
    except EngineError as e:
        raise _http_error(e)


@router.post("/jobs/{job_id}/cancel", response_model=JobRecord)
async def cancel_job(job_id: str):
    _require()
    try:
        return await _registry.cancel(job_id)
    except EngineError as e:
        raise _http_error(e)


@router.post("/jobs/{job_id}/requeue-failed", response_model=ResumeResponse)
async def requeue_failed(job_id: str):
    """Put every failed item back in the queue and resume the job."""
    _require()
    try:
        accepted = await _registry.requeue_failed(job_id)
    except EngineError as e:
        raise _http_error(e)
    return ResumeResponse(**accepted.__dict__)


@router.post("/jobs/{job_id}/restart", response_model=JobRecord)
async def restart_job(job_id: str):
    """Start the same work over as a new job."""
    _require()
    try:
        return await _registry.restart(job_id)
    except EngineError as e:
        raise _http_error(e)
