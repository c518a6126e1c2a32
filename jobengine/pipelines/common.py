"""Shared pieces for the pipeline handlers: table names and per-invocation wiring."""

import asyncio
from typing import Optional, Type, TypeVar

from jobengine.config import Settings, settings
from jobengine.jobs.batch_runner import BatchRunner
from jobengine.jobs.contexts import BatchProgress
from jobengine.jobs.registry import Invocation
from jobengine.jobs.retry import RetryPolicy

SCRAPE_IMAGES = "face_scrape_images"
IDENTITIES = "face_identities"
IDENTITY_IMAGES = "face_identity_images"
REPOSE_OUTPUTS = "repose_outputs"

C = TypeVar("C", bound=BatchProgress)


def config_for(inv: Invocation) -> Settings:
    return inv.services.get("config", settings)


def retry_policy(config: Settings) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=config.retry_max_attempts,
        base_delay=config.retry_base_delay_seconds,
        jitter=config.retry_jitter_seconds,
    )


def batch_runner(inv: Invocation, retry: Optional[RetryPolicy] = None) -> BatchRunner:
    config = config_for(inv)
    return BatchRunner(
        inv.guard,
        width=config.batch_concurrency,
        retry=retry or retry_policy(config),
        delay_between=config.inter_batch_delay_seconds,
        sleep=inv.services.get("sleep", asyncio.sleep),
    )


async def fresh_context(inv: Invocation, model: Type[C]) -> C:
    """Re-read the context from the store (earlier steps may have patched it)."""
    job = await inv.jobs.get(inv.job.id)
    return model.model_validate(job.context)
