"""
Repose batch pipeline.

Works through the ``repose_outputs`` rows of one batch. Each row is its own
small state machine (queued -> running -> complete | failed). A transient
generation failure puts the row back in the queue with a ``retry_after``
timestamp instead of retrying in-process; the auto-resume watchdog picks the
job up again once that time has passed.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from jobengine.jobs.batch_runner import ItemDeferred
from jobengine.jobs.contexts import ReposeBatchContext
from jobengine.jobs.models import utcnow
from jobengine.jobs.registry import Invocation, ItemQueue
from jobengine.jobs.retry import RetryPolicy, is_retryable
from jobengine.jobs.step_loop import LoopOutcome
from jobengine.jobs.watchdog import queue_stats
from jobengine.pipelines.common import REPOSE_OUTPUTS, batch_runner, config_for

logger = logging.getLogger(__name__)

REPOSE_QUEUE = ItemQueue(table=REPOSE_OUTPUTS, foreign_key="batch_id", context_key="batch_id")

REPOSE_PROMPT = """Use the provided greyscale reference image as a strict pose, camera, and framing template.

Repose the subject in the input photo to exactly match the pose instruction below in:
- body pose and limb positioning
- head tilt and shoulder angle
- camera height, focal distance, and perspective

Do not alter the subject's identity, facial features, hairstyle, body proportions, clothing, colours, logos, fabric textures, or materials.

Do not stylise or reinterpret the image."""


def _parse(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


async def reset_stale_rows(inv: Invocation, batch_id: str, stale_seconds: int) -> int:
    """Requeue rows left ``running`` by an invocation that died mid-item."""
    threshold = utcnow() - timedelta(seconds=stale_seconds)
    running = await inv.gateway.select(
        REPOSE_OUTPUTS, eq={"batch_id": batch_id, "status": "running"},
    )
    stale = [
        r["id"] for r in running
        if (_parse(r.get("started_running_at")) or threshold) <= threshold
    ]
    if stale:
        await inv.gateway.update(
            REPOSE_OUTPUTS,
            {"status": "queued", "started_running_at": None},
            in_={"id": stale},
        )
        logger.info("Batch %s: reset %d stale running outputs", batch_id, len(stale))
        await inv.jobs.log_event(inv.job.id, f"Reset {len(stale)} stale running outputs")
    return len(stale)


async def repose_batch(inv: Invocation) -> None:
    ctx = ReposeBatchContext.model_validate(inv.job.context)
    config = config_for(inv)
    classifier = inv.service("classifier")
    backoff = RetryPolicy(base_delay=config.retry_base_delay_seconds, jitter=config.retry_jitter_seconds)

    await reset_stale_rows(inv, ctx.batch_id, config.stale_item_seconds)

    now = utcnow()
    queued = await inv.gateway.select(
        REPOSE_OUTPUTS, eq={"batch_id": ctx.batch_id, "status": "queued"}, order_by="id",
    )
    ready = [r for r in queued if (_parse(r.get("retry_after")) or now) <= now]
    # A queued row is never finished, whatever an earlier invocation recorded
    requeued = {r["id"] for r in queued}
    processed = [i for i in ctx.processed_ids if i not in requeued]

    async def generate(row: Dict) -> str:
        await inv.gateway.update(
            REPOSE_OUTPUTS,
            {"status": "running", "started_running_at": utcnow().isoformat()},
            eq={"id": row["id"]},
        )
        instruction = REPOSE_PROMPT
        if row.get("pose_instruction"):
            instruction += f"\n\nPose instruction: {row['pose_instruction']}"
        try:
            result_url = await classifier.generate([row["source_url"]], instruction)
        except Exception as e:
            retries = (row.get("retry_count") or 0) + 1
            if is_retryable(e) and retries < config.max_item_retries:
                retry_after = utcnow() + timedelta(seconds=backoff.delay(retries - 1))
                await inv.gateway.update(REPOSE_OUTPUTS, {
                    "status": "queued",
                    "retry_count": retries,
                    "retry_after": retry_after.isoformat(),
                    "error_message": str(e)[:500],
                    "started_running_at": None,
                }, eq={"id": row["id"]})
                raise ItemDeferred(str(e), retry_after=retry_after) from e
            await inv.gateway.update(REPOSE_OUTPUTS, {
                "status": "failed",
                "retry_count": retries,
                "error_message": str(e)[:500],
                "started_running_at": None,
            }, eq={"id": row["id"]})
            raise

        await inv.gateway.update(REPOSE_OUTPUTS, {
            "status": "complete",
            "result_url": result_url,
            "error_message": None,
            "retry_after": None,
            "started_running_at": None,
        }, eq={"id": row["id"]})
        return result_url

    runner = batch_runner(inv, retry=RetryPolicy(max_attempts=1))
    outcome = await runner.run(
        ready,
        generate,
        key=lambda r: r["id"],
        label="Generating",
        processed_ids=processed,
        failed_ids=ctx.failed_ids,
    )
    if outcome not in (LoopOutcome.COMPLETED, LoopOutcome.WAITING):
        return

    stats = await queue_stats(inv.gateway, REPOSE_QUEUE, ctx.batch_id)
    if stats.ready or stats.backoff or stats.running:
        waiting = stats.ready + stats.backoff + stats.running
        await inv.jobs.checkpoint(
            inv.job.id,
            message=f"Waiting for {waiting} outputs to be retried",
        )
        logger.info(
            "Job %s: %d outputs queued for retry (next at %s)",
            inv.job.id, waiting, stats.next_retry_at,
        )
        return

    await inv.jobs.finish(inv.job.id)
