"""Organize scraped images: flag product shots, children and faceless images for removal."""

import logging
from typing import Any, Dict

from jobengine.jobs.contexts import OrganizeItemsContext
from jobengine.jobs.registry import Invocation
from jobengine.jobs.step_loop import LoopOutcome
from jobengine.pipelines.common import SCRAPE_IMAGES, batch_runner

logger = logging.getLogger(__name__)

ORGANIZE_PROMPT = """Analyze this fashion/e-commerce image and answer these questions:

1. Is this a product-only shot (clothing on hanger, flat lay, or no human model visible)? Answer YES or NO.
2. Does this image show a child (under 18 years old)? Answer YES or NO.
3. Does this image show an adult model's face clearly visible from the front, side (profile), or 3/4 angle? Answer YES or NO.

Respond in this exact JSON format only, no other text:
{"isProductShot": true/false, "isChild": true/false, "hasVisibleFace": true/false, "reason": "brief explanation"}"""


def should_remove(verdict: Dict[str, Any]) -> bool:
    return bool(
        verdict.get("isProductShot")
        or verdict.get("isChild")
        or not verdict.get("hasVisibleFace", False)
    )


async def organize_items(inv: Invocation) -> None:
    ctx = OrganizeItemsContext.model_validate(inv.job.context)
    classifier = inv.service("classifier")
    flagged = list(ctx.flagged_ids)

    images = await inv.gateway.select(
        SCRAPE_IMAGES, eq={"scrape_run_id": ctx.run_id}, order_by="id",
    )

    async def inspect(image: Dict) -> bool:
        verdict = await classifier.ask_json([image["source_url"]], ORGANIZE_PROMPT)
        remove = should_remove(verdict)
        if remove:
            logger.debug("Image %s flagged: %s", image["id"], verdict.get("reason", ""))
            flagged.append(image["id"])
        return remove

    outcome = await batch_runner(inv).run(
        images,
        inspect,
        key=lambda i: i["id"],
        label="Organizing images",
        processed_ids=ctx.processed_ids,
        failed_ids=ctx.failed_ids,
        context_extra=lambda: {"flagged_ids": list(flagged)},
    )
    if outcome != LoopOutcome.COMPLETED:
        return

    removed = 0
    if flagged:
        removed = await inv.gateway.delete(SCRAPE_IMAGES, in_={"id": flagged})
        await inv.jobs.log_event(inv.job.id, f"Removed {removed} flagged images", removed=removed)
    job = await inv.jobs.get(inv.job.id)
    await inv.jobs.finish(
        inv.job.id,
        None if job.progress_done == 0 else
        f"Organized {job.progress_done} images, removed {removed}, {job.progress_failed} failed",
    )
