"""
Identity classification pipeline.

Three steps over one scrape run:
    1. gender of every scraped image (men / women / unknown)
    2. identity clustering: one candidate per (gender, product page), then
       candidates judged to show the same person are merged
    3. view of every identity image (front / side / back)

Step 2 compares every pair of live candidates, which can take far longer
than one invocation. The comparison order and the index of the next outer
candidate live in the context, and each outer candidate's merges are
written to the store before the index advances, so a fresh invocation
continues the comparison where the previous one stopped.
"""

import asyncio
import logging
from collections import OrderedDict
from typing import Dict, List

from jobengine.jobs.contexts import ClassifyIdentitiesContext
from jobengine.jobs.registry import Invocation
from jobengine.jobs.retry import retry_call
from jobengine.jobs.step_loop import LoopOutcome, Progress, run_steps, run_units
from jobengine.merging.union_find import Candidate, UnionFind, compare_outer, order_candidates
from jobengine.pipelines.common import (
    IDENTITIES,
    IDENTITY_IMAGES,
    SCRAPE_IMAGES,
    batch_runner,
    config_for,
    fresh_context,
    retry_policy,
)

logger = logging.getLogger(__name__)

GENDER_PROMPT = (
    "Look at this fashion/clothing image. Is the model wearing the clothes a man or woman? "
    'Reply with just one word: "men" or "women". If you cannot determine, reply "unknown".'
)

VIEW_PROMPT = (
    "Look at this fashion model image. From what angle is the model photographed? "
    'Reply with just one word: "front" (facing camera), "side" (profile view), '
    'or "back" (back to camera). If unclear, reply "unknown".'
)

SAME_PERSON_PROMPT = (
    "These two fashion images come from different product pages. "
    "Do they show the same model (same face, hair and build)? Reply with just YES or NO."
)


async def classify_identities(inv: Invocation) -> None:
    ctx = ClassifyIdentitiesContext.model_validate(inv.job.context)
    steps = [
        ("classifying gender", lambda: _gender_step(inv)),
        ("matching identities", lambda: _identity_step(inv)),
        ("classifying views", lambda: _view_step(inv)),
    ]
    outcome = await run_steps(inv.guard, steps, ctx.current_step)
    if outcome == LoopOutcome.COMPLETED:
        await inv.jobs.finish(inv.job.id)


# ----------------------------------------------------------------------
# Step 1: gender
# ----------------------------------------------------------------------

async def _gender_step(inv: Invocation) -> LoopOutcome:
    ctx = await fresh_context(inv, ClassifyIdentitiesContext)
    classifier = inv.service("classifier")
    images = await inv.gateway.select(
        SCRAPE_IMAGES, eq={"scrape_run_id": ctx.run_id}, order_by="id",
    )
    pending = [i for i in images if i.get("gender") in (None, "unknown")]

    async def classify(image: Dict) -> str:
        gender = await classifier.ask_label(image["source_url"], GENDER_PROMPT, ("men", "women"))
        await inv.gateway.update(
            SCRAPE_IMAGES, {"gender": gender, "gender_source": "ai"}, eq={"id": image["id"]},
        )
        return gender

    return await batch_runner(inv).run(
        pending,
        classify,
        key=lambda i: i["id"],
        label="Classifying gender",
        processed_ids=ctx.processed_ids,
        failed_ids=ctx.failed_ids,
    )


# ----------------------------------------------------------------------
# Step 2: identities
# ----------------------------------------------------------------------

async def _create_candidates(inv: Invocation, run_id: str) -> List[str]:
    """One identity per (gender, product page). Replaces any partial earlier attempt."""
    existing = await inv.gateway.select(IDENTITIES, eq={"scrape_run_id": run_id})
    if existing:
        await inv.gateway.delete(IDENTITY_IMAGES, in_={"identity_id": [r["id"] for r in existing]})
        await inv.gateway.delete(IDENTITIES, eq={"scrape_run_id": run_id})

    images = await inv.gateway.select(
        SCRAPE_IMAGES, eq={"scrape_run_id": run_id}, order_by="id",
    )
    groups: "OrderedDict[tuple, List[Dict]]" = OrderedDict()
    for image in images:
        gender = image.get("gender") or "unknown"
        groups.setdefault((gender, image.get("product_url") or image["source_url"]), []).append(image)

    candidates = []
    counters: Dict[str, int] = {}
    for (gender, _), members in groups.items():
        counters[gender] = counters.get(gender, 0) + 1
        identity = await inv.gateway.insert(IDENTITIES, {
            "scrape_run_id": run_id,
            "name": f"{gender.title()} {counters[gender]}",
            "gender": gender,
            "image_count": len(members),
            "representative_image_id": members[0]["id"],
        })
        for image in members:
            await inv.gateway.insert(IDENTITY_IMAGES, {
                "identity_id": identity["id"],
                "scrape_image_id": image["id"],
                "source_url": image["source_url"],
                "view": "unknown",
                "view_source": None,
                "is_ignored": False,
            })
        candidates.append(Candidate(identity["id"], len(members)))

    return [c.id for c in order_candidates(candidates)]


async def _merge_into(inv: Invocation, root_id: str, absorbed: List[str]) -> int:
    """Move the absorbed identities' images onto the root, then delete them."""
    await inv.gateway.update(
        IDENTITY_IMAGES, {"identity_id": root_id}, in_={"identity_id": absorbed},
    )
    count = len(await inv.gateway.select(IDENTITY_IMAGES, eq={"identity_id": root_id}))
    await inv.gateway.update(IDENTITIES, {"image_count": count}, eq={"id": root_id})
    await inv.gateway.delete(IDENTITIES, in_={"id": absorbed})
    return count


async def _load_candidates(inv: Invocation, run_id: str) -> Dict[str, Candidate]:
    rows = await inv.gateway.select(IDENTITIES, eq={"scrape_run_id": run_id})
    out = {}
    for row in rows:
        image = await inv.gateway.get(SCRAPE_IMAGES, row["representative_image_id"])
        out[row["id"]] = Candidate(
            row["id"],
            row.get("image_count") or 0,
            image["source_url"] if image else "",
            row.get("gender") or "",
        )
    return out


async def _identity_step(inv: Invocation) -> LoopOutcome:
    ctx = await fresh_context(inv, ClassifyIdentitiesContext)
    classifier = inv.service("classifier")
    config = config_for(inv)
    policy = retry_policy(config)
    sleep = inv.services.get("sleep", asyncio.sleep)

    if not ctx.candidates_created:
        order = await _create_candidates(inv, ctx.run_id)
        await inv.jobs.checkpoint(
            inv.job.id,
            message=f"Created {len(order)} candidate identities",
            context_patch={"candidates_created": True, "candidate_order": order, "outer_index": 0},
        )
        await inv.jobs.log_event(inv.job.id, f"Created {len(order)} candidate identities")
        ctx.candidate_order, ctx.outer_index = order, 0

    order = ctx.candidate_order
    job = await inv.jobs.get(inv.job.id)
    await inv.jobs.checkpoint(
        inv.job.id,
        total=job.progress_done + job.progress_failed + len(order) - ctx.outer_index,
    )

    async def same_person(a: Candidate, b: Candidate) -> bool:
        if a.gender != b.gender or not a.representative or not b.representative:
            return False
        return await retry_call(
            lambda: classifier.ask_yes_no([a.representative, b.representative], SAME_PERSON_PROMPT),
            policy, sleep=sleep, label="same-person check",
        )

    async def compare(index: int) -> Progress:
        live = await _load_candidates(inv, ctx.run_id)
        outer_id = order[index]
        patch = {"outer_index": index + 1}
        if outer_id not in live:
            # Absorbed by an earlier candidate
            return Progress(done_delta=1, context_patch=patch)

        ordered = [live[i] for i in order[index:] if i in live]
        uf = UnionFind(c.id for c in ordered)
        errors = []

        async def judged(a: Candidate, b: Candidate) -> bool:
            try:
                return await same_person(a, b)
            except Exception as e:
                errors.append(e)
                logger.warning("Job %s: comparison %s/%s failed: %s", inv.job.id, a.id, b.id, e)
                return False

        absorbed = await compare_outer(uf, ordered, 0, judged)
        if absorbed:
            count = await _merge_into(inv, outer_id, absorbed)
            logger.info(
                "Job %s: merged %d identities into %s (%d images)",
                inv.job.id, len(absorbed), outer_id, count,
            )
        return Progress(
            done_delta=0 if errors else 1,
            failed_delta=1 if errors else 0,
            message=f"Matching identities: {index + 1}/{len(order)}",
            context_patch=patch,
        )

    return await run_units(inv.guard, list(range(ctx.outer_index, len(order))), compare)


# ----------------------------------------------------------------------
# Step 3: views
# ----------------------------------------------------------------------

async def _view_step(inv: Invocation) -> LoopOutcome:
    ctx = await fresh_context(inv, ClassifyIdentitiesContext)
    classifier = inv.service("classifier")
    identities = await inv.gateway.select(IDENTITIES, eq={"scrape_run_id": ctx.run_id})
    if not identities:
        return LoopOutcome.COMPLETED
    images = await inv.gateway.select(
        IDENTITY_IMAGES, in_={"identity_id": [i["id"] for i in identities]}, order_by="id",
    )
    pending = [
        i for i in images
        if not i.get("is_ignored") and i.get("view") in (None, "unknown")
    ]

    async def classify(image: Dict) -> str:
        view = await classifier.ask_label(image["source_url"], VIEW_PROMPT, ("front", "side", "back"))
        await inv.gateway.update(
            IDENTITY_IMAGES, {"view": view, "view_source": "ai"}, eq={"id": image["id"]},
        )
        return view

    return await batch_runner(inv).run(
        pending,
        classify,
        key=lambda i: i["id"],
        label="Classifying views",
        processed_ids=ctx.processed_ids,
        failed_ids=ctx.failed_ids,
    )
