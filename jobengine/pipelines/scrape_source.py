"""
Source scrape pipeline.

Phase 1 reads the start page and records the product pages it links to.
Phase 2 visits each product page and stores every image not seen before
in this run. The discovered product list is part of the context, so a
continuation skips straight to phase 2.
"""

import asyncio
import logging

from jobengine.jobs.contexts import ScrapeSourceContext
from jobengine.jobs.registry import Invocation
from jobengine.jobs.retry import retry_call
from jobengine.jobs.step_loop import LoopOutcome
from jobengine.pipelines.common import SCRAPE_IMAGES, batch_runner, config_for, retry_policy
from jobengine.scraping.pages import (
    extract_images,
    extract_product_links,
    gender_from_url,
    image_hash,
)

logger = logging.getLogger(__name__)


async def scrape_source(inv: Invocation) -> None:
    ctx = ScrapeSourceContext.model_validate(inv.job.context)
    fetcher = inv.service("fetcher")

    product_urls = ctx.product_urls
    if product_urls is None:
        html = await retry_call(
            lambda: fetcher.fetch(ctx.start_url),
            retry_policy(config_for(inv)),
            sleep=inv.services.get("sleep", asyncio.sleep),
            label=f"fetch {ctx.start_url}",
        )
        product_urls = extract_product_links(html, ctx.start_url, ctx.max_products)
        await inv.jobs.checkpoint(
            inv.job.id,
            total=len(product_urls),
            message=f"Found {len(product_urls)} product pages",
            context_patch={"product_urls": product_urls},
        )
        await inv.jobs.log_event(
            inv.job.id, f"Found {len(product_urls)} product pages", start_url=ctx.start_url,
        )

    async def scrape_product(product_url: str) -> int:
        html = await fetcher.fetch(product_url)
        inserted = 0
        for url in extract_images(html, product_url, ctx.max_images_per_product):
            digest = image_hash(url)
            seen = await inv.gateway.select(
                SCRAPE_IMAGES, eq={"scrape_run_id": ctx.run_id, "image_hash": digest}, limit=1,
            )
            if seen:
                continue
            gender = gender_from_url(product_url)
            await inv.gateway.insert(SCRAPE_IMAGES, {
                "scrape_run_id": ctx.run_id,
                "source_url": url,
                "product_url": product_url,
                "image_hash": digest,
                "gender": gender,
                "gender_source": "url" if gender != "unknown" else None,
            })
            inserted += 1
        return inserted

    runner = batch_runner(inv)
    outcome = await runner.run(
        product_urls,
        scrape_product,
        key=lambda u: u,
        label="Scraping products",
        processed_ids=ctx.processed_ids,
        failed_ids=ctx.failed_ids,
    )
    if outcome != LoopOutcome.COMPLETED:
        return

    images = await inv.gateway.select(SCRAPE_IMAGES, eq={"scrape_run_id": ctx.run_id})
    job = await inv.jobs.get(inv.job.id)
    await inv.jobs.finish(
        inv.job.id,
        None if job.progress_done == 0 else
        f"Scraped {len(images)} images from {job.progress_done} products",
    )
