"""The handler table: which coroutine continues each job type."""

from typing import Dict

from jobengine.jobs.models import JobType
from jobengine.jobs.registry import Handler, ItemQueue
from jobengine.pipelines.classify_identities import classify_identities
from jobengine.pipelines.organize_items import organize_items
from jobengine.pipelines.repose_batch import REPOSE_QUEUE, repose_batch
from jobengine.pipelines.scrape_source import scrape_source

ITEM_QUEUES: Dict[JobType, ItemQueue] = {
    JobType.REPOSE_BATCH: REPOSE_QUEUE,
}


def build_handlers() -> Dict[JobType, Handler]:
    return {
        JobType.CLASSIFY_IDENTITIES: classify_identities,
        JobType.ORGANIZE_ITEMS: organize_items,
        JobType.REPOSE_BATCH: repose_batch,
        JobType.SCRAPE_SOURCE: scrape_source,
    }
