"""Per-type resumption contexts.

Each job type owns one model describing exactly where processing left off.
Handlers work with the typed model; the job record stores its flat
``model_dump()`` and the store never sees anything but a JSON map.
"""

from typing import ClassVar, Dict, List, Optional, Type

from pydantic import BaseModel, Field

from jobengine.jobs.models import JobRecord, JobType


class BatchProgress(BaseModel):
    """Fields shared by every context that runs items through the batch runner."""
    processed_ids: List[str] = Field(default_factory=list)
    failed_ids: List[str] = Field(default_factory=list)

    # Fields a restarted job inherits from the job it restarts
    seed_fields: ClassVar[tuple] = ()

    model_config = {"extra": "ignore"}

    def seed(self) -> Dict:
        return {k: getattr(self, k) for k in self.seed_fields}


class ClassifyIdentitiesContext(BatchProgress):
    run_id: str
    current_step: int = 1
    candidates_created: bool = False
    candidate_order: List[str] = Field(default_factory=list)
    outer_index: int = 0

    seed_fields: ClassVar[tuple] = ("run_id",)


class OrganizeItemsContext(BatchProgress):
    run_id: str
    flagged_ids: List[str] = Field(default_factory=list)

    seed_fields: ClassVar[tuple] = ("run_id",)


class ReposeBatchContext(BatchProgress):
    batch_id: str
    model: Optional[str] = None

    seed_fields: ClassVar[tuple] = ("batch_id", "model")


class ScrapeSourceContext(BatchProgress):
    run_id: str
    start_url: str
    max_products: int = 50
    max_images_per_product: int = 8
    product_urls: Optional[List[str]] = None

    seed_fields: ClassVar[tuple] = ("run_id", "start_url", "max_products", "max_images_per_product")


CONTEXT_MODELS: Dict[JobType, Type[BatchProgress]] = {
    JobType.CLASSIFY_IDENTITIES: ClassifyIdentitiesContext,
    JobType.ORGANIZE_ITEMS: OrganizeItemsContext,
    JobType.REPOSE_BATCH: ReposeBatchContext,
    JobType.SCRAPE_SOURCE: ScrapeSourceContext,
}


def load_context(job: JobRecord) -> BatchProgress:
    """Parse a job's flat context into its typed model (raises on missing keys)."""
    return CONTEXT_MODELS[job.type].model_validate(job.context)


def dump_context(context: BatchProgress) -> Dict:
    return context.model_dump()
