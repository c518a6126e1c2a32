"""Engine wiring: the real dispatcher running a job end to end."""

import asyncio

import pytest

from conftest import FakeClassifier, FakeFetcher, fast_settings
from jobengine.db.gateway import MemoryGateway
from jobengine.db.supabase_client import build_gateway
from jobengine.engine import build_engine
from jobengine.jobs.models import JobStatus, JobType
from jobengine.pipelines.common import SCRAPE_IMAGES

KEEP = {"isProductShot": False, "isChild": False, "hasVisibleFace": True}
DROP = {"isProductShot": True, "isChild": False, "hasVisibleFace": False}


async def wait_for_terminal(jobs, job_id, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        job = await jobs.get(job_id)
        if job.status.is_terminal:
            return job
        await asyncio.sleep(0.01)
    raise AssertionError(f"job {job_id} did not finish")


class TestBuildEngine:

    def test_memory_backend(self):
        assert isinstance(build_gateway(fast_settings()), MemoryGateway)

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            build_gateway(fast_settings(storage_backend="sqlite"))

    def test_watchdog_follows_config(self):
        off = build_engine(fast_settings(), classifier=FakeClassifier(), fetcher=FakeFetcher({}))
        on = build_engine(
            fast_settings(watchdog_enabled=True), classifier=FakeClassifier(), fetcher=FakeFetcher({}),
        )
        assert off.watchdog is None
        assert on.watchdog is not None
        assert set(on.registry.supported_types) == set(JobType)

    def test_runs_job_to_completion(self):
        classifier = FakeClassifier(verdicts={"u1": KEEP, "u2": DROP})
        engine = build_engine(fast_settings(), classifier=classifier, fetcher=FakeFetcher({}))

        async def scenario():
            for n in (1, 2):
                await engine.gateway.insert(
                    SCRAPE_IMAGES, {"id": f"i{n}", "scrape_run_id": "r1", "source_url": f"u{n}"},
                )
            await engine.start()
            try:
                job = await engine.jobs.create(JobType.ORGANIZE_ITEMS, {"run_id": "r1"})
                await engine.registry.resume(job.id)
                done = await wait_for_terminal(engine.jobs, job.id)
            finally:
                await engine.stop()
            remaining = await engine.gateway.select(SCRAPE_IMAGES, eq={"scrape_run_id": "r1"})
            return done, remaining

        done, remaining = asyncio.run(scenario())

        assert done.status == JobStatus.COMPLETED
        assert done.progress_done == 2
        assert [r["id"] for r in remaining] == ["i1"]
