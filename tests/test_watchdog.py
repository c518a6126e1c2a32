"""Auto-resume watchdog: stalled item queues get their job resumed."""

import asyncio
from datetime import timedelta

import pytest

from jobengine.jobs.models import JobStatus, JobType, utcnow
from jobengine.jobs.registry import ItemQueue
from jobengine.jobs.watchdog import AutoResumeWatchdog, queue_stats

QUEUE = ItemQueue(table="repose_outputs", foreign_key="batch_id", context_key="batch_id")


async def noop(inv):
    pass


@pytest.fixture
def registry(make_registry):
    return make_registry(
        {JobType.REPOSE_BATCH: noop, JobType.ORGANIZE_ITEMS: noop},
        item_queues={JobType.REPOSE_BATCH: QUEUE},
    )


@pytest.fixture
def setup(jobs, gateway, registry):
    watchdog = AutoResumeWatchdog(jobs, gateway, registry)
    job = asyncio.run(jobs.create(JobType.REPOSE_BATCH, {"batch_id": "b1"}, start=True))

    def add_row(status, retry_after=None, batch_id="b1"):
        asyncio.run(gateway.insert("repose_outputs", {
            "batch_id": batch_id,
            "status": status,
            "retry_after": retry_after.isoformat() if retry_after else None,
        }))

    return watchdog, job, add_row


# ============================================================================
# TestQueueStats
# ============================================================================

class TestQueueStats:

    def test_counts_ready_backoff_running(self, gateway, setup):
        _, _, add_row = setup
        now = utcnow()
        add_row("queued")
        add_row("queued", now - timedelta(seconds=5))
        add_row("queued", now + timedelta(seconds=30))
        add_row("queued", now + timedelta(seconds=10))
        add_row("running")
        add_row("complete")
        add_row("queued", batch_id="other")

        stats = asyncio.run(queue_stats(gateway, QUEUE, "b1", now=now))

        assert (stats.ready, stats.backoff, stats.running) == (2, 2, 1)
        assert stats.next_retry_at == now + timedelta(seconds=10)
        assert not stats.stalled


# ============================================================================
# TestAutoResume
# ============================================================================

class TestAutoResume:

    def test_ready_items_and_nothing_running_resumes(self, jobs, dispatcher, setup):
        watchdog, job, add_row = setup
        add_row("queued")
        add_row("queued", utcnow() - timedelta(seconds=1))

        resumed = asyncio.run(watchdog.check_once())

        assert resumed == [job.id]
        assert dispatcher.submitted == [job.id]
        assert asyncio.run(jobs.get(job.id)).status == JobStatus.RUNNING
        messages = [e.message for e in asyncio.run(jobs.events(job.id))]
        assert "Auto-resumed 2 pending items" in messages

    def test_items_in_backoff_are_left_alone(self, dispatcher, setup):
        watchdog, _, add_row = setup
        add_row("queued", utcnow() + timedelta(minutes=5))
        assert asyncio.run(watchdog.check_once()) == []
        assert dispatcher.submitted == []

    def test_running_item_means_not_stalled(self, dispatcher, setup):
        watchdog, _, add_row = setup
        add_row("queued")
        add_row("running")
        assert asyncio.run(watchdog.check_once()) == []

    def test_job_executing_here_is_left_alone(self, dispatcher, setup):
        watchdog, job, add_row = setup
        add_row("queued")
        dispatcher.active.add(job.id)
        assert asyncio.run(watchdog.check_once()) == []

    def test_paused_jobs_are_not_polled(self, jobs, dispatcher, setup):
        watchdog, job, add_row = setup
        add_row("queued")
        asyncio.run(jobs.transition_to(job.id, JobStatus.PAUSED))
        assert asyncio.run(watchdog.check_once()) == []

    def test_job_types_without_item_queue_ignored(self, jobs, dispatcher, setup):
        watchdog, job, add_row = setup
        asyncio.run(jobs.transition_to(job.id, JobStatus.PAUSED))
        asyncio.run(jobs.create(JobType.ORGANIZE_ITEMS, {"run_id": "r"}, start=True))
        add_row("queued")
        assert asyncio.run(watchdog.check_once()) == []

    def test_records_last_check_time(self, setup):
        watchdog, _, _ = setup
        assert watchdog.last_check_time is None
        asyncio.run(watchdog.check_once())
        assert watchdog.last_check_time is not None


# ============================================================================
# TestPollLoop
# ============================================================================

def poll_for(watchdog, seconds=0.1):
    """Run the background loop for a while; returns whether it was still alive."""
    async def run():
        await watchdog.start()
        await asyncio.sleep(seconds)
        alive = not watchdog._task.done()
        await watchdog.stop()
        return alive
    return asyncio.run(run())


class TestPollLoop:

    def test_store_outage_does_not_end_polling(self, jobs, gateway, dispatcher, registry, setup):
        _, job, add_row = setup
        add_row("queued")
        gateway.fail_next("repose_outputs", times=2)
        watchdog = AutoResumeWatchdog(jobs, gateway, registry, interval_seconds=0.01)

        assert poll_for(watchdog)
        assert job.id in dispatcher.submitted
        assert gateway.outages["repose_outputs"] == 0

    def test_unexpected_error_does_not_end_polling(self, jobs, gateway, registry, setup):
        watchdog = AutoResumeWatchdog(jobs, gateway, registry, interval_seconds=0.01)
        calls = []
        real_check = watchdog.check_once

        async def flaky_check():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")
            return await real_check()

        watchdog.check_once = flaky_check

        assert poll_for(watchdog)
        assert len(calls) >= 2
