"""
Shared fixtures and fakes.

Everything runs against the in-memory gateway; the classifier, page
fetcher, clock and sleep are replaced by deterministic fakes so tests never
touch the network or wait on real time.
"""

import os
import sys
from typing import Callable, Dict, List, Optional

import pytest

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from jobengine.config import Settings  # noqa: E402
from jobengine.db.gateway import MemoryGateway  # noqa: E402
from jobengine.jobs.dispatcher import JobDispatcher  # noqa: E402
from jobengine.jobs.registry import ResumeHandlerRegistry  # noqa: E402
from jobengine.jobs.state_machine import JobService  # noqa: E402


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class RecordingDispatcher(JobDispatcher):
    """Collects submissions instead of running them; tests drain it by hand."""

    def __init__(self):
        self.runner = None
        self.submitted: List[str] = []
        self.active = set()

    def bind(self, runner):
        self.runner = runner

    async def submit(self, job_id: str) -> None:
        self.submitted.append(job_id)

    def is_active(self, job_id: str) -> bool:
        return job_id in self.active

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass

    async def drain(self, limit: int = 50) -> int:
        """Run queued invocations (and the continuations they schedule) until none remain."""
        runs = 0
        while self.submitted:
            if runs >= limit:
                raise AssertionError("invocations did not converge")
            await self.runner(self.submitted.pop(0))
            runs += 1
        return runs


class FakeClassifier:
    def __init__(
        self,
        labels: Optional[Dict] = None,
        same: Optional[Callable[[str, str], bool]] = None,
        verdicts: Optional[Dict[str, dict]] = None,
        generate: Optional[Callable[[str], str]] = None,
        clock: Optional[FakeClock] = None,
        tick: float = 0.0,
    ):
        self.labels = labels or {}
        self.same = same or (lambda a, b: False)
        self.verdicts = verdicts or {}
        self._generate = generate or (lambda url: url + "#reposed")
        self.calls: List[tuple] = []
        self._clock = clock
        self._tick = tick

    def _record(self, *call) -> None:
        self.calls.append(call)
        if self._clock is not None:
            self._clock.advance(self._tick)

    async def ask_label(self, image_url, instruction, labels, default="unknown"):
        self._record("label", image_url)
        answers = self.labels.get(image_url, ())
        if isinstance(answers, str):
            answers = (answers,)
        for answer in answers:
            if answer in labels:
                return answer
        return default

    async def ask_yes_no(self, image_urls, instruction):
        self._record("same", tuple(image_urls))
        return self.same(*image_urls)

    async def ask_json(self, image_urls, instruction):
        self._record("json", image_urls[0])
        return self.verdicts[image_urls[0]]

    async def generate(self, image_urls, instruction):
        self._record("generate", image_urls[0])
        return self._generate(image_urls[0])


class FakeFetcher:
    def __init__(self, pages: Dict[str, str]):
        self.pages = pages
        self.fetched: List[str] = []

    async def fetch(self, url: str) -> str:
        self.fetched.append(url)
        if url not in self.pages:
            raise ValueError(f"no page for {url}")
        return self.pages[url]


class OutageGateway(MemoryGateway):
    """In-memory store that can be told to drop the connection on a table."""

    def __init__(self):
        super().__init__()
        self.outages: Dict[str, int] = {}

    def fail_next(self, table: str, times: int = 1) -> None:
        self.outages[table] = times

    def _check(self, table: str) -> None:
        if self.outages.get(table):
            self.outages[table] -= 1
            raise ConnectionError("store unreachable")

    async def select(self, table, eq=None, in_=None, order_by=None, limit=None):
        self._check(table)
        return await super().select(table, eq=eq, in_=in_, order_by=order_by, limit=limit)

    async def insert(self, table, row):
        self._check(table)
        return await super().insert(table, row)

    async def update(self, table, values, eq=None, in_=None):
        self._check(table)
        return await super().update(table, values, eq=eq, in_=in_)

    async def delete(self, table, eq=None, in_=None):
        self._check(table)
        return await super().delete(table, eq=eq, in_=in_)


def fast_settings(**overrides) -> Settings:
    values = dict(
        storage_backend="memory",
        ai_gateway_key="test-key",
        invocation_ceiling_seconds=50.0,
        batch_concurrency=3,
        inter_batch_delay_seconds=0.0,
        retry_max_attempts=3,
        retry_base_delay_seconds=0.1,
        max_item_retries=3,
        watchdog_enabled=False,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def gateway():
    return OutageGateway()


@pytest.fixture
def jobs(gateway):
    return JobService(gateway)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def make_registry(jobs, gateway, dispatcher, clock, sleep):
    """Factory: registry over the shared store with the given handler table."""
    def _make(handlers, *, services=None, item_queues=None, ceiling=50.0, config=None):
        all_services = {"config": config or fast_settings(), "sleep": sleep}
        all_services.update(services or {})
        return ResumeHandlerRegistry(
            handlers,
            jobs,
            gateway,
            dispatcher,
            ceiling_seconds=ceiling,
            item_queues=item_queues,
            services=all_services,
            clock=clock,
        )
    return _make
