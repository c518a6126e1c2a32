"""Wires the store, dispatcher, handler table and watchdog into one engine."""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from jobengine.classifier.client import ClassifierClient
from jobengine.config import Settings, settings
from jobengine.db.gateway import TableGateway
from jobengine.db.supabase_client import build_gateway
from jobengine.jobs.in_process_queue import InProcessQueue
from jobengine.jobs.registry import ResumeHandlerRegistry
from jobengine.jobs.state_machine import JobService
from jobengine.jobs.watchdog import AutoResumeWatchdog
from jobengine.pipelines.catalog import ITEM_QUEUES, build_handlers
from jobengine.scraping.pages import PageFetcher

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    config: Settings
    gateway: TableGateway
    jobs: JobService
    dispatcher: InProcessQueue
    registry: ResumeHandlerRegistry
    watchdog: Optional[AutoResumeWatchdog]
    classifier: Any
    fetcher: Any

    async def start(self) -> None:
        await self.dispatcher.start()
        logger.info("Job dispatcher started (%d workers)", self.config.max_concurrent_jobs)
        if self.watchdog is not None:
            await self.watchdog.start()
            logger.info("Auto-resume watchdog started (every %ss)", self.config.watchdog_interval_seconds)

    async def stop(self) -> None:
        if self.watchdog is not None:
            await self.watchdog.stop()
        await self.dispatcher.stop()
        for client in (self.classifier, self.fetcher):
            close = getattr(client, "close", None)
            if close is not None:
                await close()


def build_engine(
    config: Settings = settings,
    gateway: Optional[TableGateway] = None,
    classifier: Any = None,
    fetcher: Any = None,
) -> Engine:
    gateway = gateway or build_gateway(config)
    classifier = classifier or ClassifierClient(config)
    fetcher = fetcher or PageFetcher(config)
    jobs = JobService(gateway)
    dispatcher = InProcessQueue(max_concurrent=config.max_concurrent_jobs)
    registry = ResumeHandlerRegistry(
        build_handlers(),
        jobs,
        gateway,
        dispatcher,
        ceiling_seconds=config.invocation_ceiling_seconds,
        item_queues=ITEM_QUEUES,
        services={"classifier": classifier, "fetcher": fetcher, "config": config},
    )
    watchdog = None
    if config.watchdog_enabled:
        watchdog = AutoResumeWatchdog(
            jobs, gateway, registry, interval_seconds=config.watchdog_interval_seconds,
        )
    return Engine(config, gateway, jobs, dispatcher, registry, watchdog, classifier, fetcher)
