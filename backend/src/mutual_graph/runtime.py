"""Process-scoped wiring of the services."""
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from .analyzer import NetworkAnalyzer
from .bsky_client import BlueskyClient
from .cache import CacheService
from .config import Settings, settings as default_settings
from .database import init_db, make_engine, make_session_factory
from .jobs import JobQueue, JobScheduler
from .models import NETWORK_ANALYSIS
from .progress import ProgressBroker


logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    config: Settings
    engine: Engine
    session_factory: sessionmaker
    broker: ProgressBroker
    client: BlueskyClient
    cache: CacheService
    jobs: JobQueue
    analyzer: NetworkAnalyzer
    scheduler: JobScheduler
    _maintenance_task: Optional[asyncio.Task] = None

    def run_maintenance(self) -> dict:
        """Expired cache sweep, stuck-job recovery and old-job cleanup."""
        return {
            "cache_swept": self.cache.sweep_expired(),
            "jobs_recovered": self.jobs.recover_stuck_jobs(exclude=self.scheduler.processing),
            "jobs_deleted": self.jobs.cleanup_old_jobs(),
        }

    async def _maintenance_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.cache_sweep_interval_seconds)
            summary = self.run_maintenance()
            logger.info(f"Maintenance: {summary}")

    async def start(self) -> None:
        self.scheduler.start()
        if self._maintenance_task is None:
            self._maintenance_task = asyncio.create_task(self._maintenance_loop())

    async def close(self) -> None:
        if self._maintenance_task is not None:
            self._maintenance_task.cancel()
            try:
                await self._maintenance_task
            except asyncio.CancelledError:
                pass
            self._maintenance_task = None
        await self.scheduler.stop()
        await self.client.close()


def build_runtime(
    config: Settings = None,
    engine: Engine = None,
    client: BlueskyClient = None,
) -> Runtime:
    """Construct every service explicitly; nothing is shared through globals."""
    config = config or default_settings
    engine = engine or make_engine(config.database_url)
    init_db(engine)
    session_factory = make_session_factory(engine)

    broker = ProgressBroker()
    client = client or BlueskyClient(config)
    cache = CacheService(session_factory, client, config)
    jobs = JobQueue(session_factory, config, broker)
    analyzer = NetworkAnalyzer(cache, config)
    scheduler = JobScheduler(jobs, config)
    scheduler.register_handler(NETWORK_ANALYSIS, analyzer.process_job)

    return Runtime(
        config=config,
        engine=engine,
        session_factory=session_factory,
        broker=broker,
        client=client,
        cache=cache,
        jobs=jobs,
        analyzer=analyzer,
        scheduler=scheduler,
    )
