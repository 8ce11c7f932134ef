"""Shared fixtures: in-memory database, settings and fake clocks."""
import pytest
from datetime import datetime, timedelta, timezone
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from mutual_graph.config import Settings
from mutual_graph.database import init_db, make_session_factory


class FakeClock:
    """Wall clock for services that take a ``now`` callable."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeTimer:
    """Monotonic clock whose sleep advances time instead of waiting."""

    def __init__(self):
        self.time = 0.0
        self.sleeps = []

    def clock(self) -> float:
        return self.time

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.time += seconds


@pytest.fixture
def engine():
    """In-memory database shared by every session of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def config():
    """Settings isolated from the environment, with no real delays."""
    return Settings(
        _env_file=None,
        database_url="sqlite://",
        bsky_identifier="",
        bsky_app_password="",
        page_delay_seconds=0,
        rate_limit_min_wait_seconds=0,
        rate_limit_jitter_seconds=0,
        queue_min_request_spacing_seconds=0,
        priority_handle="p.example",
        daily_refresh_limit=5,
        max_attempts=3,
        max_concurrent_jobs=10,
        poll_interval_seconds=0,
    )


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 10, 15, 0, tzinfo=timezone.utc))


@pytest.fixture
def timer():
    return FakeTimer()
