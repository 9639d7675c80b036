"""Shared fixtures: fake clock, in-memory store and counters, zero-delay harness."""
import asyncio
import os
import sys

# Settings are cached on first use; keep the app on throwaway backends
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("KV_ADAPTER", "memory")
os.environ.setdefault("LOG_JSON", "false")
os.environ.setdefault("MAX_EVENT_SIZE", "65536")
os.environ.setdefault("STEP_RETRY_DELAY_MS", "0")

import pytest
import pytest_asyncio

from eventgate.adapters.memory import InMemoryKVAdapter
from eventgate.errors import MetricsUnavailable, StoreUnavailable
from eventgate.metrics.aggregator import MetricsAggregator
from eventgate.pipeline.harness import RetryPolicy, StepHarness
from eventgate.pipeline.process_event import ProcessEventPipeline
from eventgate.rate_limiter import RateLimiter
from eventgate.services.front_door import IngestionFrontDoor
from eventgate.storage.event_store import EventStore


class FakeClock:
    """Manually advanced clock returning seconds."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FlakyEventStore(EventStore):
    """Event store whose first ``failures`` writes report the database unreachable."""

    def __init__(self, failures: int):
        super().__init__(database_url="sqlite://")
        self.failures = failures
        self.store_calls = 0

    async def store(self, event):
        self.store_calls += 1
        if self.store_calls <= self.failures:
            raise StoreUnavailable("database is locked")
        return await super().store(event)


class FlakyKVAdapter(InMemoryKVAdapter):
    """Key/value adapter whose first ``failures`` reads fail."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures
        self.get_calls = 0

    async def get(self, key):
        self.get_calls += 1
        if self.get_calls <= self.failures:
            raise MetricsUnavailable("kv backend unreachable")
        return await super().get(key)


async def no_sleep(_delay):
    return None


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    return RateLimiter(clock=clock)


@pytest_asyncio.fixture
async def store():
    event_store = EventStore(database_url="sqlite://")
    yield event_store
    await event_store.close()


@pytest_asyncio.fixture
async def flaky_store():
    """Factory for FlakyEventStore instances, disposed after the test."""
    created = []

    def make(failures: int) -> FlakyEventStore:
        created.append(FlakyEventStore(failures))
        return created[-1]

    yield make
    for event_store in created:
        await event_store.close()


@pytest.fixture(scope="session", autouse=True)
def dispose_app_store():
    yield
    main = sys.modules.get("eventgate.main")
    if main is not None:
        asyncio.run(main.front_door.store.close())


@pytest.fixture
def kv():
    return InMemoryKVAdapter()


@pytest.fixture
def aggregator(kv):
    return MetricsAggregator(kv)


@pytest.fixture
def harness():
    return StepHarness(RetryPolicy(max_attempts=3, base_delay_s=0, timeout_s=5), sleep=no_sleep)


@pytest.fixture
def pipeline(store, aggregator, harness):
    return ProcessEventPipeline(store, aggregator, harness=harness)


@pytest.fixture
def front_door(limiter, pipeline, store, aggregator):
    return IngestionFrontDoor(limiter, pipeline, store, aggregator)
