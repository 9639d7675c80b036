"""Ingestion front door: admission control plus pipeline scheduling."""
import asyncio
from dataclasses import dataclass
from typing import Callable, Dict

import structlog

from ..adapters.base import KVAdapter
from ..adapters.memory import InMemoryKVAdapter
from ..adapters.redis_kv import RedisKVAdapter
from ..config import Settings, get_settings
from ..errors import EventNotFound, EventNotRetryable, RateLimitExceeded, RetryLimitReached
from ..event_models import Event, PipelineRun, RateLimitConfig, RateLimitResult, RecordStatus
from ..metrics.aggregator import MetricsAggregator
from ..pipeline.harness import RetryPolicy, StepHarness
from ..pipeline.process_event import ProcessEventPipeline
from ..rate_limiter import SAMPLE_LIMIT, SUBSCRIPTION_LIMIT, RateLimiter
from ..storage.event_store import EventStore
from ..telemetry import Telemetry

log = structlog.get_logger()

CHANNEL_EVENTS = "events"
CHANNEL_SAMPLE = "sample"
CHANNEL_SUBSCRIPTION = "subscription"


@dataclass
class Admission:
    event: Event
    rate_limit: RateLimitResult | None
    task: asyncio.Task


class IngestionFrontDoor:
    """
    Receives events, consults the rate limiter for the submission channel and
    schedules exactly one pipeline run per admitted event.
    """

    def __init__(
        self,
        limiter: RateLimiter,
        pipeline: ProcessEventPipeline,
        store: EventStore,
        aggregator: MetricsAggregator,
        telemetry: Telemetry | None = None,
        max_manual_retries: int = 3,
    ):
        self.limiter = limiter
        self.pipeline = pipeline
        self.store = store
        self.aggregator = aggregator
        self._telemetry = telemetry
        self.max_manual_retries = max_manual_retries
        self._tasks: set[asyncio.Task] = set()
        self._policies: Dict[str, Callable[..., RateLimitResult]] = {
            CHANNEL_EVENTS: limiter.check_events,
            CHANNEL_SAMPLE: limiter.check_sample,
            CHANNEL_SUBSCRIPTION: limiter.check_subscription,
        }

    @property
    def channels(self) -> list[str]:
        return list(self._policies)

    def admit(self, channel: str, client_key: str, correlation_id: str | None = None) -> RateLimitResult:
        """
        Count one submission against the channel's policy.

        Raises:
            RateLimitExceeded: If the client is over its limit
            KeyError: If the channel is unknown
        """
        result = self._policies[channel](client_key, correlation_id)
        if self._telemetry:
            self._telemetry.record_admission(channel, result.allowed)
        if not result.allowed:
            raise RateLimitExceeded(result, channel)
        return result

    def policy_for(self, channel: str) -> tuple[str, RateLimitConfig]:
        """Key prefix and config used by a channel, for status lookups."""
        configs = {
            CHANNEL_EVENTS: self.limiter.events_limit,
            CHANNEL_SAMPLE: SAMPLE_LIMIT,
            CHANNEL_SUBSCRIPTION: SUBSCRIPTION_LIMIT,
        }
        return f"{channel}:", configs[channel]

    def submit(self, event: Event) -> asyncio.Task:
        """Schedule one pipeline run in the background."""
        task = asyncio.create_task(self.pipeline.run(event), name=f"process-event-{event.event_id}")
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        log.info(
            "ingestion.scheduled",
            event_id=event.event_id,
            correlation_id=event.correlation_id,
            retry_attempt=event.retry_attempt,
        )
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("ingestion.run_crashed", task=task.get_name(), error=str(exc), error_type=type(exc).__name__)

    async def receive(self, event: Event, channel: str, client_key: str) -> Admission:
        """Admit ``event`` on ``channel`` and schedule its pipeline run."""
        rate_limit = self.admit(channel, client_key, event.correlation_id)
        return Admission(event=event, rate_limit=rate_limit, task=self.submit(event))

    async def retry(self, event_id: str, correlation_id: str | None = None) -> Admission:
        """
        Re-run the pipeline for a stored event that did not finish.

        The event is rebuilt from its row with ``retry_attempt`` one past the
        stored retry count. Operator retries bypass the rate limiter.

        Raises:
            EventNotFound: If no row exists for ``event_id``
            EventNotRetryable: If the row already finished successfully
            RetryLimitReached: If the row has used ``max_manual_retries``
        """
        record = await self.store.get(event_id)
        if record is None:
            raise EventNotFound(f"No event stored with id '{event_id}'", event_id=event_id)
        if record.status is RecordStatus.SUCCESS:
            raise EventNotRetryable(
                f"Event status is '{record.status.value}'; only pending or failed events can be retried",
                event_id=event_id,
                status=record.status.value,
            )
        if record.retry_count >= self.max_manual_retries:
            raise RetryLimitReached(
                f"Event has already been retried {record.retry_count} times (max: {self.max_manual_retries})",
                event_id=event_id,
                retry_count=record.retry_count,
            )
        event = Event(
            event_id=record.event_id,
            payload=record.payload,
            metadata=record.metadata,
            correlation_id=correlation_id,
            retry_attempt=record.retry_count + 1,
        )
        log.info("ingestion.retry_requested", event_id=event_id, retry_attempt=event.retry_attempt)
        return Admission(event=event, rate_limit=None, task=self.submit(event))

    async def process_now(self, event: Event) -> PipelineRun:
        """Run the pipeline inline and return its outcome."""
        return await self.pipeline.run(event)

    async def drain(self) -> None:
        """Wait for every scheduled run to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def in_flight(self) -> int:
        return len(self._tasks)


def _create_default_adapter(settings: Settings) -> KVAdapter:
    """
    Create the key/value adapter based on configuration.

    Returns:
        KVAdapter instance based on KV_ADAPTER setting
    """
    if settings.KV_ADAPTER == "redis":
        if not settings.REDIS_URL:
            log.warning(
                "adapter.fallback",
                requested="redis",
                actual="memory",
                reason="REDIS_URL not configured"
            )
            return InMemoryKVAdapter()

        log.info("adapter.selected", type="redis", url=str(settings.REDIS_URL))
        return RedisKVAdapter(str(settings.REDIS_URL))
    log.info("adapter.selected", type="memory")
    return InMemoryKVAdapter()


def build_front_door(
    settings: Settings | None = None,
    telemetry: Telemetry | None = None,
    kv: KVAdapter | None = None,
    store: EventStore | None = None,
    harness: StepHarness | None = None,
) -> IngestionFrontDoor:
    """Wire limiter, store, aggregator and pipeline from settings."""
    settings = settings or get_settings()
    limiter = RateLimiter(
        events_limit=RateLimitConfig(
            limit=settings.EVENTS_RATE_LIMIT,
            window_ms=settings.EVENTS_RATE_WINDOW_MS,
        )
    )
    store = store or EventStore(database_url=settings.DATABASE_URL)
    aggregator = MetricsAggregator(kv or _create_default_adapter(settings))
    pipeline = ProcessEventPipeline(
        store,
        aggregator,
        harness=harness or StepHarness(RetryPolicy.from_settings(settings)),
        telemetry=telemetry,
    )
    return IngestionFrontDoor(
        limiter,
        pipeline,
        store,
        aggregator,
        telemetry=telemetry,
        max_manual_retries=settings.MANUAL_RETRY_LIMIT,
    )
