"""Tests for the aggregate counters."""
import pytest

from eventgate.errors import MetricsUnavailable
from eventgate.event_models import ValidatedEvent, utcnow
from eventgate.metrics.aggregator import (
    EVENTS_PENDING,
    EVENTS_TOTAL,
    LAST_PROCESSING_TIME_MS,
    MetricsAggregator,
)
from eventgate.adapters.memory import InMemoryKVAdapter


def make_event(event_id="e1"):
    return ValidatedEvent(event_id=event_id, payload={}, timestamp=utcnow(), correlation_id="c1")


class BrokenKV(InMemoryKVAdapter):
    async def get(self, key):
        raise ConnectionResetError("peer went away")


@pytest.mark.asyncio
async def test_increment_counter_from_absent(aggregator, kv):
    """Test an absent counter starts at zero and is stored as a decimal string."""
    assert await aggregator.increment_counter(EVENTS_TOTAL) == 1
    assert await aggregator.increment_counter(EVENTS_TOTAL, delta=4) == 5
    assert await kv.get(EVENTS_TOTAL) == "5"


@pytest.mark.asyncio
async def test_record_processed_counts_every_run(aggregator, kv):
    """Test the same event id is counted once per processing run."""
    await aggregator.record_processed(make_event(), processing_time_ms=12)
    await aggregator.record_processed(make_event(), processing_time_ms=8)

    snapshot = await aggregator.get_all()

    assert snapshot.total_events == 2
    assert snapshot.pending == 2
    assert snapshot.last_processed_at is not None
    assert snapshot.last_processing_time_ms == 8
    assert await kv.get(EVENTS_PENDING) == "2"


@pytest.mark.asyncio
async def test_record_processed_without_timing(aggregator, kv):
    """Test processing time is optional."""
    await aggregator.record_processed(make_event())
    assert await kv.get(LAST_PROCESSING_TIME_MS) is None


@pytest.mark.asyncio
async def test_record_outcome_and_failure(aggregator):
    """Test success and failure counters and the dead-letter record."""
    await aggregator.record_outcome("e1")
    await aggregator.record_failure("e2", "Step 'store-event' failed", "corr-2")

    snapshot = await aggregator.get_all()
    dead_letter = await aggregator.get_dead_letter("e2")

    assert snapshot.success == 1
    assert snapshot.failure == 1
    assert snapshot.last_failure_at is not None
    assert dead_letter["event_id"] == "e2"
    assert dead_letter["correlation_id"] == "corr-2"
    assert dead_letter["reason"] == "Step 'store-event' failed"
    assert await aggregator.get_dead_letter("e1") is None


@pytest.mark.asyncio
async def test_record_failure_without_event_id(aggregator, kv):
    """Test failures of events with no id count but leave no dead letter."""
    await aggregator.record_failure(None, "Invalid event_id", "corr-3")

    assert (await aggregator.get_all()).failure == 1
    assert not [key for key in kv.keys() if key.startswith("dlq:")]


@pytest.mark.asyncio
async def test_get_all_empty_backend(aggregator):
    """Test an empty backend reads as zeros and carries the approximation note."""
    snapshot = await aggregator.get_all()

    assert snapshot.total_events == 0
    assert snapshot.pending == 0
    assert snapshot.last_processed_at is None
    assert "more than once" in snapshot.note


@pytest.mark.asyncio
async def test_reset_zeroes_counters(aggregator):
    """Test reset sets every counter to zero."""
    await aggregator.record_processed(make_event())
    await aggregator.record_outcome("e1")

    await aggregator.reset(correlation_id="admin")
    snapshot = await aggregator.get_all()

    assert (snapshot.total_events, snapshot.pending, snapshot.success, snapshot.failure) == (0, 0, 0, 0)


@pytest.mark.asyncio
async def test_backend_errors_become_metrics_unavailable():
    """Test unexpected backend errors are wrapped as retryable."""
    aggregator = MetricsAggregator(BrokenKV())

    with pytest.raises(MetricsUnavailable):
        await aggregator.record_processed(make_event())


@pytest.mark.asyncio
async def test_health_check_delegates(aggregator):
    """Test health check reflects the backend."""
    assert await aggregator.health_check() is True


class FailFirstGetOf(InMemoryKVAdapter):
    """Fails the first read of one key only."""

    def __init__(self, key):
        super().__init__()
        self.key = key
        self.failed = False

    async def get(self, key):
        if key == self.key and not self.failed:
            self.failed = True
            raise MetricsUnavailable("kv backend unreachable")
        return await super().get(key)


@pytest.mark.asyncio
async def test_failed_total_update_leaves_pending_for_the_retry():
    """Test a failed total increment stops before pending, so a retry counts each once."""
    kv = FailFirstGetOf(EVENTS_TOTAL)
    aggregator = MetricsAggregator(kv)

    with pytest.raises(MetricsUnavailable):
        await aggregator.record_processed(make_event())
    assert await kv.get(EVENTS_PENDING) is None

    await aggregator.record_processed(make_event())

    assert await kv.get(EVENTS_TOTAL) == "1"
    assert await kv.get(EVENTS_PENDING) == "1"
