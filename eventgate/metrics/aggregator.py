"""
Aggregate event counters kept in the key/value backend.

All counters live under the ``metrics:`` prefix and are stored as decimal
strings. Each update is an independent read-modify-write with no atomic
increment and no transaction shared with the event store, so:

- concurrent updates may lose increments
- redelivered events are counted once per processing run

Consumers of these numbers must treat them as approximate. Counters only grow;
``reset`` is an operator action.
"""
import asyncio

import orjson
import structlog

from ..adapters.base import KVAdapter
from ..errors import EventGateError, MetricsUnavailable
from ..event_models import AggregateMetrics, ValidatedEvent, utcnow

log = structlog.get_logger()

EVENTS_TOTAL = "metrics:events:total"
EVENTS_PENDING = "metrics:events:pending"
EVENTS_SUCCESS = "metrics:events:success"
EVENTS_FAILURE = "metrics:events:failure"
LAST_PROCESSED_AT = "metrics:last_processed_at"
LAST_FAILURE_AT = "metrics:last_failure_at"
LAST_PROCESSING_TIME_MS = "metrics:last_processing_time_ms"
DLQ_PREFIX = "dlq:"

COUNTER_KEYS = [EVENTS_TOTAL, EVENTS_PENDING, EVENTS_SUCCESS, EVENTS_FAILURE]


def _as_int(value: str | None) -> int:
    return int(value) if value else 0


class MetricsAggregator:
    """Coarse-grained counters over a KVAdapter."""

    def __init__(self, kv: KVAdapter):
        self._kv = kv

    async def _call(self, coro):
        try:
            return await coro
        except EventGateError:
            raise
        except Exception as e:
            raise MetricsUnavailable(f"Key/value backend error: {e}") from e

    async def increment_counter(self, key: str, delta: int = 1) -> int:
        """
        Read the counter, add ``delta`` and write it back.

        Returns:
            New counter value

        Raises:
            MetricsUnavailable: If the backend cannot be reached
        """
        current = _as_int(await self._call(self._kv.get(key)))
        new_value = current + delta
        await self._call(self._kv.put(key, str(new_value)))
        return new_value

    async def record_processed(self, event: ValidatedEvent, processing_time_ms: int | None = None) -> None:
        """
        Count one processing run of ``event``.

        Increments the total and pending counters unconditionally and stamps
        the last-processed time. Runs for the same event id count again.

        Raises:
            MetricsUnavailable: If the backend cannot be reached (retryable)
        """
        # One at a time: a failed update leaves the later ones untouched for the retry
        await self.increment_counter(EVENTS_TOTAL)
        await self.increment_counter(EVENTS_PENDING)
        await self._call(self._kv.put(LAST_PROCESSED_AT, utcnow().isoformat()))
        if processing_time_ms is not None:
            await self._call(self._kv.put(LAST_PROCESSING_TIME_MS, str(processing_time_ms)))

        log.info(
            "metrics.recorded",
            event_id=event.event_id,
            processing_time_ms=processing_time_ms,
        )

    async def record_outcome(self, event_id: str) -> None:
        """Count a run that reached success."""
        await self.increment_counter(EVENTS_SUCCESS)
        log.debug("metrics.outcome_recorded", event_id=event_id, outcome="success")

    async def record_failure(self, event_id: str | None, reason: str, correlation_id: str) -> None:
        """Count a failed run and keep a dead-letter record for inspection."""
        failed_at = utcnow().isoformat()
        await self.increment_counter(EVENTS_FAILURE)
        await self._call(self._kv.put(LAST_FAILURE_AT, failed_at))
        if event_id:
            record = orjson.dumps(
                {
                    "event_id": event_id,
                    "reason": reason,
                    "correlation_id": correlation_id,
                    "failed_at": failed_at,
                }
            ).decode()
            await self._call(self._kv.put(f"{DLQ_PREFIX}{event_id}", record))
        log.info("metrics.failure_recorded", event_id=event_id, reason=reason, correlation_id=correlation_id)

    async def get_dead_letter(self, event_id: str) -> dict | None:
        raw = await self._call(self._kv.get(f"{DLQ_PREFIX}{event_id}"))
        return orjson.loads(raw) if raw else None

    async def get_all(self) -> AggregateMetrics:
        """Snapshot of all counters."""
        total, pending, success, failure, last_processed, last_failure, last_time = await asyncio.gather(
            *(
                self._call(self._kv.get(key))
                for key in COUNTER_KEYS + [LAST_PROCESSED_AT, LAST_FAILURE_AT, LAST_PROCESSING_TIME_MS]
            )
        )
        return AggregateMetrics(
            total_events=_as_int(total),
            pending=_as_int(pending),
            success=_as_int(success),
            failure=_as_int(failure),
            last_processed_at=last_processed,
            last_failure_at=last_failure,
            last_processing_time_ms=int(last_time) if last_time else None,
        )

    async def reset(self, correlation_id: str | None = None) -> None:
        """Zero every counter. Operator action only."""
        await asyncio.gather(*(self._call(self._kv.put(key, "0")) for key in COUNTER_KEYS))
        log.info("metrics.reset", correlation_id=correlation_id)

    async def health_check(self) -> bool:
        return await self._kv.health_check()
