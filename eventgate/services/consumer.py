"""
Queue consumer for at-least-once event delivery.

Processes a batch of delivered messages concurrently. A message is
acknowledged when its run succeeds or fails terminally (validation); it is
left for redelivery when a transient step exhausted its retry budget, when
the body cannot be parsed, or when the source is over its rate limit.
"""
import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol

import structlog
from pydantic import ValidationError as ModelValidationError

from ..errors import RateLimitExceeded
from ..event_models import Event, PipelineRun, RunStatus
from .front_door import CHANNEL_EVENTS, IngestionFrontDoor

log = structlog.get_logger()


class QueueMessage(Protocol):
    id: str
    body: Any
    # 1 on first delivery, incremented by the queue on each redelivery
    attempts: int

    def ack(self) -> None: ...

    def retry(self) -> None: ...


@dataclass
class DeliveredMessage:
    """Minimal QueueMessage used by in-process delivery and tests."""
    body: Any
    attempts: int = 1
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    acked: bool = False
    retried: bool = False

    def ack(self) -> None:
        self.acked = True

    def retry(self) -> None:
        self.retried = True


@dataclass
class BatchResult:
    batch_id: str
    acked: int = 0
    retried: int = 0
    runs: list[PipelineRun] = field(default_factory=list)


def parse_message(body: Any, attempts: int) -> Event:
    """Build an Event from a message body; ``retry_attempt`` is 0 on first delivery."""
    if not isinstance(body, dict):
        raise TypeError(f"Queue message body must be an object, got {type(body).__name__}")
    return Event(**{**body, "retry_attempt": max(0, attempts - 1)})


async def _process_message(
    front_door: IngestionFrontDoor,
    message: QueueMessage,
    batch_id: str,
    source_key: str | None,
) -> tuple[bool, PipelineRun | None]:
    try:
        event = parse_message(message.body, message.attempts)
    except (TypeError, ModelValidationError) as e:
        log.error(
            "queue.message_invalid",
            batch_id=batch_id,
            message_id=message.id,
            error=str(e),
            retry_attempt=message.attempts,
        )
        return False, None

    if source_key is not None:
        try:
            front_door.admit(CHANNEL_EVENTS, source_key, event.correlation_id)
        except RateLimitExceeded:
            return False, None

    run = await front_door.process_now(event)
    settled = run.status is RunStatus.SUCCESS or not run.retryable
    return settled, run


async def process_batch(
    front_door: IngestionFrontDoor,
    messages: Iterable[QueueMessage],
    source_key: str | None = None,
) -> BatchResult:
    """
    Process one delivered batch, acking or releasing each message.

    Args:
        front_door: Front door that owns the pipeline and limiter
        messages: Delivered messages
        source_key: Optional admission key; when set every message is counted
            against the events policy before its run is started

    Returns:
        BatchResult summary
    """
    messages = list(messages)
    batch = BatchResult(batch_id=str(uuid.uuid4()))
    log.info("queue.batch_received", batch_id=batch.batch_id, batch_size=len(messages))

    outcomes = await asyncio.gather(
        *(_process_message(front_door, m, batch.batch_id, source_key) for m in messages)
    )

    for message, (settled, run) in zip(messages, outcomes):
        if run is not None:
            batch.runs.append(run)
        if settled:
            message.ack()
            batch.acked += 1
        else:
            message.retry()
            batch.retried += 1
            log.warning(
                "queue.message_released",
                batch_id=batch.batch_id,
                message_id=message.id,
                retry_attempt=message.attempts,
                error=run.error if run else None,
            )

    log.info(
        "queue.batch_completed",
        batch_id=batch.batch_id,
        acked=batch.acked,
        retried=batch.retried,
        total=len(messages),
    )
    return batch
