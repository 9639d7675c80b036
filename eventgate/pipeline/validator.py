"""Shape validation for submitted events. Pure and deterministic."""
from collections.abc import Mapping

from ..errors import InvalidMetadata, MissingEventId, MissingPayload
from ..event_models import Event, ValidatedEvent


def validate_event(event: Event) -> ValidatedEvent:
    """
    Check that an event can be stored.

    Raises:
        MissingEventId: event_id is absent, empty or blank
        MissingPayload: payload is absent or not an object
        InvalidMetadata: metadata is present but not an object
    """
    if not isinstance(event.event_id, str) or not event.event_id.strip():
        raise MissingEventId()

    if not isinstance(event.payload, Mapping):
        raise MissingPayload(event_id=event.event_id)

    if event.metadata is not None and not isinstance(event.metadata, Mapping):
        raise InvalidMetadata(event_id=event.event_id)

    return ValidatedEvent(
        event_id=event.event_id,
        payload=dict(event.payload),
        metadata=dict(event.metadata) if event.metadata is not None else None,
        timestamp=event.timestamp,
        correlation_id=event.correlation_id,
        retry_attempt=event.retry_attempt,
    )
