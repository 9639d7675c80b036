from pydantic import BaseModel, Field, field_validator
from typing import Any, Dict, List
from datetime import datetime, timezone
from enum import Enum
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Event(BaseModel):
    """An externally submitted event. ``event_id`` is the idempotency key."""
    event_id: str | None = None
    payload: Any = None
    metadata: Any = None
    timestamp: datetime = Field(default_factory=utcnow)
    # Tracing only, never used for deduplication
    correlation_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    retry_attempt: int = Field(default=0, ge=0)

    @field_validator("correlation_id", mode="before")
    @classmethod
    def _generate_correlation_id(cls, value):
        return value or str(uuid.uuid4())

    @field_validator("timestamp")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class ValidatedEvent(BaseModel):
    event_id: str
    payload: Dict[str, Any]
    metadata: Dict[str, Any] | None = None
    timestamp: datetime
    correlation_id: str
    retry_attempt: int = 0


class RecordStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"


class StoredEventRecord(BaseModel):
    event_id: str
    status: RecordStatus
    payload: Dict[str, Any]
    metadata: Dict[str, Any] | None = None
    created_at: datetime
    updated_at: datetime
    stored_at: datetime | None = None
    retry_count: int = 0


class RateLimitConfig(BaseModel):
    limit: int = Field(..., gt=0)
    window_ms: int = Field(..., gt=0)


class RateLimitResult(BaseModel):
    allowed: bool
    remaining: int = Field(..., ge=0)
    limit: int
    reset_at: int = Field(..., description="Epoch milliseconds when the window resets")
    retry_after: int | None = Field(default=None, description="Seconds until a retry may be admitted")


class AggregateMetrics(BaseModel):
    total_events: int = 0
    pending: int = 0
    success: int = 0
    failure: int = 0
    last_processed_at: str | None = None
    last_failure_at: str | None = None
    last_processing_time_ms: int | None = None
    note: str = (
        "Counters are updated outside the event store transaction and count "
        "every processing run, so redelivered events are counted more than "
        "once. They may exceed the number of stored records."
    )


class RunStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"


class PipelineState(str, Enum):
    PENDING = "pending"
    VALIDATING = "validating"
    STORING = "storing"
    RECORDING_METRICS = "recording_metrics"
    SUCCESS = "success"
    FAILED = "failed"


class StepOutcome(BaseModel):
    step_name: str
    status: RunStatus
    started_at: datetime
    duration_ms: float
    attempts: int = 1
    error: str | None = None


class PipelineRun(BaseModel):
    """Ephemeral record of one event's trip through the pipeline."""
    correlation_id: str
    event_id: str | None = None
    retry_attempt: int = 0
    state: PipelineState = PipelineState.PENDING
    status: RunStatus = RunStatus.RUNNING
    steps: List[StepOutcome] = Field(default_factory=list)
    error: str | None = None
    error_code: str | None = None
    retryable: bool = False
    duration_ms: float | None = None
    stored_at: datetime | None = None
