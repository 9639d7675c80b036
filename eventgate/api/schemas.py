from pydantic import BaseModel, Field
from typing import Any, Dict, List
from datetime import datetime
import uuid
from ..event_models import Event, StoredEventRecord

class SubmitEventRequest(BaseModel):
    # Generated when absent; supply it to make resubmission idempotent
    event_id: str | None = None
    payload: Dict[str, Any]
    metadata: Dict[str, Any] | None = None
    timestamp: datetime | None = None
    correlation_id: str | None = None

    def to_event(self, correlation_id: str | None = None) -> Event:
        data = self.model_dump(exclude_none=True)
        if self.event_id is None:
            data["event_id"] = str(uuid.uuid4())
        data["correlation_id"] = self.correlation_id or correlation_id
        return Event(**data)

class AcceptedResponse(BaseModel):
    event_id: str
    status: str = "accepted"
    correlation_id: str
    remaining: int

class EventListResponse(BaseModel):
    total: int
    events: List[StoredEventRecord]
    # Pass back as ?cursor= for the next page; absent on the last page
    next_cursor: str | None = None

class RetryAcceptedResponse(BaseModel):
    event_id: str
    status: str = "retrying"
    correlation_id: str
    retry_attempt: int

class RateLimitStatusResponse(BaseModel):
    policy: str
    key: str
    allowed: bool
    remaining: int
    limit: int
    reset_at: int
    retry_after: int | None = None

class RateLimitCleanupResponse(BaseModel):
    removed: int
    remaining: int

class RateLimitResetRequest(BaseModel):
    key: str | None = Field(default=None, description="Window key to reset; omit to reset every window")

class CleanupResponse(BaseModel):
    status: str = "success"
    deleted: int
    older_than: datetime