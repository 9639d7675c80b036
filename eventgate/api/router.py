from datetime import datetime, timedelta
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse
from .schemas import (
    AcceptedResponse,
    CleanupResponse,
    EventListResponse,
    RateLimitCleanupResponse,
    RateLimitResetRequest,
    RateLimitStatusResponse,
    RetryAcceptedResponse,
    SubmitEventRequest,
)
from ..config import get_settings
from ..errors import EventNotFound, TooManyFilters
from ..event_models import AggregateMetrics, PipelineRun, RecordStatus, RunStatus, StoredEventRecord, utcnow
from ..middleware.error_handler import rate_limit_headers
from ..services.front_door import CHANNEL_EVENTS, CHANNEL_SAMPLE, IngestionFrontDoor
from ..storage.event_store import EventFilter, encode_cursor

router = APIRouter(prefix="/v1")

METADATA_PARAM = "metadata."


def get_front_door(request: Request) -> IngestionFrontDoor:
    return request.app.state.front_door


def client_key(request: Request) -> str:
    """Admission key for the caller: first X-Forwarded-For hop, else peer address."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


@router.post("/events", status_code=202, response_model=AcceptedResponse)
async def submit_event(
    req: SubmitEventRequest,
    request: Request,
    response: Response,
    front_door: IngestionFrontDoor = Depends(get_front_door),
):
    event = req.to_event(getattr(request.state, "correlation_id", None))
    admission = await front_door.receive(event, CHANNEL_EVENTS, client_key(request))
    response.headers.update(rate_limit_headers(admission.rate_limit))
    return AcceptedResponse(
        event_id=event.event_id,
        correlation_id=event.correlation_id,
        remaining=admission.rate_limit.remaining,
    )


@router.post("/events/sample", response_model=PipelineRun)
async def process_sample_event(
    req: SubmitEventRequest,
    request: Request,
    front_door: IngestionFrontDoor = Depends(get_front_door),
):
    """Process one event synchronously and return the full pipeline run."""
    event = req.to_event(getattr(request.state, "correlation_id", None))
    rate_limit = front_door.admit(CHANNEL_SAMPLE, client_key(request), event.correlation_id)
    run = await front_door.process_now(event)

    if run.status is RunStatus.SUCCESS:
        status_code = 200
    elif run.retryable:
        status_code = 503
    else:
        status_code = 422
    return JSONResponse(
        status_code=status_code,
        content=run.model_dump(mode="json"),
        headers=rate_limit_headers(rate_limit),
    )


@router.get("/events", response_model=EventListResponse)
async def list_events(
    request: Request,
    limit: int = Query(25, ge=1, le=500),
    status: List[RecordStatus] = Query(default=[]),
    created_from: datetime | None = Query(None, alias="from"),
    created_to: datetime | None = Query(None, alias="to"),
    min_retries: int | None = Query(None, ge=0),
    max_retries: int | None = Query(None, ge=0),
    cursor: str | None = None,
    front_door: IngestionFrontDoor = Depends(get_front_door),
):
    """
    Inbox listing, newest first.

    ``status`` may be repeated. ``metadata.<key>=<value>`` matches a top-level
    metadata value compared as a string. Pass ``next_cursor`` back as
    ``cursor`` to fetch the following page.
    """
    filters = EventFilter(
        statuses=status,
        created_from=created_from,
        created_to=created_to,
        min_retries=min_retries,
        max_retries=max_retries,
        metadata={
            name[len(METADATA_PARAM):]: value
            for name, value in request.query_params.items()
            if name.startswith(METADATA_PARAM) and len(name) > len(METADATA_PARAM)
        },
    )
    max_filters = get_settings().INBOX_MAX_FILTERS
    if filters.active > max_filters:
        raise TooManyFilters(f"At most {max_filters} filters per query", filters=filters.active)

    store = front_door.store
    events = list(await store.list_recent(limit=limit, filters=filters, cursor=cursor))
    next_cursor = encode_cursor(events[-1]) if len(events) == limit else None
    return EventListResponse(total=await store.count(filters=filters), events=events, next_cursor=next_cursor)


@router.get("/events/{event_id}", response_model=StoredEventRecord)
async def get_event(event_id: str, front_door: IngestionFrontDoor = Depends(get_front_door)):
    record = await front_door.store.get(event_id)
    if record is None:
        raise EventNotFound(f"No event stored with id '{event_id}'", event_id=event_id)
    return record


@router.post("/events/{event_id}/retry", status_code=202, response_model=RetryAcceptedResponse)
async def retry_event(
    event_id: str,
    request: Request,
    front_door: IngestionFrontDoor = Depends(get_front_door),
):
    """Re-process a stored event that is pending or failed."""
    admission = await front_door.retry(event_id, getattr(request.state, "correlation_id", None))
    return RetryAcceptedResponse(
        event_id=admission.event.event_id,
        correlation_id=admission.event.correlation_id,
        retry_attempt=admission.event.retry_attempt,
    )


@router.get("/metrics/aggregate", response_model=AggregateMetrics)
async def aggregate_metrics(front_door: IngestionFrontDoor = Depends(get_front_door)):
    """Aggregate counters. They count processing runs, not unique events."""
    return await front_door.aggregator.get_all()


@router.get("/rate-limits/{policy}", response_model=RateLimitStatusResponse)
async def rate_limit_status(
    policy: str,
    request: Request,
    front_door: IngestionFrontDoor = Depends(get_front_door),
):
    """Current window for the caller under ``policy``. Does not count as a request."""
    if policy not in front_door.channels:
        raise HTTPException(404, detail=f"Unknown rate limit policy '{policy}'")
    prefix, config = front_door.policy_for(policy)
    key = f"{prefix}{client_key(request)}"
    result = front_door.limiter.get_status(key, config)
    return RateLimitStatusResponse(policy=policy, key=key, **result.model_dump())


@router.post("/admin/rate-limits/cleanup", response_model=RateLimitCleanupResponse)
async def cleanup_rate_limits(front_door: IngestionFrontDoor = Depends(get_front_door)):
    removed = front_door.limiter.cleanup()
    return RateLimitCleanupResponse(removed=removed, remaining=len(front_door.limiter))


@router.post("/admin/rate-limits/reset", status_code=204)
async def reset_rate_limits(
    req: RateLimitResetRequest,
    front_door: IngestionFrontDoor = Depends(get_front_door),
):
    if req.key:
        front_door.limiter.reset(req.key)
    else:
        front_door.limiter.reset_all()
    return Response(status_code=204)


@router.post("/admin/cleanup", response_model=CleanupResponse)
async def purge_events(
    older_than_hours: int = Query(24, ge=1),
    front_door: IngestionFrontDoor = Depends(get_front_door),
):
    """Delete finalized events older than the retention window."""
    older_than = utcnow() - timedelta(hours=older_than_hours)
    deleted = await front_door.store.purge_finalized(older_than)
    return CleanupResponse(deleted=deleted, older_than=older_than)
