"""
Error taxonomy for EventGate.

Every error carries a machine-readable ``code``, an HTTP ``status_code`` used
by the error handler middleware, and a ``retryable`` flag that the step
harness and the queue consumer consult.

Categories:
- Validation errors (400): terminal, never retried
- Collaborator errors (503): store / key-value backend unreachable, retried
  at the step level
- Admission errors (429): front-door rate limit decision, no pipeline run
- Inbox errors (404, 409): unknown event or a retry the stored row does not allow
"""
from typing import Any, Dict


class EventGateError(Exception):
    """Base class for all EventGate errors."""

    code = "INTERNAL_ERROR"
    status_code = 500
    retryable = False
    default_message = "An unexpected error occurred"

    def __init__(self, message: str | None = None, **context: Any):
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, **self.context}


class ValidationError(EventGateError):
    code = "VALIDATION_ERROR"
    status_code = 400
    default_message = "Event failed validation"


class MissingEventId(ValidationError):
    code = "MISSING_EVENT_ID"
    default_message = "Invalid event_id: must be non-empty string"


class MissingPayload(ValidationError):
    code = "MISSING_PAYLOAD"
    default_message = "Invalid payload: must be object"


class InvalidMetadata(ValidationError):
    code = "INVALID_METADATA"
    default_message = "Invalid metadata: must be object if present"


class StoreError(EventGateError):
    code = "DATABASE_ERROR"
    status_code = 503
    default_message = "Database service error"


class StoreUnavailable(StoreError):
    code = "STORE_UNAVAILABLE"
    retryable = True
    default_message = "Event store temporarily unavailable"


class MetricsError(EventGateError):
    code = "METRICS_ERROR"
    status_code = 503
    default_message = "Metrics backend error"


class MetricsUnavailable(MetricsError):
    code = "METRICS_UNAVAILABLE"
    retryable = True
    default_message = "Metrics backend temporarily unavailable"


class StepExhausted(EventGateError):
    """Raised by the step harness once a step has used its retry budget."""

    code = "STEP_EXHAUSTED"
    status_code = 503

    def __init__(self, step_name: str, attempts: int, last_error: BaseException):
        self.step_name = step_name
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Step '{step_name}' failed after {attempts} attempts: {last_error}",
            step=step_name,
            attempts=attempts,
        )


class RateLimitExceeded(EventGateError):
    code = "RATE_LIMIT_EXCEEDED"
    status_code = 429
    default_message = "Too many requests"

    def __init__(self, result, policy: str):
        self.result = result
        self.policy = policy
        super().__init__(
            f"Rate limit exceeded for policy '{policy}', retry after {result.retry_after}s",
            policy=policy,
            limit=result.limit,
            retry_after=result.retry_after,
        )


class EventNotFound(EventGateError):
    code = "EVENT_NOT_FOUND"
    status_code = 404
    default_message = "Event not found"


class InvalidCursor(ValidationError):
    code = "INVALID_CURSOR"
    default_message = "Invalid cursor format"


class TooManyFilters(ValidationError):
    code = "TOO_MANY_FILTERS"
    default_message = "Too many filters in one query"


class EventNotRetryable(EventGateError):
    """The stored event is in a state that cannot be re-processed on request."""

    code = "INVALID_STATE"
    status_code = 409
    default_message = "Event cannot be retried in its current state"


class RetryLimitReached(EventNotRetryable):
    code = "MAX_RETRIES_EXCEEDED"
    default_message = "Event has used its manual retries"
