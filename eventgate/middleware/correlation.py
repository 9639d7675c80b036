"""Per-request correlation ID: bound for structured logs and echoed to the caller."""
import uuid

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

HEADER = "X-Correlation-ID"


class CorrelationMiddleware(BaseHTTPMiddleware):
    """Takes the caller's X-Correlation-ID or mints one, binds it for logging and echoes it back."""

    async def dispatch(self, request: Request, call_next):
        correlation_id = request.headers.get(HEADER) or str(uuid.uuid4())
        request.state.correlation_id = correlation_id

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(correlation_id=correlation_id)

        response = await call_next(request)
        response.headers[HEADER] = correlation_id
        return response


def get_correlation_id() -> str:
    """Correlation ID bound for the current request, or an empty string outside one."""
    return structlog.contextvars.get_contextvars().get("correlation_id", "")
