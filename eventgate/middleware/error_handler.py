"""Structured error responses."""
from typing import Any

from fastapi import Request, HTTPException
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
import structlog
from ..errors import EventGateError, RateLimitExceeded
from ..event_models import RateLimitResult
from .correlation import get_correlation_id

log = structlog.get_logger()


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    """X-RateLimit-* headers for an admission decision; Retry-After only on rejection."""
    headers = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(result.reset_at),
    }
    if result.retry_after is not None:
        headers["Retry-After"] = str(result.retry_after)
    return headers


def _json_error(
    request: Request,
    status_code: int,
    body: dict[str, Any],
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        headers=headers,
        content={
            **body,
            "status_code": status_code,
            "correlation_id": get_correlation_id(),
            "path": request.url.path,
        },
    )


def error_response(request: Request, exc: EventGateError) -> JSONResponse:
    """Render an EventGateError as a JSON response."""
    headers = rate_limit_headers(exc.result) if isinstance(exc, RateLimitExceeded) else None
    return _json_error(request, exc.status_code, exc.to_dict(), headers)


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """
    Converts exceptions escaping a route into JSON bodies of the form
    ``{error, message, status_code, correlation_id, path, ...context}``.
    """

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except EventGateError as exc:
            log_method = log.warning if exc.status_code < 500 else log.error
            log_method(
                "http.error",
                code=exc.code,
                status_code=exc.status_code,
                retryable=exc.retryable,
                message=exc.message,
                path=request.url.path,
            )
            return error_response(request, exc)
        except HTTPException as exc:
            log.warning("http.exception", status_code=exc.status_code, detail=exc.detail, path=request.url.path)
            return _json_error(
                request,
                exc.status_code,
                {"error": exc.__class__.__name__, "message": exc.detail},
            )
        except Exception as exc:
            log.error(
                "unhandled.exception",
                error=str(exc),
                error_type=exc.__class__.__name__,
                path=request.url.path,
                exc_info=True,
            )
            return _json_error(
                request,
                500,
                {"error": "InternalServerError", "message": "An unexpected error occurred"},
            )
