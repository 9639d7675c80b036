"""Request hygiene: body size limit and JSON well-formedness."""
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse
import structlog
import orjson
from ..config import get_settings
from .correlation import get_correlation_id

log = structlog.get_logger()


class ValidationMiddleware(BaseHTTPMiddleware):
    """Rejects oversized or malformed JSON bodies before they reach a route."""

    def __init__(self, app, max_size: int | None = None):
        super().__init__(app)
        self.max_size = max_size or get_settings().MAX_EVENT_SIZE

    def _too_large(self, request: Request, size: int) -> JSONResponse:
        log.warning("payload.too_large", size=size, max_size=self.max_size, path=request.url.path)
        return JSONResponse(
            status_code=413,
            content={
                "error": "PAYLOAD_TOO_LARGE",
                "message": f"Request body exceeds maximum size of {self.max_size} bytes",
                "max_size": self.max_size,
                "received_size": size,
                "correlation_id": get_correlation_id(),
            },
        )

    async def dispatch(self, request: Request, call_next):
        if request.method not in ("POST", "PUT", "PATCH"):
            return await call_next(request)

        content_length = request.headers.get("content-length")
        if content_length and content_length.isdigit() and int(content_length) > self.max_size:
            return self._too_large(request, int(content_length))

        if request.headers.get("content-type", "").startswith("application/json"):
            body = await request.body()
            if len(body) > self.max_size:
                return self._too_large(request, len(body))

            if body:
                try:
                    orjson.loads(body)
                except orjson.JSONDecodeError as e:
                    log.warning("invalid.json", error=str(e), path=request.url.path)
                    return JSONResponse(
                        status_code=400,
                        content={
                            "error": "INVALID_JSON",
                            "message": "Request body must be valid JSON",
                            "detail": str(e),
                            "correlation_id": get_correlation_id(),
                        },
                    )

            # Replay the consumed body for downstream handlers
            async def receive():
                return {"type": "http.request", "body": body, "more_body": False}

            request._receive = receive

        return await call_next(request)
