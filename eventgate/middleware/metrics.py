"""HTTP request metrics middleware."""
import time
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
import structlog

log = structlog.get_logger()


class MetricsMiddleware(BaseHTTPMiddleware):
    """
    Collects HTTP metrics for Prometheus.

    - Records request count by method, route, status
    - Records request duration histogram
    - Tracks active requests
    """

    def __init__(self, app, telemetry):
        super().__init__(app)
        self.telemetry = telemetry

    @staticmethod
    def _path_label(request: Request) -> str:
        # Route template keeps label cardinality bounded (/v1/events/{event_id})
        route = request.scope.get("route")
        return getattr(route, "path", request.url.path)

    async def dispatch(self, request: Request, call_next):
        if request.url.path.startswith("/metrics"):
            return await call_next(request)

        service = self.telemetry.service_name
        self.telemetry.http_requests_active.labels(service=service).inc()
        start_time = time.perf_counter()
        status = 500

        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            duration = time.perf_counter() - start_time
            path = self._path_label(request)
            self.telemetry.http_requests_total.labels(
                service=service, method=request.method, path=path, status=status,
            ).inc()
            self.telemetry.http_request_duration.labels(
                service=service, method=request.method, path=path,
            ).observe(duration)
            self.telemetry.http_requests_active.labels(service=service).dec()
            log.info("http_request", http_status=status, duration_ms=round(duration * 1000, 2))
