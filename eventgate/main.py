"""
EventGate - rate-limited event ingestion with idempotent processing.

Features:
- Fixed-window admission control per client and policy
- Step-retried processing pipeline (validate -> store -> count)
- Structured logging with correlation IDs
- Prometheus metrics
- Health checks (liveness and readiness)
"""
import asyncio
import contextlib
import structlog
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from .config import get_settings
from .logging import setup_logging
from .api.router import router
from .middleware.correlation import CorrelationMiddleware
from .middleware.error_handler import ErrorHandlerMiddleware
from .middleware.metrics import MetricsMiddleware
from .middleware.validation import ValidationMiddleware
from .telemetry import Telemetry
from .health import HealthChecker
from .services.front_door import build_front_door

VERSION = "0.1.0"

settings = get_settings()

setup_logging(json_output=settings.LOG_JSON, level=settings.LOG_LEVEL)
logger = structlog.get_logger()

telemetry = Telemetry(service_name="eventgate", version=VERSION)

front_door = build_front_door(settings, telemetry=telemetry)

health_checker = HealthChecker(
    store_check=front_door.store.health_check,
    kv_check=front_door.aggregator.health_check,
    version=VERSION,
)

app = FastAPI(
    title="EventGate",
    version=VERSION,
    description="Rate-limited event ingestion with idempotent, step-retried processing",
)
app.state.front_door = front_door

# Last added runs first: correlation ID is bound before anything else logs
app.add_middleware(ErrorHandlerMiddleware)
app.add_middleware(ValidationMiddleware, max_size=settings.MAX_EVENT_SIZE)
app.add_middleware(MetricsMiddleware, telemetry=telemetry)
app.add_middleware(CorrelationMiddleware)

app.include_router(router)

metrics_app = make_asgi_app(registry=telemetry.registry)
app.mount("/metrics", metrics_app)


@app.get("/health")
async def health():
    """Liveness check. Returns 200 while the process is serving."""
    return health_checker.liveness()


@app.get("/health/ready")
async def health_ready():
    """
    Readiness check.

    Returns:
        200: Service is ready to handle traffic
        503: Event store or counter backend unreachable, or host resources exhausted
    """
    result = await health_checker.readiness()
    status_code = 200 if result["status"] == "ready" else 503
    return JSONResponse(status_code=status_code, content=result)


async def _rate_limit_cleanup_loop(interval_s: int):
    while True:
        await asyncio.sleep(interval_s)
        removed = app.state.front_door.limiter.cleanup()
        telemetry.update_system_metrics()
        logger.debug("rate_limit.cleanup_tick", removed=removed)


@app.on_event("startup")
async def startup_event():
    logger.info(
        "service_starting",
        version=VERSION,
        env=settings.ENV,
        kv_adapter=settings.KV_ADAPTER,
        redis_configured=bool(settings.REDIS_URL),
    )
    app.state.cleanup_task = asyncio.create_task(
        _rate_limit_cleanup_loop(settings.RATE_LIMIT_CLEANUP_INTERVAL_S)
    )


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("service_stopping", in_flight=app.state.front_door.in_flight)
    task = getattr(app.state, "cleanup_task", None)
    if task is not None:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
    await app.state.front_door.drain()
    await app.state.front_door.store.close()
    telemetry.app_up.labels(service="eventgate", version=VERSION).set(0)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "eventgate.main:app",
        host="0.0.0.0",
        port=settings.SERVICE_PORT,
    )
