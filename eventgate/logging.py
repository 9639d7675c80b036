"""
Structured logging configuration using structlog.

Every entry carries ``ts``, ``level``, ``service`` and the callsite, plus
whatever is bound in context: ``correlation_id`` from the HTTP middleware and
``event_id`` for the duration of a pipeline run.
"""
import structlog
import logging
import orjson
from typing import Any

SERVICE_NAME = "eventgate"

# Stripped of handlers; uvicorn and SQLAlchemy echo otherwise prints twice
QUIET_LOGGERS = ("uvicorn.error", "uvicorn.access", "sqlalchemy.engine", "sqlalchemy.pool")

CALLSITE = structlog.processors.CallsiteParameterAdder(
    [
        structlog.processors.CallsiteParameter.MODULE,
        structlog.processors.CallsiteParameter.FUNC_NAME,
        structlog.processors.CallsiteParameter.LINENO,
    ]
)


def add_service_name(logger: Any, method_name: str, event_dict: dict) -> dict:
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def _orjson_dumps(event_dict: dict, **kwargs: Any) -> str:
    # Enums (record status, pipeline state) and datetimes serialize natively
    return orjson.dumps(event_dict, default=str).decode()


def setup_logging(json_output: bool = True, level: str = "INFO"):
    """
    Configure structlog for the service.

    Args:
        json_output: JSON lines if True, console rendering otherwise
        level: Minimum level name; unknown names fall back to INFO
    """
    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    renderer = (
        structlog.processors.JSONRenderer(serializer=_orjson_dumps)
        if json_output
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            add_service_name,
            structlog.processors.TimeStamper(fmt="iso", key="ts"),
            structlog.processors.add_log_level,
            CALLSITE,
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", level=log_level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).handlers = []
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
