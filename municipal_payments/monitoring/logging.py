"""
Structured logging configuration.

structlog renders every event as one JSON line (a console renderer in debug
mode), merging request context bound through contextvars. Records from
stdlib loggers (uvicorn, SQLAlchemy) go through python-json-logger.
"""
import logging
import sys
from typing import Any, Callable, List

import structlog
from pythonjsonlogger import jsonlogger

from municipal_payments.config import Settings, get_settings

# Chatty third-party loggers and the level they are held at
QUIET_LOGGERS = {
    "PIL": logging.WARNING,
    "uvicorn.access": logging.WARNING,
}


def service_context(settings: Settings) -> Callable[..., dict[str, Any]]:
    """Build a processor stamping each event with the service name and environment."""

    def add_service_context(
        logger: Any, method_name: str, event_dict: dict[str, Any]
    ) -> dict[str, Any]:
        event_dict.setdefault("service", settings.app_name)
        event_dict.setdefault("env", settings.app_env)
        return event_dict

    return add_service_context


def build_processors(settings: Settings) -> List[Any]:
    renderer: Any = (
        structlog.dev.ConsoleRenderer()
        if settings.debug
        else structlog.processors.JSONRenderer()
    )
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        service_context(settings),
        renderer,
    ]


def setup_logging(settings: Settings | None = None) -> None:
    """Configure structlog and the root stdlib handler from settings."""
    settings = settings or get_settings()

    structlog.configure(
        processors=build_processors(settings),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers[:] = [handler]
    root_logger.setLevel(settings.log_level)

    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )
    for name, level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(level)

    structlog.get_logger(__name__).info("logging_configured", log_level=settings.log_level)
