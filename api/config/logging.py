import logging
import sys
from typing import Any

import structlog

from .settings import Settings, settings as default_settings


def _add_component(component: str):
    def processor(logger: Any, method_name: str, event_dict: dict[str, Any]):
        event_dict.setdefault("component", component)
        return event_dict

    return processor


def setup_logging(settings: Settings | None = None, component: str = "api") -> None:
    """
    Configure structured logging with structlog.

    API and dispatcher processes may share one log stream, so every
    line carries the emitting component and process id.
    """
    settings = settings or default_settings
    level = getattr(logging, settings.log_level)

    # Configure standard library logging (aio-pika and redis log through it)
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )
    logging.getLogger("aiormq").setLevel(max(level, logging.WARNING))
    logging.getLogger("aio_pika").setLevel(max(level, logging.WARNING))

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            _add_component(component),
            (
                structlog.processors.CallsiteParameterAdder(
                    parameters=[
                        structlog.processors.CallsiteParameter.FUNC_NAME,
                        structlog.processors.CallsiteParameter.PROCESS,
                    ]
                )
                if settings.debug
                else structlog.processors.CallsiteParameterAdder(
                    parameters=[structlog.processors.CallsiteParameter.PROCESS]
                )
            ),
            # JSON formatting for production, pretty printing for development
            (
                structlog.dev.ConsoleRenderer()
                if settings.debug
                else structlog.processors.JSONRenderer()
            ),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.WriteLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def add_request_context(request_id: str, **context: Any) -> None:
    """Add request-specific context to all log messages."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id, **context)
