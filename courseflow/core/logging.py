"""Structured logging configuration using structlog.

Both processes (API and worker) log JSON lines to stdout. Every line carries
the service name, the process component and, for the worker, its worker id,
so claims written to the ledger can be matched to the log of the worker that
made them.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from courseflow.core.config import get_settings

# Chatty client libraries, raised to WARNING unless debugging
NOISY_LOGGERS = ("aio_pika", "aiormq", "httpx", "httpcore", "aiosmtplib")


def service_context(component: str) -> Processor:
    """Processor adding fixed process identity to every event."""
    settings = get_settings()
    identity = {
        "service": settings.app_name.lower(),
        "version": settings.app_version,
        "component": component,
    }
    if component == "worker":
        identity["worker_id"] = settings.worker_id

    def add_identity(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
        for key, value in identity.items():
            event_dict.setdefault(key, value)
        return event_dict

    return add_identity


def setup_logging(component: str = "api") -> None:
    """Configure structured logging for one process.

    Args:
        component: "api" or "worker"
    """
    settings = get_settings()
    level = getattr(logging, settings.log_level)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        service_context(component),
        structlog.processors.StackInfoRenderer(),
    ]
    if settings.debug:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    if not settings.debug:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(max(level, logging.WARNING))


def get_logger(name: str | None = None, **initial_values: Any) -> structlog.stdlib.BoundLogger:
    """Get a logger, optionally with context already bound."""
    logger = structlog.get_logger(name)
    if initial_values:
        logger = logger.bind(**initial_values)
    return logger
