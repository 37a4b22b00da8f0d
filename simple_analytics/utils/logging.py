"""Structured logging setup for the analytics client."""

import logging

import structlog

from simple_analytics.utils.config import get_logging_config

LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def setup_logging(service_name: str = "simple-analytics"):
    """Configure structlog and return a logger bound to the given service.

    Output is filtered at the level named in the `logging` config section, so
    per-request debug events stay quiet inside a host application by default.
    """
    level = LEVELS.get(str(get_logging_config().get("level", "info")).lower(), logging.INFO)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    return structlog.get_logger(service=service_name)
