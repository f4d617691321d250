"""
Structured logging configuration using structlog.

Logs are JSON with consistent context fields; LOG_JSON=false switches to
the console renderer for local development.
"""
import structlog
import logging
import sys

from wahub.config import settings


def configure_logging(level: str | None = None, json_output: bool | None = None):
    """Configure structlog for JSON output with context."""
    level_name = (level or settings.LOG_LEVEL).upper()
    log_level = logging.getLevelName(level_name)
    if not isinstance(log_level, int):
        log_level = logging.INFO
    json_output = settings.LOG_JSON if json_output is None else json_output

    # Configure standard library logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )

    renderer = (
        structlog.processors.JSONRenderer() if json_output
        else structlog.dev.ConsoleRenderer()
    )

    # Configure structlog
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return structlog.get_logger()


def get_logger(**context):
    """
    Get a logger with additional context bound.

    Usage:
        log = get_logger(org_id=org_id, client_id=client_id)
        log.info("message", extra_field=value)
    """
    return structlog.get_logger().bind(**context)
