"""structlog configuration.

Learn: services log with event-style names ("session.rotated",
"quota.exceeded") and keyword context. This module only decides how those
events are rendered: JSON lines in production, colored console output in
development. The request-id middleware binds `request_id` into
structlog's contextvars, and merge_contextvars below adds it to every entry.
"""

import logging

import structlog


def configure_logging(log_format: str = "console", debug: bool = False) -> None:
    """Configure structlog once at startup."""
    level = logging.DEBUG if debug else logging.INFO

    renderer = (
        structlog.processors.JSONRenderer()
        if log_format == "json"
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )
