"""Logging setup shared by the CLI and the API server."""

import logging

import structlog

from .config import BaseConfig


def configure_logging(settings: BaseConfig) -> None:
    """Configure stdlib logging and structlog from settings."""
    level = getattr(logging, settings.log_level.value)

    logging.basicConfig(level=level, format=settings.log_format)

    renderer = (
        structlog.processors.JSONRenderer()
        if settings.json_logs
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=False,
    )
