"""vescrow — Structured logging configuration for entry points."""

from __future__ import annotations

import logging

import structlog

from vescrow.config import settings


def configure_logging(log_level: str | None = None, log_format: str | None = None) -> None:
    """Configure structured logging."""
    level = logging.getLevelName((log_level or settings.log_level).upper())
    log_format = log_format or settings.log_format

    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            (
                structlog.dev.ConsoleRenderer()
                if log_format != "json"
                else structlog.processors.JSONRenderer()
            ),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
