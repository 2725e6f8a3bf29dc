"""
Structured logging setup (structlog).

Call ``setup_logging()`` once at startup; everywhere else::

    from app.core.logging import get_logger
    logger = get_logger(__name__)
    logger.info("Run started", run_id=run_id)
"""

from __future__ import annotations

import logging
import sys

import structlog

from app.core.config import settings


def setup_logging(level: str | None = None) -> None:
    """Configure stdlib logging and structlog to share one pipeline."""
    level_name = (level or settings.LOG_LEVEL or "INFO").upper()

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level_name, logging.INFO),
    )

    renderer = (
        structlog.dev.ConsoleRenderer()
        if settings.APP_ENV == "development"
        else structlog.processors.JSONRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level_name, logging.INFO)
        ),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger bound to ``name``."""
    return structlog.get_logger(name)
