"""
Structured logging setup.

Call ``configure_logging`` once at process start (the CLI and server do);
modules acquire loggers with ``structlog.get_logger(__name__)``.
"""

from __future__ import annotations

import logging
import os
import sys

import structlog

ENV_LOG_LEVEL = "HISTORY_SEARCH_LOG_LEVEL"
ENV_LOG_FORMAT = "HISTORY_SEARCH_LOG_FORMAT"


def configure_logging(level: str | None = None, fmt: str | None = None) -> None:
    """Configure stdlib logging and structlog processors.

    ``fmt`` is ``console`` (default) or ``json``.
    """
    resolved_level = (level or os.getenv(ENV_LOG_LEVEL) or "INFO").upper()
    resolved_fmt = (fmt or os.getenv(ENV_LOG_FORMAT) or "console").lower()

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, resolved_level, logging.INFO),
    )
    logging.getLogger().setLevel(getattr(logging, resolved_level, logging.INFO))

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.add_logger_name,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if resolved_fmt == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
