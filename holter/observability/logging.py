from __future__ import annotations

import logging
import sys
from typing import Any, TextIO

import structlog


# Loggers the sidecar owns: its own modules and the uvicorn listener it runs.
SIDECAR_LOGGERS = ("holter", "uvicorn", "uvicorn.error", "uvicorn.access")

_CONFIGURED = False


def _level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    value = logging.getLevelName(level.upper())
    return value if isinstance(value, int) else logging.INFO


def json_handler(stream: TextIO | None = None) -> logging.Handler:
    """A stdlib handler rendering both structlog events and plain records as JSON lines."""

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(),
        ],
        foreign_pre_chain=[
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
        ],
    )
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(formatter)
    return handler


def configure_logging(
    level: int | str = logging.INFO,
    *,
    standalone: bool = False,
    stream: TextIO | None = None,
) -> logging.Handler | None:
    """Route sidecar logs to a JSON handler.

    Embedded in a host service (the default), only the ``holter`` and uvicorn
    loggers get the handler and stop propagating; the host's root handlers are
    left alone, and a structlog configuration the host already made is kept.
    ``standalone=True`` (``python -m holter``) also takes over the root logger
    and installs the structlog configuration unconditionally.

    Returns the installed handler, or None when already configured.
    """

    global _CONFIGURED
    if _CONFIGURED:
        return None

    level = _level(level)
    if standalone or not structlog.is_configured():
        structlog.configure(
            processors=[
                structlog.contextvars.merge_contextvars,
                structlog.stdlib.add_logger_name,
                structlog.processors.add_log_level,
                structlog.processors.TimeStamper(fmt="iso", utc=True),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
            ],
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=True,
        )

    handler = json_handler(stream)
    for name in SIDECAR_LOGGERS:
        logger = logging.getLogger(name)
        logger.handlers = [handler]
        logger.propagate = False
        logger.setLevel(level)

    if standalone:
        root = logging.getLogger()
        root.handlers = [handler]
        root.setLevel(level)

    _CONFIGURED = True
    return handler
