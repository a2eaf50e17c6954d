"""
Logging setup

The driver logs through structlog with keyword context (host, port, token).
Applications call configure_logging() once at startup; without it structlog's
defaults apply.
"""

import logging
import sys
from typing import Optional

import structlog

_CONFIGURED = False


def configure_logging(level: str = "INFO", *, json_output: bool = False,
                      stream: Optional[object] = None) -> None:
    """
    Configure stdlib logging and structlog processors.

    Args:
        level: DEBUG, INFO, WARNING or ERROR
        json_output: JSON lines instead of the console renderer
        stream: output stream (defaults to stderr)
    """
    global _CONFIGURED

    if _CONFIGURED:
        return

    log_level = getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(
        level=log_level,
        format="%(message)s",
        stream=stream or sys.stderr,
    )

    if json_output:
        renderer = structlog.processors.JSONRenderer(sort_keys=True)
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(stream or sys.stderr),
        cache_logger_on_first_use=True,
    )

    _CONFIGURED = True


def reset_logging() -> None:
    """Forget a previous configure_logging() call (testing helper)"""
    global _CONFIGURED
    _CONFIGURED = False
    structlog.reset_defaults()
