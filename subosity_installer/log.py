"""Logging configuration using loguru.

Intercepts stdlib logging so that httpx and asyncio records flow through
loguru with a unified format.

Components never configure logging themselves: each takes an optional
logger in its constructor and falls back to the module-level loguru logger
bound with its component name.
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING, TextIO

from loguru import logger

if TYPE_CHECKING:
    from loguru import Logger

HOST_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<level>{message}</level>"
)
VERBOSE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)
CONTAINER_FORMAT = "{level: <8} | {message}"
"""Plain format used inside the container, where stdout is a protocol stream."""


class _InterceptHandler(logging.Handler):
    """Bridge stdlib logging records into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        # Map stdlib level name -> loguru level
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Walk the call stack so loguru reports the real call-site
        frame = logging.currentframe()
        depth = 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(
    level: str = "INFO",
    *,
    verbose: bool = False,
    sink: TextIO | None = None,
    fmt: str | None = None,
) -> None:
    """Configure loguru as the sole logging sink.

    Call this once at process startup.  ``verbose`` forces DEBUG and adds
    call-site information to every line.
    """
    level = "DEBUG" if verbose else level.upper()
    if fmt is None:
        fmt = VERBOSE_FORMAT if verbose else HOST_FORMAT

    # Remove default loguru handler and add ours
    logger.remove()
    logger.add(sink or sys.stderr, level=level, format=fmt, colorize=None if sink is None else False)

    # Intercept all stdlib logging
    logging.basicConfig(handlers=[_InterceptHandler()], level=0, force=True)

    # Quiet down noisy libraries
    for name in ("httpx", "httpcore", "asyncio"):
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.debug("Logging initialised (level={})", level)


def component_logger(component: str, log: Logger | None = None) -> Logger:
    """Return *log* if injected, else the global logger bound to *component*."""
    if log is not None:
        return log
    return logger.bind(component=component)
