"""
Loguru setup shared by the API server and the CLI.

Every module logs through ``from loguru import logger``; this module only
decides where records go. Records emitted through stdlib ``logging`` by
uvicorn and aiosqlite are forwarded into loguru so one sink sees everything.

    LIFEWORLD_LOG_FORMAT=json   structured output (one JSON object per line)
    LIFEWORLD_LOG_LEVEL=DEBUG   level used when the caller passes None
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Optional, TextIO, Union

from loguru import logger

TEXT_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)

FORWARDED_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "aiosqlite")

_configured = False


class InterceptHandler(logging.Handler):
    """Forward stdlib records to loguru, keeping the caller's location."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: Union[str, int] = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def configure_logging(
    level: Optional[str] = None,
    json_format: Optional[bool] = None,
    *,
    sink: Union[str, TextIO, None] = None,
    enqueue: bool = True,
) -> None:
    """
    Replace loguru's handlers with a single configured sink.

    Args:
        level: Minimum level; falls back to LIFEWORLD_LOG_LEVEL, then INFO.
        json_format: Serialize records; None defers to LIFEWORLD_LOG_FORMAT.
        sink: File path or stream; stderr when omitted.
        enqueue: Hand records to a writer thread (the server); the CLI turns it off.
    """
    global _configured

    level = (level or os.environ.get("LIFEWORLD_LOG_LEVEL") or "INFO").upper()
    if json_format is None:
        json_format = os.environ.get("LIFEWORLD_LOG_FORMAT", "").lower() == "json"
    target = sink if sink is not None else sys.stderr

    handler = {"sink": target, "level": level, "enqueue": enqueue, "backtrace": False}
    if json_format:
        handler.update(serialize=True, diagnose=False)
    else:
        handler.update(format=TEXT_FORMAT, colorize=target is sys.stderr and sys.stderr.isatty())
    logger.configure(handlers=[handler])

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in FORWARDED_LOGGERS:
        logging.getLogger(name).setLevel(level)

    _configured = True
    logger.debug(f"Logging configured (level={level}, json={json_format})")


def is_configured() -> bool:
    return _configured
