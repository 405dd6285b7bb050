"""Logging for the client, on loguru.

Two kinds of records share the sink:

- diagnostics from the storage, HTTP and workspace layers, printed with
  their origin;
- notifications from ``LogNotifier`` (bound with ``toast=True``), printed as
  bare status lines since they stand in for UI toasts.

Only the HTTP stack's stdlib loggers are bridged in; other stdlib logging in
the host process is left alone.
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING

from loguru import logger

if TYPE_CHECKING:
    from loguru import Record

    from odzai.client.settings import OdzaiSettings

BRIDGED_LOGGERS = ("httpx", "httpcore")

DETAIL_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)
TOAST_FORMAT = "<level>{level: <8}</level> | <level>{message}</level>"


def format_record(record: Record) -> str:
    fmt = TOAST_FORMAT if record["extra"].get("toast") else DETAIL_FORMAT
    return fmt + "\n{exception}"


class _BridgeHandler(logging.Handler):
    """Re-emit a stdlib record through loguru, keeping its logger name and line."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        def origin(r: Record) -> None:
            r.update(name=record.name, function=record.funcName, line=record.lineno)

        logger.patch(origin).opt(exception=record.exc_info).log(level, record.getMessage())


def setup_logging(settings: OdzaiSettings) -> None:
    """Point loguru at stderr (and ``settings.log_file`` if set).

    Call once at process startup, before the client is opened.  HTTP request
    logs are only let through at DEBUG.
    """
    level = settings.log_level.upper()

    logger.remove()
    logger.add(sys.stderr, level=level, format=format_record)
    if settings.log_file:
        logger.add(
            settings.log_file,
            level="DEBUG",
            format=DETAIL_FORMAT,
            rotation=settings.log_rotation,
            retention=settings.log_retention,
            encoding="utf-8",
        )

    bridge = _BridgeHandler()
    http_level = logging.DEBUG if level == "DEBUG" else logging.WARNING
    for name in BRIDGED_LOGGERS:
        stdlib = logging.getLogger(name)
        stdlib.handlers = [bridge]
        stdlib.propagate = False
        stdlib.setLevel(http_level)

    logger.debug("Logging to stderr at {}{}", level, f" and {settings.log_file}" if settings.log_file else "")
