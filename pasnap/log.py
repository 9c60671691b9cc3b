# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Logging setup: structlog on top of the standard logging module.

Every record goes to the console (stderr) and, when it can be opened, to
the persistent log file, each line carrying an ISO timestamp and level.
"""

import logging
import sys
from pathlib import Path

import structlog

_HANDLER_MARK = "_pasnap_handler"


def _shared_processors() -> list:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=False),
    ]


def configure_logging(
    level: str = "INFO", log_file: Path | None = None, console: bool = True
) -> None:
    """
    Configure structlog and attach console and file handlers.

    Safe to call more than once; handlers from an earlier call are replaced.

    Args:
        level: Minimum level name (DEBUG, INFO, WARNING, ERROR)
        log_file: Persistent log file, appended to
        console: Also log to stderr
    """
    shared = _shared_processors()

    structlog.configure(
        processors=shared
        + [
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.dev.ConsoleRenderer(colors=False),
        foreign_pre_chain=shared,
    )

    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, _HANDLER_MARK, False):
            root.removeHandler(handler)
            handler.close()

    if console:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(formatter)
        setattr(stream_handler, _HANDLER_MARK, True)
        root.addHandler(stream_handler)

    file_error = None
    if log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
        except OSError as e:
            file_error = str(e)
        else:
            file_handler.setFormatter(formatter)
            setattr(file_handler, _HANDLER_MARK, True)
            root.addHandler(file_handler)

    root.setLevel(level.upper())

    if file_error is not None:
        structlog.get_logger().warning(
            "log_file_unavailable",
            log_file=str(log_file),
            error=file_error,
        )
