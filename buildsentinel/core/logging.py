"""Structured logging for the daemon: structlog rendered through stdlib logging."""

from __future__ import annotations

import logging
import logging.config
import os
import sys
from typing import Any

import structlog


def setup_logging(
    level: str | None = None,
    log_format: str | None = None,
    log_file: str | None = None,
) -> None:
    """Configure structlog and stdlib logging.

    Reads from environment variables when the matching argument is None:
        BUILDSENTINEL_LOG_LEVEL  - daemon log level (default: INFO)
        BUILDSENTINEL_LOG_FORMAT - console | json (default: console)
        BUILDSENTINEL_LOG_FILE   - write to this file instead of stderr

    The file handler reopens its file when it is moved away, so an external
    logrotate works on a long-running daemon.
    """
    log_level = (level or os.environ.get("BUILDSENTINEL_LOG_LEVEL", "INFO")).upper()
    log_format = (log_format or os.environ.get("BUILDSENTINEL_LOG_FORMAT", "console")).lower()
    log_file = log_file or os.environ.get("BUILDSENTINEL_LOG_FILE") or None

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]

    structlog.configure(
        processors=shared_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "structlog": {
                    "()": structlog.stdlib.ProcessorFormatter,
                    "foreign_pre_chain": shared_processors,
                    "processors": [
                        structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                        *_renderers(log_format, colors=log_file is None and sys.stderr.isatty()),
                    ],
                },
            },
            "handlers": {"default": _handler(log_file)},
            "root": {
                "handlers": ["default"],
                "level": log_level,
            },
            "loggers": {
                "buildsentinel": {"level": log_level},
                "httpx": {"level": "WARNING"},
                "httpcore": {"level": "WARNING"},
            },
        }
    )


def _renderers(log_format: str, colors: bool) -> list[structlog.types.Processor]:
    if log_format == "json":
        # one JSON object per line, tracebacks as structured frames
        return [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]
    return [structlog.dev.ConsoleRenderer(colors=colors)]


def _handler(log_file: str | None) -> dict[str, Any]:
    if log_file is None:
        return {
            "class": "logging.StreamHandler",
            "stream": "ext://sys.stderr",
            "formatter": "structlog",
        }
    return {
        "class": "logging.handlers.WatchedFileHandler",
        "filename": log_file,
        "encoding": "utf-8",
        "formatter": "structlog",
    }
