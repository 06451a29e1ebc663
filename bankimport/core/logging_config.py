"""
Logging setup shared by the API and the console importer.

The API writes plain pipe-separated lines to stdout. The console importer
routes the same records through rich so warnings about individual rows line
up with its summary tables.
"""
from __future__ import annotations

import logging
from logging.config import dictConfig
from typing import Any, Dict, Optional

LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"

# Third-party loggers that drown out row-level warnings at INFO.
QUIET_LOGGERS = ("sqlalchemy.engine", "multipart", "uvicorn.access")

_configured_handler: Optional[str] = None


def _handler_config(log_level: str, use_rich: bool) -> Dict[str, Any]:
    if use_rich:
        return {
            "class": "rich.logging.RichHandler",
            "level": log_level,
            "show_path": False,
            "markup": False,
        }
    return {
        "class": "logging.StreamHandler",
        "stream": "ext://sys.stdout",
        "formatter": "pipe",
        "level": log_level,
    }


def configure_logging(level: Optional[str] = None, *, use_rich: bool = False) -> None:
    """
    Install the root handler once per process.

    Args:
        level: Log level name, defaults to INFO
        use_rich: Use rich's handler instead of plain stdout lines
    """
    global _configured_handler

    handler_kind = "rich" if use_rich else "plain"
    if _configured_handler == handler_kind:
        return

    log_level = (level or "INFO").upper()
    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"pipe": {"format": LOG_FORMAT, "datefmt": "%Y-%m-%d %H:%M:%S"}},
            "handlers": {"default": _handler_config(log_level, use_rich)},
            "root": {"handlers": ["default"], "level": log_level},
            "loggers": {name: {"level": "WARNING"} for name in QUIET_LOGGERS},
        }
    )
    logging.getLogger("bankimport").setLevel(log_level)
    _configured_handler = handler_kind
