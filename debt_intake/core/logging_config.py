"""
Application-wide logging configuration helpers.

All modules log through ``logging.getLogger(__name__)``; this module wires
those loggers to stdout and, for long-running console imports, optionally
to a rotating log file.
"""
from __future__ import annotations

import logging
from logging.config import dictConfig
from typing import Any, Dict, Optional


_is_configured = False

# Libraries that are chatty at INFO.
_QUIET_LOGGERS = ("sqlalchemy.engine", "botocore", "boto3", "s3transfer", "urllib3", "multipart")


def _handlers(log_level: str, log_file: Optional[str], max_mb: int) -> Dict[str, Dict[str, Any]]:
    handlers: Dict[str, Dict[str, Any]] = {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "standard",
            "level": log_level,
        }
    }
    if log_file:
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "formatter": "standard",
            "level": log_level,
            "filename": log_file,
            "maxBytes": max_mb * 1024 * 1024,
            "backupCount": 5,
            "encoding": "utf-8",
        }
    return handlers


def configure_logging(level: Optional[str] = None, log_file: Optional[str] = None, max_mb: int = 20) -> None:
    """
    Configure root and package loggers if they have not been configured yet.

    Args:
        level: Optional log level override (e.g., "DEBUG", "INFO").
        log_file: Optional path of a rotating log file written next to stdout.
        max_mb: Size at which the log file is rotated.
    """
    global _is_configured

    if _is_configured:
        return

    log_level = (level or "INFO").upper()
    handlers = _handlers(log_level, log_file, max_mb)

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "standard": {
                    "format": "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
                    "datefmt": "%Y-%m-%d %H:%M:%S",
                }
            },
            "handlers": handlers,
            "root": {
                "handlers": list(handlers),
                "level": log_level,
            },
            "loggers": {name: {"level": "WARNING"} for name in _QUIET_LOGGERS},
        }
    )

    logging.getLogger("debt_intake").setLevel(log_level)

    _is_configured = True
