# -*- coding: utf-8 -*-
"""Logging handlers for the vibejournal entrypoint.

Library modules only create loggers via ``logging.getLogger(__name__)``;
handlers are attached here, and only by the CLI.
"""
from __future__ import annotations

from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Union
import logging
import sys

OPS_LOG_NAME = "vibejournal-ops.log"
OPS_LOG_MAX_BYTES = 1_000_000
OPS_LOG_BACKUPS = 3


def enable_debug_mode() -> None:
    """Send DEBUG output from vibejournal, httpx and aiosqlite to stderr."""
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    if not any(isinstance(h, logging.StreamHandler) and getattr(h, "stream", None) is sys.stderr
               for h in root_logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        ))
        root_logger.addHandler(handler)

    for name in ("vibejournal", "httpx", "aiosqlite"):
        logging.getLogger(name).setLevel(logging.DEBUG)


def configure_ops_log(directory: Union[str, Path]) -> RotatingFileHandler:
    """Attach a rotating INFO log at ``{directory}/vibejournal-ops.log``.

    Returns the handler so callers can remove it.
    """
    log_path = Path(directory) / OPS_LOG_NAME
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        str(log_path),
        maxBytes=OPS_LOG_MAX_BYTES,
        backupCount=OPS_LOG_BACKUPS,
        encoding="utf-8",
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))

    journal_logger = logging.getLogger("vibejournal")
    journal_logger.addHandler(handler)
    if journal_logger.level == logging.NOTSET or journal_logger.level > logging.INFO:
        journal_logger.setLevel(logging.INFO)

    return handler
