"""Logger factory shared by every buildgraph component.

The root configuration is applied once; ``BUILDGRAPH_LOG_LEVEL`` picks the
level unless the CLI overrides it with ``configure``.
"""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path


LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"

_configured = False


def _level_from_env() -> int:
    level = os.getenv("BUILDGRAPH_LOG_LEVEL", "INFO").upper()
    return getattr(logging, level, logging.INFO)


def configure(level: int | str | None = None) -> None:
    """(Re)apply the root configuration, e.g. after ``--verbose``."""
    global _configured
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    if level is None:
        level = _level_from_env()
    if not _configured:
        logging.basicConfig(level=level, format=LOG_FORMAT)
        _configured = True
    logging.getLogger("buildgraph").setLevel(level)


def get_logger(name: str, log_file: Path | None = None) -> logging.Logger:
    if not _configured:
        configure()
    logger = logging.getLogger(name)
    if log_file is not None:
        attach_file(logger, log_file)
    return logger


def attach_file(logger: logging.Logger, log_file: Path) -> None:
    """Mirror ``logger`` into a rotating file; a second call for the same file is a no-op."""
    # RotatingFileHandler keeps os.path.abspath of its filename.
    target = os.path.abspath(log_file)
    for h in logger.handlers:
        if isinstance(h, RotatingFileHandler) and h.baseFilename == target:
            return
    Path(log_file).parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(log_file, maxBytes=1_000_000, backupCount=3)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)


def task_logger(name_version: str, log_file: Path | None = None) -> logging.Logger:
    """Logger for a single task, optionally mirrored into its task data dir."""
    return get_logger(f"buildgraph.task.{name_version}", log_file=log_file)
