from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
import os


PACKAGE_LOGGER = "pipetrain"
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"

_configured = False


def _ensure_base_logger() -> None:
    global _configured
    if _configured:
        return
    level = os.getenv("PIPETRAIN_LOG_LEVEL", "INFO").upper()
    # Diagnostics stay on stderr; stdout belongs to the last stage's data stream
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format=LOG_FORMAT,
    )
    _configured = True


def attach_log_file(log_file: Path) -> RotatingFileHandler:
    """Copy every ``pipetrain.*`` record into ``log_file`` as well.

    The handler sits on the package logger, so module loggers (cli, spawn,
    fds, per-pipeline) all reach it. One handler per distinct path.
    """
    _ensure_base_logger()
    target = Path(log_file).resolve()
    package = logging.getLogger(PACKAGE_LOGGER)
    for h in package.handlers:
        if isinstance(h, RotatingFileHandler) and Path(h.baseFilename) == target:
            return h
    target.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(target, maxBytes=1_000_000, backupCount=3)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    package.addHandler(handler)
    return handler


def get_logger(name: str, log_file: Path | None = None, min_level: int | None = None) -> logging.Logger:
    """Logger under the package namespace.

    ``min_level`` pins the logger so records at that level survive a stricter
    ``PIPETRAIN_LOG_LEVEL``.
    """
    _ensure_base_logger()
    logger = logging.getLogger(name)
    if min_level is not None and (logger.level == logging.NOTSET or logger.level > min_level):
        logger.setLevel(min_level)
    if log_file:
        attach_log_file(log_file)
    return logger
