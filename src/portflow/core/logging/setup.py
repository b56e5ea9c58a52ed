from __future__ import annotations

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .json_formatter import JSONFormatter

ROOT_LOGGER = "portflow"
_MARKER = "_portflow_handler"


def _level(raw: str) -> int:
    level = logging.getLevelName(raw.strip().upper())
    return level if isinstance(level, int) else logging.INFO


def _flag(name: str) -> bool:
    return os.getenv(name, "off").strip().casefold() == "on"


def _log_path() -> Path:
    base = os.getenv("PORTFLOW_LOG_DIR")
    directory = Path(base).expanduser() if base else Path.home() / ".portflow" / "logs"
    directory.mkdir(parents=True, exist_ok=True)
    return directory / "portflow.log"


def _owned(logger: logging.Logger) -> list[logging.Handler]:
    return [handler for handler in logger.handlers if getattr(handler, _MARKER, False)]


def _attach(logger: logging.Logger, handler: logging.Handler) -> None:
    handler.setFormatter(JSONFormatter())
    setattr(handler, _MARKER, True)
    logger.addHandler(handler)


def configure_logging() -> logging.Logger:
    """Send the ``portflow`` logger tree to stdout as JSON lines, and to a rotating file when enabled.

    Safe to call repeatedly: handlers installed by an earlier call are reused.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(_level(os.getenv("PORTFLOW_LOG_LEVEL", "INFO")))
    logger.propagate = False

    owned = _owned(logger)
    if not any(not isinstance(handler, RotatingFileHandler) for handler in owned):
        _attach(logger, logging.StreamHandler(stream=sys.stdout))

    if _flag("PORTFLOW_LOG_TO_FILE"):
        path = _log_path()
        if not any(isinstance(handler, RotatingFileHandler) and Path(handler.baseFilename) == path for handler in owned):
            _attach(
                logger,
                RotatingFileHandler(
                    filename=path,
                    maxBytes=int(os.getenv("PORTFLOW_LOG_MAX_BYTES", "5000000")),
                    backupCount=int(os.getenv("PORTFLOW_LOG_BACKUP_COUNT", "5")),
                    encoding="utf-8",
                ),
            )

    return logger
