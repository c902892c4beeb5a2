"""Logging configuration for the Lumiere relay."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from typing import Iterable, Optional, Tuple

import colorlog

LOGGER_NAME = "lumiere"
DEFAULT_LOG_PATH = "/var/log/lumiere/lumiere.log"

# Server loggers that share the relay's handler so one file holds everything.
SERVER_LOGGERS = ("uvicorn.error", "uvicorn.access")

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s - %(message)s"
LOG_COLORS = {
    "DEBUG": "cyan",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "red,bg_white",
}


def setup_logging(
    level_name: str = "INFO",
    log_path: Optional[str] = None,
    *,
    color: bool = True,
    attach: Iterable[str] = SERVER_LOGGERS,
) -> logging.Logger:
    """
    Configure the relay logger with rotation.

    Logs go to log_path (default /var/log/lumiere/lumiere.log), rotated at
    1 MB with 3 backups. If the file cannot be opened the relay logs to
    stderr instead of refusing to start.

    level_name=DISABLE turns logging off entirely.
    """
    logger = logging.getLogger(LOGGER_NAME)
    for old in logger.handlers:
        old.close()
    logger.handlers.clear()
    logger.propagate = False

    level_name = (level_name or "INFO").upper().strip()
    if level_name == "DISABLE":
        logging.disable(logging.CRITICAL)
        logger.addHandler(logging.NullHandler())
        return logger

    logging.disable(logging.NOTSET)
    level = getattr(logging, level_name, logging.INFO)
    logger.setLevel(level)

    log_path = log_path or DEFAULT_LOG_PATH
    handler, fallback_err = _open_handler(log_path)
    handler.setFormatter(_formatter(color and not isinstance(handler, RotatingFileHandler)))
    logger.addHandler(handler)

    for name in attach:
        server_logger = logging.getLogger(name)
        server_logger.handlers = [h for h in server_logger.handlers if not getattr(h, "_lumiere", False)]
        server_logger.addHandler(handler)

    if fallback_err is not None:
        logger.warning(
            "Failed to open log file %r (%s). Falling back to stderr logging.",
            log_path,
            fallback_err,
        )
    return logger


def _open_handler(log_path: str) -> Tuple[logging.Handler, Optional[OSError]]:
    try:
        handler: logging.Handler = RotatingFileHandler(
            log_path,
            maxBytes=1_048_576,  # 1 MB
            backupCount=3,
            encoding="utf-8",
        )
        err = None
    except OSError as e:
        handler, err = logging.StreamHandler(), e
    handler._lumiere = True  # type: ignore[attr-defined]
    return handler, err


def _formatter(color: bool) -> logging.Formatter:
    """Colored output for terminals; plain text for files."""
    if color:
        return colorlog.ColoredFormatter("%(log_color)s" + LOG_FORMAT, log_colors=LOG_COLORS, reset=True)
    return logging.Formatter(LOG_FORMAT)


def mask_secret(s: str, keep_start: int = 4, keep_end: int = 4) -> str:
    """Mask an API key for display ("gsk_...wxyz")."""
    s = (s or "").strip()
    if not s:
        return ""
    if len(s) <= keep_start + keep_end:
        return "*" * len(s)
    return f"{s[:keep_start]}...{s[-keep_end:]}"
