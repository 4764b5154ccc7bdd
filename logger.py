"""Logging for the bot router: one named logger, a rotating file, optional colour."""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler

import colorlog

LOGGER_NAME = "bot_router"
DEFAULT_LOG_PATH = "/var/log/bot-router/bot-router.log"

LOG_MAX_BYTES = 1_048_576
LOG_BACKUPS = 3

_PLAIN_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"
_COLOR_FORMAT = "%(log_color)s%(asctime)s %(levelname)-8s%(reset)s %(name)s - %(message)s"
_LEVEL_COLORS = {
    "DEBUG": "cyan",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "red,bg_white",
}


def _color_enabled() -> bool:
    return os.getenv("LOG_COLOR", "true").strip().lower() in ("true", "1", "yes", "on")


def build_formatter(color: bool | None = None) -> logging.Formatter:
    """Colour formatter when LOG_COLOR is on (default), plain otherwise."""
    if color is None:
        color = _color_enabled()
    if not color:
        return logging.Formatter(_PLAIN_FORMAT)
    return colorlog.ColoredFormatter(_COLOR_FORMAT, reset=True, log_colors=_LEVEL_COLORS)


def open_log_handler(log_path: str) -> tuple[logging.Handler, OSError | None]:
    """Rotating file handler, or a stderr handler plus the error when the file cannot be opened."""
    directory = os.path.dirname(log_path)
    try:
        if directory:
            os.makedirs(directory, exist_ok=True)
        handler = RotatingFileHandler(
            log_path,
            maxBytes=LOG_MAX_BYTES,
            backupCount=LOG_BACKUPS,
            encoding="utf-8",
        )
    except OSError as e:
        return logging.StreamHandler(), e
    return handler, None


def setup_logging(log_path: str | None = None, level_name: str | None = None) -> logging.Logger:
    """
    Configure the `bot_router` logger.

    Level comes from `level_name`, else LOG_LEVEL, else INFO. DISABLE turns
    this logger off without touching anyone else's. Safe to call again:
    previous handlers are closed first.
    """
    level_name = (level_name or os.getenv("LOG_LEVEL", "INFO")).upper().strip()
    logger = logging.getLogger(LOGGER_NAME)

    for old in list(logger.handlers):
        logger.removeHandler(old)
        old.close()
    logger.propagate = False

    if level_name == "DISABLE":
        logger.disabled = True
        logger.addHandler(logging.NullHandler())
        return logger

    logger.disabled = False
    level = logging.getLevelName(level_name)
    logger.setLevel(level if isinstance(level, int) else logging.INFO)

    path = log_path or DEFAULT_LOG_PATH
    handler, err = open_log_handler(path)
    handler.setFormatter(build_formatter())
    logger.addHandler(handler)
    if err is not None:
        logger.warning("Cannot write log file %r (%s); logging to stderr instead.", path, err)
    return logger


def mask_secret(s: str, keep_start: int = 6, keep_end: int = 4) -> str:
    """Mask a secret, keeping only a few leading and trailing characters."""
    s = (s or "").strip()
    if not s:
        return ""
    if len(s) <= keep_start + keep_end:
        return "*" * len(s)
    return f"{s[:keep_start]}...{s[-keep_end:]}"
