"""castlink logging utilities."""
from __future__ import annotations
import logging
import logging.handlers
import sys
from pathlib import Path

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

RESET = "\033[0m"
_LEVEL_COLORS = {
    logging.DEBUG: "\033[35m",
    logging.INFO: "\033[36m",
    logging.WARNING: "\033[33m",
    logging.ERROR: "\033[31m",
    logging.CRITICAL: "\033[1m\033[31m",
}


class ColorFormatter(logging.Formatter):
    """Console formatter that tints the level name."""

    def format(self, record: logging.LogRecord) -> str:
        color = _LEVEL_COLORS.get(record.levelno)
        if color is None:
            return super().format(record)
        plain = record.levelname
        record.levelname = f"{color}{plain}{RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = plain


def setup_rotating_logger(name: str, log_dir: Path, level: int = logging.DEBUG) -> logging.Logger:
    """
    Log `name` and its children to log_dir/<name>.log (5MB x 5) and to stderr.
    The console never shows more than INFO; file output is never colored.
    """
    log_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(name)
    logger.setLevel(level)
    if logger.handlers:
        return logger

    fh = logging.handlers.RotatingFileHandler(
        log_dir / f"{name}.log", maxBytes=5 * 1024 * 1024, backupCount=5, encoding="utf-8"
    )
    fh.setLevel(level)
    fh.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(fh)

    ch = logging.StreamHandler()
    ch.setLevel(max(level, logging.INFO))
    ch.setFormatter(ColorFormatter(LOG_FORMAT) if sys.stderr.isatty() else logging.Formatter(LOG_FORMAT))
    logger.addHandler(ch)
    return logger
