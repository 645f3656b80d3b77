"""Logging bootstrap for processes that embed the orchestration core.

Library modules only ever call ``logging.getLogger(__name__)``; the host
process calls :func:`configure_logging` once at startup.
"""

from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from phaseforge.config import settings


class ColorFormatter(logging.Formatter):
    """ANSI-colored log formatter for terminal output."""

    _COLORS = {
        logging.DEBUG:    "\033[36m",     # cyan
        logging.INFO:     "\033[32m",     # green
        logging.WARNING:  "\033[33m",     # yellow
        logging.ERROR:    "\033[31m",     # red
        logging.CRITICAL: "\033[1;31m",   # bold red
    }
    _RESET = "\033[0m"
    _DIM = "\033[2m"

    def format(self, record: logging.LogRecord) -> str:
        color = self._COLORS.get(record.levelno, "")
        ts = self.formatTime(record, "%H:%M:%S")
        name = record.name.split(".")[-1][:20]
        msg = record.getMessage()
        if record.exc_info:
            msg = f"{msg}\n{self.formatException(record.exc_info)}"
        return (
            f"{self._DIM}{ts}{self._RESET} "
            f"{color}{record.levelname:<8s}{self._RESET} "
            f"{self._DIM}[{name:>20s}]{self._RESET} "
            f"{color}{msg}{self._RESET}"
        )


class PlainFormatter(logging.Formatter):
    """Plain-text formatter for file logs (no ANSI codes)."""

    def format(self, record: logging.LogRecord) -> str:
        ts = self.formatTime(record, "%Y-%m-%d %H:%M:%S")
        name = record.name.split(".")[-1][:20]
        msg = record.getMessage()
        if record.exc_info:
            msg = f"{msg}\n{self.formatException(record.exc_info)}"
        return f"{ts} {record.levelname:<8s} [{name:>20s}] {msg}"


def configure_logging(level: str | None = None, log_file: str | None = None) -> None:
    """Install the colour stderr handler (and optional rotating file log).

    Safe to call more than once; ``force=True`` replaces earlier handlers.
    """
    log_level = getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(ColorFormatter())
    handlers: list[logging.Handler] = [handler]

    path = log_file if log_file is not None else settings.LOG_FILE
    if path:
        log_path = Path(path)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            str(log_path),
            maxBytes=10 * 1024 * 1024,  # 10 MB per file
            backupCount=3,
            encoding="utf-8",
        )
        file_handler.setFormatter(PlainFormatter())
        handlers.append(file_handler)

    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    # Per-request transport logs drown out the orchestration log
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
