"""
Service logging.

Console lines look like ``[2024-06-15T09:00:00+00:00] INFO     [app.core.fhir.service] created Patient/p1 v1``.
Colour is only used when stdout is a terminal.  An optional plain-text file
handler mirrors everything for deployments without a log collector.
"""
import logging
import sys
from datetime import datetime, timezone
from typing import Optional

_RESET = "\033[0m"
_LEVEL_COLORS = {
    logging.DEBUG: "\033[36m",
    logging.INFO: "\033[32m",
    logging.WARNING: "\033[33m",
    logging.ERROR: "\033[31m",
    logging.CRITICAL: "\033[35m",
}

FILE_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# Per-request chatter from the ASGI server and HTTP client stays at WARNING
_NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore")


class StructuredFormatter(logging.Formatter):
    """UTC timestamp, padded level, logger name, message."""

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="seconds")
        line = f"[{stamp}] {record.levelname:8} [{record.name}] {record.getMessage()}"
        if record.exc_info:
            line += f"\n{self.formatException(record.exc_info)}"
        if self.use_color:
            line = f"{_LEVEL_COLORS.get(record.levelno, '')}{line}{_RESET}"
        return line


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """
    Configure the root logger once per process start.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL (unknown names fall back to INFO)
        log_file: Optional path; receives the same records without colour
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(StructuredFormatter(use_color=sys.stdout.isatty()))
    root.addHandler(console)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        root.addHandler(file_handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Module logger; call as ``get_logger(__name__)``."""
    return logging.getLogger(name)
