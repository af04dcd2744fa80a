"""Structured logging configuration for Nebulus Sentinel.

Every record carries the correlation ID of the monitoring cycle that emitted
it. Records from pane loggers also carry ``session`` and ``pane``, so one
agent's history can be pulled out of a JSON log with a single filter.
"""

import json
import logging
import os
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Correlation ID groups every log line emitted during one monitoring cycle
correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Attributes every LogRecord has; anything else was passed via ``extra``
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"message", "asctime", "taskName"}


def get_correlation_id() -> str:
    """Get current correlation ID or generate a new one."""
    cid = correlation_id.get()
    if cid is None:
        cid = new_cycle_id()
    return cid


def set_correlation_id(cid: Optional[str]) -> None:
    correlation_id.set(cid)


def new_cycle_id() -> str:
    """Start a fresh correlation ID for a monitoring cycle and return it."""
    cid = uuid.uuid4().hex[:8]
    correlation_id.set(cid)
    return cid


def _extras(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RECORD_ATTRS and not key.startswith("_")
    }


class JSONFormatter(logging.Formatter):
    """One JSON object per record, for log shippers and ``LOG_FILE``."""

    def __init__(self, include_extras: bool = True):
        super().__init__()
        self.include_extras = include_extras

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": get_correlation_id(),
        }

        if record.levelno >= logging.ERROR:
            entry["location"] = {
                "file": record.filename,
                "line": record.lineno,
                "function": record.funcName,
            }

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        if self.include_extras:
            for key, value in _extras(record).items():
                try:
                    json.dumps(value)
                except (TypeError, ValueError):
                    value = str(value)
                entry[key] = value

        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Coloured one-line records for an operator's terminal."""

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        # [HH:MM:SS] L [cid] logger <session:pane>: message
        color = self.LEVEL_COLORS.get(record.levelno, "")
        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        pane = getattr(record, "pane", None)
        where = f" <{getattr(record, 'session', '')}:{pane}>" if pane else ""

        line = (
            f"{color}[{stamp}] {record.levelname[0]}{self.RESET} "
            f"[{get_correlation_id()}] {record.name}{where}: {record.getMessage()}"
        )
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[str] = None,
) -> None:
    """Configure logging for the sentinel.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        json_output: Use JSON format on stderr.
        log_file: Optional file path; the file always gets JSON.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    # stderr keeps stdout clean for the JSON alert envelope
    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(JSONFormatter() if json_output else ConsoleFormatter())
    root.addHandler(console)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(JSONFormatter())
        root.addHandler(file_handler)


class _PaneFilter(logging.Filter):
    """Stamps session and pane onto every record of a pane logger."""

    def __init__(self, session: str, pane: str):
        super().__init__()
        self.session = session
        self.pane = pane

    def filter(self, record: logging.LogRecord) -> bool:
        record.session = self.session
        record.pane = self.pane
        return True


def pane_logger(session: str, pane: str) -> logging.Logger:
    """Logger whose records carry ``session`` and ``pane``.

    Args:
        session: tmux session name.
        pane: Pane key or pane ID.
    """
    logger = logging.getLogger(f"nebulus_sentinel.pane.{session}.{pane}")
    if not any(isinstance(f, _PaneFilter) for f in logger.filters):
        logger.addFilter(_PaneFilter(session, pane))
    return logger


# Auto-configure from environment on import
configure_logging(
    level=os.environ.get("LOG_LEVEL", "INFO"),
    json_output=os.environ.get("LOG_FORMAT", "").lower() == "json",
    log_file=os.environ.get("LOG_FILE"),
)
