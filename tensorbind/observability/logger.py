# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
Structured Logging for tensorbind

Every module logs through the standard ``logging`` package under the
``tensorbind.*`` hierarchy. This module turns those records into
structured entries (text or JSON) and maps the coarse verbosity levels
onto logging levels.

Example:
    from tensorbind.observability import configure_logging, Verbosity

    configure_logging(verbosity=Verbosity.DEBUG, json_format=True)
"""

import json
import logging
import sys
from dataclasses import dataclass, asdict, field
from datetime import datetime
from enum import IntEnum
from typing import Optional, TextIO

ROOT_LOGGER = "tensorbind"

# Record attributes copied into LogEntry fields instead of ``extra``.
_ENTRY_FIELDS = ("kind", "handle", "call")

# Attributes every LogRecord carries; anything else came from ``extra=``.
_RESERVED = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {
    "message",
    "asctime",
}


class Verbosity(IntEnum):
    """
    Logging verbosity levels.

    Uses IntEnum for numeric comparison (e.g., if verbosity >= INFO).
    """

    SILENT = 0
    ERROR = 1
    WARNING = 2
    INFO = 3
    DEBUG = 4

    def to_logging_level(self) -> int:
        return {
            Verbosity.SILENT: logging.CRITICAL + 10,
            Verbosity.ERROR: logging.ERROR,
            Verbosity.WARNING: logging.WARNING,
            Verbosity.INFO: logging.INFO,
            Verbosity.DEBUG: logging.DEBUG,
        }[self]


@dataclass
class LogEntry:
    """
    Structured log entry.

    Attributes:
        level: Log level (ERROR, WARNING, INFO, DEBUG)
        message: Log message
        timestamp: ISO format timestamp
        component: Source component (guard, handles, native, session)
        kind: Optional handle kind involved
        handle: Optional native handle (hex)
        call: Optional native entry point name
        extra: Additional context fields
    """

    level: str
    message: str
    timestamp: str
    component: str = ROOT_LOGGER
    kind: Optional[str] = None
    handle: Optional[str] = None
    call: Optional[str] = None
    extra: dict = field(default_factory=dict)

    @classmethod
    def from_record(cls, record: logging.LogRecord) -> "LogEntry":
        component = record.name
        if component.startswith(ROOT_LOGGER + "."):
            component = component[len(ROOT_LOGGER) + 1 :]

        extra = {
            k: v
            for k, v in vars(record).items()
            if k not in _RESERVED and k not in _ENTRY_FIELDS
        }
        handle = getattr(record, "handle", None)
        if isinstance(handle, int):
            handle = hex(handle)

        return cls(
            level=record.levelname,
            message=record.getMessage(),
            timestamp=datetime.fromtimestamp(record.created).isoformat(),
            component=component,
            kind=getattr(record, "kind", None),
            handle=handle,
            call=getattr(record, "call", None),
            extra=extra,
        )

    def to_json(self) -> str:
        """Convert to JSON string."""
        data = {k: v for k, v in asdict(self).items() if v is not None}
        if not data.get("extra"):
            data.pop("extra", None)
        return json.dumps(data, default=str)

    def to_text(self) -> str:
        """Convert to human-readable text format."""
        parts = [
            f"[{self.level}]",
            f"[{self.component}]",
            self.message,
        ]
        if self.kind is not None:
            parts.append(f"kind={self.kind}")
        if self.handle is not None:
            parts.append(f"handle={self.handle}")
        if self.call is not None:
            parts.append(f"call={self.call}")
        return " ".join(parts)


class StructuredFormatter(logging.Formatter):
    """Formats records as LogEntry text or JSON lines."""

    def __init__(self, json_format: bool = False):
        super().__init__()
        self.json_format = json_format

    def format(self, record: logging.LogRecord) -> str:
        entry = LogEntry.from_record(record)
        line = entry.to_json() if self.json_format else entry.to_text()
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


_handler: Optional[logging.Handler] = None


def configure_logging(
    verbosity: Optional[int] = None,
    json_format: bool = False,
    stream: Optional[TextIO] = None,
) -> logging.Handler:
    """
    Attach a structured handler to the ``tensorbind`` logger.

    Calling again replaces the previously installed handler.

    Args:
        verbosity: Verbosity level (0-4 or Verbosity enum); unchanged if None
        json_format: Emit JSON lines instead of text
        stream: Output stream (defaults to stderr)

    Returns:
        The installed handler.
    """
    global _handler

    root = logging.getLogger(ROOT_LOGGER)
    if _handler is not None:
        root.removeHandler(_handler)

    _handler = logging.StreamHandler(stream or sys.stderr)
    _handler.setFormatter(StructuredFormatter(json_format=json_format))
    root.addHandler(_handler)
    root.propagate = False

    if verbosity is not None:
        set_verbosity(verbosity)
    return _handler


def set_verbosity(level: int) -> None:
    """
    Set global verbosity level.

    Args:
        level: Verbosity level (0=SILENT, 1=ERROR, 2=WARNING, 3=INFO, 4=DEBUG)
    """
    verbosity = level if isinstance(level, Verbosity) else Verbosity(max(0, min(4, level)))
    logging.getLogger(ROOT_LOGGER).setLevel(verbosity.to_logging_level())


def get_verbosity() -> Verbosity:
    """Get current verbosity level."""
    level = logging.getLogger(ROOT_LOGGER).getEffectiveLevel()
    for verbosity in sorted(Verbosity, reverse=True):
        if level <= verbosity.to_logging_level():
            return verbosity
    return Verbosity.SILENT


def get_logger(component: str) -> logging.Logger:
    """Get the logger for a tensorbind component."""
    return logging.getLogger(f"{ROOT_LOGGER}.{component}")
