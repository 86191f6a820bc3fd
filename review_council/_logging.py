# Copyright (c) 2025. Review Council AI Analysis Engine.

"""Logging setup for the review engine.

Every module logs to the ``review_council`` logger. Lines that belong to an
analysis level start with ``[Level N]``; process lifecycle lines carry their
pid, byte counts and exit code through ``extra=`` so JSON output can be
filtered on them.
"""

import json
import logging
import re
import sys
from datetime import datetime
from enum import Enum
from typing import Any, TextIO

LOGGER_NAME = "review_council"

# Attributes present on every LogRecord; anything else arrived through ``extra=``.
_STANDARD_ATTRIBUTES = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"message", "asctime", "taskName"}

_LEVEL_TAG = re.compile(r"^\[Level (\w+)\]")
_COMPONENT_TAG = re.compile(r"^(\[[^\]]+\])(.*)$", re.DOTALL)


class LogLevel(str, Enum):
    """Log levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


def level_prefix(level: str | int | None) -> str:
    """Prefix used on every log line that belongs to an analysis level."""
    return f"[Level {level if level is not None else 'unknown'}]"


def record_context(record: logging.LogRecord) -> dict[str, Any]:
    """The ``extra=`` values attached to a record, made JSON-safe."""
    context = {}
    for key, value in vars(record).items():
        if key in _STANDARD_ATTRIBUTES:
            continue
        try:
            json.dumps(value)
        except (TypeError, ValueError):
            value = repr(value)
        context[key] = value
    return context


class StructuredFormatter(logging.Formatter):
    """One JSON object per line.

    ``extra=`` values go under ``context``. The analysis level, taken from
    ``extra={"level": ...}`` or from the ``[Level N]`` tag of the message, is
    reported as ``analysis_level``.
    """

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        context = record_context(record)

        entry = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "message": message,
        }

        analysis_level = context.pop("level", None)
        if analysis_level is None:
            tagged = _LEVEL_TAG.match(message)
            analysis_level = tagged.group(1) if tagged else None
        if analysis_level is not None:
            entry["analysis_level"] = str(analysis_level)

        if context:
            entry["context"] = context
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


class ColoredFormatter(logging.Formatter):
    """Terminal output: colored severity, dimmed ``[Level N]``/``[AgentBridge]`` tag."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    DIM = "\033[2m"
    RESET = "\033[0m"

    def __init__(self, include_time: bool = True, use_color: bool = True) -> None:
        super().__init__()
        self.include_time = include_time
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        severity = f"{record.levelname:8}"
        message = record.getMessage()

        if self.use_color:
            severity = f"{self.COLORS.get(record.levelname, '')}{severity}{self.RESET}"
            tagged = _COMPONENT_TAG.match(message)
            if tagged:
                message = f"{self.DIM}{tagged.group(1)}{self.RESET}{tagged.group(2)}"

        line = f"{severity} {message}"
        if self.include_time:
            line = f"[{datetime.fromtimestamp(record.created):%H:%M:%S}] {line}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(
    level: LogLevel | str = "INFO",
    json_output: bool = False,
    stream: TextIO | None = None,
    include_time: bool = True,
    use_color: bool | None = None,
) -> logging.Logger:
    """Configure the package logger.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR).
        json_output: Emit one JSON object per line instead of colored text.
        stream: Output stream (default: stderr).
        include_time: Prefix colored lines with the time of day.
        use_color: Force colors on or off. None colors only terminals.

    Returns:
        The configured ``review_council`` logger.
    """
    level_name = level.value if isinstance(level, LogLevel) else level.upper()
    stream = stream or sys.stderr

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, level_name))
    logger.handlers.clear()

    handler = logging.StreamHandler(stream)
    if json_output:
        handler.setFormatter(StructuredFormatter())
    else:
        if use_color is None:
            use_color = hasattr(stream, "isatty") and stream.isatty()
        handler.setFormatter(ColoredFormatter(include_time=include_time, use_color=use_color))

    logger.addHandler(handler)
    return logger
