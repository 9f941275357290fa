"""
Structured Logging
==================

Every module logs through ``get_logger(__name__)`` with a dotted event name
as the message and details in ``extra=``::

    logger.warning("parser.anomaly", extra={"offset": 12, "detail": "..."})

Two renderings are available: one JSON object per record for production and
log files, and a single coloured line per record for terminals. Both attach
the ids of whatever the current task is working on (request, session, turn)
from context variables, so a turn's records can be pulled out of a shared log.
"""

import json
import logging
import sys
import time
from contextvars import ContextVar
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union
from uuid import UUID


# Order here is the order ids appear in rendered records
_CONTEXT: Dict[str, ContextVar] = {
    name: ContextVar(name, default=None)
    for name in ("request_id", "correlation_id", "session_id", "turn_id")
}

# Attributes every LogRecord carries; anything else came from extra=
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}

_SHORT_ID = 8


def current_context() -> Dict[str, str]:
    """Ids bound in the running context, unset ones omitted."""
    values = {name: var.get() for name, var in _CONTEXT.items()}
    return {name: value for name, value in values.items() if value}


def extra_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        key: value for key, value in record.__dict__.items()
        if key not in _RECORD_ATTRS and not key.startswith('_')
    }


def to_loggable(value: Any) -> Any:
    """Reduce a value to something json.dumps accepts."""
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, str):
        return value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (UUID, Path)):
        return str(value)
    if isinstance(value, dict):
        return {str(k): to_loggable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_loggable(v) for v in value]
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return to_loggable(to_dict())
    return str(value)


class StructuredLogFormatter(logging.Formatter):
    """
    One JSON object per record::

        {"timestamp": "2026-01-05T10:30:45.123Z", "level": "INFO",
         "logger": "stageflow.agent.orchestrator",
         "message": "orchestrator.turn.started",
         "location": {"file": ..., "line": ..., "function": ...},
         "session_id": "...", "turn_id": "...",
         "extra": {...}, "exception": {...}}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": self.format_timestamp(record.created),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": {"file": record.filename, "line": record.lineno, "function": record.funcName},
        }
        entry.update(current_context())

        extra = extra_fields(record)
        if extra:
            entry["extra"] = to_loggable(extra)

        if record.exc_info:
            exc_type, exc, _ = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__ if exc_type else None,
                "message": str(exc) if exc else None,
                "stacktrace": self.formatException(record.exc_info),
            }
        if record.stack_info:
            entry["stack_trace"] = record.stack_info

        return json.dumps(entry, default=str)

    @staticmethod
    def format_timestamp(created: float) -> str:
        stamp = datetime.fromtimestamp(created, tz=timezone.utc).isoformat(timespec="milliseconds")
        return stamp.replace("+00:00", "Z")


class DevelopmentFormatter(logging.Formatter):
    """
    One line per record for terminals::

        10:30:45.123 | INFO     | stageflow.agent.orchestrator:42 | orchestrator.turn.started [session_id=3f2a9c1e, stage=design]

    Context ids are cut to their first eight characters.
    """

    LEVEL_COLORS = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[35m',
    }
    RESET = '\033[0m'

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors and sys.stderr.isatty()

    def format(self, record: logging.LogRecord) -> str:
        clock = datetime.fromtimestamp(record.created).strftime('%H:%M:%S.%f')[:-3]
        level = record.levelname.ljust(8)
        if self.use_colors and record.levelname in self.LEVEL_COLORS:
            level = f"{self.LEVEL_COLORS[record.levelname]}{level}{self.RESET}"

        pairs = [f"{name}={value[:_SHORT_ID]}" for name, value in current_context().items()]
        pairs.extend(f"{key}={value}" for key, value in extra_fields(record).items())
        suffix = f" [{', '.join(pairs)}]" if pairs else ""

        line = f"{clock} | {level} | {record.name}:{record.lineno} | {record.getMessage()}{suffix}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class PerformanceLogger:
    """
    Time a block and log how long it took.

    Logs at DEBUG normally, WARNING past ``slow_ms`` and ERROR (then
    re-raises) when the block fails. Records go to ``performance.<operation>``.

    Usage:
        with PerformanceLogger("model_stream_open", {"stage": "coding"}):
            chunk = await stream.__anext__()
    """

    def __init__(self, operation: str, context: Optional[Dict[str, Any]] = None,
                 slow_ms: float = 1000.0):
        self.operation = operation
        self.context = context or {}
        self.slow_ms = slow_ms
        self.logger = logging.getLogger(f"performance.{operation}")
        self._started = 0.0

    def __enter__(self) -> 'PerformanceLogger':
        self._started = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        elapsed_ms = (time.time() - self._started) * 1000
        extra = {"operation": self.operation, "duration_ms": round(elapsed_ms, 2), **self.context}

        if exc_type is not None:
            extra["error"] = str(exc_val)
            self.logger.error(f"{self.operation} failed after {elapsed_ms:.2f}ms", extra=extra)
        elif elapsed_ms > self.slow_ms:
            self.logger.warning(f"{self.operation} took {elapsed_ms:.2f}ms", extra=extra)
        else:
            self.logger.debug(f"{self.operation} completed in {elapsed_ms:.2f}ms", extra=extra)
        return False


def setup_structured_logging(
    level: str = "INFO",
    format_type: str = "json",
    log_file: Optional[Union[str, Path]] = None
) -> logging.Logger:
    """
    Configure the root logger.

    Args:
        level: Level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format_type: "json" or "dev"
        log_file: Also write JSON records to this file

    Returns:
        The root logger
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper()))
    root.handlers.clear()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(StructuredLogFormatter() if format_type == "json" else DevelopmentFormatter())
    root.addHandler(console)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path)
        file_handler.setFormatter(StructuredLogFormatter())
        root.addHandler(file_handler)

    return root


# =============================================================================
# Context ids
# =============================================================================

def set_request_id(request_id: Optional[str]) -> None:
    _CONTEXT["request_id"].set(request_id)


def set_correlation_id(correlation_id: Optional[str]) -> None:
    _CONTEXT["correlation_id"].set(correlation_id)


def set_session_id(session_id: Optional[str]) -> None:
    _CONTEXT["session_id"].set(session_id)


def set_turn_id(turn_id: Optional[str]) -> None:
    _CONTEXT["turn_id"].set(turn_id)


def get_request_id() -> Optional[str]:
    return _CONTEXT["request_id"].get()


def get_correlation_id() -> Optional[str]:
    return _CONTEXT["correlation_id"].get()


def get_session_id() -> Optional[str]:
    return _CONTEXT["session_id"].get()


def get_turn_id() -> Optional[str]:
    return _CONTEXT["turn_id"].get()


def clear_context() -> None:
    """Unset every context id."""
    for var in _CONTEXT.values():
        var.set(None)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
