"""
Structured Logging for Kanuka

Log output never goes to stdout, which belongs to command results:

- console: one readable line per event on stderr (default)
- json / pretty: one JSON object per event, for CI log collectors
- KANUKA_LOG_FILE: an extra JSON-lines copy on disk

Every event carries the current LogContext (operation, project, actor and
target UUIDs), set with the log_context() context manager.
"""

import json
import logging
import os
import sys
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union

LOGGER_NAME = "kanuka"

LOG_LEVEL_ENV = "KANUKA_LOG_LEVEL"
LOG_FORMAT_ENV = "KANUKA_LOG_FORMAT"
LOG_FILE_ENV = "KANUKA_LOG_FILE"

DEFAULT_LEVEL = "WARNING"


class LogFormat(Enum):
    """How log events are rendered on stderr."""
    CONSOLE = "console"
    JSON = "json"
    PRETTY_JSON = "pretty"


class LogLevel(Enum):
    """Log levels accepted by configure_logging."""
    DEBUG = logging.DEBUG
    INFO = logging.INFO
    WARNING = logging.WARNING
    ERROR = logging.ERROR
    CRITICAL = logging.CRITICAL


@dataclass
class LogContext:
    """Who and what a log event is about"""
    operation: Optional[str] = None
    project_uuid: Optional[str] = None
    actor_uuid: Optional[str] = None
    target_uuid: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    _FIELDS = ("operation", "project_uuid", "actor_uuid", "target_uuid")

    def to_dict(self) -> Dict[str, Any]:
        data = {name: getattr(self, name) for name in self._FIELDS if getattr(self, name)}
        data.update(self.extra)
        return data

    def merge(self, other: "LogContext") -> "LogContext":
        """Overlay other's set fields on this context."""
        updates = {name: getattr(other, name) for name in self._FIELDS if getattr(other, name)}
        return replace(self, extra={**self.extra, **other.extra}, **updates)


_local = threading.local()


def get_current_log_context() -> LogContext:
    return getattr(_local, "context", None) or LogContext()


def set_current_log_context(context: LogContext) -> None:
    _local.context = context


@contextmanager
def log_context(**kwargs):
    """
    Add fields to the logging context for the duration of a block.

    Usage:
        with log_context(operation="register", target_uuid=uuid):
            logger.info("Sealing project key")
    """
    previous = get_current_log_context()
    current = previous.merge(LogContext(**kwargs))
    set_current_log_context(current)
    try:
        yield current
    finally:
        set_current_log_context(previous)


def _parse_level(level: Union[str, LogLevel]) -> LogLevel:
    if isinstance(level, LogLevel):
        return level
    return LogLevel[level.strip().upper()]


def _parse_format(fmt: Union[str, LogFormat]) -> LogFormat:
    if isinstance(fmt, LogFormat):
        return fmt
    return LogFormat(fmt.strip().lower())


class StructuredFormatter(logging.Formatter):
    """Render a record as a JSON object, with context and extra fields."""

    def __init__(self, pretty: bool = False):
        super().__init__()
        self.indent = 2 if pretty else None
        self.separators = None if pretty else (",", ":")

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        entry = {
            "timestamp": created.isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = get_current_log_context().to_dict()
        if context:
            entry["context"] = context
        entry.update(getattr(record, "extra_fields", {}))
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, indent=self.indent, separators=self.separators, default=str)


class ConsoleFormatter(logging.Formatter):
    """
    Render a record as a single readable line.

    Colors are used only when stderr is a terminal.
    """

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors and sys.stderr.isatty()

    def _level(self, record: logging.LogRecord) -> str:
        label = f"{record.levelname:8}"
        color = self.LEVEL_COLORS.get(record.levelno)
        if self.use_colors and color:
            return f"{color}{label}{self.RESET}"
        return label

    def format(self, record: logging.LogRecord) -> str:
        clock = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        line = f"{clock} {self._level(record)} {record.getMessage()}"

        context = get_current_log_context()
        tags = []
        if context.operation:
            tags.append(f"op={context.operation}")
        if context.target_uuid:
            tags.append(f"target={context.target_uuid[:8]}")
        if tags:
            line += f" [{', '.join(tags)}]"

        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class KanukaLogger:
    """
    Thin wrapper over a stdlib logger.

    Keyword arguments to the logging methods are attached to the record and
    appear as top-level fields in JSON output. Until configure() is called,
    the first event configures the logger from KANUKA_LOG_* variables.
    """

    def __init__(self, name: str = LOGGER_NAME):
        self._logger = logging.getLogger(name)
        self._configured = False

    def configure(
        self,
        level: Union[str, LogLevel] = DEFAULT_LEVEL,
        format: Union[str, LogFormat] = LogFormat.CONSOLE,
        log_file: Optional[Path] = None,
        propagate: bool = False,
    ) -> None:
        """
        Replace the logger's handlers.

        Raises:
            KeyError: Unknown level name
            ValueError: Unknown format name
        """
        log_level = _parse_level(level)
        log_format = _parse_format(format)

        if log_format == LogFormat.CONSOLE:
            formatter = ConsoleFormatter()
        else:
            formatter = StructuredFormatter(pretty=log_format == LogFormat.PRETTY_JSON)

        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(formatter)
        handlers = [stderr_handler]

        if log_file:
            file_handler = logging.FileHandler(log_file)
            file_handler.setFormatter(StructuredFormatter())
            handlers.append(file_handler)

        self._logger.handlers.clear()
        for handler in handlers:
            self._logger.addHandler(handler)
        self._logger.setLevel(log_level.value)
        self._logger.propagate = propagate
        self._configured = True

    def _configure_from_env(self) -> None:
        log_file = os.environ.get(LOG_FILE_ENV)
        self.configure(
            level=os.environ.get(LOG_LEVEL_ENV, DEFAULT_LEVEL),
            format=os.environ.get(LOG_FORMAT_ENV, LogFormat.CONSOLE.value),
            log_file=Path(log_file) if log_file else None,
        )

    def _log(self, level: int, msg: str, *args, exc_info: bool = False, **fields) -> None:
        if not self._configured:
            self._configure_from_env()
        extra = {"extra_fields": fields} if fields else None
        self._logger.log(level, msg, *args, exc_info=exc_info, extra=extra)

    def debug(self, msg: str, *args, **fields) -> None:
        self._log(logging.DEBUG, msg, *args, **fields)

    def info(self, msg: str, *args, **fields) -> None:
        self._log(logging.INFO, msg, *args, **fields)

    def warning(self, msg: str, *args, **fields) -> None:
        self._log(logging.WARNING, msg, *args, **fields)

    def error(self, msg: str, *args, exc_info: bool = False, **fields) -> None:
        self._log(logging.ERROR, msg, *args, exc_info=exc_info, **fields)

    def exception(self, msg: str, *args, **fields) -> None:
        self._log(logging.ERROR, msg, *args, exc_info=True, **fields)

    @contextmanager
    def timed(self, step: str, level: int = logging.DEBUG):
        """
        Log the start and end of a step, with its duration in milliseconds.

        Usage:
            with logger.timed("seal_envelope"):
                ciphertext = seal(key, public_key)
        """
        self._log(level, f"Starting: {step}")
        started = time.perf_counter()
        try:
            yield
        finally:
            elapsed_ms = (time.perf_counter() - started) * 1000
            self._log(level, f"Completed: {step}", duration_ms=round(elapsed_ms, 2))


_logger: Optional[KanukaLogger] = None


def get_logger(name: str = LOGGER_NAME) -> KanukaLogger:
    """Return the process-wide Kanuka logger."""
    global _logger
    if _logger is None:
        _logger = KanukaLogger(name)
    return _logger


def configure_logging(
    level: Union[str, LogLevel] = DEFAULT_LEVEL,
    format: Union[str, LogFormat] = LogFormat.CONSOLE,
    log_file: Optional[Path] = None,
) -> KanukaLogger:
    """
    Configure the process-wide Kanuka logger.

    Example:
        configure_logging(level=LogLevel.DEBUG, format=LogFormat.JSON)
    """
    logger = get_logger()
    logger.configure(level=level, format=format, log_file=log_file)
    return logger


__all__ = [
    "LogFormat",
    "LogLevel",
    "LogContext",
    "KanukaLogger",
    "StructuredFormatter",
    "ConsoleFormatter",
    "get_logger",
    "configure_logging",
    "log_context",
    "get_current_log_context",
    "set_current_log_context",
]
