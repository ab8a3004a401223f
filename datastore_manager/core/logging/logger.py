"""
Structured logging for the datastore access layer.

Every record emitted inside a `LogContext` carries the operation being
performed (get / set / update / delete / list), the store and key it
touches, and a short correlation id shared by all retries of one call.

Pipeline
--------
    logger.info(...) -> QueueHandler (ContextFilter) -> bounded queue
        -> QueueListener thread -> console handler [+ daily JSON file]

The event loop only ever pays for a `put_nowait`; formatting and I/O happen
on the listener thread. When the queue is full the record is dropped and
counted rather than blocking a datastore call.

Output
------
- Production, or `LOG_JSON=true`: one JSON object per line
- Development: `time | LEVEL | logger | message`, colored on a TTY
- `LOGS_DIR` set: additionally a midnight-rotated JSON file

Nothing is installed on import. Library modules call `get_logger(__name__)`;
the embedding application calls `setup_logging()` once at startup and
`shutdown_logging()` on exit.
"""

from __future__ import annotations

import json
import logging
import queue
import sys
import uuid
from contextvars import ContextVar, Token
from dataclasses import dataclass, field
from datetime import datetime, timezone
from logging import Logger
from logging.handlers import QueueHandler, QueueListener, TimedRotatingFileHandler
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional, Sequence

from datastore_manager.core.config.config import Config

# Fields every enriched record carries; "N/A" marks an unset field.
CONTEXT_FIELDS = ("correlation_id", "request_id", "component", "operation", "store", "key")
UNSET = "N/A"

_operation_context: ContextVar[Dict[str, Any]] = ContextVar("datastore_log_context", default={})


# ============================================================================
# Settings
# ============================================================================


def _level_number(name: Any) -> int:
    level = logging.getLevelName(str(name).upper())
    return level if isinstance(level, int) else logging.INFO


@dataclass(frozen=True)
class LoggingSettings:
    """Resolved logging options; `from_config()` reads the process Config."""

    level: int = logging.INFO
    json_output: bool = False
    colors: bool = False
    logs_dir: Optional[Path] = None
    environment: str = "development"
    queue_size: int = 10_000
    file_name: str = "datastore_daily.json.log"
    file_backups: int = 1
    text_format: str = "%(asctime)s | %(levelname)-8s | %(name)-36s | %(message)s"
    date_format: str = "%Y-%m-%d %H:%M:%S"
    quiet_loggers: Sequence[str] = ("asyncio", "redis")

    @classmethod
    def from_config(cls) -> "LoggingSettings":
        environment = str(Config.ENVIRONMENT).lower()
        production = environment == "production"
        json_output = production if Config.LOG_JSON is None else bool(Config.LOG_JSON)
        return cls(
            level=_level_number(Config.LOG_LEVEL),
            json_output=json_output,
            colors=not json_output and bool(Config.LOG_COLORS) and sys.stdout.isatty(),
            logs_dir=Path(Config.LOGS_DIR).resolve() if Config.LOGS_DIR else None,
            environment=environment,
        )


# ============================================================================
# Record enrichment
# ============================================================================


class ContextFilter(logging.Filter):
    """
    Copy the active LogContext onto each record.

    Attributes already present on the record (from `extra=`) are kept.
    `component` falls back to the last segment of the logger name.
    """

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        context = _operation_context.get()
        correlation = context.get("correlation_id") or context.get("request_id") or UNSET

        record.correlation_id = correlation
        record.request_id = context.get("request_id", correlation)
        record.component = context.get("component") or record.name.rsplit(".", 1)[-1]
        for name in CONTEXT_FIELDS[3:]:
            if not hasattr(record, name):
                setattr(record, name, context.get(name, UNSET))
        return True


# ============================================================================
# Formatters
# ============================================================================


def _builtin_record_attrs() -> FrozenSet[str]:
    blank = logging.LogRecord("", logging.INFO, "", 0, "", (), None)
    return frozenset(vars(blank)) | {"message", "asctime"}


class JSONFormatter(logging.Formatter):
    """One JSON object per record; caller `extra=` fields nest under "extra"."""

    BUILTIN_ATTRS: FrozenSet[str] = _builtin_record_attrs()

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "source": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        payload.update(
            (name, getattr(record, name))
            for name in CONTEXT_FIELDS
            if getattr(record, name, UNSET) not in (None, UNSET)
        )
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        extra = {
            name: value
            for name, value in vars(record).items()
            if name not in self.BUILTIN_ATTRS
            and name not in CONTEXT_FIELDS
            and not name.startswith("_")
        }
        if extra:
            payload["extra"] = extra

        return json.dumps(payload, ensure_ascii=False, default=str)


class ColoredFormatter(logging.Formatter):
    """Text formatter that tints the level name with ANSI colors."""

    RESET = "\033[0m"
    LEVEL_COLORS: Dict[int, str] = {
        logging.DEBUG: "\033[90m",
        logging.INFO: "\033[94m",
        logging.WARNING: "\033[93m",
        logging.ERROR: "\033[91m",
        logging.CRITICAL: "\033[91m\033[1m",
    }

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        color = self.LEVEL_COLORS.get(record.levelno)
        if color is None:
            return super().format(record)

        plain = record.levelname
        record.levelname = f"{color}{plain}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = plain


# ============================================================================
# Queue pipeline
# ============================================================================


@dataclass(frozen=True)
class LoggingHealth:
    initialized: bool
    queue_size: int
    queue_max_size: int
    records_enqueued: int
    records_dropped: int
    listener_errors: int


@dataclass
class _Pipeline:
    """The installed queue, its listener and delivery counters."""

    log_queue: Optional["queue.Queue[logging.LogRecord]"] = None
    listener: Optional[QueueListener] = None
    enqueued: int = 0
    dropped: int = 0
    listener_errors: int = 0
    handlers: List[logging.Handler] = field(default_factory=list)

    @property
    def active(self) -> bool:
        return self.listener is not None


_pipeline = _Pipeline()


class BoundedQueueHandler(QueueHandler):
    """Drop and count records instead of blocking when the queue is full."""

    def enqueue(self, record: logging.LogRecord) -> None:  # type: ignore[override]
        _pipeline.enqueued += 1
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            _pipeline.dropped += 1
            sys.stderr.write("datastore logging queue full; record dropped\n")


class CountingQueueListener(QueueListener):
    def handleError(self, record: logging.LogRecord) -> None:  # type: ignore[override]
        _pipeline.listener_errors += 1
        sys.stderr.write(f"datastore logging handler failed on record from {record.name}\n")


def _console_handler(settings: LoggingSettings) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    if settings.json_output:
        formatter: logging.Formatter = JSONFormatter()
    elif settings.colors:
        formatter = ColoredFormatter(fmt=settings.text_format, datefmt=settings.date_format)
    else:
        formatter = logging.Formatter(fmt=settings.text_format, datefmt=settings.date_format)
    handler.setFormatter(formatter)
    return handler


def _file_handler(settings: LoggingSettings, logs_dir: Path) -> logging.Handler:
    logs_dir.mkdir(parents=True, exist_ok=True)
    handler = TimedRotatingFileHandler(
        filename=str(logs_dir / settings.file_name),
        when="midnight",
        backupCount=settings.file_backups,
        encoding="utf-8",
        utc=True,
    )
    handler.setFormatter(JSONFormatter())
    return handler


def setup_logging(settings: Optional[LoggingSettings] = None) -> None:
    """
    Route the root logger through the bounded queue.

    Calling it again while installed is a no-op; call `shutdown_logging()`
    first to apply new settings.
    """
    global _pipeline

    if _pipeline.active:
        return
    settings = settings or LoggingSettings.from_config()

    handlers: List[logging.Handler] = [_console_handler(settings)]
    if settings.logs_dir is not None:
        handlers.append(_file_handler(settings, settings.logs_dir))
    for handler in handlers:
        handler.setLevel(settings.level)

    log_queue: "queue.Queue[logging.LogRecord]" = queue.Queue(settings.queue_size)
    _pipeline = _Pipeline(log_queue=log_queue)

    entry = BoundedQueueHandler(log_queue)
    entry.setLevel(settings.level)
    # On the handler, not a logger, so records from every logger are enriched.
    entry.addFilter(ContextFilter())

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(settings.level)
    root.addHandler(entry)
    for name in settings.quiet_loggers:
        logging.getLogger(name).setLevel(logging.WARNING)

    _pipeline.handlers = [entry]
    _pipeline.listener = CountingQueueListener(log_queue, *handlers, respect_handler_level=True)
    _pipeline.listener.start()

    logging.getLogger(__name__).info(
        "Logging initialized",
        extra={
            "environment": settings.environment,
            "log_level": logging.getLevelName(settings.level),
            "json": settings.json_output,
            "logs_dir": str(settings.logs_dir) if settings.logs_dir else None,
            "queue_max_size": settings.queue_size,
        },
    )


def shutdown_logging() -> None:
    """Drain the queue, close handlers and detach from the root logger."""
    if not _pipeline.active:
        return

    root = logging.getLogger()
    try:
        _pipeline.listener.stop()
        for handler in _pipeline.listener.handlers:
            handler.close()
    finally:
        for handler in _pipeline.handlers:
            root.removeHandler(handler)
        _pipeline.listener = None
        _pipeline.log_queue = None
        _pipeline.handlers = []


def get_logging_health() -> LoggingHealth:
    log_queue = _pipeline.log_queue
    return LoggingHealth(
        initialized=_pipeline.active,
        queue_size=log_queue.qsize() if log_queue is not None else 0,
        queue_max_size=log_queue.maxsize if log_queue is not None else 0,
        records_enqueued=_pipeline.enqueued,
        records_dropped=_pipeline.dropped,
        listener_errors=_pipeline.listener_errors,
    )


# ============================================================================
# Context API
# ============================================================================


def get_logger(name: str) -> Logger:
    return logging.getLogger(name)


def _new_correlation_id() -> str:
    return uuid.uuid4().hex[:8]


class LogContext:
    """
    Bind operation fields to every record logged inside the block.

    Usable with `with` and `async with`. A nested context inherits the
    enclosing correlation id unless it names its own, so every retry of a
    call shares one id.

    Example
    -------
    >>> async with LogContext(operation="get", store="PlayerData", key="p1"):
    ...     logger.info("fetching")
    """

    def __init__(
        self,
        component: Optional[str] = None,
        operation: Optional[str] = None,
        store: Optional[str] = None,
        key: Optional[str] = None,
        correlation_id: Optional[str] = None,
        request_id: Optional[str] = None,
        **extra: Any,
    ) -> None:
        enclosing = _operation_context.get()
        correlation = (
            correlation_id
            or request_id
            or enclosing.get("correlation_id")
            or _new_correlation_id()
        )
        self.context: Dict[str, Any] = dict(enclosing)
        self.context.update(
            component=component,
            operation=operation or UNSET,
            store=store or UNSET,
            key=key or UNSET,
            correlation_id=correlation,
            request_id=request_id or correlation,
        )
        self.context.update(extra)
        self._token: Optional[Token[Dict[str, Any]]] = None

    @property
    def correlation_id(self) -> str:
        return self.context["correlation_id"]

    def __enter__(self) -> "LogContext":
        self._token = _operation_context.set(self.context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        token, self._token = self._token, None
        if token is not None:
            _operation_context.reset(token)

    async def __aenter__(self) -> "LogContext":
        return self.__enter__()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.__exit__(exc_type, exc_val, exc_tb)


def set_log_context(
    component: Optional[str] = None,
    operation: Optional[str] = None,
    store: Optional[str] = None,
    key: Optional[str] = None,
    correlation_id: Optional[str] = None,
    request_id: Optional[str] = None,
    **extra: Any,
) -> None:
    """Merge fields into the current context without a block (None is ignored)."""
    given = {
        "component": component,
        "operation": operation,
        "store": store,
        "key": key,
        "correlation_id": correlation_id or None,
        "request_id": request_id or None,
    }
    current = dict(_operation_context.get())
    current.update({name: value for name, value in given.items() if value is not None})
    if request_id and "correlation_id" not in current:
        current["correlation_id"] = request_id
    current.update(extra)
    _operation_context.set(current)


def get_log_context() -> Dict[str, Any]:
    return dict(_operation_context.get())


def clear_log_context() -> None:
    _operation_context.set({})
