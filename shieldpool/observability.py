"""
Shielded Pool Observability

Structured logging with correlation IDs and context propagation for the
shielded-operation engine. Every component logs through a PoolLogger
tagged with its layer; events are emitted as one JSON object per line
(or plain text when configured).

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import contextlib
import contextvars
import json
import logging
import sys
import time
import traceback
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import wraps
from typing import Any, Callable, Dict, Iterator, Optional, TypeVar

# Context variables for request-scoped data
correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "correlation_id", default=""
)


class LogLevel(Enum):
    """Log severity levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class PoolLayer(Enum):
    """Engine layers for categorization."""
    ACCUMULATOR = "accumulator"
    NULLIFIER = "nullifier"
    VERIFIER = "verifier"
    VAULT = "vault"
    LEDGER = "ledger"
    POOL = "pool"
    CUSTODY = "custody"
    RECORDS = "records"
    AUDIT = "audit"
    CONFIG = "config"
    CLI = "cli"


@dataclass
class LogEvent:
    """Structured log event."""
    timestamp: str
    level: str
    logger: str
    message: str
    correlation_id: str = ""
    layer: str = ""
    operation: str = ""
    duration_ms: Optional[float] = None
    error_code: str = ""
    context: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, excluding empty values."""
        d = asdict(self)
        return {k: v for k, v in d.items() if v is not None and v != "" and v != {}}

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), default=_json_default)


def _json_default(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()
    if isinstance(value, Enum):
        return value.value
    return str(value)


class StructuredHandler(logging.Handler):
    """Logging handler that outputs structured JSON."""

    def __init__(self, stream: Any = None):
        super().__init__()
        self.stream = stream

    def _event(self, record: logging.LogRecord) -> LogEvent:
        event = LogEvent(
            timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            level=record.levelname.lower(),
            logger=record.name,
            message=record.getMessage(),
            correlation_id=correlation_id_var.get(),
            layer=getattr(record, "layer", ""),
            operation=getattr(record, "operation", ""),
            duration_ms=getattr(record, "duration_ms", None),
            error_code=getattr(record, "error_code", ""),
            context=getattr(record, "context", {}),
        )
        if record.exc_info:
            event.exception = "".join(traceback.format_exception(*record.exc_info))
        return event

    def format_event(self, event: LogEvent) -> str:
        return event.to_json()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            stream = self.stream or sys.stderr
            stream.write(self.format_event(self._event(record)) + "\n")
            stream.flush()
        except Exception:
            self.handleError(record)


class TextHandler(StructuredHandler):
    """Human-readable variant of the structured handler."""

    def format_event(self, event: LogEvent) -> str:
        parts = [event.timestamp, event.level.upper(), event.logger, event.message]
        if event.context:
            parts.append(" ".join(f"{k}={_json_default(v) if not isinstance(v, (int, float, str)) else v}"
                                  for k, v in sorted(event.context.items())))
        if event.exception:
            parts.append(event.exception.rstrip())
        return " | ".join(parts)


_handler_cls: type = StructuredHandler
_level: LogLevel = LogLevel.INFO
_loggers: Dict[str, "PoolLogger"] = {}


class PoolLogger:
    """
    Structured logger for shielded pool components.

    Automatically includes correlation IDs and layer information
    in all log events.
    """

    def __init__(
        self,
        name: str,
        layer: PoolLayer,
        level: LogLevel = LogLevel.INFO,
    ):
        self.name = name
        self.layer = layer
        self._logger = logging.getLogger(f"shieldpool.{layer.value}.{name}")
        self._logger.setLevel(getattr(logging, level.value.upper()))
        self._install_handler()

    def _install_handler(self) -> None:
        for h in list(self._logger.handlers):
            if isinstance(h, StructuredHandler) and type(h) is not _handler_cls:
                self._logger.removeHandler(h)
        if not any(isinstance(h, StructuredHandler) for h in self._logger.handlers):
            self._logger.addHandler(_handler_cls())

    def set_level(self, level: LogLevel) -> None:
        self._logger.setLevel(getattr(logging, level.value.upper()))

    def _log(
        self,
        level: int,
        message: str,
        operation: str = "",
        error_code: str = "",
        duration_ms: Optional[float] = None,
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        """Internal log method."""
        extra = {
            "layer": self.layer.value,
            "operation": operation,
            "error_code": error_code,
            "duration_ms": duration_ms,
            "context": context,
        }
        self._logger.log(level, message, extra=extra, exc_info=exc_info)

    def debug(self, message: str, **context: Any) -> None:
        """Log debug message."""
        self._log(logging.DEBUG, message, **context)

    def info(self, message: str, **context: Any) -> None:
        """Log info message."""
        self._log(logging.INFO, message, **context)

    def warning(self, message: str, **context: Any) -> None:
        """Log warning message."""
        self._log(logging.WARNING, message, **context)

    def error(
        self,
        message: str,
        error_code: str = "",
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        """Log error message."""
        self._log(logging.ERROR, message, error_code=error_code, exc_info=exc_info, **context)

    def critical(
        self,
        message: str,
        error_code: str = "",
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        """Log critical message."""
        self._log(logging.CRITICAL, message, error_code=error_code, exc_info=exc_info, **context)

    def operation(
        self,
        name: str,
        duration_ms: float,
        success: bool = True,
        **context: Any,
    ) -> None:
        """Log an operation completion."""
        level = logging.DEBUG if success else logging.WARNING
        status = "completed" if success else "failed"
        self._log(
            level,
            f"Operation {name} {status}",
            operation=name,
            duration_ms=duration_ms,
            **context,
        )


def generate_correlation_id() -> str:
    """Generate a new correlation ID."""
    return f"corr-{uuid.uuid4().hex[:12]}"


@contextlib.contextmanager
def correlation_scope(correlation_id: Optional[str] = None) -> Iterator[str]:
    """Bind a correlation ID for the duration of a block."""
    cid = correlation_id or generate_correlation_id()
    token = correlation_id_var.set(cid)
    try:
        yield cid
    finally:
        correlation_id_var.reset(token)


def get_logger(name: str, layer: PoolLayer) -> PoolLogger:
    """Get a logger for a shielded pool component."""
    key = f"{layer.value}.{name}"
    logger = _loggers.get(key)
    if logger is None:
        logger = PoolLogger(name, layer, _level)
        _loggers[key] = logger
    return logger


def configure_logging(level: str = "info", log_format: str = "json") -> None:
    """Apply level and output format to every component logger."""
    global _handler_cls, _level
    _level = LogLevel(level)
    _handler_cls = TextHandler if log_format == "text" else StructuredHandler
    for logger in _loggers.values():
        logger.set_level(_level)
        logger._install_handler()


T = TypeVar("T")


def timed_operation(
    logger: PoolLogger,
    operation_name: str,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator for timing and logging operations."""
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            start = time.monotonic()
            success = True
            try:
                return func(*args, **kwargs)
            except Exception:
                success = False
                raise
            finally:
                duration_ms = (time.monotonic() - start) * 1000
                logger.operation(operation_name, duration_ms, success)
        return wrapper
    return decorator
