"""
SAFEFLOW Observability Framework

Structured logging for validation and execution. Every event carries the
emitting component layer, the operation and, where it applies, the program
counter and opcode involved.

Architecture:
    ┌─────────────────────────────────────────────────────────┐
    │                    Application Code                      │
    │  logger.info("msg", pc=x, opcode=y)  @timed_operation   │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │                    SafeflowLogger                        │
    │        layer tagging, structured context, timing        │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │                      Handlers                            │
    │          StructuredHandler (json) │ text formatter      │
    └─────────────────────────────────────────────────────────┘

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import json
import logging
import sys
import time
import traceback
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import wraps
from typing import Any, Callable, Dict, Optional, TypeVar


class LogLevel(Enum):
    """Log severity levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class Layer(Enum):
    """SAFEFLOW components for categorization."""
    PROGRAM = "program"
    JUMPTABLE = "jumptable"
    VALIDATOR = "validator"
    RUNTIME = "runtime"
    VM = "vm"
    CONFIG = "config"
    CLI = "cli"


@dataclass
class LogEvent:
    """Structured log event."""
    timestamp: str
    level: str
    logger: str
    message: str
    layer: str = ""
    operation: str = ""
    duration_ms: Optional[float] = None
    error_code: str = ""
    context: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, excluding None values."""
        d = asdict(self)
        return {k: v for k, v in d.items() if v is not None and v != "" and v != {}}

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), default=str)


class StructuredHandler(logging.Handler):
    """Logging handler that outputs structured JSON, one event per line."""

    def __init__(self, stream: Any = None):
        super().__init__()
        self._stream = stream

    @property
    def stream(self) -> Any:
        # Resolved per emit so redirected stderr (pytest capture, CLI) is honoured.
        return self._stream or sys.stderr

    def emit(self, record: logging.LogRecord) -> None:
        try:
            event = LogEvent(
                timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                level=record.levelname.lower(),
                logger=record.name,
                message=record.getMessage(),
                layer=getattr(record, "layer", ""),
                operation=getattr(record, "operation", ""),
                duration_ms=getattr(record, "duration_ms", None),
                error_code=getattr(record, "error_code", ""),
                context=getattr(record, "context", {}),
            )

            if record.exc_info:
                event.exception = "".join(traceback.format_exception(*record.exc_info))

            self.stream.write(event.to_json() + "\n")
            self.stream.flush()
        except Exception:
            self.handleError(record)


class TextHandler(logging.StreamHandler):
    """Plain text handler: ``level layer message key=value ...``."""

    def __init__(self, stream: Any = None):
        super().__init__(stream)
        self._explicit = stream is not None

    def emit(self, record: logging.LogRecord) -> None:
        if not self._explicit:
            self.stream = sys.stderr
        super().emit(record)

    def format(self, record: logging.LogRecord) -> str:
        context = getattr(record, "context", {}) or {}
        pairs = " ".join(f"{k}={v}" for k, v in context.items())
        layer = getattr(record, "layer", "")
        line = f"{record.levelname.lower():<8} [{layer}] {record.getMessage()}"
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            line += f" ({duration:.2f} ms)"
        return f"{line} {pairs}".rstrip()


def _make_handler(log_format: str) -> logging.Handler:
    return TextHandler() if log_format == "text" else StructuredHandler()


class SafeflowLogger:
    """
    Structured logger for SAFEFLOW components.

    Automatically includes layer information and keyword context in all
    log events.
    """

    def __init__(
        self,
        name: str,
        layer: Layer,
        level: Optional[LogLevel] = None,
        log_format: Optional[str] = None,
    ):
        self.name = name
        self.layer = layer
        self._logger = logging.getLogger(f"safeflow.{layer.value}.{name}")
        self._logger.propagate = False

        if level is None or log_format is None:
            from safeflow.config import get_config
            observability = get_config().observability
            level = level or LogLevel(observability.log_level.get())
            log_format = log_format or observability.log_format.get()
        self.configure(level, log_format)

    def configure(self, level: LogLevel, log_format: str = "json") -> None:
        """Apply level and output format, replacing any earlier handler."""
        self._logger.setLevel(getattr(logging, level.value.upper()))
        for handler in list(self._logger.handlers):
            if isinstance(handler, (StructuredHandler, TextHandler)):
                self._logger.removeHandler(handler)
        self._logger.addHandler(_make_handler(log_format))

    def is_enabled_for(self, level: LogLevel) -> bool:
        return self._logger.isEnabledFor(getattr(logging, level.value.upper()))

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

    def operation(
        self,
        name: str,
        duration_ms: float,
        success: bool = True,
        **context: Any,
    ) -> None:
        """Log an operation completion."""
        level = logging.INFO if success else logging.WARNING
        status = "completed" if success else "failed"
        self._log(
            level,
            f"Operation {name} {status}",
            operation=name,
            duration_ms=duration_ms,
            **context,
        )


_loggers: Dict[str, SafeflowLogger] = {}


def get_logger(name: str, layer: Layer) -> SafeflowLogger:
    """Get a logger for a SAFEFLOW component."""
    key = f"{layer.value}.{name}"
    logger = _loggers.get(key)
    if logger is None:
        logger = SafeflowLogger(name, layer)
        _loggers[key] = logger
    return logger


def configure_logging(level: str, log_format: str = "json") -> None:
    """Reconfigure every logger handed out so far."""
    for logger in _loggers.values():
        logger.configure(LogLevel(level), log_format)


T = TypeVar("T")


def timed_operation(
    logger: SafeflowLogger,
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
