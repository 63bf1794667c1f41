"""
Structured Logging for the View Counter Gateway

JSON-per-line logging with request IDs and event types, so that startup,
proxying and shutdown can be diagnosed after the fact.
"""

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Union

# Context variable for tracking request ID across async operations
request_id_context: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


class LogLevel(Enum):
    """Log levels for structured logging."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class EventType(Enum):
    """Event types attached to log records."""

    # Request/Response events
    REQUEST_START = "request_start"
    REQUEST_END = "request_end"

    # Gateway lifecycle events
    GATEWAY_START = "gateway_start"
    GATEWAY_STOP = "gateway_stop"
    GATEWAY_ERROR = "gateway_error"
    SIGNAL_RECEIVED = "signal_received"
    SERVE_ERROR = "serve_error"

    # Database events
    DATABASE_CONNECT = "database_connect"
    DATABASE_CLOSE = "database_close"

    # Proxy events
    PROXY_START = "proxy_start"
    PROXY_END = "proxy_end"
    PROXY_ERROR = "proxy_error"

    # View count events
    COUNT_INCREMENTED = "count_incremented"
    COUNT_ERROR = "count_error"


class StructuredFormatter(logging.Formatter):
    """Custom formatter for structured JSON logging."""

    _FIELDS = (
        "event_type",
        "service",
        "user",
        "duration_ms",
        "status_code",
        "method",
        "path",
        "metadata",
    )

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured JSON."""
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_id = request_id_context.get()
        if request_id:
            log_entry["request_id"] = request_id

        for field in self._FIELDS:
            if hasattr(record, field):
                log_entry[field] = getattr(record, field)

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_fields"):
            log_entry.update(getattr(record, "extra_fields"))

        return json.dumps(log_entry, default=str)


class SafeStreamHandler(logging.StreamHandler):
    """StreamHandler that gracefully handles closed streams during shutdown."""

    def emit(self, record):
        """Emit a record, ignoring writes to a stream that is already closed."""
        if hasattr(self.stream, "closed") and self.stream.closed:
            return
        try:
            super().emit(record)
        except (ValueError, OSError) as e:
            error_msg = str(e).lower()
            if "closed file" in error_msg or "bad file descriptor" in error_msg:
                return
            raise


class ViewCounterLogger:
    """Structured logger passed to the gateway components."""

    def __init__(self, name: str = "viewcounter", level: LogLevel = LogLevel.INFO, stream=None):
        self.name = name
        self.logger = logging.getLogger(name)
        self.logger.setLevel(getattr(logging, level.value))

        # Remove existing handlers to avoid duplicates
        for handler in self.logger.handlers[:]:
            self.logger.removeHandler(handler)

        handler = SafeStreamHandler(stream or sys.stdout)
        handler.setFormatter(StructuredFormatter())
        self.logger.addHandler(handler)
        self.logger.propagate = False

    def set_level(self, level: LogLevel):
        """Set the logging level."""
        self.logger.setLevel(getattr(logging, level.value))

    def _log(self, level: LogLevel, message: str, exc_info=None, **kwargs):
        extra = {}

        if "event_type" in kwargs:
            event_type = kwargs.pop("event_type")
            extra["event_type"] = (
                event_type.value if isinstance(event_type, EventType) else event_type
            )

        for field in StructuredFormatter._FIELDS[1:]:
            if field in kwargs:
                extra[field] = kwargs.pop(field)

        if kwargs:
            extra["extra_fields"] = kwargs

        getattr(self.logger, level.value.lower())(message, extra=extra, exc_info=exc_info)

    def debug(self, message: str, **kwargs):
        """Log debug message."""
        self._log(LogLevel.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs):
        """Log info message."""
        self._log(LogLevel.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        """Log warning message."""
        self._log(LogLevel.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs):
        """Log error message."""
        self._log(LogLevel.ERROR, message, **kwargs)

    def critical(self, message: str, **kwargs):
        """Log critical message."""
        self._log(LogLevel.CRITICAL, message, **kwargs)

    def log_event(self, event_type: EventType, message: str, **kwargs):
        """Log a structured event at INFO."""
        self.info(message, event_type=event_type, **kwargs)

    def log_request_start(self, method: str, path: str, **kwargs):
        self.log_event(
            EventType.REQUEST_START, f"{method} {path}", method=method, path=path, **kwargs
        )

    def log_request_end(
        self, method: str, path: str, status_code: int, duration_ms: float, **kwargs
    ):
        self.log_event(
            EventType.REQUEST_END,
            f"{method} {path} - {status_code} ({duration_ms:.1f}ms)",
            method=method,
            path=path,
            status_code=status_code,
            duration_ms=duration_ms,
            **kwargs,
        )

    def log_proxy_start(self, target_url: str, service: str, user: str, **kwargs):
        self.debug(
            f"Forwarding badge request to {target_url}",
            event_type=EventType.PROXY_START,
            service=service,
            user=user,
            metadata={"target_url": target_url},
            **kwargs,
        )

    def log_proxy_end(self, target_url: str, status_code: int, duration_ms: float, **kwargs):
        self.log_event(
            EventType.PROXY_END,
            f"Renderer response from {target_url}: {status_code} ({duration_ms:.1f}ms)",
            status_code=status_code,
            duration_ms=duration_ms,
            metadata={"target_url": target_url},
            **kwargs,
        )

    def log_proxy_error(self, target_url: str, error: Union[str, Exception], **kwargs):
        error_msg = str(error) or type(error).__name__
        self.error(
            f"Renderer request failed: {target_url} - {error_msg}",
            event_type=EventType.PROXY_ERROR,
            metadata={"target_url": target_url, "error": error_msg},
            **kwargs,
        )


# Global logger instance
logger = ViewCounterLogger()


def get_logger(name: str = "viewcounter") -> ViewCounterLogger:
    """Get a logger instance."""
    if name == "viewcounter":
        return logger
    return ViewCounterLogger(name)


def set_request_id(request_id: Optional[str] = None) -> str:
    """Set request ID in context. If not provided, generates a new one."""
    if request_id is None:
        request_id = f"req_{uuid.uuid4().hex[:12]}"

    request_id_context.set(request_id)
    return request_id


def get_request_id() -> Optional[str]:
    """Get current request ID from context."""
    return request_id_context.get()


def clear_request_id():
    """Clear request ID from context."""
    request_id_context.set(None)


def configure_logging(level: Union[LogLevel, str] = LogLevel.INFO) -> ViewCounterLogger:
    """Configure the global logger and return it."""
    if isinstance(level, str):
        level = LogLevel(level.upper())

    logger.set_level(level)
    logger.debug("Logging configured", metadata={"log_level": level.value})
    return logger
