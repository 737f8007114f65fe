"""
tokenpulse - Structured JSON Logging

Structured logging with automatic poll-context injection.

Features:
- JSON-formatted logs for easy parsing
- Automatic context injection (poll_id, request_id, granularity)
- Log level and format configurable via environment
- Sensitive data redaction (credentials never reach the log stream)

Usage:
    from tokenpulse.observability.logging import setup_logging, get_logger

    setup_logging(level="INFO")

    logger = get_logger(__name__)
    logger.info("Fetched usage", buckets=24)

Output:
    {"timestamp": "2026-01-15T10:30:00+00:00", "level": "INFO",
     "logger": "tokenpulse.usage.client", "message": "Fetched usage",
     "buckets": 24, "poll_id": 7}
"""

import json
import logging
import os
import sys
import time
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

# Context variable for correlation fields
_log_context: ContextVar[Optional["LogContext"]] = ContextVar("log_context", default=None)


@dataclass
class LogContext:
    """
    Logging context with correlation fields.

    Task-safe using contextvars: each poll cycle sets its own context.
    """
    poll_id: Optional[int] = None
    request_id: str = ""
    granularity: str = ""
    provider: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def get_current(cls) -> Optional["LogContext"]:
        """Get current log context."""
        return _log_context.get()

    @classmethod
    def set_current(cls, ctx: "LogContext"):
        """Set current log context."""
        _log_context.set(ctx)

    @classmethod
    def clear(cls):
        """Clear current log context."""
        _log_context.set(None)

    def update(self, **kwargs):
        """Update context fields."""
        for key, value in kwargs.items():
            if hasattr(self, key) and key != "extra":
                setattr(self, key, value)
            else:
                self.extra[key] = value

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging."""
        result: Dict[str, Any] = {}
        if self.poll_id is not None:
            result["poll_id"] = self.poll_id
        if self.request_id:
            result["request_id"] = self.request_id
        if self.granularity:
            result["granularity"] = self.granularity
        if self.provider:
            result["provider"] = self.provider
        result.update(self.extra)
        return result


class JSONFormatter(logging.Formatter):
    """
    JSON log formatter with automatic context injection.

    Output format:
    {
        "timestamp": "2026-01-15T10:30:00.123456+00:00",
        "level": "INFO",
        "logger": "module.name",
        "message": "Log message",
        "poll_id": 3,
        ... additional fields
    }
    """

    # Fields to redact from logs
    SENSITIVE_FIELDS = {
        "password", "secret", "token_value", "api_key", "apikey",
        "authorization", "credential", "private_key",
    }

    _RESERVED = {
        "name", "msg", "args", "created", "filename",
        "funcName", "levelname", "levelno", "lineno",
        "module", "msecs", "pathname", "process",
        "processName", "relativeCreated", "stack_info",
        "exc_info", "exc_text", "thread", "threadName",
        "message", "taskName",
    }

    def __init__(
        self,
        include_location: bool = False,  # filename:lineno
        redact_sensitive: bool = True,
    ):
        super().__init__()
        self.include_location = include_location
        self.redact_sensitive = redact_sensitive

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if self.include_location:
            log_data["location"] = f"{record.filename}:{record.lineno}"

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        ctx = LogContext.get_current()
        if ctx:
            log_data.update(ctx.to_dict())

        for key, value in record.__dict__.items():
            if key in self._RESERVED:
                continue
            if self.redact_sensitive and self._is_sensitive(key):
                value = "[REDACTED]"
            log_data[key] = value

        return json.dumps(log_data, default=str, ensure_ascii=False)

    def _is_sensitive(self, field_name: str) -> bool:
        """Check if field name indicates sensitive data."""
        field_lower = field_name.lower()
        return any(sensitive in field_lower for sensitive in self.SENSITIVE_FIELDS)


class StructuredLogger:
    """
    Structured logger wrapper.

    Keyword arguments other than exc_info/stack_info/stacklevel become
    structured extra fields.
    """

    def __init__(self, logger: logging.Logger):
        self._logger = logger

    @property
    def name(self) -> str:
        return self._logger.name

    def isEnabledFor(self, level: int) -> bool:
        return self._logger.isEnabledFor(level)

    def _log(self, level: int, msg: str, *args, **kwargs):
        """Internal log method with context injection."""
        extra = dict(kwargs.pop("extra", None) or {})

        ctx = LogContext.get_current()
        if ctx:
            for key, value in ctx.to_dict().items():
                extra.setdefault(key, value)

        for key in list(kwargs.keys()):
            if key not in {"exc_info", "stack_info", "stacklevel"}:
                extra[key] = kwargs.pop(key)

        kwargs["extra"] = extra
        self._logger.log(level, msg, *args, **kwargs)

    def debug(self, msg: str, *args, **kwargs):
        self._log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args, **kwargs):
        self._log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs):
        self._log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args, **kwargs):
        self._log(logging.ERROR, msg, *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs):
        """Log exception with traceback."""
        kwargs["exc_info"] = True
        self._log(logging.ERROR, msg, *args, **kwargs)


# Module-level state
_logging_configured = False


def setup_logging(
    level: Union[str, int] = "INFO",
    json_output: bool = True,
    include_location: bool = False,
    redact_sensitive: bool = True,
) -> None:
    """
    Setup structured logging.

    Call once at startup.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: Use JSON formatter (True) or standard formatter (False)
        include_location: Include filename:lineno in logs
        redact_sensitive: Redact credential-like fields
    """
    global _logging_configured

    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)

    if json_output:
        formatter: logging.Formatter = JSONFormatter(
            include_location=include_location,
            redact_sensitive=redact_sensitive,
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

    handler.setFormatter(formatter)
    root_logger.addHandler(handler)

    # Suppress noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    _logging_configured = True


def get_logger(name: str) -> StructuredLogger:
    """
    Get a structured logger.

    Configures logging from LOG_LEVEL / LOG_FORMAT on first use.
    """
    if not _logging_configured:
        level = os.getenv("LOG_LEVEL", "INFO")
        json_output = os.getenv("LOG_FORMAT", "json").lower() == "json"
        setup_logging(level=level, json_output=json_output)

    return StructuredLogger(logging.getLogger(name))


class TimedOperation:
    """
    Context manager for timing operations.

    Usage:
        async with TimedOperation("fetch_usage", logger) as timer:
            buckets = await client.fetch_usage(...)
        # Logs: "fetch_usage completed" with duration_ms
    """

    def __init__(
        self,
        operation: str,
        logger: Optional[StructuredLogger] = None,
        log_level: int = logging.DEBUG,
        extra: Optional[Dict[str, Any]] = None,
    ):
        self.operation = operation
        self.logger = logger or get_logger("tokenpulse.timed_operation")
        self.log_level = log_level
        self.extra = extra or {}
        self.start_time: Optional[float] = None
        self.duration_ms: Optional[float] = None

    def __enter__(self) -> "TimedOperation":
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration_ms = (time.perf_counter() - self.start_time) * 1000

        log_extra = {
            "operation": self.operation,
            "duration_ms": round(self.duration_ms, 2),
            **self.extra,
        }

        if exc_type:
            log_extra["error"] = str(exc_val)
            self.logger._log(logging.WARNING, f"{self.operation} failed", extra=log_extra)
        else:
            self.logger._log(self.log_level, f"{self.operation} completed", extra=log_extra)

    async def __aenter__(self) -> "TimedOperation":
        return self.__enter__()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return self.__exit__(exc_type, exc_val, exc_tb)
