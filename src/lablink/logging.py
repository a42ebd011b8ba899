"""
Structured Logging System for the LabLink allocator

Provides structured JSON logging with request IDs and event tracking for the
VM lifecycle: claims, readiness, provisioning, teardown and the readiness
listener.
"""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union

# Context variable for tracking request ID across async operations
request_id_context: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

CLOSED_STREAM_ERRORS = ("closed file", "bad file descriptor")

STRUCTURED_FIELDS = (
    "fleet",
    "vm_id",
    "hostname",
    "requester",
    "duration_ms",
    "status_code",
    "method",
    "path",
    "metadata",
)


class LogLevel(Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class EventType(Enum):
    """Values of the ``event_type`` field."""

    # Request/Response events
    REQUEST_START = "request_start"
    REQUEST_END = "request_end"

    # Allocator process events
    ALLOCATOR_START = "allocator_start"
    ALLOCATOR_STOP = "allocator_stop"
    ALLOCATOR_ERROR = "allocator_error"

    # Assignment events
    VM_CLAIMED = "vm_claimed"
    NO_CAPACITY = "no_capacity"
    VM_STATE_CHANGE = "vm_state_change"
    VM_UNWOUND = "vm_unwound"
    VM_STATUS_REPORT = "vm_status_report"

    # Readiness events
    READINESS_RECEIVED = "readiness_received"
    READINESS_APPLIED = "readiness_applied"
    READINESS_DEFERRED = "readiness_deferred"
    READINESS_UNMATCHED = "readiness_unmatched"

    # Listener events
    LISTENER_START = "listener_start"
    LISTENER_STOP = "listener_stop"
    LISTENER_RECONNECT = "listener_reconnect"

    # Provisioning events
    PROVISION_START = "provision_start"
    PROVISION_COMPLETE = "provision_complete"
    PROVISION_PARTIAL = "provision_partial"
    PROVISION_ERROR = "provision_error"
    TEARDOWN_START = "teardown_start"
    TEARDOWN_COMPLETE = "teardown_complete"
    TEARDOWN_ERROR = "teardown_error"
    FLEET_BUSY = "fleet_busy"
    CLEANUP = "cleanup"

    # Provisioning tool events
    TOOL_INVOKE = "tool_invoke"
    TOOL_COMPLETE = "tool_complete"
    TOOL_ERROR = "tool_error"
    TOOL_TIMEOUT = "tool_timeout"


class StructuredFormatter(logging.Formatter):
    """One JSON object per line with the request id and structured fields."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_id = request_id_context.get()
        if request_id:
            log_entry["request_id"] = request_id

        if hasattr(record, "event_type"):
            log_entry["event_type"] = getattr(record, "event_type")

        for field in STRUCTURED_FIELDS:
            if hasattr(record, field):
                value = getattr(record, field)
                if value is not None:
                    log_entry[field] = value

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_fields"):
            log_entry.update(getattr(record, "extra_fields"))

        return json.dumps(log_entry, default=str)


class SafeStreamHandler(logging.StreamHandler):
    """Stream handler that drops records once stdout is closed (interpreter shutdown)."""

    def emit(self, record):
        if getattr(self.stream, "closed", False):
            return
        try:
            super().emit(record)
        except (ValueError, OSError) as e:
            if not any(phrase in str(e).lower() for phrase in CLOSED_STREAM_ERRORS):
                raise


class LablinkLogger:
    """Structured logger for the allocator."""

    def __init__(self, name: str = "lablink", level: LogLevel = LogLevel.INFO):
        self.name = name
        self.logger = logging.getLogger(name)
        self.logger.setLevel(getattr(logging, level.value))

        # Remove existing handlers to avoid duplicates
        for handler in self.logger.handlers[:]:
            self.logger.removeHandler(handler)

        handler = SafeStreamHandler(sys.stdout)
        handler.setFormatter(StructuredFormatter())
        self.logger.addHandler(handler)

        # Prevent propagation to root logger
        self.logger.propagate = False

    def set_level(self, level: LogLevel):
        self.logger.setLevel(getattr(logging, level.value))

    def _log(self, level: LogLevel, message: str, **kwargs):
        extra: Dict[str, Any] = {}

        if "event_type" in kwargs:
            event_type = kwargs.pop("event_type")
            extra["event_type"] = event_type.value if isinstance(event_type, EventType) else event_type

        exc_info = kwargs.pop("exc_info", None)

        for field in STRUCTURED_FIELDS:
            if field in kwargs:
                extra[field] = kwargs.pop(field)

        if kwargs:
            extra["extra_fields"] = kwargs

        getattr(self.logger, level.value.lower())(message, extra=extra, exc_info=exc_info)

    def debug(self, message: str, **kwargs):
        self._log(LogLevel.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs):
        self._log(LogLevel.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._log(LogLevel.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs):
        self._log(LogLevel.ERROR, message, **kwargs)

    def critical(self, message: str, **kwargs):
        self._log(LogLevel.CRITICAL, message, **kwargs)

    def log_event(self, event_type: EventType, message: str, **kwargs):
        """Log a structured event at INFO."""
        self.info(message, event_type=event_type, **kwargs)

    def log_request_start(self, method: str, path: str, **kwargs):
        self.log_event(EventType.REQUEST_START, f"{method} {path}", method=method, path=path, **kwargs)

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

    def log_vm_claimed(self, fleet: str, vm_id: str, requester: str, **kwargs):
        """Log a successful claim."""
        self.log_event(
            EventType.VM_CLAIMED,
            f"VM {vm_id} claimed by {requester}",
            fleet=fleet,
            vm_id=vm_id,
            requester=requester,
            **kwargs,
        )

    def log_no_capacity(self, fleet: str, requester: str, **kwargs):
        """Log an exhausted fleet. Expected condition, not an error."""
        self.log_event(
            EventType.NO_CAPACITY,
            f"No available VMs in fleet {fleet} for {requester}",
            fleet=fleet,
            requester=requester,
            **kwargs,
        )

    def log_state_change(self, vm_id: str, old_state: str, new_state: str, **kwargs):
        """Log a lifecycle transition."""
        self.log_event(
            EventType.VM_STATE_CHANGE,
            f"VM state change: {vm_id} {old_state} -> {new_state}",
            vm_id=vm_id,
            metadata=_merge_metadata(kwargs, old_state=old_state, new_state=new_state),
            **kwargs,
        )

    def log_invalid_transition(self, error: Exception, **kwargs):
        """Log a rejected transition; these indicate a bug or a race."""
        self.error(
            f"Rejected lifecycle transition: {error}",
            event_type=EventType.ALLOCATOR_ERROR,
            metadata=getattr(error, "details", None),
            **kwargs,
        )

    def log_readiness(self, event_type: EventType, hostname: str, message: str, **kwargs):
        """Log a readiness signal outcome."""
        level = LogLevel.WARNING if event_type == EventType.READINESS_UNMATCHED else LogLevel.INFO
        self._log(level, message, event_type=event_type, hostname=hostname, **kwargs)

    def log_provision_start(self, fleet: str, count: int, **kwargs):
        """Log the start of a provisioning request."""
        self.log_event(
            EventType.PROVISION_START,
            f"Provisioning {count} VMs in fleet {fleet}",
            fleet=fleet,
            metadata=_merge_metadata(kwargs, requested=count),
            **kwargs,
        )

    def log_provision_complete(self, fleet: str, expected: int, actual: int, duration_ms: float, **kwargs):
        """Log the end of a provisioning request."""
        event_type = EventType.PROVISION_COMPLETE if actual == expected else EventType.PROVISION_PARTIAL
        level = LogLevel.INFO if actual == expected else LogLevel.ERROR
        self._log(
            level,
            f"Provisioned {actual}/{expected} VMs in fleet {fleet} ({duration_ms:.1f}ms)",
            event_type=event_type,
            fleet=fleet,
            duration_ms=duration_ms,
            metadata=_merge_metadata(kwargs, expected=expected, actual=actual),
            **kwargs,
        )

    def log_operation_error(
        self, event_type: EventType, fleet: str, error: Union[str, Exception], **kwargs
    ):
        """Log a provisioning or teardown failure with its structured details."""
        details = error.to_dict() if hasattr(error, "to_dict") else {"error": str(error)}
        self.error(
            f"{event_type.value} for fleet {fleet}: {error}",
            event_type=event_type,
            fleet=fleet,
            metadata=_merge_metadata(kwargs, **details),
            **kwargs,
        )

    def log_tool_invoke(self, tool: str, operation: str, fleet: str, **kwargs):
        """Log a provisioning tool invocation."""
        self.log_event(
            EventType.TOOL_INVOKE,
            f"{tool} {operation} for fleet {fleet}",
            fleet=fleet,
            metadata=_merge_metadata(kwargs, tool=tool, operation=operation),
            **kwargs,
        )

    def log_tool_error(
        self,
        tool: str,
        operation: str,
        error: str,
        fleet: Optional[str] = None,
        timeout: bool = False,
        **kwargs,
    ):
        """Log a provisioning tool failure or timeout."""
        message = f"{tool} {operation} {'timed out' if timeout else 'failed'}"
        if fleet:
            message += f" for fleet {fleet}"
        if error:
            message += f": {error}"

        self.error(
            message,
            event_type=EventType.TOOL_TIMEOUT if timeout else EventType.TOOL_ERROR,
            fleet=fleet,
            metadata=_merge_metadata(kwargs, tool=tool, operation=operation, error=error),
            **kwargs,
        )


def _merge_metadata(kwargs: Dict[str, Any], **base: Any) -> Dict[str, Any]:
    """Pop ``metadata`` from a helper's kwargs and layer it over ``base``."""
    base.update(kwargs.pop("metadata", None) or {})
    return base


# Global logger instance
logger = LablinkLogger()


def get_logger(name: str = "lablink") -> LablinkLogger:
    """The shared ``lablink`` logger, or a new named one."""
    if name == "lablink":
        return logger
    return LablinkLogger(name)


def set_request_id(request_id: Optional[str] = None) -> str:
    """Bind a request id to the current context, generating one if needed."""
    if request_id is None:
        request_id = f"req_{uuid.uuid4().hex[:12]}"

    request_id_context.set(request_id)
    return request_id


def get_request_id() -> Optional[str]:
    return request_id_context.get()


def clear_request_id():
    request_id_context.set(None)


class RequestTimer:
    """Logs the start and end of one HTTP request and measures its duration.

    Extra keyword arguments (e.g. ``metadata``) are attached to both entries.
    """

    def __init__(self, logger: LablinkLogger, method: str, path: str, **context):
        self.logger = logger
        self.method = method
        self.path = path
        self.context = context
        self.status_code: Optional[int] = None
        self.duration_ms = 0.0
        self._started: Optional[float] = None

    def __enter__(self):
        self._started = time.perf_counter()
        self.logger.log_request_start(self.method, self.path, **self.context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration_ms = (time.perf_counter() - self._started) * 1000
        status_code = self.status_code or (500 if exc_type else 200)
        self.logger.log_request_end(
            self.method, self.path, status_code, self.duration_ms, **self.context
        )

    def set_status_code(self, status_code: int):
        self.status_code = status_code


def configure_logging(level: Union[LogLevel, str] = LogLevel.INFO, enable_debug: bool = False):
    """Set the level of the shared logger (accepts ``"info"`` style strings)."""
    if isinstance(level, str):
        level = LogLevel(level.upper())
    if enable_debug:
        level = LogLevel.DEBUG

    logger.set_level(level)

    logger.info(
        "Logging configured",
        event_type=EventType.ALLOCATOR_START,
        metadata={"log_level": level.value, "debug_enabled": enable_debug},
    )
