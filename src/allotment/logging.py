"""
Structured Logging for the Assignment Engine

Provides JSON logging with run IDs, decision event types and configurable
log levels so that every routing decision can be followed in the log stream
alongside the durable audit trail.
"""

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Union

# Context variable for tracking the current run (or HTTP request) across calls
run_id_context: ContextVar[Optional[str]] = ContextVar("run_id", default=None)


class LogLevel(Enum):
    """Log levels for structured logging."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class EventType(Enum):
    """Event types for structured logging."""

    # HTTP adapter events
    REQUEST_START = "request_start"
    REQUEST_END = "request_end"
    REQUEST_ERROR = "request_error"

    ENGINE_START = "engine_start"

    # Orchestration events
    ASSIGNMENT_START = "assignment_start"
    ASSIGNMENT_COMPLETED = "assignment_completed"
    ASSIGNMENT_FAILED = "assignment_failed"
    ASSIGNMENT_SKIPPED = "assignment_skipped"
    RULE_MATCHED = "rule_matched"
    RULE_NOT_MATCHED = "rule_not_matched"
    RULE_SKIPPED = "rule_skipped"
    RULE_CREATED = "rule_created"
    RULE_UPDATED = "rule_updated"
    CAPACITY_CONFIGURED = "capacity_configured"
    CANDIDATE_FILTERED = "candidate_filtered"
    CANDIDATE_CHOSEN = "candidate_chosen"

    # Ledger events
    CAPACITY_COMMIT = "capacity_commit"
    CAPACITY_EXCEEDED = "capacity_exceeded"

    # Quota events
    QUOTA_CHECKED = "quota_checked"

    # Notifier events
    NOTIFIER_SENT = "notifier_sent"
    NOTIFIER_ERROR = "notifier_error"

    STORAGE_FAILURE = "storage_failure"
    LEDGER_DRIFT = "ledger_drift"


STRUCTURED_FIELDS = (
    "job_id",
    "rule_id",
    "vendor_id",
    "designer_id",
    "service_id",
    "status",
    "duration_ms",
    "status_code",
    "method",
    "path",
    "metadata",
)


class StructuredFormatter(logging.Formatter):
    """Custom formatter for structured JSON logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured JSON."""
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        run_id = run_id_context.get()
        if run_id:
            log_entry["run_id"] = run_id

        if hasattr(record, "event_type"):
            log_entry["event_type"] = getattr(record, "event_type")

        for field in STRUCTURED_FIELDS:
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
        try:
            if hasattr(self.stream, "closed") and self.stream.closed:
                return
            super().emit(record)
        except (ValueError, OSError) as e:
            error_msg = str(e).lower()
            if "closed file" in error_msg or "bad file descriptor" in error_msg:
                return
            raise


class AllotmentLogger:
    """Structured logger for the assignment engine."""

    def __init__(self, name: str = "allotment", level: LogLevel = LogLevel.INFO):
        """Initialize the structured logger."""
        self.name = name
        self.logger = logging.getLogger(name)
        self.logger.setLevel(getattr(logging, level.value))

        # Remove existing handlers to avoid duplicates
        for handler in self.logger.handlers[:]:
            self.logger.removeHandler(handler)

        handler = SafeStreamHandler(sys.stdout)
        handler.setFormatter(StructuredFormatter())
        self.logger.addHandler(handler)

        self.logger.propagate = False

    def set_level(self, level: LogLevel):
        """Set the logging level."""
        self.logger.setLevel(getattr(logging, level.value))

    def _log(self, level: LogLevel, message: str, **kwargs):
        extra = {}

        if "event_type" in kwargs:
            event_type = kwargs.pop("event_type")
            extra["event_type"] = (
                event_type.value if isinstance(event_type, EventType) else event_type
            )

        for field in STRUCTURED_FIELDS:
            if field in kwargs:
                value = kwargs.pop(field)
                if value is not None:
                    extra[field] = value

        # Store any remaining fields as extra_fields
        if kwargs:
            extra["extra_fields"] = kwargs

        getattr(self.logger, level.value.lower())(message, extra=extra)

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
        """Log a structured event."""
        self.info(message, event_type=event_type, **kwargs)

    def log_request_start(self, method: str, path: str, **kwargs):
        """Log HTTP request start."""
        self.log_event(
            EventType.REQUEST_START, f"{method} {path}", method=method, path=path, **kwargs
        )

    def log_request_end(
        self, method: str, path: str, status_code: int, duration_ms: float, **kwargs
    ):
        """Log HTTP request end."""
        self.log_event(
            EventType.REQUEST_END,
            f"{method} {path} - {status_code} ({duration_ms:.1f}ms)",
            method=method,
            path=path,
            status_code=status_code,
            duration_ms=duration_ms,
            **kwargs,
        )

    def log_assignment_start(self, job_id: str, service_id: Optional[str] = None, **kwargs):
        """Log the start of an orchestration run."""
        self.log_event(
            EventType.ASSIGNMENT_START,
            f"Assignment run started for job {job_id}",
            job_id=job_id,
            service_id=service_id,
            **kwargs,
        )

    def log_assignment_end(
        self, job_id: str, status: str, note: str, duration_ms: Optional[float] = None, **kwargs
    ):
        """Log the terminal outcome of an orchestration run."""
        if status in ("assigned", "partial_assigned"):
            event_type = EventType.ASSIGNMENT_COMPLETED
        elif status == "skipped":
            event_type = EventType.ASSIGNMENT_SKIPPED
        else:
            event_type = EventType.ASSIGNMENT_FAILED

        message = f"Assignment run for job {job_id}: {status}"
        if duration_ms is not None:
            message += f" ({duration_ms:.1f}ms)"

        base_meta = {"note": note}
        extra_meta = kwargs.pop("metadata", None)
        if extra_meta:
            base_meta.update(extra_meta)

        self.log_event(
            event_type,
            message,
            job_id=job_id,
            status=status,
            duration_ms=duration_ms,
            metadata=base_meta,
            **kwargs,
        )

    def log_candidate_choice(
        self,
        job_id: str,
        level: str,
        chosen_id: Optional[str],
        strategy: str,
        candidates: list,
        **kwargs,
    ):
        """Log which candidate a routing level picked (or that none was picked)."""
        if chosen_id is None:
            event_type = EventType.CANDIDATE_FILTERED
            message = f"No {level} chosen for job {job_id} ({strategy})"
        else:
            event_type = EventType.CANDIDATE_CHOSEN
            message = f"Chose {level} {chosen_id} for job {job_id} ({strategy})"

        self.log_event(
            event_type,
            message,
            job_id=job_id,
            metadata={"level": level, "strategy": strategy, "candidates": candidates},
            **kwargs,
        )

    def log_capacity_commit(
        self, entity_kind: str, entity_id: str, service_id: str, units: int, headroom: int, **kwargs
    ):
        """Log a successful ledger commit."""
        self.debug(
            f"Committed {units} unit(s) for {entity_kind} {entity_id} on {service_id}",
            event_type=EventType.CAPACITY_COMMIT,
            service_id=service_id,
            metadata={
                "entity_kind": entity_kind,
                "entity_id": entity_id,
                "units": units,
                "headroom_after": headroom,
            },
            **kwargs,
        )

    def log_quota_check(
        self, client_id: str, requested: str, decision: str, granted: Optional[str], **kwargs
    ):
        """Log a priority quota decision."""
        self.log_event(
            EventType.QUOTA_CHECKED,
            f"Priority {requested} for client {client_id}: {decision}",
            client_id=client_id,
            requested_priority=requested,
            decision=decision,
            granted_priority=granted,
            **kwargs,
        )

    def log_notifier_error(self, event: str, error: Union[str, Exception], **kwargs):
        """Log a notification that could not be delivered."""
        base_meta = {"event": event, "error": str(error)}
        extra_meta = kwargs.pop("metadata", None)
        if extra_meta:
            base_meta.update(extra_meta)

        self.warning(
            f"Notifier failed for {event}: {error}",
            event_type=EventType.NOTIFIER_ERROR,
            metadata=base_meta,
            **kwargs,
        )


# Global logger instance
logger = AllotmentLogger()


def get_logger(name: str = "allotment") -> AllotmentLogger:
    """Get a logger instance."""
    if name == "allotment":
        return logger
    return AllotmentLogger(name)


def set_run_id(run_id: Optional[str] = None) -> str:
    """Set run ID in context. If not provided, generates a new one."""
    if run_id is None:
        run_id = f"run_{uuid.uuid4().hex[:12]}"

    run_id_context.set(run_id)
    return run_id


def get_run_id() -> Optional[str]:
    """Get current run ID from context."""
    return run_id_context.get()


def clear_run_id():
    """Clear run ID from context."""
    run_id_context.set(None)


def configure_logging(level: LogLevel = LogLevel.INFO, enable_debug: bool = False):
    """Configure global logging settings."""
    if enable_debug:
        level = LogLevel.DEBUG

    logger.set_level(level)

    logger.info(
        "Logging configured",
        event_type=EventType.ENGINE_START,
        metadata={"log_level": level.value, "debug_enabled": enable_debug},
    )
