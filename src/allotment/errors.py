"""
Error taxonomy for the assignment engine.
"""

from datetime import date
from typing import Optional


class AllotmentError(Exception):
    """Base class for all engine errors."""

    pass


class CapacityExceeded(AllotmentError):
    """Raised when a ledger commit asks for more units than the remaining headroom."""

    def __init__(
        self,
        entity_kind: str,
        entity_id: str,
        service_id: str,
        day: date,
        requested: int,
        headroom: int,
    ):
        self.entity_kind = entity_kind
        self.entity_id = entity_id
        self.service_id = service_id
        self.day = day
        self.requested = requested
        self.headroom = headroom
        super().__init__(
            f"Capacity exceeded for {entity_kind} {entity_id} on service {service_id} "
            f"({day.isoformat()}): requested {requested}, headroom {headroom}"
        )


class NoEligibleCandidate(AllotmentError):
    """Raised inside the orchestrator when a routing level has nobody to pick."""

    def __init__(self, level: str, reason: str, status: str):
        self.level = level
        self.reason = reason
        self.status = status
        super().__init__(f"No eligible {level}: {reason}")


class StorageFailure(AllotmentError):
    """Raised when a ledger, cursor, audit or job write-back cannot be persisted."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.cause = cause
        message = f"Storage failure during {operation}"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)


class InvalidConfiguration(AllotmentError):
    """Raised when a stored rule or capacity row cannot be used as configured."""

    def __init__(self, subject: str, reason: str):
        self.subject = subject
        self.reason = reason
        super().__init__(f"Invalid configuration for {subject}: {reason}")


class JobNotFound(AllotmentError):
    """Raised when the job store has no record for the requested job id."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")
