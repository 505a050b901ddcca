"""
Contracts for the systems the engine consumes but does not own: the job
store, the vendor/designer directory and the notification dispatcher.

In-memory implementations back the test suite and local development; a
deployment plugs in adapters over its own storage.
"""

import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

import httpx

from allotment.logging import EventType, get_logger
from allotment.metrics import MetricNames, get_metrics

logger = get_logger("allotment.collaborators")


@dataclass
class Job:
    id: str
    service_id: str
    client_id: str
    priority: str = "normal"
    status: str = "pending"
    request_type: str = "service"
    locked_assignment: bool = False
    vendor_assignee_id: Optional[str] = None
    assignee_id: Optional[str] = None
    preferred_vendor_id: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)
    vendor_assigned_at: Optional[datetime] = None
    assigned_at: Optional[datetime] = None
    auto_assignment_status: Optional[str] = None
    last_automation_run_at: Optional[datetime] = None
    last_automation_note: Optional[str] = None


@dataclass
class AssignmentUpdate:
    """Fields the engine writes back onto a job. ``None`` means leave untouched."""

    auto_assignment_status: str
    last_automation_run_at: datetime
    last_automation_note: str
    vendor_assignee_id: Optional[str] = None
    vendor_assigned_at: Optional[datetime] = None
    assignee_id: Optional[str] = None
    assigned_at: Optional[datetime] = None
    status: Optional[str] = None


@dataclass
class VendorListing:
    vendor_id: str
    priority_weight: int = 0


@dataclass
class DesignerListing:
    designer_id: str
    priority_weight: int = 0
    is_primary: bool = False


class JobStore(Protocol):
    def get_job(self, job_id: str) -> Optional[Job]: ...

    def set_assignment(self, job_id: str, update: AssignmentUpdate) -> None: ...

    def list_client_jobs(self, client_id: str) -> List[Job]: ...


class Directory(Protocol):
    def get_vendors_for_service(self, service_id: str) -> List[VendorListing]: ...

    def get_designers_for_vendor_and_service(
        self, vendor_id: str, service_id: str
    ) -> List[DesignerListing]: ...


class Notifier(Protocol):
    def notify(self, event: str, payload: Dict[str, Any]) -> None: ...


class InMemoryJobStore:
    """Thread-safe dictionary-backed job store."""

    def __init__(self):
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.RLock()

    def add_job(self, job: Job) -> Job:
        with self._lock:
            self._jobs[job.id] = replace(job, attributes=dict(job.attributes))
            return job

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            return replace(job, attributes=dict(job.attributes)) if job else None

    def set_assignment(self, job_id: str, update: AssignmentUpdate) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise KeyError(f"Job '{job_id}' not found")
            for name, value in vars(update).items():
                if value is not None:
                    setattr(job, name, value)

    def list_client_jobs(self, client_id: str) -> List[Job]:
        with self._lock:
            return [replace(job) for job in self._jobs.values() if job.client_id == client_id]


class InMemoryDirectory:
    """Vendors and designers with the services they offer."""

    def __init__(self):
        self._vendors: Dict[str, Dict[str, Any]] = {}
        self._designers: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.RLock()

    def add_vendor(self, vendor_id: str, service_ids: List[str], priority_weight: int = 0):
        with self._lock:
            self._vendors[vendor_id] = {
                "service_ids": set(service_ids),
                "priority_weight": priority_weight,
            }

    def add_designer(
        self,
        designer_id: str,
        vendor_id: str,
        service_ids: List[str],
        priority_weight: int = 0,
        is_primary: bool = False,
        active: bool = True,
    ):
        with self._lock:
            self._designers[designer_id] = {
                "vendor_id": vendor_id,
                "service_ids": set(service_ids),
                "priority_weight": priority_weight,
                "is_primary": is_primary,
                "active": active,
            }

    def get_vendors_for_service(self, service_id: str) -> List[VendorListing]:
        with self._lock:
            return [
                VendorListing(vendor_id=vendor_id, priority_weight=info["priority_weight"])
                for vendor_id, info in sorted(self._vendors.items())
                if service_id in info["service_ids"]
            ]

    def get_designers_for_vendor_and_service(
        self, vendor_id: str, service_id: str
    ) -> List[DesignerListing]:
        with self._lock:
            return [
                DesignerListing(
                    designer_id=designer_id,
                    priority_weight=info["priority_weight"],
                    is_primary=info["is_primary"],
                )
                for designer_id, info in sorted(self._designers.items())
                if info["vendor_id"] == vendor_id
                and info["active"]
                and service_id in info["service_ids"]
            ]


class RecordingNotifier:
    """Keeps every event in memory."""

    def __init__(self):
        self.events: List[tuple] = []

    def notify(self, event: str, payload: Dict[str, Any]) -> None:
        self.events.append((event, payload))


class LoggingNotifier:
    """Writes events to the structured log only."""

    def notify(self, event: str, payload: Dict[str, Any]) -> None:
        logger.log_event(EventType.NOTIFIER_SENT, f"Notification: {event}", metadata=payload)


class WebhookNotifier:
    """Posts events as JSON to a webhook. Delivery problems are logged, never raised."""

    def __init__(self, url: str, timeout_seconds: float = 5.0, client: Optional[httpx.Client] = None):
        self.url = url
        self.timeout_seconds = timeout_seconds
        self._client = client or httpx.Client(timeout=timeout_seconds)
        self.metrics = get_metrics()

    def notify(self, event: str, payload: Dict[str, Any]) -> None:
        try:
            response = self._client.post(self.url, json={"event": event, "payload": payload})
            response.raise_for_status()
        except httpx.HTTPError as e:
            self.metrics.increment_counter(MetricNames.NOTIFIER_FAILURES, labels={"event": event})
            logger.log_notifier_error(event, e, metadata={"url": self.url})
            return

        self.metrics.increment_counter(MetricNames.NOTIFICATIONS_SENT, labels={"event": event})
        logger.log_event(
            EventType.NOTIFIER_SENT,
            f"Delivered {event} to {self.url}",
            status_code=response.status_code,
        )

    def close(self) -> None:
        self._client.close()
