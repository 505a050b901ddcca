"""
Shared enumerations and value types passed between engine components.
"""

from dataclasses import asdict, dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Dict, List, Optional


class EntityKind(str, Enum):
    VENDOR = "vendor"
    DESIGNER = "designer"


class RoutingStrategy(str, Enum):
    LEAST_LOADED = "least_loaded"
    ROUND_ROBIN = "round_robin"
    PRIORITY_FIRST = "priority_first"


class RoutingTarget(str, Enum):
    VENDOR_ONLY = "vendor_only"
    VENDOR_THEN_DESIGNER = "vendor_then_designer"


class FallbackAction(str, Enum):
    LEAVE_PENDING = "leave_pending"
    NOTIFY_ONLY = "notify_only"


class RuleScopeKind(str, Enum):
    GLOBAL = "global"
    VENDOR = "vendor"


class AssignmentStatus(str, Enum):
    """Terminal outcome of one orchestration run, mirrored onto the job record."""

    ASSIGNED = "assigned"
    PARTIAL_ASSIGNED = "partial_assigned"
    FAILED_NO_VENDOR = "failed_no_vendor"
    FAILED_NO_DESIGNER = "failed_no_designer"
    FAILED_CAPACITY = "failed_capacity"
    SKIPPED = "skipped"

    @property
    def is_success(self) -> bool:
        return self in (AssignmentStatus.ASSIGNED, AssignmentStatus.PARTIAL_ASSIGNED)


class JobPriority(str, Enum):
    URGENT = "urgent"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


class RequestType(str, Enum):
    SERVICE = "service"
    BUNDLE = "bundle"


class QuotaDecision(str, Enum):
    ACCEPTED = "accepted"
    DOWNGRADED = "downgraded"
    REJECTED = "rejected"


# Job statuses that count towards a client's priority quota
ACTIVE_JOB_STATUSES = ("pending", "in-progress", "change-request")


@dataclass
class CapacitySnapshot:
    """Headroom of one (entity, service, day) at the moment it was read."""

    entity_kind: EntityKind
    entity_id: str
    service_id: str
    day: date
    daily_capacity: int
    committed_units: int
    headroom: int
    auto_assign_enabled: bool
    priority_weight: int = 0
    is_primary: bool = False
    configured: bool = True

    def to_dict(self) -> dict:
        data = asdict(self)
        data["entity_kind"] = self.entity_kind.value
        data["day"] = self.day.isoformat()
        return data


@dataclass
class Candidate:
    """A vendor or designer eligible for selection, annotated from the ledger."""

    entity_id: str
    headroom: int
    priority_weight: int = 0
    is_primary: bool = False
    snapshot: Optional[CapacitySnapshot] = None


@dataclass
class LedgerCommit:
    entity_kind: EntityKind
    entity_id: str
    service_id: str
    day: date
    units: int

    def to_dict(self) -> dict:
        return {
            "entity_kind": self.entity_kind.value,
            "entity_id": self.entity_id,
            "service_id": self.service_id,
            "day": self.day.isoformat(),
            "units": self.units,
        }


@dataclass
class AssignmentResult:
    """What ``run_assignment`` hands back to the caller."""

    job_id: str
    status: AssignmentStatus
    note: str
    vendor_assignee_id: Optional[str] = None
    assignee_id: Optional[str] = None
    rule_id: Optional[int] = None
    run_id: Optional[str] = None
    commits: List[LedgerCommit] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status.value,
            "note": self.note,
            "vendor_assignee_id": self.vendor_assignee_id,
            "assignee_id": self.assignee_id,
            "rule_id": self.rule_id,
            "run_id": self.run_id,
            "commits": [commit.to_dict() for commit in self.commits],
        }
