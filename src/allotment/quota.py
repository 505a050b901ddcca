"""
Priority quota enforcement.

Caps the share of a client's active jobs that may be Urgent or High.
Caps use floor, so small active counts can round a nonzero percentage down
to a cap of zero.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

from allotment.collaborators import JobStore
from allotment.config import PriorityQuotaConfig
from allotment.logging import get_logger
from allotment.metrics import MetricNames, get_metrics
from allotment.types import ACTIVE_JOB_STATUSES, JobPriority, QuotaDecision

logger = get_logger("allotment.quota")

# Tiers in descending order; a downgrade walks down this list
TIER_ORDER = (JobPriority.URGENT, JobPriority.HIGH, JobPriority.NORMAL, JobPriority.LOW)


@dataclass
class PriorityAllowance:
    client_id: str
    requested_priority: JobPriority
    decision: QuotaDecision
    granted_priority: Optional[JobPriority]
    active_count: int
    urgent_cap: int
    high_cap: int
    urgent_count: int
    high_count: int
    reason: str

    def to_dict(self) -> dict:
        return {
            "client_id": self.client_id,
            "requested_priority": self.requested_priority.value,
            "decision": self.decision.value,
            "granted_priority": self.granted_priority.value if self.granted_priority else None,
            "active_count": self.active_count,
            "urgent_cap": self.urgent_cap,
            "high_cap": self.high_cap,
            "urgent_count": self.urgent_count,
            "high_count": self.high_count,
            "reason": self.reason,
        }


def compute_caps(active_count: int, max_urgent_percent: int, max_high_percent: int) -> Tuple[int, int]:
    """Return (urgent_cap, high_cap) for a number of active jobs."""
    return (
        (active_count * max_urgent_percent) // 100,
        (active_count * max_high_percent) // 100,
    )


class PriorityQuotaEnforcer:
    def __init__(self, job_store: JobStore, config: PriorityQuotaConfig):
        self.job_store = job_store
        self.config = config
        self.metrics = get_metrics()

    def allowed_priority(
        self, client_id: str, requested_priority: str, job_id: Optional[str] = None
    ) -> PriorityAllowance:
        """
        Decide whether a client may give a job ``requested_priority``.

        ``job_id`` excludes an existing job from the counts when the caller is
        re-prioritising it rather than submitting a new one.
        """
        requested = JobPriority(requested_priority)

        active_jobs = [
            job
            for job in self.job_store.list_client_jobs(client_id)
            if job.status in ACTIVE_JOB_STATUSES and job.id != job_id
        ]
        active_count = len(active_jobs)
        urgent_count = sum(1 for job in active_jobs if job.priority == JobPriority.URGENT.value)
        high_count = sum(1 for job in active_jobs if job.priority == JobPriority.HIGH.value)
        urgent_cap, high_cap = compute_caps(
            active_count, self.config.max_urgent_percent, self.config.max_high_percent
        )

        def has_room(tier: JobPriority) -> bool:
            if tier == JobPriority.URGENT:
                return urgent_count < urgent_cap
            if tier == JobPriority.HIGH:
                return high_count < high_cap
            return True

        if has_room(requested):
            decision, granted = QuotaDecision.ACCEPTED, requested
            reason = f"{requested.value} is within quota"
        elif self.config.policy == "reject":
            decision, granted = QuotaDecision.REJECTED, None
            reason = f"{requested.value} quota reached for client {client_id}"
        else:
            lower = TIER_ORDER[TIER_ORDER.index(requested) + 1 :]
            granted = next(tier for tier in lower if has_room(tier))
            decision = QuotaDecision.DOWNGRADED
            reason = f"{requested.value} quota reached; downgraded to {granted.value}"

        allowance = PriorityAllowance(
            client_id=client_id,
            requested_priority=requested,
            decision=decision,
            granted_priority=granted,
            active_count=active_count,
            urgent_cap=urgent_cap,
            high_cap=high_cap,
            urgent_count=urgent_count,
            high_count=high_count,
            reason=reason,
        )

        self.metrics.increment_counter(
            MetricNames.QUOTA_DECISIONS, labels={"decision": decision.value}
        )
        logger.log_quota_check(
            client_id,
            requested.value,
            decision.value,
            granted.value if granted else None,
            metadata=allowance.to_dict(),
        )
        return allowance
