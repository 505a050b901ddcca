import pytest

from allotment.collaborators import InMemoryJobStore, Job
from allotment.config import PriorityQuotaConfig
from allotment.quota import PriorityQuotaEnforcer, compute_caps
from allotment.types import JobPriority, QuotaDecision


def _store_with(client_id="C1", urgent=0, high=0, normal=0, status="pending", start=0):
    store = InMemoryJobStore()
    counter = start
    for priority, count in (("urgent", urgent), ("high", high), ("normal", normal)):
        for _ in range(count):
            counter += 1
            store.add_job(
                Job(
                    id=f"{client_id}-{counter}",
                    service_id="S1",
                    client_id=client_id,
                    priority=priority,
                    status=status,
                )
            )
    return store


@pytest.mark.parametrize(
    "active,expected",
    [
        (50, (10, 15)),
        (0, (0, 0)),
        (4, (0, 1)),  # 0.8 and 1.2 both round down
        (5, (1, 1)),
        (9, (1, 2)),
    ],
)
def test_compute_caps_rounds_down(active, expected):
    assert compute_caps(active, 20, 30) == expected


def test_urgent_within_quota_is_accepted():
    store = _store_with(urgent=9, high=5, normal=36)
    enforcer = PriorityQuotaEnforcer(store, PriorityQuotaConfig())

    allowance = enforcer.allowed_priority("C1", "urgent")

    assert allowance.decision == QuotaDecision.ACCEPTED
    assert allowance.granted_priority == JobPriority.URGENT
    assert allowance.active_count == 50
    assert allowance.urgent_cap == 10
    assert allowance.high_cap == 15


def test_eleventh_urgent_is_downgraded_to_high():
    store = _store_with(urgent=10, high=5, normal=35)
    enforcer = PriorityQuotaEnforcer(store, PriorityQuotaConfig())

    allowance = enforcer.allowed_priority("C1", "urgent")

    assert allowance.decision == QuotaDecision.DOWNGRADED
    assert allowance.granted_priority == JobPriority.HIGH
    assert allowance.urgent_count == 10


def test_downgrade_skips_full_high_tier():
    store = _store_with(urgent=10, high=15, normal=25)
    enforcer = PriorityQuotaEnforcer(store, PriorityQuotaConfig())

    allowance = enforcer.allowed_priority("C1", "urgent")

    assert allowance.decision == QuotaDecision.DOWNGRADED
    assert allowance.granted_priority == JobPriority.NORMAL


def test_high_over_quota_downgrades_to_normal():
    store = _store_with(high=15, normal=35)
    enforcer = PriorityQuotaEnforcer(store, PriorityQuotaConfig())

    allowance = enforcer.allowed_priority("C1", "high")

    assert allowance.granted_priority == JobPriority.NORMAL


def test_reject_policy_offers_nothing():
    store = _store_with(urgent=10, normal=40)
    enforcer = PriorityQuotaEnforcer(store, PriorityQuotaConfig(policy="reject"))

    allowance = enforcer.allowed_priority("C1", "urgent")

    assert allowance.decision == QuotaDecision.REJECTED
    assert allowance.granted_priority is None
    assert "quota reached" in allowance.reason


def test_normal_and_low_are_always_accepted():
    enforcer = PriorityQuotaEnforcer(InMemoryJobStore(), PriorityQuotaConfig())

    assert enforcer.allowed_priority("C1", "normal").decision == QuotaDecision.ACCEPTED
    assert enforcer.allowed_priority("C1", "low").decision == QuotaDecision.ACCEPTED


def test_client_with_no_active_jobs_cannot_go_urgent():
    enforcer = PriorityQuotaEnforcer(InMemoryJobStore(), PriorityQuotaConfig())

    allowance = enforcer.allowed_priority("C1", "urgent")

    assert allowance.urgent_cap == 0
    assert allowance.granted_priority == JobPriority.NORMAL


def test_only_active_jobs_of_the_client_count():
    store = _store_with(urgent=10, normal=40)
    # Completed work and other clients' jobs do not consume quota
    done = _store_with(urgent=30, status="completed", start=100)
    for job in done.list_client_jobs("C1"):
        store.add_job(job)
    for job in _store_with(client_id="C2", urgent=20).list_client_jobs("C2"):
        store.add_job(job)

    allowance = PriorityQuotaEnforcer(store, PriorityQuotaConfig()).allowed_priority("C1", "urgent")

    assert allowance.active_count == 50
    assert allowance.urgent_count == 10
    assert allowance.decision == QuotaDecision.DOWNGRADED


def test_reprioritised_job_is_excluded_from_counts():
    store = _store_with(urgent=10, normal=40)
    enforcer = PriorityQuotaEnforcer(store, PriorityQuotaConfig())

    # C1-1 is one of the urgent jobs; re-checking it frees its own slot
    allowance = enforcer.allowed_priority("C1", "urgent", job_id="C1-1")

    assert allowance.urgent_count == 9
    assert allowance.active_count == 49
    assert allowance.urgent_cap == 9
    assert allowance.decision == QuotaDecision.DOWNGRADED


def test_unknown_priority_rejected():
    enforcer = PriorityQuotaEnforcer(InMemoryJobStore(), PriorityQuotaConfig())
    with pytest.raises(ValueError):
        enforcer.allowed_priority("C1", "critical")
