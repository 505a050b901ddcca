import threading
from datetime import date, datetime, timezone

import pytest

from allotment.clock import FixedClock
from allotment.errors import CapacityExceeded
from allotment.ledger import CapacityLedger
from allotment.persistence import create_database
from allotment.types import EntityKind

VENDOR = EntityKind.VENDOR
DESIGNER = EntityKind.DESIGNER


@pytest.fixture
def clock():
    return FixedClock(datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def ledger(clock):
    return CapacityLedger(create_database("sqlite:///:memory:"), clock)


def test_unconfigured_entity_has_no_headroom(ledger):
    snapshot = ledger.snapshot(VENDOR, "V1", "S1")
    assert snapshot.configured is False
    assert snapshot.headroom == 0
    assert snapshot.daily_capacity == 0
    assert snapshot.day == date(2025, 3, 10)


def test_headroom_is_capacity_minus_committed(ledger):
    ledger.set_vendor_capacity("V1", "S1", daily_capacity=3)
    assert ledger.headroom(VENDOR, "V1", "S1") == 3

    after = ledger.commit(VENDOR, "V1", "S1")

    assert after.committed_units == 1
    assert after.headroom == 2
    assert ledger.snapshot(VENDOR, "V1", "S1").committed_units == 1


def test_commit_beyond_capacity_raises_and_leaves_ledger_unchanged(ledger):
    ledger.set_vendor_capacity("V1", "S1", daily_capacity=2)
    ledger.commit(VENDOR, "V1", "S1")
    ledger.commit(VENDOR, "V1", "S1")

    with pytest.raises(CapacityExceeded) as exc_info:
        ledger.commit(VENDOR, "V1", "S1")

    assert exc_info.value.headroom == 0
    assert exc_info.value.requested == 1
    assert ledger.snapshot(VENDOR, "V1", "S1").committed_units == 2


def test_multi_unit_commit_must_fit_entirely(ledger):
    ledger.set_designer_capacity("D1", "S1", daily_capacity=3)
    ledger.commit(DESIGNER, "D1", "S1", units=2)

    with pytest.raises(CapacityExceeded):
        ledger.commit(DESIGNER, "D1", "S1", units=2)
    assert ledger.headroom(DESIGNER, "D1", "S1") == 1


def test_non_positive_units_rejected(ledger):
    ledger.set_vendor_capacity("V1", "S1", daily_capacity=3)
    with pytest.raises(ValueError):
        ledger.commit(VENDOR, "V1", "S1", units=0)


def test_disabled_or_zero_capacity_has_no_headroom(ledger):
    ledger.set_vendor_capacity("V1", "S1", daily_capacity=5, auto_assign_enabled=False)
    ledger.set_vendor_capacity("V2", "S1", daily_capacity=0)

    disabled = ledger.snapshot(VENDOR, "V1", "S1")
    assert disabled.configured is True
    assert disabled.headroom == 0

    with pytest.raises(CapacityExceeded):
        ledger.commit(VENDOR, "V1", "S1")
    with pytest.raises(CapacityExceeded):
        ledger.commit(VENDOR, "V2", "S1")


def test_capacity_is_per_service(ledger):
    ledger.set_vendor_capacity("V1", "S1", daily_capacity=1)
    ledger.set_vendor_capacity("V1", "S2", daily_capacity=1)
    ledger.commit(VENDOR, "V1", "S1")

    assert ledger.headroom(VENDOR, "V1", "S1") == 0
    assert ledger.headroom(VENDOR, "V1", "S2") == 1


def test_vendor_and_designer_keys_do_not_collide(ledger):
    ledger.set_vendor_capacity("X1", "S1", daily_capacity=1)
    ledger.set_designer_capacity("X1", "S1", daily_capacity=1)
    ledger.commit(VENDOR, "X1", "S1")

    assert ledger.headroom(VENDOR, "X1", "S1") == 0
    assert ledger.headroom(DESIGNER, "X1", "S1") == 1


def test_load_resets_on_new_day(ledger, clock):
    ledger.set_vendor_capacity("V1", "S1", daily_capacity=1)
    ledger.commit(VENDOR, "V1", "S1")
    assert ledger.headroom(VENDOR, "V1", "S1") == 0

    clock.advance(days=1)

    assert ledger.headroom(VENDOR, "V1", "S1") == 1
    # Yesterday's load is kept
    assert ledger.snapshot(VENDOR, "V1", "S1", day=date(2025, 3, 10)).committed_units == 1


def test_lowering_capacity_below_load_leaves_zero_headroom(ledger):
    ledger.set_vendor_capacity("V1", "S1", daily_capacity=3)
    ledger.commit(VENDOR, "V1", "S1", units=2)

    ledger.set_vendor_capacity("V1", "S1", daily_capacity=1)

    assert ledger.headroom(VENDOR, "V1", "S1") == 0
    assert ledger.snapshot(VENDOR, "V1", "S1").committed_units == 2


def test_negative_capacity_rejected(ledger):
    with pytest.raises(ValueError):
        ledger.set_vendor_capacity("V1", "S1", daily_capacity=-1)
    with pytest.raises(ValueError):
        ledger.set_designer_capacity("D1", "S1", daily_capacity=-1)


def test_designer_snapshot_carries_primary_flag(ledger):
    row = ledger.set_designer_capacity("D1", "S1", daily_capacity=2, is_primary=True, priority_weight=4)
    assert row["is_primary"] is True

    snapshot = ledger.snapshot(DESIGNER, "D1", "S1")
    assert snapshot.is_primary is True
    assert snapshot.priority_weight == 4


def test_commit_in_caller_session_is_undone_by_rollback(ledger):
    ledger.set_vendor_capacity("V1", "S1", daily_capacity=2)

    session = ledger.db.create_session()
    try:
        ledger.commit(VENDOR, "V1", "S1", session=session)
        assert ledger.headroom(VENDOR, "V1", "S1", session=session) == 1
        session.rollback()
    finally:
        session.close()

    assert ledger.headroom(VENDOR, "V1", "S1") == 2


def test_loads_for_day_lists_nonzero_rows(ledger):
    ledger.set_vendor_capacity("V1", "S1", daily_capacity=2)
    ledger.set_designer_capacity("D1", "S1", daily_capacity=2)
    ledger.commit(VENDOR, "V1", "S1")
    ledger.commit(DESIGNER, "D1", "S1", units=2)

    loads = ledger.loads_for_day()

    assert loads == {
        ("vendor", "V1", "S1", date(2025, 3, 10)): 1,
        ("designer", "D1", "S1", date(2025, 3, 10)): 2,
    }


def test_concurrent_commits_never_exceed_capacity(tmp_path, clock):
    db = create_database(f"sqlite:///{tmp_path / 'ledger.db'}")
    ledger = CapacityLedger(db, clock)
    ledger.set_vendor_capacity("V1", "S1", daily_capacity=5)

    successes = []
    rejections = []
    lock = threading.Lock()

    def worker():
        try:
            ledger.commit(VENDOR, "V1", "S1")
        except CapacityExceeded:
            with lock:
                rejections.append(1)
        else:
            with lock:
                successes.append(1)

    threads = [threading.Thread(target=worker) for _ in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(successes) == 5
    assert len(rejections) == 15
    assert ledger.snapshot(VENDOR, "V1", "S1").committed_units == 5
    db.close()
