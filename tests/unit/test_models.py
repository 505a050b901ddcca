from datetime import date, datetime, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from allotment.models import (
    AutomationAssignmentLog,
    AutomationRuleRecord,
    CapacityLoad,
    RoundRobinCursor,
    VendorDesignerCapacity,
    VendorServiceCapacity,
)
from allotment.persistence import create_database


@pytest.fixture
def db():
    return create_database("sqlite:///:memory:")


class TestCapacityModels:
    def test_vendor_capacity_defaults(self, db):
        with db.get_session() as session:
            session.add(VendorServiceCapacity(vendor_id="V1", service_id="S1"))

        with db.get_session() as session:
            row = session.query(VendorServiceCapacity).one()
            assert row.daily_capacity == 0
            assert row.auto_assign_enabled is True
            assert row.priority_weight == 0
            assert row.routing_strategy == "least_loaded"
            assert row.created_at is not None
            assert "V1" in repr(row)

    def test_vendor_capacity_unique_per_service(self, db):
        with pytest.raises(IntegrityError):
            with db.get_session() as session:
                session.add(VendorServiceCapacity(vendor_id="V1", service_id="S1"))
                session.add(VendorServiceCapacity(vendor_id="V1", service_id="S1"))

    def test_designer_capacity_defaults(self, db):
        with db.get_session() as session:
            session.add(VendorDesignerCapacity(designer_id="D1", service_id="S1", daily_capacity=4))

        with db.get_session() as session:
            row = session.query(VendorDesignerCapacity).one()
            assert row.daily_capacity == 4
            assert row.is_primary is False
            assert row.auto_assign_enabled is True

    def test_capacity_load_unique_per_day(self, db):
        with db.get_session() as session:
            session.add(
                CapacityLoad(
                    entity_kind="vendor", entity_id="V1", service_id="S1", day=date(2025, 3, 1)
                )
            )
            session.add(
                CapacityLoad(
                    entity_kind="vendor", entity_id="V1", service_id="S1", day=date(2025, 3, 2)
                )
            )

        with pytest.raises(IntegrityError):
            with db.get_session() as session:
                session.add(
                    CapacityLoad(
                        entity_kind="vendor", entity_id="V1", service_id="S1", day=date(2025, 3, 1)
                    )
                )


class TestRuleModel:
    def test_rule_record_defaults(self, db):
        with db.get_session() as session:
            session.add(AutomationRuleRecord(name="Default routing"))

        with db.get_session() as session:
            row = session.query(AutomationRuleRecord).one()
            assert row.id == 1
            assert row.scope == "global"
            assert row.is_active is True
            assert row.service_ids == []
            assert row.routing_target == "vendor_only"
            assert row.routing_strategy is None
            assert row.fallback_action == "leave_pending"
            assert row.match_criteria == {}

    def test_rule_record_json_columns_round_trip(self, db):
        with db.get_session() as session:
            session.add(
                AutomationRuleRecord(
                    name="VIP",
                    service_ids=["S1", "S2"],
                    excluded_vendor_ids=["V9"],
                    match_criteria={"priority": ["urgent", "high"], "vip": True},
                )
            )

        with db.get_session() as session:
            row = session.query(AutomationRuleRecord).one()
            assert row.service_ids == ["S1", "S2"]
            assert row.excluded_vendor_ids == ["V9"]
            assert row.match_criteria["vip"] is True


class TestAuditAndCursorModels:
    def test_assignment_log_stores_snapshot_and_commits(self, db):
        snapshot = [{"entity_id": "V1", "headroom": 2}]
        with db.get_session() as session:
            session.add(
                AutomationAssignmentLog(
                    run_id="run_1",
                    request_id="J1",
                    step="final_result",
                    result="assigned",
                    capacity_snapshot=snapshot,
                    ledger_commits=[{"entity_id": "V1", "units": 1}],
                    created_at=datetime(2025, 3, 1, tzinfo=timezone.utc),
                )
            )

        with db.get_session() as session:
            row = session.query(AutomationAssignmentLog).one()
            assert row.capacity_snapshot == snapshot
            assert row.ledger_commits[0]["units"] == 1
            assert row.request_type == "service"
            assert row.candidates_considered == []

    def test_round_robin_cursor_keyed_by_rotation(self, db):
        with db.get_session() as session:
            session.add(RoundRobinCursor(key="rule:1:vendors", last_chosen_id="V2"))

        with db.get_session() as session:
            cursor = session.get(RoundRobinCursor, "rule:1:vendors")
            assert cursor.last_chosen_id == "V2"
            assert cursor.updated_at is not None
