from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from allotment.app import app, set_engine
from allotment.clock import FixedClock
from allotment.collaborators import InMemoryDirectory, InMemoryJobStore, Job, RecordingNotifier
from allotment.config import AllotmentConfig
from allotment.engine import build_engine
from allotment.persistence import create_database


@pytest.fixture
def engine():
    engine = build_engine(
        AllotmentConfig(),
        job_store=InMemoryJobStore(),
        directory=InMemoryDirectory(),
        notifier=RecordingNotifier(),
        clock=FixedClock(datetime(2025, 3, 10, 9, 30, tzinfo=timezone.utc)),
        db=create_database("sqlite:///:memory:"),
    )
    set_engine(engine)
    yield engine
    set_engine(None)


@pytest.fixture
def client(engine):
    return TestClient(app)


def _seed(engine):
    engine.directory.add_vendor("V1", ["S1"])
    engine.job_store.add_job(Job(id="J1", service_id="S1", client_id="C1"))
    engine.job_store.add_job(Job(id="J2", service_id="S1", client_id="C1"))


def _setup_routing(client, capacity=2):
    resp = client.put(
        "/v1/capacities/vendors/V1/services/S1", json={"dailyCapacity": capacity}
    )
    assert resp.status_code == 200
    resp = client.post("/v1/automation-rules", json={"name": "Default", "priority": 1})
    assert resp.status_code == 201
    return resp.json()


def test_health(client):
    resp = client.get("/health")

    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_run_assignment_returns_camel_case_result(client, engine):
    """A run over HTTP reports the chosen vendor and the units taken."""
    # Arrange
    _seed(engine)
    rule = _setup_routing(client)

    # Act
    resp = client.post("/v1/jobs/J1/assignment")

    # Assert
    assert resp.status_code == 200
    data = resp.json()
    assert data["jobId"] == "J1"
    assert data["status"] == "assigned"
    assert data["vendorAssigneeId"] == "V1"
    assert data["assigneeId"] is None
    assert data["ruleId"] == rule["id"]
    assert data["runId"].startswith("run_")
    assert data["commits"] == [
        {
            "entity_kind": "vendor",
            "entity_id": "V1",
            "service_id": "S1",
            "day": "2025-03-10",
            "units": 1,
        }
    ]
    assert resp.headers["X-Request-ID"]


def test_request_id_header_is_echoed(client, engine):
    _seed(engine)

    resp = client.post("/v1/jobs/J1/assignment", headers={"X-Request-ID": "req_from_caller"})

    assert resp.headers["X-Request-ID"] == "req_from_caller"


def test_capacity_exhaustion_over_http(client, engine):
    _seed(engine)
    _setup_routing(client, capacity=1)

    first = client.post("/v1/jobs/J1/assignment").json()
    second = client.post("/v1/jobs/J2/assignment").json()

    assert first["status"] == "assigned"
    assert second["status"] == "failed_capacity"
    assert second["vendorAssigneeId"] is None

    resp = client.get("/v1/capacities/vendors/V1/services/S1/headroom")
    assert resp.status_code == 200
    assert resp.json()["headroom"] == 0
    assert resp.json()["committedUnits"] == 1


def test_unknown_job_is_404(client):
    resp = client.post("/v1/jobs/nope/assignment")

    assert resp.status_code == 404
    assert resp.json()["jobId"] == "nope"

    resp = client.get("/v1/jobs/nope/automation-logs")
    assert resp.status_code == 404


def test_automation_logs(client, engine):
    _seed(engine)
    _setup_routing(client)
    client.post("/v1/jobs/J1/assignment")

    resp = client.get("/v1/jobs/J1/automation-logs")

    assert resp.status_code == 200
    rows = resp.json()
    assert [row["step"] for row in rows] == ["rule_match", "vendor_selection", "final_result"]
    final = rows[-1]
    assert final["requestId"] == "J1"
    assert final["requestType"] == "service"
    assert final["result"] == "assigned"
    assert final["ledgerCommits"][0]["entity_id"] == "V1"
    assert final["capacitySnapshot"][0]["headroom"] == 1
    assert len({row["runId"] for row in rows}) == 1


def test_storage_failure_is_503(client, engine, monkeypatch):
    _seed(engine)
    _setup_routing(client)

    def broken_append(*args, **kwargs):
        raise OperationalError("INSERT", {}, Exception("database is locked"))

    monkeypatch.setattr(engine.audit, "append_many", broken_append)

    resp = client.post("/v1/jobs/J1/assignment")

    assert resp.status_code == 503
    assert resp.json()["operation"] == "assignment decision"
    headroom = client.get("/v1/capacities/vendors/V1/services/S1/headroom").json()
    assert headroom["headroom"] == 2


class TestRules:
    def test_create_uses_default_strategy(self, client):
        resp = client.post(
            "/v1/automation-rules",
            json={
                "name": "Rush jobs",
                "priority": 5,
                "serviceIds": ["S1"],
                "routingTarget": "vendor_then_designer",
                "excludedVendorIds": ["V9"],
                "matchCriteria": {"rush": True},
            },
        )

        assert resp.status_code == 201
        data = resp.json()
        assert data["scope"] == "global"
        assert data["routingStrategy"] == "least_loaded"
        assert data["routingTarget"] == "vendor_then_designer"
        assert data["fallbackAction"] == "leave_pending"
        assert data["excludedVendorIds"] == ["V9"]
        assert data["matchCriteria"] == {"rush": True}
        assert data["isActive"] is True

    def test_vendor_rule_with_deny_list_is_rejected(self, client):
        resp = client.post(
            "/v1/automation-rules",
            json={
                "name": "Mine",
                "scope": "vendor",
                "ownerVendorId": "V1",
                "excludedVendorIds": ["V2"],
            },
        )

        assert resp.status_code == 422
        assert "allow/deny" in resp.json()["detail"]
        assert resp.json()["subject"] == "Mine"

    def test_vendor_rule_needs_owner(self, client):
        resp = client.post("/v1/automation-rules", json={"name": "Mine", "scope": "vendor"})

        assert resp.status_code == 422

    def test_unknown_strategy_fails_validation(self, client):
        resp = client.post(
            "/v1/automation-rules", json={"name": "x", "routingStrategy": "random"}
        )

        assert resp.status_code == 422

    def test_get_list_and_patch(self, client):
        created = client.post("/v1/automation-rules", json={"name": "A", "priority": 1}).json()
        client.post("/v1/automation-rules", json={"name": "B", "priority": 9})

        listed = client.get("/v1/automation-rules").json()
        assert [r["name"] for r in listed] == ["B", "A"]

        resp = client.patch(
            f"/v1/automation-rules/{created['id']}",
            json={"priority": 20, "routingStrategy": "round_robin", "allowedVendorIds": ["V1"]},
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["priority"] == 20
        assert data["routingStrategy"] == "round_robin"
        assert data["allowedVendorIds"] == ["V1"]
        assert data["name"] == "A"

        fetched = client.get(f"/v1/automation-rules/{created['id']}").json()
        assert fetched["priority"] == 20

    def test_patch_vendor_rule_lists_rejected(self, client):
        created = client.post(
            "/v1/automation-rules",
            json={"name": "Mine", "scope": "vendor", "ownerVendorId": "V1"},
        ).json()

        resp = client.patch(
            f"/v1/automation-rules/{created['id']}", json={"excludedVendorIds": ["V2"]}
        )

        assert resp.status_code == 422

    def test_missing_rule_is_404(self, client):
        assert client.get("/v1/automation-rules/99").status_code == 404
        assert client.patch("/v1/automation-rules/99", json={"priority": 1}).status_code == 404


class TestCapacities:
    def test_vendor_capacity_round_trip(self, client):
        resp = client.put(
            "/v1/capacities/vendors/V1/services/S1",
            json={"dailyCapacity": 4, "priorityWeight": 3, "routingStrategy": "priority_first"},
        )

        assert resp.status_code == 200
        data = resp.json()
        assert data["vendorId"] == "V1"
        assert data["dailyCapacity"] == 4
        assert data["priorityWeight"] == 3
        assert data["routingStrategy"] == "priority_first"

        headroom = client.get("/v1/capacities/vendors/V1/services/S1/headroom").json()
        assert headroom["headroom"] == 4
        assert headroom["configured"] is True
        assert headroom["day"] == "2025-03-10"

    def test_designer_capacity(self, client):
        resp = client.put(
            "/v1/capacities/designers/D1/services/S1",
            json={"dailyCapacity": 2, "isPrimary": True},
        )

        assert resp.status_code == 200
        assert resp.json()["designerId"] == "D1"
        assert resp.json()["isPrimary"] is True

        headroom = client.get("/v1/capacities/designers/D1/services/S1/headroom").json()
        assert headroom["entityKind"] == "designer"
        assert headroom["headroom"] == 2

    def test_negative_capacity_rejected(self, client):
        resp = client.put("/v1/capacities/vendors/V1/services/S1", json={"dailyCapacity": -1})

        assert resp.status_code == 422

    def test_unconfigured_headroom_is_zero(self, client):
        data = client.get("/v1/capacities/vendors/V5/services/S1/headroom").json()

        assert data["configured"] is False
        assert data["headroom"] == 0

    def test_unknown_kind_is_404(self, client):
        assert client.get("/v1/capacities/teams/T1/services/S1/headroom").status_code == 404


def test_priority_allowance(client, engine):
    for i in range(10):
        engine.job_store.add_job(Job(id=f"U{i}", service_id="S1", client_id="C1", priority="urgent"))
    for i in range(40):
        engine.job_store.add_job(Job(id=f"N{i}", service_id="S1", client_id="C1"))

    resp = client.post(
        "/v1/priority-allowance", json={"clientId": "C1", "requestedPriority": "urgent"}
    )

    assert resp.status_code == 200
    data = resp.json()
    assert data["decision"] == "downgraded"
    assert data["grantedPriority"] == "high"
    assert data["urgentCap"] == 10
    assert data["activeCount"] == 50


def test_priority_allowance_rejects_unknown_priority(client):
    resp = client.post(
        "/v1/priority-allowance", json={"clientId": "C1", "requestedPriority": "critical"}
    )

    assert resp.status_code == 422


def test_strategies_endpoint(client):
    resp = client.get("/v1/strategies")

    assert resp.status_code == 200
    assert set(resp.json()["strategies"]) == {"least_loaded", "round_robin", "priority_first"}


def test_metrics_count_requests(client, engine):
    _seed(engine)
    client.post("/v1/jobs/J1/assignment")

    data = client.get("/metrics").json()

    assert set(data) == {"counters", "gauges", "timers"}
    assert any(key.startswith("requests_total") for key in data["counters"])
    assert any(key.startswith("assignment_runs_total") for key in data["counters"])
