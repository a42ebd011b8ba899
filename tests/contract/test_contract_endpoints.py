"""
Contract tests for the allocator HTTP API: routes, payload shapes and the
status code each error maps to.
"""

import pytest
from fastapi.testclient import TestClient

from lablink.app import app, get_service
from lablink.config import FleetConfig, LablinkConfig, ListenerConfig
from lablink.errors import ToolTimeout
from lablink.service import build_service
from lablink.tools.base import ProvisionedInstance, ToolResult


class ScriptedTool:
    """Provisioning tool double; ``capacity`` caps instances per call."""

    name = "scripted"

    def __init__(self):
        self.capacity = None
        self.error = None
        self._next = 1

    async def provision(self, spec):
        if self.error is not None:
            raise self.error
        made = spec.count if self.capacity is None else min(spec.count, self.capacity)
        created = []
        for _ in range(made):
            n = self._next
            self._next += 1
            created.append(
                ProvisionedInstance(
                    instance_id=f"i-{spec.fleet}{n:04d}",
                    address=f"10.0.0.{n}",
                    name=f"lablink-vm-{spec.fleet}-{n}",
                )
            )
        return ToolResult(
            success=made == spec.count,
            created=created,
            diagnostics="" if made == spec.count else "Error: InstanceLimitExceeded",
            exit_code=0 if made == spec.count else 1,
        )

    async def destroy(self, spec):
        return ToolResult(success=True)


@pytest.fixture
def tool():
    return ScriptedTool()


@pytest.fixture
def service(file_db, tool):
    config = LablinkConfig(
        fleets={"default": FleetConfig(cleanup_enabled=False)},
        listener=ListenerConfig(channel="registry"),
    )
    return build_service(config, db=file_db, tools={"default": tool})


@pytest.fixture
def client(service):
    app.dependency_overrides[get_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


def _provision(client, count):
    return client.post("/v1/fleet/provision", json={"count": count})


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


class TestAssign:
    def test_assign_returns_handle(self, client):
        _provision(client, 1)

        resp = client.post(
            "/v1/vms/assign", json={"email": "alice@example.com", "crdCommand": "crd --code=abc"}
        )

        assert resp.status_code == 200
        body = resp.json()
        assert body["vmId"] == "i-default0001"
        assert body["assignedTo"] == "alice@example.com"
        assert body["commandPayload"] == "crd --code=abc"
        assert body["state"] == "assigned"
        assert resp.headers["X-Request-ID"].startswith("req_")

    def test_no_capacity_is_503(self, client):
        resp = client.post("/v1/vms/assign", json={"email": "alice@example.com"})

        assert resp.status_code == 503
        assert resp.json()["error"] == "no_capacity"
        assert resp.json()["retryable"] is True

    def test_blank_requester_is_422(self, client):
        resp = client.post("/v1/vms/assign", json={"email": "  "})
        assert resp.status_code == 422

    def test_unknown_fleet_is_404(self, client):
        resp = client.post("/v1/vms/assign?fleet=nope", json={"email": "alice@example.com"})

        assert resp.status_code == 404
        assert resp.json()["error"] == "unknown_fleet"


class TestProvision:
    def test_provision_created(self, client):
        resp = _provision(client, 2)

        assert resp.status_code == 201
        assert resp.json()["actual"] == 2
        assert len(resp.json()["instance_ids"]) == 2

    def test_partial_provision_is_207(self, client, tool):
        tool.capacity = 1

        resp = _provision(client, 3)

        assert resp.status_code == 207
        body = resp.json()
        assert body["error"] == "partial_provisioning"
        assert body["expected"] == 3
        assert body["actual"] == 1
        assert "InstanceLimitExceeded" in body["diagnostics"]

    def test_tool_failure_is_502(self, client, tool):
        tool.capacity = 0

        resp = _provision(client, 1)

        assert resp.status_code == 502
        assert resp.json()["error"] == "tool_failure"

    def test_tool_timeout_is_504(self, client, tool):
        tool.error = ToolTimeout("provision", 1800)

        resp = _provision(client, 1)

        assert resp.status_code == 504
        assert resp.json()["error"] == "tool_timeout"

    def test_busy_fleet_is_409(self, client, service):
        service.orchestrator().guard.try_acquire("default", "teardown")

        resp = _provision(client, 1)

        assert resp.status_code == 409
        assert resp.json()["in_flight"] == "teardown"

    def test_count_must_be_positive(self, client):
        assert _provision(client, 0).status_code == 422

    def test_teardown(self, client):
        _provision(client, 2)

        resp = client.post("/v1/fleet/teardown")

        assert resp.status_code == 200
        assert len(resp.json()["terminated_ids"]) == 2
        summary = client.get("/v1/fleet/summary").json()
        assert summary["counts"]["terminated"] == 2


class TestVmReports:
    def test_ready_moves_assigned_vm_to_running(self, client):
        _provision(client, 1)
        client.post("/v1/vms/assign", json={"email": "alice@example.com"})

        resp = client.post("/v1/vms/ready", json={"hostname": "lablink-vm-default-1"})

        assert resp.status_code == 202
        assert resp.json()["accepted"] is True
        running = client.get("/v1/vms", params={"state": "running"}).json()
        assert [vm["id"] for vm in running] == ["i-default0001"]
        assert running[0]["hostname"] == "lablink-vm-default-1"

    def test_ready_for_unknown_host_is_still_accepted(self, client):
        resp = client.post("/v1/vms/ready", json={"hostname": "ghost"})
        assert resp.status_code == 202

    def test_in_use_and_health(self, client):
        _provision(client, 1)

        resp = client.post("/v1/vms/in-use", json={"hostname": "10.0.0.1", "inUse": True})
        assert resp.status_code == 200
        assert resp.json()["in_use"] is True

        resp = client.post("/v1/vms/health", json={"hostname": "10.0.0.1", "gpuStatus": "Healthy"})
        assert resp.status_code == 200
        assert resp.json()["health_status"] == "Healthy"

    def test_reports_for_unknown_host_are_404(self, client):
        resp = client.post("/v1/vms/in-use", json={"hostname": "ghost", "inUse": False})
        assert resp.status_code == 404
        assert resp.json()["error"] == "record_not_found"

        resp = client.post("/v1/vms/health", json={"hostname": "ghost", "gpuStatus": "Unhealthy"})
        assert resp.status_code == 404


class TestReads:
    def test_list_filters(self, client):
        _provision(client, 3)
        client.post("/v1/vms/assign", json={"email": "alice@example.com"})

        everything = client.get("/v1/vms").json()
        available = client.get("/v1/vms", params={"state": "available"}).json()
        mine = client.get("/v1/vms", params={"assignedTo": "alice@example.com"}).json()
        active = client.get("/v1/vms", params=[("state", "assigned"), ("state", "available")]).json()

        assert len(everything) == 3
        assert len(available) == 2
        assert [vm["id"] for vm in mine] == ["i-default0001"]
        assert len(active) == 3

    def test_invalid_state_filter_is_422(self, client):
        assert client.get("/v1/vms", params={"state": "sleeping"}).status_code == 422

    def test_summary(self, client):
        _provision(client, 2)
        client.post("/v1/vms/assign", json={"email": "alice@example.com"})

        summary = client.get("/v1/fleet/summary").json()

        assert summary["fleet"] == "default"
        assert summary["total"] == 2
        assert summary["counts"] == {"available": 1, "assigned": 1, "running": 0, "terminated": 0}

    def test_metrics(self, client):
        _provision(client, 1)
        client.post("/v1/vms/assign", json={"email": "alice@example.com"})

        resp = client.get("/v1/metrics")

        assert resp.status_code == 200
        fleet_counters = resp.json()["fleets"]["default"]["counters"]
        assert fleet_counters["vm_claims_total"]["count"] == 1
