"""
Integration tests for provisioning and teardown against a real registry,
with the provisioning tool replaced by a scripted fake.
"""

import asyncio
import threading

import pytest

from lablink.assignment import AssignmentEngine
from lablink.config import FleetConfig
from lablink.errors import Busy, PartialProvisioning, RegistrationConflict, ToolFailure, ToolTimeout
from lablink.fleet_guard import FleetGuard
from lablink.listener import NotificationListener, ReadinessOutcome
from lablink.metrics import MetricNames, get_metrics
from lablink.models.api import NewVm, VmFilter
from lablink.notifications import InMemoryReadinessChannel
from lablink.orchestrator import ProvisioningOrchestrator
from lablink.state_machine import VmState
from lablink.tools.base import ProvisionedInstance, ToolResult
from lablink.tools.janitor import CleanupReport


class FakeTool:
    """Creates up to ``capacity`` instances per call; optionally blocks or fails."""

    name = "fake"

    def __init__(self, capacity=None, destroy_ok=True, error=None):
        self.capacity = capacity
        self.destroy_ok = destroy_ok
        self.error = error
        self.gate = None
        self.provision_specs = []
        self.destroy_specs = []
        self._next = 1

    async def provision(self, spec):
        self.provision_specs.append(spec)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        made = spec.count if self.capacity is None else min(spec.count, self.capacity)
        created = []
        for _ in range(made):
            n = self._next
            self._next += 1
            created.append(
                ProvisionedInstance(
                    instance_id=f"i-{spec.fleet}-{n:04d}",
                    address=f"10.1.0.{n}",
                    name=f"lablink-vm-{spec.fleet}-{n}",
                )
            )
        return ToolResult(
            success=made == spec.count,
            created=created,
            failed=[f"missing-{i}" for i in range(spec.count - made)],
            diagnostics="" if made == spec.count else "Error: InstanceLimitExceeded",
            exit_code=0 if made == spec.count else 1,
        )

    async def destroy(self, spec):
        self.destroy_specs.append(spec)
        if self.error is not None:
            raise self.error
        return ToolResult(
            success=self.destroy_ok,
            diagnostics="" if self.destroy_ok else "Error: destroy failed",
            exit_code=0 if self.destroy_ok else 1,
        )


class FakeJanitor:
    def __init__(self):
        self.suffixes = []

    def cleanup(self, fleet_suffix):
        self.suffixes.append(fleet_suffix)
        return CleanupReport(
            removed=[f"security_group:sg-{fleet_suffix}"],
            failures={"key_pair:k-1": "InvalidKeyPair.NotFound"},
        )


@pytest.fixture
def fleet():
    return FleetConfig(name="default", tool_timeout_seconds=60)


def _orchestrator(fleet, registry, tool, guard=None, janitor=None):
    return ProvisioningOrchestrator(fleet, tool, registry, guard or FleetGuard(), janitor)


class TestProvision:
    @pytest.mark.asyncio
    async def test_success_registers_all_instances(self, fleet, registry):
        tool = FakeTool()
        orchestrator = _orchestrator(fleet, registry, tool)

        result = await orchestrator.provision(3)

        assert result.expected == 3
        assert result.actual == 3
        assert registry.count(VmFilter(fleet="default", states=[VmState.AVAILABLE])) == 3
        view = registry.get(result.instance_ids[0])
        assert view.instance_name == "lablink-vm-default-1"
        assert view.address == "10.1.0.1"
        assert get_metrics().get_counter(MetricNames.INSTANCES_CREATED, fleet="default").count == 3

    @pytest.mark.asyncio
    async def test_existing_fleet_is_passed_to_tool(self, fleet, registry, make_vms):
        registry.insert_batch(make_vms(2))
        tool = FakeTool()

        await _orchestrator(fleet, registry, tool).provision(1)

        spec = tool.provision_specs[0]
        assert sorted(spec.existing_instance_ids) == ["i-default0001", "i-default0002"]
        assert spec.desired_total == 3
        assert spec.machine_type == fleet.machine_type
        assert spec.timeout_seconds == 60

    @pytest.mark.asyncio
    async def test_partial_success_registers_only_confirmed(self, fleet, registry):
        orchestrator = _orchestrator(fleet, registry, FakeTool(capacity=3))

        with pytest.raises(PartialProvisioning) as exc_info:
            await orchestrator.provision(5)

        error = exc_info.value
        assert error.expected == 5
        assert error.actual == 3
        assert len(error.instance_ids) == 3
        assert "InstanceLimitExceeded" in error.diagnostics
        assert registry.count(VmFilter(fleet="default")) == 3

    @pytest.mark.asyncio
    async def test_partial_registered_vms_are_claimable(self, fleet, registry):
        orchestrator = _orchestrator(fleet, registry, FakeTool(capacity=2))

        with pytest.raises(PartialProvisioning):
            await orchestrator.provision(3)

        engine = AssignmentEngine(registry, "default")
        handles = [engine.request_assignment(f"student{n}@example.com") for n in range(2)]
        assert {h.state for h in handles} == {VmState.ASSIGNED}

    @pytest.mark.asyncio
    async def test_nothing_created_is_tool_failure(self, fleet, registry):
        orchestrator = _orchestrator(fleet, registry, FakeTool(capacity=0))

        with pytest.raises(ToolFailure) as exc_info:
            await orchestrator.provision(2)

        assert "InstanceLimitExceeded" in exc_info.value.diagnostics
        assert registry.count() == 0
        assert get_metrics().get_counter(MetricNames.PROVISION_FAILURES, fleet="default").count == 1

    @pytest.mark.asyncio
    async def test_timeout_registers_nothing(self, fleet, registry):
        orchestrator = _orchestrator(fleet, registry, FakeTool(error=ToolTimeout("provision", 60)))

        with pytest.raises(ToolTimeout):
            await orchestrator.provision(2)

        assert registry.count() == 0
        assert get_metrics().get_counter(MetricNames.TOOL_TIMEOUTS, fleet="default").count == 1
        # The guard is released after a failure
        assert not orchestrator.guard.is_busy("default")

    @pytest.mark.asyncio
    async def test_invalid_count(self, fleet, registry):
        with pytest.raises(ValueError):
            await _orchestrator(fleet, registry, FakeTool()).provision(0)

    @pytest.mark.asyncio
    async def test_concurrent_operation_is_rejected_busy(self, fleet, registry):
        tool = FakeTool()
        tool.gate = asyncio.Event()
        orchestrator = _orchestrator(fleet, registry, tool)

        first = asyncio.create_task(orchestrator.provision(2))
        while not tool.provision_specs:
            await asyncio.sleep(0)

        with pytest.raises(Busy) as exc_info:
            await orchestrator.provision(1)
        assert exc_info.value.in_flight == "provision"

        with pytest.raises(Busy):
            await orchestrator.teardown()

        tool.gate.set()
        result = await first
        assert result.actual == 2
        # Only the admitted request reached the tool
        assert len(tool.provision_specs) == 1
        assert tool.destroy_specs == []
        assert get_metrics().get_counter(MetricNames.FLEET_BUSY, fleet="default").count == 2

    @pytest.mark.asyncio
    async def test_fleets_provision_independently(self, registry):
        guard = FleetGuard()
        tool_a, tool_b = FakeTool(), FakeTool()
        tool_a.gate = asyncio.Event()
        a = _orchestrator(FleetConfig(name="course-a"), registry, tool_a, guard)
        b = _orchestrator(FleetConfig(name="course-b"), registry, tool_b, guard)

        pending = asyncio.create_task(a.provision(1))
        while not tool_a.provision_specs:
            await asyncio.sleep(0)

        result = await b.provision(1)
        assert result.fleet == "course-b"

        tool_a.gate.set()
        await pending

    @pytest.mark.asyncio
    async def test_fleets_get_distinct_instance_ids(self, registry):
        guard = FleetGuard()
        a = _orchestrator(FleetConfig(name="course-a"), registry, FakeTool(), guard)
        b = _orchestrator(FleetConfig(name="course-b"), registry, FakeTool(), guard)

        first = await a.provision(2)
        second = await b.provision(2)

        assert set(first.instance_ids).isdisjoint(second.instance_ids)
        assert registry.count() == 4

    @pytest.mark.asyncio
    async def test_duplicate_instance_id_is_not_retryable(self, fleet, registry):
        registry.insert_batch(
            [NewVm(id="i-default-0001", fleet="default", instance_name="lablink-vm-default-1")]
        )
        orchestrator = _orchestrator(fleet, registry, FakeTool())

        with pytest.raises(RegistrationConflict) as exc_info:
            await orchestrator.provision(2)

        error = exc_info.value
        assert error.retryable is False
        assert error.instance_ids == ["i-default-0001", "i-default-0002"]
        assert error.to_dict()["error"] == "registration_conflict"
        # All or nothing: the second instance was not registered either
        assert registry.count() == 1
        assert get_metrics().get_counter(MetricNames.PROVISION_FAILURES, fleet="default").count == 1
        assert not orchestrator.guard.is_busy("default")

    @pytest.mark.asyncio
    async def test_readiness_reported_during_apply_survives_insert(self, fleet, registry):
        listener = NotificationListener(registry, InMemoryReadinessChannel())
        tool = FakeTool()
        tool.gate = asyncio.Event()
        orchestrator = _orchestrator(fleet, registry, tool)

        pending = asyncio.create_task(orchestrator.provision(1))
        while not tool.provision_specs:
            await asyncio.sleep(0)
        # The VM boots and reports before the tool has returned
        assert listener.handle_signal("lablink-vm-default-1") == ReadinessOutcome.PENDING
        tool.gate.set()
        await pending

        handle = AssignmentEngine(registry, "default").request_assignment("alice@example.com")

        assert handle.state == VmState.RUNNING
        assert registry.pending_readiness() == []

    @pytest.mark.asyncio
    async def test_registry_calls_run_off_the_event_loop(self, fleet, registry, monkeypatch):
        loop_thread = threading.get_ident()
        seen = {}

        def recording(name, call):
            def wrapper(*args, **kwargs):
                seen[name] = threading.get_ident()
                return call(*args, **kwargs)

            return wrapper

        for name in ("list", "insert_batch", "mark_terminated_batch"):
            monkeypatch.setattr(registry, name, recording(name, getattr(registry, name)))
        orchestrator = _orchestrator(fleet, registry, FakeTool())

        await orchestrator.provision(1)
        await orchestrator.teardown()

        assert set(seen) == {"list", "insert_batch", "mark_terminated_batch"}
        assert loop_thread not in seen.values()


class TestTeardown:
    @pytest.mark.asyncio
    async def test_teardown_terminates_active_records(self, fleet, registry, make_vms):
        registry.insert_batch(make_vms(3))
        registry.insert_batch(make_vms(1, fleet="other"))
        registry.claim_one(VmFilter(fleet="default"), requester="alice@example.com")
        janitor = FakeJanitor()
        tool = FakeTool()

        result = await _orchestrator(fleet, registry, tool, janitor=janitor).teardown()

        assert sorted(result.terminated_ids) == ["i-default0001", "i-default0002", "i-default0003"]
        assert sorted(tool.destroy_specs[0].instance_ids) == sorted(result.terminated_ids)
        assert registry.count(VmFilter(fleet="default", states=[VmState.TERMINATED])) == 3
        assert registry.get("i-other0001").state == VmState.AVAILABLE

        assert janitor.suffixes == ["default"]
        assert result.cleaned_resources == ["security_group:sg-default"]
        assert result.cleanup_failures == {"key_pair:k-1": "InvalidKeyPair.NotFound"}

    @pytest.mark.asyncio
    async def test_teardown_failure_leaves_records(self, fleet, registry, make_vms):
        registry.insert_batch(make_vms(2))
        janitor = FakeJanitor()
        orchestrator = _orchestrator(fleet, registry, FakeTool(destroy_ok=False), janitor=janitor)

        with pytest.raises(ToolFailure) as exc_info:
            await orchestrator.teardown()

        assert "destroy failed" in exc_info.value.diagnostics
        assert registry.count(VmFilter(states=[VmState.AVAILABLE])) == 2
        assert janitor.suffixes == []

    @pytest.mark.asyncio
    async def test_teardown_timeout_leaves_records(self, fleet, registry, make_vms):
        registry.insert_batch(make_vms(2))
        orchestrator = _orchestrator(fleet, registry, FakeTool(error=ToolTimeout("destroy", 60)))

        with pytest.raises(ToolTimeout):
            await orchestrator.teardown()

        assert registry.count(VmFilter(states=[VmState.AVAILABLE])) == 2

    @pytest.mark.asyncio
    async def test_cleanup_disabled_skips_janitor(self, registry, make_vms):
        registry.insert_batch(make_vms(1))
        janitor = FakeJanitor()
        fleet = FleetConfig(name="default", cleanup_enabled=False)

        result = await _orchestrator(fleet, registry, FakeTool(), janitor=janitor).teardown()

        assert janitor.suffixes == []
        assert result.cleaned_resources == []

    @pytest.mark.asyncio
    async def test_teardown_of_empty_fleet(self, fleet, registry):
        result = await _orchestrator(fleet, registry, FakeTool()).teardown()

        assert result.terminated_ids == []

    @pytest.mark.asyncio
    async def test_repeated_teardown_is_idempotent(self, fleet, registry, make_vms):
        registry.insert_batch(make_vms(2))
        orchestrator = _orchestrator(fleet, registry, FakeTool())

        await orchestrator.teardown()
        second = await orchestrator.teardown()

        assert second.terminated_ids == []
        assert registry.count(VmFilter(states=[VmState.TERMINATED])) == 2


class TestInstanceFailure:
    def test_assigned_vm_returns_to_pool(self, fleet, registry, make_vms):
        registry.insert_batch(make_vms(2))
        claimed = registry.claim_one(VmFilter(fleet="default"), requester="alice@example.com")
        orchestrator = _orchestrator(fleet, registry, FakeTool())

        unwound = orchestrator.report_instance_failure([claimed.id, "i-default0002", "i-ghost"])

        assert unwound == [claimed.id]
        view = registry.get(claimed.id)
        assert view.state == VmState.AVAILABLE
        assert view.assigned_to is None
        assert get_metrics().get_counter(MetricNames.VM_UNWOUND, fleet="default").count == 1

    def test_running_vm_is_not_unwound(self, fleet, registry, make_vms):
        registry.insert_batch(make_vms(1))
        claimed = registry.claim_one(VmFilter(fleet="default"), requester="alice@example.com")
        registry.mark_running(claimed.id, "host-1")

        unwound = _orchestrator(fleet, registry, FakeTool()).report_instance_failure([claimed.id])

        assert unwound == []
        assert registry.get(claimed.id).state == VmState.RUNNING
