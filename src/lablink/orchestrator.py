"""
Provisioning orchestrator: grows and tears down a fleet through the
provisioning tool and records the outcome in the registry.

Only instances the tool confirms are ever inserted. The tool call runs
outside any registry transaction and is never retried automatically.
"""

import asyncio
from typing import List, Optional, Sequence

from .config import FleetConfig
from .errors import (
    Busy,
    InvalidTransition,
    PartialProvisioning,
    RecordNotFound,
    RegistrationConflict,
    ToolFailure,
    ToolTimeout,
)
from .fleet_guard import FleetGuard
from .logging import EventType, get_logger
from .metrics import MetricNames, Timer, get_metrics
from .models.api import NewVm, ProvisionResult, TeardownResult, VmFilter
from .registry import VmRegistry
from .state_machine import ACTIVE_STATES, VmState
from .tools.base import DestroySpec, ProvisioningTool, ProvisionSpec
from .tools.janitor import ResourceJanitor


class ProvisioningOrchestrator:
    """Serializes create and destroy operations for one fleet."""

    def __init__(
        self,
        fleet: FleetConfig,
        tool: ProvisioningTool,
        registry: VmRegistry,
        guard: FleetGuard,
        janitor: Optional[ResourceJanitor] = None,
    ):
        self.fleet = fleet
        self.tool = tool
        self.registry = registry
        self.guard = guard
        self.janitor = janitor
        self.logger = get_logger("lablink.orchestrator")
        self.metrics = get_metrics()

    def _active_ids(self) -> List[str]:
        views = self.registry.list(VmFilter(fleet=self.fleet.name, states=list(ACTIVE_STATES)))
        return [v.id for v in views]

    async def provision(self, count: int) -> ProvisionResult:
        """Create ``count`` instances and register the ones that exist.

        Raises:
            ValueError: count < 1
            Busy: another create or destroy is in flight for this fleet
            PartialProvisioning: some instances were created and registered
            ToolFailure: nothing was created
            ToolTimeout: the tool overran its hard timeout; nothing is assumed
        """
        if count < 1:
            raise ValueError("count must be >= 1")

        fleet = self.fleet.name
        self.metrics.increment_counter(MetricNames.PROVISION_REQUESTS, fleet=fleet)
        try:
            with self.guard.hold(fleet, "provision"):
                return await self._provision(count)
        except Busy as e:
            self._reject_busy(e)
            raise

    async def _provision(self, count: int) -> ProvisionResult:
        fleet = self.fleet.name
        self.logger.log_provision_start(fleet, count)

        spec = ProvisionSpec(
            fleet=fleet,
            count=count,
            machine_type=self.fleet.machine_type,
            image_name=self.fleet.image_name,
            region=self.fleet.region,
            timeout_seconds=self.fleet.tool_timeout_seconds,
            existing_instance_ids=await asyncio.to_thread(self._active_ids),
        )

        with Timer(self.metrics, MetricNames.PROVISION_DURATION, fleet=fleet) as timer:
            try:
                result = await self.tool.provision(spec)
            except ToolTimeout as e:
                self.metrics.increment_counter(MetricNames.TOOL_TIMEOUTS, fleet=fleet)
                self._fail(EventType.PROVISION_ERROR, MetricNames.PROVISION_FAILURES, e)
                raise
            except ToolFailure as e:
                self._fail(EventType.PROVISION_ERROR, MetricNames.PROVISION_FAILURES, e)
                raise

            created = result.created
            if not created:
                error = ToolFailure(
                    f"{self.tool.name} created no instances for fleet '{fleet}'",
                    diagnostics=result.diagnostics,
                    exit_code=result.exit_code,
                )
                self._fail(EventType.PROVISION_ERROR, MetricNames.PROVISION_FAILURES, error)
                raise error

            new_vms = [
                NewVm(id=i.instance_id, fleet=fleet, instance_name=i.name, address=i.address)
                for i in created
            ]
            try:
                views = await asyncio.to_thread(self.registry.insert_batch, new_vms)
            except RegistrationConflict as e:
                # The instances exist; a retried provision would duplicate them
                e.details["diagnostics"] = result.diagnostics
                self._fail(EventType.PROVISION_ERROR, MetricNames.PROVISION_FAILURES, e)
                raise
            self.metrics.increment_counter(MetricNames.INSTANCES_CREATED, len(views), fleet=fleet)

        instance_ids = [v.id for v in views]
        self.logger.log_provision_complete(
            fleet, count, len(views), timer.duration_ms, metadata={"instance_ids": instance_ids}
        )

        if len(views) < count:
            self.metrics.increment_counter(MetricNames.PROVISION_FAILURES, fleet=fleet)
            raise PartialProvisioning(
                expected=count,
                actual=len(views),
                instance_ids=instance_ids,
                diagnostics=result.diagnostics,
            )

        return ProvisionResult(
            fleet=fleet,
            expected=count,
            actual=len(views),
            instance_ids=instance_ids,
            duration_ms=timer.duration_ms,
        )

    async def teardown(self) -> TeardownResult:
        """Destroy the fleet, terminate its records and sweep orphaned resources.

        Records are terminated only after the tool reports success.
        """
        fleet = self.fleet.name
        self.metrics.increment_counter(MetricNames.TEARDOWN_REQUESTS, fleet=fleet)
        try:
            with self.guard.hold(fleet, "teardown"):
                return await self._teardown()
        except Busy as e:
            self._reject_busy(e)
            raise

    async def _teardown(self) -> TeardownResult:
        fleet = self.fleet.name
        instance_ids = await asyncio.to_thread(self._active_ids)
        self.logger.log_event(
            EventType.TEARDOWN_START,
            f"Tearing down fleet {fleet} ({len(instance_ids)} active VMs)",
            fleet=fleet,
            metadata={"instance_ids": instance_ids},
        )

        spec = DestroySpec(
            fleet=fleet,
            instance_ids=instance_ids,
            region=self.fleet.region,
            timeout_seconds=self.fleet.tool_timeout_seconds,
        )
        with Timer(self.metrics, MetricNames.TEARDOWN_DURATION, fleet=fleet) as timer:
            try:
                result = await self.tool.destroy(spec)
            except ToolTimeout as e:
                self.metrics.increment_counter(MetricNames.TOOL_TIMEOUTS, fleet=fleet)
                self._fail(EventType.TEARDOWN_ERROR, MetricNames.TEARDOWN_FAILURES, e)
                raise
            except ToolFailure as e:
                self._fail(EventType.TEARDOWN_ERROR, MetricNames.TEARDOWN_FAILURES, e)
                raise

            if not result.success:
                error = ToolFailure(
                    f"{self.tool.name} destroy failed for fleet '{fleet}'",
                    diagnostics=result.diagnostics,
                    exit_code=result.exit_code,
                )
                self._fail(EventType.TEARDOWN_ERROR, MetricNames.TEARDOWN_FAILURES, error)
                raise error

            # Re-read: records claimed or inserted while the tool ran are gone too
            active = await asyncio.to_thread(self._active_ids)
            terminated = await asyncio.to_thread(self.registry.mark_terminated_batch, active)

            cleaned: List[str] = []
            failures = {}
            if self.janitor is not None and self.fleet.cleanup_enabled:
                report = await asyncio.to_thread(self.janitor.cleanup, self.fleet.resource_suffix)
                cleaned, failures = report.removed, report.failures

        self.logger.log_event(
            EventType.TEARDOWN_COMPLETE,
            f"Fleet {fleet} torn down: {len(terminated)} VMs terminated ({timer.duration_ms:.1f}ms)",
            fleet=fleet,
            duration_ms=timer.duration_ms,
            metadata={"terminated": terminated, "cleaned": cleaned, "cleanup_failures": failures},
        )
        return TeardownResult(
            fleet=fleet,
            terminated_ids=terminated,
            cleaned_resources=cleaned,
            cleanup_failures=failures,
            duration_ms=timer.duration_ms,
        )

    def report_instance_failure(self, vm_ids: Sequence[str]) -> List[str]:
        """Return assigned VMs whose instances failed back to the available pool.

        Only ``assigned`` records are unwound; ids in any other state or
        unknown ids are logged and skipped. Returns the unwound ids.
        """
        unwound = []
        for vm_id in vm_ids:
            try:
                view = self.registry.get(vm_id)
            except RecordNotFound:
                self.logger.warning(f"Instance failure reported for unknown VM {vm_id}", vm_id=vm_id)
                continue
            if view.state != VmState.ASSIGNED:
                self.logger.info(
                    f"Instance failure for VM {vm_id} in state {view.state.value}; nothing to unwind",
                    vm_id=vm_id,
                    fleet=view.fleet,
                )
                continue
            try:
                self.registry.unwind_assignment(vm_id)
            except InvalidTransition:
                # Moved on concurrently (e.g. became running)
                continue
            unwound.append(vm_id)
            self.logger.log_event(
                EventType.VM_UNWOUND,
                f"Assignment of VM {vm_id} unwound after instance failure",
                vm_id=vm_id,
                fleet=view.fleet,
                requester=view.assigned_to,
            )
            self.metrics.increment_counter(MetricNames.VM_UNWOUND, fleet=view.fleet)
        return unwound

    def _reject_busy(self, error: Busy) -> None:
        self.logger.warning(
            str(error),
            event_type=EventType.FLEET_BUSY,
            fleet=error.fleet,
            metadata={"in_flight": error.in_flight},
        )
        self.metrics.increment_counter(MetricNames.FLEET_BUSY, fleet=error.fleet)

    def _fail(self, event_type: EventType, metric: str, error: Exception) -> None:
        self.logger.log_operation_error(event_type, self.fleet.name, error)
        self.metrics.increment_counter(metric, fleet=self.fleet.name)
