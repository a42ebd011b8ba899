"""
Allocator service: the collaborator interface over the registry, assignment
engine, provisioning orchestrators and readiness listener.
"""

from typing import Dict, List, Optional, Sequence

from .assignment import AssignmentEngine
from .config import LablinkConfig
from .errors import UnknownFleet
from .fleet_guard import FleetGuard
from .listener import NotificationListener
from .logging import EventType, get_logger
from .metrics import MetricNames, get_metrics
from .models.api import FleetSummary, ProvisionResult, TeardownResult, VmFilter, VmHandle, VmView
from .notifications import InMemoryReadinessChannel, ReadinessChannel, ReadinessSignal, RegistryReadinessChannel
from .orchestrator import ProvisioningOrchestrator
from .persistence import DatabaseManager, init_database
from .registry import VmRegistry
from .tools import ProvisioningTool, ResourceJanitor, build_tool


class AllocatorService:
    """Entry point used by the HTTP adapter and by tests."""

    def __init__(
        self,
        config: LablinkConfig,
        registry: VmRegistry,
        orchestrators: Dict[str, ProvisioningOrchestrator],
        channel: ReadinessChannel,
        listener: NotificationListener,
    ):
        self.config = config
        self.registry = registry
        self.orchestrators = orchestrators
        self.channel = channel
        self.listener = listener
        self.logger = get_logger("lablink.service")
        self.metrics = get_metrics()
        self._engines: Dict[str, AssignmentEngine] = {}

    def _fleet_name(self, fleet: Optional[str]) -> str:
        try:
            return self.config.fleet(fleet).name
        except KeyError:
            raise UnknownFleet(fleet)

    def engine(self, fleet: Optional[str] = None) -> AssignmentEngine:
        name = self._fleet_name(fleet)
        if name not in self._engines:
            self._engines[name] = AssignmentEngine(self.registry, name)
        return self._engines[name]

    def orchestrator(self, fleet: Optional[str] = None) -> ProvisioningOrchestrator:
        name = self._fleet_name(fleet)
        if name not in self.orchestrators:
            raise UnknownFleet(name)
        return self.orchestrators[name]

    # -- assignment -------------------------------------------------------------

    def request_assignment(
        self, requester: str, payload: str = "", fleet: Optional[str] = None
    ) -> VmHandle:
        """Claim one VM. Raises NoCapacity when the fleet has none available."""
        return self.engine(fleet).request_assignment(requester, payload)

    # -- provisioning -------------------------------------------------------------

    async def request_provision(self, count: int, fleet: Optional[str] = None) -> ProvisionResult:
        return await self.orchestrator(fleet).provision(count)

    async def request_teardown(self, fleet: Optional[str] = None) -> TeardownResult:
        return await self.orchestrator(fleet).teardown()

    def report_instance_failure(self, vm_ids: Sequence[str], fleet: Optional[str] = None) -> List[str]:
        return self.orchestrator(fleet).report_instance_failure(vm_ids)

    # -- VM reports -------------------------------------------------------------

    def report_readiness(self, hostname: str) -> ReadinessSignal:
        """Publish a readiness signal; it is applied asynchronously by the listener."""
        signal = self.channel.publish(hostname)
        self.logger.debug(
            f"Readiness signal queued for {hostname}",
            event_type=EventType.READINESS_RECEIVED,
            hostname=hostname,
            metadata={"event_id": signal.event_id},
        )
        return signal

    def report_in_use(self, hostname: str, in_use: bool) -> VmView:
        view = self.registry.update_in_use(hostname, in_use)
        self.logger.log_event(
            EventType.VM_STATUS_REPORT,
            f"VM {view.id} in-use status: {in_use}",
            vm_id=view.id,
            fleet=view.fleet,
            hostname=hostname,
        )
        return view

    def report_health(self, hostname: str, status: str) -> VmView:
        view = self.registry.update_health(hostname, status)
        self.logger.log_event(
            EventType.VM_STATUS_REPORT,
            f"VM {view.id} GPU health: {status}",
            vm_id=view.id,
            fleet=view.fleet,
            hostname=hostname,
        )
        return view

    # -- reads ------------------------------------------------------------------

    def list_vms(self, filter: Optional[VmFilter] = None) -> List[VmView]:
        return self.registry.list(filter)

    def fleet_summary(self, fleet: Optional[str] = None) -> FleetSummary:
        name = self._fleet_name(fleet)
        counts = self.registry.count_by_state(name)
        for state, n in counts.items():
            self.metrics.set_gauge(MetricNames.VMS_BY_STATE, n, fleet=name, labels={"state": state})
        return FleetSummary(fleet=name, counts=counts, total=sum(counts.values()))

    # -- lifecycle --------------------------------------------------------------

    async def start(self) -> None:
        await self.listener.start()

    async def stop(self) -> None:
        await self.listener.stop()


def build_service(
    config: LablinkConfig,
    db: Optional[DatabaseManager] = None,
    tools: Optional[Dict[str, ProvisioningTool]] = None,
    janitors: Optional[Dict[str, ResourceJanitor]] = None,
) -> AllocatorService:
    """Wire an AllocatorService from configuration.

    ``tools`` and ``janitors`` override the per-fleet collaborators that would
    otherwise be built from the fleet configuration.
    """
    db = db or init_database(config.database_url)
    registry = VmRegistry(db)
    guard = FleetGuard()
    tools = tools or {}
    janitors = janitors or {}

    orchestrators = {}
    for name, fleet in config.fleets.items():
        tool = tools.get(name) or build_tool(fleet, config)
        janitor = janitors.get(name)
        if janitor is None and fleet.cleanup_enabled:
            janitor = ResourceJanitor(fleet.region, dry_run=fleet.cleanup_dry_run)
        orchestrators[name] = ProvisioningOrchestrator(fleet, tool, registry, guard, janitor)

    if config.listener.channel == "memory":
        channel = InMemoryReadinessChannel()
    else:
        channel = RegistryReadinessChannel(registry)
    listener = NotificationListener(registry, channel, config.listener)

    return AllocatorService(config, registry, orchestrators, channel, listener)
