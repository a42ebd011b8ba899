"""
Assignment engine: hands out exactly one available VM per request.
"""

from .errors import InvalidTransition, NoCapacity, NotFound
from .logging import get_logger
from .metrics import MetricNames, get_metrics
from .models.api import VmFilter, VmHandle
from .registry import VmRegistry


class AssignmentEngine:
    """Claims VMs for requesters without blocking or queueing.

    The registry is consulted on every request; availability is never cached
    in process.
    """

    def __init__(self, registry: VmRegistry, fleet: str):
        self.registry = registry
        self.fleet = fleet
        self.logger = get_logger("lablink.assignment")
        self.metrics = get_metrics()

    def request_assignment(self, requester: str, payload: str = "") -> VmHandle:
        """Claim one available VM for ``requester``.

        Raises:
            ValueError: requester is empty
            NoCapacity: no available VM in the fleet; the caller may retry
                later or trigger provisioning
            StorageError: the registry is unreachable
        """
        if not requester or not requester.strip():
            raise ValueError("requester must not be empty")
        requester = requester.strip()

        try:
            view = self.registry.claim_one(
                VmFilter(fleet=self.fleet), requester=requester, payload=payload
            )
        except NotFound:
            self.logger.log_no_capacity(self.fleet, requester)
            self.metrics.increment_counter(MetricNames.VM_NO_CAPACITY, fleet=self.fleet)
            raise NoCapacity(self.fleet)

        self.logger.log_vm_claimed(
            self.fleet,
            view.id,
            requester,
            metadata={"instance_name": view.instance_name, "address": view.address},
        )
        self.metrics.increment_counter(MetricNames.VM_CLAIMS, fleet=self.fleet)

        # The VM may have reported readiness before anyone claimed it
        if view.hostname:
            try:
                view = self.registry.mark_running(view.id, view.hostname)
            except InvalidTransition:
                # Already moved on by the listener or an operator
                view = self.registry.get(view.id)

        return VmHandle.from_view(view)
