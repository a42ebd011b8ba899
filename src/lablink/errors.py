"""
Error taxonomy for the allocator.

Every error carries a stable ``code`` and a ``retryable`` flag so callers can
tell "try again later" apart from "an operator must intervene".
"""

from typing import Any, Dict, List, Optional


class LablinkError(Exception):
    """Base class for all allocator errors."""

    code = "lablink_error"
    retryable = False

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        """Structured representation for logs and API responses."""
        payload = {"error": self.code, "message": self.message, "retryable": self.retryable}
        payload.update(self.details)
        return payload


class NoCapacity(LablinkError):
    """No available VM could be claimed. Expected, user-facing."""

    code = "no_capacity"
    retryable = True

    def __init__(self, fleet: str):
        super().__init__(f"No available VMs in fleet '{fleet}'", fleet=fleet)
        self.fleet = fleet


class NotFound(LablinkError):
    """No registry record matched a claim filter."""

    code = "not_found"


class RecordNotFound(LablinkError):
    """A specific VM record (by id or hostname) does not exist."""

    code = "record_not_found"

    def __init__(self, key: str):
        super().__init__(f"VM record not found: {key}", key=key)
        self.key = key


class InvalidTransition(LablinkError):
    """A lifecycle transition was attempted from a state that does not allow it."""

    code = "invalid_transition"

    def __init__(self, vm_id: str, current: Optional[str], target: str):
        super().__init__(
            f"Invalid transition for VM {vm_id}: {current} -> {target}",
            vm_id=vm_id,
            current_state=current,
            target_state=target,
        )
        self.vm_id = vm_id
        self.current = current
        self.target = target


class StorageError(LablinkError):
    """The registry store is unreachable or rejected the operation."""

    code = "storage_error"
    retryable = True


class ChannelError(LablinkError):
    """The readiness notification channel is unavailable."""

    code = "channel_error"
    retryable = True


class Busy(LablinkError):
    """Another provisioning or teardown operation is in flight for the fleet."""

    code = "busy"
    retryable = True

    def __init__(self, fleet: str, in_flight: str):
        super().__init__(
            f"Fleet '{fleet}' is busy: {in_flight} already in progress",
            fleet=fleet,
            in_flight=in_flight,
        )
        self.fleet = fleet
        self.in_flight = in_flight


class ToolFailure(LablinkError):
    """The provisioning tool exited unsuccessfully."""

    code = "tool_failure"

    def __init__(self, message: str, diagnostics: str = "", exit_code: Optional[int] = None):
        super().__init__(message, diagnostics=diagnostics, exit_code=exit_code)
        self.diagnostics = diagnostics
        self.exit_code = exit_code


class ToolTimeout(LablinkError):
    """The provisioning tool did not finish within its hard timeout."""

    code = "tool_timeout"

    def __init__(self, operation: str, timeout_seconds: float, diagnostics: str = ""):
        super().__init__(
            f"Provisioning tool {operation} timed out after {timeout_seconds}s",
            operation=operation,
            timeout_seconds=timeout_seconds,
            diagnostics=diagnostics,
        )
        self.operation = operation
        self.timeout_seconds = timeout_seconds
        self.diagnostics = diagnostics


class PartialProvisioning(LablinkError):
    """Only a subset of the requested instances were created."""

    code = "partial_provisioning"

    def __init__(
        self,
        expected: int,
        actual: int,
        instance_ids: Optional[List[str]] = None,
        diagnostics: str = "",
    ):
        super().__init__(
            f"Partial provisioning: expected {expected} instances, got {actual}",
            expected=expected,
            actual=actual,
            instance_ids=instance_ids or [],
            diagnostics=diagnostics,
        )
        self.expected = expected
        self.actual = actual
        self.instance_ids = instance_ids or []
        self.diagnostics = diagnostics


class UnknownFleet(LablinkError):
    """The named fleet is not configured."""

    code = "unknown_fleet"

    def __init__(self, fleet: str):
        super().__init__(f"Fleet '{fleet}' is not configured", fleet=fleet)
        self.fleet = fleet


class RegistrationConflict(LablinkError):
    """Created instances could not be registered because their ids already exist.

    The instances exist in the cloud, so retrying the provision would create
    more of them. An operator must reconcile the registry first.
    """

    code = "registration_conflict"

    def __init__(self, instance_ids: List[str], reason: str = ""):
        super().__init__(
            f"Could not register {len(instance_ids)} created instances: duplicate instance id",
            instance_ids=list(instance_ids),
            reason=reason,
        )
        self.instance_ids = list(instance_ids)
