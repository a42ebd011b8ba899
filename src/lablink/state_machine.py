"""
Lifecycle states of a VM record and the transitions allowed between them.
"""

from enum import Enum
from typing import Dict, FrozenSet

from .errors import InvalidTransition


class VmState(str, Enum):
    AVAILABLE = "available"
    ASSIGNED = "assigned"
    RUNNING = "running"
    TERMINATED = "terminated"


# terminated -> terminated is kept as a no-op so termination stays idempotent
TRANSITIONS: Dict[VmState, FrozenSet[VmState]] = {
    VmState.AVAILABLE: frozenset({VmState.ASSIGNED, VmState.TERMINATED}),
    VmState.ASSIGNED: frozenset({VmState.RUNNING, VmState.AVAILABLE, VmState.TERMINATED}),
    VmState.RUNNING: frozenset({VmState.TERMINATED}),
    VmState.TERMINATED: frozenset({VmState.TERMINATED}),
}

# States that still hold cloud resources
ACTIVE_STATES = (VmState.AVAILABLE, VmState.ASSIGNED, VmState.RUNNING)
HELD_STATES = (VmState.ASSIGNED, VmState.RUNNING)


def can_transition(current: VmState, target: VmState) -> bool:
    """Return True if ``current -> target`` is a legal lifecycle transition."""
    return VmState(target) in TRANSITIONS[VmState(current)]


def sources_for(target: VmState) -> FrozenSet[VmState]:
    """All states from which ``target`` may be reached."""
    target = VmState(target)
    return frozenset(state for state, allowed in TRANSITIONS.items() if target in allowed)


def validate_transition(vm_id: str, current: VmState, target: VmState) -> None:
    """Raise InvalidTransition unless ``current -> target`` is allowed."""
    if not can_transition(current, target):
        raise InvalidTransition(vm_id, VmState(current).value, VmState(target).value)
