"""
Single-flight guard for provisioning operations.
Admits at most one create or destroy per fleet at a time; conflicting
requests are rejected immediately rather than queued.
"""

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterator, Optional

from .errors import Busy


@dataclass
class InFlightOperation:
    """An operation currently holding a fleet."""

    fleet: str
    operation: str
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class FleetGuard:
    """Thread-safe per-fleet single-flight flag."""

    def __init__(self):
        self._lock = threading.RLock()
        self._in_flight: Dict[str, InFlightOperation] = {}

    def try_acquire(self, fleet: str, operation: str) -> bool:
        """
        Mark ``operation`` as running for ``fleet``.
        Returns True if successfully marked, False if the fleet is already busy.
        """
        with self._lock:
            if fleet in self._in_flight:
                return False
            self._in_flight[fleet] = InFlightOperation(fleet=fleet, operation=operation)
            return True

    def release(self, fleet: str) -> None:
        """Clear the in-flight marker for ``fleet``."""
        with self._lock:
            self._in_flight.pop(fleet, None)

    def current(self, fleet: str) -> Optional[InFlightOperation]:
        """The operation holding ``fleet``, if any."""
        with self._lock:
            return self._in_flight.get(fleet)

    def is_busy(self, fleet: str) -> bool:
        with self._lock:
            return fleet in self._in_flight

    @contextmanager
    def hold(self, fleet: str, operation: str) -> Iterator[InFlightOperation]:
        """Hold ``fleet`` for the duration of the block; raises Busy if taken."""
        with self._lock:
            if not self.try_acquire(fleet, operation):
                raise Busy(fleet, self._in_flight[fleet].operation)
            held = self._in_flight[fleet]
        try:
            yield held
        finally:
            self.release(fleet)

    def get_status(self) -> Dict[str, Dict[str, str]]:
        """Snapshot of in-flight operations for all fleets."""
        with self._lock:
            return {
                fleet: {"operation": op.operation, "started_at": op.started_at.isoformat()}
                for fleet, op in self._in_flight.items()
            }
