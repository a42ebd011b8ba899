"""
Metrics Collection for the LabLink allocator

In-process counters, gauges and timers for claims, provisioning and
readiness handling. Every metric lives either in the global scope or in the
scope of one fleet; labels are folded into the key as ``name[k=v,...]``.
"""

import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class MetricValue:
    timestamp: datetime = field(default_factory=_now)


@dataclass
class CounterValue(MetricValue):
    count: int = 0

    def to_dict(self) -> Dict:
        return {"count": self.count, "timestamp": self.timestamp.isoformat()}


@dataclass
class GaugeValue(MetricValue):
    value: float = 0.0

    def to_dict(self) -> Dict:
        return {"value": self.value, "timestamp": self.timestamp.isoformat()}


@dataclass
class TimerValue(MetricValue):
    """Running statistics over recorded durations."""

    count: int = 0
    total_ms: float = 0.0
    min_ms: float = float("inf")
    max_ms: float = 0.0

    @property
    def avg_ms(self) -> float:
        return self.total_ms / self.count if self.count > 0 else 0.0

    def observe(self, duration_ms: float) -> None:
        self.count += 1
        self.total_ms += duration_ms
        self.min_ms = min(self.min_ms, duration_ms)
        self.max_ms = max(self.max_ms, duration_ms)
        self.timestamp = _now()

    def to_dict(self) -> Dict:
        return {
            "count": self.count,
            "total_ms": self.total_ms,
            "avg_ms": self.avg_ms,
            "min_ms": self.min_ms if self.count else 0,
            "max_ms": self.max_ms,
            "timestamp": self.timestamp.isoformat(),
        }


class MetricsCollector:
    """Thread-safe metrics collector."""

    def __init__(self):
        self._lock = threading.RLock()
        self._counters: Dict[str, CounterValue] = {}
        self._gauges: Dict[str, GaugeValue] = {}
        self._timers: Dict[str, TimerValue] = {}

        # Fleet name -> metric key -> value
        self._fleet_counters: Dict[str, Dict[str, CounterValue]] = defaultdict(dict)
        self._fleet_gauges: Dict[str, Dict[str, GaugeValue]] = defaultdict(dict)
        self._fleet_timers: Dict[str, Dict[str, TimerValue]] = defaultdict(dict)

    def increment_counter(
        self,
        name: str,
        value: int = 1,
        fleet: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ):
        with self._lock:
            counters = self._fleet_counters[fleet] if fleet else self._counters
            counter = counters.setdefault(self._build_key(name, labels), CounterValue())
            counter.count += value
            counter.timestamp = _now()

    def set_gauge(
        self,
        name: str,
        value: float,
        fleet: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ):
        with self._lock:
            gauges = self._fleet_gauges[fleet] if fleet else self._gauges
            gauges[self._build_key(name, labels)] = GaugeValue(value=value)

    def record_timer(
        self,
        name: str,
        duration_ms: float,
        fleet: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ):
        with self._lock:
            timers = self._fleet_timers[fleet] if fleet else self._timers
            timers.setdefault(self._build_key(name, labels), TimerValue()).observe(duration_ms)

    def get_counter(
        self, name: str, fleet: Optional[str] = None, labels: Optional[Dict[str, str]] = None
    ) -> Optional[CounterValue]:
        return self._lookup(self._counters, self._fleet_counters, name, fleet, labels)

    def get_gauge(
        self, name: str, fleet: Optional[str] = None, labels: Optional[Dict[str, str]] = None
    ) -> Optional[GaugeValue]:
        return self._lookup(self._gauges, self._fleet_gauges, name, fleet, labels)

    def get_timer(
        self, name: str, fleet: Optional[str] = None, labels: Optional[Dict[str, str]] = None
    ) -> Optional[TimerValue]:
        return self._lookup(self._timers, self._fleet_timers, name, fleet, labels)

    def get_fleet_metrics(self, fleet: str) -> Dict[str, Dict]:
        with self._lock:
            return {
                "counters": _dump(self._fleet_counters.get(fleet, {})),
                "timers": _dump(self._fleet_timers.get(fleet, {})),
                "gauges": _dump(self._fleet_gauges.get(fleet, {})),
            }

    def get_all_metrics(self) -> Dict[str, Dict]:
        """Snapshot of every metric, with per-fleet metrics under ``fleets``."""
        with self._lock:
            fleets = (
                self._fleet_counters.keys() | self._fleet_timers.keys() | self._fleet_gauges.keys()
            )
            return {
                "counters": _dump(self._counters),
                "gauges": _dump(self._gauges),
                "timers": _dump(self._timers),
                "fleets": {fleet: self.get_fleet_metrics(fleet) for fleet in fleets},
            }

    def reset_metrics(self, fleet: Optional[str] = None):
        """Drop one fleet's metrics, or everything when ``fleet`` is None."""
        with self._lock:
            if fleet:
                for scoped in (self._fleet_counters, self._fleet_timers, self._fleet_gauges):
                    scoped.pop(fleet, None)
                return
            for store in (
                self._counters,
                self._gauges,
                self._timers,
                self._fleet_counters,
                self._fleet_timers,
                self._fleet_gauges,
            ):
                store.clear()

    def _lookup(self, global_store, fleet_stores, name, fleet, labels):
        key = self._build_key(name, labels)
        with self._lock:
            if fleet:
                return fleet_stores.get(fleet, {}).get(key)
            return global_store.get(key)

    @staticmethod
    def _build_key(name: str, labels: Optional[Dict[str, str]] = None) -> str:
        if not labels:
            return name
        return f"{name}[{','.join(f'{k}={v}' for k, v in sorted(labels.items()))}]"


def _dump(values: Dict) -> Dict[str, Dict]:
    return {key: value.to_dict() for key, value in values.items()}


class Timer:
    """Records the duration of a ``with`` block as a timer metric."""

    def __init__(
        self,
        metrics: MetricsCollector,
        name: str,
        fleet: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ):
        self.metrics = metrics
        self.name = name
        self.fleet = fleet
        self.labels = labels
        self.duration_ms = 0.0
        self._started: Optional[float] = None

    def __enter__(self):
        self._started = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration_ms = (time.perf_counter() - self._started) * 1000
        self.metrics.record_timer(self.name, self.duration_ms, self.fleet, self.labels)


# Global metrics collector instance
metrics = MetricsCollector()


def get_metrics() -> MetricsCollector:
    return metrics


class MetricNames:
    """Metric names shared by the allocator components."""

    # HTTP adapter
    REQUESTS_TOTAL = "requests_total"
    REQUEST_DURATION = "request_duration_ms"
    REQUEST_ERRORS = "requests_errors_total"

    # Assignment and lifecycle
    VM_CLAIMS = "vm_claims_total"
    VM_NO_CAPACITY = "vm_no_capacity_total"
    VM_UNWOUND = "vm_unwound_total"
    VM_STATE_CHANGES = "vm_state_changes_total"
    VMS_BY_STATE = "vms"

    # Provisioning and teardown
    PROVISION_REQUESTS = "provision_requests_total"
    PROVISION_DURATION = "provision_duration_ms"
    PROVISION_FAILURES = "provision_failures_total"
    INSTANCES_CREATED = "instances_created_total"
    TEARDOWN_REQUESTS = "teardown_requests_total"
    TEARDOWN_DURATION = "teardown_duration_ms"
    TEARDOWN_FAILURES = "teardown_failures_total"
    FLEET_BUSY = "fleet_busy_total"
    TOOL_TIMEOUTS = "tool_timeouts_total"

    # Readiness
    READINESS_SIGNALS = "readiness_signals_total"
    READINESS_UNMATCHED = "readiness_unmatched_total"
    LISTENER_RECONNECTS = "listener_reconnects_total"
