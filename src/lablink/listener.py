"""
Notification listener.

Consumes readiness signals and moves the matching VM from assigned to
running. Signals that arrive before the VM is claimed are remembered on the
available record and applied at claim time. Signals that match no record at
all are parked by hostname and applied when that VM is inserted, so the order
of insertion, claim and readiness does not matter.
"""

import asyncio
import random
from enum import Enum
from typing import Optional

from .config import ListenerConfig
from .errors import ChannelError, InvalidTransition, StorageError
from .logging import EventType, get_logger
from .metrics import MetricNames, get_metrics
from .notifications import ReadinessChannel, ReadinessSignal
from .registry import VmRegistry
from .state_machine import VmState

# Claims and inserts racing a signal can move or create the record between lookups
MAX_MATCH_ATTEMPTS = 3


class ReadinessOutcome(str, Enum):
    APPLIED = "applied"
    DEFERRED = "deferred"
    DUPLICATE = "duplicate"
    PENDING = "pending"
    UNMATCHED = "unmatched"


class NotificationListener:
    """Background consumer of a readiness channel."""

    def __init__(
        self,
        registry: VmRegistry,
        channel: ReadinessChannel,
        config: Optional[ListenerConfig] = None,
    ):
        self.registry = registry
        self.channel = channel
        self.config = config or ListenerConfig()
        self.logger = get_logger("lablink.listener")
        self.metrics = get_metrics()
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._connected = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def handle_signal(self, hostname: str) -> ReadinessOutcome:
        """Apply one readiness signal. Idempotent; never raises for unknown hosts."""
        self.logger.log_readiness(
            EventType.READINESS_RECEIVED, hostname, f"Readiness signal from {hostname}"
        )
        outcome = self._apply(hostname)
        self.metrics.increment_counter(
            MetricNames.READINESS_SIGNALS, labels={"outcome": outcome.value}
        )
        return outcome

    def _apply(self, hostname: str) -> ReadinessOutcome:
        for _ in range(MAX_MATCH_ATTEMPTS):
            assigned = self.registry.find_by_hostname(hostname, [VmState.ASSIGNED])
            if assigned is not None:
                try:
                    view = self.registry.mark_running(assigned.id, hostname)
                except InvalidTransition:
                    continue
                self.logger.log_readiness(
                    EventType.READINESS_APPLIED,
                    hostname,
                    f"VM {view.id} is running on {hostname}",
                    vm_id=view.id,
                    fleet=view.fleet,
                    requester=view.assigned_to,
                )
                return ReadinessOutcome.APPLIED

            available = self.registry.find_by_hostname(hostname, [VmState.AVAILABLE])
            if available is not None:
                if self.registry.record_readiness(available.id, hostname):
                    self.logger.log_readiness(
                        EventType.READINESS_DEFERRED,
                        hostname,
                        f"VM {available.id} ready before assignment; recorded for claim time",
                        vm_id=available.id,
                        fleet=available.fleet,
                    )
                    return ReadinessOutcome.DEFERRED
                # Claimed between lookup and write; retry as an assigned match
                continue

            running = self.registry.find_by_hostname(hostname, [VmState.RUNNING])
            if running is not None:
                self.logger.log_readiness(
                    EventType.READINESS_RECEIVED,
                    hostname,
                    f"Duplicate readiness signal for running VM {running.id}",
                    vm_id=running.id,
                    fleet=running.fleet,
                )
                return ReadinessOutcome.DUPLICATE

            if self.registry.park_readiness(hostname):
                # The VM may be reporting before its record is inserted
                self.logger.log_readiness(
                    EventType.READINESS_UNMATCHED,
                    hostname,
                    f"No registered VM matches {hostname}; signal held until one is inserted",
                )
                self.metrics.increment_counter(MetricNames.READINESS_UNMATCHED)
                return ReadinessOutcome.PENDING
            # A matching record was inserted meanwhile; match again

        self.logger.log_readiness(
            EventType.READINESS_UNMATCHED,
            hostname,
            f"Readiness signal from {hostname} kept losing races with concurrent writers; discarded",
        )
        self.metrics.increment_counter(MetricNames.READINESS_UNMATCHED)
        return ReadinessOutcome.UNMATCHED

    async def _handle(self, signal: ReadinessSignal) -> ReadinessOutcome:
        return await asyncio.to_thread(self.handle_signal, signal.hostname)

    async def run_once(self) -> int:
        """Drain the signals currently pending on the channel.

        Each signal is acknowledged only after it was handled. Returns the
        number of signals handled.
        """
        if not self._connected:
            await self.channel.connect()
            self._connected = True

        handled = 0
        while True:
            signals = await self.channel.fetch(self.config.batch_size)
            for signal in signals:
                await self._handle(signal)
                await self.channel.ack(signal)
                handled += 1
            if len(signals) < self.config.batch_size:
                return handled

    async def start(self) -> None:
        """Start consuming in a background task."""
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name="lablink-readiness-listener")
        self.logger.log_event(
            EventType.LISTENER_START,
            "Readiness listener started",
            metadata={"channel": type(self.channel).__name__},
        )

    async def stop(self) -> None:
        """Stop the background task and close the channel."""
        if self._task is None:
            return
        self._stop_event.set()
        try:
            await asyncio.wait_for(self._task, timeout=self.config.reconnect_max_delay)
        except asyncio.TimeoutError:
            self._task.cancel()
        self._task = None
        await self.channel.close()
        self._connected = False
        self.logger.log_event(EventType.LISTENER_STOP, "Readiness listener stopped")

    async def _run(self) -> None:
        delay = self.config.reconnect_initial_delay
        while not self._stop_event.is_set():
            try:
                handled = await self.run_once()
                delay = self.config.reconnect_initial_delay
            except (StorageError, ChannelError) as e:
                self._connected = False
                wait = self._backoff(delay)
                self.logger.warning(
                    f"Readiness channel failed, reconnecting in {wait:.2f}s: {e}",
                    event_type=EventType.LISTENER_RECONNECT,
                    metadata={"error": e.to_dict()},
                )
                self.metrics.increment_counter(MetricNames.LISTENER_RECONNECTS)
                delay = min(delay * 2, self.config.reconnect_max_delay)
                await self._sleep(wait)
                continue

            if handled == 0:
                await self._sleep(self.config.poll_interval)

    def _backoff(self, delay: float) -> float:
        """Exponential backoff with jitter, capped at the configured maximum."""
        return min(delay + random.uniform(0, delay / 2), self.config.reconnect_max_delay)

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
