"""
Readiness notification channels.

A VM that finishes booting reports its hostname; the report is published to
a channel and consumed asynchronously by the notification listener.
"""

import asyncio
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Deque, List, Optional, Protocol

from .errors import ChannelError, StorageError
from .registry import VmRegistry


@dataclass(eq=False)
class ReadinessSignal:
    """A VM reporting that it is ready."""

    hostname: str
    event_id: Optional[int] = None
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ReadinessChannel(Protocol):
    """Delivery channel between readiness reporters and the listener."""

    async def connect(self) -> None: ...

    async def close(self) -> None: ...

    def publish(self, hostname: str) -> ReadinessSignal: ...

    async def fetch(self, limit: int) -> List[ReadinessSignal]:
        """Pending signals, oldest first; never blocks waiting for new ones."""
        ...

    async def ack(self, signal: ReadinessSignal) -> None:
        """Mark a signal as handled so it is not delivered again."""
        ...


class RegistryReadinessChannel:
    """Durable outbox channel backed by the ``readiness_events`` table.

    Signals survive process restarts and are redelivered until acknowledged,
    so delivery is at-least-once.
    """

    def __init__(self, registry: VmRegistry):
        self.registry = registry
        self.connected = False

    async def connect(self) -> None:
        try:
            await asyncio.to_thread(self.registry.count)
        except StorageError as e:
            self.connected = False
            raise ChannelError(f"Readiness outbox unavailable: {e}") from e
        self.connected = True

    async def close(self) -> None:
        self.connected = False

    def publish(self, hostname: str) -> ReadinessSignal:
        event_id = self.registry.enqueue_readiness(hostname)
        return ReadinessSignal(hostname=hostname, event_id=event_id)

    async def fetch(self, limit: int) -> List[ReadinessSignal]:
        if not self.connected:
            raise ChannelError("Readiness outbox is not connected")
        events = await asyncio.to_thread(self.registry.fetch_pending_readiness, limit)
        return [
            ReadinessSignal(hostname=e.hostname, event_id=e.id, received_at=e.created_at)
            for e in events
        ]

    async def ack(self, signal: ReadinessSignal) -> None:
        if signal.event_id is not None:
            await asyncio.to_thread(self.registry.ack_readiness, signal.event_id)


class InMemoryReadinessChannel:
    """Process-local channel for single-process deployments and tests.

    Signals stay queued until acknowledged, so a failed handling pass sees
    them again; nothing survives a restart.
    """

    def __init__(self, maxsize: int = 0):
        self.maxsize = maxsize
        self._pending: Deque[ReadinessSignal] = deque()
        self._lock = threading.Lock()
        self.connected = False

    async def connect(self) -> None:
        self.connected = True

    async def close(self) -> None:
        self.connected = False

    def publish(self, hostname: str) -> ReadinessSignal:
        signal = ReadinessSignal(hostname=hostname)
        with self._lock:
            if self.maxsize and len(self._pending) >= self.maxsize:
                raise ChannelError(f"Readiness queue is full (max {self.maxsize})")
            self._pending.append(signal)
        return signal

    async def fetch(self, limit: int) -> List[ReadinessSignal]:
        if not self.connected:
            raise ChannelError("Readiness queue is not connected")
        with self._lock:
            return list(self._pending)[:limit]

    async def ack(self, signal: ReadinessSignal) -> None:
        with self._lock:
            if signal in self._pending:
                self._pending.remove(signal)

    def pending(self) -> int:
        with self._lock:
            return len(self._pending)
