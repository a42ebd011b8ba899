"""
Integration tests for readiness delivery: channels, the notification
listener and its interaction with assignment.
"""

import asyncio
from datetime import timedelta

import pytest

from lablink.assignment import AssignmentEngine
from lablink.config import ListenerConfig
from lablink.errors import ChannelError
from lablink.listener import NotificationListener, ReadinessOutcome
from lablink.metrics import MetricNames, get_metrics
from lablink.models.api import VmFilter
from lablink.notifications import InMemoryReadinessChannel, RegistryReadinessChannel
from lablink.registry import VmRegistry
from lablink.state_machine import VmState

FAST = ListenerConfig(
    channel="memory",
    poll_interval=0.01,
    batch_size=2,
    reconnect_initial_delay=0.01,
    reconnect_max_delay=0.05,
)


@pytest.fixture
def file_registry(file_db):
    """Registry shared by the event loop and the listener's worker threads."""
    return VmRegistry(file_db)


class FlakyChannel(InMemoryReadinessChannel):
    """Fails the first ``failures`` fetches as if the broker dropped the connection."""

    def __init__(self, failures):
        super().__init__()
        self.failures = failures
        self.connects = 0

    async def connect(self):
        self.connects += 1
        await super().connect()

    async def fetch(self, limit):
        if self.failures > 0:
            self.failures -= 1
            raise ChannelError("connection reset")
        return await super().fetch(limit)


async def _wait_for(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class TestReadinessOrdering:
    def test_claim_then_ready_moves_to_running(self, registry, make_vms):
        registry.insert_batch(make_vms(1))
        handle = AssignmentEngine(registry, "default").request_assignment("alice@example.com")
        listener = NotificationListener(registry, InMemoryReadinessChannel())

        outcome = listener.handle_signal("lablink-vm-default-1")

        assert outcome == ReadinessOutcome.APPLIED
        view = registry.get(handle.vm_id)
        assert view.state == VmState.RUNNING
        assert view.hostname == "lablink-vm-default-1"
        assert view.ready_at is not None

    def test_ready_then_claim_moves_to_running(self, registry, make_vms):
        registry.insert_batch(make_vms(1))
        listener = NotificationListener(registry, InMemoryReadinessChannel())

        outcome = listener.handle_signal("10.0.0.1")
        assert outcome == ReadinessOutcome.DEFERRED
        assert registry.get("i-default0001").state == VmState.AVAILABLE

        handle = AssignmentEngine(registry, "default").request_assignment("alice@example.com")

        assert handle.state == VmState.RUNNING
        assert registry.get(handle.vm_id).state == VmState.RUNNING
        assert registry.get(handle.vm_id).hostname == "10.0.0.1"

    def test_duplicate_signal_is_harmless(self, registry, make_vms):
        registry.insert_batch(make_vms(1))
        AssignmentEngine(registry, "default").request_assignment("alice@example.com")
        listener = NotificationListener(registry, InMemoryReadinessChannel())

        assert listener.handle_signal("lablink-vm-default-1") == ReadinessOutcome.APPLIED
        assert listener.handle_signal("lablink-vm-default-1") == ReadinessOutcome.DUPLICATE
        assert registry.count(VmFilter(states=[VmState.RUNNING])) == 1

    def test_unknown_host_is_held(self, registry, make_vms):
        registry.insert_batch(make_vms(1))
        listener = NotificationListener(registry, InMemoryReadinessChannel())

        assert listener.handle_signal("ghost-host") == ReadinessOutcome.PENDING
        assert registry.get("i-default0001").state == VmState.AVAILABLE
        assert registry.pending_readiness() == ["ghost-host"]
        assert get_metrics().get_counter(MetricNames.READINESS_UNMATCHED).count == 1

    def test_terminated_vm_does_not_match(self, registry, make_vms):
        registry.insert_batch(make_vms(1))
        registry.mark_terminated("i-default0001")
        listener = NotificationListener(registry, InMemoryReadinessChannel())

        assert listener.handle_signal("lablink-vm-default-1") == ReadinessOutcome.PENDING
        assert registry.get("i-default0001").state == VmState.TERMINATED

    @pytest.mark.asyncio
    async def test_ready_before_insert_then_claim_moves_to_running(self, registry, make_vms):
        channel = InMemoryReadinessChannel()
        listener = NotificationListener(registry, channel)

        channel.publish("lablink-vm-default-1")
        assert await listener.run_once() == 1
        assert channel.pending() == 0

        registry.insert_batch(make_vms(1))
        assert registry.get("i-default0001").ready_at is not None
        handle = AssignmentEngine(registry, "default").request_assignment("alice@example.com")
        await listener.run_once()

        assert handle.state == VmState.RUNNING
        view = registry.get(handle.vm_id)
        assert view.state == VmState.RUNNING
        assert view.hostname == "lablink-vm-default-1"
        assert registry.pending_readiness() == []

    def test_held_signal_matches_by_address(self, registry, make_vms):
        listener = NotificationListener(registry, InMemoryReadinessChannel())
        listener.handle_signal("10.0.0.2")

        registry.insert_batch(make_vms(2))

        assert registry.get("i-default0001").ready_at is None
        assert registry.get("i-default0002").hostname == "10.0.0.2"

    def test_stale_held_signal_is_dropped_on_insert(self, registry, make_vms, monkeypatch):
        listener = NotificationListener(registry, InMemoryReadinessChannel())
        listener.handle_signal("lablink-vm-default-1")
        monkeypatch.setattr("lablink.registry.PENDING_READINESS_TTL", timedelta(seconds=-60))

        registry.insert_batch(make_vms(1))

        view = registry.get("i-default0001")
        assert view.hostname is None
        assert view.ready_at is None
        assert registry.pending_readiness() == []

    def test_park_refuses_when_record_appeared(self, registry, make_vms):
        registry.insert_batch(make_vms(1))

        assert registry.park_readiness("lablink-vm-default-1") is False
        assert registry.pending_readiness() == []


class TestChannels:
    @pytest.mark.asyncio
    async def test_in_memory_signals_stay_until_acked(self):
        channel = InMemoryReadinessChannel()
        await channel.connect()
        signal = channel.publish("host-1")

        assert await channel.fetch(10) == [signal]
        assert await channel.fetch(10) == [signal]

        await channel.ack(signal)
        assert await channel.fetch(10) == []

    @pytest.mark.asyncio
    async def test_in_memory_bounded_queue(self):
        channel = InMemoryReadinessChannel(maxsize=1)
        channel.publish("host-1")

        with pytest.raises(ChannelError):
            channel.publish("host-2")

    @pytest.mark.asyncio
    async def test_fetch_requires_connection(self, registry):
        with pytest.raises(ChannelError):
            await InMemoryReadinessChannel().fetch(1)
        with pytest.raises(ChannelError):
            await RegistryReadinessChannel(registry).fetch(1)

    @pytest.mark.asyncio
    async def test_registry_channel_is_durable(self, registry):
        publisher = RegistryReadinessChannel(registry)
        publisher.publish("host-1")
        publisher.publish("host-2")

        # A fresh channel over the same store sees the same pending events
        consumer = RegistryReadinessChannel(registry)
        await consumer.connect()
        signals = await consumer.fetch(10)
        assert [s.hostname for s in signals] == ["host-1", "host-2"]

        await consumer.ack(signals[0])
        assert [s.hostname for s in await consumer.fetch(10)] == ["host-2"]


class TestListenerLoop:
    @pytest.mark.asyncio
    async def test_run_once_drains_in_batches(self, registry, make_vms):
        registry.insert_batch(make_vms(3))
        engine = AssignmentEngine(registry, "default")
        for n in range(3):
            engine.request_assignment(f"student{n}@example.com")

        channel = InMemoryReadinessChannel()
        for n in range(1, 4):
            channel.publish(f"lablink-vm-default-{n}")
        channel.publish("ghost-host")
        listener = NotificationListener(registry, channel, FAST)

        handled = await listener.run_once()

        assert handled == 4
        assert channel.pending() == 0
        assert registry.count(VmFilter(states=[VmState.RUNNING])) == 3

    @pytest.mark.asyncio
    async def test_run_once_with_registry_channel(self, file_registry, make_vms):
        registry = file_registry
        registry.insert_batch(make_vms(1))
        AssignmentEngine(registry, "default").request_assignment("alice@example.com")
        channel = RegistryReadinessChannel(registry)
        channel.publish("lablink-vm-default-1")

        handled = await NotificationListener(registry, channel, FAST).run_once()

        assert handled == 1
        assert registry.get("i-default0001").state == VmState.RUNNING
        assert registry.fetch_pending_readiness() == []

    @pytest.mark.asyncio
    async def test_background_listener_applies_signals(self, file_registry, make_vms):
        registry = file_registry
        registry.insert_batch(make_vms(1))
        AssignmentEngine(registry, "default").request_assignment("alice@example.com")
        channel = InMemoryReadinessChannel()
        listener = NotificationListener(registry, channel, FAST)

        await listener.start()
        assert listener.running
        channel.publish("lablink-vm-default-1")

        await _wait_for(lambda: registry.get("i-default0001").state == VmState.RUNNING)
        await listener.stop()

        assert not listener.running
        assert channel.connected is False

    @pytest.mark.asyncio
    async def test_listener_reconnects_after_channel_failure(self, file_registry, make_vms):
        registry = file_registry
        registry.insert_batch(make_vms(1))
        AssignmentEngine(registry, "default").request_assignment("alice@example.com")
        channel = FlakyChannel(failures=2)
        channel.publish("lablink-vm-default-1")
        listener = NotificationListener(registry, channel, FAST)

        await listener.start()
        await _wait_for(lambda: channel.pending() == 0)
        await listener.stop()

        assert registry.get("i-default0001").state == VmState.RUNNING
        assert channel.connects >= 3
        assert get_metrics().get_counter(MetricNames.LISTENER_RECONNECTS).count == 2

    @pytest.mark.asyncio
    async def test_stop_without_start_is_noop(self, registry):
        listener = NotificationListener(registry, InMemoryReadinessChannel(), FAST)
        await listener.stop()
        assert not listener.running
