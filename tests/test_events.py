"""Tests for EventBus fan-out."""

from fleetcoord.events import EventBus, EventKind, FleetEvent


class TestEventBus:

    def test_fan_out_in_order(self):
        bus = EventBus()
        first, second = [], []
        bus.subscribe(first.append)
        bus.subscribe(second.append)

        event = FleetEvent(kind=EventKind.worker_registered, worker_id="w1")
        bus.emit(event)

        assert first == [event]
        assert second == [event]

    def test_failing_callback_does_not_block_others(self):
        bus = EventBus()
        received = []

        def _boom(event):
            raise RuntimeError("subscriber bug")

        bus.subscribe(_boom)
        bus.subscribe(received.append)
        bus.emit(FleetEvent(kind=EventKind.snapshot_updated))

        assert len(received) == 1

    def test_unsubscribe(self):
        bus = EventBus()
        received = []
        bus.subscribe(received.append)
        assert bus.has_subscribers

        bus.unsubscribe(received.append)
        bus.emit(FleetEvent(kind=EventKind.worker_disconnected))

        assert received == []
        assert not bus.has_subscribers

    def test_wire_names(self):
        assert EventKind.upstream_exhausted.value == "UpstreamExhausted"
        assert EventKind.rotation_suppressed.value == "RotationSuppressed"
