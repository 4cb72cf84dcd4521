"""Tests for the Coordinator.

Covers:
- Channel sessions: register, routing, malformed frames, disconnect
- Outbound commands and broadcasts
- Staleness sweep wiring and alerts
- Failover wiring: local restart, settle window, suppression, exhaustion
- Lifecycle (start/stop)
"""

import json
import threading
from unittest.mock import MagicMock

import pytest

from fleetcoord.coordinator import Coordinator
from fleetcoord.errors import NotFoundError
from fleetcoord.events import EventBus, EventKind
from fleetcoord.failover import FailoverAction, FailoverController
from fleetcoord.models import StopCommand, WorkerStatus
from fleetcoord.registry import WorkerRegistry
from fleetcoord.upstreams import UpstreamRegistry

UPSTREAMS = [
    {"id": "a", "address": "tcp://a:3333", "priority": 0},
    {"id": "b", "address": "tcp://b:3333", "priority": 1},
    {"id": "c", "address": "tcp://c:3333", "priority": 2},
]

FAILURE = "[stratum] connection failed: upstream closed socket"


def register_frame(hostname="rig-01", hardware_id="aa:01", **extra):
    return json.dumps({"type": "register",
                       "hostInfo": {"hostname": hostname, "hardwareId": hardware_id}, **extra})


def status_frame(**metrics):
    return json.dumps({"type": "statusUpdate", "metrics": metrics})


@pytest.fixture
def events():
    received = []
    bus = EventBus()
    bus.subscribe(received.append)
    bus.received = received
    return bus


@pytest.fixture
def coord(registry, clock, events):
    failover = FailoverController(UpstreamRegistry(UPSTREAMS), threshold=3, cooldown=30, clock=clock)
    return Coordinator(
        registry, failover,
        events=events,
        executor=MagicMock(),
        alerts=MagicMock(),
        stale_threshold=600,
        settle_delay=5,
        clock=clock,
    )


def _kinds(events):
    return [e.kind for e in events.received if e.kind != EventKind.snapshot_updated]


def _connect(coord, make_channel, hostname="rig-01", **extra):
    channel = make_channel()
    session = coord.open_session(channel, f"10.0.0.1:{len(hostname)}")
    record = coord.handle_frame(session, register_frame(hostname=hostname, hardware_id=hostname, **extra))
    return session, channel, record


# =============================================================================
# Channel sessions
# =============================================================================


class TestServeChannel:

    def test_register_confirms_and_disconnect_keeps_status(self, coord, registry, events, make_channel):
        channel = make_channel([register_frame(), status_frame(throughput=5.0)])

        coord.serve_channel(channel, "10.0.0.7:4000")

        confirm = channel.sent[0]
        assert confirm["type"] == "registrationConfirmed"
        record = registry.get(confirm["workerId"])
        assert record.source_address == "10.0.0.7:4000"
        assert record.metrics.throughput == 5.0
        assert record.connected is False
        assert record.status == WorkerStatus.online
        assert channel.closed is True
        assert _kinds(events) == [EventKind.worker_registered, EventKind.worker_disconnected]

    def test_malformed_frame_does_not_end_session(self, coord, registry, make_channel):
        channel = make_channel([register_frame(), "{not json", '{"type": "bogus"}',
                                status_frame(throughput=7.0)])

        coord.serve_channel(channel)

        assert registry.list()[0].metrics.throughput == 7.0
        assert coord.get_stats()["malformed"] == 2

    def test_messages_before_register_dropped(self, coord, registry, make_channel):
        coord.serve_channel(make_channel(['{"type": "heartbeat"}', status_frame(throughput=1.0)]))

        assert len(registry) == 0
        assert coord.get_stats()["dropped_unregistered"] == 2

    def test_unit_found_and_heartbeat(self, coord, registry, clock, make_channel):
        session, _, record = _connect(coord, make_channel)

        coord.handle_frame(session, '{"type": "unitFound", "accepted": true}')
        coord.handle_frame(session, '{"type": "unitFound", "accepted": false}')
        clock.advance(10)
        coord.handle_frame(session, '{"type": "heartbeat"}')

        stored = registry.get(record.id)
        assert stored.metrics.accepted == 1
        assert stored.metrics.rejected == 1
        assert stored.last_seen_at == clock.now

    def test_unit_then_cumulative_status_counts_once(self, coord, registry, make_channel):
        session, _, record = _connect(coord, make_channel)

        coord.handle_frame(session, '{"type": "unitFound", "accepted": true}')
        coord.handle_frame(session, '{"type": "unitFound", "accepted": false}')
        coord.handle_frame(session, status_frame(accepted=1, rejected=1))
        coord.handle_frame(session, status_frame(accepted=3, rejected=1))

        stored = registry.get(record.id)
        assert stored.metrics.accepted == 3
        assert stored.metrics.rejected == 1
        snap = coord.snapshot()
        assert snap.total_accepted == 3
        assert snap.total_rejected == 1

    def test_register_with_object_host_fields(self, coord, registry, make_channel):
        session = coord.open_session(make_channel(), "10.0.0.8:4000")
        frame = json.dumps({"type": "register", "hostInfo": {
            "hostname": "h", "cpu": {"model": "Ryzen", "cores": 16},
            "memory": {"total": 34359738368}, "os": {"platform": "linux"}}})

        record = coord.handle_frame(session, frame)

        assert record is not None
        assert registry.get(record.id).host_info.cpu == {"model": "Ryzen", "cores": 16}
        assert coord.handle_frame(session, '{"type": "heartbeat"}') is not None
        assert coord.get_stats()["malformed"] == 0

    def test_stats_counted_across_threads(self, coord, make_channel):
        sessions = [coord.open_session(make_channel()) for _ in range(4)]

        def _flood(session):
            for _ in range(250):
                coord.handle_frame(session, "{not json")

        threads = [threading.Thread(target=_flood, args=(s,)) for s in sessions]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        stats = coord.get_stats()
        assert stats["messages"] == 1000
        assert stats["malformed"] == 1000

    def test_register_with_group_and_name(self, coord, make_channel):
        _, _, record = _connect(coord, make_channel, group="gpu", displayName="Big Rig")

        assert record.group == "gpu"
        assert record.display_name == "Big Rig"

    def test_receive_error_closes_session(self, coord, registry, make_channel):
        class BrokenChannel(make_channel):
            def __iter__(self):
                yield register_frame()
                raise OSError("connection reset")

        channel = BrokenChannel()
        coord.serve_channel(channel)

        assert channel.closed is True
        assert registry.list()[0].connected is False
        assert coord.get_stats()["sessions"] == 0

    def test_reconnect_supersedes_old_session(self, coord, registry, make_channel):
        old_session, old_channel, record = _connect(coord, make_channel)
        new_session, new_channel, _ = _connect(coord, make_channel)

        assert old_channel.closed is True
        coord.close_session(old_session)

        assert registry.get(record.id).connected is True
        assert coord.connected_workers() == [record.id]
        assert coord.send_command(record.id, StopCommand()) is True
        assert new_channel.sent[-1] == {"type": "stop"}

    def test_removed_worker_must_reregister(self, coord, registry, make_channel):
        session, channel, record = _connect(coord, make_channel)

        assert coord.remove_worker(record.id) is True
        coord.handle_frame(session, '{"type": "heartbeat"}')
        coord.close_session(session)

        assert record.id not in registry
        assert coord.get_stats()["dropped_unregistered"] == 1


# =============================================================================
# Commands
# =============================================================================


class TestCommands:

    def test_send_to_unknown_worker(self, coord):
        with pytest.raises(NotFoundError):
            coord.send_command("missing", StopCommand())

    def test_send_to_disconnected_worker(self, coord, make_channel):
        session, _, record = _connect(coord, make_channel)
        coord.close_session(session)

        assert coord.send_command(record.id, StopCommand()) is False

    def test_send_dict_command(self, coord, make_channel):
        _, channel, record = _connect(coord, make_channel)

        assert coord.send_command(record.id, {"type": "start", "params": {"intensity": 40}})
        assert channel.sent[-1] == {"type": "start", "params": {"intensity": 40}}

    def test_send_failure_is_reported(self, coord, make_channel):
        _, channel, record = _connect(coord, make_channel)
        channel.fail_send = True

        assert coord.send_command(record.id, StopCommand()) is False
        assert coord.get_stats()["send_errors"] == 1

    def test_broadcast(self, coord, make_channel):
        _, ch1, _ = _connect(coord, make_channel, hostname="rig-01")
        _, ch2, _ = _connect(coord, make_channel, hostname="rig-02", group="gpu")

        assert coord.stop_all() == 2
        assert coord.start_all({"intensity": 90}, group="gpu") == 1
        assert ch1.sent[-1] == {"type": "stop"}
        assert ch2.sent[-1] == {"type": "start", "params": {"intensity": 90}}

    def test_broadcast_skips_broken_channel(self, coord, make_channel):
        _connect(coord, make_channel, hostname="rig-01")
        _, broken, _ = _connect(coord, make_channel, hostname="rig-02")
        broken.fail_send = True

        assert coord.request_status() == 1

    def test_update_worker_config_pushes_configure(self, coord, registry, make_channel):
        _, channel, record = _connect(coord, make_channel)

        assert coord.update_worker_config(record.id, {"execution": {"intensity": 25}}) is True

        assert channel.sent[-1] == {"type": "configure",
                                    "settings": {"execution": {"intensity": 25}}}
        assert registry.get(record.id).config["execution"]["intensity"] == 25

    def test_restart_worker(self, coord, make_channel):
        _, channel, record = _connect(coord, make_channel)

        coord.restart_worker(record.id)

        assert channel.sent[-1] == {"type": "restart"}


# =============================================================================
# Sweep / queries
# =============================================================================


class TestSweepAndQueries:

    def test_run_sweep_alerts_on_stale(self, coord, clock, make_channel):
        _, _, record = _connect(coord, make_channel)
        clock.advance(700)

        assert coord.run_sweep() == 1

        coord.alerts.report_stale.assert_called_once_with(1, 1)
        assert coord.get_worker(record.id).status == WorkerStatus.offline

    def test_run_sweep_quiet(self, coord, make_channel):
        _connect(coord, make_channel)

        assert coord.run_sweep() == 0
        coord.alerts.report_stale.assert_not_called()

    def test_snapshot_events_carry_totals(self, coord, events, make_channel):
        _connect(coord, make_channel)

        updates = [e for e in events.received if e.kind == EventKind.snapshot_updated]
        assert updates[-1].data["total_workers"] == 1

    def test_groups_and_counters(self, coord, make_channel):
        _, _, record = _connect(coord, make_channel)
        coord.create_group("lab", "test bench")
        coord.assign_group(record.id, "lab")

        assert [w.id for w in coord.list_workers(group="lab")] == [record.id]
        assert {g.name for g in coord.list_groups()} == {"default", "lab"}
        assert coord.reset_counters(record.id).metrics.accepted == 0

    def test_fleet_report(self, coord, make_channel):
        _connect(coord, make_channel)

        report = coord.fleet_report()

        assert report.startswith("FLEET STATUS. 1 of 1 workers online")
        assert "Upstream: a." in report


# =============================================================================
# Failover wiring
# =============================================================================


class TestFailoverWiring:

    def _fail(self, coord, times=3):
        return [coord.report_local_failure_line(FAILURE) for _ in range(times)]

    def test_non_failure_line_ignored(self, coord):
        assert coord.report_local_failure_line("accepted 1/1") is None
        assert coord.failover.state().consecutive_failures == 0

    def test_rotation_restarts_local_execution(self, coord, events):
        decisions = self._fail(coord)

        assert decisions[-1].action == FailoverAction.rotated
        coord.executor.stop.assert_called_once()
        started = coord.executor.start.call_args[0][0]
        assert started.id == "b"
        rotated = [e for e in events.received if e.kind == EventKind.upstream_rotated]
        assert rotated[0].data["upstream"]["id"] == "b"

    def test_settle_window_drops_failures(self, coord, clock):
        self._fail(coord)

        assert coord.report_local_failure_line(FAILURE) is None
        assert coord.failover.state().consecutive_failures == 0

        clock.advance(6)
        decision = coord.report_local_failure_line(FAILURE)
        assert decision.action == FailoverAction.degraded

    def test_suppressed_rotation_emits_event(self, coord, clock, events):
        self._fail(coord)
        clock.advance(6)

        decisions = self._fail(coord)

        assert decisions[-1].action == FailoverAction.suppressed
        assert EventKind.rotation_suppressed in _kinds(events)
        assert coord.executor.start.call_count == 1

    def test_exhaustion_alerts(self, coord, clock, events):
        self._fail(coord)
        clock.advance(31)
        self._fail(coord)
        clock.advance(31)

        decision = self._fail(coord)[-1]

        assert decision.action == FailoverAction.exhausted
        coord.alerts.report_exhausted.assert_called_once_with(decision.error)
        exhausted = [e for e in events.received if e.kind == EventKind.upstream_exhausted]
        assert exhausted[0].data["attempted"] == ["a", "b", "c"]
        assert coord.get_failover_status()["exhausted"] is True

    def test_signal_during_rotation_dropped(self, coord):
        with coord._rotation_lock:
            assert coord.report_local_failure_line(FAILURE) is None

        assert coord.failover.state().consecutive_failures == 0

    def test_restart_error_is_contained(self, coord):
        coord.executor.start.side_effect = OSError("binary missing")

        decisions = self._fail(coord)

        assert decisions[-1].rotated
        assert coord.get_failover_status()["active_upstream"]["id"] == "b"

    def test_force_rotate(self, coord):
        status = coord.force_rotate()

        assert status["active_upstream"]["id"] == "b"
        coord.executor.start.assert_called_once()

    def test_success_resets(self, coord):
        self._fail(coord, times=2)

        decision = coord.report_local_success()

        assert decision.action == FailoverAction.recovered
        assert coord.failover.state().consecutive_failures == 0

    def test_without_executor(self, registry, clock):
        failover = FailoverController(UpstreamRegistry(UPSTREAMS), threshold=1, cooldown=30, clock=clock)
        coord = Coordinator(registry, failover, clock=clock)

        decision = coord.report_local_failure_line(FAILURE)

        assert decision.rotated


# =============================================================================
# Lifecycle
# =============================================================================


class TestLifecycle:

    def test_start_and_stop(self, coord, make_channel):
        session, channel, _ = _connect(coord, make_channel)

        coord.start()
        try:
            coord.executor.start.assert_called_once()
            assert coord.executor.start.call_args[0][0].id == "a"
        finally:
            coord.stop()

        assert channel.closed is True

    def test_start_restores_from_store(self, clock, make_host):
        source = WorkerRegistry(clock=clock)
        source.register("s1", make_host())
        store = MagicMock()
        store.load.return_value = source.dump_snapshot()
        registry = WorkerRegistry(store=store, clock=clock)
        failover = FailoverController(UpstreamRegistry(UPSTREAMS), clock=clock)
        coord = Coordinator(registry, failover, clock=clock, sweep_interval=3600)

        coord.start()
        try:
            assert len(registry) == 1
            assert registry.list()[0].connected is False
        finally:
            coord.stop()
