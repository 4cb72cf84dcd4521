"""
Fleet Coordinator — Composition Root
Owns one channel per connected worker, routes inbound messages into the
Worker Registry, fans commands out to workers, runs the staleness sweep and
turns failover decisions into local restarts against the new upstream.

A channel is any object that iterates inbound frames (str/bytes/dict) until
the peer goes away, and has send(dict) and close(). A local executor is any
object with start(endpoint) and stop(); it wraps the external process the
failure lines are scraped from.
"""

import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Optional

from fleetcoord.aggregator import FleetAggregator, format_fleet_report
from fleetcoord.config import FAILOVER_SETTLE_DELAY, STALE_THRESHOLD, SWEEP_INTERVAL
from fleetcoord.errors import MalformedMessageError, NotFoundError, StaleWriteError
from fleetcoord.events import EventBus, EventKind, FleetEvent
from fleetcoord.failover import FailoverAction, FailoverController, FailoverDecision, is_failure_line
from fleetcoord.models import (
    ConfigureCommand, FleetSnapshot, HeartbeatMessage, RegisterMessage, RequestStatusCommand,
    RestartCommand, StartCommand, StatusUpdateMessage, StopCommand, UnitFoundMessage,
    build_command, parse_inbound,
)
from fleetcoord.registry import WorkerRegistry

logger = logging.getLogger(__name__)


class Session:
    """One live worker channel."""
    __slots__ = ("session_id", "channel", "source_address", "worker_id", "opened_at")

    def __init__(self, channel, source_address: str, opened_at: float):
        self.session_id = uuid.uuid4().hex[:12]
        self.channel = channel
        self.source_address = source_address
        self.worker_id: Optional[str] = None
        self.opened_at = opened_at

    @property
    def label(self):
        return self.worker_id or f"session:{self.session_id}"


class Coordinator:
    """Connects workers, registry, aggregator and failover controller."""

    def __init__(self, registry: WorkerRegistry, failover: FailoverController, *,
                 events: Optional[EventBus] = None, aggregator: Optional[FleetAggregator] = None,
                 executor=None, alerts=None,
                 stale_threshold: float = STALE_THRESHOLD,
                 sweep_interval: float = SWEEP_INTERVAL,
                 settle_delay: float = FAILOVER_SETTLE_DELAY,
                 clock=time.time):
        self.registry = registry
        self.failover = failover
        self.events = events or EventBus()
        self.aggregator = aggregator or FleetAggregator(registry, clock=clock)
        self.executor = executor
        self.alerts = alerts
        self._stale_threshold = stale_threshold
        self._sweep_interval = sweep_interval
        self._settle_delay = settle_delay
        self._clock = clock

        self._sessions_lock = threading.Lock()
        self._sessions: dict[str, Session] = {}
        self._by_worker: dict[str, Session] = {}

        # One failover decision in flight at a time
        self._rotation_lock = threading.Lock()
        self._detection_resumes_at = 0.0

        self._stop = threading.Event()
        self._sweep_thread: Optional[threading.Thread] = None
        self._stats = {"messages": 0, "malformed": 0, "dropped_unregistered": 0,
                       "commands_sent": 0, "send_errors": 0}

    # ── Lifecycle ─────────────────────────────────────────────────

    def start(self):
        """Load the persisted registry and start the staleness sweep."""
        restored = self.registry.restore()
        if restored:
            logger.info(f"[COORD] Restored {restored} workers from snapshot")
        if self.executor is not None:
            self.executor.start(self.failover.upstreams.active)
            self._detection_resumes_at = self._clock() + self._settle_delay
        self._stop.clear()
        self._sweep_thread = threading.Thread(
            target=self._sweep_loop, name="fleet-sweep", daemon=True)
        self._sweep_thread.start()
        logger.info(f"[COORD] Started: sweep every {self._sweep_interval}s, "
                    f"stale after {self._stale_threshold}s, "
                    f"upstream {self.failover.upstreams.active.id}")

    def stop(self):
        self._stop.set()
        if self._sweep_thread:
            self._sweep_thread.join(timeout=3)
            self._sweep_thread = None
        with self._sessions_lock:
            sessions = list(self._sessions.values())
        for session in sessions:
            self._close_channel(session)
        logger.info("[COORD] Stopped")

    def _sweep_loop(self):
        while not self._stop.wait(self._sweep_interval):
            try:
                self.run_sweep()
            except Exception:
                logger.exception("[SWEEP] Sweep pass failed")

    def run_sweep(self, now: Optional[float] = None) -> int:
        """One staleness pass. Returns how many workers went offline."""
        count = self.registry.sweep_stale(now, self._stale_threshold)
        if count:
            logger.warning(f"[SWEEP] {count} worker(s) marked offline")
            if self.alerts is not None:
                self.alerts.report_stale(count, len(self.registry))
        self._emit_snapshot()
        return count

    # ── Channels ──────────────────────────────────────────────────

    def open_session(self, channel, source_address: str = "") -> Session:
        session = Session(channel, source_address, self._clock())
        with self._sessions_lock:
            self._sessions[session.session_id] = session
        logger.info(f"[CHANNEL] New connection {session.session_id} from {source_address or 'unknown'}")
        return session

    def serve_channel(self, channel, source_address: str = ""):
        """Blocking per-connection loop: one consumer, messages handled in order."""
        session = self.open_session(channel, source_address)
        try:
            for frame in channel:
                self.handle_frame(session, frame)
        except OSError as e:
            logger.info(f"[CHANNEL] {session.label} receive error: {e}")
        finally:
            self.close_session(session)

    def close_session(self, session: Session):
        """Unbind the session. The worker is not marked offline; the sweep decides that."""
        with self._sessions_lock:
            self._sessions.pop(session.session_id, None)
            worker_id = session.worker_id
            if worker_id and self._by_worker.get(worker_id) is session:
                del self._by_worker[worker_id]
            else:
                # Superseded by a newer connection for the same worker
                worker_id = None
        self._close_channel(session)
        if worker_id is None:
            return
        try:
            self.registry.set_connected(worker_id, False)
        except (NotFoundError, StaleWriteError) as e:
            logger.info(f"[CHANNEL] Disconnect for {worker_id} not recorded: {e}")
        logger.info(f"[CHANNEL] Worker disconnected: {worker_id}")
        self.events.emit(FleetEvent(kind=EventKind.worker_disconnected, worker_id=worker_id,
                                    at=self._clock()))
        self._emit_snapshot()

    def _close_channel(self, session: Session):
        try:
            session.channel.close()
        except OSError as e:
            logger.debug(f"[CHANNEL] Close error on {session.label}: {e}")

    # ── Inbound ───────────────────────────────────────────────────

    def handle_frame(self, session: Session, frame):
        """Validate and route one inbound frame. Bad frames are dropped, not fatal."""
        self._bump("messages")
        try:
            message = parse_inbound(frame)
        except MalformedMessageError as e:
            self._bump("malformed")
            logger.warning(f"[CHANNEL] Dropped malformed message from {session.label}: {e.reason}")
            return None
        try:
            return self._dispatch(session, message)
        except NotFoundError as e:
            # Removed by an operator while still connected
            logger.warning(f"[CHANNEL] {e}; {session.label} must re-register")
            with self._sessions_lock:
                if self._by_worker.get(e.worker_id) is session:
                    del self._by_worker[e.worker_id]
                session.worker_id = None
            return None
        except StaleWriteError as e:
            logger.warning(f"[CHANNEL] Update from {session.label} dropped: {e}")
            return None

    def _dispatch(self, session: Session, message):
        if isinstance(message, RegisterMessage):
            return self._handle_register(session, message)

        worker_id = session.worker_id
        if worker_id is None:
            self._bump("dropped_unregistered")
            logger.warning(f"[CHANNEL] {message.type} before register from {session.label}, dropped")
            return None

        if isinstance(message, StatusUpdateMessage):
            record = self.registry.apply_update(worker_id, {"metrics": message.metrics})
            self._emit_snapshot()
            return record
        if isinstance(message, UnitFoundMessage):
            record = self.registry.record_unit(worker_id, message.accepted)
            logger.info(f"[UNIT] {record.display_name}: {'accepted' if message.accepted else 'rejected'}")
            self._emit_snapshot()
            return record
        if isinstance(message, HeartbeatMessage):
            return self.registry.touch(worker_id)
        return None

    def _handle_register(self, session: Session, message: RegisterMessage):
        record = self.registry.register(
            session.session_id, message.host_info, session.source_address,
            display_name=message.display_name, group=message.group, tags=message.tags)
        with self._sessions_lock:
            previous = self._by_worker.get(record.id)
            if previous is not None and previous is not session:
                previous.worker_id = None
            if session.worker_id and session.worker_id != record.id:
                self._by_worker.pop(session.worker_id, None)
            self._by_worker[record.id] = session
            session.worker_id = record.id
        if previous is not None and previous is not session:
            logger.info(f"[CHANNEL] {record.id} reconnected; closing superseded session "
                        f"{previous.session_id}")
            self._close_channel(previous)

        self._send(session, {
            "type": "registrationConfirmed",
            "workerId": record.id,
            "serverTime": datetime.now(timezone.utc).isoformat(),
        })
        self.events.emit(FleetEvent(kind=EventKind.worker_registered, worker_id=record.id,
                                    data={"display_name": record.display_name,
                                          "group": record.group,
                                          "source_address": record.source_address},
                                    at=self._clock()))
        self._emit_snapshot()
        return record

    # ── Outbound ──────────────────────────────────────────────────

    @staticmethod
    def _payload(command) -> dict:
        if isinstance(command, dict):
            fields = {k: v for k, v in command.items() if k != "type"}
            command = build_command(command.get("type", ""), **fields)
        return command.model_dump()

    def _send(self, session: Session, payload: dict) -> bool:
        try:
            session.channel.send(payload)
            self._bump("commands_sent")
            return True
        except OSError as e:
            self._bump("send_errors")
            logger.warning(f"[CHANNEL] Send to {session.label} failed: {e}")
            return False

    def send_command(self, worker_id: str, command) -> bool:
        """Send to one worker. False if it is known but not connected."""
        if worker_id not in self.registry:
            raise NotFoundError(worker_id)
        payload = self._payload(command)
        with self._sessions_lock:
            session = self._by_worker.get(worker_id)
        if session is None:
            logger.info(f"[COMMAND] {payload['type']} for {worker_id} not sent: not connected")
            return False
        return self._send(session, payload)

    def broadcast_command(self, command, group: Optional[str] = None) -> int:
        """Send to every connected worker (optionally one group). Returns deliveries."""
        payload = self._payload(command)
        with self._sessions_lock:
            targets = dict(self._by_worker)
        if group:
            members = {r.id for r in self.registry.list(group=group)}
            targets = {wid: s for wid, s in targets.items() if wid in members}
        delivered = sum(1 for session in targets.values() if self._send(session, payload))
        logger.info(f"[COMMAND] Broadcast {payload['type']} to {delivered}/{len(targets)} workers"
                    + (f" in group {group}" if group else ""))
        return delivered

    def start_all(self, params: Optional[dict] = None, group: Optional[str] = None) -> int:
        return self.broadcast_command(StartCommand(params=params or {}), group=group)

    def stop_all(self, group: Optional[str] = None) -> int:
        return self.broadcast_command(StopCommand(), group=group)

    def request_status(self, group: Optional[str] = None) -> int:
        return self.broadcast_command(RequestStatusCommand(), group=group)

    def restart_worker(self, worker_id: str) -> bool:
        return self.send_command(worker_id, RestartCommand())

    def update_worker_config(self, worker_id: str, settings: dict) -> bool:
        """Merge settings into the stored config, then push them to the worker.

        Returns whether the configure command reached a live channel; the
        stored config is updated either way.
        """
        self.registry.update_config(worker_id, settings)
        return self.send_command(worker_id, ConfigureCommand(settings=settings))

    # ── Failover ──────────────────────────────────────────────────

    def report_local_failure_line(self, text: str) -> Optional[FailoverDecision]:
        """Feed one line of local process output into failure detection.

        Lines that don't look like connection errors, lines seen during the
        post-restart settle window, and lines that arrive while a rotation is
        in progress are ignored (None).
        """
        if not is_failure_line(text):
            return None
        now = self._clock()
        if now < self._detection_resumes_at:
            logger.debug(f"[FAILOVER] Settling after restart, ignored: {text.strip()[:120]}")
            return None
        if not self._rotation_lock.acquire(blocking=False):
            logger.info("[FAILOVER] Rotation in progress, failure signal dropped")
            return None
        try:
            logger.warning(f"[FAILOVER] Upstream error from local process: {text.strip()[:200]}")
            decision = self.failover.record_failure(now)
            self._apply_decision(decision)
            return decision
        finally:
            self._rotation_lock.release()

    def report_local_success(self) -> FailoverDecision:
        return self.failover.record_success(self._clock())

    def force_rotate(self) -> dict:
        """Operator rotation: skips cooldown, clears an exhausted pause."""
        with self._rotation_lock:
            decision = self.failover.force_rotate(self._clock())
            self._apply_decision(decision)
        return self.get_failover_status()

    def get_failover_status(self) -> dict:
        return self.failover.status()

    def _apply_decision(self, decision: FailoverDecision):
        """Caller holds the rotation lock."""
        state = decision.state.model_dump(mode="json")
        if decision.action == FailoverAction.rotated:
            self._restart_local(decision.endpoint)
            self.events.emit(FleetEvent(kind=EventKind.upstream_rotated,
                                        data={"upstream": decision.endpoint.model_dump(), **state},
                                        at=self._clock()))
        elif decision.action == FailoverAction.suppressed:
            self.events.emit(FleetEvent(kind=EventKind.rotation_suppressed, data=state,
                                        at=self._clock()))
        elif decision.action == FailoverAction.exhausted:
            if self.alerts is not None:
                self.alerts.report_exhausted(decision.error)
            self.events.emit(FleetEvent(kind=EventKind.upstream_exhausted,
                                        data={"attempted": decision.error.attempted, **state},
                                        at=self._clock()))

    def _restart_local(self, endpoint):
        if self.executor is None:
            logger.info(f"[FAILOVER] No local executor attached; upstream now {endpoint.id}")
        else:
            logger.info(f"[FAILOVER] Restarting local execution against {endpoint.id} ({endpoint.address})")
            try:
                self.executor.stop()
                self.executor.start(endpoint)
            except OSError as e:
                logger.error(f"[FAILOVER] Local restart on {endpoint.id} failed: {e}")
        self._detection_resumes_at = self._clock() + self._settle_delay

    # ── Queries ───────────────────────────────────────────────────

    def list_workers(self, group=None, status=None, health=None):
        return self.registry.list(group=group, status=status, health=health)

    def get_worker(self, worker_id: str):
        return self.registry.get(worker_id)

    def snapshot(self) -> FleetSnapshot:
        return self.aggregator.snapshot()

    def fleet_report(self) -> str:
        return format_fleet_report(self.snapshot(), self.get_failover_status())

    def remove_worker(self, worker_id: str) -> bool:
        removed = self.registry.remove(worker_id)
        if removed:
            with self._sessions_lock:
                session = self._by_worker.pop(worker_id, None)
                if session is not None:
                    session.worker_id = None
            self._emit_snapshot()
        return removed

    def reset_counters(self, worker_id: str):
        return self.registry.reset_counters(worker_id)

    def create_group(self, name: str, description: str = ""):
        return self.registry.create_group(name, description)

    def assign_group(self, worker_id: str, group: str):
        record = self.registry.assign_group(worker_id, group)
        self._emit_snapshot()
        return record

    def list_groups(self):
        return self.registry.list_groups()

    def connected_workers(self) -> list:
        with self._sessions_lock:
            return sorted(self._by_worker)

    def _bump(self, key: str):
        # Never called with _sessions_lock held
        with self._sessions_lock:
            self._stats[key] += 1

    def get_stats(self) -> dict:
        with self._sessions_lock:
            stats = dict(self._stats)
            stats["sessions"] = len(self._sessions)
            stats["bound_workers"] = len(self._by_worker)
        return stats

    def _emit_snapshot(self):
        if not self.events.has_subscribers:
            return
        snapshot = self.aggregator.snapshot()
        self.events.emit(FleetEvent(kind=EventKind.snapshot_updated,
                                    data=snapshot.model_dump(), at=self._clock()))
