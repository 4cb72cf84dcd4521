"""
Fleet Coordinator — Worker Registry
Single owner of every WorkerRecord. One structural lock guards the id map and
group table; one lock per record serializes read-modify-write on that id, so
updates to different workers never wait on each other.

Lock order is always structural → record. Nothing takes the structural lock
while holding a record lock.
"""

import copy
import hashlib
import json
import logging
import threading
import time
import uuid
from typing import Optional

from fleetcoord.config import (
    DEFAULT_GROUP, DEFAULT_WORKER_CONFIG, STALE_THRESHOLD,
    HEALTH_IDLE_THRESHOLD,
)
from fleetcoord.errors import NotFoundError, StaleWriteError
from fleetcoord.health import derive_status, evaluate, stale_issue
from fleetcoord.models import (
    GroupRecord, HealthClass, HostInfo, MetricsReport, WorkerRecord, WorkerStatus,
)

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1

# Fields apply_update accepts besides "metrics"
_UPDATABLE = ("display_name", "source_address", "tags", "host_info")


def derive_worker_id(host_info: HostInfo, identity_hint: Optional[str] = None) -> str:
    """Stable id from hostname + hardware id; session-assigned when anonymous."""
    hostname = (host_info.hostname or "").strip()
    hardware_id = (host_info.hardware_id or "").strip().lower()
    if not hostname and not hardware_id:
        return f"anon-{identity_hint or uuid.uuid4().hex[:12]}"
    identifier = f"{hostname or 'unknown'}-{hardware_id or 'unknown'}"
    return hashlib.md5(identifier.encode("utf-8")).hexdigest()[:12]


class _Slot:
    __slots__ = ("record", "lock", "alive")

    def __init__(self, record: WorkerRecord):
        self.record = record
        self.lock = threading.Lock()
        self.alive = True


class WorkerRegistry:
    """Concurrent-safe store of worker records with staleness sweep and snapshots."""

    def __init__(self, store=None, clock=time.time, *,
                 idle_threshold: float = HEALTH_IDLE_THRESHOLD,
                 health_options: Optional[dict] = None):
        self._store = store
        self._clock = clock
        self._idle_threshold = idle_threshold
        self._health_options = dict(health_options or {})
        self._lock = threading.Lock()
        self._slots: dict[str, _Slot] = {}
        self._groups: dict[str, GroupRecord] = {}
        self._persist_lock = threading.Lock()

    # ── Health ────────────────────────────────────────────────────

    def _refresh(self, record: WorkerRecord, now: float):
        record.health = evaluate(record, now, **self._health_options)
        record.status = derive_status(
            record.health.classification, record.last_seen_at, now,
            idle_threshold=self._idle_threshold)

    # ── Registration ──────────────────────────────────────────────

    def register(self, identity_hint: Optional[str], host_info: HostInfo,
                 source_address: str = "", *, display_name: Optional[str] = None,
                 group: Optional[str] = None, tags: Optional[list] = None) -> WorkerRecord:
        """Create or merge a worker record. Idempotent per identity.

        On re-registration, first_seen_at, cumulative counters, group, tags and
        config are preserved; host info, address and transient metrics are
        overwritten.
        """
        now = self._clock()
        worker_id = derive_worker_id(host_info, identity_hint)
        with self._lock:
            slot = self._slots.get(worker_id)
            if slot is None:
                record = WorkerRecord(
                    id=worker_id,
                    display_name=display_name or host_info.hostname or f"worker-{worker_id[:6]}",
                    host_info=host_info.model_copy(deep=True),
                    source_address=source_address,
                    first_seen_at=now,
                    last_seen_at=now,
                    group=group or DEFAULT_GROUP,
                    tags=list(tags or []),
                    config=copy.deepcopy(DEFAULT_WORKER_CONFIG),
                    connected=True,
                )
                self._refresh(record, now)
                slot = _Slot(record)
                self._slots[worker_id] = slot
                self._join_group(record.group, worker_id, now)
                result = record.model_copy(deep=True)
                logger.info(f"[REGISTRY] Worker registered: {record.display_name} ({worker_id}) "
                            f"from {source_address or 'unknown'}, group={record.group}")
            else:
                with slot.lock:
                    record = slot.record
                    record.host_info = host_info.model_copy(deep=True)
                    record.source_address = source_address
                    if display_name:
                        record.display_name = display_name
                    elif host_info.hostname:
                        record.display_name = host_info.hostname
                    record.last_seen_at = now
                    record.connected = True
                    record.metrics.throughput = 0.0
                    record.metrics.temperature = None
                    record.metrics.power = None
                    # New session: the worker's local counts start over
                    record.reported_accepted = 0
                    record.reported_rejected = 0
                    self._refresh(record, now)
                    result = record.model_copy(deep=True)
                logger.info(f"[REGISTRY] Worker re-registered: {record.display_name} ({worker_id})")
        self._persist()
        return result

    # ── Mutations ─────────────────────────────────────────────────

    def _lookup(self, worker_id: str) -> _Slot:
        with self._lock:
            slot = self._slots.get(worker_id)
        if slot is None:
            raise NotFoundError(worker_id)
        return slot

    def _mutate(self, worker_id: str, mutator, touch: bool = True) -> WorkerRecord:
        """Run mutator(record, now) under the record lock.

        If the slot was replaced between lookup and lock (remove + re-register,
        snapshot load), retry once against the new slot, then give up.
        """
        for _attempt in range(2):
            slot = self._lookup(worker_id)
            with slot.lock:
                if not slot.alive:
                    continue
                now = self._clock()
                record = slot.record
                mutator(record, now)
                if touch:
                    record.last_seen_at = now
                    self._refresh(record, now)
                result = record.model_copy(deep=True)
            self._persist()
            return result
        logger.warning(f"[REGISTRY] Stale write on {worker_id}, giving up after retry")
        raise StaleWriteError(worker_id)

    def apply_update(self, worker_id: str, changes: dict) -> WorkerRecord:
        """Merge partial fields, stamp last_seen_at, re-run health and status.

        "metrics" carries worker-local cumulative accepted/rejected counts;
        they are folded into the stored counters as deltas so stored totals
        never decrease, even when the worker restarts its own count.
        """
        unknown = set(changes) - set(_UPDATABLE) - {"metrics"}
        if unknown:
            raise ValueError(f"Unsupported update fields: {', '.join(sorted(unknown))}")

        metrics = changes.get("metrics")
        if isinstance(metrics, dict):
            metrics = MetricsReport.model_validate(metrics)

        def _apply(record, now):
            for key in _UPDATABLE:
                if key not in changes:
                    continue
                value = changes[key]
                if key == "host_info" and isinstance(value, dict):
                    value = HostInfo.model_validate(value)
                setattr(record, key, value)
            if metrics is not None:
                _merge_metrics(record, metrics)

        return self._mutate(worker_id, _apply)

    def record_unit(self, worker_id: str, accepted: bool) -> WorkerRecord:
        """Count one accepted or rejected unit.

        The reported baseline moves too, so the next cumulative statusUpdate
        that already includes this unit folds in a delta of zero for it.
        """
        def _apply(record, now):
            if accepted:
                record.metrics.accepted += 1
                record.reported_accepted += 1
            else:
                record.metrics.rejected += 1
                record.reported_rejected += 1
        return self._mutate(worker_id, _apply)

    def touch(self, worker_id: str) -> WorkerRecord:
        """Heartbeat: only refreshes last_seen_at, health and status."""
        return self._mutate(worker_id, lambda record, now: None)

    def set_connected(self, worker_id: str, connected: bool) -> WorkerRecord:
        """Flag the live channel state. Does not touch status; the sweep owns that."""
        def _apply(record, now):
            record.connected = connected
        return self._mutate(worker_id, _apply, touch=False)

    def mark_all_disconnected(self) -> int:
        """Clear the connected flag everywhere (channels do not survive a restart)."""
        cleared = 0
        for slot in self._slots_copy():
            with slot.lock:
                if slot.record.connected:
                    slot.record.connected = False
                    cleared += 1
        if cleared:
            self._persist()
        return cleared

    def update_config(self, worker_id: str, settings: dict) -> WorkerRecord:
        """Merge settings into the worker's config, one level deep per section."""
        def _apply(record, now):
            for key, value in settings.items():
                current = record.config.get(key)
                if isinstance(current, dict) and isinstance(value, dict):
                    current.update(value)
                else:
                    record.config[key] = copy.deepcopy(value)
        result = self._mutate(worker_id, _apply, touch=False)
        logger.info(f"[REGISTRY] Config updated for {worker_id}: {sorted(settings)}")
        return result

    def reset_counters(self, worker_id: str) -> WorkerRecord:
        """Operator action: zero the accepted/rejected counters."""
        def _apply(record, now):
            record.metrics.accepted = 0
            record.metrics.rejected = 0
        result = self._mutate(worker_id, _apply, touch=False)
        logger.info(f"[REGISTRY] Counters reset for {worker_id}")
        return result

    # ── Queries ───────────────────────────────────────────────────

    def _slots_copy(self) -> list:
        with self._lock:
            return list(self._slots.values())

    def get(self, worker_id: str) -> WorkerRecord:
        slot = self._lookup(worker_id)
        with slot.lock:
            return slot.record.model_copy(deep=True)

    def list(self, group=None, status=None, health=None) -> list:
        """Copies of matching records, sorted by id."""
        status = WorkerStatus(status) if status else None
        health = HealthClass(health) if health else None
        results = []
        for slot in self._slots_copy():
            with slot.lock:
                record = slot.record
                if group and record.group != group:
                    continue
                if status and record.status != status:
                    continue
                if health and record.health.classification != health:
                    continue
                results.append(record.model_copy(deep=True))
        results.sort(key=lambda r: r.id)
        return results

    def __len__(self):
        with self._lock:
            return len(self._slots)

    def __contains__(self, worker_id):
        with self._lock:
            return worker_id in self._slots

    # ── Staleness Sweep ───────────────────────────────────────────

    def sweep_stale(self, now: Optional[float] = None,
                    stale_threshold: float = STALE_THRESHOLD) -> int:
        """Re-evaluate every worker; force silent ones offline.

        Returns the number of workers that transitioned to offline.
        """
        now = self._clock() if now is None else now
        transitioned = 0
        slots = self._slots_copy()
        for slot in slots:
            with slot.lock:
                if not slot.alive:
                    continue
                record = slot.record
                was_offline = record.status == WorkerStatus.offline
                self._refresh(record, now)
                if now - record.last_seen_at > stale_threshold:
                    record.health.issues.append(stale_issue(stale_threshold))
                    record.health.classification = HealthClass.critical
                    record.status = WorkerStatus.offline
                    if not was_offline:
                        transitioned += 1
                        logger.warning(
                            f"[SWEEP] {record.display_name} ({record.id}) silent for "
                            f"{now - record.last_seen_at:.0f}s, marked offline")
        if slots:
            self._persist()
        return transitioned

    # ── Removal / Groups ──────────────────────────────────────────

    def remove(self, worker_id: str) -> bool:
        """Explicit operator removal. Returns False for unknown ids."""
        with self._lock:
            slot = self._slots.pop(worker_id, None)
            if slot is None:
                return False
            for group in self._groups.values():
                if worker_id in group.members:
                    group.members.remove(worker_id)
        with slot.lock:
            slot.alive = False
        logger.info(f"[REGISTRY] Worker removed: {worker_id}")
        self._persist()
        return True

    def _join_group(self, name: str, worker_id: str, now: float):
        """Caller holds the structural lock."""
        for group in self._groups.values():
            if group.name != name and worker_id in group.members:
                group.members.remove(worker_id)
        group = self._groups.get(name)
        if group is None:
            group = GroupRecord(name=name, created_at=now)
            self._groups[name] = group
        if worker_id not in group.members:
            group.members.append(worker_id)

    def create_group(self, name: str, description: str = "") -> GroupRecord:
        now = self._clock()
        with self._lock:
            group = self._groups.get(name)
            if group is None:
                group = GroupRecord(name=name, description=description, created_at=now)
                self._groups[name] = group
                logger.info(f"[REGISTRY] Group created: {name}")
            elif description:
                group.description = description
            result = group.model_copy(deep=True)
        self._persist()
        return result

    def assign_group(self, worker_id: str, group: str) -> WorkerRecord:
        def _apply(record, now):
            record.group = group
        result = self._mutate(worker_id, _apply, touch=False)
        with self._lock:
            if worker_id in self._slots:
                self._join_group(group, worker_id, self._clock())
        self._persist()
        return result

    def list_groups(self):
        with self._lock:
            groups = [g.model_copy(deep=True) for g in self._groups.values()]
        groups.sort(key=lambda g: g.name)
        return groups

    # ── Snapshots ─────────────────────────────────────────────────

    def dump_snapshot(self) -> str:
        """Serialize all workers and groups to a JSON blob."""
        with self._lock:
            slots = list(self._slots.values())
            groups = [g.model_dump(mode="json") for g in self._groups.values()]
            workers = []
            for slot in slots:
                with slot.lock:
                    workers.append(slot.record.model_dump(mode="json"))
        return json.dumps({
            "version": SNAPSHOT_VERSION,
            "saved_at": self._clock(),
            "workers": workers,
            "groups": groups,
        })

    def load_snapshot(self, blob) -> int:
        """Replace the registry contents with a snapshot. Returns worker count."""
        data = json.loads(blob) if isinstance(blob, (str, bytes, bytearray)) else blob
        records = [WorkerRecord.model_validate(w) for w in data.get("workers", [])]
        groups = [GroupRecord.model_validate(g) for g in data.get("groups", [])]
        with self._lock:
            for slot in self._slots.values():
                with slot.lock:
                    slot.alive = False
            self._slots = {}
            for record in records:
                self._slots[record.id] = _Slot(record)
            self._groups = {g.name: g for g in groups}
            for record in records:
                self._join_group(record.group, record.id, self._clock())
        logger.info(f"[REGISTRY] Loaded {len(records)} workers, {len(groups)} groups from snapshot")
        return len(records)

    def restore(self) -> int:
        """Startup load from the attached store. Restored workers start disconnected."""
        if self._store is None:
            return 0
        blob = self._store.load()
        if not blob:
            return 0
        count = self.load_snapshot(blob)
        self.mark_all_disconnected()
        return count

    def _persist(self):
        if self._store is None:
            return
        with self._persist_lock:
            self._store.save(self.dump_snapshot())


def _merge_metrics(record: WorkerRecord, report: MetricsReport):
    m = record.metrics
    if report.throughput is not None:
        m.throughput = report.throughput
    if report.temperature is not None:
        m.temperature = report.temperature
    if report.power is not None:
        m.power = report.power
    for counter in ("accepted", "rejected"):
        value = getattr(report, counter)
        if value is None:
            continue
        last = getattr(record, f"reported_{counter}")
        # A lower count means the worker restarted its own tally
        delta = value - last if value >= last else value
        setattr(m, counter, getattr(m, counter) + delta)
        setattr(record, f"reported_{counter}", value)
