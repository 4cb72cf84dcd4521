"""
Fleet-wide statistics derived from the Worker Registry at read time.
"""

import time

from fleetcoord.models import FleetSnapshot, HealthClass, WorkerStatus


def format_throughput(units_per_s):
    """Format throughput in human-readable units."""
    if units_per_s >= 1e12:
        return f"{units_per_s / 1e12:.2f} T/s"
    if units_per_s >= 1e9:
        return f"{units_per_s / 1e9:.2f} G/s"
    if units_per_s >= 1e6:
        return f"{units_per_s / 1e6:.1f} M/s"
    if units_per_s >= 1e3:
        return f"{units_per_s / 1e3:.1f} K/s"
    if units_per_s > 0:
        return f"{units_per_s:.0f} /s"
    return "0 /s"


class FleetAggregator:
    """Single O(n) pass over registry copies; never mutates a record."""

    def __init__(self, registry, clock=time.time):
        self._registry = registry
        self._clock = clock

    def snapshot(self) -> FleetSnapshot:
        workers = self._registry.list()
        by_status = {s.value: 0 for s in WorkerStatus}
        by_health = {h.value: 0 for h in HealthClass}
        groups = {}
        total_throughput = 0.0
        total_accepted = 0
        total_rejected = 0
        total_power = 0.0
        temps = []
        connected = 0

        for w in workers:
            by_status[w.status.value] += 1
            by_health[w.health.classification.value] += 1
            groups[w.group] = groups.get(w.group, 0) + 1
            total_throughput += w.metrics.throughput
            total_accepted += w.metrics.accepted
            total_rejected += w.metrics.rejected
            if w.metrics.power:
                total_power += w.metrics.power
            if w.metrics.temperature is not None and w.metrics.temperature > 0:
                temps.append(w.metrics.temperature)
            if w.connected:
                connected += 1

        return FleetSnapshot(
            total_workers=len(workers),
            connected=connected,
            by_status=by_status,
            by_health=by_health,
            total_throughput=total_throughput,
            total_accepted=total_accepted,
            total_rejected=total_rejected,
            total_power=round(total_power, 2),
            average_temperature=round(sum(temps) / len(temps), 1) if temps else 0.0,
            groups=groups,
            generated_at=self._clock(),
        )


def format_fleet_report(snapshot: FleetSnapshot, failover_status=None) -> str:
    """One-paragraph operator summary of a snapshot."""
    if snapshot.total_workers == 0:
        return "FLEET STATUS. No workers registered."

    online = snapshot.by_status.get(WorkerStatus.online.value, 0)
    idle = snapshot.by_status.get(WorkerStatus.idle.value, 0)
    offline = snapshot.by_status.get(WorkerStatus.offline.value, 0)
    units = snapshot.total_accepted + snapshot.total_rejected
    parts = [
        f"FLEET STATUS. {online} of {snapshot.total_workers} workers online, "
        f"{idle} idle, {offline} offline.",
        f"Total throughput: {format_throughput(snapshot.total_throughput)}.",
        f"Units: {snapshot.total_accepted:,} accepted, {snapshot.total_rejected:,} rejected"
        + (f" ({snapshot.total_rejected / units * 100:.1f}% rejected)." if units else "."),
    ]
    if snapshot.average_temperature > 0:
        parts.append(f"Average temperature: {snapshot.average_temperature:.1f}C.")
    critical = snapshot.by_health.get(HealthClass.critical.value, 0)
    if critical:
        parts.append(f"ALERT: {critical} workers in critical health.")
    if failover_status:
        upstream = failover_status["active_upstream"]["id"]
        parts.append(f"Upstream: {upstream}.")
        if failover_status.get("exhausted"):
            parts.append("WARNING: All upstreams failed. Automatic failover paused.")
    return " ".join(parts)
