"""
Worker health scoring.
Pure functions: no I/O, no clock reads. Callers pass `now` explicitly.
"""

from fleetcoord.config import (
    HEALTH_SILENCE_THRESHOLD, HEALTH_IDLE_THRESHOLD,
    HEALTH_TEMP_LIMIT, HEALTH_POWER_LIMIT,
    HEALTH_EFFICIENCY_FLOOR, HEALTH_REJECTION_LIMIT,
)
from fleetcoord.models import HealthClass, HealthResult, WorkerRecord, WorkerStatus

# Score penalties per issue
PENALTY_SILENCE = 30
PENALTY_TEMPERATURE = 20
PENALTY_POWER = 15
PENALTY_EFFICIENCY = 10
PENALTY_REJECTION = 15

# Classification cut-offs (strictly greater than)
HEALTHY_ABOVE = 80
WARNING_ABOVE = 50


def _minutes(seconds):
    return max(1, int(seconds // 60))


def silence_issue(threshold=HEALTH_SILENCE_THRESHOLD):
    return f"no communication for {_minutes(threshold)}+ minutes"


def stale_issue(threshold):
    """Issue text appended by the staleness sweep."""
    return f"stale: no communication for {_minutes(threshold)}+ minutes, marked offline"


def classify(score):
    if score > HEALTHY_ABOVE:
        return HealthClass.healthy
    if score > WARNING_ABOVE:
        return HealthClass.warning
    return HealthClass.critical


def evaluate(record: WorkerRecord, now: float, *,
             silence_threshold: float = HEALTH_SILENCE_THRESHOLD,
             temp_limit: float = HEALTH_TEMP_LIMIT,
             power_limit: float = HEALTH_POWER_LIMIT,
             efficiency_floor: float = HEALTH_EFFICIENCY_FLOOR,
             rejection_limit: float = HEALTH_REJECTION_LIMIT) -> HealthResult:
    """Score a worker 0-100 and classify it.

    Deductions: silence -30, temperature -20, power -15, efficiency -10,
    rejection rate -15. Issues are listed in that order.
    """
    m = record.metrics
    issues = []
    score = 100

    if now - record.last_seen_at > silence_threshold:
        issues.append(silence_issue(silence_threshold))
        score -= PENALTY_SILENCE

    if m.temperature is not None and m.temperature > temp_limit:
        issues.append(f"high temperature: {m.temperature:.1f}C")
        score -= PENALTY_TEMPERATURE

    if m.power is not None and m.power > power_limit:
        issues.append(f"high power consumption: {m.power:.0f}W")
        score -= PENALTY_POWER

    if m.throughput > 0 and m.power:
        if m.throughput / m.power < efficiency_floor:
            issues.append("low efficiency")
            score -= PENALTY_EFFICIENCY

    total_units = m.accepted + m.rejected
    if total_units > 0:
        rejection_rate = m.rejected / total_units
        if rejection_rate > rejection_limit:
            issues.append(f"high rejection rate: {rejection_rate * 100:.1f}%")
            score -= PENALTY_REJECTION

    score = max(0, min(100, score))
    return HealthResult(
        score=score,
        classification=classify(score),
        issues=issues,
        last_evaluated_at=now,
    )


def derive_status(classification: HealthClass, last_seen_at: float, now: float, *,
                  idle_threshold: float = HEALTH_IDLE_THRESHOLD) -> WorkerStatus:
    """critical → offline; silent past idle_threshold → idle; else online."""
    if classification == HealthClass.critical:
        return WorkerStatus.offline
    if now - last_seen_at > idle_threshold:
        return WorkerStatus.idle
    return WorkerStatus.online
