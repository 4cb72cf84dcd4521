"""
Upstream failover state machine.

States: CONNECTED → (failure) → DEGRADED → (threshold reached, cooldown
elapsed) → ROTATING_COOLDOWN → CONNECTED on the next upstream. A success in
any state resets the failure count. Rotations closer together than the
cooldown are suppressed; a rotation attempt after every upstream has failed
since the last success pauses automatic rotation until a success or an
operator force_rotate().

Failure input is a heuristic: substring matches on the local process's text
output. There is no protocol-level acknowledgement behind it, so an error
message that happens to mention "timeout" counts as a failure.
"""

import logging
import re
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from fleetcoord.config import FAILOVER_THRESHOLD, FAILOVER_COOLDOWN
from fleetcoord.errors import UpstreamExhaustedError
from fleetcoord.models import FailoverPhase, FailoverState, UpstreamEndpoint
from fleetcoord.upstreams import UpstreamRegistry

logger = logging.getLogger(__name__)

# Connection-error phrases scraped from the local process output
FAILURE_PATTERNS = [
    re.compile(r"connection\s+failed", re.I),
    re.compile(r"connection\s+lost", re.I),
    re.compile(r"time[d]?\s*out", re.I),
    re.compile(r"refused", re.I),
    re.compile(r"unreachable", re.I),
]


def is_failure_line(text: str) -> bool:
    """Best-effort: does this output line look like an upstream connection error?"""
    if not text:
        return False
    return any(p.search(text) for p in FAILURE_PATTERNS)


class FailoverAction(str, Enum):
    none = "none"
    recovered = "recovered"
    degraded = "degraded"
    rotated = "rotated"
    suppressed = "suppressed"
    exhausted = "exhausted"
    paused = "paused"


@dataclass
class FailoverDecision:
    action: FailoverAction
    state: FailoverState
    endpoint: Optional[UpstreamEndpoint] = None
    error: Optional[UpstreamExhaustedError] = None

    @property
    def rotated(self) -> bool:
        return self.action == FailoverAction.rotated


class FailoverController:
    """Consumes failure/success signals and decides when to rotate upstreams."""

    def __init__(self, upstreams: UpstreamRegistry, threshold: int = FAILOVER_THRESHOLD,
                 cooldown: float = FAILOVER_COOLDOWN, clock=time.time):
        if threshold < 1:
            raise ValueError("threshold must be at least 1")
        self._upstreams = upstreams
        self._threshold = threshold
        self._cooldown = cooldown
        self._clock = clock
        self._lock = threading.Lock()
        self._phase = FailoverPhase.connected
        self._failures = 0
        self._last_rotation_at: Optional[float] = None
        self._last_success_at: Optional[float] = None
        self._rotations_since_success = 0
        self._exhausted = False

    @property
    def upstreams(self) -> UpstreamRegistry:
        return self._upstreams

    @property
    def threshold(self) -> int:
        return self._threshold

    @property
    def cooldown(self) -> float:
        return self._cooldown

    def _state(self) -> FailoverState:
        return FailoverState(
            phase=self._phase,
            active_upstream_index=self._upstreams.active_index,
            consecutive_failures=self._failures,
            last_rotation_at=self._last_rotation_at,
            last_success_at=self._last_success_at,
            rotations_since_success=self._rotations_since_success,
            exhausted=self._exhausted,
        )

    def state(self) -> FailoverState:
        with self._lock:
            return self._state()

    def status(self) -> dict:
        """Summary for the query surface."""
        with self._lock:
            return {
                "active_upstream": self._upstreams.active.model_dump(),
                "active_upstream_index": self._upstreams.active_index,
                "consecutive_failures": self._failures,
                "phase": self._phase.value,
                "exhausted": self._exhausted,
                "last_rotation_at": self._last_rotation_at,
                "last_success_at": self._last_success_at,
                "threshold": self._threshold,
                "cooldown": self._cooldown,
                "upstreams": self._upstreams.ids(),
            }

    # ── Signals ───────────────────────────────────────────────────

    def record_success(self, now: Optional[float] = None) -> FailoverDecision:
        now = self._clock() if now is None else now
        with self._lock:
            was_failing = self._failures > 0 or self._exhausted
            if self._exhausted:
                logger.info(f"[FAILOVER] Success on {self._upstreams.active.id}, "
                            f"automatic rotation resumed")
            elif self._failures:
                logger.info(f"[FAILOVER] {self._upstreams.active.id} recovered after "
                            f"{self._failures} failure(s)")
            self._failures = 0
            self._rotations_since_success = 0
            self._exhausted = False
            self._last_success_at = now
            self._phase = FailoverPhase.connected
            action = FailoverAction.recovered if was_failing else FailoverAction.none
            return FailoverDecision(action, self._state())

    def record_failure(self, now: Optional[float] = None) -> FailoverDecision:
        now = self._clock() if now is None else now
        with self._lock:
            self._failures += 1
            self._phase = FailoverPhase.degraded
            active = self._upstreams.active
            logger.warning(f"[FAILOVER] Failure {self._failures}/{self._threshold} on {active.id}")

            if self._failures < self._threshold:
                return FailoverDecision(FailoverAction.degraded, self._state())

            if self._exhausted:
                return FailoverDecision(FailoverAction.paused, self._state())

            if (self._last_rotation_at is not None
                    and now - self._last_rotation_at < self._cooldown):
                remaining = self._cooldown - (now - self._last_rotation_at)
                logger.info(f"[FAILOVER] Rotation suppressed, cooldown {remaining:.0f}s remaining")
                return FailoverDecision(FailoverAction.suppressed, self._state())

            if self._rotations_since_success >= len(self._upstreams) - 1:
                self._exhausted = True
                error = UpstreamExhaustedError(self._attempted())
                logger.error(f"[FAILOVER] {error}. Automatic rotation paused.")
                return FailoverDecision(FailoverAction.exhausted, self._state(), error=error)

            endpoint = self._rotate(now)
            self._rotations_since_success += 1
            return FailoverDecision(FailoverAction.rotated, self._state(), endpoint=endpoint)

    def force_rotate(self, now: Optional[float] = None) -> FailoverDecision:
        """Operator rotation: ignores cooldown and clears an exhausted pause."""
        now = self._clock() if now is None else now
        with self._lock:
            if self._exhausted:
                logger.info("[FAILOVER] Operator rotation clears exhausted pause")
            self._exhausted = False
            self._rotations_since_success = 0
            endpoint = self._rotate(now)
            return FailoverDecision(FailoverAction.rotated, self._state(), endpoint=endpoint)

    # ── Internals (lock held) ─────────────────────────────────────

    def _rotate(self, now: float) -> UpstreamEndpoint:
        self._phase = FailoverPhase.rotating_cooldown
        self._upstreams.advance()
        self._failures = 0
        self._last_rotation_at = now
        self._phase = FailoverPhase.connected
        endpoint = self._upstreams.active
        logger.warning(f"[FAILOVER] Rotated to upstream {endpoint.id} ({endpoint.address})")
        return endpoint

    def _attempted(self) -> list:
        n = len(self._upstreams)
        start = (self._upstreams.active_index - self._rotations_since_success) % n
        return [self._upstreams.get((start + i) % n).id
                for i in range(self._rotations_since_success + 1)]
