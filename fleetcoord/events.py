"""Structured events published by the coordinator to external subscribers."""

import logging
import threading
import time
from enum import Enum
from typing import Callable, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    worker_registered = "WorkerRegistered"
    worker_disconnected = "WorkerDisconnected"
    snapshot_updated = "SnapshotUpdated"
    upstream_rotated = "UpstreamRotated"
    rotation_suppressed = "RotationSuppressed"
    upstream_exhausted = "UpstreamExhausted"


class FleetEvent(BaseModel):
    kind: EventKind
    worker_id: Optional[str] = None
    data: dict = Field(default_factory=dict)
    at: float = Field(default_factory=time.time)


class EventBus:
    """Synchronous fan-out of FleetEvents to registered callbacks."""

    def __init__(self):
        self._callbacks: list[Callable[[FleetEvent], None]] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Callable[[FleetEvent], None]):
        with self._lock:
            self._callbacks.append(callback)

    def unsubscribe(self, callback: Callable[[FleetEvent], None]):
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    @property
    def has_subscribers(self) -> bool:
        with self._lock:
            return bool(self._callbacks)

    def emit(self, event: FleetEvent):
        with self._lock:
            callbacks = list(self._callbacks)
        for cb in callbacks:
            try:
                cb(event)
            except Exception as e:
                logger.warning(f"Event callback error on {event.kind.value}: {e}")
