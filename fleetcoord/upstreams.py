"""Ordered upstream endpoints with a single active entry."""

import logging

from fleetcoord.models import UpstreamEndpoint

logger = logging.getLogger(__name__)


class UpstreamRegistry:
    """Candidate upstreams sorted by priority (lower first).

    Not locked on its own; the FailoverController serializes every read and
    rotation through its lock.
    """

    def __init__(self, endpoints):
        parsed = [e if isinstance(e, UpstreamEndpoint) else UpstreamEndpoint.model_validate(e)
                  for e in endpoints]
        if not parsed:
            raise ValueError("At least one upstream endpoint is required")
        ids = [e.id for e in parsed]
        if len(set(ids)) != len(ids):
            raise ValueError(f"Duplicate upstream ids: {ids}")
        # sorted() is stable, so equal priorities keep their configured order
        self._endpoints = sorted(parsed, key=lambda e: e.priority)
        self._active = 0

    def __len__(self):
        return len(self._endpoints)

    def __iter__(self):
        return iter(list(self._endpoints))

    @property
    def active_index(self) -> int:
        return self._active

    @property
    def active(self) -> UpstreamEndpoint:
        return self._endpoints[self._active]

    def get(self, index: int) -> UpstreamEndpoint:
        return self._endpoints[index]

    def advance(self) -> int:
        """Move to the next endpoint, wrapping around. Returns the new index."""
        previous = self.active
        self._active = (self._active + 1) % len(self._endpoints)
        logger.info(f"[UPSTREAM] Active upstream {previous.id} → {self.active.id} ({self.active.address})")
        return self._active

    def ids(self) -> list:
        return [e.id for e in self._endpoints]
