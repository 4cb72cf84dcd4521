"""Typed errors raised by the registry, the failover controller and the channel boundary."""


class FleetError(Exception):
    """Base class for coordinator errors."""


class NotFoundError(FleetError, KeyError):
    """An operation referenced an unknown worker id."""

    def __init__(self, worker_id: str):
        self.worker_id = worker_id
        super().__init__(f"Unknown worker: {worker_id}")

    def __str__(self) -> str:
        return self.args[0]


class StaleWriteError(FleetError):
    """A write raced a concurrent replacement of the same record."""

    def __init__(self, worker_id: str):
        self.worker_id = worker_id
        super().__init__(f"Record {worker_id} changed during update")


class UpstreamExhaustedError(FleetError):
    """Every known upstream failed without a single success in one full cycle."""

    def __init__(self, attempted: list[str]):
        self.attempted = list(attempted)
        super().__init__(
            f"All {len(self.attempted)} upstreams failed since last success: "
            f"{', '.join(self.attempted)}")


class MalformedMessageError(FleetError, ValueError):
    """An inbound message failed schema validation."""

    def __init__(self, reason: str, raw=None):
        self.reason = reason
        self.raw = raw
        super().__init__(f"Malformed message: {reason}")
