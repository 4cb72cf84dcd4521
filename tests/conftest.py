"""Shared fixtures: controllable clock, host factory, in-memory channel."""

import pytest

from fleetcoord.models import HostInfo
from fleetcoord.registry import WorkerRegistry


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class FakeChannel:
    """Channel stand-in: yields queued frames, records sends."""

    def __init__(self, frames=()):
        self.frames = list(frames)
        self.sent = []
        self.closed = False
        self.fail_send = False

    def __iter__(self):
        return iter(self.frames)

    def send(self, payload: dict):
        if self.fail_send:
            raise OSError("broken pipe")
        self.sent.append(payload)

    def close(self):
        self.closed = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry(clock):
    return WorkerRegistry(clock=clock)


@pytest.fixture
def make_host():
    def _make(hostname="rig-01", hardware_id="aa:bb:cc:dd:ee:01", **extra):
        return HostInfo(hostname=hostname, hardware_id=hardware_id, **extra)
    return _make


@pytest.fixture
def make_channel():
    return FakeChannel
