"""Shared fixtures for the security pipeline tests."""

import pytest

from reqshield.app.core.store import InMemoryStore


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def set(self, value: float) -> None:
        self.now = value


@pytest.fixture
def clock():
    return FakeClock(start=1000.0)


@pytest.fixture
def store(clock):
    return InMemoryStore(clock=clock)
