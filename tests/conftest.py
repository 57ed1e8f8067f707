import pytest

from venus_transit.orbit_engine import OrbitEngine
from venus_transit.time_controller import TimeController
from venus_transit.transit_calculator import TransitCalculator


class FakeClock:
    """Manually advanced stand-in for time.monotonic."""

    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture(scope="session")
def engine():
    return OrbitEngine()


@pytest.fixture
def calculator(engine):
    return TransitCalculator(engine)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def controller(clock):
    return TimeController(clock=clock)
