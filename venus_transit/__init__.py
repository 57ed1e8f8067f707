"""Timing and geometry core for simulating the 1761 and 1769 transits of Venus."""

from .errors import InvalidElementsError, InvalidInputError, InvalidSpeedError, InvalidTimeError, VenusTransitError
from .navigator import TimeMode, TimeSteppingNavigator
from .orbit_engine import OrbitalElements, OrbitEngine, solve_kepler_equation
from .time_controller import TimeController
from .transit_calculator import TransitCalculator, TransitPhase

__version__ = "0.1.0"
