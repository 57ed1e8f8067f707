"""
Simulation clock for the transit observation window.

The controller is the single owner of the simulation time. Readers on other
threads should take a :meth:`TimeController.snapshot` instead of holding a
reference to the controller.
"""

import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from numbers import Real
from typing import Callable, List, Optional, Sequence

from .constants import OBSERVATION_WINDOWS
from .errors import InvalidInputError, InvalidSpeedError, InvalidTimeError
from .julian import MS_PER_DAY, TimeLike, datetime_to_julian, format_time, julian_centuries, parse_time

logger = logging.getLogger(__name__)

MIN_SPEED = 0.01  # simulated days per real second
MAX_SPEED = 1000.0
SPEED_STEPS = (0.01, 0.1, 1.0, 10.0, 100.0, 1000.0)


@dataclass(frozen=True)
class Preset:
    name: str
    time: datetime
    kind: str = "transit"


PRESETS = (
    Preset("1761 transit start", parse_time("1761-06-06T02:00:00Z")),
    Preset("1761 transit peak", parse_time("1761-06-06T05:30:00Z")),
    Preset("1761 transit end", parse_time("1761-06-06T09:00:00Z")),
    Preset("1769 transit start", parse_time("1769-06-03T02:00:00Z")),
    Preset("1769 transit peak", parse_time("1769-06-03T05:30:00Z")),
    Preset("1769 transit end", parse_time("1769-06-03T09:00:00Z")),
)


def _progress(current: datetime, start: datetime, end: datetime) -> float:
    total = (end - start).total_seconds()
    if total <= 0:
        return 0.0
    elapsed = (current - start).total_seconds()
    return max(0.0, min(100.0, elapsed / total * 100.0))


@dataclass(frozen=True)
class SimulationClock:
    current_time: datetime
    start_time: datetime
    end_time: datetime
    speed: float
    is_playing: bool
    min_speed: float = MIN_SPEED
    max_speed: float = MAX_SPEED

    @property
    def julian_date(self) -> float:
        return datetime_to_julian(self.current_time)

    @property
    def progress(self) -> float:
        return _progress(self.current_time, self.start_time, self.end_time)


@dataclass(frozen=True)
class TimeChange:
    time: datetime
    julian_date: float
    formatted_time: str
    progress: float
    is_jump: bool = False

    def to_dict(self) -> dict:
        return {
            "time": self.time.isoformat(),
            "julianDate": self.julian_date,
            "formattedTime": self.formatted_time,
            "progressPercent": self.progress,
            "isJump": self.is_jump,
        }


Listener = Callable[..., None]


class TimeController:
    def __init__(
        self,
        start_time: Optional[TimeLike] = None,
        end_time: Optional[TimeLike] = None,
        speed: float = 1.0,
        *,
        min_speed: float = MIN_SPEED,
        max_speed: float = MAX_SPEED,
        clock: Callable[[], float] = time.monotonic,
        presets: Sequence[Preset] = PRESETS,
    ):
        default_start, default_end = OBSERVATION_WINDOWS[1761]
        self.start_time = parse_time(start_time) if start_time is not None else default_start
        self.end_time = parse_time(end_time) if end_time is not None else default_end
        if self.start_time > self.end_time:
            raise InvalidTimeError(f"start_time {self.start_time} is after end_time {self.end_time}")

        self.min_speed = float(min_speed)
        self.max_speed = float(max_speed)
        self.current_time = self.start_time
        self.is_playing = False
        self.speed = self._clamp_speed(self._check_speed(speed))
        self.presets = list(presets)

        self._clock = clock
        self._last_update: Optional[float] = None

        self._time_listeners: List[Listener] = []
        self._play_listeners: List[Listener] = []
        self._speed_listeners: List[Listener] = []

    # -- listeners ---------------------------------------------------------

    @staticmethod
    def _subscribe(listeners: List[Listener], callback: Listener) -> Callable[[], None]:
        listeners.append(callback)

        def unsubscribe() -> None:
            if callback in listeners:
                listeners.remove(callback)

        return unsubscribe

    def add_time_listener(self, callback: Callable[[TimeChange], None]) -> Callable[[], None]:
        return self._subscribe(self._time_listeners, callback)

    def add_play_state_listener(self, callback: Callable[[bool], None]) -> Callable[[], None]:
        return self._subscribe(self._play_listeners, callback)

    def add_speed_listener(self, callback: Callable[[float], None]) -> Callable[[], None]:
        return self._subscribe(self._speed_listeners, callback)

    @staticmethod
    def _emit(listeners: List[Listener], payload) -> None:
        for callback in list(listeners):
            try:
                callback(payload)
            except Exception:
                logger.exception("Listener %r failed", callback)

    def _notify_time_changed(self, is_jump: bool = False) -> None:
        self._emit(self._time_listeners, self._time_change(is_jump))

    def _time_change(self, is_jump: bool = False) -> TimeChange:
        return TimeChange(
            time=self.current_time,
            julian_date=self.julian_date,
            formatted_time=self.formatted_time,
            progress=self.progress,
            is_jump=is_jump,
        )

    # -- time --------------------------------------------------------------

    def _clamp_time(self, t: datetime) -> datetime:
        return max(self.start_time, min(t, self.end_time))

    def set_time(self, t: TimeLike) -> bool:
        """Move to ``t`` (clamped to the window). Returns False if the time did not change."""
        new_time = self._clamp_time(parse_time(t))
        if new_time == self.current_time:
            return False
        self.current_time = new_time
        self._notify_time_changed()
        return True

    def jump_to_time(self, t: TimeLike) -> bool:
        new_time = self._clamp_time(parse_time(t))
        changed = new_time != self.current_time
        self.current_time = new_time
        self._notify_time_changed(is_jump=True)
        return changed

    def jump_to_preset(self, name: str) -> bool:
        for preset in self.presets:
            if preset.name == name:
                return self.jump_to_time(preset.time)
        raise InvalidInputError(f"Unknown preset: {name!r}")

    def set_time_range(self, start: TimeLike, end: TimeLike) -> None:
        start = parse_time(start)
        end = parse_time(end)
        if start > end:
            raise InvalidTimeError(f"Range start {start} is after range end {end}")

        self.start_time = start
        self.end_time = end
        self.current_time = self._clamp_time(self.current_time)
        self._notify_time_changed()

    def use_transit_window(self, year: int) -> None:
        window = OBSERVATION_WINDOWS.get(year)
        if window is None:
            raise InvalidInputError(f"No observation window for year {year!r}")
        self.set_time_range(*window)

    # -- playback ----------------------------------------------------------

    def set_play_state(self, is_playing: bool) -> bool:
        is_playing = bool(is_playing)
        if self.is_playing == is_playing:
            return False

        self.is_playing = is_playing
        self._last_update = self._clock() if is_playing else None
        logger.debug("Playback %s at %s", "started" if is_playing else "stopped", self.formatted_time)
        self._emit(self._play_listeners, is_playing)
        return True

    def toggle_play_state(self) -> bool:
        return self.set_play_state(not self.is_playing)

    @staticmethod
    def _check_speed(speed: float) -> float:
        if isinstance(speed, bool) or not isinstance(speed, Real) or not math.isfinite(speed):
            raise InvalidSpeedError(f"Invalid speed: {speed!r}")
        return float(speed)

    def _clamp_speed(self, speed: float) -> float:
        return max(self.min_speed, min(speed, self.max_speed))

    def set_speed(self, speed: float) -> float:
        self.speed = self._clamp_speed(self._check_speed(speed))
        self._emit(self._speed_listeners, self.speed)
        return self.speed

    def increase_speed(self) -> float:
        for step in SPEED_STEPS:
            if step > self.speed:
                return self.set_speed(step)
        return self.speed

    def decrease_speed(self) -> float:
        for step in reversed(SPEED_STEPS):
            if step < self.speed:
                return self.set_speed(step)
        return self.speed

    def advance(self, real_delta_seconds: float) -> bool:
        """
        Advance the clock by ``real_delta_seconds`` of wall time scaled by the speed.

        Running past the end of the window clamps to it and stops playback.
        Deltas are wall time, so they are never negative. Returns True if the
        simulation time changed.
        """
        if (
            isinstance(real_delta_seconds, bool)
            or not isinstance(real_delta_seconds, Real)
            or not math.isfinite(real_delta_seconds)
            or real_delta_seconds < 0
        ):
            raise InvalidTimeError(f"Invalid frame delta: {real_delta_seconds!r}")

        delta_ms = real_delta_seconds * self.speed * MS_PER_DAY
        remaining_ms = (self.end_time - self.current_time).total_seconds() * 1000.0

        # checked before building the timedelta: huge deltas overflow datetime
        hit_boundary = delta_ms > remaining_ms
        new_time = self.end_time if hit_boundary else self.current_time + timedelta(milliseconds=delta_ms)

        changed = new_time != self.current_time
        self.current_time = new_time
        if changed:
            self._notify_time_changed()

        if hit_boundary and self.is_playing:
            logger.info("Reached the edge of the observation window at %s; pausing", self.formatted_time)
            self.set_play_state(False)

        return changed

    def tick(self, now: Optional[float] = None) -> bool:
        """Per-frame entry point for the host loop; advances by the wall time since the last tick."""
        if not self.is_playing:
            return False

        now = self._clock() if now is None else now
        if self._last_update is None:
            self._last_update = now
            return False

        delta = max(0.0, now - self._last_update)
        self._last_update = now
        return self.advance(delta)

    # -- queries -----------------------------------------------------------

    @property
    def julian_date(self) -> float:
        return datetime_to_julian(self.current_time)

    @property
    def progress(self) -> float:
        return _progress(self.current_time, self.start_time, self.end_time)

    @property
    def formatted_time(self) -> str:
        return format_time(self.current_time)

    def time_parameters(self) -> dict:
        jd = self.julian_date
        t = self.current_time
        return {
            "julian_date": jd,
            "julian_centuries": julian_centuries(jd),
            "utc": t,
            "year": t.year,
            "month": t.month,
            "day": t.day,
            "hour": t.hour,
            "minute": t.minute,
            "second": t.second,
        }

    def snapshot(self) -> SimulationClock:
        return SimulationClock(
            current_time=self.current_time,
            start_time=self.start_time,
            end_time=self.end_time,
            speed=self.speed,
            is_playing=self.is_playing,
            min_speed=self.min_speed,
            max_speed=self.max_speed,
        )

    def close(self) -> None:
        self.set_play_state(False)
        self._time_listeners.clear()
        self._play_listeners.clear()
        self._speed_listeners.clear()
