"""
Event-aware stepping on top of the simulation clock: contacts, markers, a
30-minute measurement grid, bookmarks, an observation log and scripted demos.
"""

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from .constants import CONTACT_NAMES
from .errors import InvalidInputError
from .julian import TimeLike, datetime_to_julian, parse_time
from .orbit_engine import angle_between
from .time_controller import TimeChange, TimeController
from .transit_calculator import TransitCalculator

logger = logging.getLogger(__name__)

MEASUREMENT_INTERVAL = timedelta(minutes=30)
EVENT_TOLERANCE = timedelta(minutes=1)
PRECISE_OFFSETS_MIN = (-30, -15, -5, -1, 0, 1, 5, 15, 30)
GRID_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class TimeMode(Enum):
    REAL_TIME = "real_time"
    ACCELERATED = "accelerated"
    STEP_BY_STEP = "step_by_step"
    CONTACT_MODE = "contact_mode"
    OBSERVATION_MODE = "observation_mode"


class StepType(Enum):
    NORMAL = "normal"
    CONTACT = "contact"
    KEYPOINT = "keypoint"
    PRECISE = "precise"
    MEASUREMENT = "measurement"


@dataclass(frozen=True)
class TimeMarker:
    time: datetime
    kind: str  # preparation, final, contact, midpoint, precise
    label: str
    year: int


@dataclass(frozen=True)
class DemoStep:
    time: datetime
    duration_ms: int
    label: str


@dataclass
class Bookmark:
    id: int
    time: datetime
    label: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    created: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "time": self.time.isoformat(),
            "label": self.label,
            "metadata": self.metadata,
            "created": self.created.isoformat(),
        }


def _demo(day: str, *steps) -> List[DemoStep]:
    return [DemoStep(parse_time(f"{day}T{hm}:00Z"), duration, label) for hm, duration, label in steps]


DEMO_SEQUENCES: Dict[str, List[DemoStep]] = {
    "Complete 1761 transit": [DemoStep(parse_time("1761-06-05T12:00:00Z"), 5000, "Observation preparation")]
    + _demo(
        "1761-06-06",
        ("02:00", 3000, "Waiting for ingress"),
        ("02:19", 2000, "First contact"),
        ("02:39", 2000, "Second contact"),
        ("05:30", 3000, "Mid-transit"),
        ("08:37", 2000, "Third contact"),
        ("08:57", 2000, "Fourth contact"),
    ),
    "Parallax measurement demo": _demo(
        "1761-06-06",
        ("05:30", 3000, "Mid-transit"),
        ("05:30", 5000, "Measure the parallax"),
        ("05:30", 3000, "Compute the distance"),
    ),
}


def _nearest(times: Sequence[datetime], current: datetime, direction: int) -> datetime:
    """Nearest time strictly after (direction > 0) or before (direction < 0), wrapping around the ends."""
    ordered = sorted(times)
    if direction > 0:
        for t in ordered:
            if t > current:
                return t
        return ordered[0]

    for t in reversed(ordered):
        if t < current:
            return t
    return ordered[-1]


class TimeSteppingNavigator:
    def __init__(
        self,
        controller: TimeController,
        calculator: TransitCalculator,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        demo_sequences: Optional[Dict[str, List[DemoStep]]] = None,
    ):
        self.controller = controller
        self.calculator = calculator
        self.demo_sequences = dict(demo_sequences if demo_sequences is not None else DEMO_SEQUENCES)
        self._sleep = sleep

        self.mode = TimeMode.ACCELERATED
        self.step_size = 1.0  # days

        self.contact_times = self._collect_contacts()
        self.time_markers = self._build_markers()
        self.keypoints = self._build_precise_keypoints()

        self._bookmarks: List[Bookmark] = []
        self._ids = itertools.count(1)
        self.observation_log: List[dict] = []
        self.measurement_points: List[dict] = []

        self._demo_token: Optional[object] = None
        self.current_demo: Optional[str] = None
        self.current_demo_step = 0

        self._demo_listeners: List[Callable[[dict], None]] = []
        self._event_listeners: List[Callable[[str, dict], None]] = []

        self._unsubscribe = controller.add_time_listener(self._on_time_changed)

    def _collect_contacts(self) -> List[TimeMarker]:
        contacts = []
        for year in self.calculator.years:
            table = self.calculator.events[year]["contacts"]
            for name in CONTACT_NAMES:
                contacts.append(TimeMarker(table[name], "contact", f"{year} {name} contact", year))
        return sorted(contacts, key=lambda m: m.time)

    def _build_markers(self) -> List[TimeMarker]:
        markers = []
        for year in self.calculator.years:
            date = self.calculator.events[year]["date"]
            markers.append(TimeMarker(date.replace(month=5, day=1, hour=0, minute=0), "preparation", "Observation preparation begins", year))
            markers.append(TimeMarker(date - timedelta(hours=12), "final", "Final calibration", year))
            markers.append(TimeMarker(date + timedelta(hours=5, minutes=30), "midpoint", "Mid-transit", year))
        markers.extend(self.contact_times)
        return sorted(markers, key=lambda m: m.time)

    def _build_precise_keypoints(self) -> List[TimeMarker]:
        keypoints = []
        for contact in self.contact_times:
            for minutes in PRECISE_OFFSETS_MIN:
                keypoints.append(
                    TimeMarker(
                        contact.time + timedelta(minutes=minutes),
                        "precise",
                        f"{contact.label} {minutes:+d} min",
                        contact.year,
                    )
                )
        return sorted(keypoints, key=lambda m: m.time)

    # -- listeners ---------------------------------------------------------

    @staticmethod
    def _subscribe(listeners: list, callback) -> Callable[[], None]:
        listeners.append(callback)

        def unsubscribe() -> None:
            if callback in listeners:
                listeners.remove(callback)

        return unsubscribe

    def add_demo_listener(self, callback: Callable[[dict], None]) -> Callable[[], None]:
        return self._subscribe(self._demo_listeners, callback)

    def add_event_listener(self, callback: Callable[[str, dict], None]) -> Callable[[], None]:
        return self._subscribe(self._event_listeners, callback)

    def _emit_demo(self, payload: dict) -> None:
        for callback in list(self._demo_listeners):
            try:
                callback(payload)
            except Exception:
                logger.exception("Demo listener %r failed", callback)

    def _emit_event(self, name: str, payload: dict) -> None:
        for callback in list(self._event_listeners):
            try:
                callback(name, payload)
            except Exception:
                logger.exception("Event listener %r failed on %s", callback, name)

    def _on_time_changed(self, change: TimeChange) -> None:
        self.check_for_time_events(change.time)
        self.update_observations(change.time)

    # -- stepping ----------------------------------------------------------

    @staticmethod
    def _direction(direction: int) -> int:
        if direction == 0:
            raise InvalidInputError("Step direction must be non-zero")
        return 1 if direction > 0 else -1

    def step_to_next_contact(self, time: TimeLike, direction: int) -> datetime:
        current = parse_time(time)
        return _nearest([c.time for c in self.contact_times], current, self._direction(direction))

    def step_to_next_keypoint(self, time: TimeLike, direction: int, precise: bool = False) -> datetime:
        current = parse_time(time)
        if precise:
            times = [k.time for k in self.keypoints]
        else:
            times = [m.time for m in self.time_markers if m.kind in ("contact", "midpoint")]
        return _nearest(times, current, self._direction(direction))

    def step_to_next_measurement(self, time: TimeLike, direction: int) -> datetime:
        current = parse_time(time)
        base = GRID_EPOCH + ((current - GRID_EPOCH) // MEASUREMENT_INTERVAL) * MEASUREMENT_INTERVAL
        if self._direction(direction) > 0:
            return base + MEASUREMENT_INTERVAL
        return base if base < current else base - MEASUREMENT_INTERVAL

    def set_time_mode(self, mode) -> TimeMode:
        try:
            mode = TimeMode(mode)
        except ValueError as e:
            raise InvalidInputError(f"Invalid time mode: {mode!r}") from e

        self.mode = mode
        if mode is TimeMode.STEP_BY_STEP:
            self.step_size = 1.0
        elif mode is TimeMode.OBSERVATION_MODE:
            self.step_size = 0.5
        self._emit_event("time_mode_changed", {"mode": mode.value})
        return mode

    def step_time(self, direction: int, step_type="normal") -> datetime:
        try:
            step_type = StepType(step_type)
        except ValueError as e:
            raise InvalidInputError(f"Invalid step type: {step_type!r}") from e

        direction = self._direction(direction)
        current = self.controller.current_time
        if step_type is StepType.CONTACT:
            target = self.step_to_next_contact(current, direction)
        elif step_type is StepType.KEYPOINT:
            target = self.step_to_next_keypoint(current, direction)
        elif step_type is StepType.PRECISE:
            target = self.step_to_next_keypoint(current, direction, precise=True)
        elif step_type is StepType.MEASUREMENT:
            target = self.step_to_next_measurement(current, direction)
        else:
            target = current + timedelta(days=direction * self.step_size)

        self.controller.jump_to_time(target)
        return self.controller.current_time

    # -- demos -------------------------------------------------------------

    @property
    def demo_running(self) -> bool:
        return self._demo_token is not None

    async def run_demo_sequence(self, name: str) -> bool:
        """
        Play a named demo: jump to each step, notify, then wait its duration.

        Returns True if every step ran, False if the demo was stopped or
        superseded by another one.
        """
        steps = self.demo_sequences.get(name)
        if steps is None:
            raise InvalidInputError(f"Unknown demo sequence: {name!r}")

        token = object()
        self._demo_token = token
        self.current_demo = name
        self.current_demo_step = 0
        logger.info("Starting demo %r (%d steps)", name, len(steps))

        try:
            for index, step in enumerate(steps):
                if self._demo_token is not token:
                    return False
                self.current_demo_step = index
                self.controller.jump_to_time(step.time)
                self._emit_demo({"name": name, "step": step, "index": index, "total": len(steps)})
                await self._sleep(step.duration_ms / 1000.0)
            return self._demo_token is token
        finally:
            if self._demo_token is token:
                self._demo_token = None
                self.current_demo = None

    def stop_demo_sequence(self) -> None:
        if self._demo_token is None:
            return
        logger.info("Stopping demo %r at step %d", self.current_demo, self.current_demo_step)
        self._demo_token = None
        self.current_demo = None
        self._emit_event("demo_stopped", {})

    # -- bookmarks and records ---------------------------------------------

    def add_bookmark(self, time: TimeLike, label: str, metadata: Optional[dict] = None) -> Bookmark:
        bookmark = Bookmark(id=next(self._ids), time=parse_time(time), label=label, metadata=dict(metadata or {}))
        self._bookmarks.append(bookmark)
        self._bookmarks.sort(key=lambda b: b.time)
        self._emit_event("bookmark_added", {"bookmark": bookmark})
        return bookmark

    def jump_to_bookmark(self, bookmark_id: int) -> datetime:
        for bookmark in self._bookmarks:
            if bookmark.id == bookmark_id:
                self.controller.jump_to_time(bookmark.time)
                return self.controller.current_time
        raise InvalidInputError(f"Unknown bookmark: {bookmark_id!r}")

    @property
    def bookmarks(self) -> List[Bookmark]:
        return list(self._bookmarks)

    def add_observation(self, time: TimeLike, observation: dict) -> dict:
        t = parse_time(time)
        jd = datetime_to_julian(t)
        earth = self.calculator.engine.get_body_position("earth", jd)
        venus = self.calculator.engine.get_body_position("venus", jd)

        record = {
            "id": next(self._ids),
            "time": t,
            "julian_date": jd,
            "observation": observation,
            "calculated": {
                "angular_separation": angle_between(earth, venus),
                "earth_position": earth,
                "venus_position": venus,
            },
        }
        self.observation_log.append(record)
        self._emit_event("observation_added", {"record": record})
        return record

    def get_observation_log(self) -> List[dict]:
        return sorted(self.observation_log, key=lambda r: r["time"])

    def check_for_time_events(self, time: TimeLike) -> List[dict]:
        """Contacts and markers within one minute of ``time``; each is also broadcast to event listeners."""
        current = parse_time(time)
        events = []

        for contact in self.contact_times:
            diff = abs(current - contact.time)
            if diff < EVENT_TOLERANCE:
                payload = {"year": contact.year, "contact": contact.label, "time": contact.time, "distance": diff}
                events.append({"type": "contact_approaching", **payload})
                self._emit_event("contact_approaching", payload)

        for marker in self.time_markers:
            if abs(current - marker.time) < EVENT_TOLERANCE:
                events.append({"type": "time_marker_reached", "marker": marker})
                self._emit_event("time_marker_reached", {"marker": marker})

        return events

    def update_observations(self, time: TimeLike) -> None:
        status = self.calculator.get_transit_status(time)
        if status.is_transiting and 0.0 < status.progress < 100.0:
            self.measurement_points.append(
                {
                    "type": "transit_observation",
                    "year": status.year,
                    "phase": status.phase.value,
                    "progress": status.progress,
                    "timestamp": parse_time(time),
                }
            )

    def export_data(self) -> dict:
        return {
            "bookmarks": [b.to_dict() for b in self._bookmarks],
            "observations": [
                {**r, "time": r["time"].isoformat()} for r in self.get_observation_log()
            ],
            "measurements": [
                {**m, "timestamp": m["timestamp"].isoformat()} for m in self.measurement_points
            ],
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    def clear_all(self) -> None:
        self._bookmarks.clear()
        self.observation_log.clear()
        self.measurement_points.clear()

    def close(self) -> None:
        self.stop_demo_sequence()
        self._unsubscribe()
