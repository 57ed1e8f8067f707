import asyncio
import math
from datetime import datetime, timedelta, timezone

import pytest

from venus_transit.errors import InvalidInputError
from venus_transit.navigator import TimeMode, TimeSteppingNavigator

UTC = timezone.utc


def utc(*args):
    return datetime(*args, tzinfo=UTC)


class RecordingSleep:
    def __init__(self, on_call=None):
        self.calls = []
        self.on_call = on_call

    async def __call__(self, seconds):
        self.calls.append(seconds)
        if self.on_call is not None:
            self.on_call()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def navigator(controller, calculator, sleep):
    return TimeSteppingNavigator(controller, calculator, sleep=sleep)


def test_step_to_next_contact_forward(navigator):
    assert navigator.step_to_next_contact(utc(1761, 6, 6), 1) == utc(1761, 6, 6, 2, 19)
    assert navigator.step_to_next_contact(utc(1761, 6, 6, 2, 19), 1) == utc(1761, 6, 6, 2, 39)
    assert navigator.step_to_next_contact(utc(1761, 6, 6, 9), 1) == utc(1769, 6, 3, 2, 19)


def test_step_to_previous_contact_is_the_nearest_one(navigator):
    assert navigator.step_to_next_contact(utc(1761, 6, 6, 5), -1) == utc(1761, 6, 6, 2, 39)
    assert navigator.step_to_next_contact(utc(1769, 6, 3, 8, 57), -1) == utc(1769, 6, 3, 8, 37)


def test_contact_stepping_wraps_around(navigator):
    assert navigator.step_to_next_contact(utc(1769, 6, 3, 9), 1) == utc(1761, 6, 6, 2, 19)
    assert navigator.step_to_next_contact(utc(1761, 1, 1), -1) == utc(1769, 6, 3, 8, 57)


def test_keypoints(navigator):
    assert navigator.step_to_next_keypoint(utc(1761, 6, 6, 2, 39), 1) == utc(1761, 6, 6, 5, 30)
    assert navigator.step_to_next_keypoint(utc(1761, 6, 6, 2, 19), 1, precise=True) == utc(1761, 6, 6, 2, 20)
    assert navigator.step_to_next_keypoint(utc(1761, 6, 6, 2, 19), -1, precise=True) == utc(1761, 6, 6, 2, 18)
    assert len(navigator.keypoints) == 2 * 4 * 9


def test_measurement_grid(navigator):
    assert navigator.step_to_next_measurement(utc(1761, 6, 6, 5, 10), 1) == utc(1761, 6, 6, 5, 30)
    assert navigator.step_to_next_measurement(utc(1761, 6, 6, 5, 10), -1) == utc(1761, 6, 6, 5, 0)
    assert navigator.step_to_next_measurement(utc(1761, 6, 6, 5, 30), 1) == utc(1761, 6, 6, 6, 0)
    assert navigator.step_to_next_measurement(utc(1761, 6, 6, 5, 30), -1) == utc(1761, 6, 6, 5, 0)


def test_zero_direction_is_rejected(navigator):
    with pytest.raises(InvalidInputError):
        navigator.step_to_next_contact(utc(1761, 6, 6), 0)


def test_step_time_moves_the_controller(navigator, controller):
    controller.set_time(utc(1761, 6, 6))

    assert navigator.step_time(1, "contact") == utc(1761, 6, 6, 2, 19)
    assert navigator.step_time(1, "measurement") == utc(1761, 6, 6, 2, 30)
    assert navigator.step_time(-1) == utc(1761, 6, 5, 2, 30)

    # the next contact (1769) lies outside the 1761 window
    controller.set_time(utc(1761, 6, 6, 9))
    assert navigator.step_time(1, "contact") == controller.end_time

    with pytest.raises(InvalidInputError):
        navigator.step_time(1, "sideways")


def test_time_modes(navigator, controller):
    navigator.set_time_mode("observation_mode")
    assert navigator.mode is TimeMode.OBSERVATION_MODE
    assert navigator.step_size == 0.5

    controller.set_time(utc(1761, 6, 6))
    assert navigator.step_time(1) == utc(1761, 6, 6, 12)

    navigator.set_time_mode(TimeMode.STEP_BY_STEP)
    assert navigator.step_size == 1.0

    with pytest.raises(InvalidInputError):
        navigator.set_time_mode("warp")


def test_demo_sequence_runs_every_step(navigator, controller, sleep):
    steps = []
    navigator.add_demo_listener(steps.append)

    completed = asyncio.run(navigator.run_demo_sequence("Complete 1761 transit"))

    assert completed
    assert sleep.calls == [5.0, 3.0, 2.0, 2.0, 3.0, 2.0, 2.0]
    assert [s["index"] for s in steps] == list(range(7))
    assert steps[2]["step"].label == "First contact"
    assert controller.current_time == utc(1761, 6, 6, 8, 57)
    assert not navigator.demo_running


def test_demo_sequence_can_be_stopped(controller, calculator):
    steps = []
    navigator = None

    def stop():
        navigator.stop_demo_sequence()

    sleep = RecordingSleep(on_call=stop)
    navigator = TimeSteppingNavigator(controller, calculator, sleep=sleep)
    navigator.add_demo_listener(steps.append)

    completed = asyncio.run(navigator.run_demo_sequence("Parallax measurement demo"))

    assert not completed
    assert len(steps) == 1
    assert sleep.calls == [3.0]
    assert not navigator.demo_running


def test_unknown_demo_raises(navigator):
    with pytest.raises(ValueError):
        asyncio.run(navigator.run_demo_sequence("Transit of Mercury"))


def test_bookmarks(navigator, controller):
    late = navigator.add_bookmark("1761-06-06T08:00:00Z", "Egress soon")
    early = navigator.add_bookmark("1761-06-06T03:00:00Z", "Ingress done", {"note": "clear sky"})

    assert [b.label for b in navigator.bookmarks] == ["Ingress done", "Egress soon"]
    assert navigator.jump_to_bookmark(late.id) == utc(1761, 6, 6, 8)
    assert early.metadata == {"note": "clear sky"}

    with pytest.raises(InvalidInputError):
        navigator.jump_to_bookmark(999)


def test_add_observation_records_geometry(navigator):
    record = navigator.add_observation("1761-06-06T05:30:00Z", {"note": "black drop"})

    assert record["julian_date"] == pytest.approx(2364408.72917, abs=1e-5)
    assert record["calculated"]["angular_separation"] < math.radians(1.0)
    assert navigator.get_observation_log() == [record]


def test_check_for_time_events(navigator):
    events = navigator.check_for_time_events("1761-06-06T02:19:30Z")
    kinds = {e["type"] for e in events}
    assert kinds == {"contact_approaching", "time_marker_reached"}

    assert navigator.check_for_time_events("1761-06-06T03:30:00Z") == []


def test_event_listeners_follow_the_clock(navigator, controller):
    events = []
    navigator.add_event_listener(lambda name, payload: events.append(name))

    controller.set_time("1761-06-06T02:39:00Z")

    assert "contact_approaching" in events
    assert len(navigator.measurement_points) == 1
    assert navigator.measurement_points[0]["phase"] == "second"


def test_export_data(navigator):
    navigator.add_bookmark("1761-06-06T03:00:00Z", "Ingress done")
    navigator.add_observation("1761-06-06T05:30:00Z", {})

    data = navigator.export_data()

    assert data["bookmarks"][0]["time"] == "1761-06-06T03:00:00+00:00"
    assert data["observations"][0]["time"] == "1761-06-06T05:30:00+00:00"
    assert data["measurements"] == []
    assert "timestamp" in data

    navigator.clear_all()
    assert navigator.bookmarks == []
