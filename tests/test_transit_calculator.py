import math
from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from venus_transit.constants import AU_KM, HISTORICAL_OBSERVATIONS
from venus_transit.transit_calculator import (
    TransitCalculator,
    TransitPhase,
    greenwich_mean_sidereal_time,
    haversine_km,
)

UTC = timezone.utc


def utc(*args):
    return datetime(*args, tzinfo=UTC)


def test_mid_transit_status(calculator):
    status = calculator.get_transit_status("1761-06-06T05:30:00Z")
    assert status.is_transiting
    assert status.year == 1761
    assert status.phase is TransitPhase.SECOND
    assert status.progress == pytest.approx(191 / 398 * 100)
    assert status.next_transit is None


@pytest.mark.parametrize(
    "t, phase",
    [
        (utc(1761, 6, 6, 2, 19), TransitPhase.FIRST),
        (utc(1761, 6, 6, 2, 39), TransitPhase.SECOND),
        (utc(1761, 6, 6, 8, 40), TransitPhase.THIRD),
        (utc(1761, 6, 6, 8, 57), TransitPhase.POST_TRANSIT),
    ],
)
def test_phase_boundaries(calculator, t, phase):
    status = calculator.get_transit_status(t)
    assert status.is_transiting
    assert status.phase is phase


def test_next_transit_outside_windows(calculator):
    before = calculator.get_transit_status("1761-01-01T00:00:00Z")
    assert not before.is_transiting
    assert before.next_transit.year == 1761
    assert before.next_transit.date == utc(1761, 6, 6, 2, 19)

    between = calculator.get_transit_status("1765-01-01T00:00:00Z")
    assert between.next_transit.year == 1769

    after = calculator.get_transit_status("1770-01-01T00:00:00Z")
    assert after.next_transit is None
    assert after.to_dict() == {"isTransiting": False, "nextTransit": None}


def test_check_transit_status_notifies_on_changes_only(calculator):
    payloads = []
    calculator.add_transit_listener(payloads.append)

    for hm in [(1, 0), (1, 30), (3, 0), (3, 10), (9, 30)]:
        calculator.check_transit_status(utc(1761, 6, 6, *hm))

    assert [p["is_transiting"] for p in payloads] == [False, True, False]
    assert payloads[1]["phase"] == "second"


def test_observer_position_radius():
    pos = TransitCalculator.observer_position(48.8566, 2.3522, 35.0)
    assert np.linalg.norm(pos) == pytest.approx(6371.035)
    north_pole = TransitCalculator.observer_position(90.0, 0.0)
    assert north_pole[2] == pytest.approx(6371.0)


def test_haversine_paris_stockholm():
    assert haversine_km(48.8566, 2.3522, 59.3293, 18.0686) == pytest.approx(1545, rel=0.02)
    assert haversine_km(10.0, 20.0, 10.0, 20.0) == 0.0


def test_gmst_at_j2000():
    assert greenwich_mean_sidereal_time(2451545.0) == pytest.approx(280.46061837)


def test_parallax_data_for_paris(calculator):
    event = calculator.get_transit_event(1761)
    position = calculator.observer_position(48.8566, 2.3522, 35.0)

    data = calculator.calculate_parallax_data(position, event)

    assert list(data) == ["first", "second", "third", "fourth"]
    for sample in data.values():
        # Earth's radius seen from ~0.29 AU is at most ~30 arcseconds
        assert 0.0 < sample.parallax_angle < 2e-4
        assert sample.earth_venus_distance == pytest.approx(0.29, abs=0.02)
        assert np.linalg.norm(sample.observer_position) == pytest.approx(6371.035)


def test_distance_from_parallax_needs_two_contacts(calculator):
    event = calculator.get_transit_event(1761)
    position = calculator.observer_position(0.0, 0.0)
    one = calculator.calculate_parallax_data(position, event, {"second": event.contact("second").time})

    assert calculator.calculate_distance_from_parallax(one) == 0.0

    full = calculator.calculate_parallax_data(position, event)
    assert calculator.calculate_distance_from_parallax(full) > 0.0


def test_historical_observations_include_local_times(calculator):
    observations = calculator.get_historical_observations(1761)
    assert [o["point"].id for o in observations] == ["stockholm_1761", "paris_1761", "cape_town_1761"]

    paris = observations[1]
    utc_first = paris["point"].contact_times["first"]
    local_first = paris["local_contact_times"]["first"]
    assert local_first - utc_first == timedelta(hours=2.3522 / 15.0)
    assert set(paris["parallax_data"]) == {"first", "second", "third", "fourth"}

    assert calculator.get_historical_observations(1874) == []


def test_au_distance_structure(calculator):
    result = calculator.calculate_historical_au_distance(1769)

    assert result["year"] == 1769
    assert result["actual_distance"] == AU_KM
    assert result["summary"]["total_pairs"] == 3
    assert result["summary"]["valid_pairs"] <= len(result["observations"]) <= 3

    for pair in result["observations"]:
        assert pair["baseline"] > 0
        assert pair["parallax"] > 0
        assert pair["distance"] == pytest.approx(pair["baseline"] / (2 * math.tan(pair["parallax"] / 2)))

    if result["calculated_distance"] is not None:
        assert 0 < result["calculated_distance"] < 2 * AU_KM
        assert result["accuracy"] >= 0


def test_au_distance_needs_two_stations(engine):
    single = TransitCalculator(engine, observations={1761: HISTORICAL_OBSERVATIONS[1761][:1]})
    assert single.calculate_historical_au_distance(1761) is None
    assert single.calculate_historical_au_distance(1769) is None


def test_statistics(calculator):
    stats = calculator.get_statistics()
    assert stats["total_observations"] == 6
    assert 0 <= stats["valid_calculations"] <= 6


def test_computed_contacts_bracket_the_table(calculator):
    contacts = calculator.compute_contact_times(1761)

    assert contacts is not None
    times = [contacts[name] for name in ("first", "second", "third", "fourth")]
    assert times == sorted(times)

    table = calculator.events[1761]["contacts"]
    for name in ("first", "fourth"):
        assert abs(contacts[name] - table[name]) < timedelta(minutes=45)

    assert calculator.compute_contact_times(1874) is None


def test_transit_event_snapshots(calculator):
    event = calculator.get_transit_event(1761)
    assert [c.name for c in event.contacts] == ["first", "second", "third", "fourth"]
    assert event.contact("first").separation_au == pytest.approx(0.29, abs=0.02)
    assert calculator.get_transit_event(1761) is event
    assert calculator.get_transit_event(1874) is None


def test_observation_contact_times_are_read_only(calculator):
    point = calculator.observation_points[1761][0]
    with pytest.raises(TypeError):
        point.contact_times["first"] = utc(1761, 6, 6)
    assert point.contact_times["first"] == utc(1761, 6, 6, 2, 19)


def test_au_distance_summary_statistics(calculator):
    result = calculator.calculate_historical_au_distance(1769)
    summary = result["summary"]
    valid = [p for p in result["observations"] if 0 < p["distance"] < 2 * AU_KM]

    assert summary["sample_count"] == summary["valid_pairs"] == len(valid)
    if not valid:
        assert summary["mean_distance"] is None
        assert summary["std_deviation"] is None
        assert summary["best_pair"] is None
        return

    distances = [p["distance"] for p in valid]
    errors = [p["accuracy"] for p in valid]
    assert summary["mean_distance"] == pytest.approx(np.mean(distances))
    assert summary["mean_distance"] == result["calculated_distance"]
    assert summary["std_deviation"] == pytest.approx(np.std(distances))
    assert summary["min_error"] == min(errors) == summary["best_accuracy"]
    assert summary["max_error"] == max(errors)
    assert summary["best_pair"]["accuracy"] == summary["min_error"]


def test_pair_uncertainty_grows_with_smaller_parallax():
    wide = TransitCalculator.pair_uncertainty(8000.0, 2e-5, AU_KM)
    narrow = TransitCalculator.pair_uncertainty(8000.0, 1e-5, AU_KM)

    assert wide["timing_s"] == 120.0
    assert wide["angular_arcsec"] == 0.5
    assert wide["distance_km"] == pytest.approx(AU_KM * wide["relative"])
    assert narrow["relative"] > wide["relative"]

    angular = math.radians(0.5 / 3600.0)
    assert wide["relative"] == pytest.approx(math.hypot(angular / 2e-5, 1.0 / 8000.0))


def test_au_pairs_carry_uncertainty(calculator):
    for pair in calculator.calculate_historical_au_distance(1761)["observations"]:
        uncertainty = pair["uncertainty"]
        assert uncertainty["distance_km"] > 0
        assert uncertainty["distance_km"] == pytest.approx(pair["distance"] * uncertainty["relative"])


def test_best_observation_pair_has_the_longest_baseline(calculator, engine):
    first, second = calculator.find_best_observation_pair(1761)
    assert {first.name, second.name} == {"Stockholm Observatory", "Cape of Good Hope Observatory"}

    first, second = calculator.find_best_observation_pair(1769)
    assert {first.name, second.name} == {"Tahiti", "Vienna Observatory"}

    assert calculator.find_best_observation_pair(1874) is None
    single = TransitCalculator(engine, observations={1761: HISTORICAL_OBSERVATIONS[1761][:1]})
    assert single.find_best_observation_pair(1761) is None
