import math
from datetime import datetime, timezone

import numpy as np
import pytest
from numpy.testing import assert_allclose

from venus_transit.errors import InvalidElementsError
from venus_transit.julian import J2000_JD, datetime_to_julian
from venus_transit.orbit_engine import OrbitalElements, OrbitEngine

TRANSIT_1761 = datetime_to_julian(datetime(1761, 6, 6, 5, 0, tzinfo=timezone.utc))


def circular(M0_deg=90.0, n_deg=1.0):
    return OrbitalElements.from_degrees(a=1.0, e=0.0, i=0.0, node=0.0, argp=0.0, M0=M0_deg, n=n_deg)


def test_position_at_epoch_follows_mean_anomaly(engine):
    pos = engine.position(circular(), J2000_JD)
    assert_allclose(pos.vector, (0.0, 1.0, 0.0), atol=1e-12)
    assert pos.distance == pytest.approx(1.0)


def test_position_at_epoch_on_an_inclined_eccentric_orbit(engine):
    a, e = 1.5, 0.3
    i, node, argp, M0 = (math.radians(d) for d in (20.0, 40.0, 60.0, 75.0))
    elements = OrbitalElements.from_degrees(a=a, e=e, i=20.0, node=40.0, argp=60.0, M0=75.0, n=0.5)

    E = M0
    for _ in range(100):
        E = M0 + e * math.sin(E)
    nu = 2.0 * math.atan2(math.sqrt(1 + e) * math.sin(E / 2), math.sqrt(1 - e) * math.cos(E / 2))
    r = a * (1 - e * math.cos(E))
    u = argp + nu
    expected = (
        r * (math.cos(node) * math.cos(u) - math.sin(node) * math.sin(u) * math.cos(i)),
        r * (math.sin(node) * math.cos(u) + math.cos(node) * math.sin(u) * math.cos(i)),
        r * math.sin(u) * math.sin(i),
    )

    pos = engine.position(elements, J2000_JD)
    assert_allclose(pos.vector, expected, atol=1e-10)
    assert pos.distance == pytest.approx(r)
    assert pos.mean_anomaly == pytest.approx(M0)


def test_position_advances_with_mean_motion(engine):
    pos = engine.position(circular(), J2000_JD + 90.0)
    assert_allclose(pos.vector, (-1.0, 0.0, 0.0), atol=1e-12)


def test_zero_semi_major_axis_is_the_origin(engine):
    elements = OrbitalElements(0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0)
    assert engine.position(elements, J2000_JD + 1234.5).vector == (0.0, 0.0, 0.0)
    assert engine.get_body_position("sun", TRANSIT_1761) == (0.0, 0.0, 0.0)


@pytest.mark.parametrize("e", [1.0, -0.01])
def test_elements_reject_open_orbits(e):
    with pytest.raises(InvalidElementsError):
        OrbitalElements(1.0, e, 0.0, 0.0, 0.0, 0.0, 0.01)


def test_unknown_body_raises(engine):
    with pytest.raises(ValueError, match="Unknown body"):
        engine.get_body_position("pluto", J2000_JD)


def test_planet_distances_stay_near_their_semi_major_axes(engine):
    for jd in np.linspace(TRANSIT_1761 - 400, TRANSIT_1761 + 400, 9):
        earth = np.linalg.norm(engine.get_body_position("earth", float(jd)))
        venus = np.linalg.norm(engine.get_body_position("venus", float(jd)))
        assert 0.98 < earth < 1.02
        assert 0.71 < venus < 0.73


def test_earth_velocity_magnitude(engine):
    v = np.linalg.norm(engine.get_body_velocity("earth", J2000_JD))
    assert v == pytest.approx(2 * math.pi / 365.25, rel=0.03)


def test_venus_is_retrograde(engine):
    assert engine.bodies["venus"].retrograde_rotation
    assert not engine.bodies["earth"].retrograde_rotation


def test_synodic_period_of_venus(engine):
    earth = engine.bodies["earth"].elements.period
    venus = engine.bodies["venus"].elements.period
    assert engine.synodic_period(earth, venus) == pytest.approx(583.9, abs=1.0)


def test_longitudes_align_during_1761_transit(engine):
    assert engine.longitude_separation("earth", "venus", TRANSIT_1761) < 1.0


def test_transit_condition(engine):
    during = engine.transit_condition(TRANSIT_1761)
    assert during.is_transiting
    assert 0.0 < during.depth <= 1.0
    assert during.angular_separation < during.sun_angular_radius

    months_before = engine.transit_condition(TRANSIT_1761 - 60.0)
    assert not months_before.is_transiting
    assert months_before.depth == 0.0


def test_generate_orbit_points(engine):
    points = engine.generate_orbit_points("venus", 36)
    assert len(points) == 36
    radii = [np.linalg.norm(p) for p in points]
    assert min(radii) > 0.71 and max(radii) < 0.73
    assert engine.generate_orbit_points("sun") == [(0.0, 0.0, 0.0)]


def test_orbital_period_from_third_law(engine):
    assert engine.orbital_period(1.0) == pytest.approx(365.25, rel=1e-3)
