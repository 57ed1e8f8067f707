import logging
import math
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Tuple

import numpy as np

from .constants import AU_KM, BODY_DATA, MU_SUN
from .errors import InvalidElementsError
from .julian import J2000_JD, JULIAN_CENTURY_DAYS

logger = logging.getLogger(__name__)

TWO_PI = 2.0 * math.pi
Vector3 = Tuple[float, float, float]


def solve_kepler_equation(M: float, e: float, tol: float = 1e-10, max_iter: int = 100) -> float:
    """
    Solve Kepler's equation ``E - e*sin(E) = M`` for the eccentric anomaly (radians).

    Newton-Raphson from ``E0 = M``. Highly eccentric orbits (e >= 0.8) start
    from ``M + e*sin(M)`` on the mean anomaly reduced to [-pi, pi), and the
    result is shifted back by the same multiple of 2*pi. Hitting ``max_iter``
    is logged and the best estimate is returned.
    """
    if not (math.isfinite(M) and math.isfinite(e)):
        raise InvalidElementsError(f"Non-finite Kepler input: M={M!r}, e={e!r}")
    if not 0.0 <= e < 1.0:
        raise InvalidElementsError(f"Eccentricity must be in [0, 1), got {e!r}")

    offset = 0.0
    M_iter = M
    if e < 0.8:
        E = M
    else:
        # E0 = M diverges near M ~ 2*pi once e approaches 1.
        offset = TWO_PI * math.floor((M + math.pi) / TWO_PI)
        M_iter = M - offset
        E = M_iter + e * math.sin(M_iter)

    delta = math.inf
    for _ in range(max_iter):
        delta = (E - e * math.sin(E) - M_iter) / (1.0 - e * math.cos(E))
        E -= delta
        if abs(delta) < tol:
            return E + offset

    logger.warning(
        "Kepler solver hit %d iterations without converging (M=%.6f, e=%.6f, last step=%.3e)",
        max_iter, M, e, delta,
    )
    return E + offset


def angle_between(a, b) -> float:
    """Angle between two 3-vectors (radians)."""
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    denom = float(np.linalg.norm(a) * np.linalg.norm(b))
    if denom == 0.0:
        return 0.0
    cos_theta = float(np.dot(a, b)) / denom
    return float(np.arccos(np.clip(cos_theta, -1.0, 1.0)))


@dataclass(frozen=True)
class OrbitalElements:
    semi_major_axis: float  # AU, 0 for a body fixed at the origin
    eccentricity: float
    inclination: float  # rad
    longitude_of_ascending_node: float  # rad
    argument_of_periapsis: float  # rad
    mean_anomaly_0: float  # rad, at epoch
    mean_motion: float  # rad / day
    epoch: float = J2000_JD

    def __post_init__(self):
        if not self.semi_major_axis >= 0.0:
            raise InvalidElementsError(f"semi_major_axis must be >= 0, got {self.semi_major_axis!r}")
        if not 0.0 <= self.eccentricity < 1.0:
            raise InvalidElementsError(
                f"eccentricity must be in [0, 1) (no parabolic/hyperbolic orbits), got {self.eccentricity!r}"
            )

    @classmethod
    def from_degrees(
        cls,
        a: float,
        e: float,
        i: float,
        node: float,
        argp: float,
        M0: float,
        n: float,
        epoch: float = J2000_JD,
    ) -> "OrbitalElements":
        """Build from degree-valued angles and a mean motion in degrees/day."""
        return cls(
            semi_major_axis=a,
            eccentricity=e,
            inclination=math.radians(i),
            longitude_of_ascending_node=math.radians(node),
            argument_of_periapsis=math.radians(argp),
            mean_anomaly_0=math.radians(M0),
            mean_motion=math.radians(n),
            epoch=epoch,
        )

    @property
    def period(self) -> float:
        """Orbital period in days (inf for a fixed body)."""
        if self.mean_motion == 0.0:
            return math.inf
        return TWO_PI / abs(self.mean_motion)


@dataclass(frozen=True)
class SecularRates:
    """Linear drift of the slow elements, per Julian century (angles in radians)."""
    semi_major_axis: float = 0.0
    eccentricity: float = 0.0
    inclination: float = 0.0
    longitude_of_ascending_node: float = 0.0
    argument_of_periapsis: float = 0.0


def apply_secular_rates(elements: OrbitalElements, jd: float, rates: Optional[SecularRates]) -> OrbitalElements:
    # The mean anomaly is advanced by mean_motion alone.
    if rates is None:
        return elements
    T = (jd - elements.epoch) / JULIAN_CENTURY_DAYS
    return replace(
        elements,
        semi_major_axis=elements.semi_major_axis + rates.semi_major_axis * T,
        eccentricity=elements.eccentricity + rates.eccentricity * T,
        inclination=elements.inclination + rates.inclination * T,
        longitude_of_ascending_node=elements.longitude_of_ascending_node + rates.longitude_of_ascending_node * T,
        argument_of_periapsis=elements.argument_of_periapsis + rates.argument_of_periapsis * T,
    )


@dataclass(frozen=True)
class CelestialBody:
    name: str
    radius_km: float
    rotation_period_days: float  # negative for retrograde spin
    elements: Optional[OrbitalElements] = None
    rates: Optional[SecularRates] = None
    fixed: bool = False

    @property
    def retrograde_rotation(self) -> bool:
        return self.rotation_period_days < 0

    def rotation_angle(self, jd: float) -> float:
        """Spin angle about the body's axis at ``jd`` (radians, runs backwards for retrograde spin)."""
        return (TWO_PI * (jd - J2000_JD) / self.rotation_period_days) % TWO_PI


@dataclass(frozen=True)
class OrbitalPosition:
    x: float
    y: float
    z: float
    distance: float
    true_anomaly: float
    eccentric_anomaly: float
    mean_anomaly: float

    @property
    def vector(self) -> Vector3:
        return (self.x, self.y, self.z)


@dataclass(frozen=True)
class TransitCondition:
    julian_date: float
    is_transiting: bool
    angular_separation: float  # rad, Venus centre to Sun centre as seen from Earth
    sun_angular_radius: float
    venus_angular_radius: float
    depth: float
    earth_position: Vector3
    venus_position: Vector3


def _elements_from_table(table: dict) -> Tuple[OrbitalElements, SecularRates]:
    el = table["elements"]
    rt = table["rates"]

    M0 = el["mean_longitude"] - el["longitude_of_perihelion"]
    argp = el["longitude_of_perihelion"] - el["node"]
    n = (rt["mean_longitude"] - rt["longitude_of_perihelion"]) / JULIAN_CENTURY_DAYS

    elements = OrbitalElements.from_degrees(el["a"], el["e"], el["i"], el["node"], argp, M0 % 360.0, n)
    rates = SecularRates(
        semi_major_axis=rt["a"],
        eccentricity=rt["e"],
        inclination=math.radians(rt["i"]),
        longitude_of_ascending_node=math.radians(rt["node"]),
        argument_of_periapsis=math.radians(rt["longitude_of_perihelion"] - rt["node"]),
    )
    return elements, rates


def default_bodies() -> Dict[str, CelestialBody]:
    bodies = {}
    for name, table in BODY_DATA.items():
        if table.get("fixed"):
            bodies[name] = CelestialBody(
                name=name,
                radius_km=table["radius_km"],
                rotation_period_days=table["rotation_period_days"],
                fixed=True,
            )
            continue
        elements, rates = _elements_from_table(table)
        bodies[name] = CelestialBody(
            name=name,
            radius_km=table["radius_km"],
            rotation_period_days=table["rotation_period_days"],
            elements=elements,
            rates=rates,
        )
    return bodies


class OrbitEngine:
    def __init__(self, bodies: Optional[Dict[str, CelestialBody]] = None, mu_sun: float = MU_SUN):
        self.bodies = dict(bodies) if bodies is not None else default_bodies()
        self.mu_sun = mu_sun

    @staticmethod
    def rotation_matrix(elements: OrbitalElements) -> np.ndarray:
        """Perifocal -> reference frame: Rz(node) @ Rx(inclination) @ Rz(argument of periapsis)."""
        cO, sO = math.cos(elements.longitude_of_ascending_node), math.sin(elements.longitude_of_ascending_node)
        ci, si = math.cos(elements.inclination), math.sin(elements.inclination)
        cw, sw = math.cos(elements.argument_of_periapsis), math.sin(elements.argument_of_periapsis)

        rz_node = np.array([[cO, -sO, 0.0], [sO, cO, 0.0], [0.0, 0.0, 1.0]])
        rx_inc = np.array([[1.0, 0.0, 0.0], [0.0, ci, -si], [0.0, si, ci]])
        rz_argp = np.array([[cw, -sw, 0.0], [sw, cw, 0.0], [0.0, 0.0, 1.0]])
        return rz_node @ rx_inc @ rz_argp

    def position(self, elements: OrbitalElements, julian_date: float) -> OrbitalPosition:
        if elements.semi_major_axis == 0.0:
            return OrbitalPosition(0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0)

        e = elements.eccentricity
        dt = julian_date - elements.epoch
        M = (elements.mean_anomaly_0 + elements.mean_motion * dt) % TWO_PI

        E = solve_kepler_equation(M, e)
        nu = 2.0 * math.atan2(math.sqrt(1.0 + e) * math.sin(E / 2.0), math.sqrt(1.0 - e) * math.cos(E / 2.0))
        r = elements.semi_major_axis * (1.0 - e * math.cos(E))

        orbital_plane = np.array([r * math.cos(nu), r * math.sin(nu), 0.0])
        x, y, z = self.rotation_matrix(elements) @ orbital_plane
        return OrbitalPosition(float(x), float(y), float(z), r, nu, E, M)

    def velocity(self, elements: OrbitalElements, julian_date: float) -> Vector3:
        """Heliocentric velocity (AU/day) from the vis-viva perifocal components."""
        if elements.semi_major_axis == 0.0:
            return (0.0, 0.0, 0.0)

        e = elements.eccentricity
        nu = self.position(elements, julian_date).true_anomaly
        p = elements.semi_major_axis * (1.0 - e * e)
        h = math.sqrt(self.mu_sun / p)
        if elements.mean_motion < 0:
            h = -h

        perifocal = np.array([-h * math.sin(nu), h * (e + math.cos(nu)), 0.0])
        vx, vy, vz = self.rotation_matrix(elements) @ perifocal
        return (float(vx), float(vy), float(vz))

    def _body(self, name: str) -> CelestialBody:
        body = self.bodies.get(name)
        if body is None:
            raise ValueError(f"Unknown body: {name}")
        return body

    def elements_at(self, name: str, julian_date: float) -> Optional[OrbitalElements]:
        body = self._body(name)
        if body.fixed or body.elements is None:
            return None
        return apply_secular_rates(body.elements, julian_date, body.rates)

    def get_body_position(self, name: str, julian_date: float) -> Vector3:
        elements = self.elements_at(name, julian_date)
        if elements is None:
            return (0.0, 0.0, 0.0)
        return self.position(elements, julian_date).vector

    def get_body_velocity(self, name: str, julian_date: float) -> Vector3:
        elements = self.elements_at(name, julian_date)
        if elements is None:
            return (0.0, 0.0, 0.0)
        return self.velocity(elements, julian_date)

    @staticmethod
    def _wrap_to_pi(angle_rad: float) -> float:
        """Wrap angle to (-pi, pi]."""
        wrapped = (angle_rad + math.pi) % TWO_PI - math.pi
        return wrapped if wrapped != -math.pi else math.pi

    def heliocentric_longitude(self, name: str, julian_date: float) -> float:
        """Ecliptic longitude in degrees, [0, 360)."""
        x, y, _z = self.get_body_position(name, julian_date)
        return math.degrees(math.atan2(y, x)) % 360.0

    def longitude_separation(self, name_a: str, name_b: str, julian_date: float) -> float:
        """Absolute difference of heliocentric longitudes in degrees, [0, 180]."""
        la = math.radians(self.heliocentric_longitude(name_a, julian_date))
        lb = math.radians(self.heliocentric_longitude(name_b, julian_date))
        return abs(math.degrees(self._wrap_to_pi(la - lb)))

    def transit_condition(self, julian_date: float, planet: str = "venus", observer: str = "earth") -> TransitCondition:
        earth = np.array(self.get_body_position(observer, julian_date))
        venus = np.array(self.get_body_position(planet, julian_date))

        to_venus = venus - earth
        to_sun = -earth
        separation = angle_between(to_venus, to_sun)

        sun_km = float(np.linalg.norm(to_sun)) * AU_KM
        venus_km = float(np.linalg.norm(to_venus)) * AU_KM
        sun_radius = math.atan2(self._body("sun").radius_km, sun_km)
        venus_radius = math.atan2(self._body(planet).radius_km, venus_km)

        # Venus must also be on the near side of the Sun (inferior conjunction).
        in_front = venus_km < sun_km
        is_transiting = in_front and separation < sun_radius
        depth = 1.0 - separation / sun_radius if is_transiting else 0.0

        return TransitCondition(
            julian_date=julian_date,
            is_transiting=is_transiting,
            angular_separation=separation,
            sun_angular_radius=sun_radius,
            venus_angular_radius=venus_radius,
            depth=depth,
            earth_position=tuple(float(c) for c in earth),
            venus_position=tuple(float(c) for c in venus),
        )

    def generate_orbit_points(self, name: str, num_points: int = 360) -> List[Vector3]:
        body = self._body(name)
        if body.fixed or body.elements is None:
            return [(0.0, 0.0, 0.0)]

        period = body.elements.period
        epoch = body.elements.epoch
        points = []
        for i in range(num_points):
            t = epoch + (i / num_points) * period
            points.append(self.get_body_position(name, t))
        return points

    def orbital_period(self, semi_major_axis: float) -> float:
        """Kepler's third law around the Sun, in days."""
        return TWO_PI * math.sqrt(semi_major_axis ** 3 / self.mu_sun)

    @staticmethod
    def synodic_period(period_1: float, period_2: float) -> float:
        return abs(1.0 / (1.0 / period_1 - 1.0 / period_2))

    @staticmethod
    def calculate_distance(pos1: Vector3, pos2: Vector3) -> float:
        return float(np.linalg.norm(np.asarray(pos1, dtype=np.float64) - np.asarray(pos2, dtype=np.float64)))
