"""
Transit status, contact geometry and the 18th-century parallax reduction.

Contact instants come from the historical table in :mod:`venus_transit.constants`;
:meth:`TransitCalculator.compute_contact_times` derives them from the orbit
model instead, for comparison.
"""

import itertools
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from types import MappingProxyType
from typing import Callable, Dict, List, Mapping, Optional, Tuple

import numpy as np

from .constants import (
    AU_KM,
    CONTACT_NAMES,
    EARTH_RADIUS_KM,
    HISTORICAL_OBSERVATIONS,
    OBLIQUITY_J2000_DEG,
    VENUS_TRANSIT_EVENTS,
)
from .julian import J2000_JD, JULIAN_CENTURY_DAYS, TimeLike, datetime_to_julian, julian_to_datetime, parse_time
from .orbit_engine import OrbitEngine, Vector3, angle_between

logger = logging.getLogger(__name__)

DEFAULT_BASELINE_KM = 10000.0
SCAN_STEP_DAYS = 30.0 / 1440.0
ONE_SECOND_DAYS = 1.0 / 86400.0

# per-measurement errors for pair_uncertainty
TIMING_UNCERTAINTY_S = 120.0
ANGULAR_UNCERTAINTY_ARCSEC = 0.5
BASELINE_UNCERTAINTY_KM = 1.0


class TransitPhase(Enum):
    PRE_TRANSIT = "pre-transit"
    FIRST = "first"
    SECOND = "second"
    THIRD = "third"
    POST_TRANSIT = "post-transit"


@dataclass(frozen=True)
class ContactInstant:
    name: str
    julian_date: float
    time: datetime
    earth_position: Vector3
    venus_position: Vector3
    separation_au: float

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "julianDate": self.julian_date,
            "time": self.time.isoformat(),
            "earthPosition": list(self.earth_position),
            "venusPosition": list(self.venus_position),
            "separationAU": self.separation_au,
        }


@dataclass(frozen=True)
class TransitEvent:
    year: int
    date: datetime
    contacts: Tuple[ContactInstant, ...]
    duration_hours: float
    contact_type: str = "external"

    def contact(self, name: str) -> ContactInstant:
        for c in self.contacts:
            if c.name == name:
                return c
        raise KeyError(name)

    @property
    def contact_times(self) -> Dict[str, datetime]:
        return {c.name: c.time for c in self.contacts}

    def to_dict(self) -> dict:
        return {
            "year": self.year,
            "date": self.date.isoformat(),
            "durationHours": self.duration_hours,
            "type": self.contact_type,
            "contacts": [c.to_dict() for c in self.contacts],
        }


@dataclass(frozen=True)
class ObservationPoint:
    id: str
    name: str
    observer: str
    country: str
    telescope: str
    latitude: float
    longitude: float
    elevation_m: float
    contact_times: Mapping[str, datetime]
    accuracy: str = ""
    notes: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "ObservationPoint":
        return cls(
            id=data["id"],
            name=data["name"],
            observer=data.get("observer", ""),
            country=data.get("country", ""),
            telescope=data.get("telescope", ""),
            latitude=float(data["latitude"]),
            longitude=float(data["longitude"]),
            elevation_m=float(data.get("elevation_m", 0.0)),
            contact_times=MappingProxyType({k: parse_time(v) for k, v in data["contact_times"].items()}),
            accuracy=data.get("accuracy", ""),
            notes=data.get("notes", ""),
        )

    def local_contact_times(self) -> Dict[str, datetime]:
        """Contact times in local mean time (UT shifted by longitude / 15 hours)."""
        offset = timedelta(hours=self.longitude / 15.0)
        return {name: t + offset for name, t in self.contact_times.items()}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "observer": self.observer,
            "country": self.country,
            "telescope": self.telescope,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "elevationM": self.elevation_m,
            "contactTimes": {k: v.isoformat() for k, v in self.contact_times.items()},
            "accuracy": self.accuracy,
            "notes": self.notes,
        }


@dataclass(frozen=True)
class ParallaxSample:
    contact: str
    time: datetime
    julian_date: float
    parallax_angle: float  # rad
    earth_venus_distance: float  # AU
    distance_estimate: float  # km, baseline / tan(parallax)
    observer_position: Vector3  # km, ecliptic frame, relative to Earth's centre
    earth_position: Vector3  # AU
    venus_position: Vector3  # AU

    def to_dict(self) -> dict:
        return {
            "contact": self.contact,
            "time": self.time.isoformat(),
            "julianDate": self.julian_date,
            "parallaxAngle": self.parallax_angle,
            "earthVenusDistance": self.earth_venus_distance,
            "distanceEstimate": self.distance_estimate if math.isfinite(self.distance_estimate) else None,
            "observerPosition": list(self.observer_position),
        }


@dataclass(frozen=True)
class NextTransit:
    year: int
    date: datetime


@dataclass(frozen=True)
class TransitStatus:
    is_transiting: bool
    year: Optional[int] = None
    phase: Optional[TransitPhase] = None
    progress: Optional[float] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    next_transit: Optional[NextTransit] = None

    def to_dict(self) -> dict:
        data = {"isTransiting": self.is_transiting}
        if self.is_transiting:
            data.update(
                year=self.year,
                phase=self.phase.value,
                progress=self.progress,
                startTime=self.start_time.isoformat(),
                endTime=self.end_time.isoformat(),
            )
        else:
            data["nextTransit"] = (
                {"year": self.next_transit.year, "date": self.next_transit.date.isoformat()}
                if self.next_transit
                else None
            )
        return data


def greenwich_mean_sidereal_time(jd: float) -> float:
    """GMST in degrees, [0, 360)."""
    T = (jd - J2000_JD) / JULIAN_CENTURY_DAYS
    gmst = (
        280.46061837
        + 360.98564736629 * (jd - J2000_JD)
        + 0.000387933 * T * T
        - (T ** 3) / 38710000.0
    )
    return gmst % 360.0


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float, radius_km: float = EARTH_RADIUS_KM) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = phi2 - phi1
    dlam = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlam / 2) ** 2
    return 2.0 * radius_km * math.atan2(math.sqrt(a), math.sqrt(1.0 - a))


def _phase_at(t: datetime, contacts: Dict[str, datetime]) -> TransitPhase:
    if t < contacts["first"]:
        return TransitPhase.PRE_TRANSIT
    if t < contacts["second"]:
        return TransitPhase.FIRST
    if t < contacts["third"]:
        return TransitPhase.SECOND
    if t < contacts["fourth"]:
        return TransitPhase.THIRD
    return TransitPhase.POST_TRANSIT


def _linear_progress(t: datetime, start: datetime, end: datetime) -> float:
    total = (end - start).total_seconds()
    if total <= 0:
        return 100.0
    return max(0.0, min(100.0, (t - start).total_seconds() / total * 100.0))


class TransitCalculator:
    def __init__(
        self,
        engine: OrbitEngine,
        events: Optional[dict] = None,
        observations: Optional[dict] = None,
        baseline_km: float = DEFAULT_BASELINE_KM,
    ):
        self.engine = engine
        self.events = events if events is not None else VENUS_TRANSIT_EVENTS
        raw_observations = observations if observations is not None else HISTORICAL_OBSERVATIONS
        self.observation_points: Dict[int, List[ObservationPoint]] = {
            year: [ObservationPoint.from_dict(p) for p in points] for year, points in raw_observations.items()
        }
        self.baseline_km = baseline_km

        self._transit_events: Dict[int, TransitEvent] = {}
        self._historical_cache: Dict[int, List[dict]] = {}
        self._current_status: Optional[TransitStatus] = None
        self._listeners: List[Callable[[dict], None]] = []

    @property
    def years(self) -> List[int]:
        return sorted(self.events)

    # -- events ------------------------------------------------------------

    def _contact_instant(self, name: str, t: datetime) -> ContactInstant:
        jd = datetime_to_julian(t)
        earth = self.engine.get_body_position("earth", jd)
        venus = self.engine.get_body_position("venus", jd)
        return ContactInstant(
            name=name,
            julian_date=jd,
            time=t,
            earth_position=earth,
            venus_position=venus,
            separation_au=OrbitEngine.calculate_distance(earth, venus),
        )

    def get_transit_event(self, year: int) -> Optional[TransitEvent]:
        if year in self._transit_events:
            return self._transit_events[year]
        table = self.events.get(year)
        if table is None:
            return None

        contacts = tuple(self._contact_instant(name, table["contacts"][name]) for name in CONTACT_NAMES)
        event = TransitEvent(
            year=year,
            date=table["date"],
            contacts=contacts,
            duration_hours=table.get("duration_hours", 0.0),
            contact_type=table.get("type", "external"),
        )
        self._transit_events[year] = event
        return event

    # -- status ------------------------------------------------------------

    def get_transit_status(self, time: TimeLike) -> TransitStatus:
        t = parse_time(time)
        for year in self.years:
            contacts = self.events[year]["contacts"]
            start, end = contacts["first"], contacts["fourth"]
            if start <= t <= end:
                return TransitStatus(
                    is_transiting=True,
                    year=year,
                    phase=_phase_at(t, contacts),
                    progress=_linear_progress(t, start, end),
                    start_time=start,
                    end_time=end,
                )
        return TransitStatus(is_transiting=False, next_transit=self.get_next_transit(t))

    def get_next_transit(self, time: TimeLike) -> Optional[NextTransit]:
        t = parse_time(time)
        for year in self.years:
            first = self.events[year]["contacts"]["first"]
            if first > t:
                return NextTransit(year=year, date=first)
        return None

    def add_transit_listener(self, callback: Callable[[dict], None]) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def check_transit_status(self, time: TimeLike) -> TransitStatus:
        status = self.get_transit_status(time)
        previous = self._current_status
        self._current_status = status

        if previous is not None and previous.is_transiting == status.is_transiting and previous.phase == status.phase:
            return status

        payload = {
            "is_transiting": status.is_transiting,
            "year": status.year,
            "phase": status.phase.value if status.phase else None,
            "progress": status.progress,
        }
        logger.debug("Transit status changed: %s", payload)
        for callback in list(self._listeners):
            try:
                callback(payload)
            except Exception:
                logger.exception("Transit listener %r failed", callback)
        return status

    # -- parallax ----------------------------------------------------------

    @staticmethod
    def observer_position(latitude: float, longitude: float, elevation_m: float = 0.0) -> Vector3:
        """Geocentric body-fixed position of a ground station, km."""
        r = EARTH_RADIUS_KM + elevation_m / 1000.0
        lat, lon = math.radians(latitude), math.radians(longitude)
        return (
            r * math.cos(lat) * math.cos(lon),
            r * math.cos(lat) * math.sin(lon),
            r * math.sin(lat),
        )

    @staticmethod
    def _observer_in_ecliptic(observer_position: Vector3, jd: float) -> np.ndarray:
        theta = math.radians(greenwich_mean_sidereal_time(jd))
        eps = math.radians(OBLIQUITY_J2000_DEG)

        rz = np.array([[math.cos(theta), -math.sin(theta), 0.0], [math.sin(theta), math.cos(theta), 0.0], [0.0, 0.0, 1.0]])
        # equatorial -> ecliptic
        rx = np.array([[1.0, 0.0, 0.0], [0.0, math.cos(eps), math.sin(eps)], [0.0, -math.sin(eps), math.cos(eps)]])
        return rx @ rz @ np.asarray(observer_position, dtype=np.float64)

    def calculate_parallax_data(
        self,
        observer_position: Vector3,
        transit_event: TransitEvent,
        contact_times: Optional[Mapping[str, datetime]] = None,
        baseline_km: Optional[float] = None,
    ) -> Dict[str, ParallaxSample]:
        """
        Parallax of Venus for a ground station at each contact.

        The angle is taken between the sightline to Venus from Earth's centre
        and from the station; ``contact_times`` default to the event's contacts.
        """
        baseline = self.baseline_km if baseline_km is None else baseline_km
        times = contact_times if contact_times is not None else transit_event.contact_times

        data = {}
        for name, t in times.items():
            if t is None:
                continue
            jd = datetime_to_julian(t)
            earth = np.array(self.engine.get_body_position("earth", jd))
            venus = np.array(self.engine.get_body_position("venus", jd))

            geocentric_venus = (venus - earth) * AU_KM
            station = self._observer_in_ecliptic(observer_position, jd)
            angle = angle_between(geocentric_venus, geocentric_venus - station)
            estimate = baseline / math.tan(angle) if angle > 0 else math.inf

            data[name] = ParallaxSample(
                contact=name,
                time=t,
                julian_date=jd,
                parallax_angle=angle,
                earth_venus_distance=float(np.linalg.norm(venus - earth)),
                distance_estimate=estimate,
                observer_position=tuple(float(c) for c in station),
                earth_position=tuple(float(c) for c in earth),
                venus_position=tuple(float(c) for c in venus),
            )
        return data

    def calculate_distance_from_parallax(
        self, parallax_data: Dict[str, ParallaxSample], baseline_km: Optional[float] = None
    ) -> float:
        """Distance (km) from the mean parallax over all contacts; 0 when it cannot be formed."""
        if len(parallax_data) < 2:
            return 0.0
        angles = [s.parallax_angle for s in parallax_data.values() if math.isfinite(s.parallax_angle)]
        if not angles:
            return 0.0
        mean_angle = sum(angles) / len(angles)
        if mean_angle <= 0:
            return 0.0
        baseline = self.baseline_km if baseline_km is None else baseline_km
        return baseline / math.tan(mean_angle)

    def get_historical_observations(self, year: int) -> List[dict]:
        if year in self._historical_cache:
            return self._historical_cache[year]

        event = self.get_transit_event(year)
        points = self.observation_points.get(year, [])
        if event is None or not points:
            return []

        results = []
        for point in points:
            position = self.observer_position(point.latitude, point.longitude, point.elevation_m)
            parallax = self.calculate_parallax_data(position, event, point.contact_times)
            results.append(
                {
                    "point": point,
                    "observer_position": position,
                    "parallax_data": parallax,
                    "calculated_distance": self.calculate_distance_from_parallax(parallax),
                    "local_contact_times": point.local_contact_times(),
                }
            )
        self._historical_cache[year] = results
        return results

    @staticmethod
    def pair_uncertainty(baseline_km: float, parallax: float, distance_km: float) -> dict:
        """
        Measurement uncertainty of one pair reduction.

        The distance error propagates the angular and baseline errors
        through ``d ~ b / dp``; the timing error is reported as is.
        """
        angular = math.radians(ANGULAR_UNCERTAINTY_ARCSEC / 3600.0)
        relative = math.hypot(angular / parallax, BASELINE_UNCERTAINTY_KM / baseline_km)
        return {
            "timing_s": TIMING_UNCERTAINTY_S,
            "angular_arcsec": ANGULAR_UNCERTAINTY_ARCSEC,
            "baseline_km": BASELINE_UNCERTAINTY_KM,
            "relative": relative,
            "distance_km": distance_km * relative,
        }

    @staticmethod
    def _summarize(valid: List[dict]) -> dict:
        if not valid:
            return {
                "mean_distance": None,
                "std_deviation": None,
                "min_error": None,
                "max_error": None,
                "sample_count": 0,
                "best_pair": None,
            }
        distances = [p["distance"] for p in valid]
        errors = [p["accuracy"] for p in valid]
        mean = sum(distances) / len(distances)
        return {
            "mean_distance": mean,
            "std_deviation": math.sqrt(sum((d - mean) ** 2 for d in distances) / len(distances)),
            "min_error": min(errors),
            "max_error": max(errors),
            "sample_count": len(valid),
            "best_pair": min(valid, key=lambda p: p["accuracy"]),
        }

    def calculate_historical_au_distance(self, year: int) -> Optional[dict]:
        """
        Reduce pairs of historical stations to a Sun distance.

        Each pair contributes ``baseline / (2 tan(dp / 2))`` where ``dp`` is the
        difference of their second-contact parallaxes. Pairs outside (0, 2 AU)
        are reported but left out of the mean and the summary statistics.
        """
        observations = self.get_historical_observations(year)
        if len(observations) < 2:
            return None

        pairs = []
        total_pairs = 0
        for obs1, obs2 in itertools.combinations(observations, 2):
            total_pairs += 1
            p1, p2 = obs1["point"], obs2["point"]
            baseline = haversine_km(p1.latitude, p1.longitude, p2.latitude, p2.longitude)

            s1 = obs1["parallax_data"].get("second")
            s2 = obs2["parallax_data"].get("second")
            if s1 is None or s2 is None:
                continue
            dp = abs(s1.parallax_angle - s2.parallax_angle)
            if dp <= 0 or baseline <= 0:
                continue

            distance = baseline / (2.0 * math.tan(dp / 2.0))
            pairs.append(
                {
                    "observers": [p1.name, p2.name],
                    "baseline": baseline,
                    "parallax": dp,
                    "distance": distance,
                    "accuracy": abs(distance - AU_KM) / AU_KM * 100.0,
                    "uncertainty": self.pair_uncertainty(baseline, dp, distance),
                }
            )

        valid = [p for p in pairs if 0.0 < p["distance"] < 2.0 * AU_KM]
        summary = self._summarize(valid)
        calculated = summary["mean_distance"]
        accuracy = abs(calculated - AU_KM) / AU_KM * 100.0 if calculated is not None else None

        summary.update(total_pairs=total_pairs, valid_pairs=len(valid), best_accuracy=summary["min_error"])
        return {
            "year": year,
            "calculated_distance": calculated,
            "actual_distance": AU_KM,
            "accuracy": accuracy,
            "observations": pairs,
            "summary": summary,
        }

    def find_best_observation_pair(self, year: int) -> Optional[Tuple[ObservationPoint, ObservationPoint]]:
        """The two stations of ``year`` with the longest great-circle baseline."""
        best = None
        longest = 0.0
        for p1, p2 in itertools.combinations(self.observation_points.get(year, []), 2):
            baseline = haversine_km(p1.latitude, p1.longitude, p2.latitude, p2.longitude)
            if baseline > longest:
                longest = baseline
                best = (p1, p2)
        return best

    def get_statistics(self) -> dict:
        total_observations = 0
        valid_calculations = 0
        accuracies = []
        best = None

        for year in self.years:
            result = self.calculate_historical_au_distance(year)
            if result is None:
                continue
            total_observations += len(self.get_historical_observations(year))
            valid_calculations += result["summary"]["valid_pairs"]
            if result["accuracy"] is not None:
                accuracies.append(result["accuracy"])
            year_best = result["summary"]["best_accuracy"]
            if year_best is not None:
                best = year_best if best is None else min(best, year_best)

        return {
            "total_observations": total_observations,
            "valid_calculations": valid_calculations,
            "average_accuracy": sum(accuracies) / len(accuracies) if accuracies else None,
            "best_accuracy": best,
        }

    # -- geometric contacts ------------------------------------------------

    def _contact_margin(self, jd: float, internal: bool) -> float:
        cond = self.engine.transit_condition(jd)
        limb = cond.sun_angular_radius - cond.venus_angular_radius if internal else cond.sun_angular_radius + cond.venus_angular_radius
        return cond.angular_separation - limb

    def _crossings(self, start_jd: float, end_jd: float, internal: bool) -> List[float]:
        crossings = []
        steps = int(math.ceil((end_jd - start_jd) / SCAN_STEP_DAYS))
        lo = start_jd
        f_lo = self._contact_margin(lo, internal)
        for k in range(1, steps + 1):
            hi = min(start_jd + k * SCAN_STEP_DAYS, end_jd)
            f_hi = self._contact_margin(hi, internal)
            if (f_lo > 0) != (f_hi > 0):
                crossings.append(self._bisect(lo, hi, f_lo, internal))
            lo, f_lo = hi, f_hi
        return crossings

    def _bisect(self, lo: float, hi: float, f_lo: float, internal: bool) -> float:
        while hi - lo > ONE_SECOND_DAYS:
            mid = 0.5 * (lo + hi)
            f_mid = self._contact_margin(mid, internal)
            if (f_mid > 0) == (f_lo > 0):
                lo, f_lo = mid, f_mid
            else:
                hi = mid
        return 0.5 * (lo + hi)

    def compute_contact_times(self, year: int) -> Optional[Dict[str, Optional[datetime]]]:
        """
        Contacts predicted by the orbit model around the tabulated date.

        Returns None when the model finds no transit; a grazing transit has
        no internal contacts (``second``/``third`` are None).
        """
        table = self.events.get(year)
        if table is None:
            return None

        start = datetime_to_julian(table["date"]) - 1.0
        end = start + 3.0
        external = self._crossings(start, end, internal=False)
        if len(external) < 2:
            logger.info("No geometric transit found around %s", table["date"].date())
            return None
        internal = self._crossings(start, end, internal=True)

        return {
            "first": julian_to_datetime(external[0]),
            "second": julian_to_datetime(internal[0]) if len(internal) >= 2 else None,
            "third": julian_to_datetime(internal[-1]) if len(internal) >= 2 else None,
            "fourth": julian_to_datetime(external[-1]),
        }
