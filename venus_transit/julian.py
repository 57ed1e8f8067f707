"""
Julian Date <-> calendar conversion.

All calendar instants are timezone-aware UTC datetimes. Naive datetimes are
taken to already be UTC.
"""

import math
from datetime import datetime, timedelta, timezone
from numbers import Real
from typing import Union

from .errors import InvalidTimeError

J2000_JD = 2451545.0
JULIAN_CENTURY_DAYS = 36525.0
MS_PER_DAY = 86_400_000

TimeLike = Union[datetime, str, float, int]


def ensure_utc(dt: datetime) -> datetime:
    if not isinstance(dt, datetime):
        raise InvalidTimeError(f"Expected a datetime, got {dt!r}")
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def datetime_to_julian(dt: datetime) -> float:
    dt = ensure_utc(dt)

    a = (14 - dt.month) // 12
    y = dt.year + 4800 - a
    m = dt.month + 12 * a - 3

    jdn = dt.day + (153 * m + 2) // 5 + 365 * y + y // 4 - y // 100 + y // 400 - 32045
    seconds = dt.second + dt.microsecond / 1e6
    return jdn + (dt.hour - 12) / 24.0 + dt.minute / 1440.0 + seconds / 86400.0


def julian_to_datetime(jd: float) -> datetime:
    """Inverse of :func:`datetime_to_julian`, rounded to the millisecond."""
    if isinstance(jd, bool) or not isinstance(jd, Real) or not math.isfinite(jd):
        raise InvalidTimeError(f"Invalid Julian Date: {jd!r}")

    shifted = float(jd) + 0.5
    z = math.floor(shifted)
    fraction = shifted - z

    a = z + 32044
    b = (4 * a + 3) // 146097
    c = a - 146097 * b // 4
    d = (4 * c + 3) // 1461
    e = c - 1461 * d // 4
    m = (5 * e + 2) // 153

    day = e - (153 * m + 2) // 5 + 1
    month = m + 3 - 12 * (m // 10)
    year = 100 * b + d - 4800 + m // 10

    millis = round(fraction * MS_PER_DAY)
    try:
        return datetime(year, month, day, tzinfo=timezone.utc) + timedelta(milliseconds=millis)
    except (ValueError, OverflowError) as e:
        raise InvalidTimeError(f"Julian Date {jd!r} is outside the supported calendar range") from e


def julian_centuries(jd: float) -> float:
    return (jd - J2000_JD) / JULIAN_CENTURY_DAYS


def format_time(dt: datetime) -> str:
    return ensure_utc(dt).strftime("%Y-%m-%d %H:%M:%S")


def parse_time(value: TimeLike) -> datetime:
    """
    Coerce a datetime, an ISO-8601 string or a finite Julian Date into a UTC datetime.

    Raises InvalidTimeError for anything else (None, NaN, garbage strings).
    """
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return ensure_utc(datetime.fromisoformat(text))
        except ValueError as e:
            raise InvalidTimeError(f"Invalid time string: {value!r}") from e
    if isinstance(value, Real) and not isinstance(value, bool):
        return julian_to_datetime(value)
    raise InvalidTimeError(f"Invalid time: {value!r}")
