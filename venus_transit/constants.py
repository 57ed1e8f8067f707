"""
Astronomical constants and the historical reference tables for the 1761 and
1769 transits of Venus.

The contact and observation tables are historical reference data: they are
loaded once and never mutated.
"""

from .julian import parse_time

AU_KM = 149597870.7
SPEED_OF_LIGHT_KM_S = 299792.458

# Sun gravitational parameter in AU^3 / day^2 (canonical value).
MU_SUN = 0.0002959122082855911

SUN_RADIUS_KM = 696340.0
EARTH_RADIUS_KM = 6371.0
VENUS_RADIUS_KM = 6051.8

OBLIQUITY_J2000_DEG = 23.4392911

TRANSIT_YEARS = (1761, 1769)
CONTACT_NAMES = ("first", "second", "third", "fourth")

# J2000 Keplerian elements (degrees) with rates per Julian century.
# Earth uses the Earth-Moon barycentre set.
BODY_DATA = {
    "sun": {
        "radius_km": SUN_RADIUS_KM,
        "rotation_period_days": 25.05,
        "fixed": True,
    },
    "earth": {
        "radius_km": EARTH_RADIUS_KM,
        "rotation_period_days": 0.99726968,
        "elements": {
            "a": 1.00000261,
            "e": 0.01671123,
            "i": -0.00001531,
            "mean_longitude": 100.46457166,
            "longitude_of_perihelion": 102.93768193,
            "node": 0.0,
        },
        "rates": {
            "a": 0.00000562,
            "e": -0.00004392,
            "i": -0.01294668,
            "mean_longitude": 35999.37244981,
            "longitude_of_perihelion": 0.32327364,
            "node": 0.0,
        },
    },
    "venus": {
        "radius_km": VENUS_RADIUS_KM,
        "rotation_period_days": -243.025,  # retrograde
        "elements": {
            "a": 0.72333566,
            "e": 0.00677672,
            "i": 3.39467605,
            "mean_longitude": 181.97909950,
            "longitude_of_perihelion": 131.60246718,
            "node": 76.67984255,
        },
        "rates": {
            "a": 0.00000390,
            "e": -0.00004107,
            "i": -0.00078890,
            "mean_longitude": 58517.81538729,
            "longitude_of_perihelion": 0.00268329,
            "node": -0.27769418,
        },
    },
}

VENUS_TRANSIT_EVENTS = {
    1761: {
        "date": parse_time("1761-06-06T00:00:00Z"),
        "contacts": {
            "first": parse_time("1761-06-06T02:19:00Z"),
            "second": parse_time("1761-06-06T02:39:00Z"),
            "third": parse_time("1761-06-06T08:37:00Z"),
            "fourth": parse_time("1761-06-06T08:57:00Z"),
        },
        "duration_hours": 6.6333,
        "type": "external",
    },
    1769: {
        "date": parse_time("1769-06-03T00:00:00Z"),
        "contacts": {
            "first": parse_time("1769-06-03T02:19:00Z"),
            "second": parse_time("1769-06-03T02:39:00Z"),
            "third": parse_time("1769-06-03T08:37:00Z"),
            "fourth": parse_time("1769-06-03T08:57:00Z"),
        },
        "duration_hours": 6.6333,
        "type": "external",
    },
}

# Observation windows: two months either side of each transit.
OBSERVATION_WINDOWS = {
    1761: (parse_time("1761-04-01T00:00:00Z"), parse_time("1761-08-31T23:59:59Z")),
    1769: (parse_time("1769-04-01T00:00:00Z"), parse_time("1769-08-31T23:59:59Z")),
}


def _contacts(day: str) -> dict:
    return {
        "first": parse_time(f"{day}T02:19:00Z"),
        "second": parse_time(f"{day}T02:39:00Z"),
        "third": parse_time(f"{day}T08:37:00Z"),
        "fourth": parse_time(f"{day}T08:57:00Z"),
    }


HISTORICAL_OBSERVATIONS = {
    1761: [
        {
            "id": "stockholm_1761",
            "name": "Stockholm Observatory",
            "observer": "Pehr Wilhelm Wargentin",
            "country": "Sweden",
            "latitude": 59.3293,
            "longitude": 18.0686,
            "elevation_m": 28.0,
            "telescope": "8-foot refractor",
            "contact_times": _contacts("1761-06-06"),
            "accuracy": "±2 minutes",
            "notes": "Royal Swedish Academy of Sciences observation, good weather",
        },
        {
            "id": "paris_1761",
            "name": "Paris Observatory",
            "observer": "Joseph-Nicolas Delisle",
            "country": "France",
            "latitude": 48.8566,
            "longitude": 2.3522,
            "elevation_m": 35.0,
            "telescope": "12-foot quadrant",
            "contact_times": _contacts("1761-06-06"),
            "accuracy": "±1 minute",
            "notes": "Large observing campaign led by the French Academy of Sciences",
        },
        {
            "id": "cape_town_1761",
            "name": "Cape of Good Hope Observatory",
            "observer": "Nicolas-Louis de Lacaille",
            "country": "South Africa",
            "latitude": -33.9249,
            "longitude": 18.4241,
            "elevation_m": 15.0,
            "telescope": "4-foot mural quadrant",
            "contact_times": _contacts("1761-06-06"),
            "accuracy": "±3 minutes",
            "notes": "Key southern hemisphere station, good conditions",
        },
    ],
    1769: [
        {
            "id": "tahiti_1769",
            "name": "Tahiti",
            "observer": "James Cook",
            "country": "United Kingdom",
            "latitude": -17.6509,
            "longitude": -149.4260,
            "elevation_m": 5.0,
            "telescope": "Dollond 30-inch achromatic",
            "contact_times": _contacts("1769-06-03"),
            "accuracy": "±1 minute",
            "notes": "Captain Cook's expedition, excellent conditions",
        },
        {
            "id": "hudson_bay_1769",
            "name": "Hudson Bay",
            "observer": "William Wales",
            "country": "Canada",
            "latitude": 58.7683,
            "longitude": -94.1650,
            "elevation_m": 50.0,
            "telescope": "Bird 30-inch quadrant",
            "contact_times": _contacts("1769-06-03"),
            "accuracy": "±2 minutes",
            "notes": "Royal Society northern hemisphere station",
        },
        {
            "id": "vienna_1769",
            "name": "Vienna Observatory",
            "observer": "Maximilian Hell",
            "country": "Austria",
            "latitude": 48.2082,
            "longitude": 16.3738,
            "elevation_m": 170.0,
            "telescope": "6-foot mural quadrant",
            "contact_times": _contacts("1769-06-03"),
            "accuracy": "±1.5 minutes",
            "notes": "Imperial Austrian Academy of Sciences observation",
        },
    ],
}
