import math
from numbers import Real
from typing import Any, Mapping, Union

from errors import InvalidCoordinates

EARTH_RADIUS_KM = 6371.0


def _coordinate(point: Union[Mapping[str, Any], Any], name: str) -> float:
    if isinstance(point, Mapping):
        value = point.get(name)
    else:
        value = getattr(point, name, None)
    if isinstance(value, bool) or not isinstance(value, Real) or not math.isfinite(value):
        raise InvalidCoordinates(f"{name} must be a finite number, got {value!r}")
    return float(value)


def haversine(lat1, lon1, lat2, lon2):
    """Great-circle distance in km between two (lat, lon) pairs."""
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(dlon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def distance_km(origin, destination) -> float:
    """
    Distance between two points carrying `latitude` and `longitude`, in km
    rounded to 2 decimals. Points may be dicts or objects.
    """
    lat1 = _coordinate(origin, "latitude")
    lon1 = _coordinate(origin, "longitude")
    lat2 = _coordinate(destination, "latitude")
    lon2 = _coordinate(destination, "longitude")
    return round(haversine(lat1, lon1, lat2, lon2), 2)


def estimate_duration_minutes(distance: float) -> int:
    # rough estimate: 2 minutes per km
    return int(round(distance * 2))
