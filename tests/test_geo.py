import math
import random

import pytest

from errors import InvalidCoordinates
from geo import distance_km, estimate_duration_minutes, haversine


def test_known_distance_pune_mumbai():
    pune = {"latitude": 18.5204, "longitude": 73.8567}
    mumbai = {"latitude": 19.0760, "longitude": 72.8777}
    assert 115 < distance_km(pune, mumbai) < 125


def test_same_point_is_zero():
    p = {"latitude": 12.9716, "longitude": 77.5946}
    assert distance_km(p, p) == 0


def test_distance_is_symmetric():
    rng = random.Random(7)
    for _ in range(200):
        a = {"latitude": rng.uniform(-90, 90), "longitude": rng.uniform(-180, 180)}
        b = {"latitude": rng.uniform(-90, 90), "longitude": rng.uniform(-180, 180)}
        assert distance_km(a, b) == distance_km(b, a)


def test_accepts_objects_with_attributes():
    class Point:
        def __init__(self, latitude, longitude):
            self.latitude = latitude
            self.longitude = longitude

    assert distance_km(Point(0, 0), Point(0, 1)) == round(haversine(0, 0, 0, 1), 2)


@pytest.mark.parametrize("bad", [None, "18.5", float("nan"), math.inf, True])
def test_rejects_non_numeric_coordinates(bad):
    with pytest.raises(InvalidCoordinates):
        distance_km({"latitude": bad, "longitude": 73.0}, {"latitude": 18.0, "longitude": 73.0})


def test_missing_coordinate():
    with pytest.raises(InvalidCoordinates):
        distance_km({"latitude": 18.0}, {"latitude": 18.0, "longitude": 73.0})


def test_duration_estimate():
    assert estimate_duration_minutes(53.2) == 106
    assert estimate_duration_minutes(0) == 0
