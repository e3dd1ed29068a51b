import random
from datetime import date, timedelta

from availability import booked_vehicle_ids, overlaps, search_available_vehicles
from conftest import LONAVALA, PUNE


def _booking(db, vehicle, start, end=None, status="accepted"):
    db["booking"].insert_one({
        "vehicle_id": str(vehicle["_id"]),
        "status": status,
        "trip_details": {"date": start, "return_date": end, "time": "09:00"},
    })


def _ids(results):
    return {r["id"] for r in results}


def test_overlapping_booking_hides_vehicle(seeded_db, vehicle):
    _booking(seeded_db, vehicle, "2024-05-01", "2024-05-03")

    assert str(vehicle["_id"]) not in _ids(search_available_vehicles(seeded_db, "2024-05-02"))
    assert str(vehicle["_id"]) in _ids(search_available_vehicles(seeded_db, "2024-05-04"))


def test_range_ends_are_inclusive(seeded_db, vehicle):
    _booking(seeded_db, vehicle, "2024-05-01", "2024-05-03")
    vid = str(vehicle["_id"])

    assert booked_vehicle_ids(seeded_db, [vid], "2024-05-03") == {vid}
    assert booked_vehicle_ids(seeded_db, [vid], "2024-04-28", "2024-05-01") == {vid}
    assert booked_vehicle_ids(seeded_db, [vid], "2024-04-28", "2024-04-30") == set()


def test_single_day_booking(seeded_db, vehicle):
    _booking(seeded_db, vehicle, "2024-05-10", status="pending")
    vid = str(vehicle["_id"])
    assert booked_vehicle_ids(seeded_db, [vid], "2024-05-10") == {vid}
    assert booked_vehicle_ids(seeded_db, [vid], "2024-05-08", "2024-05-12") == {vid}
    assert booked_vehicle_ids(seeded_db, [vid], "2024-05-11") == set()


def test_terminal_bookings_do_not_block(seeded_db, vehicle):
    _booking(seeded_db, vehicle, "2024-05-01", status="cancelled")
    _booking(seeded_db, vehicle, "2024-05-01", status="completed")
    assert str(vehicle["_id"]) in _ids(search_available_vehicles(seeded_db, "2024-05-01"))


def test_legacy_statuses_block(seeded_db, vehicle):
    _booking(seeded_db, vehicle, "2024-05-01", status="driver_en_route")
    _booking(seeded_db, vehicle, "2024-06-01", status="cancellation_requested")
    vid = str(vehicle["_id"])
    assert booked_vehicle_ids(seeded_db, [vid], "2024-05-01") == {vid}
    assert booked_vehicle_ids(seeded_db, [vid], "2024-06-01") == {vid}


def test_include_unavailable_flags_blocked_vehicles(seeded_db, vehicle, make_vehicle):
    other = make_vehicle()
    _booking(seeded_db, vehicle, "2024-05-01")

    results = {r["id"]: r for r in search_available_vehicles(seeded_db, "2024-05-01", include_unavailable=True)}
    assert results[str(vehicle["_id"])]["available"] is False
    assert results[str(other["_id"])]["available"] is True


def test_search_filters_vehicles_and_drivers(seeded_db, driver, make_vehicle):
    car = make_vehicle()
    bus = make_vehicle(category="bus", vehicle_type="AC Bus", seats=40)
    make_vehicle(approval_status="pending")
    make_vehicle(is_active=False)

    assert _ids(search_available_vehicles(seeded_db, "2024-05-01")) == {str(car["_id"]), str(bus["_id"])}
    assert _ids(search_available_vehicles(seeded_db, "2024-05-01", passengers=10)) == {str(bus["_id"])}
    assert _ids(search_available_vehicles(seeded_db, "2024-05-01", vehicle_type="car")) == {str(car["_id"])}

    seeded_db["driver"].update_one({"_id": driver["_id"]}, {"$set": {"is_online": False}})
    assert search_available_vehicles(seeded_db, "2024-05-01") == []


def test_vehicle_without_pricing_is_skipped(seeded_db, make_vehicle):
    make_vehicle(vehicle_type="Limousine")
    assert search_available_vehicles(seeded_db, "2024-05-01") == []


def test_limit_counts_only_free_vehicles(seeded_db, make_vehicle):
    taken = [make_vehicle(), make_vehicle()]
    free = [make_vehicle(), make_vehicle()]
    for v in taken:
        _booking(seeded_db, v, "2024-05-01")

    assert _ids(search_available_vehicles(seeded_db, "2024-05-01", limit=2)) == {str(v["_id"]) for v in free}
    assert len(search_available_vehicles(seeded_db, "2024-05-01", limit=1)) == 1


def test_search_radius_and_estimated_fare(seeded_db, make_vehicle):
    near = make_vehicle(location={"lat": 18.53, "lng": 73.86})
    make_vehicle(location={"lat": 19.07, "lng": 72.87})

    results = search_available_vehicles(seeded_db, "2024-05-01", pickup=PUNE, destination=LONAVALA, radius_km=10)
    assert _ids(results) == {str(near["_id"])}
    item = results[0]
    assert item["driver"]["name"] == "Ramesh"
    assert item["pricing"]["vehicle_type"] == "Sedan"
    assert item["estimated_fare"] > 0
    assert item["distance"] > 40


def test_return_search_uses_return_tariff(seeded_db, vehicle):
    seeded_db["vehiclepricing"].delete_many({"trip_type": "return"})
    assert search_available_vehicles(seeded_db, "2024-05-01", return_date="2024-05-02") == []
    assert len(search_available_vehicles(seeded_db, "2024-05-01")) == 1


def test_overlap_matches_exclusion_for_random_ranges(seeded_db, vehicle):
    rng = random.Random(2024)
    base = date(2024, 1, 1)
    vid = str(vehicle["_id"])

    def day(n):
        return (base + timedelta(days=n)).isoformat()

    held_start = rng.randint(0, 20)
    held_end = held_start + rng.randint(0, 5)
    _booking(seeded_db, vehicle, day(held_start), day(held_end))

    for _ in range(150):
        start = rng.randint(0, 30)
        end = start + rng.randint(0, 6)
        expected = overlaps(day(held_start), day(held_end), day(start), day(end))
        assert (vid in booked_vehicle_ids(seeded_db, [vid], day(start), day(end))) == expected
