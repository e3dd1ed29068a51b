"""
Date-based vehicle availability.

A vehicle is unavailable for a requested day (or round-trip range) when any
booking on it in a blocking status covers an overlapping span. Spans are
inclusive on both ends: a booking that ends on the day a search starts still
blocks it.
"""
import logging
from typing import Iterable, List, Optional, Set

from database import object_id
from errors import FareUnavailable, PricingNotFound
from fare import calculate_fare
from geo import distance_km, haversine
from lifecycle import BLOCKING_STATUS_VALUES
from pricing import resolve_for_vehicle

logger = logging.getLogger(__name__)


def request_range(date: str, return_date: Optional[str] = None):
    if return_date and return_date != date:
        return date, return_date
    return date, date


def overlaps(booking_start: str, booking_end: Optional[str], request_start: str, request_end: str) -> bool:
    booking_end = booking_end or booking_start
    return booking_start <= request_end and request_start <= booking_end


def conflicting_bookings_query(vehicle_ids: Iterable[str], date: str, return_date: Optional[str] = None) -> dict:
    start, end = request_range(date, return_date)
    return {
        "vehicle_id": {"$in": [str(v) for v in vehicle_ids]},
        "status": {"$in": sorted(BLOCKING_STATUS_VALUES)},
        "trip_details.date": {"$lte": end},
        "$or": [
            {"trip_details.return_date": {"$gte": start}},
            {"trip_details.return_date": None, "trip_details.date": {"$gte": start}},
        ],
    }


def booked_vehicle_ids(db, vehicle_ids: Iterable[str], date: str, return_date: Optional[str] = None) -> Set[str]:
    """Ids among `vehicle_ids` with a blocking booking overlapping the request."""
    vehicle_ids = [str(v) for v in vehicle_ids]
    if not vehicle_ids:
        return set()
    query = conflicting_bookings_query(vehicle_ids, date, return_date)
    return {str(b["vehicle_id"]) for b in db["booking"].find(query, {"vehicle_id": 1})}


def eligible_vehicles_query(vehicle_type: Optional[str] = None, passengers: int = 1,
                            vehicle_ids: Optional[Iterable[str]] = None) -> dict:
    q = {
        "is_active": True,
        "approval_status": "approved",
        "seating_capacity": {"$gte": int(passengers or 1)},
    }
    if vehicle_type:
        q["type"] = vehicle_type
    if vehicle_ids is not None:
        q["_id"] = {"$in": [object_id(v) for v in vehicle_ids]}
    return q


def _driver_summary(driver: dict) -> dict:
    return {
        "id": str(driver["_id"]),
        "name": driver.get("name"),
        "phone": driver.get("phone"),
        "rating": driver.get("rating"),
        "is_online": driver.get("is_online", False),
    }


def _pricing_summary(tariff: dict) -> dict:
    return {
        "id": str(tariff.get("_id")),
        "category": tariff.get("category"),
        "vehicle_type": tariff.get("vehicle_type"),
        "vehicle_model": tariff.get("vehicle_model"),
        "trip_type": tariff.get("trip_type"),
        "auto_price": tariff.get("auto_price"),
        "distance_pricing": tariff.get("distance_pricing"),
    }


def search_available_vehicles(
    db,
    date: str,
    return_date: Optional[str] = None,
    vehicle_type: Optional[str] = None,
    passengers: int = 1,
    trip_type: Optional[str] = None,
    vehicle_ids: Optional[Iterable[str]] = None,
    pickup: Optional[dict] = None,
    destination: Optional[dict] = None,
    radius_km: Optional[float] = None,
    include_unavailable: bool = False,
    limit: int = 100,
) -> List[dict]:
    """
    Vehicles that can take a trip on `date` (through `return_date` for round
    trips), each with its driver summary, resolved tariff and availability flag.

    Inactive or unapproved vehicles and vehicles whose driver is inactive or
    offline are never returned. Vehicles without a resolvable tariff are skipped.
    """
    trip_type = trip_type or ("return" if return_date and return_date != date else "one-way")

    candidates = list(db["vehicle"].find(eligible_vehicles_query(vehicle_type, passengers, vehicle_ids)))
    driver_ids = {object_id(v.get("driver_id")) for v in candidates}
    drivers = {
        str(d["_id"]): d
        for d in db["driver"].find({"_id": {"$in": list(driver_ids)}, "status": "active", "is_online": True})
    }
    candidates = [v for v in candidates if str(v.get("driver_id")) in drivers]

    if pickup and radius_km:
        near = []
        for v in candidates:
            loc = v.get("current_location") or {}
            if loc.get("lat") is None or loc.get("lng") is None:
                continue
            if haversine(pickup["latitude"], pickup["longitude"], loc["lat"], loc["lng"]) <= radius_km:
                near.append(v)
        candidates = near

    booked = booked_vehicle_ids(db, [v["_id"] for v in candidates], date, return_date)

    trip_distance = None
    if pickup and destination:
        trip_distance = distance_km(pickup, destination)

    results = []
    for v in candidates:
        if len(results) >= limit:
            break
        vid = str(v["_id"])
        available = vid not in booked
        if not available and not include_unavailable:
            continue
        try:
            tariff = resolve_for_vehicle(db, v, trip_type)
        except PricingNotFound:
            logger.warning("Vehicle %s has no pricing for %s trips, skipped from search", vid, trip_type)
            continue

        item = {
            "id": vid,
            "type": v.get("type"),
            "brand": v.get("brand"),
            "model": v.get("model"),
            "registration_number": v.get("registration_number"),
            "seating_capacity": v.get("seating_capacity"),
            "pricing_reference": v.get("pricing_reference"),
            "driver": _driver_summary(drivers[str(v["driver_id"])]),
            "pricing": _pricing_summary(tariff),
            "available": available,
        }
        if trip_distance is not None:
            try:
                fare = calculate_fare(tariff, trip_distance, trip_type, v.get("type"))
                item["estimated_fare"] = fare.total_amount
            except FareUnavailable:
                item["estimated_fare"] = None
            item["distance"] = trip_distance
        results.append(item)
    return results
