"""
Vehicle lock coordination.

A vehicle carries the date ranges it is reserved for in `reservations`, one per
booking in a blocking status, plus the denormalized `booked`, `is_available` and
`current_booking` flags. Claims are a single conditional update, so two
requests racing for overlapping dates cannot both succeed.

Only the booking flow and the lifecycle state machine call into this module.
"""
import logging
from datetime import datetime, timezone

from database import object_id
from errors import VehicleAlreadyBooked, VehicleNotFound
from schemas import BookingStatus

logger = logging.getLogger(__name__)

COLLECTION = "vehicle"

BLOCKING_STATUSES = {BookingStatus.PENDING.value, BookingStatus.ACCEPTED.value, BookingStatus.STARTED.value}
TERMINAL_STATUSES = {BookingStatus.COMPLETED.value, BookingStatus.CANCELLED.value}


def _overlap(start: str, end: str) -> dict:
    return {"start": {"$lte": end}, "end": {"$gte": start}}


def claim(db, vehicle_id, booking_id: str, start: str, end: str = None) -> None:
    """
    Reserve `vehicle_id` for [start, end] on behalf of `booking_id`.

    Re-claiming for a booking that already holds a reservation is a no-op.
    Raises VehicleAlreadyBooked when another booking overlaps those dates.
    """
    end = end or start
    booking_id = str(booking_id)

    if db[COLLECTION].find_one({"_id": vehicle_id, "reservations.booking_id": booking_id}, {"_id": 1}):
        return

    now = datetime.now(timezone.utc)
    res = db[COLLECTION].update_one(
        {
            "_id": vehicle_id,
            "$nor": [{"reservations": {"$elemMatch": _overlap(start, end)}}],
        },
        {
            "$push": {"reservations": {"booking_id": booking_id, "start": start, "end": end}},
            "$set": {
                "booked": True,
                "is_available": False,
                "current_booking": booking_id,
                "updated_at": now,
            },
        },
    )
    if res.matched_count:
        logger.info("Vehicle %s locked for booking %s (%s..%s)", vehicle_id, booking_id, start, end)
        return

    if db[COLLECTION].find_one({"_id": vehicle_id}, {"_id": 1}) is None:
        raise VehicleNotFound()
    logger.warning("Vehicle %s lock rejected for booking %s (%s..%s)", vehicle_id, booking_id, start, end)
    raise VehicleAlreadyBooked(f"Vehicle is already booked between {start} and {end}")


def release(db, vehicle_id, booking_id: str) -> None:
    """Drop the reservation held by `booking_id`. Releasing twice is a no-op."""
    booking_id = str(booking_id)
    now = datetime.now(timezone.utc)
    res = db[COLLECTION].update_one(
        {"_id": vehicle_id, "reservations.booking_id": booking_id},
        {"$pull": {"reservations": {"booking_id": booking_id}}, "$set": {"updated_at": now}},
    )
    if res.modified_count:
        logger.info("Vehicle %s released from booking %s", vehicle_id, booking_id)

    vehicle = db[COLLECTION].find_one({"_id": vehicle_id}, {"reservations": 1, "current_booking": 1})
    if vehicle is None:
        return
    remaining = vehicle.get("reservations") or []
    if remaining:
        if vehicle.get("current_booking") == booking_id:
            db[COLLECTION].update_one(
                {"_id": vehicle_id},
                {"$set": {"current_booking": remaining[0]["booking_id"]}},
            )
    else:
        db[COLLECTION].update_one(
            {"_id": vehicle_id, "reservations": {"$size": 0}},
            {"$set": {"booked": False, "is_available": True, "current_booking": None}},
        )


def reserved_range(booking: dict):
    details = booking.get("trip_details") or {}
    start = details.get("date")
    return start, details.get("return_date") or start


def sync(db, booking: dict) -> None:
    """Bring the vehicle lock in line with the booking's (canonical) status."""
    status = booking.get("status")
    vehicle_id = booking["vehicle_id"]
    vehicle_key = object_id(vehicle_id)
    if status in BLOCKING_STATUSES:
        start, end = reserved_range(booking)
        claim(db, vehicle_key, str(booking["_id"]), start, end)
    elif status in TERMINAL_STATUSES:
        release(db, vehicle_key, str(booking["_id"]))
