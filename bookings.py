"""
Booking creation, fare quotes and admin fare corrections.

Creation is all-or-nothing: the booking id is minted first, the vehicle is
claimed for the trip dates under that id, and only then is the booking
inserted. If the insert fails the claim is released again, so there is never
a saved booking without its lock nor a lock without its booking.
"""
import logging
import re
import secrets
import string
import time as _time
from datetime import datetime, timezone
from typing import Optional

from bson import ObjectId

import config
import vehicle_lock
from availability import booked_vehicle_ids
from database import object_id
from errors import InvalidTransition, NotAuthorized, VehicleAlreadyBooked, VehicleNotFound, VehicleUnavailable
from fare import calculate_fare, partial_amounts, split_payment
from geo import distance_km, estimate_duration_minutes
from lifecycle import Actor, get_booking, normalize_status
from pricing import resolve_for_vehicle
from schemas import (
    Booking,
    BookingPayment,
    BookingPricing,
    BookingStatus,
    PartialPaymentDetails,
    TripDetails,
)

logger = logging.getLogger(__name__)

COLLECTION = "booking"

TIME_RE = re.compile(r"^([0-1]?[0-9]|2[0-3]):[0-5][0-9](:[0-5][0-9])?$")
_NUMBER_ALPHABET = string.ascii_uppercase + string.digits


def normalize_date(value) -> str:
    """'2024-05-01T10:00:00Z', date or datetime -> '2024-05-01'."""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if hasattr(value, "isoformat"):
        return value.isoformat()
    text = str(value).strip()
    day = text.split("T")[0].split(" ")[0]
    return datetime.strptime(day, "%Y-%m-%d").date().isoformat()


def normalize_time(value: str) -> str:
    value = str(value).strip()
    if not TIME_RE.match(value):
        raise ValueError("Time must be in HH:MM or HH:MM:SS format")
    return value


def generate_booking_number() -> str:
    stamp = str(int(_time.time() * 1000))[-8:]
    suffix = "".join(secrets.choice(_NUMBER_ALPHABET) for _ in range(4))
    return f"{config.BOOKING_NUMBER_PREFIX}{stamp}{suffix}"


def _bookable_vehicle(db, vehicle_id, passengers: int):
    vehicle = db["vehicle"].find_one({"_id": object_id(vehicle_id)})
    if not vehicle:
        raise VehicleNotFound()
    if not vehicle.get("is_active") or vehicle.get("approval_status") != "approved":
        raise VehicleUnavailable("Vehicle is not active or not approved")
    if (vehicle.get("seating_capacity") or 0) < passengers:
        raise VehicleUnavailable(f"Vehicle seats {vehicle.get('seating_capacity')}, requested {passengers}")

    driver = db["driver"].find_one({"_id": object_id(vehicle.get("driver_id"))})
    if not driver or driver.get("status") != "active" or not driver.get("is_online"):
        raise VehicleUnavailable("Driver is not available")
    return vehicle, driver


def quote(db, vehicle_id, pickup: dict, destination: dict, trip_type: str = "one-way",
          payment_method: str = "cash") -> dict:
    vehicle = db["vehicle"].find_one({"_id": object_id(vehicle_id)})
    if not vehicle:
        raise VehicleNotFound()
    distance = distance_km(pickup, destination)
    tariff = resolve_for_vehicle(db, vehicle, trip_type)
    fare = calculate_fare(tariff, distance, trip_type, vehicle.get("type"))
    split = split_payment(fare.total_amount, payment_method, fare.category)
    return {
        "vehicle_id": str(vehicle["_id"]),
        "distance": distance,
        "duration": estimate_duration_minutes(distance),
        "trip_type": trip_type,
        "rate_per_km": fare.rate_per_km,
        "tier": fare.tier,
        "total_amount": fare.total_amount,
        "is_partial_payment": split.is_partial_payment,
        "online_amount": split.online_amount,
        "cash_amount": split.cash_amount,
    }


def create_booking(
    db,
    rider_id: str,
    vehicle_id: str,
    pickup: dict,
    destination: dict,
    date: str,
    time: str,
    payment_method: str,
    passengers: int = 1,
    trip_type: str = "one-way",
    return_date: Optional[str] = None,
    special_requests: Optional[str] = None,
    gateway_order_id: Optional[str] = None,
) -> dict:
    date = normalize_date(date)
    time = normalize_time(time)
    if return_date:
        return_date = normalize_date(return_date)
        if return_date < date:
            raise ValueError("Return date cannot be before the pickup date")
        if return_date != date:
            trip_type = "return"

    vehicle, driver = _bookable_vehicle(db, vehicle_id, passengers)

    distance = distance_km(pickup, destination)
    tariff = resolve_for_vehicle(db, vehicle, trip_type)
    fare = calculate_fare(tariff, distance, trip_type, vehicle.get("type"))
    split = split_payment(fare.total_amount, payment_method, fare.category)

    vid = str(vehicle["_id"])
    if vid in booked_vehicle_ids(db, [vid], date, return_date):
        raise VehicleAlreadyBooked(f"Vehicle is already booked around {date}")

    now = datetime.now(timezone.utc)
    booking = Booking(
        booking_number=generate_booking_number(),
        rider_id=str(rider_id),
        driver_id=str(driver["_id"]),
        vehicle_id=vid,
        trip_details=TripDetails(
            pickup=pickup,
            destination=destination,
            date=date,
            return_date=return_date,
            time=time,
            passengers=passengers,
            distance=distance,
            duration=estimate_duration_minutes(distance),
        ),
        pricing=BookingPricing(
            base_price=fare.base_price,
            rate_per_km=fare.rate_per_km,
            distance=distance,
            total_amount=fare.total_amount,
            trip_type=trip_type,
            tier=fare.tier,
        ),
        payment=BookingPayment(
            method=payment_method,
            is_partial_payment=split.is_partial_payment,
            partial_payment_details=PartialPaymentDetails(
                online_amount=split.online_amount,
                cash_amount=split.cash_amount,
            ) if split.is_partial_payment else None,
            gateway_order_id=gateway_order_id,
        ),
        status=BookingStatus.PENDING,
        special_requests=special_requests,
        status_history=[{
            "status": BookingStatus.PENDING.value,
            "actor_id": str(rider_id),
            "actor_role": "rider",
            "reason": "Booking created",
            "timestamp": now,
        }],
    )

    booking_id = ObjectId()
    data = booking.model_dump()
    data.update({"_id": booking_id, "created_at": now, "updated_at": now})

    start, end = vehicle_lock.reserved_range(data)
    vehicle_lock.claim(db, vehicle["_id"], str(booking_id), start, end)
    try:
        db[COLLECTION].insert_one(data)
    except Exception:
        logger.exception("Saving booking %s failed, releasing vehicle %s", booking_id, vid)
        vehicle_lock.release(db, vehicle["_id"], str(booking_id))
        raise

    logger.info(
        "Booking %s created for vehicle %s on %s: %s INR (%s)",
        data["booking_number"], vid, date, fare.total_amount, payment_method,
    )
    return data


def correct_total(db, booking_id, new_total: int, actor: Actor, reason: Optional[str] = None) -> dict:
    """Admin-only rewrite of a booking's total; the unpaid part of the split absorbs the change."""
    if actor.role != "admin":
        raise NotAuthorized("Only admins can correct booking fares")
    booking = get_booking(db, booking_id)
    if normalize_status(booking.get("status")) == BookingStatus.CANCELLED:
        raise InvalidTransition("Cannot correct the fare of a cancelled booking")

    pricing = booking.get("pricing") or {}
    payment = booking.get("payment") or {}
    now = datetime.now(timezone.utc)
    new_total = int(new_total)
    if payment.get("status") == "completed":
        raise InvalidTransition("Cannot correct the fare of a paid booking")
    fields = {"pricing.total_amount": new_total, "updated_at": now}
    if payment.get("is_partial_payment"):
        details = payment.get("partial_payment_details") or {}
        # a settled part keeps its amount; the other part absorbs the difference
        if details.get("online_payment_status") == "completed":
            online = details.get("online_amount") or 0
            cash = new_total - online
        elif details.get("cash_payment_status") == "collected":
            cash = details.get("cash_amount") or 0
            online = new_total - cash
        else:
            online, cash = partial_amounts(new_total)
        if online < 0 or cash < 0:
            raise InvalidTransition(f"New total {new_total} is below the amount already paid")
        fields["payment.partial_payment_details.online_amount"] = online
        fields["payment.partial_payment_details.cash_amount"] = cash

    correction = {
        "previous_total": pricing.get("total_amount"),
        "new_total": new_total,
        "actor_id": actor.id,
        "reason": reason,
        "timestamp": now,
    }
    unchanged = {"_id": booking["_id"], "payment.status": payment.get("status")}
    if payment.get("is_partial_payment"):
        unchanged.update({
            "payment.partial_payment_details.online_payment_status": details.get("online_payment_status"),
            "payment.partial_payment_details.cash_payment_status": details.get("cash_payment_status"),
        })
    res = db[COLLECTION].update_one(unchanged, {"$set": fields, "$push": {"pricing.corrections": correction}})
    if res.matched_count == 0:
        raise InvalidTransition("Payment changed while the fare was being corrected")
    logger.info("Booking %s total corrected %s -> %s by admin %s",
                booking.get("booking_number"), pricing.get("total_amount"), new_total, actor.id)
    return get_booking(db, booking["_id"])
