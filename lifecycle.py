"""
Booking status lifecycle.

    pending -> accepted -> started -> completed
    pending | accepted -> cancelled

Drivers move their own bookings forward; riders, drivers and admins may cancel
before the trip starts. Admins can also force any status, which goes through
the same side effects. Every status write is a compare-and-set on the status
the booking was read with, and is followed by the vehicle lock update.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from database import object_id
from errors import BookingNotFound, InvalidTransition, NotAuthorized
from fare import round_rupees
from schemas import BookingStatus
import vehicle_lock

logger = logging.getLogger(__name__)

COLLECTION = "booking"

# other spellings seen in stored documents and client payloads
STATUS_ALIASES = {
    "confirmed": BookingStatus.ACCEPTED,
    "driver_assigned": BookingStatus.ACCEPTED,
    "driver_en_route": BookingStatus.ACCEPTED,
    "driver_arrived": BookingStatus.ACCEPTED,
    "trip_started": BookingStatus.STARTED,
    "in-progress": BookingStatus.STARTED,
    "in_progress": BookingStatus.STARTED,
}

CANCELLATION_REQUESTED = "cancellation_requested"

BLOCKING_STATUS_VALUES = (
    {s.value for s in (BookingStatus.PENDING, BookingStatus.ACCEPTED, BookingStatus.STARTED)}
    | set(STATUS_ALIASES)
    | {CANCELLATION_REQUESTED}
)

# target -> (allowed current statuses, roles allowed to request it)
TRANSITIONS = {
    BookingStatus.ACCEPTED: ({BookingStatus.PENDING}, {"driver"}),
    BookingStatus.STARTED: ({BookingStatus.ACCEPTED}, {"driver"}),
    BookingStatus.COMPLETED: ({BookingStatus.STARTED}, {"driver"}),
    BookingStatus.CANCELLED: ({BookingStatus.PENDING, BookingStatus.ACCEPTED}, {"rider", "driver", "admin"}),
}


@dataclass
class Actor:
    role: str
    id: str

    def ref(self) -> dict:
        return {"id": self.id, "role": self.role}


@dataclass
class TripActuals:
    distance: Optional[float] = None
    duration: Optional[float] = None
    fare: Optional[int] = None


def normalize_status(value) -> BookingStatus:
    """Canonical status for a stored or requested value; legacy aliases are mapped."""
    if isinstance(value, BookingStatus):
        return value
    if value in STATUS_ALIASES:
        return STATUS_ALIASES[value]
    if value == CANCELLATION_REQUESTED:
        # still holds its vehicle until an admin resolves it
        return BookingStatus.ACCEPTED
    try:
        return BookingStatus(value)
    except ValueError:
        raise InvalidTransition(f"Unknown booking status '{value}'")


def get_booking(db, booking_id) -> dict:
    booking = db[COLLECTION].find_one({"_id": object_id(booking_id)})
    if not booking:
        raise BookingNotFound()
    return booking


def check_party(booking: dict, actor: Actor) -> None:
    if actor.role == "admin":
        return
    owner = booking.get("rider_id") if actor.role == "rider" else booking.get("driver_id")
    if actor.role not in ("rider", "driver") or str(owner) != str(actor.id):
        raise NotAuthorized(f"{actor.role} {actor.id} is not a party to this booking")


def _trip_datetime(booking: dict) -> Optional[datetime]:
    details = booking.get("trip_details") or {}
    date, time = details.get("date"), details.get("time") or "00:00"
    if not date:
        return None
    fmt = "%Y-%m-%d %H:%M:%S" if time.count(":") == 2 else "%Y-%m-%d %H:%M"
    try:
        return datetime.strptime(f"{date} {time}", fmt).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def amount_paid(booking: dict) -> int:
    payment = booking.get("payment") or {}
    total = (booking.get("pricing") or {}).get("total_amount") or 0
    if payment.get("status") == "completed":
        return total
    details = payment.get("partial_payment_details") or {}
    paid = 0
    if payment.get("is_partial_payment"):
        if details.get("online_payment_status") == "completed":
            paid += details.get("online_amount") or 0
        if details.get("cash_payment_status") == "collected":
            paid += details.get("cash_amount") or 0
    return paid


def cancellation_fee(booking: dict, now: datetime) -> int:
    """
    No fee more than 24h before pickup, 10% of the total more than 2h before,
    25% after that.
    """
    total = (booking.get("pricing") or {}).get("total_amount") or 0
    pickup_at = _trip_datetime(booking)
    if pickup_at is None:
        return 0
    lead = pickup_at - now
    if lead > timedelta(hours=24):
        return 0
    if lead > timedelta(hours=2):
        return round_rupees(total * 0.10)
    return round_rupees(total * 0.25)


def _cancellation_record(booking: dict, actor: Actor, reason: Optional[str], now: datetime) -> dict:
    fee = cancellation_fee(booking, now)
    refund = max(amount_paid(booking) - fee, 0)
    return {
        "cancelled_by": actor.ref(),
        "cancelled_at": now,
        "reason": reason,
        "fee": fee,
        "refund_amount": refund,
        "refund_status": "pending",
        "refund_id": None,
        "refunded_at": None,
    }


def _trip_fields(booking: dict, target: BookingStatus, notes: Optional[str],
                 actuals: Optional[TripActuals], now: datetime) -> dict:
    trip = dict(booking.get("trip") or {})
    if target == BookingStatus.STARTED:
        trip["start_time"] = now
    elif target == BookingStatus.COMPLETED:
        actuals = actuals or TripActuals()
        details = booking.get("trip_details") or {}
        total = (booking.get("pricing") or {}).get("total_amount")
        if not trip.get("start_time"):
            trip["start_time"] = now
        trip.update({
            "end_time": now,
            "actual_distance": actuals.distance if actuals.distance is not None else details.get("distance"),
            "actual_duration": actuals.duration if actuals.duration is not None else details.get("duration"),
            "actual_fare": actuals.fare if actuals.fare is not None else total,
        })
        if notes:
            trip["driver_notes"] = notes
    else:
        return {}
    return {"trip": trip}


def _write(db, booking: dict, target: BookingStatus, actor: Actor, reason: Optional[str],
           notes: Optional[str], actuals: Optional[TripActuals], now: datetime) -> dict:
    raw_status = booking.get("status")
    fields = {"status": target.value, "updated_at": now}
    if target == BookingStatus.CANCELLED:
        fields["cancellation"] = _cancellation_record(booking, actor, reason, now)
    elif normalize_status(raw_status) == BookingStatus.CANCELLED:
        fields["cancellation"] = None
    fields.update(_trip_fields(booking, target, notes, actuals, now))

    entry = {
        "status": target.value,
        "from_status": raw_status,
        "actor_id": actor.id,
        "actor_role": actor.role,
        "reason": reason,
        "notes": notes,
        "timestamp": now,
    }

    # lock must be held before a booking becomes (or stays) blocking
    reentering = False
    if target.value in vehicle_lock.BLOCKING_STATUSES:
        reentering = normalize_status(raw_status).value in vehicle_lock.TERMINAL_STATUSES
        vehicle_lock.sync(db, {**booking, "status": target.value})

    res = db[COLLECTION].update_one(
        {"_id": booking["_id"], "status": raw_status},
        {"$set": fields, "$push": {"status_history": entry}},
    )
    if res.matched_count == 0:
        if reentering:
            vehicle_lock.release(db, object_id(booking["vehicle_id"]), str(booking["_id"]))
        current = get_booking(db, booking["_id"])
        raise InvalidTransition(
            f"Booking changed to '{current.get('status')}' while moving it to '{target.value}'"
        )

    updated = get_booking(db, booking["_id"])
    if target.value in vehicle_lock.TERMINAL_STATUSES:
        vehicle_lock.sync(db, updated)

    logger.info(
        "Booking %s %s -> %s by %s %s",
        booking.get("booking_number") or booking["_id"], raw_status, target.value, actor.role, actor.id,
    )
    return updated


def transition(db, booking_id, target, actor: Actor, reason: Optional[str] = None,
               notes: Optional[str] = None, actuals: Optional[TripActuals] = None,
               now: Optional[datetime] = None) -> dict:
    """Move a booking along the normal lifecycle on behalf of `actor`."""
    target = normalize_status(target)
    now = now or datetime.now(timezone.utc)
    booking = get_booking(db, booking_id)

    if target not in TRANSITIONS:
        raise InvalidTransition(f"Cannot move a booking to '{target.value}'")
    allowed_from, roles = TRANSITIONS[target]
    if actor.role not in roles:
        raise NotAuthorized(f"A {actor.role} cannot move a booking to '{target.value}'")
    check_party(booking, actor)

    current = normalize_status(booking.get("status"))
    if current not in allowed_from:
        raise InvalidTransition(f"Cannot change status from {booking.get('status')} to {target.value}")

    return _write(db, booking, target, actor, reason, notes, actuals, now)


def admin_override(db, booking_id, target, actor: Actor, reason: Optional[str] = None,
                   notes: Optional[str] = None, actuals: Optional[TripActuals] = None,
                   now: Optional[datetime] = None) -> dict:
    """
    Force a booking into `target`. Same side effects as a normal transition; a
    completed booking cannot be cancelled, and a cancelled one can only be
    re-opened to pending or accepted, which drops its cancellation record.
    """
    if actor.role != "admin":
        raise NotAuthorized("Only admins can override booking status")
    target = normalize_status(target)
    now = now or datetime.now(timezone.utc)
    booking = get_booking(db, booking_id)
    current = normalize_status(booking.get("status"))

    if current == target and booking.get("status") == target.value:
        raise InvalidTransition(f"Booking is already {target.value}")
    if {current, target} == {BookingStatus.COMPLETED, BookingStatus.CANCELLED}:
        raise InvalidTransition(f"Cannot change status from {current.value} to {target.value}")
    if current == BookingStatus.CANCELLED and target == BookingStatus.STARTED:
        raise InvalidTransition("A cancelled booking must be re-opened as pending or accepted first")
    if current == BookingStatus.CANCELLED and (booking.get("cancellation") or {}).get("refund_status") == "processed":
        raise InvalidTransition("Cannot re-open a booking whose refund was already processed")

    return _write(db, booking, target, actor, reason, notes, actuals, now)
