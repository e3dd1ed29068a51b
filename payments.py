"""
Payment bookkeeping on bookings: online confirmation, cash collection for
partial (30/70) payments, gateway orders and refunds of cancelled bookings.

A partial booking's overall payment status only becomes "completed" once the
online part is confirmed and the cash part is collected, in either order.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import config
from errors import InvalidTransition, NotAuthorized, PaymentMismatch, RefundWindowExpired
from lifecycle import Actor, check_party, get_booking, normalize_status
from schemas import BookingStatus

logger = logging.getLogger(__name__)

COLLECTION = "booking"


def _as_utc(value: datetime) -> datetime:
    # pymongo hands back naive UTC datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def amount_due_online(booking: dict) -> int:
    payment = booking.get("payment") or {}
    if payment.get("is_partial_payment"):
        return (payment.get("partial_payment_details") or {}).get("online_amount") or 0
    return (booking.get("pricing") or {}).get("total_amount") or 0


def _ensure_payable(booking: dict) -> None:
    if normalize_status(booking.get("status")) == BookingStatus.CANCELLED:
        raise InvalidTransition("Booking is cancelled")
    if (booking.get("payment") or {}).get("status") == "completed":
        raise InvalidTransition("Payment already completed")


def _settle_if_fully_paid(db, booking_id, now: datetime) -> bool:
    """Mark a partial booking paid once both parts are in, whichever landed last."""
    res = db[COLLECTION].update_one(
        {
            "_id": booking_id,
            "payment.status": "pending",
            "payment.partial_payment_details.online_payment_status": "completed",
            "payment.partial_payment_details.cash_payment_status": "collected",
        },
        {"$set": {"payment.status": "completed", "payment.completed_at": now}},
    )
    return res.modified_count > 0


def confirm_online_payment(db, booking_id, amount: int, gateway_payment_id: Optional[str] = None,
                           now: Optional[datetime] = None) -> dict:
    """Record the online payment (full amount, or the 30% part of a partial booking)."""
    now = now or datetime.now(timezone.utc)
    booking = get_booking(db, booking_id)
    _ensure_payable(booking)
    payment = booking.get("payment") or {}

    due = amount_due_online(booking)
    if int(amount) != due:
        raise PaymentMismatch(f"Amount {amount} does not match the {due} due online")

    fields = {"updated_at": now}
    if gateway_payment_id:
        fields["payment.gateway_payment_id"] = gateway_payment_id

    if payment.get("is_partial_payment"):
        details = payment.get("partial_payment_details") or {}
        if details.get("online_payment_status") == "completed":
            raise InvalidTransition("Online part already paid")
        fields["payment.partial_payment_details.online_payment_status"] = "completed"
        condition = {"payment.partial_payment_details.online_payment_status": {"$ne": "completed"}}
    else:
        fields["payment.status"] = "completed"
        fields["payment.completed_at"] = now
        condition = {"payment.status": payment.get("status")}

    res = db[COLLECTION].update_one({"_id": booking["_id"], **condition}, {"$set": fields})
    if res.matched_count == 0:
        raise InvalidTransition("Payment changed while it was being confirmed")
    if payment.get("is_partial_payment"):
        _settle_if_fully_paid(db, booking["_id"], now)
    logger.info("Online payment of %s confirmed for booking %s", amount, booking.get("booking_number"))
    return get_booking(db, booking["_id"])


def collect_cash(db, booking_id, actor: Actor, now: Optional[datetime] = None) -> dict:
    """Driver (or admin) marks the 70% cash part of a partial booking as collected."""
    if actor.role not in ("driver", "admin"):
        raise NotAuthorized("Only the driver or an admin can collect cash")
    now = now or datetime.now(timezone.utc)
    booking = get_booking(db, booking_id)
    check_party(booking, actor)
    payment = booking.get("payment") or {}
    if not payment.get("is_partial_payment"):
        raise InvalidTransition("Booking has no cash part to collect")
    _ensure_payable(booking)

    details = payment.get("partial_payment_details") or {}
    if details.get("cash_payment_status") == "collected":
        raise InvalidTransition("Cash already collected")

    fields = {
        "payment.partial_payment_details.cash_payment_status": "collected",
        "payment.partial_payment_details.collected_at": now,
        "payment.partial_payment_details.collected_by": actor.ref(),
        "updated_at": now,
    }
    res = db[COLLECTION].update_one(
        {"_id": booking["_id"], "payment.partial_payment_details.cash_payment_status": "pending"},
        {"$set": fields},
    )
    if res.matched_count == 0:
        raise InvalidTransition("Cash already collected")
    _settle_if_fully_paid(db, booking["_id"], now)
    logger.info("Cash %s collected for booking %s by %s %s",
                details.get("cash_amount"), booking.get("booking_number"), actor.role, actor.id)
    return get_booking(db, booking["_id"])


def create_gateway_order(db, booking_id, actor: Actor, gateway) -> dict:
    booking = get_booking(db, booking_id)
    check_party(booking, actor)
    _ensure_payable(booking)
    amount = amount_due_online(booking)
    order = gateway.create_order(amount, receipt=booking.get("booking_number"),
                                 notes={"booking_id": str(booking["_id"])})
    db[COLLECTION].update_one(
        {"_id": booking["_id"]},
        {"$set": {"payment.gateway_order_id": order.get("id"), "updated_at": datetime.now(timezone.utc)}},
    )
    return {"order_id": order.get("id"), "amount": amount, "currency": "INR", "key_id": gateway.key_id}


def verify_gateway_payment(db, booking_id, actor: Actor, gateway, order_id: str, payment_id: str,
                           signature: str) -> dict:
    booking = get_booking(db, booking_id)
    check_party(booking, actor)
    stored_order = (booking.get("payment") or {}).get("gateway_order_id")
    if stored_order and stored_order != order_id:
        raise PaymentMismatch("Order does not belong to this booking")
    if not gateway.verify_signature(order_id, payment_id, signature):
        raise PaymentMismatch("Invalid payment signature")
    return confirm_online_payment(db, booking["_id"], amount_due_online(booking), gateway_payment_id=payment_id)


def process_refund(db, booking_id, actor: Actor, gateway=None, now: Optional[datetime] = None,
                   window_hours: Optional[float] = None) -> dict:
    """
    Settle the refund recorded when a booking was cancelled. Refunds must be
    processed within the refund window counted from the cancellation.
    """
    if actor.role != "admin":
        raise NotAuthorized("Only admins can process refunds")
    now = now or datetime.now(timezone.utc)
    window_hours = config.REFUND_WINDOW_HOURS if window_hours is None else window_hours

    booking = get_booking(db, booking_id)
    cancellation = booking.get("cancellation")
    if normalize_status(booking.get("status")) != BookingStatus.CANCELLED or not cancellation:
        raise InvalidTransition("Only cancelled bookings can be refunded")
    if cancellation.get("refund_status") != "pending":
        raise InvalidTransition("Refund already processed")

    cancelled_at = _as_utc(cancellation["cancelled_at"])
    if now - cancelled_at > timedelta(hours=window_hours):
        raise RefundWindowExpired(f"Refund not allowed after {window_hours:g} hours")

    amount = cancellation.get("refund_amount") or 0
    payment = booking.get("payment") or {}
    refund_id = None
    if amount > 0 and gateway is not None and payment.get("gateway_payment_id"):
        result = gateway.refund(payment["gateway_payment_id"], amount,
                                notes={"booking_number": booking.get("booking_number")})
        refund_id = result.get("id")

    fields = {
        "cancellation.refund_status": "processed",
        "cancellation.refund_id": refund_id,
        "cancellation.refunded_at": now,
        "updated_at": now,
    }
    if amount > 0:
        fields["payment.status"] = "refunded"

    res = db[COLLECTION].update_one(
        {"_id": booking["_id"], "cancellation.refund_status": "pending"},
        {"$set": fields},
    )
    if res.matched_count == 0:
        raise InvalidTransition("Refund already processed")
    logger.info("Refund of %s processed for booking %s (%s)", amount, booking.get("booking_number"), refund_id)
    return get_booking(db, booking["_id"])
