"""
Fare calculation and the 30/70 online/cash split.

Amounts are whole rupees. Rounding is half-up (not Python's banker's rounding)
so a fare of 12.5 becomes 13.
"""
import math
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Mapping, Optional

from errors import FareUnavailable
from pricing import tier_threshold

ONLINE_SHARE = Decimal("0.30")


@dataclass
class Fare:
    total_amount: int
    rate_per_km: int
    distance: float
    trip_type: str
    category: str
    base_price: int = 0
    tier: Optional[str] = None


@dataclass
class PaymentSplit:
    is_partial_payment: bool
    online_amount: int
    cash_amount: int


def round_rupees(value) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def pick_tier(tiers: Mapping[str, float], distance: float):
    """
    Smallest threshold that covers the distance; past the last threshold the
    largest tier applies. Returns (key, rate) or (None, None) for an empty table.
    """
    try:
        usable = sorted(
            ((tier_threshold(key), key) for key, rate in (tiers or {}).items() if rate is not None),
        )
    except ValueError as e:
        raise FareUnavailable(str(e)) from e
    if not usable:
        return None, None
    for threshold, key in usable:
        if distance <= threshold:
            return key, tiers[key]
    threshold, key = usable[-1]
    return key, tiers[key]


def calculate_fare(tariff: Mapping, distance: float, trip_type: str = "one-way", category: Optional[str] = None) -> Fare:
    category = category or tariff.get("category")
    if not _is_number(distance) or distance < 0:
        raise FareUnavailable(f"Invalid trip distance {distance!r}")

    if category == "auto":
        flat = tariff.get("auto_price")
        if isinstance(flat, Mapping):
            flat = flat.get(trip_type)
        if not _is_number(flat):
            raise FareUnavailable("Auto pricing is missing for this trip type")
        total = round_rupees(flat)
        rate = round_rupees(flat / distance) if distance > 0 else total
        fare = Fare(total_amount=total, rate_per_km=rate, distance=distance,
                    trip_type=trip_type, category=category, base_price=total)
    else:
        tiers = tariff.get("distance_pricing") or {}
        if tiers and all(isinstance(v, Mapping) for v in tiers.values()):
            # vehicle snapshot keyed by trip type
            tiers = tiers.get(trip_type) or tiers.get("one-way") or {}
        tier, rate = pick_tier(tiers, distance)
        if not _is_number(rate):
            raise FareUnavailable("Distance pricing is missing for this trip")
        fare = Fare(total_amount=round_rupees(rate * distance), rate_per_km=round_rupees(rate),
                    distance=distance, trip_type=trip_type, category=category, tier=tier)

    if fare.total_amount <= 0:
        raise FareUnavailable(f"Fare for {category} trip of {distance} km came out as {fare.total_amount}")
    return fare


def split_payment(total_amount: int, payment_method: str, category: str) -> PaymentSplit:
    """
    Cash bookings on cars and buses pay 30% online up front and the rest in
    cash; the rounding remainder goes to the cash portion.
    """
    if category == "auto" or payment_method != "cash":
        return PaymentSplit(is_partial_payment=False, online_amount=total_amount, cash_amount=0)
    online, cash = partial_amounts(total_amount)
    return PaymentSplit(is_partial_payment=True, online_amount=online, cash_amount=cash)


def partial_amounts(total_amount: int):
    online = round_rupees(Decimal(total_amount) * ONLINE_SHARE)
    return online, total_amount - online
