"""
Tariff lookup for vehicles.

Tariffs live in the "vehiclepricing" collection, one document per
(category, vehicle_type, vehicle_model, trip_type). Resolution tries the exact
model first, then the default tariff for the vehicle type, and otherwise fails
with PricingNotFound. It never invents a price.
"""
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from errors import PricingNotFound
from schemas import TIER_KEY, PricingReference, PricingSnapshot, VehiclePricing

logger = logging.getLogger(__name__)

COLLECTION = "vehiclepricing"
TRIP_TYPES = ("one-way", "return")

DEFAULT_TARIFFS = [
    {"category": "auto", "vehicle_type": "Fuel Auto-Ricksaw", "vehicle_model": "Standard",
     "auto_price": {"one-way": 200, "return": 350}},
    {"category": "auto", "vehicle_type": "Electric Auto-Ricksaw", "vehicle_model": "Standard",
     "auto_price": {"one-way": 250, "return": 400}},
    {"category": "car", "vehicle_type": "Sedan", "vehicle_model": "Standard",
     "distance_pricing": {"50km": 12, "100km": 10, "150km": 8}},
    {"category": "bus", "vehicle_type": "AC Bus", "vehicle_model": "Standard",
     "distance_pricing": {"50km": 25, "100km": 20, "150km": 18}},
]


def tier_threshold(key: str) -> int:
    """'150km' -> 150; anything else is a ValueError."""
    if not isinstance(key, str) or not TIER_KEY.match(key):
        raise ValueError(f"Malformed tier key {key!r}")
    return int(key[:-2])


def resolve_pricing(db, category: str, vehicle_type: str, vehicle_model: Optional[str] = None,
                    trip_type: str = "one-way") -> dict:
    """Return the active tariff document for a vehicle configuration."""
    base = {"category": category, "vehicle_type": vehicle_type, "trip_type": trip_type, "is_active": True}

    pricing = None
    if vehicle_model:
        pricing = db[COLLECTION].find_one({**base, "vehicle_model": vehicle_model})
    if pricing is None:
        pricing = db[COLLECTION].find_one({**base, "is_default": True})
    if pricing is None:
        raise PricingNotFound(
            f"No pricing found for {category} / {vehicle_type} / {vehicle_model or '-'} ({trip_type})"
        )
    return pricing


def resolve_for_vehicle(db, vehicle: dict, trip_type: str = "one-way") -> dict:
    ref = vehicle.get("pricing_reference") or {}
    return resolve_pricing(
        db,
        ref.get("category") or vehicle.get("type"),
        ref.get("vehicle_type"),
        ref.get("vehicle_model"),
        trip_type,
    )


def build_snapshot(db, reference: PricingReference) -> PricingSnapshot:
    """
    Resolve both trip types for a vehicle's pricing reference. A trip type with
    no tariff is left out of the snapshot; at least one must resolve.
    """
    snapshot = PricingSnapshot(last_updated=datetime.now(timezone.utc))
    found = False
    for trip_type in TRIP_TYPES:
        try:
            tariff = resolve_pricing(db, reference.category, reference.vehicle_type,
                                     reference.vehicle_model, trip_type)
        except PricingNotFound:
            continue
        found = True
        if reference.category == "auto":
            snapshot.auto_price[trip_type] = tariff.get("auto_price") or 0
        else:
            snapshot.distance_pricing[trip_type] = dict(tariff.get("distance_pricing") or {})
    if not found:
        raise PricingNotFound(
            f"No pricing found for {reference.category} / {reference.vehicle_type} / {reference.vehicle_model}"
        )
    return snapshot


# Administration

def create_pricing(db, pricing: VehiclePricing, admin_id: str) -> str:
    key = {
        "category": pricing.category,
        "vehicle_type": pricing.vehicle_type,
        "vehicle_model": pricing.vehicle_model,
        "trip_type": pricing.trip_type,
    }
    if db[COLLECTION].find_one(key):
        raise ValueError("Pricing for this vehicle configuration already exists")
    data = pricing.model_dump()
    now = datetime.now(timezone.utc)
    data.update({"created_by": admin_id, "created_at": now, "updated_at": now})
    result = db[COLLECTION].insert_one(data)
    logger.info("Created pricing %s for %s", result.inserted_id, key)
    return str(result.inserted_id)


def list_pricing(db, category: Optional[str] = None, trip_type: Optional[str] = None) -> List[dict]:
    q = {"is_active": True}
    if category:
        q["category"] = category
    if trip_type:
        q["trip_type"] = trip_type
    return list(db[COLLECTION].find(q).sort([("category", 1), ("vehicle_type", 1), ("vehicle_model", 1)]))


def update_pricing(db, pricing_id, changes: Dict, admin_id: str) -> bool:
    allowed = {k: v for k, v in changes.items() if k in ("auto_price", "distance_pricing", "notes", "is_active", "is_default")}
    if not allowed:
        return False
    allowed["updated_by"] = admin_id
    allowed["updated_at"] = datetime.now(timezone.utc)
    res = db[COLLECTION].update_one({"_id": pricing_id}, {"$set": allowed})
    return res.matched_count > 0


def deactivate_pricing(db, pricing_id, admin_id: str) -> bool:
    return update_pricing(db, pricing_id, {"is_active": False}, admin_id)


def seed_default_pricing(db, admin_id: str = "system") -> int:
    """Insert the stock tariffs that are missing. Returns how many were created."""
    created = 0
    for tariff in DEFAULT_TARIFFS:
        for trip_type in TRIP_TYPES:
            if tariff["category"] == "auto":
                model = VehiclePricing(
                    category="auto",
                    vehicle_type=tariff["vehicle_type"],
                    vehicle_model=tariff["vehicle_model"],
                    trip_type=trip_type,
                    auto_price=tariff["auto_price"][trip_type],
                    is_default=True,
                )
            else:
                model = VehiclePricing(
                    category=tariff["category"],
                    vehicle_type=tariff["vehicle_type"],
                    vehicle_model=tariff["vehicle_model"],
                    trip_type=trip_type,
                    distance_pricing=tariff["distance_pricing"],
                    is_default=True,
                )
            try:
                create_pricing(db, model, admin_id)
                created += 1
            except ValueError:
                continue
    return created
