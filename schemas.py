"""
Database Schemas for Sawari (Vehicle Booking)

Each Pydantic model represents a collection in MongoDB.
Collection name is the lowercase of the class name.

- Rider -> rider
- Driver -> driver
- Vehicle -> vehicle
- VehiclePricing -> vehiclepricing
- Booking -> booking

Nested models (trip details, pricing, payment, cancellation, trip actuals) are
embedded sub-documents of a booking.
"""

import re
from datetime import datetime
from enum import Enum
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


Category = Literal["auto", "car", "bus"]
TripType = Literal["one-way", "return"]
PaymentMethod = Literal["cash", "card", "upi", "wallet", "razorpay"]
ActorRole = Literal["rider", "driver", "admin"]

TIER_KEY = re.compile(r"^\d+km$")


def check_distance_tiers(tiers):
    """Tier keys are "<km>km" thresholds and every rate is positive."""
    for key, rate in (tiers or {}).items():
        if not TIER_KEY.match(key):
            raise ValueError(f"Tier key {key!r} must be a distance threshold like '50km'")
        if rate <= 0:
            raise ValueError(f"Rate for tier {key} must be positive")
    return tiers


class BookingStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    STARTED = "started"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class GeoPoint(BaseModel):
    lat: float = Field(..., ge=-90, le=90, description="Latitude")
    lng: float = Field(..., ge=-180, le=180, description="Longitude")


class TripLocation(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    address: str = Field(..., min_length=1)


class Rider(BaseModel):
    name: str = Field(..., description="Full name")
    phone: str = Field(..., description="Phone number")
    rating: Optional[float] = Field(5.0, ge=0, le=5)
    phone_verified: bool = False
    api_key: Optional[str] = None


class Driver(BaseModel):
    name: str
    phone: str
    status: Literal["active", "inactive", "suspended"] = "active"
    is_online: bool = True
    rating: Optional[float] = Field(5.0, ge=0, le=5)
    api_key: Optional[str] = None


class PricingReference(BaseModel):
    category: Category
    vehicle_type: str = Field(..., min_length=1)
    vehicle_model: str = Field(..., min_length=1)


class VehiclePricing(BaseModel):
    """
    Tariff for one (category, vehicle_type, vehicle_model, trip_type).
    Collection name: "vehiclepricing"

    Auto tariffs use `auto_price` (flat per trip); car and bus tariffs use
    `distance_pricing`, a per-km rate keyed by tier threshold ("50km", "100km",
    "150km", optionally "200km").
    """
    category: Category
    vehicle_type: str
    vehicle_model: str
    trip_type: TripType = "one-way"
    auto_price: float = Field(0, ge=0)
    distance_pricing: Dict[str, float] = Field(default_factory=dict)
    is_active: bool = True
    is_default: bool = False
    notes: Optional[str] = None

    @field_validator("distance_pricing")
    @classmethod
    def tier_keys(cls, v):
        return check_distance_tiers(v)


class PricingSnapshot(BaseModel):
    """Resolved tariffs cached on the vehicle, keyed by trip type."""
    auto_price: Dict[str, float] = Field(default_factory=dict)
    distance_pricing: Dict[str, Dict[str, float]] = Field(default_factory=dict)
    last_updated: Optional[datetime] = None


class Reservation(BaseModel):
    booking_id: str
    start: str = Field(..., description="First reserved day, YYYY-MM-DD")
    end: str = Field(..., description="Last reserved day, YYYY-MM-DD")


class Vehicle(BaseModel):
    driver_id: str
    type: Category
    brand: str
    model: str
    registration_number: str
    seating_capacity: int = Field(..., ge=1, le=100)
    pricing_reference: PricingReference
    pricing: Optional[PricingSnapshot] = None
    current_location: Optional[GeoPoint] = None
    is_active: bool = True
    approval_status: Literal["pending", "approved", "rejected"] = "pending"
    is_approved: bool = False
    # lock state, written only by vehicle_lock
    is_available: bool = True
    booked: bool = False
    current_booking: Optional[str] = None
    reservations: List[Reservation] = Field(default_factory=list)


class TripDetails(BaseModel):
    pickup: TripLocation
    destination: TripLocation
    date: str = Field(..., description="Pickup day, YYYY-MM-DD")
    return_date: Optional[str] = Field(None, description="Return day for round trips")
    time: str = Field(..., description="HH:MM or HH:MM:SS")
    passengers: int = Field(1, ge=1)
    distance: float = Field(..., description="Great-circle distance in km")
    duration: int = Field(0, description="Estimated minutes")


class BookingPricing(BaseModel):
    base_price: int = 0
    rate_per_km: int
    distance: float
    total_amount: int
    trip_type: TripType = "one-way"
    tier: Optional[str] = None
    corrections: List[dict] = Field(default_factory=list)


class PartialPaymentDetails(BaseModel):
    online_amount: int
    cash_amount: int
    online_payment_status: Literal["pending", "completed", "failed"] = "pending"
    cash_payment_status: Literal["pending", "collected"] = "pending"
    collected_at: Optional[datetime] = None
    collected_by: Optional[dict] = None


class BookingPayment(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    method: PaymentMethod
    status: PaymentStatus = PaymentStatus.PENDING
    is_partial_payment: bool = False
    partial_payment_details: Optional[PartialPaymentDetails] = None
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    completed_at: Optional[datetime] = None


class ActorRef(BaseModel):
    id: str
    role: ActorRole


class Cancellation(BaseModel):
    cancelled_by: ActorRef
    cancelled_at: datetime
    reason: Optional[str] = None
    fee: int = 0
    refund_amount: int = 0
    refund_status: Literal["pending", "processed"] = "pending"
    refund_id: Optional[str] = None
    refunded_at: Optional[datetime] = None


class TripRecord(BaseModel):
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    actual_distance: Optional[float] = None
    actual_duration: Optional[float] = None
    actual_fare: Optional[int] = None
    driver_notes: Optional[str] = None


class StatusChange(BaseModel):
    status: str
    from_status: Optional[str] = None
    actor_id: str
    actor_role: ActorRole
    reason: Optional[str] = None
    notes: Optional[str] = None
    timestamp: datetime


class Booking(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    booking_number: str
    rider_id: str
    driver_id: str
    vehicle_id: str
    trip_details: TripDetails
    pricing: BookingPricing
    payment: BookingPayment
    status: BookingStatus = BookingStatus.PENDING
    special_requests: Optional[str] = None
    cancellation: Optional[Cancellation] = None
    trip: Optional[TripRecord] = None
    status_history: List[StatusChange] = Field(default_factory=list)
