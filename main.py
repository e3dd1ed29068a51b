import logging
import os
import secrets
from contextlib import asynccontextmanager
from typing import Annotated, Dict, Literal, Optional, Union

from bson import ObjectId
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator, model_validator

import availability
import bookings
import config
import lifecycle
import payments
import pricing
from database import db, create_document
from errors import BookingError
from gateway import RazorpayClient
from lifecycle import Actor, TripActuals
from otp_store import OTPStore
from schemas import (
    Driver,
    GeoPoint,
    PricingReference,
    Rider,
    TripLocation,
    TripType,
    Vehicle,
    VehiclePricing,
    check_distance_tiers,
)

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.otp_store = OTPStore(ttl_seconds=config.OTP_TTL_SECONDS)
    if db is None:
        logger.warning("DATABASE_URL / DATABASE_NAME not set, database routes will fail")
    yield


app = FastAPI(title="Sawari API", description="Vehicle booking backend for Sawari", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "error": exc.code})


class IdKeyResponse(BaseModel):
    id: str
    api_key: Optional[str] = None


class IdResponse(BaseModel):
    id: str


# Utility

def get_db():
    if db is None:
        raise HTTPException(status_code=500, detail="Database not available")
    return db


def to_str_id(doc):
    if doc is None:
        return None
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    d.pop("api_key", None)
    return d


def get_doc_by_id(collection: str, _id: str):
    database = get_db()
    if not ObjectId.is_valid(_id):
        raise HTTPException(status_code=400, detail="Invalid id")
    doc = database[collection].find_one({"_id": ObjectId(_id)})
    if not doc:
        raise HTTPException(status_code=404, detail=f"{collection} not found")
    return doc


def get_actor(
    x_actor_role: str = Header(...),
    x_actor_id: Optional[str] = Header(None),
    x_api_key: Optional[str] = Header(None),
    x_admin_key: Optional[str] = Header(None),
) -> Actor:
    """Who is calling: riders and drivers prove it with their api key, admins with the admin key."""
    if x_actor_role not in ("rider", "driver", "admin"):
        raise HTTPException(status_code=400, detail="X-Actor-Role must be rider, driver or admin")
    if x_actor_role == "admin":
        if not config.ADMIN_API_KEY or x_admin_key != config.ADMIN_API_KEY:
            raise HTTPException(status_code=401, detail="Invalid admin key")
        return Actor(role="admin", id=x_actor_id or "admin")
    if not x_actor_id:
        raise HTTPException(status_code=400, detail="X-Actor-Id header required")
    doc = get_doc_by_id(x_actor_role, x_actor_id)
    if doc.get("api_key") != x_api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return Actor(role=x_actor_role, id=x_actor_id)


def require_admin(actor: Actor = Depends(get_actor)) -> Actor:
    if actor.role != "admin":
        raise HTTPException(status_code=403, detail="Admin access required")
    return actor


def require_driver(actor: Actor = Depends(get_actor)) -> Actor:
    if actor.role != "driver":
        raise HTTPException(status_code=403, detail="Driver access required")
    return actor


def get_gateway() -> RazorpayClient:
    client = RazorpayClient.from_config()
    if client is None:
        raise HTTPException(status_code=503, detail="Payment gateway not configured")
    return client


@app.get("/")
def read_root():
    return {"message": "Sawari backend is running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
    }

    try:
        if db is not None:
            response["database"] = "✅ Available"
            response["database_url"] = "✅ Set" if config.DATABASE_URL else "❌ Not Set"
            response["database_name"] = db.name if hasattr(db, "name") else "✅ Connected"
            response["connection_status"] = "Connected"
            try:
                collections = db.list_collection_names()
                response["collections"] = collections[:10]
                response["database"] = "✅ Connected & Working"
            except Exception as e:
                response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
        else:
            response["database"] = "⚠️  Available but not initialized"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"

    return response


# Riders
@app.post("/riders", response_model=IdKeyResponse)
def create_rider(rider: Rider):
    get_db()
    api_key = rider.api_key or secrets.token_hex(16)
    data = rider.model_dump()
    data["api_key"] = api_key
    data["phone_verified"] = False
    new_id = create_document("rider", data)
    return {"id": new_id, "api_key": api_key}


class OtpVerify(BaseModel):
    code: str = Field(..., min_length=4, max_length=8)


@app.post("/riders/{rider_id}/otp")
def request_rider_otp(rider_id: str, request: Request, x_api_key: Optional[str] = Header(None)):
    rider = get_doc_by_id("rider", rider_id)
    if rider.get("api_key") != x_api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")
    store: OTPStore = request.app.state.otp_store
    store.issue(rider["phone"])
    # delivery (SMS) happens outside this service
    return {"sent": True, "expires_in": config.OTP_TTL_SECONDS}


@app.post("/riders/{rider_id}/otp/verify")
def verify_rider_otp(rider_id: str, payload: OtpVerify, request: Request, x_api_key: Optional[str] = Header(None)):
    rider = get_doc_by_id("rider", rider_id)
    if rider.get("api_key") != x_api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")
    store: OTPStore = request.app.state.otp_store
    if not store.verify(rider["phone"], payload.code):
        raise HTTPException(status_code=400, detail="Invalid or expired code")
    get_db()["rider"].update_one({"_id": rider["_id"]}, {"$set": {"phone_verified": True}})
    return {"verified": True}


# Drivers
@app.post("/drivers", response_model=IdKeyResponse)
def create_driver(driver: Driver):
    get_db()
    api_key = driver.api_key or secrets.token_hex(16)
    data = driver.model_dump()
    data["api_key"] = api_key
    new_id = create_document("driver", data)
    return {"id": new_id, "api_key": api_key}


class DriverStatusUpdate(BaseModel):
    is_online: Optional[bool] = None
    status: Optional[Literal["active", "inactive"]] = None


@app.patch("/drivers/{driver_id}/status")
def update_driver_status(driver_id: str, payload: DriverStatusUpdate, x_api_key: Optional[str] = Header(None)):
    doc = get_doc_by_id("driver", driver_id)
    if doc.get("api_key") != x_api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")
    update = {k: v for k, v in payload.model_dump().items() if v is not None}
    if not update:
        return {"updated": False}
    res = get_db()["driver"].update_one({"_id": doc["_id"]}, {"$set": update})
    return {"updated": res.modified_count > 0}


# Vehicles
class VehicleIn(BaseModel):
    type: Literal["auto", "car", "bus"]
    brand: str
    model: str
    registration_number: str
    seating_capacity: int = Field(..., ge=1, le=100)
    pricing_reference: PricingReference
    current_location: Optional[GeoPoint] = None

    @model_validator(mode="after")
    def category_matches_type(self):
        if self.pricing_reference.category != self.type:
            raise ValueError("pricing_reference.category must match the vehicle type")
        return self


@app.post("/vehicles", response_model=IdResponse)
def register_vehicle(payload: VehicleIn, actor: Actor = Depends(require_driver)):
    database = get_db()
    registration = payload.registration_number.strip().upper()
    if database["vehicle"].find_one({"registration_number": registration}):
        raise HTTPException(status_code=400, detail="Vehicle already registered")
    snapshot = pricing.build_snapshot(database, payload.pricing_reference)
    vehicle = Vehicle(
        driver_id=actor.id,
        type=payload.type,
        brand=payload.brand,
        model=payload.model,
        registration_number=registration,
        seating_capacity=payload.seating_capacity,
        pricing_reference=payload.pricing_reference,
        pricing=snapshot,
        current_location=payload.current_location,
    )
    return {"id": create_document("vehicle", vehicle)}


@app.patch("/vehicles/{vehicle_id}/location")
def update_vehicle_location(vehicle_id: str, loc: GeoPoint, actor: Actor = Depends(require_driver)):
    vehicle = get_doc_by_id("vehicle", vehicle_id)
    if vehicle.get("driver_id") != actor.id:
        raise HTTPException(status_code=403, detail="Not your vehicle")
    res = get_db()["vehicle"].update_one({"_id": vehicle["_id"]}, {"$set": {"current_location": loc.model_dump()}})
    return {"updated": res.modified_count > 0}


class VehicleApproval(BaseModel):
    approved: bool
    notes: Optional[str] = None
    reason: Optional[str] = None


@app.patch("/admin/vehicles/{vehicle_id}/approval")
def set_vehicle_approval(vehicle_id: str, payload: VehicleApproval, actor: Actor = Depends(require_admin)):
    vehicle = get_doc_by_id("vehicle", vehicle_id)
    update = {
        "approval_status": "approved" if payload.approved else "rejected",
        "is_approved": payload.approved,
        "admin_notes": payload.notes or "",
        "rejection_reason": None if payload.approved else payload.reason,
        "approved_by": actor.id,
    }
    get_db()["vehicle"].update_one({"_id": vehicle["_id"]}, {"$set": update})
    return {"id": vehicle_id, "approval_status": update["approval_status"]}


# Pricing
class PricingUpdate(BaseModel):
    auto_price: Optional[float] = Field(None, ge=0)
    distance_pricing: Optional[Dict[str, float]] = None
    notes: Optional[str] = None
    is_active: Optional[bool] = None
    is_default: Optional[bool] = None

    @field_validator("distance_pricing")
    @classmethod
    def tier_keys(cls, v):
        return check_distance_tiers(v)


@app.post("/admin/vehicle-pricing", response_model=IdResponse)
def create_vehicle_pricing(payload: VehiclePricing, actor: Actor = Depends(require_admin)):
    try:
        return {"id": pricing.create_pricing(get_db(), payload, actor.id)}
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))


@app.post("/admin/vehicle-pricing/seed")
def seed_vehicle_pricing(actor: Actor = Depends(require_admin)):
    return {"created": pricing.seed_default_pricing(get_db(), actor.id)}


@app.put("/admin/vehicle-pricing/{pricing_id}")
def update_vehicle_pricing(pricing_id: str, payload: PricingUpdate, actor: Actor = Depends(require_admin)):
    doc = get_doc_by_id(pricing.COLLECTION, pricing_id)
    changes = {k: v for k, v in payload.model_dump().items() if v is not None}
    return {"updated": pricing.update_pricing(get_db(), doc["_id"], changes, actor.id)}


@app.delete("/admin/vehicle-pricing/{pricing_id}")
def delete_vehicle_pricing(pricing_id: str, actor: Actor = Depends(require_admin)):
    doc = get_doc_by_id(pricing.COLLECTION, pricing_id)
    return {"deleted": pricing.deactivate_pricing(get_db(), doc["_id"], actor.id)}


@app.get("/vehicle-pricing")
def list_vehicle_pricing(category: Optional[str] = None, trip_type: Optional[str] = None):
    return [to_str_id(d) for d in pricing.list_pricing(get_db(), category, trip_type)]


@app.get("/vehicle-pricing/calculate")
def pricing_for_calculation(
    category: Literal["auto", "car", "bus"],
    vehicle_type: str,
    vehicle_model: Optional[str] = None,
    trip_type: TripType = "one-way",
):
    return to_str_id(pricing.resolve_pricing(get_db(), category, vehicle_type, vehicle_model, trip_type))


# Search and quotes
@app.get("/vehicles/search")
def search_vehicles(
    date: str,
    return_date: Optional[str] = None,
    vehicle_type: Optional[Literal["auto", "car", "bus"]] = None,
    passengers: int = Query(1, ge=1),
    pickup_lat: Optional[float] = None,
    pickup_lng: Optional[float] = None,
    destination_lat: Optional[float] = None,
    destination_lng: Optional[float] = None,
    radius_km: Optional[float] = Query(None, gt=0),
    include_unavailable: bool = False,
):
    try:
        date = bookings.normalize_date(date)
        return_date = bookings.normalize_date(return_date) if return_date else None
    except ValueError:
        raise HTTPException(status_code=400, detail="Dates must be YYYY-MM-DD")
    if return_date and return_date < date:
        raise HTTPException(status_code=400, detail="Return date cannot be before the pickup date")

    pickup = destination = None
    if pickup_lat is not None and pickup_lng is not None:
        pickup = {"latitude": pickup_lat, "longitude": pickup_lng}
    if destination_lat is not None and destination_lng is not None:
        destination = {"latitude": destination_lat, "longitude": destination_lng}

    results = availability.search_available_vehicles(
        get_db(),
        date,
        return_date=return_date,
        vehicle_type=vehicle_type,
        passengers=passengers,
        pickup=pickup,
        destination=destination,
        radius_km=radius_km,
        include_unavailable=include_unavailable,
    )
    return {"count": len(results), "results": results}


class FareQuery(BaseModel):
    vehicle_id: str
    pickup: TripLocation
    destination: TripLocation
    trip_type: TripType = "one-way"
    payment_method: Literal["cash", "card", "upi", "wallet", "razorpay"] = "cash"


@app.post("/fare/estimate")
def estimate_fare(payload: FareQuery):
    get_doc_by_id("vehicle", payload.vehicle_id)
    return bookings.quote(
        get_db(),
        payload.vehicle_id,
        payload.pickup.model_dump(),
        payload.destination.model_dump(),
        payload.trip_type,
        payload.payment_method,
    )


# Bookings
class CashPayment(BaseModel):
    method: Literal["cash"]


class OnlinePayment(BaseModel):
    method: Literal["card", "upi", "wallet", "razorpay"]
    gateway_order_id: Optional[str] = None


PaymentChoice = Annotated[Union[CashPayment, OnlinePayment], Field(discriminator="method")]


class BookingCreate(BaseModel):
    vehicle_id: str
    pickup: TripLocation
    destination: TripLocation
    date: str
    time: str
    return_date: Optional[str] = None
    passengers: int = Field(1, ge=1)
    trip_type: TripType = "one-way"
    payment: PaymentChoice
    special_requests: Optional[str] = None

    @field_validator("date", "return_date")
    @classmethod
    def iso_day(cls, v):
        if v is None:
            return v
        return bookings.normalize_date(v)

    @field_validator("time")
    @classmethod
    def clock_time(cls, v):
        return bookings.normalize_time(v)

    @model_validator(mode="after")
    def return_after_pickup(self):
        if self.return_date and self.return_date < self.date:
            raise ValueError("return_date cannot be before date")
        return self


class BookingCreated(BaseModel):
    booking_id: str
    booking_number: str
    total_amount: int
    status: str
    is_partial_payment: bool
    online_amount: int
    cash_amount: int


@app.post("/bookings", response_model=BookingCreated, status_code=201)
def create_booking(payload: BookingCreate, actor: Actor = Depends(get_actor)):
    if actor.role != "rider":
        raise HTTPException(status_code=403, detail="Only riders can create bookings")
    if not ObjectId.is_valid(payload.vehicle_id):
        raise HTTPException(status_code=400, detail="Invalid vehicle id")

    booking = bookings.create_booking(
        get_db(),
        rider_id=actor.id,
        vehicle_id=payload.vehicle_id,
        pickup=payload.pickup.model_dump(),
        destination=payload.destination.model_dump(),
        date=payload.date,
        time=payload.time,
        payment_method=payload.payment.method,
        passengers=payload.passengers,
        trip_type=payload.trip_type,
        return_date=payload.return_date,
        special_requests=payload.special_requests,
        gateway_order_id=getattr(payload.payment, "gateway_order_id", None),
    )
    details = booking["payment"].get("partial_payment_details") or {}
    total = booking["pricing"]["total_amount"]
    return {
        "booking_id": str(booking["_id"]),
        "booking_number": booking["booking_number"],
        "total_amount": total,
        "status": booking["status"],
        "is_partial_payment": booking["payment"]["is_partial_payment"],
        "online_amount": details.get("online_amount", total),
        "cash_amount": details.get("cash_amount", 0),
    }


@app.get("/bookings/{booking_id}")
def get_booking(booking_id: str, actor: Actor = Depends(get_actor)):
    booking = lifecycle.get_booking(get_db(), booking_id)
    lifecycle.check_party(booking, actor)
    return to_str_id(booking)


class StatusUpdate(BaseModel):
    status: str
    reason: Optional[str] = None
    notes: Optional[str] = None
    actual_distance: Optional[float] = Field(None, ge=0)
    actual_duration: Optional[float] = Field(None, ge=0)
    actual_fare: Optional[int] = Field(None, ge=0)
    force: bool = Field(False, description="Admin override of the normal lifecycle")


@app.patch("/bookings/{booking_id}/status")
def update_booking_status(booking_id: str, payload: StatusUpdate, actor: Actor = Depends(get_actor)):
    actuals = TripActuals(
        distance=payload.actual_distance,
        duration=payload.actual_duration,
        fare=payload.actual_fare,
    )
    if payload.force:
        updated = lifecycle.admin_override(get_db(), booking_id, payload.status, actor,
                                           reason=payload.reason, notes=payload.notes, actuals=actuals)
    else:
        updated = lifecycle.transition(get_db(), booking_id, payload.status, actor,
                                       reason=payload.reason, notes=payload.notes, actuals=actuals)
    return to_str_id(updated)


class CancelRequest(BaseModel):
    reason: Optional[str] = None


@app.put("/bookings/{booking_id}/cancel")
def cancel_booking(booking_id: str, payload: CancelRequest, actor: Actor = Depends(get_actor)):
    updated = lifecycle.transition(get_db(), booking_id, "cancelled", actor, reason=payload.reason)
    return to_str_id(updated)


@app.post("/bookings/{booking_id}/collect-cash-payment")
def collect_cash_payment(booking_id: str, actor: Actor = Depends(get_actor)):
    return to_str_id(payments.collect_cash(get_db(), booking_id, actor))


@app.post("/bookings/{booking_id}/payment/order")
def create_payment_order(booking_id: str, actor: Actor = Depends(get_actor),
                         gateway: RazorpayClient = Depends(get_gateway)):
    return payments.create_gateway_order(get_db(), booking_id, actor, gateway)


class PaymentVerification(BaseModel):
    order_id: str
    payment_id: str
    signature: str


@app.post("/bookings/{booking_id}/payment/verify")
def verify_payment(booking_id: str, payload: PaymentVerification, actor: Actor = Depends(get_actor),
                   gateway: RazorpayClient = Depends(get_gateway)):
    updated = payments.verify_gateway_payment(get_db(), booking_id, actor, gateway,
                                              payload.order_id, payload.payment_id, payload.signature)
    return to_str_id(updated)


class PaymentConfirmation(BaseModel):
    amount: int = Field(..., gt=0)
    gateway_payment_id: Optional[str] = None


@app.post("/admin/bookings/{booking_id}/payment/confirm")
def confirm_payment(booking_id: str, payload: PaymentConfirmation, actor: Actor = Depends(require_admin)):
    updated = payments.confirm_online_payment(get_db(), booking_id, payload.amount, payload.gateway_payment_id)
    return to_str_id(updated)


@app.post("/admin/bookings/{booking_id}/refund")
def process_refund(booking_id: str, actor: Actor = Depends(require_admin)):
    updated = payments.process_refund(get_db(), booking_id, actor, gateway=RazorpayClient.from_config())
    return to_str_id(updated)


class FareCorrection(BaseModel):
    total_amount: int = Field(..., gt=0)
    reason: Optional[str] = None


@app.patch("/admin/bookings/{booking_id}/pricing")
def correct_booking_fare(booking_id: str, payload: FareCorrection, actor: Actor = Depends(require_admin)):
    updated = bookings.correct_total(get_db(), booking_id, payload.total_amount, actor, payload.reason)
    return to_str_id(updated)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", config.PORT))
    uvicorn.run(app, host="0.0.0.0", port=port)
