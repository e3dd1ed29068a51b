import mongomock
import pytest
from fastapi.testclient import TestClient

import bookings
import config
import database
import main
import pricing

ADMIN_KEY = "admin-secret"

PUNE = {"latitude": 18.5204, "longitude": 73.8567, "address": "Shivajinagar, Pune"}
LONAVALA = {"latitude": 18.7546, "longitude": 73.4062, "address": "Lonavala"}


@pytest.fixture
def db():
    return mongomock.MongoClient()["sawari_test"]


@pytest.fixture
def seeded_db(db):
    pricing.seed_default_pricing(db)
    return db


@pytest.fixture
def driver(db):
    doc = {
        "name": "Ramesh",
        "phone": "9800000001",
        "status": "active",
        "is_online": True,
        "rating": 4.8,
        "api_key": "driver-key",
    }
    doc["_id"] = db["driver"].insert_one(doc).inserted_id
    return doc


@pytest.fixture
def rider(db):
    doc = {"name": "Asha", "phone": "9800000002", "phone_verified": False, "api_key": "rider-key"}
    doc["_id"] = db["rider"].insert_one(doc).inserted_id
    return doc


@pytest.fixture
def make_vehicle(seeded_db, driver):
    def _make(category="car", vehicle_type="Sedan", seats=4, location=None, **extra):
        doc = {
            "driver_id": str(driver["_id"]),
            "type": category,
            "brand": "Maruti",
            "model": "Dzire",
            "registration_number": f"MH12AB{seeded_db['vehicle'].count_documents({}) + 1000}",
            "seating_capacity": seats,
            "pricing_reference": {"category": category, "vehicle_type": vehicle_type, "vehicle_model": "Standard"},
            "current_location": location or {"lat": 18.52, "lng": 73.85},
            "is_active": True,
            "approval_status": "approved",
            "is_approved": True,
            "is_available": True,
            "booked": False,
            "current_booking": None,
            "reservations": [],
        }
        doc.update(extra)
        doc["_id"] = seeded_db["vehicle"].insert_one(doc).inserted_id
        return doc
    return _make


@pytest.fixture
def vehicle(make_vehicle):
    return make_vehicle()


@pytest.fixture
def book(seeded_db, rider):
    def _book(vehicle, date="2030-05-01", return_date=None, payment_method="cash", time="10:00", **kwargs):
        return bookings.create_booking(
            seeded_db,
            rider_id=str(rider["_id"]),
            vehicle_id=str(vehicle["_id"]),
            pickup=PUNE,
            destination=LONAVALA,
            date=date,
            time=time,
            payment_method=payment_method,
            return_date=return_date,
            **kwargs,
        )
    return _book


@pytest.fixture
def client(db, monkeypatch):
    monkeypatch.setattr(main, "db", db)
    monkeypatch.setattr(database, "db", db)
    monkeypatch.setattr(config, "ADMIN_API_KEY", ADMIN_KEY)
    monkeypatch.setattr(config, "RAZORPAY_KEY_ID", None)
    monkeypatch.setattr(config, "RAZORPAY_KEY_SECRET", None)
    with TestClient(main.app) as c:
        yield c


def admin_headers():
    return {"X-Actor-Role": "admin", "X-Admin-Key": ADMIN_KEY}


def party_headers(role, doc):
    return {"X-Actor-Role": role, "X-Actor-Id": str(doc["_id"]), "X-Api-Key": doc["api_key"]}
