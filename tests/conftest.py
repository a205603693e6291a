from __future__ import annotations

import hashlib
import io
from datetime import datetime, timedelta, timezone

import mongomock
import pytest
from PIL import Image

from database import create_document
from errors import ExternalServiceFailure
from inventory import InventoryLedger
from lifecycle import Milestone, milestone_index
from schemas import Actor, GeoPoint, InventoryLocation, PickupRequest
from workflow import RequestWorkflow


class RecordingStorage:
    def __init__(self, fail_on: set[str] | None = None):
        self.fail_on = fail_on or set()
        self.stored: dict[str, bytes] = {}
        self.deleted: list[str] = []

    def upload(self, filename: str, content: bytes) -> dict:
        if filename in self.fail_on:
            raise ExternalServiceFailure(f"Upload of {filename} failed")
        key = f"key-{len(self.stored) + len(self.deleted)}-{filename}"
        self.stored[key] = content
        return {"url": f"https://cdn.test/{key}", "storage_key": key}

    def delete(self, storage_key: str) -> None:
        self.stored.pop(storage_key, None)
        self.deleted.append(storage_key)


class FakeGeocoder:
    def __init__(self):
        self.calls: list[tuple[float, float]] = []

    def address_for(self, lng: float, lat: float) -> str:
        self.calls.append((lng, lat))
        return "12 Test Street, Pune"


class FakeClassifier:
    def classify(self, image_bytes: bytes):
        return "laptop", 0.9

    def perceptual_hash(self, image_bytes: bytes) -> str:
        return hashlib.md5(image_bytes).hexdigest()[:16]


class RecordingNotifier:
    def __init__(self):
        self.delivered = []

    def deliver(self, notice) -> bool:
        self.delivered.append(notice)
        return True


def png_bytes(color=(0, 128, 0), size=(16, 16)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def database():
    return mongomock.MongoClient().db


@pytest.fixture
def storage() -> RecordingStorage:
    return RecordingStorage()


@pytest.fixture
def geocoder() -> FakeGeocoder:
    return FakeGeocoder()


@pytest.fixture
def classifier() -> FakeClassifier:
    return FakeClassifier()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def workflow(database, storage, geocoder, classifier) -> RequestWorkflow:
    return RequestWorkflow(database, storage, geocoder, classifier)


def _user_doc(name: str, email: str, **extra) -> dict:
    return {
        "name": name,
        "email": email,
        "password_hash": "unused",
        "phone": "9876543210",
        "points": 0,
        "monthly_points": 0,
        "community_points": 0,
        "completed_requests": 0,
        "redeemed_points": 0,
        **extra,
    }


@pytest.fixture
def make_user(database):
    def factory(name: str = "Asha", email: str | None = None, **extra) -> Actor:
        email = email or f"{name.lower()}@example.com"
        uid = create_document("user", _user_doc(name, email, **extra), database=database)
        return Actor(id=uid, role="user")
    return factory


@pytest.fixture
def user(make_user) -> Actor:
    return make_user("Asha")


@pytest.fixture
def make_agency(database):
    def factory(name: str = "GreenCycle", certified: bool = True, handles=None) -> Actor:
        aid = create_document("agency", {
            "name": name,
            "email": f"{name.lower()}@agency.example.org",
            "password_hash": "unused",
            "agency_type": ["Recycler"],
            "phone": "9123456780",
            "location": {"lat": 18.52, "lng": 73.85},
            "certification_status": "Certified" if certified else "Uncertified",
            "waste_types_handled": handles or ["mobile", "phones", "computers", "laptop", "batteries"],
            "is_inventory_setup": False,
        }, database=database)
        return Actor(id=aid, role="agency")
    return factory


@pytest.fixture
def agency(make_agency) -> Actor:
    return make_agency()


@pytest.fixture
def make_inventory(database):
    def factory(agency_actor: Actor, total: float = 100) -> InventoryLedger:
        ledger = InventoryLedger(database)
        location = InventoryLocation(address="Plot 4, MIDC", city="Pune", state="MH", postal_code="411001")
        ledger.setup(agency_actor.id, total, location)
        return ledger
    return factory


@pytest.fixture
def inventory(make_inventory, agency) -> InventoryLedger:
    return make_inventory(agency)


@pytest.fixture
def make_volunteer(database):
    def factory(agency_actor: Actor, name: str = "Ravi", status: str = "Active") -> Actor:
        vid = create_document("volunteer", {
            "name": name,
            "email": f"{name.lower()}@volunteer.example.org",
            "password_hash": "unused",
            "phone": "9000000001",
            "address": "Kothrud",
            "agency_id": agency_actor.id,
            "status": status,
        }, database=database)
        return Actor(id=vid, role="volunteer")
    return factory


@pytest.fixture
def volunteer(make_volunteer, agency) -> Actor:
    return make_volunteer(agency)


@pytest.fixture
def pickup_payload():
    def factory(agency_actor: Actor, **overrides) -> PickupRequest:
        data = dict(
            agency_id=agency_actor.id,
            waste_types=["laptop"],
            quantities=[2],
            weight=5,
            pickup_address="221B Baker Street",
            pickup_location=GeoPoint(lat=18.5, lng=73.8),
            pickup_date=datetime.now(timezone.utc) + timedelta(days=2),
            contact_number="9876543210",
        )
        data.update(overrides)
        return PickupRequest(**data)
    return factory


@pytest.fixture
def submit(workflow, pickup_payload):
    """File a request and return its id."""
    def factory(user_actor: Actor, agency_actor: Actor, **overrides) -> str:
        payload = pickup_payload(agency_actor, **overrides)
        doc = workflow.create_request(user_actor.id, payload, [("front.png", png_bytes())])
        return str(doc["_id"])
    return factory


@pytest.fixture
def walk(workflow):
    """Advance a request through the happy path up to and including ``target``."""
    def factory(request_id: str, agency_actor: Actor, volunteer_actor: Actor, target: Milestone) -> dict:
        doc = workflow.store.load(request_id)
        code = doc.get("pickup_otp")
        for milestone in list(Milestone)[milestone_index(doc["current_milestone"]) + 1:]:
            if milestone is Milestone.VOLUNTEER_ASSIGNED:
                doc, _ = workflow.assignment.assign_volunteer(request_id, volunteer_actor.id, agency_actor)
            else:
                actor = volunteer_actor if milestone in (
                    Milestone.PICKUP_SCHEDULED, Milestone.PICKUP_STARTED, Milestone.PICKUP_COMPLETED
                ) else agency_actor
                otp = code if milestone is Milestone.PICKUP_COMPLETED else None
                doc = workflow.advance(request_id, milestone.value, actor, otp=otp).request
                if milestone is Milestone.PICKUP_STARTED:
                    code = doc["pickup_otp"]
            if milestone is target:
                break
        return doc
    return factory
