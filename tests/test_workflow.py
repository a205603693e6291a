from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from bson import ObjectId

from errors import (
    CapacityExceeded,
    ConcurrentModification,
    ExternalServiceFailure,
    InvalidMilestone,
    InvalidTransition,
    NotFound,
    Unauthorized,
    ValidationError,
)
from lifecycle import Milestone, derive_status
from points import WASTE_TYPE_POINTS
from schemas import Actor, GeoPoint
from workflow import RequestWorkflow, present

from tests.conftest import RecordingStorage, png_bytes


def _user_points(database, actor):
    return database["user"].find_one({"_id": ObjectId(actor.id)})


def _other_code(code: str) -> str:
    return "111111" if code != "111111" else "222222"


# ------------------ Creation ------------------
def test_create_request_stores_images_and_starts_pending(workflow, storage, user, agency, pickup_payload):
    doc = workflow.create_request(user.id, pickup_payload(agency), [("a.png", png_bytes()), ("b.png", png_bytes((9, 9, 9)))])
    assert doc["status"] == "Pending"
    assert doc["user_id"] == user.id
    assert doc["agency_id"] == agency.id
    assert len(doc["images"]) == 2
    assert all(img["storage_key"] in storage.stored for img in doc["images"])
    assert doc["images"][0]["category"] == "laptop"


def test_create_request_geocodes_missing_address(workflow, geocoder, user, agency, pickup_payload):
    payload = pickup_payload(agency, pickup_address=None)
    doc = workflow.create_request(user.id, payload, [("a.png", png_bytes())])
    assert doc["pickup_address"] == "12 Test Street, Pune"
    assert geocoder.calls == [(73.8, 18.5)]


def test_create_request_flags_duplicate_images(workflow, user, agency, submit):
    first = submit(user, agency)
    second = workflow.store.load(submit(user, agency))
    assert second["images"][0]["duplicate_of"] == first


def test_create_request_requires_images(workflow, user, agency, pickup_payload):
    with pytest.raises(ValidationError):
        workflow.create_request(user.id, pickup_payload(agency), [])


def test_create_request_requires_future_date(workflow, user, agency, pickup_payload):
    past = datetime.now(timezone.utc) - timedelta(days=1)
    with pytest.raises(ValidationError):
        workflow.create_request(user.id, pickup_payload(agency, pickup_date=past), [("a.png", png_bytes())])


def test_create_request_rejects_mismatched_quantities(workflow, user, agency, pickup_payload):
    payload = pickup_payload(agency, waste_types=["laptop", "mobile"], quantities=[1])
    with pytest.raises(ValidationError):
        workflow.create_request(user.id, payload, [("a.png", png_bytes())])


def test_create_request_needs_certified_agency(workflow, user, make_agency, pickup_payload):
    uncertified = make_agency("Dusty", certified=False)
    with pytest.raises(ValidationError):
        workflow.create_request(user.id, pickup_payload(uncertified), [("a.png", png_bytes())])


def test_create_request_unknown_user(workflow, agency, pickup_payload):
    with pytest.raises(NotFound):
        workflow.create_request("64b000000000000000000000", pickup_payload(agency), [("a.png", png_bytes())])


def test_failed_upload_leaves_nothing_behind(database, geocoder, classifier, user, agency, pickup_payload):
    storage = RecordingStorage(fail_on={"b.png"})
    wf = RequestWorkflow(database, storage, geocoder, classifier)
    with pytest.raises(ExternalServiceFailure):
        wf.create_request(user.id, pickup_payload(agency), [("a.png", png_bytes()), ("b.png", png_bytes())])
    assert storage.stored == {}
    assert len(storage.deleted) == 1
    assert database["request"].count_documents({}) == 0


# ------------------ Happy path ------------------
def test_laptop_request_runs_to_completion(workflow, database, user, agency, volunteer, inventory, submit, walk):
    rid = submit(user, agency, waste_types=["laptop"], quantities=[2], weight=5)

    segregated = walk(rid, agency, volunteer, Milestone.WASTE_SEGREGATED)
    assert segregated["status"] == "Processing"
    held = inventory.get(agency.id)
    assert held["current_capacity"] == 5
    assert held["breakdown"]["laptop"] == 2

    done = walk(rid, agency, volunteer, Milestone.PROCESSING_COMPLETED)
    assert done["status"] == "Completed"
    assert done["points_awarded"] == 2 * WASTE_TYPE_POINTS["laptop"]

    held = inventory.get(agency.id)
    assert held["current_capacity"] == 0
    assert held["breakdown"]["laptop"] == 0

    account = _user_points(database, user)
    assert account["points"] == 200
    assert account["monthly_points"] == 200
    assert account["completed_requests"] == 1


def test_status_always_matches_current_milestone(workflow, user, agency, volunteer, inventory, submit, walk):
    rid = submit(user, agency)
    for milestone in list(Milestone)[1:]:
        doc = walk(rid, agency, volunteer, milestone)
        assert doc["current_milestone"] == milestone.value
        assert doc["status"] == derive_status(milestone).value
        stored = workflow.store.load(rid)
        assert stored["status"] == doc["status"]
        assert len(stored["history"]) == list(Milestone).index(milestone) + 1


def test_completed_request_is_frozen(workflow, user, agency, volunteer, inventory, submit, walk):
    rid = submit(user, agency)
    walk(rid, agency, volunteer, Milestone.PROCESSING_COMPLETED)
    with pytest.raises(InvalidTransition):
        workflow.advance(rid, Milestone.PROCESSING_COMPLETED.value, agency)
    with pytest.raises(InvalidTransition):
        workflow.reject(rid, agency)


def test_accept_produces_user_notice(workflow, user, agency, submit):
    rid = submit(user, agency)
    result = workflow.accept(rid, agency)
    assert result.request["status"] == "Accepted"
    assert [n.channel for n in result.notices] == ["sms"]
    assert result.notices[0].recipient == "9876543210"


def test_milestone_location_is_reverse_geocoded(workflow, geocoder, user, agency, volunteer, submit, walk):
    rid = submit(user, agency)
    walk(rid, agency, volunteer, Milestone.VOLUNTEER_ASSIGNED)
    result = workflow.advance(rid, "pickupScheduled", volunteer, location=GeoPoint(lat=18.6, lng=73.9))
    view = present(result.request)["milestones"]["pickupScheduled"]
    assert view["location"] == {"lat": 18.6, "lng": 73.9}
    assert view["address"] == "12 Test Street, Pune"


# ------------------ Authorization and ordering ------------------
def test_unknown_milestone_name(workflow, user, agency, submit):
    rid = submit(user, agency)
    with pytest.raises(InvalidMilestone):
        workflow.advance(rid, "teleported", agency)


def test_out_of_order_milestone(workflow, user, agency, submit):
    rid = submit(user, agency)
    with pytest.raises(InvalidTransition):
        workflow.advance(rid, "wasteSegregated", agency)
    assert workflow.store.load(rid)["current_milestone"] == "requestReceived"


def test_role_cannot_advance_other_roles_milestone(workflow, user, agency, volunteer, submit, walk):
    rid = submit(user, agency)
    walk(rid, agency, volunteer, Milestone.VOLUNTEER_ASSIGNED)
    with pytest.raises(InvalidTransition):
        workflow.advance(rid, "pickupScheduled", agency)
    with pytest.raises(Unauthorized):
        workflow.advance(rid, "pickupScheduled", user)


def test_volunteer_assignment_not_available_as_plain_milestone(workflow, user, agency, submit):
    rid = submit(user, agency)
    workflow.accept(rid, agency)
    with pytest.raises(InvalidTransition):
        workflow.advance(rid, "volunteerAssigned", agency)


def test_other_agency_cannot_touch_request(workflow, user, agency, make_agency, submit):
    rid = submit(user, agency)
    rival = make_agency("Rival")
    with pytest.raises(Unauthorized):
        workflow.accept(rid, rival)
    with pytest.raises(Unauthorized):
        workflow.reject(rid, rival)


def test_wrong_volunteer_is_refused(workflow, user, agency, volunteer, make_volunteer, submit, walk):
    rid = submit(user, agency)
    walk(rid, agency, volunteer, Milestone.VOLUNTEER_ASSIGNED)
    stranger = make_volunteer(agency, name="Meera")
    with pytest.raises(Unauthorized):
        workflow.advance(rid, "pickupScheduled", stranger)
    assert workflow.store.load(rid)["current_milestone"] == "volunteerAssigned"


def test_visibility_of_request(workflow, user, agency, volunteer, make_user, submit):
    rid = submit(user, agency)
    assert workflow.get(rid, user)["_id"]
    assert workflow.get(rid, agency)["_id"]
    assert workflow.get(rid, Actor(id="x", role="admin"))["_id"]
    with pytest.raises(Unauthorized):
        workflow.get(rid, make_user("Bina"))
    with pytest.raises(Unauthorized):
        workflow.get(rid, volunteer)


# ------------------ Pickup verification code ------------------
def test_pickup_code_mismatch_leaves_request_untouched(workflow, user, agency, volunteer, submit, walk):
    rid = submit(user, agency)
    started = walk(rid, agency, volunteer, Milestone.PICKUP_STARTED)
    code = started["pickup_otp"]
    assert len(code) == 6 and code.isdigit()

    with pytest.raises(Unauthorized):
        workflow.advance(rid, "pickupCompleted", volunteer, otp=_other_code(code))
    with pytest.raises(Unauthorized):
        workflow.advance(rid, "pickupCompleted", volunteer)

    stored = workflow.store.load(rid)
    assert stored["current_milestone"] == "pickupStarted"
    assert stored["version"] == started["version"]
    assert stored["pickup_otp"] == code

    done = workflow.advance(rid, "pickupCompleted", volunteer, otp=code).request
    assert done["pickup_otp"] is None


def test_non_ascii_pickup_code_is_a_mismatch(workflow, user, agency, volunteer, submit, walk):
    rid = submit(user, agency)
    started = walk(rid, agency, volunteer, Milestone.PICKUP_STARTED)
    with pytest.raises(Unauthorized):
        workflow.advance(rid, "pickupCompleted", volunteer, otp="12345é")
    stored = workflow.store.load(rid)
    assert stored["current_milestone"] == "pickupStarted"
    assert stored["version"] == started["version"]


def test_wrong_pickup_code_skips_geocoding(workflow, geocoder, user, agency, volunteer, submit, walk):
    rid = submit(user, agency)
    code = walk(rid, agency, volunteer, Milestone.PICKUP_STARTED)["pickup_otp"]
    calls = len(geocoder.calls)
    with pytest.raises(Unauthorized):
        workflow.advance(rid, "pickupCompleted", volunteer, otp=_other_code(code),
                         location=GeoPoint(lat=18.6, lng=73.9))
    assert len(geocoder.calls) == calls

    workflow.advance(rid, "pickupCompleted", volunteer, otp=code, location=GeoPoint(lat=18.6, lng=73.9))
    assert len(geocoder.calls) == calls + 1


def test_pickup_code_is_sent_to_user_and_hidden_from_others(workflow, user, agency, volunteer, submit, walk):
    rid = submit(user, agency)
    walk(rid, agency, volunteer, Milestone.PICKUP_SCHEDULED)
    result = workflow.advance(rid, "pickupStarted", volunteer)
    code = result.request["pickup_otp"]
    assert code in result.notices[0].message
    assert "pickup_otp" not in present(result.request, volunteer)
    assert "pickup_otp" not in present(result.request, agency)
    assert present(result.request, user)["pickup_otp"] == code


# ------------------ Inventory interplay ------------------
def test_capacity_exceeded_leaves_everything_unchanged(workflow, user, agency, volunteer, make_inventory, submit, walk):
    ledger = make_inventory(agency, total=10)
    rid = submit(user, agency, weight=15)
    before = walk(rid, agency, volunteer, Milestone.PICKUP_COMPLETED)

    with pytest.raises(CapacityExceeded):
        workflow.advance(rid, "wasteSegregated", agency)

    stored = workflow.store.load(rid)
    assert stored["current_milestone"] == "pickupCompleted"
    assert stored["version"] == before["version"]
    assert ledger.get(agency.id)["current_capacity"] == 0


def test_capacity_alert_when_nearly_full(workflow, user, agency, volunteer, make_inventory, submit, walk):
    make_inventory(agency, total=10)
    rid = submit(user, agency, weight=9)
    walk(rid, agency, volunteer, Milestone.PICKUP_COMPLETED)
    result = workflow.advance(rid, "wasteSegregated", agency)
    assert [n.channel for n in result.notices] == ["email"]
    assert "90%" in result.notices[0].subject


def test_segregation_without_inventory_fails(workflow, user, agency, volunteer, submit, walk):
    rid = submit(user, agency)
    walk(rid, agency, volunteer, Milestone.PICKUP_COMPLETED)
    with pytest.raises(NotFound):
        workflow.advance(rid, "wasteSegregated", agency)
    assert workflow.store.load(rid)["current_milestone"] == "pickupCompleted"


def test_failed_points_credit_rolls_back_completion(workflow, database, user, agency, volunteer, inventory,
                                                    submit, walk, monkeypatch):
    rid = submit(user, agency, weight=5)
    walk(rid, agency, volunteer, Milestone.PROCESSING_STARTED)

    def broken(request):
        raise RuntimeError("ledger offline")

    monkeypatch.setattr(workflow.points, "credit_completion", broken)
    with pytest.raises(RuntimeError):
        workflow.advance(rid, "processingCompleted", agency)

    stored = workflow.store.load(rid)
    assert stored["current_milestone"] == "processingStarted"
    assert stored["status"] == "Processing"
    assert inventory.get(agency.id)["current_capacity"] == 5
    assert inventory.get(agency.id)["breakdown"]["laptop"] == 2
    assert _user_points(database, user)["points"] == 0


def test_stale_writer_gets_conflict(workflow, user, agency, submit):
    rid = submit(user, agency)
    stale = workflow.store.load(rid)
    workflow.accept(rid, agency)
    with pytest.raises(ConcurrentModification):
        workflow.store.replace(stale, stale["version"])


# ------------------ Rejection and cancellation ------------------
def test_reject_keeps_request_but_hides_it_by_default(workflow, user, agency, submit):
    rid = submit(user, agency)
    result = workflow.reject(rid, agency, "Outside service area")
    assert result.request["status"] == "Rejected"
    assert "Outside service area" in result.notices[0].message

    assert workflow.assignment.user_requests(user.id) == []
    assert len(workflow.assignment.user_requests(user.id, include_rejected=True)) == 1
    assert workflow.assignment.agency_requests(agency.id) == []

    with pytest.raises(InvalidTransition):
        workflow.accept(rid, agency)


def test_reject_after_assignment_refused(workflow, user, agency, volunteer, submit, walk):
    rid = submit(user, agency)
    walk(rid, agency, volunteer, Milestone.VOLUNTEER_ASSIGNED)
    with pytest.raises(InvalidTransition):
        workflow.reject(rid, agency)


def test_cancel_while_assigned_clears_every_view(workflow, storage, user, agency, volunteer, submit, walk):
    rid = submit(user, agency)
    doc = walk(rid, agency, volunteer, Milestone.PICKUP_SCHEDULED)

    result = workflow.cancel(rid, user)
    assert [n.recipient for n in result.notices] == ["9000000001"]

    with pytest.raises(NotFound):
        workflow.store.load(rid)
    assert workflow.assignment.user_requests(user.id, include_rejected=True) == []
    assert workflow.assignment.agency_requests(agency.id, include_rejected=True) == []
    assert workflow.assignment.volunteer_requests(volunteer.id) == []
    assert doc["images"][0]["storage_key"] in storage.deleted


def test_cancel_after_pickup_started_refused(workflow, user, agency, volunteer, submit, walk):
    rid = submit(user, agency)
    walk(rid, agency, volunteer, Milestone.PICKUP_STARTED)
    with pytest.raises(InvalidTransition):
        workflow.cancel(rid, user)
    assert workflow.store.load(rid)["current_milestone"] == "pickupStarted"


def test_only_owner_can_cancel(workflow, user, agency, make_user, submit):
    rid = submit(user, agency)
    with pytest.raises(Unauthorized):
        workflow.cancel(rid, make_user("Bina"))
    with pytest.raises(Unauthorized):
        workflow.cancel(rid, agency)
