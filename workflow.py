"""
Request workflow: creation, milestone transitions, rejection and cancellation.

Transitions that touch more than one document write the request first (the
version check makes a concurrent duplicate fail there), then the inventory,
then the points ledger. When a later step fails the earlier writes are
compensated and the original error is re-raised.
"""
import logging
import secrets
import string
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from database import as_utc, object_id, utcnow
from errors import CapacityExceeded, InvalidTransition, NotFound, Unauthorized, ValidationError
from assignment import AssignmentLayer
from integrations import discard_uploads, upload_many
from inventory import InventoryLedger, occupancy
from lifecycle import (
    CANCELLABLE_STATUSES,
    ROLE_MILESTONES,
    Milestone,
    RequestStore,
    apply_milestone,
    apply_rejection,
    doc_status,
    ensure_mutable,
    is_completed,
    milestone_view,
    new_request_document,
    parse_milestone,
)
from points import PointsLedger, request_points
from schemas import Actor, GeoPoint, PickupRequest, RequestImage
import notifications
import settings

logger = logging.getLogger(__name__)


@dataclass
class TransitionResult:
    request: Dict[str, Any]
    notices: List[notifications.Notice] = field(default_factory=list)


def generate_otp(digits: Optional[int] = None) -> str:
    return "".join(secrets.choice(string.digits) for _ in range(digits or settings.OTP_DIGITS))


def waste_breakdown(doc: Dict[str, Any]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for waste_type, qty in zip(doc["waste_types"], doc["quantities"]):
        counts[waste_type] = counts.get(waste_type, 0) + qty
    return counts


def present(doc: Dict[str, Any], actor: Optional[Actor] = None) -> Dict[str, Any]:
    """Client view of a request: adds the milestone map, hides the pickup code."""
    out = dict(doc)
    out["milestones"] = milestone_view(doc)
    if actor is None or actor.role != "user" or doc.get("user_id") != actor.id:
        out.pop("pickup_otp", None)
    return out


class RequestWorkflow:
    def __init__(self, database, storage, geocoder, classifier,
                 inventory: Optional[InventoryLedger] = None,
                 points: Optional[PointsLedger] = None,
                 assignment: Optional[AssignmentLayer] = None,
                 store: Optional[RequestStore] = None):
        self.db = database
        self.storage = storage
        self.geocoder = geocoder
        self.classifier = classifier
        self.store = store or RequestStore(database)
        self.inventory = inventory or InventoryLedger(database)
        self.points = points or PointsLedger(database)
        self.assignment = assignment or AssignmentLayer(database, self.store)

    # ------------------ Creation ------------------
    def create_request(self, user_id: str, payload: PickupRequest, files: List[Tuple[str, bytes]]) -> Dict[str, Any]:
        if not self.db["user"].find_one({"_id": object_id(user_id, "User")}):
            raise NotFound("User not found")
        if not files:
            raise ValidationError("Please upload at least one image")
        if len(payload.waste_types) != len(payload.quantities):
            raise ValidationError("Each waste type needs exactly one quantity")
        if as_utc(payload.pickup_date) <= utcnow():
            raise ValidationError("Pickup date must be in the future")
        agency = self.assignment.assign_agency(payload.agency_id, payload.waste_types)

        analysed = [self._analyse(content) for _, content in files]
        address = payload.pickup_address or self.geocoder.address_for(
            payload.pickup_location.lng, payload.pickup_location.lat
        )
        refs = upload_many(self.storage, files)

        data = payload.model_dump()
        data["agency_id"] = str(agency["_id"])
        data["pickup_address"] = address
        images = [RequestImage(**ref, **meta).model_dump() for ref, meta in zip(refs, analysed)]
        try:
            doc = self.store.insert(new_request_document(user_id, data, images))
        except Exception:
            discard_uploads(self.storage, refs)
            raise
        logger.info("Request %s filed by user %s for agency %s", doc["_id"], user_id, data["agency_id"])
        return doc

    def _analyse(self, content: bytes) -> Dict[str, Any]:
        category, confidence = self.classifier.classify(content)
        phash = self.classifier.perceptual_hash(content)
        duplicate = self.db["request"].find_one({"images.phash": phash}, {"_id": 1})
        return {
            "category": category,
            "confidence": confidence,
            "phash": phash,
            "duplicate_of": str(duplicate["_id"]) if duplicate else None,
        }

    # ------------------ Reads ------------------
    def get(self, request_id: str, actor: Actor) -> Dict[str, Any]:
        doc = self.store.load(request_id)
        allowed = (
            actor.role == "admin"
            or (actor.role == "user" and doc["user_id"] == actor.id)
            or (actor.role == "agency" and doc["agency_id"] == actor.id)
            or (actor.role == "volunteer" and doc.get("volunteer_id") == actor.id)
        )
        if not allowed:
            raise Unauthorized("Not authorized to view this request")
        return doc

    # ------------------ Transitions ------------------
    def _authorize(self, doc: Dict[str, Any], milestone: Milestone, actor: Actor) -> None:
        if milestone is Milestone.VOLUNTEER_ASSIGNED:
            raise InvalidTransition("Volunteers are assigned through the assignment endpoint")
        allowed = ROLE_MILESTONES.get(actor.role)
        if allowed is None:
            raise Unauthorized(f"Role {actor.role} cannot advance milestones")
        if actor.role == "agency" and doc["agency_id"] != actor.id:
            raise Unauthorized("Request belongs to another agency")
        if actor.role == "volunteer" and doc.get("volunteer_id") != actor.id:
            raise Unauthorized("Request is assigned to another volunteer")
        if milestone not in allowed:
            raise InvalidTransition(f"A {actor.role} cannot advance {milestone.value}")

    def accept(self, request_id: str, actor: Actor, notes: Optional[str] = None) -> TransitionResult:
        return self.advance(request_id, Milestone.AGENCY_ACCEPTED.value, actor, notes=notes)

    def advance(self, request_id: str, milestone_name: str, actor: Actor, notes: Optional[str] = None,
                otp: Optional[str] = None, location: Optional[GeoPoint] = None,
                details: Optional[dict] = None) -> TransitionResult:
        milestone = parse_milestone(milestone_name)
        doc = self.store.load(request_id)
        ensure_mutable(doc)
        self._authorize(doc, milestone, actor)

        loc = location.model_dump() if location else None
        updated = apply_milestone(doc, milestone, actor, notes, loc, None, details)
        if milestone is Milestone.PICKUP_COMPLETED:
            self._verify_otp(doc, otp)
        if loc:
            updated["history"][-1]["address"] = self.geocoder.address_for(loc["lng"], loc["lat"])

        if milestone is Milestone.WASTE_SEGREGATED:
            return self._segregate(doc, updated)
        if milestone is Milestone.PROCESSING_COMPLETED:
            return self._complete(doc, updated)

        notices = []
        if milestone is Milestone.AGENCY_ACCEPTED:
            agency = self.db["agency"].find_one({"_id": object_id(doc["agency_id"])}) or {}
            notices.append(notifications.request_accepted(doc, agency))
        elif milestone is Milestone.PICKUP_STARTED:
            code = generate_otp()
            updated["pickup_otp"] = code
            notices.append(notifications.pickup_code(doc, code))
        elif milestone is Milestone.PICKUP_COMPLETED:
            updated["pickup_otp"] = None

        written = self.store.replace(updated, doc["version"])
        logger.info("Request %s advanced to %s by %s %s", request_id, milestone.value, actor.role, actor.id)
        return TransitionResult(written, notices)

    def _verify_otp(self, doc: Dict[str, Any], otp: Optional[str]) -> None:
        expected = doc.get("pickup_otp")
        if not expected or not otp or not secrets.compare_digest(str(otp).strip().encode(), expected.encode()):
            raise Unauthorized("Pickup verification code does not match")

    def _segregate(self, doc: Dict[str, Any], updated: Dict[str, Any]) -> TransitionResult:
        agency_id = doc["agency_id"]
        inv = self.inventory.get(agency_id)
        free = inv["total_capacity"] - inv.get("current_capacity", 0)
        if doc["weight"] > free:
            raise CapacityExceeded(f"Request weighs {doc['weight']} but only {free} capacity is free")

        written = self.store.replace(updated, doc["version"])
        try:
            inv = self.inventory.receive(agency_id, doc["weight"], waste_breakdown(doc))
        except Exception:
            self._compensate(lambda: self.store.restore(doc, written))
            raise

        notices = []
        if occupancy(inv) >= settings.CAPACITY_ALERT_RATIO:
            agency = self.db["agency"].find_one({"_id": object_id(agency_id)}) or {}
            notices.append(notifications.capacity_alert(agency, inv))
            logger.info("Inventory of agency %s at %.0f%%", agency_id, occupancy(inv) * 100)
        return TransitionResult(written, notices)

    def _complete(self, doc: Dict[str, Any], updated: Dict[str, Any]) -> TransitionResult:
        agency_id = doc["agency_id"]
        updated["points_awarded"] = request_points(doc["waste_types"], doc["quantities"])
        written = self.store.replace(updated, doc["version"])
        try:
            _, released, removed = self.inventory.release(agency_id, doc["weight"], waste_breakdown(doc))
        except Exception:
            self._compensate(lambda: self.store.restore(doc, written))
            raise
        try:
            amount = self.points.credit_completion(written)
        except Exception:
            self._compensate(
                lambda: self.inventory.receive(agency_id, released, removed, enforce_capacity=False),
                lambda: self.store.restore(doc, written),
            )
            raise
        logger.info("Request %s completed", doc["_id"])
        return TransitionResult(written, [notifications.request_completed(doc, amount)])

    def _compensate(self, *steps: Callable[[], Any]) -> None:
        for step in steps:
            try:
                step()
            except Exception as e:
                logger.error("Compensation step failed: %s", e)

    def reject(self, request_id: str, actor: Actor, reason: Optional[str] = None) -> TransitionResult:
        doc = self.store.load(request_id)
        if actor.role != "agency" or doc["agency_id"] != actor.id:
            raise Unauthorized("Only the owning agency can reject this request")
        ensure_mutable(doc)
        written = self.store.replace(apply_rejection(doc, reason), doc["version"])
        logger.info("Request %s rejected by agency %s", request_id, actor.id)
        return TransitionResult(written, [notifications.request_rejected(doc, reason)])

    def cancel(self, request_id: str, actor: Actor) -> TransitionResult:
        """User-initiated withdrawal; only possible before pickup starts."""
        doc = self.store.load(request_id)
        if actor.role != "user" or doc["user_id"] != actor.id:
            raise Unauthorized("Only the requester can cancel this request")
        status = doc_status(doc)
        if status not in CANCELLABLE_STATUSES or is_completed(doc, Milestone.PICKUP_STARTED):
            raise InvalidTransition(f"Request in status {status.value} can no longer be cancelled")
        self.store.delete(doc)
        discard_uploads(self.storage, doc.get("images") or [])

        notices = []
        if doc.get("volunteer_id"):
            volunteer = self.db["volunteer"].find_one({"_id": object_id(doc["volunteer_id"])}) or {}
            notices.append(notifications.Notice(
                "sms", volunteer.get("phone"), f"Pickup at {doc.get('pickup_address')} was cancelled by the user."
            ))
        logger.info("Request %s cancelled by user %s", request_id, actor.id)
        return TransitionResult(doc, notices)
