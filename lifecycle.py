"""
Pickup request lifecycle.

A request carries a ``current_milestone`` pointer and an append-only
``history`` of transition records. ``status`` is stored for querying but is
always recomputed from the pointer with ``derive_status``; the per-milestone
map shown to clients is a view built from the history.
"""
import copy
import logging
from enum import Enum
from typing import Any, Dict, List, Optional

from database import object_id, utcnow
from errors import ConcurrentModification, InvalidMilestone, InvalidTransition
from errors import NotFound
from schemas import Actor

logger = logging.getLogger(__name__)


class _StrEnum(str, Enum):
    """Enum subclass that compares/serialises as its value."""

    def __str__(self) -> str:
        return str(self.value)


class RequestStatus(_StrEnum):
    PENDING = "Pending"
    ACCEPTED = "Accepted"
    ASSIGNED = "Assigned"
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    REJECTED = "Rejected"


class Milestone(_StrEnum):
    REQUEST_RECEIVED = "requestReceived"
    AGENCY_ACCEPTED = "agencyAccepted"
    VOLUNTEER_ASSIGNED = "volunteerAssigned"
    PICKUP_SCHEDULED = "pickupScheduled"
    PICKUP_STARTED = "pickupStarted"
    PICKUP_COMPLETED = "pickupCompleted"
    WASTE_SEGREGATED = "wasteSegregated"
    PROCESSING_STARTED = "processingStarted"
    PROCESSING_COMPLETED = "processingCompleted"


MILESTONE_ORDER: List[Milestone] = list(Milestone)

ROLE_MILESTONES = {
    "agency": {
        Milestone.AGENCY_ACCEPTED,
        Milestone.WASTE_SEGREGATED,
        Milestone.PROCESSING_STARTED,
        Milestone.PROCESSING_COMPLETED,
    },
    "volunteer": {
        Milestone.PICKUP_SCHEDULED,
        Milestone.PICKUP_STARTED,
        Milestone.PICKUP_COMPLETED,
    },
}

MILESTONE_STATUS = {
    Milestone.REQUEST_RECEIVED: RequestStatus.PENDING,
    Milestone.AGENCY_ACCEPTED: RequestStatus.ACCEPTED,
    Milestone.VOLUNTEER_ASSIGNED: RequestStatus.ASSIGNED,
    Milestone.PICKUP_SCHEDULED: RequestStatus.ASSIGNED,
    Milestone.PICKUP_STARTED: RequestStatus.PROCESSING,
    Milestone.PICKUP_COMPLETED: RequestStatus.PROCESSING,
    Milestone.WASTE_SEGREGATED: RequestStatus.PROCESSING,
    Milestone.PROCESSING_STARTED: RequestStatus.PROCESSING,
    Milestone.PROCESSING_COMPLETED: RequestStatus.COMPLETED,
}

TERMINAL_STATUSES = {RequestStatus.COMPLETED, RequestStatus.REJECTED}
REJECTABLE_STATUSES = {RequestStatus.PENDING, RequestStatus.ACCEPTED}
CANCELLABLE_STATUSES = {RequestStatus.PENDING, RequestStatus.ACCEPTED, RequestStatus.ASSIGNED}


def parse_milestone(name: Any) -> Milestone:
    try:
        return Milestone(name)
    except ValueError as exc:
        raise InvalidMilestone(f"Invalid milestone name: {name}") from exc


def milestone_index(milestone: Any) -> int:
    return MILESTONE_ORDER.index(Milestone(milestone))


def next_milestone(current: Any) -> Optional[Milestone]:
    idx = milestone_index(current) + 1
    return MILESTONE_ORDER[idx] if idx < len(MILESTONE_ORDER) else None


def derive_status(current_milestone: Any, rejected: bool = False) -> RequestStatus:
    if rejected:
        return RequestStatus.REJECTED
    return MILESTONE_STATUS[Milestone(current_milestone)]


def doc_status(doc: Dict[str, Any]) -> RequestStatus:
    return derive_status(doc["current_milestone"], rejected=doc.get("rejected_at") is not None)


def is_completed(doc: Dict[str, Any], milestone: Milestone) -> bool:
    return milestone_index(doc["current_milestone"]) >= milestone_index(milestone)


def history_record(milestone: Milestone, actor: Actor, notes: Optional[str] = None,
                   location: Optional[dict] = None, address: Optional[str] = None,
                   details: Optional[dict] = None) -> Dict[str, Any]:
    record = {
        "milestone": milestone.value,
        "actor_id": actor.id,
        "actor_role": actor.role,
        "timestamp": utcnow(),
        "notes": notes,
    }
    if location is not None:
        record["location"] = location
        record["address"] = address
    if details:
        record["details"] = details
    return record


def milestone_view(doc: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    view = {m.value: {"completed": False, "timestamp": None, "notes": None} for m in MILESTONE_ORDER}
    for record in doc.get("history", []):
        entry = {"completed": True, "timestamp": record.get("timestamp"), "notes": record.get("notes")}
        if "location" in record:
            entry["location"] = record["location"]
            entry["address"] = record.get("address")
        view[record["milestone"]] = entry
    return view


def new_request_document(user_id: str, payload: Dict[str, Any], images: List[dict]) -> Dict[str, Any]:
    owner = Actor(id=user_id, role="user")
    return {
        **payload,
        "user_id": user_id,
        "volunteer_id": None,
        "images": images,
        "status": RequestStatus.PENDING.value,
        "current_milestone": Milestone.REQUEST_RECEIVED.value,
        "history": [history_record(Milestone.REQUEST_RECEIVED, owner)],
        "pickup_otp": None,
        "rejected_at": None,
        "rejection_reason": None,
        "version": 0,
    }


def ensure_mutable(doc: Dict[str, Any]) -> None:
    status = doc_status(doc)
    if status in TERMINAL_STATUSES:
        raise InvalidTransition(f"Request in terminal status {status.value} cannot be modified")


def apply_milestone(doc: Dict[str, Any], milestone: Milestone, actor: Actor, notes: Optional[str] = None,
                    location: Optional[dict] = None, address: Optional[str] = None,
                    details: Optional[dict] = None) -> Dict[str, Any]:
    """Return a copy of ``doc`` with ``milestone`` completed.

    Only the milestone directly after the current one may be completed.
    """
    ensure_mutable(doc)
    if is_completed(doc, milestone):
        raise InvalidTransition(f"Milestone {milestone.value} is already completed")
    expected = next_milestone(doc["current_milestone"])
    if expected != milestone:
        raise InvalidTransition(f"Milestone {milestone.value} cannot be completed before {expected.value}")

    updated = copy.deepcopy(doc)
    updated["history"].append(history_record(milestone, actor, notes, location, address, details))
    updated["current_milestone"] = milestone.value
    updated["status"] = derive_status(milestone).value
    return updated


def apply_rejection(doc: Dict[str, Any], reason: Optional[str] = None) -> Dict[str, Any]:
    status = doc_status(doc)
    if status not in REJECTABLE_STATUSES:
        raise InvalidTransition(f"Request in status {status.value} cannot be rejected")
    updated = copy.deepcopy(doc)
    updated["rejected_at"] = utcnow()
    updated["rejection_reason"] = reason
    updated["status"] = RequestStatus.REJECTED.value
    return updated


class RequestStore:
    """Versioned access to the ``request`` collection.

    Every write is a compare-and-swap on ``version``; a writer holding a
    stale copy gets ConcurrentModification instead of overwriting.
    """

    def __init__(self, database):
        self.collection = database["request"]

    def load(self, request_id: Any) -> Dict[str, Any]:
        doc = self.collection.find_one({"_id": object_id(request_id, "Request")})
        if not doc:
            raise NotFound("Request not found")
        return doc

    def insert(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        now = utcnow()
        doc = {**doc, "created_at": now, "updated_at": now}
        doc["_id"] = self.collection.insert_one(doc).inserted_id
        return doc

    def replace(self, doc: Dict[str, Any], expected_version: int) -> Dict[str, Any]:
        doc = {**doc, "version": expected_version + 1, "updated_at": utcnow()}
        result = self.collection.replace_one({"_id": doc["_id"], "version": expected_version}, doc)
        if result.matched_count == 0:
            raise ConcurrentModification("Request was modified concurrently, retry")
        return doc

    def restore(self, original: Dict[str, Any], written: Dict[str, Any]) -> None:
        """Compensate a write: put ``original`` back over ``written``."""
        restored = {**original, "version": written["version"] + 1, "updated_at": utcnow()}
        result = self.collection.replace_one({"_id": original["_id"], "version": written["version"]}, restored)
        if result.matched_count == 0:
            logger.error("Could not restore request %s after a failed transition", original["_id"])
            raise ConcurrentModification("Request was modified concurrently during rollback")

    def delete(self, doc: Dict[str, Any]) -> None:
        result = self.collection.delete_one({"_id": doc["_id"], "version": doc["version"]})
        if result.deleted_count == 0:
            raise ConcurrentModification("Request was modified concurrently, retry")

    def find(self, filter_dict: Dict[str, Any]) -> List[Dict[str, Any]]:
        return list(self.collection.find(filter_dict).sort("created_at", -1))
