"""
Binding requests to agencies and volunteers.

User/agency/volunteer request lists are queries on the ``request``
collection keyed by owner id rather than arrays stored on the owners, so
create/reject/cancel never have to touch more than one document.
"""
import logging
from typing import Any, Dict, List, Optional

from database import create_document, object_id, utcnow
from errors import InvalidTransition, NotFound, Unauthorized, ValidationError
from lifecycle import Milestone, RequestStatus, RequestStore, TERMINAL_STATUSES, apply_milestone
from schemas import Actor, Volunteer

logger = logging.getLogger(__name__)


class AssignmentLayer:
    def __init__(self, database, store: Optional[RequestStore] = None):
        self.db = database
        self.store = store or RequestStore(database)

    # ------------------ Agencies ------------------
    def assign_agency(self, agency_id: str, waste_types: List[str]) -> Dict[str, Any]:
        agency = self.db["agency"].find_one({"_id": object_id(agency_id, "Agency")})
        if not agency:
            raise NotFound("Selected agency not found")
        if agency.get("certification_status") != "Certified":
            raise ValidationError("Selected agency is not certified")
        handled = set(agency.get("waste_types_handled") or [])
        unsupported = sorted(set(waste_types) - handled)
        if handled and unsupported:
            raise ValidationError(f"Agency does not handle: {', '.join(unsupported)}")
        return agency

    # ------------------ Volunteers ------------------
    def create_volunteer(self, agency_id: str, volunteer: Volunteer) -> Dict[str, Any]:
        if volunteer.agency_id != agency_id:
            raise Unauthorized("Volunteers can only be added to your own agency")
        if self.db["volunteer"].find_one({"email": volunteer.email}):
            raise ValidationError("Email already registered")
        vid = create_document("volunteer", volunteer, database=self.db)
        return self.db["volunteer"].find_one({"_id": object_id(vid)})

    def _own_volunteer(self, volunteer_id: str, actor: Actor) -> Dict[str, Any]:
        volunteer = self.db["volunteer"].find_one({"_id": object_id(volunteer_id, "Volunteer")})
        if not volunteer:
            raise NotFound("Volunteer not found")
        if actor.role != "agency" or volunteer.get("agency_id") != actor.id:
            raise Unauthorized("Volunteer belongs to another agency")
        return volunteer

    def set_volunteer_status(self, volunteer_id: str, actor: Actor, status: str) -> Dict[str, Any]:
        if status not in ("Active", "Inactive"):
            raise ValidationError("Status must be Active or Inactive")
        volunteer = self._own_volunteer(volunteer_id, actor)
        self.db["volunteer"].update_one({"_id": volunteer["_id"]}, {"$set": {"status": status, "updated_at": utcnow()}})
        return self.db["volunteer"].find_one({"_id": volunteer["_id"]})

    def delete_volunteer(self, volunteer_id: str, actor: Actor) -> None:
        volunteer = self._own_volunteer(volunteer_id, actor)
        open_requests = self.db["request"].count_documents({
            "volunteer_id": str(volunteer["_id"]),
            "status": {"$nin": [s.value for s in TERMINAL_STATUSES]},
        })
        if open_requests:
            raise InvalidTransition(f"Volunteer still has {open_requests} open pickup(s)")
        self.db["volunteer"].delete_one({"_id": volunteer["_id"]})
        logger.info("Volunteer %s removed by agency %s", volunteer_id, actor.id)

    def active_volunteers(self, agency_id: str) -> List[Dict[str, Any]]:
        return list(self.db["volunteer"].find({"agency_id": agency_id, "status": "Active"}))

    def assign_volunteer(self, request_id: str, volunteer_id: str, actor: Actor, notes: Optional[str] = None):
        """Bind a volunteer to an accepted request.

        The volunteer reference and the volunteerAssigned milestone are written
        in the same request document update.
        """
        doc = self.store.load(request_id)
        if actor.role != "agency" or doc["agency_id"] != actor.id:
            raise Unauthorized("Only the owning agency can assign volunteers")
        volunteer = self.db["volunteer"].find_one({"_id": object_id(volunteer_id, "Volunteer")})
        if not volunteer:
            raise NotFound("Volunteer not found")
        if volunteer.get("agency_id") != doc["agency_id"]:
            raise ValidationError("Volunteer belongs to another agency")
        if volunteer.get("status") != "Active":
            raise ValidationError("Volunteer is not active")

        updated = apply_milestone(doc, Milestone.VOLUNTEER_ASSIGNED, actor, notes=notes,
                                  details={"volunteer_id": str(volunteer["_id"])})
        updated["volunteer_id"] = str(volunteer["_id"])
        written = self.store.replace(updated, doc["version"])
        logger.info("Request %s assigned to volunteer %s", request_id, volunteer_id)
        return written, volunteer

    # ------------------ Derived views ------------------
    def user_requests(self, user_id: str, include_rejected: bool = False) -> List[Dict[str, Any]]:
        filt: Dict[str, Any] = {"user_id": user_id}
        if not include_rejected:
            filt["status"] = {"$ne": RequestStatus.REJECTED.value}
        return self.store.find(filt)

    def agency_requests(self, agency_id: str, include_rejected: bool = False,
                        status: Optional[str] = None) -> List[Dict[str, Any]]:
        filt: Dict[str, Any] = {"agency_id": agency_id}
        if status:
            filt["status"] = status
        elif not include_rejected:
            filt["status"] = {"$ne": RequestStatus.REJECTED.value}
        return self.store.find(filt)

    def volunteer_requests(self, volunteer_id: str) -> List[Dict[str, Any]]:
        return self.store.find({"volunteer_id": volunteer_id})
