"""
Community events (drives, workshops, webinars) organised by users or agencies.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from database import as_utc, create_document, object_id, utcnow
from errors import Unauthorized, ValidationError
from points import PointsLedger
from schemas import Actor, Community, Organizer
import settings

logger = logging.getLogger(__name__)


class CommunityBoard:
    def __init__(self, database, moderator, points: Optional[PointsLedger] = None):
        self.db = database
        self.moderator = moderator
        self.points = points or PointsLedger(database)

    def create_event(self, actor: Actor, event: Community) -> Dict[str, Any]:
        if actor.role not in ("user", "agency"):
            raise Unauthorized("Only users and agencies can organise events")
        if as_utc(event.end_date) < as_utc(event.start_date):
            raise ValidationError("Event cannot end before it starts")
        if event.event_type != "Online Webinar" and not event.location:
            raise ValidationError("Location is required for in-person events")

        ok, label = self.moderator.is_acceptable(event.title, event.description, event.registration_link)
        if not ok:
            raise ValidationError(f"Event was not published: content classified as {label}")

        organizer = Organizer(user_id=actor.id) if actor.role == "user" else Organizer(agency_id=actor.id)
        event = event.model_copy(update={"organizer": organizer, "moderation_label": label})
        event_id = create_document("community", event, database=self.db)
        if actor.role == "user":
            self.points.credit_community_action(actor.id, settings.COMMUNITY_EVENT_POINTS)
        logger.info("Community event %s created by %s %s", event_id, actor.role, actor.id)
        return self.db["community"].find_one({"_id": object_id(event_id)})

    def upcoming(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        now = now or utcnow()
        events = [e for e in self.db["community"].find({}) if as_utc(e["end_date"]) >= now]
        events.sort(key=lambda e: as_utc(e["start_date"]))
        return events

    def sweep_expired(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        expired = [e["_id"] for e in self.db["community"].find({}, {"end_date": 1}) if as_utc(e["end_date"]) < now]
        if not expired:
            return 0
        result = self.db["community"].delete_many({"_id": {"$in": expired}})
        logger.info("Removed %d expired community events", result.deleted_count)
        return result.deleted_count
