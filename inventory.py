"""
Per-agency storage capacity and waste-type breakdown.

Writes go through a compare-and-swap loop on ``version`` so concurrent
receive/release calls for the same agency cannot push current_capacity
outside ``[0, total_capacity]``.
"""
import logging
from typing import Any, Dict, Optional, Tuple

from database import create_document, object_id, utcnow
from errors import CapacityExceeded, ConcurrentModification, InvalidTransition, NotFound, ValidationError
from schemas import Inventory, InventoryLocation
import settings

logger = logging.getLogger(__name__)


def occupancy(doc: Dict[str, Any]) -> float:
    total = doc.get("total_capacity") or 0
    if total <= 0:
        return 0.0
    return doc.get("current_capacity", 0) / total


class InventoryLedger:
    def __init__(self, database, retries: Optional[int] = None):
        self.db = database
        self.collection = database["inventory"]
        self.retries = retries if retries is not None else settings.CAS_RETRIES

    def setup(self, agency_id: str, total_capacity: float, location: InventoryLocation) -> Dict[str, Any]:
        agency = self.db["agency"].find_one({"_id": object_id(agency_id, "Agency")})
        if not agency:
            raise NotFound("Agency not found")
        if agency.get("is_inventory_setup") or self.collection.find_one({"agency_id": agency_id}):
            raise InvalidTransition("Inventory is already set up for this agency")
        inventory = Inventory(
            agency_id=agency_id,
            total_capacity=total_capacity,
            current_capacity=0,
            breakdown={},
            location=location,
            version=0,
            last_updated=utcnow(),
        )
        create_document("inventory", inventory, database=self.db)
        self.db["agency"].update_one({"_id": agency["_id"]}, {"$set": {"is_inventory_setup": True, "updated_at": utcnow()}})
        logger.info("Inventory set up for agency %s with capacity %s", agency_id, total_capacity)
        return self.get(agency_id)

    def get(self, agency_id: str) -> Dict[str, Any]:
        doc = self.collection.find_one({"agency_id": agency_id})
        if not doc:
            raise NotFound("Inventory not set up for this agency")
        return doc

    def _swap(self, doc: Dict[str, Any], changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        changes = {**changes, "last_updated": utcnow()}
        result = self.collection.update_one(
            {"_id": doc["_id"], "version": doc.get("version", 0)},
            {"$set": changes, "$inc": {"version": 1}},
        )
        if result.matched_count == 0:
            return None
        return {**doc, **changes, "version": doc.get("version", 0) + 1}

    def receive(self, agency_id: str, weight: float, breakdown: Dict[str, int],
                enforce_capacity: bool = True) -> Dict[str, Any]:
        """Add ``weight`` and per-type counts; refuses to exceed total capacity."""
        if weight < 0:
            raise ValidationError("Weight must be non-negative")
        for _ in range(self.retries):
            doc = self.get(agency_id)
            total = doc["total_capacity"]
            new_current = doc.get("current_capacity", 0) + weight
            if new_current > total:
                if enforce_capacity:
                    raise CapacityExceeded(
                        f"Inventory would hold {new_current} of {total}; only {total - doc.get('current_capacity', 0)} free"
                    )
                new_current = total
            counts = dict(doc.get("breakdown") or {})
            for waste_type, qty in breakdown.items():
                counts[waste_type] = counts.get(waste_type, 0) + qty
            swapped = self._swap(doc, {"current_capacity": new_current, "breakdown": counts})
            if swapped is not None:
                return swapped
        raise ConcurrentModification("Inventory is busy, retry")

    def release(self, agency_id: str, weight: float, breakdown: Dict[str, int]) -> Tuple[Dict[str, Any], float, Dict[str, int]]:
        """Remove ``weight`` and per-type counts, each floored at zero.

        Returns the new document plus what was actually removed, so a caller
        can put it back.
        """
        if weight < 0:
            raise ValidationError("Weight must be non-negative")
        for _ in range(self.retries):
            doc = self.get(agency_id)
            current = doc.get("current_capacity", 0)
            released = min(current, weight)
            counts = dict(doc.get("breakdown") or {})
            removed = {}
            for waste_type, qty in breakdown.items():
                held = counts.get(waste_type, 0)
                removed[waste_type] = min(held, qty)
                counts[waste_type] = held - removed[waste_type]
            swapped = self._swap(doc, {"current_capacity": current - released, "breakdown": counts})
            if swapped is not None:
                return swapped, released, removed
        raise ConcurrentModification("Inventory is busy, retry")

    def resize(self, agency_id: str, total_capacity: float) -> Dict[str, Any]:
        if total_capacity < 0:
            raise ValidationError("Total capacity must be non-negative")
        for _ in range(self.retries):
            doc = self.get(agency_id)
            if total_capacity < doc.get("current_capacity", 0):
                raise CapacityExceeded("Total capacity cannot be below the stock currently held")
            swapped = self._swap(doc, {"total_capacity": total_capacity})
            if swapped is not None:
                return swapped
        raise ConcurrentModification("Inventory is busy, retry")
