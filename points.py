"""
Loyalty points: accrual from completed requests and community actions,
the monthly leaderboard reset, and redemption against the product catalog.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

import settings
from database import create_document, object_id, utcnow
from errors import InsufficientPoints, InvalidTransition, NotFound, OutOfStock, Unauthorized, ValidationError
from schemas import Actor, JobRun, Order

logger = logging.getLogger(__name__)

WASTE_TYPE_POINTS = {
    "mobile": 50,
    "phones": 50,
    "computers": 150,
    "laptop": 100,
    "batteries": 20,
}

RANK_BONUSES = {1: 1000, 2: 750, 3: 500, 4: 250, 5: 100}

MONTHLY_RESET_JOB = "monthly_points_reset"

ORDER_TRANSITIONS = {
    "Pending": {"Shipped"},
    "Shipped": {"Delivered"},
    "Delivered": set(),
    "Cancelled": set(),
}


def request_points(waste_types: List[str], quantities: List[int]) -> int:
    if len(waste_types) != len(quantities):
        raise ValidationError("Each waste type needs exactly one quantity")
    total = 0
    for waste_type, qty in zip(waste_types, quantities):
        total += WASTE_TYPE_POINTS.get(str(waste_type).lower(), 0) * qty
    return total


def month_key(moment: datetime) -> str:
    return f"{moment.year:04d}-{moment.month:02d}"


class PointsLedger:
    def __init__(self, database):
        self.db = database
        self.users = database["user"]

    def _credit(self, user_id: str, amount: int, extra: Optional[Dict[str, int]] = None) -> None:
        inc = {"points": amount, "monthly_points": amount}
        inc.update(extra or {})
        result = self.users.update_one(
            {"_id": object_id(user_id, "User")},
            {"$inc": inc, "$set": {"updated_at": utcnow()}},
        )
        if result.matched_count == 0:
            raise NotFound("User not found")

    def credit_completion(self, request: Dict[str, Any]) -> int:
        amount = request_points(request["waste_types"], request["quantities"])
        self._credit(request["user_id"], amount, {"completed_requests": 1})
        logger.info("Credited %s points to user %s for request %s", amount, request["user_id"], request.get("_id"))
        return amount

    def credit_community_action(self, user_id: str, amount: int) -> None:
        if amount <= 0:
            raise ValidationError("Community credit must be positive")
        self._credit(user_id, amount, {"community_points": amount})

    def leaderboard(self, limit: int = 10) -> List[Dict[str, Any]]:
        cursor = self.users.find({}, {"name": 1, "points": 1, "monthly_points": 1, "last_rank": 1})
        return list(cursor.sort("points", DESCENDING).limit(limit))

    def rank_of(self, user_id: str) -> int:
        user = self.users.find_one({"_id": object_id(user_id, "User")})
        if not user:
            raise NotFound("User not found")
        return self.users.count_documents({"points": {"$gt": user.get("points", 0)}}) + 1

    # ------------------ Monthly reset ------------------
    def _claim_reset(self, period: str, now: datetime) -> Optional[Dict[str, Any]]:
        jobs = self.db["jobrun"]
        try:
            claim = jobs.update_one(
                {"job": MONTHLY_RESET_JOB, "period": period},
                {"$setOnInsert": JobRun(job=MONTHLY_RESET_JOB, period=period, started_at=now).model_dump()},
                upsert=True,
            )
        except DuplicateKeyError:
            return None
        if claim.upserted_id is not None:
            return jobs.find_one({"_id": claim.upserted_id})
        # a failed run, or one that stopped reporting, may be taken over
        stale = now - timedelta(seconds=settings.MONTHLY_RESET_STALE_SECONDS)
        return jobs.find_one_and_update(
            {"job": MONTHLY_RESET_JOB, "period": period,
             "$or": [{"state": "failed"}, {"state": "running", "started_at": {"$lt": stale}}]},
            {"$set": {"state": "running", "started_at": now}},
            return_document=ReturnDocument.AFTER,
        )

    def _plan_winners(self, run: Dict[str, Any]) -> List[Dict[str, Any]]:
        if run.get("winners") is not None:
            return run["winners"]
        top = list(
            self.users.find({"monthly_points": {"$gt": 0}})
            .sort("monthly_points", DESCENDING)
            .limit(len(RANK_BONUSES))
        )
        winners = [{"user_id": str(user["_id"]), "rank": rank, "bonus": RANK_BONUSES[rank],
                    "monthly_points": user.get("monthly_points", 0)}
                   for rank, user in enumerate(top, start=1)]
        self.db["jobrun"].update_one({"_id": run["_id"]}, {"$set": {"winners": winners}})
        return winners

    def monthly_reset(self, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
        """Award the monthly top five and zero monthly counters.

        Completes at most once per calendar month; returns None when this
        month's run is done or held by another worker. A run that failed
        part way is picked up again by the next call, reusing the winners it
        chose and paying each bonus only once.
        """
        now = now or utcnow()
        period = month_key(now)
        run = self._claim_reset(period, now)
        if run is None:
            logger.info("Monthly reset for %s already ran or is running", period)
            return None

        try:
            winners = self._plan_winners(run)
            for winner in winners:
                self.users.update_one(
                    {"_id": object_id(winner["user_id"]), "last_reset_period": {"$ne": period}},
                    {"$inc": {"points": winner["bonus"]},
                     "$set": {"last_rank": winner["rank"], "last_reset_period": period}},
                )
            self.users.update_many({}, {"$set": {"monthly_points": 0, "last_reset_at": now}})
        except Exception:
            self.db["jobrun"].update_one({"_id": run["_id"]}, {"$set": {"state": "failed"}})
            raise

        result = {"period": period, "winners": winners}
        self.db["jobrun"].update_one({"_id": run["_id"]}, {"$set": {"result": result, "state": "done"}})
        logger.info("Monthly reset for %s awarded %d users", period, len(winners))
        return result

    def reset_due(self, now: Optional[datetime] = None) -> bool:
        """True on the first of the month, while this month's run is unfinished,
        or when an earlier month has run and this one has not."""
        now = now or utcnow()
        period = month_key(now)
        current = self.db["jobrun"].find_one({"job": MONTHLY_RESET_JOB, "period": period})
        if current:
            return current.get("state") != "done"
        if now.day == 1:
            return True
        return self.db["jobrun"].find_one({"job": MONTHLY_RESET_JOB, "period": {"$lt": period}}) is not None

    # ------------------ Redemption ------------------
    def redeem(self, user_id: str, product_id: str) -> Dict[str, Any]:
        product = self.db["product"].find_one({"_id": object_id(product_id, "Product")})
        if not product:
            raise NotFound("Product not found")
        user_oid = object_id(user_id, "User")
        if not self.users.find_one({"_id": user_oid}):
            raise NotFound("User not found")
        cost = product["points_required"]

        debit = self.users.update_one(
            {"_id": user_oid, "points": {"$gte": cost}},
            {"$inc": {"points": -cost, "redeemed_points": cost}},
        )
        if debit.matched_count == 0:
            raise InsufficientPoints(f"Redeeming {product['name']} needs {cost} points")

        stock = self.db["product"].update_one(
            {"_id": product["_id"], "stock": {"$gt": 0}},
            {"$inc": {"stock": -1}},
        )
        if stock.matched_count == 0:
            self.users.update_one({"_id": user_oid}, {"$inc": {"points": cost, "redeemed_points": -cost}})
            raise OutOfStock(f"{product['name']} is out of stock")

        order = Order(user_id=user_id, product_id=str(product["_id"]), agency_id=product["agency_id"],
                      points_spent=cost, status="Pending")
        order_id = create_document("order", order, database=self.db)
        return self.db["order"].find_one({"_id": object_id(order_id)})

    def cancel_order(self, order_id: str, actor: Actor) -> Dict[str, Any]:
        order = self.db["order"].find_one({"_id": object_id(order_id, "Order")})
        if not order:
            raise NotFound("Order not found")
        if order["user_id"] != actor.id:
            raise Unauthorized("Only the customer can cancel this order")
        claimed = self.db["order"].update_one(
            {"_id": order["_id"], "status": "Pending"},
            {"$set": {"status": "Cancelled", "updated_at": utcnow()}},
        )
        if claimed.matched_count == 0:
            raise InvalidTransition("Only pending orders can be cancelled")
        self.db["product"].update_one({"_id": object_id(order["product_id"])}, {"$inc": {"stock": 1}})
        self.users.update_one(
            {"_id": object_id(order["user_id"])},
            {"$inc": {"points": order["points_spent"], "redeemed_points": -order["points_spent"]}},
        )
        return self.db["order"].find_one({"_id": order["_id"]})

    def update_order_status(self, order_id: str, actor: Actor, status: str) -> Dict[str, Any]:
        order = self.db["order"].find_one({"_id": object_id(order_id, "Order")})
        if not order:
            raise NotFound("Order not found")
        if actor.role != "agency" or order["agency_id"] != actor.id:
            raise Unauthorized("Only the supplying agency can update this order")
        if status not in ORDER_TRANSITIONS.get(order["status"], set()):
            raise InvalidTransition(f"Order cannot move from {order['status']} to {status}")
        updated = self.db["order"].update_one(
            {"_id": order["_id"], "status": order["status"]},
            {"$set": {"status": status, "updated_at": utcnow()}},
        )
        if updated.matched_count == 0:
            raise InvalidTransition("Order was updated concurrently")
        return self.db["order"].find_one({"_id": order["_id"]})
