"""
Donor statistics: ratings left by NGOs and the claimed-donations counter.

Ratings are applied incrementally as feedback arrives. recalculate_all() and
recalculate_donation_counts() rebuild the same numbers from the donations
themselves and are safe to run at any time.
"""

import logging
from typing import Dict, Tuple

from database import Database, oid, parse_id
from errors import NotFoundError
from schemas import DONOR_TYPES

logger = logging.getLogger(__name__)

USERS = "user"
DONATIONS = "donation"

COUNTED_STATUSES = ["claimed", "completed"]


def average(rating_sum: float, total_ratings: int) -> float:
    if not total_ratings:
        return 0
    return rating_sum / total_ratings


class RatingAggregator:
    def __init__(self, database: Database):
        self.db = database

    def apply_rating(self, donor_id: str, rating: int) -> dict:
        """Add one rating to a donor's running totals and refresh the average."""
        doc = self.db.increment(USERS, donor_id, {"rating_sum": rating, "total_ratings": 1})
        if not doc:
            raise NotFoundError("Donor not found")
        rating_sum = doc.get("rating_sum", 0)
        total_ratings = doc.get("total_ratings", 0)
        avg = average(rating_sum, total_ratings)
        # Only write if no other rating landed in between; that one writes a fresher average.
        updated = self.db.update_where(
            USERS,
            {"_id": doc["_id"], "rating_sum": rating_sum, "total_ratings": total_ratings},
            {"$set": {"average_rating": avg}},
        )
        return updated or doc

    def recalculate_all(self) -> int:
        """Rebuild rating_sum/total_ratings/average_rating for every donor from stored feedback."""
        totals: Dict[str, Tuple[int, int]] = {}
        rows = self.db.aggregate(
            DONATIONS,
            [
                {"$match": {"feedback.ngo_rating": {"$gte": 1}}},
                {
                    "$group": {
                        "_id": "$donor_id",
                        "rating_sum": {"$sum": "$feedback.ngo_rating"},
                        "total_ratings": {"$sum": 1},
                    }
                },
            ],
        )
        for row in rows:
            totals[oid(row["_id"])] = (row["rating_sum"], row["total_ratings"])

        updated = 0
        for user in self.db.get_documents(USERS, {"user_type": {"$in": list(DONOR_TYPES)}}):
            rating_sum, total_ratings = totals.get(oid(user["_id"]), (0, 0))
            self.db.update_where(
                USERS,
                {"_id": user["_id"]},
                {
                    "$set": {
                        "rating_sum": rating_sum,
                        "total_ratings": total_ratings,
                        "average_rating": average(rating_sum, total_ratings),
                    }
                },
            )
            updated += 1
        logger.info(f"Recalculated ratings for {updated} donors")
        return updated

    # ------------------------------------
    # Claimed-donations counter
    # ------------------------------------
    def count_claimed(self, donor_id: str) -> int:
        return self.db.count(DONATIONS, {"donor_id": oid(donor_id), "status": {"$in": COUNTED_STATUSES}})

    def refresh_donations_count(self, user_id: str) -> int:
        user = self.db.find_by_id(USERS, user_id)
        if not user:
            raise NotFoundError("User not found")
        actual = self.count_claimed(user_id)
        if user.get("donations_count") != actual:
            logger.info(f"Correcting donations_count for user {user_id}: {user.get('donations_count')} -> {actual}")
            self.db.update_where(USERS, {"_id": parse_id(user_id)}, {"$set": {"donations_count": actual}})
        return actual

    def recalculate_donation_counts(self) -> int:
        rows = self.db.aggregate(
            DONATIONS,
            [
                {"$match": {"status": {"$in": COUNTED_STATUSES}}},
                {"$group": {"_id": "$donor_id", "count": {"$sum": 1}}},
            ],
        )
        counts = {oid(row["_id"]): row["count"] for row in rows}
        users = self.db.get_documents(USERS, {})
        for user in users:
            self.db.update_where(
                USERS,
                {"_id": user["_id"]},
                {"$set": {"donations_count": counts.get(oid(user["_id"]), 0)}},
            )
        logger.info(f"Reset donation counts for {len(users)} users")
        return len(users)
