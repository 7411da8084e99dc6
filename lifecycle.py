"""
Donation lifecycle.

    available --claim--> claimed --complete--> completed
        |
        +--(expiry date passes, swept)--> expired

completed and expired are terminal. Every transition is a single conditional
update keyed on the current status, so concurrent requests cannot both win.
Notifications and donor counters are secondary effects: they are attempted
after the transition and a failure there is logged, never reported.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from database import Database, NEWEST_FIRST, oid, parse_id
from errors import ConflictError, ForbiddenError, NotFoundError, ValidationError, best_effort, describe
from notifications import NotificationService, claimed_message, completed_message, feedback_message
from ratings import RatingAggregator
from schemas import DONOR_TYPES, Donation, Feedback
from sweeper import ExpirySweeper

logger = logging.getLogger(__name__)

DONATIONS = "donation"
USERS = "user"

# Fields a donor supplies; everything else on a donation is owned by the lifecycle.
EDITABLE_FIELDS = (
    "title",
    "description",
    "category",
    "quantity",
    "location",
    "expiry_date",
    "pickup_instructions",
    "contact_phone",
    "image",
)

FEEDBACK_STATUSES = ["claimed", "completed"]
TOGGLE_ATTEMPTS = 5


def to_utc_naive(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def clean_fields(attrs: Dict[str, Any]) -> Dict[str, Any]:
    fields = {}
    for key in EDITABLE_FIELDS:
        if key not in attrs:
            continue
        value = attrs[key]
        if isinstance(value, str):
            value = value.strip()
            if key == "category":
                value = value.lower()
            if key in ("expiry_date", "pickup_instructions", "contact_phone", "image") and value == "":
                value = None
        fields[key] = value
    return fields


class DonationLifecycle:
    def __init__(
        self,
        database: Database,
        notifier: NotificationService,
        ratings: RatingAggregator,
        sweeper: ExpirySweeper,
    ):
        self.db = database
        self.notifier = notifier
        self.ratings = ratings
        self.sweeper = sweeper

    # ------------------------------------
    # Creation and edits
    # ------------------------------------
    def create(self, donor: dict, attrs: Dict[str, Any]) -> dict:
        if donor.get("user_type") not in DONOR_TYPES:
            raise ForbiddenError("Only donors can create donations")
        fields = clean_fields(attrs)
        try:
            donation = Donation(
                **fields,
                donor_id=oid(donor["_id"]),
                donor_name=donor.get("name", ""),
                donor_type=donor["user_type"],
            )
        except PydanticValidationError as e:
            raise ValidationError(describe(e))
        donation.expiry_date = to_utc_naive(donation.expiry_date)
        self._check_expiry(donation.expiry_date)

        donation_id = self.db.create_document(DONATIONS, donation)
        logger.info(f"Donation {donation_id} created by {donation.donor_id} ({donation.category})")
        return self.db.find_by_id(DONATIONS, donation_id)

    def update(self, donation_id: str, patch: Dict[str, Any], require_status: Optional[str] = None) -> dict:
        """Patch the descriptive fields of a donation."""
        current = self.get(donation_id)
        locked = sorted(set(patch) - set(EDITABLE_FIELDS))
        if locked:
            raise ValidationError(f"Fields cannot be changed: {', '.join(locked)}")
        changes = clean_fields(patch)
        if not changes:
            return current

        merged = {k: v for k, v in current.items() if k in Donation.model_fields}
        merged.update(changes)
        try:
            validated = Donation(**merged)
        except PydanticValidationError as e:
            raise ValidationError(describe(e))
        values = {key: getattr(validated, key) for key in changes}
        if "expiry_date" in values:
            values["expiry_date"] = to_utc_naive(values["expiry_date"])
            self._check_expiry(values["expiry_date"])

        doc = self.db.update_where(DONATIONS, self._guard(current["_id"], require_status), {"$set": values})
        if doc is None:
            self._raise_guard_failure(donation_id, require_status)
        return doc

    def delete(self, donation_id: str, require_status: Optional[str] = None):
        current = self.get(donation_id)
        if not self.db.delete_where(DONATIONS, self._guard(current["_id"], require_status)):
            self._raise_guard_failure(donation_id, require_status)
        logger.info(f"Donation {donation_id} deleted")

    # ------------------------------------
    # Transitions
    # ------------------------------------
    def claim(self, donation_id: str, claimer_id: str, claimer_name: str) -> dict:
        _id = self._require_id(donation_id)
        claimer_id = oid(claimer_id)
        now = self.db.clock()
        doc = self.db.update_where(
            DONATIONS,
            {
                "_id": _id,
                "status": "available",
                "donor_id": {"$ne": claimer_id},
                "$or": [{"expiry_date": None}, {"expiry_date": {"$gt": now}}],
            },
            {
                "$set": {
                    "status": "claimed",
                    "claimer_id": claimer_id,
                    "claimer_name": claimer_name,
                    "claimed_at": now,
                }
            },
        )
        if doc is None:
            current = self.get(donation_id)
            if oid(current.get("donor_id")) == claimer_id:
                raise ForbiddenError("You cannot claim your own donation")
            if current.get("status") == "available" and self._is_past_expiry(current, now):
                self.sweeper.sweep()
                raise ConflictError("This donation has expired")
            raise ConflictError("This donation is no longer available")

        logger.info(f"Donation {donation_id} claimed by {claimer_id}")
        title, message = claimed_message(doc, claimer_name)
        best_effort(
            "donation_claimed notification",
            self.notifier.emit,
            doc["donor_id"],
            "donation_claimed",
            title,
            message,
            {"donation_id": oid(doc["_id"]), "claimer_id": claimer_id, "claimer_name": claimer_name},
        )
        best_effort("donations_count increment", self._count_claimed_donation, doc["donor_id"])
        return doc

    def complete(self, donation_id: str) -> dict:
        _id = self._require_id(donation_id)
        doc = self.db.update_where(
            DONATIONS,
            {"_id": _id, "status": "claimed"},
            {"$set": {"status": "completed", "completed_at": self.db.clock()}},
        )
        if doc is None:
            self.get(donation_id)
            raise ConflictError("Only claimed donations can be marked as completed")

        logger.info(f"Donation {donation_id} completed")
        title, message = completed_message(doc)
        best_effort(
            "donation_completed notification",
            self.notifier.emit,
            doc["donor_id"],
            "donation_completed",
            title,
            message,
            {"donation_id": oid(doc["_id"]), "claimer_id": doc.get("claimer_id"), "claimer_name": doc.get("claimer_name")},
        )
        return doc

    def submit_feedback(self, donation_id: str, acting_user_id: str, rating: Any, comment: Optional[str] = None) -> dict:
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValidationError("Rating must be an integer between 1 and 5")
        comment = comment.strip() if isinstance(comment, str) else None
        try:
            feedback = Feedback(ngo_rating=rating, ngo_comment=comment or None, feedback_date=self.db.clock())
        except PydanticValidationError as e:
            raise ValidationError(describe(e))

        acting_user_id = oid(acting_user_id)
        current = self.get(donation_id)
        if current.get("status") not in FEEDBACK_STATUSES:
            raise ConflictError("Feedback can only be given for claimed or completed donations")
        if oid(current.get("claimer_id")) != acting_user_id:
            raise ForbiddenError("Only the NGO that claimed this donation can leave feedback")
        if (current.get("feedback") or {}).get("ngo_rating"):
            raise ConflictError("Feedback has already been submitted for this donation")

        doc = self.db.update_where(
            DONATIONS,
            {
                "_id": current["_id"],
                "status": {"$in": FEEDBACK_STATUSES},
                "claimer_id": acting_user_id,
                "feedback": None,
            },
            {"$set": {"feedback": feedback.model_dump()}},
        )
        if doc is None:
            raise ConflictError("Feedback has already been submitted for this donation")

        logger.info(f"Feedback {rating}/5 recorded on donation {donation_id}")
        best_effort("rating update", self.ratings.apply_rating, doc["donor_id"], rating)
        claimer_name = doc.get("claimer_name") or "An NGO"
        title, message = feedback_message(doc, claimer_name, rating, feedback.ngo_comment)
        best_effort(
            "feedback_received notification",
            self.notifier.emit,
            doc["donor_id"],
            "feedback_received",
            title,
            message,
            {
                "donation_id": oid(doc["_id"]),
                "claimer_id": acting_user_id,
                "claimer_name": claimer_name,
                "rating": rating,
                "feedback": feedback.ngo_comment,
            },
        )
        return doc

    def toggle_like(self, donation_id: str, user_id: str) -> Tuple[dict, bool]:
        """Like or unlike. Returns the updated donation and whether the user now likes it."""
        _id = self._require_id(donation_id)
        user_id = oid(user_id)
        for _ in range(TOGGLE_ATTEMPTS):
            doc = self.db.update_where(
                DONATIONS,
                {"_id": _id, "liked_by": {"$nin": [user_id]}},
                {"$addToSet": {"liked_by": user_id}, "$inc": {"likes": 1}},
            )
            if doc is not None:
                return doc, True
            doc = self.db.update_where(
                DONATIONS,
                {"_id": _id, "liked_by": user_id},
                {"$pull": {"liked_by": user_id}, "$inc": {"likes": -1}},
            )
            if doc is not None:
                return doc, False
            # Missing, or another toggle by the same user slipped in between; retry.
            self.get(donation_id)
        raise ConflictError("Could not update like, please retry")

    # ------------------------------------
    # Reads
    # ------------------------------------
    def list_available(self, category: Optional[str] = None, skip: int = 0, limit: Optional[int] = None) -> List[dict]:
        self.sweeper.sweep()
        return self.query_available(category=category, skip=skip, limit=limit)

    def query_available(self, category: Optional[str] = None, skip: int = 0, limit: Optional[int] = None) -> List[dict]:
        query: Dict[str, Any] = {"status": "available"}
        if category:
            query["category"] = category.lower()
        return self.db.get_documents(DONATIONS, query, limit=limit, sort=NEWEST_FIRST, skip=skip)

    def get(self, donation_id: str) -> dict:
        doc = self.db.find_by_id(DONATIONS, donation_id)
        if not doc:
            raise NotFoundError("Donation not found")
        return doc

    def list_by_donor(self, donor_id: str) -> List[dict]:
        return self.db.get_documents(DONATIONS, {"donor_id": oid(donor_id)}, sort=NEWEST_FIRST)

    def list_claimed_by(self, user_id: str) -> List[dict]:
        return self.db.get_documents(
            DONATIONS,
            {"claimer_id": oid(user_id)},
            sort=[("claimed_at", -1), ("_id", -1)],
        )

    def donor_profile(self, donor_id: str) -> dict:
        donor = self.db.find_by_id(USERS, donor_id)
        if not donor:
            raise NotFoundError("Donor not found")
        donor_id = oid(donor["_id"])
        reviews = self.db.get_documents(
            DONATIONS,
            {"donor_id": donor_id, "feedback.ngo_rating": {"$gte": 1}},
            sort=[("feedback.feedback_date", -1), ("_id", -1)],
        )
        completed = self.db.count(DONATIONS, {"donor_id": donor_id, "status": "completed"})
        return {
            "donor": {
                "_id": donor_id,
                "name": donor.get("name"),
                "user_type": donor.get("user_type"),
                "is_verified": donor.get("is_verified", False),
                "average_rating": donor.get("average_rating", 0),
                "total_ratings": donor.get("total_ratings", 0),
                "donations_count": donor.get("donations_count", 0),
                "completed_donations_count": completed,
                "total_money_donated": donor.get("total_money_donated", 0),
                "created_at": donor.get("created_at"),
            },
            "reviews": reviews,
            "review_count": len(reviews),
        }

    # ------------------------------------
    # Helpers
    # ------------------------------------
    def _count_claimed_donation(self, donor_id: str):
        if self.db.increment(USERS, donor_id, {"donations_count": 1}) is None:
            raise NotFoundError(f"Donor {donor_id} not found")

    def _check_expiry(self, expiry_date: Optional[datetime]):
        if expiry_date is not None and expiry_date <= self.db.clock():
            raise ValidationError("Expiry date must be in the future")

    @staticmethod
    def _is_past_expiry(doc: dict, now: datetime) -> bool:
        expiry = doc.get("expiry_date")
        return expiry is not None and expiry <= now

    @staticmethod
    def _require_id(donation_id: str):
        _id = parse_id(donation_id)
        if _id is None:
            raise NotFoundError("Donation not found")
        return _id

    @staticmethod
    def _guard(_id, require_status: Optional[str]) -> dict:
        query: Dict[str, Any] = {"_id": _id}
        if require_status:
            query["status"] = require_status
        return query

    def _raise_guard_failure(self, donation_id: str, require_status: Optional[str]):
        self.get(donation_id)
        raise ConflictError(f"Only {require_status} donations can be changed")
