"""
Admin moderation: NGO verification and the dashboard counters.

Only NGO accounts carry a verification badge. Approving stamps who verified
the NGO and when; rejecting clears any earlier approval. Either way the NGO is
told through a best-effort notification.
"""

import logging
import math
from typing import Any, Dict, Optional

from pymongo import DESCENDING

from database import Database, oid
from errors import NotFoundError, ValidationError, best_effort
from notifications import NotificationService, verification_approved_message, verification_rejected_message

logger = logging.getLogger(__name__)

USERS = "user"
DONATIONS = "donation"
LEDGER = "moneydonation"

NGO_FIELDS = ("_id", "name", "email", "phone", "is_verified", "verified_at", "verified_by", "created_at")
MAX_REASON_LENGTH = 500


def ngo_summary(user: dict) -> dict:
    return {key: user.get(key) for key in NGO_FIELDS}


class ModerationService:
    def __init__(self, database: Database, notifier: NotificationService):
        self.db = database
        self.notifier = notifier

    def stats(self) -> Dict[str, int]:
        return {
            "pending_verifications": self.db.count(USERS, {"user_type": "ngo", "is_verified": {"$ne": True}}),
            "verified_ngos": self.db.count(USERS, {"user_type": "ngo", "is_verified": True}),
            "total_users": self.db.count(USERS),
            "total_donations": self.db.count(DONATIONS),
            "total_money_donations": self.db.count(LEDGER, {"status": "completed"}),
        }

    def list_pending(self, page: int = 1, limit: int = 10) -> dict:
        return self._page(
            {"user_type": "ngo", "is_verified": {"$ne": True}},
            [("created_at", DESCENDING), ("_id", DESCENDING)],
            page,
            limit,
        )

    def list_verified(self, page: int = 1, limit: int = 10) -> dict:
        return self._page(
            {"user_type": "ngo", "is_verified": True},
            [("verified_at", DESCENDING), ("_id", DESCENDING)],
            page,
            limit,
        )

    def approve(self, ngo_id: str, admin_id: str) -> dict:
        ngo = self._require_ngo(ngo_id)
        doc = self.db.update_where(
            USERS,
            {"_id": ngo["_id"], "user_type": "ngo"},
            {"$set": {"is_verified": True, "verified_at": self.db.clock(), "verified_by": oid(admin_id)}},
        )
        if doc is None:
            raise NotFoundError("NGO not found")
        logger.info(f"NGO {ngo_id} verified by admin {admin_id}")

        title, message = verification_approved_message()
        best_effort(
            "verification_approved notification",
            self.notifier.emit,
            oid(doc["_id"]),
            "verification_approved",
            title,
            message,
        )
        return ngo_summary(doc)

    def reject(self, ngo_id: str, admin_id: str, reason: Optional[str]) -> dict:
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A reason is required to reject a verification")
        if len(reason) > MAX_REASON_LENGTH:
            raise ValidationError(f"Reason cannot exceed {MAX_REASON_LENGTH} characters")
        ngo = self._require_ngo(ngo_id)
        doc = self.db.update_where(
            USERS,
            {"_id": ngo["_id"], "user_type": "ngo"},
            {"$set": {"is_verified": False, "verified_at": None, "verified_by": None}},
        )
        if doc is None:
            raise NotFoundError("NGO not found")
        logger.info(f"NGO {ngo_id} verification rejected by admin {admin_id}")

        title, message = verification_rejected_message(reason)
        best_effort(
            "verification_rejected notification",
            self.notifier.emit,
            oid(doc["_id"]),
            "verification_rejected",
            title,
            message,
            {"reason": reason},
        )
        return ngo_summary(doc)

    # ------------------------------------
    # Helpers
    # ------------------------------------
    def _require_ngo(self, ngo_id: str) -> dict:
        user = self.db.find_by_id(USERS, ngo_id)
        if not user:
            raise NotFoundError("NGO not found")
        if user.get("user_type") != "ngo":
            raise ValidationError("User is not an NGO")
        return user

    def _page(self, query: Dict[str, Any], sort, page: int, limit: int) -> dict:
        page = max(page, 1)
        limit = max(limit, 1)
        users = self.db.get_documents(USERS, query, limit=limit, sort=sort, skip=(page - 1) * limit)
        total = self.db.count(USERS, query)
        total_pages = math.ceil(total / limit)
        return {
            "ngos": [ngo_summary(u) for u in users],
            "pagination": {
                "current_page": page,
                "total_pages": total_pages,
                "total_count": total,
                "has_next": page < total_pages,
                "has_prev": page > 1,
            },
        }
