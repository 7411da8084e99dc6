"""
In-app notifications.

Notifications are only ever written as a side effect of a donation changing
state; users can read, mark and delete their own.
"""

import logging
import math
from typing import Optional

from database import Database, NEWEST_FIRST, oid, parse_id
from errors import NotFoundError
from schemas import Notification, NotificationData

logger = logging.getLogger(__name__)

COLLECTION = "notification"

RATING_LABELS = {
    1: "Poor",
    2: "Fair",
    3: "Good",
    4: "Very Good",
    5: "Excellent",
}


def claimed_message(donation: dict, claimer_name: str):
    title = "🎉 Your donation has been claimed!"
    message = (
        f'Great news! {claimer_name} has claimed your "{donation.get("title")}" donation. '
        f"They will be in touch for pickup arrangements."
    )
    return title, message


def feedback_message(donation: dict, claimer_name: str, rating: int, comment: Optional[str]):
    title = f"⭐ New feedback from {claimer_name}!"
    label = RATING_LABELS.get(rating, str(rating))
    message = f'You received a {label} ({rating}/5) rating for your "{donation.get("title")}" donation.'
    if comment:
        message += f' They also left a comment: "{comment}"'
    return title, message


def completed_message(donation: dict):
    title = "✅ Donation completed successfully!"
    message = (
        f'Your "{donation.get("title")}" donation has been successfully completed and distributed. '
        f"Thank you for making a difference!"
    )
    return title, message


def verification_approved_message():
    title = "🎉 Verification Approved!"
    message = "Congratulations! Your NGO has been verified. You now have a blue verification badge."
    return title, message


def verification_rejected_message(reason: str):
    title = "❌ Verification Rejected"
    message = f"Your verification request has been rejected. Reason: {reason}"
    return title, message


class NotificationService:
    def __init__(self, database: Database):
        self.db = database

    def emit(self, user_id: str, notification_type: str, title: str, message: str, data: Optional[dict] = None) -> str:
        notification = Notification(
            user_id=oid(user_id),
            type=notification_type,
            title=title,
            message=message,
            data=NotificationData(**(data or {})),
        )
        notification_id = self.db.create_document(COLLECTION, notification)
        logger.debug(f"Notification {notification_type} stored for user {user_id}")
        return notification_id

    # ------------------------------------
    # Recipient queries
    # ------------------------------------
    def list_for_user(self, user_id: str, page: int = 1, limit: int = 20, unread_only: bool = False) -> dict:
        page = max(page, 1)
        limit = max(limit, 1)
        query = {"user_id": oid(user_id)}
        if unread_only:
            query["read"] = False
        items = self.db.get_documents(COLLECTION, query, limit=limit, sort=NEWEST_FIRST, skip=(page - 1) * limit)
        total = self.db.count(COLLECTION, query)
        return {
            "notifications": items,
            "pagination": {
                "current_page": page,
                "total_pages": math.ceil(total / limit),
                "total_notifications": total,
                "unread_count": self.unread_count(user_id),
            },
        }

    def unread_count(self, user_id: str) -> int:
        return self.db.count(COLLECTION, {"user_id": oid(user_id), "read": False})

    def mark_read(self, user_id: str, notification_id: str) -> dict:
        doc = self.db.update_where(
            COLLECTION,
            self._owned(user_id, notification_id),
            {"$set": {"read": True, "read_at": self.db.clock()}},
        )
        if not doc:
            raise NotFoundError("Notification not found")
        return doc

    def mark_all_read(self, user_id: str) -> int:
        return self.db.update_many(
            COLLECTION,
            {"user_id": oid(user_id), "read": False},
            {"$set": {"read": True, "read_at": self.db.clock()}},
        )

    def delete(self, user_id: str, notification_id: str):
        if not self.db.delete_where(COLLECTION, self._owned(user_id, notification_id)):
            raise NotFoundError("Notification not found")

    def clear_all(self, user_id: str) -> int:
        return self.db.delete_where(COLLECTION, {"user_id": oid(user_id)})

    def _owned(self, user_id: str, notification_id: str) -> dict:
        _id = parse_id(notification_id)
        if _id is None:
            raise NotFoundError("Notification not found")
        return {"_id": _id, "user_id": oid(user_id)}
