"""
NGO profiles and the needs they publish.

Needs live inside the profile document as a mapping keyed by need id, so a
single need can be addressed (and atomically incremented) with a dotted path
like "needs.<id>.current_amount".
"""

import logging
from typing import Any, Dict, List

from bson import ObjectId
from pydantic import ValidationError as PydanticValidationError
from pymongo.errors import DuplicateKeyError

from database import Database, NEWEST_FIRST, oid
from errors import ConflictError, ForbiddenError, NotFoundError, ValidationError, describe
from schemas import NGOProfile, Need

logger = logging.getLogger(__name__)

PROFILES = "ngoprofile"

PROFILE_FIELDS = ("organization_name", "description", "location", "contact_info", "logo", "is_public")
NEED_FIELDS = ("type", "title", "description", "target_amount", "urgency", "is_active")


def present(profile: dict) -> dict:
    """API view of a profile: needs as a list in the order they were added."""
    out = dict(profile)
    out["needs"] = list((profile.get("needs") or {}).values())
    return out


def need_title(need_type: str) -> str:
    return f"{need_type[:1].upper()}{need_type[1:]} Need"


class NGOProfileService:
    def __init__(self, database: Database):
        self.db = database

    # ------------------------------------
    # Profiles
    # ------------------------------------
    def create(self, ngo_user: dict, attrs: Dict[str, Any]) -> dict:
        if ngo_user.get("user_type") != "ngo":
            raise ForbiddenError("Only NGOs can create profiles")
        ngo_id = oid(ngo_user["_id"])
        if self.db.find_one(PROFILES, {"ngo_id": ngo_id}):
            raise ConflictError("NGO profile already exists")
        fields = {k: v for k, v in attrs.items() if k in PROFILE_FIELDS and v is not None}
        try:
            profile = NGOProfile(ngo_id=ngo_id, **fields)
        except PydanticValidationError as e:
            raise ValidationError(describe(e))
        try:
            profile_id = self.db.create_document(PROFILES, profile)
        except DuplicateKeyError:
            raise ConflictError("NGO profile already exists")
        logger.info(f"NGO profile {profile_id} created for {ngo_id}")
        return self.db.find_by_id(PROFILES, profile_id)

    def get(self, profile_id: str) -> dict:
        profile = self.db.find_by_id(PROFILES, profile_id)
        if not profile:
            raise NotFoundError("NGO profile not found")
        return profile

    def get_by_owner(self, ngo_id: str) -> dict:
        profile = self.db.find_one(PROFILES, {"ngo_id": oid(ngo_id)})
        if not profile:
            raise NotFoundError("NGO profile not found")
        return profile

    def list_public(self) -> List[dict]:
        return self.db.get_documents(PROFILES, {"is_public": True}, sort=NEWEST_FIRST)

    def update(self, profile_id: str, acting_user_id: str, patch: Dict[str, Any]) -> dict:
        profile = self._owned(profile_id, acting_user_id, "You can only update your own profile")
        locked = sorted(set(patch) - set(PROFILE_FIELDS))
        if locked:
            raise ValidationError(f"Fields cannot be changed: {', '.join(locked)}")
        if not patch:
            return profile
        merged = {k: v for k, v in profile.items() if k in NGOProfile.model_fields}
        merged.update(patch)
        try:
            validated = NGOProfile(**merged)
        except PydanticValidationError as e:
            raise ValidationError(describe(e))
        values = validated.model_dump(include=set(patch))
        return self.db.update_where(PROFILES, {"_id": profile["_id"]}, {"$set": values})

    # ------------------------------------
    # Needs
    # ------------------------------------
    def add_need(self, profile_id: str, acting_user_id: str, attrs: Dict[str, Any]) -> dict:
        profile = self._owned(profile_id, acting_user_id, "You can only add needs to your own profile")
        fields = {k: v for k, v in attrs.items() if k in NEED_FIELDS and v is not None}
        fields.pop("is_active", None)
        if isinstance(fields.get("type"), str) and not fields.get("title"):
            fields["title"] = need_title(fields["type"])
        need = self._validate_need(fields)

        need_id = str(ObjectId())
        doc = {"_id": need_id, **need.model_dump(), "created_at": self.db.clock()}
        updated = self.db.update_where(PROFILES, {"_id": profile["_id"]}, {"$set": {f"needs.{need_id}": doc}})
        logger.info(f"Need {need_id} ({need.type}) added to profile {profile_id}")
        return updated

    def get_need(self, profile: dict, need_id: str) -> dict:
        need = (profile.get("needs") or {}).get(str(need_id))
        if need is None:
            raise NotFoundError("Need not found")
        return need

    def update_need(self, profile_id: str, need_id: str, acting_user_id: str, patch: Dict[str, Any]) -> dict:
        profile = self._owned(profile_id, acting_user_id, "You can only update your own profile needs")
        need = self.get_need(profile, need_id)
        locked = sorted(set(patch) - set(NEED_FIELDS))
        if locked:
            raise ValidationError(f"Fields cannot be changed: {', '.join(locked)}")
        changes = {k: v for k, v in patch.items() if v is not None}
        if not changes:
            return profile
        merged = {k: v for k, v in need.items() if k in Need.model_fields}
        merged.update(changes)
        validated = self._validate_need(merged)

        keys = set(changes)
        if "type" in changes:
            keys.add("target_amount")
        values = {f"needs.{need_id}.{k}": getattr(validated, k) for k in keys}
        updated = self.db.update_where(
            PROFILES,
            {"_id": profile["_id"], f"needs.{need_id}": {"$exists": True}},
            {"$set": values},
        )
        if updated is None:
            raise NotFoundError("Need not found")
        return updated

    def delete_need(self, profile_id: str, need_id: str, acting_user_id: str) -> dict:
        profile = self._owned(profile_id, acting_user_id, "You can only delete your own profile needs")
        self.get_need(profile, need_id)
        updated = self.db.update_where(
            PROFILES,
            {"_id": profile["_id"], f"needs.{need_id}": {"$exists": True}},
            {"$unset": {f"needs.{need_id}": ""}},
        )
        if updated is None:
            raise NotFoundError("Need not found")
        logger.info(f"Need {need_id} removed from profile {profile_id}")
        return updated

    # ------------------------------------
    # Helpers
    # ------------------------------------
    def _owned(self, profile_id: str, acting_user_id: str, message: str) -> dict:
        profile = self.get(profile_id)
        if oid(profile.get("ngo_id")) != oid(acting_user_id):
            raise ForbiddenError(message)
        return profile

    @staticmethod
    def _validate_need(fields: Dict[str, Any]) -> Need:
        try:
            need = Need(**fields)
        except PydanticValidationError as e:
            raise ValidationError(describe(e))
        if need.type == "money" and need.target_amount is None:
            raise ValidationError("Target amount is required for money needs")
        if need.type != "money":
            need.target_amount = None
        return need
