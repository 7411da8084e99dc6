"""
Money pledges against NGO needs.

Payments are mocked: every pledge is recorded as completed. The ledger entry
is written first and is the source of truth; the running totals on the need,
the profile and the donor are derived from it and can always be rebuilt with
reconcile().
"""

import logging
import math
import secrets
import string
import time
from typing import Any, Dict, List, Optional

from pymongo.errors import DuplicateKeyError

from database import Database, NEWEST_FIRST, oid, parse_id
from errors import ForbiddenError, NotFoundError, ValidationError, best_effort
from ngo_profiles import NGOProfileService
from schemas import PAYMENT_METHODS, MoneyDonation

logger = logging.getLogger(__name__)

LEDGER = "moneydonation"
PROFILES = "ngoprofile"
USERS = "user"

MIN_AMOUNT = 1
MAX_MESSAGE_LENGTH = 300
TXN_ALPHABET = string.ascii_lowercase + string.digits
TXN_ATTEMPTS = 3


def generate_transaction_id() -> str:
    suffix = "".join(secrets.choice(TXN_ALPHABET) for _ in range(9))
    return f"TXN_{int(time.time() * 1000)}_{suffix}"


def parse_amount(amount: Any) -> float:
    if isinstance(amount, bool):
        raise ValidationError("Please enter a valid donation amount (minimum $1)")
    try:
        value = float(amount)
    except (TypeError, ValueError):
        raise ValidationError("Please enter a valid donation amount (minimum $1)")
    if not math.isfinite(value) or value < MIN_AMOUNT:
        raise ValidationError("Please enter a valid donation amount (minimum $1)")
    return value


class MoneyDonationLedger:
    def __init__(self, database: Database, profiles: NGOProfileService):
        self.db = database
        self.profiles = profiles

    def donate(
        self,
        donor_user_id: str,
        ngo_profile_id: str,
        need_id: str,
        amount: Any,
        payment_method: str,
        message: Optional[str] = None,
    ) -> Dict[str, Any]:
        amount = parse_amount(amount)
        if payment_method not in PAYMENT_METHODS:
            raise ValidationError("Please select a valid payment method")
        message = (message or "").strip()
        if len(message) > MAX_MESSAGE_LENGTH:
            raise ValidationError(f"Message cannot exceed {MAX_MESSAGE_LENGTH} characters")

        donor = self.db.find_by_id(USERS, donor_user_id)
        if not donor:
            raise NotFoundError("User not found")
        profile = self.profiles.get(ngo_profile_id)
        if oid(profile.get("ngo_id")) == oid(donor["_id"]):
            raise ForbiddenError("You cannot donate to yourself")
        need = self.profiles.get_need(profile, need_id)
        if need.get("type") != "money":
            raise ValidationError("This need is not for money donations")

        entry = self._record(donor, profile, str(need_id), amount, payment_method, message)
        logger.info(
            f"Money donation {entry['transaction_id']}: {amount:g} from {entry['donor_id']} "
            f"to profile {entry['ngo_profile_id']} need {entry['need_id']}"
        )
        if self.apply_counters(entry):
            entry["counters_applied"] = True
        return {"donation": entry, "transaction_id": entry["transaction_id"]}

    def apply_counters(self, entry: dict) -> bool:
        """Push one ledger entry into the derived totals. Failures are logged, not raised."""
        profile_ok = best_effort("need/profile totals update", self._increment_profile, entry)
        donor_ok = best_effort("donor total update", self._increment_donor, entry)
        if not (profile_ok and donor_ok):
            logger.warning(f"Ledger entry {entry['transaction_id']} awaits reconciliation")
            return False
        self.db.update_where(LEDGER, {"_id": entry["_id"]}, {"$set": {"counters_applied": True}})
        return True

    def list_for_ngo(self, ngo_id: str) -> List[dict]:
        return self.db.get_documents(LEDGER, {"ngo_id": oid(ngo_id)}, sort=NEWEST_FIRST)

    def list_for_donor(self, donor_id: str) -> List[dict]:
        return self.db.get_documents(LEDGER, {"donor_id": oid(donor_id)}, sort=NEWEST_FIRST)

    def reconcile(self) -> Dict[str, int]:
        """Rebuild every derived money total from completed ledger entries."""
        need_totals: Dict[tuple, float] = {}
        profile_totals: Dict[str, float] = {}
        rows = self.db.aggregate(
            LEDGER,
            [
                {"$match": {"status": "completed"}},
                {
                    "$group": {
                        "_id": {"profile": "$ngo_profile_id", "need": "$need_id"},
                        "total": {"$sum": "$amount"},
                    }
                },
            ],
        )
        for row in rows:
            profile_id, need_id = oid(row["_id"]["profile"]), oid(row["_id"]["need"])
            need_totals[(profile_id, need_id)] = row["total"]
            profile_totals[profile_id] = profile_totals.get(profile_id, 0) + row["total"]

        profiles = self.db.get_documents(PROFILES, {})
        for profile in profiles:
            profile_id = oid(profile["_id"])
            values = {"total_donations_received": profile_totals.get(profile_id, 0)}
            for need_id, need in (profile.get("needs") or {}).items():
                if need.get("type") == "money":
                    values[f"needs.{need_id}.current_amount"] = need_totals.get((profile_id, need_id), 0)
            self.db.update_where(PROFILES, {"_id": profile["_id"]}, {"$set": values})

        donor_rows = self.db.aggregate(
            LEDGER,
            [
                {"$match": {"status": "completed"}},
                {"$group": {"_id": "$donor_id", "total": {"$sum": "$amount"}}},
            ],
        )
        donor_totals = {oid(row["_id"]): row["total"] for row in donor_rows}
        users = self.db.get_documents(USERS, {})
        for user in users:
            self.db.update_where(
                USERS,
                {"_id": user["_id"]},
                {"$set": {"total_money_donated": donor_totals.get(oid(user["_id"]), 0)}},
            )

        self.db.update_many(LEDGER, {"counters_applied": {"$ne": True}}, {"$set": {"counters_applied": True}})
        logger.info(f"Reconciled money totals for {len(profiles)} profiles and {len(users)} users")
        return {"profiles": len(profiles), "users": len(users)}

    # ------------------------------------
    # Helpers
    # ------------------------------------
    def _record(self, donor: dict, profile: dict, need_id: str, amount: float, payment_method: str, message: str) -> dict:
        for attempt in range(TXN_ATTEMPTS):
            entry = MoneyDonation(
                donor_id=oid(donor["_id"]),
                donor_name=donor.get("name", ""),
                donor_email=donor.get("email", ""),
                ngo_id=oid(profile["ngo_id"]),
                ngo_profile_id=oid(profile["_id"]),
                need_id=need_id,
                amount=amount,
                message=message,
                payment_method=payment_method,
                transaction_id=generate_transaction_id(),
            )
            try:
                entry_id = self.db.create_document(LEDGER, entry)
            except DuplicateKeyError:
                logger.warning(f"Transaction id collision on attempt {attempt + 1}, regenerating")
                continue
            return self.db.find_by_id(LEDGER, entry_id)
        raise RuntimeError("Could not allocate a unique transaction id")

    def _increment_profile(self, entry: dict) -> dict:
        need_id = entry["need_id"]
        doc = self.db.update_where(
            PROFILES,
            {"_id": parse_id(entry["ngo_profile_id"]), f"needs.{need_id}": {"$exists": True}},
            {"$inc": {f"needs.{need_id}.current_amount": entry["amount"], "total_donations_received": entry["amount"]}},
        )
        if doc is None:
            raise NotFoundError(f"Need {need_id} on profile {entry['ngo_profile_id']} disappeared")
        return doc

    def _increment_donor(self, entry: dict) -> dict:
        doc = self.db.increment(USERS, entry["donor_id"], {"total_money_donated": entry["amount"]})
        if doc is None:
            raise NotFoundError(f"Donor {entry['donor_id']} disappeared")
        return doc
