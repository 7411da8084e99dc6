import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from datetime import datetime
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field
from pymongo.errors import DuplicateKeyError

import config
from auth import (
    Token,
    check_password,
    get_current_user,
    hash_password,
    issue_token,
    public_user,
    require_role,
)
from database import Database, oid, parse_id, serialize
from errors import AhaarError, ConflictError, ForbiddenError, describe
from ledger import MoneyDonationLedger
from lifecycle import DonationLifecycle
from moderation import ModerationService
from ngo_profiles import NGOProfileService, present
from notifications import NotificationService
from ratings import RatingAggregator
from schemas import User as UserSchema
from sweeper import ExpirySweeper

logger = logging.getLogger(__name__)


def setup_logging(level: str = config.LOG_LEVEL):
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=[logging.StreamHandler()],
    )
    # Quiet down the driver
    logging.getLogger("pymongo").setLevel(logging.WARNING)


class Services:
    """Everything a request handler needs, wired to one Database."""

    def __init__(self, database: Database):
        self.database = database
        self.notifications = NotificationService(database)
        self.ratings = RatingAggregator(database)
        self.sweeper = ExpirySweeper(database)
        self.donations = DonationLifecycle(database, self.notifications, self.ratings, self.sweeper)
        self.profiles = NGOProfileService(database)
        self.ledger = MoneyDonationLedger(database, self.profiles)
        self.moderation = ModerationService(database, self.notifications)


def get_services(request: Request) -> Services:
    return request.app.state.services


# ------------------------------------
# Payloads
# ------------------------------------
class RegisterPayload(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=6)
    name: str = Field(..., min_length=1)
    phone: Optional[str] = None
    user_type: Literal["individual", "restaurant", "ngo"] = "individual"


class LoginPayload(BaseModel):
    email: EmailStr
    password: str


class UserUpdatePayload(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    phone: Optional[str] = None


class DonationPayload(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    quantity: Optional[str] = None
    location: Optional[str] = None
    expiry_date: Optional[datetime] = None
    pickup_instructions: Optional[str] = None
    contact_phone: Optional[str] = None
    image: Optional[str] = None


class ClaimPayload(BaseModel):
    claimer_id: Optional[str] = None
    claimer_name: Optional[str] = None


class FeedbackPayload(BaseModel):
    rating: int
    comment: Optional[str] = None


class ContactInfoPayload(BaseModel):
    phone: Optional[str] = None
    email: Optional[str] = None
    website: Optional[str] = None


class ProfilePayload(BaseModel):
    organization_name: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    contact_info: Optional[ContactInfoPayload] = None
    logo: Optional[str] = None
    is_public: Optional[bool] = None


class NeedPayload(BaseModel):
    type: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    target_amount: Optional[float] = Field(None, allow_inf_nan=False)
    urgency: Optional[str] = None
    is_active: Optional[bool] = None


class MoneyDonationPayload(BaseModel):
    amount: float = Field(..., allow_inf_nan=False)
    payment_method: str
    message: Optional[str] = None


class RejectionPayload(BaseModel):
    reason: Optional[str] = None


router = APIRouter()


# ------------------------------------
# Health & Test
# ------------------------------------
@router.get("/")
def read_root():
    return {"message": "Ahaar API running"}


@router.get("/test")
def test_database(services: Services = Depends(get_services)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
    }
    database = services.database
    try:
        if database.connected:
            response["database"] = "✅ Available"
            response["database_name"] = database.name
            response["connection_status"] = "Connected"
            response["collections"] = database.list_collection_names()
            response["database"] = "✅ Connected & Working"
    except Exception as e:
        response["database"] = f"⚠️ Connected but Error: {str(e)[:80]}"
    return response


# ------------------------------------
# Auth & Registration
# ------------------------------------
@router.post("/auth/register", response_model=Token)
def register(payload: RegisterPayload, services: Services = Depends(get_services)):
    database = services.database
    if database.find_one("user", {"email": payload.email}):
        raise HTTPException(status_code=409, detail="Email already registered")
    user_doc = UserSchema(
        email=payload.email,
        password_hash=hash_password(payload.password),
        name=payload.name,
        phone=payload.phone,
        user_type=payload.user_type,
        last_login=database.clock(),
    )
    try:
        user_id = database.create_document("user", user_doc)
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="Email already registered")
    logger.info(f"Registered {payload.user_type} user {user_id}")
    return issue_token(user_id)


@router.post("/auth/login", response_model=Token)
def login(payload: LoginPayload, services: Services = Depends(get_services)):
    database = services.database
    user = database.find_one("user", {"email": payload.email})
    if not user or not check_password(payload.password, user.get("password_hash")):
        raise HTTPException(status_code=400, detail="Incorrect email or password")
    database.update_where("user", {"_id": user["_id"]}, {"$set": {"last_login": database.clock()}})
    return issue_token(str(user["_id"]))


@router.get("/me")
def me(current_user=Depends(get_current_user)):
    return serialize(current_user)


# ------------------------------------
# Donations
# ------------------------------------
@router.get("/donations")
def list_donations(
    category: Optional[str] = None,
    skip: int = 0,
    limit: Optional[int] = None,
    services: Services = Depends(get_services),
):
    donations = services.donations.list_available(category=category, skip=max(skip, 0), limit=limit)
    return {"donations": serialize(donations), "count": len(donations)}


@router.post("/donations", status_code=201)
def create_donation(
    payload: DonationPayload,
    current_user=Depends(get_current_user),
    services: Services = Depends(get_services),
):
    donation = services.donations.create(current_user, payload.model_dump(exclude_none=True))
    return {"message": "Donation created successfully", "donation": serialize(donation)}


@router.get("/donations/my/{user_id}")
def my_donations(user_id: str, current_user=Depends(get_current_user), services: Services = Depends(get_services)):
    require_self_or_admin(current_user, user_id)
    donations = services.donations.list_by_donor(user_id)
    return {"donations": serialize(donations), "count": len(donations)}


@router.get("/donations/claimed/{user_id}")
def claimed_donations(user_id: str, current_user=Depends(get_current_user), services: Services = Depends(get_services)):
    require_self_or_admin(current_user, user_id)
    donations = services.donations.list_claimed_by(user_id)
    return {"donations": serialize(donations), "count": len(donations)}


@router.get("/donations/donor/{donor_id}")
def donor_profile(donor_id: str, services: Services = Depends(get_services)):
    return serialize(services.donations.donor_profile(donor_id))


@router.get("/donations/{donation_id}")
def get_donation(donation_id: str, services: Services = Depends(get_services)):
    return {"donation": serialize(services.donations.get(donation_id))}


@router.post("/donations/{donation_id}/claim")
def claim_donation(
    donation_id: str,
    payload: Optional[ClaimPayload] = None,
    current_user=Depends(get_current_user),
    services: Services = Depends(get_services),
):
    require_role(current_user, ["ngo"])
    payload = payload or ClaimPayload()
    if payload.claimer_id and oid(payload.claimer_id) != current_user["_id"]:
        raise HTTPException(status_code=403, detail="You can only claim donations for yourself")
    claimer_name = (payload.claimer_name or "").strip() or current_user.get("name", "")
    donation = services.donations.claim(donation_id, current_user["_id"], claimer_name)
    return {"message": "Donation claimed successfully", "donation": serialize(donation)}


@router.post("/donations/{donation_id}/complete")
def complete_donation(donation_id: str, current_user=Depends(get_current_user), services: Services = Depends(get_services)):
    donation = services.donations.get(donation_id)
    parties = {oid(donation.get("donor_id")), oid(donation.get("claimer_id"))}
    if current_user["_id"] not in parties and current_user.get("user_type") != "admin":
        raise HTTPException(status_code=403, detail="Only the donor or the claiming NGO can complete a donation")
    donation = services.donations.complete(donation_id)
    return {"message": "Donation marked as completed", "donation": serialize(donation)}


@router.post("/donations/{donation_id}/like")
def like_donation(donation_id: str, current_user=Depends(get_current_user), services: Services = Depends(get_services)):
    donation, liked = services.donations.toggle_like(donation_id, current_user["_id"])
    return {"liked": liked, "likes": donation.get("likes", 0), "donation": serialize(donation)}


@router.post("/donations/{donation_id}/feedback")
def submit_feedback(
    donation_id: str,
    payload: FeedbackPayload,
    current_user=Depends(get_current_user),
    services: Services = Depends(get_services),
):
    donation = services.donations.submit_feedback(donation_id, current_user["_id"], payload.rating, payload.comment)
    return {"message": "Feedback submitted successfully", "donation": serialize(donation)}


@router.put("/donations/{donation_id}")
def update_donation(
    donation_id: str,
    payload: DonationPayload,
    current_user=Depends(get_current_user),
    services: Services = Depends(get_services),
):
    require_own_available_donation(services, donation_id, current_user)
    donation = services.donations.update(donation_id, payload.model_dump(exclude_unset=True), require_status="available")
    return {"message": "Donation updated successfully", "donation": serialize(donation)}


@router.delete("/donations/{donation_id}")
def delete_donation(donation_id: str, current_user=Depends(get_current_user), services: Services = Depends(get_services)):
    require_own_available_donation(services, donation_id, current_user)
    services.donations.delete(donation_id, require_status="available")
    return {"message": "Donation deleted successfully"}


# ------------------------------------
# Users
# ------------------------------------
@router.get("/users/me")
def get_user_profile(current_user=Depends(get_current_user)):
    return serialize(current_user)


@router.put("/users/me")
def update_user_profile(
    payload: UserUpdatePayload,
    current_user=Depends(get_current_user),
    services: Services = Depends(get_services),
):
    database = services.database
    user_id = parse_id(current_user["_id"])
    if payload.email != current_user.get("email"):
        if database.find_one("user", {"email": payload.email, "_id": {"$ne": user_id}}):
            raise ConflictError("Email is already taken")
    values: Dict[str, Any] = {"name": payload.name.strip(), "email": payload.email}
    if payload.phone is not None:
        values["phone"] = payload.phone
    try:
        user = database.update_where("user", {"_id": user_id}, {"$set": values})
    except DuplicateKeyError:
        raise ConflictError("Email is already taken")
    return {"message": "Profile updated successfully", "user": serialize(public_user(user))}


@router.get("/users/me/stats")
def get_user_stats(current_user=Depends(get_current_user), services: Services = Depends(get_services)):
    donations_count = services.ratings.refresh_donations_count(current_user["_id"])
    return {
        "stats": {
            "donations_count": donations_count,
            "total_money_donated": current_user.get("total_money_donated", 0),
            "average_rating": current_user.get("average_rating", 0),
            "total_ratings": current_user.get("total_ratings", 0),
        }
    }


@router.post("/users/recalculate-ratings")
def recalculate_ratings(current_user=Depends(get_current_user), services: Services = Depends(get_services)):
    require_role(current_user, ["admin"])
    updated = services.ratings.recalculate_all()
    return {"message": f"Recalculated ratings for {updated} donors", "updated": updated}


@router.post("/users/reset-counts")
def reset_donation_counts(current_user=Depends(get_current_user), services: Services = Depends(get_services)):
    require_role(current_user, ["admin"])
    updated = services.ratings.recalculate_donation_counts()
    return {"message": f"Reset donation counts for {updated} users", "updated": updated}


@router.post("/ledger/reconcile")
def reconcile_ledger(current_user=Depends(get_current_user), services: Services = Depends(get_services)):
    require_role(current_user, ["admin"])
    return services.ledger.reconcile()


# ------------------------------------
# Admin moderation
# ------------------------------------
@router.get("/admin/stats")
def admin_stats(current_user=Depends(get_current_user), services: Services = Depends(get_services)):
    require_role(current_user, ["admin"])
    return services.moderation.stats()


@router.get("/admin/verifications/pending")
def pending_verifications(
    page: int = 1,
    limit: int = 10,
    current_user=Depends(get_current_user),
    services: Services = Depends(get_services),
):
    require_role(current_user, ["admin"])
    return serialize(services.moderation.list_pending(page=page, limit=limit))


@router.get("/admin/verifications/verified")
def verified_ngos(
    page: int = 1,
    limit: int = 10,
    current_user=Depends(get_current_user),
    services: Services = Depends(get_services),
):
    require_role(current_user, ["admin"])
    return serialize(services.moderation.list_verified(page=page, limit=limit))


@router.post("/admin/verifications/{ngo_id}/approve")
def approve_verification(ngo_id: str, current_user=Depends(get_current_user), services: Services = Depends(get_services)):
    require_role(current_user, ["admin"])
    ngo = services.moderation.approve(ngo_id, current_user["_id"])
    return {"message": "NGO verified successfully", "ngo": serialize(ngo)}


@router.post("/admin/verifications/{ngo_id}/reject")
def reject_verification(
    ngo_id: str,
    payload: RejectionPayload,
    current_user=Depends(get_current_user),
    services: Services = Depends(get_services),
):
    require_role(current_user, ["admin"])
    ngo = services.moderation.reject(ngo_id, current_user["_id"], payload.reason)
    return {"message": "Verification rejected and NGO notified", "ngo": serialize(ngo)}


# ------------------------------------
# NGO profiles, needs & money donations
# ------------------------------------
@router.get("/ngo-profiles/public")
def list_ngo_profiles(services: Services = Depends(get_services)):
    profiles = [present(p) for p in services.profiles.list_public()]
    return {"profiles": serialize(profiles), "count": len(profiles)}


@router.get("/ngo-profiles/public/{profile_id}")
def get_ngo_profile(profile_id: str, services: Services = Depends(get_services)):
    return {"profile": serialize(present(services.profiles.get(profile_id)))}


@router.get("/ngo-profiles/user/{ngo_id}")
def get_ngo_profile_by_user(ngo_id: str, services: Services = Depends(get_services)):
    return {"profile": serialize(present(services.profiles.get_by_owner(ngo_id)))}


@router.get("/ngo-profiles/my-profile")
def get_my_ngo_profile(current_user=Depends(get_current_user), services: Services = Depends(get_services)):
    if current_user.get("user_type") != "ngo":
        raise ForbiddenError("Access denied. Only NGOs can access this resource.")
    return {"profile": serialize(present(services.profiles.get_by_owner(current_user["_id"])))}


@router.post("/ngo-profiles", status_code=201)
def create_ngo_profile(
    payload: ProfilePayload,
    current_user=Depends(get_current_user),
    services: Services = Depends(get_services),
):
    profile = services.profiles.create(current_user, payload.model_dump(exclude_none=True))
    return {"profile": serialize(present(profile))}


@router.put("/ngo-profiles/{profile_id}")
def update_ngo_profile(
    profile_id: str,
    payload: ProfilePayload,
    current_user=Depends(get_current_user),
    services: Services = Depends(get_services),
):
    profile = services.profiles.update(profile_id, current_user["_id"], payload.model_dump(exclude_unset=True))
    return {"profile": serialize(present(profile))}


@router.post("/ngo-profiles/{profile_id}/needs")
def add_need(
    profile_id: str,
    payload: NeedPayload,
    current_user=Depends(get_current_user),
    services: Services = Depends(get_services),
):
    profile = services.profiles.add_need(profile_id, current_user["_id"], payload.model_dump(exclude_none=True))
    return {"profile": serialize(present(profile))}


@router.put("/ngo-profiles/{profile_id}/needs/{need_id}")
def update_need(
    profile_id: str,
    need_id: str,
    payload: NeedPayload,
    current_user=Depends(get_current_user),
    services: Services = Depends(get_services),
):
    profile = services.profiles.update_need(
        profile_id, need_id, current_user["_id"], payload.model_dump(exclude_unset=True)
    )
    return {"message": "Need updated successfully", "profile": serialize(present(profile))}


@router.delete("/ngo-profiles/{profile_id}/needs/{need_id}")
def delete_need(
    profile_id: str,
    need_id: str,
    current_user=Depends(get_current_user),
    services: Services = Depends(get_services),
):
    profile = services.profiles.delete_need(profile_id, need_id, current_user["_id"])
    return {"profile": serialize(present(profile))}


@router.post("/ngo-profiles/{profile_id}/needs/{need_id}/donate")
def make_money_donation(
    profile_id: str,
    need_id: str,
    payload: MoneyDonationPayload,
    current_user=Depends(get_current_user),
    services: Services = Depends(get_services),
):
    result = services.ledger.donate(
        current_user["_id"], profile_id, need_id, payload.amount, payload.payment_method, payload.message
    )
    return {
        "message": "Donation successful!",
        "donation": serialize(result["donation"]),
        "transaction_id": result["transaction_id"],
    }


@router.get("/ngo-profiles/{ngo_id}/donations")
def list_ngo_money_donations(ngo_id: str, current_user=Depends(get_current_user), services: Services = Depends(get_services)):
    if oid(ngo_id) != current_user["_id"] and current_user.get("user_type") != "admin":
        raise ForbiddenError("Only the NGO itself can view its donation ledger")
    donations = services.ledger.list_for_ngo(ngo_id)
    return {"donations": serialize(donations), "count": len(donations)}


# ------------------------------------
# Notifications
# ------------------------------------
@router.get("/notifications")
def my_notifications(
    page: int = 1,
    limit: int = 20,
    unread_only: bool = False,
    current_user=Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return serialize(services.notifications.list_for_user(current_user["_id"], page=page, limit=limit, unread_only=unread_only))


@router.get("/notifications/unread-count")
def unread_count(current_user=Depends(get_current_user), services: Services = Depends(get_services)):
    return {"unread_count": services.notifications.unread_count(current_user["_id"])}


@router.put("/notifications/mark-all-read")
def mark_all_read(current_user=Depends(get_current_user), services: Services = Depends(get_services)):
    modified = services.notifications.mark_all_read(current_user["_id"])
    return {"message": "All notifications marked as read", "modified": modified}


@router.put("/notifications/{notification_id}/read")
def mark_read(notification_id: str, current_user=Depends(get_current_user), services: Services = Depends(get_services)):
    return {"notification": serialize(services.notifications.mark_read(current_user["_id"], notification_id))}


@router.delete("/notifications/clear-all")
def clear_all_notifications(current_user=Depends(get_current_user), services: Services = Depends(get_services)):
    deleted = services.notifications.clear_all(current_user["_id"])
    return {"message": f"Cleared {deleted} notifications", "deleted_count": deleted}


@router.delete("/notifications/{notification_id}")
def delete_notification(notification_id: str, current_user=Depends(get_current_user), services: Services = Depends(get_services)):
    services.notifications.delete(current_user["_id"], notification_id)
    return {"message": "Notification deleted successfully"}


# ------------------------------------
# Access helpers
# ------------------------------------
def require_self_or_admin(user: dict, user_id: str):
    if oid(user_id) != user["_id"] and user.get("user_type") != "admin":
        raise HTTPException(status_code=403, detail="Not allowed")


def require_own_available_donation(services: Services, donation_id: str, user: dict):
    donation = services.donations.get(donation_id)
    if oid(donation.get("donor_id")) != user["_id"]:
        raise ForbiddenError("You can only change your own donations")
    if donation.get("status") != "available":
        raise ConflictError("Only available donations can be changed")


# ------------------------------------
# App
# ------------------------------------
def create_app(database: Optional[Database] = None, sweep_interval: Optional[float] = None) -> FastAPI:
    database = database or Database(config.DATABASE_URL, config.DATABASE_NAME)
    interval = config.EXPIRY_SWEEP_INTERVAL_SECONDS if sweep_interval is None else sweep_interval

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        database.connect()
        services = Services(database)
        app.state.database = database
        app.state.services = services
        sweeper_task = None
        if interval > 0:
            sweeper_task = asyncio.create_task(services.sweeper.run_periodically(interval))
        try:
            yield
        finally:
            if sweeper_task is not None:
                sweeper_task.cancel()
                with suppress(asyncio.CancelledError):
                    await sweeper_task
            database.close()

    app = FastAPI(title="Ahaar API", version="1.0.0", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(AhaarError)
    async def handle_ahaar_error(request: Request, exc: AhaarError):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"detail": describe(exc)})

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    setup_logging()
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
