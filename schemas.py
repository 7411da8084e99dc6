"""
Database Schemas for Ahaar

Each Pydantic model corresponds to a MongoDB collection (lowercased class name).
Use these for validation and to keep a consistent structure.
"""

from pydantic import BaseModel, Field, EmailStr
from typing import Optional, List, Dict, Literal
from datetime import datetime

UserType = Literal["individual", "restaurant", "ngo", "admin"]
DonorType = Literal["individual", "restaurant", "ngo"]
Category = Literal["food", "clothing", "medical", "other"]
DonationStatus = Literal["available", "claimed", "completed", "expired"]
NeedType = Literal["food", "medical", "clothing", "money", "other"]
Urgency = Literal["low", "medium", "high", "critical"]
PaymentMethod = Literal["credit_card", "debit_card", "bkash", "bank_transfer"]
NotificationType = Literal[
    "donation_claimed",
    "feedback_received",
    "donation_completed",
    "verification_approved",
    "verification_rejected",
]

DONOR_TYPES = ("individual", "restaurant", "ngo")
CATEGORIES = ("food", "clothing", "medical", "other")
PAYMENT_METHODS = ("credit_card", "debit_card", "bkash", "bank_transfer")


# Users and Auth
class User(BaseModel):
    email: EmailStr = Field(..., description="Login email (unique)")
    password_hash: str = Field(..., description="BCrypt hashed password")
    name: str = Field(..., min_length=1)
    phone: Optional[str] = None
    user_type: UserType = Field("individual", description="individual | restaurant | ngo | admin")
    is_verified: bool = Field(False, description="Set by an admin for NGOs")
    verified_at: Optional[datetime] = None
    verified_by: Optional[str] = Field(None, description="Admin user _id")
    last_login: Optional[datetime] = None
    donations_count: int = Field(0, description="Own donations that were claimed or completed")
    total_money_donated: float = 0
    rating_sum: int = 0
    total_ratings: int = 0
    average_rating: float = Field(0, ge=0, le=5)


# Item donations
class Feedback(BaseModel):
    ngo_rating: int = Field(..., ge=1, le=5)
    ngo_comment: Optional[str] = Field(None, max_length=500)
    feedback_date: datetime


class Donation(BaseModel):
    title: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1, max_length=1000)
    category: Category
    quantity: str = Field(..., min_length=1)
    location: str = Field(..., min_length=1)
    expiry_date: Optional[datetime] = None
    pickup_instructions: Optional[str] = Field(None, max_length=500)
    contact_phone: Optional[str] = None
    image: Optional[str] = Field(None, description="Reference to an uploaded image")
    # Snapshot of the donor at creation time, never refreshed
    donor_id: str
    donor_name: str
    donor_type: DonorType
    status: DonationStatus = "available"
    claimer_id: Optional[str] = None
    claimer_name: Optional[str] = None
    claimed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    likes: int = 0
    liked_by: List[str] = Field(default_factory=list)
    feedback: Optional[Feedback] = None


# NGO profiles and needs
class ContactInfo(BaseModel):
    phone: Optional[str] = None
    email: Optional[str] = None
    website: Optional[str] = None


class Need(BaseModel):
    type: NeedType
    title: str
    description: str = Field(..., min_length=1, max_length=500)
    target_amount: Optional[float] = Field(None, ge=0, allow_inf_nan=False, description="Only for money needs")
    current_amount: float = Field(0, ge=0, allow_inf_nan=False, description="May exceed target_amount")
    urgency: Urgency = "medium"
    is_active: bool = True


class NGOProfile(BaseModel):
    ngo_id: str = Field(..., description="Owning NGO user _id (unique)")
    organization_name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1, max_length=1000)
    location: str = Field(..., min_length=1)
    contact_info: ContactInfo = Field(default_factory=ContactInfo)
    logo: Optional[str] = None
    # need _id -> need, insertion ordered
    needs: Dict[str, dict] = Field(default_factory=dict)
    total_donations_received: float = 0
    is_public: bool = True


# Money pledges (mock payments)
class MoneyDonation(BaseModel):
    donor_id: str
    donor_name: str
    donor_email: str
    ngo_id: str
    ngo_profile_id: str
    need_id: str
    amount: float = Field(..., ge=1, allow_inf_nan=False)
    message: Optional[str] = Field("", max_length=300)
    payment_method: PaymentMethod
    transaction_id: str
    status: Literal["pending", "completed", "failed"] = "completed"
    is_anonymous: bool = False
    counters_applied: bool = False


# Notifications
class NotificationData(BaseModel):
    donation_id: Optional[str] = None
    claimer_id: Optional[str] = None
    claimer_name: Optional[str] = None
    rating: Optional[int] = None
    feedback: Optional[str] = None
    reason: Optional[str] = None


class Notification(BaseModel):
    user_id: str = Field(..., description="Recipient user _id")
    type: NotificationType
    title: str
    message: str
    data: NotificationData = Field(default_factory=NotificationData)
    read: bool = False
    read_at: Optional[datetime] = None


"""
Note: The services build documents through these schemas and store them via
database.Database (create_document, get_documents). Collections are named as
lowercase class names (e.g., NGOProfile -> "ngoprofile").
"""
