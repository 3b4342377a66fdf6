"""Pydantic schemas for instant photo requests"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field, field_validator

from instantphoto.db.models import RequestStatus, RequestType, ResponseOutcome, Urgency

ALLOWED_DURATIONS = (15, 30, 60)


class RequestBase(BaseModel):
    request_type: RequestType
    urgency: Urgency
    duration: int
    budget: int = Field(..., ge=0)
    party_size: int = Field(..., ge=1, le=20)
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    location_address: str | None = Field(None, max_length=500)
    location_landmark: str | None = Field(None, max_length=255)
    special_requests: str | None = Field(None, max_length=1000)

    @field_validator("duration")
    @classmethod
    def validate_duration(cls, v: int) -> int:
        if v not in ALLOWED_DURATIONS:
            raise ValueError(f"duration must be one of {ALLOWED_DURATIONS}")
        return v


class InstantRequestCreate(RequestBase):
    guest_name: str = Field(..., min_length=1, max_length=255)
    guest_phone: str = Field(..., pattern=r"^\+?[0-9\- ]{10,20}$")
    guest_email: EmailStr | None = None
    payment_method: str | None = Field(None, max_length=255)

    @field_validator("guest_phone")
    @classmethod
    def validate_phone_number(cls, v: str) -> str:
        cleaned = "".join(filter(str.isdigit, v))
        if len(cleaned) < 10 or len(cleaned) > 15:
            raise ValueError("Phone number must be 10-15 digits")
        return v

    @field_validator("guest_name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("guest_name must not be blank")
        return v


class InstantRequestCreated(BaseModel):
    request_id: UUID
    status: RequestStatus
    expires_at: datetime
    offers_sent: int


class InstantRequestResponse(RequestBase):
    id: UUID
    guest_name: str
    status: RequestStatus
    matched_photographer_id: UUID | None
    matched_at: datetime | None
    cancel_reason: str | None
    created_at: datetime
    expires_at: datetime

    model_config = {"from_attributes": True}


class GuestUsage(BaseModel):
    """Monthly usage for a guest identity"""
    month: str
    usage_count: int
    monthly_limit: int
    can_use: bool
    limit_reached: bool


class OfferReply(BaseModel):
    """A photographer's answer to an offer"""
    photographer_id: UUID
    outcome: ResponseOutcome
    decline_reason: str | None = Field(None, max_length=500)


class RespondResult(BaseModel):
    request_id: UUID
    photographer_id: UUID
    outcome: ResponseOutcome
    is_matched: bool = False
    booking_id: UUID | None = None
    message: str


class CancelBody(BaseModel):
    reason: str | None = Field(None, max_length=500)


class CancelResult(BaseModel):
    id: UUID
    kind: str  # "request" | "booking"
    status: str
    payment_status: str | None = None
