"""Schemas for bookings, delivery and escrow"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from instantphoto.db.models import BookingStatus, EscrowStatus, PaymentStatus


class FeeBreakdown(BaseModel):
    """Booking price split, all amounts in yen"""
    base_amount: int = Field(..., ge=0)
    rush_fee: int = 0
    holiday_fee: int = 0
    night_fee: int = 0
    total_amount: int
    platform_fee: int
    photographer_earnings: int


class BookingResponse(BaseModel):
    id: UUID
    request_id: UUID
    photographer_id: UUID
    status: BookingStatus
    base_amount: int
    rush_fee: int
    holiday_fee: int
    night_fee: int
    total_amount: int
    platform_fee: int
    photographer_earnings: int
    payment_status: PaymentStatus
    matched_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    cancelled_at: datetime | None
    cancelled_by: str | None
    cancel_reason: str | None
    guest_rating: int | None
    guest_review: str | None
    photos_delivered: int | None
    delivery_url: str | None
    delivered_at: datetime | None

    model_config = {"from_attributes": True}


class EscrowResponse(BaseModel):
    id: UUID
    booking_id: UUID
    status: EscrowStatus
    authorized_amount: int
    captured_amount: int
    refunded_amount: int
    idempotency_key: str
    processor_reference: str | None
    attempts: int
    last_error: str | None
    authorized_at: datetime | None
    captured_at: datetime | None
    refunded_at: datetime | None

    model_config = {"from_attributes": True}


class BookingWithEscrow(BaseModel):
    """Read view for the dispute-resolution collaborator"""
    booking: BookingResponse
    escrow: EscrowResponse | None


class StartBooking(BaseModel):
    photographer_id: UUID


class PhotoDelivery(BaseModel):
    photographer_id: UUID
    photo_count: int = Field(..., ge=1, le=1000)
    delivery_url: str = Field(..., min_length=1, max_length=2000)


class DeliveryRatings(BaseModel):
    rating: int | None = Field(None, ge=1, le=5)
    review: str | None = Field(None, max_length=2000)


class BookingCancel(BaseModel):
    actor: str = Field(..., pattern=r"^(guest|photographer|admin)$")
    actor_id: UUID | None = None
    reason: str | None = Field(None, max_length=500)
