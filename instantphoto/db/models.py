"""Database models for the instant photo dispatch system"""

import enum
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from instantphoto.db.database import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


class TimestampMixin:
    """Mixin for adding timestamp columns to models"""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False
    )


class RequestType(enum.Enum):
    """Kind of shoot a guest asks for"""
    PORTRAIT = "portrait"
    COUPLE = "couple"
    FAMILY = "family"
    GROUP = "group"
    LANDSCAPE = "landscape"
    PET = "pet"


class Urgency(enum.Enum):
    NOW = "now"
    WITHIN_30MIN = "within_30min"
    WITHIN_1HOUR = "within_1hour"


class RequestStatus(enum.Enum):
    """Request status; every value but PENDING is terminal"""
    PENDING = "pending"
    MATCHED = "matched"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class OfferStatus(enum.Enum):
    OPEN = "open"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    TIMED_OUT = "timed_out"
    WITHDRAWN = "withdrawn"
    FAILED = "failed"


class ResponseOutcome(enum.Enum):
    ACCEPT = "accept"
    DECLINE = "decline"
    TIMEOUT = "timeout"


class BookingStatus(enum.Enum):
    MATCHED = "matched"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentStatus(enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"
    FAILED = "failed"


class EscrowStatus(enum.Enum):
    AUTHORIZING = "authorizing"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"
    VOIDED = "voided"
    FAILED = "failed"


class NotificationType(enum.Enum):
    NEW_REQUEST = "new_request"
    MATCH_FOUND = "match_found"
    PAYMENT_RECEIVED = "payment_received"
    BOOKING_COMPLETED = "booking_completed"
    REQUEST_EXPIRED = "request_expired"
    BOOKING_CANCELLED = "booking_cancelled"
    PAYMENT_FAILED = "payment_failed"
    PHOTOS_DELIVERED = "photos_delivered"
    DISPUTE_OPENED = "dispute_opened"
    INTEGRITY_ALERT = "integrity_alert"


class DisputeStatus(enum.Enum):
    PENDING = "pending"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"
    ESCALATED = "escalated"


class DisputeResolution(enum.Enum):
    FULL_REFUND = "full_refund"
    PARTIAL_REFUND = "partial_refund"
    PHOTOGRAPHER_FAVOR = "photographer_favor"
    MEDIATION = "mediation"


class PhotographerAvailability(TimestampMixin, Base):
    """Live location and availability of a photographer"""
    __tablename__ = "photographer_availability"

    photographer_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    display_name: Mapped[str | None] = mapped_column(String(255))
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    accuracy: Mapped[float | None] = mapped_column(Float)
    is_online: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    accepting_requests: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    available_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    response_radius_m: Mapped[int] = mapped_column(Integer, default=1000, nullable=False)

    # {"portrait": {"15": 3000, "30": 5000, "60": 8000}, ...}
    instant_rates: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)

    rating: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    rating_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    avg_response_seconds: Mapped[float | None] = mapped_column(Float)
    response_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    idle_since: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # No foreign key: written in the same statement batch that creates the booking
    current_booking_id: Mapped[uuid.UUID | None] = mapped_column(Uuid)

    __table_args__ = (
        CheckConstraint("response_radius_m > 0", name="check_response_radius_positive"),
        Index("idx_availability_eligible", "is_online", "accepting_requests", "current_booking_id"),
    )

    def rate_for(self, request_type: str, duration: int) -> int | None:
        """Posted rate for a request type and duration, if any"""
        by_duration = (self.instant_rates or {}).get(request_type) or {}
        rate = by_duration.get(str(duration))
        return int(rate) if rate is not None else None


class InstantRequest(Base):
    """An ad-hoc shoot request submitted by a guest"""
    __tablename__ = "instant_requests"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    guest_name: Mapped[str] = mapped_column(String(255), nullable=False)
    guest_phone: Mapped[str] = mapped_column(String(20), nullable=False)
    guest_phone_digits: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    guest_email: Mapped[str | None] = mapped_column(String(255))
    party_size: Mapped[int] = mapped_column(Integer, nullable=False)

    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    location_address: Mapped[str | None] = mapped_column(Text)
    location_landmark: Mapped[str | None] = mapped_column(String(255))

    request_type: Mapped[RequestType] = mapped_column(SQLEnum(RequestType), nullable=False)
    urgency: Mapped[Urgency] = mapped_column(SQLEnum(Urgency), nullable=False)
    duration: Mapped[int] = mapped_column(Integer, nullable=False)
    budget: Mapped[int] = mapped_column(Integer, nullable=False)
    special_requests: Mapped[str | None] = mapped_column(Text)
    payment_method: Mapped[str | None] = mapped_column(String(255))

    status: Mapped[RequestStatus] = mapped_column(
        SQLEnum(RequestStatus),
        default=RequestStatus.PENDING,
        nullable=False,
        index=True
    )
    matched_photographer_id: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    matched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancel_reason: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)

    offers: Mapped[list["Offer"]] = relationship(back_populates="request")
    bookings: Mapped[list["InstantBooking"]] = relationship(back_populates="request")

    __table_args__ = (
        CheckConstraint("party_size BETWEEN 1 AND 20", name="check_party_size_range"),
        CheckConstraint("duration IN (15, 30, 60)", name="check_duration_values"),
        CheckConstraint("budget >= 0", name="check_budget_non_negative"),
    )


class Offer(Base):
    """A time-bounded invitation for one photographer to take one request"""
    __tablename__ = "instant_offers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("instant_requests.id", ondelete="CASCADE"), nullable=False
    )
    photographer_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    rank: Mapped[int] = mapped_column(Integer, nullable=False)
    score: Mapped[float] = mapped_column(Float, nullable=False)
    distance_meters: Mapped[float] = mapped_column(Float, nullable=False)
    status: Mapped[OfferStatus] = mapped_column(
        SQLEnum(OfferStatus), default=OfferStatus.OPEN, nullable=False
    )
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    responded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    request: Mapped["InstantRequest"] = relationship(back_populates="offers")

    __table_args__ = (
        UniqueConstraint("request_id", "photographer_id", name="uq_offer_request_photographer"),
        Index("idx_offer_status_expiry", "status", "expires_at"),
    )


class OfferResponse(Base):
    """Immutable record of how a photographer answered an offer"""
    __tablename__ = "offer_responses"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("instant_requests.id", ondelete="CASCADE"), nullable=False
    )
    photographer_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    outcome: Mapped[ResponseOutcome] = mapped_column(SQLEnum(ResponseOutcome), nullable=False)
    distance_meters: Mapped[float | None] = mapped_column(Float)
    response_seconds: Mapped[float | None] = mapped_column(Float)
    decline_reason: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index(
            "uq_offer_response_single_accept",
            "request_id",
            unique=True,
            postgresql_where=text("outcome = 'ACCEPT'"),
            sqlite_where=text("outcome = 'ACCEPT'"),
        ),
    )


class InstantBooking(TimestampMixin, Base):
    """Booking created from an accepted request"""
    __tablename__ = "instant_bookings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("instant_requests.id"), nullable=False, index=True
    )
    photographer_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    status: Mapped[BookingStatus] = mapped_column(
        SQLEnum(BookingStatus), default=BookingStatus.MATCHED, nullable=False, index=True
    )

    # Pricing (yen)
    base_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    rush_fee: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    holiday_fee: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    night_fee: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    platform_fee: Mapped[int] = mapped_column(Integer, nullable=False)
    photographer_earnings: Mapped[int] = mapped_column(Integer, nullable=False)

    payment_status: Mapped[PaymentStatus] = mapped_column(
        SQLEnum(PaymentStatus), default=PaymentStatus.PENDING, nullable=False
    )

    matched_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_by: Mapped[str | None] = mapped_column(String(20))
    cancel_reason: Mapped[str | None] = mapped_column(Text)

    guest_rating: Mapped[int | None] = mapped_column(Integer)
    guest_review: Mapped[str | None] = mapped_column(Text)

    photos_delivered: Mapped[int | None] = mapped_column(Integer)
    delivery_url: Mapped[str | None] = mapped_column(Text)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    request: Mapped["InstantRequest"] = relationship(back_populates="bookings")
    escrow: Mapped["EscrowTransaction | None"] = relationship(back_populates="booking")
    disputes: Mapped[list["Dispute"]] = relationship(back_populates="booking")

    __table_args__ = (
        # One live booking per request; cancelled ones (e.g. failed authorization) do not count
        Index(
            "uq_booking_active_request",
            "request_id",
            unique=True,
            postgresql_where=text("status != 'CANCELLED'"),
            sqlite_where=text("status != 'CANCELLED'"),
        ),
        CheckConstraint("total_amount >= 0", name="check_total_amount_non_negative"),
        CheckConstraint(
            "guest_rating IS NULL OR guest_rating BETWEEN 1 AND 5",
            name="check_guest_rating_range"
        ),
    )

    @property
    def has_rush_fee(self) -> bool:
        return self.rush_fee > 0

    @property
    def has_holiday_fee(self) -> bool:
        return self.holiday_fee > 0

    @property
    def has_night_fee(self) -> bool:
        return self.night_fee > 0


class EscrowTransaction(TimestampMixin, Base):
    """Payment hold placed for a booking and its settlement"""
    __tablename__ = "escrow_transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("instant_bookings.id"), nullable=False, unique=True
    )
    status: Mapped[EscrowStatus] = mapped_column(
        SQLEnum(EscrowStatus), default=EscrowStatus.AUTHORIZING, nullable=False
    )
    authorized_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    captured_amount: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    refunded_amount: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    processor_reference: Mapped[str | None] = mapped_column(String(255))
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text)

    authorized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    captured_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    booking: Mapped["InstantBooking"] = relationship(back_populates="escrow")

    __table_args__ = (
        CheckConstraint("captured_amount <= authorized_amount", name="check_capture_within_hold"),
    )


class UsageRecord(Base):
    """Monthly request counter per guest identity"""
    __tablename__ = "guest_usage"

    guest_key: Mapped[str] = mapped_column(String(300), primary_key=True)
    month: Mapped[str] = mapped_column(String(7), primary_key=True)
    count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (
        UniqueConstraint("guest_key", "month", name="uq_guest_usage_month"),
        CheckConstraint("count >= 0", name="check_usage_count_non_negative"),
    )


class Notification(Base):
    """Persisted notification; unread counters are derived from this table"""
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_key: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[NotificationType] = mapped_column(SQLEnum(NotificationType), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)
    request_id: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    booking_id: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("idx_notifications_user_unread", "user_key", "is_read"),
    )


class Dispute(TimestampMixin, Base):
    """Guest dispute over a booking awaiting admin resolution"""
    __tablename__ = "disputes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("instant_bookings.id"), nullable=False, index=True
    )
    reason: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    requested_resolution: Mapped[DisputeResolution | None] = mapped_column(SQLEnum(DisputeResolution))
    status: Mapped[DisputeStatus] = mapped_column(
        SQLEnum(DisputeStatus), default=DisputeStatus.PENDING, nullable=False
    )
    resolution: Mapped[DisputeResolution | None] = mapped_column(SQLEnum(DisputeResolution))
    resolution_amount: Mapped[int | None] = mapped_column(Integer)
    admin_notes: Mapped[str | None] = mapped_column(Text)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    booking: Mapped["InstantBooking"] = relationship(back_populates="disputes")
