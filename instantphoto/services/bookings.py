"""Booking lifecycle: start, delivery, confirmation and cancellation"""

import logging
from datetime import datetime
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from instantphoto.db.models import (
    BookingStatus,
    Dispute,
    DisputeStatus,
    InstantBooking,
    InstantRequest,
)
from instantphoto.exceptions import (
    DataIntegrityError,
    InvalidStateTransition,
    NotFound,
    PaymentCaptureFailed,
    PermissionDenied,
)
from instantphoto.schemas.bookings import DeliveryRatings
from instantphoto.services.escrow import EscrowSettlement
from instantphoto.services.locations import LocationRegistry
from instantphoto.services.notifications import NotificationFanout
from instantphoto.services.pricing import verify_fees
from instantphoto.utils.clock import utcnow

logger = logging.getLogger(__name__)

OPEN_DISPUTE_STATUSES = (DisputeStatus.PENDING, DisputeStatus.INVESTIGATING, DisputeStatus.ESCALATED)
CANCELLABLE_STATUSES = (BookingStatus.MATCHED, BookingStatus.IN_PROGRESS)
CANCEL_ACTORS = ("guest", "photographer", "admin", "system")


class BookingLifecycle:
    """State machine for bookings from match to completion or cancellation"""

    def __init__(
        self,
        db: AsyncSession,
        escrow: EscrowSettlement,
        notifier: NotificationFanout,
    ):
        self.db = db
        self.escrow = escrow
        self.notifier = notifier
        self.locations = LocationRegistry(db)

    async def get_booking(self, booking_id: UUID) -> InstantBooking:
        result = await self.db.execute(
            select(InstantBooking)
            .where(InstantBooking.id == booking_id)
            .execution_options(populate_existing=True)
        )
        booking = result.scalar_one_or_none()
        if booking is None:
            raise NotFound(f"Booking {booking_id} not found")
        return booking

    async def find_active_booking(self, request_id: UUID) -> InstantBooking | None:
        result = await self.db.execute(
            select(InstantBooking).where(
                InstantBooking.request_id == request_id,
                InstantBooking.status != BookingStatus.CANCELLED,
            )
        )
        return result.scalar_one_or_none()

    async def _guest_phone(self, booking: InstantBooking) -> str:
        result = await self.db.execute(
            select(InstantRequest.guest_phone).where(InstantRequest.id == booking.request_id)
        )
        phone = result.scalar_one_or_none()
        if phone is None:
            logger.critical(f"Booking {booking.id} references missing request {booking.request_id}")
            raise DataIntegrityError("Booking has no request", booking_id=str(booking.id))
        return phone

    async def has_open_dispute(self, booking_id: UUID) -> bool:
        result = await self.db.execute(
            select(Dispute.id).where(
                Dispute.booking_id == booking_id,
                Dispute.status.in_(OPEN_DISPUTE_STATUSES),
            )
        )
        return result.first() is not None

    @staticmethod
    def _check_photographer(booking: InstantBooking, photographer_id: UUID) -> None:
        if booking.photographer_id != photographer_id:
            raise PermissionDenied("Booking belongs to another photographer", booking_id=str(booking.id))

    async def start(
        self,
        booking_id: UUID,
        photographer_id: UUID,
        current_time: datetime | None = None,
    ) -> InstantBooking:
        """matched -> in_progress when the photographer arrives"""
        booking = await self.get_booking(booking_id)
        self._check_photographer(booking, photographer_id)

        result = await self.db.execute(
            update(InstantBooking)
            .where(InstantBooking.id == booking_id, InstantBooking.status == BookingStatus.MATCHED)
            .values(status=BookingStatus.IN_PROGRESS, started_at=current_time or utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        booking = await self.get_booking(booking_id)
        if result.rowcount != 1 and booking.status != BookingStatus.IN_PROGRESS:
            raise InvalidStateTransition(
                f"Cannot start a {booking.status.value} booking",
                booking_id=str(booking_id),
            )
        logger.info(f"Booking {booking_id} started")
        return booking

    async def mark_delivered(
        self,
        booking_id: UUID,
        photographer_id: UUID,
        photo_count: int,
        delivery_url: str,
        current_time: datetime | None = None,
    ) -> InstantBooking:
        """Record delivered photos; payment still waits for the guest"""
        booking = await self.get_booking(booking_id)
        self._check_photographer(booking, photographer_id)
        if booking.status != BookingStatus.IN_PROGRESS:
            raise InvalidStateTransition(
                f"Cannot deliver photos for a {booking.status.value} booking",
                booking_id=str(booking_id),
            )

        booking.photos_delivered = photo_count
        booking.delivery_url = delivery_url
        booking.delivered_at = current_time or utcnow()
        await self.db.commit()

        logger.info(f"Booking {booking_id}: {photo_count} photos delivered")
        await self.notifier.photos_delivered(booking, await self._guest_phone(booking))
        return booking

    async def confirm_delivery(
        self,
        booking_id: UUID,
        ratings: DeliveryRatings | None = None,
        current_time: datetime | None = None,
        settling_dispute: bool = False,
    ) -> InstantBooking:
        """
        Guest confirms delivery: capture the hold and complete the booking

        Idempotent; a booking that is already completed and paid is returned
        unchanged without touching the processor. An open dispute blocks
        confirmation unless the capture is the admin's settlement of it.
        """
        now = current_time or utcnow()
        booking = await self.get_booking(booking_id)
        if booking.status == BookingStatus.COMPLETED:
            return booking
        if booking.status != BookingStatus.IN_PROGRESS:
            raise InvalidStateTransition(
                f"Cannot confirm delivery for a {booking.status.value} booking",
                booking_id=str(booking_id),
            )
        if not settling_dispute and await self.has_open_dispute(booking_id):
            raise InvalidStateTransition("Booking has an open dispute", booking_id=str(booking_id))

        guest_phone = await self._guest_phone(booking)
        try:
            verify_fees(booking)
            captured = await self.escrow.capture(booking_id)
        except PaymentCaptureFailed as e:
            await self.notifier.payment_failed(booking, guest_phone, "capture", e.message)
            raise
        except DataIntegrityError as e:
            await self.notifier.integrity_alert(e.message, **{**e.details, "booking_id": booking_id})
            raise

        if not captured:
            return await self.get_booking(booking_id)

        booking = await self.get_booking(booking_id)
        if ratings is not None and ratings.rating is not None:
            booking.guest_rating = ratings.rating
            booking.guest_review = ratings.review
            await self.locations.record_rating(booking.photographer_id, ratings.rating)
        await self.locations.release(booking.photographer_id, booking_id, now)
        await self.db.commit()

        logger.info(f"Booking {booking_id} completed")
        await self.notifier.booking_completed(booking, guest_phone)
        await self.notifier.payment_received(booking)
        return booking

    async def cancel(
        self,
        booking_id: UUID,
        actor: str,
        reason: str | None = None,
        actor_id: UUID | None = None,
        refund_amount: int | None = None,
        current_time: datetime | None = None,
    ) -> InstantBooking:
        """
        matched|in_progress -> cancelled, then release the escrow

        Calling again on a cancelled booking retries an unfinished refund.
        """
        if actor not in CANCEL_ACTORS:
            raise PermissionDenied(f"Unknown actor {actor}")
        now = current_time or utcnow()
        booking = await self.get_booking(booking_id)
        if actor == "photographer":
            if actor_id is None:
                raise PermissionDenied("Photographer id is required")
            self._check_photographer(booking, actor_id)

        if booking.status == BookingStatus.COMPLETED:
            raise InvalidStateTransition("Cannot cancel a completed booking", booking_id=str(booking_id))

        result = await self.db.execute(
            update(InstantBooking)
            .where(InstantBooking.id == booking_id, InstantBooking.status.in_(CANCELLABLE_STATUSES))
            .values(
                status=BookingStatus.CANCELLED,
                cancelled_at=now,
                cancelled_by=actor,
                cancel_reason=reason,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.commit()
            booking = await self.get_booking(booking_id)
            if booking.status != BookingStatus.CANCELLED:
                raise InvalidStateTransition(
                    f"Cannot cancel a {booking.status.value} booking",
                    booking_id=str(booking_id),
                )
        else:
            await self.locations.release(booking.photographer_id, booking_id, now)
            await self.db.commit()
            logger.info(f"Booking {booking_id} cancelled by {actor}")

        guest_phone = await self._guest_phone(booking)
        try:
            await self.escrow.refund(booking_id, refund_amount)
        except PaymentCaptureFailed as e:
            await self.notifier.payment_failed(
                await self.get_booking(booking_id), guest_phone, "refund", e.message
            )
            raise

        booking = await self.get_booking(booking_id)
        if result.rowcount == 1:
            await self.notifier.booking_cancelled(booking, guest_phone, reason)
        return booking
