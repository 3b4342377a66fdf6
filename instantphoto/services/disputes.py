"""Dispute intake and admin resolution"""

import logging
from datetime import datetime
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from instantphoto.db.models import (
    BookingStatus,
    Dispute,
    DisputeResolution,
    DisputeStatus,
    InstantBooking,
)
from instantphoto.exceptions import InvalidStateTransition, NotFound, PaymentCaptureFailed, ValidationError
from instantphoto.schemas.bookings import BookingResponse, BookingWithEscrow, EscrowResponse
from instantphoto.schemas.disputes import DisputeCreate, DisputeDecision, DisputeResponse, DisputeStats
from instantphoto.services.bookings import OPEN_DISPUTE_STATUSES, BookingLifecycle
from instantphoto.services.escrow import EscrowSettlement
from instantphoto.services.notifications import NotificationFanout
from instantphoto.utils.clock import ensure_utc, utcnow

logger = logging.getLogger(__name__)

REFUND_RESOLUTIONS = (DisputeResolution.FULL_REFUND, DisputeResolution.PARTIAL_REFUND)


def calculate_priority(created_at: datetime, amount: int, now: datetime | None = None) -> str:
    """Triage bucket from dispute age and the amount at stake"""
    age_hours = (ensure_utc(now or utcnow()) - ensure_utc(created_at)).total_seconds() / 3600
    if age_hours > 48 or amount > 50000:
        return "urgent"
    if age_hours > 24 or amount > 20000:
        return "high"
    if age_hours > 12 or amount > 10000:
        return "medium"
    return "low"


class DisputeService:
    """Opens disputes for guests and applies admin decisions"""

    def __init__(
        self,
        db: AsyncSession,
        escrow: EscrowSettlement,
        bookings: BookingLifecycle,
        notifier: NotificationFanout,
    ):
        self.db = db
        self.escrow = escrow
        self.bookings = bookings
        self.notifier = notifier

    async def _open_dispute_for(self, booking_id: UUID) -> Dispute | None:
        result = await self.db.execute(
            select(Dispute)
            .where(Dispute.booking_id == booking_id, Dispute.status.in_(OPEN_DISPUTE_STATUSES))
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def _get_dispute(self, dispute_id: UUID) -> Dispute:
        result = await self.db.execute(
            select(Dispute).where(Dispute.id == dispute_id).execution_options(populate_existing=True)
        )
        dispute = result.scalar_one_or_none()
        if dispute is None:
            raise NotFound(f"Dispute {dispute_id} not found")
        return dispute

    async def open_dispute(self, booking_id: UUID, data: DisputeCreate) -> Dispute:
        """Freeze an in-progress booking until an admin decides"""
        booking = await self.bookings.get_booking(booking_id)
        if booking.status != BookingStatus.IN_PROGRESS:
            raise InvalidStateTransition(
                f"Cannot dispute a {booking.status.value} booking",
                booking_id=str(booking_id),
            )
        if await self._open_dispute_for(booking_id) is not None:
            raise InvalidStateTransition("Booking already has an open dispute", booking_id=str(booking_id))

        dispute = Dispute(
            booking_id=booking_id,
            reason=data.reason,
            description=data.description,
            requested_resolution=data.requested_resolution,
            status=DisputeStatus.PENDING,
        )
        self.db.add(dispute)
        await self.db.commit()
        await self.db.refresh(dispute)

        logger.info(f"Dispute {dispute.id} opened for booking {booking_id}: {data.reason}")
        await self.notifier.dispute_opened(booking, dispute.id, data.reason)
        return dispute

    async def list_disputes(
        self,
        status: DisputeStatus | None = None,
        current_time: datetime | None = None,
    ) -> list[DisputeResponse]:
        now = current_time or utcnow()
        query = (
            select(Dispute, InstantBooking.total_amount)
            .join(InstantBooking, InstantBooking.id == Dispute.booking_id)
            .order_by(Dispute.created_at.desc())
        )
        if status is not None:
            query = query.where(Dispute.status == status)
        result = await self.db.execute(query)

        disputes = []
        for dispute, amount in result.all():
            view = DisputeResponse.model_validate(dispute)
            if dispute.status in OPEN_DISPUTE_STATUSES:
                view.priority = calculate_priority(dispute.created_at, amount, now)
            disputes.append(view)
        return disputes

    async def dispute_stats(self) -> DisputeStats:
        result = await self.db.execute(
            select(Dispute.status, func.count(Dispute.id)).group_by(Dispute.status)
        )
        counts = {row[0]: row[1] for row in result.all()}

        amount_result = await self.db.execute(
            select(func.coalesce(func.sum(InstantBooking.total_amount), 0))
            .join(Dispute, Dispute.booking_id == InstantBooking.id)
        )
        return DisputeStats(
            total=sum(counts.values()),
            pending=counts.get(DisputeStatus.PENDING, 0),
            investigating=counts.get(DisputeStatus.INVESTIGATING, 0),
            resolved=counts.get(DisputeStatus.RESOLVED, 0),
            escalated=counts.get(DisputeStatus.ESCALATED, 0),
            total_disputed_amount=int(amount_result.scalar() or 0),
        )

    async def get_booking_view(self, booking_id: UUID) -> BookingWithEscrow:
        """Booking plus its escrow record for admin review"""
        booking = await self.bookings.get_booking(booking_id)
        escrow = await self.escrow.get_escrow(booking_id)
        return BookingWithEscrow(
            booking=BookingResponse.model_validate(booking),
            escrow=EscrowResponse.model_validate(escrow) if escrow is not None else None,
        )

    async def update_status(self, dispute_id: UUID, status: DisputeStatus) -> Dispute:
        """Move an open dispute between pending, investigating and escalated"""
        if status not in OPEN_DISPUTE_STATUSES:
            raise ValidationError(
                f"Status {status.value} cannot be set directly; resolve the dispute instead",
                field="status",
            )
        dispute = await self._get_dispute(dispute_id)
        if dispute.status not in OPEN_DISPUTE_STATUSES:
            raise InvalidStateTransition(
                f"Dispute is already {dispute.status.value}",
                dispute_id=str(dispute_id),
            )

        previous = dispute.status
        dispute.status = status
        await self.db.commit()
        logger.info(f"Dispute {dispute_id} moved from {previous.value} to {status.value}")
        return dispute

    async def resolve_dispute(
        self,
        booking_id: UUID,
        decision: DisputeDecision,
        current_time: datetime | None = None,
    ) -> Dispute:
        """
        Apply an admin decision to the open dispute on a booking

        Refund decisions cancel the booking and refund through escrow,
        photographer_favor completes it with a capture, and mediation only
        closes the dispute. The dispute stays open until the money has moved,
        so a failed settlement can be retried with the same decision.
        """
        now = current_time or utcnow()
        dispute = await self._open_dispute_for(booking_id)
        if dispute is None:
            raise NotFound(f"No open dispute for booking {booking_id}")
        dispute_id = dispute.id

        booking = await self.bookings.get_booking(booking_id)
        resolution_amount = None
        if decision.resolution == DisputeResolution.FULL_REFUND:
            resolution_amount = booking.total_amount
        elif decision.resolution == DisputeResolution.PARTIAL_REFUND:
            if decision.refund_amount >= booking.total_amount:
                raise ValidationError(
                    "Partial refund must be less than the booking total",
                    field="refund_amount",
                )
            resolution_amount = decision.refund_amount

        try:
            if decision.resolution in REFUND_RESOLUTIONS:
                await self.bookings.cancel(
                    booking_id,
                    actor="admin",
                    reason=f"Dispute {dispute_id} resolved: {decision.resolution.value}",
                    refund_amount=resolution_amount,
                    current_time=now,
                )
            elif decision.resolution == DisputeResolution.PHOTOGRAPHER_FAVOR:
                await self.bookings.confirm_delivery(booking_id, current_time=now, settling_dispute=True)
        except PaymentCaptureFailed as e:
            logger.error(
                f"Settlement for dispute {dispute_id} ({decision.resolution.value}) failed: {e.message}"
            )
            dispute = await self._get_dispute(dispute_id)
            note = f"Settlement failed ({decision.resolution.value}): {e.message}"
            dispute.admin_notes = f"{dispute.admin_notes}\n{note}" if dispute.admin_notes else note
            await self.db.commit()
            raise

        dispute = await self._get_dispute(dispute_id)
        dispute.status = DisputeStatus.RESOLVED
        dispute.resolution = decision.resolution
        dispute.resolution_amount = resolution_amount
        dispute.admin_notes = decision.admin_notes
        dispute.resolved_at = now
        await self.db.commit()

        logger.info(f"Dispute {dispute_id} on booking {booking_id} resolved as {decision.resolution.value}")
        return await self._get_dispute(dispute_id)
