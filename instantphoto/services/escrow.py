"""Escrow settlement: payment holds, capture on delivery, refunds"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from instantphoto.config import settings
from instantphoto.db.models import (
    BookingStatus,
    EscrowStatus,
    EscrowTransaction,
    InstantBooking,
    PaymentStatus,
)
from instantphoto.exceptions import (
    DataIntegrityError,
    InvalidStateTransition,
    NotFound,
    PaymentAuthorizationFailed,
    PaymentCaptureFailed,
    ValidationError,
)
from instantphoto.services.payment_processor import (
    PaymentProcessor,
    PaymentProcessorError,
    ProcessorResult,
)
from instantphoto.utils.clock import utcnow

logger = logging.getLogger(__name__)


def idempotency_key(booking_id: UUID, operation: str) -> str:
    return f"{booking_id}:{operation}"


class EscrowSettlement:
    """Two-phase payment for bookings"""

    def __init__(self, db: AsyncSession, processor: PaymentProcessor):
        self.db = db
        self.processor = processor

    async def get_escrow(self, booking_id: UUID) -> EscrowTransaction | None:
        result = await self.db.execute(
            select(EscrowTransaction)
            .where(EscrowTransaction.booking_id == booking_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _get_booking(self, booking_id: UUID) -> InstantBooking:
        result = await self.db.execute(
            select(InstantBooking)
            .where(InstantBooking.id == booking_id)
            .execution_options(populate_existing=True)
        )
        booking = result.scalar_one_or_none()
        if booking is None:
            raise NotFound(f"Booking {booking_id} not found")
        return booking

    async def _with_retry(
        self,
        operation: str,
        escrow: EscrowTransaction,
        call: Callable[[], Awaitable[ProcessorResult]],
    ) -> ProcessorResult:
        """
        Run a processor call, retrying transient failures with bounded backoff

        The call closes over a fixed idempotency key, so a retry after a lost
        response returns the original result instead of charging again.
        """
        max_attempts = max(settings.payment_max_attempts, 1)
        for attempt in range(1, max_attempts):
            escrow.attempts += 1
            try:
                return await call()
            except PaymentProcessorError as e:
                if not e.transient:
                    raise
                retry_delay = min(
                    settings.payment_retry_base_delay_seconds * 2 ** (attempt - 1),
                    settings.payment_retry_max_delay_seconds,
                )
                logger.warning(
                    f"Payment {operation} for booking {escrow.booking_id} failed "
                    f"(attempt {attempt}/{max_attempts}): {e}. Retrying in {retry_delay}s"
                )
                await asyncio.sleep(retry_delay)

        escrow.attempts += 1
        return await call()

    async def authorize(self, booking: InstantBooking, payment_method: str | None) -> EscrowTransaction:
        """Place a hold for the booking total; payment_status stays pending"""
        escrow = await self.get_escrow(booking.id)
        if escrow is not None and escrow.status != EscrowStatus.AUTHORIZING:
            if escrow.status == EscrowStatus.FAILED:
                raise PaymentAuthorizationFailed(
                    escrow.last_error or "Authorization previously failed",
                    booking_id=str(booking.id),
                )
            return escrow

        if escrow is None:
            # Written before the processor call so a crash leaves an inspectable row
            escrow = EscrowTransaction(
                booking_id=booking.id,
                status=EscrowStatus.AUTHORIZING,
                authorized_amount=booking.total_amount,
                idempotency_key=idempotency_key(booking.id, "authorize"),
            )
            self.db.add(escrow)
            await self.db.commit()

        try:
            result = await self._with_retry(
                "authorize",
                escrow,
                lambda: self.processor.authorize(
                    booking.total_amount,
                    payment_method,
                    escrow.idempotency_key,
                    metadata={"booking_id": str(booking.id), "request_id": str(booking.request_id)},
                ),
            )
        except PaymentProcessorError as e:
            escrow.status = EscrowStatus.FAILED
            escrow.last_error = str(e)
            await self.db.execute(
                update(InstantBooking)
                .where(InstantBooking.id == booking.id)
                .values(payment_status=PaymentStatus.FAILED)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
            logger.error(f"Authorization failed for booking {booking.id}: {e}")
            raise PaymentAuthorizationFailed(str(e), booking_id=str(booking.id)) from e

        escrow.status = EscrowStatus.AUTHORIZED
        escrow.processor_reference = result.reference
        escrow.authorized_at = utcnow()
        escrow.last_error = None
        await self.db.commit()

        logger.info(f"Authorized {booking.total_amount} for booking {booking.id} ({result.reference})")
        return escrow

    async def capture(self, booking_id: UUID) -> bool:
        """
        Capture the hold and complete the booking

        Returns False when the booking was already captured and completed,
        so repeated confirmations are harmless.
        """
        booking = await self._get_booking(booking_id)
        escrow = await self.get_escrow(booking_id)

        if booking.status == BookingStatus.COMPLETED and booking.payment_status == PaymentStatus.PAID:
            return False
        if booking.status != BookingStatus.IN_PROGRESS:
            raise InvalidStateTransition(
                f"Cannot capture payment for a {booking.status.value} booking",
                booking_id=str(booking_id),
            )
        if escrow is None or escrow.processor_reference is None or escrow.status not in (
            EscrowStatus.AUTHORIZED, EscrowStatus.CAPTURED
        ):
            raise InvalidStateTransition(
                "No payment authorization to capture",
                booking_id=str(booking_id),
            )

        if escrow.status == EscrowStatus.AUTHORIZED:
            try:
                result = await self._with_retry(
                    "capture",
                    escrow,
                    lambda: self.processor.capture(
                        escrow.processor_reference,
                        idempotency_key(booking_id, "capture"),
                    ),
                )
            except PaymentProcessorError as e:
                escrow.last_error = str(e)
                await self.db.commit()
                logger.error(f"Capture failed for booking {booking_id}: {e}")
                raise PaymentCaptureFailed(str(e), booking_id=str(booking_id)) from e

            escrow.status = EscrowStatus.CAPTURED
            escrow.captured_amount = result.amount
            escrow.captured_at = utcnow()
            escrow.last_error = None

        now = utcnow()
        completed = await self.db.execute(
            update(InstantBooking)
            .where(
                InstantBooking.id == booking_id,
                InstantBooking.status == BookingStatus.IN_PROGRESS,
            )
            .values(
                status=BookingStatus.COMPLETED,
                payment_status=PaymentStatus.PAID,
                completed_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        if completed.rowcount == 1:
            logger.info(f"Captured {escrow.captured_amount} for booking {booking_id}")
            return True

        booking = await self._get_booking(booking_id)
        if booking.status == BookingStatus.COMPLETED and booking.payment_status == PaymentStatus.PAID:
            # A concurrent confirmation finished first
            return False
        logger.critical(f"Funds captured for booking {booking_id} but booking is {booking.status.value}")
        raise DataIntegrityError(
            "Payment captured for a booking that is no longer in progress",
            booking_id=str(booking_id),
            booking_status=booking.status.value,
        )

    async def refund(self, booking_id: UUID, amount: int | None = None) -> PaymentStatus:
        """
        Return funds to the guest and cancel the booking

        An uncaptured hold is voided (full) or captured down to the retained
        part (partial); a captured payment is refunded through the processor.
        """
        booking = await self._get_booking(booking_id)
        escrow = await self.get_escrow(booking_id)

        if booking.status == BookingStatus.COMPLETED:
            raise InvalidStateTransition("Cannot refund a completed booking", booking_id=str(booking_id))

        if escrow is None or escrow.status in (EscrowStatus.AUTHORIZING, EscrowStatus.FAILED):
            # Nothing was ever held
            await self._mark_refunded(booking_id, booking.payment_status)
            return booking.payment_status
        if escrow.status in (EscrowStatus.VOIDED, EscrowStatus.REFUNDED, EscrowStatus.PARTIALLY_REFUNDED):
            payment_status = (
                PaymentStatus.PARTIALLY_REFUNDED
                if escrow.status == EscrowStatus.PARTIALLY_REFUNDED
                else PaymentStatus.REFUNDED
            )
            await self._mark_refunded(booking_id, payment_status)
            return payment_status

        held = escrow.authorized_amount if escrow.status == EscrowStatus.AUTHORIZED else escrow.captured_amount
        amount = held if amount is None else amount
        if amount <= 0 or amount > held:
            raise ValidationError(f"Refund amount must be between 1 and {held}", field="refund_amount")

        try:
            if escrow.status == EscrowStatus.AUTHORIZED and amount == held:
                await self._with_retry(
                    "void",
                    escrow,
                    lambda: self.processor.void(escrow.processor_reference, idempotency_key(booking_id, "void")),
                )
                escrow.status = EscrowStatus.VOIDED
            elif escrow.status == EscrowStatus.AUTHORIZED:
                result = await self._with_retry(
                    "partial_capture",
                    escrow,
                    lambda: self.processor.capture(
                        escrow.processor_reference,
                        idempotency_key(booking_id, "partial_capture"),
                        amount=held - amount,
                    ),
                )
                escrow.captured_amount = result.amount
                escrow.captured_at = utcnow()
                escrow.status = EscrowStatus.PARTIALLY_REFUNDED
            else:
                await self._with_retry(
                    "refund",
                    escrow,
                    lambda: self.processor.refund(
                        escrow.processor_reference, amount, idempotency_key(booking_id, "refund")
                    ),
                )
                escrow.status = EscrowStatus.REFUNDED if amount == held else EscrowStatus.PARTIALLY_REFUNDED
        except PaymentProcessorError as e:
            escrow.last_error = str(e)
            await self.db.commit()
            logger.error(f"Refund failed for booking {booking_id}: {e}")
            raise PaymentCaptureFailed(f"Refund failed: {e}", booking_id=str(booking_id), operation="refund") from e

        escrow.refunded_amount = amount
        escrow.refunded_at = utcnow()
        escrow.last_error = None
        payment_status = (
            PaymentStatus.PARTIALLY_REFUNDED
            if escrow.status == EscrowStatus.PARTIALLY_REFUNDED
            else PaymentStatus.REFUNDED
        )
        await self._mark_refunded(booking_id, payment_status)
        logger.info(f"Refunded {amount} for booking {booking_id} ({payment_status.value})")
        return payment_status

    async def _mark_refunded(self, booking_id: UUID, payment_status: PaymentStatus) -> None:
        await self.db.execute(
            update(InstantBooking)
            .where(
                InstantBooking.id == booking_id,
                InstantBooking.status != BookingStatus.COMPLETED,
            )
            .values(
                status=BookingStatus.CANCELLED,
                payment_status=payment_status,
                cancelled_at=func.coalesce(InstantBooking.cancelled_at, utcnow()),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
