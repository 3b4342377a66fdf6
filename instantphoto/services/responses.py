"""Photographer responses to offers and the race-free accept"""

import logging
import uuid
from datetime import datetime
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from instantphoto.db.models import (
    BookingStatus,
    InstantBooking,
    InstantRequest,
    Offer,
    OfferResponse,
    OfferStatus,
    PaymentStatus,
    RequestStatus,
    ResponseOutcome,
)
from instantphoto.exceptions import (
    AlreadyMatched,
    InvalidStateTransition,
    PaymentAuthorizationFailed,
    RequestExpired,
)
from instantphoto.schemas.requests import RespondResult
from instantphoto.services.dispatch import MatchingEngine
from instantphoto.services.escrow import EscrowSettlement
from instantphoto.services.locations import LocationRegistry
from instantphoto.services.notifications import NotificationFanout
from instantphoto.services.pricing import calculate_fees
from instantphoto.utils.clock import ensure_utc, utcnow

logger = logging.getLogger(__name__)


class ResponseCoordinator:
    """Records accept/decline/timeout and enforces a single acceptance per request"""

    def __init__(
        self,
        db: AsyncSession,
        engine: MatchingEngine,
        escrow: EscrowSettlement,
        notifier: NotificationFanout,
    ):
        self.db = db
        self.engine = engine
        self.escrow = escrow
        self.notifier = notifier
        self.locations = LocationRegistry(db)

    async def _get_offer(self, request_id: UUID, photographer_id: UUID) -> Offer | None:
        result = await self.db.execute(
            select(Offer)
            .where(Offer.request_id == request_id, Offer.photographer_id == photographer_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def respond(
        self,
        request_id: UUID,
        photographer_id: UUID,
        outcome: ResponseOutcome,
        decline_reason: str | None = None,
        current_time: datetime | None = None,
    ) -> RespondResult:
        """Apply one photographer's answer to an offer"""
        now = current_time or utcnow()
        request = await self.engine.get_request(request_id)

        if outcome == ResponseOutcome.ACCEPT:
            return await self._accept(request, photographer_id, now)
        return await self._record_pass(request, photographer_id, outcome, decline_reason, now)

    async def _accept(self, request: InstantRequest, photographer_id: UUID, now: datetime) -> RespondResult:
        # Plain copy: a rollback below expires every loaded instance
        request_id = request.id
        if request.status == RequestStatus.MATCHED:
            raise AlreadyMatched("Request has already been matched", request_id=str(request.id))
        if request.status == RequestStatus.EXPIRED:
            raise RequestExpired("Request has expired", request_id=str(request.id))
        if request.status == RequestStatus.CANCELLED:
            raise InvalidStateTransition("Request was cancelled by the guest", request_id=str(request.id))
        if ensure_utc(request.expires_at) <= now:
            await self.engine.expire_request(request, now)
            raise RequestExpired("Request has expired", request_id=str(request.id))

        offer = await self._get_offer(request.id, photographer_id)
        if offer is None:
            raise InvalidStateTransition("No offer was made to this photographer", request_id=str(request.id))
        if offer.status == OfferStatus.WITHDRAWN:
            raise AlreadyMatched("Request has already been matched", request_id=str(request.id))
        if offer.status != OfferStatus.OPEN:
            raise InvalidStateTransition(f"Offer is {offer.status.value}", request_id=str(request.id))

        availability = await self.locations.require(photographer_id)
        rate = availability.rate_for(request.request_type.value, request.duration)
        if rate is None:
            raise InvalidStateTransition("Photographer has no rate for this request")
        fees = calculate_fees(rate, request.urgency.value, now)

        booking_id = uuid.uuid4()

        # Both claims run in one transaction; either losing rolls back both
        claimed = await self.db.execute(
            update(InstantRequest)
            .where(
                InstantRequest.id == request.id,
                InstantRequest.status == RequestStatus.PENDING,
                InstantRequest.expires_at > now,
            )
            .values(
                status=RequestStatus.MATCHED,
                matched_photographer_id=photographer_id,
                matched_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            await self.db.rollback()
            current = await self.engine.get_request(request_id)
            if current.status == RequestStatus.EXPIRED or (
                current.status == RequestStatus.PENDING and ensure_utc(current.expires_at) <= now
            ):
                raise RequestExpired("Request has expired", request_id=str(request_id))
            logger.info(f"Photographer {photographer_id} lost the race for request {request_id}")
            raise AlreadyMatched("Request has already been matched", request_id=str(request_id))

        if not await self.locations.assign(photographer_id, booking_id):
            await self.db.rollback()
            logger.info(f"Photographer {photographer_id} is already assigned, accept for {request_id} rejected")
            raise AlreadyMatched("Photographer is already on another booking", request_id=str(request_id))

        booking = InstantBooking(
            id=booking_id,
            request_id=request.id,
            photographer_id=photographer_id,
            status=BookingStatus.MATCHED,
            payment_status=PaymentStatus.PENDING,
            matched_at=now,
            **fees.model_dump(),
        )
        self.db.add(booking)
        offer.status = OfferStatus.ACCEPTED
        offer.responded_at = now
        await self.engine.withdraw_open_offers(request.id, keep_offer_id=offer.id)
        try:
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            logger.info(f"Accept for request {request_id} rejected by constraint: {e.orig}")
            raise AlreadyMatched("Request has already been matched", request_id=str(request_id)) from e

        logger.info(f"Request {request.id} matched to photographer {photographer_id}, booking {booking_id}")

        try:
            await self.escrow.authorize(booking, request.payment_method)
        except PaymentAuthorizationFailed as e:
            await self._unwind_failed_authorization(request, booking, offer, now)
            await self.notifier.payment_failed(booking, request.guest_phone, "authorize", e.message)
            await self.engine.advance(request.id, now)
            return RespondResult(
                request_id=request.id,
                photographer_id=photographer_id,
                outcome=ResponseOutcome.ACCEPT,
                is_matched=False,
                message="The guest's payment could not be authorized; the request was not matched",
            )

        self.db.add(OfferResponse(
            request_id=request.id,
            photographer_id=photographer_id,
            outcome=ResponseOutcome.ACCEPT,
            distance_meters=offer.distance_meters,
            response_seconds=(now - ensure_utc(offer.sent_at)).total_seconds(),
        ))
        await self.locations.record_response_latency(
            photographer_id, (now - ensure_utc(offer.sent_at)).total_seconds()
        )
        await self.db.commit()

        await self.notifier.match_found(request, booking, availability.display_name)
        return RespondResult(
            request_id=request.id,
            photographer_id=photographer_id,
            outcome=ResponseOutcome.ACCEPT,
            is_matched=True,
            booking_id=booking_id,
            message="Request accepted",
        )

    async def _unwind_failed_authorization(
        self,
        request: InstantRequest,
        booking: InstantBooking,
        offer: Offer,
        now: datetime,
    ) -> None:
        """Cancel the booking, free the photographer and reopen the request if still in time"""
        await self.db.execute(
            update(InstantBooking)
            .where(InstantBooking.id == booking.id, InstantBooking.status == BookingStatus.MATCHED)
            .values(
                status=BookingStatus.CANCELLED,
                payment_status=PaymentStatus.FAILED,
                cancelled_at=now,
                cancelled_by="system",
                cancel_reason="Payment authorization failed",
            )
            .execution_options(synchronize_session=False)
        )
        await self.locations.release(booking.photographer_id, booking.id, now)

        reopened_status = (
            RequestStatus.PENDING if ensure_utc(request.expires_at) > now else RequestStatus.EXPIRED
        )
        await self.db.execute(
            update(InstantRequest)
            .where(
                InstantRequest.id == request.id,
                InstantRequest.status == RequestStatus.MATCHED,
                InstantRequest.matched_photographer_id == booking.photographer_id,
            )
            .values(status=reopened_status, matched_photographer_id=None, matched_at=None)
            .execution_options(synchronize_session=False)
        )
        offer.status = OfferStatus.FAILED
        restored = []
        if reopened_status == RequestStatus.PENDING:
            restored = await self.engine.restore_withdrawn_offers(request, now)
        await self.db.commit()
        await self.db.refresh(booking)
        logger.warning(
            f"Match for request {request.id} undone after failed authorization; "
            f"request is {reopened_status.value}"
        )
        if reopened_status == RequestStatus.EXPIRED:
            await self.notifier.request_expired(request)
        for restored_offer in restored:
            await self.notifier.new_request(restored_offer, request)

    async def _record_pass(
        self,
        request: InstantRequest,
        photographer_id: UUID,
        outcome: ResponseOutcome,
        decline_reason: str | None,
        now: datetime,
    ) -> RespondResult:
        """Decline or timeout: record it and move the cursor on"""
        offer = await self._get_offer(request.id, photographer_id)
        if offer is None:
            raise InvalidStateTransition("No offer was made to this photographer", request_id=str(request.id))

        new_status = OfferStatus.DECLINED if outcome == ResponseOutcome.DECLINE else OfferStatus.TIMED_OUT
        result = await self.db.execute(
            update(Offer)
            .where(Offer.id == offer.id, Offer.status == OfferStatus.OPEN)
            .values(status=new_status, responded_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            latency = (now - ensure_utc(offer.sent_at)).total_seconds()
            self.db.add(OfferResponse(
                request_id=request.id,
                photographer_id=photographer_id,
                outcome=outcome,
                distance_meters=offer.distance_meters,
                response_seconds=latency if outcome == ResponseOutcome.DECLINE else None,
                decline_reason=decline_reason,
            ))
            if outcome == ResponseOutcome.DECLINE:
                await self.locations.record_response_latency(photographer_id, latency)
            await self.db.commit()
            logger.info(f"Photographer {photographer_id} {outcome.value} for request {request.id}")

            if request.status == RequestStatus.PENDING:
                await self.engine.advance(request.id, now)
        else:
            await self.db.commit()

        return RespondResult(
            request_id=request.id,
            photographer_id=photographer_id,
            outcome=outcome,
            is_matched=False,
            message="Response recorded",
        )
