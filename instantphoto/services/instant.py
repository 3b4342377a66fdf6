"""
Entry points for the instant photo core

InstantPhotoService wires the per-session collaborators together and exposes
the operations callers use: create a request, answer an offer, confirm
delivery and cancel.
"""

import logging
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from instantphoto.db.models import InstantRequest, RequestStatus, ResponseOutcome
from instantphoto.exceptions import NoCandidatesAvailable, NotFound, PermissionDenied
from instantphoto.schemas.bookings import DeliveryRatings
from instantphoto.schemas.requests import (
    CancelResult,
    InstantRequestCreate,
    InstantRequestCreated,
    RespondResult,
)
from instantphoto.services.bookings import BookingLifecycle
from instantphoto.services.dispatch import DispatchStrategy, MatchingEngine
from instantphoto.services.disputes import DisputeService
from instantphoto.services.escrow import EscrowSettlement
from instantphoto.services.geocoding import ReverseGeocoder
from instantphoto.services.intake import RequestIntake
from instantphoto.services.locations import LocationRegistry
from instantphoto.services.notifications import NotificationChannel, NotificationFanout
from instantphoto.services.payment_processor import PaymentProcessor
from instantphoto.services.responses import ResponseCoordinator
from instantphoto.services.sms import GuestSMSService
from instantphoto.services.usage import UsageQuotaTracker
from instantphoto.utils.clock import utcnow

logger = logging.getLogger(__name__)


class InstantPhotoService:
    """Facade over the dispatch, booking and settlement services for one session"""

    def __init__(
        self,
        db: AsyncSession,
        channel: NotificationChannel,
        processor: PaymentProcessor,
        geocoder: ReverseGeocoder | None = None,
        sms: GuestSMSService | None = None,
        strategy: DispatchStrategy | None = None,
    ):
        self.db = db
        self.notifier = NotificationFanout(db, channel, sms)
        self.locations = LocationRegistry(db)
        self.usage = UsageQuotaTracker(db)
        self.engine = MatchingEngine(db, self.notifier, strategy)
        self.escrow = EscrowSettlement(db, processor)
        self.bookings = BookingLifecycle(db, self.escrow, self.notifier)
        self.responses = ResponseCoordinator(db, self.engine, self.escrow, self.notifier)
        self.intake = RequestIntake(db, self.usage, geocoder)
        self.disputes = DisputeService(db, self.escrow, self.bookings, self.notifier)

    async def create_request(
        self,
        data: InstantRequestCreate | dict[str, Any],
        current_time: datetime | None = None,
    ) -> InstantRequestCreated:
        """Persist a request and send the first wave of offers"""
        now = current_time or utcnow()
        request = await self.intake.create_request(data, now)
        request_id = request.id

        offers_sent = 0
        try:
            outcome = await self.engine.start(request_id, now)
            offers_sent = outcome.offers_sent
        except NoCandidatesAvailable:
            logger.info(f"Request {request_id} expired immediately, no photographers nearby")

        request = await self.engine.get_request(request_id)
        return InstantRequestCreated(
            request_id=request.id,
            status=request.status,
            expires_at=request.expires_at,
            offers_sent=offers_sent,
        )

    async def respond_to_offer(
        self,
        request_id: UUID,
        photographer_id: UUID,
        outcome: ResponseOutcome,
        decline_reason: str | None = None,
        current_time: datetime | None = None,
    ) -> RespondResult:
        return await self.responses.respond(
            request_id, photographer_id, outcome, decline_reason, current_time
        )

    async def confirm_delivery(
        self,
        booking_id: UUID,
        ratings: DeliveryRatings | None = None,
        current_time: datetime | None = None,
    ):
        return await self.bookings.confirm_delivery(booking_id, ratings, current_time)

    async def get_request(self, request_id: UUID, current_time: datetime | None = None) -> InstantRequest:
        """Read a request, expiring it first if its deadline has passed"""
        request = await self.engine.get_request(request_id)
        return await self.engine.refresh_expiry(request, current_time)

    async def request_history(self, phone: str, limit: int = 10) -> list[InstantRequest]:
        return await self.intake.history(phone, limit)

    async def cancel(
        self,
        entity_id: UUID,
        actor: str,
        reason: str | None = None,
        actor_id: UUID | None = None,
        current_time: datetime | None = None,
    ) -> CancelResult:
        """
        Cancel a booking or a request by id

        A matched request is cancelled through its active booking so the
        escrow hold is released; a pending request is simply closed.
        """
        try:
            booking = await self.bookings.get_booking(entity_id)
        except NotFound:
            booking = None

        if booking is None:
            request = await self.engine.get_request(entity_id)
            if request.status == RequestStatus.MATCHED:
                booking = await self.bookings.find_active_booking(request.id)
            if booking is None:
                if actor == "photographer":
                    raise PermissionDenied("Photographers cannot cancel a guest's request")
                request = await self.engine.cancel_request(request.id, reason, current_time)
                return CancelResult(id=request.id, kind="request", status=request.status.value)

        booking = await self.bookings.cancel(
            booking.id,
            actor,
            reason=reason,
            actor_id=actor_id,
            current_time=current_time,
        )
        return CancelResult(
            id=booking.id,
            kind="booking",
            status=booking.status.value,
            payment_status=booking.payment_status.value,
        )
