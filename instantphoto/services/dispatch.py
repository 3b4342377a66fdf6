"""Offer dispatch and request expiry

Offers go out in waves. A wave is chosen by a dispatch strategy from the
ranked candidate list; the next wave is only sent once every offer of the
previous one has been declined or has lapsed. Persisted offers are the
cursor, so any worker can advance a request.
"""

import logging
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from instantphoto.config import settings
from instantphoto.db.models import (
    InstantRequest,
    Offer,
    OfferResponse,
    OfferStatus,
    RequestStatus,
    ResponseOutcome,
)
from instantphoto.exceptions import InvalidStateTransition, NoCandidatesAvailable, NotFound
from instantphoto.schemas.matching import Candidate, CandidateSearch, DispatchOutcome, SweepResult
from instantphoto.services.matching import NearbyCandidateFinder
from instantphoto.services.notifications import NotificationFanout
from instantphoto.utils.clock import ensure_utc, utcnow

logger = logging.getLogger(__name__)


class DispatchStrategy:
    """Chooses which ranked candidates receive the next wave of offers"""

    name = "base"

    def select_wave(self, candidates: list[Candidate]) -> list[Candidate]:
        raise NotImplementedError


class SequentialDispatch(DispatchStrategy):
    """One offer at a time, best candidate first"""

    name = "sequential"

    def select_wave(self, candidates: list[Candidate]) -> list[Candidate]:
        return candidates[:1]


class BroadcastDispatch(DispatchStrategy):
    """Offer the leaders together when their scores are close"""

    name = "broadcast"

    def __init__(self, score_gap: float | None = None, max_offers: int | None = None):
        self.score_gap = settings.broadcast_score_gap if score_gap is None else score_gap
        self.max_offers = settings.broadcast_max_offers if max_offers is None else max_offers

    def select_wave(self, candidates: list[Candidate]) -> list[Candidate]:
        if not candidates:
            return []
        top_score = candidates[0].scores.final_score
        return [
            candidate for candidate in candidates[:self.max_offers]
            if top_score - candidate.scores.final_score <= self.score_gap
        ]


def strategy_for(mode: str | None = None) -> DispatchStrategy:
    mode = mode or settings.dispatch_mode
    if mode == "sequential":
        return SequentialDispatch()
    return BroadcastDispatch()


class MatchingEngine:
    """Drives offers for pending requests and owns the pending -> expired/cancelled moves"""

    def __init__(
        self,
        db: AsyncSession,
        notifier: NotificationFanout,
        strategy: DispatchStrategy | None = None,
    ):
        self.db = db
        self.notifier = notifier
        self.strategy = strategy or strategy_for()
        self.finder = NearbyCandidateFinder(db)

    async def get_request(self, request_id: UUID) -> InstantRequest:
        result = await self.db.execute(
            select(InstantRequest)
            .where(InstantRequest.id == request_id)
            .execution_options(populate_existing=True)
        )
        request = result.scalar_one_or_none()
        if request is None:
            raise NotFound(f"Request {request_id} not found")
        return request

    async def get_offers(self, request_id: UUID) -> list[Offer]:
        result = await self.db.execute(
            select(Offer)
            .where(Offer.request_id == request_id)
            .order_by(Offer.rank)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def list_offers_for_photographer(
        self,
        photographer_id: UUID,
        open_only: bool = True,
    ) -> list[Offer]:
        stmt = select(Offer).where(Offer.photographer_id == photographer_id)
        if open_only:
            stmt = stmt.where(Offer.status == OfferStatus.OPEN)
        result = await self.db.execute(stmt.order_by(Offer.sent_at.desc()))
        return list(result.scalars().all())

    @staticmethod
    def search_for(request: InstantRequest, exclude_ids: set[UUID] | None = None) -> CandidateSearch:
        return CandidateSearch(
            latitude=request.latitude,
            longitude=request.longitude,
            request_type=request.request_type.value,
            duration=request.duration,
            budget=request.budget,
            exclude_ids=exclude_ids or set(),
        )

    async def start(self, request_id: UUID, current_time: datetime | None = None) -> DispatchOutcome:
        """
        Send the first wave for a new request

        Raises NoCandidatesAvailable when nobody can take it; the request is
        expired and the guest notified before the error is raised.
        """
        outcome = await self.advance(request_id, current_time)
        if outcome.expired and outcome.offers_sent == 0:
            raise NoCandidatesAvailable(
                "No photographers are available near this location",
                request_id=str(request_id),
            )
        return outcome

    async def advance(self, request_id: UUID, current_time: datetime | None = None) -> DispatchOutcome:
        """Send the next wave if no offer for the request is still live"""
        now = current_time or utcnow()
        request = await self.get_request(request_id)

        if request.status != RequestStatus.PENDING:
            return DispatchOutcome(request_id=request_id)
        if ensure_utc(request.expires_at) <= now:
            await self.expire_request(request, now)
            return DispatchOutcome(request_id=request_id, expired=True)

        offers = await self.get_offers(request_id)
        live = [
            offer for offer in offers
            if offer.status == OfferStatus.OPEN and ensure_utc(offer.expires_at) > now
        ]
        if live:
            return DispatchOutcome(request_id=request_id, open_offers=len(live))

        for offer in offers:
            if offer.status == OfferStatus.OPEN:
                await self._time_out(offer, now)

        search = self.search_for(request, {offer.photographer_id for offer in offers})
        candidates = await self.finder.find_candidates(search, current_time=now)
        if not candidates:
            logger.info(f"Candidates exhausted for request {request_id}")
            await self.expire_request(request, now)
            return DispatchOutcome(request_id=request_id, expired=True)

        wave = self.strategy.select_wave(candidates)
        offer_expires_at = min(
            now + timedelta(seconds=settings.offer_window_seconds),
            ensure_utc(request.expires_at),
        )
        new_offers = [
            Offer(
                request_id=request_id,
                photographer_id=candidate.photographer_id,
                rank=len(offers) + position + 1,
                score=candidate.scores.final_score,
                distance_meters=candidate.distance_meters,
                status=OfferStatus.OPEN,
                sent_at=now,
                expires_at=offer_expires_at,
            )
            for position, candidate in enumerate(wave)
        ]
        self.db.add_all(new_offers)
        try:
            await self.db.commit()
        except IntegrityError:
            # Another worker dispatched the same candidates first
            await self.db.rollback()
            logger.info(f"Concurrent dispatch detected for request {request_id}")
            return DispatchOutcome(request_id=request_id)

        logger.info(
            f"Dispatched {len(new_offers)} offer(s) for request {request_id} "
            f"using {self.strategy.name} strategy"
        )
        for offer in new_offers:
            await self.notifier.new_request(offer, request)

        return DispatchOutcome(
            request_id=request_id,
            offers_sent=len(new_offers),
            open_offers=len(new_offers),
        )

    async def _time_out(self, offer: Offer, now: datetime) -> bool:
        """Close a lapsed offer and record the timeout; caller commits"""
        result = await self.db.execute(
            update(Offer)
            .where(Offer.id == offer.id, Offer.status == OfferStatus.OPEN)
            .values(status=OfferStatus.TIMED_OUT, responded_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        self.db.add(OfferResponse(
            request_id=offer.request_id,
            photographer_id=offer.photographer_id,
            outcome=ResponseOutcome.TIMEOUT,
            distance_meters=offer.distance_meters,
        ))
        logger.info(f"Offer to photographer {offer.photographer_id} for request {offer.request_id} timed out")
        return True

    async def withdraw_open_offers(self, request_id: UUID, keep_offer_id: UUID | None = None) -> None:
        stmt = update(Offer).where(Offer.request_id == request_id, Offer.status == OfferStatus.OPEN)
        if keep_offer_id is not None:
            stmt = stmt.where(Offer.id != keep_offer_id)
        await self.db.execute(
            stmt.values(status=OfferStatus.WITHDRAWN).execution_options(synchronize_session=False)
        )

    async def restore_withdrawn_offers(self, request: InstantRequest, now: datetime) -> list[Offer]:
        """
        Reopen offers withdrawn by an accept that was undone

        A pending request only has withdrawn offers when its match fell
        through, so every one of them goes back to open with a fresh window.
        Caller commits.
        """
        offer_expires_at = min(
            now + timedelta(seconds=settings.offer_window_seconds),
            ensure_utc(request.expires_at),
        )
        result = await self.db.execute(
            select(Offer)
            .where(Offer.request_id == request.id, Offer.status == OfferStatus.WITHDRAWN)
            .execution_options(populate_existing=True)
        )
        restored = list(result.scalars().all())
        for offer in restored:
            offer.status = OfferStatus.OPEN
            offer.expires_at = offer_expires_at
        if restored:
            logger.info(f"Restored {len(restored)} withdrawn offer(s) for request {request.id}")
        return restored

    async def expire_request(self, request: InstantRequest, current_time: datetime | None = None) -> bool:
        """pending -> expired; returns False if the request had already left pending"""
        result = await self.db.execute(
            update(InstantRequest)
            .where(
                InstantRequest.id == request.id,
                InstantRequest.status == RequestStatus.PENDING,
            )
            .values(status=RequestStatus.EXPIRED)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.commit()
            return False

        await self.withdraw_open_offers(request.id)
        await self.db.commit()
        request.status = RequestStatus.EXPIRED
        logger.info(f"Request {request.id} expired")
        await self.notifier.request_expired(request)
        return True

    async def refresh_expiry(self, request: InstantRequest, current_time: datetime | None = None) -> InstantRequest:
        """Lazy expiry on read"""
        now = current_time or utcnow()
        if request.status == RequestStatus.PENDING and ensure_utc(request.expires_at) <= now:
            await self.expire_request(request, now)
            return await self.get_request(request.id)
        return request

    async def cancel_request(
        self,
        request_id: UUID,
        reason: str | None = None,
        current_time: datetime | None = None,
    ) -> InstantRequest:
        """pending -> cancelled by the guest; repeated cancels are no-ops"""
        now = current_time or utcnow()
        request = await self.refresh_expiry(await self.get_request(request_id), now)

        result = await self.db.execute(
            update(InstantRequest)
            .where(
                InstantRequest.id == request_id,
                InstantRequest.status == RequestStatus.PENDING,
            )
            .values(status=RequestStatus.CANCELLED, cancelled_at=now, cancel_reason=reason)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.commit()
            request = await self.get_request(request_id)
            if request.status == RequestStatus.CANCELLED:
                return request
            raise InvalidStateTransition(
                f"Cannot cancel a {request.status.value} request",
                request_id=str(request_id),
            )

        await self.withdraw_open_offers(request_id)
        await self.db.commit()
        logger.info(f"Request {request_id} cancelled by guest")
        return await self.get_request(request_id)

    async def sweep(self, current_time: datetime | None = None) -> SweepResult:
        """Time out lapsed offers, move their requests along, expire lapsed requests"""
        now = current_time or utcnow()
        sweep_result = SweepResult()

        result = await self.db.execute(
            select(Offer).where(Offer.status == OfferStatus.OPEN, Offer.expires_at <= now)
        )
        lapsed_offers = list(result.scalars().all())
        for offer in lapsed_offers:
            if await self._time_out(offer, now):
                sweep_result.offers_timed_out += 1
        await self.db.commit()

        for request_id in {offer.request_id for offer in lapsed_offers}:
            outcome = await self.advance(request_id, now)
            sweep_result.offers_sent += outcome.offers_sent
            if outcome.expired:
                sweep_result.requests_expired += 1

        result = await self.db.execute(
            select(InstantRequest).where(
                InstantRequest.status == RequestStatus.PENDING,
                InstantRequest.expires_at <= now,
            )
        )
        for request in result.scalars().all():
            if await self.expire_request(request, now):
                sweep_result.requests_expired += 1

        if sweep_result.offers_timed_out or sweep_result.requests_expired:
            logger.info(
                f"Sweep timed out {sweep_result.offers_timed_out} offer(s), "
                f"expired {sweep_result.requests_expired} request(s)"
            )
        return sweep_result
