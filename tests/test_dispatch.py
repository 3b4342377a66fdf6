"""Tests for offer dispatch, request expiry and guest cancellation"""

from datetime import timedelta
from uuid import uuid4

import pytest

from instantphoto.db.models import (
    NotificationType,
    OfferStatus,
    RequestStatus,
    ResponseOutcome,
)
from instantphoto.exceptions import InvalidStateTransition, NotFound, RequestExpired
from instantphoto.services.dispatch import SequentialDispatch
from instantphoto.services.expiry import ExpiryWorker
from instantphoto.services.instant import InstantPhotoService
from instantphoto.services.notifications import guest_user_key, photographer_key


@pytest.fixture
def sequential_service(test_db, channel, processor) -> InstantPhotoService:
    return InstantPhotoService(test_db, channel, processor, strategy=SequentialDispatch())


class TestCreateRequest:
    async def test_offers_sent_to_nearby_photographer(self, service, add_photographer, now, make_request_data):
        photographer = await add_photographer(distance_m=300)

        created = await service.create_request(make_request_data(), current_time=now)

        assert created.status == RequestStatus.PENDING
        assert created.offers_sent == 1
        offers = await service.engine.get_offers(created.request_id)
        assert len(offers) == 1
        assert offers[0].photographer_id == photographer.photographer_id
        assert offers[0].status == OfferStatus.OPEN
        assert offers[0].rank == 1

        inbox = await service.notifier.list_notifications(photographer_key(photographer.photographer_id))
        assert [n.type for n in inbox] == [NotificationType.NEW_REQUEST]

    async def test_ttl_follows_urgency(self, service, add_photographer, now, make_request_data):
        await add_photographer()

        created = await service.create_request(make_request_data(urgency="within_1hour"), current_time=now)

        request = await service.engine.get_request(created.request_id)
        assert request.expires_at.replace(tzinfo=None) == (now + timedelta(minutes=60)).replace(tzinfo=None)

    async def test_no_candidates_expires_immediately(self, service, now, make_request_data):
        created = await service.create_request(make_request_data(), current_time=now)

        assert created.status == RequestStatus.EXPIRED
        assert created.offers_sent == 0

        inbox = await service.notifier.list_notifications(guest_user_key("+81 90-1234-5678"))
        assert [n.type for n in inbox] == [NotificationType.REQUEST_EXPIRED]

    async def test_photographer_outside_radius_gets_nothing(self, service, add_photographer, now, make_request_data):
        await add_photographer(distance_m=3000, radius_m=1000)

        created = await service.create_request(make_request_data(), current_time=now)

        assert created.status == RequestStatus.EXPIRED


class TestSequentialDispatch:
    async def test_decline_advances_to_next_candidate(
        self, sequential_service, add_photographer, now, make_request_data
    ):
        first = await add_photographer(distance_m=100)
        second = await add_photographer(distance_m=400)

        created = await sequential_service.create_request(make_request_data(), current_time=now)
        assert created.offers_sent == 1

        result = await sequential_service.respond_to_offer(
            created.request_id,
            first.photographer_id,
            ResponseOutcome.DECLINE,
            decline_reason="On a break",
            current_time=now + timedelta(seconds=20),
        )
        assert result.is_matched is False

        offers = await sequential_service.engine.get_offers(created.request_id)
        assert [(o.photographer_id, o.status) for o in offers] == [
            (first.photographer_id, OfferStatus.DECLINED),
            (second.photographer_id, OfferStatus.OPEN),
        ]
        assert offers[1].rank == 2

    async def test_decline_records_latency(self, sequential_service, add_photographer, now, make_request_data):
        photographer = await add_photographer()
        created = await sequential_service.create_request(make_request_data(), current_time=now)

        await sequential_service.respond_to_offer(
            created.request_id,
            photographer.photographer_id,
            ResponseOutcome.DECLINE,
            current_time=now + timedelta(seconds=40),
        )

        availability = await sequential_service.locations.require(photographer.photographer_id)
        assert availability.avg_response_seconds == pytest.approx(40.0)
        assert availability.response_count == 1

    async def test_last_decline_expires_request(self, sequential_service, add_photographer, now, make_request_data):
        photographer = await add_photographer()
        created = await sequential_service.create_request(make_request_data(), current_time=now)

        await sequential_service.respond_to_offer(
            created.request_id,
            photographer.photographer_id,
            ResponseOutcome.DECLINE,
            current_time=now + timedelta(seconds=10),
        )

        request = await sequential_service.engine.get_request(created.request_id)
        assert request.status == RequestStatus.EXPIRED

    async def test_lapsed_offer_moves_on_during_sweep(
        self, sequential_service, add_photographer, now, make_request_data
    ):
        first = await add_photographer(distance_m=100)
        second = await add_photographer(distance_m=400)
        created = await sequential_service.create_request(make_request_data(), current_time=now)

        result = await sequential_service.engine.sweep(now + timedelta(minutes=2))

        assert result.offers_timed_out == 1
        assert result.offers_sent == 1
        assert result.requests_expired == 0
        offers = await sequential_service.engine.get_offers(created.request_id)
        assert [(o.photographer_id, o.status) for o in offers] == [
            (first.photographer_id, OfferStatus.TIMED_OUT),
            (second.photographer_id, OfferStatus.OPEN),
        ]


class TestRequestExpiry:
    async def test_within_1hour_request_expires_after_ttl(
        self, service, add_photographer, now, make_request_data
    ):
        photographer = await add_photographer()
        created = await service.create_request(make_request_data(urgency="within_1hour"), current_time=now)

        result = await service.engine.sweep(now + timedelta(minutes=61))

        assert result.offers_timed_out == 1
        assert result.requests_expired == 1
        request = await service.engine.get_request(created.request_id)
        assert request.status == RequestStatus.EXPIRED

        # Expired is terminal: a late accept and a second sweep change nothing
        with pytest.raises(RequestExpired):
            await service.respond_to_offer(
                created.request_id,
                photographer.photographer_id,
                ResponseOutcome.ACCEPT,
                current_time=now + timedelta(minutes=62),
            )
        again = await service.engine.sweep(now + timedelta(minutes=63))
        assert again.requests_expired == 0
        request = await service.engine.get_request(created.request_id)
        assert request.status == RequestStatus.EXPIRED

    async def test_request_stays_pending_before_ttl(self, service, add_photographer, now, make_request_data):
        await add_photographer()
        created = await service.create_request(make_request_data(urgency="within_1hour"), current_time=now)

        await service.engine.sweep(now + timedelta(seconds=60))

        request = await service.engine.get_request(created.request_id)
        assert request.status == RequestStatus.PENDING

    async def test_lazy_expiry_on_read(self, service, add_photographer, now, make_request_data):
        await add_photographer()
        created = await service.create_request(make_request_data(urgency="within_30min"), current_time=now)

        request = await service.get_request(created.request_id, current_time=now + timedelta(minutes=31))

        assert request.status == RequestStatus.EXPIRED
        offers = await service.engine.get_offers(created.request_id)
        assert all(o.status != OfferStatus.OPEN for o in offers)

    async def test_accept_after_deadline_is_rejected(self, service, add_photographer, now, make_request_data):
        photographer = await add_photographer()
        created = await service.create_request(make_request_data(), current_time=now)

        with pytest.raises(RequestExpired):
            await service.respond_to_offer(
                created.request_id,
                photographer.photographer_id,
                ResponseOutcome.ACCEPT,
                current_time=now + timedelta(minutes=16),
            )

        request = await service.engine.get_request(created.request_id)
        assert request.status == RequestStatus.EXPIRED

    async def test_expiry_worker_runs_sweep(
        self, session_factory, channel, add_photographer, service, now, make_request_data
    ):
        await add_photographer()
        created = await service.create_request(make_request_data(), current_time=now)

        worker = ExpiryWorker(session_factory, channel, interval=0.01)
        result = await worker.run_once(now + timedelta(minutes=20))

        assert result.requests_expired == 1
        request = await service.engine.get_request(created.request_id)
        assert request.status == RequestStatus.EXPIRED


class TestCancelRequest:
    async def test_guest_cancels_pending_request(self, service, add_photographer, now, make_request_data):
        await add_photographer()
        created = await service.create_request(make_request_data(), current_time=now)

        result = await service.cancel(
            created.request_id, actor="guest", reason="Changed plans", current_time=now + timedelta(minutes=1)
        )

        assert result.kind == "request"
        assert result.status == "cancelled"
        request = await service.engine.get_request(created.request_id)
        assert request.cancel_reason == "Changed plans"
        offers = await service.engine.get_offers(created.request_id)
        assert [o.status for o in offers] == [OfferStatus.WITHDRAWN]

    async def test_cancel_is_idempotent(self, service, add_photographer, now, make_request_data):
        await add_photographer()
        created = await service.create_request(make_request_data(), current_time=now)

        await service.cancel(created.request_id, actor="guest", current_time=now)
        result = await service.cancel(created.request_id, actor="guest", current_time=now)

        assert result.status == "cancelled"

    async def test_cannot_cancel_expired_request(self, service, now, make_request_data):
        created = await service.create_request(make_request_data(), current_time=now)

        with pytest.raises(InvalidStateTransition):
            await service.cancel(created.request_id, actor="guest", current_time=now)

    async def test_accept_after_cancel_is_rejected(self, service, add_photographer, now, make_request_data):
        photographer = await add_photographer()
        created = await service.create_request(make_request_data(), current_time=now)
        await service.cancel(created.request_id, actor="guest", current_time=now)

        with pytest.raises(InvalidStateTransition):
            await service.respond_to_offer(
                created.request_id,
                photographer.photographer_id,
                ResponseOutcome.ACCEPT,
                current_time=now + timedelta(seconds=5),
            )

    async def test_unknown_id(self, service):
        with pytest.raises(NotFound):
            await service.cancel(uuid4(), actor="guest")
