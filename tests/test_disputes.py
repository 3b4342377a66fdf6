"""Tests for dispute intake and admin resolution"""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from instantphoto.db.models import (
    BookingStatus,
    DisputeResolution,
    DisputeStatus,
    EscrowStatus,
    NotificationType,
    PaymentStatus,
)
from instantphoto.exceptions import InvalidStateTransition, NotFound, PaymentCaptureFailed, ValidationError
from instantphoto.schemas.disputes import DisputeCreate, DisputeDecision
from instantphoto.services.disputes import calculate_priority
from instantphoto.services.notifications import ADMIN_KEY
from instantphoto.services.payment_processor import ProcessorTimeout, SandboxPaymentProcessor

DISPUTE = DisputeCreate(
    reason="photos_not_delivered",
    description="The photographer left after five minutes and no album arrived",
    requested_resolution=DisputeResolution.FULL_REFUND,
)


class ProcessorOutage(SandboxPaymentProcessor):
    """Captures and voids time out while `down` is set"""

    def __init__(self):
        super().__init__()
        self.down = False

    async def capture(self, reference, idempotency_key, amount=None):
        if self.down:
            raise ProcessorTimeout("Read timed out")
        return await super().capture(reference, idempotency_key, amount)

    async def void(self, reference, idempotency_key):
        if self.down:
            raise ProcessorTimeout("Read timed out")
        return await super().void(reference, idempotency_key)


class TestCalculatePriority:
    created = datetime(2025, 6, 10, 0, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize(
        "age_hours,amount,expected",
        [
            (1, 5000, "low"),
            (13, 5000, "medium"),
            (1, 15000, "medium"),
            (25, 5000, "high"),
            (1, 25000, "high"),
            (49, 5000, "urgent"),
            (1, 60000, "urgent"),
        ],
    )
    def test_buckets(self, age_hours, amount, expected):
        now = self.created + timedelta(hours=age_hours)
        assert calculate_priority(self.created, amount, now) == expected


class TestOpenDispute:
    async def test_dispute_blocks_confirmation(self, service, in_progress_booking):
        booking, _ = await in_progress_booking()

        dispute = await service.disputes.open_dispute(booking.id, DISPUTE)

        assert dispute.status == DisputeStatus.PENDING
        with pytest.raises(InvalidStateTransition):
            await service.confirm_delivery(booking.id)

        booking = await service.bookings.get_booking(booking.id)
        assert booking.payment_status == PaymentStatus.PENDING

        admin_inbox = await service.notifier.list_notifications(ADMIN_KEY)
        assert [n.type for n in admin_inbox] == [NotificationType.DISPUTE_OPENED]

    async def test_only_in_progress_bookings(self, service, matched_booking):
        result, _ = await matched_booking()

        with pytest.raises(InvalidStateTransition):
            await service.disputes.open_dispute(result.booking_id, DISPUTE)

    async def test_one_open_dispute_per_booking(self, service, in_progress_booking):
        booking, _ = await in_progress_booking()
        await service.disputes.open_dispute(booking.id, DISPUTE)

        with pytest.raises(InvalidStateTransition):
            await service.disputes.open_dispute(booking.id, DISPUTE)


class TestResolveDispute:
    async def test_full_refund(self, service, processor, in_progress_booking, now):
        booking, photographer = await in_progress_booking()
        await service.disputes.open_dispute(booking.id, DISPUTE)

        dispute = await service.disputes.resolve_dispute(
            booking.id,
            DisputeDecision(resolution=DisputeResolution.FULL_REFUND, admin_notes="No delivery evidence"),
            current_time=now + timedelta(hours=2),
        )

        assert dispute.status == DisputeStatus.RESOLVED
        assert dispute.resolution == DisputeResolution.FULL_REFUND
        assert dispute.resolution_amount == 5000

        booking = await service.bookings.get_booking(booking.id)
        assert booking.status == BookingStatus.CANCELLED
        assert booking.payment_status == PaymentStatus.REFUNDED
        assert booking.cancelled_by == "admin"
        escrow = await service.escrow.get_escrow(booking.id)
        assert escrow.status == EscrowStatus.VOIDED
        assert len(processor.effects("void")) == 1

        availability = await service.locations.require(photographer.photographer_id)
        assert availability.current_booking_id is None

    async def test_partial_refund(self, service, processor, in_progress_booking, now):
        booking, _ = await in_progress_booking()
        await service.disputes.open_dispute(booking.id, DISPUTE)

        dispute = await service.disputes.resolve_dispute(
            booking.id,
            DisputeDecision(resolution=DisputeResolution.PARTIAL_REFUND, refund_amount=2000),
            current_time=now + timedelta(hours=2),
        )

        assert dispute.resolution_amount == 2000
        booking = await service.bookings.get_booking(booking.id)
        assert booking.payment_status == PaymentStatus.PARTIALLY_REFUNDED
        escrow = await service.escrow.get_escrow(booking.id)
        assert escrow.captured_amount == 3000
        assert escrow.refunded_amount == 2000

    async def test_partial_refund_must_be_below_total(self, service, in_progress_booking, now):
        booking, _ = await in_progress_booking()
        await service.disputes.open_dispute(booking.id, DISPUTE)

        with pytest.raises(ValidationError):
            await service.disputes.resolve_dispute(
                booking.id,
                DisputeDecision(resolution=DisputeResolution.PARTIAL_REFUND, refund_amount=5000),
                current_time=now + timedelta(hours=2),
            )

        disputes = await service.disputes.list_disputes(status=DisputeStatus.PENDING)
        assert len(disputes) == 1

    async def test_photographer_favor_captures(self, service, processor, in_progress_booking, now):
        booking, _ = await in_progress_booking()
        await service.disputes.open_dispute(booking.id, DISPUTE)

        await service.disputes.resolve_dispute(
            booking.id,
            DisputeDecision(resolution=DisputeResolution.PHOTOGRAPHER_FAVOR),
            current_time=now + timedelta(hours=2),
        )

        booking = await service.bookings.get_booking(booking.id)
        assert booking.status == BookingStatus.COMPLETED
        assert booking.payment_status == PaymentStatus.PAID
        assert [e["amount"] for e in processor.effects("capture")] == [5000]

    async def test_mediation_leaves_payment_alone(self, service, processor, in_progress_booking, now):
        booking, _ = await in_progress_booking()
        await service.disputes.open_dispute(booking.id, DISPUTE)

        dispute = await service.disputes.resolve_dispute(
            booking.id,
            DisputeDecision(resolution=DisputeResolution.MEDIATION, admin_notes="Guest agreed to a reshoot"),
            current_time=now + timedelta(hours=2),
        )

        assert dispute.status == DisputeStatus.RESOLVED
        booking = await service.bookings.get_booking(booking.id)
        assert booking.status == BookingStatus.IN_PROGRESS
        assert processor.effects("capture") == []

        # With the dispute closed the guest can confirm again
        booking = await service.confirm_delivery(booking.id, current_time=now + timedelta(hours=3))
        assert booking.payment_status == PaymentStatus.PAID

    async def test_no_open_dispute(self, service, in_progress_booking):
        booking, _ = await in_progress_booking()

        with pytest.raises(NotFound):
            await service.disputes.resolve_dispute(
                booking.id, DisputeDecision(resolution=DisputeResolution.MEDIATION)
            )

    def test_partial_refund_needs_amount(self):
        with pytest.raises(ValueError):
            DisputeDecision(resolution=DisputeResolution.PARTIAL_REFUND)


class TestSettlementFailure:
    """A decision whose money movement fails keeps the dispute open for a retry"""

    @pytest.fixture
    def processor(self):
        return ProcessorOutage()

    async def test_failed_capture_keeps_dispute_open(self, service, processor, in_progress_booking, now):
        booking, _ = await in_progress_booking()
        await service.disputes.open_dispute(booking.id, DISPUTE)
        processor.down = True
        decision = DisputeDecision(resolution=DisputeResolution.PHOTOGRAPHER_FAVOR, admin_notes="Album verified")

        with pytest.raises(PaymentCaptureFailed):
            await service.disputes.resolve_dispute(booking.id, decision, current_time=now + timedelta(hours=2))

        [dispute] = await service.disputes.list_disputes(status=DisputeStatus.PENDING)
        assert dispute.resolution is None
        assert dispute.resolved_at is None
        assert "Settlement failed (photographer_favor): Read timed out" in dispute.admin_notes
        booking = await service.bookings.get_booking(booking.id)
        assert booking.status == BookingStatus.IN_PROGRESS
        assert booking.payment_status == PaymentStatus.PENDING

        processor.down = False
        dispute = await service.disputes.resolve_dispute(booking.id, decision, current_time=now + timedelta(hours=3))

        assert dispute.status == DisputeStatus.RESOLVED
        assert dispute.resolution == DisputeResolution.PHOTOGRAPHER_FAVOR
        assert dispute.admin_notes == "Album verified"
        booking = await service.bookings.get_booking(booking.id)
        assert booking.status == BookingStatus.COMPLETED
        assert booking.payment_status == PaymentStatus.PAID
        assert len(processor.effects("capture")) == 1

    async def test_failed_refund_is_retried(self, service, processor, in_progress_booking, now):
        booking, _ = await in_progress_booking()
        await service.disputes.open_dispute(booking.id, DISPUTE)
        processor.down = True
        decision = DisputeDecision(resolution=DisputeResolution.FULL_REFUND)

        with pytest.raises(PaymentCaptureFailed):
            await service.disputes.resolve_dispute(booking.id, decision, current_time=now + timedelta(hours=2))

        assert len(await service.disputes.list_disputes(status=DisputeStatus.PENDING)) == 1
        escrow = await service.escrow.get_escrow(booking.id)
        assert escrow.status == EscrowStatus.AUTHORIZED

        processor.down = False
        dispute = await service.disputes.resolve_dispute(booking.id, decision, current_time=now + timedelta(hours=3))

        assert dispute.status == DisputeStatus.RESOLVED
        assert dispute.resolution_amount == 5000
        booking = await service.bookings.get_booking(booking.id)
        assert booking.status == BookingStatus.CANCELLED
        assert booking.payment_status == PaymentStatus.REFUNDED
        assert len(processor.effects("void")) == 1


class TestDisputeStatus:
    async def test_investigating_and_escalated(self, service, in_progress_booking):
        booking, _ = await in_progress_booking()
        dispute = await service.disputes.open_dispute(booking.id, DISPUTE)

        dispute = await service.disputes.update_status(dispute.id, DisputeStatus.INVESTIGATING)
        assert dispute.status == DisputeStatus.INVESTIGATING
        stats = await service.disputes.dispute_stats()
        assert stats.investigating == 1
        assert stats.pending == 0

        await service.disputes.update_status(dispute.id, DisputeStatus.ESCALATED)
        stats = await service.disputes.dispute_stats()
        assert stats.escalated == 1

        # Still open: confirmation stays blocked and the admin can resolve it
        with pytest.raises(InvalidStateTransition):
            await service.confirm_delivery(booking.id)
        resolved = await service.disputes.resolve_dispute(
            booking.id, DisputeDecision(resolution=DisputeResolution.MEDIATION)
        )
        assert resolved.status == DisputeStatus.RESOLVED

    async def test_resolved_cannot_be_set_directly(self, service, in_progress_booking):
        booking, _ = await in_progress_booking()
        dispute = await service.disputes.open_dispute(booking.id, DISPUTE)

        with pytest.raises(ValidationError):
            await service.disputes.update_status(dispute.id, DisputeStatus.RESOLVED)

    async def test_resolved_dispute_is_closed(self, service, in_progress_booking):
        booking, _ = await in_progress_booking()
        dispute = await service.disputes.open_dispute(booking.id, DISPUTE)
        await service.disputes.resolve_dispute(booking.id, DisputeDecision(resolution=DisputeResolution.MEDIATION))

        with pytest.raises(InvalidStateTransition):
            await service.disputes.update_status(dispute.id, DisputeStatus.ESCALATED)

    async def test_unknown_dispute(self, service):
        with pytest.raises(NotFound):
            await service.disputes.update_status(uuid4(), DisputeStatus.INVESTIGATING)


class TestDisputeQueue:
    async def test_list_and_stats(self, service, in_progress_booking, now):
        first, _ = await in_progress_booking()
        second, _ = await in_progress_booking(at=now + timedelta(minutes=30))
        await service.disputes.open_dispute(first.id, DISPUTE)
        await service.disputes.open_dispute(second.id, DISPUTE)
        await service.disputes.resolve_dispute(
            first.id,
            DisputeDecision(resolution=DisputeResolution.MEDIATION),
            current_time=now + timedelta(hours=1),
        )

        pending = await service.disputes.list_disputes(status=DisputeStatus.PENDING)
        assert [d.booking_id for d in pending] == [second.id]
        assert pending[0].priority == "low"

        resolved = await service.disputes.list_disputes(status=DisputeStatus.RESOLVED)
        assert resolved[0].priority is None

        stats = await service.disputes.dispute_stats()
        assert stats.total == 2
        assert stats.pending == 1
        assert stats.resolved == 1
        assert stats.total_disputed_amount == 10000

    async def test_booking_view_includes_escrow(self, service, in_progress_booking):
        booking, _ = await in_progress_booking()

        view = await service.disputes.get_booking_view(booking.id)

        assert view.booking.id == booking.id
        assert view.booking.total_amount == 5000
        assert view.escrow.status == EscrowStatus.AUTHORIZED
        assert view.escrow.idempotency_key == f"{booking.id}:authorize"
