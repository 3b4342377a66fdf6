"""Admin endpoints: dispute resolution and maintenance"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Request
from fastapi import Query as QueryParam

from instantphoto.api.deps import get_instant_service
from instantphoto.db.models import DisputeStatus
from instantphoto.exceptions import ValidationError
from instantphoto.schemas.bookings import BookingWithEscrow
from instantphoto.schemas.disputes import DisputeDecision, DisputeResponse, DisputeStats, DisputeStatusUpdate
from instantphoto.schemas.matching import SweepResult
from instantphoto.services.instant import InstantPhotoService

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/disputes", response_model=list[DisputeResponse])
async def list_disputes(
    status_filter: str | None = QueryParam(None, alias="status"),
    service: InstantPhotoService = Depends(get_instant_service),
) -> list[DisputeResponse]:
    """Disputes newest first; open ones carry a triage priority"""
    status_enum = None
    if status_filter:
        try:
            status_enum = DisputeStatus(status_filter.lower())
        except ValueError:
            raise ValidationError(f"Invalid status filter: {status_filter}", field="status")
    return await service.disputes.list_disputes(status_enum)


@router.get("/disputes/stats", response_model=DisputeStats)
async def dispute_stats(
    service: InstantPhotoService = Depends(get_instant_service),
) -> DisputeStats:
    return await service.disputes.dispute_stats()


@router.patch("/disputes/{dispute_id}/status", response_model=DisputeResponse)
async def update_dispute_status(
    dispute_id: UUID,
    update: DisputeStatusUpdate,
    service: InstantPhotoService = Depends(get_instant_service),
) -> DisputeResponse:
    """Mark an open dispute as investigating or escalated"""
    dispute = await service.disputes.update_status(dispute_id, update.status)
    return DisputeResponse.model_validate(dispute)


@router.get("/bookings/{booking_id}", response_model=BookingWithEscrow)
async def get_booking_with_escrow(
    booking_id: UUID,
    service: InstantPhotoService = Depends(get_instant_service),
) -> BookingWithEscrow:
    return await service.disputes.get_booking_view(booking_id)


@router.post("/bookings/{booking_id}/resolve-dispute", response_model=DisputeResponse)
async def resolve_dispute(
    booking_id: UUID,
    decision: DisputeDecision,
    service: InstantPhotoService = Depends(get_instant_service),
) -> DisputeResponse:
    """Apply a decision; refund decisions cancel the booking and release funds"""
    dispute = await service.disputes.resolve_dispute(booking_id, decision)
    return DisputeResponse.model_validate(dispute)


@router.post("/sweep", response_model=SweepResult)
async def run_sweep(
    request: Request,
    service: InstantPhotoService = Depends(get_instant_service),
) -> SweepResult:
    """Run one expiry sweep now instead of waiting for the background worker"""
    result = await service.engine.sweep()
    logger.info(f"Manual sweep requested from {request.client.host if request.client else 'unknown'}")
    return result
