"""Booking lifecycle endpoints"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, status

from instantphoto.api.deps import get_instant_service
from instantphoto.schemas.bookings import (
    BookingCancel,
    BookingResponse,
    DeliveryRatings,
    PhotoDelivery,
    StartBooking,
)
from instantphoto.schemas.disputes import DisputeCreate, DisputeResponse
from instantphoto.schemas.requests import CancelResult
from instantphoto.services.instant import InstantPhotoService

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: UUID,
    service: InstantPhotoService = Depends(get_instant_service),
) -> BookingResponse:
    return BookingResponse.model_validate(await service.bookings.get_booking(booking_id))


@router.post("/{booking_id}/start", response_model=BookingResponse)
async def start_booking(
    booking_id: UUID,
    body: StartBooking,
    service: InstantPhotoService = Depends(get_instant_service),
) -> BookingResponse:
    """Photographer has arrived and started shooting"""
    booking = await service.bookings.start(booking_id, body.photographer_id)
    return BookingResponse.model_validate(booking)


@router.post("/{booking_id}/deliver", response_model=BookingResponse)
async def deliver_photos(
    booking_id: UUID,
    body: PhotoDelivery,
    service: InstantPhotoService = Depends(get_instant_service),
) -> BookingResponse:
    booking = await service.bookings.mark_delivered(
        booking_id, body.photographer_id, body.photo_count, body.delivery_url
    )
    return BookingResponse.model_validate(booking)


@router.post("/{booking_id}/confirm-delivery", response_model=BookingResponse)
async def confirm_delivery(
    booking_id: UUID,
    ratings: DeliveryRatings | None = None,
    service: InstantPhotoService = Depends(get_instant_service),
) -> BookingResponse:
    """Guest confirms delivery; captures the payment hold once"""
    booking = await service.confirm_delivery(booking_id, ratings)
    return BookingResponse.model_validate(booking)


@router.post("/{booking_id}/cancel", response_model=CancelResult)
async def cancel_booking(
    booking_id: UUID,
    body: BookingCancel,
    service: InstantPhotoService = Depends(get_instant_service),
) -> CancelResult:
    await service.bookings.get_booking(booking_id)
    return await service.cancel(booking_id, body.actor, body.reason, actor_id=body.actor_id)


@router.post(
    "/{booking_id}/disputes",
    response_model=DisputeResponse,
    status_code=status.HTTP_201_CREATED,
)
async def open_dispute(
    booking_id: UUID,
    body: DisputeCreate,
    service: InstantPhotoService = Depends(get_instant_service),
) -> DisputeResponse:
    """Guest disputes an in-progress booking; capture is blocked until resolved"""
    dispute = await service.disputes.open_dispute(booking_id, body)
    return DisputeResponse.model_validate(dispute)
