"""Photographer availability and offer endpoints"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends
from fastapi import Query as QueryParam

from instantphoto.api.deps import get_instant_service
from instantphoto.schemas.matching import OfferResponseView
from instantphoto.schemas.photographers import AvailabilityResponse, LocationUpdate
from instantphoto.services.instant import InstantPhotoService

logger = logging.getLogger(__name__)
router = APIRouter()


@router.put("/{photographer_id}/location", response_model=AvailabilityResponse)
async def update_location(
    photographer_id: UUID,
    update_data: LocationUpdate,
    service: InstantPhotoService = Depends(get_instant_service),
) -> AvailabilityResponse:
    """Report live location, availability flags and rates"""
    availability = await service.locations.upsert_location(photographer_id, update_data)
    return AvailabilityResponse.model_validate(availability)


@router.get("/{photographer_id}/availability", response_model=AvailabilityResponse)
async def get_availability(
    photographer_id: UUID,
    service: InstantPhotoService = Depends(get_instant_service),
) -> AvailabilityResponse:
    return AvailabilityResponse.model_validate(await service.locations.require(photographer_id))


@router.post("/{photographer_id}/online", response_model=AvailabilityResponse)
async def go_online(
    photographer_id: UUID,
    service: InstantPhotoService = Depends(get_instant_service),
) -> AvailabilityResponse:
    availability = await service.locations.set_online(photographer_id, True, accepting_requests=True)
    return AvailabilityResponse.model_validate(availability)


@router.post("/{photographer_id}/offline", response_model=AvailabilityResponse)
async def go_offline(
    photographer_id: UUID,
    service: InstantPhotoService = Depends(get_instant_service),
) -> AvailabilityResponse:
    availability = await service.locations.set_online(photographer_id, False)
    return AvailabilityResponse.model_validate(availability)


@router.get("/{photographer_id}/offers", response_model=list[OfferResponseView])
async def list_offers(
    photographer_id: UUID,
    open_only: bool = QueryParam(True),
    service: InstantPhotoService = Depends(get_instant_service),
) -> list[OfferResponseView]:
    """Offers sent to a photographer, newest first"""
    offers = await service.engine.list_offers_for_photographer(photographer_id, open_only)
    return [OfferResponseView.model_validate(o) for o in offers]
