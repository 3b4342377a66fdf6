"""Guest request endpoints"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, status
from fastapi import Query as QueryParam

from instantphoto.api.deps import get_instant_service
from instantphoto.schemas.matching import Candidate, OfferResponseView
from instantphoto.schemas.requests import (
    CancelBody,
    CancelResult,
    GuestUsage,
    InstantRequestCreate,
    InstantRequestCreated,
    InstantRequestResponse,
    OfferReply,
    RespondResult,
)
from instantphoto.services.instant import InstantPhotoService

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/", response_model=InstantRequestCreated, status_code=status.HTTP_201_CREATED)
async def create_request(
    request_data: InstantRequestCreate,
    service: InstantPhotoService = Depends(get_instant_service),
) -> InstantRequestCreated:
    """Submit an instant photo request and dispatch the first offers"""
    return await service.create_request(request_data)


@router.get("/usage", response_model=GuestUsage)
async def get_guest_usage(
    phone: str = QueryParam(..., min_length=10),
    email: str | None = QueryParam(None),
    service: InstantPhotoService = Depends(get_instant_service),
) -> GuestUsage:
    """Monthly quota usage for a guest"""
    return await service.usage.get_usage(phone, email)


@router.get("/history", response_model=list[InstantRequestResponse])
async def get_request_history(
    phone: str = QueryParam(..., min_length=10),
    service: InstantPhotoService = Depends(get_instant_service),
) -> list[InstantRequestResponse]:
    """A guest's last ten requests, newest first"""
    requests = await service.request_history(phone)
    return [InstantRequestResponse.model_validate(request) for request in requests]


@router.get("/{request_id}", response_model=InstantRequestResponse)
async def get_request(
    request_id: UUID,
    service: InstantPhotoService = Depends(get_instant_service),
) -> InstantRequestResponse:
    request = await service.get_request(request_id)
    return InstantRequestResponse.model_validate(request)


@router.post("/{request_id}/cancel", response_model=CancelResult)
async def cancel_request(
    request_id: UUID,
    body: CancelBody,
    service: InstantPhotoService = Depends(get_instant_service),
) -> CancelResult:
    """Guest cancels a request; a matched request cancels its booking"""
    return await service.cancel(request_id, "guest", body.reason)


@router.get("/{request_id}/candidates", response_model=list[Candidate])
async def preview_candidates(
    request_id: UUID,
    limit: int = QueryParam(10, ge=1, le=50),
    service: InstantPhotoService = Depends(get_instant_service),
) -> list[Candidate]:
    """Ranked photographers who could take the request right now"""
    request = await service.get_request(request_id)
    return await service.engine.finder.find_candidates(
        service.engine.search_for(request), limit=limit
    )


@router.get("/{request_id}/offers", response_model=list[OfferResponseView])
async def list_offers(
    request_id: UUID,
    service: InstantPhotoService = Depends(get_instant_service),
) -> list[OfferResponseView]:
    await service.engine.get_request(request_id)
    offers = await service.engine.get_offers(request_id)
    return [OfferResponseView.model_validate(o) for o in offers]


@router.post("/{request_id}/responses", response_model=RespondResult)
async def respond_to_offer(
    request_id: UUID,
    reply: OfferReply,
    service: InstantPhotoService = Depends(get_instant_service),
) -> RespondResult:
    """A photographer accepts or declines an offer"""
    return await service.respond_to_offer(
        request_id, reply.photographer_id, reply.outcome, reply.decline_reason
    )
