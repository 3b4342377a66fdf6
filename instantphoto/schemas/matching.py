"""Schemas for candidate ranking and offer dispatch"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from instantphoto.db.models import OfferStatus


class CandidateScores(BaseModel):
    """Detailed scoring breakdown for a candidate"""
    distance_score: float = Field(ge=0.0, le=1.0)
    rating_score: float = Field(ge=0.0, le=1.0)
    response_score: float = Field(ge=0.0, le=1.0)
    price_fit_score: float = Field(ge=0.0, le=1.0)
    final_score: float = Field(ge=0.0, le=1.0)


class Candidate(BaseModel):
    """Photographer eligible to receive an offer"""
    photographer_id: UUID
    display_name: str | None = None
    distance_meters: float
    rate: int
    rating: float
    avg_response_seconds: float | None = None
    idle_since: datetime | None = None
    scores: CandidateScores
    match_reasons: list[str] = Field(default_factory=list)


class CandidateSearch(BaseModel):
    latitude: float
    longitude: float
    request_type: str
    duration: int
    budget: int
    exclude_ids: set[UUID] = Field(default_factory=set)


class OfferResponseView(BaseModel):
    """Offer as shown to the photographer who received it"""
    id: UUID
    request_id: UUID
    photographer_id: UUID
    rank: int
    score: float
    distance_meters: float
    status: OfferStatus
    sent_at: datetime
    expires_at: datetime

    model_config = {"from_attributes": True}


class DispatchOutcome(BaseModel):
    """Result of one dispatch step"""
    request_id: UUID
    offers_sent: int = 0
    open_offers: int = 0
    expired: bool = False


class SweepResult(BaseModel):
    offers_timed_out: int = 0
    requests_expired: int = 0
    offers_sent: int = 0
