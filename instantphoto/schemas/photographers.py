"""Schemas for photographer location and availability updates"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from instantphoto.db.models import RequestType
from instantphoto.schemas.requests import ALLOWED_DURATIONS


class LocationUpdate(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    accuracy: float | None = Field(None, ge=0)
    display_name: str | None = Field(None, max_length=255)
    is_online: bool = True
    accepting_requests: bool = True
    available_until: datetime | None = None
    response_radius_m: int | None = Field(None, ge=100, le=50_000)
    instant_rates: dict[str, dict[str, int]] | None = None

    @field_validator("instant_rates")
    @classmethod
    def validate_rates(cls, v: dict[str, dict[str, int]] | None) -> dict[str, dict[str, int]] | None:
        if v is None:
            return v
        known_types = {t.value for t in RequestType}
        for request_type, by_duration in v.items():
            if request_type not in known_types:
                raise ValueError(f"Unknown request type in rates: {request_type}")
            for duration, amount in by_duration.items():
                if int(duration) not in ALLOWED_DURATIONS:
                    raise ValueError(f"Unsupported duration in rates: {duration}")
                if amount < 0:
                    raise ValueError("Rates must be non-negative")
        return v


class AvailabilityResponse(BaseModel):
    photographer_id: UUID
    display_name: str | None
    latitude: float
    longitude: float
    accuracy: float | None
    is_online: bool
    accepting_requests: bool
    available_until: datetime | None
    response_radius_m: int
    instant_rates: dict[str, dict[str, int]]
    rating: float
    avg_response_seconds: float | None
    current_booking_id: UUID | None
    updated_at: datetime | None = None

    model_config = {"from_attributes": True}
