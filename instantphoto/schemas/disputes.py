"""Schemas for dispute handling"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from instantphoto.db.models import DisputeResolution, DisputeStatus


class DisputeCreate(BaseModel):
    reason: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., min_length=1, max_length=5000)
    requested_resolution: DisputeResolution | None = None


class DisputeDecision(BaseModel):
    """Admin decision passed to resolve_dispute"""
    resolution: DisputeResolution
    refund_amount: int | None = Field(None, ge=1)
    admin_notes: str | None = Field(None, max_length=5000)

    @model_validator(mode="after")
    def check_refund_amount(self) -> "DisputeDecision":
        if self.resolution == DisputeResolution.PARTIAL_REFUND and self.refund_amount is None:
            raise ValueError("partial_refund requires refund_amount")
        return self


class DisputeResponse(BaseModel):
    id: UUID
    booking_id: UUID
    reason: str
    description: str
    requested_resolution: DisputeResolution | None
    status: DisputeStatus
    resolution: DisputeResolution | None
    resolution_amount: int | None
    admin_notes: str | None
    resolved_at: datetime | None
    created_at: datetime
    priority: str | None = None

    model_config = {"from_attributes": True}


class DisputeStats(BaseModel):
    total: int
    pending: int
    investigating: int
    resolved: int
    escalated: int
    total_disputed_amount: int


class DisputeStatusUpdate(BaseModel):
    status: DisputeStatus
