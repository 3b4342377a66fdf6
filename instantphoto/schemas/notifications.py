"""Schemas for notifications"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from instantphoto.db.models import NotificationType


class NotificationEvent(BaseModel):
    """Event published on a user's real-time channel"""
    id: UUID | None = None
    type: NotificationType
    title: str
    message: str
    data: dict[str, Any] = Field(default_factory=dict)
    request_id: UUID | None = None
    booking_id: UUID | None = None
    created_at: datetime


class NotificationResponse(BaseModel):
    id: UUID
    user_key: str
    type: NotificationType
    title: str
    message: str
    data: dict[str, Any]
    request_id: UUID | None
    booking_id: UUID | None
    is_read: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class UnreadCount(BaseModel):
    user_key: str
    unread: int


class MarkRead(BaseModel):
    notification_ids: list[UUID] | None = None
