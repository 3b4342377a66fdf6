"""Notification inbox and real-time stream endpoints"""

import asyncio
import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status
from fastapi import Query as QueryParam

from instantphoto.api.deps import get_instant_service
from instantphoto.schemas.notifications import MarkRead, NotificationResponse, UnreadCount
from instantphoto.services.instant import InstantPhotoService

logger = logging.getLogger(__name__)
router = APIRouter()

KEEPALIVE_SECONDS = 30.0


@router.get("/{user_key}", response_model=list[NotificationResponse])
async def list_notifications(
    user_key: str,
    unread_only: bool = QueryParam(False),
    limit: int = QueryParam(50, ge=1, le=500),
    service: InstantPhotoService = Depends(get_instant_service),
) -> list[NotificationResponse]:
    notifications = await service.notifier.list_notifications(user_key, unread_only, limit)
    return [NotificationResponse.model_validate(n) for n in notifications]


@router.get("/{user_key}/unread", response_model=UnreadCount)
async def unread_count(
    user_key: str,
    service: InstantPhotoService = Depends(get_instant_service),
) -> UnreadCount:
    """Unread counter, read from storage rather than the live channel"""
    return UnreadCount(user_key=user_key, unread=await service.notifier.unread_count(user_key))


@router.post("/{user_key}/read", response_model=UnreadCount)
async def mark_read(
    user_key: str,
    body: MarkRead,
    service: InstantPhotoService = Depends(get_instant_service),
) -> UnreadCount:
    await service.notifier.mark_read(user_key, body.notification_ids)
    return UnreadCount(user_key=user_key, unread=await service.notifier.unread_count(user_key))


@router.websocket("/{user_key}/stream")
async def notification_stream(websocket: WebSocket, user_key: str):
    """Push events for one user until the client disconnects"""
    channel = websocket.app.state.notification_channel
    await websocket.accept()
    subscription = await channel.subscribe(user_key)
    try:
        while True:
            try:
                event = await subscription.get(timeout=KEEPALIVE_SECONDS)
            except asyncio.TimeoutError:
                if subscription.closed:
                    logger.warning(f"Notification stream for {user_key} closed by the channel")
                    await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
                    break
                await websocket.send_json({"type": "ping"})
                continue
            await websocket.send_text(event.model_dump_json())
    except WebSocketDisconnect:
        logger.info(f"Notification stream for {user_key} disconnected")
    finally:
        await channel.unsubscribe(subscription)
