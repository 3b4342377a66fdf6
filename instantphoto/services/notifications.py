"""Notification fan-out: persisted inbox plus real-time channels

Each notification is stored first (unread counters come from the table) and
then published on the user's channel. Delivery is best-effort: a failed
publish or SMS is logged and never reaches the caller.
"""

import asyncio
import json
import logging
from typing import Any
from uuid import UUID

import redis.asyncio as redis
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from instantphoto.config import settings
from instantphoto.db.models import (
    InstantBooking,
    InstantRequest,
    Notification,
    NotificationType,
    Offer,
)
from instantphoto.schemas.notifications import NotificationEvent
from instantphoto.services.sms import GuestSMSService
from instantphoto.utils.clock import utcnow

logger = logging.getLogger(__name__)

ADMIN_KEY = "admin"


def photographer_key(photographer_id: UUID) -> str:
    return f"photographer:{photographer_id}"


def guest_user_key(phone: str) -> str:
    return f"guest:{''.join(filter(str.isdigit, phone))}"


def _as_uuid(value: Any) -> UUID | None:
    if value is None or isinstance(value, UUID):
        return value
    return UUID(str(value))


class Subscription:
    """One subscriber's bounded event buffer"""

    def __init__(self, user_key: str, maxsize: int):
        self.user_key = user_key
        self.queue: asyncio.Queue[NotificationEvent] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False

    def offer(self, event: NotificationEvent) -> None:
        """Enqueue without blocking; the oldest event makes room when full"""
        if self.closed:
            return
        if self.queue.full():
            self.queue.get_nowait()
            self.dropped += 1
            logger.warning(f"Notification buffer full for {self.user_key}, dropped oldest event")
        self.queue.put_nowait(event)

    async def get(self, timeout: float | None = None) -> NotificationEvent:
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout=timeout)

    def __aiter__(self):
        return self

    async def __anext__(self) -> NotificationEvent:
        if self.closed and self.queue.empty():
            raise StopAsyncIteration
        return await self.queue.get()


class NotificationChannel:
    """publish(user_key, event) / subscribe(user_key) contract"""

    async def publish(self, user_key: str, event: NotificationEvent) -> None:
        raise NotImplementedError

    async def subscribe(self, user_key: str) -> Subscription:
        raise NotImplementedError

    async def unsubscribe(self, subscription: Subscription) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class InMemoryNotificationChannel(NotificationChannel):
    """Single-process channel; one bounded queue per subscriber"""

    def __init__(self, buffer_size: int | None = None):
        self.buffer_size = buffer_size or settings.notification_buffer_size
        self._subscribers: dict[str, set[Subscription]] = {}

    async def publish(self, user_key: str, event: NotificationEvent) -> None:
        for subscription in list(self._subscribers.get(user_key, ())):
            subscription.offer(event)

    async def subscribe(self, user_key: str) -> Subscription:
        subscription = Subscription(user_key, self.buffer_size)
        self._subscribers.setdefault(user_key, set()).add(subscription)
        logger.info(f"Subscriber attached to {user_key}")
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        subscription.closed = True
        subscribers = self._subscribers.get(subscription.user_key)
        if subscribers is not None:
            subscribers.discard(subscription)
            if not subscribers:
                del self._subscribers[subscription.user_key]
        logger.info(f"Subscriber detached from {subscription.user_key}")

    def subscriber_count(self, user_key: str) -> int:
        return len(self._subscribers.get(user_key, ()))


class RedisNotificationChannel(NotificationChannel):
    """Cross-process channel over redis pub/sub"""

    def __init__(self, client: redis.Redis | None = None, buffer_size: int | None = None):
        self.client = client or redis.from_url(str(settings.redis_url))
        self.buffer_size = buffer_size or settings.notification_buffer_size
        self._readers: dict[Subscription, tuple[Any, asyncio.Task]] = {}

    @staticmethod
    def _channel_name(user_key: str) -> str:
        return f"notifications:{user_key}"

    async def publish(self, user_key: str, event: NotificationEvent) -> None:
        await self.client.publish(self._channel_name(user_key), event.model_dump_json())

    async def subscribe(self, user_key: str) -> Subscription:
        subscription = Subscription(user_key, self.buffer_size)
        pubsub = self.client.pubsub()
        await pubsub.subscribe(self._channel_name(user_key))
        task = asyncio.create_task(self._pump(pubsub, subscription))
        self._readers[subscription] = (pubsub, task)
        return subscription

    async def _pump(self, pubsub, subscription: Subscription) -> None:
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    subscription.offer(NotificationEvent.model_validate_json(message["data"]))
                except ValueError as e:
                    logger.warning(f"Discarding malformed notification for {subscription.user_key}: {e}")
        except redis.RedisError as e:
            logger.error(f"Notification stream for {subscription.user_key} lost: {e}")
            subscription.closed = True

    async def unsubscribe(self, subscription: Subscription) -> None:
        subscription.closed = True
        reader = self._readers.pop(subscription, None)
        if reader is None:
            return
        pubsub, task = reader
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        try:
            await pubsub.unsubscribe()
        except redis.RedisError as e:
            logger.warning(f"Unsubscribe for {subscription.user_key} failed: {e}")
        finally:
            await pubsub.aclose()

    async def close(self) -> None:
        for subscription in list(self._readers):
            await self.unsubscribe(subscription)
        await self.client.aclose()


def create_notification_channel() -> NotificationChannel:
    if settings.notification_backend == "redis":
        return RedisNotificationChannel()
    return InMemoryNotificationChannel()


class NotificationFanout:
    """Emits typed events to guest, photographer and admin channels"""

    def __init__(
        self,
        db: AsyncSession,
        channel: NotificationChannel,
        sms: GuestSMSService | None = None,
    ):
        self.db = db
        self.channel = channel
        self.sms = sms

    async def notify(
        self,
        user_key: str,
        notification_type: NotificationType,
        title: str,
        message: str,
        data: dict[str, Any] | None = None,
        request_id: UUID | None = None,
        booking_id: UUID | None = None,
    ) -> Notification | None:
        """Persist then publish; never raises"""
        payload = json.loads(json.dumps(data or {}, default=str))
        notification = Notification(
            user_key=user_key,
            type=notification_type,
            title=title,
            message=message,
            data=payload,
            request_id=request_id,
            booking_id=booking_id,
            is_read=False,
            created_at=utcnow(),
        )
        try:
            self.db.add(notification)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.warning(f"Failed to store {notification_type.value} notification for {user_key}: {e}")
            notification = None

        event = NotificationEvent(
            id=notification.id if notification else None,
            type=notification_type,
            title=title,
            message=message,
            data=payload,
            request_id=request_id,
            booking_id=booking_id,
            created_at=notification.created_at if notification else utcnow(),
        )
        try:
            await self.channel.publish(user_key, event)
        except Exception as e:
            logger.warning(f"Failed to publish {notification_type.value} to {user_key}: {e}")

        return notification

    async def _sms(self, phone: str, notification_type: NotificationType, **fields) -> None:
        if self.sms is None or not self.sms.supports(notification_type):
            return
        try:
            await self.sms.send_event(phone, notification_type, **fields)
        except Exception as e:
            logger.warning(f"Guest SMS for {notification_type.value} failed: {e}")

    # Inbox

    async def unread_count(self, user_key: str) -> int:
        result = await self.db.execute(
            select(func.count(Notification.id)).where(
                Notification.user_key == user_key,
                Notification.is_read.is_(False),
            )
        )
        return result.scalar_one()

    async def list_notifications(
        self,
        user_key: str,
        unread_only: bool = False,
        limit: int = 50,
    ) -> list[Notification]:
        stmt = select(Notification).where(Notification.user_key == user_key)
        if unread_only:
            stmt = stmt.where(Notification.is_read.is_(False))
        stmt = stmt.order_by(Notification.created_at.desc()).limit(limit)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def mark_read(self, user_key: str, notification_ids: list[UUID] | None = None) -> int:
        """Mark some or all of a user's notifications read; returns rows changed"""
        stmt = update(Notification).where(
            Notification.user_key == user_key,
            Notification.is_read.is_(False),
        )
        if notification_ids:
            stmt = stmt.where(Notification.id.in_(notification_ids))
        result = await self.db.execute(
            stmt.values(is_read=True).execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount

    # Typed events

    async def new_request(self, offer: Offer, request: InstantRequest) -> None:
        await self.notify(
            photographer_key(offer.photographer_id),
            NotificationType.NEW_REQUEST,
            "New photo request nearby",
            f"{request.request_type.value} shoot, {request.duration} min, "
            f"{round(offer.distance_meters)} m away",
            data={
                "offer_id": offer.id,
                "request_type": request.request_type.value,
                "urgency": request.urgency.value,
                "duration": request.duration,
                "budget": request.budget,
                "party_size": request.party_size,
                "distance_meters": offer.distance_meters,
                "latitude": request.latitude,
                "longitude": request.longitude,
                "landmark": request.location_landmark,
                "offer_expires_at": offer.expires_at,
            },
            request_id=request.id,
        )

    async def match_found(self, request: InstantRequest, booking: InstantBooking, photographer_name: str | None) -> None:
        data = {
            "total_amount": booking.total_amount,
            "photographer_id": booking.photographer_id,
            "guest_name": request.guest_name,
        }
        await self.notify(
            guest_user_key(request.guest_phone),
            NotificationType.MATCH_FOUND,
            "Photographer found",
            f"{photographer_name or 'A photographer'} accepted your request",
            data=data,
            request_id=request.id,
            booking_id=booking.id,
        )
        await self.notify(
            photographer_key(booking.photographer_id),
            NotificationType.MATCH_FOUND,
            "Booking confirmed",
            f"You are booked for a {request.request_type.value} shoot with {request.guest_name}",
            data={**data, "earnings": booking.photographer_earnings},
            request_id=request.id,
            booking_id=booking.id,
        )
        await self._sms(
            request.guest_phone,
            NotificationType.MATCH_FOUND,
            photographer_name=photographer_name or "A photographer",
            total_amount=booking.total_amount,
        )

    async def request_expired(self, request: InstantRequest) -> None:
        await self.notify(
            guest_user_key(request.guest_phone),
            NotificationType.REQUEST_EXPIRED,
            "Request expired",
            "No photographer was available in time",
            request_id=request.id,
        )
        await self._sms(request.guest_phone, NotificationType.REQUEST_EXPIRED)

    async def payment_received(self, booking: InstantBooking) -> None:
        await self.notify(
            photographer_key(booking.photographer_id),
            NotificationType.PAYMENT_RECEIVED,
            "Payment released",
            f"{booking.photographer_earnings} yen has been released to you",
            data={"earnings": booking.photographer_earnings, "total_amount": booking.total_amount},
            request_id=booking.request_id,
            booking_id=booking.id,
        )

    async def booking_completed(self, booking: InstantBooking, guest_phone: str) -> None:
        for user_key in (guest_user_key(guest_phone), photographer_key(booking.photographer_id)):
            await self.notify(
                user_key,
                NotificationType.BOOKING_COMPLETED,
                "Booking completed",
                "Delivery confirmed and payment settled",
                data={"total_amount": booking.total_amount},
                request_id=booking.request_id,
                booking_id=booking.id,
            )

    async def booking_cancelled(self, booking: InstantBooking, guest_phone: str, reason: str | None) -> None:
        for user_key in (guest_user_key(guest_phone), photographer_key(booking.photographer_id)):
            await self.notify(
                user_key,
                NotificationType.BOOKING_CANCELLED,
                "Booking cancelled",
                reason or "The booking was cancelled",
                data={"cancelled_by": booking.cancelled_by, "payment_status": booking.payment_status.value},
                request_id=booking.request_id,
                booking_id=booking.id,
            )
        await self._sms(guest_phone, NotificationType.BOOKING_CANCELLED)

    async def payment_failed(self, booking: InstantBooking, guest_phone: str, operation: str, error: str) -> None:
        """Payment trouble goes to the guest and to the dispute desk"""
        await self.notify(
            guest_user_key(guest_phone),
            NotificationType.PAYMENT_FAILED,
            "Payment problem",
            "We could not process your payment",
            data={"operation": operation},
            request_id=booking.request_id,
            booking_id=booking.id,
        )
        await self.notify(
            ADMIN_KEY,
            NotificationType.PAYMENT_FAILED,
            f"Payment {operation} failed",
            error,
            data={"operation": operation, "payment_status": booking.payment_status.value},
            request_id=booking.request_id,
            booking_id=booking.id,
        )
        await self._sms(guest_phone, NotificationType.PAYMENT_FAILED)

    async def photos_delivered(self, booking: InstantBooking, guest_phone: str) -> None:
        await self.notify(
            guest_user_key(guest_phone),
            NotificationType.PHOTOS_DELIVERED,
            "Your photos are ready",
            f"{booking.photos_delivered} photos delivered",
            data={"photo_count": booking.photos_delivered, "delivery_url": booking.delivery_url},
            request_id=booking.request_id,
            booking_id=booking.id,
        )
        await self._sms(
            guest_phone,
            NotificationType.PHOTOS_DELIVERED,
            photo_count=booking.photos_delivered,
            delivery_url=booking.delivery_url,
        )

    async def dispute_opened(self, booking: InstantBooking, dispute_id: UUID, reason: str) -> None:
        for user_key in (ADMIN_KEY, photographer_key(booking.photographer_id)):
            await self.notify(
                user_key,
                NotificationType.DISPUTE_OPENED,
                "Dispute opened",
                reason,
                data={"dispute_id": dispute_id, "total_amount": booking.total_amount},
                request_id=booking.request_id,
                booking_id=booking.id,
            )

    async def integrity_alert(self, message: str, **data: Any) -> None:
        await self.notify(
            ADMIN_KEY,
            NotificationType.INTEGRITY_ALERT,
            "Data integrity problem",
            message,
            data=data,
            booking_id=_as_uuid(data.get("booking_id")),
            request_id=_as_uuid(data.get("request_id")),
        )
