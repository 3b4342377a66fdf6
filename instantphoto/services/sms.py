"""Guest SMS notifications over Twilio"""

import logging

from twilio.base.exceptions import TwilioException
from twilio.rest import Client

from instantphoto.config import settings
from instantphoto.db.models import NotificationType

logger = logging.getLogger(__name__)


class SMSTemplate:
    """SMS message templates for guest-facing events"""

    MATCH_FOUND = """InstantPhoto: {photographer_name} accepted your request and is on the way.
Total: {total_amount} yen (held, charged after you confirm delivery)."""

    REQUEST_EXPIRED = """InstantPhoto: Sorry, no photographer was available in time. Your request has expired and you were not charged."""

    PAYMENT_FAILED = """InstantPhoto: We could not process your payment. Please check your payment method and try again."""

    PHOTOS_DELIVERED = """InstantPhoto: Your {photo_count} photos are ready: {delivery_url}
Confirm delivery to release payment."""

    BOOKING_CANCELLED = """InstantPhoto: Your booking was cancelled. Any payment hold has been released."""


_TEMPLATES = {
    NotificationType.MATCH_FOUND: SMSTemplate.MATCH_FOUND,
    NotificationType.REQUEST_EXPIRED: SMSTemplate.REQUEST_EXPIRED,
    NotificationType.PAYMENT_FAILED: SMSTemplate.PAYMENT_FAILED,
    NotificationType.PHOTOS_DELIVERED: SMSTemplate.PHOTOS_DELIVERED,
    NotificationType.BOOKING_CANCELLED: SMSTemplate.BOOKING_CANCELLED,
}


class GuestSMSService:
    """Twilio client wrapper used for guests, who have no app channel"""

    def __init__(self, client: Client | None = None):
        self.client = client
        if self.client is None and settings.twilio_account_sid and settings.twilio_auth_token:
            self.client = Client(
                settings.twilio_account_sid,
                settings.twilio_auth_token
            )

    def _is_configured(self) -> bool:
        """Check if Twilio is properly configured"""
        return (
            self.client is not None
            and settings.twilio_phone_number is not None
            and settings.enable_sms
        )

    def supports(self, notification_type: NotificationType) -> bool:
        return notification_type in _TEMPLATES

    async def send_event(
        self,
        phone_number: str,
        notification_type: NotificationType,
        **fields,
    ) -> str | None:
        """Send the SMS for a notification type; returns the message SID"""
        template = _TEMPLATES.get(notification_type)
        if template is None:
            return None
        if not self._is_configured():
            logger.debug("Twilio not configured, skipping SMS")
            return None

        try:
            message_body = template.format(**fields)
        except KeyError as e:
            logger.error(f"Missing field {e} for {notification_type.value} SMS")
            return None

        try:
            message = self.client.messages.create(
                body=message_body,
                from_=settings.twilio_phone_number,
                to=phone_number
            )
            logger.info(f"{notification_type.value} SMS sent to {phone_number}, SID: {message.sid}")
            return message.sid

        except TwilioException as e:
            logger.error(f"Failed to send SMS to {phone_number}: {e}")
            return None
