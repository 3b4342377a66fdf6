"""Fee computation for instant bookings"""

import logging
from datetime import datetime
from decimal import ROUND_FLOOR, Decimal

from instantphoto.config import settings
from instantphoto.exceptions import DataIntegrityError
from instantphoto.schemas.bookings import FeeBreakdown
from instantphoto.utils.clock import to_local

logger = logging.getLogger(__name__)


def is_night(matched_at: datetime) -> bool:
    """Whether a local time falls in the night window (wraps past midnight)"""
    hour = to_local(matched_at, settings.local_timezone).hour
    start, end = settings.night_start_hour, settings.night_end_hour
    if start <= end:
        return start <= hour < end
    return hour >= start or hour < end


def is_holiday(matched_at: datetime) -> bool:
    local = to_local(matched_at, settings.local_timezone)
    if local.date() in settings.holidays:
        return True
    return settings.weekends_are_holidays and local.weekday() >= 5


def split_platform_fee(total_amount: int) -> tuple[int, int]:
    """Return (platform_fee, photographer_earnings); the fee is floored to whole yen"""
    platform_fee = int(
        (Decimal(total_amount) * Decimal(str(settings.platform_fee_rate)))
        .to_integral_value(rounding=ROUND_FLOOR)
    )
    return platform_fee, total_amount - platform_fee


def calculate_fees(base_amount: int, urgency: str, matched_at: datetime) -> FeeBreakdown:
    """Price a booking at match time"""
    rush_fee = settings.rush_fee if urgency == "now" else 0
    holiday_fee = settings.holiday_fee if is_holiday(matched_at) else 0
    night_fee = settings.night_fee if is_night(matched_at) else 0

    total_amount = base_amount + rush_fee + holiday_fee + night_fee
    platform_fee, earnings = split_platform_fee(total_amount)

    fees = FeeBreakdown(
        base_amount=base_amount,
        rush_fee=rush_fee,
        holiday_fee=holiday_fee,
        night_fee=night_fee,
        total_amount=total_amount,
        platform_fee=platform_fee,
        photographer_earnings=earnings,
    )
    verify_fees(fees)
    return fees


def verify_fees(fees) -> None:
    """
    Check that stored fee components are consistent

    Accepts a FeeBreakdown or an InstantBooking; raises DataIntegrityError
    rather than correcting anything.
    """
    components = fees.base_amount + fees.rush_fee + fees.holiday_fee + fees.night_fee
    if components != fees.total_amount:
        logger.critical(
            f"Fee components {components} do not match total {fees.total_amount}",
            extra={"booking_id": str(getattr(fees, "id", ""))},
        )
        raise DataIntegrityError(
            "Fee components do not sum to total_amount",
            total_amount=fees.total_amount,
            components=components,
        )
    if fees.platform_fee + fees.photographer_earnings != fees.total_amount:
        logger.critical(
            f"Fee split {fees.platform_fee}+{fees.photographer_earnings} != {fees.total_amount}",
            extra={"booking_id": str(getattr(fees, "id", ""))},
        )
        raise DataIntegrityError(
            "platform_fee + photographer_earnings does not equal total_amount",
            total_amount=fees.total_amount,
            platform_fee=fees.platform_fee,
            photographer_earnings=fees.photographer_earnings,
        )
