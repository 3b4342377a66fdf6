"""Tests for booking fee computation"""

from datetime import date, datetime, timezone
from itertools import product

import pytest

from instantphoto.exceptions import DataIntegrityError
from instantphoto.schemas.bookings import FeeBreakdown
from instantphoto.services.pricing import (
    calculate_fees,
    is_holiday,
    is_night,
    split_platform_fee,
    verify_fees,
)

# 12:00 and 19:30 in Tokyo on an ordinary Tuesday
NOON_JST = datetime(2025, 6, 10, 3, 0, tzinfo=timezone.utc)
EVENING_JST = datetime(2025, 6, 10, 10, 30, tzinfo=timezone.utc)


class TestNightWindow:
    """The night window wraps past midnight in local time"""

    def test_evening_is_night(self):
        assert is_night(EVENING_JST)

    def test_noon_is_not_night(self):
        assert not is_night(NOON_JST)

    def test_window_boundaries(self):
        # 18:00 JST starts the window, 06:00 JST ends it
        assert is_night(datetime(2025, 6, 10, 9, 0, tzinfo=timezone.utc))
        assert is_night(datetime(2025, 6, 10, 20, 59, tzinfo=timezone.utc))
        assert not is_night(datetime(2025, 6, 10, 21, 0, tzinfo=timezone.utc))
        assert not is_night(datetime(2025, 6, 10, 8, 59, tzinfo=timezone.utc))

    def test_naive_times_are_treated_as_utc(self):
        assert is_night(datetime(2025, 6, 10, 10, 30))


class TestHolidays:
    def test_configured_holiday_uses_local_date(self, test_settings):
        test_settings.holidays = [date(2025, 6, 11)]
        # 2025-06-10 16:00 UTC is already 2025-06-11 in Tokyo
        assert is_holiday(datetime(2025, 6, 10, 16, 0, tzinfo=timezone.utc))
        assert not is_holiday(NOON_JST)

    def test_weekends_optional(self, test_settings):
        saturday = datetime(2025, 6, 14, 3, 0, tzinfo=timezone.utc)
        assert not is_holiday(saturday)
        test_settings.weekends_are_holidays = True
        assert is_holiday(saturday)


class TestCalculateFees:
    def test_plain_booking(self):
        fees = calculate_fees(3000, "within_30min", NOON_JST)
        assert fees.rush_fee == 0
        assert fees.holiday_fee == 0
        assert fees.night_fee == 0
        assert fees.total_amount == 3000
        assert fees.platform_fee == 300
        assert fees.photographer_earnings == 2700

    def test_rush_fee_only_for_now(self):
        assert calculate_fees(3000, "now", NOON_JST).rush_fee == 2000
        assert calculate_fees(3000, "within_1hour", NOON_JST).rush_fee == 0

    def test_night_fee_at_half_past_seven(self):
        fees = calculate_fees(3000, "within_30min", EVENING_JST)
        assert fees.night_fee == 2000
        assert fees.total_amount == 5000

    @pytest.mark.parametrize("rush,holiday,night", list(product([False, True], repeat=3)))
    def test_split_always_sums_to_total(self, test_settings, rush, holiday, night):
        test_settings.holidays = [date(2025, 6, 10)] if holiday else []
        matched_at = EVENING_JST if night else NOON_JST
        urgency = "now" if rush else "within_1hour"

        fees = calculate_fees(3333, urgency, matched_at)

        expected_total = (
            3333
            + (test_settings.rush_fee if rush else 0)
            + (test_settings.holiday_fee if holiday else 0)
            + (test_settings.night_fee if night else 0)
        )
        assert fees.total_amount == expected_total
        assert fees.platform_fee + fees.photographer_earnings == fees.total_amount

    def test_platform_fee_is_floored(self):
        assert split_platform_fee(3333) == (333, 3000)
        assert split_platform_fee(9) == (0, 9)
        assert split_platform_fee(0) == (0, 0)


class TestVerifyFees:
    def test_rejects_inconsistent_split(self):
        broken = FeeBreakdown(
            base_amount=3000,
            total_amount=3000,
            platform_fee=300,
            photographer_earnings=2600,
        )
        with pytest.raises(DataIntegrityError):
            verify_fees(broken)

    def test_rejects_components_that_do_not_sum(self):
        broken = FeeBreakdown(
            base_amount=3000,
            night_fee=2000,
            total_amount=3000,
            platform_fee=300,
            photographer_earnings=2700,
        )
        with pytest.raises(DataIntegrityError) as exc_info:
            verify_fees(broken)
        assert exc_info.value.details["components"] == 5000
