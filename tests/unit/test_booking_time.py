"""
Unit tests for shared/booking_time.py and shared/booking_interval.py.

Business timezone in tests is America/Sao_Paulo (UTC-3, no DST).
"""

from datetime import UTC, date, datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from shared.booking_interval import (
    MinuteInterval,
    has_minute_interval_overlap,
    to_time_slot_label,
)
from shared.booking_time import (
    InvalidFormatError,
    day_of_week_for,
    get_booking_date_key,
    get_booking_day_bounds,
    get_booking_day_bounds_for_date,
    get_booking_minute_of_day,
    is_at_or_before_now_with_buffer,
    parse_booking_date_only,
    parse_booking_date_time,
    to_booking_local,
    zoned_to_utc,
)


class TestParseBookingDateTime:
    def test_local_wall_clock_is_read_in_business_timezone(self):
        parsed = parse_booking_date_time("2026-03-10T14:30")
        assert parsed == datetime(2026, 3, 10, 17, 30, tzinfo=UTC)

    def test_local_with_seconds_and_millis(self):
        parsed = parse_booking_date_time("2026-03-10T14:30:15.5")
        assert parsed == datetime(2026, 3, 10, 17, 30, 15, 500000, tzinfo=UTC)

    def test_explicit_offset_is_absolute(self):
        parsed = parse_booking_date_time("2026-03-10T10:00:00+00:00")
        assert parsed == datetime(2026, 3, 10, 10, 0, tzinfo=UTC)

    def test_zulu_suffix_accepted(self):
        parsed = parse_booking_date_time("2026-03-10T10:00:00Z")
        assert parsed == datetime(2026, 3, 10, 10, 0, tzinfo=UTC)

    @pytest.mark.parametrize(
        "value",
        ["", "   ", "not-a-date", "2026-02-30T10:00", "2026-03-10T24:00", "2026-03-10T10:60"],
    )
    def test_malformed_values_rejected(self, value):
        with pytest.raises(InvalidFormatError):
            parse_booking_date_time(value)

    def test_offsetless_iso_with_space_rejected(self):
        with pytest.raises(InvalidFormatError):
            parse_booking_date_time("2026-03-10 10:00:00")

    def test_date_only_rejected(self):
        with pytest.raises(InvalidFormatError):
            parse_booking_date_time("2026-03-10")


class TestParseBookingDateOnly:
    def test_local_midnight(self):
        assert parse_booking_date_only("2026-03-10") == datetime(2026, 3, 10, 3, 0, tzinfo=UTC)

    def test_surrounding_whitespace_ignored(self):
        assert parse_booking_date_only(" 2026-03-10 ") == datetime(2026, 3, 10, 3, 0, tzinfo=UTC)

    @pytest.mark.parametrize("value", ["2026-3-10", "2026-13-01", "2026-02-29", "10/03/2026"])
    def test_invalid_dates_rejected(self, value):
        with pytest.raises(InvalidFormatError):
            parse_booking_date_only(value)


class TestZonedConversions:
    def test_zoned_to_utc_explicit_zone(self):
        new_york = ZoneInfo("America/New_York")
        assert zoned_to_utc(2026, 7, 1, 12, 0, zone=new_york) == datetime(2026, 7, 1, 16, 0, tzinfo=UTC)
        assert zoned_to_utc(2026, 1, 15, 12, 0, zone=new_york) == datetime(2026, 1, 15, 17, 0, tzinfo=UTC)

    def test_date_key_follows_business_day_not_utc_day(self):
        late_evening_local = datetime(2026, 3, 11, 1, 30, tzinfo=UTC)
        assert get_booking_date_key(late_evening_local) == "2026-03-10"

    def test_minute_of_day(self):
        assert get_booking_minute_of_day(datetime(2026, 3, 10, 12, 15, tzinfo=UTC)) == 9 * 60 + 15

    def test_naive_datetime_rejected(self):
        with pytest.raises(InvalidFormatError):
            to_booking_local(datetime(2026, 3, 10, 12, 0))

    def test_day_of_week_sunday_is_zero(self):
        assert day_of_week_for(date(2026, 3, 8)) == 0
        assert day_of_week_for(date(2026, 3, 14)) == 6


class TestDayBounds:
    def test_bounds_for_instant(self):
        bounds = get_booking_day_bounds(datetime(2026, 3, 10, 15, 0, tzinfo=UTC))
        assert bounds.date_key == "2026-03-10"
        assert bounds.day_of_week == 2
        assert bounds.start == datetime(2026, 3, 10, 3, 0, tzinfo=UTC)
        assert bounds.end_exclusive == datetime(2026, 3, 11, 3, 0, tzinfo=UTC)

    def test_bounds_for_date(self):
        bounds = get_booking_day_bounds_for_date(date(2026, 3, 10))
        assert bounds.end_exclusive - bounds.start == timedelta(days=1)

class TestBuffer:
    NOW = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)

    def test_inside_buffer_is_not_bookable(self):
        assert is_at_or_before_now_with_buffer(self.NOW + timedelta(minutes=5), buffer_minutes=5, now=self.NOW)

    def test_after_buffer_is_bookable(self):
        assert not is_at_or_before_now_with_buffer(
            self.NOW + timedelta(minutes=6), buffer_minutes=5, now=self.NOW
        )

    def test_past_is_not_bookable(self):
        assert is_at_or_before_now_with_buffer(self.NOW - timedelta(hours=1), now=self.NOW)


class TestMinuteIntervals:
    def test_partial_overlap_detected(self):
        occupied = [MinuteInterval(600, 660)]
        assert has_minute_interval_overlap(630, 60, occupied)
        assert has_minute_interval_overlap(570, 31, occupied)

    def test_touching_intervals_do_not_overlap(self):
        occupied = [MinuteInterval(600, 660)]
        assert not has_minute_interval_overlap(660, 30, occupied)
        assert not has_minute_interval_overlap(570, 30, occupied)

    def test_within_day_inside_the_day(self):
        bounds = get_booking_day_bounds_for_date(date(2026, 3, 10))
        interval = MinuteInterval.within_day(
            datetime(2026, 3, 10, 13, 0, tzinfo=UTC),
            datetime(2026, 3, 10, 13, 45, tzinfo=UTC),
            bounds.start,
            bounds.end_exclusive,
        )
        assert interval == MinuteInterval(600, 645)

    def test_within_day_clamps_booking_from_previous_evening(self):
        bounds = get_booking_day_bounds_for_date(date(2026, 3, 10))
        # 23:00 on the 9th until 01:00 on the 10th, local time
        interval = MinuteInterval.within_day(
            datetime(2026, 3, 10, 2, 0, tzinfo=UTC),
            datetime(2026, 3, 10, 4, 0, tzinfo=UTC),
            bounds.start,
            bounds.end_exclusive,
        )
        assert interval == MinuteInterval(0, 60)

    def test_within_day_clamps_booking_running_past_midnight(self):
        bounds = get_booking_day_bounds_for_date(date(2026, 3, 10))
        # 23:30 on the 10th until 00:30 on the 11th, local time
        interval = MinuteInterval.within_day(
            datetime(2026, 3, 11, 2, 30, tzinfo=UTC),
            datetime(2026, 3, 11, 3, 30, tzinfo=UTC),
            bounds.start,
            bounds.end_exclusive,
        )
        assert interval == MinuteInterval(23 * 60 + 30, 24 * 60)

    def test_slot_labels(self):
        assert to_time_slot_label(9 * 60 + 5) == "09:05"
        assert to_time_slot_label(23 * 60 + 59) == "23:59"
