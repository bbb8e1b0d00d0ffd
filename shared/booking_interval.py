"""Minute-of-day interval helpers used by slot generation."""

from dataclasses import dataclass
from datetime import datetime

from shared.booking_time import get_booking_minute_of_day


@dataclass(frozen=True)
class MinuteInterval:
    """Half-open interval [start_minute, end_minute) within one booking day."""

    start_minute: int
    end_minute: int

    @classmethod
    def within_day(
        cls, start_at: datetime, end_at: datetime, day_start: datetime, day_end: datetime
    ) -> "MinuteInterval":
        """Interval of [start_at, end_at) clamped to the booking day [day_start, day_end)."""
        clamped_start = max(start_at, day_start)
        clamped_end = min(end_at, day_end)
        start_minute = 0 if start_at <= day_start else get_booking_minute_of_day(start_at)
        duration = max(int((clamped_end - clamped_start).total_seconds() // 60), 0)
        return cls(start_minute=start_minute, end_minute=start_minute + duration)


def has_minute_interval_overlap(
    start_minute: int,
    duration_minutes: int,
    intervals: list[MinuteInterval],
) -> bool:
    """True when [start, start+duration) intersects any of the intervals."""
    end_minute = start_minute + duration_minutes
    return any(
        start_minute < interval.end_minute and end_minute > interval.start_minute
        for interval in intervals
    )


def to_time_slot_label(minute: int) -> str:
    """Minute-of-day as "HH:MM"."""
    hours, minutes = divmod(minute, 60)
    return f"{hours:02d}:{minutes:02d}"
