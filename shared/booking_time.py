"""
Business-timezone calendar math for bookings.

Every instant stored in the database is UTC. Customers and barbershops think
in wall-clock time in a single business timezone (BOOKING_TIMEZONE, default
America/Sao_Paulo). This module converts between the two and computes the
calendar-day bounds used by availability and waitlist queries.

Day-of-week numbering is 0=Sunday .. 6=Saturday, matching the values stored
in barbershop_opening_hours.day_of_week.

Usage:
    from shared.booking_time import get_booking_day_bounds, parse_booking_date_time

    start = parse_booking_date_time("2026-03-10T14:30")
    bounds = get_booking_day_bounds(start)
"""

import re
from datetime import UTC, date, datetime, timedelta
from functools import lru_cache
from typing import NamedTuple
from zoneinfo import ZoneInfo

from shared.config import get_settings

DATE_ONLY_PATTERN = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
LOCAL_DATE_TIME_PATTERN = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})T(\d{2}):(\d{2})(?::(\d{2})(?:\.(\d{1,3}))?)?$"
)


class InvalidFormatError(ValueError):
    """Raised when a date/date-time string cannot be mapped to a booking instant."""

    pass


class BookingDayBounds(NamedTuple):
    """Calendar day of an instant in the business timezone."""

    date_key: str
    day_of_week: int
    start: datetime
    end_exclusive: datetime


@lru_cache
def get_zone(tz_name: str) -> ZoneInfo:
    """Cached ZoneInfo lookup, keyed by IANA name."""
    return ZoneInfo(tz_name)


def get_booking_zone() -> ZoneInfo:
    return get_zone(get_settings().BOOKING_TIMEZONE)


def _offset_at(instant: datetime, zone: ZoneInfo) -> timedelta:
    offset = instant.astimezone(zone).utcoffset()
    return offset if offset is not None else timedelta(0)


def _ensure_aware(instant: datetime) -> datetime:
    if instant.tzinfo is None:
        raise InvalidFormatError(f"Naive datetime is not a booking instant: {instant!r}")
    return instant


def zoned_to_utc(
    year: int,
    month: int,
    day: int,
    hour: int = 0,
    minute: int = 0,
    second: int = 0,
    microsecond: int = 0,
    zone: ZoneInfo | None = None,
) -> datetime:
    """
    Convert wall-clock parts in the business timezone to a UTC instant.

    Two-pass offset resolution: read the parts as if they were UTC, measure
    the zone offset there, shift, then re-measure at the shifted instant and
    use the second offset when it differs (DST boundary crossed).

    Raises:
        InvalidFormatError: If the parts do not form a valid calendar date/time
    """
    zone = zone or get_booking_zone()
    try:
        utc_guess = datetime(year, month, day, hour, minute, second, microsecond, tzinfo=UTC)
    except ValueError as e:
        raise InvalidFormatError(str(e)) from e

    first_offset = _offset_at(utc_guess, zone)
    first_pass = utc_guess - first_offset

    second_offset = _offset_at(first_pass, zone)
    if second_offset != first_offset:
        return utc_guess - second_offset

    return first_pass


def to_booking_local(instant: datetime) -> datetime:
    """Instant expressed as wall-clock time in the business timezone."""
    return _ensure_aware(instant).astimezone(get_booking_zone())


def get_booking_date_key(instant: datetime) -> str:
    """YYYY-MM-DD of the instant in the business timezone."""
    return to_booking_local(instant).strftime("%Y-%m-%d")


def get_booking_minute_of_day(instant: datetime) -> int:
    local = to_booking_local(instant)
    return local.hour * 60 + local.minute


def day_of_week_for(value: date) -> int:
    """0=Sunday .. 6=Saturday."""
    return value.isoweekday() % 7


def parse_booking_date_only(value: str) -> datetime:
    """
    Parse "YYYY-MM-DD" as local midnight in the business timezone.

    The parsed instant must format back to the same date key, otherwise the
    value is rejected.

    Raises:
        InvalidFormatError: On malformed or non-existent dates
    """
    normalized = value.strip()
    match = DATE_ONLY_PATTERN.match(normalized)
    if not match:
        raise InvalidFormatError(f"Invalid date: {value!r}")

    year, month, day = (int(group) for group in match.groups())
    parsed = zoned_to_utc(year, month, day)

    if get_booking_date_key(parsed) != normalized:
        raise InvalidFormatError(f"Date does not round-trip in booking timezone: {value!r}")

    return parsed


def parse_booking_date_time(value: str) -> datetime:
    """
    Parse a booking date-time.

    Local form "YYYY-MM-DDTHH:MM[:SS[.fff]]" is read as wall-clock time in the
    business timezone and must round-trip exactly (wall times skipped by a DST
    jump are rejected). Any other ISO-8601 value must carry an explicit
    offset and is taken as an absolute instant.

    Raises:
        InvalidFormatError: On malformed, non-existent or offset-less values
    """
    normalized = value.strip()
    if not normalized:
        raise InvalidFormatError("Empty date-time")

    match = LOCAL_DATE_TIME_PATTERN.match(normalized)
    if match:
        year, month, day, hour, minute = (int(group) for group in match.groups()[:5])
        second = int(match.group(6) or "0")
        millisecond = int((match.group(7) or "0").ljust(3, "0"))

        if hour > 23 or minute > 59 or second > 59:
            raise InvalidFormatError(f"Invalid time: {value!r}")

        parsed = zoned_to_utc(year, month, day, hour, minute, second, millisecond * 1000)

        local = to_booking_local(parsed)
        if (
            local.strftime("%Y-%m-%d") != f"{year:04d}-{month:02d}-{day:02d}"
            or local.hour != hour
            or local.minute != minute
            or local.second != second
        ):
            raise InvalidFormatError(
                f"Date-time does not exist in booking timezone: {value!r}"
            )
        return parsed

    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as e:
        raise InvalidFormatError(f"Invalid date-time: {value!r}") from e

    if parsed.tzinfo is None:
        raise InvalidFormatError(f"Date-time without offset: {value!r}")

    return parsed.astimezone(UTC)


def get_booking_day_bounds(instant: datetime) -> BookingDayBounds:
    """
    Calendar day containing the instant, in the business timezone.

    Returns:
        BookingDayBounds with the date key, 0=Sunday weekday, the UTC instant
        of local midnight and the UTC instant of the next local midnight.
    """
    local_day = to_booking_local(instant).date()
    next_day = local_day + timedelta(days=1)

    return BookingDayBounds(
        date_key=local_day.isoformat(),
        day_of_week=day_of_week_for(local_day),
        start=parse_booking_date_only(local_day.isoformat()),
        end_exclusive=parse_booking_date_only(next_day.isoformat()),
    )


def get_booking_day_bounds_for_date(value: date) -> BookingDayBounds:
    """Day bounds for a calendar date (e.g. a waitlist entry's date_day)."""
    return get_booking_day_bounds(parse_booking_date_only(value.isoformat()))


def is_at_or_before_now_with_buffer(
    instant: datetime,
    buffer_minutes: int | None = None,
    now: datetime | None = None,
) -> bool:
    """True when the instant is not bookable anymore (<= now + buffer)."""
    if buffer_minutes is None:
        buffer_minutes = get_settings().BOOKING_SLOT_BUFFER_MINUTES
    now = now or datetime.now(UTC)
    return _ensure_aware(instant) <= now + timedelta(minutes=buffer_minutes)
