"""
Availability Service - Slot grid for a barber's day.

compute_available_slots() is pure: given the opening window, the required
duration and the intervals already taken, it returns the "HH:MM" start labels
a customer may pick. get_available_slots_for_day() loads those inputs from
PostgreSQL.

The result is advisory. Two customers can both see a slot as free; the
storage-layer exclusion constraint on bookings decides which insert wins.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from uuid import UUID

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import (
    Barber,
    Barbershop,
    BarbershopOpeningHours,
    BarbershopService,
    Booking,
)
from engine.services.booking_status import active_booking_clause
from shared.booking_interval import (
    MinuteInterval,
    has_minute_interval_overlap,
    to_time_slot_label,
)
from shared.booking_time import (
    day_of_week_for,
    get_booking_day_bounds_for_date,
    is_at_or_before_now_with_buffer,
    zoned_to_utc,
)
from shared.config import get_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OpeningWindow:
    """Opening window of one weekday, in minutes of the business-timezone day."""

    open_minute: int
    close_minute: int
    closed: bool = False

    @property
    def is_open(self) -> bool:
        return not self.closed and self.close_minute > self.open_minute

    @classmethod
    def from_row(cls, row: BarbershopOpeningHours | None) -> "OpeningWindow":
        """Missing row means the default 09:00-17:00 window."""
        if row is None:
            settings = get_settings()
            return cls(settings.DEFAULT_OPEN_MINUTE, settings.DEFAULT_CLOSE_MINUTE, False)
        return cls(row.open_minute, row.close_minute, row.closed)


def slot_start_instant(target_day: date, minute_of_day: int) -> datetime:
    """UTC instant of a minute-of-day on a business-timezone calendar day."""
    hour, minute = divmod(minute_of_day, 60)
    return zoned_to_utc(target_day.year, target_day.month, target_day.day, hour, minute)


def compute_available_slots(
    opening: OpeningWindow,
    target_day: date,
    duration_minutes: int,
    existing_intervals: list[MinuteInterval],
    now: datetime | None = None,
    buffer_minutes: int | None = None,
    step_minutes: int | None = None,
) -> list[str]:
    """
    Compute bookable start times for one barber on one day.

    A candidate start S on the fixed grid (open_minute, open_minute + step, ...)
    is kept when:
    - [S, S + duration) lies inside [open_minute, close_minute)
    - it does not intersect any existing interval (partial overlap excluded)
    - S is strictly later than now + buffer

    Args:
        opening: Opening window for the target weekday
        target_day: Calendar day in the business timezone
        duration_minutes: Sum of the selected services' durations
        existing_intervals: Occupied intervals on that day
        now: Reference instant (defaults to current time)
        buffer_minutes: Minimum lead time (defaults to BOOKING_SLOT_BUFFER_MINUTES)
        step_minutes: Grid step (defaults to SLOT_STEP_MINUTES)

    Returns:
        Ordered, de-duplicated "HH:MM" labels. Empty for closed days, invalid
        durations, or durations longer than the open window.
    """
    settings = get_settings()
    step = step_minutes or settings.SLOT_STEP_MINUTES

    if not opening.is_open or duration_minutes <= 0 or step <= 0:
        return []

    last_start = opening.close_minute - duration_minutes
    if last_start < opening.open_minute:
        return []

    labels: list[str] = []
    seen: set[str] = set()

    for start_minute in range(opening.open_minute, last_start + 1, step):
        if has_minute_interval_overlap(start_minute, duration_minutes, existing_intervals):
            continue

        if is_at_or_before_now_with_buffer(
            slot_start_instant(target_day, start_minute), buffer_minutes, now
        ):
            continue

        label = to_time_slot_label(start_minute)
        if label not in seen:
            seen.add(label)
            labels.append(label)

    return labels


async def load_occupied_intervals(
    session: AsyncSession,
    barbershop_id: UUID,
    barber_id: UUID,
    target_day: date,
    exclude_booking_id: UUID | None = None,
) -> list[MinuteInterval]:
    """
    Intervals taken on a day by the barber, or by bookings without a barber.

    Only non-cancelled bookings that still hold their slot are considered.
    Bookings crossing midnight are clamped to the day.
    """
    bounds = get_booking_day_bounds_for_date(target_day)

    conditions = [
        Booking.barbershop_id == barbershop_id,
        or_(Booking.barber_id == barber_id, Booking.barber_id.is_(None)),
        Booking.cancelled_at.is_(None),
        active_booking_clause(),
        Booking.start_at < bounds.end_exclusive,
        Booking.end_at > bounds.start,
    ]
    if exclude_booking_id is not None:
        conditions.append(Booking.id != exclude_booking_id)

    result = await session.execute(
        select(Booking.start_at, Booking.end_at)
        .where(and_(*conditions))
        .order_by(Booking.start_at)
    )

    return [
        MinuteInterval.within_day(start_at, end_at, bounds.start, bounds.end_exclusive)
        for start_at, end_at in result.all()
    ]


async def get_opening_window(
    session: AsyncSession, barbershop_id: UUID, target_day: date
) -> OpeningWindow:
    result = await session.execute(
        select(BarbershopOpeningHours).where(
            BarbershopOpeningHours.barbershop_id == barbershop_id,
            BarbershopOpeningHours.day_of_week == day_of_week_for(target_day),
        )
    )
    return OpeningWindow.from_row(result.scalar_one_or_none())


async def get_available_slots_for_day(
    session: AsyncSession,
    barbershop_id: UUID,
    service_ids: list[UUID],
    target_day: date,
    barber_id: UUID | None = None,
    now: datetime | None = None,
) -> list[str]:
    """
    Load inputs from the database and compute available slots.

    When barber_id is omitted the barbershop's first barber by name is used.
    Returns an empty list for inactive barbershops, unknown barbers, or any
    unknown/deleted service.
    """
    unique_service_ids = list(dict.fromkeys(service_ids))
    if not unique_service_ids:
        return []

    barbershop = await session.get(Barbershop, barbershop_id)
    if barbershop is None or not barbershop.is_active:
        logger.debug(f"Availability requested for inactive/unknown barbershop {barbershop_id}")
        return []

    barber_stmt = select(Barber).where(Barber.barbershop_id == barbershop_id)
    if barber_id is not None:
        barber_stmt = barber_stmt.where(Barber.id == barber_id)
    else:
        barber_stmt = barber_stmt.order_by(Barber.name).limit(1)
    barber = (await session.execute(barber_stmt)).scalars().first()
    if barber is None:
        return []

    services_result = await session.execute(
        select(BarbershopService.duration_in_minutes).where(
            BarbershopService.id.in_(unique_service_ids),
            BarbershopService.barbershop_id == barbershop_id,
            BarbershopService.deleted_at.is_(None),
        )
    )
    durations = list(services_result.scalars().all())
    if len(durations) != len(unique_service_ids):
        return []

    opening = await get_opening_window(session, barbershop_id, target_day)
    occupied = await load_occupied_intervals(session, barbershop_id, barber.id, target_day)

    slots = compute_available_slots(
        opening=opening,
        target_day=target_day,
        duration_minutes=sum(durations),
        existing_intervals=occupied,
        now=now,
    )

    logger.debug(
        f"Availability computed | barbershop_id={barbershop_id} | barber_id={barber.id} | "
        f"day={target_day.isoformat()} | slots={len(slots)}"
    )
    return slots
