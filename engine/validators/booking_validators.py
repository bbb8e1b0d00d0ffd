"""
Booking validation functions for business rules enforcement.

Validators run before any mutation and return a dict:

    {"valid": bool, "error_code": str | None, "error_message": str | None}

The slot check is advisory only. Concurrent requests can both pass it; the
exclusion constraint on bookings decides which insert wins.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Iterable
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from database.models import BarbershopService
from engine.services.availability_service import load_occupied_intervals
from shared.booking_interval import has_minute_interval_overlap
from shared.booking_time import (
    get_booking_minute_of_day,
    is_at_or_before_now_with_buffer,
    to_booking_local,
)

logger = logging.getLogger(__name__)

MIN_SERVICE_DURATION_MINUTES = 5


class BookingErrorCode(str, Enum):
    START_IN_PAST = "START_IN_PAST"
    NO_SERVICES = "NO_SERVICES"
    BARBERSHOP_NOT_FOUND = "BARBERSHOP_NOT_FOUND"
    BARBERSHOP_INACTIVE = "BARBERSHOP_INACTIVE"
    BARBER_NOT_FOUND = "BARBER_NOT_FOUND"
    SERVICE_NOT_FOUND = "SERVICE_NOT_FOUND"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    INVALID_DURATION = "INVALID_DURATION"
    INVALID_PRICE = "INVALID_PRICE"
    SLOT_TAKEN = "SLOT_TAKEN"
    PAYMENT_UNAVAILABLE = "PAYMENT_UNAVAILABLE"
    NOT_FOUND = "NOT_FOUND"
    NOT_OWNER = "NOT_OWNER"
    ALREADY_CANCELLED = "ALREADY_CANCELLED"
    BOOKING_IN_PAST = "BOOKING_IN_PAST"
    REFUND_FAILED = "REFUND_FAILED"


def _valid() -> dict[str, Any]:
    return {"valid": True, "error_code": None, "error_message": None}


def _invalid(code: BookingErrorCode, message: str) -> dict[str, Any]:
    return {"valid": False, "error_code": code.value, "error_message": message}


def validate_booking_start(start_at: datetime, now: datetime | None = None) -> dict[str, Any]:
    """Start must be later than now + BOOKING_SLOT_BUFFER_MINUTES."""
    if is_at_or_before_now_with_buffer(start_at, now=now):
        logger.info(f"Booking start rejected: too close or in the past | start_at={start_at.isoformat()}")
        return _invalid(
            BookingErrorCode.START_IN_PAST,
            "Selected date and time already passed or is too close to the current time",
        )
    return _valid()


def has_invalid_service_data(service: BarbershopService) -> bool:
    """Blank name, negative price or a duration under 5 minutes."""
    if not (service.name or "").strip():
        return True
    if not isinstance(service.price_in_cents, int) or service.price_in_cents < 0:
        return True
    if (
        not isinstance(service.duration_in_minutes, int)
        or service.duration_in_minutes < MIN_SERVICE_DURATION_MINUTES
    ):
        return True
    return False


def calculate_booking_totals(services: Iterable[BarbershopService]) -> tuple[int, int]:
    """Return (total_duration_minutes, total_price_in_cents)."""
    total_duration = 0
    total_price = 0
    for service in services:
        total_duration += service.duration_in_minutes
        total_price += service.price_in_cents
    return total_duration, total_price


def validate_services(
    services: list[BarbershopService], requested_ids: list[UUID]
) -> dict[str, Any]:
    """Every requested service must exist (not deleted) and carry usable data."""
    if not requested_ids:
        return _invalid(BookingErrorCode.NO_SERVICES, "Select at least one service")

    if len(services) != len(requested_ids):
        found = {service.id for service in services}
        missing = [str(service_id) for service_id in requested_ids if service_id not in found]
        logger.info(f"Service validation failed: missing services {missing}")
        return _invalid(
            BookingErrorCode.SERVICE_NOT_FOUND,
            "One or more selected services are not available",
        )

    if any(has_invalid_service_data(service) for service in services):
        return _invalid(
            BookingErrorCode.SERVICE_UNAVAILABLE,
            "One or more services are temporarily unavailable for booking",
        )

    total_duration, _ = calculate_booking_totals(services)
    if total_duration <= 0:
        return _invalid(BookingErrorCode.INVALID_DURATION, "Could not compute the booking duration")

    return _valid()


async def validate_slot_availability(
    session: AsyncSession,
    barbershop_id: UUID,
    barber_id: UUID,
    start_at: datetime,
    duration_minutes: int,
) -> dict[str, Any]:
    """
    Check the requested interval against the barber's active bookings that day.

    Partial overlaps count as collisions.
    """
    target_day = to_booking_local(start_at).date()
    occupied = await load_occupied_intervals(session, barbershop_id, barber_id, target_day)

    if has_minute_interval_overlap(get_booking_minute_of_day(start_at), duration_minutes, occupied):
        logger.info(
            f"Slot collision | barber_id={barber_id} | start_at={start_at.isoformat()} | "
            f"duration={duration_minutes}"
        )
        return _invalid(BookingErrorCode.SLOT_TAKEN, "Selected date and time is already booked")

    return _valid()
