"""
Waitlist Service - Promote waiting customers into released slots.

When a booking releases its slot (customer cancellation or failed payment),
the oldest ACTIVE waitlist entry for the same barbershop, barber, service and
business day is converted into an IN_PERSON/PAID booking covering the
released start time.

Key properties:
- FIFO by (created_at, id)
- Entries are claimed with a conditional ACTIVE -> FULFILLED update, so two
  concurrent releases can never promote the same customer twice
- Entries whose service no longer matches the released duration are expired
  and the scan moves on
- The whole sequence runs in one transaction; if the new booking collides with
  a booking created meanwhile, everything rolls back and the entry stays ACTIVE

Customer-facing operations (join, status, leave, mark seen) live here as well.
"""

import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, date, datetime, timedelta
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from database.connection import get_async_session
from database.models import (
    Barber,
    Barbershop,
    BarbershopService,
    Booking,
    BookingService,
    PaymentMethod,
    PaymentStatus,
    WaitlistEntry,
    WaitlistStatus,
)
from engine.services.availability_service import get_available_slots_for_day
from engine.services.notification_jobs import schedule_booking_notification_jobs
from shared.booking_time import (
    InvalidFormatError,
    get_booking_date_key,
    parse_booking_date_only,
    to_booking_local,
)
from shared.config import get_settings

logger = logging.getLogger(__name__)

ScheduleJobsFn = Callable[[AsyncSession, UUID], Awaitable[int]]


# ============================================================================
# Types
# ============================================================================


class WaitlistSkipReason(str, Enum):
    MISSING_SOURCE_BOOKING_ID = "missing-source-booking-id"
    MISSING_BARBER = "missing-barber"
    INVALID_DAY = "invalid-day"
    INVALID_DURATION = "invalid-duration"
    NO_ACTIVE_ENTRY = "no-active-entry"
    MAX_ATTEMPTS_REACHED = "max-attempts-reached"
    SLOT_TAKEN = "slot-taken"


class WaitlistErrorCode(str, Enum):
    INVALID_DAY = "INVALID_DAY"
    DAY_IN_PAST = "DAY_IN_PAST"
    BARBERSHOP_UNAVAILABLE = "BARBERSHOP_UNAVAILABLE"
    BARBER_NOT_FOUND = "BARBER_NOT_FOUND"
    SERVICE_NOT_FOUND = "SERVICE_NOT_FOUND"
    SLOTS_AVAILABLE = "SLOTS_AVAILABLE"
    DUPLICATE_ENTRY = "DUPLICATE_ENTRY"
    ENTRY_NOT_FOUND = "ENTRY_NOT_FOUND"
    ENTRY_NOT_ACTIVE = "ENTRY_NOT_ACTIVE"


class ReleasedSlot(BaseModel):
    """A slot freed by a cancelled or failed booking."""

    source_booking_id: UUID | None
    barbershop_id: UUID
    barber_id: UUID | None
    service_id: UUID
    released_start_at: datetime
    released_end_at: datetime | None = None
    released_duration_minutes: int | None = None

    @classmethod
    def from_booking(cls, booking: Booking) -> "ReleasedSlot":
        return cls(
            source_booking_id=booking.id,
            barbershop_id=booking.barbershop_id,
            barber_id=booking.barber_id,
            service_id=booking.service_id,
            released_start_at=booking.start_at,
            released_end_at=booking.end_at,
            released_duration_minutes=booking.total_duration_minutes,
        )


class WaitlistFulfillmentResult(BaseModel):
    fulfilled: bool
    fulfilled_entry_id: UUID | None = None
    fulfilled_booking_id: UUID | None = None
    expired_entries_count: int = 0
    skipped_reason: WaitlistSkipReason | None = None

    @classmethod
    def skipped(
        cls, reason: WaitlistSkipReason, expired_entries_count: int = 0
    ) -> "WaitlistFulfillmentResult":
        return cls(
            fulfilled=False,
            expired_entries_count=expired_entries_count,
            skipped_reason=reason,
        )


def resolve_released_duration_minutes(released: ReleasedSlot) -> int | None:
    """
    Duration of the released slot in whole minutes.

    An explicit positive duration wins; otherwise end - start rounded to the
    nearest minute. None when neither yields a positive value.
    """
    explicit = released.released_duration_minutes
    if explicit is not None and explicit > 0:
        return explicit

    if released.released_end_at is None:
        return None

    seconds = (released.released_end_at - released.released_start_at).total_seconds()
    minutes = round(seconds / 60)
    return minutes if minutes > 0 else None


def _failure(code: WaitlistErrorCode, message: str) -> dict[str, Any]:
    return {"success": False, "error_code": code.value, "error_message": message}


# ============================================================================
# Fulfillment
# ============================================================================


async def fulfill_waitlist_in_transaction(
    session: AsyncSession,
    released: ReleasedSlot,
    schedule_jobs: ScheduleJobsFn | None = None,
) -> WaitlistFulfillmentResult:
    """
    Promote the first eligible waitlist entry into the released slot.

    Runs on the caller's session and does not commit. A slot collision on the
    new booking surfaces as IntegrityError; the caller owns the rollback.
    """
    if released.barber_id is None:
        return WaitlistFulfillmentResult.skipped(WaitlistSkipReason.MISSING_BARBER)

    try:
        day_start = parse_booking_date_only(get_booking_date_key(released.released_start_at))
    except InvalidFormatError:
        return WaitlistFulfillmentResult.skipped(WaitlistSkipReason.INVALID_DAY)
    date_day = to_booking_local(day_start).date()

    duration_minutes = resolve_released_duration_minutes(released)
    if duration_minutes is None:
        return WaitlistFulfillmentResult.skipped(WaitlistSkipReason.INVALID_DURATION)

    schedule_jobs = schedule_jobs or schedule_booking_notification_jobs
    max_attempts = get_settings().WAITLIST_MAX_FULFILLMENT_ATTEMPTS
    expired_entries_count = 0

    for _ in range(max_attempts):
        entry = (
            await session.execute(
                select(WaitlistEntry)
                .where(
                    WaitlistEntry.barbershop_id == released.barbershop_id,
                    WaitlistEntry.barber_id == released.barber_id,
                    WaitlistEntry.service_id == released.service_id,
                    WaitlistEntry.date_day == date_day,
                    WaitlistEntry.status == WaitlistStatus.ACTIVE,
                )
                .order_by(WaitlistEntry.created_at.asc(), WaitlistEntry.id.asc())
                .limit(1)
            )
        ).scalars().first()

        if entry is None:
            return WaitlistFulfillmentResult.skipped(
                WaitlistSkipReason.NO_ACTIVE_ENTRY, expired_entries_count
            )

        service = (
            await session.execute(
                select(BarbershopService).where(
                    BarbershopService.id == entry.service_id,
                    BarbershopService.barbershop_id == released.barbershop_id,
                    BarbershopService.deleted_at.is_(None),
                )
            )
        ).scalar_one_or_none()

        if service is None or service.duration_in_minutes != duration_minutes:
            expire_result = await session.execute(
                update(WaitlistEntry)
                .where(
                    WaitlistEntry.id == entry.id,
                    WaitlistEntry.status == WaitlistStatus.ACTIVE,
                )
                .values(status=WaitlistStatus.EXPIRED, updated_at=datetime.now(UTC))
                .execution_options(synchronize_session=False)
            )
            if expire_result.rowcount == 1:
                expired_entries_count += 1
                logger.info(
                    f"Waitlist entry expired: service incompatible with released slot | "
                    f"entry_id={entry.id} | released_duration={duration_minutes}",
                    extra={"waitlist_entry_id": entry.id, "barbershop_id": released.barbershop_id},
                )
            continue

        claim_result = await session.execute(
            update(WaitlistEntry)
            .where(
                WaitlistEntry.id == entry.id,
                WaitlistEntry.status == WaitlistStatus.ACTIVE,
            )
            .values(status=WaitlistStatus.FULFILLED, updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        if claim_result.rowcount == 0:
            continue

        now = datetime.now(UTC)
        booking = Booking(
            id=uuid4(),
            barbershop_id=released.barbershop_id,
            barber_id=released.barber_id,
            service_id=service.id,
            user_id=entry.user_id,
            start_at=released.released_start_at,
            end_at=released.released_start_at + timedelta(minutes=service.duration_in_minutes),
            total_duration_minutes=service.duration_in_minutes,
            total_price_in_cents=service.price_in_cents,
            payment_method=PaymentMethod.IN_PERSON,
            payment_status=PaymentStatus.PAID,
            payment_confirmed_at=now,
        )
        session.add(booking)
        session.add(BookingService(booking_id=booking.id, service_id=service.id))
        await session.flush()

        await session.execute(
            update(WaitlistEntry)
            .where(WaitlistEntry.id == entry.id)
            .values(fulfilled_booking_id=booking.id, updated_at=now)
            .execution_options(synchronize_session=False)
        )

        await schedule_jobs(session, booking.id)

        logger.info(
            f"Waitlist entry fulfilled | entry_id={entry.id} | booking_id={booking.id} | "
            f"source_booking_id={released.source_booking_id} | expired={expired_entries_count}",
            extra={"waitlist_entry_id": entry.id, "booking_id": booking.id},
        )
        return WaitlistFulfillmentResult(
            fulfilled=True,
            fulfilled_entry_id=entry.id,
            fulfilled_booking_id=booking.id,
            expired_entries_count=expired_entries_count,
        )

    logger.warning(
        f"Waitlist fulfillment stopped after {max_attempts} attempts | "
        f"source_booking_id={released.source_booking_id}",
        extra={"barbershop_id": released.barbershop_id},
    )
    return WaitlistFulfillmentResult.skipped(
        WaitlistSkipReason.MAX_ATTEMPTS_REACHED, expired_entries_count
    )


async def try_fulfill_waitlist_for_released_slot(
    released: ReleasedSlot,
) -> WaitlistFulfillmentResult:
    """
    Run waitlist fulfillment in its own transaction.

    Called after the transaction that released the slot has committed.
    """
    if released.source_booking_id is None:
        return WaitlistFulfillmentResult.skipped(WaitlistSkipReason.MISSING_SOURCE_BOOKING_ID)

    async with get_async_session() as session:
        try:
            result = await fulfill_waitlist_in_transaction(
                session, released, schedule_booking_notification_jobs
            )
            await session.commit()
        except IntegrityError:
            await session.rollback()
            logger.info(
                f"Released slot taken before waitlist promotion | "
                f"source_booking_id={released.source_booking_id}",
                extra={"booking_id": released.source_booking_id},
            )
            return WaitlistFulfillmentResult.skipped(WaitlistSkipReason.SLOT_TAKEN)

    return result


# ============================================================================
# Customer operations
# ============================================================================


async def _waitlist_position(session: AsyncSession, entry: WaitlistEntry) -> int:
    result = await session.execute(
        select(func.count(WaitlistEntry.id)).where(
            WaitlistEntry.barbershop_id == entry.barbershop_id,
            WaitlistEntry.barber_id == entry.barber_id,
            WaitlistEntry.service_id == entry.service_id,
            WaitlistEntry.date_day == entry.date_day,
            WaitlistEntry.status == WaitlistStatus.ACTIVE,
            or_(
                WaitlistEntry.created_at < entry.created_at,
                and_(
                    WaitlistEntry.created_at == entry.created_at,
                    WaitlistEntry.id <= entry.id,
                ),
            ),
        )
    )
    return int(result.scalar_one())


async def join_waitlist(
    session: AsyncSession,
    user_id: UUID,
    barbershop_id: UUID,
    barber_id: UUID,
    service_id: UUID,
    date_day: str,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Put a customer on the waitlist for a fully booked day.

    Joining is refused while the day still has bookable slots. The entry is
    flushed but not committed.

    Returns:
        {"success": True, "entry_id", "position", "date_day"} or a failure
        dict with error_code / error_message.
    """
    now = now or datetime.now(UTC)

    try:
        day_start = parse_booking_date_only(date_day.strip())
    except InvalidFormatError:
        return _failure(WaitlistErrorCode.INVALID_DAY, "Invalid waitlist day")

    selected_key = get_booking_date_key(day_start)
    if selected_key < get_booking_date_key(now):
        return _failure(WaitlistErrorCode.DAY_IN_PAST, "Cannot join the waitlist for a past day")
    target_day = date.fromisoformat(selected_key)

    barbershop = await session.get(Barbershop, barbershop_id)
    if barbershop is None or not barbershop.is_active:
        return _failure(WaitlistErrorCode.BARBERSHOP_UNAVAILABLE, "Barbershop unavailable")

    barber = (
        await session.execute(
            select(Barber.id).where(Barber.id == barber_id, Barber.barbershop_id == barbershop_id)
        )
    ).scalar_one_or_none()
    if barber is None:
        return _failure(WaitlistErrorCode.BARBER_NOT_FOUND, "Barber not found for this barbershop")

    service = (
        await session.execute(
            select(BarbershopService.id).where(
                BarbershopService.id == service_id,
                BarbershopService.barbershop_id == barbershop_id,
                BarbershopService.deleted_at.is_(None),
            )
        )
    ).scalar_one_or_none()
    if service is None:
        return _failure(WaitlistErrorCode.SERVICE_NOT_FOUND, "Service not found for this barbershop")

    existing = (
        await session.execute(
            select(WaitlistEntry.id).where(
                WaitlistEntry.user_id == user_id,
                WaitlistEntry.barbershop_id == barbershop_id,
                WaitlistEntry.barber_id == barber_id,
                WaitlistEntry.service_id == service_id,
                WaitlistEntry.date_day == target_day,
                WaitlistEntry.status == WaitlistStatus.ACTIVE,
            )
        )
    ).scalars().first()
    if existing is not None:
        return _failure(WaitlistErrorCode.DUPLICATE_ENTRY, "Already on the waitlist for this day")

    slots = await get_available_slots_for_day(
        session, barbershop_id, [service_id], target_day, barber_id=barber_id, now=now
    )
    if slots:
        return _failure(WaitlistErrorCode.SLOTS_AVAILABLE, "There are still free slots on this day")

    entry = WaitlistEntry(
        id=uuid4(),
        barbershop_id=barbershop_id,
        barber_id=barber_id,
        service_id=service_id,
        user_id=user_id,
        date_day=target_day,
        status=WaitlistStatus.ACTIVE,
        created_at=now,
        updated_at=now,
    )
    try:
        async with session.begin_nested():
            session.add(entry)
            await session.flush()
    except IntegrityError:
        return _failure(WaitlistErrorCode.DUPLICATE_ENTRY, "Already on the waitlist for this day")

    position = await _waitlist_position(session, entry)

    logger.info(
        f"Customer joined waitlist | entry_id={entry.id} | day={selected_key} | position={position}",
        extra={"waitlist_entry_id": entry.id, "barbershop_id": barbershop_id},
    )
    return {
        "success": True,
        "entry_id": entry.id,
        "position": position,
        "date_day": selected_key,
    }


def _default_waitlist_status() -> dict[str, Any]:
    return {
        "success": True,
        "is_in_queue": False,
        "entry_id": None,
        "position": None,
        "queue_length": 0,
    }


async def get_waitlist_status_for_day(
    session: AsyncSession,
    user_id: UUID,
    barbershop_id: UUID,
    barber_id: UUID,
    service_id: UUID,
    date_day: str,
) -> dict[str, Any]:
    """
    The customer's place in the queue for one barber, service and day.

    An inactive barbershop, an unknown barber or service, or no ACTIVE entry
    of this customer all report the default "not in queue" status.

    Returns:
        {"success": True, "is_in_queue", "entry_id", "position", "queue_length"}
        (plus "date_day" when queued), or an INVALID_DAY failure dict.
    """
    try:
        day_start = parse_booking_date_only(date_day.strip())
    except InvalidFormatError:
        return _failure(WaitlistErrorCode.INVALID_DAY, "Invalid waitlist day")

    selected_key = get_booking_date_key(day_start)
    target_day = date.fromisoformat(selected_key)

    barbershop = await session.get(Barbershop, barbershop_id)
    if barbershop is None or not barbershop.is_active:
        return _default_waitlist_status()

    barber = (
        await session.execute(
            select(Barber.id).where(Barber.id == barber_id, Barber.barbershop_id == barbershop_id)
        )
    ).scalar_one_or_none()
    if barber is None:
        return _default_waitlist_status()

    service = (
        await session.execute(
            select(BarbershopService.id).where(
                BarbershopService.id == service_id,
                BarbershopService.barbershop_id == barbershop_id,
                BarbershopService.deleted_at.is_(None),
            )
        )
    ).scalar_one_or_none()
    if service is None:
        return _default_waitlist_status()

    entry = (
        await session.execute(
            select(WaitlistEntry).where(
                WaitlistEntry.user_id == user_id,
                WaitlistEntry.barbershop_id == barbershop_id,
                WaitlistEntry.barber_id == barber_id,
                WaitlistEntry.service_id == service_id,
                WaitlistEntry.date_day == target_day,
                WaitlistEntry.status == WaitlistStatus.ACTIVE,
            )
        )
    ).scalars().first()
    if entry is None:
        return _default_waitlist_status()

    queue_length = (
        await session.execute(
            select(func.count(WaitlistEntry.id)).where(
                WaitlistEntry.barbershop_id == barbershop_id,
                WaitlistEntry.barber_id == barber_id,
                WaitlistEntry.service_id == service_id,
                WaitlistEntry.date_day == target_day,
                WaitlistEntry.status == WaitlistStatus.ACTIVE,
            )
        )
    ).scalar_one()
    position = await _waitlist_position(session, entry)

    return {
        "success": True,
        "is_in_queue": True,
        "entry_id": entry.id,
        "position": position,
        "queue_length": int(queue_length),
        "date_day": selected_key,
    }


async def leave_waitlist(session: AsyncSession, user_id: UUID, entry_id: UUID) -> dict[str, Any]:
    """Expire the customer's own ACTIVE entry."""
    entry = (
        await session.execute(
            select(WaitlistEntry).where(
                WaitlistEntry.id == entry_id,
                WaitlistEntry.user_id == user_id,
            )
        )
    ).scalar_one_or_none()
    if entry is None:
        return _failure(WaitlistErrorCode.ENTRY_NOT_FOUND, "Waitlist entry not found")
    if entry.status != WaitlistStatus.ACTIVE:
        return _failure(WaitlistErrorCode.ENTRY_NOT_ACTIVE, "Waitlist entry is not active")

    result = await session.execute(
        update(WaitlistEntry)
        .where(
            WaitlistEntry.id == entry_id,
            WaitlistEntry.user_id == user_id,
            WaitlistEntry.status == WaitlistStatus.ACTIVE,
        )
        .values(status=WaitlistStatus.EXPIRED, updated_at=datetime.now(UTC))
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        return _failure(WaitlistErrorCode.ENTRY_NOT_ACTIVE, "Waitlist entry is not active")

    logger.info(
        f"Customer left waitlist | entry_id={entry_id}",
        extra={"waitlist_entry_id": entry_id},
    )
    return {"success": True, "entry_id": entry_id}


async def mark_fulfillment_seen(
    session: AsyncSession,
    user_id: UUID,
    entry_ids: list[UUID],
    now: datetime | None = None,
) -> int:
    """
    Stamp fulfilled_seen_at on the customer's FULFILLED entries.

    Entries already seen, not fulfilled, or owned by someone else are left
    untouched. Returns the number of entries updated.
    """
    if not entry_ids:
        return 0

    now = now or datetime.now(UTC)
    result = await session.execute(
        update(WaitlistEntry)
        .where(
            WaitlistEntry.id.in_(entry_ids),
            WaitlistEntry.user_id == user_id,
            WaitlistEntry.status == WaitlistStatus.FULFILLED,
            WaitlistEntry.fulfilled_seen_at.is_(None),
        )
        .values(fulfilled_seen_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0
