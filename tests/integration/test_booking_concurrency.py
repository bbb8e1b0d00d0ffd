"""
Integration tests for concurrent writers against PostgreSQL.

Tests cover:
- Two customers booking the same barber slot at once
- Two customers booking overlapping (not identical) intervals at once
- Two released slots competing for the same waitlist entry

Note: These tests assume database migrations have already been applied.
The exclusion constraint on bookings is what decides the races, so they
cannot run against a mocked session.
"""

import asyncio
from datetime import UTC, datetime
from uuid import uuid4

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from database.connection import AsyncSessionLocal
from database.models import Booking, PaymentMethod, PaymentStatus, WaitlistEntry, WaitlistStatus
from engine.services.waitlist_service import (
    ReleasedSlot,
    WaitlistSkipReason,
    try_fulfill_waitlist_for_released_slot,
)
from engine.transactions.booking_transaction import BookingTransaction
from tests.integration.conftest import insert_booking


async def count_bookings(barbershop_id) -> int:
    async with AsyncSessionLocal() as session:
        result = await session.execute(
            select(func.count(Booking.id)).where(Booking.barbershop_id == barbershop_id)
        )
        return result.scalar_one()


# ============================================================================
# BookingTransaction races
# ============================================================================


@pytest.mark.integration
@pytest.mark.asyncio
async def test_concurrent_bookings_for_same_slot(seeded_shop):
    """Exactly one of two simultaneous bookings for one slot is created."""
    start_at = seeded_shop.at(10)

    results = await asyncio.gather(
        BookingTransaction.execute(
            seeded_shop.user_ids[0],
            seeded_shop.barbershop_id,
            seeded_shop.barber_id,
            [seeded_shop.service_id],
            start_at,
        ),
        BookingTransaction.execute(
            seeded_shop.user_ids[1],
            seeded_shop.barbershop_id,
            seeded_shop.barber_id,
            [seeded_shop.service_id],
            start_at,
        ),
    )

    succeeded = [result for result in results if result["success"]]
    failed = [result for result in results if not result["success"]]
    assert len(succeeded) == 1
    assert len(failed) == 1
    assert failed[0]["error_code"] == "SLOT_TAKEN"
    assert succeeded[0]["kind"] == "created"
    assert await count_bookings(seeded_shop.barbershop_id) == 1


@pytest.mark.integration
@pytest.mark.asyncio
async def test_concurrent_overlapping_bookings(seeded_shop):
    """10:00-10:45 and 10:15-11:00 cannot both be stored for the same barber."""
    results = await asyncio.gather(
        BookingTransaction.execute(
            seeded_shop.user_ids[0],
            seeded_shop.barbershop_id,
            seeded_shop.barber_id,
            [seeded_shop.service_id],
            seeded_shop.at(10),
        ),
        BookingTransaction.execute(
            seeded_shop.user_ids[1],
            seeded_shop.barbershop_id,
            seeded_shop.barber_id,
            [seeded_shop.service_id],
            seeded_shop.at(10, 15),
        ),
    )

    assert sorted(result["success"] for result in results) == [False, True]
    assert [r["error_code"] for r in results if not r["success"]] == ["SLOT_TAKEN"]
    assert await count_bookings(seeded_shop.barbershop_id) == 1


@pytest.mark.integration
@pytest.mark.asyncio
async def test_exclusion_constraint_rejects_overlapping_insert(seeded_shop):
    """The database itself refuses an overlapping active booking."""
    await insert_booking(seeded_shop, seeded_shop.user_ids[0], seeded_shop.at(10))

    async with AsyncSessionLocal() as session:
        session.add(
            Booking(
                id=uuid4(),
                barbershop_id=seeded_shop.barbershop_id,
                barber_id=seeded_shop.barber_id,
                service_id=seeded_shop.service_id,
                user_id=seeded_shop.user_ids[1],
                start_at=seeded_shop.at(10, 30),
                end_at=seeded_shop.at(11, 15),
                total_duration_minutes=45,
                total_price_in_cents=5000,
                payment_method=PaymentMethod.IN_PERSON,
                payment_status=PaymentStatus.PAID,
                payment_confirmed_at=datetime.now(UTC),
            )
        )
        with pytest.raises(IntegrityError):
            await session.commit()


# ============================================================================
# Waitlist fulfillment races
# ============================================================================


@pytest.mark.integration
@pytest.mark.asyncio
async def test_two_released_slots_promote_one_entry_once(seeded_shop):
    """Two releases racing for the only ACTIVE entry create a single booking."""
    waiting_user = seeded_shop.user_ids[2]
    entry_id = uuid4()
    async with AsyncSessionLocal() as session:
        session.add(
            WaitlistEntry(
                id=entry_id,
                barbershop_id=seeded_shop.barbershop_id,
                barber_id=seeded_shop.barber_id,
                service_id=seeded_shop.service_id,
                user_id=waiting_user,
                date_day=seeded_shop.day,
                status=WaitlistStatus.ACTIVE,
            )
        )
        await session.commit()

    def released(hour: int) -> ReleasedSlot:
        return ReleasedSlot(
            source_booking_id=uuid4(),
            barbershop_id=seeded_shop.barbershop_id,
            barber_id=seeded_shop.barber_id,
            service_id=seeded_shop.service_id,
            released_start_at=seeded_shop.at(hour),
            released_duration_minutes=45,
        )

    results = await asyncio.gather(
        try_fulfill_waitlist_for_released_slot(released(10)),
        try_fulfill_waitlist_for_released_slot(released(14)),
    )

    fulfilled = [result for result in results if result.fulfilled]
    skipped = [result for result in results if not result.fulfilled]
    assert len(fulfilled) == 1
    assert skipped[0].skipped_reason == WaitlistSkipReason.NO_ACTIVE_ENTRY

    async with AsyncSessionLocal() as session:
        bookings = (
            await session.execute(select(Booking).where(Booking.user_id == waiting_user))
        ).scalars().all()
        entry = await session.get(WaitlistEntry, entry_id)

    assert len(bookings) == 1
    assert bookings[0].id == fulfilled[0].fulfilled_booking_id
    assert entry.status == WaitlistStatus.FULFILLED
    assert entry.fulfilled_booking_id == bookings[0].id
