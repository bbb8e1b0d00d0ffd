"""
Unit tests for engine/services/waitlist_service.py.

Tests coverage:
- Released duration resolution
- fulfill_waitlist_in_transaction(): FIFO promotion, incompatible entries
  expired, lost claims skipped, attempt cap
- try_fulfill_waitlist_for_released_slot(): collision rolls back as SLOT_TAKEN
- join / status / leave / mark seen customer operations
"""

from datetime import UTC, date, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest
from sqlalchemy.exc import IntegrityError

from database.models import Booking, BookingService, PaymentMethod, PaymentStatus, WaitlistStatus
from engine.services.waitlist_service import (
    ReleasedSlot,
    WaitlistSkipReason,
    fulfill_waitlist_in_transaction,
    get_waitlist_status_for_day,
    join_waitlist,
    leave_waitlist,
    mark_fulfillment_seen,
    resolve_released_duration_minutes,
    try_fulfill_waitlist_for_released_slot,
)
from tests.conftest import make_result, make_session_mock, patch_session_factory

MODULE = "engine.services.waitlist_service"
RELEASED_START = datetime(2026, 3, 10, 14, 0, tzinfo=UTC)  # 11:00 local


def make_released(**overrides) -> ReleasedSlot:
    values = {
        "source_booking_id": uuid4(),
        "barbershop_id": uuid4(),
        "barber_id": uuid4(),
        "service_id": uuid4(),
        "released_start_at": RELEASED_START,
        "released_end_at": RELEASED_START + timedelta(minutes=45),
        "released_duration_minutes": 45,
    }
    values.update(overrides)
    return ReleasedSlot(**values)


def make_entry():
    entry = MagicMock()
    entry.id = uuid4()
    entry.user_id = uuid4()
    entry.service_id = uuid4()
    return entry


def make_service(duration=45, price=5000):
    service = MagicMock()
    service.id = uuid4()
    service.duration_in_minutes = duration
    service.price_in_cents = price
    return service


# ============================================================================
# Duration
# ============================================================================


class TestResolveReleasedDuration:
    def test_explicit_duration_wins(self):
        released = make_released(released_duration_minutes=30)
        assert resolve_released_duration_minutes(released) == 30

    def test_falls_back_to_interval(self):
        released = make_released(
            released_duration_minutes=None,
            released_end_at=RELEASED_START + timedelta(minutes=59, seconds=40),
        )
        assert resolve_released_duration_minutes(released) == 60

    def test_no_usable_duration(self):
        released = make_released(released_duration_minutes=0, released_end_at=None)
        assert resolve_released_duration_minutes(released) is None

    def test_end_before_start(self):
        released = make_released(
            released_duration_minutes=None, released_end_at=RELEASED_START - timedelta(minutes=5)
        )
        assert resolve_released_duration_minutes(released) is None


# ============================================================================
# Fulfillment
# ============================================================================


class TestFulfillWaitlistInTransaction:
    @pytest.mark.asyncio
    async def test_first_entry_is_promoted(self, session_mock):
        entry = make_entry()
        service = make_service(duration=45, price=6000)
        session_mock.execute.side_effect = [
            make_result(scalars=[entry]),
            make_result(scalar=service),
            make_result(rowcount=1),
            make_result(rowcount=1),
        ]
        schedule_jobs = AsyncMock(return_value=3)
        released = make_released()

        result = await fulfill_waitlist_in_transaction(session_mock, released, schedule_jobs)

        assert result.fulfilled
        assert result.fulfilled_entry_id == entry.id
        assert result.expired_entries_count == 0

        added = [call.args[0] for call in session_mock.add.call_args_list]
        booking = next(obj for obj in added if isinstance(obj, Booking))
        assert booking.user_id == entry.user_id
        assert booking.barber_id == released.barber_id
        assert booking.start_at == RELEASED_START
        assert booking.end_at == RELEASED_START + timedelta(minutes=45)
        assert booking.payment_method == PaymentMethod.IN_PERSON
        assert booking.payment_status == PaymentStatus.PAID
        assert booking.payment_confirmed_at is not None
        assert booking.total_price_in_cents == 6000
        assert any(isinstance(obj, BookingService) for obj in added)
        assert result.fulfilled_booking_id == booking.id

        session_mock.flush.assert_awaited_once()
        schedule_jobs.assert_awaited_once_with(session_mock, booking.id)
        session_mock.commit.assert_not_called()

    @pytest.mark.asyncio
    async def test_incompatible_entry_is_expired_and_scan_continues(self, session_mock):
        stale_entry = make_entry()
        next_entry = make_entry()
        session_mock.execute.side_effect = [
            make_result(scalars=[stale_entry]),
            make_result(scalar=make_service(duration=30)),
            make_result(rowcount=1),
            make_result(scalars=[next_entry]),
            make_result(scalar=make_service(duration=45)),
            make_result(rowcount=1),
            make_result(rowcount=1),
        ]

        result = await fulfill_waitlist_in_transaction(
            session_mock, make_released(), AsyncMock(return_value=0)
        )

        assert result.fulfilled
        assert result.fulfilled_entry_id == next_entry.id
        assert result.expired_entries_count == 1

    @pytest.mark.asyncio
    async def test_deleted_service_expires_entry(self, session_mock):
        session_mock.execute.side_effect = [
            make_result(scalars=[make_entry()]),
            make_result(scalar=None),
            make_result(rowcount=1),
            make_result(scalars=[]),
        ]

        result = await fulfill_waitlist_in_transaction(session_mock, make_released(), AsyncMock())

        assert not result.fulfilled
        assert result.skipped_reason == WaitlistSkipReason.NO_ACTIVE_ENTRY
        assert result.expired_entries_count == 1

    @pytest.mark.asyncio
    async def test_lost_claim_moves_on(self, session_mock):
        session_mock.execute.side_effect = [
            make_result(scalars=[make_entry()]),
            make_result(scalar=make_service()),
            make_result(rowcount=0),
            make_result(scalars=[]),
        ]
        schedule_jobs = AsyncMock()

        result = await fulfill_waitlist_in_transaction(session_mock, make_released(), schedule_jobs)

        assert result.skipped_reason == WaitlistSkipReason.NO_ACTIVE_ENTRY
        session_mock.add.assert_not_called()
        schedule_jobs.assert_not_called()

    @pytest.mark.asyncio
    async def test_no_active_entries(self, session_mock):
        session_mock.execute.return_value = make_result(scalars=[])

        result = await fulfill_waitlist_in_transaction(session_mock, make_released(), AsyncMock())

        assert result.skipped_reason == WaitlistSkipReason.NO_ACTIVE_ENTRY

    @pytest.mark.asyncio
    async def test_attempt_cap_is_reported(self, session_mock):
        session_mock.execute.side_effect = [
            make_result(scalars=[make_entry()]),
            make_result(scalar=make_service(duration=30)),
            make_result(rowcount=1),
            make_result(scalars=[make_entry()]),
            make_result(scalar=make_service(duration=30)),
            make_result(rowcount=1),
        ]

        with patch(f"{MODULE}.get_settings") as mock_settings:
            mock_settings.return_value.WAITLIST_MAX_FULFILLMENT_ATTEMPTS = 2
            result = await fulfill_waitlist_in_transaction(session_mock, make_released(), AsyncMock())

        assert result.skipped_reason == WaitlistSkipReason.MAX_ATTEMPTS_REACHED
        assert result.expired_entries_count == 2

    @pytest.mark.asyncio
    async def test_released_slot_without_barber(self, session_mock):
        result = await fulfill_waitlist_in_transaction(
            session_mock, make_released(barber_id=None), AsyncMock()
        )

        assert result.skipped_reason == WaitlistSkipReason.MISSING_BARBER
        session_mock.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_released_slot_without_duration(self, session_mock):
        released = make_released(released_duration_minutes=None, released_end_at=None)

        result = await fulfill_waitlist_in_transaction(session_mock, released, AsyncMock())

        assert result.skipped_reason == WaitlistSkipReason.INVALID_DURATION


class TestTryFulfillWaitlistForReleasedSlot:
    @pytest.mark.asyncio
    async def test_commits_on_success(self):
        session = make_session_mock()
        session.execute.side_effect = [
            make_result(scalars=[make_entry()]),
            make_result(scalar=make_service()),
            make_result(rowcount=1),
            make_result(rowcount=1),
        ]

        with patch(f"{MODULE}.get_async_session") as mock_factory, \
             patch(f"{MODULE}.schedule_booking_notification_jobs", new_callable=AsyncMock, return_value=1):
            patch_session_factory(mock_factory, session)
            result = await try_fulfill_waitlist_for_released_slot(make_released())

        assert result.fulfilled
        session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_collision_rolls_back_as_slot_taken(self):
        session = make_session_mock()
        session.execute.side_effect = [
            make_result(scalars=[make_entry()]),
            make_result(scalar=make_service()),
            make_result(rowcount=1),
        ]
        session.flush.side_effect = IntegrityError("INSERT INTO bookings", {}, Exception("23P01"))

        with patch(f"{MODULE}.get_async_session") as mock_factory:
            patch_session_factory(mock_factory, session)
            result = await try_fulfill_waitlist_for_released_slot(make_released())

        assert not result.fulfilled
        assert result.skipped_reason == WaitlistSkipReason.SLOT_TAKEN
        session.rollback.assert_awaited_once()
        session.commit.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_source_booking(self):
        with patch(f"{MODULE}.get_async_session") as mock_factory:
            result = await try_fulfill_waitlist_for_released_slot(
                make_released(source_booking_id=None)
            )

        assert result.skipped_reason == WaitlistSkipReason.MISSING_SOURCE_BOOKING_ID
        mock_factory.assert_not_called()


# ============================================================================
# Customer operations
# ============================================================================


class TestJoinWaitlist:
    NOW = datetime(2026, 3, 9, 12, 0, tzinfo=UTC)

    @pytest.fixture
    def active_shop(self):
        shop = MagicMock()
        shop.is_active = True
        return shop

    @pytest.mark.asyncio
    async def test_joins_full_day(self, session_mock, active_shop):
        session_mock.get.return_value = active_shop
        session_mock.execute.side_effect = [
            make_result(scalar=uuid4()),
            make_result(scalar=uuid4()),
            make_result(scalars=[]),
            make_result(scalar=2),
        ]

        with patch(f"{MODULE}.get_available_slots_for_day", new_callable=AsyncMock, return_value=[]):
            result = await join_waitlist(
                session_mock, uuid4(), uuid4(), uuid4(), uuid4(), "2026-03-10", now=self.NOW
            )

        assert result["success"]
        assert result["position"] == 2
        assert result["date_day"] == "2026-03-10"
        entry = session_mock.add.call_args.args[0]
        assert entry.date_day == date(2026, 3, 10)
        assert entry.status == WaitlistStatus.ACTIVE
        session_mock.commit.assert_not_called()

    @pytest.mark.asyncio
    async def test_refused_while_slots_remain(self, session_mock, active_shop):
        session_mock.get.return_value = active_shop
        session_mock.execute.side_effect = [
            make_result(scalar=uuid4()),
            make_result(scalar=uuid4()),
            make_result(scalars=[]),
        ]

        with patch(f"{MODULE}.get_available_slots_for_day", new_callable=AsyncMock, return_value=["15:00"]):
            result = await join_waitlist(
                session_mock, uuid4(), uuid4(), uuid4(), uuid4(), "2026-03-10", now=self.NOW
            )

        assert result == {
            "success": False,
            "error_code": "SLOTS_AVAILABLE",
            "error_message": "There are still free slots on this day",
        }

    @pytest.mark.asyncio
    async def test_duplicate_active_entry(self, session_mock, active_shop):
        session_mock.get.return_value = active_shop
        session_mock.execute.side_effect = [
            make_result(scalar=uuid4()),
            make_result(scalar=uuid4()),
            make_result(scalars=[uuid4()]),
        ]

        result = await join_waitlist(
            session_mock, uuid4(), uuid4(), uuid4(), uuid4(), "2026-03-10", now=self.NOW
        )

        assert result["error_code"] == "DUPLICATE_ENTRY"

    @pytest.mark.asyncio
    async def test_concurrent_duplicate_hits_unique_index(self, session_mock, active_shop):
        session_mock.get.return_value = active_shop
        session_mock.execute.side_effect = [
            make_result(scalar=uuid4()),
            make_result(scalar=uuid4()),
            make_result(scalars=[]),
        ]
        session_mock.flush.side_effect = IntegrityError("INSERT", {}, Exception("23505"))

        with patch(f"{MODULE}.get_available_slots_for_day", new_callable=AsyncMock, return_value=[]):
            result = await join_waitlist(
                session_mock, uuid4(), uuid4(), uuid4(), uuid4(), "2026-03-10", now=self.NOW
            )

        assert result["error_code"] == "DUPLICATE_ENTRY"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("value", ["10/03/2026", "2026-02-30", ""])
    async def test_invalid_day(self, session_mock, value):
        result = await join_waitlist(session_mock, uuid4(), uuid4(), uuid4(), uuid4(), value, now=self.NOW)
        assert result["error_code"] == "INVALID_DAY"

    @pytest.mark.asyncio
    async def test_past_day(self, session_mock):
        result = await join_waitlist(
            session_mock, uuid4(), uuid4(), uuid4(), uuid4(), "2026-03-08", now=self.NOW
        )
        assert result["error_code"] == "DAY_IN_PAST"

    @pytest.mark.asyncio
    async def test_inactive_barbershop(self, session_mock, active_shop):
        active_shop.is_active = False
        session_mock.get.return_value = active_shop

        result = await join_waitlist(
            session_mock, uuid4(), uuid4(), uuid4(), uuid4(), "2026-03-10", now=self.NOW
        )

        assert result["error_code"] == "BARBERSHOP_UNAVAILABLE"


class TestGetWaitlistStatusForDay:
    DEFAULT = {
        "success": True,
        "is_in_queue": False,
        "entry_id": None,
        "position": None,
        "queue_length": 0,
    }

    @pytest.fixture
    def active_shop(self):
        shop = MagicMock()
        shop.is_active = True
        return shop

    async def status(self, session, date_day="2026-03-10"):
        return await get_waitlist_status_for_day(
            session, uuid4(), uuid4(), uuid4(), uuid4(), date_day
        )

    @pytest.mark.asyncio
    async def test_reports_position_and_queue_length(self, session_mock, active_shop):
        entry = make_entry()
        session_mock.get.return_value = active_shop
        session_mock.execute.side_effect = [
            make_result(scalar=uuid4()),
            make_result(scalar=uuid4()),
            make_result(scalars=[entry]),
            make_result(scalar=3),
        ]

        with patch(f"{MODULE}._waitlist_position", new_callable=AsyncMock, return_value=2) as position:
            result = await self.status(session_mock)

        assert result == {
            "success": True,
            "is_in_queue": True,
            "entry_id": entry.id,
            "position": 2,
            "queue_length": 3,
            "date_day": "2026-03-10",
        }
        position.assert_awaited_once_with(session_mock, entry)
        session_mock.add.assert_not_called()
        session_mock.commit.assert_not_called()

    @pytest.mark.asyncio
    async def test_not_in_queue(self, session_mock, active_shop):
        session_mock.get.return_value = active_shop
        session_mock.execute.side_effect = [
            make_result(scalar=uuid4()),
            make_result(scalar=uuid4()),
            make_result(scalars=[]),
        ]

        assert await self.status(session_mock) == self.DEFAULT

    @pytest.mark.asyncio
    async def test_inactive_barbershop_reports_default(self, session_mock, active_shop):
        active_shop.is_active = False
        session_mock.get.return_value = active_shop

        assert await self.status(session_mock) == self.DEFAULT
        session_mock.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_barbershop_reports_default(self, session_mock):
        session_mock.get.return_value = None

        assert await self.status(session_mock) == self.DEFAULT

    @pytest.mark.asyncio
    async def test_unknown_barber_reports_default(self, session_mock, active_shop):
        session_mock.get.return_value = active_shop
        session_mock.execute.side_effect = [make_result(scalar=None)]

        assert await self.status(session_mock) == self.DEFAULT

    @pytest.mark.asyncio
    async def test_unknown_service_reports_default(self, session_mock, active_shop):
        session_mock.get.return_value = active_shop
        session_mock.execute.side_effect = [
            make_result(scalar=uuid4()),
            make_result(scalar=None),
        ]

        assert await self.status(session_mock) == self.DEFAULT

    @pytest.mark.asyncio
    @pytest.mark.parametrize("value", ["", "2026-02-30", "10/03/2026"])
    async def test_invalid_day(self, session_mock, value):
        result = await self.status(session_mock, value)

        assert result["error_code"] == "INVALID_DAY"
        session_mock.get.assert_not_called()


class TestLeaveAndSeen:
    @pytest.mark.asyncio
    async def test_leave_active_entry(self, session_mock):
        entry = MagicMock(status=WaitlistStatus.ACTIVE)
        session_mock.execute.side_effect = [make_result(scalar=entry), make_result(rowcount=1)]
        entry_id = uuid4()

        result = await leave_waitlist(session_mock, uuid4(), entry_id)

        assert result == {"success": True, "entry_id": entry_id}

    @pytest.mark.asyncio
    async def test_leave_unknown_entry(self, session_mock):
        session_mock.execute.return_value = make_result(scalar=None)

        result = await leave_waitlist(session_mock, uuid4(), uuid4())

        assert result["error_code"] == "ENTRY_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_leave_fulfilled_entry(self, session_mock):
        session_mock.execute.return_value = make_result(
            scalar=MagicMock(status=WaitlistStatus.FULFILLED)
        )

        result = await leave_waitlist(session_mock, uuid4(), uuid4())

        assert result["error_code"] == "ENTRY_NOT_ACTIVE"

    @pytest.mark.asyncio
    async def test_mark_seen(self, session_mock):
        session_mock.execute.return_value = make_result(rowcount=2)

        assert await mark_fulfillment_seen(session_mock, uuid4(), [uuid4(), uuid4()]) == 2

    @pytest.mark.asyncio
    async def test_mark_seen_without_ids(self, session_mock):
        assert await mark_fulfillment_seen(session_mock, uuid4(), []) == 0
        session_mock.execute.assert_not_called()
