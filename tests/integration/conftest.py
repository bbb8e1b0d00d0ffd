"""
Fixtures for tests against a real PostgreSQL database.

NOTE: Assumes migrations have been applied (alembic upgrade head) to the
database in DATABASE_URL. The bookings exclusion constraint needs the
btree_gist extension, which the migration creates.
"""

from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from uuid import UUID, uuid4

import pytest
from sqlalchemy import text

from database.connection import AsyncSessionLocal
from database.models import (
    Barber,
    Barbershop,
    BarbershopPlan,
    BarbershopService,
    Booking,
    BookingService,
    PaymentMethod,
    PaymentStatus,
    User,
    WhatsAppProvider,
)
from shared.booking_time import get_booking_date_key, zoned_to_utc

ALL_TABLES = (
    "notification_jobs, waitlist_entries, booking_services, bookings, "
    "barbershop_whatsapp_settings, barbershop_opening_hours, barbershop_services, "
    "barbers, users, barbershops"
)


@dataclass(frozen=True)
class SeededShop:
    barbershop_id: UUID
    barber_id: UUID
    service_id: UUID
    user_ids: list[UUID]
    day: date

    def at(self, hour: int, minute: int = 0) -> datetime:
        """UTC instant of a local wall-clock time on the seeded day."""
        return zoned_to_utc(self.day.year, self.day.month, self.day.day, hour, minute)


async def truncate_all() -> None:
    async with AsyncSessionLocal() as session:
        await session.execute(text(f"TRUNCATE {ALL_TABLES} CASCADE"))
        await session.commit()


@pytest.fixture(scope="function", autouse=True)
async def setup_database():
    """Start and finish every test with empty tables."""
    await truncate_all()
    yield
    await truncate_all()


@pytest.fixture
async def seeded_shop() -> SeededShop:
    """
    One active PRO barbershop without Stripe, WhatsApp via Twilio, one barber,
    one 45-minute service and three customers with valid phones.
    """
    day = date.fromisoformat(get_booking_date_key(datetime.now(UTC) + timedelta(days=30)))

    barbershop = Barbershop(
        id=uuid4(),
        name="Barbearia Central",
        is_active=True,
        stripe_enabled=False,
        plan=BarbershopPlan.PRO,
        whatsapp_provider=WhatsAppProvider.TWILIO,
        whatsapp_enabled=True,
    )
    barber = Barber(id=uuid4(), barbershop_id=barbershop.id, name="Joao")
    service = BarbershopService(
        id=uuid4(),
        barbershop_id=barbershop.id,
        name="Corte",
        duration_in_minutes=45,
        price_in_cents=5000,
    )
    users = [
        User(id=uuid4(), name=f"Cliente {n}", phone=f"+551199999000{n}") for n in range(3)
    ]

    async with AsyncSessionLocal() as session:
        session.add(barbershop)
        await session.flush()
        session.add_all([barber, service, *users])
        await session.commit()

    return SeededShop(
        barbershop_id=barbershop.id,
        barber_id=barber.id,
        service_id=service.id,
        user_ids=[user.id for user in users],
        day=day,
    )


async def insert_booking(shop: SeededShop, user_id: UUID, start_at: datetime) -> UUID:
    """Committed IN_PERSON/PAID booking for the seeded service."""
    booking = Booking(
        id=uuid4(),
        barbershop_id=shop.barbershop_id,
        barber_id=shop.barber_id,
        service_id=shop.service_id,
        user_id=user_id,
        start_at=start_at,
        end_at=start_at + timedelta(minutes=45),
        total_duration_minutes=45,
        total_price_in_cents=5000,
        payment_method=PaymentMethod.IN_PERSON,
        payment_status=PaymentStatus.PAID,
        payment_confirmed_at=datetime.now(UTC),
    )
    async with AsyncSessionLocal() as session:
        session.add(booking)
        await session.flush()
        session.add(BookingService(booking_id=booking.id, service_id=shop.service_id))
        await session.commit()
    return booking.id
