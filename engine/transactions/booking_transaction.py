"""
Booking Transaction Handler.

BookingTransaction.execute() is the single entry point for creating bookings:
- Business rule validation (start after now + buffer, services usable,
  barbershop active, barber belongs to the barbershop)
- Advisory slot check against the barber's active bookings
- Insert guarded by the bookings exclusion constraint (the real safety net)

Two payment paths:
- Barbershop without Stripe: IN_PERSON/PAID booking, notification jobs
  scheduled in the same transaction
- Barbershop with Stripe: Checkout Session created first, then a PENDING
  booking carrying the session id. If the insert fails the session is
  expired so the customer cannot pay for a booking that does not exist.

No database transaction is held open across the Stripe call.
"""

import logging
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

import pybreaker
import stripe
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from database.connection import get_async_session
from database.models import (
    BOOKING_SLOT_EXCLUSION_CONSTRAINT,
    Barber,
    Barbershop,
    BarbershopService,
    Booking,
    BookingService,
    PaymentMethod,
    PaymentStatus,
)
from engine.services.notification_jobs import schedule_booking_notification_jobs
from engine.validators.booking_validators import (
    BookingErrorCode,
    calculate_booking_totals,
    validate_booking_start,
    validate_services,
    validate_slot_availability,
)
from shared.stripe_client import (
    StripeConfigurationError,
    create_booking_checkout_session,
    expire_checkout_session,
    is_stripe_configured,
)

logger = logging.getLogger(__name__)

SLOT_CONSTRAINT_NAMES = frozenset(
    {BOOKING_SLOT_EXCLUSION_CONSTRAINT, "uq_bookings_barber_start_active"}
)
EXCLUSION_VIOLATION = "23P01"
UNIQUE_VIOLATION = "23505"


def is_slot_conflict(exc: IntegrityError) -> bool:
    """
    True when an IntegrityError comes from the barber/interval constraints.

    Exclusion violations always are. Unique violations are unless the driver
    names a different constraint (e.g. stripe_session_id).
    """
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate == EXCLUSION_VIOLATION:
        return True
    if sqlstate != UNIQUE_VIOLATION:
        return False

    constraint_name = getattr(orig, "constraint_name", None) or getattr(
        getattr(orig, "__cause__", None), "constraint_name", None
    )
    return constraint_name is None or constraint_name in SLOT_CONSTRAINT_NAMES


def _failure(
    code: BookingErrorCode | str, message: str, details: dict[str, Any] | None = None
) -> dict[str, Any]:
    return {
        "success": False,
        "error_code": code.value if isinstance(code, BookingErrorCode) else code,
        "error_message": message,
        "details": details or {},
    }


def _slot_taken(start_at: datetime) -> dict[str, Any]:
    return _failure(
        BookingErrorCode.SLOT_TAKEN,
        "Selected date and time is already booked, please pick another time",
        {"start_at": start_at.isoformat()},
    )


class BookingTransaction:
    """
    Atomic transaction handler for creating bookings.

    1. Validate business rules
    2. Compute totals from the selected services
    3. Advisory slot check
    4. Insert (and for Stripe tenants, open a Checkout Session first)
    5. Translate constraint violations into SLOT_TAKEN
    """

    @staticmethod
    async def execute(
        user_id: UUID,
        barbershop_id: UUID,
        barber_id: UUID,
        service_ids: list[UUID],
        start_at: datetime,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """
        Execute the booking transaction.

        Returns:
            Success:
                {
                    "success": True,
                    "kind": "created" | "stripe",
                    "booking_id": str,
                    "session_id": str | None,
                    "checkout_url": str | None,
                    "start_at": str,
                    "end_at": str,
                    "total_duration_minutes": int,
                    "total_price_in_cents": int,
                    "payment_method": str,
                    "payment_status": str,
                }

            Failure:
                {
                    "success": False,
                    "error_code": str,
                    "error_message": str,
                    "details": dict
                }
        """
        now = now or datetime.now(UTC)
        trace_id = f"{user_id}_{start_at.isoformat()}"
        logger.info(
            f"[{trace_id}] Starting booking transaction | barbershop_id={barbershop_id} | "
            f"barber_id={barber_id} | services={len(service_ids)}",
            extra={"barbershop_id": barbershop_id},
        )

        try:
            validation_start = validate_booking_start(start_at, now)
            if not validation_start["valid"]:
                return _failure(validation_start["error_code"], validation_start["error_message"])

            unique_service_ids = list(dict.fromkeys(service_ids))

            async with get_async_session() as session:
                barbershop = await session.get(Barbershop, barbershop_id)
                if barbershop is None:
                    return _failure(BookingErrorCode.BARBERSHOP_NOT_FOUND, "Barbershop not found")
                if not barbershop.is_active:
                    return _failure(
                        BookingErrorCode.BARBERSHOP_INACTIVE,
                        "Barbershop is not accepting bookings",
                    )

                barber = (
                    await session.execute(
                        select(Barber).where(
                            Barber.id == barber_id, Barber.barbershop_id == barbershop_id
                        )
                    )
                ).scalar_one_or_none()
                if barber is None:
                    return _failure(
                        BookingErrorCode.BARBER_NOT_FOUND, "Barber not found for this barbershop"
                    )

                services = list(
                    (
                        await session.execute(
                            select(BarbershopService)
                            .where(
                                BarbershopService.id.in_(unique_service_ids),
                                BarbershopService.barbershop_id == barbershop_id,
                                BarbershopService.deleted_at.is_(None),
                            )
                            .order_by(BarbershopService.name)
                        )
                    ).scalars().all()
                )
                validation_services = validate_services(services, unique_service_ids)
                if not validation_services["valid"]:
                    return _failure(
                        validation_services["error_code"], validation_services["error_message"]
                    )

                total_duration, total_price = calculate_booking_totals(services)
                end_at = start_at + timedelta(minutes=total_duration)

                validation_slot = await validate_slot_availability(
                    session, barbershop_id, barber_id, start_at, total_duration
                )
                if not validation_slot["valid"]:
                    return _slot_taken(start_at)

                booking = Booking(
                    id=uuid4(),
                    barbershop_id=barbershop_id,
                    barber_id=barber_id,
                    service_id=unique_service_ids[0],
                    user_id=user_id,
                    start_at=start_at,
                    end_at=end_at,
                    total_duration_minutes=total_duration,
                    total_price_in_cents=total_price,
                    payment_method=PaymentMethod.IN_PERSON,
                    payment_status=PaymentStatus.PAID,
                    payment_confirmed_at=now,
                )

                if not barbershop.stripe_enabled:
                    return await BookingTransaction._insert_in_person(
                        session, booking, unique_service_ids, trace_id
                    )

                barbershop_name = barbershop.name
                barber_name = barber.name
                service_names = [service.name for service in services]

            if total_price < 1:
                return _failure(
                    BookingErrorCode.INVALID_PRICE, "Booking total is invalid for online payment"
                )
            if not is_stripe_configured():
                logger.error(f"[{trace_id}] Stripe enabled for barbershop but no secret key configured")
                return _failure(BookingErrorCode.PAYMENT_UNAVAILABLE, "Online payment is not available")

            try:
                checkout = await create_booking_checkout_session(
                    barbershop_name=barbershop_name,
                    barber_name=barber_name,
                    service_names=service_names,
                    total_price_in_cents=total_price,
                    metadata={
                        "bookingId": booking.id,
                        "barbershopId": barbershop_id,
                        "barberId": barber_id,
                        "userId": user_id,
                        "primaryServiceId": unique_service_ids[0],
                        "serviceIdsJson": ",".join(str(sid) for sid in unique_service_ids),
                        "startAt": start_at.isoformat(),
                        "endAt": end_at.isoformat(),
                        "totalDurationMinutes": total_duration,
                        "totalPriceInCents": total_price,
                    },
                )
            except (stripe.StripeError, StripeConfigurationError, pybreaker.CircuitBreakerError) as e:
                logger.error(f"[{trace_id}] Stripe checkout error: {e}")
                return _failure(
                    BookingErrorCode.PAYMENT_UNAVAILABLE,
                    "Could not start the payment now, please try again",
                )

            booking.payment_method = PaymentMethod.STRIPE
            booking.payment_status = PaymentStatus.PENDING
            booking.payment_confirmed_at = None
            booking.stripe_session_id = checkout["id"]

            return await BookingTransaction._insert_pending(
                booking, unique_service_ids, checkout, trace_id
            )

        except SQLAlchemyError as e:
            logger.error(f"[{trace_id}] Database error: {e}", exc_info=True)
            return _failure("DATABASE_ERROR", "Error creating the booking", {"error": str(e)})

        except Exception as e:
            logger.error(f"[{trace_id}] Unexpected error in booking transaction: {e}", exc_info=True)
            return _failure(
                "BOOKING_TRANSACTION_ERROR",
                "Unexpected error while processing the booking",
                {"error": str(e)},
            )

    @staticmethod
    def _success(
        booking: Booking,
        kind: str,
        checkout: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        return {
            "success": True,
            "kind": kind,
            "booking_id": str(booking.id),
            "session_id": checkout["id"] if checkout else None,
            "checkout_url": checkout["url"] if checkout else None,
            "start_at": booking.start_at.isoformat(),
            "end_at": booking.end_at.isoformat(),
            "total_duration_minutes": booking.total_duration_minutes,
            "total_price_in_cents": booking.total_price_in_cents,
            "payment_method": booking.payment_method.value,
            "payment_status": booking.payment_status.value,
        }

    @staticmethod
    async def _insert_in_person(
        session: AsyncSession,
        booking: Booking,
        service_ids: list[UUID],
        trace_id: str,
    ) -> dict[str, Any]:
        try:
            session.add(booking)
            session.add_all(
                BookingService(booking_id=booking.id, service_id=service_id)
                for service_id in service_ids
            )
            await session.flush()
            await schedule_booking_notification_jobs(session, booking.id)
            await session.commit()
        except IntegrityError as e:
            await session.rollback()
            if is_slot_conflict(e):
                logger.info(f"[{trace_id}] Slot taken by a concurrent booking")
                return _slot_taken(booking.start_at)
            logger.error(f"[{trace_id}] Database integrity error: {e}", exc_info=True)
            return _failure(
                "DATABASE_INTEGRITY_ERROR", "Database integrity error", {"error": str(e)}
            )

        logger.info(
            f"[{trace_id}] In-person booking created | booking_id={booking.id}",
            extra={"booking_id": booking.id, "barbershop_id": booking.barbershop_id},
        )
        return BookingTransaction._success(booking, "created")

    @staticmethod
    async def _insert_pending(
        booking: Booking,
        service_ids: list[UUID],
        checkout: dict[str, Any],
        trace_id: str,
    ) -> dict[str, Any]:
        async with get_async_session() as session:
            try:
                session.add(booking)
                session.add_all(
                    BookingService(booking_id=booking.id, service_id=service_id)
                    for service_id in service_ids
                )
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                logger.error(
                    f"[{trace_id}] Failed to store pending booking | session_id={checkout['id']}: {e}",
                    extra={"session_id": checkout["id"]},
                )
                await BookingTransaction._expire_checkout(checkout["id"], trace_id)
                if is_slot_conflict(e):
                    return _slot_taken(booking.start_at)
                return _failure(
                    "DATABASE_INTEGRITY_ERROR", "Database integrity error", {"error": str(e)}
                )

        logger.info(
            f"[{trace_id}] Pending Stripe booking created | booking_id={booking.id} | "
            f"session_id={checkout['id']}",
            extra={"booking_id": booking.id, "session_id": checkout["id"]},
        )
        return BookingTransaction._success(booking, "stripe", checkout)

    @staticmethod
    async def _expire_checkout(session_id: str, trace_id: str) -> None:
        try:
            await expire_checkout_session(session_id)
        except (stripe.StripeError, StripeConfigurationError, pybreaker.CircuitBreakerError) as e:
            logger.error(
                f"[{trace_id}] Failed to expire Stripe session after pending booking error | "
                f"session_id={session_id}: {e}"
            )
