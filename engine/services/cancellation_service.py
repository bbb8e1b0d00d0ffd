"""
Customer-initiated booking cancellation.

Order of operations:
1. Ownership and state checks (not found / not owner / already cancelled / past)
2. Stripe refund when the booking carries a charge. A refund failure leaves
   the booking untouched.
3. Conditional cancelled_at update plus pending notification jobs canceled,
   committed together
4. Waitlist fulfillment for the released slot, in its own transaction
"""

import logging
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

import pybreaker
import stripe
from sqlalchemy import select, update

from database.connection import get_async_session
from database.models import Booking
from engine.services.notification_jobs import (
    NotificationCancelReason,
    cancel_pending_booking_notification_jobs,
)
from engine.services.waitlist_service import (
    ReleasedSlot,
    try_fulfill_waitlist_for_released_slot,
)
from engine.validators.booking_validators import BookingErrorCode
from shared.stripe_client import StripeConfigurationError, create_refund

logger = logging.getLogger(__name__)


def _failure(code: BookingErrorCode, message: str) -> dict[str, Any]:
    return {"success": False, "error_code": code.value, "error_message": message}


async def cancel_booking(
    booking_id: UUID, user_id: UUID, now: datetime | None = None
) -> dict[str, Any]:
    """
    Cancel a booking on behalf of its owner.

    Returns:
        {"success": True, "booking_id", "cancelled_at", "refund_id",
         "jobs_canceled", "waitlist_fulfilled"}
        or {"success": False, "error_code", "error_message"}
    """
    now = now or datetime.now(UTC)

    async with get_async_session() as session:
        booking = (
            await session.execute(select(Booking).where(Booking.id == booking_id))
        ).scalar_one_or_none()

        if booking is None:
            return _failure(BookingErrorCode.NOT_FOUND, "Booking not found")
        if booking.user_id != user_id:
            logger.warning(
                f"Cancellation refused: not owner | booking_id={booking_id} | user_id={user_id}",
                extra={"booking_id": booking_id},
            )
            return _failure(BookingErrorCode.NOT_OWNER, "Booking belongs to another customer")
        if booking.cancelled_at is not None:
            return _failure(BookingErrorCode.ALREADY_CANCELLED, "Booking is already cancelled")
        if booking.start_at <= now:
            return _failure(
                BookingErrorCode.BOOKING_IN_PAST, "Bookings that already started cannot be cancelled"
            )

        released = ReleasedSlot.from_booking(booking)
        charge_id = booking.stripe_charge_id

    refund_id = None
    if charge_id:
        try:
            refund = await create_refund(charge_id)
            refund_id = refund["id"]
        except (stripe.StripeError, StripeConfigurationError, pybreaker.CircuitBreakerError) as e:
            logger.error(
                f"Refund failed, booking kept | booking_id={booking_id} | charge_id={charge_id}: {e}",
                extra={"booking_id": booking_id},
            )
            return _failure(
                BookingErrorCode.REFUND_FAILED,
                "Could not refund the payment, the booking was not cancelled",
            )

    async with get_async_session() as session:
        result = await session.execute(
            update(Booking)
            .where(Booking.id == booking_id, Booking.cancelled_at.is_(None))
            .values(cancelled_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await session.rollback()
            logger.info(
                f"Cancellation lost race | booking_id={booking_id}",
                extra={"booking_id": booking_id},
            )
            return _failure(BookingErrorCode.ALREADY_CANCELLED, "Booking is already cancelled")

        jobs_canceled = await cancel_pending_booking_notification_jobs(
            session, booking_id, NotificationCancelReason.BOOKING_CANCELED, now=now
        )
        await session.commit()

    logger.info(
        f"Booking cancelled | booking_id={booking_id} | refund_id={refund_id} | "
        f"jobs_canceled={jobs_canceled}",
        extra={"booking_id": booking_id},
    )

    waitlist_fulfilled = False
    try:
        fulfillment = await try_fulfill_waitlist_for_released_slot(released)
        waitlist_fulfilled = fulfillment.fulfilled
    except Exception as e:
        logger.error(
            f"Waitlist fulfillment failed after cancellation | booking_id={booking_id}: {e}",
            exc_info=True,
            extra={"booking_id": booking_id},
        )

    return {
        "success": True,
        "booking_id": str(booking_id),
        "cancelled_at": now.isoformat(),
        "refund_id": refund_id,
        "jobs_canceled": jobs_canceled,
        "waitlist_fulfilled": waitlist_fulfilled,
    }
