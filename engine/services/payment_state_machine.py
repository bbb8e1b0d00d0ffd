"""
Booking payment state machine.

PENDING -> PAID | FAILED, at most once per booking. Both the Stripe webhook
and the polling sweeps feed signals through apply_payment_signal(), which
applies the transition with a conditional UPDATE guarded by
payment_status = 'PENDING'. Whoever loses a race re-reads the row and gets a
no-op (or conflict) outcome instead of repeating the side effects.

Outcomes are returned, not raised:

    current  signal          outcome
    PENDING  PAID(charge)    MARKED_PAID (jobs scheduled)
    PENDING  FAILED          MARKED_FAILED (jobs canceled, slot released)
    PAID     PAID(same)      ALREADY_PAID
    PAID     PAID(other)     CHARGE_MISMATCH (manual review)
    PAID     FAILED          ALREADY_RESOLVED
    FAILED   FAILED          ALREADY_FAILED
    FAILED   PAID            PAID_AFTER_FAILURE (manual review)
"""

import logging
from datetime import UTC, datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from database.connection import get_async_session
from database.models import Booking, PaymentStatus
from engine.services.notification_jobs import (
    NotificationCancelReason,
    cancel_pending_booking_notification_jobs,
    schedule_booking_notification_jobs,
)
from engine.services.waitlist_service import (
    ReleasedSlot,
    try_fulfill_waitlist_for_released_slot,
)

logger = logging.getLogger(__name__)


class PaymentSignalKind(str, Enum):
    PAID = "paid"
    FAILED = "failed"


class PaymentSignal(BaseModel):
    kind: PaymentSignalKind
    charge_id: str | None = None
    reason: str | None = None

    @classmethod
    def paid(cls, charge_id: str | None) -> "PaymentSignal":
        return cls(kind=PaymentSignalKind.PAID, charge_id=charge_id)

    @classmethod
    def failed(cls, reason: str) -> "PaymentSignal":
        return cls(kind=PaymentSignalKind.FAILED, reason=reason)


class TransitionOutcome(str, Enum):
    MARKED_PAID = "marked_paid"
    MARKED_FAILED = "marked_failed"
    ALREADY_PAID = "already_paid"
    ALREADY_FAILED = "already_failed"
    ALREADY_RESOLVED = "already_resolved"
    CHARGE_MISMATCH = "charge_mismatch"
    PAID_AFTER_FAILURE = "paid_after_failure"
    SLOT_TAKEN_AFTER_PAYMENT = "slot_taken_after_payment"
    CHARGE_NOT_RESOLVED = "charge_not_resolved"
    NOT_FOUND = "not_found"


CONFLICT_OUTCOMES = frozenset(
    {
        TransitionOutcome.CHARGE_MISMATCH,
        TransitionOutcome.PAID_AFTER_FAILURE,
        TransitionOutcome.SLOT_TAKEN_AFTER_PAYMENT,
    }
)


class TransitionResult(BaseModel):
    outcome: TransitionOutcome
    booking_id: UUID
    jobs_created: int = 0
    jobs_canceled: int = 0
    released_slot: ReleasedSlot | None = None

    @property
    def is_conflict(self) -> bool:
        return self.outcome in CONFLICT_OUTCOMES

    @property
    def applied(self) -> bool:
        return self.outcome in (TransitionOutcome.MARKED_PAID, TransitionOutcome.MARKED_FAILED)


async def _read_payment_state(
    session: AsyncSession, booking_id: UUID
) -> tuple[PaymentStatus, str | None] | None:
    row = (
        await session.execute(
            select(Booking.payment_status, Booking.stripe_charge_id).where(Booking.id == booking_id)
        )
    ).first()
    if row is None:
        return None
    return row[0], row[1]


async def _apply_paid(
    session: AsyncSession, booking_id: UUID, charge_id: str, now: datetime
) -> TransitionResult:
    try:
        async with session.begin_nested():
            marked = (
                await session.execute(
                    update(Booking)
                    .where(
                        Booking.id == booking_id,
                        Booking.payment_status == PaymentStatus.PENDING,
                    )
                    .values(
                        payment_status=PaymentStatus.PAID,
                        stripe_charge_id=charge_id,
                        payment_confirmed_at=now,
                        cancelled_at=None,
                        updated_at=now,
                    )
                    .returning(Booking.id)
                    .execution_options(synchronize_session=False)
                )
            ).first()
    except IntegrityError:
        # Booking had been cancelled while on checkout and its slot was re-booked
        logger.error(
            f"Payment confirmed but slot already re-booked, manual review required | "
            f"booking_id={booking_id} | charge_id={charge_id}",
            extra={"booking_id": booking_id},
        )
        return TransitionResult(
            outcome=TransitionOutcome.SLOT_TAKEN_AFTER_PAYMENT, booking_id=booking_id
        )

    if marked is not None:
        created = await schedule_booking_notification_jobs(session, booking_id, now)
        logger.info(
            f"Booking marked PAID | booking_id={booking_id} | charge_id={charge_id} | "
            f"jobs_created={created}",
            extra={"booking_id": booking_id},
        )
        return TransitionResult(
            outcome=TransitionOutcome.MARKED_PAID, booking_id=booking_id, jobs_created=created
        )

    state = await _read_payment_state(session, booking_id)
    if state is None:
        return TransitionResult(outcome=TransitionOutcome.NOT_FOUND, booking_id=booking_id)

    status, existing_charge_id = state
    if status == PaymentStatus.PAID:
        if existing_charge_id == charge_id:
            return TransitionResult(outcome=TransitionOutcome.ALREADY_PAID, booking_id=booking_id)
        logger.error(
            f"Charge mismatch on PAID booking, manual review required | booking_id={booking_id} | "
            f"stored_charge_id={existing_charge_id} | received_charge_id={charge_id}",
            extra={"booking_id": booking_id},
        )
        return TransitionResult(outcome=TransitionOutcome.CHARGE_MISMATCH, booking_id=booking_id)

    if status == PaymentStatus.FAILED:
        logger.error(
            f"Paid signal for FAILED booking, manual review required | booking_id={booking_id} | "
            f"charge_id={charge_id}",
            extra={"booking_id": booking_id},
        )
        return TransitionResult(outcome=TransitionOutcome.PAID_AFTER_FAILURE, booking_id=booking_id)

    return TransitionResult(outcome=TransitionOutcome.ALREADY_RESOLVED, booking_id=booking_id)


async def _apply_failed(
    session: AsyncSession, booking_id: UUID, reason: str | None, now: datetime
) -> TransitionResult:
    row = (
        await session.execute(
            update(Booking)
            .where(
                Booking.id == booking_id,
                Booking.payment_status == PaymentStatus.PENDING,
            )
            .values(
                payment_status=PaymentStatus.FAILED,
                payment_confirmed_at=None,
                cancelled_at=func.coalesce(Booking.cancelled_at, now),
                updated_at=now,
            )
            .returning(
                Booking.id,
                Booking.barbershop_id,
                Booking.barber_id,
                Booking.service_id,
                Booking.start_at,
                Booking.end_at,
                Booking.total_duration_minutes,
                Booking.cancelled_at,
            )
            .execution_options(synchronize_session=False)
        )
    ).first()

    if row is not None:
        canceled = await cancel_pending_booking_notification_jobs(
            session, booking_id, NotificationCancelReason.PAYMENT_FAILED, now
        )

        # A booking cancelled earlier already released its slot back then
        released_slot = None
        if row.cancelled_at == now:
            released_slot = ReleasedSlot(
                source_booking_id=row.id,
                barbershop_id=row.barbershop_id,
                barber_id=row.barber_id,
                service_id=row.service_id,
                released_start_at=row.start_at,
                released_end_at=row.end_at,
                released_duration_minutes=row.total_duration_minutes,
            )

        logger.info(
            f"Booking marked FAILED | booking_id={booking_id} | reason={reason} | "
            f"jobs_canceled={canceled}",
            extra={"booking_id": booking_id},
        )
        return TransitionResult(
            outcome=TransitionOutcome.MARKED_FAILED,
            booking_id=booking_id,
            jobs_canceled=canceled,
            released_slot=released_slot,
        )

    state = await _read_payment_state(session, booking_id)
    if state is None:
        return TransitionResult(outcome=TransitionOutcome.NOT_FOUND, booking_id=booking_id)

    status, _ = state
    if status == PaymentStatus.FAILED:
        return TransitionResult(outcome=TransitionOutcome.ALREADY_FAILED, booking_id=booking_id)

    logger.info(
        f"Failure signal ignored for resolved booking | booking_id={booking_id} | "
        f"status={status.value} | reason={reason}",
        extra={"booking_id": booking_id},
    )
    return TransitionResult(outcome=TransitionOutcome.ALREADY_RESOLVED, booking_id=booking_id)


async def apply_payment_signal(
    session: AsyncSession,
    booking_id: UUID,
    signal: PaymentSignal,
    now: datetime | None = None,
) -> TransitionResult:
    """
    Apply a payment signal to a booking on the caller's session.

    Does not commit and does not run waitlist fulfillment; see
    process_payment_signal() for the full flow.
    """
    now = now or datetime.now(UTC)

    if signal.kind == PaymentSignalKind.PAID:
        if not signal.charge_id:
            logger.warning(
                f"Paid signal without charge id, booking kept pending | booking_id={booking_id}",
                extra={"booking_id": booking_id},
            )
            return TransitionResult(
                outcome=TransitionOutcome.CHARGE_NOT_RESOLVED, booking_id=booking_id
            )
        return await _apply_paid(session, booking_id, signal.charge_id, now)

    return await _apply_failed(session, booking_id, signal.reason, now)


async def process_payment_signal(
    booking_id: UUID,
    signal: PaymentSignal,
    now: datetime | None = None,
) -> TransitionResult:
    """
    Apply a payment signal in its own transaction.

    After commit, a released slot is offered to the waitlist. Waitlist
    failures are logged and do not change the transition result.
    """
    async with get_async_session() as session:
        result = await apply_payment_signal(session, booking_id, signal, now)
        await session.commit()

    if result.released_slot is not None:
        try:
            fulfillment = await try_fulfill_waitlist_for_released_slot(result.released_slot)
            logger.info(
                f"Waitlist fulfillment after payment failure | booking_id={booking_id} | "
                f"fulfilled={fulfillment.fulfilled} | reason={fulfillment.skipped_reason}",
                extra={"booking_id": booking_id},
            )
        except Exception as e:
            logger.error(
                f"Waitlist fulfillment failed after payment failure | booking_id={booking_id}: {e}",
                extra={"booking_id": booking_id},
                exc_info=True,
            )

    return result
