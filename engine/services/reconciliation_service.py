"""
Stripe payment reconciliation.

Brings locally stored booking payment state in line with Stripe, from two
directions that converge on the payment state machine:

1. Push: handle_stripe_event() for Checkout Session webhook events
2. Pull: reconcile_by_session_id(), reconcile_for_user() and
   reconcile_for_tenant() re-query Stripe for PENDING bookings. These are the
   fallback when a webhook was never delivered.

Both paths are idempotent. Transitions are conditional on PENDING and job
inserts skip duplicates, so replaying an event or re-running a sweep changes
nothing the second time.

Stripe is queried outside of any database transaction.
"""

import logging
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy import select

from database.connection import get_async_session
from database.models import Booking, PaymentMethod, PaymentStatus
from engine.services.payment_state_machine import (
    PaymentSignal,
    TransitionOutcome,
    TransitionResult,
    process_payment_signal,
)
from shared.config import get_settings
from shared.stripe_client import (
    get_field,
    is_session_paid,
    is_stripe_configured,
    resolve_charge_id,
    retrieve_checkout_session,
    should_mark_session_failed,
)

logger = logging.getLogger(__name__)

COMPLETION_EVENTS = frozenset(
    {
        "checkout.session.completed",
        "checkout.session.async_payment_succeeded",
    }
)
FAILURE_EVENTS = frozenset(
    {
        "checkout.session.expired",
        "checkout.session.async_payment_failed",
    }
)


class ReconciliationSource(str, Enum):
    WEBHOOK = "webhook"
    SESSION_ID = "session-id"
    USER_LIST = "user-list"
    BARBERSHOP_LIST = "barbershop-list"


class ReconciliationAction(str, Enum):
    UPDATED_PAID = "updated-paid"
    UPDATED_FAILED = "updated-failed"
    KEPT_PENDING = "kept-pending"
    SKIPPED = "skipped"
    CONFLICT = "conflict"


class ReconciliationResult(BaseModel):
    action: ReconciliationAction
    source: ReconciliationSource
    booking_id: UUID | None = None
    session_id: str | None = None
    reason: str | None = None
    transition: TransitionOutcome | None = None

    @property
    def is_conflict(self) -> bool:
        return self.action == ReconciliationAction.CONFLICT


class ReconciliationSweepSummary(BaseModel):
    scanned: int = 0
    paid: int = 0
    failed: int = 0
    kept_pending: int = 0
    skipped: int = 0
    conflicts: int = 0
    errors: int = 0

    def record(self, result: ReconciliationResult) -> None:
        if result.action == ReconciliationAction.UPDATED_PAID:
            self.paid += 1
        elif result.action == ReconciliationAction.UPDATED_FAILED:
            self.failed += 1
        elif result.action == ReconciliationAction.KEPT_PENDING:
            self.kept_pending += 1
        elif result.action == ReconciliationAction.CONFLICT:
            self.conflicts += 1
        else:
            self.skipped += 1


def _log_result(result: ReconciliationResult) -> None:
    log = logger.warning if result.is_conflict else logger.info
    log(
        f"Reconciliation result | action={result.action.value} | source={result.source.value} | "
        f"booking_id={result.booking_id} | session_id={result.session_id} | reason={result.reason}",
        extra={"booking_id": result.booking_id, "session_id": result.session_id},
    )


def _result_from_transition(
    transition: TransitionResult,
    source: ReconciliationSource,
    session_id: str,
) -> ReconciliationResult:
    outcome = transition.outcome
    if outcome == TransitionOutcome.MARKED_PAID:
        action = ReconciliationAction.UPDATED_PAID
    elif outcome == TransitionOutcome.MARKED_FAILED:
        action = ReconciliationAction.UPDATED_FAILED
    elif outcome == TransitionOutcome.CHARGE_NOT_RESOLVED:
        action = ReconciliationAction.KEPT_PENDING
    elif transition.is_conflict:
        action = ReconciliationAction.CONFLICT
    else:
        action = ReconciliationAction.SKIPPED

    return ReconciliationResult(
        action=action,
        source=source,
        booking_id=transition.booking_id,
        session_id=session_id,
        reason=None if transition.applied else outcome.value,
        transition=outcome,
    )


async def _reconcile_pending_booking(
    booking_id: UUID,
    session_id: str | None,
    payment_status: PaymentStatus,
    source: ReconciliationSource,
) -> ReconciliationResult:
    """Query Stripe for one booking and apply what the session says."""
    if not session_id:
        return ReconciliationResult(
            action=ReconciliationAction.SKIPPED,
            source=source,
            booking_id=booking_id,
            reason="missing-session-id",
        )

    if payment_status != PaymentStatus.PENDING:
        return ReconciliationResult(
            action=ReconciliationAction.SKIPPED,
            source=source,
            booking_id=booking_id,
            session_id=session_id,
            reason=f"already-{payment_status.value.lower()}",
        )

    checkout_session = await retrieve_checkout_session(session_id)

    if is_session_paid(checkout_session):
        transition = await process_payment_signal(
            booking_id, PaymentSignal.paid(resolve_charge_id(checkout_session))
        )
        return _result_from_transition(transition, source, session_id)

    session_status = get_field(checkout_session, "status")
    if should_mark_session_failed(checkout_session):
        transition = await process_payment_signal(
            booking_id, PaymentSignal.failed(f"session_{session_status}")
        )
        return _result_from_transition(transition, source, session_id)

    return ReconciliationResult(
        action=ReconciliationAction.KEPT_PENDING,
        source=source,
        booking_id=booking_id,
        session_id=session_id,
        reason=(
            f"status={session_status},"
            f"payment_status={get_field(checkout_session, 'payment_status')}"
        ),
    )


# ============================================================================
# Webhook push
# ============================================================================


async def handle_stripe_event(event: Any) -> ReconciliationResult:
    """
    Apply a verified Stripe webhook event.

    Completion events are never trusted on their own: the session is
    re-retrieved and must report payment_status == "paid". The result is a
    conflict (HTTP 409, so Stripe redelivers) when the booking is unknown,
    the session is not paid, the charge cannot be resolved, or the transition
    needs manual review.
    """
    event_type = get_field(event, "type")
    data = get_field(event, "data") or {}
    event_object = get_field(data, "object") or {}
    session_id = get_field(event_object, "id")

    if event_type not in COMPLETION_EVENTS and event_type not in FAILURE_EVENTS:
        logger.debug(f"Ignoring Stripe event type {event_type}")
        return ReconciliationResult(
            action=ReconciliationAction.SKIPPED,
            source=ReconciliationSource.WEBHOOK,
            session_id=session_id,
            reason="ignored-event-type",
        )

    async with get_async_session() as session:
        booking_id = (
            await session.execute(
                select(Booking.id).where(Booking.stripe_session_id == session_id)
            )
        ).scalar_one_or_none()

    if booking_id is None:
        result = ReconciliationResult(
            action=ReconciliationAction.CONFLICT,
            source=ReconciliationSource.WEBHOOK,
            session_id=session_id,
            reason="booking-not-found",
        )
        _log_result(result)
        return result

    if event_type in COMPLETION_EVENTS:
        checkout_session = await retrieve_checkout_session(session_id)
        if not is_session_paid(checkout_session):
            result = ReconciliationResult(
                action=ReconciliationAction.CONFLICT,
                source=ReconciliationSource.WEBHOOK,
                booking_id=booking_id,
                session_id=session_id,
                reason="session-not-paid",
            )
            _log_result(result)
            return result

        transition = await process_payment_signal(
            booking_id, PaymentSignal.paid(resolve_charge_id(checkout_session))
        )
        result = _result_from_transition(transition, ReconciliationSource.WEBHOOK, session_id)
        if transition.outcome == TransitionOutcome.CHARGE_NOT_RESOLVED:
            result.action = ReconciliationAction.CONFLICT
    else:
        transition = await process_payment_signal(booking_id, PaymentSignal.failed(event_type))
        result = _result_from_transition(transition, ReconciliationSource.WEBHOOK, session_id)

    _log_result(result)
    return result


# ============================================================================
# Pull sweeps
# ============================================================================


async def reconcile_by_session_id(
    session_id: str,
    user_id: UUID | None = None,
    barbershop_id: UUID | None = None,
) -> ReconciliationResult:
    """
    Reconcile the STRIPE booking behind one Checkout Session.

    Used on the checkout success redirect. Optional user/barbershop filters
    restrict the lookup to bookings the caller owns.
    """
    normalized = (session_id or "").strip()
    source = ReconciliationSource.SESSION_ID

    if not normalized:
        return ReconciliationResult(
            action=ReconciliationAction.SKIPPED, source=source, reason="missing-session-id"
        )

    if not is_stripe_configured():
        logger.warning(f"STRIPE_SECRET_KEY missing, reconciliation skipped | session_id={normalized}")
        return ReconciliationResult(
            action=ReconciliationAction.SKIPPED,
            source=source,
            session_id=normalized,
            reason="stripe-not-configured",
        )

    stmt = select(Booking.id, Booking.stripe_session_id, Booking.payment_status).where(
        Booking.stripe_session_id == normalized,
        Booking.payment_method == PaymentMethod.STRIPE,
    )
    if user_id is not None:
        stmt = stmt.where(Booking.user_id == user_id)
    if barbershop_id is not None:
        stmt = stmt.where(Booking.barbershop_id == barbershop_id)

    async with get_async_session() as session:
        row = (await session.execute(stmt)).first()

    if row is None:
        result = ReconciliationResult(
            action=ReconciliationAction.SKIPPED,
            source=source,
            session_id=normalized,
            reason="booking-not-found",
        )
    else:
        result = await _reconcile_pending_booking(row[0], row[1], row[2], source)

    _log_result(result)
    return result


async def _sweep(
    source: ReconciliationSource,
    owner_filter: Any,
    subject: str,
    lookback_hours: int,
    limit: int,
) -> ReconciliationSweepSummary:
    summary = ReconciliationSweepSummary()

    if not is_stripe_configured():
        logger.warning(f"STRIPE_SECRET_KEY missing, reconciliation sweep skipped | {subject}")
        return summary

    lookback_start = datetime.now(UTC) - timedelta(hours=lookback_hours)

    async with get_async_session() as session:
        rows = (
            await session.execute(
                select(Booking.id, Booking.stripe_session_id, Booking.payment_status)
                .where(
                    owner_filter,
                    Booking.payment_method == PaymentMethod.STRIPE,
                    Booking.payment_status == PaymentStatus.PENDING,
                    Booking.cancelled_at.is_(None),
                    Booking.stripe_session_id.is_not(None),
                    Booking.created_at >= lookback_start,
                )
                .order_by(Booking.created_at.desc())
                .limit(limit)
            )
        ).all()

    for booking_id, stripe_session_id, payment_status in rows:
        summary.scanned += 1
        try:
            result = await _reconcile_pending_booking(
                booking_id, stripe_session_id, payment_status, source
            )
        except Exception as e:
            summary.errors += 1
            logger.error(
                f"Failed to reconcile pending booking | booking_id={booking_id} | "
                f"session_id={stripe_session_id} | {subject}: {e}",
                extra={"booking_id": booking_id, "session_id": stripe_session_id},
                exc_info=True,
            )
            continue

        _log_result(result)
        summary.record(result)

    logger.info(
        f"Reconciliation sweep finished | source={source.value} | {subject} | "
        f"{summary.model_dump()}"
    )
    return summary


async def reconcile_for_user(
    user_id: UUID,
    lookback_hours: int | None = None,
    limit: int | None = None,
) -> ReconciliationSweepSummary:
    """Reconcile a customer's recent PENDING Stripe bookings, newest first."""
    settings = get_settings()
    return await _sweep(
        ReconciliationSource.USER_LIST,
        Booking.user_id == user_id,
        f"user_id={user_id}",
        lookback_hours or settings.RECONCILIATION_LOOKBACK_HOURS,
        limit or settings.RECONCILIATION_USER_LIMIT,
    )


async def reconcile_for_tenant(
    barbershop_id: UUID,
    lookback_hours: int | None = None,
    limit: int | None = None,
) -> ReconciliationSweepSummary:
    """Reconcile a barbershop's recent PENDING Stripe bookings, newest first."""
    settings = get_settings()
    return await _sweep(
        ReconciliationSource.BARBERSHOP_LIST,
        Booking.barbershop_id == barbershop_id,
        f"barbershop_id={barbershop_id}",
        lookback_hours or settings.RECONCILIATION_LOOKBACK_HOURS,
        limit or settings.RECONCILIATION_TENANT_LIMIT,
    )
