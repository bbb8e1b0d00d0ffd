"""
Notification job scheduling and cancellation.

Every function takes the caller's AsyncSession and never commits: jobs are
created or cancelled inside the same transaction as the booking change that
caused them (payment confirmation, waitlist promotion, cancellation).

Scheduling is idempotent. (booking_id, type) is unique and inserts use
ON CONFLICT DO NOTHING, so a replayed webhook or a second sweep over the
same booking creates nothing new.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import (
    Barbershop,
    BarbershopWhatsAppSettings,
    Booking,
    NotificationJob,
    NotificationJobStatus,
    NotificationJobType,
    User,
)
from engine.services.booking_status import is_booking_confirmed_for_notifications
from engine.services.notification_gating import (
    NotificationToggles,
    get_notification_block_reason,
)
from shared.phone import is_valid_e164

logger = logging.getLogger(__name__)

REMINDER_OFFSETS: dict[NotificationJobType, timedelta] = {
    NotificationJobType.REMINDER_24H: timedelta(hours=24),
    NotificationJobType.REMINDER_1H: timedelta(hours=1),
}


class NotificationCancelReason(str, Enum):
    BOOKING_CANCELED = "booking_canceled"
    PAYMENT_FAILED = "payment_failed"
    PLAN_DOWNGRADE = "plan_downgrade"


@dataclass(frozen=True)
class NotificationCandidate:
    type: NotificationJobType
    scheduled_at: datetime


def _reason_value(reason: str | Enum) -> str:
    return reason.value if isinstance(reason, Enum) else reason


def build_notification_candidates(
    booking_start_at: datetime,
    barbershop: Barbershop,
    toggles: NotificationToggles,
    now: datetime,
) -> list[NotificationCandidate]:
    """
    Jobs a confirmed booking should get.

    BOOKING_CONFIRM is due immediately. Reminders are due 24h/1h before the
    start and are dropped when that moment has already passed. Types blocked
    by tenant gating are dropped.
    """
    candidates: list[NotificationCandidate] = []

    if get_notification_block_reason(barbershop, toggles, NotificationJobType.BOOKING_CONFIRM) is None:
        candidates.append(NotificationCandidate(NotificationJobType.BOOKING_CONFIRM, now))

    for job_type, offset in REMINDER_OFFSETS.items():
        scheduled_at = booking_start_at - offset
        if scheduled_at <= now:
            continue
        if get_notification_block_reason(barbershop, toggles, job_type) is not None:
            continue
        candidates.append(NotificationCandidate(job_type, scheduled_at))

    return candidates


async def schedule_booking_notification_jobs(
    session: AsyncSession,
    booking_id: UUID,
    now: datetime | None = None,
) -> int:
    """
    Create the notification jobs for a confirmed booking.

    Nothing is scheduled for an unknown or cancelled booking, a booking whose
    payment is not settled, or a customer without a valid E.164 phone.

    Returns:
        Number of jobs actually inserted (duplicates are skipped)
    """
    now = now or datetime.now(UTC)

    result = await session.execute(
        select(Booking, User.phone, Barbershop, BarbershopWhatsAppSettings)
        .join(User, User.id == Booking.user_id)
        .join(Barbershop, Barbershop.id == Booking.barbershop_id)
        .outerjoin(
            BarbershopWhatsAppSettings,
            BarbershopWhatsAppSettings.barbershop_id == Booking.barbershop_id,
        )
        .where(Booking.id == booking_id)
        .execution_options(populate_existing=True)
    )
    row = result.one_or_none()
    if row is None:
        return 0

    booking, user_phone, barbershop, settings_row = row

    if booking.cancelled_at is not None:
        return 0

    if not is_booking_confirmed_for_notifications(booking):
        return 0

    if not is_valid_e164(user_phone):
        logger.info(
            f"Skipping notification scheduling: invalid phone | booking_id={booking.id}",
            extra={"booking_id": booking.id},
        )
        return 0

    candidates = build_notification_candidates(
        booking.start_at, barbershop, NotificationToggles.from_row(settings_row), now
    )
    if not candidates:
        return 0

    stmt = (
        pg_insert(NotificationJob)
        .values(
            [
                {
                    "id": uuid4(),
                    "booking_id": booking.id,
                    "barbershop_id": booking.barbershop_id,
                    "type": candidate.type,
                    "status": NotificationJobStatus.PENDING,
                    "scheduled_at": candidate.scheduled_at,
                    "attempts": 0,
                    "created_at": now,
                    "updated_at": now,
                }
                for candidate in candidates
            ]
        )
        .on_conflict_do_nothing(index_elements=["booking_id", "type"])
        .returning(NotificationJob.id)
    )
    inserted = await session.execute(stmt)
    created_count = len(inserted.scalars().all())

    logger.info(
        f"Notification jobs scheduled | booking_id={booking.id} | "
        f"candidates={len(candidates)} | created={created_count}",
        extra={"booking_id": booking.id, "barbershop_id": booking.barbershop_id},
    )
    return created_count


async def cancel_pending_booking_notification_jobs(
    session: AsyncSession,
    booking_id: UUID,
    reason: str | Enum,
    now: datetime | None = None,
) -> int:
    """Cancel every still-PENDING job of a booking. Returns the canceled count."""
    now = now or datetime.now(UTC)
    result = await session.execute(
        update(NotificationJob)
        .where(
            NotificationJob.booking_id == booking_id,
            NotificationJob.status == NotificationJobStatus.PENDING,
        )
        .values(
            status=NotificationJobStatus.CANCELED,
            canceled_at=now,
            cancel_reason=_reason_value(reason),
            last_error=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    canceled = result.rowcount or 0
    if canceled:
        logger.info(
            f"Notification jobs canceled | booking_id={booking_id} | "
            f"reason={_reason_value(reason)} | count={canceled}",
            extra={"booking_id": booking_id},
        )
    return canceled


async def cancel_future_tenant_notification_jobs(
    session: AsyncSession,
    barbershop_id: UUID,
    reason: str | Enum,
    now: datetime | None = None,
) -> int:
    """
    Cancel a tenant's PENDING jobs scheduled strictly after now.

    Jobs already due are left to the dispatcher, which re-checks gating and
    cancels them with the precise reason.
    """
    now = now or datetime.now(UTC)
    result = await session.execute(
        update(NotificationJob)
        .where(
            NotificationJob.barbershop_id == barbershop_id,
            NotificationJob.status == NotificationJobStatus.PENDING,
            NotificationJob.scheduled_at > now,
        )
        .values(
            status=NotificationJobStatus.CANCELED,
            canceled_at=now,
            cancel_reason=_reason_value(reason),
            last_error=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    canceled = result.rowcount or 0
    logger.info(
        f"Future tenant notification jobs canceled | barbershop_id={barbershop_id} | "
        f"reason={_reason_value(reason)} | count={canceled}",
        extra={"barbershop_id": barbershop_id},
    )
    return canceled
