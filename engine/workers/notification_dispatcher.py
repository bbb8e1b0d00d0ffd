"""
Notification dispatcher worker - Sends due WhatsApp notification jobs.

Each run scans PENDING jobs with scheduled_at <= now in scheduled order, in
batches of NOTIFICATION_DISPATCH_BATCH_SIZE, up to
NOTIFICATION_DISPATCH_MAX_JOBS per run. For each job:

1. Claim it (conditional PENDING -> SENDING); a lost claim is skipped
2. Re-load the booking and tenant; cancel the job if the booking was
   cancelled or tenant gating now blocks the type
3. Send through Twilio; SENT on success, otherwise attempts + 1 and either
   a backoff reschedule or terminal FAILED at NOTIFICATION_MAX_ATTEMPTS

One job's failure never stops the run.

Runs either from the cron endpoint (POST /internal/notifications/dispatch)
or as a standalone loop:

    python -m engine.workers.notification_dispatcher
"""

import asyncio
import json
import logging
import signal
import sys
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.orm import selectinload

from database.connection import get_async_session
from database.models import (
    Barbershop,
    Booking,
    NotificationJob,
    NotificationJobStatus,
    NotificationJobType,
)
from engine.services.notification_gating import (
    NotificationToggles,
    get_notification_block_reason,
)
from engine.services.notification_jobs import NotificationCancelReason
from engine.services.notification_templates import (
    build_notification_content_variables,
    build_notification_text_body,
)
from shared.config import get_settings
from shared.logging_config import configure_logging
from shared.phone import is_valid_e164
from shared.startup_validator import StartupValidationError, validate_startup_config
from shared.whatsapp_client import WhatsAppClient

logger = logging.getLogger(__name__)

# Global flag for graceful shutdown
shutdown_requested = False

RETRY_BACKOFF_MINUTES = [1, 2, 5, 10, 15]
INVALID_PHONE_ERROR = "Invalid destination phone for WhatsApp"
UNKNOWN_ERROR = "Unknown error while sending notification"


class DispatchResult(str, Enum):
    SENT = "sent"
    RETRIED = "retried"
    FAILED = "failed"
    CANCELED = "canceled"
    CLAIM_SKIPPED = "claim_skipped"
    ERROR = "error"


class DispatchSummary(BaseModel):
    scanned: int = 0
    sent: int = 0
    retried: int = 0
    failed: int = 0
    canceled: int = 0
    claim_skipped: int = 0
    errors: int = 0

    def record(self, result: DispatchResult) -> None:
        self.scanned += 1
        if result == DispatchResult.SENT:
            self.sent += 1
        elif result == DispatchResult.RETRIED:
            self.retried += 1
        elif result == DispatchResult.FAILED:
            self.failed += 1
        elif result == DispatchResult.CANCELED:
            self.canceled += 1
        elif result == DispatchResult.CLAIM_SKIPPED:
            self.claim_skipped += 1
        else:
            self.errors += 1


def get_notification_retry_at(attempts_after_failure: int, now: datetime) -> datetime:
    """Next attempt time: 1, 2, 5, 10, then every 15 minutes."""
    if attempts_after_failure < 1:
        raise ValueError("attempts_after_failure must be at least 1")
    index = min(attempts_after_failure - 1, len(RETRY_BACKOFF_MINUTES) - 1)
    return now + timedelta(minutes=RETRY_BACKOFF_MINUTES[index])


def truncate_error(error: BaseException | str) -> str:
    message = str(error).strip()
    if not message:
        return UNKNOWN_ERROR
    return message[: get_settings().NOTIFICATION_ERROR_MAX_LENGTH]


# ============================================================================
# Job state updates
# ============================================================================


async def _mark_canceled(job_id: UUID, reason: str, now: datetime) -> DispatchResult:
    async with get_async_session() as session:
        await session.execute(
            update(NotificationJob)
            .where(NotificationJob.id == job_id)
            .values(
                status=NotificationJobStatus.CANCELED,
                canceled_at=now,
                cancel_reason=reason,
                last_error=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()

    logger.info(
        f"Notification job canceled | job_id={job_id} | reason={reason}",
        extra={"job_id": job_id},
    )
    return DispatchResult.CANCELED


async def _mark_sent(job_id: UUID, provider_message_id: str, now: datetime) -> DispatchResult:
    async with get_async_session() as session:
        await session.execute(
            update(NotificationJob)
            .where(NotificationJob.id == job_id)
            .values(
                status=NotificationJobStatus.SENT,
                sent_at=now,
                provider_message_id=provider_message_id,
                last_error=None,
                canceled_at=None,
                cancel_reason=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()
    return DispatchResult.SENT


async def _record_failure(
    job_id: UUID, attempts: int, error_message: str, now: datetime
) -> DispatchResult:
    """attempts + 1, then reschedule with backoff or give up at the cap."""
    next_attempts = attempts + 1
    reached_limit = next_attempts >= get_settings().NOTIFICATION_MAX_ATTEMPTS

    values: dict[str, Any] = {
        "attempts": next_attempts,
        "last_error": error_message,
        "updated_at": now,
        "status": NotificationJobStatus.FAILED if reached_limit else NotificationJobStatus.PENDING,
    }
    if not reached_limit:
        values["scheduled_at"] = get_notification_retry_at(next_attempts, now)

    async with get_async_session() as session:
        await session.execute(
            update(NotificationJob)
            .where(NotificationJob.id == job_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await session.commit()

    if reached_limit:
        logger.error(
            f"Notification job FAILED after {next_attempts} attempts | job_id={job_id} | "
            f"error={error_message}",
            extra={"job_id": job_id},
        )
        return DispatchResult.FAILED

    logger.warning(
        f"Notification job rescheduled | job_id={job_id} | attempts={next_attempts} | "
        f"next_at={values['scheduled_at'].isoformat()} | error={error_message}",
        extra={"job_id": job_id},
    )
    return DispatchResult.RETRIED


# ============================================================================
# Dispatch
# ============================================================================


@dataclass(frozen=True)
class NotificationDelivery:
    """Everything needed to send (or cancel) one claimed job."""

    job_type: NotificationJobType
    block_reason: str | None = None
    destination: str | None = None
    sender: str | None = None
    content_variables: dict[str, str] = field(default_factory=dict)
    fallback_body: str | None = None


async def _claim_job(job_id: UUID, now: datetime) -> int | None:
    """Conditional PENDING -> SENDING. Returns the job's attempts, or None if the claim was lost."""
    async with get_async_session() as session:
        attempts = (
            await session.execute(
                update(NotificationJob)
                .where(
                    NotificationJob.id == job_id,
                    NotificationJob.status == NotificationJobStatus.PENDING,
                )
                .values(status=NotificationJobStatus.SENDING, last_error=None, updated_at=now)
                .returning(NotificationJob.attempts)
                .execution_options(synchronize_session=False)
            )
        ).scalar_one_or_none()
        if attempts is None:
            return None
        await session.commit()
    return attempts


async def _load_delivery(job_id: UUID) -> NotificationDelivery | None:
    """Re-load job, booking and tenant, apply gating and build the message payload."""
    async with get_async_session() as session:
        job = (
            await session.execute(
                select(NotificationJob)
                .where(NotificationJob.id == job_id)
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if job is None:
            return None

        booking = (
            await session.execute(
                select(Booking)
                .options(
                    selectinload(Booking.user),
                    selectinload(Booking.barber),
                    selectinload(Booking.service),
                    selectinload(Booking.services),
                    selectinload(Booking.barbershop).selectinload(Barbershop.whatsapp_settings),
                )
                .where(Booking.id == job.booking_id)
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()

        job_type: NotificationJobType = job.type
        if booking is None or booking.cancelled_at is not None:
            return NotificationDelivery(
                job_type=job_type,
                block_reason=NotificationCancelReason.BOOKING_CANCELED.value,
            )

        gate = get_notification_block_reason(
            booking.barbershop,
            NotificationToggles.from_row(booking.barbershop.whatsapp_settings),
            job_type,
        )
        if gate is not None:
            return NotificationDelivery(job_type=job_type, block_reason=gate.value)

        return NotificationDelivery(
            job_type=job_type,
            destination=booking.user.phone,
            sender=booking.barbershop.whatsapp_from,
            content_variables=build_notification_content_variables(job_type, booking),
            fallback_body=build_notification_text_body(job_type, booking),
        )


async def process_notification_job(
    job_id: UUID, client: WhatsAppClient, now: datetime
) -> DispatchResult:
    """
    Claim, re-check and send one job.

    Once claimed, a job always leaves SENDING: any error while loading,
    building or sending counts as a failed attempt (backoff or FAILED).
    """
    attempts = await _claim_job(job_id, now)
    if attempts is None:
        return DispatchResult.CLAIM_SKIPPED

    try:
        delivery = await _load_delivery(job_id)
        if delivery is None:
            return DispatchResult.CLAIM_SKIPPED
        if delivery.block_reason is not None:
            return await _mark_canceled(job_id, delivery.block_reason, now)
        if not is_valid_e164(delivery.destination):
            return await _record_failure(job_id, attempts, INVALID_PHONE_ERROR, now)

        sent = await client.send_message(
            to=delivery.destination,
            job_type=delivery.job_type,
            content_variables=delivery.content_variables,
            fallback_body=delivery.fallback_body,
            from_=delivery.sender,
        )
    except Exception as e:
        logger.warning(
            f"Notification job attempt failed | job_id={job_id} | attempts={attempts}: "
            f"{type(e).__name__}: {e}",
            extra={"job_id": job_id},
        )
        return await _record_failure(job_id, attempts, truncate_error(e), now)

    logger.info(
        f"Notification job sent | job_id={job_id} | type={delivery.job_type.value} | "
        f"sid={sent.provider_message_id}",
        extra={"job_id": job_id},
    )
    return await _mark_sent(job_id, sent.provider_message_id, now)


async def dispatch_notification_jobs(
    now: datetime | None = None,
    client: WhatsAppClient | None = None,
) -> DispatchSummary:
    """
    Run one dispatch pass over due PENDING jobs.

    Returns:
        DispatchSummary {scanned, sent, retried, failed, canceled,
        claim_skipped, errors}
    """
    settings = get_settings()
    now = now or datetime.now(UTC)
    client = client or WhatsAppClient()
    summary = DispatchSummary()
    max_jobs = settings.NOTIFICATION_DISPATCH_MAX_JOBS

    while summary.scanned < max_jobs:
        remaining = max_jobs - summary.scanned
        async with get_async_session() as session:
            job_ids = (
                await session.execute(
                    select(NotificationJob.id)
                    .where(
                        NotificationJob.status == NotificationJobStatus.PENDING,
                        NotificationJob.scheduled_at <= now,
                    )
                    .order_by(NotificationJob.scheduled_at.asc())
                    .limit(min(settings.NOTIFICATION_DISPATCH_BATCH_SIZE, remaining))
                )
            ).scalars().all()

        if not job_ids:
            break

        for job_id in job_ids:
            try:
                result = await process_notification_job(job_id, client, now)
            except Exception as e:
                logger.error(
                    f"Unexpected error dispatching notification job {job_id}: {e}",
                    extra={"job_id": job_id},
                    exc_info=True,
                )
                result = DispatchResult.ERROR

            summary.record(result)
            if summary.scanned >= max_jobs:
                break

    logger.info(f"Notification dispatch finished | {summary.model_dump()}")
    return summary


# ============================================================================
# Worker loop
# ============================================================================


def signal_handler(signum: int, frame: Any) -> None:
    """
    Handle SIGTERM/SIGINT for graceful shutdown.
    """
    global shutdown_requested
    logger.info(f"Received signal {signum}, initiating graceful shutdown...")
    shutdown_requested = True


async def update_health_check(summary: DispatchSummary, status: str) -> None:
    """Write the last run summary to /tmp/health for container health checks."""
    health_dir = Path("/tmp/health")
    health_file = health_dir / "notification_dispatcher_health.json"
    temp_file = health_dir / f"notification_dispatcher_health.{int(time.time())}.tmp"

    health_data = {
        "status": status,
        "last_run": datetime.now(UTC).isoformat(),
        **summary.model_dump(),
    }

    try:
        health_dir.mkdir(parents=True, exist_ok=True)
        temp_file.write_text(json.dumps(health_data, indent=2))
        temp_file.rename(health_file)
        logger.debug(f"Health check file updated: {health_file}")
    except OSError as e:
        logger.error(f"Failed to write health check file: {e}", exc_info=True)


async def async_main() -> None:
    """
    Dispatch loop. Runs every NOTIFICATION_DISPATCH_INTERVAL_SECONDS until a
    shutdown signal arrives.
    """
    settings = get_settings()
    interval = settings.NOTIFICATION_DISPATCH_INTERVAL_SECONDS

    logger.info(
        f"Notification dispatcher starting | interval={interval}s | "
        f"batch_size={settings.NOTIFICATION_DISPATCH_BATCH_SIZE} | "
        f"max_jobs={settings.NOTIFICATION_DISPATCH_MAX_JOBS}"
    )

    try:
        await validate_startup_config(require_twilio=True)
    except StartupValidationError as e:
        logger.critical(f"Notification dispatcher startup blocked: {e}")
        sys.exit(1)

    await update_health_check(DispatchSummary(), "healthy")

    client = WhatsAppClient()

    while not shutdown_requested:
        try:
            summary = await dispatch_notification_jobs(client=client)
            await update_health_check(summary, "healthy" if summary.errors == 0 else "unhealthy")
        except Exception as e:
            logger.error(f"Error in notification dispatch run: {e}", exc_info=True)
            await update_health_check(DispatchSummary(errors=1), "unhealthy")

        # Sleep in short steps so a shutdown signal is honored quickly
        for _ in range(interval):
            if shutdown_requested:
                break
            await asyncio.sleep(1)

    logger.info("Notification dispatcher shutting down gracefully...")


def run_notification_dispatcher() -> None:
    """
    Synchronous entry point that sets up logging and signal handlers,
    then runs the async main function.
    """
    configure_logging(service="notification-dispatcher")
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)
    asyncio.run(async_main())


if __name__ == "__main__":
    run_notification_dispatcher()
