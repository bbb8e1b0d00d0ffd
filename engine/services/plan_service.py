"""Barbershop plan and WhatsApp provider changes."""

import logging
from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import (
    Barbershop,
    BarbershopPlan,
    BarbershopWhatsAppSettings,
    WhatsAppProvider,
)
from engine.services.notification_jobs import (
    NotificationCancelReason,
    cancel_future_tenant_notification_jobs,
)
from shared.phone import normalize_e164

logger = logging.getLogger(__name__)


async def update_barbershop_plan(
    session: AsyncSession,
    barbershop_id: UUID,
    plan: BarbershopPlan,
    whatsapp_provider: WhatsAppProvider = WhatsAppProvider.NONE,
    whatsapp_enabled: bool = False,
    whatsapp_from: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Change a tenant's plan and messaging settings in the caller's transaction.

    BASIC always ends with messaging off. A PRO -> BASIC change cancels the
    tenant's future pending notification jobs. The caller commits.
    """
    now = now or datetime.now(UTC)

    barbershop = (
        await session.execute(
            select(Barbershop)
            .where(Barbershop.id == barbershop_id)
            .with_for_update()
        )
    ).scalar_one_or_none()
    if barbershop is None:
        return {
            "success": False,
            "error_code": "BARBERSHOP_NOT_FOUND",
            "error_message": "Barbershop not found",
        }

    if plan == BarbershopPlan.BASIC:
        whatsapp_provider = WhatsAppProvider.NONE
        whatsapp_enabled = False
        whatsapp_from = None
    elif whatsapp_enabled and whatsapp_provider != WhatsAppProvider.TWILIO:
        return {
            "success": False,
            "error_code": "WHATSAPP_PROVIDER_REQUIRED",
            "error_message": "Select the Twilio provider to enable WhatsApp messaging",
        }

    if whatsapp_from:
        normalized_from = normalize_e164(whatsapp_from)
        if normalized_from is None:
            return {
                "success": False,
                "error_code": "INVALID_WHATSAPP_FROM",
                "error_message": "WhatsApp sender must be a valid phone number",
            }
        whatsapp_from = normalized_from

    previous_plan = barbershop.plan
    barbershop.plan = plan
    barbershop.whatsapp_provider = whatsapp_provider
    barbershop.whatsapp_enabled = whatsapp_enabled
    barbershop.whatsapp_from = whatsapp_from
    barbershop.updated_at = now

    await session.execute(
        pg_insert(BarbershopWhatsAppSettings)
        .values(id=uuid4(), barbershop_id=barbershop_id)
        .on_conflict_do_nothing(index_elements=[BarbershopWhatsAppSettings.barbershop_id])
    )

    jobs_canceled = 0
    if previous_plan == BarbershopPlan.PRO and plan == BarbershopPlan.BASIC:
        jobs_canceled = await cancel_future_tenant_notification_jobs(
            session, barbershop_id, NotificationCancelReason.PLAN_DOWNGRADE, now=now
        )

    await session.flush()

    logger.info(
        f"Barbershop plan updated | barbershop_id={barbershop_id} | "
        f"{previous_plan.value} -> {plan.value} | whatsapp_enabled={whatsapp_enabled} | "
        f"jobs_canceled={jobs_canceled}",
        extra={"barbershop_id": barbershop_id},
    )

    return {
        "success": True,
        "barbershop_id": str(barbershop_id),
        "plan": plan.value,
        "whatsapp_provider": whatsapp_provider.value,
        "whatsapp_enabled": whatsapp_enabled,
        "whatsapp_from": whatsapp_from,
        "jobs_canceled": jobs_canceled,
    }
