"""
Administrative endpoints, called by the back-office with the cron secret.

- PATCH /admin/barbershops/{barbershop_id}/plan - change plan and WhatsApp settings
"""

import logging
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from api.middleware.signature_validation import verify_cron_secret
from database.connection import get_db_session
from database.models import BarbershopPlan, WhatsAppProvider
from engine.services.plan_service import update_barbershop_plan

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/admin",
    tags=["admin"],
    dependencies=[Depends(verify_cron_secret)],
)


# =============================================================================
# Request Models
# =============================================================================


class UpdatePlanRequest(BaseModel):
    plan: BarbershopPlan
    whatsapp_provider: WhatsAppProvider = WhatsAppProvider.NONE
    whatsapp_enabled: bool = False
    whatsapp_from: str | None = None


# =============================================================================
# Endpoints
# =============================================================================


@router.patch("/barbershops/{barbershop_id}/plan")
async def update_plan(
    barbershop_id: UUID,
    body: UpdatePlanRequest,
    session: Annotated[AsyncSession, Depends(get_db_session)],
):
    """Change a barbershop's plan. Downgrading to BASIC cancels future reminders."""
    result = await update_barbershop_plan(
        session,
        barbershop_id,
        plan=body.plan,
        whatsapp_provider=body.whatsapp_provider,
        whatsapp_enabled=body.whatsapp_enabled,
        whatsapp_from=body.whatsapp_from,
    )
    if not result["success"]:
        status_code = (
            status.HTTP_404_NOT_FOUND
            if result["error_code"] == "BARBERSHOP_NOT_FOUND"
            else status.HTTP_400_BAD_REQUEST
        )
        return JSONResponse(
            status_code=status_code,
            content={"error": result["error_code"], "message": result["error_message"]},
        )

    await session.commit()
    return result
