"""Internal cron-triggered endpoints."""

import logging

from fastapi import APIRouter, Depends

from api.middleware.signature_validation import verify_cron_secret
from engine.workers.notification_dispatcher import dispatch_notification_jobs

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/internal",
    tags=["internal"],
    dependencies=[Depends(verify_cron_secret)],
)


@router.api_route("/notifications/dispatch", methods=["GET", "POST"])
async def dispatch_notifications():
    """Run one notification dispatch pass and return its summary."""
    summary = await dispatch_notification_jobs()
    return {"ok": True, **summary.model_dump()}
