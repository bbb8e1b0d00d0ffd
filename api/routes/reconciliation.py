"""
Pull-style payment reconciliation endpoints.

- POST /reconciliation/session/{session_id} - checkout success redirect
- POST /reconciliation/users/{user_id} - customer's pending bookings
- POST /reconciliation/barbershops/{barbershop_id} - tenant's pending bookings

Sweeps are throttled per subject through Redis so page refreshes do not
hammer the Stripe API.
"""

import logging
from typing import Annotated
from uuid import UUID

import pybreaker
import stripe
from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse

from api.dependencies import get_current_user_id
from api.middleware.signature_validation import verify_cron_secret
from engine.services.reconciliation_service import (
    reconcile_by_session_id,
    reconcile_for_tenant,
    reconcile_for_user,
)
from shared.config import get_settings
from shared.redis_client import acquire_throttle
from shared.stripe_client import StripeConfigurationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reconciliation", tags=["reconciliation"])


def _throttled_response(subject: str) -> JSONResponse:
    return JSONResponse(status_code=200, content={"status": "throttled", "subject": subject})


@router.post("/session/{session_id}")
async def reconcile_session(
    session_id: str,
    user_id: Annotated[UUID, Depends(get_current_user_id)],
):
    """Reconcile the caller's booking behind a Checkout Session."""
    try:
        result = await reconcile_by_session_id(session_id, user_id=user_id)
    except (stripe.StripeError, StripeConfigurationError, pybreaker.CircuitBreakerError) as e:
        logger.error(f"Session reconciliation failed | session_id={session_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY, detail="Payment provider unavailable"
        ) from e

    content = result.model_dump(mode="json")
    if result.is_conflict:
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=content)
    return content


@router.post("/users/{user_id}")
async def reconcile_user(
    user_id: UUID,
    current_user_id: Annotated[UUID, Depends(get_current_user_id)],
):
    """Sweep the caller's recent PENDING Stripe bookings."""
    if user_id != current_user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")

    subject = f"user:{user_id}"
    if not await acquire_throttle(subject, get_settings().RECONCILIATION_THROTTLE_SECONDS):
        return _throttled_response(subject)

    summary = await reconcile_for_user(user_id)
    return {"status": "completed", **summary.model_dump()}


@router.post("/barbershops/{barbershop_id}", dependencies=[Depends(verify_cron_secret)])
async def reconcile_barbershop(barbershop_id: UUID):
    """Sweep a barbershop's recent PENDING Stripe bookings."""
    subject = f"barbershop:{barbershop_id}"
    if not await acquire_throttle(subject, get_settings().RECONCILIATION_THROTTLE_SECONDS):
        return _throttled_response(subject)

    summary = await reconcile_for_tenant(barbershop_id)
    return {"status": "completed", **summary.model_dump()}
